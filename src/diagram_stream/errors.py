from typing import Optional


class DiagramError(ValueError):
    pass


class DiagramParseError(DiagramError):
    pass


class DanglingReferenceError(DiagramError):
    def __init__(self, message: str, cell_id: str = "", reference: str = "") -> None:
        super().__init__(message)
        self.cell_id = cell_id
        self.reference = reference


class DuplicateIdError(DiagramError):
    def __init__(self, message: str, cell_id: str = "") -> None:
        super().__init__(message)
        self.cell_id = cell_id


class OperationError(DiagramError):
    def __init__(self, message: str, cell_id: str = "", reason: Optional[str] = None) -> None:
        super().__init__(message)
        self.cell_id = cell_id
        self.reason = reason or "operation-failed"


class ProducerTimeoutError(DiagramError):
    pass
