import logging
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, List, Mapping, Optional, Union

from lxml import etree

from .document import (
    SENTINEL_IDS,
    cell_id,
    dump_tree,
    find_cell_root,
    load_tree,
    node_elements,
    parse_cells,
)
from .errors import DiagramParseError, OperationError
from .legalizer import legalize_xml

logger = logging.getLogger(__name__)

OPERATION_KINDS = ("add", "update", "delete")

REASON_NOT_FOUND = "not-found"
REASON_INVALID_XML = "invalid-xml"
REASON_ID_MISMATCH = "id-mismatch"
REASON_PROTECTED = "protected"
REASON_MALFORMED = "malformed-operation"


@dataclass(frozen=True)
class AddCell:
    cell_id: str
    new_xml: str
    kind: ClassVar[str] = "add"


@dataclass(frozen=True)
class UpdateCell:
    cell_id: str
    new_xml: str
    kind: ClassVar[str] = "update"


@dataclass(frozen=True)
class DeleteCell:
    cell_id: str
    kind: ClassVar[str] = "delete"


DiagramOperation = Union[AddCell, UpdateCell, DeleteCell]


@dataclass(frozen=True)
class OperationFailure:
    cell_id: str
    reason: str
    message: str = ""


@dataclass
class ApplyResult:
    result: str
    errors: List[OperationFailure] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_operation(raw: Any) -> DiagramOperation:
    if isinstance(raw, (AddCell, UpdateCell, DeleteCell)):
        return raw
    if not isinstance(raw, Mapping):
        raise OperationError("Operation must be an object.", reason=REASON_MALFORMED)

    kind = raw.get("operation")
    target = raw.get("cell_id")
    target_id = target if isinstance(target, str) else ""
    if kind not in OPERATION_KINDS:
        raise OperationError(
            f"Unknown operation {kind!r}; expected one of {', '.join(OPERATION_KINDS)}.",
            cell_id=target_id,
            reason=REASON_MALFORMED,
        )
    if not target_id:
        raise OperationError("Operation is missing cell_id.", reason=REASON_MALFORMED)
    if kind == "delete":
        return DeleteCell(cell_id=target_id)

    new_xml = raw.get("new_xml")
    if not isinstance(new_xml, str):
        raise OperationError(
            f"Operation '{kind}' for cell '{target_id}' is missing new_xml.",
            cell_id=target_id,
            reason=REASON_MALFORMED,
        )
    if kind == "add":
        return AddCell(cell_id=target_id, new_xml=new_xml)
    return UpdateCell(cell_id=target_id, new_xml=new_xml)


def complete_operations(raw_operations: Optional[Iterable[Any]]) -> List[DiagramOperation]:
    if not raw_operations or isinstance(raw_operations, (str, bytes, Mapping)):
        return []
    operations: List[DiagramOperation] = []
    for raw in raw_operations:
        try:
            operations.append(parse_operation(raw))
        except OperationError:
            continue
    return operations


def apply_operations(base: str, operations: Iterable[Any]) -> ApplyResult:
    tree = load_tree(base)
    root = find_cell_root(tree)
    errors: List[OperationFailure] = []
    applied: List[str] = []

    for raw in operations or []:
        try:
            operation = parse_operation(raw)
            _apply_one(root, operation)
        except OperationError as exc:
            logger.debug("operation skipped for cell %r: %s", exc.cell_id, exc)
            errors.append(OperationFailure(cell_id=exc.cell_id, reason=exc.reason, message=str(exc)))
            continue
        applied.append(operation.cell_id)

    if errors:
        logger.info("applied %d operation(s), %d failed", len(applied), len(errors))
    return ApplyResult(result=dump_tree(tree), errors=errors, applied=applied)


def _apply_one(root: etree._Element, operation: DiagramOperation) -> None:
    target_id = operation.cell_id
    matches = [node for node in node_elements(root) if cell_id(node) == target_id]

    if isinstance(operation, DeleteCell):
        if target_id in SENTINEL_IDS:
            raise OperationError(
                f"Cell '{target_id}' is a structural sentinel and cannot be deleted.",
                cell_id=target_id,
                reason=REASON_PROTECTED,
            )
        if not matches:
            raise OperationError(
                f"Cell '{target_id}' does not exist.",
                cell_id=target_id,
                reason=REASON_NOT_FOUND,
            )
        for node in matches:
            root.remove(node)
        return

    incoming = _parse_single_cell(operation.new_xml, target_id)
    if matches:
        existing = matches[-1]
        incoming.tail = existing.tail
        root.replace(existing, incoming)
    else:
        root.append(incoming)


def _parse_single_cell(new_xml: str, target_id: str) -> etree._Element:
    try:
        cells = parse_cells(legalize_xml(new_xml))
    except DiagramParseError as exc:
        raise OperationError(
            f"new_xml for cell '{target_id}' is not valid XML: {exc}",
            cell_id=target_id,
            reason=REASON_INVALID_XML,
        ) from exc
    if len(cells) != 1:
        raise OperationError(
            f"new_xml for cell '{target_id}' must contain exactly one element, got {len(cells)}.",
            cell_id=target_id,
            reason=REASON_INVALID_XML,
        )

    node = deepcopy(cells[0])
    node.tail = None
    declared = node.get("id")
    if declared is None:
        node.set("id", target_id)
    elif declared != target_id:
        raise OperationError(
            f"new_xml declares id '{declared}' but the operation targets '{target_id}'.",
            cell_id=target_id,
            reason=REASON_ID_MISMATCH,
        )
    return node

