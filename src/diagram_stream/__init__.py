from importlib import import_module
from typing import Any

__all__ = [
    "EngineSettings",
    "StreamIncrement",
    "StreamingCoordinator",
    "UnitOutcome",
    "DiagramValidator",
    "apply_operations",
    "replace_nodes",
    "extract_complete_cells",
    "legalize_xml",
    "document_to_flow_specs",
]

_EXPORTS = {
    "EngineSettings": ".config",
    "StreamIncrement": ".coordinator",
    "StreamingCoordinator": ".coordinator",
    "UnitOutcome": ".coordinator",
    "DiagramValidator": ".validation",
    "apply_operations": ".operations",
    "replace_nodes": ".merge",
    "extract_complete_cells": ".fragment",
    "legalize_xml": ".legalizer",
    "document_to_flow_specs": ".ui_mapper",
}


def __getattr__(name: str) -> Any:
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
