import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Type

import networkx as nx
from lxml import etree

from .document import (
    DEFAULT_LAYER_ID,
    ROOT_CELL_ID,
    SENTINEL_IDS,
    cell_attr,
    cell_id,
    dump_tree,
    find_cell_root,
    is_enveloped,
    make_sentinels,
    node_elements,
    parse_element,
    remove_cell_attr,
    set_cell_attr,
    wrap_envelope,
)
from .errors import DanglingReferenceError, DiagramError, DiagramParseError, DuplicateIdError

logger = logging.getLogger(__name__)

RULE_ERRORS: Dict[str, Type[DiagramError]] = {
    "parse_error": DiagramParseError,
    "missing_id": DiagramParseError,
    "missing_sentinel": DanglingReferenceError,
    "duplicate_id": DuplicateIdError,
    "dangling_parent": DanglingReferenceError,
    "parent_cycle": DanglingReferenceError,
    "dangling_source": DanglingReferenceError,
    "dangling_target": DanglingReferenceError,
}


@dataclass(frozen=True)
class ValidationFinding:
    severity: str
    rule_id: str
    message: str
    target: str = ""

    def as_error(self) -> DiagramError:
        error_type = RULE_ERRORS.get(self.rule_id, DiagramError)
        if error_type is DuplicateIdError:
            return DuplicateIdError(self.message, cell_id=self.target)
        if error_type is DanglingReferenceError:
            return DanglingReferenceError(self.message, cell_id=self.target)
        return error_type(self.message)


@dataclass
class ValidationResult:
    valid: bool
    fixed: Optional[str] = None
    issues: List[ValidationFinding] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationFinding]:
        return [item for item in self.issues if item.severity == "error"]

    @property
    def warnings(self) -> List[ValidationFinding]:
        return [item for item in self.issues if item.severity == "warning"]

    @property
    def repaired(self) -> bool:
        return self.valid and self.fixed is not None

    def short_reason(self) -> str:
        if not self.issues:
            return "ok"
        if self.errors:
            return "; ".join(item.message for item in self.errors[:3])
        return "; ".join(item.message for item in self.warnings[:2])


class DiagramValidator:
    def __init__(self, repair: bool = True) -> None:
        self.repair = repair

    def validate(self, xml: str, repair: Optional[bool] = None) -> ValidationResult:
        should_repair = self.repair if repair is None else repair

        if not (xml or "").strip():
            return ValidationResult(
                valid=False,
                issues=[ValidationFinding("error", "parse_error", "Document is empty.")],
            )
        try:
            element = parse_element(xml)
            enveloped = is_enveloped(element)
            tree = wrap_envelope(element)
            root = find_cell_root(tree)
        except DiagramParseError as exc:
            return ValidationResult(
                valid=False,
                issues=[ValidationFinding("error", "parse_error", str(exc))],
            )

        findings: List[ValidationFinding] = []
        if not enveloped:
            findings.append(
                ValidationFinding(
                    "warning",
                    "missing_envelope",
                    f"Document root <{element.tag}> was wrapped into the mxfile envelope.",
                )
            )
        findings.extend(collect_findings(root))

        if not any(item.severity == "error" for item in findings):
            fixed = None if enveloped else dump_tree(tree)
            return ValidationResult(valid=True, fixed=fixed, issues=findings)
        if not should_repair:
            return ValidationResult(valid=False, issues=findings)

        repair_cells(root)
        remaining = [item for item in collect_findings(root) if item.severity == "error"]
        if remaining:
            logger.warning("repair left %d unresolved issue(s)", len(remaining))
            return ValidationResult(valid=False, issues=findings + remaining)
        logger.info("repaired document: %s", "; ".join(sorted({item.rule_id for item in findings})))
        return ValidationResult(valid=True, fixed=dump_tree(tree), issues=findings)

    def ensure_valid(self, xml: str) -> str:
        result = self.validate(xml, repair=False)
        if not result.valid:
            raise result.errors[0].as_error()
        return result.fixed or xml


def validate_and_fix(xml: str) -> ValidationResult:
    return DiagramValidator(repair=True).validate(xml)


def collect_findings(root: etree._Element) -> List[ValidationFinding]:
    findings: List[ValidationFinding] = []
    nodes = node_elements(root)

    for node in nodes:
        if not cell_id(node):
            findings.append(
                ValidationFinding("error", "missing_id", f"A <{node.tag}> cell has no id attribute.")
            )

    counts = Counter(cell_id(node) for node in nodes if cell_id(node))
    for node_id, count in counts.items():
        if count > 1:
            findings.append(
                ValidationFinding(
                    "error",
                    "duplicate_id",
                    f"Cell id '{node_id}' appears {count} times.",
                    target=node_id,
                )
            )

    ids = set(counts)
    for sentinel in SENTINEL_IDS:
        if sentinel not in ids:
            findings.append(
                ValidationFinding(
                    "error",
                    "missing_sentinel",
                    f"Required cell '{sentinel}' is missing.",
                    target=sentinel,
                )
            )

    for node in nodes:
        node_id = cell_id(node)
        if not node_id or node_id in SENTINEL_IDS:
            continue
        parent = cell_attr(node, "parent")
        if not parent or parent not in ids:
            findings.append(
                ValidationFinding(
                    "error",
                    "dangling_parent",
                    f"Cell '{node_id}' references missing parent '{parent or ''}'.",
                    target=node_id,
                )
            )

    for cycle in find_parent_cycles(nodes):
        findings.append(
            ValidationFinding(
                "error",
                "parent_cycle",
                f"Cells {', '.join(repr(item) for item in cycle)} contain each other.",
                target=cycle[0],
            )
        )

    for node in nodes:
        node_id = cell_id(node)
        for attribute in ("source", "target"):
            reference = cell_attr(node, attribute)
            if reference and reference not in ids:
                findings.append(
                    ValidationFinding(
                        "error",
                        f"dangling_{attribute}",
                        f"Edge '{node_id}' {attribute} references missing cell '{reference}'.",
                        target=node_id,
                    )
                )
    return findings


def find_parent_cycles(nodes: List[etree._Element]) -> List[List[str]]:
    order: Dict[str, int] = {}
    graph = nx.DiGraph()
    for index, node in enumerate(nodes):
        node_id = cell_id(node)
        if not node_id:
            continue
        order[node_id] = index
        graph.add_node(node_id)
    for node in nodes:
        node_id = cell_id(node)
        if not node_id or node_id in SENTINEL_IDS:
            continue
        parent = cell_attr(node, "parent")
        if parent and parent in graph:
            graph.add_edge(node_id, parent)

    cycles: List[List[str]] = []
    for cycle in nx.simple_cycles(graph):
        cycles.append(sorted(cycle, key=lambda item: order.get(item, 0)))
    cycles.sort(key=lambda members: order.get(members[0], 0))
    return cycles


def repair_cells(root: etree._Element) -> None:
    for node in node_elements(root):
        if not cell_id(node):
            root.remove(node)

    last_seen: Dict[str, etree._Element] = {}
    for node in node_elements(root):
        last_seen[cell_id(node)] = node
    for node in node_elements(root):
        if last_seen[cell_id(node)] is not node:
            root.remove(node)

    _restore_sentinels(root)
    ids = {cell_id(node) for node in node_elements(root)}

    for node in node_elements(root):
        node_id = cell_id(node)
        if node_id in SENTINEL_IDS:
            continue
        parent = cell_attr(node, "parent")
        if not parent or parent not in ids:
            set_cell_attr(node, "parent", DEFAULT_LAYER_ID)

    nodes = node_elements(root)
    by_id = {cell_id(node): node for node in nodes}
    for cycle in find_parent_cycles(nodes):
        set_cell_attr(by_id[cycle[0]], "parent", DEFAULT_LAYER_ID)

    for node in node_elements(root):
        for attribute in ("source", "target"):
            reference = cell_attr(node, attribute)
            if reference and reference not in ids:
                remove_cell_attr(node, attribute)


def _restore_sentinels(root: etree._Element) -> None:
    ids = {cell_id(node) for node in node_elements(root)}
    root_cell, layer_cell = make_sentinels()
    if ROOT_CELL_ID not in ids:
        root.insert(0, root_cell)
    if DEFAULT_LAYER_ID not in ids:
        position = 0
        for index, child in enumerate(root):
            if isinstance(child.tag, str) and cell_id(child) == ROOT_CELL_ID:
                position = index + 1
                break
        root.insert(position, layer_cell)
