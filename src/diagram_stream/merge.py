import logging
from copy import deepcopy
from typing import Dict, List

from lxml import etree

from .document import cell_id, dump_tree, find_cell_root, load_tree, node_elements, parse_cells
from .errors import DiagramParseError
from .legalizer import legalize_xml

logger = logging.getLogger(__name__)


def replace_nodes(base: str, fragment: str) -> str:
    cells = parse_cells(legalize_xml(fragment))
    tree = load_tree(base)
    root = find_cell_root(tree)
    merge_cells(root, cells)
    return dump_tree(tree)


def merge_cells(root: etree._Element, cells: List[etree._Element]) -> Dict[str, int]:
    for cell in cells:
        if not cell_id(cell):
            raise DiagramParseError(f"Fragment cell <{cell.tag}> has no id.")

    index: Dict[str, etree._Element] = {}
    for node in node_elements(root):
        node_id = cell_id(node)
        if node_id:
            index[node_id] = node

    stats = {"replaced": 0, "appended": 0}
    for cell in cells:
        incoming = deepcopy(cell)
        incoming.tail = None
        node_id = cell_id(incoming)
        existing = index.get(node_id)
        if existing is not None:
            incoming.tail = existing.tail
            root.replace(existing, incoming)
            stats["replaced"] += 1
        else:
            root.append(incoming)
            stats["appended"] += 1
        index[node_id] = incoming
    logger.debug("merged fragment: %(replaced)d replaced, %(appended)d appended", stats)
    return stats
