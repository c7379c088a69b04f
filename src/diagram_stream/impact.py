from typing import Any, Dict, Tuple

from lxml import etree

from .document import SENTINEL_IDS, cell_attr, cell_id, find_cell_root, is_edge, load_tree, node_elements

CellIndex = Dict[str, Tuple[bool, str, str, str]]


def compute_impact_range(previous_xml: str, updated_xml: str) -> Dict[str, Any]:
    previous = _index_cells(previous_xml)
    updated = _index_cells(updated_xml)

    prev_node_ids = {key for key, item in previous.items() if not item[0]}
    next_node_ids = {key for key, item in updated.items() if not item[0]}
    prev_edge_ids = {key for key, item in previous.items() if item[0]}
    next_edge_ids = {key for key, item in updated.items() if item[0]}

    added_node_ids = sorted(next_node_ids - prev_node_ids)
    removed_node_ids = sorted(prev_node_ids - next_node_ids)
    changed_node_ids = sorted(
        node_id for node_id in (prev_node_ids & next_node_ids) if previous[node_id] != updated[node_id]
    )

    added_edge_ids = sorted(next_edge_ids - prev_edge_ids)
    removed_edge_ids = sorted(prev_edge_ids - next_edge_ids)
    changed_edge_ids = sorted(
        edge_id for edge_id in (prev_edge_ids & next_edge_ids) if previous[edge_id] != updated[edge_id]
    )

    impacted_node_ids = set(added_node_ids + removed_node_ids + changed_node_ids)
    for edge_id in added_edge_ids + changed_edge_ids:
        _, _, source, target = updated[edge_id]
        impacted_node_ids.update((source, target))
    for edge_id in removed_edge_ids:
        _, _, source, target = previous[edge_id]
        impacted_node_ids.update((source, target))
    impacted_node_ids.discard("")
    impacted_node_ids.difference_update(SENTINEL_IDS)

    return {
        "message": (
            f"nodes(+{len(added_node_ids)}, -{len(removed_node_ids)}, ~{len(changed_node_ids)}), "
            f"edges(+{len(added_edge_ids)}, -{len(removed_edge_ids)}, ~{len(changed_edge_ids)})"
        ),
        "added_node_ids": added_node_ids,
        "removed_node_ids": removed_node_ids,
        "changed_node_ids": changed_node_ids,
        "added_edge_ids": added_edge_ids,
        "removed_edge_ids": removed_edge_ids,
        "changed_edge_ids": changed_edge_ids,
        "impacted_node_ids": sorted(impacted_node_ids),
        "impacted_edge_ids": sorted(set(added_edge_ids + removed_edge_ids + changed_edge_ids)),
    }


def _index_cells(xml: str) -> CellIndex:
    index: CellIndex = {}
    for node in node_elements(find_cell_root(load_tree(xml))):
        node_id = cell_id(node)
        if not node_id:
            continue
        index[node_id] = (
            is_edge(node),
            etree.tostring(node, encoding="unicode", with_tail=False),
            cell_attr(node, "source") or "",
            cell_attr(node, "target") or "",
        )
    return index
