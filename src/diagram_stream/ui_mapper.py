import html
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from lxml import etree

from .document import (
    SENTINEL_IDS,
    cell_attr,
    cell_id,
    find_cell_root,
    is_edge,
    load_tree,
    node_elements,
)

NodeData = Dict[str, Any]
EdgeData = Dict[str, Any]

_TAG_RE = re.compile(r"<[^>]+>")
_BREAK_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)

ORTHOGONAL_STYLES = {"orthogonalEdgeStyle", "elbowEdgeStyle", "entityRelationEdgeStyle"}


def document_to_flow_specs(xml: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    nodes_data, edges_data = document_to_graph_data(xml)
    return to_flow_node_specs(nodes_data, edges_data), to_flow_edge_specs(edges_data)


def document_to_graph_data(xml: str) -> Tuple[List[NodeData], List[EdgeData]]:
    cells = node_elements(find_cell_root(load_tree(xml)))
    by_id = {cell_id(node): node for node in cells if cell_id(node)}

    nodes: List[NodeData] = []
    raw_edges: List[etree._Element] = []
    for node in cells:
        node_id = cell_id(node)
        if not node_id or node_id in SENTINEL_IDS:
            continue
        if is_edge(node):
            raw_edges.append(node)
            continue
        if cell_attr(node, "vertex") != "1" and _geometry(node) is None:
            continue
        x, y = _absolute_position(node_id, by_id)
        width, height = _size(node)
        nodes.append(
            {
                "id": node_id,
                "label": cell_label(node),
                "parent": cell_attr(node, "parent") or "",
                "x": x,
                "y": y,
                "width": width,
                "height": height,
                "style": parse_style(cell_attr(node, "style") or ""),
            }
        )

    node_ids = {node["id"] for node in nodes}
    edges: List[EdgeData] = []
    for node in raw_edges:
        source = cell_attr(node, "source") or ""
        target = cell_attr(node, "target") or ""
        if source not in node_ids or target not in node_ids:
            continue
        edges.append(
            {
                "id": cell_id(node),
                "source": source,
                "target": target,
                "label": cell_label(node),
                "style": parse_style(cell_attr(node, "style") or ""),
            }
        )
    return nodes, edges


def parse_style(style: str) -> Dict[str, str]:
    parsed: Dict[str, str] = {}
    for part in style.split(";"):
        part = part.strip()
        if not part:
            continue
        key, _, value = part.partition("=")
        parsed[key.strip()] = value.strip()
    return parsed


def cell_label(node: etree._Element) -> str:
    raw = node.get("value") or node.get("label") or ""
    text = _BREAK_RE.sub("\n", raw)
    text = _TAG_RE.sub("", text)
    return html.unescape(text).strip()


def to_flow_node_specs(
    nodes_data: List[NodeData], edges_data: Optional[List[EdgeData]] = None
) -> List[Dict[str, Any]]:
    by_id = {node["id"]: node for node in nodes_data}
    outgoing: Dict[str, Counter] = {node_id: Counter() for node_id in by_id}
    incoming: Dict[str, Counter] = {node_id: Counter() for node_id in by_id}
    for edge in edges_data or []:
        source_side, target_side = edge_sides(edge, by_id)
        if edge["source"] in outgoing:
            outgoing[edge["source"]][source_side] += 1
        if edge["target"] in incoming:
            incoming[edge["target"]][target_side] += 1

    specs: List[Dict[str, Any]] = []
    for node in nodes_data:
        node_id = node["id"]
        specs.append(
            {
                "id": node_id,
                "pos": (float(node.get("x", 0.0)), float(node.get("y", 0.0))),
                "data": {"content": node.get("label", "")},
                "node_type": "default",
                "source_position": _most_common(outgoing[node_id], "bottom"),
                "target_position": _most_common(incoming[node_id], "top"),
                "draggable": False,
                "style": _node_style(node),
            }
        )
    return specs


def to_flow_edge_specs(edges_data: List[EdgeData]) -> List[Dict[str, Any]]:
    specs: List[Dict[str, Any]] = []
    for edge in edges_data:
        style = edge.get("style", {})
        line_style: Dict[str, str] = {}
        if style.get("strokeColor") not in (None, "", "none"):
            line_style["stroke"] = style["strokeColor"]
        if style.get("dashed") == "1":
            line_style["strokeDasharray"] = "5 5"
        specs.append(
            {
                "id": edge["id"],
                "source": edge["source"],
                "target": edge["target"],
                "label": edge.get("label", ""),
                "animated": style.get("flowAnimation") == "1",
                "edge_type": edge_type(style),
                "style": line_style,
            }
        )
    return specs


def edge_type(style: Dict[str, str]) -> str:
    if style.get("edgeStyle") in ORTHOGONAL_STYLES:
        return "smoothstep" if style.get("rounded") == "1" else "step"
    if style.get("curved") == "1":
        return "default"
    return "straight"


def edge_sides(edge: EdgeData, nodes_by_id: Dict[str, NodeData]) -> Tuple[str, str]:
    style = edge.get("style", {})
    source = nodes_by_id.get(edge["source"])
    target = nodes_by_id.get(edge["target"])
    dx, dy = 0.0, 1.0
    if source is not None and target is not None:
        sx, sy = _center(source)
        tx, ty = _center(target)
        dx, dy = tx - sx, ty - sy

    source_side = _anchor_side(style.get("exitX"), style.get("exitY")) or _side_towards(dx, dy)
    target_side = _anchor_side(style.get("entryX"), style.get("entryY")) or _side_towards(-dx, -dy)
    return source_side, target_side


def _anchor_side(x: Optional[str], y: Optional[str]) -> Optional[str]:
    if x is None or y is None:
        return None
    ax, ay = _to_float(x), _to_float(y)
    if ax <= 0:
        return "left"
    if ax >= 1:
        return "right"
    if ay <= 0:
        return "top"
    if ay >= 1:
        return "bottom"
    return None


def _side_towards(dx: float, dy: float) -> str:
    if abs(dx) > abs(dy):
        return "right" if dx >= 0 else "left"
    return "bottom" if dy >= 0 else "top"


def _most_common(counter: Counter, default: str) -> str:
    if not counter:
        return default
    return counter.most_common(1)[0][0]


def _node_style(node: NodeData) -> Dict[str, str]:
    style = node.get("style", {})
    css: Dict[str, str] = {}
    if node.get("width"):
        css["width"] = f"{node['width']:g}px"
    if node.get("height"):
        css["height"] = f"{node['height']:g}px"
    if style.get("fillColor") not in (None, "", "none"):
        css["backgroundColor"] = style["fillColor"]
    if style.get("strokeColor") not in (None, "", "none"):
        css["border"] = f"1px solid {style['strokeColor']}"
    if "ellipse" in style:
        css["borderRadius"] = "50%"
    elif style.get("rounded") == "1":
        css["borderRadius"] = "8px"
    return css


def _center(node: NodeData) -> Tuple[float, float]:
    return node["x"] + node.get("width", 0.0) / 2.0, node["y"] + node.get("height", 0.0) / 2.0


def _geometry(node: etree._Element) -> Optional[etree._Element]:
    geometry = node.find("mxGeometry")
    if geometry is None:
        geometry = node.find("mxCell/mxGeometry")
    return geometry


def _size(node: etree._Element) -> Tuple[float, float]:
    geometry = _geometry(node)
    if geometry is None:
        return 0.0, 0.0
    return _to_float(geometry.get("width")), _to_float(geometry.get("height"))


def _absolute_position(node_id: str, by_id: Dict[str, etree._Element]) -> Tuple[float, float]:
    # child geometry is relative to its container; stop on cycles
    x, y = 0.0, 0.0
    seen = set()
    current = by_id.get(node_id)
    while current is not None and cell_id(current) not in seen:
        current_id = cell_id(current)
        seen.add(current_id)
        if current_id in SENTINEL_IDS:
            break
        geometry = _geometry(current)
        if geometry is not None:
            x += _to_float(geometry.get("x"))
            y += _to_float(geometry.get("y"))
        current = by_id.get(cell_attr(current, "parent") or "")
    return x, y


def _to_float(value: Optional[str]) -> float:
    try:
        return float(value) if value is not None else 0.0
    except ValueError:
        return 0.0
