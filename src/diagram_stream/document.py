import re
from typing import Dict, List, Optional

from lxml import etree

from .errors import DiagramParseError

ROOT_CELL_ID = "0"
DEFAULT_LAYER_ID = "1"
SENTINEL_IDS = (ROOT_CELL_ID, DEFAULT_LAYER_ID)

EMPTY_DOCUMENT = (
    '<mxfile><diagram name="Page-1" id="page-1"><mxGraphModel><root>'
    '<mxCell id="0"/><mxCell id="1" parent="0"/>'
    "</root></mxGraphModel></diagram></mxfile>"
)

ENVELOPE_TAGS = ("mxfile", "diagram", "mxGraphModel", "root")
CELL_TAG = "mxCell"
CELL_ATTRIBUTES = {"parent", "source", "target", "vertex", "edge"}

_XML_DECLARATION_RE = re.compile(r"^\s*<\?xml[^>]*\?>", re.IGNORECASE)


def _make_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)


def parse_element(xml: str) -> etree._Element:
    text = _XML_DECLARATION_RE.sub("", xml or "").strip()
    if not text:
        text = EMPTY_DOCUMENT
    try:
        return etree.fromstring(text, _make_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise DiagramParseError(f"Document is not well-formed XML: {exc}") from exc


def load_tree(xml: str) -> etree._Element:
    return wrap_envelope(parse_element(xml))


def wrap_envelope(element: etree._Element) -> etree._Element:
    tag = element.tag
    if tag == "mxfile":
        diagram = element.find("diagram")
        if diagram is None:
            diagram = etree.SubElement(element, "diagram", name="Page-1", id="page-1")
        if diagram.find("mxGraphModel") is None:
            if (diagram.text or "").strip():
                raise DiagramParseError("Compressed diagram pages are not supported.")
            etree.SubElement(diagram, "mxGraphModel")
        model = diagram.find("mxGraphModel")
        if model.find("root") is None:
            etree.SubElement(model, "root")
        return element
    if tag == "diagram":
        mxfile = etree.Element("mxfile")
        mxfile.append(element)
        return wrap_envelope(mxfile)
    if tag == "mxGraphModel":
        mxfile = etree.Element("mxfile")
        diagram = etree.SubElement(mxfile, "diagram", name="Page-1", id="page-1")
        diagram.append(element)
        return wrap_envelope(mxfile)
    if tag == "root":
        model = etree.Element("mxGraphModel")
        model.append(element)
        return wrap_envelope(model)
    raise DiagramParseError(f"Unexpected document element <{tag}>.")


def dump_tree(tree: etree._Element) -> str:
    return etree.tostring(tree, encoding="unicode")


def ensure_document(xml: str) -> str:
    return dump_tree(load_tree(xml))


def is_enveloped(element: etree._Element) -> bool:
    return element.tag == "mxfile" and element.find("diagram/mxGraphModel/root") is not None


def find_cell_root(tree: etree._Element) -> etree._Element:
    root = tree.find("diagram/mxGraphModel/root")
    if root is None:
        raise DiagramParseError("Document has no <root> element.")
    return root


def node_elements(root: etree._Element) -> List[etree._Element]:
    return [child for child in root if isinstance(child.tag, str)]


def parse_cells(fragment: str) -> List[etree._Element]:
    text = _XML_DECLARATION_RE.sub("", fragment or "").strip()
    if not text:
        return []
    try:
        holder = etree.fromstring(f"<root>{text}</root>", _make_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise DiagramParseError(f"Fragment is not well-formed XML: {exc}") from exc
    if isinstance(holder.text, str) and holder.text.strip():
        raise DiagramParseError("Fragment contains text outside of elements.")
    children = node_elements(holder)
    for child in children:
        if isinstance(child.tail, str) and child.tail.strip():
            raise DiagramParseError("Fragment contains text outside of elements.")
    if len(children) == 1 and children[0].tag in ENVELOPE_TAGS:
        return node_elements(find_cell_root(wrap_envelope(children[0])))
    return children


def _nested_cell(node: etree._Element) -> Optional[etree._Element]:
    if node.tag == CELL_TAG:
        return None
    return node.find(CELL_TAG)


def cell_id(node: etree._Element) -> str:
    return node.get("id") or ""


def cell_attr(node: etree._Element, name: str) -> Optional[str]:
    value = node.get(name)
    if value is not None:
        return value
    nested = _nested_cell(node)
    if nested is not None and name in CELL_ATTRIBUTES:
        return nested.get(name)
    return None


def set_cell_attr(node: etree._Element, name: str, value: str) -> None:
    nested = _nested_cell(node)
    if nested is not None and name in CELL_ATTRIBUTES and node.get(name) is None:
        nested.set(name, value)
        return
    node.set(name, value)


def remove_cell_attr(node: etree._Element, name: str) -> None:
    if name in node.attrib:
        del node.attrib[name]
    nested = _nested_cell(node)
    if nested is not None and name in nested.attrib:
        del nested.attrib[name]


def is_edge(node: etree._Element) -> bool:
    if cell_attr(node, "edge") == "1":
        return True
    return cell_attr(node, "source") is not None or cell_attr(node, "target") is not None


def make_sentinels() -> List[etree._Element]:
    return [
        etree.Element(CELL_TAG, id=ROOT_CELL_ID),
        etree.Element(CELL_TAG, id=DEFAULT_LAYER_ID, parent=ROOT_CELL_ID),
    ]


def cell_ids(xml: str) -> List[str]:
    return [cell_id(node) for node in node_elements(find_cell_root(load_tree(xml)))]


def summarize_cells(xml: str) -> List[Dict[str, str]]:
    summaries: List[Dict[str, str]] = []
    for node in node_elements(find_cell_root(load_tree(xml))):
        summaries.append(
            {
                "id": cell_id(node),
                "tag": str(node.tag),
                "parent": cell_attr(node, "parent") or "",
                "source": cell_attr(node, "source") or "",
                "target": cell_attr(node, "target") or "",
                "value": node.get("value") or node.get("label") or "",
                "kind": "edge" if is_edge(node) else ("vertex" if cell_attr(node, "vertex") == "1" else "cell"),
            }
        )
    return summaries
