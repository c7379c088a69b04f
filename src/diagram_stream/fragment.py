import re
from typing import List, Optional, Tuple

TAG_RE = re.compile(r"""<(/?)([A-Za-z_][\w:.\-]*)((?:[^<>"']|"[^"]*"|'[^']*')*?)\s*(/?)>""")
PARTIAL_TAG_RE = re.compile(
    r"""</?(?:[A-Za-z_][\w:.\-]*(?:(?:[^<>"']|"[^"]*"|'[^']*')*(?:"[^"]*|'[^']*)?)?)?"""
)
COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
CDATA_RE = re.compile(r"<!\[CDATA\[.*?\]\]>", re.DOTALL)
PROCESSING_RE = re.compile(r"<\?.*?\?>", re.DOTALL)

SCAN_COMPLETE = "complete"
SCAN_INCOMPLETE = "incomplete"
SCAN_MALFORMED = "malformed"

Span = Tuple[int, int]


def extract_complete_cells(text: str) -> str:
    spans = scan_elements(text)
    if not spans:
        return ""
    return text[: spans[-1][1]]


def scan_elements(text: str) -> List[Span]:
    return scan(text)[0]


def scan(text: str) -> Tuple[List[Span], str]:
    source = text or ""
    spans: List[Span] = []
    stack: List[str] = []
    element_start: Optional[int] = None
    pos = 0
    length = len(source)

    while pos < length:
        lt = source.find("<", pos)
        if lt < 0:
            if stack:
                return spans, SCAN_INCOMPLETE
            if source[pos:].strip():
                return spans, SCAN_MALFORMED
            return spans, SCAN_COMPLETE
        if not stack and source[pos:lt].strip():
            return spans, SCAN_MALFORMED

        skipped = _match_non_element(source, lt)
        if skipped is not None:
            if skipped < 0:
                return spans, SCAN_INCOMPLETE
            pos = skipped
            continue

        match = TAG_RE.match(source, lt)
        if match is None:
            if PARTIAL_TAG_RE.fullmatch(source, lt):
                return spans, SCAN_INCOMPLETE
            return spans, SCAN_MALFORMED
        closing, name, _attrs, self_closing = match.groups()

        if closing:
            if self_closing or not stack or stack[-1] != name:
                return spans, SCAN_MALFORMED
            stack.pop()
            pos = match.end()
            if not stack and element_start is not None:
                spans.append((element_start, pos))
                element_start = None
            continue

        if not stack:
            element_start = lt
        if self_closing:
            pos = match.end()
            if not stack:
                spans.append((lt, pos))
                element_start = None
            continue

        stack.append(name)
        pos = match.end()

    if stack:
        return spans, SCAN_INCOMPLETE
    return spans, SCAN_COMPLETE


def _match_non_element(source: str, lt: int) -> Optional[int]:
    # end of comment/CDATA/PI, -1 while unterminated, None for anything else
    head = source[lt : lt + 9]
    if head.startswith("<!--"):
        match = COMMENT_RE.match(source, lt)
        return match.end() if match else -1
    if head.startswith("<![CDATA["):
        match = CDATA_RE.match(source, lt)
        return match.end() if match else -1
    if head.startswith("<?"):
        match = PROCESSING_RE.match(source, lt)
        return match.end() if match else -1
    if len(head) < 9 and head != "<" and ("<!--".startswith(head) or "<![CDATA[".startswith(head)):
        return -1
    return None


def is_fragment_complete(text: str) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    spans, status = scan(stripped)
    return status == SCAN_COMPLETE and bool(spans)


def is_truncated(text: str) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    return scan(stripped)[1] == SCAN_INCOMPLETE


def count_complete_cells(text: str) -> int:
    return len(scan_elements(text))
