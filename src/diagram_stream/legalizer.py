import re
from typing import List, Optional, Tuple

from .fragment import _match_non_element

TAG_RE = re.compile(r"""<(/?)([A-Za-z_][\w:.\-]*)((?:[^<>"']|"[^"]*"|'[^']*')*?)\s*(/?)>""")
LOOSE_TAG_RE = re.compile(r"<(/?)([A-Za-z_][\w:.\-]*)([^<>]*?)\s*(/?)>")
ATTR_START_RE = re.compile(r"""\s*([A-Za-z_][\w:.\-]*)\s*=\s*(["'])""")
UNQUOTED_ATTR_RE = re.compile(r"""\s*([A-Za-z_][\w:.\-]*)\s*=\s*([^\s"'<>/=]+)""")
BARE_AMPERSAND_RE = re.compile(r"&(?!(?:[A-Za-z][\w.\-]*|#\d+|#[xX][0-9A-Fa-f]+);)")
CODE_FENCE_OPEN_RE = re.compile(r"^\s*```[\w\-]*[ \t]*\n?")
CODE_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")

_ILLEGAL_CONTROL_CHARS = "".join(chr(c) for c in range(0x20) if c not in (0x09, 0x0A, 0x0D))
_CONTROL_TABLE = str.maketrans("", "", _ILLEGAL_CONTROL_CHARS)


def legalize_xml(text: str) -> str:
    cleaned = clean_edges(text)
    if not cleaned:
        return ""

    parts: List[str] = []
    pos = 0
    length = len(cleaned)
    while pos < length:
        lt = cleaned.find("<", pos)
        if lt < 0:
            parts.append(escape_text(cleaned[pos:]))
            break
        parts.append(escape_text(cleaned[pos:lt]))

        skipped = _match_non_element(cleaned, lt)
        if skipped is not None and skipped > 0:
            parts.append(cleaned[lt:skipped])
            pos = skipped
            continue

        match = TAG_RE.match(cleaned, lt) or LOOSE_TAG_RE.match(cleaned, lt)
        if match is None:
            parts.append("&lt;")
            pos = lt + 1
            continue
        parts.append(_legalize_tag(match))
        pos = match.end()
    return "".join(parts)


def clean_edges(text: str) -> str:
    if not text:
        return ""
    cleaned = strip_code_fences(text).translate(_CONTROL_TABLE)
    return _trim_stray_edges(cleaned)


def strip_code_fences(text: str) -> str:
    stripped = text.strip()
    if not stripped.startswith("```"):
        return text
    stripped = CODE_FENCE_OPEN_RE.sub("", stripped, count=1)
    return CODE_FENCE_CLOSE_RE.sub("", stripped, count=1)


def escape_text(text: str) -> str:
    if not text:
        return ""
    escaped = BARE_AMPERSAND_RE.sub("&amp;", text)
    return escaped.replace("<", "&lt;").replace(">", "&gt;")


def escape_attribute_value(value: str, quote: str) -> str:
    escaped = escape_text(value)
    if quote == '"':
        return escaped.replace('"', "&quot;")
    return escaped.replace("'", "&apos;")


def _trim_stray_edges(text: str) -> str:
    first = text.find("<")
    if first < 0:
        return ""
    text = text[first:]
    last = text.rfind(">")
    if last < 0:
        return text
    if "<" not in text[last + 1 :]:
        text = text[: last + 1]
    return text


def _legalize_tag(match: "re.Match[str]") -> str:
    closing, name, body, self_closing = match.groups()
    if closing:
        return f"</{name}>"
    attributes, changed = _legalize_attributes(body)
    if not changed:
        return match.group(0)
    rendered = "".join(f" {attr_name}={quote}{value}{quote}" for attr_name, quote, value in attributes)
    return f"<{name}{rendered}{'/' if self_closing else ''}>"


def _legalize_attributes(body: str) -> Tuple[List[Tuple[str, str, str]], bool]:
    attributes: List[Tuple[str, str, str]] = []
    changed = False
    pos = 0
    length = len(body)
    while pos < length:
        if not body[pos:].strip():
            break
        start = ATTR_START_RE.match(body, pos)
        if start is not None:
            attr_name, quote = start.group(1), start.group(2)
            value_start = start.end()
            value_end = _find_value_end(body, value_start, quote)
            if value_end is None:
                raw_value = body[value_start:]
                pos = length
                changed = True
            else:
                raw_value = body[value_start:value_end]
                pos = value_end + 1
            value = escape_attribute_value(raw_value, quote)
            if value != raw_value:
                changed = True
            attributes.append((attr_name, quote, value))
            continue
        unquoted = UNQUOTED_ATTR_RE.match(body, pos)
        if unquoted is not None:
            attributes.append((unquoted.group(1), '"', escape_attribute_value(unquoted.group(2), '"')))
            pos = unquoted.end()
            changed = True
            continue
        # stray character between attributes
        pos += 1
        changed = True
    return attributes, changed


def _find_value_end(body: str, value_start: int, quote: str) -> Optional[int]:
    closing = re.compile(re.escape(quote) + r"""(?=\s*[A-Za-z_][\w:.\-]*\s*=\s*["']|\s*$)""")
    match = closing.search(body, value_start)
    if match is None:
        return None
    return match.start()
