import re

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_text_preserving_line_breaks(raw_text: str) -> str:
    """Strip tags and control characters; keep one line per non-empty input line."""
    if not isinstance(raw_text, str):
        return ""

    text = _TAG_RE.sub(" ", raw_text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_RE.sub(" ", text)
    lines = [_WHITESPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    return "\n".join(line for line in lines if line).strip()


def sanitize_text(raw_text: str) -> str:
    return _WHITESPACE_RE.sub(" ", sanitize_text_preserving_line_breaks(raw_text)).strip()
