"""
Neutralizes markup-injection patterns in extracted text.

Patterns are replaced with inert markers rather than deleted so that the
surrounding layout (and therefore chunk boundaries) stays intact. Running
the sanitizer on its own output is a no-op.
"""

import logging
import re
from typing import Optional

from docingest.errors import ContentRejectedError

logger = logging.getLogger(__name__)

EVENT_HANDLER_PATTERN = re.compile(
    r"\bon(?:abort|afterprint|animation\w*|beforeprint|beforeunload|blur|canplay\w*|change|"
    r"click|contextmenu|copy|cut|dblclick|drag\w*|drop|error|focus\w*|hashchange|input|"
    r"invalid|key(?:down|press|up)|load\w*|message|mouse\w*|offline|online|pagehide|"
    r"pageshow|paste|pointer\w*|popstate|reset|resize|scroll|search|select|start|"
    r"storage|submit|toggle|touch\w*|transition\w*|unload|wheel)\s*=",
    re.IGNORECASE,
)

SCRIPT_MARKER = "[SCRIPT_REMOVED]"
JAVASCRIPT_MARKER = "[JAVASCRIPT_REMOVED]"
VBSCRIPT_MARKER = "[VBSCRIPT_REMOVED]"
EVENT_HANDLER_MARKER = "[EVENT_HANDLER_REMOVED]"

# Opening or closing script tag; attributes bounded so an unterminated tag
# cannot swallow the rest of the text.
SCRIPT_TAG_PATTERN = re.compile(r"<(/?)script\b[^>]{0,1024}>?", re.IGNORECASE)

_REPLACEMENTS = [
    (re.compile(r"javascript\s*:", re.IGNORECASE), JAVASCRIPT_MARKER),
    (re.compile(r"vbscript\s*:", re.IGNORECASE), VBSCRIPT_MARKER),
    (EVENT_HANDLER_PATTERN, EVENT_HANDLER_MARKER),
]

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

SUSPICIOUS_PATTERNS = [
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript\s*:", re.IGNORECASE),
    re.compile(r"vbscript\s*:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
    EVENT_HANDLER_PATTERN,
]


def replace_script_tags(text: str) -> str:
    """
    Replace each script block, and each stray script tag, with one marker.

    A block runs from an opening tag to the first closing tag after it.
    Tags are found in a single scan, so the cost stays linear in the text
    length however many tags are left unclosed.
    """
    tags = list(SCRIPT_TAG_PATTERN.finditer(text))
    if not tags:
        return text

    # Index of the first closing tag at or after each tag
    next_close: list[Optional[int]] = [None] * len(tags)
    upcoming = None
    for i in range(len(tags) - 1, -1, -1):
        if tags[i].group(1):
            upcoming = i
        next_close[i] = upcoming

    parts = []
    pos = 0
    i = 0
    while i < len(tags):
        last = next_close[i]
        if last is None:
            last = i
        parts.append(text[pos:tags[i].start()])
        parts.append(SCRIPT_MARKER)
        pos = tags[last].end()
        i = last + 1
    parts.append(text[pos:])
    return "".join(parts)


def sanitize_content(text: str) -> str:
    """Replace injection patterns with markers and drop control characters."""
    if not text:
        return ""
    # Control characters go first so they cannot hide a pattern from the substitutions.
    text = _CONTROL_CHARS.sub("", text)
    text = replace_script_tags(text)
    for pattern, marker in _REPLACEMENTS:
        text = pattern.sub(marker, text)
    return text.strip()


def find_suspicious_patterns(text: str) -> list[str]:
    """Return the source of every suspicious pattern present in text."""
    return [p.pattern for p in SUSPICIOUS_PATTERNS if p.search(text)]


class ContentSanitizer:
    """Sanitize, then re-scan; reject content that still looks hostile."""

    def sanitize(self, text: str) -> str:
        """
        Sanitize extracted text.

        Raises:
            ContentRejectedError: If suspicious patterns survive substitution
        """
        cleaned = sanitize_content(text)
        remaining = find_suspicious_patterns(cleaned)
        if remaining:
            logger.warning(f"Suspicious content survived sanitization: {remaining}")
            raise ContentRejectedError("Extracted content contains potentially harmful patterns")
        return cleaned
