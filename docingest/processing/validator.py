"""
Upload validation performed before any extractor sees the bytes.

Checks, in order:
- non-empty buffer within the size limit
- safe file name (no traversal, control characters or reserved device names)
- supported declared MIME type
- leading bytes match the declared type's magic number
- no script/URI/event-handler markers in the first bytes of the file

Any failure raises ValidationError; there is no partial acceptance.
"""

import logging
import re

from docingest.errors import ValidationError
from docingest.processing.formats import DocumentFormat
from docingest.processing.sanitizer import EVENT_HANDLER_PATTERN

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 50 * 1024 * 1024
MAX_FILE_NAME_LENGTH = 255
SCAN_BYTES = 10_000

_INVALID_NAME_CHARS = re.compile(r'[<>:"|?*\x00-\x1f\x7f/\\]')
_RESERVED_NAMES = re.compile(r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])$", re.IGNORECASE)

MALICIOUS_PATTERNS = [
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"%3Cscript", re.IGNORECASE),
    EVENT_HANDLER_PATTERN,
]


def is_valid_file_name(file_name: str) -> bool:
    """Return True if the name is safe to use as a single path component."""
    if not file_name or len(file_name) > MAX_FILE_NAME_LENGTH:
        return False
    if ".." in file_name or _INVALID_NAME_CHARS.search(file_name):
        return False
    stem = file_name.split(".")[0]
    return not _RESERVED_NAMES.match(stem)


def sanitize_file_name(file_name: str) -> str:
    """Reduce a file name to a display-safe form for results and logs."""
    return re.sub(r"[^a-zA-Z0-9._-]", "_", file_name or "")[:100]


def check_signature(content: bytes, fmt: DocumentFormat) -> None:
    """
    Verify the file's leading bytes against the declared format.

    Raises:
        ValidationError: If the magic number does not match
    """
    expected = fmt.signature
    if expected is None:
        return
    if content[:len(expected)] != expected:
        raise ValidationError(
            "File signature does not match declared MIME type. File may be corrupted or spoofed."
        )


def scan_for_malicious_content(content: bytes, scan_bytes: int = SCAN_BYTES) -> None:
    """
    Look for script injection markers in the head of the file.

    Raises:
        ValidationError: If a blacklisted pattern is present
    """
    head = content[:scan_bytes].decode("utf-8", errors="ignore")
    for pattern in MALICIOUS_PATTERNS:
        if pattern.search(head):
            logger.warning(f"Potentially malicious content detected (pattern {pattern.pattern!r})")
            raise ValidationError("File contains potentially malicious content and cannot be processed.")


class FileValidator:
    """Fail-closed gate in front of the extractors."""

    def __init__(self, max_file_size: int = MAX_FILE_SIZE, scan_bytes: int = SCAN_BYTES):
        self.max_file_size = max_file_size
        self.scan_bytes = scan_bytes

    def validate(self, content: bytes, file_name: str, mime_type: str) -> DocumentFormat:
        """
        Run every upload check.

        Args:
            content: Raw file bytes
            file_name: Name declared by the uploader
            mime_type: MIME type declared by the uploader

        Returns:
            The document format to extract with

        Raises:
            ValidationError: On the first failed check
        """
        if not content:
            raise ValidationError("Empty file provided")

        if len(content) > self.max_file_size:
            size_mb = len(content) / (1024 * 1024)
            limit_mb = self.max_file_size / (1024 * 1024)
            raise ValidationError(f"File too large: {size_mb:.2f}MB. Maximum: {limit_mb:.0f}MB")

        if not is_valid_file_name(file_name):
            raise ValidationError(
                "Invalid file name. File names cannot contain path separators or special characters."
            )

        fmt = DocumentFormat.from_mime_type(mime_type)
        if fmt is None:
            raise ValidationError(f"Unsupported file type: {mime_type}")

        check_signature(content, fmt)
        scan_for_malicious_content(content, self.scan_bytes)

        logger.debug(f"Validated {sanitize_file_name(file_name)} as {fmt.value} ({len(content)} bytes)")
        return fmt
