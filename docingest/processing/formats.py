"""Supported document formats and their MIME types and file signatures."""

from enum import Enum
from typing import Dict, Optional

ZIP_SIGNATURE = b"PK\x03\x04"
PDF_SIGNATURE = b"%PDF"


class DocumentFormat(str, Enum):
    """Closed set of formats the pipeline can extract."""

    PDF = "pdf"
    DOCX = "docx"
    XLSX = "xlsx"
    PPTX = "pptx"
    TXT = "txt"

    @property
    def mime_type(self) -> str:
        return _FORMAT_TO_MIME[self]

    @property
    def signature(self) -> Optional[bytes]:
        """Magic number expected at offset 0, or None when not checked."""
        return _SIGNATURES[self]

    @classmethod
    def from_mime_type(cls, mime_type: str) -> Optional["DocumentFormat"]:
        if not mime_type:
            return None
        return _MIME_TO_FORMAT.get(mime_type.split(";")[0].strip().lower())


MIME_TYPES: Dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": DocumentFormat.XLSX,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": DocumentFormat.PPTX,
    "text/plain": DocumentFormat.TXT,
}

_MIME_TO_FORMAT = dict(MIME_TYPES)
_FORMAT_TO_MIME = {fmt: mime for mime, fmt in MIME_TYPES.items()}

_SIGNATURES: Dict[DocumentFormat, Optional[bytes]] = {
    DocumentFormat.PDF: PDF_SIGNATURE,
    DocumentFormat.DOCX: ZIP_SIGNATURE,
    DocumentFormat.XLSX: ZIP_SIGNATURE,
    DocumentFormat.PPTX: ZIP_SIGNATURE,
    DocumentFormat.TXT: None,
}


def supported_mime_types() -> list[str]:
    return list(MIME_TYPES)
