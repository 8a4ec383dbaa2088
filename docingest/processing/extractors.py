"""
Text extraction from untrusted documents.

Supports:
- PDF files (pypdf)
- DOCX files (python-docx)
- XLSX files (openpyxl, read-only mode)
- PPTX files (zipfile + lxml, hardened parser and bounded tree walk)
- Plain text files

Every extractor caps the number of units it reads (pages, sheets, slides),
skips a unit that fails with a warning instead of failing the document,
and normalizes its output the same way (line endings, control characters,
whitespace, global length limit).
"""

import csv
import io
import logging
import math
import re
import threading
import zipfile
import zlib
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple, Type

from docx import Document
from lxml import etree
from openpyxl import load_workbook
from pydantic import BaseModel
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from docingest.errors import ExtractionError
from docingest.processing.formats import DocumentFormat
from docingest.processing.models import ExtractionResult

logger = logging.getLogger(__name__)

# Container (ZIP) guards
MAX_CONTAINER_ENTRIES = 10_000
MAX_CONTAINER_ENTRY_SIZE = 50 * 1024 * 1024
MAX_CONTAINER_TOTAL_SIZE = 200 * 1024 * 1024
MAX_COMPRESSION_RATIO = 200
COMPRESSION_RATIO_MIN_SIZE = 1024 * 1024

# Presentation tree walk bounds
MAX_XML_DEPTH = 10
MAX_XML_CHILDREN = 200
MAX_XML_TEXT_NODE = 1000
MAX_XML_NODES = 100_000

PDF_METADATA_KEYS = {
    "/Title": "title",
    "/Author": "author",
    "/Subject": "subject",
    "/Creator": "creator",
    "/Producer": "producer",
    "/CreationDate": "creation_date",
}
MAX_METADATA_VALUE = 200
CHARS_PER_ESTIMATED_PAGE = 2000
BINARY_SNIFF_BYTES = 1000
TEXT_ENCODINGS = ["utf-8", "cp1252", "latin-1"]

_SLIDE_NAME = re.compile(r"^ppt/slides/slide(\d+)\.xml$")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_UNSAFE_XML = re.compile(rb"<!(DOCTYPE|ENTITY)", re.IGNORECASE)


class ExtractionLimits(BaseModel):
    """Per-format bounds applied during extraction."""

    max_text_length: int = 10 * 1024 * 1024
    max_pdf_pages: int = 1000
    max_sheets: int = 50
    max_sheet_rows: int = 10_000
    max_sheet_chars: int = 100_000
    max_slides: int = 500
    max_slide_chars: int = 10_000

    @classmethod
    def from_settings(cls, settings) -> "ExtractionLimits":
        return cls(
            max_text_length=settings.MAX_TEXT_LENGTH,
            max_pdf_pages=settings.MAX_PDF_PAGES,
            max_sheets=settings.MAX_SHEETS,
            max_sheet_rows=settings.MAX_SHEET_ROWS,
            max_sheet_chars=settings.MAX_SHEET_CHARS,
            max_slides=settings.MAX_SLIDES,
            max_slide_chars=settings.MAX_SLIDE_CHARS,
        )


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def clean_extracted_text(text: str, max_length: int) -> Tuple[str, bool]:
    """
    Normalize extracted text.

    Args:
        text: Raw extracted text
        max_length: Global character limit

    Returns:
        Tuple of (clean text, whether it was truncated)
    """
    if not text:
        return "", False

    truncated = False
    if len(text) > max_length:
        logger.warning(f"Text truncated from {len(text)} to {max_length} characters")
        text = text[:max_length]
        truncated = True

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r"[ \t]{2,}", " ", text)
    text = re.sub(r"^[ \t]+|[ \t]+$", "", text, flags=re.MULTILINE)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip(), truncated


def sanitize_metadata(info: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Keep an allow-listed, length-capped subset of document metadata."""
    sanitized: Dict[str, str] = {}
    if not info:
        return sanitized
    for key, name in PDF_METADATA_KEYS.items():
        try:
            value = info.get(key)
        except Exception as e:
            logger.warning(f"Failed to read metadata field {key}: {e}")
            continue
        if value is None:
            continue
        value = str(value).strip()
        if value:
            sanitized[name] = value[:MAX_METADATA_VALUE]
    return sanitized


def sanitize_sheet_name(name: str) -> str:
    return re.sub(r"[<>:\"']", "", str(name))[:50]


def check_container(content: bytes) -> None:
    """
    Reject ZIP containers that are corrupt or look like decompression bombs.

    Raises:
        ExtractionError: If the archive is unreadable or exceeds a size guard
    """
    try:
        with zipfile.ZipFile(BytesIO(content)) as archive:
            infos = archive.infolist()
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as e:
        raise ExtractionError(f"Invalid ZIP container: {e}") from e

    if len(infos) > MAX_CONTAINER_ENTRIES:
        raise ExtractionError(f"Container has too many entries ({len(infos)})")

    total = 0
    for info in infos:
        if info.file_size > MAX_CONTAINER_ENTRY_SIZE:
            raise ExtractionError(f"Container entry {info.filename!r} is too large when decompressed")
        if (
            info.file_size > COMPRESSION_RATIO_MIN_SIZE
            and info.compress_size > 0
            and info.file_size / info.compress_size > MAX_COMPRESSION_RATIO
        ):
            raise ExtractionError(f"Suspicious compression ratio for container entry {info.filename!r}")
        total += info.file_size
        if total > MAX_CONTAINER_TOTAL_SIZE:
            raise ExtractionError("Container exceeds the total decompressed size limit")


class TextExtractor:
    """
    Base class for format extractors.

    Subclasses set ``format`` and implement ``_extract_raw`` returning the
    raw text, the processed/total unit counts and format metadata.
    """

    format: DocumentFormat

    def __init__(self, limits: Optional[ExtractionLimits] = None):
        self.limits = limits or ExtractionLimits()
        self.warnings: List[str] = []

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    @staticmethod
    def _cancelled(cancel: Optional[threading.Event]) -> bool:
        return cancel is not None and cancel.is_set()

    def _extract_raw(
        self, content: bytes, cancel: Optional[threading.Event]
    ) -> Tuple[str, int, int, Dict[str, Any]]:
        raise NotImplementedError

    def extract(self, content: bytes, cancel: Optional[threading.Event] = None) -> ExtractionResult:
        """
        Extract normalized text from document bytes.

        Args:
            content: Raw file bytes
            cancel: Optional event; extraction stops between units once set

        Returns:
            ExtractionResult with clean text and metadata

        Raises:
            ExtractionError: If the document as a whole cannot be read or yields no text
        """
        self.warnings = []
        try:
            raw_text, unit_count, total_units, metadata = self._extract_raw(content, cancel)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"{self.format.value.upper()} extraction failed: {e}") from e

        if self._cancelled(cancel):
            raise ExtractionError(f"{self.format.value.upper()} extraction cancelled")

        text, truncated = clean_extracted_text(raw_text, self.limits.max_text_length)
        if not text:
            raise ExtractionError(f"No text extracted from {self.format.value.upper()}")

        return ExtractionResult(
            text=text,
            format=self.format.value,
            unit_count=unit_count,
            total_units=total_units,
            word_count=count_words(text),
            truncated=truncated,
            processing_limited=total_units > unit_count,
            warnings=list(self.warnings),
            metadata=metadata,
        )


class PdfExtractor(TextExtractor):
    """PDF pages, capped, with allow-listed metadata."""

    format = DocumentFormat.PDF

    def _extract_raw(self, content, cancel):
        try:
            reader = PdfReader(BytesIO(content), strict=False)
        except PdfReadError as e:
            raise ExtractionError(f"Invalid PDF file: {e}") from e

        if reader.is_encrypted:
            try:
                decrypted = reader.decrypt("")
            except Exception as e:
                raise ExtractionError(f"Encrypted PDF cannot be opened: {e}") from e
            if not decrypted:
                raise ExtractionError("PDF is password protected")

        try:
            total_pages = len(reader.pages)
        except PdfReadError as e:
            raise ExtractionError(f"Corrupt PDF page tree: {e}") from e

        max_pages = self.limits.max_pdf_pages
        if total_pages > max_pages:
            logger.warning(f"PDF has {total_pages} pages, processing first {max_pages}")

        processed = min(total_pages, max_pages)
        text_parts = []
        for page_num in range(processed):
            if self._cancelled(cancel):
                break
            try:
                page_text = reader.pages[page_num].extract_text()
                if page_text:
                    text_parts.append(page_text)
            except Exception as e:
                self._warn(f"Failed to extract text from PDF page {page_num + 1}: {e}")
                continue

        try:
            info = reader.metadata
        except Exception as e:
            self._warn(f"Failed to read PDF metadata: {e}")
            info = None

        return "\n\n".join(text_parts), processed, total_pages, {"info": sanitize_metadata(info)}


class DocxExtractor(TextExtractor):
    """Body paragraphs followed by table rows."""

    format = DocumentFormat.DOCX

    def _extract_raw(self, content, cancel):
        check_container(content)
        try:
            doc = Document(BytesIO(content))
        except Exception as e:
            raise ExtractionError(f"Invalid DOCX file: {e}") from e

        text_parts = []
        for para in doc.paragraphs:
            if self._cancelled(cancel):
                break
            if para.text.strip():
                text_parts.append(para.text)

        for table_num, table in enumerate(doc.tables):
            if self._cancelled(cancel):
                break
            try:
                for row in table.rows:
                    row_text = " | ".join(cell.text.strip() for cell in row.cells)
                    if row_text.replace("|", "").strip():
                        text_parts.append(row_text)
            except Exception as e:
                self._warn(f"Failed to read DOCX table {table_num + 1}: {e}")

        text = "\n\n".join(text_parts)
        estimated_pages = max(1, math.ceil(len(text) / CHARS_PER_ESTIMATED_PAGE)) if text else 0
        metadata = {"paragraphs": len(doc.paragraphs), "tables": len(doc.tables)}
        return text, estimated_pages, estimated_pages, metadata


class XlsxExtractor(TextExtractor):
    """Each sheet rendered as CSV under a sheet header."""

    format = DocumentFormat.XLSX

    def _sheet_to_csv(self, worksheet) -> Tuple[str, int]:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        rows = 0
        for values in worksheet.iter_rows(max_row=self.limits.max_sheet_rows, values_only=True):
            rows += 1
            cells = ["" if value is None else str(value) for value in values]
            if not any(cell.strip() for cell in cells):
                continue
            writer.writerow(cells)
            if buffer.tell() > self.limits.max_sheet_chars:
                break
        return buffer.getvalue()[:self.limits.max_sheet_chars], rows

    def _extract_raw(self, content, cancel):
        check_container(content)
        try:
            workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
        except Exception as e:
            raise ExtractionError(f"Invalid XLSX file: {e}") from e

        try:
            sheet_names = list(workbook.sheetnames)
            processed = min(len(sheet_names), self.limits.max_sheets)
            total_rows = 0
            parts = []

            for sheet_name in sheet_names[:processed]:
                if self._cancelled(cancel):
                    break
                try:
                    csv_text, rows = self._sheet_to_csv(workbook[sheet_name])
                except Exception as e:
                    self._warn(f"Failed to read sheet {sanitize_sheet_name(sheet_name)!r}: {e}")
                    continue
                total_rows += rows
                if csv_text.strip():
                    parts.append(f"=== Sheet: {sanitize_sheet_name(sheet_name)} ===\n{csv_text}")
        finally:
            workbook.close()

        metadata = {
            "total_sheets": len(sheet_names),
            "processed_sheets": processed,
            "total_rows": total_rows,
        }
        return "\n\n".join(parts), processed, len(sheet_names), metadata


class PptxExtractor(TextExtractor):
    """Slide text from DrawingML ``a:t`` runs, one line per ``a:p`` paragraph."""

    format = DocumentFormat.PPTX

    @staticmethod
    def _parser() -> etree.XMLParser:
        return etree.XMLParser(
            resolve_entities=False,
            no_network=True,
            load_dtd=False,
            dtd_validation=False,
            huge_tree=False,
            remove_comments=True,
            remove_pis=True,
        )

    def _slide_text(self, root) -> str:
        """Walk the slide tree with an explicit stack and depth counter."""
        limit = self.limits.max_slide_chars
        lines: List[str] = []
        current: List[str] = []
        collected = 0
        visited = 0
        stack = [(root, 0)]

        while stack and collected < limit and visited < MAX_XML_NODES:
            node, depth = stack.pop()
            visited += 1
            if not isinstance(node.tag, str):
                continue
            local = etree.QName(node).localname

            if local == "p" and current:
                lines.append("".join(current))
                current = []
            elif local == "t" and node.text:
                fragment = node.text[:MAX_XML_TEXT_NODE]
                current.append(fragment)
                collected += len(fragment)

            if depth < MAX_XML_DEPTH:
                children = list(node)[:MAX_XML_CHILDREN]
                stack.extend((child, depth + 1) for child in reversed(children))

        if current:
            lines.append("".join(current))
        text = "\n".join(line.strip() for line in lines if line.strip())
        return text[:limit]

    def _extract_raw(self, content, cancel):
        check_container(content)
        try:
            archive = zipfile.ZipFile(BytesIO(content))
        except zipfile.BadZipFile as e:
            raise ExtractionError(f"Invalid PPTX file: {e}") from e

        with archive:
            slides = []
            for name in archive.namelist():
                match = _SLIDE_NAME.match(name)
                if match:
                    slides.append((int(match.group(1)), name))
            slides.sort()

            total_slides = len(slides)
            processed = min(total_slides, self.limits.max_slides)
            parser = self._parser()
            parts = []

            for number, name in slides[:processed]:
                if self._cancelled(cancel):
                    break
                try:
                    payload = archive.read(name)
                    if _UNSAFE_XML.search(payload):
                        self._warn(f"Potentially unsafe XML in slide {number}, skipping")
                        continue
                    root = etree.fromstring(payload, parser)
                    slide_text = self._slide_text(root)
                except (etree.XMLSyntaxError, zipfile.BadZipFile, zlib.error, KeyError, ValueError, RuntimeError) as e:
                    self._warn(f"Could not parse slide {number}: {e}")
                    continue
                if slide_text:
                    parts.append(f"=== Slide {number} ===\n{slide_text}")

        return "\n\n".join(parts), processed, total_slides, {"slides": total_slides}


class PlainTextExtractor(TextExtractor):
    """UTF-8 text, with legacy single-byte encodings as fallback."""

    format = DocumentFormat.TXT

    def _extract_raw(self, content, cancel):
        if b"\x00" in content[:BINARY_SNIFF_BYTES]:
            raise ExtractionError("File appears to be binary, not text")

        for encoding in TEXT_ENCODINGS:
            try:
                text = content.decode(encoding)
            except UnicodeDecodeError:
                continue
            estimated_pages = max(1, math.ceil(len(text) / CHARS_PER_ESTIMATED_PAGE))
            return text, estimated_pages, estimated_pages, {"encoding": encoding}

        raise ExtractionError("Failed to decode text file with any supported encoding")


EXTRACTORS: Dict[DocumentFormat, Type[TextExtractor]] = {
    cls.format: cls
    for cls in (PdfExtractor, DocxExtractor, XlsxExtractor, PptxExtractor, PlainTextExtractor)
}

_missing = set(DocumentFormat) - set(EXTRACTORS)
if _missing:
    raise RuntimeError(f"No extractor registered for: {sorted(f.value for f in _missing)}")


def get_extractor(fmt: DocumentFormat, limits: Optional[ExtractionLimits] = None) -> TextExtractor:
    return EXTRACTORS[fmt](limits)


def extract_document(
    content: bytes,
    fmt: DocumentFormat,
    limits: Optional[ExtractionLimits] = None,
    cancel: Optional[threading.Event] = None,
) -> ExtractionResult:
    """
    Extract text from a document of a known format.

    Args:
        content: File content as bytes
        fmt: Validated document format
        limits: Extraction bounds (defaults apply when omitted)
        cancel: Optional cancellation event

    Returns:
        ExtractionResult

    Raises:
        ExtractionError: If extraction fails
    """
    logger.info(f"Extracting {fmt.value.upper()} content ({len(content)} bytes)")
    result = get_extractor(fmt, limits).extract(content, cancel)
    logger.info(
        f"{fmt.value.upper()} extraction completed: {result.unit_count}/{result.total_units} units, "
        f"{len(result.text)} chars, {len(result.warnings)} warnings"
    )
    return result
