"""Pytest fixtures and shared test configuration.

Fixtures build real documents in memory so that every extractor runs
against the same bytes a caller would upload.

Fixtures:
    - pdf_bytes / make_pdf: single- and multi-page PDFs
    - docx_bytes: Word document with paragraphs and a table
    - xlsx_bytes: workbook with two sheets
    - make_pptx / pptx_bytes: presentations from raw slide XML
    - make_settings / make_coordinator: isolated coordinator setup
"""

import zipfile
from io import BytesIO
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from docx import Document
from openpyxl import Workbook

from docingest.config import Settings
from docingest.services.coordinator import ProcessingCoordinator

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
TXT_MIME = "text/plain"

SLIDE_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<p:sld xmlns:a="http://schemas.openxmlformats.org/drawingml/2006/main" '
    'xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main">'
    "<p:cSld><p:spTree><p:sp><p:txBody>{paragraphs}</p:txBody></p:sp></p:spTree></p:cSld>"
    "</p:sld>"
)


def build_pdf(pages: List[str], title: Optional[str] = None) -> bytes:
    """Assemble a minimal valid PDF with one Helvetica text line per page."""
    page_count = len(pages)
    page_ids = [4 + 2 * i for i in range(page_count)]
    content_ids = [5 + 2 * i for i in range(page_count)]
    info_id = 4 + 2 * page_count

    objects: Dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: f"<< /Type /Pages /Kids [{' '.join(f'{p} 0 R' for p in page_ids)}] /Count {page_count} >>".encode(),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
    }
    for page_id, content_id, text in zip(page_ids, content_ids, pages):
        escaped = text.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        stream = f"BT /F1 12 Tf 72 720 Td ({escaped}) Tj ET".encode("latin-1")
        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
            f"/Resources << /Font << /F1 3 0 R >> >> /Contents {content_id} 0 R >>"
        ).encode()
        objects[content_id] = b"<< /Length %d >>\nstream\n" % len(stream) + stream + b"\nendstream"
    if title:
        objects[info_id] = f"<< /Title ({title}) /Author (Audit Team) >>".encode("latin-1")

    out = bytearray(b"%PDF-1.4\n")
    offsets = {}
    for number in sorted(objects):
        offsets[number] = len(out)
        out += f"{number} 0 obj\n".encode() + objects[number] + b"\nendobj\n"

    xref_pos = len(out)
    size = max(objects) + 1
    out += f"xref\n0 {size}\n".encode()
    out += b"0000000000 65535 f \n"
    for number in range(1, size):
        out += f"{offsets[number]:010d} 00000 n \n".encode()
    trailer = f"<< /Size {size} /Root 1 0 R" + (f" /Info {info_id} 0 R" if title else "") + " >>"
    out += f"trailer\n{trailer}\nstartxref\n{xref_pos}\n%%EOF\n".encode()
    return bytes(out)


def build_pptx(slides: Dict[int, str]) -> bytes:
    """Zip raw slide XML payloads under ppt/slides/slide<N>.xml."""
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("[Content_Types].xml", '<?xml version="1.0"?><Types/>')
        for number, xml in slides.items():
            archive.writestr(f"ppt/slides/slide{number}.xml", xml)
    return buffer.getvalue()


def slide_xml(*paragraphs: str) -> str:
    body = "".join(f"<a:p><a:r><a:t>{text}</a:t></a:r></a:p>" for text in paragraphs)
    return SLIDE_TEMPLATE.format(paragraphs=body)


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    return build_pdf


@pytest.fixture
def pdf_bytes() -> bytes:
    return build_pdf(["Quarterly audit summary for the finance team."], title="Audit Report")


@pytest.fixture
def docx_bytes() -> bytes:
    document = Document()
    document.add_paragraph("Internal controls were reviewed in March.")
    document.add_paragraph("No material weaknesses were identified.")
    table = document.add_table(rows=2, cols=2)
    table.cell(0, 0).text = "Control"
    table.cell(0, 1).text = "Status"
    table.cell(1, 0).text = "Access review"
    table.cell(1, 1).text = "Effective"
    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def xlsx_bytes() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Findings"
    sheet.append(["Id", "Finding", "Severity"])
    sheet.append([1, "Missing approval", "High"])
    sheet.append([2, "Late reconciliation", "Medium"])
    summary = workbook.create_sheet("Summary")
    summary.append(["Total", 2])
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def make_pptx() -> Callable[[Dict[int, str]], bytes]:
    return build_pptx


@pytest.fixture
def pptx_bytes() -> bytes:
    return build_pptx({
        1: slide_xml("Audit kickoff", "Scope and timeline"),
        2: slide_xml("Key findings"),
    })


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Settings isolated to a per-test temp directory; keyword overrides win."""

    def _make(**overrides) -> Settings:
        values = {"TEMP_DIR": str(tmp_path / "secure_temp")}
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
async def make_coordinator(make_settings):
    """Build coordinators and shut them all down after the test."""
    created: List[ProcessingCoordinator] = []

    def _make(store=None, **overrides) -> ProcessingCoordinator:
        coordinator = ProcessingCoordinator(settings=make_settings(**overrides), store=store)
        created.append(coordinator)
        return coordinator

    yield _make

    for coordinator in created:
        await coordinator.shutdown()
