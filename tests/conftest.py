from pathlib import Path

import pytest
from docx import Document
from openpyxl import Workbook
from pypdf import PdfWriter

from mailmerge_engine import ConversionError


@pytest.fixture
def io_dirs(tmp_path: Path):
    input_dir = tmp_path / "input"
    output_dir = tmp_path / "output"
    input_dir.mkdir(parents=True, exist_ok=True)
    output_dir.mkdir(parents=True, exist_ok=True)
    return input_dir, output_dir


@pytest.fixture
def make_docx(tmp_path: Path):
    """
    Build a .docx where every paragraph is either a plain string (one run)
    or a list of strings (one run per item).
    """
    def _make(filename: str, paragraphs) -> Path:
        path = tmp_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        document = Document()
        for paragraph in paragraphs:
            if isinstance(paragraph, str):
                document.add_paragraph(paragraph)
                continue
            target = document.add_paragraph()
            for run_text in paragraph:
                target.add_run(run_text)
        document.save(path)
        return path

    return _make


@pytest.fixture
def make_xlsx(tmp_path: Path):
    def _make(filename: str, rows) -> Path:
        path = tmp_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        workbook = Workbook()
        sheet = workbook.active
        for row in rows:
            sheet.append(list(row))
        workbook.save(path)
        return path

    return _make


@pytest.fixture
def read_paragraphs():
    def _read(path) -> list:
        return [paragraph.text for paragraph in Document(str(path)).paragraphs]

    return _read


@pytest.fixture
def patch_pdf_converter(monkeypatch):
    def _patch(fail_contains: str = "", available: bool = True):
        calls = []

        class FakePdfConverter:
            def __init__(self, soffice_path=None, timeout_seconds=120):
                self.soffice_path = soffice_path
                self.timeout_seconds = timeout_seconds

            def is_available(self):
                if available:
                    return True, ""
                return False, "soffice missing"

            def convert(self, source_path: str, output_dir: str) -> str:
                calls.append(source_path)
                if fail_contains and fail_contains in Path(source_path).name:
                    raise ConversionError(
                        "PDF conversion error, libreoffice returned exitcode 1",
                        exit_code=1,
                    )
                output_path = Path(output_dir) / (Path(source_path).stem + ".pdf")
                writer = PdfWriter()
                writer.add_blank_page(width=72, height=72)
                with output_path.open("wb") as handle:
                    writer.write(handle)
                return str(output_path)

        monkeypatch.setattr("mailmerge_engine.LibreOfficePdfConverter", FakePdfConverter)
        return calls

    return _patch
