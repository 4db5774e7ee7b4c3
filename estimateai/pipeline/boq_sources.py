"""
Readers that turn tabular BOQ files into row text.

Spreadsheets and text-layer PDFs are read locally so that very large
bills can be split into bounded model calls. Anything else goes to the
model as an uploaded document.
"""

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import openpyxl
import pdfplumber
import structlog

logger = structlog.get_logger(__name__)

SPREADSHEET_SUFFIXES = {".xlsx", ".xlsm"}
CSV_SUFFIXES = {".csv"}
PDF_SUFFIXES = {".pdf"}

# A PDF page needs at least this many characters to count as having a text layer.
MIN_PDF_TEXT_CHARS = 40


@dataclass
class BoqRow:
    row_index: int
    text: str


@dataclass
class BoqSheet:
    name: str
    rows: list[BoqRow] = field(default_factory=list)


def _row_text(values) -> str:
    cells = ["" if v is None else str(v).strip() for v in values]
    while cells and not cells[-1]:
        cells.pop()
    return " | ".join(cells)


def read_csv(path: Path) -> list[BoqSheet]:
    sheet = BoqSheet(name=path.stem)
    with path.open(newline="", encoding="utf-8-sig", errors="replace") as fh:
        for index, values in enumerate(csv.reader(fh), start=1):
            text = _row_text(values)
            if text.replace("|", "").strip():
                sheet.rows.append(BoqRow(row_index=index, text=text))
    return [sheet] if sheet.rows else []


def read_workbook(path: Path) -> list[BoqSheet]:
    workbook = openpyxl.load_workbook(path, read_only=True, data_only=True)
    sheets: list[BoqSheet] = []
    try:
        for ws in workbook.worksheets:
            sheet = BoqSheet(name=ws.title)
            for index, values in enumerate(ws.iter_rows(values_only=True), start=1):
                text = _row_text(values)
                if text.replace("|", "").strip():
                    sheet.rows.append(BoqRow(row_index=index, text=text))
            if sheet.rows:
                sheets.append(sheet)
    finally:
        workbook.close()
    return sheets


def read_pdf_text(path: Path) -> list[BoqSheet]:
    """One sheet per page; empty if the PDF has no usable text layer."""
    sheets: list[BoqSheet] = []
    with pdfplumber.open(str(path)) as pdf:
        for page_index, page in enumerate(pdf.pages, start=1):
            text = page.extract_text() or ""
            if len(text.strip()) < MIN_PDF_TEXT_CHARS:
                logger.info("boq_pdf_no_text_layer", path=str(path), page=page_index)
                return []
            sheet = BoqSheet(name=f"Page {page_index}")
            for line_index, line in enumerate(text.splitlines(), start=1):
                if line.strip():
                    sheet.rows.append(BoqRow(row_index=line_index, text=line.strip()))
            sheets.append(sheet)
    return sheets


def read_boq_sheets(path: str) -> Optional[list[BoqSheet]]:
    """
    Read a BOQ file into sheets of row text.

    Returns None when the format must be sent to the model as a document
    (images, scanned PDFs, unknown formats).
    """
    p = Path(path)
    suffix = p.suffix.lower()
    if suffix in CSV_SUFFIXES:
        sheets = read_csv(p)
    elif suffix in SPREADSHEET_SUFFIXES:
        sheets = read_workbook(p)
    elif suffix in PDF_SUFFIXES:
        try:
            sheets = read_pdf_text(p)
        except Exception as e:
            # Unreadable locally; the model may still read it as a document.
            logger.warning("boq_pdf_unreadable", path=str(p), error=str(e))
            return None
    else:
        return None

    if not sheets:
        return None
    logger.info(
        "boq_sheets_read",
        path=str(p),
        sheets=len(sheets),
        rows=sum(len(s.rows) for s in sheets),
    )
    return sheets
