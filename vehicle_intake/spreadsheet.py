"""
Type approval workbook import and template export (openpyxl).
"""
from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List

from openpyxl import Workbook, load_workbook

from vehicle_intake.errors import SpreadsheetError
from vehicle_intake.schemas import TypeApprovalRecord

logger = logging.getLogger(__name__)

TEMPLATE_HEADERS = ["ŞUBE ADI", "PROJE ADI", "TİP ONAY", "tip onay seviye", "VARYANT", "VERSİYON", "TİP ONAY NO"]
REQUIRED_FIELD = "approval_number"

HEADER_FIELDS: Dict[str, str] = {
    "sube adi": "branch_name",
    "proje adi": "project_name",
    "tip onay": "approval_type",
    "tip onay seviye": "approval_level",
    "varyant": "variant",
    "versiyon": "version",
    "tip onay no": "approval_number",
}


def normalize_header(value: Any) -> str:
    """Case- and diacritic-insensitive header key ("TİP ONAY NO" -> "tip onay no")."""
    text = unicodedata.normalize("NFKD", str(value if value is not None else ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace("ı", "i").casefold()
    return " ".join(text.split())


def cell_to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value).strip()


@dataclass
class ParsedWorkbook:
    records: List[TypeApprovalRecord] = field(default_factory=list)
    skipped_rows: List[int] = field(default_factory=list)


def parse_type_approval_workbook(data: bytes) -> ParsedWorkbook:
    """
    Read the first sheet: header row first, one record per data row.
    Blank rows and rows without an approval number are skipped.
    """
    try:
        workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise SpreadsheetError(f"Workbook could not be read: {exc}") from exc

    try:
        sheet = workbook.active
        rows = [list(row) for row in sheet.iter_rows(values_only=True)] if sheet is not None else []
    finally:
        workbook.close()

    if len(rows) <= 1:
        raise SpreadsheetError("Workbook is empty or only contains a header row")

    headers = [normalize_header(h) for h in rows[0]]
    missing = [h for h in TEMPLATE_HEADERS if normalize_header(h) not in headers]
    if missing:
        raise SpreadsheetError(f"Missing workbook headers: {', '.join(missing)}")

    parsed = ParsedWorkbook()
    for row_number, row in enumerate(rows[1:], start=2):
        values = [cell_to_str(v) for v in row]
        if not any(values):
            continue
        record: Dict[str, str] = {}
        for index, header in enumerate(headers):
            target = HEADER_FIELDS.get(header)
            if target and index < len(values):
                record[target] = values[index]
        if not record.get(REQUIRED_FIELD):
            logger.warning("Skipping row %s: approval number is missing", row_number)
            parsed.skipped_rows.append(row_number)
            continue
        parsed.records.append(TypeApprovalRecord(**record))

    if not parsed.records:
        raise SpreadsheetError("Workbook has no valid rows (every row needs TİP ONAY NO)")
    logger.info("Parsed %s type approval rows (%s skipped)", len(parsed.records), len(parsed.skipped_rows))
    return parsed


def build_template() -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Tip Onay"
    sheet.append(TEMPLATE_HEADERS)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
