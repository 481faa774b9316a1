"""
Tabular file parsing for contact imports.

Turns an uploaded CSV or XLSX file into an UploadedTable: one header row
plus the data rows, each a mapping of header → trimmed string value.

Row order is preserved; it decides which of two colliding rows counts
as the first occurrence later on.
"""

import csv
import io
import zipfile
from dataclasses import dataclass
from datetime import date, datetime, time
from types import MappingProxyType
from typing import Any, Generator, Mapping

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from app.core.config import settings
from app.services.import_errors import ParseError, ParseErrorKind

XLSX_SIGNATURE = b"PK\x03\x04"
CSV_DELIMITERS = ",;\t|"
MAX_WARNINGS = 20

_EXTENSION_FORMATS = {
    "csv": "csv",
    "txt": "csv",
    "tsv": "csv",
    "xlsx": "xlsx",
    "xlsm": "xlsx",
    "xls": "xlsx",
}


@dataclass(frozen=True)
class UploadedTable:
    """Immutable result of parsing one upload."""
    headers: tuple[str, ...]
    rows: tuple[Mapping[str, str], ...]
    row_numbers: tuple[int, ...]
    source_format: str
    warnings: tuple[str, ...] = ()

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def sample(self, limit: int) -> list[dict[str, str]]:
        """First ``limit`` rows as plain dicts, for display."""
        return [dict(row) for row in self.rows[:limit]]


# ─── Format Detection ─────────────────────────────────────────

def format_from_filename(filename: str | None) -> str | None:
    """'students.XLSX' → 'xlsx'. Unknown or missing extensions give None."""
    if not filename or "." not in filename:
        return None
    return _EXTENSION_FORMATS.get(filename.rsplit(".", 1)[-1].lower())


def detect_format(data: bytes) -> str:
    """XLSX files are ZIP containers; anything else is treated as delimited text."""
    return "xlsx" if data.startswith(XLSX_SIGNATURE) else "csv"


# ─── Entry Point ──────────────────────────────────────────────

def parse(
    data: bytes | str,
    hinted_format: str | None = None,
    *,
    max_rows: int | None = None,
) -> UploadedTable:
    """
    Parse raw upload content into an UploadedTable.

    Raises ParseError:
      - EMPTY: no header row, or a header row with no data rows under it
      - TOO_LARGE: more than ``max_rows`` data rows
      - MALFORMED: corrupt spreadsheet or unreadable delimited text
    """
    limit = max_rows if max_rows is not None else settings.IMPORT_MAX_ROWS
    warnings: list[str] = []

    if isinstance(data, str):
        if hinted_format == "xlsx":
            raise ParseError(ParseErrorKind.MALFORMED, "Spreadsheet content must be binary.")
        source_format = "csv"
        raw_rows = _iter_csv_rows(_clean_text(data, warnings))
    else:
        if not data:
            raise ParseError(ParseErrorKind.EMPTY, "File is empty.")
        source_format = hinted_format or detect_format(data)
        if source_format == "xlsx":
            raw_rows = _iter_xlsx_rows(data)
        else:
            raw_rows = _iter_csv_rows(_decode(data, warnings))

    try:
        return _build_table(raw_rows, source_format, limit, warnings)
    finally:
        raw_rows.close()


# ─── Table Assembly ───────────────────────────────────────────

def _build_table(
    raw_rows: Generator[tuple[int, list[str]], None, None],
    source_format: str,
    max_rows: int,
    warnings: list[str],
) -> UploadedTable:
    headers: tuple[str, ...] | None = None
    rows: list[Mapping[str, str]] = []
    row_numbers: list[int] = []
    truncated = 0

    for row_number, values in raw_rows:
        cells = [v.strip() for v in values]

        # Skip empty rows (leading, interior and trailing)
        if not any(cells):
            continue

        if headers is None:
            headers = _make_headers(cells)
            continue

        if len(cells) > len(headers):
            extra = [c for c in cells[len(headers):] if c]
            if extra:
                truncated += 1
                if truncated <= MAX_WARNINGS:
                    warnings.append(
                        f"Row {row_number}: {len(extra)} value(s) beyond the last "
                        "header column were ignored."
                    )
            cells = cells[: len(headers)]
        elif len(cells) < len(headers):
            cells = cells + [""] * (len(headers) - len(cells))

        if len(rows) >= max_rows:
            raise ParseError(
                ParseErrorKind.TOO_LARGE,
                f"File has more than {max_rows} data rows.",
            )

        rows.append(MappingProxyType(dict(zip(headers, cells))))
        row_numbers.append(row_number)

    if headers is None:
        raise ParseError(ParseErrorKind.EMPTY, "No header row found.")
    if not rows:
        raise ParseError(ParseErrorKind.EMPTY, "File has no data rows.")

    if truncated > MAX_WARNINGS:
        warnings.append(f"{truncated - MAX_WARNINGS} more row(s) had values beyond the header.")

    return UploadedTable(
        headers=headers,
        rows=tuple(rows),
        row_numbers=tuple(row_numbers),
        source_format=source_format,
        warnings=tuple(warnings),
    )


def _make_headers(cells: list[str]) -> tuple[str, ...]:
    """
    Header names from the first non-empty row.

    Trailing blank cells are dropped; interior blanks become 'Column N';
    repeated names get ' (2)', ' (3)' suffixes so every column stays
    addressable.
    """
    while cells and not cells[-1]:
        cells = cells[:-1]

    headers: list[str] = []
    used: set[str] = set()
    for idx, cell in enumerate(cells, start=1):
        base = cell or f"Column {idx}"
        name, count = base, 1
        # A generated name can collide with a literal header
        while name.lower() in used:
            count += 1
            name = f"{base} ({count})"
        used.add(name.lower())
        headers.append(name)
    return tuple(headers)


# ─── CSV ──────────────────────────────────────────────────────

def _decode(data: bytes, warnings: list[str]) -> str:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
        warnings.append("File is not valid UTF-8; it was read as Latin-1.")
    return _clean_text(text, warnings)


def _clean_text(text: str, warnings: list[str]) -> str:
    if text.startswith("\ufeff"):
        text = text[1:]
    if "\x00" in text:
        text = text.replace("\x00", "")
        warnings.append("NUL characters were removed from the file.")
    return text


def _sniff_delimiter(text: str) -> str:
    sample = text[:8192]
    try:
        return csv.Sniffer().sniff(sample, delimiters=CSV_DELIMITERS).delimiter
    except csv.Error:
        return ","


def _iter_csv_rows(text: str) -> Generator[tuple[int, list[str]], None, None]:
    reader = csv.reader(io.StringIO(text, newline=""), delimiter=_sniff_delimiter(text))
    try:
        for values in reader:
            yield reader.line_num, values
    except csv.Error as exc:
        raise ParseError(
            ParseErrorKind.MALFORMED,
            f"CSV could not be read near line {reader.line_num}.",
        ) from exc


# ─── XLSX ─────────────────────────────────────────────────────

def _iter_xlsx_rows(data: bytes) -> Generator[tuple[int, list[str]], None, None]:
    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise ParseError(ParseErrorKind.MALFORMED, "Spreadsheet could not be opened.") from exc

    try:
        ws = wb.active
        if ws is None:
            return
        for row_number, row_values in enumerate(ws.iter_rows(values_only=True), start=1):
            yield row_number, [_cell_to_text(v) for v in row_values]
    finally:
        wb.close()


def _cell_to_text(value: Any) -> str:
    """
    Render a spreadsheet cell as import text.

    Integral floats lose their '.0' (phone numbers are often stored as
    numbers); midnight datetimes render as plain dates.
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)
