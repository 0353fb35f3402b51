"""Spreadsheet parsing for bulk bug import.

Decodes uploaded bytes into an ordered sequence of import rows (column
header -> cell value).  Three encodings are supported:

- XLSX, read with openpyxl (first worksheet, cached cell values)
- legacy XLS, read with xlrd (first sheet)
- CSV, read with Polars (UTF-8, optional BOM, all fields as strings)

The format is decided by content, not by file extension.  The first
row of the first sheet is the header; rows whose cells are all empty
are skipped.  Parsing is a pure function of the input bytes.
"""

from __future__ import annotations

import codecs
import io
from collections.abc import Iterator
from datetime import date, datetime, time
from itertools import islice
from typing import Any

import polars as pl

from bugdesk.errors import EmptyInput, RowLimitExceeded, UnsupportedFormat

_ZIP_MAGIC = b"PK\x03\x04"
_OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_EMPTY_HEADER = "__EMPTY"

DEFAULT_PREVIEW_ROWS = 5


class ParsedSheet:
    """The data rows of one sheet, re-iterable.

    Every iteration yields fresh dicts, so callers may mutate rows
    without affecting later passes.
    """

    def __init__(self, columns: list[str], rows: list[tuple[Any, ...]], source_format: str) -> None:
        self.columns: tuple[str, ...] = tuple(columns)
        self._rows: tuple[tuple[Any, ...], ...] = tuple(rows)
        self.source_format = source_format

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for values in self._rows:
            yield dict(zip(self.columns, values))

    def __len__(self) -> int:
        return len(self._rows)

    def __repr__(self) -> str:
        return (
            f"ParsedSheet(format={self.source_format!r}, "
            f"columns={list(self.columns)!r}, rows={len(self._rows)})"
        )


def detect_format(data: bytes, filename: str | None = None) -> str:
    """Return ``"xlsx"``, ``"xls"`` or ``"csv"`` for *data*.

    *filename* is accepted for symmetry with callers but content wins:
    a CSV renamed to ``.xlsx`` is still parsed as CSV.
    """
    if data.startswith(_ZIP_MAGIC):
        return "xlsx"
    if data.startswith(_OLE2_MAGIC):
        return "xls"
    return "csv"


def parse_spreadsheet(
    data: bytes,
    filename: str | None = None,
    *,
    max_rows: int | None = None,
) -> ParsedSheet:
    """Parse an uploaded spreadsheet into import rows.

    Args:
        data: Raw file bytes.
        filename: Original file name (diagnostics only).
        max_rows: Maximum number of data rows accepted; None for no limit.

    Returns:
        A :class:`ParsedSheet` with at least one data row.

    Raises:
        EmptyInput: The file decoded but holds no data rows.
        UnsupportedFormat: The file is not valid XLSX, XLS or UTF-8 CSV.
        RowLimitExceeded: More than *max_rows* data rows.
    """
    fmt = detect_format(data, filename)
    if fmt == "xlsx":
        table = _read_xlsx(data)
    elif fmt == "xls":
        table = _read_xls(data)
    else:
        table = _read_csv(data)

    columns, rows = _split_header(table)
    if not rows:
        raise EmptyInput()
    if max_rows is not None and len(rows) > max_rows:
        raise RowLimitExceeded(len(rows), max_rows)
    return ParsedSheet(columns, rows, fmt)


def preview_rows(sheet: ParsedSheet, n: int = DEFAULT_PREVIEW_ROWS) -> list[dict[str, Any]]:
    """Return the first *n* rows unchanged, for display only."""
    return list(islice(sheet, max(n, 0)))


def build_preview(sheet: ParsedSheet, n: int = DEFAULT_PREVIEW_ROWS) -> dict[str, Any]:
    """Preview payload for the API/CLI.

    ``total_rows`` is included so the caller can show that the import
    commits every row, not just the previewed ones.
    """
    rows = preview_rows(sheet, n)
    return {
        "format": sheet.source_format,
        "columns": list(sheet.columns),
        "rows": rows,
        "preview_count": len(rows),
        "total_rows": len(sheet),
    }


# ---------------------------------------------------------------------------
# Readers: each returns a list of raw row lists (header included)
# ---------------------------------------------------------------------------


def _read_xlsx(data: bytes) -> list[list[Any]]:
    try:
        import openpyxl
    except ImportError:
        raise ImportError(
            "openpyxl is required for XLSX import.  "
            "Install with: pip install openpyxl"
        )

    try:
        wb = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise UnsupportedFormat(f"Could not read XLSX workbook: {exc}") from exc

    try:
        if not wb.worksheets:
            raise EmptyInput("Workbook has no worksheets")
        ws = wb.worksheets[0]
        return [[_normalize_cell(v) for v in row] for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _read_xls(data: bytes) -> list[list[Any]]:
    try:
        import xlrd
    except ImportError:
        raise ImportError(
            "xlrd is required for legacy XLS import.  "
            "Install with: pip install xlrd"
        )

    try:
        book = xlrd.open_workbook(file_contents=data, on_demand=True)
    except Exception as exc:
        raise UnsupportedFormat(f"Could not read XLS workbook: {exc}") from exc

    try:
        if book.nsheets == 0:
            raise EmptyInput("Workbook has no sheets")
        sheet = book.sheet_by_index(0)
        table: list[list[Any]] = []
        for r in range(sheet.nrows):
            table.append([_xls_cell(cell, book.datemode) for cell in sheet.row(r)])
        return table
    finally:
        book.release_resources()


def _xls_cell(cell: Any, datemode: int) -> Any:
    import xlrd

    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return _normalize_cell(xlrd.xldate_as_datetime(cell.value, datemode))
        except (ValueError, OverflowError):
            return _normalize_cell(cell.value)
    return _normalize_cell(cell.value)


def _read_csv(data: bytes) -> list[list[Any]]:
    if data.startswith(codecs.BOM_UTF8):
        data = data[len(codecs.BOM_UTF8):]
    if b"\x00" in data:
        raise UnsupportedFormat("File is binary and not a recognised spreadsheet format")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise UnsupportedFormat(f"CSV is not valid UTF-8: {exc}") from exc
    if not text.strip():
        raise EmptyInput("File is empty")

    try:
        df = pl.read_csv(
            io.BytesIO(data),
            has_header=False,
            infer_schema=False,
            truncate_ragged_lines=True,
        )
    except pl.exceptions.PolarsError as exc:
        raise UnsupportedFormat(f"Could not parse CSV: {exc}") from exc

    return [[_normalize_cell(v) for v in row] for row in df.rows()]


# ---------------------------------------------------------------------------
# Shared shaping
# ---------------------------------------------------------------------------


def _normalize_cell(value: Any) -> Any:
    """Map a raw cell to None / bool / int / float / str."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        return value.isoformat(sep=" ") if value.time() != time(0) else value.date().isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, str):
        return value if value != "" else None
    return str(value)


def _is_blank_row(row: list[Any]) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in row)


def _header_names(raw: list[Any], width: int) -> list[str]:
    """Name header cells; blanks become ``__EMPTY``, duplicates get ``_N``."""
    names: list[str] = []
    seen: dict[str, int] = {}
    for idx in range(width):
        cell = raw[idx] if idx < len(raw) else None
        base = str(cell).strip() if cell is not None else ""
        if not base:
            base = _EMPTY_HEADER
        name = base
        if name in seen:
            seen[base] += 1
            name = f"{base}_{seen[base]}"
            while name in seen:
                seen[base] += 1
                name = f"{base}_{seen[base]}"
        seen.setdefault(name, 0)
        names.append(name)
    return names


def _split_header(table: list[list[Any]]) -> tuple[list[str], list[tuple[Any, ...]]]:
    """Split a raw table into header names and padded data rows."""
    rows = [r for r in table if not _is_blank_row(r)]
    if not rows:
        return [], []

    width = 0
    for r in rows:
        for idx in range(len(r) - 1, -1, -1):
            if r[idx] is not None:
                width = max(width, idx + 1)
                break

    columns = _header_names(rows[0], width)
    data: list[tuple[Any, ...]] = []
    for r in rows[1:]:
        padded = list(r[:width]) + [None] * (width - len(r))
        data.append(tuple(padded))
    return columns, data
