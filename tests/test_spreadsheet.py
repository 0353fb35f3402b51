"""Tests for spreadsheet parsing (CSV / XLSX / XLS detection) and preview."""

from __future__ import annotations

import codecs
import io
from typing import Any

import pytest


@pytest.fixture
def make_xlsx():
    """Factory for XLSX bytes built with openpyxl."""
    openpyxl = pytest.importorskip("openpyxl")

    def _make(rows: list[list[Any]], extra_sheet: list[list[Any]] | None = None) -> bytes:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = "Bugs"
        for row in rows:
            ws.append(row)
        if extra_sheet is not None:
            other = wb.create_sheet("Other")
            for row in extra_sheet:
                other.append(row)
        buf = io.BytesIO()
        wb.save(buf)
        wb.close()
        return buf.getvalue()

    return _make


@pytest.fixture
def make_xls():
    """Factory for legacy XLS bytes built with xlwt."""
    xlwt = pytest.importorskip("xlwt")
    pytest.importorskip("xlrd")

    def _make(rows: list[list[Any]], extra_sheet: list[list[Any]] | None = None) -> bytes:
        from datetime import date

        book = xlwt.Workbook()
        date_style = xlwt.easyxf(num_format_str="YYYY-MM-DD HH:MM")
        sheets = [("Bugs", rows)]
        if extra_sheet is not None:
            sheets.append(("Other", extra_sheet))
        for name, table in sheets:
            ws = book.add_sheet(name)
            for r, row in enumerate(table):
                for c, value in enumerate(row):
                    if value is None:
                        continue
                    if isinstance(value, date):
                        ws.write(r, c, value, date_style)
                    else:
                        ws.write(r, c, value)
        buf = io.BytesIO()
        book.save(buf)
        return buf.getvalue()

    return _make


def _csv(text: str) -> bytes:
    return text.encode("utf-8")


class TestDetectFormat:
    def test_zip_magic_is_xlsx(self) -> None:
        from bugdesk.spreadsheet import detect_format

        assert detect_format(b"PK\x03\x04rest") == "xlsx"

    def test_ole2_magic_is_xls(self) -> None:
        from bugdesk.spreadsheet import detect_format

        assert detect_format(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1rest") == "xls"

    def test_content_wins_over_extension(self) -> None:
        from bugdesk.spreadsheet import detect_format

        assert detect_format(b"Title\nA\n", "bugs.xlsx") == "csv"


class TestCsv:
    def test_header_and_rows(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv('Title,Severity,Status\n"Crash on save","High","Open"\n'))
        assert sheet.source_format == "csv"
        assert sheet.columns == ("Title", "Severity", "Status")
        assert list(sheet) == [
            {"Title": "Crash on save", "Severity": "High", "Status": "Open"},
        ]

    def test_row_count_matches_data_rows(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        body = "\n".join(f"Bug {i},Low" for i in range(25))
        sheet = parse_spreadsheet(_csv("Title,Severity\n" + body + "\n"))
        assert len(sheet) == 25
        assert len(list(sheet)) == 25

    def test_values_are_not_type_inferred(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title,Code\nA,007\n"))
        assert list(sheet)[0]["Code"] == "007"

    def test_bom_is_stripped(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(codecs.BOM_UTF8 + _csv("Title\nA\n"))
        assert sheet.columns == ("Title",)

    def test_empty_cells_are_none(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title,Severity\nA,\n"))
        assert list(sheet)[0] == {"Title": "A", "Severity": None}

    def test_blank_rows_are_skipped(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title,Severity\nA,Low\n,\nB,High\n"))
        assert [r["Title"] for r in sheet] == ["A", "B"]

    def test_header_only_is_empty_input(self) -> None:
        from bugdesk.errors import EmptyInput, ImportErrorKind
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(EmptyInput) as exc_info:
            parse_spreadsheet(_csv("Title,Severity,Status\n"))
        assert exc_info.value.kind is ImportErrorKind.empty_input

    def test_blank_file_is_empty_input(self) -> None:
        from bugdesk.errors import EmptyInput
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(EmptyInput):
            parse_spreadsheet(b"   \n\n")

    def test_binary_is_unsupported(self) -> None:
        from bugdesk.errors import ImportErrorKind, UnsupportedFormat
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(UnsupportedFormat) as exc_info:
            parse_spreadsheet(b"\x00\x01\x02\x03binary")
        assert exc_info.value.kind is ImportErrorKind.unsupported_format

    def test_invalid_utf8_is_unsupported(self) -> None:
        from bugdesk.errors import UnsupportedFormat
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(UnsupportedFormat):
            parse_spreadsheet(b"Title\n\xff\xfe bad\n")

    def test_empty_input_and_unsupported_share_parse_base(self) -> None:
        from bugdesk.errors import EmptyInput, ParseUpstreamFailure, UnsupportedFormat

        assert issubclass(EmptyInput, ParseUpstreamFailure)
        assert issubclass(UnsupportedFormat, ParseUpstreamFailure)
        assert not issubclass(EmptyInput, UnsupportedFormat)


class TestHeaders:
    def test_duplicate_headers_get_suffix(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title,Title,Title\nA,B,C\n"))
        assert sheet.columns == ("Title", "Title_1", "Title_2")

    def test_blank_header_named_empty(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title,,Status\nA,x,Open\n"))
        assert sheet.columns == ("Title", "__EMPTY", "Status")
        assert list(sheet)[0]["__EMPTY"] == "x"


class TestRowLimit:
    def test_over_limit_raises(self) -> None:
        from bugdesk.errors import RowLimitExceeded
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(RowLimitExceeded) as exc_info:
            parse_spreadsheet(_csv("Title\nA\nB\nC\n"), max_rows=2)
        assert exc_info.value.row_count == 3
        assert exc_info.value.limit == 2

    def test_at_limit_is_accepted(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        assert len(parse_spreadsheet(_csv("Title\nA\nB\n"), max_rows=2)) == 2


class TestXlsx:
    def test_first_sheet_only(self, make_xlsx) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        data = make_xlsx(
            [["Title", "Severity"], ["Crash", "High"]],
            extra_sheet=[["Title"], ["Ignored"]],
        )
        sheet = parse_spreadsheet(data, "bugs.xlsx")
        assert sheet.source_format == "xlsx"
        assert list(sheet) == [{"Title": "Crash", "Severity": "High"}]

    def test_numbers_and_blanks(self, make_xlsx) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        data = make_xlsx([["Title", "Count", "Note"], ["A", 3.0, None], [None, None, None], ["B", 2.5, "x"]])
        rows = list(parse_spreadsheet(data))
        assert rows == [
            {"Title": "A", "Count": 3, "Note": None},
            {"Title": "B", "Count": 2.5, "Note": "x"},
        ]

    def test_header_only_workbook_is_empty(self, make_xlsx) -> None:
        from bugdesk.errors import EmptyInput
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(EmptyInput):
            parse_spreadsheet(make_xlsx([["Title", "Severity"]]))

    def test_corrupt_zip_is_unsupported(self) -> None:
        from bugdesk.errors import UnsupportedFormat
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(UnsupportedFormat):
            parse_spreadsheet(b"PK\x03\x04 not really a workbook")


class TestXls:
    def test_values_are_normalised(self, make_xls) -> None:
        from datetime import date, datetime

        from bugdesk.spreadsheet import parse_spreadsheet

        data = make_xls([
            ["Title", "Severity", "Fixed", "Found", "Count", "Note"],
            ["Crash", "High", True, date(2026, 3, 1), 3.0, None],
            ["Typo", "Low", False, datetime(2026, 3, 2, 14, 30), 2.5, "x"],
        ])
        sheet = parse_spreadsheet(data, "bugs.xls")
        assert sheet.source_format == "xls"
        assert list(sheet.columns) == ["Title", "Severity", "Fixed", "Found", "Count", "Note"]
        assert len(sheet) == 2
        assert list(sheet) == [
            {"Title": "Crash", "Severity": "High", "Fixed": True, "Found": "2026-03-01", "Count": 3, "Note": None},
            {"Title": "Typo", "Severity": "Low", "Fixed": False, "Found": "2026-03-02 14:30:00", "Count": 2.5, "Note": "x"},
        ]

    def test_first_sheet_only_and_blank_rows_skipped(self, make_xls) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        data = make_xls(
            [["Title"], ["A"], [None], ["B"]],
            extra_sheet=[["Title"], ["Ignored"]],
        )
        assert list(parse_spreadsheet(data)) == [{"Title": "A"}, {"Title": "B"}]

    def test_header_only_is_empty(self, make_xls) -> None:
        from bugdesk.errors import EmptyInput
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(EmptyInput):
            parse_spreadsheet(make_xls([["Title", "Severity"]]), "bugs.xls")

    def test_error_and_blank_cells_are_none(self) -> None:
        xlrd = pytest.importorskip("xlrd")
        from xlrd.sheet import Cell

        from bugdesk.spreadsheet import _xls_cell

        assert _xls_cell(Cell(xlrd.XL_CELL_ERROR, 0x07), 0) is None
        assert _xls_cell(Cell(xlrd.XL_CELL_BLANK, ""), 0) is None
        assert _xls_cell(Cell(xlrd.XL_CELL_EMPTY, ""), 0) is None
        assert _xls_cell(Cell(xlrd.XL_CELL_NUMBER, 7.0), 0) == 7
        assert _xls_cell(Cell(xlrd.XL_CELL_BOOLEAN, 1), 0) is True

    def test_corrupt_ole2_is_unsupported(self) -> None:
        pytest.importorskip("xlrd")
        from bugdesk.errors import UnsupportedFormat
        from bugdesk.spreadsheet import parse_spreadsheet

        with pytest.raises(UnsupportedFormat):
            parse_spreadsheet(b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64)


class TestReparse:
    def test_same_bytes_same_rows(self, make_xlsx) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        data = make_xlsx([["Title", "Status"], ["A", "Open"], ["B", "New"]])
        assert list(parse_spreadsheet(data)) == list(parse_spreadsheet(data))

    def test_sheet_is_reiterable(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet

        sheet = parse_spreadsheet(_csv("Title\nA\nB\n"))
        first = list(sheet)
        first[0]["Title"] = "mutated"
        assert list(sheet) == [{"Title": "A"}, {"Title": "B"}]


class TestPreview:
    def test_preview_is_first_five_unchanged(self) -> None:
        from bugdesk.spreadsheet import parse_spreadsheet, preview_rows

        body = "\n".join(f"Bug {i},low" for i in range(12))
        sheet = parse_spreadsheet(_csv("Title,Severity\n" + body + "\n"))
        rows = preview_rows(sheet)
        assert rows == list(sheet)[:5]
        # Not normalised: the lowercase severity is shown as written
        assert rows[0]["Severity"] == "low"

    def test_build_preview_reports_total(self) -> None:
        from bugdesk.spreadsheet import build_preview, parse_spreadsheet

        body = "\n".join(f"Bug {i}" for i in range(12))
        payload = build_preview(parse_spreadsheet(_csv("Title\n" + body + "\n")))
        assert payload["preview_count"] == 5
        assert payload["total_rows"] == 12
        assert payload["columns"] == ["Title"]
        assert payload["format"] == "csv"

    def test_short_file_preview(self) -> None:
        from bugdesk.spreadsheet import build_preview, parse_spreadsheet

        payload = build_preview(parse_spreadsheet(_csv("Title\nA\nB\n")), 5)
        assert payload["preview_count"] == 2
