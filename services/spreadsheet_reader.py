"""
Forward-only worksheet readers.
.xlsx files are streamed with openpyxl in read-only mode; legacy .xls files go through xlrd.
"""
import io
import logging
import os
import zipfile
from contextlib import contextmanager
from typing import Any, Iterator, List, Tuple

import xlrd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from settings import VALID_EXTENSIONS
from services.errors import MissingWorksheetError, UnreadableWorkbookError, UnsupportedFileTypeError
from services.row_fields import cell_to_text

logger = logging.getLogger(__name__)

SheetRows = Iterator[List[str]]


def file_extension(file_name: str) -> str:
    return os.path.splitext(file_name or "")[1].lower()


def ensure_supported_file(file_name: str) -> str:
    ext = file_extension(file_name)
    if ext not in VALID_EXTENSIONS:
        raise UnsupportedFileTypeError("엑셀 파일(.xlsx, .xls)만 업로드 가능해요")
    return ext


def _xlsx_rows(ws) -> SheetRows:
    # read-only iter_rows pads skipped rows, so position == 1-based row number
    for values in ws.iter_rows(values_only=True):
        yield [cell_to_text(v) for v in values]


def _xls_cell(book, cell) -> Any:
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return xlrd.xldate_as_datetime(cell.value, book.datemode)
        except (ValueError, OverflowError, xlrd.xldate.XLDateError):
            return cell.value
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    return cell.value


def _xls_rows(book, sheet) -> SheetRows:
    for i in range(sheet.nrows):
        yield [cell_to_text(_xls_cell(book, c)) for c in sheet.row(i)]


@contextmanager
def open_first_sheet(content: bytes, file_name: str) -> Iterator[Tuple[str, SheetRows]]:
    """Yield (sheet title, row iterator) for the first worksheet; the workbook is closed on exit."""
    ext = ensure_supported_file(file_name)

    if ext == ".xls":
        try:
            book = xlrd.open_workbook(file_contents=content, on_demand=True)
        except (xlrd.XLRDError, ValueError, OSError, IndexError) as e:
            logger.warning(f"Unreadable .xls workbook {file_name!r}: {e}")
            raise UnreadableWorkbookError("엑셀 파일을 읽을 수 없어요")
        try:
            if book.nsheets < 1:
                raise MissingWorksheetError("워크시트를 찾을 수 없어요")
            sheet = book.sheet_by_index(0)
            yield sheet.name, _xls_rows(book, sheet)
        finally:
            book.release_resources()
        return

    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        logger.warning(f"Unreadable .xlsx workbook {file_name!r}: {e}")
        raise UnreadableWorkbookError("엑셀 파일을 읽을 수 없어요")
    try:
        if not wb.worksheets:
            raise MissingWorksheetError("워크시트를 찾을 수 없어요")
        ws = wb.worksheets[0]
        yield ws.title, _xlsx_rows(ws)
    finally:
        wb.close()
