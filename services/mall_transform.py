"""
Streaming Transform Engine
Reads a source worksheet one row at a time under a Template, yields canonical
rows, writes the canonical output workbook, and accumulates per-product
aggregates, candidate sets and monetary totals. Shopping-mall runs also keep a
source snapshot so the converted workbook can be regenerated later.
"""
import io
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from openpyxl import Workbook
from openpyxl.cell import WriteOnlyCell
from openpyxl.styles import Font, PatternFill

from schemas import (
    CanonicalRow, ExportConfig, OptionCandidate, ProductAggregate, Template, UploadError,
)
from services.errors import RowParseError, SnapshotFormatError
from services.lookup_maps import OptionKey, normalize_key
from services.manufacturer_resolution import normalize_manufacturer_name
from services.row_fields import AMOUNT_FIELDS, FieldResolver, unit_amount
from services.spreadsheet_reader import open_first_sheet
from services.template_registry import validate_headers

logger = logging.getLogger(__name__)

OUTPUT_SHEET_TITLE = "변환결과"
ERRORS_SHEET_TITLE = "errors"

_TEXT_FIELDS = (
    "mall_order_number", "sub_order_number", "product_name", "option_name",
    "product_abbr", "model_number", "order_name", "recipient_name", "order_phone",
    "order_mobile", "recipient_phone", "recipient_mobile", "postal_code", "address",
    "memo", "courier", "tracking_number", "logistics_note", "fulfillment_type",
)


# -------------------------------------------------------------------
# Aggregates
# -------------------------------------------------------------------
@dataclass
class Aggregates:
    products: Dict[str, ProductAggregate] = field(default_factory=dict)
    # normalized name -> first spelling seen
    manufacturer_names: Dict[str, str] = field(default_factory=dict)
    option_candidates: Dict[OptionKey, OptionCandidate] = field(default_factory=dict)
    total_amount: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")

    def add_row(self, row: CanonicalRow) -> None:
        self.total_amount += row.payment_amount
        self.total_cost += row.cost

        if row.manufacturer_name:
            self.manufacturer_names.setdefault(normalize_key(row.manufacturer_name), row.manufacturer_name)
        elif row.product_code and row.option_name:
            # decided per row: a row without a manufacturer name registers its option
            key = OptionKey.of(row.product_code, row.option_name)
            self.option_candidates.setdefault(key, OptionCandidate(row.product_code, row.option_name))

        key = normalize_key(row.product_code)
        if not key:
            return
        price = unit_amount(row.payment_amount, row.quantity)
        cost = unit_amount(row.cost, row.quantity)

        agg = self.products.get(key)
        if agg is None:
            self.products[key] = ProductAggregate(
                product_code=row.product_code,
                product_name=row.product_name,
                option_name=row.option_name or None,
                manufacturer_name=row.manufacturer_name,
                price=price,
                cost=cost,
            )
            return

        # fill-forward: never overwrite a non-empty value
        if not agg.product_name and row.product_name:
            agg.product_name = row.product_name
        if not agg.option_name and row.option_name:
            agg.option_name = row.option_name
        if not agg.manufacturer_name and row.manufacturer_name:
            agg.manufacturer_name = row.manufacturer_name
        if agg.price == 0 and price > 0:
            agg.price = price
        if agg.cost == 0 and cost > 0:
            agg.cost = cost


# -------------------------------------------------------------------
# Output workbook
# -------------------------------------------------------------------
class WorkbookSink:
    """Canonical output workbook written row by row (openpyxl write-only mode)."""

    HEADER_FONT = Font(bold=True)
    ERROR_HEADER_FONT = Font(bold=True, color="FFFFFF")
    ERROR_HEADER_FILL = PatternFill(start_color="C00000", end_color="C00000", fill_type="solid")

    def __init__(self, export_config: ExportConfig, sheet_title: str = OUTPUT_SHEET_TITLE):
        self.export_config = export_config
        self.workbook = Workbook(write_only=True)
        self.sheet = self.workbook.create_sheet(title=sheet_title[:31] or OUTPUT_SHEET_TITLE)
        self.errors_sheet = None
        self.data_rows = 0

    def _project(self, cells: Sequence[str]) -> List[str]:
        return [col.cell(list(cells)) for col in self.export_config.columns]

    def prefix(self, cells: Sequence[str]) -> None:
        if self.export_config.copy_prefix_rows:
            self.sheet.append(self._project(cells))

    def header(self, cells: Sequence[str]) -> None:
        row = []
        for col in self.export_config.columns:
            c = WriteOnlyCell(self.sheet, value=col.header_cell(list(cells)))
            c.font = self.HEADER_FONT
            row.append(c)
        self.sheet.append(row)

    def data(self, cells: Sequence[str]) -> None:
        self.sheet.append(self._project(cells))
        self.data_rows += 1

    def error(self, row_number: int, message: str) -> None:
        if self.errors_sheet is None:
            self.errors_sheet = self.workbook.create_sheet(title=ERRORS_SHEET_TITLE)
            header = []
            for label in ("row", "message"):
                c = WriteOnlyCell(self.errors_sheet, value=label)
                c.font = self.ERROR_HEADER_FONT
                c.fill = self.ERROR_HEADER_FILL
                header.append(c)
            self.errors_sheet.append(header)
        self.errors_sheet.append([row_number, message])

    def to_bytes(self) -> bytes:
        buffer = io.BytesIO()
        self.workbook.save(buffer)
        return buffer.getvalue()


# -------------------------------------------------------------------
# Engine
# -------------------------------------------------------------------
def _is_blank(cells: Sequence[str]) -> bool:
    return all(not (c or "").strip() for c in cells)


class MallTransform:
    """Single-pass transform of one worksheet. ``rows()`` is forward-only and not restartable."""

    def __init__(self, template: Template, sink: Optional[WorkbookSink] = None):
        self.template = template
        self.sink = sink
        self.resolver: Optional[FieldResolver] = None
        self.aggregates = Aggregates()
        self.errors: List[UploadError] = []
        self.prefix_rows: List[List[str]] = []
        self.header_cells: List[str] = []
        self.data_rows = 0      # non-blank rows at or after dataStartRow
        self.parsed_rows = 0
        self.skipped_rows = 0

    def _on_header(self, cells: Sequence[str]) -> None:
        self.header_cells = list(cells)
        field_columns = validate_headers(self.template, self.header_cells)
        self.resolver = FieldResolver(self.template, field_columns)
        if self.sink is not None:
            self.sink.header(self.header_cells)

    def _soft_error(self, e: RowParseError, product_code: str, product_name: str) -> None:
        self.errors.append(UploadError(row=e.row, message=e.message, product_code=product_code or None,
                                       product_name=product_name or None))
        if self.sink is not None:
            self.sink.error(e.row, e.message)

    def parse_row(self, cells: Sequence[str], row_number: int) -> CanonicalRow:
        t = self.template
        value = self.resolver.field_value

        order_number = value(cells, "order_number")
        if "order_number" in t.mandatory_fields and not order_number:
            raise RowParseError(row_number, "order_number", "주문번호가 없어요")

        mall_product_number = value(cells, "mall_product_number")
        if "mall_product_number" in t.mandatory_fields and not mall_product_number:
            raise RowParseError(row_number, "mall_product_number", "쇼핑몰상품번호가 없어요")

        site = value(cells, t.site_field) if t.site_field else t.display_name.strip()
        if t.composite_product_key:
            if not site:
                raise RowParseError(row_number, "shopping_mall", "사이트 값이 없어요")
            product_code = f"{site}::{mall_product_number}"
        else:
            product_code = value(cells, "product_code") or value(cells, "own_product_code")

        row = CanonicalRow(
            row_number=row_number,
            order_number=order_number,
            product_code=product_code,
            mall_product_number=mall_product_number,
            shopping_mall=site,
            manufacturer_name=normalize_manufacturer_name(value(cells, "manufacturer_name")),
            source_cells=list(cells),
        )
        for key in _TEXT_FIELDS:
            setattr(row, key, value(cells, key))

        try:
            row.quantity = self.resolver.quantity(cells, row_number)
        except RowParseError as e:
            self._soft_error(e, product_code, row.product_name)
        for key in AMOUNT_FIELDS:
            try:
                setattr(row, key, self.resolver.amount(cells, key, row_number))
            except RowParseError as e:
                self._soft_error(e, product_code, row.product_name)

        if t.file_type == "platform" and row.fulfillment_type:
            row.courier = row.fulfillment_type
        return row

    def rows(self, sheet_rows: Iterable[List[str]]) -> Iterator[CanonicalRow]:
        t = self.template
        for row_number, cells in enumerate(sheet_rows, start=1):
            if row_number < t.header_row:
                self.prefix_rows.append(list(cells))
                if self.sink is not None:
                    self.sink.prefix(cells)
                continue
            if row_number == t.header_row:
                self._on_header(cells)
                continue
            if row_number < t.data_start_row or _is_blank(cells):
                continue

            self.data_rows += 1
            try:
                row = self.parse_row(cells, row_number)
            except RowParseError as e:
                self.skipped_rows += 1
                self.errors.append(UploadError(row=e.row, message=e.message))
                if self.sink is not None:
                    self.sink.error(e.row, e.message)
                continue

            self.parsed_rows += 1
            self.aggregates.add_row(row)
            if self.sink is not None:
                self.sink.data(cells)
            yield row

        if self.resolver is None:
            # worksheet ended before its header row
            self._on_header([])


def transform(sheet_rows: Iterable[List[str]], template: Template, sink: Optional[WorkbookSink] = None):
    """Return (engine, lazy canonical rows). Aggregates and errors are final once rows are exhausted."""
    engine = MallTransform(template, sink)
    return engine, engine.rows(sheet_rows)


@dataclass
class TransformOutcome:
    rows: List[CanonicalRow]
    aggregates: Aggregates
    errors: List[UploadError]
    data_rows: int
    skipped_rows: int
    sheet_title: str = OUTPUT_SHEET_TITLE
    output: Optional[bytes] = None
    prefix_rows: List[List[str]] = field(default_factory=list)
    header_cells: List[str] = field(default_factory=list)


def transform_file(content: bytes, file_name: str, template: Template, with_output: bool = False) -> TransformOutcome:
    """Stream a whole file through the engine; validation errors propagate before any row is parsed."""
    with open_first_sheet(content, file_name) as (sheet_title, sheet_rows):
        sink = None
        if with_output and template.export_config is not None:
            sink = WorkbookSink(template.export_config, sheet_title or OUTPUT_SHEET_TITLE)
        engine, rows = transform(sheet_rows, template, sink)
        canonical = list(rows)

    logger.info(
        f"Transform: template={template.mall_name} rows={engine.data_rows} "
        f"parsed={engine.parsed_rows} skipped={engine.skipped_rows} "
        f"products={len(engine.aggregates.products)} errors={len(engine.errors)}"
    )
    return TransformOutcome(
        rows=canonical,
        aggregates=engine.aggregates,
        errors=engine.errors,
        data_rows=engine.data_rows,
        skipped_rows=engine.skipped_rows,
        sheet_title=sheet_title,
        output=sink.to_bytes() if sink is not None else None,
        prefix_rows=engine.prefix_rows,
        header_cells=engine.header_cells,
    )


# -------------------------------------------------------------------
# Source snapshot (re-download)
# -------------------------------------------------------------------
SNAPSHOT_VERSION = 1


def _texts(cells: Iterable[Any]) -> List[str]:
    return ["" if c is None else str(c) for c in cells]


def build_source_snapshot(outcome: TransformOutcome, template: Template) -> Dict[str, Any]:
    """Prefix, header and parsed data rows of the source sheet; rows skipped for errors are left out."""
    data_rows = [{"rowNumber": r.row_number, "cells": list(r.source_cells)} for r in outcome.rows]
    widths = [len(outcome.header_cells)] + [len(p) for p in outcome.prefix_rows] + [len(r["cells"]) for r in data_rows]
    return {
        "v": SNAPSHOT_VERSION,
        "sheetName": outcome.sheet_title or OUTPUT_SHEET_TITLE,
        "headerRow": template.header_row,
        "dataStartRow": template.data_start_row,
        "columnCount": max(widths) or 1,
        "prefixRows": [list(p) for p in outcome.prefix_rows],
        "headerCells": list(outcome.header_cells),
        "dataRows": data_rows,
    }


def render_source_snapshot(snapshot: Dict[str, Any], export_config: ExportConfig) -> bytes:
    """Rebuild the converted workbook from a stored snapshot under the current export layout."""
    if not isinstance(snapshot, dict) or snapshot.get("v") != SNAPSHOT_VERSION:
        raise SnapshotFormatError("저장된 업로드 데이터 형식이 올바르지 않아요")
    try:
        sink = WorkbookSink(export_config, str(snapshot.get("sheetName") or OUTPUT_SHEET_TITLE))
        for cells in snapshot.get("prefixRows") or []:
            sink.prefix(_texts(cells))
        sink.header(_texts(snapshot.get("headerCells") or []))
        for row in snapshot.get("dataRows") or []:
            sink.data(_texts(row["cells"]))
    except (KeyError, TypeError) as e:
        raise SnapshotFormatError("저장된 업로드 데이터 형식이 올바르지 않아요") from e
    return sink.to_bytes()
