"""
Row Field Resolver
Turns raw worksheet cells into canonical field values for one template.
"""
import re
from datetime import date, datetime, time as dt_time
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, Optional, Sequence

from schemas import Template
from services.errors import RowParseError

# Canonical order field keys accepted in template column mappings
FIELD_KEYS = (
    "order_number",
    "mall_order_number",
    "sub_order_number",
    "product_name",
    "quantity",
    "option_name",
    "product_abbr",
    "product_code",
    "own_product_code",
    "mall_product_number",
    "model_number",
    "order_name",
    "recipient_name",
    "order_phone",
    "order_mobile",
    "recipient_phone",
    "recipient_mobile",
    "postal_code",
    "address",
    "memo",
    "courier",
    "tracking_number",
    "logistics_note",
    "shopping_mall",
    "manufacturer_name",
    "payment_amount",
    "cost",
    "shipping_cost",
    "fulfillment_type",
    "cj_date",
    "collected_at",
)

AMOUNT_FIELDS = ("payment_amount", "cost", "shipping_cost")

FIELD_ALIASES = {
    "sabangnet_order_number": "order_number",
    "manufacturer": "manufacturer_name",
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_NUMERIC = re.compile(r"[^0-9.\-]")


def canonical_field_key(key: str) -> str:
    """camelCase or snake_case field key -> canonical snake_case key."""
    snake = _CAMEL_BOUNDARY.sub("_", (key or "").strip()).lower()
    return FIELD_ALIASES.get(snake, snake)


def cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dt_time):
        return value.isoformat()
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def parse_number(text: str) -> Decimal:
    """Lenient numeric parse: thousands separators and currency glyphs are dropped.

    Raises ValueError when nothing numeric remains.
    """
    cleaned = _NON_NUMERIC.sub("", text)
    if not cleaned:
        raise ValueError(f"숫자가 아니에요: {text}")
    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"숫자가 아니에요: {text}")
    if not number.is_finite():
        raise ValueError(f"숫자가 아니에요: {text}")
    return number


def parse_quantity(text: str) -> int:
    """Blank or non-positive quantities are 1; unparsable text raises ValueError."""
    if not text:
        return 1
    qty = int(parse_number(text).to_integral_value(rounding=ROUND_DOWN))
    return qty if qty > 0 else 1


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def unit_amount(line_total: Decimal, quantity: int) -> int:
    """Per-unit price/cost derived from a line total."""
    if line_total <= 0:
        return 0
    return round_half_up(line_total / max(quantity, 1))


class FieldResolver:
    """Resolves canonical field values for rows of one source file.

    ``field_columns`` maps field key -> 0-based column index, as validated
    against the file's header row.
    """

    def __init__(self, template: Template, field_columns: Dict[str, int]):
        self.template = template
        self.field_columns = field_columns

    def field_value(self, cells: Sequence[str], field_key: str) -> str:
        col = self.field_columns.get(field_key)
        if col is not None and col < len(cells):
            value = (cells[col] or "").strip()
            if value:
                return value
        fixed = self.template.fixed_values.get(field_key)
        return fixed.strip() if fixed else ""

    def amount(self, cells: Sequence[str], field_key: str, row_number: int) -> Decimal:
        text = self.field_value(cells, field_key)
        if not text:
            return Decimal("0")
        try:
            return parse_number(text)
        except ValueError as e:
            raise RowParseError(row_number, field_key, str(e))

    def quantity(self, cells: Sequence[str], row_number: int) -> int:
        try:
            return parse_quantity(self.field_value(cells, "quantity"))
        except ValueError as e:
            raise RowParseError(row_number, "quantity", str(e))


def column_ref_index(ref: str, header_index: Dict[str, int]) -> Optional[int]:
    """Header text or "#<n>" (1-based) -> 0-based column index."""
    ref = ref.strip()
    if ref.startswith("#") and ref[1:].isdigit():
        n = int(ref[1:])
        return n - 1 if n >= 1 else None
    return header_index.get(ref)
