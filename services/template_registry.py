"""
Template Registry
Loads source layouts (per shopping mall, plus the built-in platform layout)
and validates them against a workbook's header row.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from database import ShoppingMallTemplate
from schemas import ExportColumn, ExportConfig, Template
from services.errors import HeaderMismatchError, TemplateConfigError, TemplateNotFoundError
from services.row_fields import FIELD_KEYS, canonical_field_key, column_ref_index

logger = logging.getLogger(__name__)

PLATFORM_SOURCE_ID = "platform"

# Fixed 30-column export of the central order platform (A..AD): (field key, header label)
PLATFORM_COLUMNS = (
    ("product_name", "상품명"),                  # A
    ("quantity", "수량"),                        # B
    ("order_name", "주문인"),                    # C
    ("recipient_name", "받는인"),                # D
    ("order_phone", "주문인연락처"),             # E
    ("order_mobile", "주문인핸드폰"),            # F
    ("recipient_phone", "받는인연락처"),         # G
    ("recipient_mobile", "핸드폰"),              # H
    ("postal_code", "우편"),                     # I
    ("address", "배송지"),                       # J
    ("memo", "전언"),                            # K
    ("shopping_mall", "쇼핑몰"),                 # L  site
    ("manufacturer_name", "제조사"),             # M
    ("courier", "택배"),                         # N
    ("tracking_number", "송장번호"),             # O
    ("mall_order_number", "쇼핑몰주문번호"),     # P
    ("order_number", "주문번호"),                # Q
    ("mall_product_number", "쇼핑몰상품번호"),   # R
    ("option_name", "옵션"),                     # S
    ("fulfillment_type", "배송구분"),            # T
    ("payment_amount", "결제금액"),              # U
    ("product_abbr", "상품약어"),                # V
    ("cj_date", "씨제이날짜"),                   # W
    ("logistics_note", "물류전달사항"),          # X
    ("collected_at", "수집일시"),                # Y
    ("sub_order_number", "부주문번호"),          # Z
    ("product_code", "품번코드"),                # AA
    ("own_product_code", "자체상품코드"),        # AB
    ("model_number", "모델번호"),                # AC
    ("cost", "원가(상품)"),                      # AD  cost * quantity
)

PLATFORM_TEMPLATE = Template(
    mall_name=PLATFORM_SOURCE_ID,
    display_name="사방넷",
    header_row=1,
    data_start_row=2,
    column_mappings={f"#{i}": key for i, (key, _) in enumerate(PLATFORM_COLUMNS, start=1)},
    file_type="platform",
    composite_product_key=False,
    mandatory_fields=("order_number",),
    site_field="shopping_mall",
)


def _load_json(raw: Optional[str], what: str) -> Any:
    try:
        return json.loads(raw) if raw else None
    except (TypeError, ValueError):
        raise TemplateConfigError(f"{what} 형식이 올바르지 않아요")


def parse_column_config(raw: Optional[str]) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Stored column config JSON -> (column_mappings, fixed_values) with canonical field keys."""
    data = _load_json(raw, "업로드 템플릿")
    if not isinstance(data, dict) or not isinstance(data.get("columnMappings"), dict):
        raise TemplateConfigError("업로드 템플릿 형식이 올바르지 않아요")

    column_mappings: Dict[str, str] = {}
    for ref, key in data["columnMappings"].items():
        if not isinstance(key, str) or not str(ref).strip():
            continue
        field_key = canonical_field_key(key)
        if field_key not in FIELD_KEYS:
            logger.warning(f"Template column {ref!r} maps to unknown field {key!r}; ignored")
            continue
        column_mappings[str(ref).strip()] = field_key

    fixed_values: Dict[str, str] = {}
    raw_fixed = data.get("fixedValues")
    if isinstance(raw_fixed, dict):
        for key, value in raw_fixed.items():
            if isinstance(value, str) and value.strip():
                fixed_values[canonical_field_key(key)] = value.strip()

    return column_mappings, fixed_values


def _parse_export_column(raw: Any) -> ExportColumn:
    if not isinstance(raw, dict) or not isinstance(raw.get("source"), dict):
        raise ValueError("column.source is required")
    header = raw.get("header")
    if header is not None and not isinstance(header, str):
        raise ValueError("column.header must be a string")

    source = raw["source"]
    kind = source.get("type")
    if kind == "input":
        idx = source.get("columnIndex")
        if isinstance(idx, bool) or not isinstance(idx, int) or idx < 1:
            raise ValueError("columnIndex must be an integer >= 1")
        return ExportColumn(source_type="input", column_index=idx, header=header)
    if kind == "const":
        value = source.get("value")
        if not isinstance(value, str):
            raise ValueError("const value must be a string")
        return ExportColumn(source_type="const", value=value, header=header)
    raise ValueError(f"unknown source type {kind!r}")


def parse_export_config(raw: Optional[str]) -> ExportConfig:
    if not raw:
        raise TemplateConfigError("다운로드 템플릿이 등록되지 않았어요")
    data = _load_json(raw, "다운로드 템플릿")
    try:
        if not isinstance(data, dict):
            raise ValueError("export config must be an object")
        columns = data.get("columns")
        if not isinstance(columns, list) or not columns:
            raise ValueError("at least one column is required")
        copy_prefix = data.get("copyPrefixRows", True)
        if not isinstance(copy_prefix, bool):
            raise ValueError("copyPrefixRows must be a boolean")
        return ExportConfig(
            columns=tuple(_parse_export_column(c) for c in columns),
            copy_prefix_rows=copy_prefix,
        )
    except ValueError as e:
        logger.warning(f"Invalid export config: {e}")
        raise TemplateConfigError("다운로드 템플릿 형식이 올바르지 않아요")


def template_from_record(record: ShoppingMallTemplate) -> Template:
    if not (record.display_name or "").strip():
        raise TemplateConfigError("쇼핑몰 이름이 비어있어요")

    export_config = parse_export_config(record.export_config)
    column_mappings, fixed_values = parse_column_config(record.column_mappings)

    return Template(
        mall_id=record.id,
        mall_name=record.mall_name,
        display_name=record.display_name.strip(),
        header_row=max(1, record.header_row or 1),
        data_start_row=max(1, record.data_start_row or 2),
        column_mappings=column_mappings,
        fixed_values=fixed_values,
        export_config=export_config,
    )


async def resolve_template(source_id: Union[int, str, None], storage_service=None) -> Template:
    """Template for a source: the built-in platform layout or a stored mall template."""
    if isinstance(source_id, str) and source_id.strip().lower() == PLATFORM_SOURCE_ID:
        return PLATFORM_TEMPLATE

    try:
        mall_id = int(source_id)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise TemplateNotFoundError("알 수 없는 쇼핑몰이에요")

    if storage_service is None:
        from services.storage import storage as storage_service

    record = await storage_service.get_template(mall_id)
    if record is None or not record.enabled:
        raise TemplateNotFoundError("알 수 없는 쇼핑몰이에요")
    return template_from_record(record)


def build_header_index(header_cells: Sequence[str]) -> Dict[str, int]:
    """Header text -> 0-based column; the first occurrence of a repeated header wins."""
    index: Dict[str, int] = {}
    for col, text in enumerate(header_cells):
        key = (text or "").strip()
        if key and key not in index:
            index[key] = col
    return index


def validate_headers(template: Template, header_cells: Sequence[str]) -> Dict[str, int]:
    """Field key -> 0-based column; raises one HeaderMismatchError listing every missing header."""
    header_index = build_header_index(header_cells)
    field_columns: Dict[str, int] = {}
    missing: List[str] = []
    for ref, field_key in template.column_mappings.items():
        col = column_ref_index(ref, header_index)
        if col is None:
            missing.append(ref)
            continue
        field_columns.setdefault(field_key, col)
    if missing:
        raise HeaderMismatchError(missing)
    return field_columns
