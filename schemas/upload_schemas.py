"""
Order Ingestion Schemas
=======================

Canonical data structures shared by the ingestion pipeline.

Template          - immutable per-run description of a source file layout
CanonicalRow      - one source data row normalized into the fixed order field set
ProductAggregate  - per-product fill-forward state collected while streaming
UploadResult      - structured outcome returned to callers

Result payloads are exposed to HTTP callers in camelCase (TypedDict shapes
below); internal dataclasses use snake_case.
"""

from typing import List, Dict, Any, Optional, Tuple, TypedDict, Literal
from dataclasses import dataclass, field
from decimal import Decimal


# =============================================================================
# TYPE DEFINITIONS (JSON payload shapes)
# =============================================================================

class UploadErrorDict(TypedDict, total=False):
    row: int                  # 1-based source row number (0 = whole file)
    message: str
    productCode: str
    productName: str


class ManufacturerBreakdownDict(TypedDict):
    name: str
    orders: int
    amount: float             # Sum of line payment amounts
    totalQuantity: int
    totalCost: float
    productCount: int
    marginRate: Optional[int]  # Percent, None unless amount and cost are both positive


class UploadSummaryDict(TypedDict):
    totalAmount: float
    totalCost: float
    estimatedMargin: Optional[float]


class UploadMetaDict(TypedDict):
    v: int
    kind: str                 # "shopping_mall_upload_meta"
    mallName: str
    summary: UploadSummaryDict
    errorSamples: List[UploadErrorDict]
    autoCreatedManufacturers: List[str]


UPLOAD_META_VERSION = 1
UPLOAD_META_KIND = "shopping_mall_upload_meta"


# =============================================================================
# TEMPLATE
# =============================================================================

@dataclass(frozen=True)
class ExportColumn:
    """One output column: copied from a 1-based input column or a constant."""
    source_type: Literal["input", "const"]
    column_index: Optional[int] = None
    value: str = ""
    header: Optional[str] = None

    def cell(self, source_cells: List[str]) -> str:
        if self.source_type == "const":
            return self.value
        idx = (self.column_index or 1) - 1
        return source_cells[idx] if idx < len(source_cells) else ""

    def header_cell(self, header_cells: List[str]) -> str:
        if self.header is not None:
            return self.header
        if self.source_type == "input":
            return self.cell(header_cells)
        return ""


@dataclass(frozen=True)
class ExportConfig:
    columns: Tuple[ExportColumn, ...]
    copy_prefix_rows: bool = True


@dataclass(frozen=True)
class Template:
    """Immutable layout of one data source, loaded once per ingestion run.

    column_mappings maps a source column reference (header text, or "#<n>" for
    the 1-based column n) to a canonical field key. fixed_values maps a field
    key to the literal used when the column is absent or blank.
    """
    mall_name: str
    display_name: str
    header_row: int = 1
    data_start_row: int = 2
    column_mappings: Dict[str, str] = field(default_factory=dict)
    fixed_values: Dict[str, str] = field(default_factory=dict)
    export_config: Optional[ExportConfig] = None
    mall_id: Optional[int] = None
    file_type: Literal["platform", "shopping_mall"] = "shopping_mall"
    # Composite "{site}::{mallProductNumber}" product codes for mall files
    composite_product_key: bool = True
    mandatory_fields: Tuple[str, ...] = ("order_number", "mall_product_number")
    # Field carrying the site per row; None means the display name is the site
    site_field: Optional[str] = None


# =============================================================================
# ROWS & AGGREGATES
# =============================================================================

@dataclass
class CanonicalRow:
    row_number: int
    order_number: str
    product_code: str = ""
    mall_product_number: str = ""
    mall_order_number: str = ""
    sub_order_number: str = ""
    product_name: str = ""
    quantity: int = 1
    option_name: str = ""
    product_abbr: str = ""
    model_number: str = ""
    order_name: str = ""
    recipient_name: str = ""
    order_phone: str = ""
    order_mobile: str = ""
    recipient_phone: str = ""
    recipient_mobile: str = ""
    postal_code: str = ""
    address: str = ""
    memo: str = ""
    courier: str = ""
    tracking_number: str = ""
    logistics_note: str = ""
    shopping_mall: str = ""
    manufacturer_name: Optional[str] = None
    payment_amount: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")
    shipping_cost: Decimal = Decimal("0")
    fulfillment_type: str = ""
    source_cells: List[str] = field(default_factory=list, repr=False)


@dataclass
class UploadError:
    row: int
    message: str
    product_code: Optional[str] = None
    product_name: Optional[str] = None

    def to_dict(self) -> UploadErrorDict:
        out: UploadErrorDict = {"row": self.row, "message": self.message}
        if self.product_code:
            out["productCode"] = self.product_code
        if self.product_name:
            out["productName"] = self.product_name
        return out


@dataclass
class ProductAggregate:
    """Fill-forward product state: first non-empty value wins, prices upgrade from 0."""
    product_code: str
    product_name: str
    option_name: Optional[str] = None
    manufacturer_name: Optional[str] = None
    price: int = 0
    cost: int = 0


@dataclass(frozen=True)
class OptionCandidate:
    product_code: str
    option_name: str


# =============================================================================
# RESULT
# =============================================================================

@dataclass
class UploadResult:
    upload_id: Optional[str]
    file_name: str
    mall_name: str
    total_orders: int = 0
    processed_orders: int = 0
    duplicate_orders: int = 0
    error_orders: int = 0
    manufacturer_breakdown: List[ManufacturerBreakdownDict] = field(default_factory=list)
    errors: List[UploadError] = field(default_factory=list)
    summary: Optional[UploadSummaryDict] = None
    auto_created_manufacturers: List[str] = field(default_factory=list)
    order_numbers: List[str] = field(default_factory=list)

    def to_dict(self, error_limit: Optional[int] = None) -> Dict[str, Any]:
        errors = self.errors if error_limit is None else self.errors[:error_limit]
        return {
            "uploadId": self.upload_id,
            "fileName": self.file_name,
            "mallName": self.mall_name,
            "totalOrders": self.total_orders,
            "processedOrders": self.processed_orders,
            "duplicateOrders": self.duplicate_orders,
            "errorOrders": self.error_orders,
            "manufacturerBreakdown": self.manufacturer_breakdown,
            "errors": [e.to_dict() for e in errors],
            "summary": self.summary or {"totalAmount": 0, "totalCost": 0, "estimatedMargin": None},
            "autoCreatedManufacturers": self.auto_created_manufacturers,
            # newly inserted orders, for the platform-layout export
            "orderNumbers": self.order_numbers,
        }


def build_upload_meta(
    mall_name: str,
    summary: UploadSummaryDict,
    errors: List[UploadError],
    auto_created: List[str],
    sample_limit: int,
) -> UploadMetaDict:
    return {
        "v": UPLOAD_META_VERSION,
        "kind": UPLOAD_META_KIND,
        "mallName": mall_name,
        "summary": summary,
        "errorSamples": [e.to_dict() for e in errors[:sample_limit]],
        "autoCreatedManufacturers": list(auto_created),
    }
