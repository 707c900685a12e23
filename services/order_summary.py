"""
Per-manufacturer breakdown and monetary summary of one upload.
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple, Union

from schemas import CanonicalRow, ManufacturerBreakdownDict, UploadSummaryDict
from settings import UNASSIGNED_MANUFACTURER_LABEL
from services.lookup_maps import LookupMaps
from services.row_fields import round_half_up

Number = Union[int, float]


def json_number(value: Decimal) -> Number:
    """Decimal -> int when integral, else float (JSON payloads)."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def manufacturer_label(row: CanonicalRow, manufacturer_id: Optional[int], names_by_id: Dict[int, str]) -> str:
    if manufacturer_id is not None and manufacturer_id in names_by_id:
        return names_by_id[manufacturer_id]
    return row.manufacturer_name or UNASSIGNED_MANUFACTURER_LABEL


def calculate_manufacturer_breakdown(
    resolved: Iterable[Tuple[CanonicalRow, Optional[int]]],
    maps: LookupMaps,
) -> List[ManufacturerBreakdownDict]:
    names_by_id = {m.id: m.name for m in maps.manufacturers.values()}
    groups: Dict[str, List[CanonicalRow]] = {}
    for row, manufacturer_id in resolved:
        groups.setdefault(manufacturer_label(row, manufacturer_id, names_by_id), []).append(row)

    breakdown: List[ManufacturerBreakdownDict] = []
    for name, rows in groups.items():
        amount = sum((r.payment_amount for r in rows), Decimal("0"))
        cost = sum((r.cost for r in rows), Decimal("0"))
        products = {r.product_code or r.product_name for r in rows} - {""}
        margin_rate = None
        if amount > 0 and cost > 0:
            margin_rate = round_half_up((amount - cost) / amount * 100)
        breakdown.append({
            "name": name,
            "orders": len(rows),
            "amount": json_number(amount),
            "totalQuantity": sum(r.quantity for r in rows),
            "totalCost": json_number(cost),
            "productCount": len(products),
            "marginRate": margin_rate,
        })

    # stable: ties keep first-seen order
    breakdown.sort(key=lambda b: b["orders"], reverse=True)
    return breakdown


def calculate_summary(total_amount: Decimal, total_cost: Decimal) -> UploadSummaryDict:
    """Upload totals from the transform's running sums."""
    return {
        "totalAmount": json_number(total_amount),
        "totalCost": json_number(total_cost),
        "estimatedMargin": json_number(total_amount - total_cost) if total_cost > 0 else None,
    }
