"""
Platform-layout export of stored orders.
"""
import logging
from decimal import Decimal
from typing import Any, List, Sequence

from database import Order
from schemas import ExportColumn, ExportConfig
from services.mall_transform import WorkbookSink
from services.order_summary import json_number
from services.template_registry import PLATFORM_COLUMNS

logger = logging.getLogger(__name__)

PLATFORM_EXPORT_SHEET_TITLE = "주문데이터"

PLATFORM_EXPORT_CONFIG = ExportConfig(
    columns=tuple(
        ExportColumn(source_type="input", column_index=i, header=label)
        for i, (_, label) in enumerate(PLATFORM_COLUMNS, start=1)
    ),
    copy_prefix_rows=False,
)


def platform_cells(order: Order) -> List[Any]:
    """One stored order as a platform row; fields the orders table does not keep stay blank."""
    cells: List[Any] = []
    for key, _ in PLATFORM_COLUMNS:
        value = getattr(order, key, None)
        if isinstance(value, Decimal):
            value = json_number(value)
        cells.append("" if value is None else value)
    return cells


def render_platform_orders(orders: Sequence[Order]) -> bytes:
    sink = WorkbookSink(PLATFORM_EXPORT_CONFIG, PLATFORM_EXPORT_SHEET_TITLE)
    sink.header([])
    for order in orders:
        sink.data(platform_cells(order))
    logger.info(f"Platform export: orders={sink.data_rows}")
    return sink.to_bytes()
