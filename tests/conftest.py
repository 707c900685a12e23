import io
import json
import sys
from pathlib import Path

import pytest
from openpyxl import Workbook

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database import ShoppingMallTemplate, init_db
from services.storage import StorageService


def build_xlsx(rows, title="주문목록") -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(list(row))
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def xlsx():
    return build_xlsx


@pytest.fixture
def make_storage():
    """Async factory: fresh in-memory database -> (engine, StorageService). Dispose the engine when done."""

    async def _make():
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        await init_db(engine)
        return engine, StorageService(async_sessionmaker(engine, expire_on_commit=False))

    return _make


@pytest.fixture
def add_mall_template():
    """Async factory storing a shopping-mall template; returns its id."""

    async def _add(store, display_name, column_mappings, export_columns=None, **fields):
        export_columns = export_columns or [{"source": {"type": "input", "columnIndex": 1}}]
        record = ShoppingMallTemplate(
            mall_name=fields.pop("mall_name", display_name.lower()),
            display_name=display_name,
            column_mappings=json.dumps({
                "columnMappings": column_mappings,
                "fixedValues": fields.pop("fixed_values", {}),
            }),
            export_config=json.dumps({
                "copyPrefixRows": fields.pop("copy_prefix_rows", True),
                "columns": export_columns,
            }),
            header_row=fields.pop("header_row", 1),
            data_start_row=fields.pop("data_start_row", 2),
            enabled=fields.pop("enabled", True),
        )
        async with store.get_session() as session:
            session.add(record)
            await session.commit()
            return record.id

    return _add
