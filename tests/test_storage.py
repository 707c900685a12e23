import asyncio

import pytest
from sqlalchemy import select

from database import ExclusionPattern, Manufacturer, Order, Product, Setting
from utils import chunk_size_for, chunked


def run(scenario, make_storage):
    async def _main():
        engine, store = await make_storage()
        try:
            return await scenario(store)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def _order(number, **fields):
    fields.setdefault("product_code", "P-1")
    return Order(order_number=number, quantity=1, **fields)


def test_link_backfills_only_open_unmatched_orders(make_storage):
    async def scenario(store):
        async with store.get_session() as session:
            maker = Manufacturer(name="Acme")
            other = Manufacturer(name="Other")
            session.add_all([maker, other])
            await session.flush()
            session.add_all([
                _order("L1", product_code=" p-1 "),
                _order("L2", status="completed"),
                _order("L3", excluded_reason="직배송"),
                _order("L4", manufacturer_id=other.id),
                _order("L5", product_code="P-2"),
            ])
            await session.commit()
            maker_id = maker.id

        updated = await store.link_product_manufacturer("P-1", maker_id, product_name="Widget")
        async with store.get_session() as session:
            orders = {o.order_number: o for o in (await session.execute(select(Order))).scalars()}
            products = list((await session.execute(select(Product))).scalars())
        return maker_id, updated, orders, products

    maker_id, updated, orders, products = run(scenario, make_storage)

    assert updated == 1
    assert orders["L1"].manufacturer_id == maker_id
    assert orders["L1"].manufacturer_name == "Acme"
    assert orders["L2"].manufacturer_id is None
    assert orders["L3"].manufacturer_id is None
    assert orders["L4"].manufacturer_id != maker_id
    assert orders["L5"].manufacturer_id is None
    assert [(p.product_code, p.product_name, p.manufacturer_id) for p in products] == [("P-1", "Widget", maker_id)]


def test_unlink_clears_product_only(make_storage):
    async def scenario(store):
        async with store.get_session() as session:
            maker = Manufacturer(name="Acme")
            session.add(maker)
            await session.flush()
            session.add_all([
                Product(product_code="P-1", product_name="Widget", manufacturer_id=maker.id),
                _order("U1", manufacturer_id=maker.id),
            ])
            await session.commit()

        updated = await store.link_product_manufacturer("p-1", None)
        async with store.get_session() as session:
            product = (await session.execute(select(Product))).scalar_one()
            order = (await session.execute(select(Order))).scalar_one()
        return updated, product, order

    updated, product, order = run(scenario, make_storage)

    assert updated == 0
    assert product.manufacturer_id is None
    assert order.manufacturer_id is not None


def test_link_rejects_unknown_manufacturer(make_storage):
    async def scenario(store):
        with pytest.raises(ValueError):
            await store.link_product_manufacturer("P-1", 404)
        with pytest.raises(ValueError):
            await store.link_product_manufacturer("  ", 1)

    run(scenario, make_storage)


def test_exclusion_matcher_reads_enabled_patterns_in_creation_order(make_storage):
    async def scenario(store):
        async with store.get_session() as session:
            session.add(ExclusionPattern(pattern="배송", description="첫 규칙"))
            await session.commit()
            session.add_all([
                ExclusionPattern(pattern="직배송", description="두번째"),
                ExclusionPattern(pattern="택배", enabled=False),
                Setting(key="exclusion_enabled", value="maybe"),
            ])
            await session.commit()
        return await store.load_exclusion_matcher()

    matcher = run(scenario, make_storage)

    assert matcher.enabled is True
    assert [r.pattern for r in matcher.rules] == ["배송", "직배송"]
    assert matcher.match("업체직배송") == "첫 규칙"
    assert matcher.match("택배") is None


def test_upload_lifecycle(make_storage):
    async def scenario(store):
        upload_id = await store.create_upload("orders.xlsx", 1234, "shopping_mall")
        await store.finish_upload(
            upload_id, status="completed", total_orders=3, processed_orders=2, error_orders=1,
            metadata={"v": 1, "kind": "shopping_mall_upload_meta"},
        )
        return upload_id, await store.get_upload(upload_id), await store.list_uploads(10)

    upload_id, upload, history = run(scenario, make_storage)

    assert upload.status == "completed"
    assert (upload.total_orders, upload.processed_orders, upload.error_orders) == (3, 2, 1)
    assert upload.metadata_json["v"] == 1
    assert [u.id for u in history] == [upload_id]


def test_chunking_respects_bind_parameter_limit():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []
    assert chunk_size_for(30, 1500) == 1000
    assert chunk_size_for(6, 1500) == 1500
