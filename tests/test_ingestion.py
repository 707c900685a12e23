import asyncio
import io
import json
from decimal import Decimal

import pytest
from openpyxl import load_workbook
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from database import (
    ExclusionPattern, Manufacturer, OptionMapping, Order, Product, Setting, ShoppingMallTemplate, Upload,
)
from services.errors import (
    ExportUnavailableError, HeaderMismatchError, PersistenceError, TemplateNotFoundError, UploadNotFoundError,
)
from services.ingestion import IngestionService

MALL_COLUMNS = {
    "주문번호": "orderNumber",
    "상품번호": "mallProductNumber",
    "상품명": "productName",
    "옵션": "optionName",
    "수량": "quantity",
    "결제금액": "paymentAmount",
    "원가": "cost",
    "제조사": "manufacturer",
    "배송구분": "fulfillmentType",
}
MALL_HEADER = list(MALL_COLUMNS)


def order_row(order_number, mpn, name, qty="1", amount="", cost="", manufacturer="", option="", fulfillment=""):
    return [order_number, mpn, name, option, qty, amount, cost, manufacturer, fulfillment]


async def fetch_all(store, stmt):
    async with store.get_session() as session:
        return list((await session.execute(stmt)).scalars().all())


def run(scenario, make_storage):
    async def _main():
        engine, store = await make_storage()
        try:
            return await scenario(store)
        finally:
            await engine.dispose()

    return asyncio.run(_main())


def test_three_row_file_reports_processed_error_and_duplicate(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("A1", "100", "X", qty="2", amount="1,000"),
        order_row("", "200", "Y", qty="1", amount="500"),
        order_row("A1", "100", "X", qty="2", amount="1,000"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        result = await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        orders = await fetch_all(store, select(Order))
        upload = await store.get_upload(result.upload_id)
        return result, orders, upload

    result, orders, upload = run(scenario, make_storage)

    assert result.total_orders == 3
    assert result.processed_orders == 1
    assert result.error_orders == 1
    assert result.duplicate_orders == 1
    assert [e.row for e in result.errors] == [3]
    assert [o.order_number for o in orders] == ["A1"]
    assert orders[0].product_code == "mallX::100"
    assert orders[0].payment_amount == Decimal("1000")
    assert orders[0].quantity == 2
    assert upload.status == "completed"
    assert upload.processed_orders == 1
    assert upload.metadata_json["kind"] == "shopping_mall_upload_meta"
    assert upload.metadata_json["errorSamples"][0]["row"] == 3
    assert result.summary == {"totalAmount": 2000, "totalCost": 0, "estimatedMargin": None}
    assert result.to_dict()["orderNumbers"] == ["A1"]
    assert [r["rowNumber"] for r in upload.source_snapshot["dataRows"]] == [2, 4]


def test_reupload_of_identical_file_inserts_nothing(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("R1", "100", "X", amount="1000", manufacturer="Acme"),
        order_row("R2", "101", "Z", amount="2000", option="blue"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        service = IngestionService(store)
        first = await service.ingest_shopping_mall(content, "orders.xlsx", mall_id)
        second = await service.ingest_shopping_mall(content, "orders.xlsx", mall_id)
        orders = await fetch_all(store, select(Order))
        manufacturers = await fetch_all(store, select(Manufacturer))
        options = await fetch_all(store, select(OptionMapping))
        products = await fetch_all(store, select(Product))
        return first, second, orders, manufacturers, options, products

    first, second, orders, manufacturers, options, products = run(scenario, make_storage)

    assert first.processed_orders == 2
    assert first.auto_created_manufacturers == ["Acme"]
    assert second.processed_orders == 0
    assert second.duplicate_orders == 2
    assert second.auto_created_manufacturers == []
    assert len(orders) == 2
    assert [m.name for m in manufacturers] == ["Acme"]
    assert [(o.product_code, o.option_name, o.manufacturer_id) for o in options] == [("mallX::101", "blue", None)]
    assert sorted(p.product_code for p in products) == ["mallX::100", "mallX::101"]


def test_product_fill_forward_never_overwrites(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("F1", "100", "X", qty="1", amount="500", cost="300"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        async with store.get_session() as session:
            session.add(Product(product_code="mallX::100", product_name="X", price=1000, cost=0))
            await session.commit()
        await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        return await fetch_all(store, select(Product))

    products = run(scenario, make_storage)

    assert len(products) == 1
    assert products[0].price == 1000
    assert products[0].cost == 300


def test_file_manufacturer_name_beats_option_mapping(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("T1", "100", "X", amount="1000", manufacturer="A", option="red"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        async with store.get_session() as session:
            a, b = Manufacturer(name="A"), Manufacturer(name="B")
            session.add_all([a, b])
            await session.flush()
            session.add(OptionMapping(product_code="mallX::100", option_name="red", manufacturer_id=b.id))
            await session.commit()
            a_id = a.id
        result = await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        orders = await fetch_all(store, select(Order))
        return a_id, result, orders

    a_id, result, orders = run(scenario, make_storage)

    assert orders[0].manufacturer_id == a_id
    assert result.manufacturer_breakdown[0]["name"] == "A"
    assert result.auto_created_manufacturers == []


def test_same_mall_product_number_in_two_malls_does_not_collide(make_storage, add_mall_template, xlsx):
    file_x = xlsx([MALL_HEADER, order_row("X-1", "123", "X product", amount="1000")])
    file_y = xlsx([MALL_HEADER, order_row("Y-1", "123", "Y product", amount="2000")])

    async def scenario(store):
        mall_x = await add_mall_template(store, "mallX", MALL_COLUMNS)
        mall_y = await add_mall_template(store, "mallY", MALL_COLUMNS)
        service = IngestionService(store)
        await service.ingest_shopping_mall(file_x, "x.xlsx", mall_x)
        await service.ingest_shopping_mall(file_y, "y.xlsx", mall_y)
        return await fetch_all(store, select(Product).order_by(Product.product_code))

    products = run(scenario, make_storage)

    assert [(p.product_code, p.product_name, p.price) for p in products] == [
        ("mallX::123", "X product", 1000),
        ("mallY::123", "Y product", 2000),
    ]


def test_convert_skips_rows_without_order_number(make_storage, add_mall_template, xlsx):
    content = xlsx([
        ["2026 주문 내역"],
        MALL_HEADER,
        order_row("C1", "100", "X", amount="1000"),
        order_row("", "200", "Y", amount="500"),
        [None] * len(MALL_HEADER),
        order_row("C2", "300", "W", amount="700"),
    ])
    export_columns = [
        {"source": {"type": "input", "columnIndex": 1}},
        {"header": "품목", "source": {"type": "input", "columnIndex": 3}},
        {"header": "구분", "source": {"type": "const", "value": "일반"}},
    ]

    async def scenario(store):
        mall_id = await add_mall_template(
            store, "mallX", MALL_COLUMNS, export_columns, header_row=2, data_start_row=3,
        )
        service = IngestionService(store)
        upload_id, template, outcome = await service.convert_shopping_mall(content, "orders.xlsx", mall_id)
        result = await service.persist_transformed(upload_id, template, outcome, "orders.xlsx")
        return outcome, result

    outcome, result = run(scenario, make_storage)

    wb = load_workbook(io.BytesIO(outcome.output))
    data = [list(r) for r in wb["주문목록"].iter_rows(values_only=True)]
    assert data[0][0] == "2026 주문 내역"
    assert data[1] == ["주문번호", "품목", "구분"]
    assert data[2:] == [["C1", "X", "일반"], ["C2", "W", "일반"]]
    errors = [list(r) for r in wb["errors"].iter_rows(values_only=True)]
    assert errors[0] == ["row", "message"]
    assert errors[1][0] == 4

    assert result.total_orders == 3
    assert result.processed_orders == 2
    assert result.error_orders == 1
    assert result.errors[0].row == 4


def test_convert_lists_kept_rows_with_bad_amounts_on_errors_sheet(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("G1", "100", "X", amount="무료")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        _, _, outcome = await IngestionService(store).convert_shopping_mall(content, "orders.xlsx", mall_id)
        return outcome

    outcome = run(scenario, make_storage)

    wb = load_workbook(io.BytesIO(outcome.output))
    assert [r[0] for r in wb["주문목록"].iter_rows(values_only=True)] == ["주문번호", "G1"]
    errors = [list(r) for r in wb["errors"].iter_rows(values_only=True)]
    assert errors[1][0] == 2
    assert errors[1][1].startswith("숫자가 아니에요")
    assert outcome.skipped_rows == 0


def test_two_runs_introducing_same_manufacturer_create_one_row(make_storage, add_mall_template, xlsx):
    file_a = xlsx([MALL_HEADER, order_row("N-A", "100", "X", amount="1000", manufacturer="NewCo")])
    file_b = xlsx([MALL_HEADER, order_row("N-B", "101", "Z", amount="1000", manufacturer="newco")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        service = IngestionService(store)
        # run A took its snapshot before run B committed NewCo
        stale = await store.load_lookup_maps()
        result_b = await service.ingest_shopping_mall(file_b, "b.xlsx", mall_id)

        async def stale_snapshot():
            return stale

        store.load_lookup_maps = stale_snapshot
        result_a = await service.ingest_shopping_mall(file_a, "a.xlsx", mall_id)
        manufacturers = await fetch_all(store, select(Manufacturer))
        orders = await fetch_all(store, select(Order))
        return result_a, result_b, manufacturers, orders

    result_a, result_b, manufacturers, orders = run(scenario, make_storage)

    assert len(manufacturers) == 1
    assert manufacturers[0].name == "newco"
    assert result_b.auto_created_manufacturers == ["newco"]
    assert result_a.auto_created_manufacturers == []
    assert result_a.processed_orders == 1
    assert {o.manufacturer_id for o in orders} == {manufacturers[0].id}


def test_excluded_orders_are_stored_with_reason(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("E1", "100", "X", amount="1000", fulfillment="업체직배송"),
        order_row("E2", "101", "Z", amount="1000", fulfillment="택배"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        async with store.get_session() as session:
            session.add(ExclusionPattern(pattern="직배송", description="직배송 제외"))
            await session.commit()
        result = await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        orders = await fetch_all(store, select(Order).order_by(Order.order_number))
        return result, orders

    result, orders = run(scenario, make_storage)

    assert result.processed_orders == 2
    assert [(o.order_number, o.excluded_reason) for o in orders] == [("E1", "직배송 제외"), ("E2", None)]


def test_exclusion_can_be_switched_off(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("E1", "100", "X", amount="1000", fulfillment="업체직배송")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        async with store.get_session() as session:
            session.add_all([
                ExclusionPattern(pattern="직배송"),
                Setting(key="exclusion_enabled", value="false"),
            ])
            await session.commit()
        await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        return await fetch_all(store, select(Order))

    orders = run(scenario, make_storage)

    assert orders[0].excluded_reason is None


def test_platform_file_uses_fixed_column_layout(make_storage, xlsx):
    header = [f"col{i}" for i in range(1, 31)]
    row = [""] * 30
    row[0] = "Widget"          # A product name
    row[1] = "3"               # B quantity
    row[3] = "Kim"             # D recipient
    row[11] = "mallZ"          # L site
    row[12] = "Acme"           # M manufacturer
    row[13] = "CJ"             # N courier
    row[16] = "P-1"            # Q order number
    row[17] = "555"            # R mall product number
    row[19] = "직택배"          # T fulfillment type
    row[20] = "3000"           # U payment amount
    row[27] = "OWN-9"          # AB own product code
    row[29] = "1500"           # AD cost
    content = xlsx([header, row])

    async def scenario(store):
        result = await IngestionService(store).ingest_platform(content, "platform.xlsx")
        orders = await fetch_all(store, select(Order))
        products = await fetch_all(store, select(Product))
        upload = await store.get_upload(result.upload_id)
        return result, orders, products, upload

    result, orders, products, upload = run(scenario, make_storage)

    order = orders[0]
    assert result.mall_name == "사방넷"
    assert result.processed_orders == 1
    assert order.product_code == "OWN-9"
    assert order.shopping_mall == "mallZ"
    assert order.courier == "직택배"
    assert order.quantity == 3
    assert order.manufacturer_name == "Acme"
    assert order.manufacturer_id is not None
    assert [(p.product_code, p.price, p.cost) for p in products] == [("OWN-9", 1000, 500)]
    assert upload.file_type == "platform"


def test_header_mismatch_marks_upload_error(make_storage, add_mall_template, xlsx):
    content = xlsx([["주문번호", "상품명"], ["H1", "X"]])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        with pytest.raises(HeaderMismatchError) as excinfo:
            await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        uploads = await fetch_all(store, select(Upload))
        return excinfo.value, uploads

    error, uploads = run(scenario, make_storage)

    assert "상품번호" in error.missing
    assert "배송구분" in error.missing
    assert error.status_code == 400
    assert uploads[0].status == "error"
    assert uploads[0].processed_orders == 0


def test_unknown_or_disabled_template_is_not_found(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER])

    async def scenario(store):
        disabled = await add_mall_template(store, "mallOff", MALL_COLUMNS, enabled=False)
        service = IngestionService(store)
        with pytest.raises(TemplateNotFoundError):
            await service.ingest_shopping_mall(content, "orders.xlsx", disabled)
        with pytest.raises(TemplateNotFoundError):
            await service.ingest_shopping_mall(content, "orders.xlsx", 9999)
        return await fetch_all(store, select(Upload))

    assert run(scenario, make_storage) == []


def test_bad_amount_is_reported_but_row_is_kept(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("B1", "100", "X", amount="무료")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        result = await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        orders = await fetch_all(store, select(Order))
        return result, orders

    result, orders = run(scenario, make_storage)

    assert result.processed_orders == 1
    assert result.error_orders == 0
    assert result.errors[0].row == 2
    assert result.errors[0].product_code == "mallX::100"
    assert orders[0].payment_amount == Decimal("0")


def test_persistence_failure_marks_upload_error(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("P1", "100", "X", amount="1000")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)

        async def broken(work):
            raise RuntimeError("disk full")

        store.run_in_transaction = broken
        service = IngestionService(store)
        with pytest.raises(PersistenceError) as excinfo:
            await service.ingest_shopping_mall(content, "orders.xlsx", mall_id)
        upload = await store.get_upload(excinfo.value.upload_id)
        orders = await fetch_all(store, select(Order))
        return upload, orders

    upload, orders = run(scenario, make_storage)

    assert upload.status == "error"
    assert "disk full" in upload.error_message
    assert upload.processed_orders == 0
    assert orders == []


def test_snapshot_load_failure_marks_upload_error(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("S1", "100", "X", amount="1000")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)

        async def unreachable():
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

        store.load_lookup_maps = unreachable
        with pytest.raises(PersistenceError) as excinfo:
            await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        upload = await store.get_upload(excinfo.value.upload_id)
        orders = await fetch_all(store, select(Order))
        return excinfo.value, upload, orders

    error, upload, orders = run(scenario, make_storage)

    assert isinstance(error.original, OperationalError)
    assert upload.status == "error"
    assert "connection refused" in upload.error_message
    assert (upload.total_orders, upload.processed_orders, upload.error_orders) == (0, 0, 0)
    assert upload.metadata_json["summary"]["totalAmount"] == 0
    assert orders == []


def test_unexpected_transform_failure_marks_upload_error(make_storage, add_mall_template, xlsx, monkeypatch):
    content = xlsx([MALL_HEADER, order_row("U1", "100", "X", amount="1000")])

    def broken_transform(*args):
        raise ValueError("merged cell range out of bounds")

    monkeypatch.setattr("services.ingestion.transform_file", broken_transform)

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        with pytest.raises(PersistenceError) as excinfo:
            await IngestionService(store).ingest_shopping_mall(content, "orders.xlsx", mall_id)
        return excinfo.value, await store.get_upload(excinfo.value.upload_id)

    error, upload = run(scenario, make_storage)

    assert error.upload_id == upload.id
    assert upload.status == "error"
    assert "merged cell range" in upload.error_message


def test_background_ingestion_records_unexpected_failure(make_storage, add_mall_template, xlsx):
    content = xlsx([MALL_HEADER, order_row("K1", "100", "X", amount="1000")])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        service = IngestionService(store)
        upload_id = await store.create_upload("orders.xlsx", len(content), "shopping_mall", mall_id)

        async def crashing(*args, **kwargs):
            raise KeyError("site")

        service.ingest_shopping_mall = crashing
        await service.ingest_in_background(upload_id, content, "orders.xlsx", mall_id)
        return await store.get_upload(upload_id)

    upload = run(scenario, make_storage)

    assert upload.status == "error"
    assert upload.error_message.startswith("KeyError")


def test_shopping_mall_export_uses_current_layout_and_kept_rows(make_storage, add_mall_template, xlsx):
    content = xlsx([
        ["2026 주문 내역"],
        MALL_HEADER,
        order_row("D1", "100", "X", amount="1000"),
        order_row("", "200", "Y", amount="500"),
        order_row("D2", "300", "W", amount="700"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS, header_row=2, data_start_row=3)
        service = IngestionService(store)
        result = await service.ingest_shopping_mall(content, "orders.xlsx", mall_id)
        async with store.get_session() as session:
            await session.execute(
                update(ShoppingMallTemplate).where(ShoppingMallTemplate.id == mall_id).values(
                    export_config=json.dumps({"copyPrefixRows": False, "columns": [
                        {"header": "상품", "source": {"type": "input", "columnIndex": 3}},
                        {"source": {"type": "input", "columnIndex": 1}},
                    ]}),
                    enabled=False,
                )
            )
            await session.commit()
        return await service.export_shopping_mall(result.upload_id)

    template, upload, output = run(scenario, make_storage)

    wb = load_workbook(io.BytesIO(output))
    assert wb.sheetnames == ["주문목록"]
    data = [list(r) for r in wb["주문목록"].iter_rows(values_only=True)]
    assert data == [["상품", "주문번호"], ["X", "D1"], ["W", "D2"]]
    assert template.display_name == "mallX"
    assert upload.source_snapshot["prefixRows"][0][0] == "2026 주문 내역"


def test_shopping_mall_export_refusals(make_storage, xlsx):
    header = [f"col{i}" for i in range(1, 31)]
    row = [""] * 30
    row[16] = "PF-1"
    content = xlsx([header, row])

    async def scenario(store):
        service = IngestionService(store)
        platform = await service.ingest_platform(content, "platform.xlsx")
        with pytest.raises(ExportUnavailableError):
            await service.export_shopping_mall(platform.upload_id)
        with pytest.raises(UploadNotFoundError):
            await service.export_shopping_mall("missing")

    run(scenario, make_storage)


def test_platform_export_lists_stored_orders_in_request_order(make_storage, add_mall_template, xlsx):
    content = xlsx([
        MALL_HEADER,
        order_row("X1", "100", "Widget", qty="2", amount="3,000", cost="1200", manufacturer="Acme"),
        order_row("X2", "200", "Gadget", amount="500", option="blue"),
    ])

    async def scenario(store):
        mall_id = await add_mall_template(store, "mallX", MALL_COLUMNS)
        service = IngestionService(store)
        result = await service.ingest_shopping_mall(content, "orders.xlsx", mall_id)
        output = await service.export_platform(["X2", "X1", "nope"])
        with pytest.raises(UploadNotFoundError):
            await service.export_platform(["nope"])
        return result, output

    result, output = run(scenario, make_storage)

    assert sorted(result.order_numbers) == ["X1", "X2"]
    wb = load_workbook(io.BytesIO(output))
    rows = [list(r) for r in wb["주문데이터"].iter_rows(values_only=True)]
    assert len(rows[0]) == 30
    assert (rows[0][0], rows[0][16], rows[0][29]) == ("상품명", "주문번호", "원가(상품)")
    assert [r[16] for r in rows[1:]] == ["X2", "X1"]
    widget = rows[2]
    assert (widget[0], widget[1], widget[12], widget[20], widget[29]) == ("Widget", 2, "Acme", 3000, 1200)
    assert widget[26] == "mallX::100"
    assert rows[1][18] == "blue"
