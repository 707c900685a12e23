"""
Bulk Persistence Stage
Chunked, idempotent writes executed inside the caller's transaction:
manufacturer auto-create, option-mapping candidate registration, product
insert + fill-only update, and the final order insert.

Every insert is ON CONFLICT DO NOTHING (no check-then-insert), and the
product update re-checks "currently empty" in its WHERE clause, so racing
uploads degrade to no-ops instead of constraint violations.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, func, literal, null, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database import Manufacturer, OptionMapping, Order, Product
from schemas import OptionCandidate, ProductAggregate
from settings import INSERT_CHUNK_SIZE, UPDATE_CHUNK_SIZE
from services.lookup_maps import LookupMaps, ManufacturerInfo, OptionKey, normalize_key
from services.manufacturer_resolution import resolve_manufacturer_id
from utils import chunk_size_for, chunked

logger = logging.getLogger(__name__)

_PRODUCT_COLUMNS = ("product_code", "product_name", "option_name", "manufacturer_id", "price", "cost")


def _insert(session: AsyncSession, model):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Bulk persistence does not support dialect {dialect!r}")


async def auto_create_manufacturers(
    session: AsyncSession,
    names: Iterable[str],
    maps: LookupMaps,
) -> List[str]:
    """Insert unseen manufacturer names; returns the names this call actually created.

    Ids of created (and concurrently created) names are merged into ``maps``.
    """
    canonical: Dict[str, str] = {}
    for raw in names:
        name = (raw or "").strip()
        key = normalize_key(name)
        if key and key not in canonical and maps.manufacturer(name) is None:
            canonical[key] = name
    if not canonical:
        return []

    created: List[str] = []
    for group in chunked(list(canonical.values()), INSERT_CHUNK_SIZE):
        stmt = (
            _insert(session, Manufacturer)
            .values([{"name": n} for n in group])
            .on_conflict_do_nothing()
            .returning(Manufacturer.name)
        )
        result = await session.execute(stmt)
        created.extend(result.scalars().all())

    for group in chunked(list(canonical.keys()), INSERT_CHUNK_SIZE):
        rows = await session.execute(
            select(Manufacturer.id, Manufacturer.name).where(func.lower(Manufacturer.name).in_(group))
        )
        maps.add_manufacturers(ManufacturerInfo(id=r.id, name=r.name) for r in rows)

    logger.info(f"Manufacturers: candidates={len(canonical)} created={len(created)}")
    return created


async def register_option_candidates(
    session: AsyncSession,
    candidates: Iterable[OptionCandidate],
    maps: LookupMaps,
) -> int:
    """Insert (product code, option name) rows with a NULL manufacturer for manual mapping."""
    values: Dict[OptionKey, Dict[str, Any]] = {}
    for c in candidates:
        product_code = (c.product_code or "").strip()
        option_name = (c.option_name or "").strip()
        key = OptionKey.of(product_code, option_name)
        if not key or key in values or key in maps.options:
            continue
        trimmed = OptionCandidate(product_code, option_name)
        if _resolve_candidate(trimmed, maps) is not None:
            continue
        values[key] = {"product_code": product_code, "option_name": option_name, "manufacturer_id": None}
    if not values:
        return 0

    registered = 0
    for group in chunked(list(values.values()), INSERT_CHUNK_SIZE):
        stmt = (
            _insert(session, OptionMapping)
            .values(group)
            .on_conflict_do_nothing()
            .returning(OptionMapping.id)
        )
        result = await session.execute(stmt)
        registered += len(result.scalars().all())

    logger.info(f"Option candidates: submitted={len(values)} registered={registered}")
    return registered


class _CandidateView:
    __slots__ = ("manufacturer_name", "product_code", "option_name")

    def __init__(self, product_code: str, option_name: Optional[str], manufacturer_name: Optional[str] = None):
        self.product_code = product_code
        self.option_name = option_name
        self.manufacturer_name = manufacturer_name


def _resolve_candidate(candidate: OptionCandidate, maps: LookupMaps) -> Optional[int]:
    return resolve_manufacturer_id(_CandidateView(candidate.product_code, candidate.option_name), maps)


def _lookup_case(mapping: Dict[str, Any], key_expr, default):
    """CASE key_expr WHEN k THEN v ... ELSE default; a bare literal when ``mapping`` is empty."""
    if not mapping:
        return default
    return case(mapping, value=key_expr, else_=default)


def prepare_product_values(aggregates: Iterable[ProductAggregate], maps: LookupMaps) -> List[Dict[str, Any]]:
    values: List[Dict[str, Any]] = []
    for agg in aggregates:
        product_code = (agg.product_code or "").strip()
        product_name = (agg.product_name or "").strip()
        if not product_code or not product_name:
            continue
        option_name = (agg.option_name or "").strip() or None
        manufacturer_name = (agg.manufacturer_name or "").strip() or None
        manufacturer_id = resolve_manufacturer_id(
            _CandidateView(product_code, option_name, manufacturer_name), maps, use_product_mapping=False
        )
        values.append({
            "product_code": product_code,
            "product_name": product_name,
            "option_name": option_name,
            "manufacturer_id": manufacturer_id,
            "price": max(0, int(agg.price or 0)),
            "cost": max(0, int(agg.cost or 0)),
        })
    return values


async def apply_product_upserts(
    session: AsyncSession,
    aggregates: Iterable[ProductAggregate],
    maps: LookupMaps,
) -> Tuple[int, int]:
    """Insert unknown products, then fill empty price/cost/manufacturer/option on known ones.

    Returns (inserted, filled).
    """
    values = prepare_product_values(aggregates, maps)
    if not values:
        return 0, 0

    inserted = 0
    for group in chunked(values, chunk_size_for(len(_PRODUCT_COLUMNS), INSERT_CHUNK_SIZE)):
        stmt = (
            _insert(session, Product)
            .values(group)
            .on_conflict_do_nothing()
            .returning(Product.id)
        )
        result = await session.execute(stmt)
        inserted += len(result.scalars().all())

    filled = 0
    code_key = func.lower(Product.product_code)
    for group in chunked(values, UPDATE_CHUNK_SIZE):
        keys = [normalize_key(v["product_code"]) for v in group]
        new_price = _lookup_case({normalize_key(v["product_code"]): v["price"] for v in group if v["price"] > 0},
                                 code_key, literal(0))
        new_cost = _lookup_case({normalize_key(v["product_code"]): v["cost"] for v in group if v["cost"] > 0},
                                code_key, literal(0))
        new_manufacturer = _lookup_case(
            {normalize_key(v["product_code"]): v["manufacturer_id"] for v in group if v["manufacturer_id"] is not None},
            code_key, null(),
        )
        new_option = _lookup_case(
            {normalize_key(v["product_code"]): v["option_name"] for v in group if v["option_name"]},
            code_key, null(),
        )

        price_empty = and_(Product.price == 0, new_price > 0)
        cost_empty = and_(Product.cost == 0, new_cost > 0)
        manufacturer_empty = and_(Product.manufacturer_id.is_(None), new_manufacturer.is_not(None))
        option_empty = and_(
            or_(Product.option_name.is_(None), Product.option_name == ""),
            new_option.is_not(None),
        )

        stmt = (
            update(Product)
            .where(code_key.in_(keys))
            .where(or_(price_empty, cost_empty, manufacturer_empty, option_empty))
            .values(
                price=case((price_empty, new_price), else_=Product.price),
                cost=case((cost_empty, new_cost), else_=Product.cost),
                manufacturer_id=func.coalesce(Product.manufacturer_id, new_manufacturer),
                option_name=case((option_empty, new_option), else_=Product.option_name),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        filled += max(result.rowcount or 0, 0)

    logger.info(f"Products: submitted={len(values)} inserted={inserted} filled={filled}")
    return inserted, filled


async def insert_orders(session: AsyncSession, order_values: Sequence[Dict[str, Any]]) -> List[str]:
    """Idempotent order insert keyed on order number; returns the order numbers actually inserted."""
    if not order_values:
        return []
    inserted: List[str] = []
    size = chunk_size_for(len(order_values[0]), INSERT_CHUNK_SIZE)
    for group in chunked(list(order_values), size):
        stmt = (
            _insert(session, Order)
            .values(group)
            .on_conflict_do_nothing()
            .returning(Order.order_number)
        )
        result = await session.execute(stmt)
        inserted.extend(result.scalars().all())

    logger.info(f"Orders: submitted={len(order_values)} inserted={len(inserted)} "
                f"duplicates={len(order_values) - len(inserted)}")
    return inserted
