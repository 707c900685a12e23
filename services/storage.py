"""
Storage Service Layer
Provides database operations for ingestion: upload audit records, lookup
snapshots, templates, exclusion settings and manufacturer linking.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy import select, desc, func, update
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar
import logging
import time

from database import (
    AsyncSessionLocal, Manufacturer, Product, OptionMapping, Order, Upload,
    ShoppingMallTemplate, ExclusionPattern, Setting,
)
from settings import EXCLUSION_ENABLED_SETTING_KEY, LOOKUP_SNAPSHOT_POLICY, parse_bool_setting
from services.exclusion import ExclusionMatcher, ExclusionRule
from services.lookup_maps import (
    LookupMaps, ManufacturerInfo, ProductInfo, OptionMappingInfo, build_lookup_maps, normalize_key,
)
from utils import chunked, retry_async, sanitize_string

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageService:
    """Storage service providing database operations"""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def get_session(self) -> AsyncSession:
        """Get database session context manager"""
        factory = self._session_factory or AsyncSessionLocal
        return factory()

    async def run_in_transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``work`` in one transaction; transient failures retry the whole transaction."""

        @retry_async(max_retries=2)
        async def _attempt() -> T:
            async with self.get_session() as session:
                async with session.begin():
                    return await work(session)

        return await _attempt()

    # ---------- Uploads ----------

    async def create_upload(
        self,
        file_name: str,
        file_size: int,
        file_type: str,
        shopping_mall_id: Optional[int] = None,
    ) -> str:
        async with self.get_session() as session:
            upload = Upload(
                file_name=sanitize_string(file_name, max_length=500, default="upload.xlsx"),
                file_size=int(file_size or 0),
                file_type=file_type,
                shopping_mall_id=shopping_mall_id,
                status="processing",
            )
            session.add(upload)
            await session.commit()
            await session.refresh(upload)
            logger.info(f"[{upload.id}] Upload record created file={upload.file_name} type={file_type}")
            return upload.id

    async def finish_upload(
        self,
        upload_id: str,
        *,
        status: str,
        total_orders: int = 0,
        processed_orders: int = 0,
        error_orders: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
        source_snapshot: Optional[Dict[str, Any]] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": status,
            "total_orders": total_orders,
            "processed_orders": processed_orders,
            "error_orders": error_orders,
            "error_message": sanitize_string(error_message, max_length=2000) if error_message else None,
            "updated_at": func.now(),
        }
        if metadata is not None:
            values["metadata_json"] = metadata
        if source_snapshot is not None:
            values["source_snapshot"] = source_snapshot
        async with self.get_session() as session:
            await session.execute(update(Upload).where(Upload.id == upload_id).values(**values))
            await session.commit()
        logger.info(
            f"[{upload_id}] Upload marked {status} total={total_orders} "
            f"processed={processed_orders} errors={error_orders}"
        )

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        async with self.get_session() as session:
            return await session.get(Upload, upload_id)

    async def list_uploads(self, limit: int = 50) -> List[Upload]:
        limit = max(1, min(int(limit or 50), 500))
        async with self.get_session() as session:
            result = await session.execute(
                select(Upload).order_by(desc(Upload.uploaded_at), desc(Upload.id)).limit(limit)
            )
            return list(result.scalars().all())

    async def get_orders_by_numbers(self, order_numbers: List[str]) -> List[Order]:
        """Stored orders for the given order numbers, in request order; unknown numbers are skipped."""
        numbers = list(dict.fromkeys(n.strip() for n in order_numbers if n and n.strip()))
        if not numbers:
            return []
        found: Dict[str, Order] = {}
        async with self.get_session() as session:
            for chunk in chunked(numbers, 1000):
                result = await session.execute(select(Order).where(Order.order_number.in_(chunk)))
                found.update((o.order_number, o) for o in result.scalars().all())
        return [found[n] for n in numbers if n in found]

    # ---------- Snapshots (read once per ingestion run) ----------

    @retry_async()
    async def load_lookup_maps(self) -> LookupMaps:
        start = time.time()
        async with self.get_session() as session:
            manufacturers = (await session.execute(select(Manufacturer.id, Manufacturer.name))).all()
            products = (await session.execute(select(Product.product_code, Product.manufacturer_id))).all()
            options = (await session.execute(
                select(OptionMapping.product_code, OptionMapping.option_name, OptionMapping.manufacturer_id)
            )).all()

        maps = build_lookup_maps(
            (ManufacturerInfo(id=r.id, name=r.name) for r in manufacturers),
            (ProductInfo(product_code=r.product_code, manufacturer_id=r.manufacturer_id) for r in products),
            (OptionMappingInfo(product_code=r.product_code, option_name=r.option_name,
                               manufacturer_id=r.manufacturer_id) for r in options),
        )
        dur_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Lookup snapshot: manufacturers={len(maps.manufacturers)} products={len(maps.products)} "
            f"options={len(maps.options)} policy={LOOKUP_SNAPSHOT_POLICY} durMs={dur_ms}"
        )
        return maps

    @retry_async()
    async def load_exclusion_matcher(self) -> ExclusionMatcher:
        async with self.get_session() as session:
            setting = await session.get(Setting, EXCLUSION_ENABLED_SETTING_KEY)
            if not parse_bool_setting(setting.value if setting else None, default=True):
                return ExclusionMatcher.disabled()
            result = await session.execute(
                select(ExclusionPattern)
                .where(ExclusionPattern.enabled.is_(True))
                .order_by(ExclusionPattern.created_at, ExclusionPattern.id)
            )
            rules = [ExclusionRule(pattern=p.pattern, description=p.description) for p in result.scalars()]
        return ExclusionMatcher(rules)

    # ---------- Templates ----------

    async def get_template(self, mall_id: int) -> Optional[ShoppingMallTemplate]:
        async with self.get_session() as session:
            return await session.get(ShoppingMallTemplate, mall_id)

    # ---------- Manufacturer linking ----------

    async def link_product_manufacturer(
        self,
        product_code: str,
        manufacturer_id: Optional[int],
        product_name: Optional[str] = None,
    ) -> int:
        """Link a product code to a manufacturer and backfill unmatched orders.

        Unlinking (manufacturer_id=None) only clears the product link. Orders that
        are excluded, already matched or already completed are never touched.
        Returns the number of orders updated.
        """
        code = (product_code or "").strip()
        if not code:
            raise ValueError("상품코드를 확인해 주세요.")
        key = normalize_key(code)

        async with self.get_session() as session:
            async with session.begin():
                if manufacturer_id is None:
                    await session.execute(
                        update(Product)
                        .where(func.lower(Product.product_code) == key)
                        .values(manufacturer_id=None, updated_at=func.now())
                        .execution_options(synchronize_session=False)
                    )
                    logger.info(f"Product {code} unlinked from manufacturer")
                    return 0

                manufacturer = await session.get(Manufacturer, manufacturer_id)
                if manufacturer is None:
                    raise ValueError("제조사를 찾을 수 없어요.")

                linked = await session.execute(
                    update(Product)
                    .where(func.lower(Product.product_code) == key)
                    .values(manufacturer_id=manufacturer.id, updated_at=func.now())
                    .execution_options(synchronize_session=False)
                )
                if not linked.rowcount:
                    sample = (await session.execute(
                        select(Order.product_name, Order.option_name)
                        .where(func.lower(func.trim(Order.product_code)) == key)
                        .limit(1)
                    )).first()
                    session.add(Product(
                        product_code=code,
                        product_name=(product_name or "").strip() or (sample.product_name if sample else None) or code,
                        option_name=sample.option_name if sample else None,
                        manufacturer_id=manufacturer.id,
                    ))

                result = await session.execute(
                    update(Order)
                    .where(
                        Order.manufacturer_id.is_(None),
                        Order.excluded_reason.is_(None),
                        func.lower(func.trim(Order.product_code)) == key,
                        Order.status != "completed",
                    )
                    .values(manufacturer_id=manufacturer.id, manufacturer_name=manufacturer.name)
                    .execution_options(synchronize_session=False)
                )
                updated = max(result.rowcount or 0, 0)

        logger.info(f"Product {code} linked to manufacturer {manufacturer_id}; backfilled orders={updated}")
        return updated


# Global storage instance
storage = StorageService()
