"""
Ingestion Orchestrator
Wires one upload end to end: template -> streaming transform -> lookup
snapshot -> manufacturer resolution -> exclusion -> bulk persistence, and
records the outcome on the upload audit record. Also regenerates workbooks
for earlier uploads and stored orders.
"""
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy.ext.asyncio import AsyncSession

from database import Upload
from schemas import CanonicalRow, Template, UploadError, UploadResult, build_upload_meta
from settings import ERROR_SAMPLE_LIMIT
from services.bulk_persistence import (
    apply_product_upserts, auto_create_manufacturers, insert_orders, register_option_candidates,
)
from services.errors import (
    ExportUnavailableError, PersistenceError, UploadNotFoundError, UploadValidationError,
)
from services.exclusion import ExclusionMatcher
from services.lookup_maps import LookupMaps
from services.mall_transform import (
    TransformOutcome, build_source_snapshot, render_source_snapshot, transform_file,
)
from services.manufacturer_resolution import resolve_manufacturer_id
from services.order_export import render_platform_orders
from services.order_summary import calculate_manufacturer_breakdown, calculate_summary
from services.storage import StorageService, storage
from services.template_registry import PLATFORM_TEMPLATE, resolve_template, template_from_record

logger = logging.getLogger(__name__)

# Column widths on the orders table; longer source values are cut to fit
_ORDER_TEXT_LIMITS = {
    "mall_order_number": 100,
    "sub_order_number": 100,
    "product_name": 500,
    "option_name": 255,
    "product_abbr": 255,
    "product_code": 255,
    "mall_product_number": 100,
    "model_number": 100,
    "order_name": 255,
    "recipient_name": 255,
    "order_phone": 50,
    "order_mobile": 50,
    "recipient_phone": 50,
    "recipient_mobile": 50,
    "postal_code": 20,
    "address": None,
    "memo": None,
    "shopping_mall": 100,
    "courier": 100,
    "tracking_number": 100,
    "logistics_note": None,
    "fulfillment_type": 100,
}


def build_order_values(
    row: CanonicalRow,
    manufacturer_id: Optional[int],
    excluded_reason: Optional[str],
    upload_id: str,
) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "upload_id": upload_id,
        "order_number": row.order_number[:100],
        "quantity": row.quantity or 1,
        "manufacturer_name": row.manufacturer_name[:255] if row.manufacturer_name else None,
        "manufacturer_id": manufacturer_id,
        "payment_amount": row.payment_amount,
        "cost": row.cost,
        "shipping_cost": row.shipping_cost,
        "excluded_reason": excluded_reason[:255] if excluded_reason else None,
        "status": "pending",
    }
    for key, limit in _ORDER_TEXT_LIMITS.items():
        text = getattr(row, key) or None
        values[key] = text[:limit] if (text and limit) else text
    return values


class IngestionService:
    """Runs ingestion for platform and shopping-mall files."""

    def __init__(self, storage_service: Optional[StorageService] = None):
        self.storage = storage_service or storage

    # ---------- Entry points ----------

    async def ingest_shopping_mall(
        self,
        content: bytes,
        file_name: str,
        mall_id: Union[int, str],
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        template = await resolve_template(mall_id, self.storage)
        return await self.ingest(content, file_name, template, upload_id=upload_id)

    async def ingest_platform(self, content: bytes, file_name: str, upload_id: Optional[str] = None) -> UploadResult:
        return await self.ingest(content, file_name, PLATFORM_TEMPLATE, upload_id=upload_id)

    async def ingest(
        self,
        content: bytes,
        file_name: str,
        template: Template,
        upload_id: Optional[str] = None,
    ) -> UploadResult:
        upload_id = upload_id or await self.start_upload(file_name, len(content), template)
        outcome = await self.transform(upload_id, content, file_name, template)
        return await self.persist_transformed(upload_id, template, outcome, file_name)

    async def convert_shopping_mall(
        self,
        content: bytes,
        file_name: str,
        mall_id: Union[int, str],
    ) -> Tuple[str, Template, TransformOutcome]:
        """Transform and render the canonical workbook; persistence is left to the caller."""
        template = await resolve_template(mall_id, self.storage)
        upload_id = await self.start_upload(file_name, len(content), template)
        outcome = await self.transform(upload_id, content, file_name, template, with_output=True)
        return upload_id, template, outcome

    # ---------- Stages ----------

    async def start_upload(self, file_name: str, file_size: int, template: Template) -> str:
        return await self.storage.create_upload(
            file_name=file_name,
            file_size=file_size,
            file_type=template.file_type,
            shopping_mall_id=template.mall_id,
        )

    async def transform(
        self,
        upload_id: str,
        content: bytes,
        file_name: str,
        template: Template,
        with_output: bool = False,
    ) -> TransformOutcome:
        logger.info(f"[{upload_id}] ========== INGESTION STARTED ==========")
        logger.info(f"[{upload_id}] file={file_name} template={template.mall_name} bytes={len(content)}")
        try:
            return await asyncio.to_thread(transform_file, content, file_name, template, with_output)
        except UploadValidationError as e:
            logger.warning(f"[{upload_id}] Validation failed: {e.message}")
            await self.storage.finish_upload(upload_id, status="error", error_message=e.message)
            raise
        except Exception as e:
            logger.exception(f"[{upload_id}] Transform failed: {e}")
            await self.fail_upload(upload_id, template, e)
            raise PersistenceError(upload_id, e) from e

    async def fail_upload(
        self,
        upload_id: str,
        template: Template,
        error: BaseException,
        errors: Optional[List[UploadError]] = None,
    ) -> None:
        """Mark the upload failed with zeroed counts; the caller re-raises ``error``."""
        try:
            await self.storage.finish_upload(
                upload_id,
                status="error",
                error_message=f"{type(error).__name__}: {error}",
                metadata=build_upload_meta(
                    template.display_name,
                    {"totalAmount": 0, "totalCost": 0, "estimatedMargin": None},
                    errors or [], [], ERROR_SAMPLE_LIMIT,
                ),
            )
        except Exception as e:
            logger.error(f"[{upload_id}] Could not mark upload as failed: {e}")

    async def persist_transformed(
        self,
        upload_id: str,
        template: Template,
        outcome: TransformOutcome,
        file_name: str,
    ) -> UploadResult:
        start = time.time()

        async def work(session: AsyncSession):
            maps = snapshot.copy()
            created = await auto_create_manufacturers(session, outcome.aggregates.manufacturer_names.values(), maps)
            resolved, order_values = self._prepare_orders(outcome.rows, maps, matcher, upload_id)
            await register_option_candidates(session, outcome.aggregates.option_candidates.values(), maps)
            await apply_product_upserts(session, outcome.aggregates.products.values(), maps)
            inserted = await insert_orders(session, order_values)
            return created, resolved, inserted, maps

        try:
            snapshot = await self.storage.load_lookup_maps()
            matcher = await self.storage.load_exclusion_matcher()
            created, resolved, inserted, maps = await self.storage.run_in_transaction(work)
        except Exception as e:
            logger.exception(f"[{upload_id}] Persistence failed, transaction rolled back: {e}")
            await self.fail_upload(upload_id, template, e, outcome.errors)
            raise PersistenceError(upload_id, e) from e

        breakdown = calculate_manufacturer_breakdown(resolved, maps)
        summary = calculate_summary(outcome.aggregates.total_amount, outcome.aggregates.total_cost)
        result = UploadResult(
            upload_id=upload_id,
            file_name=file_name,
            mall_name=template.display_name,
            total_orders=outcome.data_rows,
            processed_orders=len(inserted),
            duplicate_orders=len(outcome.rows) - len(inserted),
            error_orders=outcome.skipped_rows,
            manufacturer_breakdown=breakdown,
            errors=outcome.errors,
            summary=summary,
            auto_created_manufacturers=created,
            order_numbers=inserted,
        )

        await self.storage.finish_upload(
            upload_id,
            status="completed",
            total_orders=result.total_orders,
            processed_orders=result.processed_orders,
            error_orders=result.error_orders,
            metadata=build_upload_meta(template.display_name, summary, outcome.errors, created, ERROR_SAMPLE_LIMIT),
            source_snapshot=build_source_snapshot(outcome, template) if template.file_type == "shopping_mall" else None,
        )

        dur_ms = int((time.time() - start) * 1000)
        logger.info(f"[{upload_id}] ========== INGESTION COMPLETED ==========")
        logger.info(
            f"[{upload_id}] processed={result.processed_orders} duplicates={result.duplicate_orders} "
            f"errors={result.error_orders} autoCreated={len(created)} durMs={dur_ms}"
        )
        return result

    async def persist_in_background(
        self,
        upload_id: str,
        template: Template,
        outcome: TransformOutcome,
        file_name: str,
    ) -> None:
        """Background-task wrapper; failures are already recorded on the upload."""
        try:
            await self.persist_transformed(upload_id, template, outcome, file_name)
        except PersistenceError as e:
            logger.error(f"[{upload_id}] Background persistence failed: {e}")

    async def ingest_in_background(
        self,
        upload_id: str,
        content: bytes,
        file_name: str,
        mall_id: Optional[Union[int, str]] = None,
    ) -> None:
        try:
            if mall_id is None:
                await self.ingest_platform(content, file_name, upload_id=upload_id)
            else:
                await self.ingest_shopping_mall(content, file_name, mall_id, upload_id=upload_id)
        except UploadValidationError as e:
            await self.storage.finish_upload(upload_id, status="error", error_message=e.message)
            logger.error(f"[{upload_id}] Background ingestion rejected: {e.message}")
        except PersistenceError as e:
            logger.error(f"[{upload_id}] Background ingestion failed: {e}")
        except Exception as e:
            logger.exception(f"[{upload_id}] Background ingestion crashed: {e}")
            await self.storage.finish_upload(upload_id, status="error", error_message=f"{type(e).__name__}: {e}")

    # ---------- Re-download ----------

    async def export_shopping_mall(self, upload_id: str) -> Tuple[Template, Upload, bytes]:
        """Regenerate a shopping-mall upload's converted workbook from its stored source snapshot."""
        upload = await self.storage.get_upload(upload_id)
        if upload is None:
            raise UploadNotFoundError("업로드 기록이 없어요")
        if upload.file_type != "shopping_mall":
            raise ExportUnavailableError("쇼핑몰 업로드만 다운로드할 수 있어요")
        if upload.shopping_mall_id is None:
            raise ExportUnavailableError("쇼핑몰 정보가 없어요")
        if not upload.source_snapshot:
            raise ExportUnavailableError("재다운로드를 위한 데이터가 없어요")

        record = await self.storage.get_template(upload.shopping_mall_id)
        if record is None:
            raise UploadNotFoundError("쇼핑몰 템플릿을 찾을 수 없어요")
        # disabled malls keep their old uploads downloadable
        template = template_from_record(record)

        content = await asyncio.to_thread(render_source_snapshot, upload.source_snapshot, template.export_config)
        logger.info(f"[{upload_id}] Re-download rendered template={template.mall_name} bytes={len(content)}")
        return template, upload, content

    async def export_platform(self, order_numbers: List[str]) -> bytes:
        """Stored orders in the platform's 30-column layout."""
        orders = await self.storage.get_orders_by_numbers(order_numbers)
        if not orders:
            raise UploadNotFoundError("주문 데이터가 없어요")
        return await asyncio.to_thread(render_platform_orders, orders)

    @staticmethod
    def _prepare_orders(
        rows: List[CanonicalRow],
        maps: LookupMaps,
        matcher: ExclusionMatcher,
        upload_id: str,
    ) -> Tuple[List[Tuple[CanonicalRow, Optional[int]]], List[Dict[str, Any]]]:
        resolved: List[Tuple[CanonicalRow, Optional[int]]] = []
        values: List[Dict[str, Any]] = []
        excluded = 0
        for row in rows:
            manufacturer_id = resolve_manufacturer_id(row, maps)
            reason = matcher.match(row.fulfillment_type)
            if reason:
                excluded += 1
            resolved.append((row, manufacturer_id))
            values.append(build_order_values(row, manufacturer_id, reason, upload_id))
        unresolved = sum(1 for _, m in resolved if m is None)
        logger.info(f"[{upload_id}] Resolution: orders={len(rows)} unresolved={unresolved} excluded={excluded}")
        return resolved, values


ingestion_service = IngestionService()
