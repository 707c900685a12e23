"""
Order Upload Router
Handles platform and shopping-mall order file uploads and workbook re-downloads
"""
from fastapi import APIRouter, UploadFile, File, HTTPException, BackgroundTasks, Depends, Form, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional
from urllib.parse import quote
from datetime import datetime
import logging
import uuid

from database import Upload
from settings import ASYNC_THRESHOLD_BYTES, ERROR_SAMPLE_LIMIT, MAX_UPLOAD_BYTES
from services.errors import UploadValidationError
from services.ingestion import IngestionService, ingestion_service
from services.spreadsheet_reader import ensure_supported_file
from services.template_registry import PLATFORM_TEMPLATE, resolve_template

logger = logging.getLogger(__name__)
router = APIRouter()

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class UploadRecordResponse(BaseModel):
    """Upload audit record as returned to clients."""

    id: str
    file_name: str = Field(..., alias="fileName")
    file_size: int = Field(..., alias="fileSize")
    file_type: str = Field(..., alias="fileType")
    shopping_mall_id: Optional[int] = Field(None, alias="shoppingMallId")
    total_orders: int = Field(0, alias="totalOrders")
    processed_orders: int = Field(0, alias="processedOrders")
    error_orders: int = Field(0, alias="errorOrders")
    status: str
    error_message: Optional[str] = Field(None, alias="errorMessage")
    metadata: Optional[Dict[str, Any]] = None
    uploaded_at: Optional[datetime] = Field(None, alias="uploadedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_model(cls, upload: Upload) -> "UploadRecordResponse":
        return cls(
            id=upload.id,
            file_name=upload.file_name,
            file_size=upload.file_size,
            file_type=upload.file_type,
            shopping_mall_id=upload.shopping_mall_id,
            total_orders=upload.total_orders,
            processed_orders=upload.processed_orders,
            error_orders=upload.error_orders,
            status=upload.status,
            error_message=upload.error_message,
            metadata=upload.metadata_json,
            uploaded_at=upload.uploaded_at,
        )


class ShoppingMallExportRequest(BaseModel):
    upload_id: str = Field(..., alias="uploadId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PlatformExportRequest(BaseModel):
    order_numbers: List[str] = Field(..., alias="orderNumbers", min_length=1)
    mall_name: Optional[str] = Field(None, alias="mallName")

    model_config = ConfigDict(populate_by_name=True)


def get_ingestion_service() -> IngestionService:
    return ingestion_service


async def _read_upload(file: UploadFile, request_id: str) -> bytes:
    logger.info(f"[{request_id}] Upload attempt filename={file.filename!r} content_type={file.content_type!r}")
    try:
        ensure_supported_file(file.filename or "")
    except UploadValidationError as e:
        logger.warning(f"[{request_id}] Reject filename={file.filename!r}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    content = await file.read()
    size = len(content or b"")
    logger.info(f"[{request_id}] Received payload size={size} bytes")
    if size == 0:
        raise HTTPException(status_code=400, detail="빈 파일이에요")
    if size > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail=f"파일이 너무 커요. 최대 {MAX_UPLOAD_BYTES // (1024 * 1024)}MB까지 업로드할 수 있어요")
    return content


def _xlsx_response(content: bytes, download_name: str, upload_id: Optional[str] = None) -> Response:
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(download_name)}"}
    if upload_id:
        headers["X-Upload-Id"] = upload_id
    return Response(content=content, media_type=XLSX_MEDIA_TYPE, headers=headers)


async def _ingest(
    service: IngestionService,
    background_tasks: BackgroundTasks,
    request_id: str,
    file: UploadFile,
    mall_id: Optional[str],
):
    content = await _read_upload(file, request_id)
    file_name = file.filename or "upload.xlsx"
    try:
        template = await resolve_template(mall_id, service.storage) if mall_id is not None else PLATFORM_TEMPLATE

        if len(content) > ASYNC_THRESHOLD_BYTES:
            upload_id = await service.start_upload(file_name, len(content), template)
            background_tasks.add_task(service.ingest_in_background, upload_id, content, file_name, mall_id)
            logger.info(f"[{request_id}] Large file, background ingestion scheduled id={upload_id}")
            return JSONResponse(status_code=202, content={"uploadId": upload_id, "status": "processing"})

        result = await service.ingest(content, file_name, template)
    except UploadValidationError as e:
        logger.warning(f"[{request_id}] Validation failed: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return result.to_dict(error_limit=ERROR_SAMPLE_LIMIT)


@router.post("/upload/shopping-mall")
async def upload_shopping_mall(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    mallId: str = Form(...),
    service: IngestionService = Depends(get_ingestion_service),
):
    request_id = str(uuid.uuid4())
    return await _ingest(service, background_tasks, request_id, file, mallId)


@router.post("/upload/platform")
async def upload_platform(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    service: IngestionService = Depends(get_ingestion_service),
):
    request_id = str(uuid.uuid4())
    return await _ingest(service, background_tasks, request_id, file, None)


@router.post("/upload/shopping-mall/convert")
async def convert_shopping_mall(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    mallId: str = Form(...),
    service: IngestionService = Depends(get_ingestion_service),
):
    """Return the canonical workbook now; database side effects run afterwards.

    Poll GET /api/upload/{id} until status is "completed" before relying on
    auto-created manufacturers or products.
    """
    request_id = str(uuid.uuid4())
    content = await _read_upload(file, request_id)
    file_name = file.filename or "upload.xlsx"
    try:
        upload_id, template, outcome = await service.convert_shopping_mall(content, file_name, mallId)
    except UploadValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    background_tasks.add_task(service.persist_in_background, upload_id, template, outcome, file_name)

    download_name = f"{template.display_name}_{datetime.now().strftime('%Y%m%d')}.xlsx"
    return _xlsx_response(outcome.output or b"", download_name, upload_id)


@router.post("/upload/shopping-mall-export")
async def export_shopping_mall(
    body: ShoppingMallExportRequest,
    service: IngestionService = Depends(get_ingestion_service),
):
    """Download an earlier shopping-mall upload again under the mall's current export layout.

    Rows that failed to parse at upload time were never kept and are not part of the file.
    """
    try:
        template, upload, content = await service.export_shopping_mall(body.upload_id)
    except UploadValidationError as e:
        logger.warning(f"[{body.upload_id}] Re-download refused: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    download_name = f"{template.display_name}_{(upload.uploaded_at or datetime.now()).strftime('%Y%m%d')}.xlsx"
    return _xlsx_response(content, download_name, upload.id)


@router.post("/upload/platform-export")
async def export_platform(
    body: PlatformExportRequest,
    service: IngestionService = Depends(get_ingestion_service),
):
    """Stored orders (by order number) as a workbook in the platform's 30-column layout."""
    try:
        content = await service.export_platform(body.order_numbers)
    except UploadValidationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    download_name = f"사방넷양식_{body.mall_name or '업로드'}_{datetime.now().strftime('%Y%m%d')}.xlsx"
    return _xlsx_response(content, download_name)


@router.get("/upload/history", response_model=List[UploadRecordResponse], response_model_by_alias=True)
async def upload_history(
    limit: int = Query(50, ge=1, le=500),
    service: IngestionService = Depends(get_ingestion_service),
):
    uploads = await service.storage.list_uploads(limit)
    return [UploadRecordResponse.from_model(u) for u in uploads]


@router.get("/upload/{upload_id}", response_model=UploadRecordResponse, response_model_by_alias=True)
async def get_upload(upload_id: str, service: IngestionService = Depends(get_ingestion_service)):
    upload = await service.storage.get_upload(upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="업로드 기록이 없어요")
    return UploadRecordResponse.from_model(upload)
