# --- models.py (or the models section of database.py) ---

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import (
    String, Text, Integer, BigInteger, Numeric, DateTime, Boolean, JSON,
    ForeignKey, func, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from sqlalchemy import text
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging, os, time, uuid

# Load environment variables early (before reading DATABASE_URL)
from dotenv import load_dotenv
load_dotenv()

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------
# Engine / Session
# -------------------------------------------------------------------
DATABASE_URL = os.getenv("DATABASE_URL", "")


def build_engine(url: str) -> AsyncEngine:
    """Create the async engine; PostgreSQL via asyncpg, otherwise SQLite via aiosqlite."""
    if url.startswith("postgresql"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return create_async_engine(
            url,
            echo=os.getenv("NODE_ENV") == "development",
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,  # Verify connections before use
            pool_recycle=1800,  # Recycle connections after 30 minutes
            pool_timeout=15,
            connect_args={
                "server_settings": {"application_name": "order_ingestion"},
                "command_timeout": 60,
                "timeout": 30,
            },
        )
    return create_async_engine(
        url or "sqlite+aiosqlite:///:memory:",
        echo=os.getenv("NODE_ENV") == "development",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )


engine = build_engine(DATABASE_URL)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _redact_db_url(url: str) -> str:
    try:
        if "@" in url and "://" in url:
            head, tail = url.split("://", 1)
            creds, hostpart = tail.split("@", 1)
            if ":" in creds:
                user, _pwd = creds.split(":", 1)
                return f"{head}://{user}:******@{hostpart}"
    except ValueError:
        pass
    return url if "@" not in url else "******"


logger.info(f"Creating SQL engine for { _redact_db_url(DATABASE_URL or 'sqlite+aiosqlite:///:memory:') }")

# Portable JSON column: JSONB on PostgreSQL, plain JSON elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only auto-increments INTEGER PRIMARY KEY
IdType = BigInteger().with_variant(Integer(), "sqlite")

# -------------------------------------------------------------------
# Base
# -------------------------------------------------------------------
class Base(DeclarativeBase):
    pass

# -------------------------------------------------------------------
# Reference data
# -------------------------------------------------------------------

class Manufacturer(Base):
    __tablename__ = "manufacturers"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # Canonical key; uniqueness is also enforced on lower(name) below
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cc_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    order_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_order_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    products = relationship("Product", back_populates="manufacturer")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # "{site}::{mallProductNumber}" for mall uploads, platform product code otherwise
    product_code: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    product_name: Mapped[str] = mapped_column(String(500), nullable=False)
    option_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manufacturer_id: Mapped[Optional[int]] = mapped_column(
        IdType, ForeignKey("manufacturers.id", ondelete="SET NULL"), nullable=True
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    manufacturer = relationship("Manufacturer", back_populates="products")


class OptionMapping(Base):
    __tablename__ = "option_mappings"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    product_code: Mapped[str] = mapped_column(String(255), nullable=False)
    option_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # NULL while the pair is an unresolved candidate awaiting manual mapping
    manufacturer_id: Mapped[Optional[int]] = mapped_column(
        IdType, ForeignKey("manufacturers.id", ondelete="CASCADE"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("product_code", "option_name", name="uq_option_mappings_code_option"),
    )

# -------------------------------------------------------------------
# Settings-owned configuration (read-only for ingestion)
# -------------------------------------------------------------------

class ShoppingMallTemplate(Base):
    __tablename__ = "shopping_mall_templates"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    mall_name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    # JSON text: {"columnMappings": {header: fieldKey}, "fixedValues": {fieldKey: value}}
    column_mappings: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # JSON text: {"copyPrefixRows": bool, "columns": [...]}
    export_config: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    header_row: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=1)
    data_start_row: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=2)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)


class ExclusionPattern(Base):
    __tablename__ = "exclusion_patterns"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    pattern: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

# -------------------------------------------------------------------
# Ingestion output
# -------------------------------------------------------------------

class Upload(Base):
    __tablename__ = "uploads"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    file_type: Mapped[str] = mapped_column(String(50), nullable=False, default="platform")
    shopping_mall_id: Mapped[Optional[int]] = mapped_column(
        IdType, ForeignKey("shopping_mall_templates.id"), nullable=True
    )

    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default="processing")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Versioned payload: {v, kind, mallName, summary, errorSamples, autoCreatedManufacturers}
    metadata_json: Mapped[Optional[dict]] = mapped_column("metadata", JsonType, nullable=True)
    # Source rows kept for re-download: {v, sheetName, headerRow, dataStartRow, columnCount,
    # prefixRows, headerCells, dataRows[{rowNumber, cells}]}; shopping-mall uploads only
    source_snapshot: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), onupdate=func.now(), nullable=False)

    orders = relationship("Order", back_populates="upload")

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing','completed','error')",
            name="ck_uploads_status",
        ),
        CheckConstraint(
            "file_type IN ('platform','shopping_mall')",
            name="ck_uploads_file_type",
        ),
    )


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    upload_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("uploads.id"), nullable=True)

    # Platform order number: the idempotency key for ingestion
    order_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    mall_order_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    sub_order_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    product_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    option_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_abbr: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    product_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mall_product_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    model_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    order_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    order_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    order_mobile: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    recipient_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    recipient_mobile: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    memo: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    shopping_mall: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    manufacturer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manufacturer_id: Mapped[Optional[int]] = mapped_column(IdType, ForeignKey("manufacturers.id"), nullable=True)
    courier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    logistics_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fulfillment_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    payment_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    excluded_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=func.now(), nullable=False)

    upload = relationship("Upload", back_populates="orders")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','completed','error')",
            name="ck_orders_status",
        ),
        CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
    )

# -------------------------------------------------------------------
# Indexes
# -------------------------------------------------------------------
# Case-insensitive natural keys; inserts rely on these to no-op on conflict
Index('uq_manufacturers_name_lower', func.lower(Manufacturer.name), unique=True)
Index('uq_products_code_lower', func.lower(Product.product_code), unique=True)
Index(
    'uq_option_mappings_code_option_lower',
    func.lower(OptionMapping.product_code), func.lower(OptionMapping.option_name),
    unique=True,
)
Index('ix_products_manufacturer', Product.manufacturer_id)
Index('ix_orders_upload', Order.upload_id)
Index('ix_orders_manufacturer', Order.manufacturer_id)
Index('ix_orders_product_code_lower', func.lower(Order.product_code))
Index('ix_uploads_uploaded_at', Upload.uploaded_at)

# -------------------------------------------------------------------
# Init helpers
# -------------------------------------------------------------------
async def probe_db_connection() -> None:
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("DB connectivity probe: OK")
    except Exception as e:
        logger.exception(f"DB connectivity probe failed: {e}")


async def check_db_health() -> dict:
    """Round-trip a trivial query and report latency."""
    start = time.perf_counter()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"DB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    return {"status": "healthy", "latency_ms": int((time.perf_counter() - start) * 1000)}


async def init_db(target_engine: Optional[AsyncEngine] = None) -> None:
    """Ensure tables exist."""
    target = target_engine or engine
    if target is engine:
        await probe_db_connection()
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("DB init complete (tables ensured).")
