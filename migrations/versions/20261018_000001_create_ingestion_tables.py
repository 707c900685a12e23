"""Create order ingestion tables.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None

ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("manufacturers"):
        op.create_table(
            "manufacturers",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("name", sa.String(255), nullable=False, unique=True),
            sa.Column("contact_name", sa.String(255), nullable=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("cc_email", sa.String(255), nullable=True),
            sa.Column("phone", sa.String(50), nullable=True),
            sa.Column("order_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_order_date", sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
        )
        op.create_index("uq_manufacturers_name_lower", "manufacturers", [sa.text("lower(name)")], unique=True)

    if not inspector.has_table("products"):
        op.create_table(
            "products",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("product_code", sa.String(255), nullable=False, unique=True),
            sa.Column("product_name", sa.String(500), nullable=False),
            sa.Column("option_name", sa.String(255), nullable=True),
            sa.Column("manufacturer_id", ID, sa.ForeignKey("manufacturers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("price", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cost", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
        )
        op.create_index("uq_products_code_lower", "products", [sa.text("lower(product_code)")], unique=True)
        op.create_index("ix_products_manufacturer", "products", ["manufacturer_id"])

    if not inspector.has_table("option_mappings"):
        op.create_table(
            "option_mappings",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("product_code", sa.String(255), nullable=False),
            sa.Column("option_name", sa.String(255), nullable=False),
            sa.Column("manufacturer_id", ID, sa.ForeignKey("manufacturers.id", ondelete="CASCADE"), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("product_code", "option_name", name="uq_option_mappings_code_option"),
        )
        op.create_index(
            "uq_option_mappings_code_option_lower",
            "option_mappings",
            [sa.text("lower(product_code)"), sa.text("lower(option_name)")],
            unique=True,
        )

    if not inspector.has_table("shopping_mall_templates"):
        op.create_table(
            "shopping_mall_templates",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("mall_name", sa.String(100), nullable=False, unique=True),
            sa.Column("display_name", sa.String(100), nullable=False),
            sa.Column("column_mappings", sa.Text(), nullable=True),
            sa.Column("export_config", sa.Text(), nullable=True),
            sa.Column("header_row", sa.Integer(), nullable=True, server_default="1"),
            sa.Column("data_start_row", sa.Integer(), nullable=True, server_default="2"),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    if not inspector.has_table("exclusion_patterns"):
        op.create_table(
            "exclusion_patterns",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("pattern", sa.String(255), nullable=False, unique=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
        )

    if not inspector.has_table("settings"):
        op.create_table(
            "settings",
            sa.Column("key", sa.String(100), primary_key=True),
            sa.Column("value", sa.Text(), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        )

    if not inspector.has_table("uploads"):
        op.create_table(
            "uploads",
            sa.Column("id", sa.String(), primary_key=True),
            sa.Column("file_name", sa.String(500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("file_type", sa.String(50), nullable=False, server_default="platform"),
            sa.Column("shopping_mall_id", ID, sa.ForeignKey("shopping_mall_templates.id"), nullable=True),
            sa.Column("total_orders", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("processed_orders", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_orders", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(50), nullable=False, server_default="processing"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("metadata", JSON, nullable=True),
            sa.Column("source_snapshot", JSON, nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
            sa.CheckConstraint("status IN ('processing','completed','error')", name="ck_uploads_status"),
            sa.CheckConstraint("file_type IN ('platform','shopping_mall')", name="ck_uploads_file_type"),
        )
        op.create_index("ix_uploads_uploaded_at", "uploads", ["uploaded_at"])

    if not inspector.has_table("orders"):
        op.create_table(
            "orders",
            sa.Column("id", ID, primary_key=True, autoincrement=True),
            sa.Column("upload_id", sa.String(), sa.ForeignKey("uploads.id"), nullable=True),
            sa.Column("order_number", sa.String(100), nullable=False, unique=True),
            sa.Column("mall_order_number", sa.String(100), nullable=True),
            sa.Column("sub_order_number", sa.String(100), nullable=True),
            sa.Column("product_name", sa.String(500), nullable=True),
            sa.Column("quantity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("option_name", sa.String(255), nullable=True),
            sa.Column("product_abbr", sa.String(255), nullable=True),
            sa.Column("product_code", sa.String(255), nullable=True),
            sa.Column("mall_product_number", sa.String(100), nullable=True),
            sa.Column("model_number", sa.String(100), nullable=True),
            sa.Column("order_name", sa.String(255), nullable=True),
            sa.Column("recipient_name", sa.String(255), nullable=True),
            sa.Column("order_phone", sa.String(50), nullable=True),
            sa.Column("order_mobile", sa.String(50), nullable=True),
            sa.Column("recipient_phone", sa.String(50), nullable=True),
            sa.Column("recipient_mobile", sa.String(50), nullable=True),
            sa.Column("postal_code", sa.String(20), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("memo", sa.Text(), nullable=True),
            sa.Column("shopping_mall", sa.String(100), nullable=True),
            sa.Column("manufacturer_name", sa.String(255), nullable=True),
            sa.Column("manufacturer_id", ID, sa.ForeignKey("manufacturers.id"), nullable=True),
            sa.Column("courier", sa.String(100), nullable=True),
            sa.Column("tracking_number", sa.String(100), nullable=True),
            sa.Column("logistics_note", sa.Text(), nullable=True),
            sa.Column("fulfillment_type", sa.String(100), nullable=True),
            sa.Column("payment_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("shipping_cost", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("excluded_reason", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
            sa.CheckConstraint("status IN ('pending','processing','completed','error')", name="ck_orders_status"),
            sa.CheckConstraint("quantity > 0", name="ck_orders_quantity_positive"),
        )
        op.create_index("ix_orders_upload", "orders", ["upload_id"])
        op.create_index("ix_orders_manufacturer", "orders", ["manufacturer_id"])
        op.create_index("ix_orders_product_code_lower", "orders", [sa.text("lower(product_code)")])


def downgrade() -> None:
    op.drop_table("orders")
    op.drop_table("uploads")
    op.drop_table("settings")
    op.drop_table("exclusion_patterns")
    op.drop_table("shopping_mall_templates")
    op.drop_table("option_mappings")
    op.drop_table("products")
    op.drop_table("manufacturers")
