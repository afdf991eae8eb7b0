"""stock reservations, movements, counters and sales orders

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


RESERVATION_STATUSES = ("active", "partial", "fulfilled", "cancelled", "expired")
SALES_ORDER_STATUSES = ("draft", "pending", "confirmed", "processing", "fulfilled", "cancelled")
MOVEMENT_TYPES = ("RESERVE", "RELEASE")


def upgrade() -> None:
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_metadata", sa.Text(), nullable=True),
    )

    op.create_table(
        "inventory",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("quantity_on_hand", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_quantity_on_hand_non_negative"),
    )
    op.create_index("ix_inventory_product_location", "inventory", ["product_id", "variant_id", "location_id"])

    op.create_table(
        "reservation_counters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_key", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("reserved_quantity", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("product_id", "variant_key", "location_id", name="uq_reservation_counter_tuple"),
        sa.CheckConstraint("reserved_quantity >= 0", name="ck_reservation_counter_non_negative"),
    )

    op.create_table(
        "sales_orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("customer_name", sa.String(length=200), nullable=False),
        sa.Column("order_date", sa.Date(), nullable=False),
        sa.Column("expected_delivery_date", sa.Date(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*SALES_ORDER_STATUSES, name="sales_order_status"),
            nullable=False,
            server_default="draft",
        ),
        sa.Column("customer_notes", sa.Text(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("cancelled_by", sa.Integer(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "stock_reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_number", sa.String(length=32), nullable=False, unique=True),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("reserved_quantity", sa.Numeric(14, 2), nullable=False),
        sa.Column("released_quantity", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(*RESERVATION_STATUSES, name="reservation_status"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("reference_type", sa.String(length=32), nullable=False),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("reference_number", sa.String(length=64), nullable=True),
        sa.Column("reserved_for", sa.String(length=255), nullable=False),
        sa.Column("sales_order_id", sa.Integer(), sa.ForeignKey("sales_orders.id"), nullable=True),
        sa.Column("sales_order_item_id", sa.Integer(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("auto_release", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("cancelled_by", sa.Integer(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("fulfilled_by", sa.Integer(), nullable=True),
        sa.Column("fulfilled_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("reserved_quantity > 0", name="ck_reservation_reserved_positive"),
        sa.CheckConstraint("released_quantity >= 0", name="ck_reservation_released_non_negative"),
        sa.CheckConstraint(
            "released_quantity <= reserved_quantity",
            name="ck_reservation_released_within_reserved",
        ),
    )
    op.create_index(
        "ix_stock_reservations_tuple_status",
        "stock_reservations",
        ["product_id", "variant_id", "location_id", "status"],
    )
    op.create_index("ix_stock_reservations_reference", "stock_reservations", ["reference_type", "reference_id"])
    op.create_index(
        "ix_stock_reservations_expiry",
        "stock_reservations",
        ["organization_id", "status", "auto_release", "expires_at"],
    )

    op.create_table(
        "sales_order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sales_order_id", sa.Integer(), sa.ForeignKey("sales_orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), nullable=True),
        sa.Column("variant_id", sa.Integer(), nullable=True),
        sa.Column("product_name", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("location_id", sa.Integer(), nullable=True),
        sa.Column("quantity_ordered", sa.Numeric(14, 2), nullable=False),
        sa.Column("quantity_fulfilled", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("stock_reservations.id"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity_ordered > 0", name="ck_sales_order_item_quantity_positive"),
    )

    op.create_table(
        "reservation_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("stock_reservations.id"), nullable=False),
        sa.Column(
            "movement_type",
            sa.Enum(*MOVEMENT_TYPES, name="reservation_movement_type"),
            nullable=False,
        ),
        sa.Column("movement_type_code", sa.String(length=8), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=False),
        sa.Column("branch_id", sa.Integer(), nullable=True),
        sa.Column("product_id", sa.Integer(), nullable=False),
        sa.Column("variant_id", sa.Integer(), nullable=True),
        sa.Column("location_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(14, 2), nullable=False),
        sa.Column("reference_number", sa.String(length=32), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True, unique=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_reservation_movement_quantity_positive"),
    )
    op.create_index("ix_reservation_movements_reservation_id", "reservation_movements", ["reservation_id"])

    op.create_table(
        "reservation_reconciliation_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("stock_reservations.id"), nullable=False),
        sa.Column(
            "movement_type",
            sa.Enum(*MOVEMENT_TYPES, name="reconciliation_movement_type"),
            nullable=False,
        ),
        sa.Column("quantity", sa.Numeric(14, 2), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "resolved", name="reconciliation_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("reservation_reconciliation_tasks")
    op.drop_index("ix_reservation_movements_reservation_id", table_name="reservation_movements")
    op.drop_table("reservation_movements")
    op.drop_table("sales_order_items")
    op.drop_index("ix_stock_reservations_expiry", table_name="stock_reservations")
    op.drop_index("ix_stock_reservations_reference", table_name="stock_reservations")
    op.drop_index("ix_stock_reservations_tuple_status", table_name="stock_reservations")
    op.drop_table("stock_reservations")
    op.drop_table("sales_orders")
    op.drop_table("reservation_counters")
    op.drop_index("ix_inventory_product_location", table_name="inventory")
    op.drop_table("inventory")
    op.drop_table("audit_events")
