from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


RESERVATION_STATUSES = ("active", "partial", "fulfilled", "cancelled", "expired")
SALES_ORDER_STATUSES = ("draft", "pending", "confirmed", "processing", "fulfilled", "cancelled")
MOVEMENT_TYPES = ("RESERVE", "RELEASE")


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False)
    user_id = Column(Integer, nullable=True)
    entity_type = Column(String(100), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(String(50), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    event_metadata = Column(Text, nullable=True)


class Inventory(Base):
    """On-hand stock per product/variant/location, maintained by the stock movement service."""

    __tablename__ = "inventory"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, nullable=False)
    branch_id = Column(Integer, nullable=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=True)
    location_id = Column(Integer, nullable=False)
    quantity_on_hand = Column(Numeric(14, 2), nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_quantity_on_hand_non_negative"),
        Index("ix_inventory_product_location", "product_id", "variant_id", "location_id"),
    )


class ReservationCounter(Base):
    __tablename__ = "reservation_counters"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, nullable=False)
    variant_key = Column(Integer, nullable=False, default=0)
    location_id = Column(Integer, nullable=False)
    reserved_quantity = Column(Numeric(14, 2), nullable=False, default=0)
    version_id = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("product_id", "variant_key", "location_id", name="uq_reservation_counter_tuple"),
        CheckConstraint("reserved_quantity >= 0", name="ck_reservation_counter_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def variant_id(self):
        return self.variant_key or None


class Reservation(Base):
    __tablename__ = "stock_reservations"

    id = Column(Integer, primary_key=True)
    reservation_number = Column(String(32), nullable=False, unique=True)
    organization_id = Column(Integer, nullable=False)
    branch_id = Column(Integer, nullable=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=True)
    location_id = Column(Integer, nullable=False)
    reserved_quantity = Column(Numeric(14, 2), nullable=False)
    released_quantity = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(Enum(*RESERVATION_STATUSES, name="reservation_status"), nullable=False, default="active")
    reference_type = Column(String(32), nullable=False)
    reference_id = Column(Integer, nullable=True)
    reference_number = Column(String(64), nullable=True)
    reserved_for = Column(String(255), nullable=False)
    sales_order_id = Column(Integer, ForeignKey("sales_orders.id"), nullable=True)
    sales_order_item_id = Column(Integer, nullable=True)
    priority = Column(Integer, nullable=False, default=0)
    auto_release = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    fulfilled_by = Column(Integer, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)

    movements = relationship("ReservationMovement", back_populates="reservation", order_by="ReservationMovement.id")

    __table_args__ = (
        CheckConstraint("reserved_quantity > 0", name="ck_reservation_reserved_positive"),
        CheckConstraint("released_quantity >= 0", name="ck_reservation_released_non_negative"),
        CheckConstraint("released_quantity <= reserved_quantity", name="ck_reservation_released_within_reserved"),
        Index("ix_stock_reservations_tuple_status", "product_id", "variant_id", "location_id", "status"),
        Index("ix_stock_reservations_reference", "reference_type", "reference_id"),
        Index("ix_stock_reservations_expiry", "organization_id", "status", "auto_release", "expires_at"),
    )

    @property
    def remaining_quantity(self) -> Decimal:
        return Decimal(self.reserved_quantity or 0) - Decimal(self.released_quantity or 0)

    @property
    def is_active(self) -> bool:
        return self.status in {"active", "partial"}

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or datetime.utcnow())

    @property
    def fulfillment_percentage(self) -> Decimal:
        reserved = Decimal(self.reserved_quantity or 0)
        if reserved == 0:
            return Decimal("0")
        return Decimal(self.released_quantity or 0) / reserved * Decimal("100")


class ReservationMovement(Base):
    __tablename__ = "reservation_movements"

    id = Column(Integer, primary_key=True)
    reservation_id = Column(Integer, ForeignKey("stock_reservations.id"), nullable=False)
    movement_type = Column(Enum(*MOVEMENT_TYPES, name="reservation_movement_type"), nullable=False)
    movement_type_code = Column(String(8), nullable=False)
    organization_id = Column(Integer, nullable=False)
    branch_id = Column(Integer, nullable=True)
    product_id = Column(Integer, nullable=False)
    variant_id = Column(Integer, nullable=True)
    location_id = Column(Integer, nullable=False)
    quantity = Column(Numeric(14, 2), nullable=False)
    reference_number = Column(String(32), nullable=True)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(128), nullable=True, unique=True)
    created_by = Column(Integer, nullable=True)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    reservation = relationship("Reservation", back_populates="movements")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_movement_quantity_positive"),
        Index("ix_reservation_movements_reservation_id", "reservation_id"),
    )


class ReconciliationTask(Base):
    __tablename__ = "reservation_reconciliation_tasks"

    id = Column(Integer, primary_key=True)
    reservation_id = Column(Integer, ForeignKey("stock_reservations.id"), nullable=False)
    movement_type = Column(Enum(*MOVEMENT_TYPES, name="reconciliation_movement_type"), nullable=False)
    quantity = Column(Numeric(14, 2), nullable=False)
    idempotency_key = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    status = Column(Enum("pending", "resolved", name="reconciliation_status"), nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)

    reservation = relationship("Reservation")


class SalesOrder(Base):
    __tablename__ = "sales_orders"

    id = Column(Integer, primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True)
    organization_id = Column(Integer, nullable=False)
    branch_id = Column(Integer, nullable=True)
    customer_name = Column(String(200), nullable=False)
    order_date = Column(Date, nullable=False)
    expected_delivery_date = Column(Date, nullable=True)
    status = Column(Enum(*SALES_ORDER_STATUSES, name="sales_order_status"), nullable=False, default="draft")
    customer_notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True)

    items = relationship(
        "SalesOrderItem",
        back_populates="sales_order",
        cascade="all, delete-orphan",
        order_by="SalesOrderItem.id",
    )


class SalesOrderItem(Base):
    __tablename__ = "sales_order_items"

    id = Column(Integer, primary_key=True)
    sales_order_id = Column(Integer, ForeignKey("sales_orders.id"), nullable=False)
    product_id = Column(Integer, nullable=True)
    variant_id = Column(Integer, nullable=True)
    product_name = Column(String(200), nullable=False, default="")
    location_id = Column(Integer, nullable=True)
    quantity_ordered = Column(Numeric(14, 2), nullable=False)
    quantity_fulfilled = Column(Numeric(14, 2), nullable=False, default=0)
    unit_price = Column(Numeric(14, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    reservation_id = Column(Integer, ForeignKey("stock_reservations.id"), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    sales_order = relationship("SalesOrder", back_populates="items")
    reservation = relationship("Reservation", foreign_keys=[reservation_id])

    __table_args__ = (
        CheckConstraint("quantity_ordered > 0", name="ck_sales_order_item_quantity_positive"),
    )
