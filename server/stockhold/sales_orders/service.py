from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from stockhold.models import AuditEvent, Reservation, SalesOrder, SalesOrderItem
from stockhold.reservations import schemas as reservation_schemas
from stockhold.reservations.errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    ConcurrencyConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NoReservationError,
    OrderItemNotFoundError,
    PersistenceError,
    SalesOrderImmutableError,
    SalesOrderNotFoundError,
)
from stockhold.reservations.service import (
    HOLDING_STATUSES,
    cancel_reservation,
    create_reservation,
    release_reservation,
)
from stockhold.sales_orders import schemas
from stockhold.utils import quantize_quantity


logger = logging.getLogger(__name__)

REFERENCE_SALES_ORDER = "sales_order"
SALES_ORDER_RESERVATION_PRIORITY = 1
DEFAULT_CANCELLATION_REASON = "Order cancelled"
DELETABLE_STATUSES = {"draft", "pending"}
IMMUTABLE_STATUSES = {"fulfilled", "cancelled"}

VALID_STATUS_TRANSITIONS: dict[str, tuple[str, ...]] = {
    "draft": ("pending", "cancelled"),
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("fulfilled", "cancelled"),
    "fulfilled": (),
    "cancelled": (),
}

# Reservation failures reported per item instead of failing the transition.
ITEM_RESERVATION_FAILURES = (InsufficientStockError, ConcurrencyConflictError, PersistenceError)


def get_allowed_transitions(status: str) -> list[str]:
    return list(VALID_STATUS_TRANSITIONS.get(status, ()))


def to_order_response(order: SalesOrder) -> schemas.SalesOrderResponse:
    response = schemas.SalesOrderResponse.model_validate(order)
    return response.model_copy(update={"allowed_transitions": get_allowed_transitions(order.status)})


def _next_order_number(db: Session) -> str:
    year = datetime.utcnow().year
    prefix = f"SO-{year}-"
    latest = (
        db.query(SalesOrder.order_number)
        .filter(SalesOrder.order_number.like(f"{prefix}%"))
        .order_by(SalesOrder.id.desc())
        .first()
    )
    if latest and latest[0]:
        try:
            sequence = int(str(latest[0]).split("-")[-1]) + 1
        except (ValueError, TypeError):
            sequence = 1
    else:
        sequence = 1
    return f"{prefix}{sequence:04d}"


def _build_item(item: schemas.SalesOrderItemCreate) -> SalesOrderItem:
    return SalesOrderItem(
        product_id=item.product_id,
        variant_id=item.variant_id,
        product_name=item.product_name,
        location_id=item.location_id,
        quantity_ordered=item.quantity_ordered,
        quantity_fulfilled=Decimal("0"),
        unit_price=item.unit_price,
        notes=item.notes,
    )


def create_sales_order(
    db: Session,
    payload: schemas.SalesOrderCreate,
    context: reservation_schemas.ReservationContext,
) -> SalesOrder:
    order = SalesOrder(
        order_number=_next_order_number(db),
        organization_id=context.organization_id,
        branch_id=context.branch_id,
        customer_name=payload.customer_name,
        order_date=payload.order_date or date.today(),
        expected_delivery_date=payload.expected_delivery_date,
        status="draft",
        customer_notes=payload.customer_notes,
        internal_notes=payload.internal_notes,
        created_by=context.user_id,
    )
    order.items.extend(_build_item(item) for item in payload.items)
    db.add(order)
    db.flush()
    logger.info("Created sales order %s with %s items", order.order_number, len(order.items))
    return order


def get_sales_order(db: Session, order_id: int, *, organization_id: Optional[int] = None) -> SalesOrder:
    query = (
        db.query(SalesOrder)
        .options(selectinload(SalesOrder.items))
        .filter(SalesOrder.id == order_id, SalesOrder.deleted_at.is_(None))
    )
    if organization_id is not None:
        query = query.filter(SalesOrder.organization_id == organization_id)
    order = query.first()
    if not order:
        raise SalesOrderNotFoundError(order_id)
    return order


def list_sales_orders(
    db: Session,
    filters: schemas.SalesOrderFilters,
    *,
    organization_id: int,
    branch_id: Optional[int] = None,
) -> list[SalesOrder]:
    query = (
        db.query(SalesOrder)
        .options(selectinload(SalesOrder.items))
        .filter(SalesOrder.organization_id == organization_id, SalesOrder.deleted_at.is_(None))
        .order_by(SalesOrder.created_at.desc(), SalesOrder.id.desc())
    )
    if branch_id is not None:
        query = query.filter(SalesOrder.branch_id == branch_id)
    if filters.status:
        statuses = filters.status if isinstance(filters.status, list) else [filters.status]
        query = query.filter(SalesOrder.status.in_(statuses))
    if filters.search and filters.search.strip():
        like_value = f"%{filters.search.strip()}%"
        query = query.filter(
            or_(
                SalesOrder.order_number.ilike(like_value),
                SalesOrder.customer_name.ilike(like_value),
            )
        )
    return query.all()


def update_sales_order(
    db: Session,
    order_id: int,
    payload: schemas.SalesOrderUpdate,
    *,
    organization_id: Optional[int] = None,
) -> SalesOrder:
    """Edit header fields and optionally replace the items of an open order.

    Items can only be replaced while none of them holds a reservation.
    """
    order = get_sales_order(db, order_id, organization_id=organization_id)
    if order.status in IMMUTABLE_STATUSES:
        raise SalesOrderImmutableError(f"Cannot update {order.status} sales order {order.order_number}.")

    changes = payload.model_dump(exclude_unset=True, exclude={"items"})
    for field in ("customer_name", "order_date"):
        if changes.get(field) is None:
            changes.pop(field, None)
    for field, value in changes.items():
        setattr(order, field, value)

    if payload.items:
        if any(item.reservation_id is not None for item in order.items):
            raise SalesOrderImmutableError(
                f"Sales order {order.order_number} has reserved items; cancel it instead of replacing items."
            )
        order.items.clear()
        db.flush()
        order.items.extend(_build_item(item) for item in payload.items)

    order.updated_at = datetime.utcnow()
    db.flush()
    logger.info("Updated sales order %s", order.order_number)
    return order


def delete_sales_order(db: Session, order_id: int, *, organization_id: Optional[int] = None) -> SalesOrder:
    order = get_sales_order(db, order_id, organization_id=organization_id)
    if order.status not in DELETABLE_STATUSES:
        raise SalesOrderImmutableError(
            f"Sales order {order.order_number} is {order.status}; only draft or pending orders can be deleted."
        )
    order.deleted_at = datetime.utcnow()
    db.flush()
    logger.info("Soft deleted sales order %s", order.order_number)
    return order


def record_order_status_transition(
    db: Session,
    *,
    order: SalesOrder,
    from_status: str,
    to_status: str,
    user_id: Optional[int] = None,
) -> None:
    db.add(
        AuditEvent(
            organization_id=order.organization_id,
            user_id=user_id,
            entity_type="sales_order",
            entity_id=order.id,
            action="STATUS_TRANSITION",
            event_metadata=f"{from_status}->{to_status}",
        )
    )


def _reserve_item(
    db: Session,
    order: SalesOrder,
    item: SalesOrderItem,
    user_id: Optional[int],
) -> schemas.ItemReservationResult:
    if item.reservation_id is not None:
        return schemas.ItemReservationResult(
            item_id=item.id,
            outcome="reserved",
            reservation_id=item.reservation_id,
        )
    if item.product_id is None or item.location_id is None:
        logger.warning(
            "Sales order %s item %s has no product or location; not reserved",
            order.order_number,
            item.id,
        )
        return schemas.ItemReservationResult(
            item_id=item.id,
            outcome="skipped",
            message="Item has no product or location to reserve from.",
        )

    request = reservation_schemas.ReservationCreate(
        product_id=item.product_id,
        variant_id=item.variant_id,
        location_id=item.location_id,
        quantity=item.quantity_ordered,
        reference_type=REFERENCE_SALES_ORDER,
        reference_id=order.id,
        reference_number=order.order_number,
        reserved_for=f"Sales Order {order.order_number} - {order.customer_name}",
        sales_order_id=order.id,
        sales_order_item_id=item.id,
        priority=SALES_ORDER_RESERVATION_PRIORITY,
        auto_release=False,
        expires_at=(
            datetime.combine(order.expected_delivery_date, datetime.min.time())
            if order.expected_delivery_date
            else None
        ),
    )
    context = reservation_schemas.ReservationContext(
        organization_id=order.organization_id,
        branch_id=order.branch_id,
        user_id=user_id,
    )
    try:
        with db.begin_nested():
            reservation = create_reservation(db, request, context)
            item.reservation_id = reservation.id
            db.flush()
    except ITEM_RESERVATION_FAILURES as exc:
        logger.warning(
            "Could not reserve sales order %s item %s: %s",
            order.order_number,
            item.id,
            exc,
            extra={"event": "sales_order.item_reservation_failed", "error_code": exc.code},
        )
        return schemas.ItemReservationResult(
            item_id=item.id,
            outcome="failed",
            error_code=exc.code,
            message=str(exc),
        )
    return schemas.ItemReservationResult(item_id=item.id, outcome="reserved", reservation_id=reservation.id)


def _cancel_order_reservations(
    db: Session,
    order: SalesOrder,
    reason: str,
    user_id: Optional[int],
) -> list[int]:
    reservations = (
        db.query(Reservation)
        .filter(
            Reservation.reference_type == REFERENCE_SALES_ORDER,
            Reservation.reference_id == order.id,
            Reservation.status.in_(HOLDING_STATUSES),
        )
        .order_by(Reservation.id.asc())
        .all()
    )
    cancelled: list[int] = []
    for reservation in reservations:
        try:
            cancel_reservation(db, reservation.id, reason, user_id=user_id)
        except (AlreadyCancelledError, AlreadyFulfilledError) as exc:
            logger.info("Skipping reservation %s on order cancel: %s", reservation.reservation_number, exc)
            continue
        cancelled.append(reservation.id)
    return cancelled


def _lock_sales_order(db: Session, order_id: int, *, organization_id: Optional[int] = None) -> SalesOrder:
    query = (
        db.query(SalesOrder)
        .filter(SalesOrder.id == order_id, SalesOrder.deleted_at.is_(None))
        .populate_existing()
        .with_for_update()
    )
    if organization_id is not None:
        query = query.filter(SalesOrder.organization_id == organization_id)
    order = query.first()
    if not order:
        raise SalesOrderNotFoundError(order_id)
    return order


def _claim_status(db: Session, order: SalesOrder, from_status: str, to_status: str) -> None:
    """Compare-and-swap the status so only one caller runs a transition's side effects."""
    claimed = (
        db.query(SalesOrder)
        .filter(SalesOrder.id == order.id, SalesOrder.status == from_status)
        .update(
            {SalesOrder.status: to_status, SalesOrder.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
    )
    if claimed != 1:
        raise ConcurrencyConflictError(
            f"Sales order {order.order_number} changed status concurrently; reload and retry."
        )


def transition_order_status(
    db: Session,
    order_id: int,
    target_status: str,
    *,
    user_id: Optional[int] = None,
    cancellation_reason: Optional[str] = None,
    organization_id: Optional[int] = None,
) -> schemas.OrderTransitionResult:
    """Move an order along the status table and apply its reservation side effects.

    Confirming reserves every item independently and reports each outcome.
    Cancelling withdraws the order's outstanding reservations. An edge not in
    ``VALID_STATUS_TRANSITIONS`` raises ``InvalidTransitionError`` with nothing
    changed.
    """
    order = _lock_sales_order(db, order_id, organization_id=organization_id)
    from_status = order.status
    if target_status not in VALID_STATUS_TRANSITIONS.get(from_status, ()):
        raise InvalidTransitionError(from_status, target_status)
    _claim_status(db, order, from_status, target_status)

    item_results: list[schemas.ItemReservationResult] = []
    cancelled_ids: list[int] = []
    if target_status == "confirmed":
        item_results = [_reserve_item(db, order, item, user_id) for item in order.items]
    elif target_status == "cancelled":
        reason = cancellation_reason or DEFAULT_CANCELLATION_REASON
        cancelled_ids = _cancel_order_reservations(db, order, reason, user_id)
        order.cancelled_at = datetime.utcnow()
        order.cancelled_by = user_id
        order.cancellation_reason = reason

    order.status = target_status
    order.updated_at = datetime.utcnow()
    record_order_status_transition(
        db,
        order=order,
        from_status=from_status,
        to_status=target_status,
        user_id=user_id,
    )
    db.flush()
    logger.info("Sales order %s moved %s -> %s", order.order_number, from_status, target_status)
    return schemas.OrderTransitionResult(
        order=to_order_response(order),
        from_status=from_status,
        to_status=target_status,
        items=item_results,
        cancelled_reservation_ids=cancelled_ids,
    )


def release_reservation_for_item(
    db: Session,
    item_id: int,
    quantity,
    *,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> SalesOrderItem:
    item = db.query(SalesOrderItem).filter(SalesOrderItem.id == item_id).first()
    if not item:
        raise OrderItemNotFoundError(item_id)
    if item.reservation_id is None:
        raise NoReservationError(item_id)

    quantity = quantize_quantity(quantity)
    reservation = item.reservation
    released_before = Decimal(reservation.released_quantity or 0)
    reservation = release_reservation(
        db,
        item.reservation_id,
        quantity,
        user_id=user_id,
        notes=notes,
        idempotency_key=idempotency_key,
    )
    if Decimal(reservation.released_quantity or 0) != released_before:
        item.quantity_fulfilled = Decimal(item.quantity_fulfilled or 0) + quantity
        item.updated_at = datetime.utcnow()
        db.flush()
    return item
