from datetime import datetime
from decimal import Decimal
import logging
import secrets
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockhold import config
from stockhold.inventory.service import HOLDING_STATUSES, get_available
from stockhold.models import ReconciliationTask, Reservation, ReservationCounter, ReservationMovement
from stockhold.reservations import schemas
from stockhold.reservations.errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    ConcurrencyConflictError,
    IdempotencyKeyConflictError,
    InsufficientStockError,
    OverReleaseError,
    PersistenceError,
    ReservationNotExpiredError,
    ReservationNotFoundError,
)
from stockhold.utils import quantize_quantity


logger = logging.getLogger(__name__)

T = TypeVar("T")

MOVEMENT_RESERVE = "RESERVE"
MOVEMENT_RELEASE = "RELEASE"
MOVEMENT_TYPE_CODES = {
    MOVEMENT_RESERVE: "501",
    MOVEMENT_RELEASE: "502",
}

STATUS_ACTIVE = "active"
STATUS_PARTIAL = "partial"
STATUS_FULFILLED = "fulfilled"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
WITHDRAWN_STATUSES = {STATUS_CANCELLED, STATUS_EXPIRED}

EXPIRY_REASON = "expired"


def _utcnow() -> datetime:
    return datetime.utcnow()


def derive_status(reserved_quantity, released_quantity, terminal_status: Optional[str] = None) -> str:
    """Status is computed from quantities; only cancel/expire are set explicitly."""
    if terminal_status in WITHDRAWN_STATUSES:
        return terminal_status
    reserved = Decimal(reserved_quantity or 0)
    released = Decimal(released_quantity or 0)
    if released >= reserved:
        return STATUS_FULFILLED
    if released > 0:
        return STATUS_PARTIAL
    return STATUS_ACTIVE


def generate_reservation_number(now: Optional[datetime] = None) -> str:
    now = now or _utcnow()
    return f"RES-{now:%Y%m%d}-{secrets.randbelow(100000):05d}"


def validate_availability(
    db: Session,
    *,
    product_id: int,
    variant_id: Optional[int],
    location_id: int,
    requested_quantity,
    organization_id: Optional[int] = None,
) -> schemas.ReservationValidation:
    requested = quantize_quantity(requested_quantity)
    errors: list[str] = []
    warnings: list[str] = []

    inventory = get_available(
        db,
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        organization_id=organization_id,
    )
    if not inventory.record_found:
        errors.append("No inventory found at this location")
        return schemas.ReservationValidation(
            is_valid=False,
            errors=errors,
            warnings=warnings,
            available_quantity=Decimal("0"),
            requested_quantity=requested,
        )

    available = inventory.available_quantity
    if available < requested:
        errors.append(f"Insufficient stock. Available: {available}, Requested: {requested}")
        return schemas.ReservationValidation(
            is_valid=False,
            errors=errors,
            warnings=warnings,
            available_quantity=available,
            requested_quantity=requested,
        )

    if available < requested * config.LOW_STOCK_HEADROOM_RATIO:
        warnings.append(f"Low stock warning. Available: {available}, Requested: {requested}")

    return schemas.ReservationValidation(
        is_valid=True,
        errors=errors,
        warnings=warnings,
        available_quantity=available,
        requested_quantity=requested,
    )


def _counter_query(db: Session, *, product_id: int, variant_id: Optional[int], location_id: int):
    return db.query(ReservationCounter).filter(
        ReservationCounter.product_id == product_id,
        ReservationCounter.variant_key == (variant_id or 0),
        ReservationCounter.location_id == location_id,
    )


def _lock_counter(db: Session, *, product_id: int, variant_id: Optional[int], location_id: int) -> ReservationCounter:
    counter = (
        _counter_query(db, product_id=product_id, variant_id=variant_id, location_id=location_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if counter:
        return counter

    counter = ReservationCounter(
        product_id=product_id,
        variant_key=variant_id or 0,
        location_id=location_id,
        reserved_quantity=Decimal("0"),
    )
    try:
        with db.begin_nested():
            db.add(counter)
            db.flush()
    except IntegrityError:
        # Another writer created the row first; lock theirs.
        counter = (
            _counter_query(db, product_id=product_id, variant_id=variant_id, location_id=location_id)
            .with_for_update()
            .one()
        )
    return counter


def _apply_counter_delta(db: Session, counter: ReservationCounter, delta: Decimal) -> None:
    updated = Decimal(counter.reserved_quantity or 0) + delta
    if updated < 0:
        logger.warning(
            "Reservation counter for product %s at location %s would go negative (%s); clamping to 0",
            counter.product_id,
            counter.location_id,
            updated,
            extra={
                "event": "reservation.counter_drift",
                "product_id": counter.product_id,
                "variant_key": counter.variant_key,
                "location_id": counter.location_id,
                "reserved_quantity": str(counter.reserved_quantity),
                "delta": str(delta),
            },
        )
        updated = Decimal("0")
    counter.reserved_quantity = updated
    try:
        db.flush()
    except StaleDataError as exc:
        raise ConcurrencyConflictError(
            f"Reservation totals for product {counter.product_id} at location {counter.location_id} "
            "changed concurrently."
        ) from exc


def _with_conflict_retry(db: Session, operation: Callable[[], T], action: str) -> T:
    attempts = max(config.CONCURRENCY_RETRIES, 0) + 1
    for attempt in range(1, attempts + 1):
        try:
            with db.begin_nested():
                return operation()
        except ConcurrencyConflictError:
            if attempt == attempts:
                logger.warning("Concurrency conflict during %s persisted after %s attempts", action, attempts)
                raise
            logger.info("Concurrency conflict during %s; retrying (attempt %s of %s)", action, attempt + 1, attempts)
    raise AssertionError("unreachable")


def build_movement(
    reservation: Reservation,
    movement_type: str,
    quantity: Decimal,
    *,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> ReservationMovement:
    return ReservationMovement(
        reservation_id=reservation.id,
        movement_type=movement_type,
        movement_type_code=MOVEMENT_TYPE_CODES[movement_type],
        organization_id=reservation.organization_id,
        branch_id=reservation.branch_id,
        product_id=reservation.product_id,
        variant_id=reservation.variant_id,
        location_id=reservation.location_id,
        quantity=quantity,
        reference_number=reservation.reservation_number,
        notes=notes,
        idempotency_key=idempotency_key,
        created_by=created_by,
        occurred_at=_utcnow(),
    )


def _queue_reconciliation(
    db: Session,
    reservation: Reservation,
    movement_type: str,
    quantity: Decimal,
    *,
    notes: Optional[str],
    created_by: Optional[int],
    idempotency_key: Optional[str],
    error: str,
) -> None:
    logger.warning(
        "Reservation %s was written without its %s movement; queued for reconciliation",
        reservation.reservation_number,
        movement_type,
        extra={
            "event": "reservation.movement_gap",
            "reservation_id": reservation.id,
            "reservation_number": reservation.reservation_number,
            "movement_type": movement_type,
            "quantity": str(quantity),
            "error": error,
        },
    )
    try:
        with db.begin_nested():
            db.add(
                ReconciliationTask(
                    reservation_id=reservation.id,
                    movement_type=movement_type,
                    quantity=quantity,
                    idempotency_key=idempotency_key,
                    notes=notes,
                    created_by=created_by,
                    error=error,
                )
            )
            db.flush()
    except SQLAlchemyError:
        logger.exception(
            "Could not queue reconciliation for reservation %s (%s %s)",
            reservation.reservation_number,
            movement_type,
            quantity,
        )


def _record_movement(
    db: Session,
    reservation: Reservation,
    movement_type: str,
    quantity: Decimal,
    *,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> Optional[ReservationMovement]:
    """Append the event-log row; a failure here never undoes the reservation write."""
    try:
        with db.begin_nested():
            movement = build_movement(
                reservation,
                movement_type,
                quantity,
                notes=notes,
                created_by=created_by,
                idempotency_key=idempotency_key,
            )
            db.add(movement)
            db.flush()
        return movement
    except SQLAlchemyError as exc:
        _queue_reconciliation(
            db,
            reservation,
            movement_type,
            quantity,
            notes=notes,
            created_by=created_by,
            idempotency_key=idempotency_key,
            error=str(exc),
        )
        return None


def _insert_reservation(db: Session, values: dict) -> Reservation:
    for _ in range(max(config.RESERVATION_NUMBER_ATTEMPTS, 1)):
        reservation_number = generate_reservation_number()
        reservation = Reservation(reservation_number=reservation_number, **values)
        try:
            with db.begin_nested():
                db.add(reservation)
                db.flush()
            return reservation
        except IntegrityError as exc:
            taken = db.query(Reservation.id).filter(Reservation.reservation_number == reservation_number).first()
            if taken is None:
                raise PersistenceError(f"Failed to create reservation: {exc.orig}") from exc
            logger.info("Reservation number %s already taken; generating another", reservation_number)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to create reservation: {exc}") from exc
    raise PersistenceError("Could not allocate a unique reservation number.")


def create_reservation(
    db: Session,
    request: schemas.ReservationCreate,
    context: schemas.ReservationContext,
) -> Reservation:
    """Validate, hold and log a new reservation inside the caller's transaction.

    Validation and insert run under the per-tuple counter lock so two callers
    cannot both pass validation against the same stock. Raises
    ``InsufficientStockError`` without writing anything when the stock is not
    there. A failed RESERVE movement is queued for reconciliation and the
    reservation is still returned.
    """
    quantity = quantize_quantity(request.quantity)

    def _attempt() -> Reservation:
        counter = _lock_counter(
            db,
            product_id=request.product_id,
            variant_id=request.variant_id,
            location_id=request.location_id,
        )
        validation = validate_availability(
            db,
            product_id=request.product_id,
            variant_id=request.variant_id,
            location_id=request.location_id,
            requested_quantity=quantity,
            organization_id=context.organization_id,
        )
        if not validation.is_valid:
            raise InsufficientStockError(validation)
        for warning in validation.warnings:
            logger.info("Reservation for product_id=%s: %s", request.product_id, warning)

        now = _utcnow()
        reservation = _insert_reservation(
            db,
            {
                "organization_id": context.organization_id,
                "branch_id": context.branch_id,
                "product_id": request.product_id,
                "variant_id": request.variant_id,
                "location_id": request.location_id,
                "reserved_quantity": quantity,
                "released_quantity": Decimal("0"),
                "status": derive_status(quantity, Decimal("0")),
                "reference_type": request.reference_type,
                "reference_id": request.reference_id,
                "reference_number": request.reference_number,
                "reserved_for": request.reserved_for,
                "sales_order_id": request.sales_order_id,
                "sales_order_item_id": request.sales_order_item_id,
                "priority": request.priority,
                "auto_release": request.auto_release,
                "expires_at": request.expires_at,
                "notes": request.notes,
                "created_by": context.user_id,
                "created_at": now,
                "updated_at": now,
            },
        )
        _apply_counter_delta(db, counter, quantity)
        return reservation

    reservation = _with_conflict_retry(db, _attempt, "reservation create")
    _record_movement(
        db,
        reservation,
        MOVEMENT_RESERVE,
        quantity,
        notes=f"Reservation created: {request.reserved_for}",
        created_by=context.user_id,
    )
    logger.info(
        "Created reservation %s: product_id=%s variant_id=%s location_id=%s quantity=%s reference=%s:%s",
        reservation.reservation_number,
        reservation.product_id,
        reservation.variant_id,
        reservation.location_id,
        quantity,
        reservation.reference_type,
        reservation.reference_id,
    )
    return reservation


def get_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = db.query(Reservation).filter(Reservation.id == reservation_id).first()
    if not reservation:
        raise ReservationNotFoundError(reservation_id)
    return reservation


def _lock_reservation(db: Session, reservation_id: int) -> Reservation:
    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if not reservation:
        raise ReservationNotFoundError(reservation_id)
    return reservation


def _ensure_not_terminal(reservation: Reservation) -> None:
    if reservation.status in WITHDRAWN_STATUSES:
        raise AlreadyCancelledError(
            f"Reservation {reservation.reservation_number} is already {reservation.status}."
        )
    if reservation.status == STATUS_FULFILLED:
        raise AlreadyFulfilledError(
            f"Reservation {reservation.reservation_number} is already fulfilled."
        )


def find_movement_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[ReservationMovement]:
    return (
        db.query(ReservationMovement)
        .filter(ReservationMovement.idempotency_key == idempotency_key)
        .first()
    )


def _release_already_applied(db: Session, reservation_id: int, idempotency_key: str) -> bool:
    movement = find_movement_by_idempotency_key(db, idempotency_key)
    owner_id = movement.reservation_id if movement else None
    if owner_id is None:
        owner_id = (
            db.query(ReconciliationTask.reservation_id)
            .filter(ReconciliationTask.idempotency_key == idempotency_key)
            .limit(1)
            .scalar()
        )
    if owner_id is None:
        return False
    if owner_id != reservation_id:
        raise IdempotencyKeyConflictError(
            f"Idempotency key {idempotency_key!r} was already used for another reservation."
        )
    return True


def release_reservation(
    db: Session,
    reservation_id: int,
    quantity,
    *,
    user_id: Optional[int] = None,
    notes: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Reservation:
    """Release part or all of the outstanding hold.

    A retried call carrying an ``idempotency_key`` that was already applied to
    this reservation returns the reservation unchanged.
    """
    quantity = quantize_quantity(quantity)
    replayed = False

    def _attempt() -> Reservation:
        nonlocal replayed
        reservation = _lock_reservation(db, reservation_id)
        if idempotency_key and _release_already_applied(db, reservation_id, idempotency_key):
            replayed = True
            return reservation
        _ensure_not_terminal(reservation)

        remaining = reservation.remaining_quantity
        if quantity <= 0 or quantity > remaining:
            raise OverReleaseError(quantity, remaining)

        counter = _lock_counter(
            db,
            product_id=reservation.product_id,
            variant_id=reservation.variant_id,
            location_id=reservation.location_id,
        )
        now = _utcnow()
        previous_status = reservation.status
        reservation.released_quantity = Decimal(reservation.released_quantity or 0) + quantity
        reservation.status = derive_status(reservation.reserved_quantity, reservation.released_quantity)
        if reservation.status == STATUS_FULFILLED and previous_status != STATUS_FULFILLED:
            reservation.fulfilled_at = now
            reservation.fulfilled_by = user_id
        reservation.updated_at = now
        _apply_counter_delta(db, counter, -quantity)
        return reservation

    reservation = _with_conflict_retry(db, _attempt, "reservation release")
    if replayed:
        logger.info(
            "Release with idempotency key %s already applied to reservation %s; skipping",
            idempotency_key,
            reservation.reservation_number,
        )
        return reservation

    _record_movement(
        db,
        reservation,
        MOVEMENT_RELEASE,
        quantity,
        notes=notes or f"Released {quantity} from reservation",
        created_by=user_id,
        idempotency_key=idempotency_key,
    )
    logger.info(
        "Released %s from reservation %s (status=%s, released=%s/%s)",
        quantity,
        reservation.reservation_number,
        reservation.status,
        reservation.released_quantity,
        reservation.reserved_quantity,
    )
    return reservation


def _withdraw_reservation(
    db: Session,
    reservation_id: int,
    *,
    terminal_status: str,
    reason: str,
    user_id: Optional[int],
    expired_as_of: Optional[datetime] = None,
) -> Reservation:
    remaining_released = Decimal("0")

    def _attempt() -> Reservation:
        nonlocal remaining_released
        reservation = _lock_reservation(db, reservation_id)
        _ensure_not_terminal(reservation)
        if expired_as_of is not None and not (reservation.auto_release and reservation.is_expired(expired_as_of)):
            raise ReservationNotExpiredError(
                f"Reservation {reservation.reservation_number} is not eligible for expiry."
            )

        remaining_released = reservation.remaining_quantity
        now = _utcnow()
        reservation.status = derive_status(
            reservation.reserved_quantity,
            reservation.released_quantity,
            terminal_status,
        )
        reservation.cancelled_at = now
        reservation.cancelled_by = user_id
        reservation.cancellation_reason = reason
        reservation.updated_at = now
        if remaining_released > 0:
            counter = _lock_counter(
                db,
                product_id=reservation.product_id,
                variant_id=reservation.variant_id,
                location_id=reservation.location_id,
            )
            _apply_counter_delta(db, counter, -remaining_released)
        else:
            db.flush()
        return reservation

    reservation = _with_conflict_retry(db, _attempt, f"reservation {terminal_status}")
    if remaining_released > 0:
        if terminal_status == STATUS_EXPIRED:
            movement_notes = "Reservation expired"
        else:
            movement_notes = f"Reservation cancelled: {reason}"
        _record_movement(
            db,
            reservation,
            MOVEMENT_RELEASE,
            remaining_released,
            notes=movement_notes,
            created_by=user_id,
        )
    logger.info(
        "Reservation %s %s (reason=%s, returned=%s)",
        reservation.reservation_number,
        terminal_status,
        reason,
        remaining_released,
    )
    return reservation


def cancel_reservation(
    db: Session,
    reservation_id: int,
    reason: str,
    *,
    user_id: Optional[int] = None,
) -> Reservation:
    return _withdraw_reservation(
        db,
        reservation_id,
        terminal_status=STATUS_CANCELLED,
        reason=reason,
        user_id=user_id,
    )


def expire_reservation(
    db: Session,
    reservation_id: int,
    *,
    user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Reservation:
    return _withdraw_reservation(
        db,
        reservation_id,
        terminal_status=STATUS_EXPIRED,
        reason=EXPIRY_REASON,
        user_id=user_id,
        expired_as_of=now or _utcnow(),
    )


def _as_list(value):
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def list_reservations(
    db: Session,
    filters: schemas.ReservationFilters,
    *,
    organization_id: int,
    branch_id: Optional[int] = None,
) -> list[Reservation]:
    query = (
        db.query(Reservation)
        .filter(Reservation.organization_id == organization_id)
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
    )
    if branch_id is not None:
        query = query.filter(Reservation.branch_id == branch_id)

    statuses = _as_list(filters.status)
    if statuses:
        query = query.filter(Reservation.status.in_(statuses))
    reference_types = _as_list(filters.reference_type)
    if reference_types:
        query = query.filter(Reservation.reference_type.in_(reference_types))
    if filters.reference_id is not None:
        query = query.filter(Reservation.reference_id == filters.reference_id)
    if filters.product_id is not None:
        query = query.filter(Reservation.product_id == filters.product_id)
    if filters.location_id is not None:
        query = query.filter(Reservation.location_id == filters.location_id)
    if filters.sales_order_id is not None:
        query = query.filter(Reservation.sales_order_id == filters.sales_order_id)
    if filters.created_by is not None:
        query = query.filter(Reservation.created_by == filters.created_by)
    if filters.expires_after is not None:
        query = query.filter(Reservation.expires_at >= filters.expires_after)
    if filters.expires_before is not None:
        query = query.filter(Reservation.expires_at <= filters.expires_before)
    if filters.search and filters.search.strip():
        like_value = f"%{filters.search.strip()}%"
        query = query.filter(
            or_(
                Reservation.reservation_number.ilike(like_value),
                Reservation.reference_number.ilike(like_value),
                Reservation.reserved_for.ilike(like_value),
            )
        )
    return query.all()


def list_movements(db: Session, reservation_id: int) -> list[ReservationMovement]:
    return (
        db.query(ReservationMovement)
        .filter(ReservationMovement.reservation_id == reservation_id)
        .order_by(ReservationMovement.id.asc())
        .all()
    )


def get_reservation_stats(
    db: Session,
    *,
    organization_id: int,
    branch_id: Optional[int] = None,
) -> schemas.ReservationStats:
    query = db.query(Reservation.status, func.count(Reservation.id)).filter(
        Reservation.organization_id == organization_id
    )
    outstanding_query = db.query(
        func.coalesce(func.sum(Reservation.reserved_quantity - Reservation.released_quantity), 0)
    ).filter(
        Reservation.organization_id == organization_id,
        Reservation.status.in_(HOLDING_STATUSES),
    )
    if branch_id is not None:
        query = query.filter(Reservation.branch_id == branch_id)
        outstanding_query = outstanding_query.filter(Reservation.branch_id == branch_id)

    counts = {status: count for status, count in query.group_by(Reservation.status).all()}
    return schemas.ReservationStats(
        total_active=counts.get(STATUS_ACTIVE, 0),
        total_partial=counts.get(STATUS_PARTIAL, 0),
        total_expired=counts.get(STATUS_EXPIRED, 0),
        total_fulfilled=counts.get(STATUS_FULFILLED, 0),
        total_cancelled=counts.get(STATUS_CANCELLED, 0),
        total_quantity_reserved=Decimal(outstanding_query.scalar() or 0),
    )
