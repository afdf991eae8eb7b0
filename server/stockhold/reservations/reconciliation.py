from datetime import datetime
from decimal import Decimal
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stockhold.models import ReconciliationTask, Reservation, ReservationCounter, ReservationMovement
from stockhold.reservations import schemas
from stockhold.reservations.service import (
    HOLDING_STATUSES,
    MOVEMENT_RELEASE,
    MOVEMENT_RESERVE,
    WITHDRAWN_STATUSES,
    build_movement,
    find_movement_by_idempotency_key,
)


logger = logging.getLogger(__name__)


def reconcile_pending_movements(db: Session, *, limit: int = 100) -> schemas.ReconcileResponse:
    """Append the movements that degraded writes left out of the event log."""
    tasks = (
        db.query(ReconciliationTask)
        .filter(ReconciliationTask.status == "pending")
        .order_by(ReconciliationTask.id.asc())
        .limit(limit)
        .all()
    )
    resolved = 0
    for task in tasks:
        task.attempts = (task.attempts or 0) + 1
        if task.idempotency_key and find_movement_by_idempotency_key(db, task.idempotency_key):
            task.status = "resolved"
            task.resolved_at = datetime.utcnow()
            resolved += 1
            continue
        try:
            with db.begin_nested():
                db.add(
                    build_movement(
                        task.reservation,
                        task.movement_type,
                        Decimal(task.quantity),
                        notes=task.notes,
                        created_by=task.created_by,
                        idempotency_key=task.idempotency_key,
                    )
                )
                db.flush()
        except SQLAlchemyError as exc:
            task.error = str(exc)
            logger.warning(
                "Reconciliation task %s for reservation %s still failing",
                task.id,
                task.reservation_id,
                extra={"event": "reservation.reconcile_failed", "task_id": task.id, "error": str(exc)},
            )
            continue
        task.status = "resolved"
        task.resolved_at = datetime.utcnow()
        task.error = None
        resolved += 1
    db.flush()

    still_pending = db.query(func.count(ReconciliationTask.id)).filter(ReconciliationTask.status == "pending").scalar()
    if tasks:
        logger.info("Reconciled %s movement gaps; %s still pending", resolved, still_pending)
    return schemas.ReconcileResponse(resolved=resolved, still_pending=still_pending or 0)


def replay_reservation(db: Session, reservation: Reservation) -> schemas.ReplayResult:
    """Check that the movement log accounts for the reservation's quantities."""
    totals = dict(
        db.query(ReservationMovement.movement_type, func.coalesce(func.sum(ReservationMovement.quantity), 0))
        .filter(ReservationMovement.reservation_id == reservation.id)
        .group_by(ReservationMovement.movement_type)
        .all()
    )
    reserved_in_log = Decimal(totals.get(MOVEMENT_RESERVE, 0) or 0)
    released_in_log = Decimal(totals.get(MOVEMENT_RELEASE, 0) or 0)

    expected_reserved = Decimal(reservation.reserved_quantity or 0)
    expected_released = Decimal(reservation.released_quantity or 0)
    if reservation.status in WITHDRAWN_STATUSES:
        expected_released += reservation.remaining_quantity

    return schemas.ReplayResult(
        reservation_id=reservation.id,
        reserved_in_log=reserved_in_log,
        released_in_log=released_in_log,
        expected_reserved=expected_reserved,
        expected_released=expected_released,
        consistent=reserved_in_log == expected_reserved and released_in_log == expected_released,
    )


def verify_reserved_counters(db: Session, *, repair: bool = False) -> list[dict]:
    """Compare each tuple counter with the outstanding holds; optionally fix drift."""
    outstanding = {
        (product_id, variant_id or 0, location_id): Decimal(total or 0)
        for product_id, variant_id, location_id, total in (
            db.query(
                Reservation.product_id,
                Reservation.variant_id,
                Reservation.location_id,
                func.sum(Reservation.reserved_quantity - Reservation.released_quantity),
            )
            .filter(Reservation.status.in_(HOLDING_STATUSES))
            .group_by(Reservation.product_id, Reservation.variant_id, Reservation.location_id)
            .all()
        )
    }

    drift: list[dict] = []
    counters = db.query(ReservationCounter).order_by(ReservationCounter.id.asc()).all()
    seen = set()
    for counter in counters:
        key = (counter.product_id, counter.variant_key, counter.location_id)
        seen.add(key)
        expected = outstanding.get(key, Decimal("0"))
        actual = Decimal(counter.reserved_quantity or 0)
        if actual != expected:
            drift.append(
                {
                    "product_id": counter.product_id,
                    "variant_id": counter.variant_id,
                    "location_id": counter.location_id,
                    "counter_quantity": actual,
                    "outstanding_quantity": expected,
                }
            )
            if repair:
                counter.reserved_quantity = expected

    for key, expected in outstanding.items():
        if key in seen or expected == 0:
            continue
        product_id, variant_key, location_id = key
        drift.append(
            {
                "product_id": product_id,
                "variant_id": variant_key or None,
                "location_id": location_id,
                "counter_quantity": Decimal("0"),
                "outstanding_quantity": expected,
            }
        )
        if repair:
            db.add(
                ReservationCounter(
                    product_id=product_id,
                    variant_key=variant_key,
                    location_id=location_id,
                    reserved_quantity=expected,
                )
            )

    if drift:
        logger.warning("Found %s reservation counters out of step with outstanding holds", len(drift))
        if repair:
            db.flush()
    return drift
