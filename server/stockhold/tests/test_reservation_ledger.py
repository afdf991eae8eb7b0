from datetime import datetime
from decimal import Decimal
import logging

import pytest
from sqlalchemy import text

from stockhold.inventory.service import get_available
from stockhold.models import ReconciliationTask, Reservation, ReservationCounter, ReservationMovement
from stockhold.reservations import service
from stockhold.reservations.errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    ConcurrencyConflictError,
    IdempotencyKeyConflictError,
    InsufficientStockError,
    OverReleaseError,
    PersistenceError,
    ReservationNotFoundError,
)
from stockhold.reservations.schemas import ReservationFilters
from stockhold.reservations.service import (
    cancel_reservation,
    create_reservation,
    derive_status,
    get_reservation,
    get_reservation_stats,
    list_movements,
    list_reservations,
    release_reservation,
)
from stockhold.tests.factories import ORGANIZATION_ID, USER_ID, add_inventory, reservation_context, reservation_request


def _available(db):
    return get_available(db, product_id=1, location_id=1).available_quantity


def _movement_totals(db, reservation_id):
    totals = {"RESERVE": Decimal("0"), "RELEASE": Decimal("0")}
    for movement in list_movements(db, reservation_id):
        totals[movement.movement_type] += Decimal(movement.quantity)
    return totals


def test_reserving_all_available_stock(db):
    add_inventory(db, on_hand="10")

    reservation = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())

    assert reservation.status == "active"
    assert reservation.released_quantity == Decimal("0")
    assert reservation.created_by == USER_ID
    assert reservation.reservation_number.startswith("RES-")
    assert _available(db) == Decimal("0")
    movements = list_movements(db, reservation.id)
    assert [(m.movement_type, m.movement_type_code, Decimal(m.quantity)) for m in movements] == [
        ("RESERVE", "501", Decimal("10")),
    ]


def test_reserving_more_than_available_creates_nothing(db):
    add_inventory(db, on_hand="3")

    with pytest.raises(InsufficientStockError) as exc_info:
        create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())

    assert exc_info.value.validation.is_valid is False
    assert exc_info.value.to_detail()["code"] == "INSUFFICIENT_STOCK"
    assert db.query(Reservation).count() == 0
    assert db.query(ReservationMovement).count() == 0
    assert _available(db) == Decimal("3")


def test_second_reservation_cannot_oversell(db):
    add_inventory(db, on_hand="10")
    create_reservation(db, reservation_request(quantity=Decimal("7")), reservation_context())

    with pytest.raises(InsufficientStockError):
        create_reservation(db, reservation_request(quantity=Decimal("4")), reservation_context())

    assert _available(db) == Decimal("3")
    counter = db.query(ReservationCounter).one()
    assert counter.reserved_quantity == Decimal("7")


def test_partial_release_then_fulfilment(db):
    add_inventory(db, on_hand="10")
    reservation = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())

    reservation = release_reservation(db, reservation.id, Decimal("4"), user_id=USER_ID)

    assert reservation.status == "partial"
    assert reservation.fulfilled_at is None
    assert _available(db) == Decimal("4")

    reservation = release_reservation(db, reservation.id, Decimal("6"), user_id=USER_ID)

    assert reservation.status == "fulfilled"
    assert reservation.fulfilled_at is not None
    assert reservation.fulfilled_by == USER_ID
    movements = list_movements(db, reservation.id)
    assert [(m.movement_type, Decimal(m.quantity)) for m in movements] == [
        ("RESERVE", Decimal("10")),
        ("RELEASE", Decimal("4")),
        ("RELEASE", Decimal("6")),
    ]
    assert _movement_totals(db, reservation.id)["RELEASE"] == Decimal("10")
    assert db.query(ReservationCounter).one().reserved_quantity == Decimal("0")


def test_cancel_appends_release_for_remainder(db):
    add_inventory(db, on_hand="10")
    reservation = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())
    release_reservation(db, reservation.id, Decimal("3"), user_id=USER_ID)

    reservation = cancel_reservation(db, reservation.id, "Customer changed mind", user_id=USER_ID)

    assert reservation.status == "cancelled"
    assert reservation.released_quantity == Decimal("3")
    assert reservation.cancellation_reason == "Customer changed mind"
    assert reservation.cancelled_by == USER_ID
    assert reservation.cancelled_at is not None
    totals = _movement_totals(db, reservation.id)
    assert totals == {"RESERVE": Decimal("10"), "RELEASE": Decimal("10")}
    assert len(list_movements(db, reservation.id)) == 3
    assert _available(db) == Decimal("10")


@pytest.mark.parametrize("quantity", [Decimal("0"), Decimal("-1"), Decimal("11")])
def test_over_release_leaves_reservation_untouched(db, quantity):
    add_inventory(db, on_hand="10")
    reservation = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())

    with pytest.raises(OverReleaseError):
        release_reservation(db, reservation.id, quantity, user_id=USER_ID)

    db.refresh(reservation)
    assert reservation.released_quantity == Decimal("0")
    assert reservation.status == "active"
    assert len(list_movements(db, reservation.id)) == 1


def test_terminal_reservations_cannot_change(db):
    add_inventory(db, on_hand="20")
    fulfilled = create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    release_reservation(db, fulfilled.id, Decimal("5"))
    cancelled = create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    cancel_reservation(db, cancelled.id, "No longer needed")

    with pytest.raises(AlreadyFulfilledError):
        release_reservation(db, fulfilled.id, Decimal("1"))
    with pytest.raises(AlreadyFulfilledError):
        cancel_reservation(db, fulfilled.id, "Too late")
    with pytest.raises(AlreadyCancelledError):
        release_reservation(db, cancelled.id, Decimal("1"))
    with pytest.raises(AlreadyCancelledError):
        cancel_reservation(db, cancelled.id, "Again")

    db.refresh(fulfilled)
    db.refresh(cancelled)
    assert (fulfilled.status, fulfilled.released_quantity) == ("fulfilled", Decimal("5"))
    assert (cancelled.status, cancelled.released_quantity) == ("cancelled", Decimal("0"))


def test_unknown_reservation_raises_not_found(db):
    with pytest.raises(ReservationNotFoundError):
        get_reservation(db, 404)
    with pytest.raises(ReservationNotFoundError):
        release_reservation(db, 404, Decimal("1"))


def test_derive_status():
    assert derive_status(Decimal("10"), Decimal("0")) == "active"
    assert derive_status(Decimal("10"), Decimal("4")) == "partial"
    assert derive_status(Decimal("10"), Decimal("10")) == "fulfilled"
    assert derive_status(Decimal("10"), Decimal("10"), "cancelled") == "cancelled"
    assert derive_status(Decimal("10"), Decimal("2"), "expired") == "expired"


def test_idempotent_release_is_applied_once(db):
    add_inventory(db, on_hand="10")
    reservation = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())

    release_reservation(db, reservation.id, Decimal("4"), idempotency_key="ship-1")
    reservation = release_reservation(db, reservation.id, Decimal("4"), idempotency_key="ship-1")

    assert reservation.released_quantity == Decimal("4")
    assert _movement_totals(db, reservation.id)["RELEASE"] == Decimal("4")


def test_idempotency_key_cannot_be_reused_across_reservations(db):
    add_inventory(db, on_hand="10")
    first = create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    second = create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    release_reservation(db, first.id, Decimal("1"), idempotency_key="ship-2")

    with pytest.raises(IdempotencyKeyConflictError):
        release_reservation(db, second.id, Decimal("1"), idempotency_key="ship-2")

    db.refresh(second)
    assert second.released_quantity == Decimal("0")


def test_reservation_number_collision_is_retried(db, monkeypatch):
    add_inventory(db, on_hand="10")
    numbers = iter(["RES-20260101-00001", "RES-20260101-00001", "RES-20260101-00002"])
    monkeypatch.setattr(service, "generate_reservation_number", lambda now=None: next(numbers))

    first = create_reservation(db, reservation_request(quantity=Decimal("2")), reservation_context())
    second = create_reservation(db, reservation_request(quantity=Decimal("2")), reservation_context())

    assert first.reservation_number == "RES-20260101-00001"
    assert second.reservation_number == "RES-20260101-00002"
    assert db.query(Reservation).count() == 2


def test_reservation_number_attempts_are_bounded(db, monkeypatch):
    add_inventory(db, on_hand="10")
    monkeypatch.setattr(service, "generate_reservation_number", lambda now=None: "RES-20260101-00001")
    create_reservation(db, reservation_request(quantity=Decimal("2")), reservation_context())

    with pytest.raises(PersistenceError) as exc_info:
        create_reservation(db, reservation_request(quantity=Decimal("2")), reservation_context())

    assert exc_info.value.retryable is True
    assert db.query(Reservation).count() == 1
    assert db.query(ReservationCounter).one().reserved_quantity == Decimal("2")


def test_movement_failure_degrades_to_reconciliation_task(db, monkeypatch, caplog):
    add_inventory(db, on_hand="10")
    original_build = service.build_movement

    def broken_build(reservation, movement_type, quantity, **kwargs):
        movement = original_build(reservation, movement_type, quantity, **kwargs)
        movement.organization_id = None
        return movement

    monkeypatch.setattr(service, "build_movement", broken_build)

    with caplog.at_level(logging.WARNING, logger="stockhold.reservations.service"):
        reservation = create_reservation(db, reservation_request(quantity=Decimal("4")), reservation_context())

    assert reservation.id is not None
    assert reservation.status == "active"
    assert db.query(ReservationMovement).count() == 0
    task = db.query(ReconciliationTask).one()
    assert (task.reservation_id, task.movement_type, Decimal(task.quantity)) == (reservation.id, "RESERVE", Decimal("4"))
    assert task.status == "pending"
    gap_records = [record for record in caplog.records if getattr(record, "event", None) == "reservation.movement_gap"]
    assert len(gap_records) == 1
    assert gap_records[0].reservation_id == reservation.id
    assert _available(db) == Decimal("6")


def test_counter_conflict_is_retried_once(db, monkeypatch):
    add_inventory(db, on_hand="10")
    original_validate = service.validate_availability
    calls = {"count": 0}

    def validate_with_interference(db_session, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            db_session.execute(text("UPDATE reservation_counters SET version_id = version_id + 1"))
        return original_validate(db_session, **kwargs)

    monkeypatch.setattr(service, "validate_availability", validate_with_interference)

    reservation = create_reservation(db, reservation_request(quantity=Decimal("3")), reservation_context())

    assert calls["count"] == 2
    assert db.query(Reservation).count() == 1
    assert db.query(ReservationCounter).one().reserved_quantity == Decimal("3")
    assert reservation.status == "active"


def test_persistent_counter_conflict_surfaces(db, monkeypatch):
    add_inventory(db, on_hand="10")
    original_validate = service.validate_availability

    def validate_with_interference(db_session, **kwargs):
        db_session.execute(text("UPDATE reservation_counters SET version_id = version_id + 1"))
        return original_validate(db_session, **kwargs)

    monkeypatch.setattr(service, "validate_availability", validate_with_interference)

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        create_reservation(db, reservation_request(quantity=Decimal("3")), reservation_context())

    assert exc_info.value.retryable is True
    assert db.query(Reservation).count() == 0


def test_list_reservations_filters_and_search(db):
    add_inventory(db, on_hand="50")
    add_inventory(db, product_id=2, on_hand="50")
    order_hold = create_reservation(
        db,
        reservation_request(
            quantity=Decimal("5"),
            reference_type="sales_order",
            reference_id=42,
            reference_number="SO-2026-0042",
            reserved_for="Sales Order SO-2026-0042 - Acme",
        ),
        reservation_context(),
    )
    transfer_hold = create_reservation(
        db,
        reservation_request(product_id=2, quantity=Decimal("5"), reference_type="transfer", reserved_for="Transfer"),
        reservation_context(),
    )
    cancel_reservation(db, transfer_hold.id, "Transfer aborted")

    by_status = list_reservations(db, ReservationFilters(status="active"), organization_id=ORGANIZATION_ID)
    by_types = list_reservations(
        db,
        ReservationFilters(reference_type=["sales_order", "transfer"]),
        organization_id=ORGANIZATION_ID,
    )
    by_search = list_reservations(db, ReservationFilters(search="acme"), organization_id=ORGANIZATION_ID)
    other_org = list_reservations(db, ReservationFilters(), organization_id=ORGANIZATION_ID + 1)

    assert [r.id for r in by_status] == [order_hold.id]
    assert {r.id for r in by_types} == {order_hold.id, transfer_hold.id}
    assert [r.id for r in by_types] == [transfer_hold.id, order_hold.id]
    assert [r.id for r in by_search] == [order_hold.id]
    assert other_org == []


def test_reservation_stats(db):
    add_inventory(db, on_hand="50")
    partial = create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context())
    release_reservation(db, partial.id, Decimal("4"))
    create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    cancelled = create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context())
    cancel_reservation(db, cancelled.id, "Duplicate")

    stats = get_reservation_stats(db, organization_id=ORGANIZATION_ID)

    assert stats.total_active == 1
    assert stats.total_partial == 1
    assert stats.total_cancelled == 1
    assert stats.total_fulfilled == 0
    assert stats.total_quantity_reserved == Decimal("11")


def test_reservation_helpers(db):
    add_inventory(db, on_hand="10")
    reservation = create_reservation(
        db,
        reservation_request(quantity=Decimal("8"), expires_at=datetime(2026, 1, 1)),
        reservation_context(),
    )
    release_reservation(db, reservation.id, Decimal("2"))

    assert reservation.remaining_quantity == Decimal("6")
    assert reservation.fulfillment_percentage == Decimal("25")
    assert reservation.is_active is True
    assert reservation.is_expired(datetime(2026, 1, 2)) is True
    assert reservation.is_expired(datetime(2025, 12, 31)) is False
