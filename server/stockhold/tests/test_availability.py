from decimal import Decimal

import pytest

from stockhold.inventory.schemas import InventoryKey
from stockhold.inventory.service import get_available, get_available_map
from stockhold.models import Reservation
from stockhold.reservations.errors import InsufficientStockError
from stockhold.reservations.service import create_reservation, validate_availability
from stockhold.tests.factories import ORGANIZATION_ID, add_inventory, reservation_context, reservation_request


def test_available_subtracts_outstanding_holds(db):
    add_inventory(db, on_hand="10")
    create_reservation(db, reservation_request(quantity=Decimal("4")), reservation_context())

    result = get_available(db, product_id=1, location_id=1)

    assert result.record_found is True
    assert result.quantity_on_hand == Decimal("10")
    assert result.reserved_quantity == Decimal("4")
    assert result.available_quantity == Decimal("6")


def test_missing_inventory_record_is_not_an_error(db):
    result = get_available(db, product_id=99, location_id=1)

    assert result.record_found is False
    assert result.quantity_on_hand == Decimal("0")
    assert result.available_quantity == Decimal("0")


def test_base_product_and_variant_are_separate_keys(db):
    add_inventory(db, on_hand="5")
    add_inventory(db, variant_id=3, on_hand="8")
    create_reservation(db, reservation_request(variant_id=3, quantity=Decimal("8")), reservation_context())

    base = get_available(db, product_id=1, location_id=1)
    variant = get_available(db, product_id=1, variant_id=3, location_id=1)

    assert base.available_quantity == Decimal("5")
    assert variant.available_quantity == Decimal("0")


def test_bulk_lookup_keeps_request_order(db):
    add_inventory(db, product_id=1, on_hand="2")
    add_inventory(db, product_id=2, on_hand="3")

    results = get_available_map(
        db,
        [InventoryKey(product_id=2, location_id=1), InventoryKey(product_id=1, location_id=1)],
    )

    assert [row.product_id for row in results] == [2, 1]
    assert [row.available_quantity for row in results] == [Decimal("3"), Decimal("2")]


def test_validation_reports_insufficient_stock(db):
    add_inventory(db, on_hand="3")

    validation = validate_availability(db, product_id=1, variant_id=None, location_id=1, requested_quantity=5)

    assert validation.is_valid is False
    assert validation.errors[0].startswith("Insufficient stock. Available: 3")
    assert validation.available_quantity == Decimal("3")
    assert validation.requested_quantity == Decimal("5")


def test_validation_without_inventory_record(db):
    validation = validate_availability(db, product_id=1, variant_id=None, location_id=1, requested_quantity=1)

    assert validation.is_valid is False
    assert validation.errors == ["No inventory found at this location"]


def test_validation_warns_on_low_headroom(db):
    add_inventory(db, on_hand="11")

    validation = validate_availability(db, product_id=1, variant_id=None, location_id=1, requested_quantity=10)

    assert validation.is_valid is True
    assert validation.errors == []
    assert len(validation.warnings) == 1
    assert validation.warnings[0].startswith("Low stock warning")


def test_validation_without_warning_when_headroom_is_ample(db):
    add_inventory(db, on_hand="12")

    validation = validate_availability(db, product_id=1, variant_id=None, location_id=1, requested_quantity=10)

    assert validation.is_valid is True
    assert validation.warnings == []


def test_reservation_cannot_draw_on_another_organizations_stock(db):
    add_inventory(db, on_hand="10")

    with pytest.raises(InsufficientStockError) as exc_info:
        create_reservation(db, reservation_request(quantity=Decimal("10")), reservation_context(organization_id=999))

    assert exc_info.value.validation.errors == ["No inventory found at this location"]
    assert db.query(Reservation).count() == 0


def test_scoped_projection_ignores_other_organizations_holds(db):
    add_inventory(db, on_hand="10")
    add_inventory(db, on_hand="6", organization_id=2)
    create_reservation(db, reservation_request(quantity=Decimal("4")), reservation_context())
    create_reservation(db, reservation_request(quantity=Decimal("5")), reservation_context(organization_id=2))

    mine = get_available(db, product_id=1, location_id=1, organization_id=ORGANIZATION_ID)
    theirs = get_available(db, product_id=1, location_id=1, organization_id=2)

    assert (mine.reserved_quantity, mine.available_quantity) == (Decimal("4"), Decimal("6"))
    assert (theirs.reserved_quantity, theirs.available_quantity) == (Decimal("5"), Decimal("1"))
    validation = validate_availability(
        db,
        product_id=1,
        variant_id=None,
        location_id=1,
        requested_quantity=2,
        organization_id=2,
    )
    assert validation.is_valid is False
