from decimal import Decimal
import logging
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockhold.inventory import schemas
from stockhold.models import Inventory, Reservation


logger = logging.getLogger(__name__)

HOLDING_STATUSES = ("active", "partial")


def _variant_filter(column, variant_id: Optional[int]):
    if variant_id is None:
        return column.is_(None)
    return column == variant_id


def get_reserved_qty(
    db: Session,
    *,
    product_id: int,
    variant_id: Optional[int],
    location_id: int,
    organization_id: Optional[int] = None,
) -> Decimal:
    """Outstanding hold (reserved minus released) across active and partial reservations."""
    query = db.query(
        func.coalesce(
            func.sum(Reservation.reserved_quantity - Reservation.released_quantity),
            0,
        )
    ).filter(
        Reservation.product_id == product_id,
        _variant_filter(Reservation.variant_id, variant_id),
        Reservation.location_id == location_id,
        Reservation.status.in_(HOLDING_STATUSES),
    )
    if organization_id is not None:
        query = query.filter(Reservation.organization_id == organization_id)
    return Decimal(query.scalar() or 0)


def get_inventory_record(
    db: Session,
    *,
    product_id: int,
    variant_id: Optional[int],
    location_id: int,
    organization_id: Optional[int] = None,
) -> Optional[Inventory]:
    query = db.query(Inventory).filter(
        Inventory.product_id == product_id,
        _variant_filter(Inventory.variant_id, variant_id),
        Inventory.location_id == location_id,
    )
    if organization_id is not None:
        query = query.filter(Inventory.organization_id == organization_id)
    return query.first()


def get_available(
    db: Session,
    *,
    product_id: int,
    variant_id: Optional[int] = None,
    location_id: int,
    organization_id: Optional[int] = None,
) -> schemas.AvailableInventory:
    """Single source of truth for available-to-promise quantity.

    Always recomputed from the on-hand row and the current reservation rows. When
    no on-hand row exists the result has ``record_found=False`` and zero
    quantities; callers treat that as nothing available, not as a failure.
    """
    record = get_inventory_record(
        db,
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        organization_id=organization_id,
    )
    if record is None:
        logger.debug(
            "No inventory record: product_id=%s variant_id=%s location_id=%s",
            product_id,
            variant_id,
            location_id,
        )
        return schemas.AvailableInventory(
            product_id=product_id,
            variant_id=variant_id,
            location_id=location_id,
            organization_id=organization_id,
            quantity_on_hand=Decimal("0"),
            reserved_quantity=Decimal("0"),
            available_quantity=Decimal("0"),
            record_found=False,
        )

    on_hand = Decimal(record.quantity_on_hand or 0)
    reserved = get_reserved_qty(
        db,
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        organization_id=organization_id,
    )
    available = on_hand - reserved
    logger.debug(
        "Inventory availability lookup: product_id=%s variant_id=%s location_id=%s on_hand=%s reserved=%s available=%s",
        product_id,
        variant_id,
        location_id,
        on_hand,
        reserved,
        available,
    )
    return schemas.AvailableInventory(
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        organization_id=record.organization_id,
        branch_id=record.branch_id,
        quantity_on_hand=on_hand,
        reserved_quantity=reserved,
        available_quantity=available,
        record_found=True,
        updated_at=record.updated_at,
    )


def get_available_map(
    db: Session,
    keys: Iterable[schemas.InventoryKey],
    organization_id: Optional[int] = None,
) -> list[schemas.AvailableInventory]:
    return [
        get_available(
            db,
            product_id=key.product_id,
            variant_id=key.variant_id,
            location_id=key.location_id,
            organization_id=organization_id,
        )
        for key in keys
    ]
