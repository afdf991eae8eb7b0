from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stockhold.db import get_db
from stockhold.identity import get_request_context
from stockhold.inventory import schemas
from stockhold.inventory.service import get_available, get_available_map
from stockhold.reservations.schemas import ReservationContext, ReservationValidation
from stockhold.reservations.service import validate_availability


router = APIRouter(prefix="/api/inventory", tags=["inventory"])


@router.get("/available", response_model=schemas.AvailableInventory)
def get_available_inventory(
    product_id: int,
    location_id: int,
    variant_id: Optional[int] = None,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return get_available(
        db,
        product_id=product_id,
        variant_id=variant_id,
        location_id=location_id,
        organization_id=context.organization_id,
    )


@router.post("/available/bulk", response_model=schemas.AvailableInventoryBulkResponse)
def get_available_inventory_bulk(
    keys: List[schemas.InventoryKey],
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return schemas.AvailableInventoryBulkResponse(
        items=get_available_map(db, keys, organization_id=context.organization_id)
    )


@router.post("/validate", response_model=ReservationValidation)
def validate_inventory_availability(
    payload: schemas.AvailabilityCheckRequest,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return validate_availability(
        db,
        product_id=payload.product_id,
        variant_id=payload.variant_id,
        location_id=payload.location_id,
        requested_quantity=payload.requested_quantity,
        organization_id=context.organization_id,
    )
