from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from stockhold.db import get_db
from stockhold.identity import get_request_context
from stockhold.reservations import schemas
from stockhold.reservations.errors import ReservationError, ReservationNotFoundError
from stockhold.reservations.reconciliation import reconcile_pending_movements
from stockhold.reservations.service import (
    cancel_reservation,
    create_reservation,
    get_reservation,
    get_reservation_stats,
    list_movements,
    list_reservations,
    release_reservation,
)
from stockhold.reservations.sweeper import sweep_expired
from stockhold.routers.errors import to_http_exception


router = APIRouter(prefix="/api/reservations", tags=["reservations"])


def _get_scoped_reservation(db: Session, reservation_id: int, context: schemas.ReservationContext):
    reservation = get_reservation(db, reservation_id)
    if reservation.organization_id != context.organization_id:
        raise ReservationNotFoundError(reservation_id)
    return reservation


@router.get("", response_model=List[schemas.ReservationResponse])
def list_reservation_records(
    status_filter: Optional[List[schemas.ReservationStatus]] = Query(None, alias="status"),
    reference_type: Optional[List[schemas.ReservationType]] = Query(None),
    reference_id: Optional[int] = None,
    product_id: Optional[int] = None,
    location_id: Optional[int] = None,
    sales_order_id: Optional[int] = None,
    created_by: Optional[int] = None,
    expires_after: Optional[datetime] = None,
    expires_before: Optional[datetime] = None,
    search: Optional[str] = None,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    filters = schemas.ReservationFilters(
        status=status_filter,
        reference_type=reference_type,
        reference_id=reference_id,
        product_id=product_id,
        location_id=location_id,
        sales_order_id=sales_order_id,
        created_by=created_by,
        expires_after=expires_after,
        expires_before=expires_before,
        search=search,
    )
    return list_reservations(
        db,
        filters,
        organization_id=context.organization_id,
        branch_id=context.branch_id,
    )


@router.post("", response_model=schemas.ReservationResponse, status_code=status.HTTP_201_CREATED)
def create_reservation_record(
    payload: schemas.ReservationCreate,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        reservation = create_reservation(db, payload, context)
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    db.refresh(reservation)
    return reservation


@router.get("/stats", response_model=schemas.ReservationStats)
def reservation_stats(
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    return get_reservation_stats(db, organization_id=context.organization_id, branch_id=context.branch_id)


@router.post("/sweep", response_model=schemas.SweepResponse)
def sweep_expired_reservations(
    payload: Optional[schemas.SweepRequest] = None,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    branch_id = payload.branch_id if payload else context.branch_id
    try:
        expired = sweep_expired(db, context.organization_id, branch_id, user_id=context.user_id)
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    return schemas.SweepResponse(
        expired_count=len(expired),
        reservations=[schemas.ReservationResponse.model_validate(reservation) for reservation in expired],
    )


@router.post("/reconcile", response_model=schemas.ReconcileResponse)
def reconcile_movements(
    limit: int = Query(100, ge=1, le=1000),
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    result = reconcile_pending_movements(db, limit=limit)
    db.commit()
    return result


@router.get("/{reservation_id}", response_model=schemas.ReservationResponse)
def get_reservation_record(
    reservation_id: int,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        return _get_scoped_reservation(db, reservation_id, context)
    except ReservationError as exc:
        raise to_http_exception(exc)


@router.get("/{reservation_id}/movements", response_model=List[schemas.MovementResponse])
def list_reservation_movements(
    reservation_id: int,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        _get_scoped_reservation(db, reservation_id, context)
    except ReservationError as exc:
        raise to_http_exception(exc)
    return list_movements(db, reservation_id)


@router.post("/{reservation_id}/release", response_model=schemas.ReservationResponse)
def release_reservation_record(
    reservation_id: int,
    payload: schemas.ReservationRelease,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        _get_scoped_reservation(db, reservation_id, context)
        reservation = release_reservation(
            db,
            reservation_id,
            payload.quantity,
            user_id=context.user_id,
            notes=payload.notes,
            idempotency_key=payload.idempotency_key,
        )
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    db.refresh(reservation)
    return reservation


@router.post("/{reservation_id}/cancel", response_model=schemas.ReservationResponse)
def cancel_reservation_record(
    reservation_id: int,
    payload: schemas.ReservationCancel,
    context: schemas.ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        _get_scoped_reservation(db, reservation_id, context)
        reservation = cancel_reservation(db, reservation_id, payload.reason, user_id=context.user_id)
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    db.refresh(reservation)
    return reservation
