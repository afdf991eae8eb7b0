from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from stockhold.db import get_db
from stockhold.identity import get_request_context
from stockhold.models import SalesOrderItem
from stockhold.reservations.errors import OrderItemNotFoundError, ReservationError
from stockhold.reservations.schemas import ReservationContext
from stockhold.routers.errors import to_http_exception
from stockhold.sales_orders import schemas
from stockhold.sales_orders.service import (
    create_sales_order,
    delete_sales_order,
    get_sales_order,
    list_sales_orders,
    release_reservation_for_item,
    to_order_response,
    transition_order_status,
    update_sales_order,
)


router = APIRouter(prefix="/api/sales-orders", tags=["sales-orders"])


@router.get("", response_model=List[schemas.SalesOrderResponse])
def list_sales_order_records(
    status_filter: Optional[List[schemas.SalesOrderStatus]] = Query(None, alias="status"),
    search: Optional[str] = None,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    filters = schemas.SalesOrderFilters(status=status_filter, search=search)
    orders = list_sales_orders(db, filters, organization_id=context.organization_id, branch_id=context.branch_id)
    return [to_order_response(order) for order in orders]


@router.post("", response_model=schemas.SalesOrderResponse, status_code=status.HTTP_201_CREATED)
def create_sales_order_record(
    payload: schemas.SalesOrderCreate,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    order = create_sales_order(db, payload, context)
    db.commit()
    db.refresh(order)
    return to_order_response(order)


@router.get("/{order_id}", response_model=schemas.SalesOrderResponse)
def get_sales_order_record(
    order_id: int,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        order = get_sales_order(db, order_id, organization_id=context.organization_id)
    except ReservationError as exc:
        raise to_http_exception(exc)
    return to_order_response(order)


@router.patch("/{order_id}", response_model=schemas.SalesOrderResponse)
def update_sales_order_record(
    order_id: int,
    payload: schemas.SalesOrderUpdate,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        order = update_sales_order(db, order_id, payload, organization_id=context.organization_id)
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    db.refresh(order)
    return to_order_response(order)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_sales_order_record(
    order_id: int,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        delete_sales_order(db, order_id, organization_id=context.organization_id)
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/{order_id}/status", response_model=schemas.OrderTransitionResult)
def transition_sales_order_status(
    order_id: int,
    payload: schemas.StatusTransitionRequest,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        result = transition_order_status(
            db,
            order_id,
            payload.status,
            user_id=context.user_id,
            cancellation_reason=payload.cancellation_reason,
            organization_id=context.organization_id,
        )
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    return result


@router.post("/items/{item_id}/release", response_model=schemas.SalesOrderItemResponse)
def release_sales_order_item(
    item_id: int,
    payload: schemas.ItemReleaseRequest,
    context: ReservationContext = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    try:
        item = db.query(SalesOrderItem).filter(SalesOrderItem.id == item_id).first()
        if not item or item.sales_order.organization_id != context.organization_id:
            raise OrderItemNotFoundError(item_id)
        item = release_reservation_for_item(
            db,
            item_id,
            payload.quantity,
            user_id=context.user_id,
            notes=payload.notes,
            idempotency_key=payload.idempotency_key,
        )
    except ReservationError as exc:
        db.rollback()
        raise to_http_exception(exc)
    db.commit()
    db.refresh(item)
    return item
