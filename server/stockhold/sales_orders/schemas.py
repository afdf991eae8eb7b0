from datetime import date, datetime
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, condecimal


DecimalValue = condecimal(max_digits=14, decimal_places=2)
SalesOrderStatus = Literal["draft", "pending", "confirmed", "processing", "fulfilled", "cancelled"]
ItemReservationOutcome = Literal["reserved", "skipped", "failed"]


class SalesOrderItemCreate(BaseModel):
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    product_name: str = ""
    location_id: Optional[int] = None
    quantity_ordered: DecimalValue = Field(..., gt=0)
    unit_price: DecimalValue = Field(0, ge=0)
    notes: Optional[str] = None


class SalesOrderCreate(BaseModel):
    customer_name: str = Field(..., min_length=1)
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    customer_notes: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[SalesOrderItemCreate] = Field(..., min_length=1)


class SalesOrderUpdate(BaseModel):
    customer_name: Optional[str] = Field(None, min_length=1)
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    customer_notes: Optional[str] = None
    internal_notes: Optional[str] = None
    items: Optional[List[SalesOrderItemCreate]] = None


class SalesOrderItemResponse(BaseModel):
    id: int
    product_id: Optional[int]
    variant_id: Optional[int]
    product_name: str
    location_id: Optional[int]
    quantity_ordered: DecimalValue
    quantity_fulfilled: DecimalValue
    unit_price: DecimalValue
    notes: Optional[str]
    reservation_id: Optional[int]

    model_config = ConfigDict(from_attributes=True)


class SalesOrderResponse(BaseModel):
    id: int
    order_number: str
    organization_id: int
    branch_id: Optional[int]
    customer_name: str
    order_date: date
    expected_delivery_date: Optional[date]
    status: SalesOrderStatus
    customer_notes: Optional[str]
    internal_notes: Optional[str]
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime
    cancelled_by: Optional[int]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    allowed_transitions: List[SalesOrderStatus] = Field(default_factory=list)
    items: List[SalesOrderItemResponse]

    model_config = ConfigDict(from_attributes=True)


class SalesOrderFilters(BaseModel):
    status: Optional[Union[SalesOrderStatus, List[SalesOrderStatus]]] = None
    search: Optional[str] = None


class StatusTransitionRequest(BaseModel):
    status: SalesOrderStatus
    cancellation_reason: Optional[str] = None


class ItemReservationResult(BaseModel):
    item_id: int
    outcome: ItemReservationOutcome
    reservation_id: Optional[int] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


class OrderTransitionResult(BaseModel):
    order: SalesOrderResponse
    from_status: SalesOrderStatus
    to_status: SalesOrderStatus
    items: List[ItemReservationResult] = Field(default_factory=list)
    cancelled_reservation_ids: List[int] = Field(default_factory=list)


class ItemReleaseRequest(BaseModel):
    quantity: DecimalValue
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
