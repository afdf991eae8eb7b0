from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, condecimal


DecimalValue = condecimal(max_digits=14, decimal_places=2)
ReservationStatus = Literal["active", "partial", "fulfilled", "cancelled", "expired"]
ReservationType = Literal[
    "sales_order",
    "work_order",
    "vmi",
    "audit",
    "transfer",
    "allocation",
    "ecommerce",
]
MovementType = Literal["RESERVE", "RELEASE"]


class ReservationValidation(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    available_quantity: Optional[Decimal] = None
    requested_quantity: Optional[Decimal] = None


class ReservationContext(BaseModel):
    organization_id: int
    branch_id: Optional[int] = None
    user_id: Optional[int] = None


class ReservationCreate(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    location_id: int
    quantity: DecimalValue = Field(..., gt=0)
    reference_type: ReservationType
    reference_id: Optional[int] = None
    reference_number: Optional[str] = None
    reserved_for: str = Field(..., min_length=1)
    sales_order_id: Optional[int] = None
    sales_order_item_id: Optional[int] = None
    priority: int = 0
    auto_release: bool = True
    expires_at: Optional[datetime] = None
    notes: Optional[str] = None


class ReservationRelease(BaseModel):
    quantity: DecimalValue
    notes: Optional[str] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)


class ReservationCancel(BaseModel):
    reason: str = Field(..., min_length=1)


class ReservationFilters(BaseModel):
    status: Optional[Union[ReservationStatus, List[ReservationStatus]]] = None
    reference_type: Optional[Union[ReservationType, List[ReservationType]]] = None
    reference_id: Optional[int] = None
    product_id: Optional[int] = None
    location_id: Optional[int] = None
    sales_order_id: Optional[int] = None
    created_by: Optional[int] = None
    expires_after: Optional[datetime] = None
    expires_before: Optional[datetime] = None
    search: Optional[str] = None


class ReservationResponse(BaseModel):
    id: int
    reservation_number: str
    organization_id: int
    branch_id: Optional[int]
    product_id: int
    variant_id: Optional[int]
    location_id: int
    reserved_quantity: DecimalValue
    released_quantity: DecimalValue
    remaining_quantity: DecimalValue
    fulfillment_percentage: Decimal
    is_active: bool
    status: ReservationStatus
    reference_type: str
    reference_id: Optional[int]
    reference_number: Optional[str]
    reserved_for: str
    sales_order_id: Optional[int]
    sales_order_item_id: Optional[int]
    priority: int
    auto_release: bool
    expires_at: Optional[datetime]
    notes: Optional[str]
    created_by: Optional[int]
    created_at: datetime
    updated_at: datetime
    cancelled_by: Optional[int]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    fulfilled_by: Optional[int]
    fulfilled_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class MovementResponse(BaseModel):
    id: int
    reservation_id: int
    movement_type: MovementType
    movement_type_code: str
    quantity: DecimalValue
    reference_number: Optional[str]
    notes: Optional[str]
    idempotency_key: Optional[str]
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationStats(BaseModel):
    total_active: int
    total_partial: int
    total_expired: int
    total_fulfilled: int
    total_cancelled: int
    total_quantity_reserved: Decimal


class SweepRequest(BaseModel):
    branch_id: Optional[int] = None


class SweepResponse(BaseModel):
    expired_count: int
    reservations: List[ReservationResponse]


class ReconcileResponse(BaseModel):
    resolved: int
    still_pending: int


class ReplayResult(BaseModel):
    reservation_id: int
    reserved_in_log: Decimal
    released_in_log: Decimal
    expected_reserved: Decimal
    expected_released: Decimal
    consistent: bool
