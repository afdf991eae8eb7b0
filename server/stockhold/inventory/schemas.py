from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, condecimal


DecimalValue = condecimal(max_digits=14, decimal_places=2)


class AvailableInventory(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    location_id: int
    organization_id: Optional[int] = None
    branch_id: Optional[int] = None
    quantity_on_hand: Decimal
    reserved_quantity: Decimal
    available_quantity: Decimal
    record_found: bool = True
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AvailableInventoryBulkResponse(BaseModel):
    items: List[AvailableInventory]


class InventoryKey(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    location_id: int


class AvailabilityCheckRequest(InventoryKey):
    requested_quantity: DecimalValue = Field(..., gt=0)
