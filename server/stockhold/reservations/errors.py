from decimal import Decimal


class ReservationError(ValueError):
    code = "RESERVATION_ERROR"
    retryable = False

    def to_detail(self) -> dict:
        return {"code": self.code, "message": str(self)}


class NotFoundError(ReservationError):
    code = "NOT_FOUND"


class ReservationNotFoundError(NotFoundError):
    code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: int):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found.")


class SalesOrderNotFoundError(NotFoundError):
    code = "SALES_ORDER_NOT_FOUND"

    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Sales order {order_id} not found.")


class OrderItemNotFoundError(NotFoundError):
    code = "ORDER_ITEM_NOT_FOUND"

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Order item {item_id} not found.")


class InsufficientStockError(ReservationError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, validation):
        self.validation = validation
        super().__init__(", ".join(validation.errors) or "Insufficient stock.")

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["validation"] = self.validation.model_dump(mode="json")
        return detail


class OverReleaseError(ReservationError):
    code = "OVER_RELEASE"

    def __init__(self, requested: Decimal, remaining: Decimal):
        self.requested = requested
        self.remaining = remaining
        if requested <= 0:
            message = f"Release quantity must be greater than 0 (got {requested})."
        else:
            message = f"Cannot release {requested}. Only {remaining} remaining."
        super().__init__(message)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["requested_quantity"] = str(self.requested)
        detail["remaining_quantity"] = str(self.remaining)
        return detail


class AlreadyCancelledError(ReservationError):
    code = "ALREADY_CANCELLED"


class AlreadyFulfilledError(ReservationError):
    code = "ALREADY_FULFILLED"


class InvalidTransitionError(ReservationError):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f'Cannot transition from "{from_status}" to "{to_status}".')

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["from_status"] = self.from_status
        detail["to_status"] = self.to_status
        return detail


class NoReservationError(ReservationError):
    code = "NO_RESERVATION"

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"No reservation found for order item {item_id}.")


class IdempotencyKeyConflictError(ReservationError):
    code = "IDEMPOTENCY_KEY_CONFLICT"


class SalesOrderImmutableError(ReservationError):
    code = "SALES_ORDER_IMMUTABLE"


class PersistenceError(ReservationError):
    code = "PERSISTENCE_ERROR"
    retryable = True


class ConcurrencyConflictError(ReservationError):
    code = "CONCURRENCY_CONFLICT"
    retryable = True


class ReservationNotExpiredError(ReservationError):
    code = "NOT_EXPIRED"
