from fastapi import HTTPException, status

from stockhold.reservations.errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    ConcurrencyConflictError,
    IdempotencyKeyConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NoReservationError,
    NotFoundError,
    OverReleaseError,
    PersistenceError,
    ReservationError,
    ReservationNotExpiredError,
    SalesOrderImmutableError,
)


STATUS_BY_ERROR = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientStockError, status.HTTP_400_BAD_REQUEST),
    (OverReleaseError, status.HTTP_400_BAD_REQUEST),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (NoReservationError, status.HTTP_409_CONFLICT),
    (AlreadyCancelledError, status.HTTP_409_CONFLICT),
    (AlreadyFulfilledError, status.HTTP_409_CONFLICT),
    (IdempotencyKeyConflictError, status.HTTP_409_CONFLICT),
    (SalesOrderImmutableError, status.HTTP_409_CONFLICT),
    (ReservationNotExpiredError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def to_http_exception(exc: ReservationError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    detail = exc.to_detail()
    detail["retryable"] = exc.retryable
    return HTTPException(status_code=status_code, detail=detail)
