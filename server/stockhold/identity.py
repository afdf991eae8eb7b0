from typing import Optional

from fastapi import Header, HTTPException, status

from stockhold.reservations.schemas import ReservationContext


def get_request_context(
    x_organization_id: Optional[int] = Header(None),
    x_branch_id: Optional[int] = Header(None),
    x_user_id: Optional[int] = Header(None),
) -> ReservationContext:
    """Caller identity forwarded by the gateway, which has already authorized the request."""
    if x_organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "MISSING_ORGANIZATION", "message": "X-Organization-Id header is required."},
        )
    return ReservationContext(
        organization_id=x_organization_id,
        branch_id=x_branch_id,
        user_id=x_user_id,
    )
