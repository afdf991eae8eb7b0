"""Periodic release of expired auto-release reservations.

Run once per interval from a scheduler or as a loop::

    python -m stockhold.reservations.sweeper --organization-id 1 --interval 60
"""

import argparse
from datetime import datetime
import logging
import time
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from stockhold import config
from stockhold.models import Reservation
from stockhold.reservations.errors import (
    AlreadyCancelledError,
    AlreadyFulfilledError,
    ReservationNotExpiredError,
)
from stockhold.reservations.service import HOLDING_STATUSES, expire_reservation


logger = logging.getLogger(__name__)


def find_expired_reservations(
    db: Session,
    organization_id: int,
    branch_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> list[Reservation]:
    now = now or datetime.utcnow()
    query = db.query(Reservation).filter(
        Reservation.organization_id == organization_id,
        Reservation.status.in_(HOLDING_STATUSES),
        Reservation.auto_release.is_(True),
        Reservation.expires_at.isnot(None),
        Reservation.expires_at < now,
    )
    if branch_id is not None:
        query = query.filter(Reservation.branch_id == branch_id)
    return query.order_by(Reservation.expires_at.asc(), Reservation.id.asc()).all()


def sweep_expired(
    db: Session,
    organization_id: int,
    branch_id: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
    user_id: Optional[int] = None,
) -> list[Reservation]:
    """Expire every overdue reservation and return the ones this sweep changed.

    Each reservation is expired through the ledger, which re-checks its state
    under the row lock. Rows that were cancelled, fulfilled or expired by a
    concurrent writer since selection are skipped.
    """
    now = now or datetime.utcnow()
    candidates = find_expired_reservations(db, organization_id, branch_id, now=now)
    expired: list[Reservation] = []
    for candidate in candidates:
        try:
            expired.append(expire_reservation(db, candidate.id, user_id=user_id, now=now))
        except (AlreadyCancelledError, AlreadyFulfilledError, ReservationNotExpiredError) as exc:
            logger.info("Skipping reservation %s during sweep: %s", candidate.reservation_number, exc)
    if candidates:
        logger.info(
            "Expiry sweep for organization %s: %s candidates, %s expired",
            organization_id,
            len(candidates),
            len(expired),
        )
    return expired


def run_sweeper(
    organization_ids: Iterable[int],
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    interval_seconds: Optional[int] = None,
    iterations: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Sweep each organization every interval; returns the total expired.

    ``iterations=None`` loops forever. A failed sweep for one organization is
    rolled back and logged; the loop carries on with the next one.
    """
    if session_factory is None:
        from stockhold.db import SessionLocal

        session_factory = SessionLocal
    interval = config.SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
    organization_ids = list(organization_ids)
    total = 0
    completed = 0
    while iterations is None or completed < iterations:
        for organization_id in organization_ids:
            db = session_factory()
            try:
                expired = sweep_expired(db, organization_id)
                db.commit()
                total += len(expired)
            except Exception:
                db.rollback()
                logger.exception("Expiry sweep failed for organization %s", organization_id)
            finally:
                db.close()
        completed += 1
        if iterations is None or completed < iterations:
            sleep(interval)
    return total


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Release expired stock reservations.")
    parser.add_argument("--organization-id", type=int, action="append", required=True, dest="organization_ids")
    parser.add_argument("--interval", type=int, default=config.SWEEP_INTERVAL_SECONDS)
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    total = run_sweeper(
        args.organization_ids,
        interval_seconds=args.interval,
        iterations=1 if args.once else None,
    )
    logger.info("Expiry sweeper finished; %s reservations expired", total)


if __name__ == "__main__":
    main()
