# boothpay/infrastructure/repositories/booking_repository.py

import secrets
import time
from datetime import datetime, timezone

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from boothpay.infrastructure.db.models import Booking
from boothpay.domain.state_machine import BookingStateMachine, BookingStatus, ReviewReason


def make_order_id(prefix: str = "OSS") -> str:
    rand = secrets.token_hex(3).upper()
    return f"{prefix}-{int(time.time() * 1000)}-{rand}"


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def get_by_order_id(
        self,
        order_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.order_id == order_id)
        return self.db.execute(stmt).unique().scalar_one_or_none()

    def list_stale_pending_order_ids(
        self,
        created_before: datetime,
        limit: int,
    ) -> list[str]:
        stmt = (
            select(Booking.order_id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at <= created_before)
            .order_by(Booking.created_at, Booking.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        event_id: str,
        amount: int,
        voucher_code: str | None = None,
        order_id: str | None = None,
        **contact: str | None,
    ) -> Booking:
        booking = Booking(
            order_id=order_id or make_order_id(),
            event_id=event_id,
            amount=amount,
            voucher_code=voucher_code,
            status=BookingStatus.PENDING,
            **contact,
        )
        self.db.add(booking)
        return booking

    # -----------------------------
    # Guarded transitions
    # -----------------------------
    # Each update carries its legal source states in the WHERE clause and
    # reports whether a row actually changed. Concurrent callers racing on
    # the same booking see exactly one winner.

    def transition(
        self,
        booking_id: str,
        to_status: BookingStatus,
        from_statuses: set[BookingStatus] | None = None,
        **values,
    ) -> bool:
        allowed = BookingStateMachine.sources_for(to_status)
        if from_statuses is not None:
            allowed &= from_statuses
        if not allowed:
            return False

        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status.in_(allowed))
            .values(status=to_status, updated_at=_utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0

    def mark_paid(self, booking_id: str, paid_at: datetime) -> bool:
        return self.transition(
            booking_id,
            BookingStatus.PAID,
            paid_at=paid_at,
            review_reason=None,
        )

    def mark_failed(self, booking_id: str) -> bool:
        return self.transition(
            booking_id,
            BookingStatus.FAILED,
            from_statuses={BookingStatus.PENDING, BookingStatus.REVIEW},
        )

    def mark_review(self, booking_id: str, reason: ReviewReason) -> bool:
        return self.transition(
            booking_id,
            BookingStatus.REVIEW,
            review_reason=reason.value,
        )

    def revert_paid_to_review(self, booking_id: str, reason: ReviewReason) -> bool:
        """
        Compensation for a PAID write that could not claim inventory.
        Only valid inside the transaction that wrote PAID, before commit.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == BookingStatus.PAID)
            .values(
                status=BookingStatus.REVIEW,
                paid_at=None,
                review_reason=reason.value,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
