# boothpay/application/booking_service.py

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.orm import Session

from boothpay.config import Settings
from boothpay.domain.fees import detect_channel, expected_settlement_amount
from boothpay.domain.payment_status import (
    PaymentOutcome,
    amount_matches,
    map_status,
    parse_gross_amount,
)
from boothpay.domain.state_machine import BookingStatus, ReviewReason
from boothpay.infrastructure.db.models import Booking, Payment
from boothpay.infrastructure.notifications.mailer import PaidNotice
from boothpay.infrastructure.repositories.booking_repository import BookingRepository
from boothpay.infrastructure.repositories.event_repository import EventRepository
from boothpay.infrastructure.repositories.payment_repository import PaymentRepository
from boothpay.infrastructure.repositories.voucher_repository import VoucherRepository

logger = logging.getLogger(__name__)


class SettlementOutcome(str, Enum):
    BECAME_PAID = "BECAME_PAID"
    BECAME_FAILED = "BECAME_FAILED"
    ROUTED_TO_REVIEW = "ROUTED_TO_REVIEW"
    NO_TRANSITION = "NO_TRANSITION"


@dataclass(frozen=True)
class Settlement:
    outcome: SettlementOutcome
    mapped: PaymentOutcome
    status: BookingStatus
    review_reason: ReviewReason | None = None
    notice: PaidNotice | None = None

    @property
    def transitioned(self) -> bool:
        return self.outcome != SettlementOutcome.NO_TRANSITION


class BookingService:
    """
    Applies a fresh gateway snapshot to one booking.

    Must run inside a single (serializable) transaction: every write is a
    guarded update, so re-running after a serialization failure is safe.
    The caller sends the notification after commit.
    """

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)
        self.voucher_repository = VoucherRepository(db)
        self.payment_repository = PaymentRepository(db)

    def apply_snapshot(
        self,
        booking: Booking,
        snapshot: Mapping[str, Any],
    ) -> Settlement:
        mapped = map_status(snapshot)
        payment = self.payment_repository.get_by_order_id(booking.order_id)

        if mapped == PaymentOutcome.PAID:
            settlement = self.settle_paid(booking, snapshot, payment)
        elif mapped == PaymentOutcome.FAILED:
            settlement = self.apply_failure(booking)
        else:
            settlement = Settlement(
                outcome=SettlementOutcome.NO_TRANSITION,
                mapped=mapped,
                status=booking.status,
            )

        self.payment_repository.save_snapshot(booking.order_id, booking.id, snapshot)
        return settlement

    def apply_failure(self, booking: Booking) -> Settlement:
        # Guard excludes PAID and CANCELLED.
        if self.booking_repository.mark_failed(booking.id):
            logger.info("Booking %s (%s) -> FAILED", booking.id, booking.order_id)
            return Settlement(
                outcome=SettlementOutcome.BECAME_FAILED,
                mapped=PaymentOutcome.FAILED,
                status=BookingStatus.FAILED,
            )
        return Settlement(
            outcome=SettlementOutcome.NO_TRANSITION,
            mapped=PaymentOutcome.FAILED,
            status=booking.status,
        )

    def settle_paid(
        self,
        booking: Booking,
        snapshot: Mapping[str, Any],
        payment: Payment | None = None,
    ) -> Settlement:
        if booking.status != BookingStatus.PENDING:
            return Settlement(
                outcome=SettlementOutcome.NO_TRANSITION,
                mapped=PaymentOutcome.PAID,
                status=booking.status,
            )

        # 1. amount
        channel = detect_channel(snapshot)
        expected = expected_settlement_amount(
            booking.amount,
            self.settings.fees,
            self.settings.fee_passthrough,
            quoted_channel=payment.quoted_channel if payment else None,
            charge_quoted=bool(payment and payment.quoted),
            detected_channel=channel,
        )
        gross = parse_gross_amount(snapshot)
        if gross is None:
            return self._review(booking, ReviewReason.AMOUNT_MISSING)
        if not amount_matches(expected, gross, self.settings.amount_tolerance):
            logger.warning(
                "Amount mismatch for %s: expected=%s gross=%s",
                booking.order_id,
                expected,
                gross,
            )
            return self._review(booking, ReviewReason.AMOUNT_MISMATCH)

        # 2. admission control, fresh read under lock
        event = self.event_repository.lock_inventory(booking.event_id)
        if event.booth_quota is not None and event.booth_sold_count >= event.booth_quota:
            return self._review(booking, ReviewReason.SOLD_OUT)

        # 3. the one true transition
        paid_at = datetime.now(timezone.utc)
        if not self.booking_repository.mark_paid(booking.id, paid_at):
            self.db.refresh(booking)
            return Settlement(
                outcome=SettlementOutcome.NO_TRANSITION,
                mapped=PaymentOutcome.PAID,
                status=booking.status,
            )

        # 4. inventory
        if not self.event_repository.claim_booth(booking.event_id):
            self.booking_repository.revert_paid_to_review(booking.id, ReviewReason.QUOTA_RACE)
            logger.warning("Quota race on event %s; %s -> REVIEW", booking.event_id, booking.order_id)
            return Settlement(
                outcome=SettlementOutcome.ROUTED_TO_REVIEW,
                mapped=PaymentOutcome.PAID,
                status=BookingStatus.REVIEW,
                review_reason=ReviewReason.QUOTA_RACE,
            )

        # 5. voucher
        if booking.voucher_code:
            if not self.voucher_repository.redeem(booking.voucher_code):
                logger.warning(
                    "Voucher %s not redeemed for %s (inactive or exhausted)",
                    booking.voucher_code,
                    booking.order_id,
                )

        logger.info("Booking %s (%s) -> PAID", booking.id, booking.order_id)
        return Settlement(
            outcome=SettlementOutcome.BECAME_PAID,
            mapped=PaymentOutcome.PAID,
            status=BookingStatus.PAID,
            notice=PaidNotice(
                order_id=booking.order_id,
                booking_id=booking.id,
                amount=booking.amount,
                paid_at=paid_at,
                email=booking.email,
                rep_name=booking.rep_name,
                channel=channel or (payment.quoted_channel if payment else None),
                event_title=event.title,
                event_location=event.location,
            ),
        )

    def _review(self, booking: Booking, reason: ReviewReason) -> Settlement:
        if self.booking_repository.mark_review(booking.id, reason):
            logger.warning("Booking %s (%s) -> REVIEW: %s", booking.id, booking.order_id, reason.value)
            return Settlement(
                outcome=SettlementOutcome.ROUTED_TO_REVIEW,
                mapped=PaymentOutcome.PAID,
                status=BookingStatus.REVIEW,
                review_reason=reason,
            )
        return Settlement(
            outcome=SettlementOutcome.NO_TRANSITION,
            mapped=PaymentOutcome.PAID,
            status=booking.status,
        )
