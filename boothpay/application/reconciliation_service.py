# boothpay/application/reconciliation_service.py

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from boothpay.application.booking_service import BookingService, Settlement
from boothpay.config import Settings
from boothpay.domain.fees import detect_channel, expected_settlement_amount
from boothpay.domain.payment_status import (
    PaymentOutcome,
    amount_matches,
    map_status,
    parse_gross_amount,
)
from boothpay.domain.exceptions import BookingNotFoundError
from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.session import get_db_session, run_serializable
from boothpay.infrastructure.gateway.midtrans import (
    GatewayError,
    GatewayTransactionNotFoundError,
    MidtransGateway,
)
from boothpay.infrastructure.notifications.mailer import Notifier, PaidNotice
from boothpay.infrastructure.repositories.booking_repository import BookingRepository
from boothpay.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

SWEEP_MAX_LIMIT = 50

BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
GATEWAY_TRANSACTION_NOT_FOUND = "GATEWAY_TRANSACTION_NOT_FOUND"
RECONCILE_ERROR = "RECONCILE_ERROR"


@dataclass(frozen=True)
class ReconcileResult:
    order_id: str
    ok: bool
    mapped: PaymentOutcome | None = None
    reconciled: bool = False
    status: BookingStatus | None = None
    reason: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class PaymentInspection:
    booking_id: str
    order_id: str
    status: BookingStatus
    amount: int
    paid_at: datetime | None
    review_reason: str | None
    last_payment: dict | None
    gateway: dict = field(default_factory=dict)
    gateway_error: str | None = None
    expected_gross: int | None = None
    amount_match: bool | None = None
    advice: str = "none"


class ReconciliationService:
    """
    Pulls gateway truth for an order and applies it to local state.

    The gateway is always called outside any transaction; the decision
    and its writes run in one short serializable transaction.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MidtransGateway,
        notifier: Notifier,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings

    def reconcile_one(
        self,
        order_id: str,
        notify: Callable[[PaidNotice], None] | None = None,
    ) -> ReconcileResult:
        """
        Gateway timeouts and transport errors propagate; the booking is
        left untouched for a later attempt.

        ``notify`` receives the paid notice after commit; it defaults to
        sending it right away.
        """
        with get_db_session(self.session_factory) as db:
            exists = BookingRepository(db).get_by_order_id(order_id) is not None
        if not exists:
            return ReconcileResult(order_id=order_id, ok=False, reason=BOOKING_NOT_FOUND)

        try:
            snapshot = self.gateway.fetch_status(order_id)
        except GatewayTransactionNotFoundError:
            logger.info("Gateway has no transaction for %s yet", order_id)
            return ReconcileResult(
                order_id=order_id,
                ok=False,
                reason=GATEWAY_TRANSACTION_NOT_FOUND,
            )

        return self.apply(order_id, snapshot, notify)

    def apply(
        self,
        order_id: str,
        snapshot: dict[str, Any],
        notify: Callable[[PaidNotice], None] | None = None,
    ) -> ReconcileResult:
        def work(db) -> Settlement:
            booking = BookingRepository(db).get_by_order_id(order_id)
            if booking is None:
                raise BookingNotFoundError()
            return BookingService(db, self.settings).apply_snapshot(booking, snapshot)

        settlement = run_serializable(
            self.session_factory,
            work,
            retries=self.settings.serializable_retries,
        )

        if settlement.notice is not None:
            (notify or self.send_notice)(settlement.notice)

        return ReconcileResult(
            order_id=order_id,
            ok=True,
            mapped=settlement.mapped,
            reconciled=settlement.transitioned,
            status=settlement.status,
            reason=settlement.review_reason.value if settlement.review_reason else None,
        )

    def send_notice(self, notice: PaidNotice) -> None:
        try:
            self.notifier.booth_paid(notice)
        except Exception:
            logger.exception("Paid notification failed for %s", notice.order_id)

    def reconcile_sweep(
        self,
        max_age_minutes: int = 10,
        limit: int = 20,
    ) -> list[ReconcileResult]:
        max_age_minutes = max(1, int(max_age_minutes))
        limit = max(1, min(SWEEP_MAX_LIMIT, int(limit)))
        threshold = datetime.now(timezone.utc) - timedelta(minutes=max_age_minutes)

        with get_db_session(self.session_factory) as db:
            order_ids = BookingRepository(db).list_stale_pending_order_ids(threshold, limit)

        results = []
        for order_id in order_ids:
            try:
                results.append(self.reconcile_one(order_id))
            except Exception as exc:
                logger.exception("Reconcile failed for %s", order_id)
                results.append(
                    ReconcileResult(
                        order_id=order_id,
                        ok=False,
                        reason=RECONCILE_ERROR,
                        message=str(exc),
                    )
                )

        logger.info("Sweep reconciled %s pending booking(s)", len(results))
        return results

    def inspect(self, order_id: str) -> PaymentInspection:
        """Read-only view of local and gateway state. Never writes."""
        with get_db_session(self.session_factory) as db:
            booking = BookingRepository(db).get_by_order_id(order_id)
            if booking is None:
                raise BookingNotFoundError()
            payment = PaymentRepository(db).get_by_order_id(order_id)
            local = {
                "booking_id": booking.id,
                "order_id": booking.order_id,
                "status": booking.status,
                "amount": booking.amount,
                "paid_at": booking.paid_at,
                "review_reason": booking.review_reason,
            }
            last_payment = None
            if payment is not None:
                last_payment = {
                    "status": payment.status,
                    "channel": payment.channel,
                    "gross_amount": payment.gross_amount,
                    "quoted_channel": payment.quoted_channel,
                    "updated_at": payment.updated_at,
                }
            quoted = bool(payment and payment.quoted)
            quoted_channel = payment.quoted_channel if payment else None

        try:
            snapshot = self.gateway.fetch_status(order_id)
        except GatewayError as exc:
            return PaymentInspection(
                last_payment=last_payment,
                gateway_error=exc.message,
                **local,
            )

        mapped = map_status(snapshot)
        gross = parse_gross_amount(snapshot)
        expected = expected_settlement_amount(
            local["amount"],
            self.settings.fees,
            self.settings.fee_passthrough,
            quoted_channel=quoted_channel,
            charge_quoted=quoted,
            detected_channel=detect_channel(snapshot),
        )

        status = local["status"]
        advice = "none"
        if mapped == PaymentOutcome.PAID and status != BookingStatus.PAID:
            advice = "await_webhook_or_reconcile"
        elif mapped == PaymentOutcome.FAILED and status not in {
            BookingStatus.FAILED,
            BookingStatus.CANCELLED,
            BookingStatus.PAID,
        }:
            advice = "await_webhook_or_reconcile"

        return PaymentInspection(
            last_payment=last_payment,
            gateway={
                "transaction_status": snapshot.get("transaction_status"),
                "fraud_status": snapshot.get("fraud_status"),
                "payment_type": snapshot.get("payment_type"),
                "mapped": mapped.value,
                "gross_amount": int(gross) if gross is not None else None,
                "status_code": snapshot.get("status_code"),
            },
            expected_gross=expected,
            amount_match=None if gross is None else amount_matches(expected, gross, self.settings.amount_tolerance),
            advice=advice,
            **local,
        )
