# boothpay/application/charge_service.py

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy.orm import sessionmaker

from boothpay.config import Settings
from boothpay.domain.exceptions import (
    BookingAlreadyPaidError,
    BookingCancelledError,
    BookingFailedError,
    BookingNotFoundError,
    BookingUnderReviewError,
    EventNotPublishedError,
    GatewayConflictError,
    InvalidBookingAmountError,
    OrderAlreadyPaidError,
    OrderNotPayableError,
    OrderPendingError,
    SoldOutError,
    UnknownPaymentChannelError,
)
from boothpay.domain.fees import channel_label, normalize_enabled_payments, quote_charge
from boothpay.domain.payment_status import TERMINAL_SUCCESS_STATUSES, PaymentOutcome, map_status
from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.session import get_db_session
from boothpay.infrastructure.gateway.midtrans import (
    GatewayError,
    MidtransGateway,
    OrderIdConflictError,
    ensure_integer_amount,
)
from boothpay.infrastructure.repositories.booking_repository import BookingRepository
from boothpay.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

_PRECONDITION_ERRORS = {
    BookingStatus.PAID: BookingAlreadyPaidError,
    BookingStatus.CANCELLED: BookingCancelledError,
    BookingStatus.FAILED: BookingFailedError,
    BookingStatus.REVIEW: BookingUnderReviewError,
}


@dataclass(frozen=True)
class ChargeSession:
    token: str
    redirect_url: str
    order_id: str
    amount: int
    fee_mode: str
    channel: str | None = None
    reused: bool = False


@dataclass(frozen=True)
class _ChargePlan:
    booking_id: str
    order_id: str
    base_amount: int
    amount: int
    items: list
    fee_mode: str
    channel: str | None
    enabled_payments: list[str] | None
    customer: dict


class ChargeService:
    """
    Creates (or reuses) the gateway payment session for a booking.

    Database reads and writes are short transactions on either side of
    the gateway call; no transaction is open while the gateway is called.
    """

    def __init__(self, session_factory: sessionmaker, gateway: MidtransGateway, settings: Settings):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings

    def charge(
        self,
        booking_id: str | None = None,
        *,
        order_id: str | None = None,
        enabled_payments: str | Iterable[str] | None = None,
    ) -> ChargeSession:
        if not booking_id and not order_id:
            raise ValueError("booking_id or order_id is required")

        if enabled_payments is None:
            enabled_payments = self.settings.enabled_payments

        with get_db_session(self.session_factory) as db:
            plan, reusable = self._plan(db, booking_id, order_id, normalize_enabled_payments(enabled_payments))

        if reusable is not None:
            logger.info("Reusing gateway session for %s", plan.order_id)
            return reusable

        try:
            session = self.gateway.create_session(
                plan.order_id,
                plan.amount,
                plan.customer,
                items=plan.items,
                enabled_payments=plan.enabled_payments,
                expiry_minutes=self.settings.expiry_minutes,
                metadata=self._metadata(plan),
                custom_field1=plan.booking_id,
            )
        except OrderIdConflictError as exc:
            raise self._classify_conflict(plan.order_id) from exc

        with get_db_session(self.session_factory) as db:
            PaymentRepository(db).save_session(
                plan.order_id,
                plan.booking_id,
                gross_amount=plan.amount,
                token=session.token,
                redirect_url=session.redirect_url,
                quoted_channel=plan.channel,
                quoted=True,
                raw={
                    "token": session.token,
                    "redirect_url": session.redirect_url,
                    "created_via": "charge",
                    "items": plan.items,
                    "base_amount": plan.base_amount,
                    "passthrough_mode": plan.fee_mode,
                },
            )

        logger.info(
            "Gateway session created for %s amount=%s mode=%s",
            plan.order_id,
            plan.amount,
            plan.fee_mode,
        )
        return ChargeSession(
            token=session.token,
            redirect_url=session.redirect_url,
            order_id=plan.order_id,
            amount=plan.amount,
            fee_mode=plan.fee_mode,
            channel=plan.channel,
        )

    def _plan(self, db, booking_id, order_id, enabled) -> tuple[_ChargePlan, ChargeSession | None]:
        bookings = BookingRepository(db)
        booking = bookings.get_by_id(booking_id) if booking_id else bookings.get_by_order_id(order_id)
        if booking is None:
            raise BookingNotFoundError()

        error = _PRECONDITION_ERRORS.get(booking.status)
        if error is not None:
            raise error()

        event = booking.event
        if not event.is_published:
            raise EventNotPublishedError()
        if event.booth_quota is not None and event.booth_sold_count >= event.booth_quota:
            raise SoldOutError()

        base_amount = ensure_integer_amount(booking.amount)
        if base_amount <= 0:
            raise InvalidBookingAmountError()
        items = [
            {
                "id": "booth",
                "name": f"Booth - {event.location or 'Event'}",
                "price": base_amount,
                "quantity": 1,
                "category": "event_booth",
            }
        ]
        try:
            quote = quote_charge(
                base_amount,
                items,
                enabled,
                self.settings.fees,
                self.settings.fee_passthrough,
            )
        except ValueError as exc:
            raise UnknownPaymentChannelError(str(exc)) from exc

        plan = _ChargePlan(
            booking_id=booking.id,
            order_id=booking.order_id,
            base_amount=base_amount,
            amount=quote.amount,
            items=quote.items,
            fee_mode=quote.mode,
            channel=quote.channel,
            enabled_payments=enabled,
            customer={
                "first_name": booking.rep_name or "Rep",
                "last_name": booking.campus_name or "",
                "email": booking.email,
                "phone": booking.whatsapp,
            },
        )

        payment = PaymentRepository(db).get_by_order_id(booking.order_id)
        if (
            payment is not None
            and payment.session_token
            and payment.redirect_url
            and str(payment.status or "").upper() not in TERMINAL_SUCCESS_STATUSES
            and payment.gross_amount == plan.amount
        ):
            return plan, ChargeSession(
                token=payment.session_token,
                redirect_url=payment.redirect_url,
                order_id=plan.order_id,
                amount=plan.amount,
                fee_mode=plan.fee_mode,
                channel=plan.channel,
                reused=True,
            )
        return plan, None

    def _metadata(self, plan: _ChargePlan) -> dict:
        metadata = {
            "selected_channel": plan.channel if plan.fee_mode == "single" else None,
            "base_amount": plan.base_amount,
            "passthrough": 1 if self.settings.fee_passthrough else 0,
            "passthrough_mode": plan.fee_mode,
        }
        if plan.fee_mode == "worst_case":
            metadata["worst_case"] = {
                "candidate_count": "all" if plan.enabled_payments is None else len(plan.enabled_payments),
                "worst_channel": plan.channel,
                "worst_channel_label": channel_label(plan.channel),
            }
        return metadata

    def _classify_conflict(self, order_id: str) -> Exception:
        """The order id is taken at the gateway: find out what happened to it."""
        try:
            snapshot = self.gateway.fetch_status(order_id)
        except GatewayError as exc:
            logger.warning("Conflict lookup failed for %s: %s", order_id, exc)
            return GatewayConflictError()

        outcome = map_status(snapshot)
        logger.info(
            "Order id %s already used at gateway (transaction_status=%s)",
            order_id,
            snapshot.get("transaction_status"),
        )
        if outcome == PaymentOutcome.PAID:
            return OrderAlreadyPaidError()
        if outcome == PaymentOutcome.FAILED:
            return OrderNotPayableError()
        return OrderPendingError()
