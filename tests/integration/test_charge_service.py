# tests/integration/test_charge_service.py

import pytest

from boothpay.application.charge_service import ChargeService
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
from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.models import Payment
from boothpay.infrastructure.gateway.midtrans import GatewayError, GatewayUnavailableError


@pytest.fixture
def service(session_factory, gateway, settings):
    return ChargeService(session_factory, gateway, settings)


# ---------------------
# SESSION CREATION
# ---------------------

def test_charge_creates_session_and_payment_record(service, seed, gateway, load):
    ids = seed()

    session = service.charge(ids["booking_id"])

    assert session.order_id == ids["order_id"]
    assert session.amount == 100000
    assert session.fee_mode == "off"
    assert not session.reused
    assert len(gateway.create_calls) == 1
    call = gateway.create_calls[0]
    assert call["custom_field1"] == ids["booking_id"]
    assert call["items"][0]["price"] == 100000

    payment = load(Payment, order_id=ids["order_id"])
    assert payment.status == "PENDING"
    assert payment.gross_amount == 100000
    assert payment.session_token == session.token
    assert payment.redirect_url == session.redirect_url
    assert payment.quoted


def test_charge_is_idempotent(service, seed, gateway):
    ids = seed()

    first = service.charge(ids["booking_id"])
    second = service.charge(ids["booking_id"])

    assert second.reused
    assert second.token == first.token
    assert second.redirect_url == first.redirect_url
    assert len(gateway.create_calls) == 1


def test_charge_by_order_id(service, seed):
    ids = seed()
    session = service.charge(order_id=ids["order_id"])
    assert session.order_id == ids["order_id"]


def test_charge_requires_an_identifier(service):
    with pytest.raises(ValueError):
        service.charge()


# ---------------------
# PRECONDITIONS
# ---------------------

@pytest.mark.parametrize(
    "status,error",
    [
        (BookingStatus.PAID, BookingAlreadyPaidError),
        (BookingStatus.CANCELLED, BookingCancelledError),
        (BookingStatus.FAILED, BookingFailedError),
        (BookingStatus.REVIEW, BookingUnderReviewError),
    ],
)
def test_charge_rejects_non_pending_booking(service, seed, gateway, status, error):
    ids = seed(status=status)
    with pytest.raises(error):
        service.charge(ids["booking_id"])
    assert gateway.create_calls == []


def test_charge_unknown_booking(service, gateway):
    with pytest.raises(BookingNotFoundError):
        service.charge("missing")
    assert gateway.create_calls == []


def test_charge_unpublished_event(service, seed, gateway):
    ids = seed(published=False)
    with pytest.raises(EventNotPublishedError):
        service.charge(ids["booking_id"])
    assert gateway.create_calls == []


def test_charge_sold_out(service, seed, gateway):
    ids = seed(quota=10, sold=10)
    with pytest.raises(SoldOutError):
        service.charge(ids["booking_id"])
    assert gateway.create_calls == []


def test_unlimited_quota_is_never_sold_out(service, seed):
    ids = seed(quota=None, sold=500)
    assert service.charge(ids["booking_id"]).amount == 100000


# ---------------------
# GATEWAY CONFLICTS
# ---------------------

@pytest.mark.parametrize(
    "transaction_status,error",
    [
        ("pending", OrderPendingError),
        ("settlement", OrderAlreadyPaidError),
        ("expire", OrderNotPayableError),
        ("deny", OrderNotPayableError),
    ],
)
def test_conflict_is_reclassified_from_live_status(
    service, seed, gateway, make_snapshot, load, transaction_status, error
):
    ids = seed()
    gateway.conflict_orders.add(ids["order_id"])
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"], transaction_status)

    with pytest.raises(error):
        service.charge(ids["booking_id"])

    assert gateway.fetch_calls == [ids["order_id"]]
    assert load(Payment, order_id=ids["order_id"]) is None


def test_conflict_with_failed_lookup_is_unknown_conflict(service, seed, gateway):
    ids = seed()
    gateway.conflict_orders.add(ids["order_id"])
    gateway.snapshots[ids["order_id"]] = GatewayUnavailableError("timeout")

    with pytest.raises(GatewayConflictError):
        service.charge(ids["booking_id"])


def test_gateway_failure_leaves_no_payment_record(service, seed, gateway, load):
    ids = seed()
    gateway.create_error = GatewayError("Midtrans error", 500, {})

    with pytest.raises(GatewayError):
        service.charge(ids["booking_id"])

    assert load(Payment, order_id=ids["order_id"]) is None


# ---------------------
# FEE PASS-THROUGH
# ---------------------

def test_single_channel_passthrough(session_factory, gateway, passthrough_settings, seed, load):
    service = ChargeService(session_factory, gateway, passthrough_settings)
    ids = seed()

    session = service.charge(ids["booking_id"], enabled_payments="gopay")

    assert session.fee_mode == "single"
    assert session.channel == "gopay"
    assert session.amount == 102041
    call = gateway.create_calls[0]
    assert call["enabled_payments"] == ["gopay"]
    assert call["metadata"]["selected_channel"] == "gopay"
    assert call["items"][-1]["id"] == "pg_fee"

    payment = load(Payment, order_id=ids["order_id"])
    assert payment.quoted_channel == "gopay"
    assert payment.gross_amount == 102041


def test_worst_case_passthrough(session_factory, gateway, passthrough_settings, seed):
    service = ChargeService(session_factory, gateway, passthrough_settings)
    ids = seed()

    session = service.charge(ids["booking_id"], enabled_payments="all")

    assert session.fee_mode == "worst_case"
    assert session.channel == "card"
    assert gateway.create_calls[0]["enabled_payments"] is None
    assert gateway.create_calls[0]["metadata"]["worst_case"]["candidate_count"] == "all"


def test_unknown_single_channel(session_factory, gateway, passthrough_settings, seed):
    service = ChargeService(session_factory, gateway, passthrough_settings)
    ids = seed()

    with pytest.raises(UnknownPaymentChannelError):
        service.charge(ids["booking_id"], enabled_payments=["bitcoin"])
    assert gateway.create_calls == []


def test_changed_amount_is_not_reused(session_factory, gateway, settings, passthrough_settings, seed):
    ids = seed()
    ChargeService(session_factory, gateway, settings).charge(ids["booking_id"])

    session = ChargeService(session_factory, gateway, passthrough_settings).charge(
        ids["booking_id"], enabled_payments="qris"
    )

    assert not session.reused
    assert session.amount == 100705
    assert len(gateway.create_calls) == 2


def test_charge_rejects_zero_amount(service, seed, gateway, load):
    ids = seed(amount=0)

    with pytest.raises(InvalidBookingAmountError):
        service.charge(ids["booking_id"])

    assert gateway.create_calls == []
    assert load(Payment, order_id=ids["order_id"]) is None
