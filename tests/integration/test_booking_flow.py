import hashlib

from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.models import Booking, Event

from conftest import ADMIN_KEY, CRON_KEY, SERVER_KEY


def _signed_notification(order_id, status_code="200", gross_amount="100000.00", **extra):
    raw = f"{order_id}{status_code}{gross_amount}{SERVER_KEY}"
    return {
        "order_id": order_id,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "signature_key": hashlib.sha512(raw.encode("utf-8")).hexdigest(),
        "transaction_status": "settlement",
        **extra,
    }


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200


def test_booth_payment_flow(client, seed, gateway, notifier, make_snapshot, load):
    ids = seed(quota=10, sold=9)

    charge_response = client.post("/payments/charge", json={"booking_id": ids["booking_id"]})
    assert charge_response.status_code == 200
    body = charge_response.json()
    assert body["order_id"] == ids["order_id"]
    assert body["amount"] == 100000
    assert body["reused"] is False

    retry = client.post("/payments/charge", json={"order_id": ids["order_id"]})
    assert retry.status_code == 200
    assert retry.json()["token"] == body["token"]
    assert retry.json()["reused"] is True

    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"])
    webhook = client.post("/payments/webhook", json=_signed_notification(ids["order_id"]))
    assert webhook.status_code == 200
    assert webhook.json()["result"]["status"] == "PAID"
    assert webhook.json()["result"]["reconciled"] is True

    assert load(Booking, id=ids["booking_id"]).status == BookingStatus.PAID
    assert load(Event, id=ids["event_id"]).booth_sold_count == 10
    assert len(notifier.notices) == 1

    # Gateway retries the same notification.
    again = client.post("/payments/webhook", json=_signed_notification(ids["order_id"]))
    assert again.status_code == 200
    assert again.json()["result"]["reconciled"] is False
    assert load(Event, id=ids["event_id"]).booth_sold_count == 10

    paid = client.post("/payments/charge", json={"booking_id": ids["booking_id"]})
    assert paid.status_code == 409
    assert paid.json()["detail"]["code"] == "ALREADY_PAID"


def test_charge_requires_identifier(client):
    response = client.post("/payments/charge", json={})
    assert response.status_code == 422


def test_charge_unknown_booking(client):
    response = client.post("/payments/charge", json={"booking_id": "missing"})
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_charge_sold_out(client, seed):
    ids = seed(quota=1, sold=1)
    response = client.post("/payments/charge", json={"booking_id": ids["booking_id"]})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "SOLD_OUT"


def test_charge_zero_amount_booking(client, seed, gateway):
    ids = seed(amount=0)

    response = client.post("/payments/charge", json={"booking_id": ids["booking_id"]})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_AMOUNT"
    assert gateway.create_calls == []


def test_charge_gateway_down(client, seed, gateway):
    from boothpay.infrastructure.gateway.midtrans import GatewayUnavailableError

    gateway.create_error = GatewayUnavailableError("Midtrans request timed out")
    ids = seed()

    response = client.post("/payments/charge", json={"booking_id": ids["booking_id"]})

    assert response.status_code == 503


# ---------------------
# WEBHOOK
# ---------------------

def test_webhook_rejects_bad_signature(client, seed, gateway, make_snapshot, load):
    ids = seed()
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"])
    notification = _signed_notification(ids["order_id"])
    notification["signature_key"] = "0" * 128

    response = client.post("/payments/webhook", json=notification)

    assert response.status_code == 401
    assert gateway.fetch_calls == []
    assert load(Booking, id=ids["booking_id"]).status == BookingStatus.PENDING


def test_webhook_trusts_gateway_over_body(client, seed, gateway, make_snapshot, load):
    ids = seed()
    # Body claims settlement; the gateway still says pending.
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"], "pending")

    response = client.post("/payments/webhook", json=_signed_notification(ids["order_id"]))

    assert response.status_code == 200
    assert response.json()["result"]["mapped"] == "pending"
    assert load(Booking, id=ids["booking_id"]).status == BookingStatus.PENDING


def test_webhook_accepts_numeric_fields(client, seed, gateway, make_snapshot):
    ids = seed()
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"], "expire")
    notification = _signed_notification(ids["order_id"], status_code="407")
    notification["status_code"] = 407

    response = client.post("/payments/webhook", json=notification)

    assert response.status_code == 200
    assert response.json()["result"]["status"] == "FAILED"


def test_webhook_acks_when_mailer_fails(client, seed, gateway, notifier, make_snapshot, load):
    notifier.fail = True
    ids = seed()
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"])

    response = client.post("/payments/webhook", json=_signed_notification(ids["order_id"]))

    assert response.status_code == 200
    assert response.json()["result"]["reconciled"] is True
    assert len(notifier.notices) == 1
    assert load(Booking, id=ids["booking_id"]).status == BookingStatus.PAID


def test_webhook_unknown_order(client):
    response = client.post("/payments/webhook", json=_signed_notification("OSS-UNKNOWN"))
    assert response.status_code == 404


# ---------------------
# RECONCILE AND CHECK
# ---------------------

def test_reconcile_requires_operator_key(client, seed):
    ids = seed()
    response = client.post("/payments/reconcile", json={"order_id": ids["order_id"]})
    assert response.status_code == 401


def test_public_reconcile_disabled_by_default(client, seed):
    ids = seed()
    response = client.post(
        "/payments/reconcile",
        json={"order_id": ids["order_id"]},
        headers={"x-public-reconcile": "1"},
    )
    assert response.status_code == 401


def test_admin_reconciles_single_order(client, seed, gateway, make_snapshot):
    ids = seed()
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"], gross=90000)

    response = client.post(
        "/payments/reconcile",
        json={"order_id": ids["order_id"]},
        headers={"x-admin-key": ADMIN_KEY},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "REVIEW"
    assert response.json()["reason"] == "AMOUNT_MISMATCH"


def test_reconcile_reports_missing_gateway_transaction(client, seed):
    ids = seed()

    response = client.post(
        "/payments/reconcile",
        json={"order_id": ids["order_id"]},
        headers={"x-admin-key": ADMIN_KEY},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["reason"] == "GATEWAY_TRANSACTION_NOT_FOUND"


def test_reconcile_unknown_order(client):
    response = client.post(
        "/payments/reconcile",
        json={"order_id": "OSS-UNKNOWN"},
        headers={"x-admin-key": ADMIN_KEY},
    )
    assert response.status_code == 404


def test_cron_sweep(client, seed, gateway, make_snapshot, load):
    stale = seed(created_minutes_ago=30)
    fresh = seed(event_id=stale["event_id"])
    gateway.snapshots[stale["order_id"]] = make_snapshot(stale["order_id"])
    gateway.snapshots[fresh["order_id"]] = make_snapshot(fresh["order_id"])

    response = client.post(
        "/payments/reconcile",
        json={"older_than_minutes": 10, "limit": 20},
        headers={"x-cron-key": CRON_KEY},
    )

    assert response.status_code == 200
    assert response.json()["count"] == 1
    assert response.json()["results"][0]["order_id"] == stale["order_id"]
    assert load(Booking, id=stale["booking_id"]).status == BookingStatus.PAID
    assert load(Booking, id=fresh["booking_id"]).status == BookingStatus.PENDING


def test_check_payment(client, seed, gateway, make_snapshot, load):
    ids = seed()
    gateway.snapshots[ids["order_id"]] = make_snapshot(ids["order_id"])

    unauthorized = client.get("/payments/check", params={"order_id": ids["order_id"]})
    assert unauthorized.status_code == 401

    response = client.get(
        "/payments/check",
        params={"order_id": ids["order_id"]},
        headers={"x-admin-key": ADMIN_KEY},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["advice"] == "await_webhook_or_reconcile"
    assert body["gateway"]["mapped"] == "paid"
    assert load(Booking, id=ids["booking_id"]).status == BookingStatus.PENDING


def test_check_unknown_order(client):
    response = client.get(
        "/payments/check",
        params={"order_id": "OSS-UNKNOWN"},
        headers={"x-admin-key": ADMIN_KEY},
    )
    assert response.status_code == 404
