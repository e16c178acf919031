# boothpay/infrastructure/repositories/payment_repository.py

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from boothpay.infrastructure.db.models import Payment
from boothpay.domain.fees import detect_channel
from boothpay.domain.payment_status import parse_gross_amount

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class PaymentRepository:
    """
    Payment records keyed by order id. Every write is an upsert so that
    charge, webhook and sweep can all touch the same row without a
    read-modify-write race.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_order_id(self, order_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def upsert(
        self,
        order_id: str,
        booking_id: str,
        **values: Any,
    ) -> None:
        values["updated_at"] = datetime.now(timezone.utc)
        insert = _DIALECT_INSERTS.get(self.db.get_bind().dialect.name)

        if insert is None:
            self._upsert_generic(order_id, booking_id, values)
            return

        stmt = insert(Payment).values(order_id=order_id, booking_id=booking_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[Payment.order_id],
            set_=values,
        )
        self.db.execute(stmt)

    def _upsert_generic(self, order_id: str, booking_id: str, values: dict) -> None:
        payment = self.get_by_order_id(order_id)
        if payment is None:
            payment = Payment(order_id=order_id, booking_id=booking_id)
            self.db.add(payment)
        for key, value in values.items():
            setattr(payment, key, value)
        self.db.flush()

    def save_session(
        self,
        order_id: str,
        booking_id: str,
        *,
        gross_amount: int,
        token: str,
        redirect_url: str,
        quoted_channel: str | None,
        quoted: bool,
        raw: Mapping[str, Any],
    ) -> None:
        self.upsert(
            order_id,
            booking_id,
            status="PENDING",
            channel=quoted_channel,
            gross_amount=gross_amount,
            session_token=token,
            redirect_url=redirect_url,
            quoted=quoted,
            quoted_channel=quoted_channel,
            raw=dict(raw),
        )

    def save_snapshot(
        self,
        order_id: str,
        booking_id: str,
        snapshot: Mapping[str, Any],
    ) -> None:
        """
        Record the latest gateway view. Session handle and charge-time
        quote columns are left as they are.
        """
        values: dict[str, Any] = {
            "status": str(snapshot.get("transaction_status") or "PENDING").upper(),
            "raw": dict(snapshot),
        }
        channel = detect_channel(snapshot)
        if channel is not None:
            values["channel"] = channel
        gross = parse_gross_amount(snapshot)
        if gross is not None:
            values["gross_amount"] = int(gross)
        self.upsert(order_id, booking_id, **values)
