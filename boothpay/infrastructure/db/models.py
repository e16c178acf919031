# boothpay/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    String,
    Integer,
    DateTime,
    Enum,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from uuid import uuid4

from boothpay.infrastructure.db.session import Base
from boothpay.domain.state_machine import BookingStatus


class Event(Base):
    """
    Subset of the event entity the payment engine reads and mutates:
    booth price, quota and sold count.
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    title: Mapped[str] = mapped_column(String(191), nullable=False)
    location: Mapped[str | None] = mapped_column(String(191), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    booth_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    booth_quota: Mapped[int | None] = mapped_column(Integer, nullable=True)
    booth_sold_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("booth_price >= 0", name="ck_event_booth_price_nonnegative"),
        CheckConstraint("booth_sold_count >= 0", name="ck_event_booth_sold_nonnegative"),
        CheckConstraint(
            "booth_quota IS NULL OR booth_sold_count <= booth_quota",
            name="ck_event_booth_sold_lte_quota",
        ),
    )


class Booking(Base):
    """
    Booth booking. Status is mutated only through guarded updates
    in BookingRepository.
    """

    __tablename__ = "event_booth_bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("events.id"),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    voucher_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    review_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    rep_name: Mapped[str | None] = mapped_column(String(191), nullable=True)
    campus_name: Mapped[str | None] = mapped_column(String(191), nullable=True)
    email: Mapped[str | None] = mapped_column(String(191), nullable=True)
    whatsapp: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    event: Mapped[Event] = relationship(lazy="joined")

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_booking_order_id"),
        CheckConstraint("amount >= 0", name="ck_booking_amount_nonnegative"),
    )


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("code", name="uq_voucher_code"),
        CheckConstraint("used_count >= 0", name="ck_voucher_used_nonnegative"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses",
            name="ck_voucher_used_lte_max",
        ),
    )


class Payment(Base):
    """
    Last known gateway view of an order. A cache and audit trail:
    never the source of truth for booking state.
    """

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("event_booth_bookings.id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    gross_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    session_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    redirect_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    quoted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    quoted_channel: Mapped[str | None] = mapped_column(String(32), nullable=True)
    raw: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_payment_order_id"),
    )
