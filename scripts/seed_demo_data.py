from sqlalchemy import select

from boothpay.domain.state_machine import BookingStatus
from boothpay.infrastructure.db.models import Base, Booking, Event, Voucher
from boothpay.infrastructure.db.session import SessionLocal, engine
from boothpay.infrastructure.repositories.booking_repository import BookingRepository

DEMO_EVENT_TITLE = "Study Abroad Expo 2026"


def seed_event(db) -> Event:
    event = db.execute(
        select(Event).where(Event.title == DEMO_EVENT_TITLE)
    ).scalar_one_or_none()
    if event:
        event.is_published = True
        event.booth_price = 100000
        event.booth_quota = 10
        return event

    event = Event(
        title=DEMO_EVENT_TITLE,
        location="Jakarta Convention Center",
        is_published=True,
        booth_price=100000,
        booth_quota=10,
        booth_sold_count=0,
    )
    db.add(event)
    db.flush()
    return event


def seed_vouchers(db) -> None:
    vouchers = [
        {"code": "EXPO10", "max_uses": 10},
        {"code": "PARTNER", "max_uses": None},
    ]
    for item in vouchers:
        existing = db.execute(
            select(Voucher).where(Voucher.code == item["code"])
        ).scalar_one_or_none()
        if existing:
            existing.max_uses = item["max_uses"]
            existing.is_active = True
            continue
        db.add(Voucher(code=item["code"], max_uses=item["max_uses"], is_active=True))


def seed_pending_booking(db, event: Event) -> Booking:
    existing = db.execute(
        select(Booking)
        .where(Booking.event_id == event.id)
        .where(Booking.status == BookingStatus.PENDING)
    ).unique().scalars().first()
    if existing:
        return existing

    booking = BookingRepository(db).create_booking(
        event_id=event.id,
        amount=event.booth_price,
        voucher_code="EXPO10",
        rep_name="Demo Rep",
        campus_name="Demo University",
        email="rep@example.com",
        whatsapp="+6281234567890",
    )
    db.flush()
    return booking


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        event = seed_event(db)
        seed_vouchers(db)
        booking = seed_pending_booking(db, event)
        db.commit()
        print(f"Seed complete: event {event.id}, pending booking {booking.id} ({booking.order_id}).")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
