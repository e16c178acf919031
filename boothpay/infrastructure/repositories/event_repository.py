# boothpay/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import or_, select, update

from boothpay.infrastructure.db.models import Event


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_inventory(self, event_id: str) -> Event:
        """
        SELECT ... FOR UPDATE
        Re-reads quota and sold count, bypassing anything already
        loaded into the session.
        """

        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )

        event = self.db.execute(stmt).scalar_one_or_none()

        if not event:
            raise ValueError("Event not found")

        return event

    def claim_booth(self, event_id: str) -> bool:
        """
        Guarded increment of the sold count. Returns False when the quota
        is already exhausted; the counter is then left unchanged.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(
                or_(
                    Event.booth_quota.is_(None),
                    Event.booth_sold_count < Event.booth_quota,
                )
            )
            .values(booth_sold_count=Event.booth_sold_count + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0
