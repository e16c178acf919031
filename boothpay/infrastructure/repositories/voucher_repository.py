# boothpay/infrastructure/repositories/voucher_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import or_, select, update

from boothpay.infrastructure.db.models import Voucher


class VoucherRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, code: str) -> Voucher | None:
        stmt = select(Voucher).where(Voucher.code == code)
        return self.db.execute(stmt).scalar_one_or_none()

    def redeem(self, code: str) -> bool:
        """
        Single guarded increment. False when the voucher is unknown,
        inactive or already at its usage cap.
        """
        stmt = (
            update(Voucher)
            .where(Voucher.code == code)
            .where(Voucher.is_active.is_(True))
            .where(
                or_(
                    Voucher.max_uses.is_(None),
                    Voucher.used_count < Voucher.max_uses,
                )
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount > 0
