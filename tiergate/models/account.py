import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tiergate.db.base import Base


class Account(Base):
    """Credit-ledger view of a user account.

    Only the allowance fields are owned by this service; the row itself is
    created and deleted by the account lifecycle elsewhere.
    """

    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("daily_consumed >= 0", name="ck_accounts_daily_consumed_non_negative"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    plan: Mapped[str] = mapped_column(String(20), default="free")  # free / pro / unlimited
    daily_allowance: Mapped[int] = mapped_column(Integer, default=50)
    daily_consumed: Mapped[int] = mapped_column(Integer, default=0)
    allowance_reset_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    usage_records: Mapped[list["UsageRecord"]] = relationship(  # noqa: F821
        "UsageRecord", back_populates="account", cascade="all, delete-orphan"
    )
