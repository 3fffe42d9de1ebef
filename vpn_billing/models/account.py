"""Account model - one end user of the bot, keyed by Telegram chat id."""

import enum
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from vpn_billing.database import Base
from vpn_billing.utils.timestamps import utc_now


class AccountStatus(str, enum.Enum):
    """Lifecycle status mirrored from the provider."""

    ACTIVE = "active"  # Access enabled (or never provisioned)
    EXPIRED = "expired"  # Provider account disabled after lapse


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    username = Column(String(255))
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    referral_code = Column(String(64), unique=True)
    referrer_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, index=True)
    status = Column(
        Enum(AccountStatus, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    referrer = relationship("Account", remote_side=[id], lazy="joined", join_depth=1)
    subscription = relationship("Subscription", back_populates="account", uselist=False, lazy="joined")

    @property
    def is_expired(self) -> bool:
        return self.status == AccountStatus.EXPIRED

    def __repr__(self) -> str:
        return f"Account(id={self.id}, telegram_id={self.telegram_id}, balance={self.balance}, status={self.status})"
