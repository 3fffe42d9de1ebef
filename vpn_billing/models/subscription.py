"""Subscription model - remote VPN access owned by one account.

Lifecycle: NONE → ACTIVE → EXPIRED, with ACTIVE → ACTIVE on extension and
EXPIRED → ACTIVE on a new purchase.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from vpn_billing.database import Base
from vpn_billing.utils.timestamps import utc_now


class SubscriptionState(str, enum.Enum):
    """Derived subscription lifecycle state."""

    NONE = "none"  # Never provisioned
    ACTIVE = "active"  # Provisioned and access enabled
    EXPIRED = "expired"  # Remote account disabled after lapse


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), unique=True, nullable=False)
    remote_id = Column(String(64), nullable=False, default="", index=True)
    access_url = Column(Text, nullable=False, default="")
    expires_at = Column(DateTime, nullable=False, index=True)
    plan = Column(String(64), nullable=False, default="standard")
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    account = relationship("Account", back_populates="subscription", lazy="joined")

    def is_lapsed(self, now: datetime) -> bool:
        """Check if the paid period has ended."""
        return self.expires_at < now

    def __repr__(self) -> str:
        return (
            f"Subscription(account_id={self.account_id}, remote_id={self.remote_id}, "
            f"expires_at={self.expires_at})"
        )
