"""Payment and referral bookkeeping rows. Both are immutable once written."""

import enum

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, Numeric, String

from vpn_billing.database import Base
from vpn_billing.utils.timestamps import utc_now


class PaymentCategory(str, enum.Enum):
    """What a processed payment paid for."""

    SUBSCRIPTION = "subscription"
    BALANCE_TOPUP = "balance_topup"


class PaymentRecord(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="RUB")
    status = Column(String(32), nullable=False, default="succeeded")
    category = Column(
        Enum(PaymentCategory, values_callable=lambda e: [m.value for m in e], native_enum=False, length=32),
        nullable=False,
    )
    provider_transaction_id = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"PaymentRecord(id={self.id}, account_id={self.account_id}, amount={self.amount}, "
            f"category={self.category}, transaction={self.provider_transaction_id})"
        )


class ReferralTransaction(Base):
    __tablename__ = "referral_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    referrer_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    invited_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
