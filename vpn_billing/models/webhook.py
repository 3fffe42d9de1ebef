"""Payment provider notification models.

Matches the YooKassa HTTP notification body:
{"type": "notification", "event": "payment.succeeded", "object": {...}}

Fields are kept permissive here; the webhook processor decides what is valid
for the events it acts on.
"""

from typing import Optional, Union

from pydantic import BaseModel, Field

PAYMENT_SUCCEEDED = "payment.succeeded"
BALANCE_TOPUP_TYPE = "balance_topup"


class PaymentAmount(BaseModel):
    """Amount block of a payment object."""

    value: Union[str, int, float] = Field(..., description="Decimal amount as sent by the provider")
    currency: str = Field(default="RUB", description="ISO 4217 currency code")


class PaymentMetadata(BaseModel):
    """Merchant metadata attached when the payment link was created."""

    telegram_id: Optional[Union[int, str]] = Field(None, description="Paying user's Telegram chat id")
    duration: Optional[str] = Field(None, description="Access duration (e.g., 30d)")
    type: Optional[str] = Field(None, description="balance_topup for balance payments")

    class Config:
        extra = "allow"


class PaymentObject(BaseModel):
    """Payment object carried by the notification."""

    id: Optional[str] = Field(None, description="Provider transaction id")
    status: Optional[str] = Field(None, description="Payment status (succeeded)")
    paid: Optional[bool] = Field(None, description="Whether the payment was paid")
    amount: Optional[PaymentAmount] = Field(None, description="Paid amount")
    metadata: PaymentMetadata = Field(default_factory=PaymentMetadata)

    class Config:
        extra = "allow"


class WebhookNotification(BaseModel):
    """Inbound payment notification."""

    type: Optional[str] = Field(default="notification", description="Notification kind")
    event: str = Field(..., description="Event name (e.g., payment.succeeded)")
    object: PaymentObject = Field(default_factory=PaymentObject)

    class Config:
        extra = "allow"
        json_schema_extra = {
            "example": {
                "type": "notification",
                "event": "payment.succeeded",
                "object": {
                    "id": "2d0a8f12-000f-5000-9000-1b5c7d1a3e21",
                    "status": "succeeded",
                    "paid": True,
                    "amount": {"value": "300.00", "currency": "RUB"},
                    "metadata": {"telegram_id": "123456789", "type": "balance_topup"},
                },
            }
        }

    @property
    def is_payment_succeeded(self) -> bool:
        return self.event == PAYMENT_SUCCEEDED
