"""VPN provisioning service models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class RemoteAccount(BaseModel):
    """Account state as reported by the provisioning service."""

    remote_id: str = Field(..., description="Provider account UUID")
    access_url: str = Field(default="", description="Subscription URL handed to the user")
    expires_at: datetime = Field(..., description="Access expiry (naive UTC)")
    status: Optional[str] = Field(None, description="Provider status (ACTIVE, DISABLED, ...)")

    @property
    def is_enabled(self) -> bool:
        return (self.status or "").upper() == "ACTIVE"
