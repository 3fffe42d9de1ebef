"""Notification gateway - user-facing messages through the Telegram Bot API.

Delivery is fire-and-forget: failures are logged and reported as False,
never raised, so they cannot block ledger or subscription changes.
"""

import threading
from decimal import Decimal
from datetime import datetime
from typing import Optional

import httpx

from vpn_billing.logging_config import get_logger

logger = get_logger(__name__)

# Message templates
TOPUP_CONFIRMED = "Balance topped up by {amount} {currency}. Current balance: {balance} {currency}."
REFERRAL_BONUS = "You received a referral bonus of {amount} {currency}!"
SUBSCRIPTION_READY = "Payment received! Your VPN access is active until {expires}.\n\nConnection link:\n{access_url}"
EXPIRY_WARNING = "Your VPN subscription expires in about 24 hours. Top up your balance to keep access."
SUBSCRIPTION_EXPIRED = "Your VPN subscription has expired. Purchase a new period to restore access."


def format_expiry(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC")


def format_amount(value: Decimal) -> str:
    return f"{value:.2f}"


class NotificationGateway:
    """Sends text messages to Telegram chats.

    Args:
        bot_token: Telegram bot token; an empty token disables delivery
        api_base: Bot API base URL
        timeout: Per-request timeout in seconds
        parse_mode: Optional sendMessage parse mode
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        parse_mode: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._enabled = bool(bot_token)
        self._parse_mode = parse_mode
        self._client = httpx.Client(
            base_url=f"{api_base.rstrip('/')}/bot{bot_token}",
            timeout=timeout,
            transport=transport,
        )
        if not self._enabled:
            logger.warning("telegram_delivery_disabled", reason="empty bot token")

    def send(self, telegram_id: int, text: str) -> bool:
        """Send a message.

        Args:
            telegram_id: Target chat id
            text: Message text

        Returns:
            True if Telegram accepted the message
        """
        if not self._enabled:
            logger.info("notification_skipped", telegram_id=telegram_id, reason="delivery disabled")
            return False

        payload = {"chat_id": telegram_id, "text": text}
        if self._parse_mode:
            payload["parse_mode"] = self._parse_mode

        try:
            response = self._client.post("/sendMessage", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.error("notification_failed", telegram_id=telegram_id, error=str(e))
            return False
        except ValueError as e:
            logger.error("notification_failed", telegram_id=telegram_id, error=f"invalid response: {e}")
            return False

        if not isinstance(body, dict) or not body.get("ok", False):
            logger.error(
                "notification_rejected",
                telegram_id=telegram_id,
                description=body.get("description") if isinstance(body, dict) else None,
            )
            return False

        logger.debug("notification_sent", telegram_id=telegram_id)
        return True

    def close(self) -> None:
        self._client.close()


# Global gateway instance
_gateway_instance: Optional[NotificationGateway] = None
_gateway_lock = threading.Lock()


def get_notification_gateway() -> NotificationGateway:
    """Get global notification gateway (singleton) built from configuration."""
    global _gateway_instance
    if _gateway_instance is None:
        with _gateway_lock:
            if _gateway_instance is None:
                from vpn_billing.config import get_config

                settings = get_config().telegram
                _gateway_instance = NotificationGateway(
                    bot_token=settings.bot_token,
                    api_base=settings.api_base,
                    timeout=settings.timeout_seconds,
                    parse_mode=settings.parse_mode,
                )
    return _gateway_instance


def reset_notification_gateway() -> None:
    global _gateway_instance
    with _gateway_lock:
        if _gateway_instance is not None:
            _gateway_instance.close()
        _gateway_instance = None
