"""VPN provisioning API client (Remnawave-style REST).

Every call is synchronous with a bounded timeout. Non-2xx responses,
transport failures and undecodable bodies all surface as ProviderError.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx

from vpn_billing.logging_config import get_logger
from vpn_billing.models.provider import RemoteAccount
from vpn_billing.utils.timestamps import format_iso8601, parse_iso8601, utc_now

logger = get_logger(__name__)


class ProviderError(Exception):
    """Raised when the provisioning service call fails.

    Attributes:
        status_code: HTTP status, None for transport failures
        body: Raw response body, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ProviderClient:
    """Typed client for the provisioning service.

    Args:
        base_url: API base URL (e.g., https://panel.example.com)
        api_key: Bearer token
        squad_id: Internal squad assigned to newly created users
        timeout: Per-request timeout in seconds
        username_prefix: Prefix for remote usernames
        clock: Source of the current naive UTC time
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        squad_id: Optional[str] = None,
        timeout: float = 10.0,
        username_prefix: str = "user_",
        clock: Callable[[], datetime] = utc_now,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._squad_id = squad_id
        self._username_prefix = username_prefix
        self._clock = clock
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        try:
            response = self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            logger.error("provider_request_failed", method=method, path=path, error=str(e))
            raise ProviderError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 300:
            logger.error(
                "provider_error_response",
                method=method,
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ProviderError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{method} {path} returned undecodable body",
                status_code=response.status_code,
                body=response.text,
            ) from e

        if isinstance(payload, dict) and isinstance(payload.get("response"), dict):
            return payload["response"]
        if isinstance(payload, dict):
            return payload
        raise ProviderError(
            f"{method} {path} returned unexpected payload",
            status_code=response.status_code,
            body=response.text,
        )

    def _to_remote_account(self, data: dict[str, Any], fallback_expiry: Optional[datetime] = None) -> RemoteAccount:
        remote_id = data.get("uuid")
        if not remote_id:
            raise ProviderError("Provider response lacks user uuid", body=str(data))
        try:
            expires_at = parse_iso8601(data.get("expireAt")) or fallback_expiry
        except ValueError as e:
            raise ProviderError(f"Invalid expireAt in provider response: {data.get('expireAt')}") from e
        if expires_at is None:
            raise ProviderError("Provider response lacks expireAt", body=str(data))
        return RemoteAccount(
            remote_id=remote_id,
            access_url=data.get("subscriptionUrl") or "",
            expires_at=expires_at,
            status=data.get("status"),
        )

    def create(self, account_identity: int, duration: timedelta) -> RemoteAccount:
        """Create a remote account with access until now + duration.

        Args:
            account_identity: Telegram chat id of the owner
            duration: Access period

        Returns:
            RemoteAccount with remote id, access URL and expiry
        """
        expires_at = self._clock() + duration
        body: dict[str, Any] = {
            "username": f"{self._username_prefix}{account_identity}",
            "telegramId": account_identity,
            "expireAt": format_iso8601(expires_at),
            "status": "ACTIVE",
        }
        if self._squad_id:
            body["activeInternalSquads"] = [self._squad_id]

        remote = self._to_remote_account(self._request("POST", "/api/users", json=body), expires_at)
        logger.info(
            "provider_account_created",
            telegram_id=account_identity,
            remote_id=remote.remote_id,
            expires_at=remote.expires_at.isoformat(),
        )
        return remote

    def fetch(self, remote_id: str) -> RemoteAccount:
        """Fetch the current remote state."""
        return self._to_remote_account(self._request("GET", f"/api/users/{remote_id}"))

    def extend(self, remote_id: str, duration: timedelta) -> datetime:
        """Extend access by duration from max(now, current remote expiry).

        Returns:
            New expiry (naive UTC)
        """
        current = self.fetch(remote_id)
        now = self._clock()
        new_expiry = max(now, current.expires_at) + duration

        data = self._request(
            "PATCH", "/api/users", json={"uuid": remote_id, "expireAt": format_iso8601(new_expiry)}
        )
        if data.get("expireAt"):
            try:
                new_expiry = max(new_expiry, parse_iso8601(data["expireAt"]))
            except ValueError as e:
                raise ProviderError(f"Invalid expireAt in provider response: {data['expireAt']}") from e

        logger.info(
            "provider_account_extended",
            remote_id=remote_id,
            old_expiry=current.expires_at.isoformat(),
            new_expiry=new_expiry.isoformat(),
        )
        return new_expiry

    def disable(self, remote_id: str) -> bool:
        self._request("POST", f"/api/users/{remote_id}/actions/disable")
        logger.info("provider_account_disabled", remote_id=remote_id)
        return True

    def enable(self, remote_id: str) -> bool:
        self._request("POST", f"/api/users/{remote_id}/actions/enable")
        logger.info("provider_account_enabled", remote_id=remote_id)
        return True

    def close(self) -> None:
        self._client.close()


# Global client instance
_client_instance: Optional[ProviderClient] = None
_client_lock = threading.Lock()


def get_provider_client() -> ProviderClient:
    """Get global provider client (singleton) built from configuration."""
    global _client_instance
    if _client_instance is None:
        with _client_lock:
            if _client_instance is None:
                from vpn_billing.config import get_config
                from vpn_billing.services.time_controller import get_time_controller

                settings = get_config().provider
                _client_instance = ProviderClient(
                    base_url=settings.base_url,
                    api_key=settings.api_key,
                    squad_id=settings.squad_id,
                    timeout=settings.timeout_seconds,
                    username_prefix=settings.username_prefix,
                    clock=get_time_controller().now,
                )
    return _client_instance


def reset_provider_client() -> None:
    """Close and forget the global provider client."""
    global _client_instance
    with _client_lock:
        if _client_instance is not None:
            _client_instance.close()
        _client_instance = None
