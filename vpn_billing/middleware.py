"""FastAPI middleware for request logging, correlation and webhook source checks."""

import time
import uuid
from typing import Callable, Iterable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from vpn_billing.logging_config import bind_context, clear_context, get_logger
from vpn_billing.utils.network import is_allowed_ip, parse_networks

logger = get_logger(__name__)


def client_ip(request: Request, trust_forwarded_for: bool = False) -> Optional[str]:
    """Resolve the client address, optionally from the first X-Forwarded-For hop."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging HTTP requests and responses with correlation IDs.

    Features:
    - Generates unique request_id for each request
    - Logs request method, path, client IP
    - Logs response status code and duration
    - Binds request_id to all logs within request context
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        """Initialize middleware.

        Args:
            app: ASGI application
            include_request_details: If True, log client address and user agent
        """
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_context(request_id=request_id)

        if self.include_request_details:
            logger.info(
                "request_started",
                method=request.method,
                path=request.url.path,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            logger.info("request_started", method=request.method, path=request.url.path)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            logger.info(
                "request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )

            # Echo request ID for client correlation
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds the account identity from /accounts/{telegram_id}/... paths to the log context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = request.url.path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] == "accounts" and parts[1].lstrip("-").isdigit():
            bind_context(telegram_id=int(parts[1]))

        return await call_next(request)


class WebhookSourceMiddleware(BaseHTTPMiddleware):
    """Rejects webhook deliveries from outside the payment provider's networks.

    An empty network list allows every source.

    Args:
        app: ASGI application
        webhook_path: Path of the payment webhook
        allowed_networks: CIDRs allowed to call it
        trust_forwarded_for: Use the first X-Forwarded-For hop as client IP
    """

    def __init__(
        self,
        app: ASGIApp,
        webhook_path: str,
        allowed_networks: Iterable[str] = (),
        trust_forwarded_for: bool = False,
    ):
        super().__init__(app)
        self.webhook_path = webhook_path
        self.networks = parse_networks(allowed_networks)
        self.trust_forwarded_for = trust_forwarded_for

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if self.networks and request.url.path == self.webhook_path:
            ip = client_ip(request, self.trust_forwarded_for)
            if not is_allowed_ip(ip, self.networks):
                logger.warning("webhook_source_rejected", client_ip=ip)
                return JSONResponse(
                    status_code=403,
                    content={"error": "forbidden", "message": "Source address not allowed"},
                )

        return await call_next(request)
