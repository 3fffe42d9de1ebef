"""Payment provider webhook.

Implements:
- POST {payments.webhook_path} - Payment notification (default /yookassa-webhook)

Status codes:
- 200: processed, ignored or duplicate
- 400: malformed JSON or payload
- 403: source not allowed (WebhookSourceMiddleware)
- 405: non-POST (routing)
- 500: processing failed; the provider redelivers
"""

import json

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from vpn_billing.errors import PersistenceError, ProvisioningFailedError, WebhookValidationError
from vpn_billing.logging_config import bind_context, get_logger
from vpn_billing.models import WebhookNotification, WebhookResponse
from vpn_billing.services.webhook_processor import WebhookProcessor, get_webhook_processor

logger = get_logger(__name__)

DEFAULT_WEBHOOK_PATH = "/yookassa-webhook"


async def receive_payment_notification(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResponse:
    """Receive a payment notification.

    The body is parsed by hand so malformed JSON yields 400 rather than 422.
    Processing runs in the thread pool.

    Raises:
        400: Malformed JSON or invalid payload
        500: Provisioning or store failure
    """
    body = await request.body()
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        logger.warning("webhook_malformed_json", error=str(e))
        raise HTTPException(status_code=400, detail="Malformed JSON body")

    try:
        notification = WebhookNotification.model_validate(data)
    except ValidationError as e:
        logger.warning("webhook_invalid_payload", errors=e.error_count())
        raise HTTPException(status_code=400, detail="Invalid notification payload")

    bind_context(event_type=notification.event, transaction_id=notification.object.id)

    try:
        result = await run_in_threadpool(processor.process, notification)
    except WebhookValidationError as e:
        logger.warning("webhook_rejected", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except ProvisioningFailedError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except PersistenceError as e:
        logger.error("webhook_persistence_failed", error=str(e))
        raise HTTPException(status_code=500, detail="Payment could not be recorded")

    return WebhookResponse(outcome=result.outcome.value)


def build_router(webhook_path: str = DEFAULT_WEBHOOK_PATH) -> APIRouter:
    """Create the webhook router bound to the configured path."""
    router = APIRouter(tags=["Payments"])
    router.add_api_route(
        webhook_path,
        receive_payment_notification,
        methods=["POST"],
        response_model=WebhookResponse,
        summary="Payment provider notification",
    )
    return router
