"""Control API for operations.

Implements:
- POST /control/reconcile - Run one reconciliation pass now
"""

from fastapi import APIRouter, Depends

from vpn_billing.logging_config import get_logger
from vpn_billing.models import ReconcileResponse
from vpn_billing.services.reconciliation_worker import (
    ReconciliationWorker,
    get_reconciliation_worker,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Control API"], prefix="/control")


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Run reconciliation pass",
)
def reconcile(
    worker: ReconciliationWorker = Depends(get_reconciliation_worker),
) -> ReconcileResponse:
    """Run one reconciliation pass immediately.

    Sends due expiry warnings and revokes lapsed subscriptions, exactly like
    a scheduled pass. Waits for an in-flight scheduled pass to finish first.

    Returns:
        ReconcileResponse with the pass counters
    """
    logger.info("manual_reconcile_request")
    report = worker.run_once()
    return ReconcileResponse(
        ran_at=report.ran_at,
        warned=report.warned,
        revoked=report.revoked,
        failed=report.failed,
        skipped=report.skipped,
    )
