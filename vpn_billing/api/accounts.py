"""Account API used by the chat front end.

Implements:
- POST /accounts - Register account (find-or-create, referral linking)
- GET /accounts/{telegram_id} - Account profile with balance and subscription
- POST /accounts/{telegram_id}/purchases - Buy a plan with the internal balance
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from vpn_billing.errors import AccountNotFoundError, PlanNotFoundError
from vpn_billing.logging_config import get_logger
from vpn_billing.models import (
    AccountResponse,
    BalancePurchaseRequest,
    BalancePurchaseResponse,
    RegisterAccountRequest,
    SubscriptionInfo,
)
from vpn_billing.models.account import Account
from vpn_billing.repositories.account_store import AccountStore, get_account_store
from vpn_billing.repositories.payment_store import PaymentStore, get_payment_store
from vpn_billing.services.account_service import AccountService, get_account_service
from vpn_billing.services.subscription_manager import (
    PurchaseOutcome,
    PurchaseStatus,
    SubscriptionManager,
    derive_state,
    get_subscription_manager,
)

logger = get_logger(__name__)
router = APIRouter(tags=["Accounts"], prefix="/accounts")

# Outcome → HTTP status for balance purchases
PURCHASE_STATUS_CODES = {
    PurchaseStatus.COMPLETED: 200,
    PurchaseStatus.DUPLICATE: 200,
    PurchaseStatus.INSUFFICIENT_FUNDS: 402,
    PurchaseStatus.FAILED: 502,
}

PURCHASE_MESSAGES = {
    PurchaseStatus.COMPLETED: "Subscription purchased",
    PurchaseStatus.DUPLICATE: "Purchase already processed",
    PurchaseStatus.INSUFFICIENT_FUNDS: "Insufficient funds",
    PurchaseStatus.FAILED: "Purchase failed, balance restored",
}


def to_account_response(account: Account, accounts: AccountStore, payments: PaymentStore) -> AccountResponse:
    """Build the account profile from a freshly loaded account."""
    subscription = account.subscription
    referrals = payments.get_referrals_for(account.id)
    state = derive_state(account, subscription)
    return AccountResponse(
        telegram_id=account.telegram_id,
        username=account.username,
        balance=account.balance,
        status=account.status.value,
        referral_code=account.referral_code,
        referrer_telegram_id=account.referrer.telegram_id if account.referrer else None,
        invited_count=accounts.count_invited(account.id),
        referral_earned=sum((r.amount for r in referrals), Decimal("0")),
        subscription=SubscriptionInfo(
            state=state.value,
            remote_id=subscription.remote_id if subscription else None,
            access_url=subscription.access_url if subscription else None,
            expires_at=subscription.expires_at if subscription else None,
            plan=subscription.plan if subscription else None,
        ),
    )


@router.post("", response_model=AccountResponse, summary="Register account")
def register_account(
    request: RegisterAccountRequest,
    service: AccountService = Depends(get_account_service),
    store: AccountStore = Depends(get_account_store),
    payments: PaymentStore = Depends(get_payment_store),
) -> AccountResponse:
    """Register an account on first contact.

    Idempotent: a known identity returns the existing account. A referral
    code links its owner as referrer only if none is set yet.
    """
    logger.info(
        "register_account_request",
        telegram_id=request.telegram_id,
        has_referral_code=bool(request.referral_code),
    )
    account = service.register(
        request.telegram_id,
        username=request.username,
        referral_code=request.referral_code,
    )
    return to_account_response(account, store, payments)


@router.get("/{telegram_id}", response_model=AccountResponse, summary="Get account profile")
def get_account(
    telegram_id: int,
    store: AccountStore = Depends(get_account_store),
    payments: PaymentStore = Depends(get_payment_store),
) -> AccountResponse:
    """Get account profile.

    Raises:
        404: Account not found
    """
    try:
        account = store.get_by_telegram_id(telegram_id)
    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return to_account_response(account, store, payments)


@router.post(
    "/{telegram_id}/purchases",
    response_model=BalancePurchaseResponse,
    summary="Buy a plan with balance",
    responses={402: {"model": BalancePurchaseResponse}, 502: {"model": BalancePurchaseResponse}},
)
def purchase_with_balance(
    telegram_id: int,
    request: BalancePurchaseRequest,
    manager: SubscriptionManager = Depends(get_subscription_manager),
):
    """Buy a plan with the internal balance.

    Raises:
        404: Account or plan not found
        402: Insufficient funds (body carries the outcome)
        502: Provisioning failed, balance restored (body carries the outcome)
    """
    logger.info("balance_purchase_request", telegram_id=telegram_id, plan=request.plan)
    try:
        outcome = manager.purchase_with_balance(
            telegram_id, plan_id=request.plan, idempotency_key=request.idempotency_key
        )
    except (AccountNotFoundError, PlanNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))

    response = to_purchase_response(outcome)
    return JSONResponse(
        status_code=PURCHASE_STATUS_CODES[outcome.status],
        content=jsonable_encoder(response),
    )


def to_purchase_response(outcome: PurchaseOutcome) -> BalancePurchaseResponse:
    return BalancePurchaseResponse(
        status=outcome.status.value,
        failed_phase=outcome.failed_phase.value if outcome.failed_phase else None,
        plan=outcome.plan,
        price=outcome.price,
        balance=outcome.balance,
        expires_at=outcome.expires_at,
        access_url=outcome.access_url,
        message=PURCHASE_MESSAGES[outcome.status],
    )
