import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from momo_billing import config
from momo_billing.auth import verify_cron_secret, verify_token
from momo_billing.database import get_db
from momo_billing.discounts import calculate_discount
from momo_billing.entitlements import get_subscription_status
from momo_billing.errors import (
    GatewayError,
    NotFoundError,
    PaymentError,
    PersistenceError,
    SubscriptionRequiredError,
    ValidationError,
)
from momo_billing.gateway import GatewayClient, GatewayConfig
from momo_billing.payments import JobTierPaymentParams, PaymentService, SubscriptionPaymentParams
from momo_billing.promo import PromoCodeValidator
from momo_billing.repository import Repository
from momo_billing.webhooks import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


def get_gateway_client() -> GatewayClient:
    try:
        return GatewayClient(GatewayConfig.from_env())
    except GatewayError as e:
        logger.error("Gateway client unavailable: %s", e)
        raise HTTPException(status_code=503, detail="Payment gateway is not configured")


def get_optional_gateway_client() -> GatewayClient | None:
    try:
        return GatewayClient(GatewayConfig.from_env())
    except GatewayError as e:
        logger.warning("Gateway client unavailable, status reads stay local: %s", e)
        return None


def to_http_error(error: PaymentError) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, ValidationError):
        return HTTPException(status_code=400, detail=error.reason)
    if isinstance(error, SubscriptionRequiredError):
        return HTTPException(status_code=403, detail=str(error))
    if isinstance(error, GatewayError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, PersistenceError):
        return HTTPException(status_code=500, detail="Internal error")
    return HTTPException(status_code=500, detail=str(error))


class SubscriptionPaymentRequest(BaseModel):
    plan_slug: str
    phone_number: str
    promo_code: str | None = None
    gateway: str | None = None


class JobTierPaymentRequest(SubscriptionPaymentRequest):
    job_id: str
    add_on_slugs: list[str] = Field(default_factory=list)


class PaymentResponse(BaseModel):
    transaction_id: str
    reference: str
    amount: int
    original_amount: int
    discount_amount: int
    currency: str
    checkout_url: str | None = None


class PromoValidateRequest(BaseModel):
    code: str
    plan_slug: str


class TransactionStatusResponse(BaseModel):
    transaction_id: str
    status: str
    amount: int
    currency: str
    original_amount: int
    discount_amount: int
    created_at: datetime
    updated_at: datetime


class SubscriptionStatusResponse(BaseModel):
    is_active: bool
    plan_slug: str | None = None
    expires_at: datetime | None = None
    days_remaining: int = 0
    subscription_id: str | None = None
    role: str | None = None


def _payment_service(db: Session, gateway: GatewayClient) -> PaymentService:
    return PaymentService(Repository(db), gateway, default_gateway=gateway.config.default_gateway)


@router.post("/payments/subscriptions", response_model=PaymentResponse, status_code=201)
def initiate_subscription_payment(
    request: SubscriptionPaymentRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    service = _payment_service(db, gateway)
    try:
        result = service.initiate_subscription_payment(
            SubscriptionPaymentParams(user_id=user_id, **request.model_dump())
        )
    except PaymentError as e:
        raise to_http_error(e)
    return PaymentResponse(**vars(result))


@router.post("/payments/job-tiers", response_model=PaymentResponse, status_code=201)
def initiate_job_tier_payment(
    request: JobTierPaymentRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway_client),
):
    service = _payment_service(db, gateway)
    try:
        result = service.initiate_job_tier_payment(JobTierPaymentParams(user_id=user_id, **request.model_dump()))
    except PaymentError as e:
        raise to_http_error(e)
    return PaymentResponse(**vars(result))


@router.get("/payments/{transaction_id}/status", response_model=TransactionStatusResponse)
def payment_status(
    transaction_id: str,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateway: GatewayClient | None = Depends(get_optional_gateway_client),
):
    repository = Repository(db)
    try:
        transaction = repository.get_transaction(transaction_id, user_id=user_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")

        if gateway is not None:
            try:
                WebhookReconciler(repository, gateway=gateway).poll(transaction)
            except GatewayError as e:
                logger.warning("Status poll for transaction %s failed, returning local status: %s", transaction.id, e)
            repository.refresh(transaction)
    except PaymentError as e:
        raise to_http_error(e)

    return TransactionStatusResponse(
        transaction_id=transaction.id,
        status=transaction.status,
        amount=transaction.amount,
        currency=transaction.currency,
        original_amount=transaction.original_amount,
        discount_amount=transaction.discount_amount,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
    )


@router.post("/promo-codes/validate")
def validate_promo_code(
    request: PromoValidateRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    repository = Repository(db)
    try:
        plan = repository.get_active_plan(request.plan_slug)
        if plan is None:
            return {"valid": False, "reason": "Plan not found"}

        result = PromoCodeValidator(repository).validate(request.code, request.plan_slug, user_id)
        if not result.valid:
            return {"valid": False, "reason": result.reason}

        discount = calculate_discount(plan.amount_minor, result)
    except PaymentError as e:
        raise to_http_error(e)

    return {
        "valid": True,
        "discount_type": result.discount_type,
        "discount_value": result.discount_value,
        "original_amount": discount.original_amount,
        "discount_amount": discount.discount_amount,
        "final_amount": discount.final_amount,
    }


@router.get("/subscriptions/me", response_model=SubscriptionStatusResponse)
def my_subscription(user_id: str = Depends(verify_token), db: Session = Depends(get_db)):
    try:
        status = get_subscription_status(Repository(db), user_id)
    except PaymentError as e:
        raise to_http_error(e)
    return SubscriptionStatusResponse(**vars(status))


@router.post("/payments/reconcile", dependencies=[Depends(verify_cron_secret)])
def reconcile_pending(db: Session = Depends(get_db), gateway: GatewayClient = Depends(get_gateway_client)):
    reconciler = WebhookReconciler(Repository(db), gateway=gateway)
    try:
        report = reconciler.sweep_pending(
            min_age=timedelta(minutes=config.PENDING_SWEEP_MIN_AGE_MINUTES),
            expire_after=timedelta(hours=config.PENDING_EXPIRY_HOURS),
        )
    except PaymentError as e:
        raise to_http_error(e)
    return vars(report)
