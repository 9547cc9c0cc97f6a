"""
Payment orchestration.

Coordinates pricing plans, promo code validation, the Payunit gateway and
the transactions table. A payment moves through:

    plan resolved -> promo applied -> amount finalized -> pending transaction
    persisted -> gateway initialized -> push succeeded | hosted fallback

A fatal gateway failure leaves the transaction pending; the webhook, the
status poll or the pending sweep settles it later.
"""

import logging
from dataclasses import dataclass, field

from momo_billing import config
from momo_billing.audit import GatewayAudit, with_gateway_audit
from momo_billing.discounts import NO_PROMO, calculate_discount
from momo_billing.errors import GatewayError, NotFoundError, ValidationError
from momo_billing.gateway import (
    PROVIDER_NAME,
    GatewayClient,
    build_provider_transaction_id,
    normalize_phone,
    resolve_gateway,
)
from momo_billing.models import PricingPlan, new_id
from momo_billing.promo import PromoCodeValidator
from momo_billing.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionPaymentParams:
    user_id: str
    plan_slug: str
    phone_number: str
    promo_code: str | None = None
    gateway: str | None = None


@dataclass
class JobTierPaymentParams:
    user_id: str
    job_id: str
    plan_slug: str
    phone_number: str
    add_on_slugs: list[str] = field(default_factory=list)
    promo_code: str | None = None
    gateway: str | None = None


@dataclass
class PaymentResult:
    transaction_id: str
    reference: str
    amount: int
    original_amount: int
    discount_amount: int
    currency: str
    checkout_url: str | None = None


class PaymentService:
    def __init__(
        self,
        repository: Repository,
        gateway: GatewayClient,
        default_gateway: str | None = None,
        currency: str = config.PAYMENT_CURRENCY,
        country: str = config.PAYMENT_COUNTRY,
    ):
        self.repository = repository
        self.gateway = gateway
        self.promos = PromoCodeValidator(repository)
        self.default_gateway = default_gateway
        self.currency = currency
        self.country = country

    def _load_plan(self, slug: str) -> PricingPlan:
        plan = self.repository.get_active_plan(slug)
        if plan is None:
            raise NotFoundError(f"Plan {slug} not found or inactive")
        return plan

    def initiate_subscription_payment(self, params: SubscriptionPaymentParams) -> PaymentResult:
        plan = self._load_plan(params.plan_slug)
        return self._initiate(
            user_id=params.user_id,
            plan=plan,
            total=plan.amount_minor,
            phone_number=params.phone_number,
            promo_code=params.promo_code,
            gateway_override=params.gateway,
            description=f"Subscription: {plan.name}",
            meta={"plan_slug": plan.slug, "plan_type": plan.plan_type, "role": plan.role},
        )

    def initiate_job_tier_payment(self, params: JobTierPaymentParams) -> PaymentResult:
        plan = self._load_plan(params.plan_slug)

        job = self.repository.get_job(params.job_id)
        if job is None or job.recruiter_id != params.user_id:
            raise NotFoundError(f"Job {params.job_id} not found")

        slugs = list(dict.fromkeys(params.add_on_slugs or []))
        add_ons = self.repository.get_active_plans(slugs)
        missing = set(slugs) - {a.slug for a in add_ons}
        if missing:
            raise NotFoundError(f"Add-on plans not found or inactive: {', '.join(sorted(missing))}")

        total = plan.amount_minor + sum(a.amount_minor for a in add_ons)
        return self._initiate(
            user_id=params.user_id,
            plan=plan,
            total=total,
            phone_number=params.phone_number,
            promo_code=params.promo_code,
            gateway_override=params.gateway,
            description=f"Job Tier: {plan.name}",
            job_id=params.job_id,
            meta={
                "plan_slug": plan.slug,
                "plan_type": plan.plan_type,
                "role": plan.role,
                "add_on_slugs": slugs,
                "add_on_ids": [a.id for a in add_ons],
            },
        )

    def _initiate(
        self,
        user_id: str,
        plan: PricingPlan,
        total: int,
        phone_number: str,
        promo_code: str | None,
        gateway_override: str | None,
        description: str,
        meta: dict,
        job_id: str | None = None,
    ) -> PaymentResult:
        promo = NO_PROMO
        if promo_code:
            promo = self.promos.require(promo_code, plan.slug, user_id, amount=total)

        discount = calculate_discount(total, promo)
        if discount.final_amount <= 0:
            raise ValidationError("Final amount must be greater than zero")

        phone = normalize_phone(phone_number)
        gateway = resolve_gateway(phone, gateway_override, default=self.default_gateway)

        # The provider reference exists before the gateway is ever contacted,
        # so any webhook can be matched to this row.
        transaction_id = new_id()
        reference = build_provider_transaction_id(transaction_id)
        transaction = self.repository.create_transaction(
            id=transaction_id,
            user_id=user_id,
            amount=discount.final_amount,
            original_amount=discount.original_amount,
            discount_amount=discount.discount_amount,
            currency=self.currency,
            description=description,
            provider=PROVIDER_NAME,
            provider_reference=reference,
            plan_id=plan.id,
            job_id=job_id,
            promo_code_id=promo.promo_code_id if promo.valid else None,
            payment_phone=phone,
            meta=with_gateway_audit(meta, GatewayAudit(gateway=gateway)),
        )
        self.repository.commit()
        logger.info(
            "Created pending transaction %s ref=%s user=%s amount=%s (original=%s discount=%s)",
            transaction_id,
            reference,
            user_id,
            discount.final_amount,
            discount.original_amount,
            discount.discount_amount,
        )

        result = PaymentResult(
            transaction_id=transaction_id,
            reference=reference,
            amount=discount.final_amount,
            original_amount=discount.original_amount,
            discount_amount=discount.discount_amount,
            currency=self.currency,
        )

        return_url = config.return_url(transaction_id)
        notify_url = config.notify_url()

        init = self.gateway.initialize(
            amount=discount.final_amount,
            currency=self.currency,
            transaction_id=reference,
            return_url=return_url,
            notify_url=notify_url,
            country=self.country,
        )
        if init.providers and gateway not in init.providers:
            logger.warning(
                "Gateway %s not offered for transaction %s (available: %s)",
                gateway,
                transaction_id,
                init.providers,
            )
            raise ValidationError(f"Payment gateway {gateway} is not available.")

        self._record(
            transaction,
            GatewayAudit(transaction_id=init.transaction_id, gateway=gateway, transaction_url=init.transaction_url),
        )
        logger.info("Initialized gateway transaction %s for %s via %s", reference, transaction_id, gateway)

        try:
            push = self.gateway.push(
                amount=discount.final_amount,
                currency=self.currency,
                transaction_id=reference,
                phone=phone,
                gateway=gateway,
                return_url=return_url,
                notify_url=notify_url,
            )
        except GatewayError as e:
            if e.fallback_eligible and init.transaction_url:
                logger.warning(
                    "Direct push blocked for transaction %s, falling back to hosted checkout: %s",
                    transaction_id,
                    e,
                )
                self._record(transaction, GatewayAudit(hosted_fallback=True, push_error=str(e)))
                result.checkout_url = init.transaction_url
                return result
            logger.error("Push failed for transaction %s; left pending: %s", transaction_id, e)
            raise

        self._record(
            transaction,
            GatewayAudit(gateway=push.gateway or gateway, t_id=push.t_id, payment_status=push.payment_status),
        )
        logger.info("Push sent for transaction %s status=%s", transaction_id, push.payment_status)
        return result

    def _record(self, transaction, audit: GatewayAudit):
        self.repository.save_transaction_metadata(transaction, with_gateway_audit(transaction.meta, audit))
        self.repository.commit()
