import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from momo_billing.errors import NotFoundError, SubscriptionRequiredError, ValidationError
from momo_billing.models import (
    ACTIVE,
    ONE_TIME,
    PER_JOB,
    RECRUITER,
    SUBSCRIPTION,
    PricingPlan,
    Subscription,
    Transaction,
    utcnow,
)
from momo_billing.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class JobTier:
    tier: str
    is_featured: bool
    is_promoted: bool


def compute_job_tier(plan_slug: str, add_on_slugs: list[str] | None) -> JobTier:
    """
    Derive a job's hiring tier from the purchased plan and add-ons.

    "job-premium" -> tier "premium". Any slug mentioning "featured" sets the
    featured flag, any mentioning "social" sets the promotion flag.
    """
    tier = plan_slug
    for prefix in ("job-", "job_"):
        if tier.startswith(prefix) and len(tier) > len(prefix):
            tier = tier[len(prefix):]
            break

    slugs = [plan_slug] + list(add_on_slugs or [])
    return JobTier(
        tier=tier,
        is_featured=any("featured" in s for s in slugs),
        is_promoted=any("social" in s for s in slugs),
    )


def apply_subscription(
    existing: Subscription | None,
    plan: PricingPlan,
    transaction: Transaction,
    now: datetime,
) -> Subscription:
    """
    Extend the running subscription or start a new one.

    A subscription whose end date is still ahead gets plan.duration_days added
    to that end date and keeps its row. Otherwise a new, unsaved row covering
    now .. now + duration is returned.
    """
    if not plan.duration_days:
        raise ValidationError(f"Subscription plan {plan.slug} has no duration")

    period = timedelta(days=plan.duration_days)

    if existing is not None and existing.end_date is not None and existing.end_date > now:
        existing.end_date = existing.end_date + period
        existing.plan_id = plan.id
        existing.transaction_id = transaction.id
        existing.type = plan.slug
        return existing

    return Subscription(
        user_id=transaction.user_id,
        type=plan.slug,
        status=ACTIVE,
        start_date=now,
        end_date=now + period,
        plan_id=plan.id,
        transaction_id=transaction.id,
        auto_renew=False,
    )


class EntitlementApplier:
    def __init__(self, repository: Repository):
        self.repository = repository

    def apply(self, transaction: Transaction, plan: PricingPlan | None, now: datetime | None = None):
        """Run once, inside the same DB transaction that completed the payment."""
        now = now or utcnow()

        if plan is None:
            logger.warning("Transaction %s completed without a plan; no entitlement applied", transaction.id)
        elif plan.plan_type == SUBSCRIPTION:
            self._apply_subscription(transaction, plan, now)
        elif plan.plan_type == ONE_TIME:
            self._apply_verification(transaction, plan, now)
        elif plan.plan_type == PER_JOB:
            self._apply_job_tier(transaction, plan)
        else:
            raise ValidationError(f"Unknown plan type {plan.plan_type!r}")

        if transaction.promo_code_id:
            self._apply_promo_redemption(transaction)

    def _apply_subscription(self, transaction, plan, now):
        existing = self.repository.get_latest_active_subscription(transaction.user_id)
        subscription = apply_subscription(existing, plan, transaction, now)
        if subscription is existing:
            logger.info(
                "Extended subscription %s for user=%s until %s",
                subscription.id,
                transaction.user_id,
                subscription.end_date,
            )
        else:
            self.repository.add_subscription(subscription)
            logger.info(
                "Created subscription %s for user=%s until %s",
                subscription.id,
                transaction.user_id,
                subscription.end_date,
            )

        if plan.role == RECRUITER:
            self.repository.mark_recruiter_verified(transaction.user_id, now)

    def _apply_verification(self, transaction, plan, now):
        self.repository.mark_recruiter_verified(transaction.user_id, now)
        # Audit row only; one-time grants never expire
        self.repository.add_subscription(
            Subscription(
                user_id=transaction.user_id,
                type=plan.slug,
                status=ACTIVE,
                start_date=now,
                end_date=None,
                plan_id=plan.id,
                transaction_id=transaction.id,
                auto_renew=False,
            )
        )
        logger.info("Recruiter %s verified by transaction %s", transaction.user_id, transaction.id)

    def _apply_job_tier(self, transaction, plan):
        if not transaction.job_id:
            raise ValidationError(f"Transaction {transaction.id} has no job to upgrade")
        job = self.repository.get_job(transaction.job_id)
        if job is None:
            raise NotFoundError(f"Job {transaction.job_id} not found")

        add_on_slugs = (transaction.meta or {}).get("add_on_slugs") or []
        tier = compute_job_tier(plan.slug, add_on_slugs)
        self.repository.update_job_tier(job, tier.tier, tier.is_featured, tier.is_promoted, transaction.id)
        logger.info(
            "Job %s moved to tier=%s featured=%s promoted=%s",
            job.id,
            tier.tier,
            tier.is_featured,
            tier.is_promoted,
        )

    def _apply_promo_redemption(self, transaction):
        if not self.repository.increment_promo_usage(transaction.promo_code_id):
            logger.warning(
                "Promo code %s already at its usage cap; transaction %s keeps its discount",
                transaction.promo_code_id,
                transaction.id,
            )
        self.repository.add_redemption(
            promo_code_id=transaction.promo_code_id,
            user_id=transaction.user_id,
            transaction_id=transaction.id,
            discount_applied=transaction.discount_amount,
        )


@dataclass
class SubscriptionStatus:
    is_active: bool
    plan_slug: str | None = None
    expires_at: datetime | None = None
    days_remaining: int = 0
    subscription_id: str | None = None
    role: str | None = None


def get_subscription_status(repository: Repository, user_id: str, now: datetime | None = None) -> SubscriptionStatus:
    now = now or utcnow()
    subscription = repository.get_latest_active_subscription(user_id)
    if subscription is None or subscription.end_date < now:
        return SubscriptionStatus(is_active=False)

    plan = repository.get_plan(subscription.plan_id) if subscription.plan_id else None
    remaining = (subscription.end_date - now).total_seconds() / 86400
    return SubscriptionStatus(
        is_active=True,
        plan_slug=subscription.type,
        expires_at=subscription.end_date,
        days_remaining=max(0, math.ceil(remaining)),
        subscription_id=subscription.id,
        role=plan.role if plan else None,
    )


def require_active_subscription(
    repository: Repository, user_id: str, role: str, now: datetime | None = None
) -> SubscriptionStatus:
    status = get_subscription_status(repository, user_id, now)
    if not status.is_active:
        raise SubscriptionRequiredError("An active subscription is required to access this feature")
    # Rows granted without a plan are not role-restricted
    if status.role is not None and status.role != role:
        raise SubscriptionRequiredError(f"An active {role} subscription is required")
    return status
