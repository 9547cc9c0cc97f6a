import functools
import logging
from datetime import datetime

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from momo_billing.discounts import PromoValidation
from momo_billing.errors import PersistenceError
from momo_billing.models import (
    ACTIVE,
    PENDING,
    VERIFIED,
    Job,
    PricingPlan,
    PromoCode,
    PromoCodeRedemption,
    RecruiterProfile,
    Subscription,
    Transaction,
    utcnow,
)

logger = logging.getLogger(__name__)


def _guarded(method):
    """Roll back and re-raise database failures as PersistenceError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Database error in %s", method.__name__)
            raise PersistenceError(f"Database error in {method.__name__}") from e

    return wrapper


class Repository:
    """Every read and write the billing core makes goes through here."""

    def __init__(self, db: Session):
        self.db = db

    @_guarded
    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    @_guarded
    def refresh(self, obj):
        self.db.refresh(obj)

    # -- plans ---------------------------------------------------------------

    @_guarded
    def get_active_plan(self, slug: str) -> PricingPlan | None:
        return self.db.query(PricingPlan).filter_by(slug=slug, is_active=True).first()

    @_guarded
    def get_active_plans(self, slugs: list[str]) -> list[PricingPlan]:
        if not slugs:
            return []
        return (
            self.db.query(PricingPlan)
            .filter(PricingPlan.slug.in_(slugs), PricingPlan.is_active.is_(True))
            .all()
        )

    @_guarded
    def get_plan(self, plan_id: str) -> PricingPlan | None:
        return self.db.get(PricingPlan, plan_id)

    # -- promo codes ---------------------------------------------------------

    @_guarded
    def validate_promo_code(
        self,
        code: str,
        plan_slug: str,
        user_id: str,
        amount: int | None = None,
        now: datetime | None = None,
    ) -> PromoValidation:
        """
        Check every eligibility rule against one locked read of the code row.

        The row is selected FOR UPDATE (a no-op on SQLite) so a concurrent
        validation cannot slip past the usage cap between read and decision.
        """
        now = now or utcnow()
        promo = (
            self.db.query(PromoCode)
            .filter(func.upper(PromoCode.code) == code.strip().upper())
            .with_for_update()
            .first()
        )

        if promo is None:
            return PromoValidation(valid=False, reason="Promo code not found")
        if not promo.is_active:
            return PromoValidation(valid=False, reason="Promo code is inactive")
        if promo.starts_at and promo.starts_at > now:
            return PromoValidation(valid=False, reason="Promo code is not yet active")
        if promo.expires_at and promo.expires_at <= now:
            return PromoValidation(valid=False, reason="Promo code has expired")
        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            return PromoValidation(valid=False, reason="Promo code usage limit reached")
        if promo.applicable_plan_slugs and plan_slug not in promo.applicable_plan_slugs:
            return PromoValidation(valid=False, reason="Promo code does not apply to this plan")

        if promo.min_amount:
            if amount is None:
                plan = self.get_active_plan(plan_slug)
                amount = plan.amount_minor if plan else 0
            if amount < promo.min_amount:
                return PromoValidation(
                    valid=False,
                    reason="Order amount is below the minimum for this promo code",
                )

        already_used = (
            self.db.query(PromoCodeRedemption.id)
            .filter_by(promo_code_id=promo.id, user_id=user_id)
            .first()
        )
        if already_used:
            return PromoValidation(valid=False, reason="You have already used this promo code")

        return PromoValidation(
            valid=True,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            max_discount=promo.max_discount,
            promo_code_id=promo.id,
        )

    @_guarded
    def increment_promo_usage(self, promo_code_id: str) -> bool:
        """Bump current_uses without ever passing max_uses. False if the cap refused it."""
        updated = (
            self.db.query(PromoCode)
            .filter(
                PromoCode.id == promo_code_id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .update({PromoCode.current_uses: PromoCode.current_uses + 1}, synchronize_session=False)
        )
        return updated == 1

    @_guarded
    def add_redemption(self, promo_code_id: str, user_id: str, transaction_id: str, discount_applied: int):
        redemption = PromoCodeRedemption(
            promo_code_id=promo_code_id,
            user_id=user_id,
            transaction_id=transaction_id,
            discount_applied=discount_applied,
        )
        self.db.add(redemption)
        self.db.flush()
        return redemption

    # -- transactions --------------------------------------------------------

    @_guarded
    def create_transaction(self, **values) -> Transaction:
        transaction = Transaction(status=PENDING, **values)
        self.db.add(transaction)
        self.db.flush()
        return transaction

    @_guarded
    def save_transaction_metadata(self, transaction: Transaction, meta: dict):
        transaction.meta = meta
        self.db.flush()

    @_guarded
    def get_transaction(self, transaction_id: str, user_id: str | None = None) -> Transaction | None:
        query = self.db.query(Transaction).filter_by(id=transaction_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.first()

    @_guarded
    def find_transaction_by_reference(self, reference: str) -> Transaction | None:
        return self.db.query(Transaction).filter_by(provider_reference=reference).first()

    @_guarded
    def transition_if_pending(self, transaction_id: str, status: str, meta: dict, now: datetime) -> bool:
        """
        Move a transaction out of pending in one conditional UPDATE.

        Returns False when no row matched, meaning another delivery already
        completed or failed it.
        """
        updated = (
            self.db.query(Transaction)
            .filter(Transaction.id == transaction_id, Transaction.status == PENDING)
            .update(
                {
                    Transaction.status: status,
                    Transaction.callback_received_at: now,
                    Transaction.meta: meta,
                    Transaction.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        return updated == 1

    @_guarded
    def list_pending_transactions(self, created_before: datetime, limit: int = 100) -> list[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.status == PENDING,
                Transaction.provider_reference.isnot(None),
                Transaction.created_at <= created_before,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
            .all()
        )

    # -- subscriptions -------------------------------------------------------

    @_guarded
    def get_latest_active_subscription(self, user_id: str) -> Subscription | None:
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.status == ACTIVE,
                Subscription.end_date.isnot(None),
            )
            .order_by(Subscription.end_date.desc())
            .first()
        )

    @_guarded
    def add_subscription(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self.db.flush()
        return subscription

    # -- recruiters and jobs -------------------------------------------------

    @_guarded
    def mark_recruiter_verified(self, user_id: str, now: datetime) -> RecruiterProfile:
        profile = self.db.get(RecruiterProfile, user_id)
        if profile is None:
            profile = RecruiterProfile(user_id=user_id)
            self.db.add(profile)
        profile.verification_status = VERIFIED
        profile.verified_at = now
        self.db.flush()
        return profile

    @_guarded
    def get_job(self, job_id: str) -> Job | None:
        return self.db.get(Job, job_id)

    @_guarded
    def update_job_tier(self, job: Job, tier: str, is_featured: bool, is_promoted: bool, transaction_id: str):
        job.hiring_tier = tier
        job.is_featured = is_featured
        job.is_promoted = is_promoted
        job.tier_transaction_id = transaction_id
        self.db.flush()
