import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import validates

from momo_billing.database import Base

# Plan types
SUBSCRIPTION = "subscription"
ONE_TIME = "one_time"
PER_JOB = "per_job"

# Transaction statuses
PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

# Subscription statuses
ACTIVE = "active"
EXPIRED = "expired"

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"

RECRUITER = "recruiter"
VERIFIED = "verified"


def utcnow() -> datetime:
    # Naive UTC, the way every DateTime column below stores it
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class PricingPlan(Base):
    __tablename__ = "pricing_plans"

    id = Column(String(36), primary_key=True, default=new_id)
    slug = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False)                  # recruiter | job_seeker
    plan_type = Column(String, nullable=False)             # subscription | one_time | per_job
    amount_minor = Column(Integer, nullable=False)
    duration_days = Column(Integer, nullable=True)         # subscriptions only
    is_active = Column(Boolean, nullable=False, default=True)


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="promo_codes_current_uses_check"),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="promo_codes_usage_cap_check",
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    code = Column(String, unique=True, index=True, nullable=False)
    discount_type = Column(String, nullable=False)         # percentage | fixed_amount
    discount_value = Column(Integer, nullable=False)
    max_uses = Column(Integer, nullable=True)
    current_uses = Column(Integer, nullable=False, default=0)
    min_amount = Column(Integer, nullable=True)
    max_discount = Column(Integer, nullable=True)
    applicable_plan_slugs = Column(JSON, nullable=True)    # null = every plan
    starts_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    @validates("code")
    def _normalize_code(self, key, value):
        return value.strip().upper() if value else value


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("discount_amount >= 0", name="transactions_discount_check"),
        CheckConstraint("amount = original_amount - discount_amount", name="transactions_amount_check"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    original_amount = Column(Integer, nullable=False)
    discount_amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    description = Column(String, nullable=True)
    status = Column(String, nullable=False, default=PENDING)   # pending | completed | failed
    provider = Column(String, nullable=False)
    provider_reference = Column(String, unique=True, index=True, nullable=True)
    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=True)
    job_id = Column(String(36), ForeignKey("jobs.id"), nullable=True)
    promo_code_id = Column(String(36), ForeignKey("promo_codes.id"), nullable=True)
    payment_phone = Column(String, nullable=True)
    # "metadata" is reserved on declarative classes; column keeps the name
    meta = Column("metadata", JSON, nullable=False, default=dict)
    callback_received_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, index=True, nullable=False)
    type = Column(String, nullable=False)                  # plan slug
    status = Column(String, nullable=False, default=ACTIVE)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=True)             # null = non-expiring grant
    plan_id = Column(String(36), ForeignKey("pricing_plans.id"), nullable=True)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)


class PromoCodeRedemption(Base):
    __tablename__ = "promo_code_redemptions"
    __table_args__ = (
        UniqueConstraint("promo_code_id", "transaction_id", name="uq_redemption_promo_transaction"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    promo_code_id = Column(String(36), ForeignKey("promo_codes.id"), nullable=False)
    user_id = Column(String, index=True, nullable=False)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False)
    discount_applied = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    recruiter_id = Column(String, index=True, nullable=False)
    title = Column(String, nullable=False)
    hiring_tier = Column(String, nullable=True)
    is_featured = Column(Boolean, nullable=False, default=False)
    is_promoted = Column(Boolean, nullable=False, default=False)
    tier_transaction_id = Column(String(36), nullable=True)


class RecruiterProfile(Base):
    __tablename__ = "recruiter_profiles"

    user_id = Column(String, primary_key=True)
    verification_status = Column(String, nullable=False, default="pending")  # pending | verified | rejected
    verified_at = Column(DateTime, nullable=True)
