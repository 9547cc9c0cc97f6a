import os

os.environ["DATABASE_URL"] = "sqlite:///./test_billing.db"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["CRON_SECRET"] = "cron-test-secret"

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from momo_billing.database import Base
from momo_billing.gateway import GatewayClient, GatewayConfig, InitializeResult, PushResult
from momo_billing.models import (
    PENDING,
    PERCENTAGE,
    Job,
    PricingPlan,
    PromoCode,
    Transaction,
    utcnow,
)
from momo_billing.repository import Repository

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_billing.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

CHECKOUT_URL = "https://checkout.payunit.net/pay/abc123"


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def repository(db):
    return Repository(db)


@pytest.fixture
def plans(db):
    rows = [
        PricingPlan(slug="recruiter-monthly", name="Recruiter Monthly", role="recruiter",
                    plan_type="subscription", amount_minor=5000, duration_days=30),
        PricingPlan(slug="seeker-monthly", name="Job Seeker Monthly", role="job_seeker",
                    plan_type="subscription", amount_minor=2000, duration_days=30),
        PricingPlan(slug="recruiter-verification", name="Recruiter Verification", role="recruiter",
                    plan_type="one_time", amount_minor=10000),
        PricingPlan(slug="job-standard", name="Standard Job Post", role="recruiter",
                    plan_type="per_job", amount_minor=3000),
        PricingPlan(slug="featured", name="Featured Add-on", role="recruiter",
                    plan_type="per_job", amount_minor=1500),
        PricingPlan(slug="social", name="Social Boost Add-on", role="recruiter",
                    plan_type="per_job", amount_minor=1000),
        PricingPlan(slug="legacy-annual", name="Legacy Annual", role="job_seeker",
                    plan_type="subscription", amount_minor=20000, duration_days=365, is_active=False),
    ]
    db.add_all(rows)
    db.commit()
    return {p.slug: p for p in rows}


@pytest.fixture
def make_promo(db):
    def _make(code="SAVE10", **overrides):
        values = dict(
            code=code,
            discount_type=PERCENTAGE,
            discount_value=10,
            max_discount=300,
            starts_at=utcnow() - timedelta(days=1),
        )
        values.update(overrides)
        promo = PromoCode(**values)
        db.add(promo)
        db.commit()
        return promo

    return _make


@pytest.fixture
def make_job(db):
    def _make(recruiter_id="recruiter-1", title="Backend Engineer"):
        job = Job(recruiter_id=recruiter_id, title=title)
        db.add(job)
        db.commit()
        return job

    return _make


@pytest.fixture
def make_transaction(db):
    def _make(plan, user_id="user-1", reference="jblref001", **overrides):
        values = dict(
            user_id=user_id,
            amount=plan.amount_minor,
            original_amount=plan.amount_minor,
            discount_amount=0,
            currency="XAF",
            status=PENDING,
            provider="payunit",
            provider_reference=reference,
            plan_id=plan.id,
            payment_phone="677123456",
            meta={"plan_slug": plan.slug, "plan_type": plan.plan_type, "role": plan.role},
        )
        values.update(overrides)
        transaction = Transaction(**values)
        db.add(transaction)
        db.commit()
        return transaction

    return _make


@pytest.fixture
def gateway(mocker):
    client = mocker.Mock(spec=GatewayClient)
    client.config = GatewayConfig(api_user="user", api_password="secret", api_key="test_key")
    client.initialize.return_value = InitializeResult(
        transaction_id="jbl-init",
        transaction_url=CHECKOUT_URL,
        providers=["CM_MTN", "CM_ORANGE"],
    )
    client.push.return_value = PushResult(
        transaction_id="jbl-init",
        payment_status="PENDING",
        t_id="T-998877",
        gateway="CM_MTN",
    )
    return client
