"""
Gateway notification reconciliation.

Notifications are delivered at least once and possibly concurrently. The
only gate for applying entitlements is Repository.transition_if_pending: a
single conditional UPDATE ... WHERE status = 'pending'. Whoever gets the row
applies the entitlements in the same database transaction; everyone else
sees zero affected rows and acknowledges a duplicate.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from momo_billing.audit import LAST_NOTIFICATION_KEY, GatewayAudit, with_gateway_audit
from momo_billing.entitlements import EntitlementApplier
from momo_billing.errors import GatewayError, PaymentError, TransactionNotFoundError, ValidationError
from momo_billing.gateway import GatewayClient
from momo_billing.models import COMPLETED, FAILED, PENDING, Transaction, utcnow
from momo_billing.repository import Repository

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILURE_STATUSES = {"FAILED", "CANCELLED"}


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"


@dataclass
class Notification:
    external_reference: str
    status: str
    gateway: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


def normalize_notification(payload) -> Notification:
    """
    Accept both historical payload shapes.

    Nested:    {"data": {"transaction_id": ..., "transaction_status": ...}}
    Top level: {"transaction_id" | "reference" | "external_reference": ..., "status": ...}
    """
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")

    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}

    reference = _first(
        data.get("transaction_id"),
        payload.get("transaction_id"),
        payload.get("reference"),
        payload.get("external_reference"),
    )
    status = _first(data.get("transaction_status"), data.get("status"), payload.get("status"))

    if not reference:
        raise ValidationError("Webhook payload has no transaction reference")
    if not status:
        raise ValidationError("Webhook payload has no status")

    return Notification(
        external_reference=str(reference),
        status=str(status).strip().upper(),
        gateway=_first(data.get("gateway"), payload.get("gateway")),
        message=_first(data.get("message"), payload.get("message"), payload.get("reason")),
        raw=payload,
    )


@dataclass
class SweepReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0
    expired: int = 0
    unchanged: int = 0


class WebhookReconciler:
    def __init__(
        self,
        repository: Repository,
        applier: EntitlementApplier | None = None,
        gateway: GatewayClient | None = None,
    ):
        self.repository = repository
        self.applier = applier or EntitlementApplier(repository)
        self.gateway = gateway

    def handle(self, payload, now: datetime | None = None) -> WebhookOutcome:
        notification = normalize_notification(payload)
        transaction = self.match(notification.external_reference)
        if transaction is None:
            logger.warning("Webhook for unknown transaction reference %s", notification.external_reference)
            raise TransactionNotFoundError(f"Transaction {notification.external_reference} not found")
        return self.apply(transaction, notification, now=now)

    def match(self, reference: str) -> Transaction | None:
        transaction = self.repository.find_transaction_by_reference(reference)
        if transaction is None:
            # Some providers echo back our own transaction id
            transaction = self.repository.get_transaction(reference)
        return transaction

    def apply(self, transaction: Transaction, notification: Notification, now: datetime | None = None) -> WebhookOutcome:
        now = now or utcnow()

        if transaction.status == COMPLETED and transaction.callback_received_at is not None:
            logger.info("Transaction %s already processed; duplicate notification acknowledged", transaction.id)
            return WebhookOutcome.ALREADY_PROCESSED

        if notification.status == SUCCESS:
            return self._complete(transaction, notification, now)
        if notification.status in FAILURE_STATUSES:
            return self._fail(transaction, notification, now, notification.message or f"Gateway reported {notification.status}")

        logger.info("Transaction %s notification status=%s carries no change", transaction.id, notification.status)
        return WebhookOutcome.IGNORED

    def _complete(self, transaction, notification, now):
        meta = self._notification_meta(transaction, notification, GatewayAudit(callback_status=notification.status))
        try:
            if not self.repository.transition_if_pending(transaction.id, COMPLETED, meta, now):
                self.repository.rollback()
                logger.info("Transaction %s was settled by another delivery", transaction.id)
                return WebhookOutcome.ALREADY_PROCESSED

            self.repository.refresh(transaction)
            plan = self.repository.get_plan(transaction.plan_id) if transaction.plan_id else None
            self.applier.apply(transaction, plan, now)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise

        logger.info(
            "Transaction %s ref=%s completed; entitlements applied",
            transaction.id,
            transaction.provider_reference,
        )
        return WebhookOutcome.PROCESSED

    def _fail(self, transaction, notification, now, reason):
        audit = GatewayAudit(callback_status=notification.status, failure_reason=reason)
        meta = self._notification_meta(transaction, notification, audit)
        if not self.repository.transition_if_pending(transaction.id, FAILED, meta, now):
            self.repository.rollback()
            logger.info("Transaction %s was settled by another delivery", transaction.id)
            return WebhookOutcome.ALREADY_PROCESSED

        self.repository.commit()
        logger.warning("Transaction %s ref=%s failed: %s", transaction.id, transaction.provider_reference, reason)
        return WebhookOutcome.PROCESSED

    def _notification_meta(self, transaction, notification, audit: GatewayAudit) -> dict:
        audit.callback_gateway = notification.gateway
        meta = with_gateway_audit(transaction.meta, audit)
        if notification.raw:
            # Latest delivery replaces the previous one wholesale
            meta[LAST_NOTIFICATION_KEY] = notification.raw
        return meta

    # -- polling -------------------------------------------------------------

    def poll(self, transaction: Transaction, now: datetime | None = None) -> WebhookOutcome:
        """Ask the gateway for a pending transaction's status and settle it the webhook way."""
        if self.gateway is None:
            raise GatewayError("No gateway client configured for polling")
        if transaction.status != PENDING or not transaction.provider_reference:
            return WebhookOutcome.IGNORED

        status = self.gateway.status(transaction.provider_reference)
        notification = Notification(
            external_reference=transaction.provider_reference,
            status=status.status,
            gateway=status.gateway,
            raw={
                "source": "status_poll",
                "transaction_status": status.status,
                "gateway": status.gateway,
                "amount": status.amount,
                "currency": status.currency,
            },
        )
        return self.apply(transaction, notification, now=now)

    def sweep_pending(self, min_age: timedelta, expire_after: timedelta, now: datetime | None = None, limit: int = 100) -> SweepReport:
        now = now or utcnow()
        report = SweepReport()

        for transaction in self.repository.list_pending_transactions(now - min_age, limit=limit):
            report.checked += 1
            try:
                outcome = self.poll(transaction, now=now)
            except GatewayError as e:
                logger.warning("Status poll failed for transaction %s: %s", transaction.id, e)
                outcome = WebhookOutcome.IGNORED
            except PaymentError:
                # Left pending for manual reconciliation
                logger.exception("Pending sweep could not settle transaction %s", transaction.id)
                report.unchanged += 1
                continue

            if outcome == WebhookOutcome.PROCESSED:
                self.repository.refresh(transaction)
                if transaction.status == COMPLETED:
                    report.completed += 1
                else:
                    report.failed += 1
                continue

            if transaction.created_at <= now - expire_after:
                expired = Notification(
                    external_reference=transaction.provider_reference,
                    status="EXPIRED",
                    raw={"source": "pending_sweep"},
                )
                if self._fail(transaction, expired, now, "expired") == WebhookOutcome.PROCESSED:
                    report.expired += 1
                    continue

            report.unchanged += 1

        logger.info(
            "Pending sweep: checked=%s completed=%s failed=%s expired=%s unchanged=%s",
            report.checked,
            report.completed,
            report.failed,
            report.expired,
            report.unchanged,
        )
        return report
