"""
Gateway audit trail stored on Transaction.meta.

Transaction metadata holds the plan context recorded at initiation
(plan_slug, plan_type, role, add_on_slugs) plus a "gateway" section that
accumulates everything the provider told us over the life of the payment.
Updates always go through merge_metadata so a later step can add fields
without dropping the ones recorded earlier.
"""

from dataclasses import asdict, dataclass
from typing import Any

GATEWAY_KEY = "gateway"
LAST_NOTIFICATION_KEY = "last_notification"


@dataclass
class GatewayAudit:
    transaction_id: str | None = None       # provider-side transaction id
    gateway: str | None = None              # CM_MTN, CM_ORANGE, ...
    transaction_url: str | None = None      # hosted checkout page
    t_id: str | None = None                 # external id returned by push
    payment_status: str | None = None
    hosted_fallback: bool | None = None
    push_error: str | None = None
    callback_status: str | None = None
    callback_gateway: str | None = None
    failure_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def merge_metadata(existing: dict | None, updates: dict | None) -> dict:
    """
    Deep-merge updates into a copy of existing.

    Nested dicts are merged key by key. A None in updates never replaces a
    recorded value, so partial gateway responses cannot erase earlier fields.
    """
    merged = dict(existing or {})
    for key, value in (updates or {}).items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = merge_metadata(current, value)
        else:
            merged[key] = value
    return merged


def with_gateway_audit(meta: dict | None, audit: GatewayAudit) -> dict:
    return merge_metadata(meta, {GATEWAY_KEY: audit.as_dict()})
