import logging

from momo_billing.discounts import PromoValidation
from momo_billing.errors import ValidationError
from momo_billing.repository import Repository

logger = logging.getLogger(__name__)


class PromoCodeValidator:
    def __init__(self, repository: Repository):
        self.repository = repository

    def validate(self, code: str, plan_slug: str, user_id: str, amount: int | None = None) -> PromoValidation:
        """Ineligible codes come back as valid=False with a reason; nothing is raised for them."""
        if not code or not code.strip():
            return PromoValidation(valid=False, reason="Promo code is required")

        result = self.repository.validate_promo_code(code, plan_slug, user_id, amount=amount)
        if not result.valid:
            logger.info("Promo code %s rejected for user=%s plan=%s: %s", code, user_id, plan_slug, result.reason)
        return result

    def require(self, code: str, plan_slug: str, user_id: str, amount: int | None = None) -> PromoValidation:
        result = self.validate(code, plan_slug, user_id, amount=amount)
        if not result.valid:
            raise ValidationError(result.reason or "Invalid promo code")
        return result
