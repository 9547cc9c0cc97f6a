from dataclasses import dataclass

from momo_billing.errors import ValidationError
from momo_billing.models import PERCENTAGE


@dataclass
class PromoValidation:
    valid: bool
    discount_type: str | None = None
    discount_value: int | None = None
    max_discount: int | None = None
    promo_code_id: str | None = None
    reason: str | None = None


@dataclass
class DiscountResult:
    original_amount: int
    discount_amount: int
    final_amount: int


NO_PROMO = PromoValidation(valid=False)


def calculate_discount(amount: int, promo: PromoValidation) -> DiscountResult:
    """
    Apply a validated promo code to an amount in minor units.

    Percentage discounts are rounded half-up to the nearest unit, then capped
    by the code's max_discount and finally by the amount itself.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("Amount must be a positive integer")

    if not promo.valid or not promo.discount_type or not promo.discount_value:
        return DiscountResult(original_amount=amount, discount_amount=0, final_amount=amount)

    if promo.discount_type == PERCENTAGE:
        # Integer half-up rounding, avoids banker's rounding from round()
        discount = (amount * promo.discount_value * 2 + 100) // 200
    else:
        discount = promo.discount_value

    if promo.max_discount and discount > promo.max_discount:
        discount = promo.max_discount

    discount = max(0, min(discount, amount))

    return DiscountResult(
        original_amount=amount,
        discount_amount=discount,
        final_amount=amount - discount,
    )
