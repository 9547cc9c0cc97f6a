import pytest

from momo_billing.discounts import NO_PROMO, PromoValidation, calculate_discount
from momo_billing.errors import ValidationError


def percentage(value, max_discount=None):
    return PromoValidation(valid=True, discount_type="percentage", discount_value=value,
                           max_discount=max_discount, promo_code_id="promo-1")


def fixed(value, max_discount=None):
    return PromoValidation(valid=True, discount_type="fixed_amount", discount_value=value,
                           max_discount=max_discount, promo_code_id="promo-1")


def test_percentage_discount_capped_by_max_discount():
    result = calculate_discount(5000, percentage(10, max_discount=300))

    assert result.original_amount == 5000
    assert result.discount_amount == 300
    assert result.final_amount == 4700


def test_percentage_discount_under_cap():
    result = calculate_discount(2000, percentage(10, max_discount=300))
    assert result.discount_amount == 200
    assert result.final_amount == 1800


@pytest.mark.parametrize("amount, value, expected", [
    (333, 15, 50),      # 49.95
    (5, 10, 1),         # 0.5 rounds up
    (25, 10, 3),        # 2.5 rounds up
    (14, 10, 1),        # 1.4
])
def test_percentage_discount_rounds_half_up(amount, value, expected):
    assert calculate_discount(amount, percentage(value)).discount_amount == expected


def test_fixed_discount_is_min_of_value_and_amount():
    assert calculate_discount(5000, fixed(1000)).discount_amount == 1000

    result = calculate_discount(800, fixed(1000))
    assert result.discount_amount == 800
    assert result.final_amount == 0


def test_percentage_over_hundred_never_exceeds_amount():
    result = calculate_discount(1000, percentage(150))
    assert result.discount_amount == 1000
    assert result.final_amount == 0


def test_no_promo_means_no_discount():
    result = calculate_discount(5000, NO_PROMO)
    assert (result.original_amount, result.discount_amount, result.final_amount) == (5000, 0, 5000)


def test_invalid_promo_is_ignored_even_with_terms():
    promo = PromoValidation(valid=False, discount_type="percentage", discount_value=50, reason="expired")
    assert calculate_discount(5000, promo).discount_amount == 0


@pytest.mark.parametrize("amount", [0, -100, 12.5, True])
def test_rejects_non_positive_or_non_integer_amounts(amount):
    with pytest.raises(ValidationError):
        calculate_discount(amount, NO_PROMO)
