from __future__ import annotations

from datetime import timedelta

import pytest

from app.enums import DiscountType, RestrictionType
from app.services import coupon_engine as engine
from app.services.coupon_engine import CartLine, LineItemsBasis, OrderValueBasis
from tests.conftest import NOW, make_coupon


# ---------------------------------------------------------------- validity


def test_active_coupon_before_expiry_is_valid() -> None:
    assert engine.is_valid(make_coupon(), NOW) is True


def test_inactive_coupon_is_invalid() -> None:
    assert engine.is_valid(make_coupon(is_active=False), NOW) is False


def test_coupon_is_invalid_at_exact_expiry() -> None:
    coupon = make_coupon(expiry_date=NOW)
    assert engine.is_valid(coupon, NOW) is False
    assert engine.is_valid(coupon, NOW - timedelta(seconds=1)) is True


def test_timezone_aware_now_is_compared_as_utc() -> None:
    from datetime import timezone

    coupon = make_coupon(expiry_date=NOW + timedelta(minutes=5))
    assert engine.is_valid(coupon, NOW.replace(tzinfo=timezone.utc)) is True


# ---------------------------------------------------------------- usage caps


def test_expired_coupon_cannot_be_used() -> None:
    coupon = make_coupon(expiry_date=NOW - timedelta(days=1))
    assert engine.can_user_use(coupon, "u1", NOW) is False


def test_per_user_cap_only_blocks_that_user() -> None:
    coupon = make_coupon(use_limit_per_user=1, used_by=["U"])
    assert engine.can_user_use(coupon, "U", NOW) is False
    assert engine.can_user_use(coupon, "V", NOW) is True


def test_per_user_cap_counts_every_redemption() -> None:
    coupon = make_coupon(use_limit_per_user=2, used_by=["U"])
    assert engine.can_user_use(coupon, "U", NOW) is True

    coupon = make_coupon(use_limit_per_user=2, used_by=["U", "U"])
    assert engine.can_user_use(coupon, "U", NOW) is False


def test_global_cap_blocks_first_time_users() -> None:
    coupon = make_coupon(usage_limit=1, use_limit_per_user=5, used_by=["someone"])
    assert engine.global_limit_reached(coupon) is True
    assert engine.can_user_use(coupon, "brand-new", NOW) is False
    assert engine.can_user_use(coupon, "someone", NOW) is False


def test_user_ids_compare_by_value() -> None:
    coupon = make_coupon(used_by=[42])
    assert engine.usage_count_for(coupon, 42) == 1
    assert engine.usage_count_for(coupon, "42") == 1
    assert engine.can_user_use(coupon, 42, NOW) is False


def test_missing_user_skips_per_user_cap() -> None:
    coupon = make_coupon(used_by=["U"])
    assert engine.usage_count_for(coupon, None) == 0
    assert engine.can_user_use(coupon, None, NOW) is True


def test_predicates_do_not_mutate_the_coupon() -> None:
    coupon = make_coupon(usage_limit=3, used_by=["U"])
    results = [
        (engine.is_valid(coupon, NOW), engine.can_user_use(coupon, "V", NOW), engine.calculate_discount(coupon, 80))
        for _ in range(3)
    ]
    assert results == [results[0]] * 3
    assert len(coupon.used_by) == 1


# ---------------------------------------------------------------- categories


def test_unrestricted_coupon_accepts_any_categories() -> None:
    coupon = make_coupon()
    assert engine.is_valid_for_categories(coupon, ["anything"]) is True
    assert engine.is_valid_for_categories(coupon, []) is True


def test_include_restriction_requires_overlap() -> None:
    coupon = make_coupon(categories=["A"])
    assert engine.is_valid_for_categories(coupon, ["B", "A"]) is True
    assert engine.is_valid_for_categories(coupon, ["B"]) is False
    assert engine.is_valid_for_categories(coupon, []) is False


def test_exclude_restriction_rejects_overlap() -> None:
    coupon = make_coupon(categories=["A"], restriction_type=RestrictionType.EXCLUDE)
    assert engine.is_valid_for_categories(coupon, ["A"]) is False
    assert engine.is_valid_for_categories(coupon, ["B"]) is True
    assert engine.is_valid_for_categories(coupon, []) is True


def test_enabled_restriction_with_no_categories_is_permissive() -> None:
    coupon = make_coupon(categories=[])
    assert coupon.category_restrictions_enabled is True
    assert engine.is_valid_for_categories(coupon, ["B"]) is True


def test_category_ids_compare_by_value() -> None:
    coupon = make_coupon(categories=[7])
    assert engine.is_valid_for_categories(coupon, ["7"]) is True


# ---------------------------------------------------------------- plain discount


def test_fixed_coupon_below_minimum_gives_nothing() -> None:
    coupon = make_coupon(discount_type=DiscountType.FIXED, discount_value=50, min_order_value=100)
    assert engine.calculate_discount(coupon, 80) == 0


def test_percentage_coupon_discount() -> None:
    coupon = make_coupon(discount_value=20)
    discount = engine.calculate_discount(coupon, 250)
    assert discount == pytest.approx(50)
    assert 250 - discount == pytest.approx(200)


def test_fixed_discount_never_exceeds_order_value() -> None:
    coupon = make_coupon(discount_type=DiscountType.FIXED, discount_value=500)
    assert engine.calculate_discount(coupon, 120) == 120


def test_full_percentage_discount_is_capped_at_order_value() -> None:
    coupon = make_coupon(discount_value=100)
    assert engine.calculate_discount(coupon, 75) == 75


@pytest.mark.parametrize("order_value", [0, 0.01, 9.99, 100, 12345.67])
@pytest.mark.parametrize(
    "discount_type,discount_value,min_order_value",
    [
        (DiscountType.PERCENTAGE, 15, 0),
        (DiscountType.PERCENTAGE, 100, 10),
        (DiscountType.FIXED, 25, 0),
        (DiscountType.FIXED, 0, 0),
        (DiscountType.FIXED, 1000, 50),
    ],
)
def test_discount_stays_within_order_value(order_value, discount_type, discount_value, min_order_value) -> None:
    coupon = make_coupon(
        discount_type=discount_type, discount_value=discount_value, min_order_value=min_order_value
    )
    discount = engine.calculate_discount(coupon, order_value)
    assert 0 <= discount <= order_value
    if order_value < min_order_value:
        assert discount == 0


def test_unknown_discount_type_is_a_programmer_error() -> None:
    coupon = make_coupon(discount_type=None)
    with pytest.raises(ValueError):
        engine.calculate_discount(coupon, 100)


# ---------------------------------------------------------------- eligible items


def _cart():
    return [
        CartLine(price=100, quantity=1, category_ids=("A",), product_id="p-a"),
        CartLine(price=100, quantity=2, category_ids=("B",), product_id="p-b"),
    ]


def test_line_subtotal_applies_item_discount() -> None:
    line = CartLine(price=200, discount=25, quantity=3)
    assert line.subtotal == pytest.approx(450)


def test_restricted_coupon_discounts_only_eligible_items() -> None:
    coupon = make_coupon(discount_value=10, min_order_value=50, categories=["A"])
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == pytest.approx(10)
    assert [line.product_id for line in engine.get_eligible_items(coupon, _cart())] == ["p-a"]


def test_minimum_is_checked_against_eligible_subtotal() -> None:
    coupon = make_coupon(discount_value=10, min_order_value=150, categories=["A"])
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == 0


def test_exclude_restriction_drops_overlapping_items() -> None:
    coupon = make_coupon(discount_value=10, categories=["A"], restriction_type=RestrictionType.EXCLUDE)
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == pytest.approx(20)
    assert [line.product_id for line in engine.get_eligible_items(coupon, _cart())] == ["p-b"]


def test_no_eligible_items_means_no_discount_even_without_minimum() -> None:
    coupon = make_coupon(discount_type=DiscountType.FIXED, discount_value=30, categories=["Z"])
    assert engine.get_eligible_items(coupon, _cart()) == []
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == 0


def test_unrestricted_coupon_uses_whole_cart() -> None:
    coupon = make_coupon(discount_value=10, min_order_value=250)
    assert engine.get_eligible_items(coupon, _cart()) == _cart()
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == pytest.approx(30)


def test_fixed_discount_is_capped_at_eligible_subtotal() -> None:
    coupon = make_coupon(discount_type=DiscountType.FIXED, discount_value=150, categories=["A"])
    assert engine.calculate_discount_for_eligible_items(coupon, _cart()) == pytest.approx(100)


def test_items_without_categories_are_not_eligible_for_include_coupons() -> None:
    coupon = make_coupon(categories=["A"])
    cart = [CartLine(price=100, quantity=1)]
    assert engine.calculate_discount_for_eligible_items(coupon, cart) == 0


# ---------------------------------------------------------------- discount basis


def test_basis_variants_dispatch_to_matching_calculation() -> None:
    coupon = make_coupon(discount_value=10, categories=["A"])
    assert engine.discount_for_basis(coupon, OrderValueBasis(300)) == pytest.approx(30)
    assert engine.discount_for_basis(coupon, LineItemsBasis(_cart())) == pytest.approx(10)


def test_line_items_basis_reports_cart_total() -> None:
    assert LineItemsBasis(_cart()).order_value == pytest.approx(300)
