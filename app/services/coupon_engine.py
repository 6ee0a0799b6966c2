"""
Coupon evaluation engine.

Pure decision functions over a loaded ``Coupon`` and the caller's order
context. Nothing here touches the database or mutates the coupon; recording
a redemption is the job of ``CouponService.apply_coupon_to_order``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, List, Optional, Sequence, Union

from ..enums import DiscountType, RestrictionType
from ..models.coupon import Coupon
from ..utils.time import to_naive_utc, utc_now


@dataclass(frozen=True)
class CartLine:
    """A cart item normalized by the caller.

    ``discount`` is the item's own percentage discount (0-100) applied before
    the coupon. ``category_ids`` may be empty.
    """

    price: float
    quantity: int = 1
    discount: float = 0.0
    category_ids: Sequence[Any] = field(default_factory=tuple)
    product_id: Optional[Any] = None

    @property
    def subtotal(self) -> float:
        effective_price = self.price * (1 - (self.discount or 0) / 100)
        return effective_price * self.quantity


@dataclass(frozen=True)
class OrderValueBasis:
    """Discount basis when only the order subtotal is known."""

    order_value: float


@dataclass(frozen=True)
class LineItemsBasis:
    """Discount basis built from individual cart lines."""

    items: Sequence[CartLine]

    @property
    def order_value(self) -> float:
        return sum(item.subtotal for item in self.items)


DiscountBasis = Union[OrderValueBasis, LineItemsBasis]


def _now(now: Optional[datetime]) -> datetime:
    return to_naive_utc(now) if now is not None else utc_now()


def _min_order_value(coupon: Coupon) -> float:
    return coupon.min_order_value or 0.0


def _restricted_ids(coupon: Coupon) -> set:
    return {str(category_id) for category_id in (coupon.restricted_category_ids or [])}


def _apply_formula(coupon: Coupon, basis_value: float) -> float:
    if coupon.discount_type == DiscountType.PERCENTAGE:
        return min(basis_value * coupon.discount_value / 100, basis_value)
    if coupon.discount_type == DiscountType.FIXED:
        return min(coupon.discount_value, basis_value)
    raise ValueError(f"Coupon {coupon.code!r} has unknown discount type {coupon.discount_type!r}")


def is_valid(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    """True while the coupon is active and ``now`` is strictly before its expiry."""
    return bool(coupon.is_active) and _now(now) < to_naive_utc(coupon.expiry_date)


def usage_count_for(coupon: Coupon, user_id: Optional[Any]) -> int:
    if user_id is None:
        return 0
    return sum(1 for usage in coupon.used_by if str(usage.user_id) == str(user_id))


def global_limit_reached(coupon: Coupon) -> bool:
    return coupon.usage_limit is not None and len(coupon.used_by) >= coupon.usage_limit


def user_limit_reached(coupon: Coupon, user_id: Optional[Any]) -> bool:
    per_user = coupon.use_limit_per_user if coupon.use_limit_per_user is not None else 1
    return usage_count_for(coupon, user_id) >= per_user


def can_user_use(coupon: Coupon, user_id: Optional[Any], now: Optional[datetime] = None) -> bool:
    """
    Check validity, then the global cap, then the per-user cap.

    A missing ``user_id`` matches no recorded usage, so only validity and the
    global cap apply to it.
    """
    if not is_valid(coupon, now):
        return False
    if global_limit_reached(coupon):
        return False
    if user_limit_reached(coupon, user_id):
        return False
    return True


def is_valid_for_categories(coupon: Coupon, category_ids: Iterable[Any]) -> bool:
    if not coupon.category_restrictions_enabled:
        return True

    restricted = _restricted_ids(coupon)
    # enabled with nothing selected behaves as unrestricted
    if not restricted:
        return True

    has_overlap = any(str(category_id) in restricted for category_id in (category_ids or []))
    if coupon.restriction_type == RestrictionType.EXCLUDE:
        return not has_overlap
    return has_overlap


def calculate_discount(coupon: Coupon, order_value: float) -> float:
    """Discount on a plain subtotal, always within ``[0, order_value]``."""
    if order_value < _min_order_value(coupon):
        return 0.0
    return max(_apply_formula(coupon, order_value), 0.0)


def get_eligible_items(coupon: Coupon, cart_items: Sequence[CartLine]) -> List[CartLine]:
    if not coupon.category_restrictions_enabled:
        return list(cart_items)
    return [item for item in cart_items if is_valid_for_categories(coupon, item.category_ids)]


def calculate_discount_for_eligible_items(coupon: Coupon, cart_items: Sequence[CartLine]) -> float:
    """
    Discount computed against the eligible subtotal only.

    Items outside a restricted coupon's categories never contribute to the
    basis, and ``min_order_value`` is checked against that partial basis.
    """
    if not coupon.category_restrictions_enabled:
        return calculate_discount(coupon, sum(item.subtotal for item in cart_items))

    eligible = get_eligible_items(coupon, cart_items)
    if not eligible:
        return 0.0

    eligible_subtotal = sum(item.subtotal for item in eligible)
    if eligible_subtotal < _min_order_value(coupon):
        return 0.0
    return max(_apply_formula(coupon, eligible_subtotal), 0.0)


def discount_for_basis(coupon: Coupon, basis: DiscountBasis) -> float:
    if isinstance(basis, LineItemsBasis):
        return calculate_discount_for_eligible_items(coupon, basis.items)
    return calculate_discount(coupon, basis.order_value)
