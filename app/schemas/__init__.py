from .coupon import (
    CartItemIn,
    CategoryRestrictions,
    CouponApplicationResponse,
    CouponCreate,
    CouponListResponse,
    CouponResponse,
    CouponUpdate,
    CouponWithDetailsResponse,
    EligibleCouponResponse,
    RedeemCouponRequest,
    UserRestrictions,
    ValidateCouponRequest,
)


__all__ = [
    # coupon schemas
    "CartItemIn",
    "CategoryRestrictions",
    "CouponApplicationResponse",
    "CouponCreate",
    "CouponListResponse",
    "CouponResponse",
    "CouponUpdate",
    "CouponWithDetailsResponse",
    "EligibleCouponResponse",
    "RedeemCouponRequest",
    "UserRestrictions",
    "ValidateCouponRequest",
]
