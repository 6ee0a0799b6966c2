from pydantic import BaseModel, Field
from typing import Optional, List, Union
from datetime import datetime

from ..enums import CouponUserType, DiscountType, IneligibilityReason, RestrictionType


EntityId = Union[int, str]  # categories and products are referenced by opaque ids


class CategoryRestrictions(BaseModel):
    """Include/exclude filter on product categories"""
    enabled: bool = False
    categories: List[EntityId] = []
    restriction_type: RestrictionType = RestrictionType.INCLUDE


class UserRestrictions(BaseModel):
    """Stored with the coupon, not evaluated"""
    enabled: bool = False
    user_types: List[CouponUserType] = []
    minimum_orders: int = Field(0, ge=0)
    minimum_spent: float = Field(0, ge=0)


class CouponBase(BaseModel):
    """Base schema for coupons"""
    code: str = Field(..., min_length=1, max_length=64)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: float = Field(..., ge=0, description="Percentage or fixed amount")
    min_order_value: float = Field(0, ge=0, description="Minimum eligible subtotal required")
    expiry_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1, description="Maximum number of times coupon can be used")
    use_limit_per_user: int = Field(1, ge=1)
    category_restrictions: CategoryRestrictions = CategoryRestrictions()
    user_restrictions: UserRestrictions = UserRestrictions()
    is_unlisted: bool = False
    is_active: bool = True


class CouponCreate(CouponBase):
    """Schema for creating coupons"""
    pass


class CouponUpdate(BaseModel):
    """Schema for updating coupons"""
    code: Optional[str] = Field(None, min_length=1, max_length=64)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_order_value: Optional[float] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    use_limit_per_user: Optional[int] = Field(None, ge=1)
    category_restrictions: Optional[CategoryRestrictions] = None
    user_restrictions: Optional[UserRestrictions] = None
    is_unlisted: Optional[bool] = None
    is_active: Optional[bool] = None


class CouponUsageResponse(BaseModel):
    user_id: str
    used_at: datetime

    class Config:
        from_attributes = True


class CouponResponse(CouponBase):
    """Schema for coupon responses"""
    id: int
    used_by: List[CouponUsageResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CouponListResponse(BaseModel):
    data: List[CouponResponse]
    pagination: Pagination


class CartItemIn(BaseModel):
    """Cart line as sent by the storefront"""
    product_id: Optional[EntityId] = None
    price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Item's own percentage discount")
    quantity: int = Field(1, ge=1)
    category: List[EntityId] = []


class ValidateCouponRequest(BaseModel):
    order_value: float = Field(..., gt=0)
    category_ids: Optional[List[EntityId]] = None
    cart_items: Optional[List[CartItemIn]] = None


class RedeemCouponRequest(BaseModel):
    order_value: float = Field(..., ge=0)
    cart_items: Optional[List[CartItemIn]] = None


class CouponSummary(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float
    min_order_value: float = 0


class CouponApplicationResponse(BaseModel):
    """Result of validating or redeeming a coupon"""
    coupon: CouponSummary
    order_value: float
    discount_amount: float
    final_total: float


class EligibleCouponResponse(BaseModel):
    id: int
    code: str
    discount_type: DiscountType
    discount_value: float
    min_order_value: float
    expiry_date: datetime
    potential_savings: float
    final_price: float
    used_by: List[CouponUsageResponse] = []


class CouponWithDetailsResponse(EligibleCouponResponse):
    can_use: bool
    meets_min_order: bool
    meets_restrictions: bool
    eligible_items: List[EntityId] = []
    eligible_subtotal: float = 0
    reason: Optional[str] = None
    reason_code: Optional[IneligibilityReason] = None
