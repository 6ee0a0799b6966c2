import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_current_admin, get_current_user_id, get_db, get_optional_user_id
from ..schemas.coupon import (
    CartItemIn,
    CouponApplicationResponse,
    CouponCreate,
    CouponListResponse,
    CouponResponse,
    CouponUpdate,
    CouponWithDetailsResponse,
    EligibleCouponResponse,
    RedeemCouponRequest,
    ValidateCouponRequest,
)
from ..services.coupon_service import coupon_service


logger = logging.getLogger(__name__)

router = APIRouter()

cart_items_adapter = TypeAdapter(List[CartItemIn])


# Admin endpoints
@router.post("/", response_model=CouponResponse, status_code=status.HTTP_201_CREATED)
async def create_coupon(
    coupon_data: CouponCreate,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(get_current_admin),
):
    """
    **Create Coupon**

    Creates a discount coupon. The code is stored uppercase and must be unique.

    **Validation:**

    - Percentage discounts must be within (0, 100]
    - Expiry date must be in the future
    - Category restrictions need at least one category when enabled
    """
    return await coupon_service.create_coupon(coupon_data, db)


@router.get("/", response_model=CouponListResponse)
async def get_all_coupons(
    page: int = Query(1, ge=1, description="Page number"),
    limit: Optional[int] = Query(None, ge=1, description="Items per page"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    db: AsyncSession = Depends(get_db),
    _: str = Depends(get_current_admin),
):
    """List every coupon, newest first, with recorded usages"""
    return await coupon_service.list_coupons(db, page=page, limit=limit, is_active=is_active)


@router.put("/{coupon_id}", response_model=CouponResponse)
async def update_coupon(
    coupon_id: int,
    coupon_data: CouponUpdate,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(get_current_admin),
):
    """Update a coupon; recorded usages are never changed"""
    return await coupon_service.update_coupon(coupon_id, coupon_data, db)


@router.delete("/{coupon_id}")
async def delete_coupon(
    coupon_id: int,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(get_current_admin),
):
    await coupon_service.delete_coupon(coupon_id, db)
    return {"message": "Coupon deleted successfully"}


# Customer endpoints
@router.get("/eligible", response_model=List[EligibleCouponResponse])
async def get_eligible_coupons(
    order_value: float = Query(..., gt=0, description="Current cart subtotal"),
    user_id: Optional[str] = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    **Get Eligible Coupons**

    Public listing of coupons the caller can apply to an order of the given value.
    Unlisted coupons never appear here. Anonymous callers are filtered by the
    minimum order value only.
    """
    return await coupon_service.get_eligible_coupons(order_value, user_id, db)


@router.get("/all", response_model=List[CouponWithDetailsResponse])
async def get_all_coupons_for_user(
    order_value: float = Query(..., gt=0, description="Current cart subtotal"),
    cart_items: Optional[str] = Query(None, description="JSON encoded list of cart items"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    **Get All Coupons For User**

    Every listed coupon with `can_use`, the reason it can't be used, the
    potential savings and which cart items it would discount.
    """
    items = []
    if cart_items:
        try:
            items = cart_items_adapter.validate_json(cart_items)
        except ValidationError as e:
            logger.warning("ignoring malformed cart items", extra={"extra": {"errors": e.error_count()}})

    return await coupon_service.get_all_coupons_for_user(order_value, user_id, items, db)


@router.post("/validate/{code}", response_model=CouponApplicationResponse)
async def validate_coupon(
    code: str,
    request: ValidateCouponRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Check a coupon against an order without recording a usage"""
    return await coupon_service.validate_coupon(code, user_id, request, db)


@router.post("/redeem/{code}", response_model=CouponApplicationResponse)
async def redeem_coupon(
    code: str,
    request: RedeemCouponRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Redeem a coupon for an order being placed and record the usage"""
    return await coupon_service.apply_coupon_to_order(code, user_id, request.order_value, db, request.cart_items)
