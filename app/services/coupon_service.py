import logging
import math
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..core.config import Config
from ..enums import DiscountType, IneligibilityReason, RestrictionType
from ..exceptions import (
    CouponCodeExistsException,
    CouponConcurrencyConflictException,
    CouponInvalidException,
    CouponNotEligibleException,
    CouponNotFoundException,
    CouponValidationException,
)
from ..models.coupon import Coupon, CouponUsage
from ..schemas.coupon import (
    CartItemIn,
    CategoryRestrictions,
    CouponApplicationResponse,
    CouponCreate,
    CouponListResponse,
    CouponResponse,
    CouponSummary,
    CouponUpdate,
    CouponUsageResponse,
    CouponWithDetailsResponse,
    EligibleCouponResponse,
    Pagination,
    UserRestrictions,
    ValidateCouponRequest,
)
from ..utils.time import to_naive_utc, utc_now
from . import coupon_engine as engine
from .coupon_engine import CartLine, LineItemsBasis, OrderValueBasis


logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def to_cart_lines(cart_items: Optional[Sequence[CartItemIn]]) -> List[CartLine]:
    """Convert request cart items into the engine's cart lines"""
    return [
        CartLine(
            price=item.price,
            quantity=item.quantity,
            discount=item.discount,
            category_ids=tuple(item.category),
            product_id=item.product_id,
        )
        for item in (cart_items or [])
    ]


def serialize_coupon(coupon: Coupon) -> CouponResponse:
    return CouponResponse(
        id=coupon.id,
        code=coupon.code,
        discount_type=coupon.discount_type,
        discount_value=coupon.discount_value,
        min_order_value=coupon.min_order_value or 0,
        expiry_date=coupon.expiry_date,
        usage_limit=coupon.usage_limit,
        use_limit_per_user=coupon.use_limit_per_user,
        category_restrictions=CategoryRestrictions(
            enabled=coupon.category_restrictions_enabled,
            categories=coupon.restricted_category_ids or [],
            restriction_type=coupon.restriction_type,
        ),
        user_restrictions=UserRestrictions(
            enabled=coupon.user_restrictions_enabled,
            user_types=coupon.allowed_user_types or [],
            minimum_orders=coupon.minimum_orders or 0,
            minimum_spent=coupon.minimum_spent or 0,
        ),
        is_unlisted=coupon.is_unlisted,
        is_active=coupon.is_active,
        used_by=[CouponUsageResponse.model_validate(usage) for usage in coupon.used_by],
        created_at=coupon.created_at,
        updated_at=coupon.updated_at,
    )


class CouponService:

    def _minimum_order_message(self, coupon: Coupon) -> str:
        return f"Minimum order value of {Config.CURRENCY_SYMBOL}{coupon.min_order_value or 0:g} required"

    def _restriction_message(self, coupon: Coupon) -> str:
        scope = "selected" if coupon.restriction_type == RestrictionType.INCLUDE else "non-selected"
        return f"This coupon is only valid for {scope} categories"

    def _ineligibility(self, coupon: Coupon, user_id: Optional[Any]) -> CouponNotEligibleException:
        """Work out why ``can_user_use`` failed for a valid coupon"""
        if engine.global_limit_reached(coupon):
            return CouponNotEligibleException(
                IneligibilityReason.GLOBAL_LIMIT_REACHED, "Coupon usage limit has been reached"
            )
        if engine.user_limit_reached(coupon, user_id):
            return CouponNotEligibleException(
                IneligibilityReason.USER_LIMIT_REACHED, "You have already used this coupon"
            )
        return CouponNotEligibleException(IneligibilityReason.NOT_ELIGIBLE, "You cannot use this coupon")

    def _ensure_redeemable(self, coupon: Coupon, user_id: Optional[Any], now: datetime) -> None:
        if not engine.is_valid(coupon, now):
            raise CouponInvalidException("Coupon is expired or inactive")
        if not engine.can_user_use(coupon, user_id, now):
            raise self._ineligibility(coupon, user_id)

    def _validate_coupon_fields(
        self,
        discount_type: DiscountType,
        discount_value: float,
        expiry_date: Optional[datetime],
        category_restrictions: Optional[CategoryRestrictions],
        now: datetime,
    ) -> None:
        if discount_type == DiscountType.PERCENTAGE and not 0 < discount_value <= 100:
            raise CouponValidationException("Percentage discount must be between 1 and 100")

        if expiry_date is not None and to_naive_utc(expiry_date) <= now:
            raise CouponValidationException("Expiry date must be in the future")

        if category_restrictions is not None and category_restrictions.enabled and not category_restrictions.categories:
            raise CouponValidationException("Categories must be selected when category restrictions are enabled")

    async def _get_coupon(self, coupon_id: int, db: AsyncSession) -> Coupon:
        query = (
            select(Coupon)
            .where(Coupon.id == coupon_id)
            .options(selectinload(Coupon.used_by))
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        coupon = result.scalars().first()

        if not coupon:
            raise CouponNotFoundException("Coupon not found")

        return coupon

    async def _find_by_code(self, code: str, db: AsyncSession) -> Optional[Coupon]:
        query = (
            select(Coupon)
            .where(Coupon.code == normalize_code(code))
            .options(selectinload(Coupon.used_by))
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        return result.scalars().first()

    async def _ensure_code_available(self, code: str, db: AsyncSession, exclude_id: Optional[int] = None) -> None:
        query = select(Coupon.id).where(Coupon.code == code)
        if exclude_id is not None:
            query = query.where(Coupon.id != exclude_id)

        result = await db.execute(query)
        if result.first() is not None:
            raise CouponCodeExistsException("Coupon code already exists")

    async def _listed_coupons(self, db: AsyncSession, now: datetime) -> List[Coupon]:
        """Active, unexpired coupons that may appear in public listings"""
        query = (
            select(Coupon)
            .where(
                Coupon.is_active == True,
                Coupon.expiry_date > now,
                Coupon.is_unlisted == False,
            )
            .options(selectinload(Coupon.used_by))
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def create_coupon(self, data: CouponCreate, db: AsyncSession, now: Optional[datetime] = None) -> CouponResponse:
        """Create a coupon after validating the admin input"""
        now = to_naive_utc(now) if now else utc_now()
        code = normalize_code(data.code)
        if not code:
            raise CouponValidationException("Coupon code is required")

        self._validate_coupon_fields(
            data.discount_type, data.discount_value, data.expiry_date, data.category_restrictions, now
        )
        await self._ensure_code_available(code, db)

        coupon = Coupon(
            code=code,
            discount_type=data.discount_type,
            discount_value=data.discount_value,
            min_order_value=data.min_order_value or 0,
            expiry_date=to_naive_utc(data.expiry_date),
            usage_limit=data.usage_limit,
            use_limit_per_user=data.use_limit_per_user or 1,
            category_restrictions_enabled=data.category_restrictions.enabled,
            restricted_category_ids=list(data.category_restrictions.categories),
            restriction_type=data.category_restrictions.restriction_type,
            user_restrictions_enabled=data.user_restrictions.enabled,
            allowed_user_types=[user_type.value for user_type in data.user_restrictions.user_types],
            minimum_orders=data.user_restrictions.minimum_orders,
            minimum_spent=data.user_restrictions.minimum_spent,
            is_unlisted=data.is_unlisted,
            is_active=data.is_active,
            version=1,
        )
        db.add(coupon)
        await db.commit()

        coupon = await self._get_coupon(coupon.id, db)
        logger.info("coupon created", extra={"extra": {"coupon_id": coupon.id, "code": coupon.code}})
        return serialize_coupon(coupon)

    async def update_coupon(
        self, coupon_id: int, data: CouponUpdate, db: AsyncSession, now: Optional[datetime] = None
    ) -> CouponResponse:
        """Update any coupon field except recorded usages"""
        now = to_naive_utc(now) if now else utc_now()
        coupon = await self._get_coupon(coupon_id, db)
        seen_version = coupon.version
        changes = data.model_dump(exclude_unset=True, exclude={"category_restrictions", "user_restrictions"})
        updated_fields = sorted(data.model_dump(exclude_unset=True))

        if changes.get("code") is not None:
            changes["code"] = normalize_code(changes["code"])
            if changes["code"] != coupon.code:
                await self._ensure_code_available(changes["code"], db, exclude_id=coupon.id)

        self._validate_coupon_fields(
            data.discount_type or coupon.discount_type,
            data.discount_value if data.discount_value is not None else coupon.discount_value,
            data.expiry_date,
            data.category_restrictions,
            now,
        )

        values = {}
        for field, value in changes.items():
            # usage_limit is the only column where None means something (unlimited)
            if value is None and field != "usage_limit":
                continue
            if field == "expiry_date":
                value = to_naive_utc(value)
            values[field] = value

        if data.category_restrictions is not None:
            values.update(
                category_restrictions_enabled=data.category_restrictions.enabled,
                restricted_category_ids=list(data.category_restrictions.categories),
                restriction_type=data.category_restrictions.restriction_type,
            )

        if data.user_restrictions is not None:
            values.update(
                user_restrictions_enabled=data.user_restrictions.enabled,
                allowed_user_types=[user_type.value for user_type in data.user_restrictions.user_types],
                minimum_orders=data.user_restrictions.minimum_orders,
                minimum_spent=data.user_restrictions.minimum_spent,
            )

        # same guard as redemption, a stale snapshot must never rewind the version
        result = await db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.version == seen_version)
            .values(**values, version=Coupon.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(
                "coupon update conflict",
                extra={"extra": {"coupon_id": coupon_id, "seen_version": seen_version}},
            )
            raise CouponConcurrencyConflictException("Coupon was modified by a concurrent request, please retry")

        await db.commit()

        coupon = await self._get_coupon(coupon_id, db)
        logger.info("coupon updated", extra={"extra": {"coupon_id": coupon.id, "fields": updated_fields}})
        return serialize_coupon(coupon)

    async def delete_coupon(self, coupon_id: int, db: AsyncSession) -> bool:
        coupon = await self._get_coupon(coupon_id, db)
        await db.delete(coupon)
        await db.commit()

        logger.info("coupon deleted", extra={"extra": {"coupon_id": coupon_id}})
        return True

    async def list_coupons(
        self,
        db: AsyncSession,
        page: int = 1,
        limit: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> CouponListResponse:
        """Admin listing, newest first"""
        limit = min(limit or Config.COUPON_PAGE_SIZE, Config.COUPON_MAX_PAGE_SIZE)
        page = max(page, 1)

        query = select(Coupon).options(selectinload(Coupon.used_by))
        count_query = select(func.count()).select_from(Coupon)
        if is_active is not None:
            query = query.where(Coupon.is_active == is_active)
            count_query = count_query.where(Coupon.is_active == is_active)

        query = query.order_by(Coupon.created_at.desc(), Coupon.id.desc()).offset((page - 1) * limit).limit(limit)

        result = await db.execute(query)
        coupons = result.scalars().all()
        total = (await db.execute(count_query)).scalar() or 0

        return CouponListResponse(
            data=[serialize_coupon(coupon) for coupon in coupons],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit),
            ),
        )

    async def get_eligible_coupons(
        self,
        order_value: float,
        user_id: Optional[str],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> List[EligibleCouponResponse]:
        """
        Public discovery listing.

        Anonymous callers are filtered by the minimum order value only; signed-in
        callers must also pass the usage caps.
        """
        now = to_naive_utc(now) if now else utc_now()
        eligible = []

        for coupon in await self._listed_coupons(db, now):
            meets_min_order = order_value >= (coupon.min_order_value or 0)
            if not meets_min_order:
                continue
            if user_id is not None and not engine.can_user_use(coupon, user_id, now):
                continue

            discount = engine.calculate_discount(coupon, order_value)
            eligible.append(EligibleCouponResponse(
                id=coupon.id,
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
                min_order_value=coupon.min_order_value or 0,
                expiry_date=coupon.expiry_date,
                potential_savings=discount,
                final_price=max(0.0, order_value - discount),
                used_by=[CouponUsageResponse.model_validate(usage) for usage in coupon.used_by],
            ))

        eligible.sort(key=lambda entry: entry.potential_savings, reverse=True)
        return eligible

    async def get_all_coupons_for_user(
        self,
        order_value: float,
        user_id: Optional[str],
        cart_items: Optional[Sequence[CartItemIn]],
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> List[CouponWithDetailsResponse]:
        """Every listed coupon, annotated with whether and why the user can use it"""
        now = to_naive_utc(now) if now else utc_now()
        lines = to_cart_lines(cart_items)
        basis = LineItemsBasis(lines) if lines else OrderValueBasis(order_value)
        cart_category_ids = [category_id for line in lines for category_id in line.category_ids]

        coupons = []
        for coupon in await self._listed_coupons(db, now):
            discount = engine.discount_for_basis(coupon, basis)
            can_use = engine.can_user_use(coupon, user_id, now) if user_id is not None else True
            meets_min_order = order_value >= (coupon.min_order_value or 0)
            meets_restrictions = engine.is_valid_for_categories(coupon, cart_category_ids) if lines else True
            eligible_items = engine.get_eligible_items(coupon, lines) if lines else []
            eligible_subtotal = sum(line.subtotal for line in eligible_items) if lines else order_value

            reason = None
            reason_code = None
            if not meets_min_order:
                reason = self._minimum_order_message(coupon)
                reason_code = IneligibilityReason.BELOW_MINIMUM_ORDER
            elif not can_use:
                ineligible = self._ineligibility(coupon, user_id)
                reason = ineligible.detail
                reason_code = ineligible.reason
            elif not meets_restrictions:
                reason = self._restriction_message(coupon)
                reason_code = IneligibilityReason.CATEGORY_MISMATCH
            elif eligible_subtotal < (coupon.min_order_value or 0):
                # usable, but the items it covers don't reach the minimum so it saves nothing
                reason = f"{self._minimum_order_message(coupon)} on eligible items"
                reason_code = IneligibilityReason.BELOW_MINIMUM_ORDER

            coupons.append(CouponWithDetailsResponse(
                id=coupon.id,
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
                min_order_value=coupon.min_order_value or 0,
                expiry_date=coupon.expiry_date,
                potential_savings=discount,
                final_price=max(0.0, order_value - discount),
                used_by=[CouponUsageResponse.model_validate(usage) for usage in coupon.used_by],
                can_use=can_use and meets_min_order and meets_restrictions,
                meets_min_order=meets_min_order,
                meets_restrictions=meets_restrictions,
                eligible_items=[line.product_id for line in eligible_items if line.product_id is not None],
                eligible_subtotal=eligible_subtotal,
                reason=reason,
                reason_code=reason_code,
            ))

        coupons.sort(key=lambda entry: entry.potential_savings, reverse=True)
        return coupons

    async def validate_coupon(
        self,
        code: str,
        user_id: str,
        request: ValidateCouponRequest,
        db: AsyncSession,
        now: Optional[datetime] = None,
    ) -> CouponApplicationResponse:
        """Dry run of a redemption, nothing is recorded"""
        now = to_naive_utc(now) if now else utc_now()
        coupon = await self._find_by_code(code, db)
        if not coupon:
            raise CouponNotFoundException("Coupon not found")

        self._ensure_redeemable(coupon, user_id, now)

        if request.order_value < (coupon.min_order_value or 0):
            raise CouponNotEligibleException(
                IneligibilityReason.BELOW_MINIMUM_ORDER, self._minimum_order_message(coupon)
            )

        if request.category_ids is not None and not engine.is_valid_for_categories(coupon, request.category_ids):
            raise CouponNotEligibleException(
                IneligibilityReason.CATEGORY_MISMATCH, "This coupon cannot be used with the selected categories"
            )

        lines = to_cart_lines(request.cart_items)
        basis = LineItemsBasis(lines) if request.cart_items is not None else OrderValueBasis(request.order_value)
        discount = engine.discount_for_basis(coupon, basis)

        return CouponApplicationResponse(
            coupon=CouponSummary(
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
                min_order_value=coupon.min_order_value or 0,
            ),
            order_value=request.order_value,
            discount_amount=discount,
            final_total=request.order_value - discount,
        )

    async def _record_usage(
        self, coupon_id: int, expected_version: int, user_id: str, now: datetime, db: AsyncSession
    ) -> None:
        """
        Append a usage only if nobody wrote to the coupon since it was loaded.

        The version bump and the insert share one transaction; the caller commits.
        """
        result = await db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.version == expected_version)
            .values(version=Coupon.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CouponConcurrencyConflictException("Coupon was modified by a concurrent request")

        db.add(CouponUsage(coupon_id=coupon_id, user_id=str(user_id), used_at=now))
        await db.flush()

    async def apply_coupon_to_order(
        self,
        code: str,
        user_id: str,
        order_value: float,
        db: AsyncSession,
        cart_items: Optional[Sequence[CartItemIn]] = None,
        now: Optional[datetime] = None,
    ) -> CouponApplicationResponse:
        """
        Redeem a coupon for an order and record the usage.

        Lost races against the usage caps are retried on a fresh snapshot; when
        every attempt conflicts the caller gets a generic not-eligible error.
        """
        now = to_naive_utc(now) if now else utc_now()
        lines = to_cart_lines(cart_items)
        basis = LineItemsBasis(lines) if lines else OrderValueBasis(order_value)
        attempts = max(1, Config.COUPON_REDEEM_MAX_ATTEMPTS)

        for attempt in range(1, attempts + 1):
            coupon = await self._find_by_code(code, db)
            if not coupon:
                raise CouponNotFoundException("Coupon not found")

            self._ensure_redeemable(coupon, user_id, now)
            discount = engine.discount_for_basis(coupon, basis)
            summary = CouponSummary(
                code=coupon.code,
                discount_type=coupon.discount_type,
                discount_value=coupon.discount_value,
                min_order_value=coupon.min_order_value or 0,
            )

            try:
                await self._record_usage(coupon.id, coupon.version, user_id, now, db)
            except CouponConcurrencyConflictException:
                # rollback expires the snapshot, the next attempt reloads it
                await db.rollback()
                logger.warning(
                    "coupon redemption conflict",
                    extra={"extra": {"code": summary.code, "user_id": str(user_id), "attempt": attempt}},
                )
                continue

            await db.commit()
            logger.info(
                "coupon redeemed",
                extra={"extra": {"code": summary.code, "user_id": str(user_id), "discount": discount}},
            )
            return CouponApplicationResponse(
                coupon=summary,
                order_value=order_value,
                discount_amount=discount,
                final_total=order_value - discount,
            )

        raise CouponNotEligibleException(IneligibilityReason.NOT_ELIGIBLE, "You cannot use this coupon")


coupon_service = CouponService()
