from sqlalchemy import Column, Integer, String, Float, DateTime, Boolean, ForeignKey, JSON, Enum
from sqlalchemy.orm import relationship

from ..db.base import Base
from ..enums import DiscountType, RestrictionType
from app.models.base import TimeStampMixin
from ..utils.time import utc_now


class Coupon(Base, TimeStampMixin):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), nullable=False, unique=True, index=True)  # stored uppercase
    discount_type = Column(Enum(DiscountType), nullable=False, default=DiscountType.PERCENTAGE)
    discount_value = Column(Float, nullable=False)  # Either percentage or fixed amount
    min_order_value = Column(Float, nullable=False, default=0.0)  # Checked against the eligible subtotal
    expiry_date = Column(DateTime, nullable=False, index=True)  # naive UTC
    usage_limit = Column(Integer, nullable=True)  # Total redemptions across all users, None = unlimited
    use_limit_per_user = Column(Integer, nullable=False, default=1)

    # Category restrictions
    category_restrictions_enabled = Column(Boolean, nullable=False, default=False)
    restricted_category_ids = Column(JSON, nullable=False, default=list)
    restriction_type = Column(Enum(RestrictionType), nullable=False, default=RestrictionType.INCLUDE)

    # User restrictions, stored but not enforced
    user_restrictions_enabled = Column(Boolean, nullable=False, default=False)
    allowed_user_types = Column(JSON, nullable=False, default=list)
    minimum_orders = Column(Integer, nullable=False, default=0)
    minimum_spent = Column(Float, nullable=False, default=0.0)

    is_unlisted = Column(Boolean, nullable=False, default=False, index=True)  # Hidden from public listings
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    # Bumped on every write, guards the usage append against lost updates
    version = Column(Integer, nullable=False, default=1)

    # Relationships
    used_by = relationship(
        "CouponUsage",
        back_populates="coupon",
        cascade="all, delete-orphan",
        order_by="CouponUsage.used_at",
    )

    def __repr__(self):
        return f"<Coupon(id={self.id}, code='{self.code}', active={self.is_active})>"


class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id = Column(Integer, primary_key=True, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    used_at = Column(DateTime, nullable=False, default=utc_now)

    coupon = relationship("Coupon", back_populates="used_by")

    def __repr__(self):
        return f"<CouponUsage(coupon_id={self.coupon_id}, user_id={self.user_id})>"
