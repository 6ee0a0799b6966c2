import enum


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class RestrictionType(str, enum.Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class CouponUserType(str, enum.Enum):
    NEW = "new"
    EXISTING = "existing"
    VIP = "vip"
    PREMIUM = "premium"


class IneligibilityReason(str, enum.Enum):
    GLOBAL_LIMIT_REACHED = "global_limit_reached"
    USER_LIMIT_REACHED = "user_limit_reached"
    BELOW_MINIMUM_ORDER = "below_minimum_order"
    CATEGORY_MISMATCH = "category_mismatch"
    NOT_ELIGIBLE = "not_eligible"
