from fastapi import Request
from fastapi.responses import JSONResponse
from typing import Any, Callable, Optional

from .enums import IneligibilityReason


class APIException(Exception):
    """ Base class for all exceptions in the Storefront API. """

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail


class AccessTokenRequiredException(APIException):
    """ Exception is raised when a protected route is called without a caller identity. """
    pass


class PermissionRequiredException(APIException):
    """ Exception is thrown when a user does not have permission to peform the current action or access an endpoint/resource. """
    pass


class CouponValidationException(APIException):
    """ Exception is raised when an admin submits malformed coupon data. """
    pass


class CouponCodeExistsException(CouponValidationException):
    """ Exception is raised when the admin adds a duplicate coupon code. """
    pass


class CouponNotFoundException(APIException):
    """ Exception is raised if a coupon record is not found. """
    pass


class CouponInvalidException(APIException):
    """ Exception is raised when a coupon is inactive or past its expiry date. """
    pass


class CouponNotEligibleException(APIException):
    """ Exception is raised when the caller cannot use a valid coupon. """

    def __init__(self, reason: IneligibilityReason = IneligibilityReason.NOT_ELIGIBLE, detail: Optional[str] = None):
        super().__init__(detail)
        self.reason = reason


class CouponConcurrencyConflictException(APIException):
    """ Exception is raised when a redemption lost the race against another write to the same coupon. """
    pass


def create_exception_handler(status_code: int, detail: Any) -> Callable[[Request, Exception], JSONResponse]:
    async def exception_handler(request: Request, exception: APIException):
        content = {"detail": getattr(exception, "detail", None) or detail}

        reason = getattr(exception, "reason", None)
        if reason is not None:
            content["reason"] = reason.value

        return JSONResponse(
            content=content,
            status_code=status_code
        )

    return exception_handler
