from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.exceptions import (
    create_exception_handler,
    AccessTokenRequiredException,
    CouponCodeExistsException,
    CouponConcurrencyConflictException,
    CouponInvalidException,
    CouponNotEligibleException,
    CouponNotFoundException,
    CouponValidationException,
    PermissionRequiredException,
)
from app.db.database import init_db
from app.logging_config import setup_logging
from app.routers.coupons import router as coupons_router
from dotenv import load_dotenv

load_dotenv()
setup_logging()

api_version = "v1"
swagger_docs_url = f"/api/{api_version}/docs"
redoc_docs_url = f"/api/{api_version}/redoc"
openapi_url = f"/api/{api_version}/openapi.json"


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Create the tables before serving requests."""
    await init_db()
    yield


app = FastAPI(
    docs_url=swagger_docs_url,
    redoc_url=redoc_docs_url,
    openapi_url=openapi_url,
    title="Storefront Coupons API",
    description="Discount coupons for the storefront: administration, discovery and redemption.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        'http://localhost',
        'http://localhost:3000',
    ],
    allow_credentials=True,
    allow_methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'],
    allow_headers=["*"],
)

# Register endpoints
app.include_router(coupons_router, prefix=f'/api/{api_version}/coupons', tags=["Coupons"])

# Add a root endpoint for health check
@app.get("/")
async def root():
    return {
        "message": "Storefront Coupons API",
        "version": "1.0.0",
        "docs": swagger_docs_url,
        "status": "running"
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy"}

# Register custom exceptions

# Caller-related exception handlers
app.add_exception_handler(AccessTokenRequiredException, create_exception_handler(401, "Authentication required!"))
app.add_exception_handler(PermissionRequiredException, create_exception_handler(403, "You don't have permission to access this resource."))

# Coupon-related exception handlers
app.add_exception_handler(CouponCodeExistsException, create_exception_handler(400, "Coupon code already exists"))
app.add_exception_handler(CouponValidationException, create_exception_handler(400, "Invalid coupon data."))
app.add_exception_handler(CouponNotFoundException, create_exception_handler(404, "Coupon not found"))
app.add_exception_handler(CouponInvalidException, create_exception_handler(400, "Coupon is expired or inactive"))
app.add_exception_handler(CouponNotEligibleException, create_exception_handler(400, "You cannot use this coupon"))
app.add_exception_handler(CouponConcurrencyConflictException, create_exception_handler(409, "Coupon was modified by a concurrent request, please retry."))
