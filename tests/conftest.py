from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.enums import DiscountType, RestrictionType
from app.models import Coupon, CouponUsage


NOW = datetime(2026, 1, 15, 12, 0, 0)


def make_coupon(
    *,
    used_by: Iterable[Any] = (),
    categories: Optional[list] = None,
    restriction_type: RestrictionType = RestrictionType.INCLUDE,
    **overrides: Any,
) -> Coupon:
    """Build a transient coupon with sensible defaults for engine tests."""
    fields = dict(
        code="SAVE10",
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10.0,
        min_order_value=0.0,
        expiry_date=NOW + timedelta(days=30),
        usage_limit=None,
        use_limit_per_user=1,
        category_restrictions_enabled=categories is not None,
        restricted_category_ids=categories or [],
        restriction_type=restriction_type,
        is_unlisted=False,
        is_active=True,
        version=1,
    )
    fields.update(overrides)
    coupon = Coupon(**fields)
    coupon.used_by = [CouponUsage(user_id=str(user_id), used_at=NOW - timedelta(days=1)) for user_id in used_by]
    return coupon


@pytest.fixture
def coupon_factory():
    return make_coupon


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_maker(tmp_path):
    """Sessions on separate connections to one database file, for interleaved writers."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'coupons.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker):
    from app import app
    from app.core.dependencies import get_db

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
