from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    """
    Settings class to retrieve environment variables.
    """

    DATABASE_URL: str = "sqlite+aiosqlite:///./storefront.db"
    APP_ENV: str = "production"     # production, staging or development

    LOG_LEVEL: Optional[str] = None     # INFO in production, DEBUG otherwise
    LOG_FORMAT: Optional[str] = None    # json in production, text otherwise
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/app.log"

    CURRENCY_SYMBOL: str = "₹"

    # Coupons
    COUPON_REDEEM_MAX_ATTEMPTS: int = 2
    COUPON_PAGE_SIZE: int = 20
    COUPON_MAX_PAGE_SIZE: int = 100

    model_config = SettingsConfigDict(
        env_file='.env',
        extra='ignore',
    )


Config = Settings()
