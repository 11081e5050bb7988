"""
Runtime configuration.

Everything is read from environment variables so the same build runs locally,
in CI and behind the production process manager.
"""
import os
from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field

PHONEPE_SANDBOX_URL = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PHONEPE_PRODUCTION_URL = "https://api.phonepe.com/apis/hermes"


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: str = "storefront"
    jwt_secret: Optional[str] = None
    admin_api_key: Optional[str] = None
    environment: str = "development"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    frontend_url: str = "http://localhost:3000"

    free_shipping_threshold: float = Field(499.0, ge=0, description="Subtotal above which shipping is free")
    shipping_fee: float = Field(49.0, ge=0, description="Flat shipping fee")
    tax_rate: float = Field(0.18, ge=0, le=1, description="Tax as a fraction of the subtotal")

    phonepe_merchant_id: Optional[str] = None
    phonepe_salt_key: Optional[str] = None
    phonepe_salt_index: Optional[str] = None
    phonepe_api_url: Optional[str] = None
    phonepe_timeout: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def gateway_url(self) -> str:
        if self.is_production:
            return PHONEPE_PRODUCTION_URL
        return self.phonepe_api_url or PHONEPE_SANDBOX_URL

    @classmethod
    def from_env(cls) -> "Settings":
        data = {
            "database_url": os.getenv("DATABASE_URL") or None,
            "database_name": os.getenv("DATABASE_NAME", "storefront"),
            "jwt_secret": os.getenv("JWT_SECRET") or None,
            "admin_api_key": os.getenv("ADMIN_API_KEY") or None,
            "environment": os.getenv("ENVIRONMENT", "development"),
            "frontend_url": os.getenv("FRONTEND_URL", "http://localhost:3000"),
            "phonepe_merchant_id": os.getenv("PHONEPE_MERCHANT_ID") or None,
            "phonepe_salt_key": os.getenv("PHONEPE_SALT_KEY") or None,
            "phonepe_salt_index": os.getenv("PHONEPE_SALT_INDEX") or None,
            "phonepe_api_url": os.getenv("PHONEPE_API_URL") or None,
        }
        origins = os.getenv("CORS_ORIGINS")
        if origins:
            data["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        # Numeric overrides are only applied when set so the model defaults stay authoritative
        for env_name, field in (
            ("FREE_SHIPPING_THRESHOLD", "free_shipping_threshold"),
            ("SHIPPING_FEE", "shipping_fee"),
            ("TAX_RATE", "tax_rate"),
            ("PHONEPE_TIMEOUT", "phonepe_timeout"),
        ):
            value = os.getenv(env_name)
            if value:
                data[field] = float(value)
        return cls(**data)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
