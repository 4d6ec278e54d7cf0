"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import Cookie, Depends, HTTPException, status
from jose import JWTError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.orm import Session

from .database import get_db
from .models import Brand, User
from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    # Public base URL Shopify calls back into (webhook registration)
    BACKEND_URL: Optional[str] = None

    # Shopify
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-10"

    # Redis / ARQ
    REDIS_URL: str = "redis://localhost:6379/0"
    ARQ_QUEUE_NAME: str = "arq:queue"
    NOTIFICATION_CHANNEL: str = "brand-notifications"
    # API process relays worker notifications from Redis into WebSockets
    NOTIFICATION_RELAY_ENABLED: bool = True

    # Daily reconciliation
    RECONCILE_TIMEZONE: str = "Asia/Kolkata"
    RECONCILE_HOUR: int = 2
    RECONCILE_BRAND_DELAY_SECONDS: float = 1.0

    # Historical sync window
    HISTORICAL_SYNC_YEARS: int = 2

    # Delay before a worker-triggered revenue job runs, so bursts of orders
    # for the same day collapse into one recalculation
    REVENUE_ORDER_DEFER_SECONDS: int = 5
    REVENUE_REFUND_DEFER_SECONDS: int = 2

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user(
    db: Session = Depends(get_db),
    access_token: Optional[str] = Cookie(default=None, alias="access_token"),
) -> User:
    """Resolve the current user from the `access_token` cookie.

    The cookie value is expected to be in the form: "Bearer <jwt>".
    """
    if not access_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    # Remove optional "Bearer " prefix
    if access_token.startswith("Bearer "):
        token = access_token[len("Bearer ") :]
    else:
        token = access_token

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")

    user = (
        db.query(User)
        .filter(User.email == subject)
        .first()
    )
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_brand_for_user(db: Session, brand_id: UUID, user: User) -> Brand:
    """Load a brand and check the user may act on it.

    Raises:
        HTTPException: 404 if the brand does not exist or is not visible to the user
    """
    brand = db.query(Brand).filter(Brand.id == brand_id).first()
    if not brand:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Brand not found")

    if not user.is_admin and brand not in user.brands:
        # Same 404 as a missing brand
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Brand not found")

    return brand
