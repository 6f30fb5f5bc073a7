"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .services.shopify_client import ShopifyClient, DEFAULT_API_VERSION
from .services.sync_state_store import SyncStateStore, TTLCache


class ShopifyConfigError(RuntimeError):
    """Raised when Shopify credentials are missing at first use."""


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    ENVIRONMENT: str = "development"
    SENTRY_DSN: Optional[str] = None

    # Shopify
    SHOPIFY_SHOP: Optional[str] = None  # Store handle, without ".myshopify.com"
    SHOPIFY_ACCESS_TOKEN: Optional[str] = None
    SHOPIFY_API_VERSION: str = DEFAULT_API_VERSION
    SHOPIFY_WEBHOOK_SECRET: Optional[str] = None

    # Redis / background jobs
    REDIS_URL: str = "redis://localhost:6379/0"
    TASK_QUEUE_BACKEND: str = "arq"  # "arq" or "inprocess"

    # Sync tuning
    BULK_THRESHOLD: int = 100
    SYNC_BATCH_SIZE: int = 1000
    BULK_STATE_CACHE_TTL_SECONDS: int = 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_shopify_client() -> ShopifyClient:
    """Build a Shopify client from settings.

    Raises:
        ShopifyConfigError: If SHOPIFY_SHOP or SHOPIFY_ACCESS_TOKEN is missing
    """
    settings = get_settings()
    if not settings.SHOPIFY_SHOP or not settings.SHOPIFY_ACCESS_TOKEN:
        raise ShopifyConfigError(
            "Shopify credentials not configured. Set SHOPIFY_SHOP and SHOPIFY_ACCESS_TOKEN."
        )
    return ShopifyClient(
        shop=settings.SHOPIFY_SHOP,
        access_token=settings.SHOPIFY_ACCESS_TOKEN,
        api_version=settings.SHOPIFY_API_VERSION,
    )


@lru_cache()
def get_sync_state_store() -> SyncStateStore:
    """Process-wide state store so the bulk-state cache is shared between requests."""
    settings = get_settings()
    return SyncStateStore(TTLCache(ttl_seconds=settings.BULK_STATE_CACHE_TTL_SECONDS))


@lru_cache()
def get_task_queue():
    """Process-wide task queue selected by TASK_QUEUE_BACKEND."""
    from .workers.task_queue import build_task_queue

    return build_task_queue(get_settings())


def get_order_sync_service():
    """Sync orchestrator wired with the configured client, store and queue.

    Raises:
        ShopifyConfigError: If Shopify credentials are missing
    """
    from .services.order_sync_service import OrderSyncService

    settings = get_settings()
    return OrderSyncService(
        client=get_shopify_client(),
        state_store=get_sync_state_store(),
        task_queue=get_task_queue(),
        bulk_threshold=settings.BULK_THRESHOLD,
        batch_size=settings.SYNC_BATCH_SIZE,
    )


def get_order_sync_service_factory():
    """Deferred variant for endpoints that only sometimes talk to Shopify."""
    return get_order_sync_service
