"""
Provider Adapters
One flat adapter per accounting provider, built from application settings.
"""

from typing import Optional

import httpx

from app.config import Settings
from app.integrations.providers.base import HttpProviderAdapter, ProviderAdapter
from app.integrations.providers.quickbooks import QuickBooksAdapter
from app.integrations.providers.rate_limiter import RateLimiter
from app.integrations.providers.retry_handler import RetryHandler
from app.integrations.providers.wave import WaveAdapter
from app.integrations.providers.xero import XeroAdapter
from app.integrations.types import Provider

__all__ = [
    "ProviderAdapter",
    "HttpProviderAdapter",
    "QuickBooksAdapter",
    "XeroAdapter",
    "WaveAdapter",
    "RateLimiter",
    "RetryHandler",
    "build_adapters",
]


def build_adapters(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict[Provider, ProviderAdapter]:
    """
    Build the adapter registry from settings.

    Each adapter gets its own rate limiter (budgets differ per provider) and
    a retry handler configured from the provider backoff settings.

    Args:
        settings: Application settings
        http_client: Optional shared httpx client

    Returns:
        Mapping of provider to adapter
    """

    def retry_handler() -> RetryHandler:
        return RetryHandler(
            max_retries=settings.provider_max_retries,
            backoff_base=settings.provider_backoff_base,
            max_backoff=settings.provider_max_backoff,
        )

    common = {
        "timeout": settings.provider_timeout_seconds,
        "http_client": http_client,
    }

    return {
        Provider.QUICKBOOKS: QuickBooksAdapter(
            client_id=settings.quickbooks_client_id,
            client_secret=settings.quickbooks_client_secret,
            api_base_url=settings.quickbooks_api_base_url,
            page_size=settings.sync_page_size,
            retry_handler=retry_handler(),
            rate_limiter=RateLimiter(settings.quickbooks_calls_per_minute),
            **common,
        ),
        Provider.XERO: XeroAdapter(
            client_id=settings.xero_client_id,
            client_secret=settings.xero_client_secret,
            retry_handler=retry_handler(),
            rate_limiter=RateLimiter(settings.xero_calls_per_minute),
            **common,
        ),
        Provider.WAVE: WaveAdapter(
            client_id=settings.wave_client_id,
            client_secret=settings.wave_client_secret,
            page_size=settings.sync_page_size,
            retry_handler=retry_handler(),
            rate_limiter=RateLimiter(),
            **common,
        ),
    }
