"""Dashboard snapshot layer.

Composes a tenant's Klaviyo data into one snapshot:
- account, campaigns (email + SMS), flows, lists
- trailing 30-day event counts and revenue by channel
- campaign and flow performance rollups
- metric details for the head of the catalog
"""
from .aggregator import DashboardAggregator
from .service import DashboardService, create_rate_limiter, open_service

__all__ = [
    "DashboardAggregator",
    "DashboardService",
    "create_rate_limiter",
    "open_service",
]
