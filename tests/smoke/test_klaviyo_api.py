"""Smoke test against the live Klaviyo API.

Run with a real private key:
    KLAVIYO_PRIVATE_KEY=pk_... pytest tests/smoke/test_klaviyo_api.py -v
"""
import os

import aiohttp
import pytest

from kdash_core.config import DashboardSettings
from kdash_core.dashboard.service import DashboardService


@pytest.mark.skipif(
    not os.getenv("KLAVIYO_PRIVATE_KEY"), reason="KLAVIYO_PRIVATE_KEY not set"
)
@pytest.mark.asyncio
async def test_live_snapshot():
    """Build a full snapshot for the configured account.

    PASS Criteria:
    - Metric catalog loads (otherwise the build raises)
    - Every part reports an outcome
    - Counts agree with the fetched collections
    """
    private_key = os.getenv("KLAVIYO_PRIVATE_KEY")
    settings = DashboardSettings.from_env()

    async with aiohttp.ClientSession() as session:
        service = DashboardService(settings, session)
        snapshot = await service.build_snapshot(private_key)

    assert snapshot.metric_catalog, "Account has no metrics"
    assert "metric_catalog" in snapshot.outcomes
    assert "revenue" in snapshot.outcomes
    assert snapshot.campaign_count == len(snapshot.campaigns)
    assert snapshot.flow_count == len(snapshot.flows)

    print(f"\nDegraded parts: {snapshot.degraded or 'none'}")
    print(f"Revenue ({snapshot.revenue.method}): {snapshot.revenue.total:.2f}")
