"""Campaign and flow performance rollups.

Each rollup issues several aggregate queries grouped by $attributed_message.
A query that fails, or whose metric is missing from the catalog, contributes
zero and is listed in missing_metrics; the rollup itself only fails if
something outside those queries breaks.
"""
import asyncio
import logging
from typing import Optional

from ..klaviyo.aggregates import AggregateQueryExecutor
from ..klaviyo.catalog import MetricCatalogResolver
from ..klaviyo.exceptions import KlaviyoClientError
from ..schemas.klaviyo import (
    AggregateQuerySpec,
    AggregateResult,
    Measurement,
    MetricDescriptor,
)
from ..schemas.snapshot import CampaignPerformance, FlowPerformance


logger = logging.getLogger(__name__)

GROUP_BY_MESSAGE = "$attributed_message"


async def _query_or_zero(
    executor: AggregateQueryExecutor,
    credential: str,
    label: str,
    metric_id: Optional[str],
    measurement: Measurement,
    filters: list[str],
    timezone_name: str,
    missing: list[str],
) -> AggregateResult:
    if not metric_id:
        missing.append(label)
        return AggregateResult()

    spec = AggregateQuerySpec(
        metric_id=metric_id,
        measurements=[measurement],
        filters=filters,
        group_by=GROUP_BY_MESSAGE,
        timezone=timezone_name,
    )
    try:
        return await executor.run(credential, spec)
    except KlaviyoClientError as exc:
        logger.warning("Performance query %s failed: %s", label, exc)
        missing.append(label)
        return AggregateResult()


def _rate(numerator: float, denominator: float) -> float:
    return (numerator / denominator) * 100 if denominator > 0 else 0.0


async def collect_campaign_performance(
    executor: AggregateQueryExecutor,
    resolver: MetricCatalogResolver,
    credential: str,
    catalog: list[MetricDescriptor],
    filters: list[str],
    timezone_name: str = "UTC",
) -> CampaignPerformance:
    """Opens, clicks, deliveries, bounces and revenue per campaign message."""
    missing: list[str] = []
    queries = {
        "opens": (resolver.resolve_id(catalog, "Opened Email"), Measurement.UNIQUE),
        "clicks": (resolver.resolve_id(catalog, "Clicked Email"), Measurement.UNIQUE),
        "delivered": (resolver.resolve_id(catalog, "Received Email"), Measurement.COUNT),
        "bounces": (
            resolver.resolve_any(catalog, ["Bounced Email", "Bounced", "Bounce"]),
            Measurement.COUNT,
        ),
        "revenue": (resolver.resolve_id(catalog, "Placed Order"), Measurement.SUM_VALUE),
    }

    results = await asyncio.gather(
        *(
            _query_or_zero(
                executor, credential, label, metric_id, measurement,
                filters, timezone_name, missing,
            )
            for label, (metric_id, measurement) in queries.items()
        )
    )
    by_label = dict(zip(queries, results))

    performance = CampaignPerformance(
        opens=by_label["opens"].total,
        clicks=by_label["clicks"].total,
        delivered=by_label["delivered"].total,
        bounces=by_label["bounces"].total,
        revenue=by_label["revenue"].total,
        click_through_rate=_rate(by_label["clicks"].total, by_label["opens"].total),
        grouped={label: result.grouped for label, result in by_label.items()},
        missing_metrics=sorted(missing),
    )
    logger.info(
        "Campaign performance: opens=%s clicks=%s delivered=%s bounces=%s "
        "revenue=%.2f ctr=%.2f%%",
        performance.opens,
        performance.clicks,
        performance.delivered,
        performance.bounces,
        performance.revenue,
        performance.click_through_rate,
    )
    return performance


async def collect_flow_performance(
    executor: AggregateQueryExecutor,
    resolver: MetricCatalogResolver,
    credential: str,
    catalog: list[MetricDescriptor],
    timezone_name: str = "UTC",
) -> FlowPerformance:
    """Sends, conversions and revenue per flow message.

    No date filter is sent for the counts; the revenue query still gets the
    executor's default window.
    """
    missing: list[str] = []
    received_id = resolver.resolve_id(catalog, "Received Email")
    placed_order_id = resolver.resolve_id(catalog, "Placed Order")
    queries = {
        "sends": (received_id, Measurement.COUNT),
        "conversions": (placed_order_id, Measurement.COUNT),
        "revenue": (placed_order_id, Measurement.SUM_VALUE),
    }

    results = await asyncio.gather(
        *(
            _query_or_zero(
                executor, credential, label, metric_id, measurement,
                [], timezone_name, missing,
            )
            for label, (metric_id, measurement) in queries.items()
        )
    )
    by_label = dict(zip(queries, results))

    performance = FlowPerformance(
        sends=by_label["sends"].total,
        conversions=by_label["conversions"].total,
        conversion_rate=_rate(by_label["conversions"].total, by_label["sends"].total),
        revenue=by_label["revenue"].total,
        grouped={label: result.grouped for label, result in by_label.items()},
        missing_metrics=sorted(missing),
    )
    logger.info(
        "Flow performance: sends=%s conversions=%s rate=%.2f%% revenue=%.2f",
        performance.sends,
        performance.conversions,
        performance.conversion_rate,
        performance.revenue,
    )
    return performance
