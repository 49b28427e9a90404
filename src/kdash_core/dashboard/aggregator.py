"""Dashboard snapshot orchestrator.

Loads the metric catalog, then fans out one task per snapshot part. Each part
is wrapped so a failure becomes that part's default plus a degraded outcome;
only a catalog failure aborts the build.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Optional, Union

from ..klaviyo.aggregates import AggregateQueryExecutor, default_window
from ..klaviyo.catalog import MetricCatalogResolver
from ..klaviyo.client import KlaviyoClient
from ..klaviyo.exceptions import (
    KlaviyoApiError,
    KlaviyoClientError,
    KlaviyoTransportError,
    MetricNotFoundError,
)
from ..klaviyo.pagination import PaginatedFetcher
from ..schemas.klaviyo import MetricDescriptor
from ..schemas.snapshot import (
    DashboardSnapshot,
    OutcomeStatus,
    RevenueSummary,
    SubFetchOutcome,
)
from .performance import collect_campaign_performance, collect_flow_performance


logger = logging.getLogger(__name__)

# Snapshot key -> metric display name.
EVENT_COUNTERS = {
    "placed_order": "Placed Order",
    "viewed_product": "Viewed Product",
    "added_to_cart": "Added to Cart",
    "active_on_site": "Active on Site",
}

CAMPAIGN_CHANNELS = ("email", "sms")
REVENUE_METRIC = "Placed Order"
REVENUE_GROUP_BY = "$attributed_channel"
EVENTS_FALLBACK_PAGE_SIZE = 100
DEADLINE_REASON = "deadline exceeded"


@dataclass
class Degraded:
    """Returned by a part that produced a fallback value instead of failing."""

    value: Any
    reason: Union[str, Exception]


def _degraded_outcome(name: str, reason: Union[str, Exception]) -> SubFetchOutcome:
    if isinstance(reason, Exception):
        return SubFetchOutcome(
            name=name,
            status=OutcomeStatus.DEGRADED,
            reason=str(reason),
            error_type=type(reason).__name__,
        )
    return SubFetchOutcome(name=name, status=OutcomeStatus.DEGRADED, reason=reason)


class DashboardAggregator:
    """Builds DashboardSnapshots for one tenant credential at a time."""

    DEFAULT_DEADLINE = 60.0  # seconds

    def __init__(
        self,
        client: KlaviyoClient,
        fetcher: PaginatedFetcher,
        resolver: MetricCatalogResolver,
        executor: AggregateQueryExecutor,
        timezone_name: str = "UTC",
        event_counters: Optional[dict[str, str]] = None,
        include_performance: bool = True,
        metric_detail_limit: int = 20,
        metric_detail_concurrency: int = 5,
        default_deadline: float = DEFAULT_DEADLINE,
    ):
        self.client = client
        self.fetcher = fetcher
        self.resolver = resolver
        self.executor = executor
        self.timezone_name = timezone_name
        self.event_counters = dict(event_counters or EVENT_COUNTERS)
        self.include_performance = include_performance
        self.metric_detail_limit = metric_detail_limit
        self.metric_detail_concurrency = max(1, metric_detail_concurrency)
        self.default_deadline = default_deadline

    async def build(
        self, credential: str, deadline: Optional[float] = None
    ) -> DashboardSnapshot:
        """Build a snapshot.

        Args:
            credential: Tenant private API key
            deadline: Overall budget in seconds (default_deadline if None)

        Returns:
            Snapshot; degraded parts carry defaults and a degraded outcome

        Raises:
            KlaviyoClientError: The metric catalog could not be loaded
        """
        budget = self.default_deadline if deadline is None else deadline
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            catalog = await asyncio.wait_for(
                self.resolver.load_catalog(credential), timeout=budget
            )
        except asyncio.TimeoutError:
            raise KlaviyoTransportError(
                f"Metric catalog load exceeded snapshot deadline of {budget}s"
            )

        window = default_window(self.executor.window_days)
        parts = self._plan_parts(credential, catalog, window)

        remaining = max(0.0, budget - (loop.time() - started))
        results = await self._run_parts(parts, remaining)

        values = {name: value for name, (value, _) in results.items()}
        outcomes = {"metric_catalog": SubFetchOutcome(name="metric_catalog")}
        outcomes.update({name: outcome for name, (_, outcome) in results.items()})

        campaigns = values["campaigns"]
        flows = values["flows"]
        snapshot = DashboardSnapshot(
            account=values["account"],
            metric_catalog=catalog,
            campaigns=campaigns,
            lists=values["lists"],
            flows=flows,
            campaign_count=len(campaigns),
            flow_count=len(flows),
            event_counts={
                key: values[f"event_count:{key}"] for key in self.event_counters
            },
            revenue=values["revenue"],
            campaign_performance=values.get("campaign_performance"),
            flow_performance=values.get("flow_performance"),
            metric_details=values.get("metric_details", []),
            generated_at=datetime.now(timezone.utc),
            outcomes=outcomes,
        )

        logger.info(
            "Snapshot built in %.2fs: %s parts, %s degraded %s",
            loop.time() - started,
            len(outcomes),
            len(snapshot.degraded),
            snapshot.degraded,
        )
        return snapshot

    def _plan_parts(
        self,
        credential: str,
        catalog: list[MetricDescriptor],
        window: list[str],
    ) -> dict[str, tuple[Awaitable[Any], Any]]:
        """Part name -> (awaitable, default value)."""
        parts: dict[str, tuple[Awaitable[Any], Any]] = {
            "account": (self._fetch_account(credential), None),
            "campaigns": (self._fetch_campaigns(credential), []),
            "flows": (self.fetcher.fetch_all(credential, "/flows/"), []),
            "lists": (self.fetcher.fetch_all(credential, "/lists/"), []),
        }

        for key, metric_name in self.event_counters.items():
            parts[f"event_count:{key}"] = (
                self._count_events(credential, catalog, metric_name, window),
                0.0,
            )

        parts["revenue"] = (
            self._fetch_revenue(credential, catalog, window),
            RevenueSummary(),
        )

        if self.include_performance:
            parts["campaign_performance"] = (
                collect_campaign_performance(
                    self.executor,
                    self.resolver,
                    credential,
                    catalog,
                    window,
                    self.timezone_name,
                ),
                None,
            )
            parts["flow_performance"] = (
                collect_flow_performance(
                    self.executor,
                    self.resolver,
                    credential,
                    catalog,
                    self.timezone_name,
                ),
                None,
            )

        if self.metric_detail_limit > 0:
            parts["metric_details"] = (
                self._fetch_metric_details(credential, catalog),
                [],
            )

        return parts

    async def _run_parts(
        self,
        parts: dict[str, tuple[Awaitable[Any], Any]],
        timeout: float,
    ) -> dict[str, tuple[Any, SubFetchOutcome]]:
        tasks = {
            name: asyncio.create_task(self._guard(name, awaitable, default))
            for name, (awaitable, default) in parts.items()
        }

        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: dict[str, tuple[Any, SubFetchOutcome]] = {}
        for name, task in tasks.items():
            if task in pending:
                logger.warning("Snapshot part %s abandoned: %s", name, DEADLINE_REASON)
                results[name] = (parts[name][1], _degraded_outcome(name, DEADLINE_REASON))
            else:
                results[name] = task.result()
        return results

    async def _guard(
        self, name: str, awaitable: Awaitable[Any], default: Any
    ) -> tuple[Any, SubFetchOutcome]:
        try:
            value = await awaitable
        except KlaviyoClientError as exc:
            logger.warning("Snapshot part %s degraded: %s", name, exc)
            return default, _degraded_outcome(name, exc)
        except Exception as exc:
            logger.error(
                "Snapshot part %s failed unexpectedly: %s", name, exc, exc_info=True
            )
            return default, _degraded_outcome(name, exc)

        if isinstance(value, Degraded):
            logger.warning("Snapshot part %s degraded: %s", name, value.reason)
            return value.value, _degraded_outcome(name, value.reason)

        return value, SubFetchOutcome(name=name)

    async def _fetch_account(self, credential: str) -> Optional[dict]:
        response = await self.client.request(credential, "/accounts/")
        data = response.get("data")
        if isinstance(data, list):
            return data[0] if data else None
        return data or None

    async def _fetch_campaigns(self, credential: str) -> Union[list[dict], Degraded]:
        """Union of campaigns across channels; Klaviyo requires a channel filter."""
        results = await asyncio.gather(
            *(
                self.fetcher.fetch_all(
                    credential,
                    "/campaigns/",
                    {"filter": f"equals(messages.channel,'{channel}')"},
                )
                for channel in CAMPAIGN_CHANNELS
            ),
            return_exceptions=True,
        )

        campaigns: list[dict] = []
        failures: list[str] = []
        first_error: Optional[BaseException] = None
        for channel, result in zip(CAMPAIGN_CHANNELS, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Campaign fetch for channel %s failed: %s", channel, result)
                failures.append(f"{channel}: {result}")
                first_error = first_error or result
                continue
            campaigns.extend(result)

        if first_error is not None and len(failures) == len(CAMPAIGN_CHANNELS):
            raise first_error
        if failures:
            return Degraded(campaigns, "; ".join(failures))
        return campaigns

    async def _count_events(
        self,
        credential: str,
        catalog: list[MetricDescriptor],
        metric_name: str,
        window: list[str],
    ) -> Union[float, Degraded]:
        metric_id = self.resolver.resolve_id(catalog, metric_name)
        if not metric_id:
            return Degraded(0.0, MetricNotFoundError(metric_name))

        result = await self.executor.count(
            credential, metric_id, filters=window, timezone_name=self.timezone_name
        )
        return result.total

    async def _fetch_revenue(
        self,
        credential: str,
        catalog: list[MetricDescriptor],
        window: list[str],
    ) -> Union[RevenueSummary, Degraded]:
        metric_id = self.resolver.resolve_id(catalog, REVENUE_METRIC)
        if not metric_id:
            return Degraded(RevenueSummary(), MetricNotFoundError(REVENUE_METRIC))

        try:
            result = await self.executor.revenue(
                credential,
                metric_id,
                filters=window,
                group_by=REVENUE_GROUP_BY,
                timezone_name=self.timezone_name,
            )
        except KlaviyoApiError as exc:
            logger.warning(
                "Revenue aggregate failed (%s), falling back to event values", exc
            )
            fallback = await self._revenue_from_events(credential, metric_id)
            return Degraded(fallback, exc)

        return RevenueSummary(total=result.total, by_channel=result.grouped)

    async def _revenue_from_events(self, credential: str, metric_id: str) -> RevenueSummary:
        """Sum $value over the most recent page of events for a metric."""
        response = await self.client.request(
            credential,
            "/events/",
            params={
                "filter": f'equals(metric_id,"{metric_id}")',
                "page[size]": EVENTS_FALLBACK_PAGE_SIZE,
            },
        )
        total = 0.0
        for event in response.get("data") or []:
            properties = (event.get("attributes") or {}).get("properties") or {}
            try:
                total += float(properties.get("$value") or 0)
            except (TypeError, ValueError):
                continue
        return RevenueSummary(total=total, method="events")

    async def _fetch_metric_details(
        self, credential: str, catalog: list[MetricDescriptor]
    ) -> list[dict]:
        """Metric resources for the head of the catalog via a bounded pool.

        Every call still passes through the shared rate limiter; the semaphore
        only caps how many are in flight.
        """
        targets = catalog[: self.metric_detail_limit]
        semaphore = asyncio.Semaphore(self.metric_detail_concurrency)
        failures: list[KlaviyoClientError] = []

        async def fetch_one(metric: MetricDescriptor) -> Optional[dict]:
            async with semaphore:
                try:
                    response = await self.client.request(
                        credential, f"/metrics/{metric.id}/"
                    )
                except KlaviyoClientError as exc:
                    logger.warning("Error fetching metric %s: %s", metric.id, exc)
                    failures.append(exc)
                    return None
            return response.get("data") or None

        results = await asyncio.gather(*(fetch_one(metric) for metric in targets))
        if targets and len(failures) == len(targets):
            raise failures[0]
        return [detail for detail in results if detail]
