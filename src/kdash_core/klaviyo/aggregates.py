"""Query Metric Aggregates executor.

Builds POST /metric-aggregates/ requests and reduces the grouped response to
an AggregateResult. Interval queries return one value per bucket; those arrays
are summed so callers always see scalars.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from ..schemas.klaviyo import AggregateQuerySpec, AggregateResult, Measurement
from .client import KlaviyoClient


logger = logging.getLogger(__name__)

AGGREGATES_ENDPOINT = "/metric-aggregates/"
DEFAULT_WINDOW_DAYS = 30

# Probed in order when a dimension arrives as a mapping instead of a value.
DIMENSION_PRIORITY = ("$attributed_message", "$message", "$flow", "$campaign")
UNKNOWN_DIMENSION = "unknown"


def _format_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime("%Y-%m-%dT%H:%M:%S")


def date_range_filters(start: datetime, end: datetime) -> list[str]:
    """Half-open [start, end) datetime predicates."""
    return [
        f"greater-or-equal(datetime,{_format_datetime(start)})",
        f"less-than(datetime,{_format_datetime(end)})",
    ]


def default_window(
    days: int = DEFAULT_WINDOW_DAYS, now: Optional[datetime] = None
) -> list[str]:
    """Trailing window ending now (UTC)."""
    end = now or datetime.now(timezone.utc)
    return date_range_filters(end - timedelta(days=days), end)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return number


def _measurement_value(raw: Any) -> float:
    if isinstance(raw, list):
        return sum(_to_number(item) for item in raw)
    return _to_number(raw)


def _dimension_key(dimensions: Any, group_by: Optional[str]) -> str:
    if not isinstance(dimensions, list) or not dimensions:
        return UNKNOWN_DIMENSION

    first = dimensions[0]
    if isinstance(first, dict):
        keys = ([group_by] if group_by else []) + list(DIMENSION_PRIORITY)
        for key in keys:
            if first.get(key):
                return str(first[key])
        return UNKNOWN_DIMENSION

    if first is None or first == "":
        return UNKNOWN_DIMENSION
    return str(first)


class AggregateQueryExecutor:
    """Runs aggregate queries; failures propagate to the caller."""

    def __init__(self, client: KlaviyoClient, window_days: int = DEFAULT_WINDOW_DAYS):
        self.client = client
        self.window_days = window_days

    def build_body(self, spec: AggregateQuerySpec) -> dict:
        """Request body for a spec, adding the default window to revenue queries."""
        filters = list(spec.filters)
        if spec.is_revenue and not spec.has_date_range:
            filters.extend(default_window(self.window_days))

        attributes: dict[str, Any] = {
            "measurements": [m.value for m in spec.measurements],
            "metric_id": spec.metric_id,
            "timezone": spec.timezone,
        }
        if filters:
            attributes["filter"] = filters
        if spec.interval:
            attributes["interval"] = spec.interval
        if spec.group_by:
            attributes["by"] = [spec.group_by]

        return {"data": {"type": "metric-aggregate", "attributes": attributes}}

    def parse(self, response: dict, spec: AggregateQuerySpec) -> AggregateResult:
        """Reduce a /metric-aggregates/ response to total + grouped."""
        rows = (
            ((response or {}).get("data") or {}).get("attributes") or {}
        ).get("data")
        if not isinstance(rows, list):
            logger.warning(
                "Unexpected metric-aggregates response for metric %s", spec.metric_id
            )
            return AggregateResult()

        total = 0.0
        grouped: dict[str, float] = {}

        for row in rows:
            row = row or {}
            measurements = row.get("measurements") or {}
            raw = None
            for measurement in spec.measurements:
                if measurement.value in measurements:
                    raw = measurements[measurement.value]
                    break

            value = _measurement_value(raw)
            total += value

            if spec.group_by:
                key = _dimension_key(row.get("dimensions"), spec.group_by)
                grouped[key] = grouped.get(key, 0.0) + value

        return AggregateResult(total=total, grouped=grouped)

    async def run(self, credential: str, spec: AggregateQuerySpec) -> AggregateResult:
        """Execute one aggregate query."""
        body = self.build_body(spec)
        response = await self.client.request(
            credential, AGGREGATES_ENDPOINT, "POST", body=body
        )
        result = self.parse(response, spec)
        logger.debug(
            "Aggregate %s on metric %s: total=%s groups=%s",
            ",".join(m.value for m in spec.measurements),
            spec.metric_id,
            result.total,
            len(result.grouped),
        )
        return result

    async def count(
        self,
        credential: str,
        metric_id: str,
        filters: Optional[list[str]] = None,
        group_by: Optional[str] = None,
        timezone_name: str = "UTC",
        unique: bool = False,
    ) -> AggregateResult:
        measurement = Measurement.UNIQUE if unique else Measurement.COUNT
        return await self.run(
            credential,
            AggregateQuerySpec(
                metric_id=metric_id,
                measurements=[measurement],
                filters=filters or [],
                group_by=group_by,
                timezone=timezone_name,
            ),
        )

    async def revenue(
        self,
        credential: str,
        metric_id: str,
        filters: Optional[list[str]] = None,
        group_by: Optional[str] = None,
        timezone_name: str = "UTC",
        interval: Optional[str] = None,
    ) -> AggregateResult:
        return await self.run(
            credential,
            AggregateQuerySpec(
                metric_id=metric_id,
                measurements=[Measurement.SUM_VALUE],
                filters=filters or [],
                group_by=group_by,
                timezone=timezone_name,
                interval=interval,
            ),
        )
