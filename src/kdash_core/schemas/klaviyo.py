"""Pydantic models for Klaviyo metrics and aggregate queries."""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# Opening of a predicate over the event timestamp, e.g. less-than(datetime,...).
DATETIME_PREDICATE = "(datetime,"


class Measurement(str, Enum):
    """Aggregate measurement types accepted by /metric-aggregates/."""

    COUNT = "count"
    UNIQUE = "unique"
    SUM_VALUE = "sum_value"


class MatchPolicy(str, Enum):
    """How metric names are resolved against the catalog."""

    EXACT_THEN_SUBSTRING = "exact_then_substring"
    EXACT_ONLY = "exact_only"


class MetricDescriptor(BaseModel):
    """One entry of a tenant's metric catalog."""

    id: str = Field(..., description="Klaviyo metric ID (the only stable key)")
    name: str = Field("", description="Display name, not guaranteed unique")
    integration: Optional[str] = Field(
        None, description="Integration name (e.g., 'Shopify'), when provided"
    )

    @classmethod
    def from_api(cls, item: dict) -> "MetricDescriptor":
        """Build from a JSON:API metric resource."""
        attributes = item.get("attributes") or {}
        name = attributes.get("name") or item.get("name") or ""
        integration = attributes.get("integration")
        if isinstance(integration, dict):
            integration = integration.get("name")
        return cls(id=str(item["id"]), name=name, integration=integration)


class AggregateQuerySpec(BaseModel):
    """Grouped numeric aggregate query against one metric."""

    metric_id: str = Field(..., description="Metric ID to aggregate")
    measurements: list[Measurement] = Field(
        default_factory=lambda: [Measurement.COUNT],
        description="Measurements to request, in extraction priority order",
    )
    filters: list[str] = Field(
        default_factory=list, description="Filter predicates, e.g. greater-or-equal(datetime,...)"
    )
    group_by: Optional[str] = Field(
        None, description="Dimension key, e.g. $attributed_message"
    )
    timezone: str = Field("UTC", description="Timezone for bucket boundaries")
    interval: Optional[str] = Field(
        None, description="Bucket width: hour|day|week|month"
    )

    @field_validator("measurements")
    @classmethod
    def _unique_measurements(cls, value: list[Measurement]) -> list[Measurement]:
        if not value:
            raise ValueError("at least one measurement is required")
        deduped: list[Measurement] = []
        for measurement in value:
            if measurement not in deduped:
                deduped.append(measurement)
        return deduped

    @property
    def is_revenue(self) -> bool:
        return Measurement.SUM_VALUE in self.measurements

    @property
    def has_date_range(self) -> bool:
        return any(DATETIME_PREDICATE in predicate for predicate in self.filters)


class AggregateResult(BaseModel):
    """Parsed /metric-aggregates/ response."""

    total: float = Field(0.0, description="Sum of the extracted measurement")
    grouped: dict[str, float] = Field(
        default_factory=dict, description="Per-dimension values when grouped"
    )
