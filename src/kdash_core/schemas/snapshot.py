"""Pydantic models for dashboard snapshots."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from .klaviyo import MetricDescriptor


class OutcomeStatus(str, Enum):
    """Result of one snapshot part."""

    OK = "ok"
    DEGRADED = "degraded"


class SubFetchOutcome(BaseModel):
    """Whether a snapshot part was fetched or replaced by its default."""

    name: str = Field(..., description="Part name, e.g. 'flows' or 'event_count:placed_order'")
    status: OutcomeStatus = Field(OutcomeStatus.OK)
    reason: Optional[str] = Field(None, description="Why the part was degraded")
    error_type: Optional[str] = Field(
        None, description="Exception class name behind the degradation"
    )

    @property
    def is_degraded(self) -> bool:
        return self.status == OutcomeStatus.DEGRADED


class RevenueSummary(BaseModel):
    """Trailing-window revenue from the Placed Order metric."""

    total: float = 0.0
    by_channel: dict[str, float] = Field(default_factory=dict)
    method: str = Field(
        "metric-aggregates", description="metric-aggregates|events"
    )


class CampaignPerformance(BaseModel):
    """Campaign engagement totals grouped by $attributed_message."""

    opens: float = 0.0
    clicks: float = 0.0
    delivered: float = 0.0
    bounces: float = 0.0
    revenue: float = 0.0
    click_through_rate: float = Field(0.0, description="clicks / opens * 100")
    grouped: dict[str, dict[str, float]] = Field(default_factory=dict)
    missing_metrics: list[str] = Field(default_factory=list)


class FlowPerformance(BaseModel):
    """Flow send/conversion totals grouped by $attributed_message."""

    sends: float = 0.0
    conversions: float = 0.0
    conversion_rate: float = Field(0.0, description="conversions / sends * 100")
    revenue: float = 0.0
    grouped: dict[str, dict[str, float]] = Field(default_factory=dict)
    missing_metrics: list[str] = Field(default_factory=list)


class DashboardSnapshot(BaseModel):
    """One tenant's dashboard, possibly partially degraded."""

    account: Optional[dict[str, Any]] = None
    metric_catalog: list[MetricDescriptor] = Field(default_factory=list)
    campaigns: list[dict[str, Any]] = Field(default_factory=list)
    lists: list[dict[str, Any]] = Field(default_factory=list)
    flows: list[dict[str, Any]] = Field(default_factory=list)
    campaign_count: int = 0
    flow_count: int = 0
    event_counts: dict[str, float] = Field(default_factory=dict)
    revenue: RevenueSummary = Field(default_factory=RevenueSummary)
    campaign_performance: Optional[CampaignPerformance] = None
    flow_performance: Optional[FlowPerformance] = None
    metric_details: list[dict[str, Any]] = Field(default_factory=list)
    generated_at: datetime
    outcomes: dict[str, SubFetchOutcome] = Field(default_factory=dict)

    @property
    def degraded(self) -> list[str]:
        """Names of parts that fell back to their defaults."""
        return [name for name, outcome in self.outcomes.items() if outcome.is_degraded]
