"""Environment-driven settings for the dashboard service."""
import logging
import os
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo

from .schemas.klaviyo import MatchPolicy


logger = logging.getLogger(__name__)


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _resolve_timezone(tz_name: str) -> str:
    try:
        ZoneInfo(tz_name)
        return tz_name
    except Exception:
        logger.warning("Invalid SNAPSHOT_TIMEZONE '%s', using UTC", tz_name)
        return "UTC"


def _resolve_match_policy(raw: str) -> MatchPolicy:
    try:
        return MatchPolicy(raw.strip().lower())
    except ValueError:
        logger.warning(
            "Invalid METRIC_MATCH_POLICY '%s', using %s",
            raw,
            MatchPolicy.EXACT_THEN_SUBSTRING.value,
        )
        return MatchPolicy.EXACT_THEN_SUBSTRING


@dataclass(frozen=True)
class DashboardSettings:
    """Settings for the Klaviyo client and snapshot builds."""

    base_url: str = "https://a.klaviyo.com/api"
    api_revision: str = "2024-10-15"
    min_request_interval: float = 0.25
    request_timeout: float = 10.0
    max_attempts: int = 3
    snapshot_deadline: float = 60.0
    timezone: str = "UTC"
    match_policy: MatchPolicy = MatchPolicy.EXACT_THEN_SUBSTRING
    metric_detail_limit: int = 20
    metric_detail_concurrency: int = 5
    include_performance: bool = True
    redis_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "DashboardSettings":
        """Read settings from environment variables."""
        settings = cls(
            base_url=os.getenv("KLAVIYO_BASE_URL", "https://a.klaviyo.com/api"),
            api_revision=os.getenv("KLAVIYO_API_REVISION", "2024-10-15"),
            min_request_interval=_env_float("KLAVIYO_MIN_REQUEST_INTERVAL_MS", "250")
            / 1000.0,
            request_timeout=_env_float("KLAVIYO_REQUEST_TIMEOUT_S", "10"),
            max_attempts=_env_int("KLAVIYO_MAX_ATTEMPTS", "3"),
            snapshot_deadline=_env_float("SNAPSHOT_DEADLINE_S", "60"),
            timezone=_resolve_timezone(os.getenv("SNAPSHOT_TIMEZONE", "UTC")),
            match_policy=_resolve_match_policy(
                os.getenv("METRIC_MATCH_POLICY", MatchPolicy.EXACT_THEN_SUBSTRING.value)
            ),
            metric_detail_limit=_env_int("METRIC_DETAIL_LIMIT", "20"),
            metric_detail_concurrency=max(
                1, _env_int("METRIC_DETAIL_CONCURRENCY", "5")
            ),
            include_performance=_env_bool("SNAPSHOT_INCLUDE_PERFORMANCE", "true"),
            redis_url=os.getenv("REDIS_URL") or None,
        )
        logger.debug("Loaded dashboard settings: %s", settings)
        return settings
