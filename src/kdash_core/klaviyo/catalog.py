"""Metric catalog loading and name resolution."""
import logging
from typing import Optional

from ..schemas.klaviyo import MatchPolicy, MetricDescriptor
from .pagination import PaginatedFetcher


logger = logging.getLogger(__name__)


class MetricCatalogResolver:
    """Loads a tenant's metrics and maps display names to metric IDs.

    Names are not unique within a catalog. With EXACT_THEN_SUBSTRING, a name
    with no exact match resolves to the first substring match in catalog
    order, which may not be the metric the caller meant.
    """

    METRICS_ENDPOINT = "/metrics/"

    def __init__(
        self,
        fetcher: PaginatedFetcher,
        match_policy: MatchPolicy = MatchPolicy.EXACT_THEN_SUBSTRING,
    ):
        self.fetcher = fetcher
        self.match_policy = match_policy

    async def load_catalog(self, credential: str) -> list[MetricDescriptor]:
        """Fetch every metric for the tenant. Errors propagate."""
        items = await self.fetcher.fetch_all(credential, self.METRICS_ENDPOINT)
        catalog = [MetricDescriptor.from_api(item) for item in items if item.get("id")]
        logger.info("Loaded metric catalog: %s metrics", len(catalog))
        return catalog

    def resolve_id(
        self,
        catalog: list[MetricDescriptor],
        name: str,
        match_policy: Optional[MatchPolicy] = None,
    ) -> Optional[str]:
        """Resolve a metric name to its ID.

        Returns:
            Metric ID, or None when nothing matches (never raises)
        """
        policy = match_policy or self.match_policy
        wanted = name.strip().lower()
        if not wanted:
            return None

        for metric in catalog:
            if metric.name.lower() == wanted:
                return metric.id

        if policy == MatchPolicy.EXACT_THEN_SUBSTRING:
            for metric in catalog:
                if wanted in metric.name.lower():
                    logger.debug(
                        "Metric %r resolved by substring to %r (%s)",
                        name,
                        metric.name,
                        metric.id,
                    )
                    return metric.id

        logger.warning("Metric %r not found in catalog", name)
        return None

    def resolve_any(
        self, catalog: list[MetricDescriptor], names: list[str]
    ) -> Optional[str]:
        """First successful resolution among alternative names."""
        for name in names:
            metric_id = self.resolve_id(catalog, name)
            if metric_id:
                return metric_id
        return None
