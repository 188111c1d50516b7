"""
Multi-source item aggregation.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Tuple, TYPE_CHECKING

from shared.errors import PartialAggregationFailure, UpstreamError, UpstreamRejection
from shared.logging import get_logger

from ..upstream.fetcher import RetryingFetcher
from ..upstream.resolver import RequestResolver, UpstreamHosts
from .collector import PaginatedCollector, ResourceDescriptor
from .field_rules import COLLECTIBLE_POLICY, GAME_PASS_POLICY, UNIVERSE_ID_RULE, worn_asset_id
from .models import AggregateResult, CanonicalItem, ItemMerger, SourcePriority

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_CONCURRENCY = 4


class ItemAggregator:
    """Builds the merged item map for one user.

    1. Page through the user's public games and pick out their universe ids.
    2. Page through every universe's game passes, concurrently, each universe
       collecting into its own list.
    3. Read the user's currently worn asset ids and owned collectibles.
    4. Merge: listed passes and collectibles are detailed records, worn ids
       only become placeholders when nothing better is known.

    Any source that fails is recorded in ``AggregateResult.failures``; the
    aggregate itself never fails because an upstream is unreachable.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        collector: PaginatedCollector,
        resolver: RequestResolver,
        hosts: UpstreamHosts,
        concurrency: int = DEFAULT_CONCURRENCY,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.fetcher = fetcher
        self.collector = collector
        self.resolver = resolver
        self.hosts = hosts
        self.concurrency = max(1, concurrency)
        self.metrics = metrics
        self.logger = get_logger("proxy.aggregator")

    async def aggregate(self, subject_id: str) -> AggregateResult:
        failures: List[PartialAggregationFailure] = []

        passes, collectibles, worn = await asyncio.gather(
            self._collect_game_passes(subject_id, failures),
            self._fetch_collectibles(subject_id, failures),
            self._fetch_worn_asset_ids(subject_id, failures),
        )

        merger = ItemMerger()
        merger.add_all(passes, SourcePriority.DETAILED)
        merger.add_all(collectibles, SourcePriority.DETAILED)
        merger.add_all((CanonicalItem.placeholder(asset_id) for asset_id in worn), SourcePriority.PLACEHOLDER)

        result = AggregateResult(items=merger.items(), failures=failures)
        self.logger.info(
            "Aggregation finished",
            subject_id=subject_id,
            items=len(result.items),
            game_passes=len(passes),
            collectibles=len(collectibles),
            worn=len(worn),
            failures=len(failures),
        )
        return result

    # Descriptors

    def games_descriptor(self, subject_id: str) -> ResourceDescriptor:
        return ResourceDescriptor(
            name=f"games:{subject_id}",
            url=f"{self.hosts.games}v2/users/{subject_id}/games",
            params={"accessFilter": "Public", "sortOrder": "Asc", "limit": "50"},
            cursor_param="cursor",
            record_fields=("data",),
            cursor_fields=("nextPageCursor",),
        )

    def game_passes_descriptor(self, universe_id: str) -> ResourceDescriptor:
        return ResourceDescriptor(
            name=f"game_passes:{universe_id}",
            url=f"{self.hosts.direct}cloud/v2/universes/{universe_id}/game-passes",
            params={"maxPageSize": "100"},
            cursor_param="pageToken",
            record_fields=("gamePasses", "data"),
            cursor_fields=("nextPageToken", "nextPageCursor"),
        )

    # Sources

    async def _collect_game_passes(
        self,
        subject_id: str,
        failures: List[PartialAggregationFailure],
    ) -> List[CanonicalItem]:
        games = await self.collector.collect_all(self.games_descriptor(subject_id))
        if games.failure:
            failures.append(games.failure)

        universe_ids = self.extract_universe_ids(games.records)
        if not universe_ids:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _per_universe(universe_id: str) -> Tuple[List[CanonicalItem], Optional[PartialAggregationFailure]]:
            async with semaphore:
                collected = await self.collector.collect_all(self.game_passes_descriptor(universe_id))
            items = []
            for record in collected.records:
                item = GAME_PASS_POLICY.to_item(record, defaults={"creator_id": subject_id})
                if item is not None:
                    items.append(item)
            return items, collected.failure

        outcomes = await asyncio.gather(*(_per_universe(universe_id) for universe_id in universe_ids))

        passes: List[CanonicalItem] = []
        for items, failure in outcomes:
            passes.extend(items)
            if failure:
                failures.append(failure)
        return passes

    async def _fetch_collectibles(
        self,
        subject_id: str,
        failures: List[PartialAggregationFailure],
    ) -> List[CanonicalItem]:
        payload = await self._fetch_json(
            f"collectibles:{subject_id}",
            f"{self.hosts.inventory}v1/users/{subject_id}/assets/collectibles",
            {"limit": "100", "sortOrder": "Asc"},
            failures,
        )
        records = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(records, list):
            return []

        items = []
        for record in records:
            item = COLLECTIBLE_POLICY.to_item(record)
            if item is not None:
                items.append(item)
        return items

    async def _fetch_worn_asset_ids(
        self,
        subject_id: str,
        failures: List[PartialAggregationFailure],
    ) -> List[str]:
        payload = await self._fetch_json(
            f"worn:{subject_id}",
            f"{self.hosts.avatar}v1/users/{subject_id}/currently-wearing",
            None,
            failures,
        )
        if not isinstance(payload, dict):
            return []
        entries = payload.get("assetIds")
        if not isinstance(entries, list):
            entries = payload.get("data")
        if not isinstance(entries, list):
            return []

        ids = []
        for entry in entries:
            asset_id = worn_asset_id(entry)
            if asset_id:
                ids.append(asset_id)
        return ids

    async def _fetch_json(
        self,
        source: str,
        url: str,
        params: Optional[dict],
        failures: List[PartialAggregationFailure],
    ) -> Any:
        """Single non-paginated read; failures are recorded, not raised."""
        request = self.resolver.build(url, params)
        try:
            response = await self.fetcher.fetch(request)
        except UpstreamError as exc:
            failures.append(self._report(source, "upstream_error", exc))
            return None

        if response.is_client_error:
            rejection = UpstreamRejection(response.status_code, request.resolved_url)
            failures.append(self._report(source, "upstream_rejection", rejection))
            return None

        try:
            return response.json()
        except ValueError as exc:
            failures.append(self._report(source, "invalid_payload", exc))
            return None

    def _report(self, source: str, reason: str, cause: BaseException) -> PartialAggregationFailure:
        failure = PartialAggregationFailure(source, reason, cause=cause)
        self.collector.report(failure)
        return failure

    @staticmethod
    def extract_universe_ids(records: List[Any]) -> List[str]:
        """Distinct universe ids in first-seen order; records without one are skipped."""
        seen = set()
        universe_ids = []
        for record in records:
            if not isinstance(record, dict):
                continue
            universe_id = UNIVERSE_ID_RULE.apply(record)
            if universe_id and universe_id not in seen:
                seen.add(universe_id)
                universe_ids.append(universe_id)
        return universe_ids
