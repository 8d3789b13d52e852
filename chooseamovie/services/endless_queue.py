"""Endless discovery queue: reconciliation, refill and consumption."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from ..certifications import is_allowed, normalize_certification
from ..config import Settings
from ..models import (
    DiscoverFilters,
    DiscoverPage,
    DiscoverResult,
    GroupPolicy,
    QueueItem,
    QueueStatus,
)
from ..utils import MediaType
from .queue_state import (
    CursorStore,
    DedupLedger,
    DiscoveryCursor,
    JsonState,
    QueueBufferStore,
    StateStore,
)
from .ratings import MAX_RATING, MIN_RATING, RatingStore
from .tmdb import MAX_DISCOVER_PAGE, TransientUpstreamError

logger = logging.getLogger(__name__)


class MetadataProvider(Protocol):
    """Paginated discover search plus per-title certification lookups."""

    async def discover(
        self, media_type: MediaType, page: int, filters: DiscoverFilters
    ) -> DiscoverPage: ...

    async def certification(self, media_type: MediaType, provider_id: int) -> str | None: ...


class CertificationCache:
    """Memoises normalised certifications for the lifetime of one service."""

    def __init__(self, provider: MetadataProvider):
        self._provider = provider
        self._values: dict[tuple[MediaType, int], str | None] = {}

    def __len__(self) -> int:
        return len(self._values)

    async def lookup_many(
        self, keys: Iterable[tuple[MediaType, int]]
    ) -> dict[tuple[MediaType, int], str | None]:
        """Resolve every key, fetching the unknown ones concurrently."""

        wanted = list(dict.fromkeys(keys))
        missing = [key for key in wanted if key not in self._values]
        if missing:
            fetched = await asyncio.gather(
                *(self._fetch(media_type, provider_id) for media_type, provider_id in missing)
            )
            for key, value in zip(missing, fetched):
                self._values[key] = value
        return {key: self._values[key] for key in wanted}

    async def _fetch(self, media_type: MediaType, provider_id: int) -> str | None:
        try:
            raw = await self._provider.certification(media_type, provider_id)
        except TransientUpstreamError as exc:
            logger.warning(
                "Certification lookup failed for %s %s: %s", media_type, provider_id, exc
            )
            return None
        return normalize_certification(media_type, raw)


@dataclass(slots=True)
class RefillSummary:
    """Counters describing a single refill pass."""

    pages_fetched: int = 0
    results_returned: int = 0
    results_kept: int = 0
    failed: bool = False


class EndlessQueueService:
    """Keeps each member's queue of titles to rate topped up."""

    def __init__(
        self,
        settings: Settings,
        provider: MetadataProvider,
        store: StateStore,
        ratings: RatingStore | None = None,
    ):
        self._settings = settings
        self._provider = provider
        self._ratings = ratings
        state = JsonState(store, report_corruption=settings.environment == "development")
        self._ledger = DedupLedger(state, max_seen=settings.queue_max_seen, ratings=ratings)
        self._cursors = CursorStore(state)
        self._buffers = QueueBufferStore(state)
        self._certifications = CertificationCache(provider)
        self._inflight: dict[tuple[str, str], asyncio.Task[list[QueueItem]]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._empty_hints: set[str] = set()
        self.low_watermark = settings.queue_low_watermark
        self.target_size = settings.queue_target_size
        self.max_pages_per_refill = settings.queue_max_pages_per_refill

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    @property
    def certifications(self) -> CertificationCache:
        return self._certifications

    async def ensure_queue(
        self, group_id: str, member_id: str, policy: GroupPolicy
    ) -> list[QueueItem]:
        """Return the member's queue, refilling it first when it runs low.

        Overlapping calls for the same member share one refill.
        """

        key = (group_id, member_id)
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._ensure_queue(group_id, member_id, policy))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug(
                "Queue refill already running for group %s member %s", group_id, member_id
            )
        return list(await asyncio.shield(task))

    async def peek_queue(self, group_id: str, member_id: str) -> list[QueueItem]:
        """Return the stored queue without seen or locally rated titles."""

        async with self._lock_for(group_id, member_id):
            queue = await self._buffers.load(group_id, member_id)
            return await self._save_reconciled(group_id, member_id, queue)

    async def consume(self, group_id: str, member_id: str, title_id: str) -> None:
        """Drop a title from the queue and remember it was shown."""

        async with self._lock_for(group_id, member_id):
            await self._ledger.record_seen(group_id, member_id, title_id)
            queue = [
                item
                for item in await self._buffers.load(group_id, member_id)
                if item.title_id != title_id
            ]
            await self._buffers.save(group_id, member_id, queue)

    async def record_rating(
        self, group_id: str, member_id: str, title_id: str, value: int
    ) -> None:
        """Store a rating (0 means skipped) and consume the title."""

        if not title_id:
            raise ValueError("title_id is required")
        if not MIN_RATING <= value <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        await self._ledger.record_local_rating(group_id, member_id, title_id, value)
        if self._ratings is not None:
            await self._ratings.upsert_rating(group_id, member_id, title_id, value)
        await self.consume(group_id, member_id, title_id)

    async def queue_status(
        self, group_id: str, member_id: str, policy: GroupPolicy
    ) -> QueueStatus:
        """Classify the queue so callers can tell "caught up" from "no matches"."""

        queue = await self.peek_queue(group_id, member_id)
        cursor = await self._cursors.load(group_id, member_id, policy)
        return self._status_for(queue, cursor, policy)

    def _status_for(
        self, queue: list[QueueItem], cursor: DiscoveryCursor, policy: GroupPolicy
    ) -> QueueStatus:
        exhausted = {
            media_type: cursor.is_exhausted(media_type) for media_type in policy.media_types
        }
        if len(queue) >= self.low_watermark:
            state = "ready"
        elif not all(exhausted.values()):
            state = "low"
        elif queue or cursor.kept_total > 0:
            state = "caught_up"
        else:
            state = "no_matches"
        return QueueStatus(state=state, size=len(queue), exhausted_by_type=exhausted)

    def _lock_for(self, group_id: str, member_id: str) -> asyncio.Lock:
        return self._locks.setdefault((group_id, member_id), asyncio.Lock())

    async def _save_reconciled(
        self,
        group_id: str,
        member_id: str,
        queue: list[QueueItem],
        excluded: set[str] | None = None,
    ) -> list[QueueItem]:
        """Re-read the ledger, drop known titles and persist the queue.

        Callers must hold the member lock.
        """

        seen = set(await self._ledger.load_seen(group_id, member_id))
        rated = await self._ledger.load_local_rated(group_id, member_id)
        queue = self._reconcile(queue, seen | rated | (excluded or set()))
        await self._buffers.save(group_id, member_id, queue)
        return queue

    def _forget(self, key: tuple[str, str], task: asyncio.Task[list[QueueItem]]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _ensure_queue(
        self, group_id: str, member_id: str, policy: GroupPolicy
    ) -> list[QueueItem]:
        cursor = await self._cursors.load(group_id, member_id, policy)
        if not cursor.persisted:
            await self._cursors.save(group_id, member_id, cursor)

        seen = set(await self._ledger.load_seen(group_id, member_id))
        rated = await self._ledger.load_local_rated(group_id, member_id)
        queue = self._reconcile(await self._buffers.load(group_id, member_id), seen | rated)
        if len(queue) >= self.low_watermark:
            async with self._lock_for(group_id, member_id):
                return await self._save_reconciled(group_id, member_id, queue)

        # Only consult the shared store once the local view is already short.
        remote_rated = await self._ledger.load_remote_rated(group_id, member_id)
        rated |= remote_rated
        queue = self._reconcile(queue, remote_rated)
        if len(queue) >= self.low_watermark:
            async with self._lock_for(group_id, member_id):
                return await self._save_reconciled(group_id, member_id, queue, remote_rated)

        queue = await self._refill(group_id, member_id, policy, cursor, queue, seen | rated)
        await self._cursors.save(group_id, member_id, cursor)
        async with self._lock_for(group_id, member_id):
            return await self._save_reconciled(group_id, member_id, queue, remote_rated)

    async def _refill(
        self,
        group_id: str,
        member_id: str,
        policy: GroupPolicy,
        cursor: DiscoveryCursor,
        seed: list[QueueItem],
        excluded: set[str],
    ) -> list[QueueItem]:
        queue = list(seed)
        known = {item.title_id for item in queue} | excluded
        filters = policy.discover_filters()
        summary = RefillSummary()
        round_robin = 0

        while len(queue) < self.target_size and summary.pages_fetched < self.max_pages_per_refill:
            active = [
                media_type
                for media_type in policy.media_types
                if not cursor.is_exhausted(media_type)
            ]
            if not active:
                break
            media_type = active[round_robin % len(active)]
            round_robin += 1
            page = cursor.next_page(media_type)
            if page > MAX_DISCOVER_PAGE:
                cursor.mark_exhausted(media_type)
                continue

            summary.pages_fetched += 1
            try:
                result = await self._provider.discover(media_type, page, filters)
            except TransientUpstreamError as exc:
                logger.warning(
                    "Stopping refill for group %s member %s after discover failure: %s",
                    group_id,
                    member_id,
                    exc,
                )
                summary.failed = True
                break

            summary.results_returned += len(result.results)
            cursor.advance(media_type, no_more=result.no_more)

            for item in await self._filter_rows(result.results, policy, known):
                if len(queue) >= self.target_size:
                    break
                if item.title_id in known:
                    continue
                queue.append(item)
                known.add(item.title_id)
                summary.results_kept += 1
                cursor.kept_total += 1

        self._log_summary(group_id, member_id, policy, cursor, queue, summary)
        return queue

    async def _filter_rows(
        self, rows: list[DiscoverResult], policy: GroupPolicy, known: set[str]
    ) -> list[QueueItem]:
        """Apply vote, release, data-quality and certification rules to a page."""

        min_vote_count = policy.effective_min_vote_count
        candidates: dict[str, QueueItem] = {}
        for row in rows:
            if (
                min_vote_count is not None
                and row.vote_count is not None
                and row.vote_count < min_vote_count
            ):
                continue
            if not self._within_release_window(row, policy):
                continue
            item = QueueItem.from_discover_result(row)
            if item is None:
                continue
            if item.title_id in known or item.title_id in candidates:
                continue
            candidates[item.title_id] = item

        if not candidates:
            return []
        certifications = await self._certifications.lookup_many(
            (item.type, item.id) for item in candidates.values()
        )
        return [
            item
            for item in candidates.values()
            if is_allowed(policy, item.type, certifications[(item.type, item.id)])
        ]

    @staticmethod
    def _within_release_window(row: DiscoverResult, policy: GroupPolicy) -> bool:
        if policy.release_from is None and policy.release_to is None:
            return True
        if not row.release_date:
            return False
        released = row.release_date[:10]
        if policy.release_from and released < policy.release_from.isoformat():
            return False
        if policy.release_to and released > policy.release_to.isoformat():
            return False
        return True

    @staticmethod
    def _reconcile(queue: list[QueueItem], excluded: set[str]) -> list[QueueItem]:
        return [item for item in queue if item.title_id not in excluded]

    def _log_summary(
        self,
        group_id: str,
        member_id: str,
        policy: GroupPolicy,
        cursor: DiscoveryCursor,
        queue: list[QueueItem],
        summary: RefillSummary,
    ) -> None:
        logger.debug(
            "Refill for group %s member %s: pages=%d returned=%d kept=%d size=%d "
            "failed=%s exhausted=%s",
            group_id,
            member_id,
            summary.pages_fetched,
            summary.results_returned,
            summary.results_kept,
            len(queue),
            summary.failed,
            cursor.exhausted_by_type,
        )
        if summary.pages_fetched == 0 or summary.results_returned > 0 or summary.failed:
            return
        hint_key = f"{cursor.fingerprint}:{sorted(cursor.exhausted_by_type.items())}"
        if hint_key in self._empty_hints:
            return
        self._empty_hints.add(hint_key)
        logger.debug(
            "Discover returned no results for media=%s minVoteCount=%s release=%s..%s "
            "excludedGenres=%d; try lowering the vote floor or widening the release range",
            policy.media_type,
            policy.effective_min_vote_count,
            policy.release_from,
            policy.release_to,
            len(policy.excluded_genre_ids),
        )
