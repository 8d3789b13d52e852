"""Persisted per-member queue state: buffer, seen ledger and discover cursor."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import QueueStateRecord
from ..models import GroupPolicy, QueueItem
from ..utils import MediaType, dump_json, load_json
from .ratings import RatingStore

logger = logging.getLogger(__name__)

MEDIA_TYPES: tuple[MediaType, ...] = ("movie", "tv")


def upcoming_key(group_id: str, member_id: str) -> str:
    return f"chooseamovie:endless:upcoming:{group_id}:{member_id}"


def seen_key(group_id: str, member_id: str) -> str:
    return f"chooseamovie:endless:seenTitleIds:{group_id}:{member_id}"


def legacy_seen_key(group_id: str, member_id: str) -> str:
    return f"chooseamovie:endless:seen:{group_id}:{member_id}"


def discover_state_key(group_id: str, member_id: str) -> str:
    return f"chooseamovie:endless:discoverState:{group_id}:{member_id}"


def ratings_key(group_id: str, member_id: str) -> str:
    return f"chooseamovie:ratings:{group_id}:{member_id}"


class StateStore(Protocol):
    """Key/value storage holding JSON text."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStateStore:
    """In-process state store, mostly useful for tests and single-user hosts."""

    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SqlStateStore:
    """State store persisting JSON text in the ``queue_state`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(QueueStateRecord.value).where(QueueStateRecord.key == key)
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str) -> None:
        async with self._session_factory() as session:
            record = await session.get(QueueStateRecord, key)
            if record is None:
                session.add(QueueStateRecord(key=key, value=value))
            else:
                record.value = value
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(QueueStateRecord).where(QueueStateRecord.key == key))
            await session.commit()


class JsonState:
    """Reads and writes JSON documents, treating corrupt data as missing."""

    def __init__(self, store: StateStore, *, report_corruption: bool = False):
        self._store = store
        self._report_corruption = report_corruption

    async def read(self, key: str) -> Any:
        raw = await self._store.get(key)
        value = load_json(raw)
        if value is None and raw is not None and raw.strip() and raw.strip() != "null":
            self.corrupt(key, "unparseable JSON")
        return value

    async def write(self, key: str, value: Any) -> None:
        await self._store.set(key, dump_json(value))

    async def delete(self, key: str) -> None:
        await self._store.delete(key)

    def corrupt(self, key: str, reason: str) -> None:
        if self._report_corruption:
            logger.warning("Ignoring corrupt queue state under %s: %s", key, reason)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, str) and entry]


class DedupLedger:
    """Titles a member has already been shown or has rated."""

    def __init__(
        self,
        state: JsonState,
        *,
        max_seen: int = 300,
        ratings: RatingStore | None = None,
    ):
        self._state = state
        self._max_seen = max_seen
        self._ratings = ratings

    async def load_seen(self, group_id: str, member_id: str) -> list[str]:
        """Return seen ids oldest first, upgrading the legacy single-array key."""

        key = seen_key(group_id, member_id)
        current = await self._read_list(key)
        if current:
            return current

        legacy_key = legacy_seen_key(group_id, member_id)
        legacy = await self._read_list(legacy_key)
        if not legacy:
            return current
        migrated = self._dedupe(legacy)[-self._max_seen :]
        await self._state.write(key, migrated)
        await self._state.delete(legacy_key)
        logger.info(
            "Migrated %d legacy seen ids for group %s member %s",
            len(migrated),
            group_id,
            member_id,
        )
        return migrated

    async def record_seen(self, group_id: str, member_id: str, title_id: str) -> None:
        seen = await self.load_seen(group_id, member_id)
        if title_id in seen:
            return
        seen.append(title_id)
        await self._state.write(seen_key(group_id, member_id), seen[-self._max_seen :])

    async def load_local_rated(self, group_id: str, member_id: str) -> set[str]:
        """Return ids present in the member's local rating record."""

        key = ratings_key(group_id, member_id)
        payload = await self._state.read(key)
        if payload is None:
            return set()
        if not isinstance(payload, dict):
            self._state.corrupt(key, "expected an object of ratings")
            return set()
        return {title_id for title_id in payload if isinstance(title_id, str) and title_id}

    async def record_local_rating(
        self, group_id: str, member_id: str, title_id: str, value: int
    ) -> None:
        key = ratings_key(group_id, member_id)
        payload = await self._state.read(key)
        ratings = dict(payload) if isinstance(payload, dict) else {}
        ratings[title_id] = value
        await self._state.write(key, ratings)

    async def load_remote_rated(self, group_id: str, member_id: str) -> set[str]:
        if self._ratings is None:
            return set()
        return await self._ratings.list_rated_title_ids(group_id, member_id)

    async def load_rated(self, group_id: str, member_id: str) -> set[str]:
        """Return locally rated ids unioned with the shared rating store."""

        local = await self.load_local_rated(group_id, member_id)
        return local | await self.load_remote_rated(group_id, member_id)

    async def _read_list(self, key: str) -> list[str]:
        payload = await self._state.read(key)
        if payload is None:
            return []
        if not isinstance(payload, list):
            self._state.corrupt(key, "expected a list of title ids")
            return []
        return self._dedupe(_string_list(payload))

    @staticmethod
    def _dedupe(values: list[str]) -> list[str]:
        return list(dict.fromkeys(values))


@dataclass
class DiscoveryCursor:
    """Discover pagination progress under one policy fingerprint."""

    fingerprint: str
    next_page_by_type: dict[str, int] = field(
        default_factory=lambda: {media_type: 1 for media_type in MEDIA_TYPES}
    )
    exhausted_by_type: dict[str, bool] = field(
        default_factory=lambda: {media_type: False for media_type in MEDIA_TYPES}
    )
    kept_total: int = 0
    persisted: bool = field(default=False, compare=False)

    def next_page(self, media_type: MediaType) -> int:
        return self.next_page_by_type[media_type]

    def is_exhausted(self, media_type: MediaType) -> bool:
        return self.exhausted_by_type[media_type]

    def advance(self, media_type: MediaType, *, no_more: bool) -> None:
        """Move past the page just fetched; exhaustion is never undone."""

        self.next_page_by_type[media_type] += 1
        if no_more:
            self.exhausted_by_type[media_type] = True

    def mark_exhausted(self, media_type: MediaType) -> None:
        self.exhausted_by_type[media_type] = True

    def to_payload(self) -> dict[str, Any]:
        return {
            "settingsKey": self.fingerprint,
            "nextPageByType": dict(self.next_page_by_type),
            "exhaustedByType": dict(self.exhausted_by_type),
            "keptTotal": self.kept_total,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any], fingerprint: str) -> "DiscoveryCursor":
        """Rebuild a cursor field by field, repairing malformed values."""

        cursor = cls(fingerprint=fingerprint, persisted=True)
        pages = payload.get("nextPageByType")
        exhausted = payload.get("exhaustedByType")
        for media_type in MEDIA_TYPES:
            page = pages.get(media_type) if isinstance(pages, dict) else None
            if (
                isinstance(page, (int, float))
                and not isinstance(page, bool)
                and math.isfinite(page)
                and page >= 1
            ):
                cursor.next_page_by_type[media_type] = int(page)
            if isinstance(exhausted, dict):
                cursor.exhausted_by_type[media_type] = bool(exhausted.get(media_type))
        kept = payload.get("keptTotal")
        if isinstance(kept, int) and not isinstance(kept, bool) and kept > 0:
            cursor.kept_total = kept
        return cursor


class CursorStore:
    """Loads and saves the discover cursor for a member."""

    def __init__(self, state: JsonState):
        self._state = state

    async def load(self, group_id: str, member_id: str, policy: GroupPolicy) -> DiscoveryCursor:
        """Return the stored cursor, or a fresh one if the policy has changed."""

        fingerprint = policy.fingerprint()
        key = discover_state_key(group_id, member_id)
        payload = await self._state.read(key)
        if payload is None:
            return DiscoveryCursor(fingerprint=fingerprint)
        if not isinstance(payload, dict):
            self._state.corrupt(key, "expected a cursor object")
            return DiscoveryCursor(fingerprint=fingerprint)
        if payload.get("settingsKey") != fingerprint:
            logger.debug(
                "Discover policy changed for group %s member %s; resetting cursor",
                group_id,
                member_id,
            )
            return DiscoveryCursor(fingerprint=fingerprint)
        return DiscoveryCursor.from_payload(payload, fingerprint)

    async def save(self, group_id: str, member_id: str, cursor: DiscoveryCursor) -> None:
        await self._state.write(discover_state_key(group_id, member_id), cursor.to_payload())
        cursor.persisted = True


class QueueBufferStore:
    """Persists the ordered list of upcoming queue items."""

    def __init__(self, state: JsonState):
        self._state = state

    async def load(self, group_id: str, member_id: str) -> list[QueueItem]:
        """Return stored items, dropping malformed records and duplicate ids."""

        key = upcoming_key(group_id, member_id)
        payload = await self._state.read(key)
        if payload is None:
            return []
        if not isinstance(payload, list):
            self._state.corrupt(key, "expected a list of queue items")
            return []

        items: list[QueueItem] = []
        known: set[str] = set()
        dropped = 0
        for record in payload:
            try:
                item = QueueItem.model_validate(record)
            except ValidationError:
                dropped += 1
                continue
            if item.title_id in known:
                continue
            known.add(item.title_id)
            items.append(item)
        if dropped:
            self._state.corrupt(key, f"dropped {dropped} malformed queue records")
        return items

    async def save(self, group_id: str, member_id: str, items: list[QueueItem]) -> None:
        await self._state.write(
            upcoming_key(group_id, member_id),
            [item.model_dump(mode="json") for item in items],
        )
