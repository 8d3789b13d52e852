"""Tests for the persisted buffer, seen ledger and discover cursor."""

from __future__ import annotations

import asyncio
import json
import logging

from chooseamovie.models import GroupPolicy, QueueItem
from chooseamovie.services.queue_state import (
    CursorStore,
    DedupLedger,
    DiscoveryCursor,
    JsonState,
    MemoryStateStore,
    QueueBufferStore,
    discover_state_key,
    legacy_seen_key,
    ratings_key,
    seen_key,
    upcoming_key,
)


def _item(provider_id: int, media_type: str = "movie") -> dict[str, object]:
    return {
        "title_id": f"tmdb:{media_type}:{provider_id}",
        "type": media_type,
        "id": provider_id,
        "title": f"Title {provider_id}",
        "year": "2001",
        "poster_path": f"/{provider_id}.jpg",
        "overview": "",
        "tmdb_payload_keys": ["id"],
    }


def test_record_seen_appends_once_and_caps_history() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        ledger = DedupLedger(JsonState(store), max_seen=3)

        for title_id in ["a", "b", "a", "c", "d"]:
            await ledger.record_seen("g1", "m1", title_id)

        assert await ledger.load_seen("g1", "m1") == ["b", "c", "d"]

    asyncio.run(runner())


def test_legacy_seen_is_migrated_once() -> None:
    async def runner() -> None:
        store = MemoryStateStore(
            {legacy_seen_key("g1", "m1"): json.dumps(["tmdb:movie:1", "tmdb:movie:2"])}
        )
        ledger = DedupLedger(JsonState(store))

        seen = await ledger.load_seen("g1", "m1")

        assert seen == ["tmdb:movie:1", "tmdb:movie:2"]
        assert legacy_seen_key("g1", "m1") not in store.data
        assert json.loads(store.data[seen_key("g1", "m1")]) == seen

        # A second load reads the new key only.
        assert await ledger.load_seen("g1", "m1") == seen

    asyncio.run(runner())


def test_legacy_seen_ignored_when_new_key_populated() -> None:
    async def runner() -> None:
        store = MemoryStateStore(
            {
                seen_key("g1", "m1"): json.dumps(["new"]),
                legacy_seen_key("g1", "m1"): json.dumps(["old"]),
            }
        )
        ledger = DedupLedger(JsonState(store))

        assert await ledger.load_seen("g1", "m1") == ["new"]

    asyncio.run(runner())


def test_corrupt_state_reads_as_empty(caplog) -> None:
    async def runner() -> None:
        store = MemoryStateStore(
            {
                seen_key("g1", "m1"): "{oops",
                ratings_key("g1", "m1"): json.dumps(["not", "a", "dict"]),
                upcoming_key("g1", "m1"): json.dumps({"items": []}),
                discover_state_key("g1", "m1"): "]]",
            }
        )
        state = JsonState(store, report_corruption=True)
        ledger = DedupLedger(state)

        assert await ledger.load_seen("g1", "m1") == []
        assert await ledger.load_local_rated("g1", "m1") == set()
        assert await QueueBufferStore(state).load("g1", "m1") == []
        cursor = await CursorStore(state).load("g1", "m1", GroupPolicy())
        assert cursor.next_page_by_type == {"movie": 1, "tv": 1}

    with caplog.at_level(logging.WARNING, logger="chooseamovie.services.queue_state"):
        asyncio.run(runner())

    assert "Ignoring corrupt queue state" in caplog.text


def test_corruption_is_silent_outside_development(caplog) -> None:
    async def runner() -> None:
        store = MemoryStateStore({seen_key("g1", "m1"): "{oops"})
        ledger = DedupLedger(JsonState(store, report_corruption=False))
        assert await ledger.load_seen("g1", "m1") == []

    with caplog.at_level(logging.WARNING, logger="chooseamovie.services.queue_state"):
        asyncio.run(runner())

    assert "Ignoring corrupt queue state" not in caplog.text


def test_local_rated_reads_rating_record_keys() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        ledger = DedupLedger(JsonState(store))

        await ledger.record_local_rating("g1", "m1", "tmdb:movie:1", 4)
        await ledger.record_local_rating("g1", "m1", "tmdb:tv:2", 0)

        assert await ledger.load_local_rated("g1", "m1") == {"tmdb:movie:1", "tmdb:tv:2"}
        assert await ledger.load_local_rated("g1", "other") == set()

    asyncio.run(runner())


def test_buffer_load_drops_malformed_and_duplicate_records() -> None:
    async def runner() -> None:
        records = [
            _item(1),
            {"title_id": "tmdb:movie:2", "type": "movie", "id": 2},
            "junk",
            _item(1),
            {**_item(3, "tv"), "title_id": None, "title_key": "tmdb:tv:3"},
            {**_item(4), "type": "person"},
        ]
        store = MemoryStateStore({upcoming_key("g1", "m1"): json.dumps(records)})
        buffers = QueueBufferStore(JsonState(store))

        items = await buffers.load("g1", "m1")

        assert [item.title_id for item in items] == ["tmdb:movie:1", "tmdb:tv:3"]

    asyncio.run(runner())


def test_buffer_save_round_trips_items() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        buffers = QueueBufferStore(JsonState(store))
        items = [QueueItem.model_validate(_item(7)), QueueItem.model_validate(_item(8, "tv"))]

        await buffers.save("g1", "m1", items)

        assert await buffers.load("g1", "m1") == items
        stored = json.loads(store.data[upcoming_key("g1", "m1")])
        assert stored[0]["title_id"] == "tmdb:movie:7"

    asyncio.run(runner())


def test_cursor_resets_when_fingerprint_changes() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        cursors = CursorStore(JsonState(store))
        policy = GroupPolicy(media_type="movies_and_tv")

        cursor = await cursors.load("g1", "m1", policy)
        assert cursor.persisted is False
        cursor.advance("movie", no_more=False)
        cursor.advance("tv", no_more=True)
        await cursors.save("g1", "m1", cursor)

        same = await cursors.load("g1", "m1", policy)
        assert same.persisted is True
        assert same.next_page_by_type == {"movie": 2, "tv": 2}
        assert same.exhausted_by_type == {"movie": False, "tv": True}

        changed = await cursors.load(
            "g1", "m1", GroupPolicy(media_type="movies_and_tv", excluded_genre_ids=[27])
        )
        assert changed.persisted is False
        assert changed.next_page_by_type == {"movie": 1, "tv": 1}
        assert changed.exhausted_by_type == {"movie": False, "tv": False}

    asyncio.run(runner())


def test_cursor_payload_is_repaired_field_by_field() -> None:
    cursor = DiscoveryCursor.from_payload(
        {
            "settingsKey": "abc",
            "nextPageByType": {"movie": 3.0, "tv": "seven"},
            "exhaustedByType": {"movie": 1},
            "keptTotal": -4,
        },
        "abc",
    )

    assert cursor.next_page_by_type == {"movie": 3, "tv": 1}
    assert cursor.exhausted_by_type == {"movie": True, "tv": False}
    assert cursor.kept_total == 0

    overflowing = DiscoveryCursor.from_payload(
        {"nextPageByType": {"movie": float("inf"), "tv": float("nan")}}, "abc"
    )
    assert overflowing.next_page_by_type == {"movie": 1, "tv": 1}


def test_cursor_with_overflowing_page_number_loads_as_fresh_page() -> None:
    async def runner() -> None:
        policy = GroupPolicy()
        store = MemoryStateStore(
            {
                discover_state_key("g1", "m1"): (
                    '{"settingsKey": "%s", "nextPageByType": {"movie": 1e400, "tv": 4},'
                    ' "exhaustedByType": {"movie": false, "tv": false}}' % policy.fingerprint()
                )
            }
        )

        cursor = await CursorStore(JsonState(store)).load("g1", "m1", policy)

        assert cursor.persisted is True
        assert cursor.next_page_by_type == {"movie": 1, "tv": 4}

    asyncio.run(runner())


def test_cursor_exhaustion_is_sticky() -> None:
    cursor = DiscoveryCursor(fingerprint="f")

    cursor.advance("movie", no_more=True)
    cursor.advance("movie", no_more=False)

    assert cursor.is_exhausted("movie") is True
    assert cursor.next_page("movie") == 3


class _SharedRatings:
    def __init__(self, rated: set[str]) -> None:
        self.rated = rated

    async def list_rated_title_ids(self, group_id: str, member_id: str) -> set[str]:
        return set(self.rated)

    async def upsert_rating(self, group_id, member_id, title_id, value) -> None:
        self.rated.add(title_id)


def test_load_rated_unions_local_and_shared_ratings() -> None:
    async def runner() -> None:
        store = MemoryStateStore()
        ledger = DedupLedger(JsonState(store), ratings=_SharedRatings({"tmdb:tv:9"}))
        await ledger.record_local_rating("g1", "m1", "tmdb:movie:1", 3)

        assert await ledger.load_rated("g1", "m1") == {"tmdb:movie:1", "tmdb:tv:9"}
        assert await DedupLedger(JsonState(store)).load_rated("g1", "m1") == {"tmdb:movie:1"}

    asyncio.run(runner())
