"""Tests for ImageSignalStore against a temporary SQLite database."""
from datetime import datetime, timedelta, timezone

import pytest

from archtivy_matches.services.signal_store import ImageSignalStore
from conftest import TEST_DIM, unit


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def store():
    return ImageSignalStore(TEST_DIM, clock=_Clock())


class TestUpsertSignal:

    @pytest.mark.asyncio
    async def test_insert_and_read_back(self, store, db_session):
        await store.upsert_signal(
            db_session,
            image_id="img-1",
            source="project",
            embedding=unit(1, 0),
            attrs={"Material": ["Oak", "oak", "Steel"]},
            confidence=72.5,
            listing_id="proj-1",
        )
        await db_session.commit()

        [signal] = await store.get_signals(db_session, ["img-1"])
        assert signal.source == "project"
        assert signal.listing_id == "proj-1"
        assert signal.embedding == unit(1, 0)
        assert signal.attrs == {"material": ["oak", "steel"]}
        assert signal.confidence == 72.5

    @pytest.mark.asyncio
    async def test_last_write_wins(self, store, db_session):
        await store.upsert_signal(db_session, "img-1", "product", unit(1), {"color": ["white"]}, 40)
        await db_session.commit()
        [first] = await store.get_signals(db_session, ["img-1"])
        first_updated = first.updated_at

        await store.upsert_signal(db_session, "img-1", "product", unit(0, 1), {}, 90)
        await db_session.commit()
        signals = await store.get_signals(db_session, ["img-1"])

        assert len(signals) == 1
        assert signals[0].embedding == unit(0, 1)
        assert signals[0].attrs == {}
        assert signals[0].confidence == 90
        assert signals[0].updated_at > first_updated

    @pytest.mark.asyncio
    async def test_same_image_id_per_source_is_separate(self, store, db_session):
        await store.upsert_signal(db_session, "img-1", "project", unit(1), {}, 0)
        await store.upsert_signal(db_session, "img-1", "product", unit(0, 1), {}, 0)
        await db_session.commit()

        assert len(await store.get_signals(db_session, ["img-1"])) == 2
        [product] = await store.get_signals(db_session, ["img-1"], source="product")
        assert product.embedding == unit(0, 1)

    @pytest.mark.asyncio
    async def test_confidence_is_clamped(self, store, db_session):
        await store.upsert_signal(db_session, "img-1", "project", unit(1), {}, 250)
        [signal] = await store.get_signals(db_session, ["img-1"])
        assert signal.confidence == 100.0

    @pytest.mark.parametrize(
        "embedding",
        [
            [1.0, 0.0],
            [0.0] * (TEST_DIM + 1),
            [float("nan"), 0.0, 0.0, 0.0],
            [float("inf"), 0.0, 0.0, 0.0],
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_embedding_is_rejected(self, store, db_session, embedding):
        with pytest.raises(ValueError):
            await store.upsert_signal(db_session, "img-1", "project", embedding, {}, 10)
        assert await store.get_signals(db_session, ["img-1"]) == []

    @pytest.mark.asyncio
    async def test_invalid_key_or_attrs(self, store, db_session):
        with pytest.raises(ValueError):
            await store.upsert_signal(db_session, "img-1", "listing", unit(1), {}, 0)
        with pytest.raises(ValueError):
            await store.upsert_signal(db_session, " ", "project", unit(1), {}, 0)
        with pytest.raises(ValueError):
            await store.upsert_signal(db_session, "img-1", "project", unit(1), {"color": "white"}, 0)


class TestGetSignals:

    @pytest.mark.asyncio
    async def test_empty_ids_skip_query(self, store, db_session):
        assert await store.get_signals(db_session, []) == []

    @pytest.mark.asyncio
    async def test_unknown_ids_are_ignored(self, store, db_session):
        await store.upsert_signal(db_session, "img-1", "project", unit(1), {}, 0)
        signals = await store.get_signals(db_session, ["img-1", "img-404", "img-1"])
        assert [s.image_id for s in signals] == ["img-1"]

    @pytest.mark.asyncio
    async def test_bad_source_filter(self, store, db_session):
        with pytest.raises(ValueError):
            await store.get_signals(db_session, ["img-1"], source="listing")


class TestListingReads:

    @pytest.mark.asyncio
    async def test_listing_signals_and_ids(self, store, db_session):
        await store.upsert_signal(db_session, "qb", "product", unit(1), {}, 50, listing_id="prod-b")
        await store.upsert_signal(db_session, "qa2", "product", unit(1), {}, 50, listing_id="prod-a")
        await store.upsert_signal(db_session, "qa1", "product", unit(1), {}, 50, listing_id="prod-a")
        await store.upsert_signal(db_session, "q-orphan", "product", unit(1), {}, 50)
        await store.upsert_signal(db_session, "p1", "project", unit(1), {}, 50, listing_id="proj-1")
        await db_session.commit()

        signals = await store.get_listing_signals(db_session, "product")
        assert [(s.listing_id, s.image_id) for s in signals] == [
            ("prod-a", "qa1"),
            ("prod-a", "qa2"),
            ("prod-b", "qb"),
        ]
        assert await store.list_listing_ids(db_session, "product") == ["prod-a", "prod-b"]
        assert await store.list_listing_ids(db_session, "project") == ["proj-1"]

    @pytest.mark.asyncio
    async def test_listing_reads_validate_source(self, store, db_session):
        with pytest.raises(ValueError):
            await store.get_listing_signals(db_session, "listing")
        with pytest.raises(ValueError):
            await store.list_listing_ids(db_session, "listing")
