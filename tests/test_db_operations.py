"""Tests for database operations on the canonical store."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shelfresolver.db import operations
from shelfresolver.db.operations import (
    backfill_lightweight_fingerprint,
    create_manual_entry,
    find_by_fuzzy_fingerprint,
    find_by_title,
    find_existing_collectable,
    link_collectable_to_shelf,
    record_fuzzy_fingerprint,
    upsert_collectable,
)
from shelfresolver.models.collectable import CollectablePayload, ImageRef, SourceRecord
from shelfresolver.models.db import CollectableDB, CollectableIdentifierDB, UserCollectionDB
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.services.fingerprint import (
    make_collectable_fingerprint,
    make_fuzzy_fingerprint,
    make_lightweight_fingerprint,
)


def dune_payload(**overrides) -> CollectablePayload:
    fields = {
        "kind": "book",
        "title": "Dune",
        "primary_creator": "Frank Herbert",
        "creators": ["Frank Herbert"],
        "year": "1965",
        "identifiers": {"isbn13": ["9780441013593"], "openlibrary": {"work": ["OL893415W"]}},
        "images": [
            ImageRef(
                kind="cover",
                provider="openlibrary",
                url_large="https://covers.openlibrary.org/b/id/1-L.jpg",
            )
        ],
        "sources": [SourceRecord(provider="openlibrary", ids={"work": "OL893415W"})],
        "fingerprint": make_collectable_fingerprint(
            title="Dune", creator="Frank Herbert", year="1965", media_type="book"
        ),
        "lightweight_fingerprint": make_lightweight_fingerprint(
            title="Dune", creator="Frank Herbert"
        ),
    }
    fields.update(overrides)
    return CollectablePayload(**fields)


async def count_collectables(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(CollectableDB))
    return result.scalar_one()


class TestUpsertCollectable:
    async def test_insert_new(self, session: AsyncSession) -> None:
        """First upsert inserts and indexes identity keys."""
        collectable, created = await upsert_collectable(session, dune_payload())
        await session.commit()

        assert created is True
        assert collectable.id is not None
        assert collectable.fingerprint is not None

        result = await session.execute(
            select(CollectableIdentifierDB.namespace, CollectableIdentifierDB.value).order_by(
                CollectableIdentifierDB.id
            )
        )
        assert result.all() == [
            ("openlibrary.work", "OL893415W"),
            ("isbn13", "9780441013593"),
        ]

    async def test_same_candidate_twice_is_idempotent(self, session: AsyncSession) -> None:
        """Upserting the same candidate twice leaves one record with unioned identifiers."""
        first, _ = await upsert_collectable(session, dune_payload())
        second, created = await upsert_collectable(
            session,
            dune_payload(identifiers={"isbn13": ["9780441013593", "9780593099322"]}),
        )
        await session.commit()

        assert created is False
        assert second.id == first.id
        assert await count_collectables(session) == 1
        assert second.identifiers["isbn13"] == ["9780441013593", "9780593099322"]
        assert second.identifiers["openlibrary"] == {"work": ["OL893415W"]}

    async def test_merge_by_isbn_is_additive(self, session: AsyncSession) -> None:
        """A differently titled edition with a shared ISBN merges without overwriting."""
        original, _ = await upsert_collectable(session, dune_payload(description=None))
        merged, created = await upsert_collectable(
            session,
            CollectablePayload(
                kind="book",
                title="DUNE (40th Anniversary)",
                description="Arrakis.",
                primary_creator="F. Herbert",
                tags=["classic"],
                identifiers={"isbn13": ["9780441013593"]},
                images=[
                    ImageRef(
                        kind="cover",
                        provider="openlibrary",
                        url_large="https://covers.openlibrary.org/b/id/1-L.jpg",
                    ),
                    ImageRef(kind="cover", provider="tmdb", url_small="https://img/other.jpg"),
                ],
                fingerprint="another-strong-fingerprint",
            ),
        )
        await session.commit()

        assert created is False
        assert merged.id == original.id
        assert merged.title == "Dune"
        assert merged.primary_creator == "Frank Herbert"
        assert merged.description == "Arrakis."
        assert merged.tags == ["classic"]
        assert len(merged.images) == 2
        assert merged.fingerprint == dune_payload().fingerprint

    async def test_source_recency(self, session: AsyncSession) -> None:
        """A newer fetch of the same source replaces the stored one."""
        old = datetime.now(UTC) - timedelta(days=30)
        await upsert_collectable(
            session,
            dune_payload(
                sources=[
                    SourceRecord(
                        provider="openlibrary",
                        ids={"work": "OL893415W"},
                        fetched_at=old,
                        raw={"score": 1},
                    )
                ]
            ),
        )
        collectable, _ = await upsert_collectable(
            session,
            dune_payload(
                sources=[
                    SourceRecord(
                        provider="openlibrary", ids={"work": "OL893415W"}, raw={"score": 2}
                    )
                ]
            ),
        )

        assert len(collectable.sources) == 1
        assert collectable.sources[0]["raw"] == {"score": 2}

    async def test_matches_by_lightweight_fingerprint(self, session: AsyncSession) -> None:
        """Without ids, a record with the same lightweight fingerprint is reused."""
        first, _ = await upsert_collectable(session, dune_payload(identifiers={}))
        second, created = await upsert_collectable(
            session,
            dune_payload(identifiers={}, year="1990", fingerprint="strong-for-1990"),
        )
        assert created is False
        assert second.id == first.id

    async def test_requires_kind_and_title(self, session: AsyncSession) -> None:
        """Payloads without a kind or title are rejected."""
        with pytest.raises(ValueError, match="kind and title"):
            await upsert_collectable(session, {"kind": "book", "title": ""})

    async def test_lost_insert_race_merges_into_winner(
        self, session: AsyncSession, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A unique violation on insert re-runs the lookup and merges."""
        winner, _ = await upsert_collectable(session, dune_payload(identifiers={}))
        await session.commit()

        real_find = operations.find_existing_collectable
        calls = {"count": 0}

        async def stale_first_find(session_, incoming):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return await real_find(session_, incoming)

        monkeypatch.setattr(operations, "find_existing_collectable", stale_first_find)

        collectable, created = await upsert_collectable(
            session, dune_payload(identifiers={}, tags=["late"])
        )
        await session.commit()

        assert calls["count"] == 2
        assert created is False
        assert collectable.id == winner.id
        assert collectable.tags == ["late"]
        assert await count_collectables(session) == 1

    async def test_gives_up_after_max_attempts(
        self, session: AsyncSession, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Persistent conflicts raise instead of looping forever."""
        await upsert_collectable(session, dune_payload(identifiers={}))
        await session.commit()

        async def never_finds(session_, incoming):
            return None

        monkeypatch.setattr(operations, "find_existing_collectable", never_finds)

        with pytest.raises(RuntimeError, match="after 2 attempts"):
            await upsert_collectable(session, dune_payload(identifiers={}), max_attempts=2)


class TestFindExistingCollectable:
    async def test_provider_id_beats_fingerprint(self, session: AsyncSession) -> None:
        """The record owning the provider id wins over a fingerprint match."""
        by_fingerprint, _ = await upsert_collectable(
            session, dune_payload(identifiers={}, lightweight_fingerprint=None)
        )
        by_work, _ = await upsert_collectable(
            session,
            CollectablePayload(
                kind="book",
                title="Dune Messiah",
                identifiers={"openlibrary": {"work": ["OL893415W"]}},
                fingerprint="messiah",
            ),
        )
        await session.commit()

        found = await find_existing_collectable(session, dune_payload().to_dict())

        assert found is not None
        assert found.id == by_work.id
        assert found.id != by_fingerprint.id


class TestFuzzyFingerprints:
    async def test_record_once(self, session: AsyncSession) -> None:
        """The same fuzzy value is stored only once per collectable."""
        collectable, _ = await upsert_collectable(session, dune_payload())
        value = make_fuzzy_fingerprint("Dvne", "Frank Herbert")
        assert value is not None

        first = await record_fuzzy_fingerprint(
            session,
            collectable,
            value,
            source="vision-ocr",
            raw_title="Dvne",
            raw_creator="Frank Herbert",
            media_type="book",
            confidence=0.9,
        )
        second = await record_fuzzy_fingerprint(session, collectable, value, source="vision-ocr")
        await session.commit()

        assert first is True
        assert second is False
        stored = collectable.to_dict()["fuzzyFingerprints"]
        assert len(stored) == 1
        assert stored[0]["rawTitle"] == "Dvne"
        assert stored[0]["source"] == "vision-ocr"
        assert stored[0]["createdAt"] is not None

    async def test_lookup_requires_creator(self, session: AsyncSession) -> None:
        """A fuzzy hit only counts when the creator matches case-insensitively."""
        collectable, _ = await upsert_collectable(session, dune_payload())
        value = make_fuzzy_fingerprint("Dvne", "Frank Herbert")
        await record_fuzzy_fingerprint(session, collectable, value, source="vision-ocr")
        await session.commit()

        found = await find_by_fuzzy_fingerprint(session, value, "FRANK HERBERT")
        assert found is not None and found.id == collectable.id
        assert await find_by_fuzzy_fingerprint(session, value, "Brian Herbert") is None


class TestLookupHelpers:
    async def test_find_by_title(self, session: AsyncSession) -> None:
        """Title matching is case-insensitive and narrowed by creator."""
        collectable, _ = await upsert_collectable(session, dune_payload())
        await session.commit()

        found = await find_by_title(session, "  dune ")
        assert found is not None and found.id == collectable.id
        assert await find_by_title(session, "Dune", "frank herbert") is not None
        assert await find_by_title(session, "Dune", "Someone Else") is None

    async def test_backfill_lightweight(self, session: AsyncSession) -> None:
        """Only records without a lightweight fingerprint are backfilled."""
        collectable, _ = await upsert_collectable(
            session, dune_payload(lightweight_fingerprint=None)
        )
        assert await backfill_lightweight_fingerprint(session, collectable, "light") is True
        assert await backfill_lightweight_fingerprint(session, collectable, "other") is False
        assert collectable.lightweight_fingerprint == "light"


class TestShelfLinks:
    async def test_link_is_idempotent(self, session: AsyncSession) -> None:
        """Re-linking updates metadata instead of duplicating the link."""
        collectable, _ = await upsert_collectable(session, dune_payload())

        link, created = await link_collectable_to_shelf(
            session, "user-1", "shelf-1", collectable.id, {"format": "Paperback"}
        )
        again, created_again = await link_collectable_to_shelf(
            session, "user-1", "shelf-1", collectable.id, {"notes": "signed", "rating": 9}
        )
        await session.commit()

        assert created is True
        assert created_again is False
        assert again.id == link.id
        assert again.format == "Paperback"
        assert again.notes == "signed"
        assert again.rating == 5.0

        result = await session.execute(select(func.count()).select_from(UserCollectionDB))
        assert result.scalar_one() == 1

    async def test_manual_entry_needs_review(self, session: AsyncSession) -> None:
        """Manual entries keep the raw fields and are flagged for review."""
        item = ExtractedItem.from_raw(
            {"title": "Unknown Zine", "author": "Anon", "position": "0.1,0.9"}, 0, "books"
        )
        assert item is not None

        manual, link = await create_manual_entry(session, "user-1", "shelf-1", item, "books")
        await session.commit()

        assert manual.needs_review is True
        assert manual.name == "Unknown Zine"
        assert manual.author == "Anon"
        assert manual.type == "books"
        assert link.manual_id == manual.id
        assert link.collectable_id is None
        assert link.position == {"label": "0.1,0.9", "coordinates": {"x": 0.1, "y": 0.9}}
