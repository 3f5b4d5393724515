"""Tests for the AI second pass."""

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest
from anthropic.types import TextBlock, ToolUseBlock

from shelfresolver.config import settings
from shelfresolver.models.domain import MediaDomain, get_strategy
from shelfresolver.models.enrichment import AiResolved, LookupResult, ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.models.failure import AiEnrichmentError
from shelfresolver.providers.books import BookCatalogService
from shelfresolver.services.ai_enricher import (
    TOOL_NAME,
    AiEnricher,
    normalize_ai_identifiers,
    parse_corrections,
)


def tool_response(items: list[dict[str, Any]]) -> MagicMock:
    response = MagicMock()
    response.content = [
        ToolUseBlock(id="toolu_01", type="tool_use", name=TOOL_NAME, input={"items": items})
    ]
    response.usage = MagicMock(input_tokens=120, output_tokens=40)
    return response


def fake_client(response: Any = None, side_effect: Any = None) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


def sent_items(client: MagicMock) -> list[dict[str, Any]]:
    """The item list the enricher sent in its request."""
    content = client.messages.create.await_args.kwargs["messages"][0]["content"]
    return json.loads(content.rsplit("\n\n", 1)[1])["items"]


def unresolved(*items: ExtractedItem) -> list[LookupResult]:
    return [LookupResult.unresolved(item) for item in items]


def book(index: int, title: str, creator: str | None = "Frank Herbert") -> ExtractedItem:
    return ExtractedItem(index=index, title=title, kind="books", creator=creator)


DUNE_CORRECTION = {
    "inputId": "item-1",
    "title": "Dune",
    "primaryCreator": "Frank Herbert",
    "year": 1965,
    "identifiers": {"isbn13": ["9780441013593"], "ISBN-10": "0441013597"},
    "coverImage": "https://img.example/dune.jpg",
    "confidence": 0.88,
}


@pytest.fixture
async def book_service():
    service = BookCatalogService(concurrency=2, enable_second_pass=True)
    service.safe_lookup = AsyncMock(return_value=None)  # type: ignore[method-assign]
    yield service
    await service.aclose()


class TestParseCorrections:
    def test_tool_call_is_preferred(self) -> None:
        """The forced tool call's input is read even when text is present."""
        content = [
            TextBlock(type="text", text='{"items": [{"title": "Wrong"}]}'),
            ToolUseBlock(
                id="toolu_01", type="tool_use", name=TOOL_NAME, input={"items": [{"title": "A"}]}
            ),
        ]
        [correction] = parse_corrections(content)
        assert correction.title == "A"

    def test_text_fallback(self) -> None:
        """A JSON object embedded in text is accepted when no tool call was made."""
        content = [
            TextBlock(
                type="text",
                text='Here you go:\n{"items": [{"inputId": "item-1", "title": "Dune"}]}\nDone.',
            )
        ]
        [correction] = parse_corrections(content)
        assert correction.input_id == "item-1"

    def test_malformed_items_are_dropped(self) -> None:
        """Items failing validation are skipped, the rest survive."""
        content = [
            ToolUseBlock(
                id="toolu_01",
                type="tool_use",
                name=TOOL_NAME,
                input={"items": [{"title": ["not", "a", "string"]}, {"title": "Dune"}]},
            )
        ]
        assert [c.title for c in parse_corrections(content)] == ["Dune"]

    def test_no_json_raises(self) -> None:
        with pytest.raises(AiEnrichmentError, match="neither a tool call nor JSON"):
            parse_corrections([TextBlock(type="text", text="I could not help with that.")])


class TestNormalizeIdentifiers:
    def test_movie_paths(self) -> None:
        """AI identifier keys are mapped onto nested canonical paths; unknown keys drop."""
        strategy = get_strategy(MediaDomain.MOVIE)
        raw = {"tmdb": "438631", "IMDB": ["tt1160419"], "asin": "B000"}
        assert normalize_ai_identifiers(strategy, raw) == {
            "tmdb": {"movie": ["438631"]},
            "imdb": ["tt1160419"],
        }


class TestAiEnricher:
    async def test_corrects_ocr_misread(self, book_service) -> None:
        """A confident correction becomes an AI-resolved canonical collectable."""
        client = fake_client(tool_response([DUNE_CORRECTION]))
        enricher = AiEnricher(client, relookup=False)
        item = book(0, "Dvne")

        [result] = await enricher.enrich(book_service, unresolved(item))

        assert result.resolved
        assert result.input is item
        assert result.ai_confidence == 0.88
        assert result.via_ai
        assert isinstance(result.enrichment, AiResolved)
        collectable = result.enrichment.collectable
        assert collectable.kind == "book"
        assert collectable.title == "Dune"
        assert collectable.year == "1965"
        assert collectable.identifiers == {
            "isbn13": ["9780441013593"],
            "isbn10": ["0441013597"],
        }
        assert collectable.images[0].url_large == "https://img.example/dune.jpg"
        assert collectable.sources[0].provider == "anthropic"

        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": TOOL_NAME}
        assert kwargs["system"] == get_strategy(MediaDomain.BOOK).archivist_prompt
        assert sent_items(client)[0]["inputId"] == "item-1"
        book_service.safe_lookup.assert_not_awaited()

    async def test_corrections_are_matched_by_input_id(self, book_service) -> None:
        """Corrections returned out of order still land on the right items."""
        client = fake_client(
            tool_response(
                [
                    {"inputId": "item-2", "title": "Neuromancer", "confidence": 0.9},
                    {"inputId": "item-1", "title": "Dune", "confidence": 0.8},
                ]
            )
        )
        enricher = AiEnricher(client, relookup=False)

        results = await enricher.enrich(
            book_service,
            unresolved(book(0, "Dvne"), book(1, "Neuromancr", "William Gibson")),
        )

        assert [r.enrichment.collectable.title for r in results] == ["Dune", "Neuromancer"]
        assert [r.ai_confidence for r in results] == [0.8, 0.9]

    async def test_dropped_item_does_not_take_another_items_correction(
        self, book_service
    ) -> None:
        """An item missing from the reply stays unresolved instead of shifting answers."""
        client = fake_client(
            tool_response(
                [
                    {"inputId": "item-1", "title": "Dune", "confidence": 0.9},
                    {"inputId": "item-3", "title": "Hyperion", "confidence": 0.85},
                ]
            )
        )
        enricher = AiEnricher(client, relookup=False)

        results = await enricher.enrich(
            book_service,
            unresolved(
                book(0, "Dvne"),
                book(1, "Neuromancr", "William Gibson"),
                book(2, "Hyprion", "Dan Simmons"),
            ),
        )

        assert [r.resolved for r in results] == [True, False, True]
        assert results[0].enrichment.collectable.title == "Dune"
        assert results[2].enrichment.collectable.title == "Hyperion"
        assert results[1].ai_confidence is None

    async def test_corrections_without_input_id_follow_response_order(
        self, book_service
    ) -> None:
        client = fake_client(
            tool_response(
                [
                    {"title": "Dune", "confidence": 0.9},
                    {"title": "Neuromancer", "confidence": 0.8},
                ]
            )
        )
        enricher = AiEnricher(client, relookup=False)

        results = await enricher.enrich(
            book_service,
            unresolved(book(0, "Dvne"), book(1, "Neuromancr", "William Gibson")),
        )

        assert [r.enrichment.collectable.title for r in results] == ["Dune", "Neuromancer"]

    async def test_unusable_corrections_stay_unresolved(self, book_service) -> None:
        """Zero confidence or a missing title leaves the item unresolved."""
        client = fake_client(
            tool_response(
                [
                    {"inputId": "item-1", "title": "Dune", "confidence": 0},
                    {"inputId": "item-2", "title": "", "confidence": 0.9},
                    {"inputId": "item-3", "title": "Hyperion"},
                ]
            )
        )
        enricher = AiEnricher(client, relookup=False)

        results = await enricher.enrich(
            book_service,
            unresolved(book(0, "Dvne"), book(1, "???"), book(2, "Hyprion", "Dan Simmons")),
        )

        assert [r.resolved for r in results] == [False, False, False]
        assert all(r.ai_confidence is None for r in results)

    async def test_duplicates_share_one_request_slot(self, book_service) -> None:
        """Items normalizing to the same key are sent once and all receive the answer."""
        client = fake_client(tool_response([DUNE_CORRECTION]))
        enricher = AiEnricher(client, relookup=False)
        first = book(0, "Dvne")
        second = book(1, "dvne!", "FRANK HERBERT")

        results = await enricher.enrich(book_service, unresolved(first, second))

        assert len(sent_items(client)) == 1
        assert [r.input for r in results] == [first, second]
        assert all(r.resolved for r in results)

    async def test_batch_is_capped(self, book_service) -> None:
        """Items beyond the batch cap are not sent and stay unresolved."""
        client = fake_client(tool_response([DUNE_CORRECTION]))
        enricher = AiEnricher(client, relookup=False, batch_max=1)

        results = await enricher.enrich(
            book_service, unresolved(book(0, "Dvne"), book(1, "Neuromancr", "William Gibson"))
        )

        assert [item["title"] for item in sent_items(client)] == ["Dvne"]
        assert [r.resolved for r in results] == [True, False]

    async def test_relookup_prefers_provider_and_keeps_confidence(self, book_service) -> None:
        """A provider hit for the corrected item replaces the AI payload."""
        provider_match = ProviderResolved(
            provider="openlibrary", score=145.0, entity={"doc": {"title": "Dune"}}
        )
        book_service.safe_lookup.return_value = provider_match
        client = fake_client(tool_response([DUNE_CORRECTION]))
        enricher = AiEnricher(client, relookup=True)
        item = book(0, "Dvne")

        [result] = await enricher.enrich(book_service, unresolved(item))

        corrected = book_service.safe_lookup.await_args.args[0]
        assert corrected.title == "Dune"
        assert corrected.identifiers["isbn13"] == ["9780441013593"]
        assert result.enrichment is provider_match
        assert result.input is item
        assert result.ai_confidence == 0.88
        assert result.via_ai

    async def test_relookup_miss_keeps_ai_payload(self, book_service) -> None:
        client = fake_client(tool_response([DUNE_CORRECTION]))
        enricher = AiEnricher(client, relookup=True)

        [result] = await enricher.enrich(book_service, unresolved(book(0, "Dvne")))

        book_service.safe_lookup.assert_awaited_once()
        assert isinstance(result.enrichment, AiResolved)

    async def test_api_error_leaves_items_unresolved(self, book_service) -> None:
        """Transport failures from the AI provider never propagate."""
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = fake_client(side_effect=anthropic.APIConnectionError(request=request))
        enricher = AiEnricher(client, relookup=False)

        results = await enricher.enrich(book_service, unresolved(book(0, "Dvne")))

        assert [r.resolved for r in results] == [False]

    async def test_unparseable_reply_leaves_items_unresolved(self, book_service) -> None:
        response = MagicMock()
        response.content = [TextBlock(type="text", text="No idea, sorry.")]
        response.usage = None
        enricher = AiEnricher(fake_client(response), relookup=False)

        results = await enricher.enrich(book_service, unresolved(book(0, "Dvne")))

        assert [r.resolved for r in results] == [False]

    async def test_unconfigured_skips_request(
        self, book_service, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Without an API key every item is returned unresolved."""
        monkeypatch.setattr(settings, "anthropic_api_key", "")
        enricher = AiEnricher()

        results = await enricher.enrich(book_service, unresolved(book(0, "Dvne")))

        assert not enricher.is_configured
        assert [r.resolved for r in results] == [False]

    async def test_request_without_client_raises_enrichment_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A request with no client fails with the enrichment error, even under -O."""
        monkeypatch.setattr(settings, "anthropic_api_key", "")
        enricher = AiEnricher()

        with pytest.raises(AiEnrichmentError, match="not configured"):
            await enricher._request_corrections(
                get_strategy(MediaDomain.BOOK), [book(0, "Dvne")]
            )

    async def test_empty_input(self, book_service) -> None:
        enricher = AiEnricher(fake_client(tool_response([])))
        assert await enricher.enrich(book_service, []) == []
