"""
OpenLibrary adapter for books.

Lookup order:
1. ISBN-13 candidates, then ISBN-10 candidates, via /isbn/{isbn}.json,
   hydrated with the work and its authors. Each candidate is retried on
   its own; a 404 moves on to the next candidate.
2. /search.json by title and author, picking the best-scoring document.
"""

import logging
import re
from typing import Any

import httpx

from shelfresolver.config import settings
from shelfresolver.models.collectable import (
    CollectablePayload,
    ImageRef,
    SourceRecord,
    unique_strings,
)
from shelfresolver.models.domain import MediaDomain
from shelfresolver.models.enrichment import ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.models.failure import ProviderNotFoundError
from shelfresolver.providers.base import (
    CatalogService,
    SleepFunc,
    extract_year,
    normalize_string,
)

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10
MAX_SUBJECTS = 10

_ISBN_CHARS = re.compile(r"[^0-9Xx]")


def normalize_isbn(value: Any) -> str | None:
    """Strip separators; return the ISBN if it has 10 or 13 characters."""
    cleaned = _ISBN_CHARS.sub("", normalize_string(value)).upper()
    return cleaned if len(cleaned) in (10, 13) else None


def isbn_candidates(identifiers: dict[str, Any]) -> list[str]:
    """ISBN-13 values first, then ISBN-10, deduplicated."""
    thirteen: list[str] = []
    ten: list[str] = []
    for key in ("isbn13", "isbn10", "isbn"):
        raw = identifiers.get(key)
        values = raw if isinstance(raw, list | tuple) else [raw]
        for value in values:
            isbn = normalize_isbn(value)
            if not isbn:
                continue
            bucket = thirteen if len(isbn) == 13 else ten
            if isbn not in bucket:
                bucket.append(isbn)
    return thirteen + ten


def olid(key: Any) -> str | None:
    """OpenLibrary id from a key path ("/works/OL45883W" -> "OL45883W")."""
    text = normalize_string(key)
    if not text:
        return None
    return text.rsplit("/", 1)[-1] or None


def score_doc(doc: dict[str, Any], title: str, author: str) -> float:
    """Weighted relevance of a search document."""
    score = float(doc.get("edition_count") or 0)
    if doc.get("has_fulltext"):
        score += 5
    doc_title = normalize_string(doc.get("title")).lower()
    if title and doc_title:
        needle = title.lower()
        if doc_title == needle:
            score += 10
        elif needle in doc_title:
            score += 6
    if author and any(
        normalize_string(name).lower() == author.lower() for name in doc.get("author_name") or []
    ):
        score += 8
    if doc.get("isbn"):
        score += 2
    return score


class BookCatalogService(CatalogService):
    """Book lookups against OpenLibrary."""

    provider_name = "openlibrary"
    domain = MediaDomain.BOOK
    timeout_backoff = 1.0

    def __init__(
        self,
        *,
        base_url: str | None = None,
        covers_url: str | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        retries: int | None = None,
        enable_second_pass: bool | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        super().__init__(
            timeout=timeout or settings.openlibrary_timeout,
            concurrency=concurrency or settings.openlibrary_concurrency,
            retries=settings.provider_retries if retries is None else retries,
            enable_second_pass=(
                settings.enable_second_pass if enable_second_pass is None else enable_second_pass
            ),
            client=client,
            sleep=sleep,
        )
        self.base_url = (base_url or settings.openlibrary_base_url).rstrip("/")
        self.covers_url = (covers_url or settings.openlibrary_covers_url).rstrip("/")

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        title = normalize_string(item.title)
        author = normalize_string(item.creator)
        context = {"provider": self.provider_name, **item.summary()}

        for isbn in isbn_candidates(item.identifiers):
            entity = await self.with_retries(
                lambda isbn=isbn: self._hydrate_isbn(isbn), retries, context
            )
            if entity is not None:
                logger.info("Resolved %r by ISBN %s", title, isbn)
                return ProviderResolved(
                    provider=self.provider_name,
                    score=100.0,
                    entity=entity,
                    query={"isbn": isbn},
                )

        if not title:
            return None

        query = {"title": title, "author": author}
        docs = await self.with_retries(lambda: self._search(title, author), retries, context)
        if not docs:
            return None

        best = max(docs, key=lambda doc: score_doc(doc, title, author))
        return ProviderResolved(
            provider=self.provider_name,
            score=score_doc(best, title, author),
            entity={"doc": best},
            query=query,
        )

    async def _search(self, title: str, author: str) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"title": title, "limit": SEARCH_LIMIT, "mode": "everything"}
        if author:
            params["author"] = author
        payload = await self.get_json(f"{self.base_url}/search.json", params=params)
        docs = payload.get("docs") if isinstance(payload, dict) else None
        return [doc for doc in docs or [] if isinstance(doc, dict)]

    async def _hydrate_isbn(self, isbn: str) -> dict[str, Any]:
        edition = await self.get_json(f"{self.base_url}/isbn/{isbn}.json")
        works = edition.get("works") or []
        work_key = works[0].get("key") if works and isinstance(works[0], dict) else None

        work: dict[str, Any] = {}
        if work_key:
            work = await self.get_json(f"{self.base_url}{work_key}.json")

        authors: list[str] = []
        for entry in work.get("authors") or edition.get("authors") or []:
            if not isinstance(entry, dict):
                continue
            # work authors nest the key under "author"; edition authors do not
            author_key = (entry.get("author") or entry).get("key")
            if not author_key:
                continue
            try:
                author = await self.get_json(f"{self.base_url}{author_key}.json")
            except ProviderNotFoundError:
                continue
            name = normalize_string(author.get("name"))
            if name:
                authors.append(name)

        return {"edition": edition, "work": work, "authors": authors, "isbn": isbn}

    def _cover(self, cover_id: Any) -> ImageRef | None:
        if not cover_id or (isinstance(cover_id, int) and cover_id < 0):
            return None
        base = f"{self.covers_url}/b/id/{cover_id}"
        return ImageRef(
            kind="cover",
            provider=self.provider_name,
            url_small=f"{base}-S.jpg",
            url_medium=f"{base}-M.jpg",
            url_large=f"{base}-L.jpg",
        )

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        if "doc" in match.entity:
            return self._map_search_doc(match, item)
        return self._map_hydrated(match, item)

    def _map_hydrated(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload:
        edition: dict[str, Any] = match.entity.get("edition") or {}
        work: dict[str, Any] = match.entity.get("work") or {}
        authors = unique_strings(match.entity.get("authors") or [])

        work_id = olid(work.get("key"))
        edition_id = olid(edition.get("key"))
        description = work.get("description")
        if isinstance(description, dict):
            description = description.get("value")

        openlibrary_ids: dict[str, list[str]] = {}
        if work_id:
            openlibrary_ids["work"] = [work_id]
        if edition_id:
            openlibrary_ids["edition"] = [edition_id]
        identifiers: dict[str, Any] = {"openlibrary": openlibrary_ids}
        isbn13 = unique_strings(edition.get("isbn_13"))
        isbn10 = unique_strings(edition.get("isbn_10"))
        if isbn13:
            identifiers["isbn13"] = isbn13
        if isbn10:
            identifiers["isbn10"] = isbn10

        covers = edition.get("covers") or work.get("covers") or []
        cover = self._cover(covers[0] if covers else None)

        physical = {
            "format": edition.get("physical_format") or item.format,
            "pages": edition.get("number_of_pages"),
            "languages": [
                olid(lang.get("key"))
                for lang in edition.get("languages") or []
                if isinstance(lang, dict)
            ],
        }
        publishers = unique_strings(edition.get("publishers"))
        year = (
            extract_year(work.get("first_publish_date"))
            or extract_year(edition.get("publish_date"))
            or item.year
        )
        title = normalize_string(work.get("title") or edition.get("title") or item.title)

        urls = {}
        if work_id:
            urls["work"] = f"{self.base_url}/works/{work_id}"
        if edition_id:
            urls["edition"] = f"{self.base_url}/books/{edition_id}"

        editions = []
        if edition_id:
            editions.append(
                {
                    "provider": self.provider_name,
                    "id": edition_id,
                    "title": edition.get("title") or title,
                    "publishers": publishers,
                    "publishDate": edition.get("publish_date"),
                    "identifiers": {"isbn13": isbn13, "isbn10": isbn10},
                }
            )

        return CollectablePayload(
            kind=self.domain.value,
            title=title,
            subtitle=normalize_string(work.get("subtitle") or edition.get("subtitle")) or None,
            description=normalize_string(description) or None,
            primary_creator=authors[0] if authors else item.creator,
            creators=authors or unique_strings([item.creator]),
            publisher=publishers[0] if publishers else item.publisher,
            year=year,
            tags=unique_strings((work.get("subjects") or [])[:MAX_SUBJECTS]),
            genre=list(item.genres),
            identifiers=identifiers,
            images=[cover] if cover else [],
            physical={key: value for key, value in physical.items() if value},
            editions=editions,
            sources=[
                SourceRecord(
                    provider=self.provider_name,
                    ids={key: value[0] for key, value in openlibrary_ids.items()},
                    urls=urls,
                    raw={"score": match.score, "isbn": match.entity.get("isbn")},
                )
            ],
        )

    def _map_search_doc(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload:
        doc: dict[str, Any] = match.entity["doc"]
        authors = unique_strings(doc.get("author_name"))
        publishers = unique_strings(doc.get("publisher"))
        work_id = olid(doc.get("key"))

        identifiers: dict[str, Any] = {"openlibrary": {"work": [work_id]} if work_id else {}}
        isbns = [normalize_isbn(code) for code in doc.get("isbn") or []]
        isbn13 = next((code for code in isbns if code and len(code) == 13), None)
        isbn10 = next((code for code in isbns if code and len(code) == 10), None)
        if isbn13:
            identifiers["isbn13"] = [isbn13]
        if isbn10:
            identifiers["isbn10"] = [isbn10]

        cover = self._cover(doc.get("cover_i"))
        year = normalize_string(doc.get("first_publish_year")) or None
        if not year and doc.get("publish_year"):
            year = normalize_string(doc["publish_year"][0]) or None

        return CollectablePayload(
            kind=self.domain.value,
            title=normalize_string(doc.get("title") or item.title),
            subtitle=normalize_string(doc.get("subtitle")) or None,
            primary_creator=authors[0] if authors else item.creator,
            creators=authors or unique_strings([item.creator]),
            publisher=publishers[0] if publishers else item.publisher,
            year=year or item.year,
            tags=unique_strings((doc.get("subject") or [])[:MAX_SUBJECTS]),
            genre=list(item.genres),
            identifiers=identifiers,
            images=[cover] if cover else [],
            physical={"format": item.format} if item.format else {},
            sources=[
                SourceRecord(
                    provider=self.provider_name,
                    ids={"work": work_id} if work_id else {},
                    urls={"work": f"{self.base_url}/works/{work_id}"} if work_id else {},
                    raw={"score": match.score},
                )
            ],
        )
