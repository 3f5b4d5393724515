"""
Hardcover adapter for books.

Hardcover exposes a single GraphQL endpoint authenticated with a bearer
token. Lookup order:
1. ISBN-13 then ISBN-10 candidates, each matched against editions.
2. A weighted text search by title and author; the top hits are fetched
   in one details query and the best book is picked by title, author and
   year agreement.

GraphQL reports most failures in an `errors` array on an HTTP 200; those
are raised as ProviderError so the retry policy treats them as final.
"""

import json
import logging
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
from shelfresolver.models.failure import ProviderError
from shelfresolver.providers.base import (
    CatalogService,
    SleepFunc,
    extract_year,
    normalize_compare,
    normalize_string,
)
from shelfresolver.providers.books import isbn_candidates
from shelfresolver.providers.http import request_json

logger = logging.getLogger(__name__)

SEARCH_FIELDS = "title,isbns,series_names,author_names,alternative_titles"
SEARCH_WEIGHTS = "5,5,3,1,1"
SEARCH_SORT = "_text_match:desc,users_count:desc"
MAX_CANDIDATES = 5

SEARCH_QUERY = """
query HardcoverSearch($query: String!, $queryType: String!, $perPage: Int!, $page: Int!,
                      $fields: String, $weights: String, $sort: String) {
  search(query: $query, query_type: $queryType, per_page: $perPage, page: $page,
         fields: $fields, weights: $weights, sort: $sort) {
    ids
    results
    query
  }
}
"""

_BOOK_FIELDS = """
    id
    title
    subtitle
    description
    release_date
    release_year
    slug
    cached_tags
    cached_image
    cached_contributors
    contributions {
      contribution
      author {
        name
      }
    }
"""

_EDITION_FIELDS = """
    id
    isbn_13
    isbn_10
    asin
    pages
    release_date
    edition_format
    physical_format
    cached_image
    language {
      language
    }
    publisher {
      name
    }
"""

BOOK_DETAILS_QUERY = f"""
query HardcoverBookDetails($ids: [Int!]) {{
  books(where: {{id: {{_in: $ids}}}}) {{
{_BOOK_FIELDS}
    default_physical_edition {{
{_EDITION_FIELDS}
    }}
  }}
}}
"""

EDITION_BY_ISBN_QUERY = """
query HardcoverEditionByIsbn($isbn: String!) {{
  editions(where: {{{column}: {{_eq: $isbn}}}}, order_by: {{release_date: desc}}, limit: 5) {{
{edition}
    book {{
{book}
    }}
  }}
}}
"""


def parse_json_maybe(value: Any) -> Any:
    """Decode a JSON-encoded string field; anything else is returned as is."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text.startswith(("{", "[")):
        return value
    try:
        return json.loads(text)
    except ValueError:
        return value


def search_documents(raw: Any) -> list[dict[str, Any]]:
    """Search hits as plain documents, whatever envelope the search used."""
    parsed = parse_json_maybe(raw)
    if isinstance(parsed, dict):
        if isinstance(parsed.get("hits"), list):
            parsed = [
                hit.get("document") or hit for hit in parsed["hits"] if isinstance(hit, dict)
            ]
        else:
            parsed = parsed.get("documents") or parsed.get("results") or []
    if not isinstance(parsed, list):
        return []
    return [doc for doc in parsed if isinstance(doc, dict)]


def contributor_names(book: dict[str, Any]) -> list[str]:
    """Author names from contributions, falling back to cached contributors."""
    names = [
        (entry.get("author") or {}).get("name")
        for entry in book.get("contributions") or []
        if isinstance(entry, dict)
    ]
    if not any(names):
        cached = parse_json_maybe(book.get("cached_contributors"))
        if isinstance(cached, list):
            names = [
                entry.get("name") or entry.get("author_name") or entry.get("author")
                for entry in cached
                if isinstance(entry, dict)
            ]
    return unique_strings(name for name in names if isinstance(name, str))


def _title_points(candidate: Any, expected: str) -> int:
    title = normalize_compare(candidate)
    if title == expected:
        return 100
    if title and (expected in title or title in expected):
        return 60
    return -5


def _author_points(names: list[str], expected: str) -> int:
    normalized = [normalize_compare(name) for name in names]
    if expected in normalized:
        return 40
    if any(expected in name for name in normalized):
        return 20
    return -5


def score_search_hit(hit: dict[str, Any], title: str, author: str) -> float:
    """Rank a search hit before its details are fetched."""
    score = 0.0
    expected_title = normalize_compare(title)
    if expected_title:
        score += _title_points(hit.get("title"), expected_title)
    expected_author = normalize_compare(author)
    if expected_author:
        names = parse_json_maybe(hit.get("author_names")) or []
        if isinstance(names, str):
            names = names.split(",")
        score += _author_points([str(name) for name in names], expected_author)
    users = hit.get("users_count")
    if isinstance(users, int | float):
        score += min(users / 100, 10)
    return score


def score_book(book: dict[str, Any], title: str, author: str, year: str | None) -> float:
    """
    Title +100 exact / +60 contained / -5 otherwise, author +40 / +20 / -5,
    +10 when the release year agrees.
    """
    score = 0.0
    expected_title = normalize_compare(title)
    if expected_title:
        score += _title_points(book.get("title"), expected_title)
    expected_author = normalize_compare(author)
    if expected_author:
        score += _author_points(contributor_names(book), expected_author)
    book_year = normalize_string(book.get("release_year")) or extract_year(
        book.get("release_date")
    )
    if year and book_year == year:
        score += 10
    return score


def image_variants(value: Any, provider: str) -> ImageRef | None:
    """Cover variants from a cached_image field (URL string or object)."""
    parsed = parse_json_maybe(value)
    if isinstance(parsed, str) and parsed.strip():
        url = parsed.strip()
        return ImageRef(
            kind="cover", provider=provider, url_small=url, url_medium=url, url_large=url
        )
    if not isinstance(parsed, dict):
        return None
    large = parsed.get("url_large") or parsed.get("large") or parsed.get("url")
    medium = parsed.get("url_medium") or parsed.get("medium") or large
    small = parsed.get("url_small") or parsed.get("small") or medium
    if not (large or medium or small):
        return None
    return ImageRef(
        kind="cover",
        provider=provider,
        url_small=small,
        url_medium=medium or small,
        url_large=large or medium or small,
    )


def cached_tags(book: dict[str, Any]) -> list[str]:
    """Tag names from cached_tags, a list or a category -> list mapping."""
    cached = parse_json_maybe(book.get("cached_tags"))
    groups = cached.values() if isinstance(cached, dict) else [cached]
    tags: list[str] = []
    for group in groups:
        if not isinstance(group, list):
            continue
        for entry in group:
            if isinstance(entry, str):
                tags.append(entry)
            elif isinstance(entry, dict):
                tags.append(entry.get("tag") or entry.get("name") or "")
    return unique_strings(tags)


class HardcoverCatalogService(CatalogService):
    """Book lookups against the Hardcover GraphQL API."""

    provider_name = "hardcover"
    domain = MediaDomain.BOOK
    timeout_backoff = 1.0

    def __init__(
        self,
        *,
        api_token: str | None = None,
        base_url: str | None = None,
        search_limit: int | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        retries: int | None = None,
        enable_second_pass: bool | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        super().__init__(
            timeout=timeout or settings.hardcover_timeout,
            concurrency=concurrency or settings.hardcover_concurrency,
            retries=settings.provider_retries if retries is None else retries,
            enable_second_pass=(
                settings.enable_second_pass if enable_second_pass is None else enable_second_pass
            ),
            client=client,
            sleep=sleep,
        )
        self.api_token = settings.hardcover_api_token if api_token is None else api_token
        self.base_url = base_url or settings.hardcover_base_url
        self.search_limit = search_limit or settings.hardcover_search_limit

    def missing_configuration(self) -> str | None:
        return None if self.api_token else "hardcover_api_token"

    async def graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """
        Run one GraphQL operation and return its `data` object.

        Raises:
            ProviderError: If the response carries GraphQL errors, plus
                everything request_json raises
        """
        payload = await request_json(
            self._client,
            self.provider_name,
            "POST",
            self.base_url,
            json={"query": query, "variables": variables},
            headers={"authorization": self.api_token},
        )
        if not isinstance(payload, dict):
            raise ProviderError(self.provider_name, "hardcover returned a non-object body")
        errors = payload.get("errors") or []
        if errors:
            messages = "; ".join(
                str(error.get("message")) for error in errors if isinstance(error, dict)
            )
            raise ProviderError(
                self.provider_name, f"hardcover GraphQL error: {messages or 'unknown error'}"
            )
        return payload.get("data") or {}

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        if not self.is_configured():
            return None

        title = normalize_string(item.title)
        author = normalize_string(item.creator)
        context = {"provider": self.provider_name, **item.summary()}

        for isbn in isbn_candidates(item.identifiers):
            entity = await self.with_retries(
                lambda isbn=isbn: self._edition_by_isbn(isbn), retries, context
            )
            if entity is not None:
                logger.info("Resolved %r by ISBN %s", title, isbn)
                return ProviderResolved(
                    provider=self.provider_name, score=100.0, entity=entity, query={"isbn": isbn}
                )

        if not title:
            return None
        year = extract_year(item.year)
        return await self.with_retries(
            lambda: self._search_and_fetch(title, author, year), retries, context
        )

    async def _edition_by_isbn(self, isbn: str) -> dict[str, Any] | None:
        column = "isbn_13" if len(isbn) == 13 else "isbn_10"
        query = EDITION_BY_ISBN_QUERY.format(
            column=column, edition=_EDITION_FIELDS, book=_BOOK_FIELDS
        )
        data = await self.graphql(query, {"isbn": isbn})
        editions = [e for e in data.get("editions") or [] if isinstance(e, dict)]
        if not editions or not editions[0].get("book"):
            return None
        edition = editions[0]
        return {"book": edition["book"], "edition": edition, "isbn": isbn}

    async def _search_and_fetch(
        self, title: str, author: str, year: str | None
    ) -> ProviderResolved | None:
        query_text = " ".join(part for part in (title, author) if part)
        data = await self.graphql(
            SEARCH_QUERY,
            {
                "query": query_text,
                "queryType": "Book",
                "perPage": self.search_limit,
                "page": 1,
                "fields": SEARCH_FIELDS,
                "weights": SEARCH_WEIGHTS,
                "sort": SEARCH_SORT,
            },
        )
        search = data.get("search") or {}
        hits = search_documents(search.get("results"))
        if hits:
            hits.sort(key=lambda hit: score_search_hit(hit, title, author), reverse=True)
            ids = [hit.get("id") for hit in hits]
        else:
            ids = parse_json_maybe(search.get("ids")) or []
        book_ids = [int(i) for i in ids if str(i).isdigit()][:MAX_CANDIDATES]
        if not book_ids:
            return None

        details = await self.graphql(BOOK_DETAILS_QUERY, {"ids": book_ids})
        books = [book for book in details.get("books") or [] if isinstance(book, dict)]
        if not books:
            return None

        def score(book: dict[str, Any]) -> float:
            return score_book(book, title, author, year)

        best = max(books, key=score)
        # Neither title nor author agreed
        if score(best) <= 0:
            return None
        return ProviderResolved(
            provider=self.provider_name,
            score=score(best),
            entity={"book": best, "edition": best.get("default_physical_edition")},
            query={"query": query_text, "ids": book_ids},
        )

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        book: dict[str, Any] = match.entity.get("book") or {}
        if not book.get("id"):
            return None
        edition: dict[str, Any] = match.entity.get("edition") or {}

        contributors = contributor_names(book)
        primary_creator = next(
            (
                normalize_string((entry.get("author") or {}).get("name"))
                for entry in book.get("contributions") or []
                if isinstance(entry, dict)
                and normalize_compare(entry.get("contribution")) == "author"
                and (entry.get("author") or {}).get("name")
            ),
            contributors[0] if contributors else item.creator,
        )

        book_id = str(book["id"])
        edition_id = str(edition["id"]) if edition.get("id") is not None else None
        hardcover_ids: dict[str, list[str]] = {"book": [book_id]}
        if edition_id:
            hardcover_ids["edition"] = [edition_id]
        identifiers: dict[str, Any] = {"hardcover": hardcover_ids}
        for key, field in (("isbn13", "isbn_13"), ("isbn10", "isbn_10"), ("asin", "asin")):
            values = unique_strings(edition.get(field))
            if values:
                identifiers[key] = values

        cover = image_variants(edition.get("cached_image"), self.provider_name) or image_variants(
            book.get("cached_image"), self.provider_name
        )
        publisher = normalize_string((edition.get("publisher") or {}).get("name")) or None
        language = normalize_string((edition.get("language") or {}).get("language"))
        book_format = (
            normalize_string(edition.get("physical_format"))
            or normalize_string(edition.get("edition_format"))
            or item.format
        )
        physical = {
            "format": book_format,
            "pages": edition.get("pages"),
            "languages": [language] if language else [],
        }

        editions = []
        if edition_id:
            editions.append(
                {
                    "provider": self.provider_name,
                    "id": edition_id,
                    "title": edition.get("title") or book.get("title"),
                    "publishers": unique_strings([publisher]),
                    "publishDate": edition.get("release_date") or book.get("release_date"),
                    "identifiers": {
                        key: identifiers.get(key, []) for key in ("isbn13", "isbn10", "asin")
                    },
                }
            )

        urls = {}
        if book.get("slug"):
            urls["book"] = f"https://hardcover.app/books/{book['slug']}"

        return CollectablePayload(
            kind=self.domain.value,
            title=normalize_string(book.get("title") or item.title),
            subtitle=normalize_string(book.get("subtitle")) or None,
            description=normalize_string(book.get("description")) or None,
            primary_creator=primary_creator,
            creators=contributors or unique_strings([primary_creator]),
            publisher=publisher or item.publisher,
            year=(
                normalize_string(book.get("release_year"))
                or extract_year(book.get("release_date"))
                or extract_year(edition.get("release_date"))
                or item.year
            ),
            tags=cached_tags(book),
            genre=list(item.genres),
            identifiers=identifiers,
            images=[cover] if cover else [],
            physical={key: value for key, value in physical.items() if value},
            editions=editions,
            sources=[
                SourceRecord(
                    provider=self.provider_name,
                    ids={key: value[0] for key, value in hardcover_ids.items()},
                    urls=urls,
                    raw={"score": match.score, "isbn": match.entity.get("isbn")},
                )
            ],
        )
