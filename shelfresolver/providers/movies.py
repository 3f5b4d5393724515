"""
TMDB adapter for movies.

Known ids short-circuit the search: a TMDB movie id fetches details
directly, an IMDb id goes through /find. Otherwise /search/movie results
are scored and the winner's details are fetched with credits, release
dates and keywords appended.

The media type is a class attribute so the TV adapter can reuse the flow.
"""

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
from shelfresolver.providers.base import (
    CatalogService,
    SleepFunc,
    extract_year,
    normalize_compare,
    normalize_string,
)
from shelfresolver.services.merge import identifier_values

logger = logging.getLogger(__name__)

DETAILS_APPEND = "credits,release_dates,keywords"
MAX_CAST = 6
CERTIFICATION_REGIONS = ("US", "GB", "CA")


def score_candidate(
    candidate: dict[str, Any], title: str, year: int | None, date_key: str = "release_date"
) -> float:
    """
    Relevance of a search result.

    popularity, +50 exact / +25 containing title, year proximity
    (+20 / +10 / +5, else minus the distance), +2 for a dated candidate
    when no year was given, up to +10 for vote count, +2 for a poster.
    """
    score = float(candidate.get("popularity") or 0)
    needle = normalize_compare(title)
    haystack = normalize_compare(
        candidate.get("title")
        or candidate.get("name")
        or candidate.get("original_title")
        or candidate.get("original_name")
    )
    if needle and haystack:
        if haystack == needle:
            score += 50
        elif needle in haystack or haystack in needle:
            score += 25

    release_year = extract_year(candidate.get(date_key))
    if release_year and year:
        diff = abs(int(release_year) - year)
        if diff == 0:
            score += 20
        elif diff == 1:
            score += 10
        elif diff <= 2:
            score += 5
        else:
            score -= diff
    elif release_year:
        score += 2

    if candidate.get("vote_count"):
        score += min(float(candidate["vote_count"]) / 100, 10)
    if candidate.get("poster_path"):
        score += 2
    return score


def find_certification(release_dates: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Certification from the first preferred region that has one."""
    regions = [*CERTIFICATION_REGIONS, *(entry.get("iso_3166_1") for entry in release_dates)]
    for region in regions:
        entry = next((e for e in release_dates if e.get("iso_3166_1") == region), None)
        if not entry:
            continue
        for release in entry.get("release_dates") or []:
            if release.get("certification"):
                return {
                    "region": region,
                    "certification": release["certification"],
                    "releaseDate": release.get("release_date"),
                }
    return None


class MovieCatalogService(CatalogService):
    """Movie lookups against TMDB."""

    provider_name = "tmdb"
    domain = MediaDomain.MOVIE
    timeout_backoff = 0.5

    # TMDB media type: search and details paths, identifier namespace
    media_path = "movie"
    details_append = DETAILS_APPEND
    date_key = "release_date"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        image_base_url: str | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        retries: int | None = None,
        enable_second_pass: bool | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        super().__init__(
            timeout=timeout or settings.tmdb_timeout,
            concurrency=concurrency or settings.tmdb_concurrency,
            retries=settings.provider_retries if retries is None else retries,
            enable_second_pass=(
                settings.enable_second_pass if enable_second_pass is None else enable_second_pass
            ),
            client=client,
            sleep=sleep,
        )
        self.api_key = settings.tmdb_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.tmdb_base_url).rstrip("/")
        self.image_base_url = (image_base_url or settings.tmdb_image_base_url).rstrip("/")

    def missing_configuration(self) -> str | None:
        return None if self.api_key else "tmdb_api_key"

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        if not self.is_configured():
            return None

        context = {"provider": self.provider_name, **item.summary()}

        for tmdb_id in identifier_values(item.identifiers, f"tmdb.{self.media_path}"):
            details = await self.with_retries(lambda i=tmdb_id: self._details(i), retries, context)
            if details:
                return self._resolved(details, 100.0, {"tmdbId": tmdb_id})

        for imdb_id in identifier_values(item.identifiers, "imdb"):
            details = await self.with_retries(
                lambda i=imdb_id: self._find_imdb(i), retries, context
            )
            if details:
                return self._resolved(details, 100.0, {"imdbId": imdb_id})

        title = normalize_string(item.title)
        if not title:
            return None
        year_text = extract_year(item.year)
        year = int(year_text) if year_text else None

        async def search_and_fetch() -> ProviderResolved | None:
            results = await self._search(title, year)
            if not results:
                return None

            def score(candidate: dict[str, Any]) -> float:
                return score_candidate(candidate, title, year, self.date_key)

            best = max(results, key=score)
            details = await self._details(best["id"])
            query = {"title": title, "year": year, "totalResults": len(results)}
            return self._resolved(details, score(best), query)

        return await self.with_retries(search_and_fetch, retries, context)

    def _resolved(
        self, details: dict[str, Any], score: float, query: dict[str, Any]
    ) -> ProviderResolved:
        return ProviderResolved(
            provider=self.provider_name, score=score, entity=details, query=query
        )

    def _year_params(self, year: int) -> dict[str, Any]:
        return {"year": year, "primary_release_year": year}

    async def _search(self, title: str, year: int | None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "query": title,
            "include_adult": "false",
            "language": "en-US",
            "page": 1,
            "api_key": self.api_key,
        }
        if year:
            params.update(self._year_params(year))
        payload = await self.get_json(f"{self.base_url}/search/{self.media_path}", params=params)
        results = payload.get("results") if isinstance(payload, dict) else None
        return [r for r in results or [] if isinstance(r, dict) and r.get("id")]

    async def _details(self, tmdb_id: Any) -> dict[str, Any]:
        return await self.get_json(
            f"{self.base_url}/{self.media_path}/{tmdb_id}",
            params={
                "append_to_response": self.details_append,
                "language": "en-US",
                "api_key": self.api_key,
            },
        )

    async def _find_imdb(self, imdb_id: str) -> dict[str, Any] | None:
        payload = await self.get_json(
            f"{self.base_url}/find/{imdb_id}",
            params={"external_source": "imdb_id", "api_key": self.api_key},
        )
        key = f"{self.media_path}_results"
        results = payload.get(key) if isinstance(payload, dict) else None
        if not results:
            return None
        return await self._details(results[0]["id"])

    def _image(self, kind: str, path: str | None) -> ImageRef | None:
        if not path:
            return None
        path = path if path.startswith("/") else f"/{path}"
        return ImageRef(
            kind=kind,
            provider=self.provider_name,
            url_small=f"{self.image_base_url}/w185{path}",
            url_medium=f"{self.image_base_url}/w342{path}",
            url_large=f"{self.image_base_url}/w780{path}",
        )

    def _images(self, entity: dict[str, Any]) -> list[ImageRef]:
        return [
            image
            for image in (
                self._image("poster", entity.get("poster_path")),
                self._image("backdrop", entity.get("backdrop_path")),
            )
            if image is not None
        ]

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        movie = match.entity
        if not movie.get("id"):
            return None

        credits = movie.get("credits") or {}
        directors = unique_strings(
            member.get("name")
            for member in credits.get("crew") or []
            if normalize_compare(member.get("job")) == "director"
        )
        cast_members = (credits.get("cast") or [])[:MAX_CAST]
        cast = unique_strings(member.get("name") for member in cast_members)
        keywords_block = movie.get("keywords") or {}
        keywords = keywords_block.get("keywords") or keywords_block.get("results") or []

        movie_id = str(movie["id"])
        imdb_id = movie.get("imdb_id")
        identifiers: dict[str, Any] = {"tmdb": {"movie": [movie_id]}}
        if imdb_id:
            identifiers["imdb"] = [str(imdb_id)]

        images = self._images(movie)

        urls = {
            "movie": f"https://www.themoviedb.org/movie/{movie_id}",
            "api": f"{self.base_url}/movie/{movie_id}",
        }
        if imdb_id:
            urls["imdb"] = f"https://www.imdb.com/title/{imdb_id}/"

        companies = unique_strings(c.get("name") for c in movie.get("production_companies") or [])
        extras = {
            "runtime": movie.get("runtime"),
            "tagline": movie.get("tagline"),
            "releaseDate": movie.get("release_date"),
            "certification": find_certification(
                (movie.get("release_dates") or {}).get("results") or []
            ),
            "originalTitle": movie.get("original_title"),
            "originalLanguage": movie.get("original_language"),
            "productionCompanies": companies,
            "cast": cast,
        }

        primary_creator = directors[0] if directors else (cast[0] if cast else item.creator)
        return CollectablePayload(
            kind=self.domain.value,
            title=normalize_string(
                movie.get("title") or movie.get("original_title") or item.title
            ),
            description=normalize_string(movie.get("overview")) or None,
            primary_creator=primary_creator,
            creators=directors or unique_strings([primary_creator]),
            publisher=companies[0] if companies else item.publisher,
            year=extract_year(movie.get("release_date")) or item.year,
            tags=unique_strings(k.get("name") for k in keywords if isinstance(k, dict)),
            genre=unique_strings(g.get("name") for g in movie.get("genres") or []),
            identifiers=identifiers,
            images=images,
            physical={"format": item.format} if item.format else {},
            sources=[
                SourceRecord(
                    provider=self.provider_name,
                    ids={"movie": movie_id, **({"imdb": str(imdb_id)} if imdb_id else {})},
                    urls=urls,
                    raw={
                        "score": match.score,
                        "popularity": movie.get("popularity"),
                        "voteCount": movie.get("vote_count"),
                    },
                )
            ],
            extras={key: value for key, value in extras.items() if value not in (None, [], "")},
        )
