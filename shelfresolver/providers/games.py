"""
IGDB adapter for video games.

IGDB sits behind Twitch OAuth2 client credentials. The access token is
cached on the adapter instance, fetched lazily under a lock, renewed a
minute before it expires, and force-refreshed once when IGDB answers 401.
"""

import asyncio
import logging
import time
from datetime import UTC, datetime
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
from shelfresolver.models.failure import ProviderConfigurationError, ProviderError
from shelfresolver.providers.base import (
    CatalogService,
    SleepFunc,
    normalize_compare,
    normalize_string,
)
from shelfresolver.providers.http import request_json
from shelfresolver.services.fingerprint import make_collectable_fingerprint

logger = logging.getLogger(__name__)

# Main games, remakes, remasters, expanded games, ports
GAME_CATEGORIES = (0, 8, 9, 10, 11)

# Candidates scoring below this are not accepted
MIN_ACCEPTED_SCORE = 25

# Seconds before expiry at which a cached token is renewed
TOKEN_EXPIRY_SKEW = 60

IMAGE_URL = "https://images.igdb.com/igdb/image/upload/{size}/{image_id}.jpg"

SEARCH_FIELDS = (
    "id",
    "name",
    "slug",
    "summary",
    "storyline",
    "first_release_date",
    "release_dates.date",
    "release_dates.region",
    "release_dates.platform.name",
    "release_dates.platform.abbreviation",
    "platforms.name",
    "platforms.abbreviation",
    "genres.name",
    "involved_companies.company.name",
    "involved_companies.developer",
    "involved_companies.publisher",
    "keywords.name",
    "collection.name",
    "franchises.name",
    "alternative_names.name",
    "cover.image_id",
    "screenshots.image_id",
    "artworks.image_id",
    "websites.url",
    "url",
)

IGDB_REGIONS = {
    1: "Europe",
    2: "North America",
    3: "Australia",
    4: "New Zealand",
    5: "Japan",
    6: "China",
    7: "Asia",
    8: "Worldwide",
    9: "Korea",
    10: "Brazil",
}
WORLDWIDE_REGION = 8


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_search_query(title: str, limit: int, platform: str | None = None) -> str:
    """Apicalypse query for a title search, optionally filtered by platform."""
    capped = max(1, min(limit, 50))
    where = f"where category = ({', '.join(str(c) for c in GAME_CATEGORIES)})"
    if platform:
        where += f' & platforms.name ~ *"{_escape(platform)}"*'
    return "\n".join(
        [
            f'search "{_escape(normalize_string(title))}";',
            f"fields {','.join(SEARCH_FIELDS)};",
            f"{where};",
            f"limit {capped};",
        ]
    )


def image_url(image_id: Any, size: str) -> str | None:
    if not image_id:
        return None
    return IMAGE_URL.format(size=size, image_id=image_id)


def seconds_to_year(value: Any) -> str | None:
    if not isinstance(value, int | float) or value <= 0:
        return None
    return str(datetime.fromtimestamp(value, UTC).year)


def company_names(game: dict[str, Any], role: str) -> list[str]:
    return unique_strings(
        (entry.get("company") or {}).get("name")
        for entry in game.get("involved_companies") or []
        if isinstance(entry, dict) and entry.get(role)
    )


def platform_names(game: dict[str, Any]) -> list[str]:
    names: list[Any] = [
        platform.get("name") or platform.get("abbreviation")
        for platform in game.get("platforms") or []
        if isinstance(platform, dict)
    ]
    for release in game.get("release_dates") or []:
        platform = (release or {}).get("platform") or {}
        names.append(platform.get("name") or platform.get("abbreviation"))
    return unique_strings(names)


def release_year(game: dict[str, Any]) -> str | None:
    dates = [game.get("first_release_date")]
    dates += [(release or {}).get("date") for release in game.get("release_dates") or []]
    valid = [d for d in dates if isinstance(d, int | float) and d > 0]
    return seconds_to_year(min(valid)) if valid else None


def _role_points(names: list[str], needle: str, exact: int, partial: int) -> int:
    if not needle or not names:
        return 0
    normalized = [normalize_compare(name) for name in names]
    if needle in normalized:
        return exact
    if any(needle in name for name in normalized):
        return partial
    return 0


def score_game(
    game: dict[str, Any],
    title: str,
    developer: str = "",
    publisher: str = "",
    platform: str = "",
    year: str = "",
) -> int:
    """
    Relevance of an IGDB game.

    Title exact +60 / containment +40 / length within 2 +20; developer
    +40 / +20; publisher +25 / +10; platform +25 / +10; year +15; +2 when
    the game has keywords.
    """
    score = 0
    needle = normalize_compare(title)
    name = normalize_compare(game.get("name"))
    if needle and name:
        if name == needle:
            score += 60
        elif needle in name or name in needle:
            score += 40
        elif abs(len(name) - len(needle)) <= 2:
            score += 20

    score += _role_points(company_names(game, "developer"), normalize_compare(developer), 40, 20)
    score += _role_points(company_names(game, "publisher"), normalize_compare(publisher), 25, 10)
    score += _role_points(platform_names(game), normalize_compare(platform), 25, 10)

    if year and release_year(game) == normalize_string(year):
        score += 15
    if game.get("keywords"):
        score += 2
    return score


class GameCatalogService(CatalogService):
    """Video game lookups against IGDB."""

    provider_name = "igdb"
    domain = MediaDomain.GAME
    timeout_backoff = 1.0

    def __init__(
        self,
        *,
        client_id: str | None = None,
        client_secret: str | None = None,
        base_url: str | None = None,
        auth_url: str | None = None,
        max_results: int | None = None,
        timeout: float | None = None,
        concurrency: int | None = None,
        retries: int | None = None,
        enable_second_pass: bool | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        super().__init__(
            timeout=timeout or settings.igdb_timeout,
            concurrency=concurrency or settings.igdb_concurrency,
            retries=settings.provider_retries if retries is None else retries,
            enable_second_pass=(
                settings.enable_second_pass if enable_second_pass is None else enable_second_pass
            ),
            client=client,
            sleep=sleep,
        )
        self.client_id = settings.igdb_client_id if client_id is None else client_id
        self.client_secret = settings.igdb_client_secret if client_secret is None else client_secret
        self.base_url = (base_url or settings.igdb_base_url).rstrip("/")
        self.auth_url = auth_url or settings.igdb_auth_url
        self.max_results = max_results or settings.igdb_max_results
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def missing_configuration(self) -> str | None:
        if not self.client_id:
            return "igdb_client_id"
        if not self.client_secret:
            return "igdb_client_secret"
        return None

    # --- Token ---

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """Return a valid access token, fetching one when needed."""
        missing = self.missing_configuration()
        if missing is not None:
            raise ProviderConfigurationError(self.provider_name, missing)
        async with self._token_lock:
            now = time.monotonic()
            fresh = self._token and self._token_expires_at > now + TOKEN_EXPIRY_SKEW
            if fresh and not force_refresh:
                return self._token

            payload = await request_json(
                self._client,
                self.provider_name,
                "POST",
                self.auth_url,
                params={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "client_credentials",
                },
            )
            token = normalize_string(payload.get("access_token"))
            if not token:
                msg = "IGDB token response did not include an access_token"
                raise ProviderError(self.provider_name, msg)
            self._token = token
            self._token_expires_at = now + float(payload.get("expires_in") or 0)
            logger.info("Fetched IGDB access token")
            return token

    async def refresh_credentials(self) -> bool:
        try:
            await self.get_access_token(force_refresh=True)
        except ProviderError as e:
            logger.warning("IGDB token refresh failed: %s", e)
            return False
        return True

    async def _query_games(self, query: str) -> list[dict[str, Any]]:
        token = await self.get_access_token()
        payload = await request_json(
            self._client,
            self.provider_name,
            "POST",
            f"{self.base_url}/games",
            content=query,
            headers={"Client-ID": self.client_id, "Authorization": f"Bearer {token}"},
        )
        return [game for game in payload or [] if isinstance(game, dict)]

    # --- Lookup ---

    async def safe_lookup(
        self, item: ExtractedItem, retries: int | None = None
    ) -> ProviderResolved | None:
        title = normalize_string(item.title)
        if not title or not self.is_configured():
            return None

        expected = {
            "title": title,
            "developer": normalize_string(item.developer or item.creator),
            "publisher": normalize_string(item.publisher),
            "platform": normalize_string(item.platform),
            "year": normalize_string(item.year),
        }
        context = {"provider": self.provider_name, **item.summary()}

        games = None
        if expected["platform"]:
            query = build_search_query(title, self.max_results, expected["platform"])
            games = await self.with_retries(lambda: self._query_games(query), retries, context)
        if not games:
            query = build_search_query(title, self.max_results)
            games = await self.with_retries(lambda: self._query_games(query), retries, context)
        if not games:
            logger.info("No IGDB results for %r", title)
            return None

        scored = [(score_game(game, **expected), game) for game in games]
        best_score, best = max(scored, key=lambda pair: pair[0])
        if best_score < MIN_ACCEPTED_SCORE:
            logger.info(
                "Best IGDB candidate %r scored %d for %r; rejected",
                best.get("name"),
                best_score,
                title,
            )
            return None
        return ProviderResolved(
            provider=self.provider_name, score=float(best_score), entity=best, query=expected
        )

    # --- Mapping ---

    def _images(self, game: dict[str, Any]) -> list[ImageRef]:
        images: list[ImageRef] = []
        cover_id = (game.get("cover") or {}).get("image_id")
        if cover_id:
            images.append(
                ImageRef(
                    kind="cover",
                    provider=self.provider_name,
                    url_small=image_url(cover_id, "t_thumb"),
                    url_medium=image_url(cover_id, "t_cover_big"),
                    url_large=image_url(cover_id, "t_cover_big_2x"),
                )
            )
        for kind, key, large, medium in (
            ("screenshot", "screenshots", "t_screenshot_huge", "t_screenshot_big"),
            ("artwork", "artworks", "t_1080p", "t_720p"),
        ):
            for entry in game.get(key) or []:
                image_id = (entry or {}).get("image_id")
                if not image_id:
                    continue
                images.append(
                    ImageRef(
                        kind=kind,
                        provider=self.provider_name,
                        url_small=image_url(image_id, "t_thumb"),
                        url_medium=image_url(image_id, medium),
                        url_large=image_url(image_id, large),
                    )
                )
        return images

    @staticmethod
    def _pick_region(game: dict[str, Any], fallback: str | None) -> str | None:
        releases = [r for r in game.get("release_dates") or [] if isinstance(r, dict)]
        target = next((r for r in releases if r.get("region") == WORLDWIDE_REGION), None)
        target = target or next((r for r in releases if r.get("region")), None)
        if target and target["region"] in IGDB_REGIONS:
            return IGDB_REGIONS[target["region"]]
        return fallback

    @staticmethod
    def _pick_platform(game: dict[str, Any], fallback: str | None) -> str | None:
        names = platform_names(game)
        if not names:
            return fallback
        needle = normalize_compare(fallback)
        if needle:
            for name in names:
                if normalize_compare(name) == needle:
                    return name
            for name in names:
                if needle in normalize_compare(name):
                    return name
        return names[0]

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        game = match.entity
        if game.get("id") is None:
            return None

        game_id = str(game["id"])
        developers = company_names(game, "developer")
        publishers = company_names(game, "publisher")
        primary_creator = developers[0] if developers else (item.developer or item.creator)

        identifiers: dict[str, Any] = {"igdb": {"gameId": [game_id]}}
        if game.get("slug"):
            identifiers["igdb"]["slug"] = [game["slug"]]
        alternative_names = unique_strings(
            (alt or {}).get("name") for alt in game.get("alternative_names") or []
        )
        if alternative_names:
            identifiers["igdb"]["alternativeName"] = alternative_names

        keywords = unique_strings((k or {}).get("name") for k in game.get("keywords") or [])
        keywords += unique_strings(
            [(game.get("collection") or {}).get("name")]
            + [(f or {}).get("name") for f in game.get("franchises") or []]
        )

        summary_parts = (
            normalize_string(game.get("summary")),
            normalize_string(game.get("storyline")),
        )
        description = "\n\n".join(part for part in summary_parts if part)

        urls: dict[str, str] = {}
        if game.get("url"):
            urls["page"] = game["url"]
        for website in game.get("websites") or []:
            url = normalize_string((website or {}).get("url"))
            if "official" in url.lower() and "official" not in urls:
                urls["official"] = url
            elif "wiki" in url.lower() and "wiki" not in urls:
                urls["wiki"] = url

        ids = {"id": game_id}
        if game.get("slug"):
            ids["slug"] = game["slug"]

        return CollectablePayload(
            kind=self.domain.value,
            title=normalize_string(game.get("name") or item.title),
            description=description or item.description,
            primary_creator=primary_creator,
            creators=unique_strings([*developers, primary_creator]),
            publisher=publishers[0] if publishers else item.publisher,
            year=release_year(game) or item.year,
            platform=self._pick_platform(game, item.platform),
            region=self._pick_region(game, item.region),
            tags=unique_strings([*item.tags, *keywords]),
            genre=unique_strings((g or {}).get("name") for g in game.get("genres") or []),
            identifiers=identifiers,
            images=self._images(game),
            physical={"format": item.format or "physical"},
            sources=[
                SourceRecord(
                    provider=self.provider_name, ids=ids, urls=urls, raw={"score": match.score}
                )
            ],
            extras={"developer": developers[0]} if developers else {},
            fingerprint=make_collectable_fingerprint(unique_key=f"igdb:{game_id}"),
        )
