"""
TMDB adapter for TV series.

Same lookup flow as movies against the /tv endpoints: a known TMDB TV id
or IMDb id short-circuits the search, otherwise /search/tv results are
scored by first air date and the winner's details are fetched with
credits, content ratings and keywords appended.
"""

from typing import Any

from shelfresolver.models.collectable import CollectablePayload, SourceRecord, unique_strings
from shelfresolver.models.domain import MediaDomain
from shelfresolver.models.enrichment import ProviderResolved
from shelfresolver.models.extracted_item import ExtractedItem
from shelfresolver.providers.base import extract_year, normalize_string
from shelfresolver.providers.movies import CERTIFICATION_REGIONS, MAX_CAST, MovieCatalogService

TV_DETAILS_APPEND = "credits,content_ratings,keywords"


def find_content_rating(ratings: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Rating from the first preferred region that has one, else any region."""
    regions = [*CERTIFICATION_REGIONS, *(entry.get("iso_3166_1") for entry in ratings)]
    for region in regions:
        entry = next((e for e in ratings if e.get("iso_3166_1") == region), None)
        if entry and entry.get("rating"):
            return {"region": region, "rating": entry["rating"]}
    return None


class TvCatalogService(MovieCatalogService):
    """TV series lookups against TMDB."""

    domain = MediaDomain.TV

    media_path = "tv"
    details_append = TV_DETAILS_APPEND
    date_key = "first_air_date"

    def _year_params(self, year: int) -> dict[str, Any]:
        return {"first_air_date_year": year}

    def map_entity(self, match: ProviderResolved, item: ExtractedItem) -> CollectablePayload | None:
        show = match.entity
        if not show.get("id"):
            return None

        creators = unique_strings(person.get("name") for person in show.get("created_by") or [])
        cast_members = ((show.get("credits") or {}).get("cast") or [])[:MAX_CAST]
        cast = unique_strings(member.get("name") for member in cast_members)
        keywords_block = show.get("keywords") or {}
        keywords = keywords_block.get("results") or keywords_block.get("keywords") or []
        networks = unique_strings(n.get("name") for n in show.get("networks") or [])
        companies = unique_strings(c.get("name") for c in show.get("production_companies") or [])
        runtimes = show.get("episode_run_time") or []

        show_id = str(show["id"])
        first_air_date = show.get("first_air_date")
        extras = {
            "runtime": runtimes[0] if runtimes else None,
            "status": show.get("status"),
            "firstAirDate": first_air_date,
            "lastAirDate": show.get("last_air_date"),
            "numberOfSeasons": show.get("number_of_seasons"),
            "numberOfEpisodes": show.get("number_of_episodes"),
            "networks": networks,
            "contentRating": find_content_rating(
                (show.get("content_ratings") or {}).get("results") or []
            ),
            "originalName": show.get("original_name"),
            "originalLanguage": show.get("original_language"),
            "cast": cast,
        }

        primary_creator = creators[0] if creators else (cast[0] if cast else item.creator)
        return CollectablePayload(
            kind=self.domain.value,
            title=normalize_string(show.get("name") or show.get("original_name") or item.title),
            description=normalize_string(show.get("overview")) or None,
            primary_creator=primary_creator,
            creators=creators or unique_strings([primary_creator]),
            publisher=(networks or companies or [item.publisher])[0],
            year=extract_year(first_air_date) or item.year,
            tags=unique_strings(k.get("name") for k in keywords if isinstance(k, dict)),
            genre=unique_strings(g.get("name") for g in show.get("genres") or []),
            identifiers={"tmdb": {"tv": [show_id]}},
            images=self._images(show),
            physical={"format": item.format} if item.format else {},
            sources=[
                SourceRecord(
                    provider=self.provider_name,
                    ids={"tv": show_id},
                    urls={
                        "tv": f"https://www.themoviedb.org/tv/{show_id}",
                        "api": f"{self.base_url}/tv/{show_id}",
                    },
                    raw={
                        "score": match.score,
                        "popularity": show.get("popularity"),
                        "voteCount": show.get("vote_count"),
                    },
                )
            ],
            extras={key: value for key, value in extras.items() if value not in (None, [], "")},
        )
