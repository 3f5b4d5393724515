"""Routing from shelf types to catalog services."""

from shelfresolver.config import settings
from shelfresolver.models.domain import MediaDomain, resolve_domain
from shelfresolver.providers.base import CatalogService
from shelfresolver.providers.books import BookCatalogService
from shelfresolver.providers.completeness import normalize_min_score, score_book_collectable
from shelfresolver.providers.fallback import FallbackCatalogService
from shelfresolver.providers.games import GameCatalogService
from shelfresolver.providers.hardcover import HardcoverCatalogService
from shelfresolver.providers.movies import MovieCatalogService
from shelfresolver.providers.tv import TvCatalogService


class CatalogRegistry:
    """
    Holds the catalog service for each media domain.

    Services are given in priority order. A domain served by one provider
    routes straight to it; several providers for the same domain are
    chained into a FallbackCatalogService. Book chains also require a
    minimum metadata completeness before a hit stops the chain.
    """

    def __init__(
        self, services: list[CatalogService], book_min_score: float | None = None
    ) -> None:
        grouped: dict[MediaDomain, list[CatalogService]] = {}
        for service in services:
            grouped.setdefault(service.domain, []).append(service)

        min_score = normalize_min_score(
            settings.book_metadata_min_score if book_min_score is None else book_min_score
        )
        self._services: dict[MediaDomain, CatalogService] = {}
        for domain, chain in grouped.items():
            if len(chain) == 1:
                self._services[domain] = chain[0]
            elif domain == MediaDomain.BOOK:
                self._services[domain] = FallbackCatalogService(
                    chain, completeness=score_book_collectable, min_score=min_score
                )
            else:
                self._services[domain] = FallbackCatalogService(chain)

    def for_domain(self, domain: MediaDomain | None) -> CatalogService | None:
        if domain is None:
            return None
        return self._services.get(domain)

    def for_shelf_type(self, shelf_type: str | None) -> CatalogService | None:
        """The service whose domain the shelf type routes to, if any."""
        return self.for_domain(resolve_domain(shelf_type))

    async def aclose(self) -> None:
        for service in self._services.values():
            await service.aclose()

    async def __aenter__(self) -> "CatalogRegistry":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


def build_default_registry(enable_second_pass: bool | None = None) -> CatalogRegistry:
    """
    Registry built from settings.

    Books try Hardcover first and fall back to OpenLibrary; movies and TV
    use TMDB, games use IGDB. Providers switched off with DISABLE_* are
    left out entirely.
    """
    candidates: list[tuple[bool, type[CatalogService]]] = [
        (settings.disable_hardcover, HardcoverCatalogService),
        (settings.disable_openlibrary, BookCatalogService),
        (settings.disable_tmdb, MovieCatalogService),
        (settings.disable_tmdb, TvCatalogService),
        (settings.disable_igdb, GameCatalogService),
    ]
    return CatalogRegistry(
        [
            service_class(enable_second_pass=enable_second_pass)
            for disabled, service_class in candidates
            if not disabled
        ]
    )
