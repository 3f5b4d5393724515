"""
Catalog provider adapters.

One CatalogService subclass per provider: Hardcover and OpenLibrary for
books, TMDB for movies and TV, IGDB for games. Providers sharing a domain
are chained in priority order by the registry.
"""

from shelfresolver.providers.base import CatalogService
from shelfresolver.providers.books import BookCatalogService
from shelfresolver.providers.fallback import FallbackCatalogService
from shelfresolver.providers.games import GameCatalogService
from shelfresolver.providers.hardcover import HardcoverCatalogService
from shelfresolver.providers.movies import MovieCatalogService
from shelfresolver.providers.registry import CatalogRegistry, build_default_registry
from shelfresolver.providers.tv import TvCatalogService

__all__ = [
    "BookCatalogService",
    "CatalogRegistry",
    "CatalogService",
    "FallbackCatalogService",
    "GameCatalogService",
    "HardcoverCatalogService",
    "MovieCatalogService",
    "TvCatalogService",
    "build_default_registry",
]
