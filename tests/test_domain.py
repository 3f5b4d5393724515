"""Tests for shelf type routing."""

import pytest

from shelfresolver.config import settings
from shelfresolver.models.domain import MediaDomain, get_strategy, resolve_domain
from shelfresolver.providers.books import BookCatalogService
from shelfresolver.providers.fallback import FallbackCatalogService
from shelfresolver.providers.games import GameCatalogService
from shelfresolver.providers.hardcover import HardcoverCatalogService
from shelfresolver.providers.movies import MovieCatalogService
from shelfresolver.providers.registry import CatalogRegistry, build_default_registry
from shelfresolver.providers.tv import TvCatalogService


class TestResolveDomain:
    def test_exact_names(self) -> None:
        assert resolve_domain("books") == MediaDomain.BOOK
        assert resolve_domain(" Movies ") == MediaDomain.MOVIE
        assert resolve_domain("games") == MediaDomain.GAME
        assert resolve_domain("TV") == MediaDomain.TV

    def test_hints_inside_free_text(self) -> None:
        """Free-text shelf names route through contained hints."""
        assert resolve_domain("Blu-ray shelf") == MediaDomain.MOVIE
        assert resolve_domain("PS2 games") == MediaDomain.GAME
        assert resolve_domain("manga collection") == MediaDomain.BOOK

    def test_console_names(self) -> None:
        """A bare console name is a games shelf."""
        assert resolve_domain("PS2") == MediaDomain.GAME
        assert resolve_domain("GameCube") == MediaDomain.GAME
        assert resolve_domain("Wii U") == MediaDomain.GAME
        assert resolve_domain("N64 carts") == MediaDomain.GAME
        assert resolve_domain("Sega Dreamcast") == MediaDomain.GAME
        assert resolve_domain("4K UHD") == MediaDomain.MOVIE

    def test_tv_before_movie_formats(self) -> None:
        """TV shelves win over the disc format they come on."""
        assert resolve_domain("TV series on DVD") == MediaDomain.TV
        assert resolve_domain("television box sets") == MediaDomain.TV
        assert resolve_domain("DVD box sets") == MediaDomain.MOVIE

    def test_unsupported(self) -> None:
        assert resolve_domain("vinyl records") is None
        assert resolve_domain("") is None
        assert resolve_domain(None) is None

    def test_strategy_labels(self) -> None:
        """Each domain names the creator role used in AI prompts."""
        assert get_strategy(MediaDomain.BOOK).creator_label == "author"
        assert get_strategy(MediaDomain.MOVIE).creator_label == "director"
        assert get_strategy(MediaDomain.TV).creator_label == "creator"
        assert get_strategy(MediaDomain.GAME).creator_label == "developer"


class TestCatalogRegistry:
    async def test_routes_shelf_types(self) -> None:
        """Each shelf type maps to the adapter for its domain."""
        books = BookCatalogService()
        movies = MovieCatalogService(api_key="key")
        tv = TvCatalogService(api_key="key")
        games = GameCatalogService(client_id="id", client_secret="secret")

        async with CatalogRegistry([books, movies, tv, games]) as registry:
            assert registry.for_shelf_type("Paperbacks and books") is books
            assert registry.for_shelf_type("DVD") is movies
            assert registry.for_shelf_type("TV shows") is tv
            assert registry.for_shelf_type("Nintendo Switch") is games
            assert registry.for_shelf_type("vinyl") is None
            assert registry.for_domain(None) is None

    async def test_same_domain_providers_are_chained(self) -> None:
        """Providers sharing a domain form a fallback chain in the given order."""
        hardcover = HardcoverCatalogService(api_token="token")
        openlibrary = BookCatalogService()

        async with CatalogRegistry([hardcover, openlibrary], book_min_score=0.6) as registry:
            chain = registry.for_domain(MediaDomain.BOOK)

        assert isinstance(chain, FallbackCatalogService)
        assert chain.services == [hardcover, openlibrary]
        assert chain.min_score == 60
        assert chain.completeness is not None

    async def test_default_registry(self) -> None:
        """Books try Hardcover before OpenLibrary; TV gets its own TMDB adapter."""
        async with build_default_registry(enable_second_pass=False) as registry:
            books = registry.for_shelf_type("books")
            tv = registry.for_shelf_type("tv series")

        assert isinstance(books, FallbackCatalogService)
        assert [type(s) for s in books.services] == [HardcoverCatalogService, BookCatalogService]
        assert isinstance(tv, TvCatalogService)

    async def test_disabled_providers_are_left_out(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "disable_hardcover", True)
        monkeypatch.setattr(settings, "disable_tmdb", True)

        async with build_default_registry() as registry:
            books = registry.for_shelf_type("books")
            assert registry.for_shelf_type("movies") is None
            assert registry.for_shelf_type("tv") is None

        assert isinstance(books, BookCatalogService)
