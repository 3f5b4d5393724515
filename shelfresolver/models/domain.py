"""
Media domains and their routing strategies.

A shelf type is free text ("Blu-ray shelf", "PS2 games"). It is routed to
exactly one MediaDomain through hint matching, and every domain-specific
choice downstream (provider, AI prompt, creator label) is read from the
DomainStrategy table rather than branched on in code.
"""

from dataclasses import dataclass
from enum import Enum


class MediaDomain(str, Enum):
    """Kinds of collectable the pipeline can resolve."""

    BOOK = "book"
    TV = "tv"
    MOVIE = "movie"
    GAME = "game"


@dataclass(frozen=True, slots=True)
class DomainStrategy:
    """Static per-domain configuration."""

    domain: MediaDomain
    hints: tuple[str, ...]
    creator_label: str
    archivist_prompt: str
    # AI identifier keys mapped onto canonical identifier paths
    identifier_paths: tuple[tuple[str, str], ...] = ()


DOMAIN_STRATEGIES: dict[MediaDomain, DomainStrategy] = {
    MediaDomain.BOOK: DomainStrategy(
        domain=MediaDomain.BOOK,
        hints=("book", "books", "novel", "novels", "comic", "manga"),
        creator_label="author",
        archivist_prompt=(
            "You are a meticulous librarian. Correct noisy OCR metadata for physical "
            "books. Provide the canonical title, subtitle, primary author, publisher, "
            "first publication year and ISBN-13 when known."
        ),
        identifier_paths=(
            ("isbn13", "isbn13"),
            ("isbn10", "isbn10"),
            ("openlibrary", "openlibrary.work"),
        ),
    ),
    # Checked before movies so "TV on DVD" lands here
    MediaDomain.TV: DomainStrategy(
        domain=MediaDomain.TV,
        hints=(
            "tv",
            "tv show",
            "tv shows",
            "tv series",
            "television",
            "miniseries",
        ),
        creator_label="creator",
        archivist_prompt=(
            "You are a television archivist. Correct noisy OCR metadata for physical "
            "TV season and series releases. Provide the series title, creator, "
            "network, first air year and TMDB identifiers when known."
        ),
        identifier_paths=(("tmdb", "tmdb.tv"), ("imdb", "imdb"), ("upc", "upc")),
    ),
    MediaDomain.MOVIE: DomainStrategy(
        domain=MediaDomain.MOVIE,
        hints=(
            "movie",
            "movies",
            "film",
            "films",
            "blu-ray",
            "bluray",
            "dvd",
            "4k",
            "uhd",
            "vhs",
        ),
        creator_label="director",
        archivist_prompt=(
            "You are a film archivist. Correct noisy OCR metadata for physical movie "
            "releases. Provide the original title, primary director, studio, original "
            "release year, physical format and TMDB or IMDb identifiers when known."
        ),
        identifier_paths=(("tmdb", "tmdb.movie"), ("imdb", "imdb"), ("upc", "upc")),
    ),
    MediaDomain.GAME: DomainStrategy(
        domain=MediaDomain.GAME,
        hints=(
            "game",
            "games",
            "video game",
            "video games",
            "videogame",
            "nintendo",
            "playstation",
            "xbox",
            "switch",
            "pc games",
            "ps1",
            "ps2",
            "ps3",
            "ps4",
            "ps5",
            "psp",
            "ps vita",
            "gamecube",
            "wii",
            "n64",
            "snes",
            "3ds",
            "game boy",
            "gameboy",
            "sega",
            "genesis",
            "dreamcast",
        ),
        creator_label="developer",
        archivist_prompt=(
            "You are a video game archivist. Correct noisy OCR metadata for physical "
            "video games. Provide developer, publisher, release year, region and the "
            "exact platform name."
        ),
        identifier_paths=(("igdb", "igdb.gameId"), ("slug", "igdb.slug"), ("upc", "upc")),
    ),
}


def resolve_domain(shelf_type: str | None) -> MediaDomain | None:
    """
    Route a free-text shelf type to a media domain.

    Exact domain names win; otherwise the first domain with a hint contained
    in the shelf type is chosen. Returns None for unsupported shelves.
    """
    normalized = (shelf_type or "").strip().lower()
    if not normalized:
        return None

    for strategy in DOMAIN_STRATEGIES.values():
        if normalized in strategy.hints:
            return strategy.domain

    for strategy in DOMAIN_STRATEGIES.values():
        if any(hint in normalized for hint in strategy.hints):
            return strategy.domain
    return None


def get_strategy(domain: MediaDomain) -> DomainStrategy:
    """Return the strategy for a domain."""
    return DOMAIN_STRATEGIES[domain]
