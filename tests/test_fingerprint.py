"""Tests for the fingerprint engine."""

import hashlib

from shelfresolver.services.fingerprint import (
    make_collectable_fingerprint,
    make_fuzzy_fingerprint,
    make_lightweight_fingerprint,
    normalize_component,
    normalize_fuzzy,
    normalize_list,
    normalize_media_type,
)


def sha1(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()


class TestNormalization:
    def test_component_trims_lowercases_and_folds_whitespace(self) -> None:
        """Whitespace runs collapse to one space."""
        assert normalize_component("  The   Left Hand\tof  Darkness ") == (
            "the left hand of darkness"
        )

    def test_component_is_total(self) -> None:
        """None and numbers normalize without raising."""
        assert normalize_component(None) == ""
        assert normalize_component(1965) == "1965"

    def test_list_flattens_dedupes_and_sorts(self) -> None:
        """Nested multi-values become a sorted, comma-joined string."""
        assert normalize_list(["PS2", ["ps2", " GameCube "], None, ""]) == "gamecube,ps2"

    def test_list_accepts_scalar(self) -> None:
        """A single string is treated as one value."""
        assert normalize_list("Nintendo Switch") == "nintendo switch"

    def test_media_type_aliases(self) -> None:
        """Plural and alternate spellings map onto the canonical kind."""
        assert normalize_media_type("Books") == "book"
        assert normalize_media_type("films") == "movie"
        assert normalize_media_type("Video-Games") == "game"
        assert normalize_media_type("vinyl") == "vinyl"
        assert normalize_media_type(None) == ""

    def test_fuzzy_strips_diacritics_and_punctuation(self) -> None:
        """Accents are removed and punctuation collapses to single spaces."""
        assert normalize_fuzzy("Pokémon: Red/Blue!") == "pokemon red blue"
        assert normalize_fuzzy(None) == ""


class TestStrongFingerprint:
    def test_known_hash(self) -> None:
        """Title, creator and year are joined positionally."""
        assert make_collectable_fingerprint(
            title="Dune", creator="Frank Herbert", year=1965
        ) == sha1("dune|frank herbert|1965")

    def test_missing_creator_keeps_position(self) -> None:
        """An empty creator still occupies its slot."""
        assert make_collectable_fingerprint(title="Dune", year="1965") == sha1("dune||1965")

    def test_optional_tail_components(self) -> None:
        """Media type, platform and format are appended when present."""
        value = make_collectable_fingerprint(
            title="Halo",
            creator="Bungie",
            year="2001",
            media_type="games",
            platform=["Xbox"],
            formats="Disc",
        )
        assert value == sha1("halo|bungie|2001|game|xbox|disc")

    def test_multi_value_order_does_not_matter(self) -> None:
        """Platform ordering and nesting never change the hash."""
        a = make_collectable_fingerprint(
            title="Rayman", creator="Ubisoft", year="1995", platform=["PS1", "Saturn"]
        )
        b = make_collectable_fingerprint(
            title=" rayman ", creator="UBISOFT", year=1995, platform=[["saturn"], "ps1", "PS1"]
        )
        assert a == b

    def test_unique_key_replaces_components(self) -> None:
        """A unique key alone determines the hash."""
        a = make_collectable_fingerprint(title="Halo", unique_key="igdb:740")
        b = make_collectable_fingerprint(title="Something Else", year=1999, unique_key="IGDB:740")
        assert a == b == sha1("igdb:740")


class TestLightweightFingerprint:
    def test_ignores_year(self) -> None:
        """Different years share a lightweight fingerprint."""
        assert make_lightweight_fingerprint(title="Dune", creator="Frank Herbert") == sha1(
            "dune|frank herbert"
        )

    def test_differs_from_strong(self) -> None:
        """The strong fingerprint includes the year; the lightweight one does not."""
        strong = make_collectable_fingerprint(title="Dune", creator="Frank Herbert", year="1965")
        light = make_lightweight_fingerprint(title="Dune", creator="Frank Herbert")
        assert strong != light

    def test_media_type_and_platform(self) -> None:
        """Media type and platform are appended when present."""
        value = make_lightweight_fingerprint(
            title="Halo", creator="Bungie", media_type="game", platform=["Xbox", "PC"]
        )
        assert value == sha1("halo|bungie|game|pc,xbox")

    def test_unique_key(self) -> None:
        """The unique key is honored like the strong fingerprint."""
        assert make_lightweight_fingerprint(unique_key="igdb:1") == sha1("igdb:1")


class TestFuzzyFingerprint:
    def test_ocr_variants_collide(self) -> None:
        """Case, accents and punctuation differences produce the same hash."""
        a = make_fuzzy_fingerprint("Les Misérables", "Victor Hugo")
        b = make_fuzzy_fingerprint("les miserables!", "VICTOR  HUGO")
        assert a == b == sha1("les miserables|victor hugo")

    def test_media_type_is_appended(self) -> None:
        """A media type changes the hash and is canonicalized first."""
        assert make_fuzzy_fingerprint("Dune", "Frank Herbert", "Books") == sha1(
            "dune|frank herbert|book"
        )

    def test_none_without_creator(self) -> None:
        """Title and creator are both required."""
        assert make_fuzzy_fingerprint("Dune", None) is None
        assert make_fuzzy_fingerprint("!!!", "Frank Herbert") is None
