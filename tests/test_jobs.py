"""Tests for the resolve-items job."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from shelfresolver.jobs.resolve_items import build_parser, load_items, main, resolve_items
from shelfresolver.models.outcome import ItemOutcome, OutcomeStatus, PipelineReport


@pytest.fixture
def sample_report() -> PipelineReport:
    return PipelineReport(
        user_id="user-1",
        shelf_id="shelf-1",
        shelf_type="books",
        outcomes=[
            ItemOutcome(
                index=0,
                title="Dune",
                status=OutcomeStatus.LINKED,
                source="openlibrary",
                link_id=7,
                collectable_id=3,
            )
        ],
    )


class TestLoadItems:
    def test_bare_list(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        path.write_text(json.dumps([{"title": "Dune"}]), encoding="utf-8")
        assert load_items(path) == [{"title": "Dune"}]

    def test_items_object(self, tmp_path: Path) -> None:
        """An object wrapping the list under "items" is accepted."""
        path = tmp_path / "items.json"
        path.write_text(json.dumps({"items": [{"title": "Dune"}]}), encoding="utf-8")
        assert load_items(path) == [{"title": "Dune"}]

    def test_rejects_other_shapes(self, tmp_path: Path) -> None:
        path = tmp_path / "items.json"
        path.write_text(json.dumps({"title": "Dune"}), encoding="utf-8")
        with pytest.raises(ValueError, match="does not contain a list"):
            load_items(path)


class TestBuildParser:
    def test_second_pass_flags(self) -> None:
        """The second pass override is tri-state."""
        base = ["items.json", "--user-id", "u", "--shelf-id", "s", "--shelf-type", "books"]
        parser = build_parser()
        assert parser.parse_args(base).enable_second_pass is None
        assert parser.parse_args([*base, "--second-pass"]).enable_second_pass is True
        assert parser.parse_args([*base, "--no-second-pass"]).enable_second_pass is False

    def test_flags_are_exclusive(self) -> None:
        base = ["items.json", "--user-id", "u", "--shelf-id", "s", "--shelf-type", "books"]
        with pytest.raises(SystemExit):
            build_parser().parse_args([*base, "--second-pass", "--no-second-pass"])


class TestResolveItems:
    @pytest.mark.asyncio
    async def test_runs_pipeline_with_default_registry(self, sample_report) -> None:
        """The job builds the registry, runs the pipeline and closes the registry."""
        registry = MagicMock()
        registry.__aenter__ = AsyncMock(return_value=registry)
        registry.__aexit__ = AsyncMock(return_value=None)
        pipeline = MagicMock()
        pipeline.run = AsyncMock(return_value=sample_report)

        with (
            patch(
                "shelfresolver.jobs.resolve_items.build_default_registry",
                return_value=registry,
            ) as build_registry,
            patch(
                "shelfresolver.jobs.resolve_items.ShelfPipeline", return_value=pipeline
            ) as pipeline_cls,
            patch("shelfresolver.jobs.resolve_items.init_db", new_callable=AsyncMock) as init_db,
        ):
            report = await resolve_items(
                [{"title": "Dune"}],
                user_id="user-1",
                shelf_id="shelf-1",
                shelf_type="books",
                enable_second_pass=False,
                create_tables=True,
            )

        assert report is sample_report
        build_registry.assert_called_once_with(enable_second_pass=False)
        assert pipeline_cls.call_args.args[0] is registry
        pipeline.run.assert_awaited_once_with("user-1", "shelf-1", "books", [{"title": "Dune"}])
        init_db.assert_awaited_once()
        registry.__aexit__.assert_awaited_once()


class TestMain:
    def test_prints_report(self, tmp_path: Path, sample_report, capsys) -> None:
        """The report is written to stdout as JSON."""
        path = tmp_path / "items.json"
        path.write_text(json.dumps([{"title": "Dune"}]), encoding="utf-8")

        with patch(
            "shelfresolver.jobs.resolve_items.resolve_items",
            new_callable=AsyncMock,
            return_value=sample_report,
        ) as run:
            code = main(
                [str(path), "--user-id", "user-1", "--shelf-id", "shelf-1", "--shelf-type", "books"]
            )

        assert code == 0
        assert run.await_args.kwargs["enable_second_pass"] is None
        output = json.loads(capsys.readouterr().out)
        assert output["summary"]["linked"] == 1
        assert output["results"][0]["collectableId"] == 3

    def test_unreadable_file(self, tmp_path: Path) -> None:
        """A missing items file exits with status 1."""
        code = main(
            [
                str(tmp_path / "missing.json"),
                "--user-id",
                "u",
                "--shelf-id",
                "s",
                "--shelf-type",
                "books",
            ]
        )
        assert code == 1
