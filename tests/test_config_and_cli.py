"""Tests for settings, database URL handling and the command line parser."""

import pytest

from sofa_worker.config import Settings
from sofa_worker.database import get_database_url
from sofa_worker.main import _select_registry, build_parser


class TestDatabaseUrl:

    @pytest.mark.parametrize("url,expected", [
        ("sqlite:///./sofa.db", "sqlite+aiosqlite:///./sofa.db"),
        ("postgres://u:p@db/sofa", "postgresql+asyncpg://u:p@db/sofa"),
        ("postgresql://u:p@db/sofa", "postgresql+asyncpg://u:p@db/sofa"),
        ("postgresql+asyncpg://u:p@db/sofa", "postgresql+asyncpg://u:p@db/sofa"),
    ])
    def test_async_driver_rewrite(self, url, expected):
        assert get_database_url(url) == expected


class TestSettings:

    def test_explicit_instance_id(self):
        assert Settings(WORKER_INSTANCE_ID="worker-7").instance_id == "worker-7"

    def test_generated_instance_id_is_stable(self):
        settings = Settings(WORKER_INSTANCE_ID="")
        first = settings.instance_id
        assert first
        assert settings.instance_id == first

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("WORKER_IDLE_DELAY_SECONDS", "1200")
        monkeypatch.setenv("ENRICHMENT_MAX_ATTEMPTS", "5")
        settings = Settings()
        assert settings.WORKER_IDLE_DELAY_SECONDS == 1200
        assert settings.ENRICHMENT_MAX_ATTEMPTS == 5


class TestParser:

    def test_fetch_round(self):
        args = build_parser().parse_args(["fetch-round", "laliga", "12"])
        assert (args.command, args.tournament, args.round, args.phase) == ("fetch-round", "laliga", 12, None)

    def test_fetch_phase(self):
        args = build_parser().parse_args(["fetch-round", "champions-league", "--phase", "round-of-16"])
        assert args.round is None
        assert args.phase == "round-of-16"

    def test_global_flags(self):
        args = build_parser().parse_args(["--headed", "--tournaments", "laliga,serie-a", "once"])
        assert args.headed is True
        assert args.tournaments == ["laliga", "serie-a"]
        assert args.command == "once"

    def test_single_tournament_before_command(self):
        args = build_parser().parse_args(["--tournaments", "laliga", "sync-standings"])
        assert args.tournaments == ["laliga"]
        assert args.command == "sync-standings"

    def test_tournament_list_ignores_blanks(self):
        args = build_parser().parse_args(["--tournaments", " laliga, ,serie-a,", "status"])
        assert args.tournaments == ["laliga", "serie-a"]

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_select_registry(self):
        assert [c.key for c in _select_registry(["LaLiga"])] == ["laliga"]
        with pytest.raises(SystemExit):
            _select_registry(["eredivisie"])
