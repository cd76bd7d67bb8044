"""Tests for the tournament registry."""

import pytest

from sofa_worker.etl.competitions import (
    CHAMPIONS_LEAGUE,
    DEFAULT_REGISTRY,
    LA_LIGA,
    PREMIER_LEAGUE,
    TournamentRegistry,
)


class TestCompetition:

    def test_league_rounds(self):
        assert not PREMIER_LEAGUE.is_cup
        assert PREMIER_LEAGUE.first_round == 1
        assert PREMIER_LEAGUE.last_league_round == PREMIER_LEAGUE.total_rounds == 38

    def test_cup_league_phase(self):
        assert CHAMPIONS_LEAGUE.is_cup
        assert CHAMPIONS_LEAGUE.first_round == 1
        assert CHAMPIONS_LEAGUE.last_league_round == 8

    def test_cup_phase_order(self):
        slugs = [p.slug for p in CHAMPIONS_LEAGUE.knockout_phases]
        assert slugs[0] == "playoff-round"
        assert slugs[-1] == "final"
        assert CHAMPIONS_LEAGUE.phase_index("round-of-16") == 1
        assert CHAMPIONS_LEAGUE.phase_index("group-stage") is None

    def test_round_id_collision_is_declared(self):
        """Round of 16 reuses league-phase round id 5."""
        phase = CHAMPIONS_LEAGUE.knockout_phases[CHAMPIONS_LEAGUE.phase_index("round-of-16")]
        first, last = CHAMPIONS_LEAGUE.league_phase_rounds
        assert first <= phase.round_id <= last

    def test_web_url_path(self):
        assert LA_LIGA.web_url_path.endswith(f"/{LA_LIGA.tournament_id}")
        assert LA_LIGA.web_url_path.startswith("/tournament/football/")


class TestTournamentRegistry:

    def test_lookup_by_id_and_key(self):
        assert DEFAULT_REGISTRY.get(17) is PREMIER_LEAGUE
        assert DEFAULT_REGISTRY.get(999999) is None
        assert DEFAULT_REGISTRY.by_key("LaLiga") is LA_LIGA

    def test_monitored_ids(self):
        assert {17, 8, 7} <= DEFAULT_REGISTRY.monitored_ids
        assert len(DEFAULT_REGISTRY.monitored_ids) == len(DEFAULT_REGISTRY)

    def test_subset_keeps_order(self):
        subset = DEFAULT_REGISTRY.subset(["champions-league", "premier-league"])
        assert [c.key for c in subset] == [
            c.key for c in DEFAULT_REGISTRY if c.key in ("champions-league", "premier-league")
        ]

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            TournamentRegistry([PREMIER_LEAGUE, PREMIER_LEAGUE])
