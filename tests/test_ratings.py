"""Tests for ratings.py — ranking, tie-breaks and team selection."""

from unittest.mock import patch

import pytest

from catalog import FieldCatalog
from formula import PositionRoleMapping, RoleMap, compile_expression
from normalize import NormalizedStatRecord, record_from_values
from ratings import (
    RatingCandidate,
    average_score,
    normalize_stat,
    position_weights,
    rank,
    select_team,
    totw_rating,
)


def _candidate(
    catalog: FieldCatalog,
    player_id: str,
    position: str = "ST",
    confidence: float = 1.0,
    **values,
) -> RatingCandidate:
    record = record_from_values(values, catalog, confidence=confidence)
    return RatingCandidate(record=record, position=position, player_id=player_id)


# ---------------------------------------------------------------------------
# rank
# ---------------------------------------------------------------------------

class TestRank:
    """Tests for rank()."""

    def test_sorted_descending_with_ranks(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals * 2 + assists", catalog)
        candidates = [
            _candidate(catalog, "a", goals=1, assists=0),
            _candidate(catalog, "b", goals=3, assists=1),
            _candidate(catalog, "c", goals=2, assists=0),
        ]

        ranked = rank(compiled, candidates)

        assert [r.player_id for r in ranked] == ["b", "c", "a"]
        assert [r.rank for r in ranked] == [1, 2, 3]
        assert [r.score for r in ranked] == [7.0, 4.0, 2.0]

    def test_ties_broken_by_confidence_then_order(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals", catalog)
        candidates = [
            _candidate(catalog, "first", goals=2, confidence=0.5),
            _candidate(catalog, "second", goals=2, confidence=0.5),
            _candidate(catalog, "confident", goals=2, confidence=0.9),
        ]

        ranked = rank(compiled, candidates)

        assert [r.player_id for r in ranked] == ["confident", "first", "second"]

    def test_repeatable(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("rating", catalog)
        candidates = [_candidate(catalog, str(i), rating=7.0) for i in range(10)]
        first = [r.player_id for r in rank(compiled, candidates)]
        second = [r.player_id for r in rank(compiled, candidates)]
        assert first == second == [str(i) for i in range(10)]

    def test_top_n(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals", catalog)
        candidates = [_candidate(catalog, str(i), goals=i) for i in range(5)]

        ranked = rank(compiled, candidates, top_n=2)

        assert [r.player_id for r in ranked] == ["4", "3"]

    def test_skipped_players_dropped(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("saves", catalog, position="GK")
        candidates = [
            _candidate(catalog, "keeper", position="GK", saves=6),
            _candidate(catalog, "striker", position="ST", saves=0),
        ]

        ranked = rank(compiled, candidates)

        assert [r.player_id for r in ranked] == ["keeper"]

    def test_failed_evaluation_dropped(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals", catalog)
        broken = RatingCandidate(
            record=NormalizedStatRecord(values={}, field_confidence={}, overall_confidence=0.0),
            player_id="broken",
        )

        ranked = rank(compiled, [broken, _candidate(catalog, "ok", goals=1)])

        assert [r.player_id for r in ranked] == ["ok"]

    def test_degenerate_scores_kept_and_flagged(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals / shots", catalog)
        ranked = rank(compiled, [_candidate(catalog, "zero", goals=0, shots=0)])

        assert ranked[0].degenerate is True
        assert ranked[0].score == 0.0

    def test_mapped_role_reported(self, catalog: FieldCatalog) -> None:
        role_map = RoleMap([PositionRoleMapping("LB", "3-4-3", "WINGBACK")])
        compiled = compile_expression("tackles", catalog, position="WINGBACK")
        candidates = [_candidate(catalog, "lb", position="LB", tackles=5)]

        ranked = rank(compiled, candidates, formation="3-4-3", role_map=role_map)

        assert ranked[0].mapped_role == "WINGBACK"
        assert ranked[0].to_dict()["mappedRole"] == "WINGBACK"


# ---------------------------------------------------------------------------
# select_team / average_score
# ---------------------------------------------------------------------------

class TestSelectTeam:
    """Tests for select_team() and average_score()."""

    def test_best_per_position(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("rating", catalog)
        candidates = [
            _candidate(catalog, "st1", "ST", rating=7.0),
            _candidate(catalog, "st2", "ST", rating=8.0),
            _candidate(catalog, "gk1", "GK", rating=6.5),
        ]

        team = select_team(rank(compiled, candidates))

        assert {slot: entry.player_id for slot, entry in team.items()} == {
            "ST": "st2", "GK": "gk1",
        }

    def test_average_score(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("rating", catalog)
        candidates = [_candidate(catalog, "a", rating=6.0), _candidate(catalog, "b", rating=8.0)]
        assert average_score(rank(compiled, candidates)) == pytest.approx(7.0)

    def test_average_of_nothing(self) -> None:
        assert average_score([]) == 0.0


# ---------------------------------------------------------------------------
# Built-in team-of-the-week rating
# ---------------------------------------------------------------------------

class TestNormalizeStat:
    """Tests for normalize_stat()."""

    def test_scaled_into_range(self) -> None:
        assert normalize_stat("goals", 2) == pytest.approx(0.4)
        assert normalize_stat("passAccuracy", 0.8) == pytest.approx(0.8)

    def test_clamped(self) -> None:
        assert normalize_stat("goals", 12) == 1.0
        assert normalize_stat("tackles", -3) == 0.0

    def test_boolean_counts_as_one(self) -> None:
        assert normalize_stat("cleanSheet", True) == 1.0
        assert normalize_stat("cleanSheet", False) == 0.0

    def test_stat_without_range_contributes_nothing(self) -> None:
        assert normalize_stat("xG", 2.5) == 0.0


class TestTotwRating:
    """Tests for totw_rating() and position_weights()."""

    def test_striker(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"rating": 7.0, "goals": 2, "assists": 1}, catalog)
        # 7.0 + (2/5) * 0.4 + (1/5) * 0.2
        assert totw_rating(record, "ST") == pytest.approx(7.2)

    def test_keeper_clean_sheet(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"rating": 6.0, "saves": 15, "cleanSheet": True}, catalog)
        assert totw_rating(record, "GK") == pytest.approx(6.7)

    def test_clamped_to_ten(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"rating": 10.0, "goals": 5}, catalog)
        assert totw_rating(record, "ST") == 10.0

    def test_clamped_to_zero(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"redCards": 1}, catalog)
        assert totw_rating(record, "GK") == 0.0

    def test_unknown_position_rated_as_midfielder(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"rating": 6.0, "passes": 50, "passAccuracy": 0.8}, catalog)

        assert totw_rating(record, "SWEEPER") == pytest.approx(6.325)
        assert totw_rating(record, None) == pytest.approx(6.325)
        assert position_weights("SWEEPER") is position_weights("CM")

    def test_position_case_insensitive(self) -> None:
        assert position_weights("st") is position_weights("ST")

    def test_multiplier_applied(self, catalog: FieldCatalog) -> None:
        record = record_from_values({"rating": 6.0}, catalog)
        with patch.dict("ratings.TOTW_POSITION_MULTIPLIERS", {"CB": 1.5}):
            assert totw_rating(record, "CB") == pytest.approx(9.0)


class TestRankWithTotw:
    """Tests for rank() without a formula."""

    def test_default_scorer_picks_team(self, catalog: FieldCatalog) -> None:
        candidates = [
            _candidate(catalog, "st1", "ST", rating=7.0, goals=0),
            _candidate(catalog, "st2", "ST", rating=7.0, goals=3),
            _candidate(catalog, "gk1", "GK", rating=6.0, cleanSheet=True),
        ]

        ranked = rank(None, candidates)
        team = select_team(ranked)

        assert [r.player_id for r in ranked] == ["st2", "st1", "gk1"]
        assert ranked[0].score == pytest.approx(7.0 + 0.6 * 0.4)
        assert {slot: entry.player_id for slot, entry in team.items()} == {"ST": "st2", "GK": "gk1"}
        assert average_score(ranked) == pytest.approx((7.24 + 7.0 + 6.4) / 3)
