"""Rank a player population with a compiled rating formula.

Used for "team of the week" and season-award style selections: every
candidate is scored, candidates the formula skips or cannot evaluate are
dropped, and the rest are sorted by score. Equal scores fall back to the
record's overall confidence and then to input order, so identical input
always ranks identically.

Without a formula, candidates are scored with ``totw_rating()``: the match
rating plus position-weighted stats, clamped to [0, 10].
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

from catalog import Value
from config import (
    DEFAULT_FORMATION,
    TOTW_DEFAULT_POSITION,
    TOTW_MAX,
    TOTW_MIN,
    TOTW_POSITION_MULTIPLIERS,
    TOTW_POSITION_WEIGHTS,
    TOTW_STAT_RANGES,
)
from exceptions import FormulaEvaluationError
from formula import CompiledFormula, Evaluation, RoleMap, evaluate_for_player
from normalize import NormalizedStatRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RatingCandidate:
    """A record to rank plus the player context role mapping needs."""

    record: NormalizedStatRecord
    position: Optional[str] = None
    player_id: Optional[str] = None


@dataclass(frozen=True)
class RankedResult:
    rank: int
    score: float
    flags: tuple[str, ...]
    degenerate: bool
    record: NormalizedStatRecord
    player_id: Optional[str] = None
    position: Optional[str] = None
    mapped_role: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "playerId": self.player_id,
            "position": self.position,
            "mappedRole": self.mapped_role,
            "score": self.score,
            "flags": list(self.flags),
            "degenerate": self.degenerate,
            "overallConfidence": self.record.overall_confidence,
        }


def rank(
    compiled: Optional[CompiledFormula],
    candidates: Iterable[RatingCandidate],
    top_n: Optional[int] = None,
    formation: str = DEFAULT_FORMATION,
    role_map: Optional[RoleMap] = None,
) -> list[RankedResult]:
    """Score and order *candidates*.

    Args:
        compiled: The formula to apply; ``None`` scores every candidate
            with the built-in ``totw_rating()``.
        candidates: Records with optional player position and id.
        top_n: Keep only the best *top_n* entries; ``None`` keeps all.
        formation: Active formation for position-role mapping.
        role_map: Position-role mappings; ``None`` means exact positions only.

    Returns:
        Ranked results, best first, with 1-based ranks.
    """
    scored: list[tuple[float, float, int, RatingCandidate, tuple, bool]] = []
    skipped = failed = 0
    for index, candidate in enumerate(candidates):
        try:
            if compiled is None:
                result = Evaluation(value=totw_rating(candidate.record, candidate.position))
            else:
                result = evaluate_for_player(
                    compiled, candidate.record, candidate.position, formation, role_map,
                )
        except FormulaEvaluationError as exc:
            logger.warning(
                "Dropping player %s from ranking: %s", candidate.player_id, exc,
            )
            failed += 1
            continue
        if result.skipped:
            skipped += 1
            continue
        scored.append((
            result.value,
            candidate.record.overall_confidence,
            index,
            candidate,
            result.flags,
            result.degenerate,
        ))

    scored.sort(key=lambda item: (-item[0], -item[1], item[2]))
    if top_n is not None:
        scored = scored[: max(top_n, 0)]

    ranked = []
    for position, (score, _, _, candidate, flags, degenerate) in enumerate(scored, start=1):
        mapped_role = role_map.resolve(candidate.position, formation) if role_map else None
        ranked.append(RankedResult(
            rank=position,
            score=score,
            flags=flags,
            degenerate=degenerate,
            record=candidate.record,
            player_id=candidate.player_id,
            position=candidate.position,
            mapped_role=mapped_role,
        ))

    logger.info(
        "Ranked %d players (%d skipped, %d failed) with formula %r",
        len(ranked), skipped, failed,
        compiled.source if compiled is not None else "totw",
    )
    return ranked


def select_team(ranked: Sequence[RankedResult]) -> dict[str, RankedResult]:
    """Pick the best-ranked entry per role (mapped role, else position).

    Entries without a position are left out. *ranked* must already be in
    rank order, as returned by ``rank()``.
    """
    team: dict[str, RankedResult] = {}
    for entry in ranked:
        slot = entry.mapped_role or entry.position
        if slot and slot not in team:
            team[slot] = entry
    return team


def average_score(ranked: Sequence[RankedResult]) -> float:
    if not ranked:
        return 0.0
    return sum(entry.score for entry in ranked) / len(ranked)


# ---------------------------------------------------------------------------
# Built-in team-of-the-week rating
# ---------------------------------------------------------------------------

def position_weights(position: Optional[str]) -> dict[str, float]:
    """Stat weights for *position*, falling back to ``TOTW_DEFAULT_POSITION``."""
    key = (position or "").upper()
    if key not in TOTW_POSITION_WEIGHTS:
        key = TOTW_DEFAULT_POSITION
    return TOTW_POSITION_WEIGHTS[key]


def normalize_stat(name: str, value: Value) -> float:
    """Scale one stat into [0, 1] against ``TOTW_STAT_RANGES``.

    Booleans count as 0 or 1. Stats without a range, and missing or
    non-numeric values, contribute 0.
    """
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if value is None or name not in TOTW_STAT_RANGES:
        return 0.0
    low, high = TOTW_STAT_RANGES[name]
    if high <= low:
        return 0.0
    return max(0.0, min(1.0, (float(value) - low) / (high - low)))


def totw_rating(record: Mapping[str, Value], position: Optional[str]) -> float:
    """Position-weighted match rating in [TOTW_MIN, TOTW_MAX].

    Starts from the record's ``rating``, adds each weighted stat after
    range normalization, then applies the position multiplier.
    """
    score = float(record.get("rating") or 0.0)
    for name, weight in position_weights(position).items():
        if name in record:
            score += normalize_stat(name, record[name]) * weight
    score *= TOTW_POSITION_MULTIPLIERS.get((position or "").upper(), 1.0)
    return max(TOTW_MIN, min(TOTW_MAX, score))
