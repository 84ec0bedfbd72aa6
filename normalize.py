"""Coerce parsed tokens into a complete, typed, bounds-checked stat record.

``normalize()`` never fails: every catalog field ends up in the record.
Absent fields get the type default and zero confidence; out-of-range values
are clamped and also get zero confidence, with an ``OutOfRangeWarning`` kept
on the record so the reason stays visible.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Collection, Iterator, Mapping, Optional

from catalog import FieldCatalog, FieldKind, StatisticField, Value
from exceptions import OutOfRangeWarning
from parse import ParsedField, ParsedStatSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedStatRecord:
    """Fixed-schema stat record keyed by catalog field name.

    Attributes:
        values: Typed value for every catalog field.
        field_confidence: Confidence in [0, 1] for every catalog field.
        overall_confidence: Weighted average of ``field_confidence``.
        missing: Fields that were absent and filled with defaults.
        out_of_range: Fields whose reading was clamped.
        warnings: One ``OutOfRangeWarning`` per clamped field.
    """

    values: Mapping[str, Value]
    field_confidence: Mapping[str, float]
    overall_confidence: float
    missing: frozenset[str] = frozenset()
    out_of_range: frozenset[str] = frozenset()
    warnings: tuple[OutOfRangeWarning, ...] = field(default=(), compare=False)

    def __getitem__(self, name: str) -> Value:
        return self.values[name]

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def get(self, name: str, default: Optional[Value] = None) -> Optional[Value]:
        return self.values.get(name, default)

    def confidence(self, name: str) -> float:
        return self.field_confidence.get(name, 0.0)

    def to_dict(self) -> dict:
        return {
            "values": dict(self.values),
            "fieldConfidence": dict(self.field_confidence),
            "overallConfidence": self.overall_confidence,
            "missing": sorted(self.missing),
            "outOfRange": sorted(self.out_of_range),
        }


def overall_confidence(
    field_confidence: Mapping[str, float],
    catalog: FieldCatalog,
    weights: Optional[Mapping[str, float]] = None,
    only: Optional[Collection[str]] = None,
) -> float:
    """Weighted average of per-field confidences, clamped to [0, 1].

    Critical fields (goals, assists, rating, saves by default) carry more
    weight than secondary ones. *weights* overrides catalog weights per field.
    *only* restricts the average to the named fields.
    """
    total = 0.0
    weighted = 0.0
    for stat in catalog:
        if only is not None and stat.name not in only:
            continue
        weight = stat.effective_weight
        if weights is not None and stat.name in weights:
            weight = weights[stat.name]
        if weight <= 0:
            continue
        total += weight
        weighted += weight * field_confidence.get(stat.name, 0.0)
    if total == 0:
        return 0.0
    return max(0.0, min(1.0, weighted / total))


def located_confidence(
    record: NormalizedStatRecord,
    catalog: FieldCatalog,
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    """Weighted average confidence over the fields the screenshot located.

    Unlike ``overall_confidence`` this ignores default-filled fields, so a
    clean read of a partial stat table is not diluted by what it never showed.
    """
    located = set(record) - record.missing
    return overall_confidence(record.field_confidence, catalog, weights, only=located)


def _coerce(stat: StatisticField, entry: ParsedField) -> tuple[Value, float, Optional[OutOfRangeWarning]]:
    """Return (value, confidence, warning) for one located field."""
    raw = entry.value
    confidence = entry.confidence

    if stat.kind is FieldKind.BOOLEAN:
        if isinstance(raw, bool):
            return raw, confidence, None
        # A numeric reading for a boolean field is only trusted as 0/1.
        if raw in (0, 1):
            return bool(raw), confidence, None
        return stat.default(), 0.0, None

    number = float(raw)
    if math.isnan(number):
        return stat.default(), 0.0, None

    warning = None
    if number < stat.minimum or number > stat.maximum:
        warning = OutOfRangeWarning(stat.name, number, stat.minimum, stat.maximum)
        number = min(max(number, stat.minimum), stat.maximum)
        confidence = 0.0

    if stat.kind is FieldKind.INTEGER:
        rounded = int(round(number))
        if rounded != number:
            logger.debug("Non-integral reading %s for '%s'", number, stat.name)
            confidence = 0.0
        return rounded, confidence, warning
    return number, confidence, warning


def normalize(
    parsed: ParsedStatSet,
    catalog: FieldCatalog,
    weights: Optional[Mapping[str, float]] = None,
) -> NormalizedStatRecord:
    """Build a complete record from a parsed set.

    Args:
        parsed: Located fields from the parser (absent fields omitted).
        catalog: The catalog snapshot defining fields, kinds and bounds.
        weights: Optional per-field weight overrides for the overall
            confidence.

    Returns:
        A record containing every catalog field.
    """
    values: dict[str, Value] = {}
    confidences: dict[str, float] = {}
    missing: set[str] = set()
    out_of_range: set[str] = set()
    warnings: list[OutOfRangeWarning] = []

    for stat in catalog:
        entry = parsed.get(stat.name)
        if entry is None:
            values[stat.name] = stat.default()
            confidences[stat.name] = 0.0
            missing.add(stat.name)
            continue

        value, confidence, warning = _coerce(stat, entry)
        values[stat.name] = value
        confidences[stat.name] = max(0.0, min(1.0, confidence))
        if warning is not None:
            logger.warning("%s", warning)
            warnings.append(warning)
            out_of_range.add(stat.name)

    ignored = set(parsed) - set(catalog.names)
    if ignored:
        logger.debug("Ignoring fields not in catalog: %s", sorted(ignored))

    return NormalizedStatRecord(
        values=values,
        field_confidence=confidences,
        overall_confidence=overall_confidence(confidences, catalog, weights),
        missing=frozenset(missing),
        out_of_range=frozenset(out_of_range),
        warnings=tuple(warnings),
    )


def record_from_values(
    values: Mapping[str, Value],
    catalog: FieldCatalog,
    confidence: float = 1.0,
) -> NormalizedStatRecord:
    """Normalize trusted values (manual entry, stored rows, fixtures).

    Each supplied value is treated as located with *confidence*; fields not
    supplied are default-filled exactly as ``normalize()`` does.
    """
    parsed = {
        name: ParsedField(raw_token=str(value), value=value, confidence=confidence, label=name)
        for name, value in values.items()
    }
    return normalize(parsed, catalog)
