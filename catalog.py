"""Statistic field catalog shared by the parser, normalizer and formula engine.

A ``FieldCatalog`` is an immutable snapshot: a field name means the same
thing everywhere for as long as a caller holds the snapshot. Reloading goes
through ``CatalogSource``, which swaps the whole snapshot at once so an
in-flight ingestion never sees a catalog mid-update.
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional, Union

from config import CRITICAL_FIELD_WEIGHT, DEFAULT_FIELD_WEIGHT

logger = logging.getLogger(__name__)

Value = Union[int, float, bool]


class FieldKind(str, Enum):
    """Declared type of a statistic field."""

    NUMBER = "NUMBER"
    PERCENT = "PERCENT"
    BOOLEAN = "BOOLEAN"
    INTEGER = "INTEGER"


@dataclass(frozen=True)
class StatisticField:
    """One named, typed, bounded statistic.

    ``PERCENT`` fields are stored as fractions, so their bounds are normally
    ``[0, 1]``. ``BOOLEAN`` fields ignore the bounds.
    """

    name: str
    kind: FieldKind
    minimum: float = 0.0
    maximum: float = 0.0
    aliases: tuple[str, ...] = ()
    critical: bool = False
    weight: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Statistic field name must not be empty")
        if self.kind is not FieldKind.BOOLEAN and self.minimum > self.maximum:
            raise ValueError(
                f"Field '{self.name}': minimum {self.minimum} exceeds "
                f"maximum {self.maximum}"
            )

    @property
    def effective_weight(self) -> float:
        """Weight of this field in the overall confidence average."""
        if self.weight is not None:
            return self.weight
        return CRITICAL_FIELD_WEIGHT if self.critical else DEFAULT_FIELD_WEIGHT

    @property
    def labels(self) -> tuple[str, ...]:
        """Lower-cased labels that identify this field in OCR text."""
        labels = [self.name.lower()] + [a.lower() for a in self.aliases]
        return tuple(dict.fromkeys(labels))

    def default(self) -> Value:
        """Return the type-appropriate value for an absent field."""
        if self.kind is FieldKind.BOOLEAN:
            return False
        if self.kind is FieldKind.INTEGER:
            return 0
        return 0.0

    def in_bounds(self, value: Value) -> bool:
        if self.kind is FieldKind.BOOLEAN:
            return isinstance(value, bool)
        return self.minimum <= value <= self.maximum


@dataclass(frozen=True)
class FieldCatalog:
    """Immutable, ordered collection of statistic fields.

    Raises:
        ValueError: If two fields share a name or a label.
    """

    fields: tuple[StatisticField, ...]
    _by_name: dict[str, StatisticField] = field(
        init=False, repr=False, compare=False,
    )
    _by_label: dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_name: dict[str, StatisticField] = {}
        by_label: dict[str, str] = {}
        for stat in self.fields:
            if stat.name in by_name:
                raise ValueError(f"Duplicate statistic field '{stat.name}'")
            by_name[stat.name] = stat
            for label in stat.labels:
                owner = by_label.get(label)
                if owner is not None and owner != stat.name:
                    raise ValueError(
                        f"Label '{label}' is claimed by both '{owner}' "
                        f"and '{stat.name}'"
                    )
                by_label[label] = stat.name
        object.__setattr__(self, "_by_name", by_name)
        object.__setattr__(self, "_by_label", by_label)

    def __iter__(self) -> Iterator[StatisticField]:
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> StatisticField:
        return self._by_name[name]

    def get(self, name: str) -> Optional[StatisticField]:
        return self._by_name.get(name)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(stat.name for stat in self.fields)

    @property
    def label_index(self) -> dict[str, str]:
        """Mapping of lower-cased label -> field name (a copy)."""
        return dict(self._by_label)

    @property
    def max_label_words(self) -> int:
        """Word count of the longest label, used by the row scanner."""
        if not self._by_label:
            return 0
        return max(len(label.split()) for label in self._by_label)

    @property
    def fingerprint(self) -> str:
        """Stable content hash; changes whenever any field definition does."""
        payload = json.dumps(
            [_field_to_dict(stat) for stat in self.fields], sort_keys=True,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _field_to_dict(stat: StatisticField) -> dict:
    return {
        "name": stat.name,
        "kind": stat.kind.value,
        "min": stat.minimum,
        "max": stat.maximum,
        "aliases": list(stat.aliases),
        "critical": stat.critical,
        "weight": stat.weight,
    }


def field_from_dict(data: dict) -> StatisticField:
    """Build a ``StatisticField`` from its JSON representation.

    Args:
        data: A dict with keys ``name``, ``kind`` and optionally ``min``,
            ``max``, ``aliases``, ``critical`` and ``weight``.

    Raises:
        ValueError: If ``kind`` is unknown or the bounds are inverted.
        KeyError: If ``name`` or ``kind`` is missing.
    """
    try:
        kind = FieldKind(str(data["kind"]).upper())
    except ValueError as exc:
        raise ValueError(
            f"Unknown field kind '{data['kind']}' for '{data.get('name')}'"
        ) from exc
    weight = data.get("weight")
    return StatisticField(
        name=data["name"],
        kind=kind,
        minimum=float(data.get("min", 0.0)),
        maximum=float(data.get("max", 0.0)),
        aliases=tuple(data.get("aliases", ())),
        critical=bool(data.get("critical", False)),
        weight=float(weight) if weight is not None else None,
    )


def load_catalog(path: Path) -> FieldCatalog:
    """Read a catalog from a JSON file containing a list of field objects.

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the JSON is malformed or a field is invalid.
    """
    with path.open("r", encoding="utf-8") as fh:
        raw = json.load(fh)
    if not isinstance(raw, list):
        raise ValueError(f"Catalog file {path} must contain a JSON list")
    catalog = FieldCatalog(tuple(field_from_dict(item) for item in raw))
    logger.info("Loaded %d statistic fields from %s", len(catalog), path)
    return catalog


def _integer(name: str, maximum: float, *aliases: str, critical: bool = False) -> StatisticField:
    return StatisticField(
        name, FieldKind.INTEGER, 0, maximum, aliases, critical=critical,
    )


def _percent(name: str, *aliases: str) -> StatisticField:
    return StatisticField(name, FieldKind.PERCENT, 0.0, 1.0, aliases)


DEFAULT_FIELDS: tuple[StatisticField, ...] = (
    _integer("goals", 15, "goal", "gls", critical=True),
    _integer("assists", 15, "assist", "ast", critical=True),
    _integer("shots", 40, "shot"),
    _integer("shotsOnTarget", 40, "shots on target", "on target"),
    _integer("passes", 250, "pass", "passes completed"),
    _percent("passAccuracy", "pass accuracy", "pass %", "pass acc"),
    _integer("tackles", 40, "tackle"),
    _integer("tacklesAttempted", 60, "tackles attempted"),
    _percent("tackleSuccessRate", "tackle success rate", "tackle success"),
    _integer("interceptions", 40, "interception", "int"),
    _integer("saves", 30, "save", critical=True),
    _percent("savesSuccessRate", "saves success rate", "save success rate"),
    _integer("goalsConceded", 20, "goals conceded", "conceded"),
    StatisticField(
        "cleanSheet", FieldKind.BOOLEAN,
        aliases=("clean sheet", "clean sheets"),
    ),
    StatisticField(
        "manOfTheMatch", FieldKind.BOOLEAN,
        aliases=("man of the match", "motm"),
    ),
    StatisticField(
        "rating", FieldKind.NUMBER, 0.0, 10.0,
        ("player rating", "match rating"), critical=True,
    ),
    StatisticField("xG", FieldKind.NUMBER, 0.0, 10.0, ("expected goals",)),
    StatisticField("xA", FieldKind.NUMBER, 0.0, 10.0, ("expected assists",)),
    _integer("possessionWon", 60, "possession won"),
    _integer("possessionLost", 60, "possession lost"),
    _integer("playersBeatenByPass", 200, "players beaten by pass"),
    _percent("totalDuelSuccess", "duel success", "total duel success"),
    _integer("minutesPlayed", 130, "minutes played", "minutes", "mins"),
    _integer("yellowCards", 2, "yellow cards", "yellow card", "yellow"),
    _integer("redCards", 1, "red cards", "red card", "red"),
)

DEFAULT_CATALOG: FieldCatalog = FieldCatalog(DEFAULT_FIELDS)


class CatalogSource:
    """Holder of the current catalog snapshot.

    ``snapshot()`` is lock-free: it returns whatever catalog object is
    current. ``replace()`` and ``load()`` swap in a new object wholesale, so a
    reader either sees the old catalog or the new one, never a mixture.
    """

    def __init__(self, catalog: FieldCatalog = DEFAULT_CATALOG) -> None:
        self._catalog = catalog
        self._lock = threading.Lock()

    def snapshot(self) -> FieldCatalog:
        return self._catalog

    def replace(self, catalog: FieldCatalog) -> None:
        with self._lock:
            previous = self._catalog
            self._catalog = catalog
        logger.info(
            "Catalog replaced (%d -> %d fields)", len(previous), len(catalog),
        )

    def load(self, path: Path) -> FieldCatalog:
        """Load *path* and make it the current snapshot.

        On failure the current snapshot is left untouched.
        """
        catalog = load_catalog(path)
        self.replace(catalog)
        return catalog

    @classmethod
    def from_path_or_default(cls, path: Path) -> "CatalogSource":
        if path.exists():
            return cls(load_catalog(path))
        logger.debug("No catalog file at %s, using built-in defaults", path)
        return cls()
