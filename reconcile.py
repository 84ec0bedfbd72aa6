"""Merge a freshly normalized record into the persisted row for its key.

Resolution is field-granular. For each field the incoming record located:

* values agreeing within the kind's tolerance change nothing;
* a disagreeing value replaces the stored one unless the stored field has a
  strictly higher confidence, in which case the stored value is kept and the
  field is marked ``REJECTED``.

Fields the incoming record did not locate are never treated as updates. The
lookup, merge and single upsert run under a per-key lock.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from catalog import FieldCatalog, FieldKind, Value
from config import AGREEMENT_TOLERANCE, RECONCILE_LOCK_STRIPES
from normalize import NormalizedStatRecord, overall_confidence
from store import StatKey, StatStore

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class ApplyStatus(str, Enum):
    APPLIED = "APPLIED"
    SUPERSEDED = "SUPERSEDED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of one ``ReconciliationEngine.apply`` call.

    Attributes:
        status: Record-level outcome.
        previous: The stored record before the call, ``None`` for a new row.
        current: The stored record after the call.
        field_status: Per-field outcome for every field the incoming record
            located.
    """

    status: ApplyStatus
    previous: Optional[NormalizedStatRecord]
    current: NormalizedStatRecord
    field_status: Mapping[str, ApplyStatus] = field(default_factory=dict)

    @property
    def applied_fields(self) -> list[str]:
        return sorted(k for k, v in self.field_status.items() if v is ApplyStatus.APPLIED)

    @property
    def rejected_fields(self) -> list[str]:
        return sorted(k for k, v in self.field_status.items() if v is ApplyStatus.REJECTED)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "appliedFields": self.applied_fields,
            "rejectedFields": self.rejected_fields,
            "previous": self.previous.to_dict() if self.previous is not None else None,
            "current": self.current.to_dict(),
        }


def values_agree(a: Value, b: Value, kind: FieldKind, tolerance: float) -> bool:
    """True if two readings of a field are the same within *tolerance*."""
    if kind is FieldKind.BOOLEAN:
        return bool(a) == bool(b)
    return abs(float(a) - float(b)) <= tolerance + _EPSILON


class ReconciliationEngine:
    """Decision layer in front of a ``StatStore``'s upsert.

    Args:
        store: The persistence collaborator.
        catalog: Catalog snapshot used for field kinds and weights.
        tolerances: Per-kind agreement tolerance overrides, keyed by
            ``FieldKind`` or its string value.
    """

    def __init__(
        self,
        store: StatStore,
        catalog: FieldCatalog,
        tolerances: Optional[Mapping] = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self._tolerances = dict(AGREEMENT_TOLERANCE)
        for kind, value in (tolerances or {}).items():
            self._tolerances[FieldKind(kind).value] = float(value)
        self._locks = tuple(threading.Lock() for _ in range(RECONCILE_LOCK_STRIPES))

    def tolerance(self, kind: FieldKind) -> float:
        return self._tolerances.get(kind.value, 0.0)

    def _lock_for(self, key: StatKey) -> threading.Lock:
        # Keys sharing a stripe serialize; the same key always maps to one lock.
        return self._locks[hash(key) % len(self._locks)]

    def apply(self, key: StatKey, record: NormalizedStatRecord) -> ApplyResult:
        """Merge *record* into the row for *key* and persist the result.

        Returns:
            ``APPLIED`` if the row is new or any field changed, ``SUPERSEDED``
            if nothing changed, ``REJECTED`` if nothing changed because every
            disagreeing field lost to a more confident stored value.
        """
        with self._lock_for(key):
            existing = self.store.get(key)
            if existing is None:
                located = {name: ApplyStatus.APPLIED for name in record if name not in record.missing}
                current = self.store.upsert(key, record)
                logger.info("Inserted new %s row for player %s", key.scope, key.player_id)
                return ApplyResult(ApplyStatus.APPLIED, None, current, located)

            merged, field_status = self._merge(existing, record)
            changed = any(s is ApplyStatus.APPLIED for s in field_status.values())
            rejected = any(s is ApplyStatus.REJECTED for s in field_status.values())

            if changed:
                current = self.store.upsert(key, merged)
                status = ApplyStatus.APPLIED
            else:
                current = existing
                status = ApplyStatus.REJECTED if rejected else ApplyStatus.SUPERSEDED

        logger.info(
            "Reconciled %s row for player %s: %s (applied=%d, rejected=%d)",
            key.scope, key.player_id, status.value,
            sum(s is ApplyStatus.APPLIED for s in field_status.values()),
            sum(s is ApplyStatus.REJECTED for s in field_status.values()),
        )
        return ApplyResult(status, existing, current, field_status)

    def _merge(
        self, existing: NormalizedStatRecord, incoming: NormalizedStatRecord,
    ) -> tuple[NormalizedStatRecord, dict[str, ApplyStatus]]:
        values = dict(existing.values)
        confidences = dict(existing.field_confidence)
        missing = set(existing.missing)
        out_of_range = set(existing.out_of_range)
        field_status: dict[str, ApplyStatus] = {}

        for name in incoming:
            if name in incoming.missing:
                continue
            new_value = incoming[name]
            new_conf = incoming.confidence(name)
            stat = self.catalog.get(name)
            kind = stat.kind if stat is not None else FieldKind.NUMBER

            if name not in existing or name in existing.missing:
                status = ApplyStatus.APPLIED
            elif values_agree(existing[name], new_value, kind, self.tolerance(kind)):
                status = ApplyStatus.SUPERSEDED
            elif existing.confidence(name) > new_conf:
                logger.warning(
                    "Kept stored %s=%r (confidence %.2f) over incoming %r (confidence %.2f)",
                    name, existing[name], existing.confidence(name), new_value, new_conf,
                )
                status = ApplyStatus.REJECTED
            else:
                status = ApplyStatus.APPLIED

            field_status[name] = status
            if status is ApplyStatus.APPLIED:
                values[name] = new_value
                confidences[name] = new_conf
                missing.discard(name)
                if name in incoming.out_of_range:
                    out_of_range.add(name)
                else:
                    out_of_range.discard(name)

        warnings = tuple(
            w for w in existing.warnings if field_status.get(w.field) is not ApplyStatus.APPLIED
        ) + tuple(
            w for w in incoming.warnings if field_status.get(w.field) is ApplyStatus.APPLIED
        )
        merged = NormalizedStatRecord(
            values=values,
            field_confidence=confidences,
            overall_confidence=overall_confidence(confidences, self.catalog),
            missing=frozenset(missing),
            out_of_range=frozenset(out_of_range),
            warnings=warnings,
        )
        return merged, field_status
