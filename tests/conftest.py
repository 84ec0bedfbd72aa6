"""Shared test configuration and fixtures.

Provides a small field catalog, in-memory store and reconciliation engine,
plus a scripted recognizer so pipeline tests never need a real OCR engine.
"""

import cv2
import numpy as np
import pytest

from catalog import DEFAULT_CATALOG, FieldCatalog, FieldKind, StatisticField
from reconcile import ReconciliationEngine
from recognize import Recognition
from store import InMemoryStatStore


class ScriptedRecognizer:
    """Recognizer returning fixed text, recording every sub-image it sees."""

    def __init__(self, text: str, confidence: float = 0.95) -> None:
        self.text = text
        self.confidence = confidence
        self.calls: list[np.ndarray] = []

    def recognize(self, sub_image: np.ndarray) -> Recognition:
        self.calls.append(sub_image)
        return Recognition(text=self.text, confidence=self.confidence)


@pytest.fixture
def catalog() -> FieldCatalog:
    return DEFAULT_CATALOG


@pytest.fixture
def small_catalog() -> FieldCatalog:
    return FieldCatalog((
        StatisticField("goals", FieldKind.INTEGER, 0, 15, ("goal",), critical=True),
        StatisticField("assists", FieldKind.INTEGER, 0, 15, ("assist",), critical=True),
        StatisticField("shots", FieldKind.INTEGER, 0, 40, ("shot",)),
        StatisticField("passAccuracy", FieldKind.PERCENT, 0.0, 1.0, ("pass accuracy",)),
        StatisticField("cleanSheet", FieldKind.BOOLEAN, aliases=("clean sheet",)),
        StatisticField("rating", FieldKind.NUMBER, 0.0, 10.0, ("player rating",), critical=True),
    ))


@pytest.fixture
def store() -> InMemoryStatStore:
    return InMemoryStatStore()


@pytest.fixture
def engine(store: InMemoryStatStore, small_catalog: FieldCatalog) -> ReconciliationEngine:
    return ReconciliationEngine(store, small_catalog)


@pytest.fixture
def screenshot_bytes() -> bytes:
    """A 320x180 PNG with dark text on a light right-hand panel."""
    image = np.full((180, 320, 3), 40, dtype=np.uint8)
    cv2.rectangle(image, (192, 0), (319, 179), (230, 230, 230), thickness=-1)
    cv2.putText(image, "Goals 2", (200, 60), cv2.FONT_HERSHEY_SIMPLEX, 0.5, (0, 0, 0), 1)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


@pytest.fixture
def scripted_recognizer():
    return ScriptedRecognizer
