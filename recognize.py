"""OCR adapter: preprocessed sub-image in, text plus confidence out.

The pixel-to-text primitive is PaddleOCR, loaded lazily on first use so that
importing this module never pulls in the engine. Recognized boxes are grouped
into rows by vertical centre so a table row reads ``"Goals 2 5"`` even when
the engine returns each cell as a separate box. Every character carries the
score of the box it came from, letting the parser compute a per-token
confidence.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import cv2
import numpy as np

from config import OCR_LANGUAGE, OCR_ROW_TOLERANCE, OCR_TIMEOUT, OCR_WORKERS
from exceptions import OCRTimeoutError, OCRUnavailableError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recognition:
    """Raw OCR output for one region.

    ``char_confidences`` is aligned with ``text`` (one score per character,
    newlines included); it may be empty when the engine only reports a
    scalar, in which case ``confidence`` applies to every character.
    """

    text: str
    confidence: float
    char_confidences: tuple[float, ...] = ()
    region_id: str = ""

    def char_confidence(self, start: int, end: int) -> float:
        """Mean confidence over ``text[start:end]``."""
        if not self.char_confidences or end <= start:
            return self.confidence
        window = self.char_confidences[start:end]
        if not window:
            return self.confidence
        return float(sum(window) / len(window))


class Recognizer(Protocol):
    def recognize(self, sub_image: np.ndarray) -> Recognition:
        ...


@dataclass(frozen=True)
class TextBox:
    """A single recognized text box."""

    left: float
    center_y: float
    height: float
    text: str
    score: float


def group_rows(boxes: list[TextBox], tolerance: float = OCR_ROW_TOLERANCE) -> list[list[TextBox]]:
    """Cluster boxes into rows by vertical centre, each row sorted left-to-right.

    Boxes whose centre lies within ``tolerance * median height`` of the
    current row's first box join that row.
    """
    if not boxes:
        return []
    median_h = float(np.median([b.height for b in boxes])) or 1.0
    limit = tolerance * median_h

    ordered = sorted(boxes, key=lambda b: (b.center_y, b.left))
    rows: list[list[TextBox]] = [[ordered[0]]]
    for box in ordered[1:]:
        if abs(box.center_y - rows[-1][0].center_y) <= limit:
            rows[-1].append(box)
        else:
            rows.append([box])
    return [sorted(row, key=lambda b: b.left) for row in rows]


def assemble(boxes: list[TextBox], region_id: str = "") -> Recognition:
    """Join boxes into row-per-line text with aligned character confidences."""
    parts: list[str] = []
    scores: list[float] = []
    for row_index, row in enumerate(group_rows(boxes)):
        if row_index:
            parts.append("\n")
            scores.append(row[0].score)
        for cell_index, box in enumerate(row):
            if cell_index:
                parts.append(" ")
                scores.append(box.score)
            parts.append(box.text)
            scores.extend([box.score] * len(box.text))

    text = "".join(parts)
    confidence = float(sum(scores) / len(scores)) if scores else 0.0
    return Recognition(
        text=text,
        confidence=confidence,
        char_confidences=tuple(scores),
        region_id=region_id,
    )


def _box_from_polygon(polygon: Any, text: str, score: float) -> Optional[TextBox]:
    points = np.asarray(polygon, dtype=np.float32).reshape(-1, 2)
    if points.size == 0:
        return None
    top, bottom = float(points[:, 1].min()), float(points[:, 1].max())
    return TextBox(
        left=float(points[:, 0].min()),
        center_y=(top + bottom) / 2.0,
        height=max(bottom - top, 1.0),
        text=text,
        score=score,
    )


def boxes_from_result(result: Any) -> list[TextBox]:
    """Convert a PaddleOCR result into ``TextBox`` objects.

    Handles both result shapes:

    * ``predict()`` (PaddleOCR 3.x): a list of dict-like pages carrying
      ``rec_texts``, ``rec_scores`` and ``rec_polys``.
    * ``ocr()`` (PaddleOCR 2.x): ``[[ [polygon, (text, score)], ... ]]``,
      with ``None`` for a page with no text.
    """
    boxes: list[TextBox] = []
    for page in result or []:
        if page is None:
            continue
        if hasattr(page, "get") and page.get("rec_texts") is not None:
            polys = page.get("rec_polys")
            if polys is None:
                polys = page.get("dt_polys", [])
            for polygon, text, score in zip(polys, page["rec_texts"], page["rec_scores"]):
                text = str(text).strip()
                if text:
                    box = _box_from_polygon(polygon, text, float(score))
                    if box is not None:
                        boxes.append(box)
            continue
        for block in page:
            if not block or len(block) < 2:
                continue
            polygon, info = block[0], block[1]
            text = str(info[0] or "").strip()
            if not text:
                continue
            box = _box_from_polygon(polygon, text, float(info[1]))
            if box is not None:
                boxes.append(box)
    return boxes


class PaddleRecognizer:
    """``Recognizer`` backed by PaddleOCR.

    Args:
        lang: PaddleOCR language code.
        engine: An already-built engine (mainly for tests); when omitted the
            engine is built on first ``recognize()`` call.
    """

    def __init__(self, lang: str = OCR_LANGUAGE, engine: Any = None) -> None:
        self.lang = lang
        self._engine = engine

    def _get_engine(self) -> Any:
        if self._engine is None:
            try:
                from paddleocr import PaddleOCR
            except ImportError as exc:
                raise OCRUnavailableError(
                    "paddleocr is not installed (pip install league-stats[ocr])"
                ) from exc
            try:
                self._engine = PaddleOCR(lang=self.lang)
            except Exception as exc:
                raise OCRUnavailableError(f"engine failed to load: {exc}") from exc
            logger.info("PaddleOCR engine loaded (lang=%s)", self.lang)
        return self._engine

    def recognize(self, sub_image: np.ndarray) -> Recognition:
        """Recognize text in a preprocessed sub-image.

        Raises:
            OCRUnavailableError: If the engine cannot be loaded or raises
                while running.
        """
        engine = self._get_engine()
        bgr = cv2.cvtColor(sub_image, cv2.COLOR_GRAY2BGR) if sub_image.ndim == 2 else sub_image
        try:
            if hasattr(engine, "predict"):
                result = engine.predict(bgr)
            else:
                result = engine.ocr(bgr, cls=False)
        except Exception as exc:
            raise OCRUnavailableError(f"recognition failed: {exc}") from exc

        recognition = assemble(boxes_from_result(result))
        logger.debug(
            "Recognized %d chars (confidence=%.3f)",
            len(recognition.text), recognition.confidence,
        )
        return recognition


_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        with _executor_lock:
            if _executor is None:
                _executor = ThreadPoolExecutor(
                    max_workers=OCR_WORKERS, thread_name_prefix="ocr",
                )
    return _executor


def recognize_with_timeout(
    recognizer: Recognizer,
    sub_image: np.ndarray,
    region_id: str,
    timeout: float = OCR_TIMEOUT,
) -> Recognition:
    """Run ``recognizer.recognize`` on a worker thread with a deadline.

    Args:
        recognizer: The OCR adapter to call.
        sub_image: The preprocessed region.
        region_id: Identifier attached to the result and to errors.
        timeout: Seconds to wait before giving up.

    Returns:
        The recognition, tagged with *region_id*.

    Raises:
        OCRTimeoutError: If no answer arrives within *timeout*. The pending
            call is cancelled if it has not started yet.
        OCRUnavailableError: Propagated from the recognizer.
    """
    future = _get_executor().submit(recognizer.recognize, sub_image)
    try:
        recognition = future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        future.cancel()
        logger.warning("OCR timed out for region '%s' after %.1fs", region_id, timeout)
        raise OCRTimeoutError(region_id, timeout) from exc
    return Recognition(
        text=recognition.text,
        confidence=recognition.confidence,
        char_confidences=recognition.char_confidences,
        region_id=region_id,
    )
