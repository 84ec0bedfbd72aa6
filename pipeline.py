"""Screenshot ingestion: image bytes in, reconciled stat record out.

Runs the stages in order for one upload:

1. Decode the image (request-level failure if it cannot be decoded).
2. Crop and preprocess each region; an invalid region is recorded and
   skipped.
3. Recognize each sub-image under a timeout; OCR timeouts and an
   unavailable engine are fatal to the screenshot and propagate.
4. Parse each region's text, merge the per-region results and normalize.
5. Reconcile into the store when a key is given, something was located
   and the located fields average at least ``MIN_COMMIT_CONFIDENCE``.
   Anything else is returned uncommitted for a human to review.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from catalog import FieldCatalog
from config import MIN_COMMIT_CONFIDENCE, OCR_TIMEOUT, OCR_WORKERS
from exceptions import InvalidRegionError
from normalize import NormalizedStatRecord, located_confidence, normalize
from parse import StatTextParser, merge_parsed
from reconcile import ApplyResult, ReconciliationEngine
from recognize import Recognition, Recognizer, recognize_with_timeout
from regions import Region, decode_image, default_region, extract_region, save_debug_crop
from store import StatKey

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestionResult:
    """Best-effort outcome of one upload.

    Attributes:
        record: The normalized record (always complete).
        extractions: Raw recognition per successfully extracted region.
        region_errors: Regions that were skipped, with the reason.
        reconciliation: The store outcome, ``None`` when not committed.
        committed: Whether the record was handed to the reconciliation
            engine.
        located_confidence: Average confidence over located fields only,
            the value the commit gate checks.
    """

    record: NormalizedStatRecord
    extractions: tuple[Recognition, ...] = ()
    region_errors: tuple[InvalidRegionError, ...] = ()
    reconciliation: Optional[ApplyResult] = None
    committed: bool = False
    located_confidence: float = 0.0

    @property
    def overall_confidence(self) -> float:
        return self.record.overall_confidence

    @property
    def field_confidence(self) -> dict[str, float]:
        return dict(self.record.field_confidence)

    @property
    def status(self) -> Optional[str]:
        return self.reconciliation.status.value if self.reconciliation else None

    def to_dict(self) -> dict:
        return {
            "normalizedRecord": dict(self.record.values),
            "overallConfidence": self.overall_confidence,
            "locatedConfidence": self.located_confidence,
            "perFieldConfidence": self.field_confidence,
            "missing": sorted(self.record.missing),
            "outOfRange": sorted(self.record.out_of_range),
            "reconciliationStatus": self.status,
            "committed": self.committed,
            "regionErrors": [
                {"regionId": err.region_id, "reason": err.reason}
                for err in self.region_errors
            ],
            "extractions": [
                {"regionId": r.region_id, "text": r.text, "confidence": r.confidence}
                for r in self.extractions
            ],
        }


@dataclass(frozen=True)
class IngestRequest:
    """One upload for ``ingest_many``."""

    image_bytes: bytes
    regions: Optional[Sequence[Region]] = None
    key: Optional[StatKey] = None
    metadata: dict = field(default_factory=dict, compare=False)


def ingest(
    image_bytes: bytes,
    regions: Optional[Sequence[Region]] = None,
    *,
    recognizer: Recognizer,
    catalog: FieldCatalog,
    engine: Optional[ReconciliationEngine] = None,
    key: Optional[StatKey] = None,
    timeout: float = OCR_TIMEOUT,
    debug_crops: bool = False,
) -> IngestionResult:
    """Run one screenshot through extraction, OCR, parsing and reconciliation.

    Args:
        image_bytes: The uploaded image.
        regions: Stat-table rectangles. ``None`` uses the default region.
        recognizer: The OCR adapter.
        catalog: Catalog snapshot used for the whole request.
        engine: Reconciliation engine; without one nothing is committed.
        key: Target row; without one nothing is committed.
        timeout: Per-region OCR timeout in seconds.
        debug_crops: Save each preprocessed crop to the debug directory.

    Returns:
        The ingestion result. Never raises for problems local to a region.

    Raises:
        InvalidImageError: If the bytes cannot be decoded.
        ValueError: If *regions* is an empty sequence.
        OCRTimeoutError: If the recognizer exceeds *timeout*.
        OCRUnavailableError: If the OCR engine cannot run.
    """
    image = decode_image(image_bytes)
    if regions is None:
        regions = [default_region(image.shape)]
    elif len(regions) == 0:
        raise ValueError("At least one region is required")

    parser = StatTextParser(catalog)
    region_errors: list[InvalidRegionError] = []
    extractions: list[Recognition] = []

    for region in regions:
        try:
            sub_image = extract_region(image, region)
        except InvalidRegionError as exc:
            logger.warning("Skipping region: %s", exc)
            region_errors.append(exc)
            continue
        if debug_crops:
            save_debug_crop(sub_image, region.region_id)
        extractions.append(
            recognize_with_timeout(recognizer, sub_image, region.region_id, timeout)
        )

    parsed = merge_parsed(parser.parse(r) for r in extractions)
    record = normalize(parsed, catalog)
    located = located_confidence(record, catalog)
    logger.info(
        "Extracted %d/%d fields from %d region(s) (confidence=%.3f)",
        len(parsed), len(catalog), len(extractions), record.overall_confidence,
    )

    reconciliation = None
    committed = False
    if engine is None or key is None:
        logger.debug("No reconciliation target; returning record uncommitted")
    elif not parsed:
        logger.warning("Nothing located in the screenshot; not committing")
    elif located < MIN_COMMIT_CONFIDENCE:
        logger.warning(
            "Located-field confidence %.3f below %.2f; holding for review",
            located, MIN_COMMIT_CONFIDENCE,
        )
    else:
        reconciliation = engine.apply(key, record)
        committed = True

    return IngestionResult(
        record=record,
        extractions=tuple(extractions),
        region_errors=tuple(region_errors),
        reconciliation=reconciliation,
        committed=committed,
        located_confidence=located,
    )


def ingest_many(
    requests: Sequence[IngestRequest],
    *,
    recognizer: Recognizer,
    catalog: FieldCatalog,
    engine: Optional[ReconciliationEngine] = None,
    timeout: float = OCR_TIMEOUT,
    max_workers: int = OCR_WORKERS,
) -> list[Union[IngestionResult, Exception]]:
    """Ingest independent uploads in parallel.

    Returns:
        One entry per request, in request order: the result, or the
        exception that made that upload unusable.
    """
    def run(request: IngestRequest) -> IngestionResult:
        return ingest(
            request.image_bytes,
            request.regions,
            recognizer=recognizer,
            catalog=catalog,
            engine=engine,
            key=request.key,
            timeout=timeout,
        )

    outcomes: list[Union[IngestionResult, Exception]] = []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest") as pool:
        futures = [pool.submit(run, request) for request in requests]
        for request, future in zip(requests, futures):
            try:
                outcomes.append(future.result())
            except Exception as exc:
                logger.error("Upload failed (%s): %s", request.metadata or request.key, exc)
                outcomes.append(exc)
    return outcomes
