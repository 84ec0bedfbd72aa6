"""Central configuration for the league stats ingestion and rating engine.

This module is the single source of truth for all magic values — region
geometry, preprocessing parameters, OCR and parsing thresholds, confidence
weights, reconciliation tolerances, and Google Sheets layout. Never hardcode
these values elsewhere.
"""

import os
from pathlib import Path
from typing import Final

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

PROJECT_ROOT: Final[Path] = Path(__file__).resolve().parent
DEBUG_DIR: Final[Path] = PROJECT_ROOT / "debug"

# Optional JSON override for the statistic field catalog. When the file does
# not exist the built-in default catalog is used.
CATALOG_PATH: Final[Path] = Path(
    os.environ.get("LEAGUE_STATS_CATALOG", str(PROJECT_ROOT / "catalog.json"))
)

# ---------------------------------------------------------------------------
# Region extraction
# ---------------------------------------------------------------------------

# Regions whose width or height is at or below this size are rejected.
MIN_REGION_SIZE: Final[int] = 8

# Default region when the annotator supplies none: the stat table sits in the
# right 40% of a result screenshot, full height.
DEFAULT_REGION_LEFT_RATIO: Final[float] = 0.6
DEFAULT_REGION_TOP_RATIO: Final[float] = 0.0
DEFAULT_REGION_WIDTH_RATIO: Final[float] = 0.4
DEFAULT_REGION_HEIGHT_RATIO: Final[float] = 1.0
DEFAULT_REGION_ID: Final[str] = "playerStats"

# ---------------------------------------------------------------------------
# Preprocessing chain (grayscale -> contrast -> sharpen -> threshold)
# ---------------------------------------------------------------------------

# Percentiles used to clip the contrast stretch.
CONTRAST_LOWER_PERCENTILE: Final[float] = 5.0
CONTRAST_UPPER_PERCENTILE: Final[float] = 95.0

# Bilateral filter used as the edge-preserving base of the unsharp mask.
SHARPEN_DIAMETER: Final[int] = 5
SHARPEN_SIGMA_COLOR: Final[float] = 50.0
SHARPEN_SIGMA_SPACE: Final[float] = 50.0
SHARPEN_AMOUNT: Final[float] = 1.5

# Fixed global binarization threshold (0-255).
BINARIZE_THRESHOLD: Final[int] = 120

# ---------------------------------------------------------------------------
# OCR
# ---------------------------------------------------------------------------

OCR_LANGUAGE: Final[str] = "en"

# Seconds to wait for the recognizer on a single region.
OCR_TIMEOUT: Final[float] = 30.0

# Boxes whose vertical centres differ by less than this fraction of the
# median box height are joined into one text row.
OCR_ROW_TOLERANCE: Final[float] = 0.5

# Worker threads shared by OCR calls and batch ingestion.
OCR_WORKERS: Final[int] = 4

# ---------------------------------------------------------------------------
# Text parsing
# ---------------------------------------------------------------------------

# Minimum rapidfuzz ratio (0-1) for a fuzzy label match.
FUZZY_MATCH_THRESHOLD: Final[float] = 0.85

# Fraction of a field's confidence removed when its label was matched
# fuzzily or through OCR character substitution.
FUZZY_LABEL_PENALTY: Final[float] = 0.2

# Character corrections applied to value tokens before numeric parsing.
DIGIT_CORRECTIONS: Final[dict[str, str]] = {
    "O": "0",
    "o": "0",
    "D": "0",
    "l": "1",
    "I": "1",
    "|": "1",
    ",": ".",
}

# Character corrections applied to label candidates before alias lookup.
LABEL_CORRECTIONS: Final[dict[str, str]] = {
    "0": "o",
    "1": "l",
    "5": "s",
    "|": "l",
}

BOOLEAN_TRUE_TOKENS: Final[frozenset[str]] = frozenset(
    {"yes", "y", "true", "1", "✓", "✔", "☑", "√"}
)
BOOLEAN_FALSE_TOKENS: Final[frozenset[str]] = frozenset(
    {"no", "n", "false", "0", "✗", "✘", "☐", "×"}
)

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

CRITICAL_FIELD_WEIGHT: Final[float] = 3.0
DEFAULT_FIELD_WEIGHT: Final[float] = 1.0

# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

# Two values "agree" when they differ by no more than this, keyed by field
# kind. Percentages are stored as fractions (0.85 == 85%).
AGREEMENT_TOLERANCE: Final[dict[str, float]] = {
    "INTEGER": 0.0,
    "NUMBER": 0.05,
    "PERCENT": 0.01,
    "BOOLEAN": 0.0,
}

# Extractions whose located fields average below this confidence are returned
# for review but never written to the store. Fields absent from the
# screenshot do not count against it.
MIN_COMMIT_CONFIDENCE: Final[float] = 0.3

# Number of locks shared by all row keys; keys are assigned by hash.
RECONCILE_LOCK_STRIPES: Final[int] = 64

# ---------------------------------------------------------------------------
# Rating formulas
# ---------------------------------------------------------------------------

# Value reported when an evaluation is degenerate (e.g. division by zero).
DIVISION_SENTINEL: Final[float] = 0.0

FORMULA_CACHE_SIZE: Final[int] = 256

# Parser limits. Deeper or longer expressions are rejected at compile time.
MAX_FORMULA_DEPTH: Final[int] = 64
MAX_FORMULA_TOKENS: Final[int] = 512

DEFAULT_FORMATION: Final[str] = "4-4-2"

# ---------------------------------------------------------------------------
# Team-of-the-week rating
# ---------------------------------------------------------------------------

# Built-in position rating: the match rating plus weighted, range-normalized
# stats, times a position multiplier, clamped to [TOTW_MIN, TOTW_MAX].
TOTW_MIN: Final[float] = 0.0
TOTW_MAX: Final[float] = 10.0

# Unknown positions are rated as this one.
TOTW_DEFAULT_POSITION: Final[str] = "CM"

# (min, max) used to scale a stat into [0, 1]. Percentages are fractions.
TOTW_STAT_RANGES: Final[dict[str, tuple[float, float]]] = {
    "goals": (0.0, 5.0),
    "assists": (0.0, 5.0),
    "passes": (0.0, 100.0),
    "passAccuracy": (0.0, 1.0),
    "tackles": (0.0, 20.0),
    "interceptions": (0.0, 20.0),
    "saves": (0.0, 15.0),
    "yellowCards": (0.0, 2.0),
    "redCards": (0.0, 1.0),
}

_CARDS: Final[dict[str, float]] = {"yellowCards": -0.05, "redCards": -0.2}
_FULLBACK: Final[dict[str, float]] = {
    "tackles": 0.2, "interceptions": 0.2, "cleanSheet": 0.25, "passes": 0.15,
    "passAccuracy": 0.15, "goals": 0.1, "assists": 0.15, **_CARDS,
}
_WIDE_MIDFIELDER: Final[dict[str, float]] = {
    "goals": 0.2, "assists": 0.25, "passes": 0.15, "passAccuracy": 0.15,
    "tackles": 0.1, "interceptions": 0.1, **_CARDS,
}
_WINGER: Final[dict[str, float]] = {
    "goals": 0.3, "assists": 0.25, "passes": 0.1, "passAccuracy": 0.1,
    "tackles": 0.05, "interceptions": 0.05, **_CARDS,
}

# Per-position stat weights. Boolean stats count as 1 when true.
TOTW_POSITION_WEIGHTS: Final[dict[str, dict[str, float]]] = {
    "GK": {
        "saves": 0.3, "cleanSheet": 0.4, "goals": 0.1, "passes": 0.1,
        "passAccuracy": 0.1, **_CARDS,
    },
    "CB": {
        "tackles": 0.25, "interceptions": 0.25, "cleanSheet": 0.3, "passes": 0.1,
        "passAccuracy": 0.1, "goals": 0.15, "assists": 0.1, **_CARDS,
    },
    "LB": _FULLBACK,
    "RB": _FULLBACK,
    "CDM": {
        "tackles": 0.2, "interceptions": 0.2, "passes": 0.2, "passAccuracy": 0.2,
        "goals": 0.1, "assists": 0.15, **_CARDS,
    },
    "CM": {
        "passes": 0.25, "passAccuracy": 0.25, "goals": 0.15, "assists": 0.2,
        "tackles": 0.1, "interceptions": 0.1, **_CARDS,
    },
    "CAM": {
        "goals": 0.25, "assists": 0.3, "passes": 0.15, "passAccuracy": 0.15,
        "tackles": 0.05, "interceptions": 0.05, **_CARDS,
    },
    "LM": _WIDE_MIDFIELDER,
    "RM": _WIDE_MIDFIELDER,
    "LW": _WINGER,
    "RW": _WINGER,
    "ST": {
        "goals": 0.4, "assists": 0.2, "passes": 0.05, "passAccuracy": 0.05,
        "tackles": 0.05, "interceptions": 0.05, **_CARDS,
    },
    "CF": {
        "goals": 0.35, "assists": 0.25, "passes": 0.1, "passAccuracy": 0.1,
        "tackles": 0.05, "interceptions": 0.05, **_CARDS,
    },
}

# Positions absent here use a multiplier of 1.0.
TOTW_POSITION_MULTIPLIERS: Final[dict[str, float]] = {}

# ---------------------------------------------------------------------------
# Google Sheets: service account and spreadsheet
# ---------------------------------------------------------------------------

# Path to the service account JSON key file. Never commit this file.
SERVICE_ACCOUNT_KEY_PATH: Final[Path] = PROJECT_ROOT / "service_account.json"

SPREADSHEET_ID: Final[str] = os.environ.get("LEAGUE_STATS_SPREADSHEET_ID", "")

SHEET_MATCH_STATS_TAB: Final[str] = "MatchStats"
SHEET_SEASON_STATS_TAB: Final[str] = "SeasonStats"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
