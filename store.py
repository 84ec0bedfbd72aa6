"""Persisted stat rows: the upsert-by-key collaborator behind reconciliation.

Two implementations of the ``StatStore`` contract:

* ``InMemoryStatStore`` — a lock-guarded dict, used by tests and the CLI.
* ``SheetsStatStore`` — Google Sheets via ``gspread``. Match rows and season
  rows live on separate tabs; each row holds the key columns, every catalog
  field value, every field confidence and the overall confidence. An upsert
  is one ``update`` (existing row) or one ``append_row`` (new row) call, so a
  row is never half-written. All writes use ``value_input_option="RAW"``.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import gspread

from catalog import FieldCatalog, FieldKind, Value
from config import (
    SERVICE_ACCOUNT_KEY_PATH,
    SHEET_MATCH_STATS_TAB,
    SHEET_SEASON_STATS_TAB,
    SPREADSHEET_ID,
)
from normalize import NormalizedStatRecord, overall_confidence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatKey:
    """Composite key of a persisted row.

    Either ``(player_id, match_id)`` for a match row or
    ``(player_id, season_id, team_id)`` for a season-aggregate row.

    Raises:
        ValueError: For any other combination of ids.
    """

    player_id: str
    match_id: Optional[str] = None
    season_id: Optional[str] = None
    team_id: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.player_id:
            raise ValueError("StatKey requires a player_id")
        is_match = self.match_id is not None
        is_season = self.season_id is not None and self.team_id is not None
        if is_match == is_season or (is_match and (self.season_id or self.team_id)):
            raise ValueError(
                "StatKey needs either match_id, or season_id and team_id "
                f"(got match={self.match_id}, season={self.season_id}, "
                f"team={self.team_id})"
            )

    @property
    def scope(self) -> str:
        return "match" if self.match_id is not None else "season"

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "playerId": self.player_id,
            "matchId": self.match_id,
            "seasonId": self.season_id,
            "teamId": self.team_id,
        }


class StatStore(Protocol):
    def get(self, key: StatKey) -> Optional[NormalizedStatRecord]:
        ...

    def upsert(self, key: StatKey, record: NormalizedStatRecord) -> NormalizedStatRecord:
        ...


class InMemoryStatStore:
    """Dict-backed store; one entry per key, atomic per call."""

    def __init__(self) -> None:
        self._rows: dict[StatKey, NormalizedStatRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._rows)

    def get(self, key: StatKey) -> Optional[NormalizedStatRecord]:
        with self._lock:
            return self._rows.get(key)

    def upsert(self, key: StatKey, record: NormalizedStatRecord) -> NormalizedStatRecord:
        with self._lock:
            self._rows[key] = record
        logger.debug("Upserted %s row for player %s", key.scope, key.player_id)
        return record


# ---------------------------------------------------------------------------
# Google Sheets
# ---------------------------------------------------------------------------

KEY_COLUMNS: tuple[str, ...] = ("player_id", "match_id", "season_id", "team_id")
OVERALL_COLUMN = "overall_confidence"
CONFIDENCE_PREFIX = "conf:"


def get_sheets_client(key_path: Path = SERVICE_ACCOUNT_KEY_PATH) -> gspread.Client:
    """Authenticate with Google Sheets using the service account key.

    Raises:
        FileNotFoundError: If the service account key file does not exist.
    """
    if not key_path.exists():
        raise FileNotFoundError(f"Service account key not found: {key_path}")
    client = gspread.service_account(filename=str(key_path))
    logger.info("Authenticated with Google Sheets using %s", key_path)
    return client


def header_for(catalog: FieldCatalog) -> list[str]:
    return (
        list(KEY_COLUMNS)
        + list(catalog.names)
        + [f"{CONFIDENCE_PREFIX}{name}" for name in catalog.names]
        + [OVERALL_COLUMN]
    )


def _key_cells(key: StatKey) -> list[str]:
    return [key.player_id, key.match_id or "", key.season_id or "", key.team_id or ""]


def encode_row(key: StatKey, record: NormalizedStatRecord, catalog: FieldCatalog) -> list:
    """Flatten *record* into a sheet row in ``header_for(catalog)`` order."""
    values = [record.get(name, catalog[name].default()) for name in catalog.names]
    confidences = [record.confidence(name) for name in catalog.names]
    return _key_cells(key) + values + confidences + [record.overall_confidence]


def _decode_value(cell: str, kind: FieldKind) -> Value:
    if kind is FieldKind.BOOLEAN:
        return str(cell).strip().lower() in ("true", "1", "yes")
    if cell in ("", None):
        return 0 if kind is FieldKind.INTEGER else 0.0
    number = float(cell)
    return int(round(number)) if kind is FieldKind.INTEGER else number


def decode_row(row: list[str], header: list[str], catalog: FieldCatalog) -> NormalizedStatRecord:
    """Rebuild a record from a sheet row read back as strings.

    Fields the sheet has no column for (catalog grew since the row was
    written) come back as missing with zero confidence.
    """
    cells = dict(zip(header, row))
    values: dict[str, Value] = {}
    confidences: dict[str, float] = {}
    missing: set[str] = set()
    for stat in catalog:
        if stat.name not in cells:
            values[stat.name] = stat.default()
            confidences[stat.name] = 0.0
            missing.add(stat.name)
            continue
        values[stat.name] = _decode_value(cells[stat.name], stat.kind)
        raw_conf = cells.get(f"{CONFIDENCE_PREFIX}{stat.name}", "")
        confidences[stat.name] = float(raw_conf) if raw_conf not in ("", None) else 0.0
    return NormalizedStatRecord(
        values=values,
        field_confidence=confidences,
        overall_confidence=overall_confidence(confidences, catalog),
        missing=frozenset(missing),
    )


class SheetsStatStore:
    """``StatStore`` backed by two worksheets of a Google Spreadsheet.

    Args:
        spreadsheet: An opened ``gspread.Spreadsheet``.
        catalog: Catalog snapshot defining the column layout.
        match_tab: Worksheet title for match rows.
        season_tab: Worksheet title for season rows.
    """

    def __init__(
        self,
        spreadsheet: gspread.Spreadsheet,
        catalog: FieldCatalog,
        match_tab: str = SHEET_MATCH_STATS_TAB,
        season_tab: str = SHEET_SEASON_STATS_TAB,
    ) -> None:
        self.spreadsheet = spreadsheet
        self.catalog = catalog
        self._tabs = {"match": match_tab, "season": season_tab}
        self._lock = threading.Lock()

    @classmethod
    def open(
        cls,
        catalog: FieldCatalog,
        spreadsheet_id: str = SPREADSHEET_ID,
        key_path: Path = SERVICE_ACCOUNT_KEY_PATH,
    ) -> "SheetsStatStore":
        """Authenticate and open the configured spreadsheet.

        Raises:
            ValueError: If no spreadsheet id is configured.
            gspread.exceptions.SpreadsheetNotFound: If the id is invalid.
        """
        if not spreadsheet_id:
            raise ValueError("No spreadsheet id configured (LEAGUE_STATS_SPREADSHEET_ID)")
        client = get_sheets_client(key_path)
        return cls(client.open_by_key(spreadsheet_id), catalog)

    def _worksheet(self, key: StatKey) -> gspread.Worksheet:
        return self.spreadsheet.worksheet(self._tabs[key.scope])

    def _find(self, rows: list[list[str]], key: StatKey) -> Optional[int]:
        """Return the 1-based sheet row number holding *key*, if any."""
        wanted = _key_cells(key)
        for index, row in enumerate(rows[1:], start=2):
            padded = list(row) + [""] * (len(KEY_COLUMNS) - len(row))
            if padded[: len(KEY_COLUMNS)] == wanted:
                return index
        return None

    def get(self, key: StatKey) -> Optional[NormalizedStatRecord]:
        rows = self._worksheet(key).get_all_values()
        row_number = self._find(rows, key)
        if row_number is None:
            return None
        return decode_row(rows[row_number - 1], rows[0], self.catalog)

    def upsert(self, key: StatKey, record: NormalizedStatRecord) -> NormalizedStatRecord:
        """Write *record* to the row for *key*, creating it if needed.

        Raises:
            gspread.exceptions.WorksheetNotFound: If the tab does not exist.
                The store does not create tabs.
        """
        row = encode_row(key, record, self.catalog)
        with self._lock:
            worksheet = self._worksheet(key)
            rows = worksheet.get_all_values()
            if not rows:
                worksheet.append_row(header_for(self.catalog), value_input_option="RAW")
                rows = [header_for(self.catalog)]
            row_number = self._find(rows, key)
            if row_number is None:
                worksheet.append_row(row, value_input_option="RAW")
                logger.info("Appended %s row for player %s", key.scope, key.player_id)
            else:
                worksheet.update(
                    range_name=f"A{row_number}",
                    values=[row],
                    value_input_option="RAW",
                )
                logger.info(
                    "Updated %s row %d for player %s",
                    key.scope, row_number, key.player_id,
                )
        return record
