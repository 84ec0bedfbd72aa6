#!/usr/bin/env python3
"""Command-line entry point for the league stats pipeline and formula engine.

Subcommands::

    ingest          OCR a result screenshot into a stat record, optionally
                    reconciling it into Google Sheets.
    check-formula   Compile a rating formula and point at the first error.
    rank            Rank players in a JSON file with a rating formula.
    totw            Pick the team of the week with the built-in rating.

Usage::

    league-stats ingest screenshots/match12.png --player p7 --match m12
    league-stats ingest shot.png --region 1150 80 700 900 --season s29 --team t3 --sheet
    league-stats check-formula "(goals * 2) + (assists * 1)"
    league-stats rank "rating + (cleanSheet == 1 ? 1 : 0)" week6.json --top 11
    league-stats totw week6.json --formation 3-4-3 --mappings roles.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from catalog import CatalogSource, FieldCatalog
from config import CATALOG_PATH, DEFAULT_FORMATION, LOG_FORMAT, OCR_TIMEOUT
from exceptions import (
    FormulaCompileError,
    InvalidImageError,
    OCRTimeoutError,
    OCRUnavailableError,
)
from formula import PositionRoleMapping, RoleMap, compile_expression
from normalize import record_from_values
from pipeline import ingest
from ratings import RatingCandidate, average_score, rank, select_team
from reconcile import ReconciliationEngine
from recognize import PaddleRecognizer
from regions import Region
from store import InMemoryStatStore, SheetsStatStore, StatKey

logger = logging.getLogger(__name__)


def _load_catalog() -> FieldCatalog:
    return CatalogSource.from_path_or_default(CATALOG_PATH).snapshot()


def _read_json(path: Path):
    if not path.exists():
        print(f"Error: file not found: {path}")
        sys.exit(1)
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def format_compile_error(source: str, exc: FormulaCompileError) -> str:
    """Render the error with a caret under the offending token."""
    width = max(len(exc.token), 1)
    return f"Error: {exc}\n  {source}\n  {' ' * exc.position}{'^' * width}"


# ---------------------------------------------------------------------------
# ingest
# ---------------------------------------------------------------------------


def _key_from_args(args: argparse.Namespace) -> StatKey | None:
    if args.player is None:
        return None
    try:
        return StatKey(
            player_id=args.player,
            match_id=args.match,
            season_id=args.season,
            team_id=args.team,
        )
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)


def cmd_ingest(args: argparse.Namespace) -> None:
    """OCR one screenshot and print the ingestion result as JSON."""
    source = Path(args.image)
    if not source.exists():
        print(f"Error: image not found: {source}")
        sys.exit(1)

    catalog = _load_catalog()
    key = _key_from_args(args)
    regions = None
    if args.region:
        regions = [
            Region(x, y, w, h, region_id=f"region{i}")
            for i, (x, y, w, h) in enumerate(args.region, start=1)
        ]

    engine = None
    if key is not None:
        store = SheetsStatStore.open(catalog) if args.sheet else InMemoryStatStore()
        engine = ReconciliationEngine(store, catalog)

    try:
        result = ingest(
            source.read_bytes(),
            regions,
            recognizer=PaddleRecognizer(),
            catalog=catalog,
            engine=engine,
            key=key,
            timeout=args.timeout,
            debug_crops=args.debug_crops,
        )
    except (InvalidImageError, OCRTimeoutError, OCRUnavailableError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    print(json.dumps(result.to_dict(), indent=2))


# ---------------------------------------------------------------------------
# check-formula
# ---------------------------------------------------------------------------


def cmd_check_formula(args: argparse.Namespace) -> None:
    """Compile a formula and report the referenced fields or the error."""
    try:
        compiled = compile_expression(args.expression, _load_catalog(), args.position)
    except FormulaCompileError as exc:
        print(format_compile_error(args.expression, exc))
        sys.exit(1)
    print(f"OK: uses {', '.join(sorted(compiled.fields)) or 'no fields'}")


# ---------------------------------------------------------------------------
# rank
# ---------------------------------------------------------------------------


def cmd_rank(args: argparse.Namespace) -> None:
    """Rank the players in a JSON file and print the ranking as JSON.

    The records file is a list of objects with ``playerId``, ``position``
    and ``values`` (field name -> value). Without an expression the
    built-in team-of-the-week rating is used.
    """
    catalog = _load_catalog()
    compiled = None
    if args.expression is not None:
        try:
            compiled = compile_expression(args.expression, catalog, args.position)
        except FormulaCompileError as exc:
            print(format_compile_error(args.expression, exc))
            sys.exit(1)

    role_map = None
    if args.mappings:
        raw_mappings = _read_json(Path(args.mappings))
        try:
            role_map = RoleMap(PositionRoleMapping.from_dict(m) for m in raw_mappings)
        except (KeyError, ValueError) as exc:
            print(f"Error: invalid role mappings: {exc}")
            sys.exit(1)

    raw_records = _read_json(Path(args.records))
    try:
        candidates = [
            RatingCandidate(
                record=record_from_values(entry.get("values", {}), catalog),
                position=entry.get("position"),
                player_id=entry.get("playerId"),
            )
            for entry in raw_records
        ]
    except (AttributeError, TypeError, ValueError) as exc:
        print(f"Error: invalid records file: {exc}")
        sys.exit(1)

    ranked = rank(compiled, candidates, args.top, args.formation, role_map)
    output = {
        "formula": args.expression,
        "formation": args.formation,
        "averageScore": average_score(ranked),
        "ranking": [entry.to_dict() for entry in ranked],
    }
    if args.team:
        output["team"] = {
            slot: entry.player_id for slot, entry in select_team(ranked).items()
        }
    print(json.dumps(output, indent=2))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    """Entry point — parse subcommand and dispatch."""
    parser = argparse.ArgumentParser(
        description="League stats screenshot ingestion and rating formulas.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ingest ---
    ingest_parser = subparsers.add_parser(
        "ingest",
        help="OCR a result screenshot into a stat record",
        description=(
            "Crop the stat table from a screenshot, OCR it, and print the "
            "normalized record with per-field confidence. With a key the "
            "record is reconciled into the store."
        ),
    )
    ingest_parser.add_argument("image", help="Path to the screenshot")
    ingest_parser.add_argument(
        "--region",
        nargs=4,
        type=int,
        action="append",
        metavar=("X", "Y", "W", "H"),
        help="Stat-table rectangle (repeatable; default: right 40%% of the image)",
    )
    ingest_parser.add_argument("--player", help="Player id for the target row")
    ingest_parser.add_argument("--match", help="Match id (match-level row)")
    ingest_parser.add_argument("--season", help="Season id (season-level row)")
    ingest_parser.add_argument("--team", help="Team id (season-level row)")
    ingest_parser.add_argument(
        "--timeout",
        type=float,
        default=OCR_TIMEOUT,
        help=f"OCR timeout per region in seconds (default: {OCR_TIMEOUT})",
    )
    ingest_parser.add_argument(
        "--sheet",
        action="store_true",
        help="Reconcile into the configured Google Spreadsheet",
    )
    ingest_parser.add_argument(
        "--debug-crops",
        action="store_true",
        help="Save preprocessed crops to debug/",
    )

    # check-formula ---
    check_parser = subparsers.add_parser(
        "check-formula",
        help="Compile a rating formula against the field catalog",
    )
    check_parser.add_argument("expression", help="Formula source")
    check_parser.add_argument("--position", help="Position scope of the formula")

    # rank ---
    rank_parser = subparsers.add_parser(
        "rank",
        help="Rank players from a JSON file with a rating formula",
    )
    rank_parser.add_argument("expression", help="Formula source")
    rank_parser.add_argument("records", help="JSON file of player records")
    rank_parser.add_argument("--position", help="Position scope of the formula")
    rank_parser.add_argument(
        "--formation",
        default=DEFAULT_FORMATION,
        help=f"Active formation (default: {DEFAULT_FORMATION})",
    )
    rank_parser.add_argument("--top", type=int, help="Keep only the best N")
    rank_parser.add_argument("--mappings", help="JSON file of position-role mappings")
    rank_parser.add_argument(
        "--team", action="store_true", help="Also print the best player per role",
    )

    # totw ---
    totw_parser = subparsers.add_parser(
        "totw",
        help="Pick the team of the week with the built-in position rating",
    )
    totw_parser.add_argument("records", help="JSON file of player records")
    totw_parser.add_argument(
        "--formation",
        default=DEFAULT_FORMATION,
        help=f"Active formation (default: {DEFAULT_FORMATION})",
    )
    totw_parser.add_argument("--top", type=int, help="Keep only the best N")
    totw_parser.add_argument("--mappings", help="JSON file of position-role mappings")
    totw_parser.set_defaults(expression=None, position=None, team=True)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    if args.command == "ingest":
        cmd_ingest(args)
    elif args.command == "check-formula":
        cmd_check_formula(args)
    elif args.command in ("rank", "totw"):
        cmd_rank(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
