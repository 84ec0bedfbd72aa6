"""Tests for formula.py — compilation, evaluation, caching and role mapping."""

import pytest

from catalog import FieldCatalog
from config import DIVISION_SENTINEL, MAX_FORMULA_DEPTH, MAX_FORMULA_TOKENS
from exceptions import FormulaCompileError, FormulaEvaluationError
from formula import (
    FLAG_DIVISION_BY_ZERO,
    FLAG_NON_FINITE,
    FormulaCache,
    PositionRoleMapping,
    RoleMap,
    compile_expression,
    define_formula,
    evaluate,
    evaluate_for_player,
    formula_applies,
    tokenize,
)
from normalize import record_from_values


@pytest.fixture
def role_map() -> RoleMap:
    return RoleMap([
        PositionRoleMapping("LB", "3-4-3", "WINGBACK"),
        PositionRoleMapping("RB", "3-4-3", "WINGBACK"),
        PositionRoleMapping("LB", "4-4-2", "FULLBACK"),
    ])


# ---------------------------------------------------------------------------
# tokenize
# ---------------------------------------------------------------------------

class TestTokenize:
    """Tests for tokenize()."""

    def test_positions(self) -> None:
        tokens = tokenize("goals >= 2")
        assert [(t.kind, t.text, t.position) for t in tokens] == [
            ("ident", "goals", 0),
            ("op", ">=", 6),
            ("number", "2", 9),
            ("end", "", 10),
        ]

    def test_bad_character(self) -> None:
        with pytest.raises(FormulaCompileError) as exc_info:
            tokenize("goals $ 2")
        assert exc_info.value.position == 6
        assert exc_info.value.token == "$"


# ---------------------------------------------------------------------------
# compile_expression
# ---------------------------------------------------------------------------

class TestCompile:
    """Tests for compile_expression()."""

    def test_collects_fields(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("(goals * 2) + (assists * 1)", catalog)
        assert compiled.fields == {"goals", "assists"}
        assert compiled.catalog_fingerprint == catalog.fingerprint

    def test_unknown_field_reports_position(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Unknown field 'bogus'") as exc_info:
            compile_expression("goals + bogus", catalog)
        assert exc_info.value.position == 8
        assert exc_info.value.token == "bogus"

    def test_identifiers_are_case_sensitive(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Unknown field"):
            compile_expression("Goals", catalog)

    def test_unclosed_paren(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Expected '\\)'") as exc_info:
            compile_expression("goals * (assists", catalog)
        assert exc_info.value.position == 16

    def test_trailing_tokens(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Unexpected") as exc_info:
            compile_expression("goals assists", catalog)
        assert exc_info.value.position == 6

    def test_empty(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="empty"):
            compile_expression("   ", catalog)

    def test_boolean_in_arithmetic_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Boolean cleanSheet") as exc_info:
            compile_expression("rating + cleanSheet * 2", catalog)
        assert exc_info.value.position == 9

    def test_comparison_in_arithmetic_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="compare it explicitly"):
            compile_expression("(goals > 1) * 3", catalog)

    def test_boolean_result_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="must produce a number"):
            compile_expression("goals > 1", catalog)

    def test_numeric_condition_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="Condition"):
            compile_expression("goals ? 1 : 0", catalog)

    def test_chained_comparison_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="chained"):
            compile_expression("goals > 1 > 0 ? 1 : 0", catalog)

    def test_compile_error_is_value_error(self, catalog: FieldCatalog) -> None:
        with pytest.raises(ValueError):
            compile_expression("goals +", catalog)

    def test_boolean_comparison_allowed(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("cleanSheet == 1 ? 2 : 0", catalog)
        assert compiled.fields == {"cleanSheet"}

    def test_deep_parentheses_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="nested too deeply") as exc_info:
            compile_expression("(" * 100 + "goals" + ")" * 100, catalog)
        assert exc_info.value.position == MAX_FORMULA_DEPTH
        assert exc_info.value.token == "("

    def test_long_unary_chain_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="nested too deeply"):
            compile_expression("-" * 100 + "goals", catalog)

    def test_deep_ternary_rejected(self, catalog: FieldCatalog) -> None:
        source = "cleanSheet ? 1 : " * 100 + "0"
        with pytest.raises(FormulaCompileError, match="nested too deeply"):
            compile_expression(source, catalog)

    def test_oversized_expression_rejected(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError, match="too long") as exc_info:
            compile_expression("-" * 2000 + "goals", catalog)
        assert exc_info.value.position == MAX_FORMULA_TOKENS

    def test_largest_accepted_expression_evaluates(self, catalog: FieldCatalog) -> None:
        nested = compile_expression("(" * MAX_FORMULA_DEPTH + "goals" + ")" * MAX_FORMULA_DEPTH, catalog)
        chain = compile_expression(" + ".join(["goals"] * (MAX_FORMULA_TOKENS // 2)), catalog)
        record = record_from_values({"goals": 2}, catalog)

        assert evaluate(nested, record).value == 2.0
        assert evaluate(chain, record).value == 2.0 * (MAX_FORMULA_TOKENS // 2)


# ---------------------------------------------------------------------------
# evaluate
# ---------------------------------------------------------------------------

class TestEvaluate:
    """Tests for evaluate()."""

    def test_round_trip(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("(goals * 2) + (assists * 1)", catalog)
        record = record_from_values({"goals": 3, "assists": 1}, catalog)

        result = evaluate(compiled, record)

        assert result.value == 7
        assert result.degenerate is False
        assert result.flags == ()

    def test_division_by_zero(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals / shots", catalog)
        record = record_from_values({"goals": 0, "shots": 0}, catalog)

        result = evaluate(compiled, record)

        assert result.value == DIVISION_SENTINEL
        assert result.degenerate is True
        assert FLAG_DIVISION_BY_ZERO in result.flags

    def test_genuine_zero_not_degenerate(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals / shots", catalog)
        result = evaluate(compiled, record_from_values({"goals": 0, "shots": 4}, catalog))
        assert result.value == 0.0
        assert result.degenerate is False

    def test_non_finite_result(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("1" + "0" * 400 + " * goals", catalog)
        result = evaluate(compiled, record_from_values({"goals": 2}, catalog))
        assert result.value == DIVISION_SENTINEL
        assert FLAG_NON_FINITE in result.flags
        assert result.degenerate is True

    def test_precedence_and_unary(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("-goals + assists * 2 - -1", catalog)
        result = evaluate(compiled, record_from_values({"goals": 3, "assists": 4}, catalog))
        assert result.value == 6.0

    def test_ternary_on_boolean_field(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("rating + (cleanSheet ? 1.5 : 0)", catalog)

        kept = evaluate(compiled, record_from_values({"rating": 7, "cleanSheet": True}, catalog))
        conceded = evaluate(compiled, record_from_values({"rating": 7, "cleanSheet": False}, catalog))

        assert kept.value == 8.5
        assert conceded.value == 7.0

    def test_ternary_is_lazy(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("shots > 0 ? goals / shots : 0", catalog)
        result = evaluate(compiled, record_from_values({"goals": 0, "shots": 0}, catalog))
        assert result.degenerate is False

    def test_nested_ternary(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals >= 3 ? 10 : goals >= 1 ? 5 : 0", catalog)
        assert evaluate(compiled, record_from_values({"goals": 3}, catalog)).value == 10
        assert evaluate(compiled, record_from_values({"goals": 1}, catalog)).value == 5
        assert evaluate(compiled, record_from_values({}, catalog)).value == 0

    def test_missing_field_in_plain_mapping(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals + assists", catalog)
        with pytest.raises(FormulaEvaluationError) as exc_info:
            evaluate(compiled, {"goals": 1})
        assert exc_info.value.field == "assists"

    def test_default_filled_field_is_flagged(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals + assists", catalog)
        result = evaluate(compiled, record_from_values({"goals": 1}, catalog))
        assert result.value == 1.0
        assert "missing:assists" in result.flags
        assert result.degenerate is False

    def test_deterministic(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("goals / shots * 100", catalog)
        record = record_from_values({"goals": 2, "shots": 7}, catalog)
        assert evaluate(compiled, record) == evaluate(compiled, record)


# ---------------------------------------------------------------------------
# FormulaCache
# ---------------------------------------------------------------------------

class TestFormulaCache:
    """Tests for FormulaCache."""

    def test_compiles_once(self, catalog: FieldCatalog) -> None:
        cache = FormulaCache()
        first = cache.get("goals * 2", catalog)
        second = cache.get("goals * 2", catalog)
        assert first is second
        assert len(cache) == 1

    def test_catalog_change_recompiles(self, catalog: FieldCatalog, small_catalog: FieldCatalog) -> None:
        cache = FormulaCache()
        first = cache.get("goals * 2", catalog)
        second = cache.get("goals * 2", small_catalog)
        assert first is not second
        assert second.catalog_fingerprint == small_catalog.fingerprint

    def test_position_is_part_of_key(self, catalog: FieldCatalog) -> None:
        cache = FormulaCache()
        assert cache.get("goals", catalog).position is None
        assert cache.get("goals", catalog, "ST").position == "ST"

    def test_bounded(self, catalog: FieldCatalog) -> None:
        cache = FormulaCache(max_size=2)
        oldest = cache.get("goals", catalog)
        cache.get("assists", catalog)
        cache.get("saves", catalog)

        assert len(cache) == 2
        assert cache.get("goals", catalog) is not oldest

    def test_compile_errors_not_cached(self, catalog: FieldCatalog) -> None:
        cache = FormulaCache()
        with pytest.raises(FormulaCompileError):
            cache.get("goals +", catalog)
        assert len(cache) == 0


# ---------------------------------------------------------------------------
# Role mapping
# ---------------------------------------------------------------------------

class TestRoleMap:
    """Tests for RoleMap and formula_applies()."""

    def test_duplicate_pair_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate role mapping"):
            RoleMap([
                PositionRoleMapping("LB", "3-4-3", "WINGBACK"),
                PositionRoleMapping("LB", "3-4-3", "FULLBACK"),
            ])

    def test_resolve(self, role_map: RoleMap) -> None:
        assert role_map.resolve("LB", "3-4-3") == "WINGBACK"
        assert role_map.resolve("lb", "3-4-3") == "WINGBACK"
        assert role_map.resolve("LB", "4-3-3") is None
        assert role_map.resolve(None, "3-4-3") is None

    def test_inactive_mapping_ignored(self) -> None:
        role_map = RoleMap([PositionRoleMapping("LB", "3-4-3", "WINGBACK", active=False)])
        assert role_map.resolve("LB", "3-4-3") is None

    def test_from_dict(self) -> None:
        mapping = PositionRoleMapping.from_dict(
            {"position": "RB", "formation": "3-5-2", "mappedRole": "WINGBACK", "isActive": True},
        )
        assert mapping.mapped_role == "WINGBACK"
        assert mapping.active

    def test_unscoped_formula_applies_to_everyone(self) -> None:
        assert formula_applies(None, "GK")
        assert formula_applies(None, None)

    def test_exact_position_applies(self) -> None:
        assert formula_applies("ST", "ST")
        assert not formula_applies("ST", "CB")
        assert not formula_applies("ST", None)


class TestEvaluateForPlayer:
    """Tests for evaluate_for_player() with role mapping."""

    def test_role_mapping_by_formation(self, catalog: FieldCatalog, role_map: RoleMap) -> None:
        compiled = compile_expression("tackles + interceptions", catalog, position="WINGBACK")
        record = record_from_values({"tackles": 4, "interceptions": 2}, catalog)

        scored = evaluate_for_player(compiled, record, "LB", "3-4-3", role_map)
        skipped = evaluate_for_player(compiled, record, "LB", "4-4-2", role_map)

        assert scored.skipped is False
        assert scored.value == 6.0
        assert skipped.skipped is True

    def test_no_role_map_skips_other_positions(self, catalog: FieldCatalog) -> None:
        compiled = compile_expression("saves", catalog, position="GK")
        record = record_from_values({"saves": 5}, catalog)
        assert evaluate_for_player(compiled, record, "CB").skipped is True
        assert evaluate_for_player(compiled, record, "GK").value == 5.0


# ---------------------------------------------------------------------------
# define_formula
# ---------------------------------------------------------------------------

class TestDefineFormula:
    """Tests for define_formula()."""

    def test_compiles_at_definition(self, catalog: FieldCatalog) -> None:
        formula = define_formula(
            "f1", "Attacking impact", "goals * 3 + assists * 2 + xG", catalog,
            position="ST", color="#ff0000",
        )
        assert formula.compiled.position == "ST"
        assert formula.to_dict()["fields"] == ["assists", "goals", "xG"]

    def test_fails_fast(self, catalog: FieldCatalog) -> None:
        with pytest.raises(FormulaCompileError):
            define_formula("f2", "Broken", "goals * unknownStat", catalog)
