"""Rating formula engine: compile once, evaluate many.

User-authored expressions are never executed as Python. The source is
tokenized, parsed by a small recursive-descent parser into an expression
tree, type-checked against the field catalog, and then walked against each
player's record.

Grammar (lowest to highest precedence)::

    expression  := comparison ( "?" expression ":" expression )?
    comparison  := additive ( ("==" | "!=" | "<" | "<=" | ">" | ">=") additive )?
    additive    := term ( ("+" | "-") term )*
    term        := unary ( ("*" | "/") unary )*
    unary       := ("-" | "+") unary | primary
    primary     := NUMBER | IDENTIFIER | "(" expression ")"

Identifiers must name a catalog field exactly. Boolean fields may only
appear in comparisons (where they count as 0/1) or as a ternary condition.
Parentheses, unary signs and ternaries may nest at most ``MAX_FORMULA_DEPTH``
levels, and an expression may hold at most ``MAX_FORMULA_TOKENS`` tokens.
"""

import hashlib
import logging
import math
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from catalog import FieldCatalog, FieldKind, Value
from config import (
    DEFAULT_FORMATION,
    DIVISION_SENTINEL,
    FORMULA_CACHE_SIZE,
    MAX_FORMULA_DEPTH,
    MAX_FORMULA_TOKENS,
)
from exceptions import FormulaCompileError, FormulaEvaluationError

logger = logging.getLogger(__name__)

NUMERIC = "number"
BOOLEAN = "boolean"

FLAG_DIVISION_BY_ZERO = "division_by_zero"
FLAG_NON_FINITE = "non_finite"
DEGENERATE_FLAGS = frozenset({FLAG_DIVISION_BY_ZERO, FLAG_NON_FINITE})

_COMPARISONS = ("==", "!=", "<=", ">=", "<", ">")
_TOKEN_RE = re.compile(
    r"""
    (?P<space>\s+)
  | (?P<number>\d+(?:\.\d*)?|\.\d+)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|[-+*/()?:<>])
    """,
    re.VERBOSE,
)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Token:
    kind: str  # "number", "ident", "op" or "end"
    text: str
    position: int


def tokenize(source: str) -> list[Token]:
    """Split *source* into tokens, ending with an ``end`` token.

    Raises:
        FormulaCompileError: On any character outside the grammar.
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise FormulaCompileError(
                f"Unexpected character '{source[pos]}'", pos, source[pos],
            )
        kind = match.lastgroup
        if kind != "space":
            tokens.append(Token(kind, match.group(0), pos))
        pos = match.end()
    tokens.append(Token("end", "", len(source)))
    return tokens


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------

class _EvalContext:
    """Per-evaluation scratch state: the record and collected flags."""

    def __init__(self, record: Mapping[str, Value]) -> None:
        self.record = record
        self.flags: list[str] = []

    def flag(self, name: str) -> None:
        if name not in self.flags:
            self.flags.append(name)


@dataclass(frozen=True)
class Number:
    value: float
    position: int

    def evaluate(self, ctx: _EvalContext) -> float:
        return self.value


@dataclass(frozen=True)
class FieldRef:
    name: str
    kind: FieldKind
    position: int

    def evaluate(self, ctx: _EvalContext) -> Union[float, bool]:
        try:
            raw = ctx.record[self.name]
        except KeyError:
            raise FormulaEvaluationError(self.name, "field missing from record") from None
        if self.kind is FieldKind.BOOLEAN:
            return bool(raw)
        if isinstance(raw, bool) or raw is None:
            raise FormulaEvaluationError(self.name, f"expected a number, got {raw!r}")
        return float(raw)


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"
    position: int

    def evaluate(self, ctx: _EvalContext) -> float:
        value = self.operand.evaluate(ctx)
        return -value if self.op == "-" else value


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"
    position: int

    def evaluate(self, ctx: _EvalContext) -> Union[float, bool]:
        left = self.left.evaluate(ctx)
        right = self.right.evaluate(ctx)
        if self.op in _COMPARISONS:
            left, right = float(left), float(right)
            if self.op == "==":
                return left == right
            if self.op == "!=":
                return left != right
            if self.op == "<":
                return left < right
            if self.op == "<=":
                return left <= right
            if self.op == ">":
                return left > right
            return left >= right
        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        if right == 0:
            ctx.flag(FLAG_DIVISION_BY_ZERO)
            return DIVISION_SENTINEL
        return left / right


@dataclass(frozen=True)
class Conditional:
    condition: "Node"
    then: "Node"
    otherwise: "Node"
    position: int

    def evaluate(self, ctx: _EvalContext) -> Union[float, bool]:
        if self.condition.evaluate(ctx):
            return self.then.evaluate(ctx)
        return self.otherwise.evaluate(ctx)


Node = Union[Number, FieldRef, Unary, Binary, Conditional]


# ---------------------------------------------------------------------------
# Parser and type pass
# ---------------------------------------------------------------------------

class _Parser:
    def __init__(self, source: str, catalog: FieldCatalog) -> None:
        self.source = source
        self.catalog = catalog
        self.tokens = tokenize(source)
        self.index = 0
        self.depth = 0
        self.fields: set[str] = set()
        if len(self.tokens) - 1 > MAX_FORMULA_TOKENS:
            token = self.tokens[MAX_FORMULA_TOKENS]
            raise FormulaCompileError(
                f"Expression is too long (more than {MAX_FORMULA_TOKENS} tokens)",
                token.position, token.text,
            )

    @contextmanager
    def _nested(self, token: Token):
        """Count one level of nesting opened at *token*."""
        if self.depth >= MAX_FORMULA_DEPTH:
            raise FormulaCompileError(
                "Expression nested too deeply", token.position, token.text,
            )
        self.depth += 1
        try:
            yield
        finally:
            self.depth -= 1

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *ops: str) -> Optional[Token]:
        token = self.current
        if token.kind == "op" and token.text in ops:
            return self._advance()
        return None

    def _expect(self, op: str) -> Token:
        token = self._accept(op)
        if token is None:
            found = self.current.text or "end of expression"
            raise FormulaCompileError(
                f"Expected '{op}' but found '{found}'",
                self.current.position, self.current.text,
            )
        return token

    def parse(self) -> tuple[Node, str]:
        if self.current.kind == "end":
            raise FormulaCompileError("Expression is empty", 0)
        node, kind = self.expression()
        if self.current.kind != "end":
            raise FormulaCompileError(
                f"Unexpected '{self.current.text}'",
                self.current.position, self.current.text,
            )
        return node, kind

    def expression(self) -> tuple[Node, str]:
        condition, cond_kind = self.comparison()
        question = self._accept("?")
        if question is None:
            return condition, cond_kind
        if cond_kind != BOOLEAN:
            raise FormulaCompileError(
                "Condition of '?' must be a comparison or boolean field",
                _position(condition), "?",
            )
        with self._nested(question):
            then, then_kind = self.expression()
            self._expect(":")
            otherwise, other_kind = self.expression()
        if then_kind != other_kind:
            raise FormulaCompileError(
                "Both branches of '?' must have the same type",
                _position(otherwise), "",
            )
        return Conditional(condition, then, otherwise, question.position), then_kind

    def comparison(self) -> tuple[Node, str]:
        left, kind = self.additive()
        op = self._accept(*_COMPARISONS)
        if op is None:
            return left, kind
        right, _ = self.additive()
        if self.current.kind == "op" and self.current.text in _COMPARISONS:
            raise FormulaCompileError(
                "Comparisons cannot be chained",
                self.current.position, self.current.text,
            )
        return Binary(op.text, left, right, op.position), BOOLEAN

    def additive(self) -> tuple[Node, str]:
        left, kind = self.term()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return left, kind
            self._require_numeric(left, kind, op)
            right, right_kind = self.term()
            self._require_numeric(right, right_kind, op)
            left, kind = Binary(op.text, left, right, op.position), NUMERIC

    def term(self) -> tuple[Node, str]:
        left, kind = self.unary()
        while True:
            op = self._accept("*", "/")
            if op is None:
                return left, kind
            self._require_numeric(left, kind, op)
            right, right_kind = self.unary()
            self._require_numeric(right, right_kind, op)
            left, kind = Binary(op.text, left, right, op.position), NUMERIC

    def unary(self) -> tuple[Node, str]:
        op = self._accept("-", "+")
        if op is None:
            return self.primary()
        with self._nested(op):
            operand, kind = self.unary()
        self._require_numeric(operand, kind, op)
        return Unary(op.text, operand, op.position), NUMERIC

    def primary(self) -> tuple[Node, str]:
        token = self.current
        if token.kind == "number":
            self._advance()
            return Number(float(token.text), token.position), NUMERIC
        if token.kind == "ident":
            self._advance()
            stat = self.catalog.get(token.text)
            if stat is None:
                raise FormulaCompileError(
                    f"Unknown field '{token.text}'", token.position, token.text,
                )
            self.fields.add(stat.name)
            kind = BOOLEAN if stat.kind is FieldKind.BOOLEAN else NUMERIC
            return FieldRef(stat.name, stat.kind, token.position), kind
        paren = self._accept("(")
        if paren is not None:
            with self._nested(paren):
                node, kind = self.expression()
                self._expect(")")
            return node, kind
        found = token.text or "end of expression"
        raise FormulaCompileError(
            f"Expected a number, field or '(' but found '{found}'",
            token.position, token.text,
        )

    def _require_numeric(self, node: Node, kind: str, op: Token) -> None:
        if kind == BOOLEAN:
            label = node.name if isinstance(node, FieldRef) else "comparison"
            raise FormulaCompileError(
                f"Boolean {label} cannot be used with '{op.text}'; compare it explicitly",
                _position(node), label,
            )


def _position(node: Node) -> int:
    if isinstance(node, (Binary, Conditional)):
        return _position(node.left if isinstance(node, Binary) else node.condition)
    return node.position


# ---------------------------------------------------------------------------
# Compiled formulas and evaluation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompiledFormula:
    """Validated, evaluable form of a rating expression.

    Attributes:
        source: The expression as authored.
        root: The expression tree.
        fields: Catalog fields the expression references.
        catalog_fingerprint: Fingerprint of the catalog it was checked against.
        position: Optional position scope (e.g. ``"WINGBACK"``).
    """

    source: str
    root: Node = field(repr=False)
    fields: frozenset[str]
    catalog_fingerprint: str
    position: Optional[str] = None


@dataclass(frozen=True)
class Evaluation:
    """Result of evaluating a formula for one record.

    ``degenerate`` distinguishes "computed 0" from "could not compute,
    reported the sentinel". ``skipped`` marks a role mismatch: the formula
    does not apply to this player at all.
    """

    value: float
    flags: tuple[str, ...] = ()
    degenerate: bool = False
    skipped: bool = False


def compile_expression(
    source: str,
    catalog: FieldCatalog,
    position: Optional[str] = None,
) -> CompiledFormula:
    """Compile *source* against *catalog*.

    Args:
        source: The user-authored expression.
        catalog: Catalog snapshot resolving identifiers.
        position: Optional position scope for the formula.

    Returns:
        The compiled formula.

    Raises:
        FormulaCompileError: On a syntax error, unknown field or type error.
            ``position`` on the error is the offending token's offset.
    """
    if not isinstance(source, str):
        raise FormulaCompileError("Expression must be a string", 0)
    parser = _Parser(source, catalog)
    root, kind = parser.parse()
    if kind != NUMERIC:
        raise FormulaCompileError(
            "Formula must produce a number, not a comparison", 0,
        )
    compiled = CompiledFormula(
        source=source,
        root=root,
        fields=frozenset(parser.fields),
        catalog_fingerprint=catalog.fingerprint,
        position=position or None,
    )
    logger.debug("Compiled formula %r (fields=%s)", source, sorted(compiled.fields))
    return compiled


def evaluate(compiled: CompiledFormula, record: Mapping[str, Value]) -> Evaluation:
    """Evaluate *compiled* against one player's record.

    Division by zero and non-finite results never raise: the value is
    ``DIVISION_SENTINEL`` and the evaluation is flagged degenerate.

    Raises:
        FormulaEvaluationError: If the record lacks a referenced field.
    """
    ctx = _EvalContext(record)
    value = float(compiled.root.evaluate(ctx))
    if not math.isfinite(value):
        ctx.flag(FLAG_NON_FINITE)
        value = DIVISION_SENTINEL
    flags = tuple(ctx.flags)
    missing = getattr(record, "missing", frozenset())
    flags += tuple(f"missing:{name}" for name in sorted(compiled.fields & missing))
    return Evaluation(
        value=value,
        flags=flags,
        degenerate=any(flag in DEGENERATE_FLAGS for flag in flags),
    )


def source_hash(source: str) -> str:
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class FormulaCache:
    """Compiled-formula cache keyed by (source hash, catalog fingerprint, scope).

    Readers see an immutable mapping; inserts build a new mapping and swap
    it in, evicting the oldest entries beyond ``max_size``.
    """

    def __init__(self, max_size: int = FORMULA_CACHE_SIZE) -> None:
        self.max_size = max_size
        self._entries: Mapping[tuple, CompiledFormula] = MappingProxyType({})
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(
        self, source: str, catalog: FieldCatalog, position: Optional[str] = None,
    ) -> CompiledFormula:
        """Return the compiled form of *source*, compiling on first use.

        Raises:
            FormulaCompileError: If *source* does not compile. Failures are
                not cached.
        """
        key = (source_hash(source), catalog.fingerprint, position or None)
        cached = self._entries.get(key)
        if cached is not None:
            return cached
        compiled = compile_expression(source, catalog, position)
        with self._lock:
            entries = dict(self._entries)
            entries[key] = compiled
            while len(entries) > self.max_size:
                del entries[next(iter(entries))]
            self._entries = MappingProxyType(entries)
        return compiled

    def clear(self) -> None:
        with self._lock:
            self._entries = MappingProxyType({})


# ---------------------------------------------------------------------------
# Position -> role mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PositionRoleMapping:
    """Maps a nominal position to a tactical role under one formation."""

    position: str
    formation: str
    mapped_role: str
    description: str = ""
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "PositionRoleMapping":
        return cls(
            position=str(data["position"]),
            formation=str(data["formation"]),
            mapped_role=str(data.get("mappedRole", data.get("mapped_role"))),
            description=str(data.get("description", "")),
            active=bool(data.get("isActive", data.get("active", True))),
        )


class RoleMap:
    """Lookup table of position-role mappings.

    Raises:
        ValueError: If two mappings share a (position, formation) pair.
    """

    def __init__(self, mappings: Iterable[PositionRoleMapping] = ()) -> None:
        table: dict[tuple[str, str], PositionRoleMapping] = {}
        for mapping in mappings:
            key = (mapping.position.upper(), mapping.formation)
            if key in table:
                raise ValueError(
                    f"Duplicate role mapping for position '{mapping.position}' "
                    f"in formation '{mapping.formation}'"
                )
            table[key] = mapping
        self._table = MappingProxyType(table)

    def __len__(self) -> int:
        return len(self._table)

    def resolve(self, position: Optional[str], formation: str) -> Optional[str]:
        """Return the role *position* plays in *formation*, if mapped."""
        if not position:
            return None
        mapping = self._table.get((position.upper(), formation))
        if mapping is None or not mapping.active:
            return None
        return mapping.mapped_role


def formula_applies(
    position_scope: Optional[str],
    player_position: Optional[str],
    formation: str = DEFAULT_FORMATION,
    role_map: Optional[RoleMap] = None,
) -> bool:
    """Decide whether a position-scoped formula scores this player.

    Unscoped formulas apply to everyone. A scoped formula applies when the
    player's position equals the scope, or when the player's position maps
    to the scope's role under *formation*.
    """
    if not position_scope:
        return True
    if not player_position:
        return False
    if player_position.upper() == position_scope.upper():
        return True
    if role_map is None:
        return False
    role = role_map.resolve(player_position, formation)
    return role is not None and role.upper() == position_scope.upper()


def evaluate_for_player(
    compiled: CompiledFormula,
    record: Mapping[str, Value],
    player_position: Optional[str] = None,
    formation: str = DEFAULT_FORMATION,
    role_map: Optional[RoleMap] = None,
) -> Evaluation:
    """Resolve role scoping, then evaluate.

    Returns:
        ``Evaluation(skipped=True)`` when the formula does not apply to the
        player; otherwise the result of ``evaluate()``.

    Raises:
        FormulaEvaluationError: Propagated from ``evaluate()``.
    """
    if not formula_applies(compiled.position, player_position, formation, role_map):
        logger.debug(
            "Skipping %s for formula scoped to %s under %s",
            player_position, compiled.position, formation,
        )
        return Evaluation(value=DIVISION_SENTINEL, skipped=True)
    return evaluate(compiled, record)


# ---------------------------------------------------------------------------
# Formula entity
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Formula:
    """An administrator-defined rating formula with display metadata."""

    id: str
    name: str
    expression_source: str
    compiled: CompiledFormula = field(repr=False)
    position: Optional[str] = None
    color: str = ""
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "formula": self.expression_source,
            "position": self.position,
            "color": self.color,
            "description": self.description,
            "fields": sorted(self.compiled.fields),
        }


def define_formula(
    formula_id: str,
    name: str,
    expression_source: str,
    catalog: FieldCatalog,
    position: Optional[str] = None,
    color: str = "",
    description: str = "",
) -> Formula:
    """Create a formula, compiling it immediately.

    Raises:
        FormulaCompileError: If the expression does not compile.
    """
    compiled = compile_expression(expression_source, catalog, position)
    logger.info("Defined formula '%s' (%s)", name, formula_id)
    return Formula(
        id=formula_id,
        name=name,
        expression_source=expression_source,
        compiled=compiled,
        position=position or None,
        color=color,
        description=description,
    )
