"""OCR text to statistic tokens: label matching, digit correction, tokenizers.

Handles all text-to-token conversion for a stat table: line splitting, label
recognition against the catalog's aliases (exact, OCR-corrected, then fuzzy
via ``rapidfuzz``), value selection, kind-specific tokenizing, and per-field
confidence. Nothing here raises on bad input — garbage text produces an
empty result, never a fabricated value.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from rapidfuzz import fuzz, process

from catalog import FieldCatalog, FieldKind, StatisticField, Value
from config import (
    BOOLEAN_FALSE_TOKENS,
    BOOLEAN_TRUE_TOKENS,
    DIGIT_CORRECTIONS,
    FUZZY_LABEL_PENALTY,
    FUZZY_MATCH_THRESHOLD,
    LABEL_CORRECTIONS,
)
from recognize import Recognition

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\S+")
_NUMBER_RE = re.compile(r"^\d+(?:\.\d+)?$|^\.\d+$")
_NOISE_RE = re.compile(r"^[^\w%✓✔☑√✗✘☐×]+$")
_VALUE_CHARS_RE = re.compile(r"^[0-9OoDlI|.,]+%?$")
_EDGE_PUNCT = ":;=-–—|*•·\"'()[]{}"


@dataclass(frozen=True)
class ParsedField:
    """One located field: the raw token, its parsed value and confidence."""

    raw_token: str
    value: Value
    confidence: float
    label: str
    fuzzy: bool = False


ParsedStatSet = dict[str, ParsedField]


@dataclass(frozen=True)
class _Token:
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class _LabelMatch:
    field_name: str
    width: int
    fuzzy: bool


def correct_digits(token: str) -> str:
    """Apply OCR digit correction (``O`` -> ``0``, ``l``/``I`` -> ``1``, ...)."""
    return "".join(DIGIT_CORRECTIONS.get(ch, ch) for ch in token)


def _correct_label(text: str) -> str:
    return "".join(LABEL_CORRECTIONS.get(ch, ch) for ch in text)


def _strip_label(text: str) -> str:
    return text.strip(_EDGE_PUNCT).lower()


def _tokenize(text: str) -> list[list[_Token]]:
    lines: list[list[_Token]] = []
    offset = 0
    for line in text.split("\n"):
        tokens = [
            _Token(m.group(0), offset + m.start(), offset + m.end())
            for m in _TOKEN_RE.finditer(line)
        ]
        if tokens:
            lines.append(tokens)
        offset += len(line) + 1
    return lines


def _looks_like_value(text: str) -> bool:
    """True for tokens that could be a number once digit-corrected."""
    stripped = text.strip(_EDGE_PUNCT)
    if not stripped or not _VALUE_CHARS_RE.match(stripped):
        return False
    return any(ch.isdigit() for ch in stripped) or len(stripped) <= 2


def _is_noise(text: str) -> bool:
    return bool(_NOISE_RE.match(text))


def parse_number(token: str) -> Optional[float]:
    """Parse a digit run with at most one decimal point.

    Returns ``None`` for tokens with several decimal points or any non-digit
    character left after digit correction.
    """
    candidate = correct_digits(token.strip(_EDGE_PUNCT))
    if not _NUMBER_RE.match(candidate):
        return None
    return float(candidate)


def parse_percent(token: str) -> Optional[float]:
    """Parse ``"85%"`` or ``"85"`` as the fraction ``0.85``."""
    stripped = token.strip(_EDGE_PUNCT)
    if stripped.endswith("%"):
        stripped = stripped[:-1]
    number = parse_number(stripped)
    if number is None:
        return None
    return number / 100.0


def parse_boolean(token: str) -> Optional[bool]:
    """Map a token onto the closed boolean vocabulary; ``None`` if unknown."""
    lowered = token.strip(_EDGE_PUNCT).lower() or token.strip().lower()
    if lowered in BOOLEAN_TRUE_TOKENS:
        return True
    if lowered in BOOLEAN_FALSE_TOKENS:
        return False
    return None


def tokenize_value(token: str, kind: FieldKind) -> Optional[Value]:
    """Tokenize *token* according to the field kind; ``None`` if unparseable."""
    if kind is FieldKind.BOOLEAN:
        return parse_boolean(token)
    if kind is FieldKind.PERCENT:
        return parse_percent(token)
    return parse_number(token)


class StatTextParser:
    """Parses raw OCR text into a ``ParsedStatSet`` for one catalog snapshot.

    Args:
        catalog: The field catalog whose labels are recognized.
        fuzzy_threshold: Minimum rapidfuzz ratio (0-1) for fuzzy labels.
        fuzzy_penalty: Fraction of confidence removed for inexact labels.
    """

    def __init__(
        self,
        catalog: FieldCatalog,
        fuzzy_threshold: float = FUZZY_MATCH_THRESHOLD,
        fuzzy_penalty: float = FUZZY_LABEL_PENALTY,
    ) -> None:
        self.catalog = catalog
        self.fuzzy_threshold = fuzzy_threshold
        self.fuzzy_penalty = fuzzy_penalty
        self._labels = catalog.label_index
        self._label_choices = list(self._labels)
        self._max_words = max(catalog.max_label_words, 1)

    # -- label matching ----------------------------------------------------

    def _candidates(self, tokens: list[_Token], i: int) -> Iterable[tuple[int, str]]:
        for width in range(min(self._max_words, len(tokens) - i), 0, -1):
            words = tokens[i : i + width]
            if any(_looks_like_value(t.text) for t in words):
                continue
            candidate = " ".join(_strip_label(t.text) for t in words).strip()
            if candidate:
                yield width, candidate

    def match_label(self, tokens: list[_Token], i: int) -> Optional[_LabelMatch]:
        """Find the longest label starting at ``tokens[i]``.

        Tries exact alias lookup first, then lookup after OCR character
        correction (``0`` -> ``o``, ``1`` -> ``l``), then a rapidfuzz ratio
        match. Only the exact pass counts as an exact match.
        """
        candidates = list(self._candidates(tokens, i))
        for width, text in candidates:
            if text in self._labels:
                return _LabelMatch(self._labels[text], width, fuzzy=False)
        for width, text in candidates:
            corrected = _correct_label(text)
            if corrected in self._labels:
                return _LabelMatch(self._labels[corrected], width, fuzzy=True)
        if not self._label_choices:
            return None
        cutoff = self.fuzzy_threshold * 100
        for width, text in candidates:
            best = process.extractOne(
                _correct_label(text), self._label_choices,
                scorer=fuzz.ratio, score_cutoff=cutoff,
            )
            if best is not None:
                return _LabelMatch(self._labels[best[0]], width, fuzzy=True)
        return None

    # -- value selection ---------------------------------------------------

    def _find_value(
        self, tokens: list[_Token], start: int, stat: StatisticField,
    ) -> Optional[int]:
        for j in range(start, len(tokens)):
            text = tokens[j].text
            if _is_noise(text):
                continue
            if _looks_like_value(text):
                return j
            if self.match_label(tokens, j) is not None:
                return None
            if stat.kind is FieldKind.BOOLEAN:
                return j
        return None

    # -- public API --------------------------------------------------------

    def parse(self, recognition: Recognition) -> ParsedStatSet:
        """Parse one region's recognition into located fields.

        A field with no label in the text is absent from the result, which
        is distinct from a field whose value token reads ``0``.
        """
        text = recognition.text if isinstance(recognition.text, str) else ""
        parsed: ParsedStatSet = {}

        for tokens in _tokenize(text):
            i = 0
            while i < len(tokens):
                match = self.match_label(tokens, i)
                if match is None:
                    i += 1
                    continue
                stat = self.catalog[match.field_name]
                label = " ".join(t.text for t in tokens[i : i + match.width])
                value_index = self._find_value(tokens, i + match.width, stat)
                if value_index is None:
                    logger.debug("Label '%s' has no value token", stat.name)
                    i += match.width
                    continue

                token = tokens[value_index]
                i = value_index + 1
                if stat.name in parsed:
                    continue
                value = tokenize_value(token.text, stat.kind)
                if value is None:
                    logger.debug(
                        "Unparseable %s token '%s' for '%s'",
                        stat.kind.value, token.text, stat.name,
                    )
                    continue

                confidence = recognition.char_confidence(token.start, token.end)
                if match.fuzzy:
                    confidence *= 1.0 - self.fuzzy_penalty
                parsed[stat.name] = ParsedField(
                    raw_token=token.text,
                    value=value,
                    confidence=max(0.0, min(1.0, confidence)),
                    label=label,
                    fuzzy=match.fuzzy,
                )
                logger.debug(
                    "Found %s = %r (token='%s', confidence=%.3f, fuzzy=%s)",
                    stat.name, value, token.text, confidence, match.fuzzy,
                )

        if not parsed:
            logger.info("No statistics located in region '%s'", recognition.region_id)
        return parsed


def parse_text(
    raw_text: str,
    catalog: FieldCatalog,
    confidence: float = 1.0,
) -> ParsedStatSet:
    """Parse plain text with a uniform character confidence.

    Convenience wrapper for text that did not come from the recognizer
    (pasted tables, fixtures).
    """
    return StatTextParser(catalog).parse(Recognition(text=raw_text or "", confidence=confidence))


def merge_parsed(sets: Iterable[ParsedStatSet]) -> ParsedStatSet:
    """Combine per-region results, keeping the more confident reading per field."""
    merged: ParsedStatSet = {}
    for parsed in sets:
        for name, entry in parsed.items():
            current = merged.get(name)
            if current is None or entry.confidence > current.confidence:
                merged[name] = entry
    return merged
