"""Rule-driven PHI de-identification.

Provides :func:`deidentify`, which replaces recognisable identifiers in a
transcript with typed placeholder tokens and returns the substitution map
needed to reverse it later:

    [PATIENT_NAME]  regional first names and honorific + capitalised word
    [LOCATION]      regional states and cities
    [PHONE]         regional mobile numbers
    [EMAIL]         email addresses

Matching is delegated to an ordered tuple of :class:`Matcher` rules built once
per region from :mod:`sessionscribe.phi_rules`.  Rules run in order over the
evolving text; spans that overlap a placeholder are never matched, so
placeholders cannot be re-redacted.  After the rules, every remaining
whole-word occurrence of a value already captured is redacted under the
same category, so a name caught once after an honorific is not left bare
elsewhere.  Passes repeat until one makes no substitution, which makes the
transform idempotent.

The map is coarse: one value per category, last write wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, List, Protocol, Sequence, Set, Tuple

from .models import DeIdentifiedTranscript, PHICategory, PHIMap
from .phi_rules import EMAIL_PATTERN, HONORIFIC_PATTERN, RegionRules, get_region

Span = Tuple[int, int]
Match = Tuple[Span, PHICategory]

PLACEHOLDER_PATTERN = re.compile(
    r"\[(?:" + "|".join(category.value for category in PHICategory) + r")\]"
)


class Matcher(Protocol):
    """A single redaction rule."""

    category: PHICategory

    def match(self, text: str) -> List[Match]:
        ...


@dataclass(frozen=True)
class PatternMatcher:
    """Match any of ``patterns``; ``group`` selects the redacted part."""

    category: PHICategory
    patterns: Tuple[re.Pattern, ...]
    group: int = 0

    def match(self, text: str) -> List[Match]:
        found: List[Match] = []
        for pattern in self.patterns:
            for m in pattern.finditer(text):
                start, end = m.span(self.group)
                if end > start:
                    found.append(((start, end), self.category))
        return found


class GazetteerMatcher:
    """Case-insensitive whole-word match against a closed list of terms."""

    def __init__(self, category: PHICategory, terms: Iterable[str]) -> None:
        self.category = category
        unique = sorted({t.strip() for t in terms if t.strip()}, key=lambda t: (-len(t), t.lower()))
        if not unique:
            raise ValueError("gazetteer requires at least one term")
        alternation = "|".join(re.escape(term).replace(r"\ ", r"\s+") for term in unique)
        self._pattern = re.compile(r"\b(?:" + alternation + r")\b", re.IGNORECASE)

    def match(self, text: str) -> List[Match]:
        return [(m.span(), self.category) for m in self._pattern.finditer(text)]

    def __repr__(self) -> str:
        return f"GazetteerMatcher({self.category.value})"


class CapturedValueMatcher:
    """Match literal values already redacted elsewhere in the same text.

    Case-sensitive, so a name such as "Sunny" does not take the common word
    with it.
    """

    def __init__(self, category: PHICategory, values: Iterable[str]) -> None:
        self.category = category
        unique = sorted({v for v in values if v.strip()}, key=lambda v: (-len(v), v))
        alternation = "|".join(re.escape(value) for value in unique)
        # Lookarounds rather than \b so values starting with "+" still match.
        self._pattern = re.compile(r"(?<!\w)(?:" + alternation + r")(?!\w)") if unique else None

    def match(self, text: str) -> List[Match]:
        if self._pattern is None:
            return []
        return [(m.span(), self.category) for m in self._pattern.finditer(text)]


def build_rules(rules: RegionRules) -> Tuple[Matcher, ...]:
    """Return the ordered rule set for ``rules``: phone, email, places, names, honorifics."""

    return (
        PatternMatcher(PHICategory.PHONE, tuple(rules.phone_patterns)),
        PatternMatcher(PHICategory.EMAIL, (EMAIL_PATTERN,)),
        GazetteerMatcher(PHICategory.LOCATION, rules.locations),
        GazetteerMatcher(PHICategory.PATIENT_NAME, rules.first_names),
        PatternMatcher(PHICategory.PATIENT_NAME, (HONORIFIC_PATTERN,), group=1),
    )


def _overlaps(span: Span, protected: Sequence[Span]) -> bool:
    start, end = span
    return any(start < p_end and p_start < end for p_start, p_end in protected)


def _select(matches: List[Match], protected: Sequence[Span]) -> List[Match]:
    """Drop matches touching placeholders; keep earliest, then longest, of overlaps."""

    ordered = sorted(matches, key=lambda item: (item[0][0], -(item[0][1] - item[0][0])))
    chosen: List[Match] = []
    last_end = -1
    for span, category in ordered:
        if span[0] < last_end or _overlaps(span, protected):
            continue
        chosen.append((span, category))
        last_end = span[1]
    return chosen


class PHIRedactor:
    """Apply an immutable, ordered list of :class:`Matcher` rules to text."""

    def __init__(self, rules: Sequence[Matcher]) -> None:
        self._rules: Tuple[Matcher, ...] = tuple(rules)

    @property
    def rules(self) -> Tuple[Matcher, ...]:
        return self._rules

    def _apply(
        self,
        rule: Matcher,
        text: str,
        phi_map: PHIMap,
        counts: Dict[PHICategory, int],
        captured: Dict[PHICategory, Set[str]],
    ) -> str:
        protected = [m.span() for m in PLACEHOLDER_PATTERN.finditer(text)]
        selected = _select(rule.match(text), protected)
        if not selected:
            return text
        pieces: List[str] = []
        cursor = 0
        for (start, end), category in selected:
            pieces.append(text[cursor:start])
            pieces.append(category.placeholder)
            phi_map[category] = text[start:end]
            captured.setdefault(category, set()).add(text[start:end])
            counts[category] = counts.get(category, 0) + 1
            cursor = end
        pieces.append(text[cursor:])
        return "".join(pieces)

    def deidentify(self, text: str) -> Tuple[DeIdentifiedTranscript, PHIMap]:
        phi_map: PHIMap = {}
        counts: Dict[PHICategory, int] = {}
        captured: Dict[PHICategory, Set[str]] = {}
        current = text or ""
        while True:
            before = sum(counts.values())
            for rule in self._rules:
                current = self._apply(rule, current, phi_map, counts, captured)
            for category in PHICategory:
                values = captured.get(category)
                if values:
                    sweep = CapturedValueMatcher(category, values)
                    current = self._apply(sweep, current, phi_map, counts, captured)
            if sum(counts.values()) == before:
                break
        return DeIdentifiedTranscript(text=current, category_counts=counts), phi_map


@lru_cache(maxsize=None)
def get_redactor(region: str = "ng") -> PHIRedactor:
    """Return the shared redactor for ``region`` (rules compiled once)."""

    return PHIRedactor(build_rules(get_region(region)))


def deidentify(text: str, region: str = "ng") -> Tuple[DeIdentifiedTranscript, PHIMap]:
    """De-identify ``text`` with the rule set registered for ``region``."""

    return get_redactor(region).deidentify(text)


__all__ = [
    "Matcher",
    "PatternMatcher",
    "GazetteerMatcher",
    "CapturedValueMatcher",
    "PHIRedactor",
    "PLACEHOLDER_PATTERN",
    "build_rules",
    "get_redactor",
    "deidentify",
]
