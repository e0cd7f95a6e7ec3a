"""Smart-album rules and their evaluation against a single asset.

Rules are small frozen dataclasses; ``evaluate`` is a pure function of
(rule, asset). Text comparisons are case- and accent-insensitive:
both sides are NFKD-normalized, stripped of combining marks and
casefolded before the substring test.

Rules also round-trip through ``field:value`` strings for the CLI::

    rating:4                       -> RatingAtLeast(4)
    keyword:travel                 -> KeywordContains("travel")
    label:cat                      -> AILabelContains("cat")
    date:2024-01-01..2024-01-31    -> DateInRange(start, end)
    faces:true                     -> HasFaces(True)
    offline:false                  -> IsOffline(False)
    missing:true                   -> IsMissing(True)
    needs-ai:true                  -> NeedsAITags(True)
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Iterable, Union

from photolib.constants import MAX_RATING, MIN_RATING
from photolib.exceptions import InvalidError
from photolib.models import Asset, AssetStatus, SmartAlbum, has_face


@dataclass(frozen=True)
class RatingAtLeast:
    minimum: int


@dataclass(frozen=True)
class KeywordContains:
    text: str


@dataclass(frozen=True)
class AILabelContains:
    """Matches AI labels or captions."""

    text: str


@dataclass(frozen=True)
class DateInRange:
    """Inclusive range over ``exif_date`` falling back to ``created_at``."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class HasFaces:
    expected: bool = True


@dataclass(frozen=True)
class IsOffline:
    expected: bool = True


@dataclass(frozen=True)
class IsMissing:
    expected: bool = True


@dataclass(frozen=True)
class NeedsAITags:
    expected: bool = True


Rule = Union[
    RatingAtLeast,
    KeywordContains,
    AILabelContains,
    DateInRange,
    HasFaces,
    IsOffline,
    IsMissing,
    NeedsAITags,
]

RULE_TYPES = (
    RatingAtLeast,
    KeywordContains,
    AILabelContains,
    DateInRange,
    HasFaces,
    IsOffline,
    IsMissing,
    NeedsAITags,
)


def fold(text: str) -> str:
    """Normalize text for case- and accent-insensitive comparison."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold()


def folded_contains(haystack: str, needle: str) -> bool:
    return fold(needle) in fold(haystack)


def evaluate(rule: Rule, asset: Asset) -> bool:
    """Return True if *asset* satisfies *rule*."""
    if isinstance(rule, RatingAtLeast):
        return asset.rating >= rule.minimum
    if isinstance(rule, KeywordContains):
        return any(folded_contains(k.name, rule.text) for k in asset.keywords)
    if isinstance(rule, AILabelContains):
        return any(
            folded_contains(tag.caption, rule.text)
            or any(folded_contains(label, rule.text) for label in tag.labels)
            for tag in asset.ai_tags
        )
    if isinstance(rule, DateInRange):
        date = asset.effective_date
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        return rule.start <= date <= rule.end
    if isinstance(rule, HasFaces):
        return has_face(asset) == rule.expected
    if isinstance(rule, IsOffline):
        return (asset.status == AssetStatus.OFFLINE) == rule.expected
    if isinstance(rule, IsMissing):
        return (asset.status == AssetStatus.MISSING) == rule.expected
    if isinstance(rule, NeedsAITags):
        return asset.needs_ai_tags == rule.expected
    raise InvalidError(f"Unknown rule type: {type(rule).__name__}")


def evaluate_smart_album(album: SmartAlbum, asset: Asset) -> bool:
    """Conjunction over the album's rules. No rules matches everything."""
    return all(evaluate(rule, asset) for rule in album.rules)


def validate_rule(rule: Rule) -> None:
    """Raise ``InvalidError`` if *rule* can never be evaluated sensibly."""
    if not isinstance(rule, RULE_TYPES):
        raise InvalidError(f"Unknown rule type: {type(rule).__name__}")
    if isinstance(rule, RatingAtLeast):
        if isinstance(rule.minimum, bool) or not isinstance(rule.minimum, int):
            raise InvalidError("Rating rule needs an integer minimum")
        if not MIN_RATING <= rule.minimum <= MAX_RATING:
            raise InvalidError(
                f"Rating minimum must be within [{MIN_RATING}, {MAX_RATING}], "
                f"got {rule.minimum}"
            )
    elif isinstance(rule, (KeywordContains, AILabelContains)):
        if not rule.text or not rule.text.strip():
            raise InvalidError("Text rules need a non-empty search string")
    elif isinstance(rule, DateInRange):
        if rule.start.tzinfo is None or rule.end.tzinfo is None:
            raise InvalidError("Date range bounds must be timezone-aware")
        if rule.start > rule.end:
            raise InvalidError(
                f"Date range start {rule.start.isoformat()} is after "
                f"end {rule.end.isoformat()}"
            )
    elif not isinstance(rule.expected, bool):
        raise InvalidError(f"{type(rule).__name__} needs a boolean")


def validate_rules(rules: Iterable[Rule]) -> tuple[Rule, ...]:
    rules = tuple(rules)
    for rule in rules:
        validate_rule(rule)
    return rules


# ----------------------------------------------------------------------
# field:value strings
# ----------------------------------------------------------------------

_BOOL_WORDS = {
    "true": True, "yes": True, "1": True, "on": True,
    "false": False, "no": False, "0": False, "off": False,
}

_FLAG_RULES = {
    "faces": HasFaces,
    "offline": IsOffline,
    "missing": IsMissing,
    "needs-ai": NeedsAITags,
}


def _parse_bool(value: str) -> bool:
    try:
        return _BOOL_WORDS[value.strip().lower()]
    except KeyError:
        raise InvalidError(f"Expected true/false, got '{value}'") from None


def _parse_date(value: str, end_of_day: bool) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        raise InvalidError(f"Invalid date: '{value}'") from None
    if len(value.strip()) == 10 and end_of_day:
        parsed = datetime.combine(parsed.date(), time.max)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_rule(text: str) -> Rule:
    """Parse a ``field:value`` string into a validated rule."""
    field_name, sep, value = text.partition(":")
    field_name = field_name.strip().lower()
    if not sep or not value:
        raise InvalidError(
            f"Invalid rule format: '{text}'. Expected field:value (e.g. rating:4)"
        )

    rule: Rule
    if field_name == "rating":
        try:
            rule = RatingAtLeast(int(value))
        except ValueError:
            raise InvalidError(f"Rating must be an integer, got '{value}'") from None
    elif field_name == "keyword":
        rule = KeywordContains(value)
    elif field_name == "label":
        rule = AILabelContains(value)
    elif field_name == "date":
        start, dots, end = value.partition("..")
        if not dots:
            raise InvalidError(f"Date rule needs START..END, got '{value}'")
        rule = DateInRange(_parse_date(start, False), _parse_date(end, True))
    elif field_name in _FLAG_RULES:
        rule = _FLAG_RULES[field_name](_parse_bool(value))
    else:
        raise InvalidError(f"Unknown rule field: '{field_name}'")

    validate_rule(rule)
    return rule


def format_rule(rule: Rule) -> str:
    """Inverse of ``parse_rule`` (dates rendered in ISO format)."""
    if isinstance(rule, RatingAtLeast):
        return f"rating:{rule.minimum}"
    if isinstance(rule, KeywordContains):
        return f"keyword:{rule.text}"
    if isinstance(rule, AILabelContains):
        return f"label:{rule.text}"
    if isinstance(rule, DateInRange):
        return f"date:{rule.start.isoformat()}..{rule.end.isoformat()}"
    for name, rule_type in _FLAG_RULES.items():
        if isinstance(rule, rule_type):
            return f"{name}:{'true' if rule.expected else 'false'}"
    raise InvalidError(f"Unknown rule type: {type(rule).__name__}")
