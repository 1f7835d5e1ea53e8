"""Lead ↔ contact fuzzy matching.

Scores are built from five weighted factors. The weights always sum into the
denominator, so a factor with data on only one side lowers the score instead
of being left out of the normalization.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from rapidfuzz.distance import Levenshtein


NAME_WEIGHT = 40
EMAIL_WEIGHT = 25
LINKEDIN_WEIGHT = 20
TITLE_WEIGHT = 10
COMPANY_WEIGHT = 5
TOTAL_WEIGHT = NAME_WEIGHT + EMAIL_WEIGHT + LINKEDIN_WEIGHT + TITLE_WEIGHT + COMPANY_WEIGHT

DEFAULT_SCORE_THRESHOLD = 60
DEFAULT_RESULT_LIMIT = 10

_LINKEDIN_SLUG_RE = re.compile(r"linkedin\.com/in/([^/?#\s]+)", re.IGNORECASE)

T = TypeVar("T")


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def extract_name_variations(full_name: str | None) -> set[str]:
    normalized = _clean(full_name)
    if not normalized:
        return set()

    variations = {normalized}
    parts = normalized.split()
    if len(parts) >= 2:
        first, last = parts[0], parts[-1]
        variations.add(f"{first} {last}")
        variations.add(f"{last}, {first}")
        variations.update(parts)
    return variations


def string_similarity(a: str | None, b: str | None) -> float:
    """Edit-distance ratio ``(len(longer) - levenshtein) / len(longer)``."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    longer = max(len(a), len(b))
    return (longer - Levenshtein.distance(a, b)) / longer


def name_match(lead_variations: Iterable[str], contact_first: str | None, contact_last: str | None) -> float:
    first = _clean(contact_first)
    last = _clean(contact_last)
    if not first and not last:
        return 0.0

    forward = f"{first} {last}".strip()
    backward = f"{last} {first}".strip()

    best = 0.0
    for variation in lead_variations:
        if variation == forward or variation == backward:
            return 1.0
        best = max(best, string_similarity(variation, forward), string_similarity(variation, backward))
    return best


def extract_linkedin_slug(url: str | None) -> str | None:
    if not isinstance(url, str):
        return None
    match = _LINKEDIN_SLUG_RE.search(url)
    if match is None:
        return None
    return match.group(1).lower()


def contact_company_name(contact: Any) -> str | None:
    company = getattr(contact, "company", None)
    name = getattr(company, "name", None) if company is not None else None
    if name:
        return name
    custom_fields = getattr(contact, "custom_fields", None) or {}
    current = custom_fields.get("currentCompany") if isinstance(custom_fields, dict) else None
    return current if isinstance(current, str) else None


@dataclass(slots=True)
class MatchBreakdown:
    name: float = 0.0
    email: float = 0.0
    linkedin: float = 0.0
    title: float = 0.0
    company: float = 0.0

    @property
    def weighted_sum(self) -> float:
        return (
            NAME_WEIGHT * self.name
            + EMAIL_WEIGHT * self.email
            + LINKEDIN_WEIGHT * self.linkedin
            + TITLE_WEIGHT * self.title
            + COMPANY_WEIGHT * self.company
        )

    @property
    def score(self) -> int:
        # Half-up rounding; Python's round() would send 62.5 to 62.
        raw = math.floor(100 * self.weighted_sum / TOTAL_WEIGHT + 0.5)
        return max(0, min(100, int(raw)))


def score_match(lead: Any, contact: Any) -> MatchBreakdown:
    breakdown = MatchBreakdown()

    variations = extract_name_variations(getattr(lead, "full_name", None))
    if variations:
        breakdown.name = name_match(variations, getattr(contact, "first_name", None), getattr(contact, "last_name", None))

    lead_email = _clean(getattr(lead, "email", None))
    contact_email = _clean(getattr(contact, "email", None))
    if lead_email and contact_email:
        breakdown.email = 1.0 if lead_email == contact_email else 0.0

    lead_slug = extract_linkedin_slug(getattr(lead, "linkedin_url", None))
    contact_slug = extract_linkedin_slug(getattr(contact, "linkedin_url", None))
    if lead_slug and contact_slug:
        breakdown.linkedin = 1.0 if lead_slug == contact_slug else 0.0

    lead_title = _clean(getattr(lead, "job_title", None))
    contact_title = _clean(getattr(contact, "job_title", None))
    if lead_title and contact_title:
        breakdown.title = string_similarity(lead_title, contact_title)

    lead_company = _clean(getattr(lead, "company_name", None))
    contact_company = _clean(contact_company_name(contact))
    if lead_company and contact_company:
        breakdown.company = string_similarity(lead_company, contact_company)

    return breakdown


def match_score(lead: Any, contact: Any) -> int:
    return score_match(lead, contact).score


def build_match_reasons(breakdown: MatchBreakdown) -> list[str]:
    reasons: list[str] = []
    if breakdown.name > 0.8:
        reasons.append("strong name match")
    elif breakdown.name > 0.6:
        reasons.append("partial name match")
    if breakdown.email == 1.0:
        reasons.append("same email address")
    if breakdown.linkedin == 1.0:
        reasons.append("same LinkedIn profile")
    if breakdown.title > 0.7:
        reasons.append("similar job title")
    if breakdown.company > 0.8:
        reasons.append("same or similar company")
    return reasons


@dataclass(slots=True)
class MatchResult(Generic[T]):
    entity: T
    score: int
    reasons: list[str] = field(default_factory=list)


def rank_matches(
    candidates: Iterable[T],
    scorer: Callable[[T], MatchBreakdown],
    *,
    threshold: int = DEFAULT_SCORE_THRESHOLD,
    limit: int = DEFAULT_RESULT_LIMIT,
) -> list[MatchResult[T]]:
    """Score every candidate, keep those at or above ``threshold``, best first.

    Ties keep the candidate pool order.
    """
    results: list[MatchResult[T]] = []
    for candidate in candidates:
        breakdown = scorer(candidate)
        score = breakdown.score
        if score < threshold:
            continue
        results.append(MatchResult(entity=candidate, score=score, reasons=build_match_reasons(breakdown)))

    results.sort(key=lambda item: item.score, reverse=True)
    return results[: max(limit, 0)]
