"""
Result Validator Module

Structural and lexical checks on execution engine output, deciding whether
list-style (autocomplete) or single-record (detail page) results are usable,
plus the cross-query checks that catch "search" recipes returning static
content.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from urllib.parse import urlparse

import config
from core.error_classifier import ValidationIssueKind
from core.models import ValidationIssue, ValidationOutcome

logger = logging.getLogger("ResultValidator")

# A substitution marker followed by an uppercase variable name, e.g. $TITLE or $URL$i
UNRESOLVED_VARIABLE = re.compile(r'\$[A-Z_]+\$?i?\b')
SCHEME_MARKER = re.compile(r'https?://')

REQUIRED_LIST_FIELDS = ('TITLE', 'URL', 'COVER')
OPTIONAL_LIST_FIELDS = ('SUBTITLE',)

# Fields a detail page must produce for each content category
REQUIRED_FIELDS_BY_LIST_TYPE = {
    'generic': ['TITLE', 'DESCRIPTION', 'FAVICON', 'COVER'],
    'movies': ['TITLE', 'DATE', 'DESCRIPTION', 'RATING', 'AUTHOR', 'COVER', 'DURATION'],
    'tv_shows': ['TITLE', 'DATE', 'DESCRIPTION', 'RATING', 'AUTHOR', 'COVER', 'EPISODES'],
    'anime': ['TITLE', 'DATE', 'DESCRIPTION', 'RATING', 'AUTHOR', 'COVER', 'ORIGINAL_TITLE', 'EPISODES'],
    'manga': ['TITLE', 'DATE', 'DESCRIPTION', 'RATING', 'AUTHOR', 'COVER', 'ORIGINAL_TITLE', 'VOLUMES'],
    'books': ['TITLE', 'AUTHOR', 'YEAR', 'PAGES', 'DESCRIPTION', 'RATING', 'COVER'],
    'albums': ['TITLE', 'AUTHOR', 'DATE', 'GENRE', 'COVER'],
    'songs': ['TITLE', 'AUTHOR', 'DATE', 'GENRE', 'COVER', 'PRICE'],
    'beers': ['TITLE', 'AUTHOR', 'RATING', 'COVER', 'STYLE', 'ALCOHOL'],
    'wines': ['TITLE', 'WINERY', 'RATING', 'COVER', 'REGION', 'COUNTRY', 'GRAPES', 'STYLE'],
    'software': ['TITLE', 'RATING', 'GENRE', 'DESCRIPTION', 'COVER'],
    'videogames': ['TITLE', 'DATE', 'DESCRIPTION', 'RATING', 'COVER'],
    'recipes': ['TITLE', 'COVER', 'INGREDIENTS', 'DESCRIPTION', 'STEPS', 'COOKING_TIME', 'DINERS'],
    'podcasts': ['TITLE', 'AUTHOR', 'ALBUM', 'DATE', 'GENRE', 'COVER'],
    'boardgames': ['TITLE', 'DATE', 'DESCRIPTION', 'PLAYERS', 'TIME', 'CATEGORY', 'RATING', 'COVER'],
    'restaurants': ['TITLE', 'RATING', 'COVER', 'ADDRESS'],
    'artists': ['AUTHOR', 'GENRE', 'COVER'],
    'food': ['TITLE', 'COVER', 'DESCRIPTION'],
}


def required_fields_for(list_type: str) -> List[str]:
    return list(REQUIRED_FIELDS_BY_LIST_TYPE.get(list_type, REQUIRED_FIELDS_BY_LIST_TYPE['generic']))


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    return False


def find_unresolved(value: Any) -> bool:
    """True when a string still contains an unexpanded ``$VARIABLE`` token."""
    return isinstance(value, str) and UNRESOLVED_VARIABLE.search(value) is not None


def has_doubled_scheme(url: str) -> bool:
    """Two or more ``http(s)://`` markers: concatenated loop variables."""
    return len(SCHEME_MARKER.findall(url or '')) > 1


def is_base_domain_url(url: str, hostname: str = '') -> bool:
    """
    Whether ``url`` points at a site root rather than a detail page.

    Absolute URLs are roots when their path, without a trailing slash, is at
    most one character long and they carry no query string. Relative values
    are roots only when they are literally ``/`` or the bare hostname.
    """
    parsed = urlparse(url)
    if parsed.scheme and parsed.netloc:
        return len(parsed.path.rstrip('/')) <= 1 and not parsed.query
    return url in ('/', hostname, f"https://{hostname}", f"https://www.{hostname}")


def titles_of(results: Iterable[Mapping[str, Any]], keys: Sequence[str] = ('TITLE',)) -> Set[str]:
    titles = set()
    for result in results or []:
        if not isinstance(result, Mapping):
            continue
        for key in keys:
            value = result.get(key)
            if value:
                titles.add(str(value))
                break
    return titles


def title_overlap(first: Set[str], second: Set[str]) -> float:
    """Share of the first title set that also appears in the second."""
    if not first:
        return 0.0
    return len(first & second) / len(first)


@dataclass
class SemanticMatch:
    valid: bool
    match_count: int
    total: int
    reason: str
    unmatched_titles: List[str] = field(default_factory=list)

    @property
    def ratio(self) -> float:
        return self.match_count / self.total if self.total else 0.0


@dataclass
class MultiQueryCheck:
    valid: bool
    reason: str
    details: Dict[str, SemanticMatch] = field(default_factory=dict)


class ResultValidator:
    """Validates engine output for the repair loop."""

    def __init__(self, min_valid: Optional[int] = None, min_fraction: Optional[float] = None,
                 static_overlap: Optional[float] = None):
        self.min_valid = config.MIN_VALID_RESULTS if min_valid is None else min_valid
        self.min_fraction = config.MIN_VALID_FRACTION if min_fraction is None else min_fraction
        self.static_overlap = config.STATIC_CONTENT_OVERLAP if static_overlap is None else static_overlap

    def required_valid(self, total: int) -> int:
        return max(self.min_valid, math.floor(self.min_fraction * total))

    def check_result(self, result: Mapping[str, Any], hostname: str = '') -> List[ValidationIssue]:
        """Hard failures for one list result (index not yet attached)."""
        issues: List[ValidationIssue] = []

        for key in REQUIRED_LIST_FIELDS:
            value = result.get(key)
            if is_blank(value):
                issues.append(ValidationIssue(ValidationIssueKind.MISSING_FIELD.value, f"{key} is empty"))
            elif find_unresolved(value):
                issues.append(ValidationIssue(
                    ValidationIssueKind.UNRESOLVED_VARIABLE.value, f'{key} contains unreplaced variable: "{value}"'))

        url = result.get('URL')
        if isinstance(url, str) and not is_blank(url):
            try:
                base_domain = is_base_domain_url(url, hostname)
            except ValueError:
                base_domain = False
                issues.append(ValidationIssue(
                    ValidationIssueKind.BASE_DOMAIN_URL.value, f'URL could not be parsed: "{url[:80]}"'))
            if base_domain:
                issues.append(ValidationIssue(
                    ValidationIssueKind.BASE_DOMAIN_URL.value,
                    f'URL is just base domain: "{url}" (should be a detail page)'))
            if has_doubled_scheme(url):
                issues.append(ValidationIssue(
                    ValidationIssueKind.DOUBLED_DOMAIN_URL.value,
                    f'URL contains doubled domain (variable collision bug): "{url[:80]}"; '
                    f'loop indices must stay single-digit (max "to": 9)'))

        for key, value in result.items():
            if key in REQUIRED_LIST_FIELDS:
                continue
            if find_unresolved(value):
                issues.append(ValidationIssue(
                    ValidationIssueKind.UNRESOLVED_VARIABLE.value, f'{key} contains unreplaced variable: "{value}"'))

        return issues

    def validate_list(self, results: Optional[Sequence[Mapping[str, Any]]], hostname: str = '') -> ValidationOutcome:
        """
        Validate autocomplete-style results.

        Args:
            results: List of result records from the engine
            hostname: Site hostname, used to recognise root URLs

        Returns:
            ValidationOutcome; ``accepted`` when enough results pass
        """
        if not results:
            return ValidationOutcome(
                issues=(ValidationIssue(ValidationIssueKind.NO_RESULTS.value, 'No results returned from engine'),),
            )

        valid = []
        issues: List[ValidationIssue] = []
        warnings: List[str] = []

        for position, result in enumerate(results, start=1):
            if not isinstance(result, Mapping):
                issues.append(ValidationIssue(ValidationIssueKind.MISSING_FIELD.value, 'result is not an object', position))
                continue
            result_issues = self.check_result(result, hostname)
            for key in OPTIONAL_LIST_FIELDS:
                if is_blank(result.get(key)):
                    warnings.append(f"Result {position}: {key} is empty (optional)")
            if result_issues:
                issues.extend(ValidationIssue(i.kind, i.message, position) for i in result_issues)
            else:
                valid.append(result)

        required = self.required_valid(len(results))
        accepted = len(valid) >= required
        if not accepted and valid:
            logger.warning(f"Only {len(valid)}/{len(results)} results are valid (need at least {required})")

        return ValidationOutcome(
            valid=tuple(valid),
            issues=tuple(issues),
            warnings=tuple(warnings),
            total=len(results),
            accepted=accepted,
        )

    def validate_detail(self, result: Optional[Mapping[str, Any]],
                        expected_fields: Optional[Sequence[str]] = None) -> ValidationOutcome:
        """
        Validate a single detail-page record.

        Every declared field must be non-blank and free of unresolved
        variables. Fields listed in ``expected_fields`` but absent from the
        record count as blank.
        """
        if not result or not isinstance(result, Mapping):
            return ValidationOutcome(
                issues=(ValidationIssue(ValidationIssueKind.NO_RESULTS.value, 'No fields returned from engine'),),
            )

        issues: List[ValidationIssue] = []
        fields = list(result.keys())
        for name in expected_fields or ():
            if name not in result:
                fields.append(name)

        for name in fields:
            value = result.get(name)
            if is_blank(value):
                issues.append(ValidationIssue(ValidationIssueKind.MISSING_FIELD.value, f"{name} is empty"))
            elif find_unresolved(value):
                issues.append(ValidationIssue(
                    ValidationIssueKind.UNRESOLVED_VARIABLE.value, f'{name} contains unreplaced variable: "{value}"'))

        accepted = not issues
        return ValidationOutcome(
            valid=(result,) if accepted else (),
            issues=tuple(issues),
            total=1,
            accepted=accepted,
        )

    def semantic_match(self, results: Sequence[Mapping[str, Any]], query: str,
                       min_ratio: Optional[float] = None) -> SemanticMatch:
        """Share of results mentioning the query or any query word longer than two characters."""
        min_ratio = config.SEMANTIC_MATCH_RATIO if min_ratio is None else min_ratio
        if not results:
            return SemanticMatch(False, 0, 0, 'No results')

        query_lower = query.lower()
        words = [w for w in query_lower.split() if len(w) > 2]
        matched = 0
        unmatched = []
        for result in results:
            text = ' '.join(str(result.get(k) or '') for k in ('TITLE', 'SUBTITLE', 'DESCRIPTION', 'URL')).lower()
            if query_lower in text or any(w in text for w in words):
                matched += 1
            else:
                unmatched.append(str(result.get('TITLE') or '(empty)'))

        ratio = matched / len(results)
        valid = ratio >= min_ratio
        if valid:
            reason = f"{matched}/{len(results)} results match query"
        else:
            reason = f"Only {matched}/{len(results)} results match query (need {round(min_ratio * 100)}%)"
        return SemanticMatch(valid, matched, len(results), reason, unmatched)

    def validate_multi_query(self, results_by_query: Mapping[str, Sequence[Mapping[str, Any]]]) -> MultiQueryCheck:
        """Identical title sets across different queries mean the recipe is not searching."""
        if len(results_by_query) < 2:
            return MultiQueryCheck(True, 'Need at least 2 queries for multi-query validation')

        title_sets = [frozenset(titles_of(r)) for r in results_by_query.values()]
        if len(set(title_sets)) == 1 and title_sets[0]:
            return MultiQueryCheck(False, 'All queries returned identical results - recipe may not be searching')

        details = {q: self.semantic_match(r, q) for q, r in results_by_query.items()}
        failed = [q for q, check in details.items() if not check.valid]
        if failed:
            return MultiQueryCheck(False, f"{len(failed)}/{len(details)} queries returned irrelevant results", details)
        return MultiQueryCheck(True, 'All queries returned relevant results', details)

    def is_static_content(self, first_results: Sequence[Mapping[str, Any]],
                          second_results: Sequence[Mapping[str, Any]],
                          keys: Sequence[str] = ('TITLE',), threshold: Optional[float] = None) -> bool:
        """
        Cross-query false-positive check.

        True when at least ``threshold`` of the first query's titles also come
        back for a semantically distinct second query.
        """
        threshold = self.static_overlap if threshold is None else threshold
        first = titles_of(first_results, keys)
        if not first:
            return False
        overlap = title_overlap(first, titles_of(second_results, keys))
        logger.info(f"Cross-query title overlap {overlap:.0%} (static above {threshold:.0%})")
        return overlap >= threshold
