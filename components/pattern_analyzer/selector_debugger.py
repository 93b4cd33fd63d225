"""
Selector Debugger Module

Re-runs each recipe step's locator against a page snapshot, outside the
execution engine, to tell which locators work, which fail, and which
nearby selectors would probably work instead.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import soupsieve as sv
from bs4 import BeautifulSoup

from components.pattern_analyzer.base_analyzer import DomAnalyzer, safe_select, text_of
from core.models import DebugAnalysis, SelectorAlternative, SelectorCheck, SuggestedFix

logger = logging.getLogger("SelectorDebugger")

# Pseudo-classes recipe authors borrow from jQuery or Playwright that the engine cannot evaluate
NON_CSS_PSEUDOS = (':contains', ':has-text', ':eq', ':first', ':last', ':gt', ':lt', ':visible', ':hidden')

LOOP_VARIABLE = re.compile(r'\$[a-z]', re.IGNORECASE)
INPUT_VARIABLE = '$INPUT'

# Loop iterations exercised per step; more adds time without adding signal
LOOP_SAMPLE_SPAN = 3
MAX_ALTERNATIVES = 5
HIGH_CONFIDENCE_MAX_COUNT = 20

STATUS_WORKING = 'working'
STATUS_FAILED = 'failed'
STATUS_INVALID_SELECTOR = 'invalid_selector'
STATUS_INVALID_LOOP = 'invalid_loop'
STATUS_NO_LOCATOR = 'no_locator'

# (hint keywords, candidate selectors)
HINT_PATTERNS: List[Tuple[Tuple[str, ...], Tuple[str, ...]]] = [
    (('title', 'name'), (
        'h1', 'h2', 'h3',
        '[class*="title"]', '[class*="name"]', '[class*="heading"]',
        '[data-testid*="title"]', '[data-testid*="name"]',
        'meta[property="og:title"]',
    )),
    (('cover', 'image', 'img'), (
        'img[src*="cover"]', 'img[src*="poster"]', 'img[class*="cover"]',
        '[class*="cover"] img', '[class*="poster"] img', '[class*="image"] img',
        'meta[property="og:image"]',
        'picture img', 'figure img',
    )),
    (('url', 'link'), (
        'a[href]', '[class*="link"] a', '[class*="item"] a',
        '[class*="result"] a', '[class*="card"] a',
    )),
    (('description', 'desc'), (
        '[class*="description"]', '[class*="summary"]', '[class*="synopsis"]',
        'meta[property="og:description"]', 'meta[name="description"]',
        'p[class*="desc"]',
    )),
    (('rating', 'score'), (
        '[class*="rating"]', '[class*="score"]', '[class*="stars"]',
        '[data-rating]', '[itemprop="ratingValue"]',
    )),
    (('subtitle', 'year', 'date'), (
        '[class*="subtitle"]', '[class*="year"]', '[class*="date"]',
        'time', 'span[class*="meta"]', '[class*="info"]',
    )),
]


@dataclass(frozen=True)
class SelectorValidation:
    valid: bool
    error: Optional[str] = None
    suggestion: Optional[str] = None


def validate_selector(selector: Any) -> SelectorValidation:
    """
    Check a locator is plain CSS the engine can evaluate.

    Returns:
        SelectorValidation; invalid pseudos come with a suggestion that
        drops the offending pseudo-class
    """
    if not selector or not isinstance(selector, str):
        return SelectorValidation(False, 'Selector is empty or not a string')

    for pseudo in NON_CSS_PSEUDOS:
        if re.search(re.escape(pseudo) + r'(?![\w-])', selector):
            suggestion = re.sub(re.escape(pseudo) + r'(\([^)]*\))?(?![\w-])', '', selector).strip()
            return SelectorValidation(
                False,
                f"Invalid pseudo-selector '{pseudo}' (not standard CSS)",
                suggestion or None,
            )

    try:
        sv.compile(selector)
    except sv.SelectorSyntaxError as e:
        return SelectorValidation(False, f"Invalid CSS selector syntax: {e}")
    return SelectorValidation(True)


def step_hint(step: Dict[str, Any]) -> str:
    output = step.get('output') or {}
    name = output.get('name', '') if isinstance(output, dict) else ''
    return f"{name} {step.get('description', '')}".lower()


def debug_url(steps: Sequence[Dict[str, Any]], query: str) -> Optional[str]:
    """URL of the first ``load`` step with the input substituted."""
    for step in steps or []:
        if step.get('command') == 'load' and step.get('url'):
            return step['url'].replace(INPUT_VARIABLE, quote(query, safe=''))
    return None


class SelectorDebugger(DomAnalyzer):
    """Classifies recipe step locators against an HTML snapshot."""

    @property
    def name(self) -> str:
        return "selector_debugger"

    def debug(self, html: str, steps: Sequence[Dict[str, Any]], page_url: Optional[str] = None,
              status: Optional[int] = None) -> DebugAnalysis:
        """
        Run every step's locator against the snapshot.

        Args:
            html: Page HTML after load
            steps: Recipe steps (autocomplete or url)
            page_url: URL the snapshot came from
            status: HTTP status of the load, if known

        Returns:
            DebugAnalysis with working and failing checks and suggested fixes
        """
        soup = self.parse_html(html)
        analysis = DebugAnalysis(page_url=page_url)
        if status == 403:
            analysis.page_error = (
                f"HTTP 403 Forbidden loading {page_url}: the site blocks direct requests; "
                f"use a DOM-based approach instead of a direct API call"
            )

        for index, step in enumerate(steps or []):
            check = self.check_step(soup, index, step)
            if check.status == STATUS_WORKING:
                analysis.working.append(check)
            elif check.status != STATUS_NO_LOCATOR:
                analysis.failing.append(check)

        for check in analysis.failing:
            if check.alternatives:
                best = check.alternatives[0]
                analysis.suggested_fixes.append(SuggestedFix(
                    step_index=check.step_index,
                    field='locator',
                    old_value=check.locator,
                    new_value=best.selector,
                    reason=f"Original selector found 0 elements, alternative found {best.count}",
                ))

        logger.info(f"Debugged {len(steps or [])} steps: {len(analysis.working)} working, "
                    f"{len(analysis.failing)} failing, {len(analysis.suggested_fixes)} suggested fixes")
        return analysis

    def check_step(self, soup: BeautifulSoup, index: int, step: Dict[str, Any]) -> SelectorCheck:
        command = step.get('command', '')
        locator = step.get('locator')
        if not locator:
            status = STATUS_WORKING if command == 'load' else STATUS_NO_LOCATOR
            return SelectorCheck(index, command, None, status)

        loop = (step.get('config') or {}).get('loop')
        if LOOP_VARIABLE.search(locator):
            if not loop:
                return SelectorCheck(
                    index, command, locator, STATUS_INVALID_LOOP,
                    error='Selector contains loop variable ($i) but no loop configuration found',
                )
            return self._check_loop_step(soup, index, step, loop)

        validation = validate_selector(locator)
        if not validation.valid:
            return self._invalid(index, command, locator, validation)

        found = safe_select(soup, locator)
        if found:
            return SelectorCheck(index, command, locator, STATUS_WORKING, len(found), text_of(found[0], 100))
        return SelectorCheck(index, command, locator, STATUS_FAILED, alternatives=self.find_alternatives(soup, step))

    def _check_loop_step(self, soup: BeautifulSoup, index: int, step: Dict[str, Any],
                         loop: Dict[str, Any]) -> SelectorCheck:
        command = step.get('command', '')
        locator = step['locator']
        variable = f"${loop.get('index', 'i')}"
        start = int(loop.get('from', 0))
        end = min(start + LOOP_SAMPLE_SPAN - 1, int(loop.get('to', start)))

        total = 0
        sample = None
        for value in range(start, end + 1):
            instance = locator.replace(variable, str(value))
            validation = validate_selector(instance)
            if not validation.valid:
                return self._invalid(index, command, locator, validation, prefix=f"Loop iteration {value}: ")
            found = safe_select(soup, instance)
            total += len(found)
            if found and sample is None:
                sample = text_of(found[0], 100)

        if total:
            return SelectorCheck(index, command, locator, STATUS_WORKING, total, sample)
        return SelectorCheck(index, command, locator, STATUS_FAILED, alternatives=self.find_alternatives(soup, step))

    @staticmethod
    def _invalid(index: int, command: str, locator: str, validation: SelectorValidation,
                 prefix: str = '') -> SelectorCheck:
        logger.warning(f"Invalid selector at step {index}: {validation.error}")
        alternatives = []
        if validation.suggestion:
            alternatives.append(SelectorAlternative(validation.suggestion, 0, confidence='medium'))
        return SelectorCheck(index, command, locator, STATUS_INVALID_SELECTOR,
                             alternatives=alternatives, error=prefix + validation.error)

    def find_alternatives(self, soup: BeautifulSoup, step: Dict[str, Any]) -> List[SelectorAlternative]:
        """
        Candidate selectors for a failed step, chosen by its output name and description.

        High confidence goes to selectors matching between 1 and 19
        elements; results are ordered high confidence first, then by
        ascending match count.
        """
        hint = step_hint(step)
        candidates: List[str] = []
        for keywords, selectors in HINT_PATTERNS:
            if any(keyword in hint for keyword in keywords):
                candidates.extend(s for s in selectors if s not in candidates)

        alternatives = []
        for selector in candidates:
            found = safe_select(soup, selector)
            if not found:
                continue
            first = found[0]
            sample = text_of(first, 50) or first.get('content') or first.get('src') or first.get('href') or ''
            alternatives.append(SelectorAlternative(
                selector=selector,
                count=len(found),
                sample=sample,
                confidence='high' if len(found) < HIGH_CONFIDENCE_MAX_COUNT else 'medium',
            ))

        alternatives.sort(key=lambda a: (a.confidence != 'high', a.count))
        return alternatives[:MAX_ALTERNATIVES]
