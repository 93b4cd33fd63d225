"""
Auto Recipe Pipeline

End-to-end onboarding of one site: probe the landing page, work out how
search results are produced, author autocomplete steps and repair them,
make sure they really search, then author and repair detail-page steps.

One site is processed at a time and every browser interaction is
sequential, so candidate search URLs are tried one after another.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import config
from components.evidence_collector import EvidenceCollector, candidate_search_urls
from components.pattern_analyzer.evidence_extractor import assess_probe_health
from components.recipe_builder import RecipeBuilder, RecipeStore
from components.result_validator import MultiQueryCheck, ResultValidator, required_fields_for, title_overlap, titles_of
from components.search.captcha_detection import InteractiveBypass
from controllers.repair_loop import RepairLoopController
from core.browser import BrowserAdapter
from core.collaborators import AuthoringCollaborator, AuthoringRequest, ExecutionCollaborator, FixCollaborator
from core.error_classifier import ErrorSeverity
from core.exceptions import AntiBotBlockError, BrowserError
from core.models import (
    CaptchaVerdict, DetailEvidence, ProbeHealth, RepairOutcome, SearchEvidence, SearchType, SiteEvidence
)
from utils.logging import bind_site, clear_site, get_logger

logger = get_logger("AutoRecipe")

# Result pages tried when the recipe turns out to return static content
API_INTERCEPTION_PATTERNS = (
    '/search/?query=$INPUT',
    '/search?query=$INPUT',
    '/search?q=$INPUT',
    '/?s=$INPUT',
    '/search/$INPUT',
)
API_TITLE_KEYS = ('title', 'name', 'naslov')


def recipe_shortcut(hostname: str) -> str:
    return hostname.replace('.', '')


def normalize_hostname(url: str) -> str:
    host = urlparse(url).hostname or url
    return host[4:] if host.startswith('www.') else host


def absolute_url(url: str, hostname: str) -> str:
    """Resolve a result URL against the site root."""
    if url.startswith(('http://', 'https://')):
        return url
    return urljoin(f"https://{hostname}/", url)


@dataclass
class PipelineReport:
    """Outcome of one pipeline run, with everything gathered along the way."""
    url: str
    hostname: str
    success: bool = False
    recipe_path: Optional[str] = None
    recipe: Optional[Dict[str, Any]] = None
    site: Optional[SiteEvidence] = None
    health: Optional[ProbeHealth] = None
    captcha: Optional[CaptchaVerdict] = None
    search: Optional[SearchEvidence] = None
    detail: Optional[DetailEvidence] = None
    test_query: Optional[str] = None
    cross_query: Optional[str] = None
    multi_query: Optional[MultiQueryCheck] = None
    autocomplete: Optional[RepairOutcome] = None
    url_steps: Optional[RepairOutcome] = None
    false_positive: bool = False
    escalated: bool = False
    detail_url: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str) -> 'PipelineReport':
        logger.error(message)
        self.errors.append(message)
        self.success = False
        return self


class AutoRecipePipeline:
    """
    Drives the collaborators through one site.

    Args:
        browser: Headless browser adapter, started and stopped by ``run``
        executor: Execution collaborator
        author: Step-authoring collaborator
        fixer: Fix-generating collaborator
        store: Recipe persistence
        bypass: Interactive CAPTCHA bypass, used only when enabled in config
        list_type: Content category of the recipe
        force: Overwrite an existing recipe instead of picking a new shortcut
    """

    def __init__(self, browser: BrowserAdapter, executor: ExecutionCollaborator,
                 author: AuthoringCollaborator, fixer: FixCollaborator,
                 store: Optional[RecipeStore] = None,
                 builder: Optional[RecipeBuilder] = None,
                 validator: Optional[ResultValidator] = None,
                 collector: Optional[EvidenceCollector] = None,
                 bypass: Optional[InteractiveBypass] = None,
                 list_type: str = 'generic',
                 force: bool = False):
        self.browser = browser
        self.executor = executor
        self.author = author
        self.fixer = fixer
        self.store = store or RecipeStore()
        self.builder = builder or RecipeBuilder()
        self.validator = validator or ResultValidator()
        self.collector = collector or EvidenceCollector(browser)
        self.bypass = bypass
        self.list_type = list_type
        self.force = force
        self.repair_loop = RepairLoopController(
            executor, fixer, self.collector,
            validator=self.validator, store=self.store, builder=self.builder,
        )

    async def run(self, url: str) -> PipelineReport:
        """
        Onboard ``url``.

        Returns:
            PipelineReport; ``success`` is True only when both the
            autocomplete and the url steps produce valid output
        """
        hostname = normalize_hostname(url)
        report = PipelineReport(url=url, hostname=hostname)
        bind_site(hostname)
        try:
            async with self.browser:
                return await self._run(report)
        finally:
            clear_site()

    async def _run(self, report: PipelineReport) -> PipelineReport:
        try:
            site = await self.collector.probe(report.url)
        except BrowserError as e:
            return report.fail(f"Could not load {report.url}: {e}")

        site = await self._check_access(report, site)
        report.site = site
        report.hostname = site.hostname
        hostname = site.hostname

        report.test_query, report.cross_query = await self._pick_queries(site)
        logger.info(f"Test query: \"{report.test_query}\", cross-check query: \"{report.cross_query}\"")

        search = await self._find_search(site, report.test_query)
        report.search = search
        logger.info(f"Search type: {search.search_type.value}")
        await self._confirm_loop(search)

        steps = await self._author_autocomplete(site, search, report.test_query)
        if not steps:
            return report.fail("Step author returned no autocomplete steps")

        shortcut, report.recipe_path = await self._recipe_path(hostname)
        recipe = self.builder.build_skeleton(hostname, self.list_type, shortcut,
                                             autocomplete_steps=steps)
        await self.store.save(report.recipe_path, recipe)
        logger.info(f"Recipe skeleton written to {report.recipe_path}")

        outcome = await self.repair_loop.repair(recipe, report.recipe_path, 'autocomplete', report.test_query,
                                                hostname, evidence=search)
        report.autocomplete = outcome
        report.recipe = recipe = outcome.recipe
        if not outcome.success:
            self._note_engine_failure(report, outcome)
            return report.fail("autocomplete_steps did not produce valid results. Cannot proceed to url_steps")

        valid_results = list(outcome.attempts[-1].validation.valid)
        semantic = self.validator.semantic_match(valid_results, report.test_query)
        logger.info(f"Semantic check: {semantic.reason}")

        checked = await self._cross_query_check(report, recipe, valid_results)
        if checked is None:
            return report
        recipe, valid_results = checked
        report.recipe = recipe

        report.detail_url = absolute_url(str(valid_results[0].get('URL')), hostname)
        logger.info(f"Probing detail page: {report.detail_url}")
        try:
            detail = await self.collector.probe_detail_page(report.detail_url)
        except BrowserError as e:
            return report.fail(f"Could not load detail page: {e}")
        report.detail = detail

        required = required_fields_for(self.list_type)
        url_steps = await self.author.author_steps(AuthoringRequest(
            step_type='url', site=site, search=detail, required_fields=required,
        ))
        if not url_steps:
            return report.fail("Step author returned no url steps")
        recipe = dict(recipe, url_steps=url_steps)
        await self.store.save(report.recipe_path, recipe)

        url_outcome = await self.repair_loop.repair(recipe, report.recipe_path, 'url', report.detail_url,
                                                    hostname, evidence=detail, required_fields=required)
        report.url_steps = url_outcome
        report.recipe = url_outcome.recipe
        if not url_outcome.success:
            self._note_engine_failure(report, url_outcome)
            return report.fail("url_steps did not produce all required fields")

        report.success = True
        logger.info(f"Recipe complete: {report.recipe_path}")
        return report

    async def _check_access(self, report: PipelineReport, site: SiteEvidence) -> SiteEvidence:
        """Detect anti-bot blocks and hand off to the interactive bypass when enabled."""
        report.health = assess_probe_health(site)
        if report.health.healthy:
            return site

        logger.warning(f"Probe looks unhealthy (score {report.health.score}): {', '.join(report.health.issues)}")
        try:
            report.captcha = await self.collector.detect_captcha(site.final_url)
        except BrowserError as e:
            logger.warning(f"CAPTCHA check failed: {e}")
            return site
        if not report.captcha.blocked:
            return site

        try:
            return await self._unblock(report, site, report.captcha.provider.value)
        except AntiBotBlockError as e:
            report.errors.append(str(e))
            logger.warning(f"{e}; continuing with limited evidence")
            return site

    async def _unblock(self, report: PipelineReport, site: SiteEvidence, provider: str) -> SiteEvidence:
        """
        Solve the challenge in a visible browser, then re-probe headless with
        the solved session's cookies.

        Raises:
            AntiBotBlockError: The bypass is disabled or did not complete
        """
        if self.bypass is None or not config.INTERACTIVE_CAPTCHA_ENABLED:
            raise AntiBotBlockError(site.final_url, provider)
        solved = await self.bypass.solve(site.final_url)
        if solved is None:
            raise AntiBotBlockError(site.final_url, provider, "interactive bypass did not complete")

        try:
            reprobed = await self.collector.probe_with_cookies(site.final_url, solved.cookies)
        except BrowserError as e:
            logger.warning(f"Re-probe with solved cookies failed: {e}")
            reprobed = None

        candidates = [solved.evidence] if reprobed is None else [reprobed, solved.evidence]
        best = max(candidates, key=lambda evidence: assess_probe_health(evidence).score)
        report.health = assess_probe_health(best)
        logger.info(f"Continuing with {len(solved.cookies)} solved-session cookies (score {report.health.score})")
        return best

    async def _confirm_loop(self, search: SearchEvidence) -> None:
        """Reload the results page and drop a loop base that does not resolve there."""
        structure = search.dom_structure
        if structure is None or search.search_url is None:
            return
        try:
            check = await self.collector.validate_loop_selector(
                search.search_url, structure.loop_base, min(search.total_found, 5))
        except BrowserError as e:
            logger.warning(f"Could not re-check loop base {structure.loop_base}: {e}")
            return
        logger.info(f"Loop base {structure.loop_base} resolved {check.found}/{check.tested} indices")
        if not check.is_valid:
            search.dom_structure = None
            search.loop_failure = f"Loop base {structure.loop_base} matched only {check.found} of {check.tested} results"

    def _note_engine_failure(self, report: PipelineReport, outcome: RepairOutcome) -> None:
        """Record why the engine itself kept failing when no recipe fix could help."""
        last = outcome.attempts[-1].engine_error if outcome.attempts else None
        if last is None or last.severity is ErrorSeverity.RECOVERABLE:
            return
        if last.severity is ErrorSeverity.ESCALATE:
            message = str(AntiBotBlockError(report.url, "engine-side", last.message))
        else:
            message = f"Execution engine unavailable ({last.type.value}): {last.message}"
        report.errors.append(message)
        logger.warning(message)

    async def _pick_queries(self, site: SiteEvidence):
        suggestions = [q for q in await self.author.suggest_queries(site) if q]
        test_query = suggestions[0] if suggestions else config.DEFAULT_TEST_QUERY
        cross_query = next((q for q in suggestions[1:] if q.lower() != test_query.lower()),
                           config.DEFAULT_CROSS_QUERY)
        return test_query, cross_query

    async def _find_search(self, site: SiteEvidence, query: str) -> SearchEvidence:
        candidates = candidate_search_urls(site)
        evidence = None
        for candidate in candidates:
            logger.info(f"Trying search URL pattern: {candidate}")
            try:
                evidence = await self.collector.probe_search_results(candidate, query)
            except BrowserError as e:
                logger.info(f"Search pattern {candidate} failed: {e}")
                continue
            if evidence.has_results:
                return evidence

        logger.warning("No URL pattern worked, trying interactive API discovery")
        if evidence is None:
            evidence = SearchEvidence(search_url=candidates[0], query=query)
        try:
            api = await self.collector.discover_search_api(f"https://{site.hostname}", query)
        except BrowserError as e:
            logger.warning(f"Interactive API discovery failed: {e}")
            return evidence
        if api is not None:
            evidence.api = api
            evidence.search_type = SearchType.INTERACTIVE_API_DISCOVERY
        return evidence

    async def _author_autocomplete(self, site: SiteEvidence, search: SearchEvidence,
                                   query: str) -> List[Dict[str, Any]]:
        if search.api is not None:
            steps = self.collector.classifier.build_api_steps(search.api)
            logger.info(f"Built {len(steps)} API steps programmatically")
            return steps

        steps = await self.author.author_steps(AuthoringRequest(
            step_type='autocomplete', site=site, search=search, query=query,
            expected={'url_regex': f"https://{site.hostname}"},
        ))
        if not steps:
            return []

        if search.search_type is SearchType.DISCOVERED_URL and search.url_pattern and steps[0].get('url'):
            steps[0]['url'] = search.url_pattern
            logger.info(f"Using discovered search URL: {search.url_pattern}")

        structure = search.dom_structure
        if structure is not None:
            title_step = next((s for s in steps if str((s.get('output') or {}).get('name', '')).startswith('TITLE')),
                              None)
            locator = (title_step or {}).get('locator') or ''
            if title_step is not None and structure.child_selector not in locator:
                logger.warning(f"Title locator \"{locator}\" does not use the detected loop base "
                               f"\"{structure.loop_base}\"")
        return steps

    async def _recipe_path(self, hostname: str):
        """Shortcut and file path, suffixed with _2, _3, ... while a recipe already exists."""
        base = shortcut = recipe_shortcut(hostname)
        path = self.store.path_for(self.list_type, shortcut)
        suffix = 2
        while not self.force and await self.store.exists(path):
            shortcut = f"{base}_{suffix}"
            path = self.store.path_for(self.list_type, shortcut)
            suffix += 1
        return shortcut, path

    async def _cross_query_check(self, report: PipelineReport, recipe: Dict[str, Any],
                                 valid_results: List[Dict[str, Any]]):
        """
        Re-run the recipe with a second query and escalate to API interception
        when both queries return the same titles.

        Returns:
            (recipe, valid results) to continue with, or None when the
            recipe is a false positive that could not be replaced
        """
        second = await self.executor.run(report.recipe_path, 'autocomplete', report.cross_query)
        second_results = second.results if isinstance(second.results, list) else []
        if not self.validator.is_static_content(valid_results, second_results):
            report.multi_query = self.validator.validate_multi_query({
                report.test_query: valid_results, report.cross_query: second_results,
            })
            logger.info(f"Multi-query check: {report.multi_query.reason}")
            return recipe, valid_results

        logger.warning(f"\"{report.test_query}\" and \"{report.cross_query}\" returned the same titles; "
                       f"results look like static content")
        report.escalated = True
        api_recipe = await self._try_api_interception(report.site, report.test_query, report.cross_query,
                                                      recipe.get('recipe_shortcut'))
        if api_recipe is None:
            report.false_positive = True
            report.fail("Recipe returns static content and no search API could be intercepted")
            return None

        await self.store.save(report.recipe_path, api_recipe)
        rerun = await self.executor.run(report.recipe_path, 'autocomplete', report.test_query)
        rerun_results = rerun.results if rerun.success and isinstance(rerun.results, list) else None
        validation = self.validator.validate_list(rerun_results, report.site.hostname)
        if not validation.accepted:
            report.false_positive = True
            report.fail(f"API recipe failed validation: {'; '.join(validation.messages[:3])}")
            return None

        logger.info(f"API recipe returned {len(validation.valid)} valid results")
        return api_recipe, list(validation.valid)

    async def _try_api_interception(self, site: SiteEvidence, first_query: str, second_query: str,
                                    shortcut: str) -> Optional[Dict[str, Any]]:
        base = f"https://www.{site.hostname}"
        for pattern in API_INTERCEPTION_PATTERNS:
            url = base + pattern
            first = await self.collector.capture_api_on_load(url, first_query)
            if first is None or not first.results:
                continue
            second = await self.collector.capture_api_on_load(url, second_query)
            if second is None:
                continue

            first_titles = titles_of(first.results, API_TITLE_KEYS)
            if not first_titles:
                continue
            overlap = title_overlap(first_titles, titles_of(second.results, API_TITLE_KEYS))
            if overlap < config.API_OVERLAP_THRESHOLD:
                logger.info(f"Search API at {first.descriptor.url} returns query-specific results "
                            f"({overlap:.0%} overlap)")
                return self.builder.build_api_recipe(site, first.descriptor, self.list_type, shortcut)
            logger.info(f"API behind {pattern} also returns static results ({overlap:.0%} overlap)")
        return None
