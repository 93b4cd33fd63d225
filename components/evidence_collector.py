"""
Evidence Collector Module

Drives the browser adapter to gather everything the step-authoring
collaborator needs about a site: the landing page fingerprint, how search
results are obtained, detail page metadata, and per-step selector
diagnostics for the repair loop.

Every operation opens exactly one page through ``BrowserAdapter.new_page``
and the adapter guarantees that page is closed on every exit path.
Network interception is active only inside ``page.intercept()`` blocks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union
from urllib.parse import quote, urlparse

import config
from components.pattern_analyzer.evidence_extractor import SEARCH_INPUT_SELECTORS, EvidenceExtractor
from components.pattern_analyzer.loop_inference import LoopCheck, LoopInference, validate_loop_selector
from components.pattern_analyzer.selector_debugger import SelectorDebugger, debug_url
from components.search.api_classifier import INPUT_MARKER, NetworkApiClassifier, substitute_query
from components.search.captcha_detection import AntiBotDetector
from components.search.result_analyzer import SearchResultAnalyzer
from core.browser import BrowserAdapter, CapturedExchange, PageElement, PageHandle
from core.exceptions import BrowserError
from core.models import (
    ApiDescriptor, CaptchaVerdict, DebugAnalysis, DetailEvidence, DomLoopStructure, NotFound,
    SearchEvidence, SearchType, SiteEvidence
)

# Consent buttons of common CMP frameworks, then generic patterns
CONSENT_BUTTONS = [
    'button[id*="accept"]', 'button[id*="consent"]', 'button[id*="agree"]',
    'button[class*="accept"]', 'button[class*="consent"]', 'button[class*="agree"]',
    '[data-testid*="accept"]', '[data-testid*="consent"]',
    '.fc-cta-consent', '.fc-button-label',
    '#onetrust-accept-btn-handler',
    '.cc-accept', '.cc-allow',
    '#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll',
    '.cky-btn-accept',
    '#didomi-notice-agree-button',
    '.qc-cmp2-summary-buttons button:first-child',
    '[aria-label*="accept" i]', '[aria-label*="consent" i]',
]

CONSENT_TEXTS = ('Accept', 'Accept All', 'Agree', 'OK', 'Got it', 'I agree', 'Allow all')
CONSENT_TEXT_TARGETS = 'button, [role="button"], a.button'

REMOVE_OVERLAYS_JS = """() => {
    const selectors = [
        '.fc-consent-root', '.fc-dialog-overlay', '#onetrust-consent-sdk', '.cc-window',
        '#CybotCookiebotDialog', '[class*="cookie-banner"]', '[class*="cookie-consent"]',
        '[class*="gdpr"]', '[class*="privacy-banner"]',
    ];
    for (const sel of selectors) {
        const el = document.querySelector(sel);
        if (el) el.remove();
    }
}"""

# Search URL patterns tried one at a time when the landing page gives no form
SEARCH_URL_PATTERNS = (
    '/search?query=$INPUT',
    '/search/?query=$INPUT',
    '/search?search=$INPUT',
    '/?s=$INPUT',
    '/search/$INPUT',
)

JS_RENDER_MS = 2000
CONSENT_SETTLE_MS = 500
FORM_TYPE_DELAY_MS = 50
FORM_SUBMIT_WAIT_MS = 1000
DETAIL_RENDER_MS = 1500


def candidate_search_urls(evidence: SiteEvidence) -> List[str]:
    """
    Search URL templates for a site, the form-derived one first.

    The form action gets the input's ``name`` (``q`` when unknown) as its
    query parameter; without a form the conventional ``/search?q=`` is used.
    """
    host = f"https://{evidence.hostname}"
    search = evidence.search
    if search.has_search and search.form_action:
        separator = '&' if '?' in search.form_action else '?'
        name = search.input_name or 'q'
        primary = f"{search.form_action}{separator}{name}={INPUT_MARKER}"
    else:
        primary = f"{host}/search?q={INPUT_MARKER}"

    candidates = [primary]
    for pattern in SEARCH_URL_PATTERNS:
        url = host + pattern
        if url not in candidates:
            candidates.append(url)
    return candidates


def fill_query(template: str, query: str) -> str:
    return template.replace(INPUT_MARKER, quote(query, safe=''))


def origin_of(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


@dataclass
class LoadCapture:
    """A search API response seen while a results page loaded."""
    descriptor: ApiDescriptor
    results: List[Any] = field(default_factory=list)


class EvidenceCollector:
    """
    Browser-backed probes.

    Args:
        browser: Adapter used for every page
        extractor: Landing/detail fingerprint extractor
        result_analyzer: Repeating-result detector
        loop_inference: Loop structure inference
        classifier: JSON API classifier
        detector: Anti-bot detector
        debugger: Per-step selector debugger

    ``cookies`` are added to every page; set them with ``use_cookies`` after
    an anti-bot challenge has been solved.
    """

    def __init__(self, browser: BrowserAdapter,
                 extractor: Optional[EvidenceExtractor] = None,
                 result_analyzer: Optional[SearchResultAnalyzer] = None,
                 loop_inference: Optional[LoopInference] = None,
                 classifier: Optional[NetworkApiClassifier] = None,
                 detector: Optional[AntiBotDetector] = None,
                 debugger: Optional[SelectorDebugger] = None):
        self.logger = logging.getLogger("EvidenceCollector")
        self.browser = browser
        self.extractor = extractor or EvidenceExtractor()
        self.result_analyzer = result_analyzer or SearchResultAnalyzer()
        self.loop_inference = loop_inference or LoopInference()
        self.classifier = classifier or NetworkApiClassifier()
        self.detector = detector or AntiBotDetector()
        self.debugger = debugger or SelectorDebugger()
        self.cookies: List[Dict[str, Any]] = []

    def use_cookies(self, cookies: Sequence[Dict[str, Any]]) -> None:
        """Send these cookies with every page opened from now on."""
        self.cookies = list(cookies)

    async def probe(self, url: str, cookies: Sequence[Dict[str, Any]] = ()) -> SiteEvidence:
        """
        Load the landing page and fingerprint it.

        Raises:
            BrowserError: The page could not be loaded or read (NavigationError when loading failed)
        """
        self.logger.info(f"Probing {url}")
        async with self.browser.new_page(cookies=cookies or self.cookies) as page:
            await page.navigate(url)
            await page.wait(JS_RENDER_MS)
            await self.dismiss_consent(page)
            await page.wait(CONSENT_SETTLE_MS)
            evidence = self.extractor.extract_site_evidence(
                await page.content(), page.url, input_url=url, cookies=tuple(cookies),
            )
        self.logger.info(f"Probed {evidence.hostname}: title={evidence.title!r}, "
                         f"search={evidence.search.has_search}")
        return evidence

    async def probe_with_cookies(self, url: str, cookies: Sequence[Dict[str, Any]]) -> SiteEvidence:
        """Re-probe with cookies captured from a solved challenge and keep them for later probes."""
        self.logger.info(f"Re-probing {url} with {len(cookies)} cookies")
        self.use_cookies(cookies)
        return await self.probe(url, cookies)

    async def detect_captcha(self, url: str) -> CaptchaVerdict:
        async with self.browser.new_page(cookies=self.cookies) as page:
            await page.navigate(url)
            await page.wait(JS_RENDER_MS)
            return await self.detector.detect(page)

    async def dismiss_consent(self, page: PageHandle) -> bool:
        """
        Click through a cookie/consent banner if one is showing.

        Known button selectors are tried first, then buttons by their text;
        as a last resort common overlay containers are removed.
        """
        for selector in CONSENT_BUTTONS:
            try:
                button = await page.query(selector)
                if button and await button.is_visible():
                    await button.click()
                    self.logger.debug(f"Dismissed consent banner via {selector}")
                    await page.wait(CONSENT_SETTLE_MS)
                    return True
            except BrowserError as e:
                self.logger.debug(f"Consent selector {selector} not usable: {e}")

        try:
            candidates = await page.query_all(CONSENT_TEXT_TARGETS)
        except BrowserError as e:
            self.logger.debug(f"Consent text fallback unavailable: {e}")
            candidates = []
        for element in candidates:
            text = ""
            try:
                text = await element.text()
                if not text or not any(text == label or text.startswith(label) for label in CONSENT_TEXTS):
                    continue
                if await element.is_visible():
                    await element.click()
                    self.logger.debug("Dismissed consent banner by button text")
                    await page.wait(CONSENT_SETTLE_MS)
                    return True
            except BrowserError as e:
                self.logger.debug(f"Consent button {text!r} not usable: {e}")

        try:
            await page.evaluate(REMOVE_OVERLAYS_JS)
        except BrowserError as e:
            self.logger.debug(f"Overlay removal failed: {e}")
        return False

    async def find_search_input(self, page: PageHandle) -> Union[PageElement, NotFound]:
        for selector in SEARCH_INPUT_SELECTORS:
            try:
                element = await page.query(selector)
                visible = bool(element) and await element.is_visible()
            except BrowserError as e:
                self.logger.debug(f"Skipping search selector {selector}: {e}")
                continue
            if visible:
                self.logger.debug(f"Found search input via {selector}")
                return element
        return NotFound('search input')

    async def _type_and_capture(self, page: PageHandle, query: str) -> Optional[ApiDescriptor]:
        """Type ``query`` into the search box one character at a time while capturing JSON traffic."""
        search_input = await self.find_search_input(page)
        if not search_input:
            self.logger.warning("No search input found for API discovery")
            return None

        async with page.intercept() as capture:
            await search_input.click()
            await page.wait(500)
            for char in query:
                await search_input.type(char, delay=config.TYPING_DELAY_MS)
                await page.wait(config.TYPING_DELAY_MS)
            await page.wait(config.NETWORK_SETTLE_MS)

        self.logger.info(f"Captured {len(capture.exchanges)} JSON responses while typing")
        if not capture.exchanges:
            return None
        return (self.classifier.select_best_exchange(capture.exchanges, query)
                or self.classifier.fallback_endpoint(capture.exchanges, query))

    async def discover_search_api(self, url: str, query: str) -> Optional[ApiDescriptor]:
        """
        Find the JSON API behind a site's search box by typing into it.

        Returns:
            ApiDescriptor, or None when there is no search box or no
            captured response looks like search results
        """
        self.logger.info(f"Interactive API discovery on {url} with query \"{query}\"")
        async with self.browser.new_page(cookies=self.cookies) as page:
            await page.navigate(url)
            await self.dismiss_consent(page)
            await page.wait(JS_RENDER_MS)
            descriptor = await self._type_and_capture(page, query)
        if descriptor:
            self.logger.info(f"Discovered search API: {descriptor.method} {descriptor.url[:80]}")
        return descriptor

    async def probe_search_results(self, search_url: str, query: str) -> SearchEvidence:
        """
        Load a search results page and work out how its results are produced.

        Three stages run on one page: the URL template itself (with any
        search API intercepted during load), then form submission when the
        URL found nothing, then typing into the search box to discover an
        autocomplete API when neither yielded a usable URL.
        """
        url = fill_query(search_url, query)
        self.logger.info(f"Probing search results for \"{query}\" at {url}")

        async with self.browser.new_page(cookies=self.cookies) as page:
            async with page.intercept() as capture:
                await page.navigate(url)
                await self.dismiss_consent(page)
                await page.wait(JS_RENDER_MS)

            evidence = self._analyze_results(await page.content(), page.url, url, query)
            evidence.url_pattern = search_url
            searches = [e for e in capture.exchanges if self.classifier.is_search_response(e, query)]
            if searches:
                api = self.classifier.select_best_exchange(searches, query)
                if api:
                    evidence.api = api
                    evidence.search_type = SearchType.API_INTERCEPTED
                    self.logger.info(f"Intercepted search API on page load: {api.url_pattern}")

            if evidence.total_found == 0:
                try:
                    evidence = await self._submit_search_form(page, url, query) or evidence
                except BrowserError as e:
                    self.logger.warning(f"Form submission failed, keeping URL results: {e}")

            results_html, results_url = None, page.url
            if evidence.total_found > 0:
                try:
                    results_html = await page.content()
                except BrowserError as e:
                    evidence.loop_failure = f"Results page unavailable for loop inference: {e}"
                    self.logger.warning(evidence.loop_failure)

            if self._should_try_api(evidence, query):
                try:
                    await self._discover_on_page(page, evidence, query)
                except BrowserError as e:
                    self.logger.warning(f"Autocomplete API discovery failed: {e}")

        if results_html is not None:
            links = [item.link_href for item in evidence.items if item.link_href]
            structure = self.loop_inference.infer(results_html, links, results_url)
            if isinstance(structure, DomLoopStructure):
                evidence.dom_structure = structure
                self.logger.info(f"Found consecutive parent: {structure.loop_base}")
            else:
                evidence.loop_failure = structure.reason
                self.logger.warning(f"Could not identify loop structure: {structure.reason}")
        return evidence

    async def _discover_on_page(self, page: PageHandle, evidence: SearchEvidence, query: str) -> None:
        base = origin_of(page.url)
        if not base:
            return
        await page.navigate(base)
        await page.wait(1000)
        api = await self._type_and_capture(page, query)
        if api:
            evidence.api = api
            evidence.search_type = SearchType.API
            self.logger.info(f"Discovered autocomplete API: {api.url_pattern}")

    def _analyze_results(self, html: str, current_url: str, search_url: str, query: str) -> SearchEvidence:
        pattern = self.result_analyzer.analyze(html, current_url)
        if pattern is None:
            return SearchEvidence(search_url=search_url, query=query)
        return SearchEvidence(
            search_url=search_url,
            query=query,
            result_container=pattern.selector,
            items=pattern.items,
            total_found=pattern.count,
        )

    async def _submit_search_form(self, page: PageHandle, url: str, query: str) -> Optional[SearchEvidence]:
        base = origin_of(url)
        if not base:
            return None
        self.logger.info("URL-based search found no results, trying form submission")
        await page.navigate(base)
        await self.dismiss_consent(page)
        await page.wait(1000)

        search_input = await self.find_search_input(page)
        if not search_input:
            return None
        await search_input.click(click_count=3)
        await search_input.type(query, delay=FORM_TYPE_DELAY_MS)
        await page.wait(FORM_SUBMIT_WAIT_MS)
        await page.press_and_wait_for_navigation('Enter', config.NAVIGATION_TIMEOUT_MS)

        new_url = page.url
        self.logger.info(f"After form submit, URL is {new_url}")
        if new_url in (base, url):
            return None

        await page.wait(JS_RENDER_MS)
        evidence = self._analyze_results(await page.content(), new_url, new_url, query)
        evidence.search_type = SearchType.DISCOVERED_URL
        evidence.url_pattern = substitute_query(new_url, query)
        self.logger.info(f"Discovered search URL pattern: {evidence.url_pattern}")
        return evidence

    @staticmethod
    def _should_try_api(evidence: SearchEvidence, query: str) -> bool:
        if evidence.total_found == 0:
            return True
        if evidence.search_type is not SearchType.DISCOVERED_URL:
            return False
        lower = (evidence.search_url or '').lower()
        return query.lower() not in lower and quote(query, safe='').lower() not in lower

    async def capture_api_on_load(self, url: str, query: str) -> Optional[LoadCapture]:
        """
        Load a results page and capture the first search API response whose
        payload matches a known shape.
        """
        captured: List[LoadCapture] = []

        def on_response(exchange: CapturedExchange):
            if captured or not self.classifier.is_load_search_api(exchange.url):
                return
            match = self.classifier.classify_payload(exchange.json)
            if match is not None:
                self.logger.info(f"Captured {len(match.results)} results from {match.shape} API")
                captured.append(LoadCapture(self.classifier.describe_shape(exchange, match), list(match.results)))

        try:
            async with self.browser.new_page(cookies=self.cookies) as page:
                async with page.intercept(on_response=on_response):
                    await page.navigate(fill_query(url, query))
                    await page.wait(config.NETWORK_SETTLE_MS)
        except BrowserError as e:
            self.logger.info(f"API capture on {url} failed: {e}")
            return None

        if not captured:
            self.logger.info("API capture found no search API responses")
            return None
        return captured[0]

    async def probe_detail_page(self, url: str) -> DetailEvidence:
        self.logger.info(f"Probing detail page {url}")
        async with self.browser.new_page(cookies=self.cookies) as page:
            await page.navigate(url)
            await page.wait(DETAIL_RENDER_MS)
            return self.extractor.extract_detail_evidence(await page.content(), url, page.url)

    async def validate_loop_selector(self, url: str, pattern: str, expected_count: int = 5) -> LoopCheck:
        async with self.browser.new_page(cookies=self.cookies) as page:
            await page.navigate(url)
            await page.wait(JS_RENDER_MS)
            return validate_loop_selector(await page.content(), pattern, expected_count)

    async def debug_steps(self, steps: Sequence[Dict[str, Any]], query: str,
                          url: Optional[str] = None) -> DebugAnalysis:
        """
        Re-run each step's locator against the page its ``load`` step opens.

        Args:
            steps: Recipe steps
            query: Input substituted into the load URL
            url: Page to debug against instead of the load step's URL

        Returns:
            DebugAnalysis; navigation failures are reported as ``page_error``
        """
        url = url or debug_url(steps, query)
        if not url:
            return DebugAnalysis(page_error="No load step to debug against")

        self.logger.info(f"Debugging {len(steps)} steps on {url}")
        try:
            async with self.browser.new_page(cookies=self.cookies) as page:
                status = await page.navigate(url, wait_until="networkidle")
                await page.wait(JS_RENDER_MS)
                return self.debugger.debug(await page.content(), steps, page.url, status)
        except BrowserError as e:
            self.logger.warning(f"Debug page failed: {e}")
            return DebugAnalysis(page_url=url, page_error=str(e))
