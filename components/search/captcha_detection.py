"""
Anti-bot detection module for site onboarding.

This module recognises pages that are challenge interstitials from known
anti-bot providers rather than real content, and provides an interactive
bypass: a visible browser session in which an operator solves the challenge
so its cookies can be reused by later headless probes.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

import config
from components.pattern_analyzer.evidence_extractor import EvidenceExtractor, visible_text
from core.browser import BrowserAdapter, PageHandle
from core.exceptions import BrowserError
from core.models import CaptchaProvider, CaptchaVerdict, SiteEvidence

# Provider fingerprints in priority order: (provider, html markers, title markers)
PROVIDER_FINGERPRINTS: List[Tuple[CaptchaProvider, Tuple[str, ...], Tuple[str, ...]]] = [
    (CaptchaProvider.DATADOME, ('captcha-delivery.com', 'datadome'), ()),
    (CaptchaProvider.CLOUDFLARE, ('challenges.cloudflare.com',), ('just a moment',)),
    (CaptchaProvider.HCAPTCHA, ('hcaptcha.com', 'h-captcha'), ()),
    (CaptchaProvider.RECAPTCHA, ('recaptcha',), ()),
    (CaptchaProvider.PERIMETERX, ('perimeterx', 'px-captcha'), ()),
]

# Content-starvation heuristic for unknown providers
MIN_VISIBLE_TEXT = 50
MAX_SCRIPTS = 3

NOT_BLOCKED = CaptchaVerdict(blocked=False, provider=CaptchaProvider.NONE)


class AntiBotDetector:
    """Classifies a loaded page as blocked by an anti-bot provider."""

    def __init__(self):
        self.logger = logging.getLogger("AntiBotDetector")

    def detect_from_html(self, html: str, title: Optional[str] = None) -> CaptchaVerdict:
        """
        Classify page markup.

        Args:
            html: Full page HTML
            title: Document title; read from the markup when omitted

        Returns:
            CaptchaVerdict naming the first matching provider
        """
        soup = BeautifulSoup(html or "", 'lxml')
        if title is None:
            title = soup.title.get_text() if soup.title else ""
        lower_html = (html or "").lower()
        lower_title = title.lower()

        for provider, html_markers, title_markers in PROVIDER_FINGERPRINTS:
            if any(marker in lower_html for marker in html_markers) or \
                    any(marker in lower_title for marker in title_markers):
                return CaptchaVerdict(blocked=True, provider=provider)

        if len(visible_text(soup)) < MIN_VISIBLE_TEXT and len(soup.find_all('script')) <= MAX_SCRIPTS:
            return CaptchaVerdict(blocked=True, provider=CaptchaProvider.UNKNOWN)

        return NOT_BLOCKED

    async def detect(self, page: PageHandle) -> CaptchaVerdict:
        verdict = self.detect_from_html(await page.content(), await page.title())
        if verdict.blocked:
            self.logger.warning(f"Page {page.url} looks blocked ({verdict.provider.value})")
        return verdict


@dataclass
class SolvedSession:
    """Cookies and a one-shot evidence snapshot from a solved challenge."""
    cookies: List[Dict[str, Any]]
    evidence: SiteEvidence


class InteractiveBypass:
    """
    Opens a visible browser so an operator can solve a challenge.

    The headed browser is created per call by ``browser_factory`` and is
    always shut down, whether the challenge was solved, timed out or failed.
    """

    def __init__(self, browser_factory: Callable[[], BrowserAdapter],
                 detector: Optional[AntiBotDetector] = None,
                 extractor: Optional[EvidenceExtractor] = None,
                 max_wait: Optional[float] = None,
                 poll_interval: Optional[float] = None,
                 settle_seconds: float = 3.0,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.logger = logging.getLogger("InteractiveBypass")
        self.browser_factory = browser_factory
        self.detector = detector or AntiBotDetector()
        self.extractor = extractor or EvidenceExtractor()
        self.max_wait = config.CAPTCHA_MAX_WAIT_SECONDS if max_wait is None else max_wait
        self.poll_interval = config.CAPTCHA_POLL_SECONDS if poll_interval is None else poll_interval
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    async def solve(self, url: str) -> Optional[SolvedSession]:
        """
        Wait for an operator to clear the challenge at ``url``.

        Returns:
            SolvedSession, or None on timeout or browser failure
        """
        self.logger.info("Opening browser for manual CAPTCHA solving; solve it in the window that opens")
        browser = self.browser_factory()
        try:
            async with browser:
                async with browser.new_page() as page:
                    await page.navigate(url)
                    if not await self._wait_until_clear(page):
                        self.logger.warning(f"CAPTCHA solving timed out after {self.max_wait:.0f} seconds")
                        return None

                    await self._sleep(self.settle_seconds)
                    cookies = await page.cookies()
                    evidence = self.extractor.extract_site_evidence(
                        await page.content(), page.url, input_url=url, cookies=tuple(cookies),
                    )
                    self.logger.info(f"Captured {len(cookies)} cookies from solved session")
                    return SolvedSession(cookies=cookies, evidence=evidence)
        except BrowserError as e:
            self.logger.error(f"Interactive CAPTCHA solving failed: {e}")
            return None

    async def _wait_until_clear(self, page: PageHandle) -> bool:
        elapsed = 0.0
        last_report = 0.0
        while elapsed < self.max_wait:
            await self._sleep(self.poll_interval)
            elapsed += self.poll_interval

            try:
                verdict = await self.detector.detect(page)
            except BrowserError as e:
                self.logger.debug(f"Page changed while polling, retrying: {e}")
                continue
            if not verdict.blocked:
                self.logger.info("CAPTCHA solved, capturing session")
                return True

            if elapsed - last_report >= 10:
                last_report = elapsed
                self.logger.info(f"Waiting for CAPTCHA to be solved... ({elapsed:.0f}s)")
        return False
