"""
Evidence Extractor Module

Turns an HTML snapshot into the structural fingerprints handed to the
step-authoring collaborator: landing-page SiteEvidence, detail-page
DetailEvidence, and a health score telling whether a probe saw a real page.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

import config
from components.pattern_analyzer.base_analyzer import DomAnalyzer, closest, get_hostname, safe_select, text_of
from core.models import DetailEvidence, LinkSample, ProbeHealth, SearchAffordance, SiteEvidence

logger = logging.getLogger("EvidenceExtractor")

# Search inputs, most conventional first; covers role/aria/testid based UIs
SEARCH_INPUT_SELECTORS = [
    'input[type="search"]',
    'input[name="q"]',
    'input[name="query"]',
    'input[name="search"]',
    'input[placeholder*="search" i]',
    'input[role="searchbox"]',
    'input[role="combobox"][aria-label*="search" i]',
    'input[aria-label*="search" i]',
    'input[data-testid*="search" i]',
    'input[id*="search" i]:not([type="hidden"])',
    'input[class*="search" i]:not([type="hidden"])',
    '[contenteditable="true"][role="searchbox"]',
    '[contenteditable="true"][aria-label*="search" i]',
]

LINK_SAMPLE_SIZE = 20

# Probe health penalties
HEALTH_PENALTIES = {
    'title_missing_or_generic': 30,
    'no_meta_description': 15,
    'no_h1': 10,
    'no_links': 25,
    'no_jsonld': 5,
    'no_search_detected': 15,
}


def _meta_content(soup: BeautifulSoup, selector: str) -> Optional[str]:
    element = soup.select_one(selector)
    return element.get('content') if element is not None else None


def _jsonld_blocks(soup: BeautifulSoup) -> List[Any]:
    blocks = []
    for script in soup.select('script[type="application/ld+json"]'):
        try:
            blocks.append(json.loads(script.string or script.get_text() or ''))
        except ValueError:
            logger.debug("Skipping malformed JSON-LD block")
    return blocks


def _jsonld_types(blocks: List[Any]) -> List[str]:
    types: List[str] = []

    def add(value):
        for name in (value if isinstance(value, list) else [value]):
            if isinstance(name, str) and name not in types:
                types.append(name)

    for data in blocks:
        items = data if isinstance(data, list) else [data]
        for item in items:
            if not isinstance(item, dict):
                continue
            if '@type' in item:
                add(item['@type'])
            for node in item.get('@graph', []) if isinstance(item.get('@graph'), list) else []:
                if isinstance(node, dict) and '@type' in node:
                    add(node['@type'])
    return types


def visible_text(soup: BeautifulSoup) -> str:
    """Approximation of ``document.body.innerText``."""
    body = soup.body
    if body is None:
        return ""
    texts = [s for s in body.find_all(string=True) if s.parent.name not in ('script', 'style', 'noscript', 'template')]
    return " ".join(t.strip() for t in texts if t.strip())


class EvidenceExtractor(DomAnalyzer):
    """Extracts fingerprints from page HTML."""

    @property
    def name(self) -> str:
        return "evidence_extractor"

    def detect_search(self, soup: BeautifulSoup, base_url: str) -> SearchAffordance:
        """First matching search input, its enclosing form's action and its name."""
        for selector in SEARCH_INPUT_SELECTORS:
            found = safe_select(soup, selector)
            if not found:
                continue
            search_input = found[0]
            form = closest(search_input, 'form')
            action = None
            if form is not None:
                action = urljoin(base_url, form.get('action') or '')
            return SearchAffordance(
                has_search=True,
                input_locator=selector,
                form_action=action,
                input_name=search_input.get('name') or search_input.get('id'),
            )
        return SearchAffordance()

    def links_sample(self, soup: BeautifulSoup, base_url: str) -> Tuple[LinkSample, ...]:
        samples = []
        for a in soup.select('a[href]')[:LINK_SAMPLE_SIZE]:
            text = text_of(a, 100)
            href = urljoin(base_url, a['href'])
            if text and href:
                samples.append(LinkSample(href=href, text=text))
        return tuple(samples)

    def extract_site_evidence(self, html: str, final_url: str, input_url: Optional[str] = None,
                              cookies: Tuple[Dict[str, Any], ...] = ()) -> SiteEvidence:
        """
        Build the landing-page fingerprint.

        Args:
            html: HTML snapshot
            final_url: URL after redirects
            input_url: URL that was requested
            cookies: Session cookies to carry along for later probes

        Returns:
            SiteEvidence
        """
        soup = self.parse_html(html)
        title = soup.title.get_text(strip=True) if soup.title else ""
        meta = (_meta_content(soup, 'meta[name="description"]')
                or _meta_content(soup, 'meta[property="og:description"]') or "")
        h1 = text_of(soup.select_one('h1'))

        return SiteEvidence(
            hostname=get_hostname(final_url),
            input_url=input_url or final_url,
            final_url=final_url,
            title=title,
            meta_description=meta,
            h1=h1,
            jsonld_types=frozenset(_jsonld_types(_jsonld_blocks(soup))),
            links_sample=self.links_sample(soup, final_url),
            search=self.detect_search(soup, final_url),
            cookies=tuple(cookies),
        )

    def extract_detail_evidence(self, html: str, url: str, final_url: str) -> DetailEvidence:
        soup = self.parse_html(html)
        canonical = soup.select_one('link[rel="canonical"]')
        return DetailEvidence(
            url=url,
            final_url=final_url,
            title=soup.title.get_text(strip=True) if soup.title else "",
            h1=text_of(soup.select_one('h1')),
            og_title=_meta_content(soup, 'meta[property="og:title"]'),
            og_description=_meta_content(soup, 'meta[property="og:description"]'),
            og_image=_meta_content(soup, 'meta[property="og:image"]'),
            canonical=canonical.get('href') if canonical is not None else None,
            meta_description=_meta_content(soup, 'meta[name="description"]'),
            jsonld=tuple(b for b in _jsonld_blocks(soup) if isinstance(b, (dict, list))),
        )


def assess_probe_health(evidence: SiteEvidence, threshold: Optional[int] = None) -> ProbeHealth:
    """
    Score how much of a real page a probe saw.

    A blocked or empty page typically has a generic title, no links and no
    search box; such probes are not worth authoring from.
    """
    threshold = config.PROBE_HEALTH_THRESHOLD if threshold is None else threshold
    issues = []

    title = evidence.title or ""
    if not title or title == evidence.hostname or len(title) < 5:
        issues.append('title_missing_or_generic')
    if not evidence.meta_description:
        issues.append('no_meta_description')
    if not evidence.h1:
        issues.append('no_h1')
    if not evidence.links_sample:
        issues.append('no_links')
    if not evidence.jsonld_types:
        issues.append('no_jsonld')
    if not evidence.search.has_search:
        issues.append('no_search_detected')

    score = 100 - sum(HEALTH_PENALTIES[issue] for issue in issues)
    return ProbeHealth(healthy=score >= threshold, score=max(0, score), issues=tuple(issues))
