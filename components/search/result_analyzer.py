"""
Search Result Analyzer Module

Finds the repeating result pattern on a loaded search results page by
scoring a list of candidate selectors, then extracts per-item link, image
and title data for the step-authoring collaborator.
"""

import logging
from collections import Counter
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from components.pattern_analyzer.base_analyzer import (
    DomAnalyzer, absolute_href, classes_of, closest, element_children, matches, safe_select, selector_for,
    text_of,
)
from core.models import ResultItem, ResultPattern, TitleCandidate

logger = logging.getLogger("SearchResultAnalyzer")

# Candidate result selectors, most specific first
RESULT_SELECTORS = [
    '[class*="bookTitle"]', '[class*="book-title"]',
    '[class*="searchResult"]', '[class*="search-result"]',
    '[class*="searchItem"]', '[class*="search-item"]',
    '[class*="result"]:not([class*="searchResults"])',
    '[class*="item"]:not(li[class*="nav"]):not([class*="menu"])',
    '[class*="card"]:not([class*="sidebar"])',
    '[data-testid*="result"]', '[data-testid*="item"]',
    'article', 'main [class*="row"]', '[class*="listing"]',
    'table.tableList tr',
    '[class*="perfume"]', '[class*="product"]',
]

# Class/id fragments of consent, ad, auth and modal UI
NON_CONTENT_PATTERNS = [
    'fc-consent', 'fc-preference', 'fc-purpose', 'fc-dialog',
    'cookie', 'consent', 'gdpr', 'privacy',
    'onetrust', 'cookiebot', 'didomi', 'quantcast',
    'newsletter', 'subscribe', 'signup', 'sign-up',
    'login', 'signin', 'sign-in', 'register',
    'advertisement', 'ad-', 'ads-', 'sponsor',
    'modal', 'popup', 'overlay', 'banner',
]

GDPR_PHRASES = [
    'store and/or access', 'advertising', 'personalised', 'personalized',
    'legitimate interest', 'data processing', 'cookies', 'consent',
    'privacy policy', 'terms of service', 'accept all', 'reject all',
]

REJECTED_HREF_FRAGMENTS = ('/genres/', '/categories/', '/tags/', '/signin', '/login', '/register')

NAV_SELECTOR_FRAGMENTS = ('ul.', 'nav', 'menu', 'sidebar', 'footer', 'header')

MAIN_LANDMARK = 'main, [role="main"], #content, .content'
TITLE_ELEMENTS = 'h1, h2, h3, h4, h5, h6, [class*="title"]'
HEADING_CANDIDATES = 'h1, h2, h3, h4, h5, h6, [class*="title"], [class*="name"], a[class*="Title"], a[class*="title"]'
TITLE_LINK = 'a[class*="title"], a[class*="Title"], a[class*="name"], a.title'
NAV_ANCESTRY = 'nav, header, footer, aside, [class*="nav"], [class*="menu"]'


class SearchResultAnalyzer(DomAnalyzer):
    """Scores DOM candidates to locate repeating search results."""

    def __init__(self, min_items: int = 2, max_items: int = 100, keep_items: int = 10):
        super().__init__()
        self.min_items = min_items
        self.max_items = max_items
        self.keep_items = keep_items

    @property
    def name(self) -> str:
        return "search_result_analyzer"

    def analyze(self, html: str, base_url: str) -> Optional[ResultPattern]:
        """
        Find the repeating result pattern in a results page.

        Args:
            html: HTML snapshot of the results page
            base_url: URL of the page, used to resolve relative links

        Returns:
            ResultPattern with up to ``keep_items`` analyzed items, or None
        """
        soup = self.parse_html(html)
        selector, items, score = self._best_candidate(soup, base_url)

        if not items:
            fallback = self._group_link_parents(soup)
            if fallback:
                selector, items = fallback
                score = 0
                if len(items) == 1:
                    drilled = self._drill_down(items[0])
                    if drilled:
                        selector, items = drilled
                        score = self.score_selector(selector, items)
                        items = items[:self.keep_items]

        if not items:
            logger.info("No repeating result pattern found")
            return None

        common_parent, direct_children = self._common_parent(items)
        pattern = ResultPattern(
            selector=selector,
            count=len(items),
            score=score,
            items=[self.analyze_item(item, i, base_url) for i, item in enumerate(items)],
            common_parent_selector=common_parent,
            items_are_direct_children=direct_children,
        )
        logger.info(f"Result pattern {selector!r}: {pattern.count} items, score {score}")
        return pattern

    def _best_candidate(self, soup: BeautifulSoup, base_url: str) -> Tuple[Optional[str], List[Tag], float]:
        best_selector = None
        best_items: List[Tag] = []
        best_score = float('-inf')

        for selector in RESULT_SELECTORS:
            valid = [item for item in safe_select(soup, selector) if self.looks_like_result(item, base_url)]
            if len(valid) == 1:
                drilled = self._drill_down(valid[0])
                if drilled is None:
                    continue
                selector, valid = drilled
                logger.debug(f"Drilled down into single container: {selector}")
            if not (self.min_items <= len(valid) <= self.max_items):
                continue
            score = self.score_selector(selector, valid)
            if score > best_score:
                best_score = score
                best_items = valid[:self.keep_items]
                best_selector = selector

        return best_selector, best_items, (best_score if best_items else 0)

    def is_non_content(self, item: Tag) -> bool:
        """Consent, ad, auth or modal UI rather than a result."""
        own = f"{' '.join(classes_of(item))} {item.get('id', '')}".lower()
        parent = item.parent if isinstance(item.parent, Tag) else None
        parent_attrs = f"{' '.join(classes_of(parent))} {parent.get('id', '')}".lower() if parent else ""

        for pattern in NON_CONTENT_PATTERNS:
            if pattern in own or pattern in parent_attrs:
                return True

        text = item.get_text().lower()
        return any(phrase in text for phrase in GDPR_PHRASES)

    def looks_like_result(self, item: Tag, base_url: str = "") -> bool:
        if self.is_non_content(item):
            return False

        link = item.select_one('a[href]') or (item if item.name == 'a' else None)
        if link is None:
            return False

        href = absolute_href(link, base_url) or ''
        if any(fragment in href for fragment in REJECTED_HREF_FRAGMENTS):
            return False
        if '#' in href and '/#/' not in href:
            return False

        return len(item.get_text().strip()) >= 10

    def score_selector(self, selector: str, items: List[Tag]) -> float:
        """Images +2 and titles +3 per item, nav-ish selectors -10, main content +5."""
        score = 0
        score += 2 * sum(1 for item in items if item.select_one('img'))
        score += 3 * sum(1 for item in items if safe_select(item, TITLE_ELEMENTS))

        if any(fragment in selector for fragment in NAV_SELECTOR_FRAGMENTS):
            score -= 10

        if any(closest(item, MAIN_LANDMARK) is not None for item in items):
            score += 5

        return score

    def _drill_down(self, container: Tag) -> Optional[Tuple[str, List[Tag]]]:
        """
        Re-target a single wrapper onto its homogeneous linked children.

        Children are grouped by their first class, or by tag when they have
        none; the largest group needs at least 3 linked members.
        """
        groups = Counter()
        for child in element_children(container):
            if child.select_one('a[href]') or child.name == 'a':
                classes = classes_of(child)
                groups[f".{classes[0]}" if classes else child.name] += 1

        if not groups:
            return None
        child_selector, count = groups.most_common(1)[0]
        if count < 3:
            return None

        children = safe_select(container, f':scope > {child_selector}')
        if len(children) < 3:
            return None

        container_classes = classes_of(container)
        if container_classes:
            selector = f".{container_classes[0]} > {child_selector}"
        else:
            selector = f"{selector_for(container)} > {child_selector}"
        return selector, children

    def _group_link_parents(self, soup: BeautifulSoup) -> Optional[Tuple[str, List[Tag]]]:
        """Fallback: the most common grandparent of links in the main content."""
        main = soup.select_one(MAIN_LANDMARK) or soup.body or soup
        counts: Dict[Tuple[str, str], int] = Counter()

        for link in main.select('a[href]'):
            grandparent = link.parent.parent if isinstance(link.parent, Tag) else None
            if not isinstance(grandparent, Tag) or grandparent.name in ('[document]', 'html'):
                continue
            if matches(grandparent, NAV_ANCESTRY):
                continue
            classes = classes_of(grandparent)
            counts[(grandparent.name, classes[0] if classes else '')] += 1

        if not counts:
            return None
        (tag, cls), count = counts.most_common(1)[0]
        if count < 3:
            return None

        selector = f"{tag}.{cls}" if cls else tag
        return selector, safe_select(soup, selector)[:self.keep_items]

    def _common_parent(self, items: List[Tag]) -> Tuple[Optional[str], bool]:
        if len(items) < 2:
            return None, False
        parent = items[0].parent
        if not isinstance(parent, Tag) or any(item.parent is not parent for item in items):
            return None, False
        return selector_for(parent), True

    def analyze_item(self, item: Tag, index: int, base_url: str) -> ResultItem:
        link = item.select_one('a[href]') or (item if item.name == 'a' else None)
        img = item.select_one('img')
        title_link = safe_select(item, TITLE_LINK)
        title_link = title_link[0] if title_link else None

        candidates = [
            TitleCandidate(selector=selector_for(h), text=text_of(h, 100))
            for h in safe_select(item, HEADING_CANDIDATES)
        ]
        if title_link is not None and title_link is not link and text_of(title_link):
            candidates.insert(0, TitleCandidate(selector=selector_for(title_link), text=text_of(title_link, 100)))

        img_src = urljoin(base_url, img['src']) if img is not None and img.get('src') else None

        return ResultItem(
            index=index,
            item_selector=selector_for(item),
            has_link=link is not None,
            link_href=absolute_href(link, base_url),
            link_text=text_of(link, 100),
            link_selector=selector_for(link),
            has_image=img is not None,
            img_src=img_src,
            img_selector=selector_for(img),
            title_candidates=candidates[:5],
            title_link=absolute_href(title_link, base_url),
            text_content=text_of(item, 200),
            html_snippet=str(item)[:500],
        )
