"""
Base DOM Analyzer Module

Shared foundation for the analyzers that work on an HTML snapshot of a live
page: parsing, element selector generation, text extraction and hostname
handling. Analyzers never talk to the browser themselves; callers hand them
``page.content()`` so every heuristic runs the same in tests and in production.
"""

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

import soupsieve as sv
from bs4 import BeautifulSoup, Tag

from core.service_interface import BaseService

logger = logging.getLogger("DomAnalyzer")

# Classes that look generated (hashes, ids) are useless in stable selectors
GENERATED_CLASS = re.compile(r'\d{4,}')

MAX_CLASS_LENGTH = 30


def parse_html(html: str) -> BeautifulSoup:
    """Parse HTML with lxml."""
    return BeautifulSoup(html or "", 'lxml')


def get_hostname(url: str) -> str:
    """Hostname of a URL with any leading ``www.`` removed."""
    if not url:
        return ""
    return re.sub(r'^www\.', '', (urlparse(url).hostname or "").lower())


def text_of(element: Optional[Tag], limit: Optional[int] = None) -> str:
    """Whitespace-trimmed text content, optionally truncated."""
    if element is None:
        return ""
    text = element.get_text(" ", strip=True)
    return text[:limit] if limit else text


def classes_of(element: Tag) -> List[str]:
    value = element.get('class') or []
    if isinstance(value, str):
        value = value.split()
    return [c for c in value if c]


def selector_for(element: Optional[Tag]) -> Optional[str]:
    """
    Short selector for a single element.

    ``#id`` when the element has an id, otherwise ``tag.firstClass`` using the
    first class that is not a BEM element and is reasonably short, otherwise
    the bare tag name.
    """
    if element is None:
        return None
    if element.get('id'):
        return f"#{element['id']}"
    for cls in classes_of(element):
        if '__' not in cls and len(cls) < MAX_CLASS_LENGTH:
            return f"{element.name}.{cls}"
    return element.name


def stable_selector_for(element: Optional[Tag]) -> Optional[str]:
    """Like selector_for but skips classes that look generated."""
    if element is None or element.name in ('body', 'html', '[document]'):
        return None
    if element.get('id'):
        return f"#{element['id']}"
    classes = [c for c in classes_of(element) if not GENERATED_CLASS.search(c)]
    if classes:
        return f"{element.name}.{classes[0]}"
    return element.name


def element_children(element: Tag) -> List[Tag]:
    """Element children only, in document order."""
    return [child for child in element.children if isinstance(child, Tag)]


def sibling_index(element: Tag) -> int:
    """1-based position of an element among its parent's element children."""
    parent = element.parent
    if parent is None:
        return -1
    for position, child in enumerate(element_children(parent), start=1):
        if child is element:
            return position
    return -1


def absolute_href(element: Optional[Tag], base_url: str) -> Optional[str]:
    if element is None or not element.get('href'):
        return None
    return urljoin(base_url, element['href'])


def safe_select(root: Tag, selector: str) -> List[Tag]:
    """CSS select that treats selectors soupsieve cannot parse as matching nothing."""
    try:
        return root.select(selector)
    except (sv.SelectorSyntaxError, NotImplementedError, ValueError) as e:
        logger.debug(f"Unsupported selector {selector!r}: {e}")
        return []


def closest(element: Tag, selector: str) -> Optional[Tag]:
    return sv.closest(selector, element)


def matches(element: Tag, selector: str) -> bool:
    return sv.match(selector, element)


class DomAnalyzer(BaseService):
    """Base class for analyzers that operate on parsed page HTML."""

    def __init__(self):
        self._initialized = False
        self._config: Dict[str, Any] = {}

    def initialize(self, config: Optional[Dict[str, Any]] = None) -> None:
        if self._initialized:
            return
        self._config = config or {}
        self._initialized = True
        logger.debug(f"{self.name} initialized")

    def shutdown(self) -> None:
        self._initialized = False

    @property
    def name(self) -> str:
        return "dom_analyzer"

    def parse_html(self, html: str) -> BeautifulSoup:
        return parse_html(html)
