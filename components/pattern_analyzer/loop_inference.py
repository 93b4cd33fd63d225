"""
Consecutive-Sibling Loop Inference Module

Given a few known result anchors, finds the element that contains all of
them and works out whether the per-result wrappers are consecutive children
of it. Consecutive wrappers can be iterated with ``:nth-child($i)``; gaps
force ``:nth-of-type($i)``, which only works when every wrapper shares a tag.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from components.pattern_analyzer.base_analyzer import (
    DomAnalyzer, GENERATED_CLASS, classes_of, element_children, safe_select, sibling_index, stable_selector_for,
)
from core.models import DomLoopStructure, FieldSelectors, LoopInferenceFailure

logger = logging.getLogger("LoopInference")

LOOP_PLACEHOLDER = "$i"
MIN_ANCHORS = 3
MAX_ANCHORS = 10

SKIPPED_HREF_FRAGMENTS = ('login', 'cart', 'account')
BACKGROUND_IMAGE = re.compile(r'background(-image)?\s*:.*url\(', re.IGNORECASE)


@dataclass
class LoopCheck:
    """Outcome of substituting 1..N into a loop base."""
    pattern: str
    tested: int
    found: int

    @property
    def success_rate(self) -> float:
        return self.found / self.tested if self.tested else 0.0

    @property
    def is_valid(self) -> bool:
        return self.found >= MIN_ANCHORS


def is_consecutive(indices: Sequence[int]) -> bool:
    """True when the sorted indices form a run without gaps."""
    ordered = sorted(indices)
    return all(b == a + 1 for a, b in zip(ordered, ordered[1:]))


def build_loop_base(container: str, child: str, consecutive: bool) -> str:
    pseudo = "nth-child" if consecutive else "nth-of-type"
    return f"{container} > {child}:{pseudo}({LOOP_PLACEHOLDER})"


def validate_loop_selector(html: str, pattern: str, expected_count: int = 5) -> LoopCheck:
    """Count how many of indices 1..expected_count resolve to an element."""
    soup = BeautifulSoup(html or "", 'lxml')
    found = 0
    for i in range(1, expected_count + 1):
        if safe_select(soup, pattern.replace(LOOP_PLACEHOLDER, str(i)))[:1]:
            found += 1
    return LoopCheck(pattern=pattern, tested=expected_count, found=found)


class LoopInference(DomAnalyzer):
    """Infers a DomLoopStructure from result anchors on a results page."""

    @property
    def name(self) -> str:
        return "loop_inference"

    def infer(self, html: str, result_links: Sequence[str] = (), base_url: str = "") -> Union[DomLoopStructure, LoopInferenceFailure]:
        """
        Infer the loop structure of a results page.

        Args:
            html: HTML snapshot of the results page
            result_links: Absolute hrefs of known results, in page order
            base_url: URL of the page

        Returns:
            DomLoopStructure, or LoopInferenceFailure with a reason
        """
        soup = self.parse_html(html)
        anchors = self.find_anchors(soup, result_links, base_url)

        if len(anchors) < MIN_ANCHORS:
            return LoopInferenceFailure('Could not identify enough result links to analyze')

        ancestor = self.common_ancestor(anchors)
        if ancestor is None:
            return LoopInferenceFailure('Result links have no common ancestor')

        wrappers = self.wrappers_under(ancestor, anchors)
        if not wrappers:
            return LoopInferenceFailure('Result links resolve to a single element')

        container_selector = stable_selector_for(ancestor) or ancestor.name
        total_children = len(element_children(ancestor))
        indices = sorted(sibling_index(w) for w in wrappers)
        consecutive = is_consecutive(indices)

        tags = sorted({w.name for w in wrappers})
        if len(tags) == 1:
            shared = self._shared_classes(wrappers)
            child_selector = f"{tags[0]}.{shared[0]}" if shared else tags[0]
        elif consecutive:
            child_selector = '*'
        else:
            return LoopInferenceFailure(
                f"Results are NOT consecutive (indices: {', '.join(map(str, indices))}) and wrappers "
                f"mix tags ({', '.join(tags)}), so neither nth-child nor nth-of-type can address them. "
                f"Filter results by class instead."
            )

        loop_base = build_loop_base(container_selector, child_selector, consecutive)
        if consecutive:
            recommendation = f'Results are consecutive children. Use "{loop_base}" as base selector.'
        else:
            recommendation = (
                f"Results are NOT consecutive (indices: {', '.join(map(str, indices))}). "
                f"Container has {total_children} children but only {len(wrappers)} are results. "
                f"Use nth-of-type if all results share same tag, otherwise filter by class."
            )

        structure = DomLoopStructure(
            container_selector=container_selector,
            child_selector=child_selector,
            indices=indices,
            is_consecutive=consecutive,
            loop_base=loop_base,
            field_selectors=self.field_selectors(wrappers[0]),
            total_children=total_children,
            recommendation=recommendation,
        )
        logger.info(f"Loop base {loop_base!r} (consecutive={consecutive}, indices={indices})")
        return structure

    def find_anchors(self, soup: BeautifulSoup, result_links: Sequence[str], base_url: str) -> List[Tag]:
        anchors: List[Tag] = []
        all_links = soup.select('a[href]')

        for href in list(result_links)[:MAX_ANCHORS]:
            if not href:
                continue
            tail = href.rstrip('/').split('/')[-1]
            for a in all_links:
                raw = a['href']
                if raw == href or urljoin(base_url, raw) == href or (tail and raw.endswith(tail)):
                    if not any(a is seen for seen in anchors):
                        anchors.append(a)
                    break

        if len(anchors) < MIN_ANCHORS:
            anchors = self._anchors_by_path_pattern(all_links) or anchors
        return anchors

    def _anchors_by_path_pattern(self, links: List[Tag]) -> List[Tag]:
        """Group links by their parent path and keep the biggest group of 3+."""
        groups: Dict[str, List[Tag]] = defaultdict(list)
        for a in links:
            href = a.get('href') or ''
            if href.startswith('#') or href == '/' or len(href) < 5:
                continue
            if any(fragment in href for fragment in SKIPPED_HREF_FRAGMENTS):
                continue
            parts = [p for p in re.sub(r'^https?://[^/]+', '', href).split('/') if p]
            if not parts:
                continue
            groups['/'.join(parts[:-1]) or 'root'].append(a)

        best: List[Tag] = []
        for anchors in groups.values():
            if len(anchors) > len(best) and len(anchors) >= MIN_ANCHORS:
                best = anchors
        return best[:MAX_ANCHORS]

    @staticmethod
    def _ancestor_path(element: Tag) -> List[Tag]:
        """The element and its ancestors, bottom-up, stopping below <body>."""
        path = []
        current = element
        while isinstance(current, Tag) and current.name not in ('body', 'html', '[document]'):
            path.append(current)
            current = current.parent
        return path

    def common_ancestor(self, anchors: List[Tag]) -> Optional[Tag]:
        """Deepest element shared by every anchor's ancestor chain."""
        paths = [self._ancestor_path(a) for a in anchors]
        ancestor = None
        for depth in range(min(len(p) for p in paths)):
            at_depth = [p[len(p) - 1 - depth] for p in paths]
            if all(node is at_depth[0] for node in at_depth):
                ancestor = at_depth[0]
            else:
                break
        return ancestor

    @staticmethod
    def wrappers_under(ancestor: Tag, anchors: List[Tag]) -> List[Tag]:
        """Per anchor, the child of ``ancestor`` that contains it."""
        wrappers: List[Tag] = []
        for anchor in anchors:
            current = anchor
            while isinstance(current.parent, Tag) and current.parent is not ancestor:
                current = current.parent
            if current.parent is ancestor and not any(current is w for w in wrappers):
                wrappers.append(current)
        return wrappers

    @staticmethod
    def _shared_classes(wrappers: List[Tag]) -> List[str]:
        shared: Optional[List[str]] = None
        for wrapper in wrappers:
            classes = [c for c in classes_of(wrapper) if not GENERATED_CLASS.search(c)]
            shared = classes if shared is None else [c for c in shared if c in classes]
        return shared or []

    def field_selectors(self, wrapper: Tag) -> FieldSelectors:
        """Title, url and cover selectors sampled from one result wrapper."""
        fields = FieldSelectors()

        title = (wrapper.select_one('h1, h2, h3, h4, h5, h6')
                 or (safe_select(wrapper, '[class*="title" i], [class*="name" i]') or [None])[0]
                 or wrapper.select_one('a'))
        if title is not None:
            fields.title = stable_selector_for(title) or title.name

        if wrapper.select_one('a[href]') is not None:
            fields.url = 'a'
            fields.url_attr = 'href'

        img = wrapper.select_one('img[src], img[data-src], img[data-lazy-src]')
        if img is not None:
            fields.cover = stable_selector_for(img) or 'img'
            if img.get('src'):
                fields.cover_attr = 'src'
            elif img.get('data-src'):
                fields.cover_attr = 'data-src'
            else:
                fields.cover_attr = 'data-lazy-src'
        else:
            for element in wrapper.select('[style*="background"]'):
                if BACKGROUND_IMAGE.search(element.get('style') or ''):
                    fields.cover = stable_selector_for(element) or element.name
                    fields.cover_attr = 'style'
                    fields.cover_needs_extraction = True
                    break

        return fields
