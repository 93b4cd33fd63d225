import pytest

from components.pattern_analyzer.loop_inference import (
    LoopInference, build_loop_base, is_consecutive, validate_loop_selector
)
from core.models import DomLoopStructure, LoopInferenceFailure

BASE_URL = "https://example.com/search?q=dune"


def links(*paths):
    return [f"https://example.com{p}" for p in paths]


class TestLoopInference:
    """Tests for consecutive-sibling loop inference."""

    def setup_method(self):
        self.inference = LoopInference()

    def test_consecutive_children_use_nth_child(self):
        """Test that gapless wrapper positions produce an nth-child loop base."""
        html = """
        <html><body>
          <ul id="results">
            <li class="result"><h3 class="title">Dune</h3><a href="/book/1">Dune</a><img src="/c/1.jpg"></li>
            <li class="result"><h3 class="title">Dune Messiah</h3><a href="/book/2">Messiah</a><img src="/c/2.jpg"></li>
            <li class="result"><h3 class="title">Children of Dune</h3><a href="/book/3">Children</a><img src="/c/3.jpg"></li>
            <li class="result"><h3 class="title">God Emperor</h3><a href="/book/4">God Emperor</a><img src="/c/4.jpg"></li>
          </ul>
        </body></html>
        """
        structure = self.inference.infer(html, links('/book/1', '/book/2', '/book/3', '/book/4'), BASE_URL)

        assert isinstance(structure, DomLoopStructure)
        assert structure.is_consecutive
        assert structure.indices == [1, 2, 3, 4]
        assert structure.loop_base == "#results > li.result:nth-child($i)"
        assert structure.field_selectors.title == "h3.title"
        assert structure.field_selectors.url_attr == "href"
        assert structure.field_selectors.cover_attr == "src"

    def test_gaps_force_nth_of_type(self):
        """Test that wrappers at positions 2, 4, 6, 8 switch to nth-of-type."""
        rows = []
        for i in range(1, 5):
            rows.append('<div class="ad">Sponsored content block</div>')
            rows.append(f'<div class="item"><a href="/movie/{i}">Movie number {i}</a></div>')
        html = f'<html><body><div class="list">{"".join(rows)}</div></body></html>'

        structure = self.inference.infer(html, links('/movie/1', '/movie/2', '/movie/3', '/movie/4'), BASE_URL)

        assert isinstance(structure, DomLoopStructure)
        assert structure.indices == [2, 4, 6, 8]
        assert not structure.is_consecutive
        assert structure.loop_base == "div.list > div.item:nth-of-type($i)"
        assert "NOT consecutive" in structure.recommendation

    def test_gaps_with_mixed_tags_fail(self):
        """Test that non-consecutive wrappers with different tags cannot be looped."""
        html = """
        <html><body><section class="grid">
          <span>ad</span><div><a href="/p/1">Product one here</a></div>
          <span>ad</span><article><a href="/p/2">Product two here</a></article>
          <span>ad</span><div><a href="/p/3">Product three here</a></div>
        </section></body></html>
        """
        result = self.inference.infer(html, links('/p/1', '/p/2', '/p/3'), BASE_URL)

        assert isinstance(result, LoopInferenceFailure)
        assert not result
        assert "mix tags" in result.reason

    def test_too_few_anchors(self):
        """Test that fewer than three known results is reported, not guessed."""
        html = '<html><body><div><a href="/x/1">One</a></div></body></html>'
        result = self.inference.infer(html, links('/x/1'), BASE_URL)

        assert isinstance(result, LoopInferenceFailure)
        assert "enough result links" in result.reason

    def test_anchors_found_by_path_pattern(self):
        """Test the fallback that groups links sharing a parent path."""
        html = """
        <html><body><div id="list">
          <p><a href="/game/alpha">Alpha</a></p>
          <p><a href="/game/beta">Beta</a></p>
          <p><a href="/game/gamma">Gamma</a></p>
        </div><a href="/login">Log in</a></body></html>
        """
        structure = self.inference.infer(html, [], BASE_URL)

        assert isinstance(structure, DomLoopStructure)
        assert structure.loop_base == "#list > p:nth-child($i)"


def test_is_consecutive():
    assert is_consecutive([3, 1, 2])
    assert is_consecutive([5])
    assert not is_consecutive([2, 4, 6, 8])


def test_build_loop_base():
    assert build_loop_base("ul.list", "li", True) == "ul.list > li:nth-child($i)"
    assert build_loop_base("ul.list", "li", False) == "ul.list > li:nth-of-type($i)"


def test_validate_loop_selector_counts_hits():
    html = "<html><body><ul>" + "".join(f"<li>{i}</li>" for i in range(4)) + "</ul></body></html>"
    check = validate_loop_selector(html, "ul > li:nth-child($i)", expected_count=5)

    assert check.found == 4
    assert check.tested == 5
    assert check.is_valid
    assert check.success_rate == pytest.approx(0.8)
