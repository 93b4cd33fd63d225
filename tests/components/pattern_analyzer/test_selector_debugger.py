from components.pattern_analyzer.selector_debugger import (
    STATUS_FAILED, STATUS_INVALID_LOOP, STATUS_INVALID_SELECTOR, STATUS_WORKING,
    SelectorDebugger, debug_url, validate_selector
)

CARDS_HTML = """
<html><head><title>Results</title></head><body>
  <div class="card"><h2 class="name">Dune</h2><a href="/b/1">Dune</a><img src="/c/1.jpg"></div>
  <div class="card"><h2 class="name">Dune Messiah</h2><a href="/b/2">Messiah</a><img src="/c/2.jpg"></div>
  <div class="card"><h2 class="name">Children of Dune</h2><a href="/b/3">Children</a><img src="/c/3.jpg"></div>
</body></html>
"""


class TestValidateSelector:
    """Tests for CSS validity checks on recipe locators."""

    def test_jquery_pseudo_is_rejected_with_suggestion(self):
        result = validate_selector('div.title:contains("Dune")')

        assert not result.valid
        assert ":contains" in result.error
        assert result.suggestion == "div.title"

    def test_structural_pseudo_is_allowed(self):
        """Test that :first-child is not mistaken for jQuery's :first."""
        assert validate_selector("ul > li:first-child a").valid
        assert not validate_selector("ul > li:first a").valid

    def test_syntax_error(self):
        result = validate_selector("div[")

        assert not result.valid
        assert result.error.startswith("Invalid CSS selector syntax")

    def test_empty_selector(self):
        assert not validate_selector("").valid
        assert not validate_selector(None).valid


class TestSelectorDebugger:
    """Tests for per-step locator diagnosis."""

    def setup_method(self):
        self.debugger = SelectorDebugger()

    def test_failing_title_gets_alternatives_and_fix(self):
        steps = [
            {'command': 'load', 'url': 'https://example.com/search?q=$INPUT'},
            {'command': 'store_text', 'locator': 'h2.missing', 'output': {'name': 'TITLE'}},
            {'command': 'store_attribute', 'locator': 'div.card a', 'attribute_name': 'href',
             'output': {'name': 'URL'}},
        ]
        analysis = self.debugger.debug(CARDS_HTML, steps, "https://example.com/search?q=dune")

        assert [c.step_index for c in analysis.working] == [0, 2]
        assert len(analysis.failing) == 1
        failing = analysis.failing[0]
        assert failing.status == STATUS_FAILED
        assert failing.alternatives[0].selector == "h2"
        assert failing.alternatives[0].confidence == "high"
        assert len(failing.alternatives) <= 5

        fix = analysis.suggested_fixes[0]
        assert fix.step_index == 1
        assert fix.field == "locator"
        assert fix.old_value == "h2.missing"
        assert fix.new_value == "h2"
        assert fix.reason == "Original selector found 0 elements, alternative found 3"

    def test_loop_variable_without_loop_config(self):
        steps = [{'command': 'store_text', 'locator': 'div.card:nth-child($i) h2', 'output': {'name': 'TITLE$i'}}]
        analysis = self.debugger.debug(CARDS_HTML, steps)

        assert analysis.failing[0].status == STATUS_INVALID_LOOP
        assert "no loop configuration" in analysis.failing[0].error

    def test_loop_step_checks_first_iterations(self):
        steps = [{
            'command': 'store_text',
            'locator': 'div.card:nth-child($i) h2.name',
            'output': {'name': 'TITLE$i'},
            'config': {'loop': {'index': 'i', 'from': 1, 'to': 9, 'step': 1}},
        }]
        analysis = self.debugger.debug(CARDS_HTML, steps)

        assert analysis.working[0].status == STATUS_WORKING
        assert analysis.working[0].found == 3
        assert analysis.working[0].sample == "Dune"

    def test_invalid_pseudo_suggests_plain_css(self):
        steps = [{'command': 'store_text', 'locator': 'h2.name:eq(0)', 'output': {'name': 'TITLE'}}]
        analysis = self.debugger.debug(CARDS_HTML, steps)

        check = analysis.failing[0]
        assert check.status == STATUS_INVALID_SELECTOR
        assert analysis.suggested_fixes[0].new_value == "h2.name"

    def test_forbidden_status_is_reported(self):
        analysis = self.debugger.debug("<html></html>", [], "https://api.example.com/v1/search", status=403)

        assert "HTTP 403 Forbidden" in analysis.page_error
        assert "DOM-based" in analysis.page_error


def test_debug_url_substitutes_encoded_query():
    steps = [
        {'command': 'store', 'input': 'x'},
        {'command': 'load', 'url': 'https://example.com/search?q=$INPUT'},
    ]
    assert debug_url(steps, "star wars") == "https://example.com/search?q=star%20wars"
    assert debug_url([{'command': 'store_text', 'locator': 'h1'}], "x") is None
