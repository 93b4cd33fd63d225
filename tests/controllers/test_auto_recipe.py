import pytest

import config
from components.evidence_collector import candidate_search_urls, fill_query
from components.pattern_analyzer.evidence_extractor import EvidenceExtractor
from components.recipe_builder import RecipeStore
from components.search.captcha_detection import SolvedSession
from controllers.auto_recipe import AutoRecipePipeline, PipelineReport, absolute_url, normalize_hostname, recipe_shortcut
from core.browser import CapturedExchange
from core.models import DomLoopStructure, EngineResult, SearchEvidence, SearchType

LANDING = """
<html><head>
  <title>Example Books - Read more</title>
  <meta name="description" content="Reviews of every book ever written.">
  <script type="application/ld+json">{"@type": "WebSite"}</script>
</head><body>
  <h1>Example Books</h1>
  <form action="/search"><input type="search" name="q"></form>
  <a href="/item/featured">Featured</a>
</body></html>
"""

RESULTS = """
<html><body><main><section id="list">
  <div class="search-result"><h3><a href="/item/1">First book</a></h3><span>Some author</span></div>
  <div class="search-result"><h3><a href="/item/2">Second book</a></h3><span>Some author</span></div>
  <div class="search-result"><h3><a href="/item/3">Third book</a></h3><span>Some author</span></div>
</section></main></body></html>
"""

BLOCKED = """
<html><head><title>example.com</title></head>
<body><iframe src="https://geo.captcha-delivery.com/captcha/?initialCid=abc"></iframe></body></html>
"""

SOLVED_COOKIES = [{'name': 'datadome', 'value': 'abc', 'domain': '.example.com', 'path': '/'}]

DETAIL = "<html><head><title>Static 1</title></head><body><h1>Static 1</h1></body></html>"

AUTOCOMPLETE_STEPS = [
    {'command': 'load', 'url': 'https://example.com/search?q=$INPUT'},
    {'command': 'store_text', 'locator': '#list > div.search-result:nth-child($i) h3',
     'output': {'name': 'TITLE$i'}, 'config': {'loop': {'index': 'i', 'from': 1, 'to': 9, 'step': 1}}},
]
URL_STEPS = [
    {'command': 'load', 'url': '$INPUT'},
    {'command': 'store_text', 'locator': 'h1', 'output': {'name': 'TITLE'}},
]

DETAIL_RECORD = {'TITLE': 'Static 1', 'DESCRIPTION': 'A book', 'FAVICON': '/favicon.ico', 'COVER': '/c.jpg'}
DETAIL_URL = "https://example.com/item/Static-1"


def algolia_exchange(*titles):
    return CapturedExchange(
        url="https://abc-dsn.algolia.net/1/indexes/*/queries",
        method="POST",
        status=200,
        json={'results': [{'hits': [{'title': t, 'url': f"/item/{i}"} for i, t in enumerate(titles)]}]},
    )


def test_helpers():
    assert recipe_shortcut("example.co.uk") == "examplecouk"
    assert normalize_hostname("https://www.example.com/path") == "example.com"
    assert absolute_url("/item/1", "example.com") == "https://example.com/item/1"
    assert absolute_url("https://cdn.example.com/x", "example.com") == "https://cdn.example.com/x"


class TestAutoRecipePipeline:
    """Tests for the end-to-end onboarding pipeline."""

    @pytest.fixture(autouse=True)
    def setup_pipeline(self, browser, site, recipes_dir, make_results, make_author):
        self.browser = browser
        self.site = site
        site.pages["https://example.com"] = LANDING
        site.pages["https://example.com/search?q=test"] = RESULTS
        site.pages[DETAIL_URL] = DETAIL
        self.store = RecipeStore(recipes_dir)
        self.author = make_author(AUTOCOMPLETE_STEPS, URL_STEPS)
        self.static = make_results("Static")
        self.detail_result = EngineResult(success=True, results=DETAIL_RECORD)

    def make_pipeline(self, executor, fixer):
        pipeline = AutoRecipePipeline(self.browser, executor, self.author, fixer, store=self.store)
        self.interceptions = []
        original = pipeline._try_api_interception

        async def counting(*args):
            self.interceptions.append(args)
            return await original(*args)

        pipeline._try_api_interception = counting
        return pipeline

    @pytest.mark.asyncio
    async def test_happy_path(self, make_executor, make_fixer, make_results):
        executor = make_executor(by_input={
            'test': EngineResult(success=True, results=self.static),
            'example': EngineResult(success=True, results=make_results("Other")),
            DETAIL_URL: self.detail_result,
        })
        report = await self.make_pipeline(executor, make_fixer()).run("https://example.com")

        assert report.success, report.errors
        assert (report.test_query, report.cross_query) == ("test", "example")
        assert report.search.total_found == 3
        assert not report.escalated
        assert self.interceptions == []
        assert set(report.multi_query.details) == {"test", "example"}
        assert report.search.dom_structure.loop_base == "#list > div.search-result:nth-child($i)"
        assert report.detail_url == DETAIL_URL
        assert report.recipe_path.endswith("examplecom.json")

        saved = await self.store.load(report.recipe_path)
        assert saved['autocomplete_steps'] == AUTOCOMPLETE_STEPS
        assert saved['url_steps'] == URL_STEPS

        autocomplete_request, url_request = self.author.requests
        assert autocomplete_request.expected == {'url_regex': 'https://example.com'}
        assert url_request.required_fields == ['TITLE', 'DESCRIPTION', 'FAVICON', 'COVER']
        assert self.browser.opened == self.browser.closed
        assert self.browser.shutdowns == 1

    @pytest.mark.asyncio
    async def test_static_results_without_api_escalate_once(self, make_executor, make_fixer):
        """Test that identical titles for two queries try API interception exactly once."""
        executor = make_executor(by_input={
            'test': EngineResult(success=True, results=self.static),
            'example': EngineResult(success=True, results=list(self.static)),
        })
        report = await self.make_pipeline(executor, make_fixer()).run("https://example.com")

        assert not report.success
        assert report.escalated
        assert report.false_positive
        assert len(self.interceptions) == 1
        assert "static content" in report.errors[-1]
        assert "https://www.example.com/search/?query=test" in self.site.visits
        assert report.url_steps is None
        assert len(self.author.requests) == 1

    @pytest.mark.asyncio
    async def test_static_results_replaced_by_intercepted_api(self, make_executor, make_fixer):
        self.site.exchanges["https://www.example.com/search/?query=test"] = [
            algolia_exchange("Test Pilot", "Test Drive", "Testament")]
        self.site.exchanges["https://www.example.com/search/?query=example"] = [
            algolia_exchange("Example One", "Examples", "For Example")]
        executor = make_executor(by_input={
            'test': EngineResult(success=True, results=self.static),
            'example': EngineResult(success=True, results=list(self.static)),
            DETAIL_URL: self.detail_result,
        })
        report = await self.make_pipeline(executor, make_fixer()).run("https://example.com")

        assert report.success, report.errors
        assert report.escalated
        assert not report.false_positive
        assert len(self.interceptions) == 1

        saved = await self.store.load(report.recipe_path)
        assert saved['autocomplete_steps'][0]['command'] == 'api_request'
        assert saved['recipe_shortcut'] == 'examplecom'
        assert saved['url_steps'] == URL_STEPS

    @pytest.mark.asyncio
    async def test_failed_autocomplete_stops_before_url_steps(self, make_executor, make_fixer):
        executor = make_executor(EngineResult(success=True, results=[]))
        fixer = make_fixer({'action': 'none'})
        report = await self.make_pipeline(executor, fixer).run("https://example.com")

        assert not report.success
        assert report.errors == ["autocomplete_steps did not produce valid results. Cannot proceed to url_steps"]
        assert report.detail is None
        assert len(fixer.closed_sessions) == 1

    @pytest.mark.asyncio
    async def test_existing_recipe_gets_suffixed_shortcut(self, make_executor, make_fixer, make_results):
        await self.store.save(self.store.path_for('generic', 'examplecom'), {'recipe_shortcut': 'examplecom'})
        executor = make_executor(by_input={
            'test': EngineResult(success=True, results=self.static),
            'example': EngineResult(success=True, results=make_results("Other")),
            DETAIL_URL: self.detail_result,
        })
        report = await self.make_pipeline(executor, make_fixer()).run("https://example.com")

        assert report.recipe_path.endswith("examplecom_2.json")
        assert report.recipe['recipe_shortcut'] == 'examplecom_2'

    @pytest.mark.asyncio
    async def test_unreachable_site(self, make_executor, make_fixer):
        self.site.failures.add("https://example.com")
        report = await self.make_pipeline(make_executor(), make_fixer()).run("https://example.com")

        assert not report.success
        assert report.errors[0].startswith("Could not load https://example.com")
        assert self.browser.shutdowns == 1

    @pytest.mark.asyncio
    async def test_engine_that_cannot_start(self, make_executor, make_fixer):
        executor = make_executor(EngineResult(success=False, error="spawn node ENOENT", error_type="spawn_error"))
        fixer = make_fixer({'action': 'none'})
        report = await self.make_pipeline(executor, fixer).run("https://example.com")

        assert not report.success
        assert report.errors == [
            "Execution engine unavailable (spawn_error): Failed to start the engine process",
            "autocomplete_steps did not produce valid results. Cannot proceed to url_steps",
        ]
        assert fixer.started == 0

    @pytest.mark.asyncio
    async def test_search_found_by_typing_when_no_url_loads(self, make_executor, make_fixer):
        pipeline = self.make_pipeline(make_executor(), make_fixer())
        site = await pipeline.collector.probe("https://example.com")
        for candidate in candidate_search_urls(site):
            self.site.failures.add(fill_query(candidate, "test"))
        self.site.typing_exchanges["https://example.com"] = [CapturedExchange(
            url="https://example.com/api/search?q=test",
            method="GET",
            status=200,
            json={'hits': [{'title': "Test Pilot", 'url': "/item/1"}, {'title': "Testament", 'url': "/item/2"}]},
        )]

        search = await pipeline._find_search(site, "test")

        assert search.search_type is SearchType.INTERACTIVE_API_DISCOVERY
        assert search.api.url_pattern == "https://example.com/api/search?q=$INPUT"
        assert search.has_results

    @pytest.mark.asyncio
    async def test_loop_base_missing_on_reload_is_dropped(self, make_executor, make_fixer):
        pipeline = self.make_pipeline(make_executor(), make_fixer())
        search = SearchEvidence(search_url="https://example.com/search?q=test", query="test", total_found=3)
        search.dom_structure = DomLoopStructure(
            container_selector="#grid", child_selector="li", indices=[1, 2, 3], is_consecutive=True,
            loop_base="#grid > li:nth-child($i)",
        )

        await pipeline._confirm_loop(search)

        assert search.dom_structure is None
        assert search.loop_failure == "Loop base #grid > li:nth-child($i) matched only 0 of 3 results"
        assert self.browser.opened == self.browser.closed == 1


class StubBypass:
    def __init__(self, solved, solves):
        self.solved = solved
        self.solves = solves

    async def solve(self, url):
        self.solves.append(url)
        return self.solved


class TestAccessCheck:
    """Tests for anti-bot handling before search discovery."""

    @pytest.fixture(autouse=True)
    def setup_access(self, browser, site, recipes_dir, make_executor, make_fixer, make_author):
        self.browser = browser
        self.site = site
        site.pages["https://example.com"] = BLOCKED
        self.pipeline = AutoRecipePipeline(browser, make_executor(), make_author(), make_fixer(),
                                           store=RecipeStore(recipes_dir))
        self.report = PipelineReport(url="https://example.com", hostname="example.com")
        self.solves = []

    def install_bypass(self, solved):
        self.pipeline.bypass = StubBypass(solved, self.solves)

    @pytest.mark.asyncio
    async def test_blocked_without_bypass(self, monkeypatch):
        monkeypatch.setattr(config, "INTERACTIVE_CAPTCHA_ENABLED", False)
        self.install_bypass(None)
        site = await self.pipeline.collector.probe("https://example.com")

        assert await self.pipeline._check_access(self.report, site) is site
        assert self.report.captcha.blocked
        assert self.report.errors == ["https://example.com is blocked by datadome anti-bot protection"]
        assert self.solves == []

    @pytest.mark.asyncio
    async def test_solved_session_cookies_are_reused(self, monkeypatch):
        monkeypatch.setattr(config, "INTERACTIVE_CAPTCHA_ENABLED", True)
        solved_evidence = EvidenceExtractor().extract_site_evidence(
            LANDING, "https://example.com", input_url="https://example.com", cookies=tuple(SOLVED_COOKIES))
        self.install_bypass(SolvedSession(cookies=SOLVED_COOKIES, evidence=solved_evidence))
        site = await self.pipeline.collector.probe("https://example.com")

        unblocked = await self.pipeline._check_access(self.report, site)

        assert self.solves == ["https://example.com"]
        assert unblocked.title == "Example Books - Read more"
        assert self.report.health.healthy
        assert self.report.errors == []
        assert self.pipeline.collector.cookies == SOLVED_COOKIES
        assert self.browser.cookies_seen[-1] == SOLVED_COOKIES

    @pytest.mark.asyncio
    async def test_unfinished_bypass(self, monkeypatch):
        monkeypatch.setattr(config, "INTERACTIVE_CAPTCHA_ENABLED", True)
        self.install_bypass(None)
        site = await self.pipeline.collector.probe("https://example.com")

        assert await self.pipeline._check_access(self.report, site) is site
        assert self.report.errors == [
            "https://example.com is blocked by datadome anti-bot protection: interactive bypass did not complete"]
