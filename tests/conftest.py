"""
Shared Test Fixtures

Fakes for the browser adapter and the external collaborators, so probing,
repair and pipeline code can be exercised against canned HTML and JSON.
"""
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest
from bs4 import BeautifulSoup

from components.pattern_analyzer.base_analyzer import matches, safe_select
from core.browser import BrowserAdapter, CapturedExchange, NetworkCapture, PageElement, PageHandle
from core.collaborators import AuthoringCollaborator, ExecutionCollaborator, FixCollaborator
from core.exceptions import BrowserError, FixerError, NavigationError
from core.models import EngineResult, NotFound

BLANK_PAGE = "<html><head></head><body></body></html>"


class FakeSite:
    """
    Canned responses keyed by URL.

    ``submissions`` maps a page URL to where pressing Enter navigates,
    ``typing_exchanges`` holds JSON traffic emitted when typing on a page,
    ``unclickable`` lists selectors whose elements fail to click and
    ``unreadable`` counts the upcoming content reads that fail per URL.
    """

    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages: Dict[str, str] = dict(pages or {})
        self.statuses: Dict[str, int] = {}
        self.exchanges: Dict[str, List[CapturedExchange]] = {}
        self.failures: set = set()
        self.visits: List[str] = []
        self.submissions: Dict[str, str] = {}
        self.typing_exchanges: Dict[str, List[CapturedExchange]] = {}
        self.unclickable: List[str] = []
        self.unreadable: Dict[str, int] = {}


class FakeElement(PageElement):
    def __init__(self, tag, page: Optional['FakePage'] = None):
        self.tag = tag
        self.page = page
        self.clicks = 0
        self.typed: List[str] = []

    async def text(self) -> str:
        return self.tag.get_text(" ", strip=True)

    async def attribute(self, name: str) -> Optional[str]:
        return self.tag.get(name)

    async def is_visible(self) -> bool:
        return True

    async def click(self, click_count: int = 1) -> None:
        if self.page is not None and any(matches(self.tag, s) for s in self.page.site.unclickable):
            raise BrowserError("click failed: Timeout 5000ms exceeded: element intercepts pointer events")
        self.clicks += 1

    async def type(self, text: str, delay: int = 0) -> None:
        self.typed.append(text)
        if self.page is not None:
            self.page.emit_typing_traffic()


class FakePage(PageHandle):
    def __init__(self, site: FakeSite):
        self.site = site
        self._url = "about:blank"
        self._capture: Optional[NetworkCapture] = None
        self._on_response = None
        self._cookies: List[Dict[str, Any]] = []
        self._typed_on: set = set()

    @property
    def url(self) -> str:
        return self._url

    async def navigate(self, url, wait_until="domcontentloaded", timeout=None):
        self.site.visits.append(url)
        if url in self.site.failures:
            raise NavigationError(url, "net::ERR_CONNECTION_REFUSED")
        self._url = url
        self._emit(self.site.exchanges.get(url, []))
        return self.site.statuses.get(url, 200)

    def _emit(self, exchanges):
        for exchange in exchanges:
            if self._capture is not None:
                self._capture.exchanges.append(exchange)
            if self._on_response is not None:
                self._on_response(exchange)

    def emit_typing_traffic(self):
        if self._capture is not None and self._url not in self._typed_on:
            self._typed_on.add(self._url)
            self._emit(self.site.typing_exchanges.get(self._url, []))

    def _soup(self) -> BeautifulSoup:
        return BeautifulSoup(self.site.pages.get(self._url, BLANK_PAGE), 'lxml')

    async def query(self, selector):
        found = safe_select(self._soup(), selector)
        return FakeElement(found[0], self) if found else NotFound(selector)

    async def query_all(self, selector):
        return [FakeElement(tag, self) for tag in safe_select(self._soup(), selector)]

    async def evaluate(self, expression, arg=None):
        return None

    async def content(self) -> str:
        if self.site.unreadable.get(self._url, 0) > 0:
            self.site.unreadable[self._url] -= 1
            raise BrowserError("content failed: Execution context was destroyed")
        return self.site.pages.get(self._url, BLANK_PAGE)

    async def title(self) -> str:
        soup = self._soup()
        return soup.title.get_text() if soup.title else ""

    async def press_and_wait_for_navigation(self, key, timeout):
        target = self.site.submissions.get(self._url)
        if key != "Enter" or target is None:
            return False
        await self.navigate(target)
        return True

    async def wait(self, ms):
        pass

    @asynccontextmanager
    async def intercept(self, on_request=None, on_response=None):
        self._capture = NetworkCapture()
        self._on_response = on_response
        try:
            yield self._capture
        finally:
            self._capture = None
            self._on_response = None

    async def cookies(self):
        return list(self._cookies)

    async def set_cookies(self, cookies):
        self._cookies.extend(cookies)


class FakeBrowser(BrowserAdapter):
    """Counts pages so tests can check every page gets closed."""

    def __init__(self, site: Optional[FakeSite] = None):
        self.site = site or FakeSite()
        self._initialized = False
        self.opened = 0
        self.closed = 0
        self.cookies_seen: List[Any] = []
        self.shutdowns = 0

    @property
    def name(self) -> str:
        return "fake_browser"

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        self._initialized = False
        self.shutdowns += 1

    @asynccontextmanager
    async def new_page(self, cookies=None, headers=None):
        self.opened += 1
        self.cookies_seen.append(list(cookies or []))
        page = FakePage(self.site)
        if cookies:
            await page.set_cookies(cookies)
        try:
            yield page
        finally:
            self.closed += 1


class ScriptedExecutor(ExecutionCollaborator):
    """Returns queued EngineResults; the last one repeats once the queue runs dry."""

    def __init__(self, *results: EngineResult, by_input: Optional[Dict[str, EngineResult]] = None):
        self.results = list(results)
        self.by_input = by_input or {}
        self.calls: List[tuple] = []

    async def run(self, recipe_path, step_type, user_input):
        self.calls.append((recipe_path, step_type, user_input))
        if user_input in self.by_input:
            return self.by_input[user_input]
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class ScriptedFixer(FixCollaborator):
    """Hands out queued responses; an exception instance in the queue is raised."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.started = 0
        self.continued = 0
        self.closed_sessions: List[Any] = []
        self.contexts: List[Dict[str, Any]] = []

    def _next(self, context):
        self.contexts.append(context)
        if not self.responses:
            raise FixerError("no response")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def start_fix(self, session, context):
        self.started += 1
        return self._next(context)

    async def continue_fix(self, session, context):
        self.continued += 1
        return self._next(context)

    async def close_session(self, session):
        await super().close_session(session)
        self.closed_sessions.append(session)


class ScriptedAuthor(AuthoringCollaborator):
    def __init__(self, autocomplete_steps=None, url_steps=None, queries=()):
        self.steps = {'autocomplete': autocomplete_steps or [], 'url': url_steps or []}
        self.queries = list(queries)
        self.requests = []

    async def author_steps(self, request):
        self.requests.append(request)
        return json.loads(json.dumps(self.steps[request.step_type]))

    async def suggest_queries(self, site):
        return self.queries


def list_results(prefix: str, count: int = 10, host: str = "example.com") -> List[Dict[str, str]]:
    return [
        {
            'TITLE': f"{prefix} {i}",
            'URL': f"https://{host}/item/{prefix.replace(' ', '-')}-{i}",
            'COVER': f"https://{host}/img/{i}.jpg",
            'SUBTITLE': str(2000 + i),
        }
        for i in range(1, count + 1)
    ]


@pytest.fixture
def site():
    return FakeSite()


@pytest.fixture
def browser(site):
    return FakeBrowser(site)


@pytest.fixture
def recipes_dir(tmp_path):
    return str(tmp_path / "recipes")


@pytest.fixture
def make_results():
    return list_results


@pytest.fixture
def make_executor():
    return ScriptedExecutor


@pytest.fixture
def make_fixer():
    return ScriptedFixer


@pytest.fixture
def make_author():
    return ScriptedAuthor
