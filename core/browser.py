"""
Browser automation adapter.

The probing components only depend on the narrow capability surface defined
here (navigate, query, evaluate, intercept, cookies). ``PlaywrightBrowser``
is the concrete implementation; tests substitute fakes with the same shape.
"""

import asyncio
import functools
import logging
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Union

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Request, Response
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright_stealth import stealth_async

import config
from core.exceptions import BrowserError, NavigationError
from core.models import NotFound
from core.service_interface import AsyncService
from utils.retry_utils import with_browser_retry

logger = logging.getLogger("BrowserAdapter")

JSON_CONTENT_TYPES = ("application/json", "text/json", "+json")


@dataclass
class CapturedRequest:
    url: str
    method: str
    headers: Dict[str, str] = field(default_factory=dict)
    post_data: Optional[str] = None
    resource_type: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class CapturedExchange:
    """A request paired with its decoded JSON response."""
    url: str
    method: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    post_data: Optional[str] = None
    resource_type: str = ""
    content_type: str = ""
    json: Any = None


@dataclass
class NetworkCapture:
    """Everything observed while interception was active."""
    requests: List[CapturedRequest] = field(default_factory=list)
    exchanges: List[CapturedExchange] = field(default_factory=list)


class PageElement(ABC):
    @abstractmethod
    async def text(self) -> str: ...

    @abstractmethod
    async def attribute(self, name: str) -> Optional[str]: ...

    @abstractmethod
    async def is_visible(self) -> bool: ...

    @abstractmethod
    async def click(self, click_count: int = 1) -> None: ...

    @abstractmethod
    async def type(self, text: str, delay: int = 0) -> None: ...


class PageHandle(ABC):
    """One open page. Obtained only through ``BrowserAdapter.new_page``."""

    @property
    @abstractmethod
    def url(self) -> str: ...

    @abstractmethod
    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout: Optional[int] = None) -> Optional[int]:
        """Navigate and return the HTTP status, raising NavigationError on failure."""

    @abstractmethod
    async def query(self, selector: str) -> Union[PageElement, NotFound]: ...

    @abstractmethod
    async def query_all(self, selector: str) -> List[PageElement]: ...

    @abstractmethod
    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    @abstractmethod
    async def content(self) -> str: ...

    @abstractmethod
    async def title(self) -> str: ...

    @abstractmethod
    async def press_and_wait_for_navigation(self, key: str, timeout: int) -> bool:
        """Press a key; True when it triggered a navigation within ``timeout`` ms."""

    @abstractmethod
    async def wait(self, ms: int) -> None: ...

    @abstractmethod
    def intercept(self, on_request: Optional[Callable[[CapturedRequest], None]] = None,
                  on_response: Optional[Callable[[CapturedExchange], None]] = None):
        """Async context manager yielding a NetworkCapture; hooks removed on exit."""

    @abstractmethod
    async def cookies(self) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def set_cookies(self, cookies: Sequence[Dict[str, Any]]) -> None: ...


class BrowserAdapter(AsyncService):
    """Interchangeable browser backend (headless or headed)."""

    headless: bool = True

    @abstractmethod
    def new_page(self, cookies: Optional[Sequence[Dict[str, Any]]] = None,
                 headers: Optional[Dict[str, str]] = None):
        """Async context manager yielding a PageHandle that is always closed."""


def is_json_content_type(content_type: str) -> bool:
    content_type = (content_type or "").lower()
    return any(marker in content_type for marker in JSON_CONTENT_TYPES)


def wraps_playwright_errors(func):
    """Re-raise playwright failures from an adapter method as BrowserError."""
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except PlaywrightError as e:
            raise BrowserError(f"{func.__name__} failed: {e}") from e
    return wrapper


class PlaywrightElement(PageElement):
    def __init__(self, handle):
        self._handle = handle

    @wraps_playwright_errors
    async def text(self) -> str:
        return (await self._handle.text_content() or "").strip()

    @wraps_playwright_errors
    async def attribute(self, name: str) -> Optional[str]:
        return await self._handle.get_attribute(name)

    @wraps_playwright_errors
    async def is_visible(self) -> bool:
        return await self._handle.is_visible()

    @wraps_playwright_errors
    async def click(self, click_count: int = 1) -> None:
        await self._handle.click(click_count=click_count, timeout=config.SELECTOR_TIMEOUT_MS)

    @wraps_playwright_errors
    async def type(self, text: str, delay: int = 0) -> None:
        await self._handle.type(text, delay=delay)


class PlaywrightPage(PageHandle):
    def __init__(self, page: Page, context: BrowserContext):
        self._page = page
        self._context = context

    @property
    def url(self) -> str:
        return self._page.url

    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout: Optional[int] = None) -> Optional[int]:
        timeout = timeout or config.NAVIGATION_TIMEOUT_MS
        try:
            response = await self._page.goto(url, wait_until=wait_until, timeout=timeout)
        except PlaywrightTimeoutError as e:
            raise NavigationError(url, f"timeout after {timeout}ms") from e
        except PlaywrightError as e:
            raise NavigationError(url, str(e)) from e
        return response.status if response else None

    async def query(self, selector: str) -> Union[PageElement, NotFound]:
        try:
            handle = await self._page.query_selector(selector)
        except PlaywrightError as e:
            raise BrowserError(f"Selector {selector!r} could not be evaluated: {e}") from e
        if handle is None:
            return NotFound(selector)
        return PlaywrightElement(handle)

    async def query_all(self, selector: str) -> List[PageElement]:
        try:
            handles = await self._page.query_selector_all(selector)
        except PlaywrightError as e:
            raise BrowserError(f"Selector {selector!r} could not be evaluated: {e}") from e
        return [PlaywrightElement(h) for h in handles]

    @wraps_playwright_errors
    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        return await self._page.evaluate(expression, arg)

    @wraps_playwright_errors
    async def content(self) -> str:
        return await self._page.content()

    @wraps_playwright_errors
    async def title(self) -> str:
        return await self._page.title()

    async def press_and_wait_for_navigation(self, key: str, timeout: int) -> bool:
        try:
            async with self._page.expect_navigation(timeout=timeout):
                await self._page.keyboard.press(key)
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            raise BrowserError(f"Pressing {key} failed: {e}") from e
        return True

    async def wait(self, ms: int) -> None:
        await asyncio.sleep(ms / 1000)

    @asynccontextmanager
    async def intercept(self, on_request=None, on_response=None) -> AsyncIterator[NetworkCapture]:
        capture = NetworkCapture()

        def handle_request(request: Request):
            captured = CapturedRequest(
                url=request.url,
                method=request.method,
                headers=dict(request.headers),
                post_data=request.post_data,
                resource_type=request.resource_type,
            )
            capture.requests.append(captured)
            if on_request:
                on_request(captured)

        async def handle_response(response: Response):
            content_type = response.headers.get("content-type", "")
            if response.status != 200 or not is_json_content_type(content_type):
                return
            request = response.request
            try:
                payload = await response.json()
            except (PlaywrightError, ValueError) as e:
                logger.debug(f"Could not decode JSON from {response.url}: {e}")
                return
            exchange = CapturedExchange(
                url=response.url,
                method=request.method,
                status=response.status,
                headers=dict(request.headers),
                post_data=request.post_data,
                resource_type=request.resource_type,
                content_type=content_type,
                json=payload,
            )
            capture.exchanges.append(exchange)
            if on_response:
                on_response(exchange)

        self._page.on("request", handle_request)
        self._page.on("response", handle_response)
        try:
            yield capture
        finally:
            self._page.remove_listener("request", handle_request)
            self._page.remove_listener("response", handle_response)

    @wraps_playwright_errors
    async def cookies(self) -> List[Dict[str, Any]]:
        return list(await self._context.cookies())

    @wraps_playwright_errors
    async def set_cookies(self, cookies: Sequence[Dict[str, Any]]) -> None:
        if cookies:
            await self._context.add_cookies(list(cookies))


class PlaywrightBrowser(BrowserAdapter):
    """Chromium through playwright, with stealth on headless pages."""

    def __init__(self, headless: Optional[bool] = None, use_stealth: Optional[bool] = None,
                 user_agent: Optional[str] = None):
        self.headless = config.HEADLESS if headless is None else headless
        self.use_stealth = config.USE_STEALTH if use_stealth is None else use_stealth
        self.user_agent = user_agent or config.DEFAULT_USER_AGENT
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._initialized = False

    @property
    def name(self) -> str:
        return "playwright_headless" if self.headless else "playwright_headed"

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._launch()
        self._initialized = True
        logger.info(f"Browser launched (headless={self.headless})")

    @with_browser_retry(max_attempts=2)
    async def _launch(self) -> Browser:
        return await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--disable-blink-features=AutomationControlled", "--no-sandbox"],
        )

    async def shutdown(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._initialized = False

    @asynccontextmanager
    async def new_page(self, cookies=None, headers=None) -> AsyncIterator[PlaywrightPage]:
        await self.ensure_started()

        extra_headers = {k: v for k, v in (headers or config.DEFAULT_HEADERS).items() if k.lower() != "user-agent"}
        context = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": config.VIEWPORT_WIDTH, "height": config.VIEWPORT_HEIGHT},
            extra_http_headers=extra_headers,
        )
        try:
            if cookies:
                await context.add_cookies(list(cookies))
            page = await context.new_page()
            page.set_default_timeout(config.SELECTOR_TIMEOUT_MS)
            if self.headless and self.use_stealth:
                await stealth_async(page)
            yield PlaywrightPage(page, context)
        finally:
            await context.close()
