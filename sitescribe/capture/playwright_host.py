"""Host capabilities backed by a Playwright browser.

This module provides the PlaywrightHost class that launches a browser, keeps
track of its pages by handle, and implements page control, agent injection,
messaging, screenshots and MHTML snapshots on top of Playwright.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from ..utils.url_rules import is_restricted_url
from .agent_script import AGENT_SCRIPT, DISPATCH_EXPRESSION, EVENT_BINDING, IS_INJECTED_EXPRESSION
from .config import BrowserSettings
from .host import (
    ChannelClosedError,
    DocumentCaptureError,
    DocumentSnapshotter,
    InjectionError,
    MessageChannel,
    NoResponseError,
    PageAccessDeniedError,
    PageController,
    PageInfo,
    PageNotFoundError,
    ScreenshotError,
    ScreenshotProvider,
    ScriptInjector,
)


logger = logging.getLogger(__name__)


PageHook = Callable[[str, str], Awaitable[None]]


class PlaywrightHost(
    PageController,
    ScriptInjector,
    MessageChannel,
    ScreenshotProvider,
    DocumentSnapshotter
):
    """Browser host implementing every capture capability."""

    def __init__(self, config: Optional[BrowserSettings] = None):
        """Initialize the host.

        Args:
            config: Browser settings (defaults when omitted)
        """
        MessageChannel.__init__(self)
        self.config = config or BrowserSettings()
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._pages: Dict[str, Page] = {}
        self._page_count = 0
        self._active: Optional[str] = None
        self._load_hooks: List[PageHook] = []
        self._close_hooks: List[PageHook] = []

    async def start(self) -> None:
        """Start Playwright, launch the browser and open a context."""
        if self.playwright is not None:
            logger.warning("Playwright host already started")
            return

        logger.info(f"Starting browser host with engine: {self.config.engine}")
        try:
            self.playwright = await async_playwright().start()
            browser_type = getattr(self.playwright, self.config.engine)
            self.browser = await browser_type.launch(headless=self.config.headless)

            context_options: Dict[str, Any] = {
                'viewport': {'width': self.config.window_width, 'height': self.config.window_height},
                'locale': self.config.locale,
                'ignore_https_errors': self.config.ignore_https_errors,
            }
            if self.config.user_agent:
                context_options['user_agent'] = self.config.user_agent

            self.context = await self.browser.new_context(**context_options)
            self.context.set_default_navigation_timeout(self.config.navigation_timeout_ms)
            await self.context.expose_binding(EVENT_BINDING, self._on_page_event)
            self.context.on("page", self._register_page)

            logger.info(f"Browser launched successfully (headless={self.config.headless})")
        except Exception as e:
            logger.error(f"Failed to start browser: {e}")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Close the browser and stop Playwright."""
        logger.info("Stopping browser host")
        try:
            if self.context:
                await self.context.close()
                self.context = None
            if self.browser:
                await self.browser.close()
                self.browser = None
            if self.playwright:
                await self.playwright.stop()
                self.playwright = None
            self._pages.clear()
            self._active = None
        except Exception as e:
            logger.error(f"Error stopping browser host: {e}")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator['PlaywrightHost', None]:
        """Context manager for host lifecycle."""
        try:
            await self.start()
            yield self
        finally:
            await self.stop()

    def add_load_hook(self, hook: PageHook) -> None:
        """Call ``hook(handle, url)`` whenever a page finishes loading."""
        self._load_hooks.append(hook)

    def add_close_hook(self, hook: PageHook) -> None:
        """Call ``hook(handle, url)`` whenever a page closes."""
        self._close_hooks.append(hook)

    async def open_page(self, url: Optional[str] = None) -> str:
        """Open a new page, optionally navigating it.

        Returns:
            Handle of the new page
        """
        if self.context is None:
            raise RuntimeError("Playwright host not started. Call start() first.")
        page = await self.context.new_page()
        handle = self._register_page(page)
        if url:
            await self.navigate(handle, url)
        return handle

    def _register_page(self, page: Page) -> str:
        for handle, known in self._pages.items():
            if known is page:
                return handle

        self._page_count += 1
        handle = f"page-{self._page_count}"
        self._pages[handle] = page
        self._active = handle

        async def on_load(_page: Page) -> None:
            await self._run_hooks(self._load_hooks, handle, page.url)

        async def on_close(_page: Page) -> None:
            self._pages.pop(handle, None)
            if self._active == handle:
                self._active = next(reversed(list(self._pages)), None)
            await self._run_hooks(self._close_hooks, handle, page.url)

        page.on("load", on_load)
        page.on("close", on_close)
        logger.debug(f"Registered {handle}")
        return handle

    async def _run_hooks(self, hooks: List[PageHook], handle: str, url: str) -> None:
        for hook in hooks:
            try:
                await hook(handle, url)
            except Exception as e:
                logger.error(f"Page hook failed for {handle}: {e}")

    async def _on_page_event(self, source: Dict[str, Any], event: Any) -> None:
        handle = self._handle_for(source.get("page"))
        if handle is None or not isinstance(event, dict):
            return
        await self.emit_event(handle, event)

    def _handle_for(self, page: Optional[Page]) -> Optional[str]:
        for handle, known in self._pages.items():
            if known is page:
                return handle
        return None

    def _page(self, handle: Any) -> Page:
        page = self._pages.get(handle)
        if page is None or page.is_closed():
            raise PageNotFoundError(f"No live page for handle {handle}")
        return page

    # Page control

    async def get_page(self, handle: Any) -> PageInfo:
        page = self._page(handle)
        if is_restricted_url(page.url):
            raise PageAccessDeniedError(f"Restricted page: {page.url}")
        try:
            title = await page.title()
            status = await page.evaluate("document.readyState")
        except PlaywrightError as e:
            raise PageNotFoundError(f"Page {handle} unavailable: {e}") from e
        return PageInfo(handle=handle, url=page.url, title=title, status=status)

    async def navigate(self, handle: Any, url: str) -> None:
        page = self._page(handle)
        self._active = handle
        await page.goto(url, wait_until="load")

    async def get_active_page(self) -> Optional[Any]:
        if self._active is not None and self._active in self._pages:
            return self._active
        return None

    # Agent injection and messaging

    async def is_injected(self, handle: Any) -> bool:
        page = self._page(handle)
        try:
            return bool(await page.evaluate(IS_INJECTED_EXPRESSION))
        except PlaywrightError as e:
            raise ChannelClosedError(f"Cannot inspect {handle}: {e}") from e

    async def inject(self, handle: Any) -> None:
        page = self._page(handle)
        try:
            await page.evaluate(AGENT_SCRIPT)
        except PlaywrightError as e:
            raise InjectionError(f"Agent injection failed for {handle}: {e}") from e

    async def send(self, handle: Any, message: Dict[str, Any]) -> Any:
        try:
            page = self._page(handle)
        except PageNotFoundError as e:
            raise ChannelClosedError(str(e)) from e

        try:
            reply = await page.evaluate(DISPATCH_EXPRESSION, message)
        except PlaywrightError as e:
            if page.is_closed():
                raise ChannelClosedError(f"Page {handle} closed: {e}") from e
            raise NoResponseError(f"No response from {handle}: {e}") from e

        if isinstance(reply, dict) and not reply.get("ok", True):
            error = reply.get("error") or {}
            if error.get("name") == "NoAgent":
                raise NoResponseError(f"No agent listening in {handle}")
        return reply

    # Screenshots and snapshots

    async def capture_visible(self, handle: Optional[Any] = None) -> bytes:
        if handle is None:
            handle = await self.get_active_page()
        try:
            page = self._page(handle)
            return await page.screenshot(type="png")
        except (PlaywrightError, PageNotFoundError) as e:
            raise ScreenshotError(f"Visible screenshot failed for {handle}: {e}") from e

    async def capture_full_page(self, handle: Any) -> bytes:
        try:
            page = self._page(handle)
            return await page.screenshot(type="png", full_page=True)
        except (PlaywrightError, PageNotFoundError) as e:
            raise ScreenshotError(f"Full-page screenshot failed for {handle}: {e}") from e

    async def capture_mhtml(self, handle: Any) -> str:
        if self.config.engine != "chromium" or self.context is None:
            raise DocumentCaptureError("MHTML snapshots require a Chromium browser")
        try:
            page = self._page(handle)
            cdp = await self.context.new_cdp_session(page)
            try:
                snapshot = await cdp.send("Page.captureSnapshot", {"format": "mhtml"})
            finally:
                await cdp.detach()
        except (PlaywrightError, PageNotFoundError) as e:
            raise DocumentCaptureError(f"MHTML capture failed for {handle}: {e}") from e
        return snapshot["data"]

    @property
    def is_running(self) -> bool:
        return self.browser is not None and self.browser.is_connected()

    @property
    def page_count(self) -> int:
        return len(self._pages)

    def __repr__(self) -> str:
        return f"PlaywrightHost(engine={self.config.engine}, running={self.is_running}, pages={self.page_count})"
