"""Automatic capture of pages after they finish loading.

Debounces page-load events per page, starts stability monitoring, and after
a short delay runs the render sweep; pages that changed significantly are
captured. Also clears the external script cache periodically.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from ..models.capture import CaptureOutcome
from ..persistence.recent import RecentCapturesLog
from ..persistence.storage import ArtifactStore
from ..queue.rate_limiter import RateLimitedActionQueue
from ..utils.url_rules import is_valid_http_url
from .bridge import ContentScriptBridge
from .config import CaptureSettings, SettingsStore, StaticSettingsStore
from .host import HostCapabilities, HostError, PageController
from .orchestrator import CaptureOrchestrator
from .script_fetcher import ScriptFetcher
from .stability import PageStabilityMonitor, SessionRegistry


logger = logging.getLogger(__name__)


class AutoCaptureScheduler:
    """Turns page lifecycle events into stabilized captures."""

    def __init__(
        self,
        monitor: PageStabilityMonitor,
        orchestrator: CaptureOrchestrator,
        pages: PageController,
        settings_store: SettingsStore,
        script_fetcher: Optional[ScriptFetcher] = None
    ):
        """Initialize the scheduler.

        Args:
            monitor: Stability monitor owning the page sessions
            orchestrator: Orchestrator running the captures
            pages: Page controller used to re-read the URL before capturing
            settings_store: Source of auto-capture settings and timings
            script_fetcher: Script cache cleared periodically
        """
        self.monitor = monitor
        self.orchestrator = orchestrator
        self.pages = pages
        self.settings_store = settings_store
        self.script_fetcher = script_fetcher or orchestrator.script_fetcher
        self._cache_task: Optional[asyncio.Task] = None
        self._is_running = False

        self.stats = {
            'loads_seen': 0,
            'captures_scheduled': 0,
            'captures_triggered': 0,
            'no_change': 0,
            'errors': 0,
            'cache_clears': 0,
        }

    @property
    def registry(self):
        return self.monitor.registry

    async def start(self) -> None:
        """Start the periodic script cache clearing."""
        if self._is_running:
            logger.warning("Auto-capture scheduler already running")
            return

        settings = await self._load_settings()
        self._cache_task = asyncio.create_task(
            self._cache_clear_loop(settings.timings.script_cache_ttl)
        )
        self._is_running = True
        logger.info("Auto-capture scheduler started")

    async def close(self) -> None:
        """Cancel pending captures and the cache clearing task."""
        if self._cache_task:
            self._cache_task.cancel()
            try:
                await self._cache_task
            except asyncio.CancelledError:
                pass
            self._cache_task = None

        for handle in list(self.registry.handles()):
            self.registry.cancel_timer(handle)
        self._is_running = False
        logger.info("Auto-capture scheduler stopped")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator['AutoCaptureScheduler', None]:
        """Context manager for scheduler lifecycle."""
        try:
            await self.start()
            yield self
        finally:
            await self.close()

    async def on_page_loaded(self, handle: Any, url: str) -> bool:
        """Handle a page finishing its load.

        Args:
            handle: Page handle
            url: URL the page loaded

        Returns:
            True if a delayed capture was scheduled
        """
        if not is_valid_http_url(url):
            logger.debug(f"Ignoring load of non-http page {handle}: {url}")
            return False

        settings = await self._load_settings()
        if not settings.auto_capture_enabled:
            logger.debug(f"Auto-capture disabled, ignoring load of {url}")
            return False

        self.stats['loads_seen'] += 1
        self.registry.cancel_timer(handle)

        session = self.registry.get(handle)
        if session is not None and session.url != url:
            logger.info(f"Page {handle} navigated to {url}, resetting its session")
            self.monitor.stop_monitoring(handle)
        elif session is not None:
            # A reload discards the agent and its observer
            logger.debug(f"Page {handle} reloaded, re-arming mutation reporting")
            if not await self.monitor.bridge.start_observing(handle):
                logger.warning(f"Mutation reporting unavailable after reload of {handle}")

        await self.monitor.start_monitoring(handle, url)

        task = asyncio.create_task(self._delayed_capture(handle, settings.timings.capture_delay))
        self.registry.set_timer(handle, task)
        self.stats['captures_scheduled'] += 1
        return True

    async def on_page_closed(self, handle: Any) -> None:
        """Forget a closed page and its pending capture."""
        self.monitor.stop_monitoring(handle)

    async def render_and_capture(self, handle: Any) -> Optional[CaptureOutcome]:
        """Run the render sweep and capture the page if it changed significantly.

        Returns:
            The capture outcome, or None when nothing was captured
        """
        if not await self.monitor.render_page(handle):
            self.stats['no_change'] += 1
            logger.info(f"No significant changes after render in {handle}")
            return None

        try:
            page = await self.pages.get_page(handle)
        except HostError as e:
            logger.warning(f"Page {handle} inaccessible after render, skipping capture: {e}")
            return None

        if not is_valid_http_url(page.url):
            logger.warning(f"Page {handle} left http(s) after render, skipping capture")
            return None

        self.stats['captures_triggered'] += 1
        logger.info(f"Significant changes in {handle}, capturing {page.url}")
        return await self.orchestrator.capture(handle, page.url)

    async def _delayed_capture(self, handle: Any, delay_ms: int) -> Optional[CaptureOutcome]:
        task = asyncio.current_task()
        try:
            await asyncio.sleep(delay_ms / 1000)
            # Past the debounce; closes and reloads no longer cancel this run
            self.registry.clear_timer(handle, task)
            return await self.render_and_capture(handle)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats['errors'] += 1
            logger.error(f"Error during post-load render/capture for {handle}: {e}")
            self.registry.remove(handle)
            return None
        finally:
            self.registry.clear_timer(handle, task)

    async def _cache_clear_loop(self, interval_ms: int) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            self.script_fetcher.clear()
            self.stats['cache_clears'] += 1
            logger.debug("Script cache cleared")

    async def _load_settings(self) -> CaptureSettings:
        try:
            return await self.settings_store.load()
        except ValueError as e:
            logger.warning(f"Invalid settings, using defaults: {e}")
            return CaptureSettings()

    def get_stats(self) -> Dict[str, Any]:
        """Get scheduler statistics."""
        return {
            'is_running': self._is_running,
            'monitored_pages': len(self.registry),
            **self.stats,
        }


# Convenience functions for common use cases

def create_auto_capture(
    host: HostCapabilities,
    store: ArtifactStore,
    settings: Optional[CaptureSettings] = None,
    settings_store: Optional[SettingsStore] = None,
    recent: Optional[RecentCapturesLog] = None,
    screenshot_queue: Optional[RateLimitedActionQueue] = None
) -> AutoCaptureScheduler:
    """Wire bridge, monitor, orchestrator and scheduler from one set of settings.

    Args:
        host: Host capabilities
        store: Durable write backend
        settings: Settings used for timings (loaded from ``settings_store`` by the caller)
        settings_store: Settings source consulted per capture
        recent: Recent-captures log
        screenshot_queue: Shared screenshot queue

    Returns:
        Scheduler exposing ``monitor`` and ``orchestrator``; page events from
        the host's channel are routed to the monitor
    """
    settings = settings or CaptureSettings()
    settings_store = settings_store or StaticSettingsStore(settings)
    timings = settings.timings

    bridge = ContentScriptBridge(
        host.channel,
        host.injector,
        probe_timeout_ms=timings.probe_timeout,
        inject_settle_ms=timings.inject_settle,
        max_attempts=timings.agent_attempts,
        backoff_ms=timings.agent_backoff,
        request_timeout_ms=timings.request_timeout,
    )
    registry = SessionRegistry()
    monitor = PageStabilityMonitor(
        bridge,
        registry,
        pages=host.pages,
        scroll_step_px=timings.scroll_step_px,
        scroll_interval_ms=timings.scroll_interval,
        settle_timeout_ms=timings.settle_timeout,
        dimension_timeout_ms=timings.dimension_timeout,
        fallback_height=timings.fallback_height,
    )
    orchestrator = CaptureOrchestrator(
        host,
        bridge,
        store,
        settings_store=settings_store,
        screenshot_queue=screenshot_queue or RateLimitedActionQueue(
            min_delay_ms=timings.screenshot_min_delay
        ),
        recent=recent,
        registry=registry,
    )
    host.channel.set_event_sink(monitor.handle_page_event)

    return AutoCaptureScheduler(monitor, orchestrator, host.pages, settings_store)
