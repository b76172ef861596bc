"""Page stability monitoring.

Tracks per-page mutation and scroll state reported by the in-page agent and
decides, through a scroll-driven render sweep followed by a settle window,
whether a page changed significantly enough to be captured.
"""

import asyncio
import logging
from typing import Any, Dict, Iterator, Optional

from ..models.capture import PageSession
from .bridge import AgentError, ContentScriptBridge
from .host import HostError, PageController


logger = logging.getLogger(__name__)


SIGNIFICANT_EVENTS = frozenset({"contentChanged", "pageHeightChanged"})


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class SessionRegistry:
    """Page sessions and pending capture timers, keyed by page handle.

    Each key is written only by the monitor and orchestrator working on that
    page, so no locking is needed on a single event loop.
    """

    def __init__(self):
        self._sessions: Dict[Any, PageSession] = {}
        self._timers: Dict[Any, asyncio.Task] = {}

    def get(self, handle: Any) -> Optional[PageSession]:
        return self._sessions.get(handle)

    def create(self, handle: Any, url: str) -> PageSession:
        session = PageSession(page_handle=handle, url=url)
        self._sessions[handle] = session
        return session

    def remove(self, handle: Any) -> Optional[PageSession]:
        """Drop a page's session and cancel its pending timer."""
        self.cancel_timer(handle)
        return self._sessions.pop(handle, None)

    def set_timer(self, handle: Any, task: asyncio.Task) -> None:
        """Track a pending capture task, cancelling any previous one."""
        self.cancel_timer(handle)
        self._timers[handle] = task

    def cancel_timer(self, handle: Any) -> bool:
        task = self._timers.pop(handle, None)
        if task is None:
            return False
        if not task.done() and task is not _current_task():
            task.cancel()
        return True

    def clear_timer(self, handle: Any, task: asyncio.Task) -> None:
        """Forget a timer once it fired, unless it was replaced meanwhile."""
        if self._timers.get(handle) is task:
            del self._timers[handle]

    def has_timer(self, handle: Any) -> bool:
        return handle in self._timers

    def handles(self) -> Iterator[Any]:
        return iter(list(self._sessions))

    def clear(self) -> None:
        for handle in list(self._timers):
            self.cancel_timer(handle)
        self._sessions.clear()

    def __contains__(self, handle: Any) -> bool:
        return handle in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class PageStabilityMonitor:
    """Decides when a monitored page has stopped changing."""

    def __init__(
        self,
        bridge: ContentScriptBridge,
        registry: Optional[SessionRegistry] = None,
        pages: Optional[PageController] = None,
        scroll_step_px: int = 200,
        scroll_interval_ms: int = 500,
        settle_timeout_ms: int = 5000,
        dimension_timeout_ms: int = 5000,
        fallback_height: int = 5000
    ):
        """Initialize the monitor.

        Args:
            bridge: Bridge to the in-page agent
            registry: Shared session registry
            pages: Page controller used to check the page is loaded before a sweep
            scroll_step_px: Pixels per scroll step
            scroll_interval_ms: Delay after each scroll step
            settle_timeout_ms: Quiet period after reaching the bottom
            dimension_timeout_ms: Timeout for the page height request
            fallback_height: Height swept when dimensions are unavailable
        """
        self.bridge = bridge
        self.registry = registry if registry is not None else SessionRegistry()
        self.pages = pages
        self.scroll_step_px = scroll_step_px
        self.scroll_interval_ms = scroll_interval_ms
        self.settle_timeout_ms = settle_timeout_ms
        self.dimension_timeout_ms = dimension_timeout_ms
        self.fallback_height = fallback_height

        self._stats = {
            "sweeps": 0,
            "skipped_sweeps": 0,
            "significant_changes": 0,
            "scroll_failures": 0,
            "fallback_heights": 0,
        }

    async def start_monitoring(self, handle: Any, url: str) -> PageSession:
        """Start tracking a page; existing sessions are returned untouched.

        Args:
            handle: Page handle
            url: Page URL

        Returns:
            The page's session
        """
        session = self.registry.get(handle)
        if session is not None:
            logger.debug(f"Already monitoring {handle}")
            return session

        logger.info(f"Starting monitoring for {handle}: {url}")
        session = self.registry.create(handle, url)

        if not await self.bridge.start_observing(handle):
            logger.warning(f"Mutation reporting unavailable for {handle}; sweeps will see no changes")
        return session

    def stop_monitoring(self, handle: Any) -> None:
        if self.registry.remove(handle) is not None:
            logger.info(f"Stopped monitoring {handle}")

    async def handle_page_event(self, handle: Any, event: Dict[str, Any]) -> None:
        """Apply an event reported by a page's agent.

        Args:
            handle: Page handle the event came from
            event: Event message with an ``action`` field
        """
        action = event.get("action")
        session = self.registry.get(handle)

        if session is None:
            if action == "contentReady":
                logger.debug(f"Agent ready in unmonitored page {handle}")
            return

        if action in SIGNIFICANT_EVENTS:
            session.mark_significant_change()
            logger.debug(f"{action} in {handle}: {event.get('height', '')}")
        elif action == "scrollPositionChanged":
            try:
                session.scroll_position = int(event.get("position") or 0)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring malformed scroll position from {handle}")
        elif action == "contentReady":
            logger.debug(f"Agent ready in {handle}")
        else:
            logger.debug(f"Ignoring unknown page event '{action}' from {handle}")

    async def render_page(self, handle: Any) -> bool:
        """Scroll through a page, let it settle, and report significant change.

        A second call while a sweep is running on the same page returns False
        immediately without starting another sweep.

        Args:
            handle: Page handle

        Returns:
            True if a significant change was recorded since the last check
        """
        session = self.registry.get(handle)
        if session is None or session.is_rendering:
            self._stats["skipped_sweeps"] += 1
            logger.debug(f"Page {handle} already rendering or not monitored")
            return False

        session.is_rendering = True
        self._stats["sweeps"] += 1
        try:
            if not await self._page_ready(handle):
                return False

            height = await self._page_height(handle)
            logger.info(f"Rendering {handle}: sweeping {height}px")

            position = 0
            while position < height:
                try:
                    await self.bridge.request(handle, "scrollTo", {"position": position})
                except AgentError as e:
                    self._stats["scroll_failures"] += 1
                    logger.warning(f"Scroll failed at {position} in {handle}: {e}")
                await asyncio.sleep(self.scroll_interval_ms / 1000)
                position += self.scroll_step_px

            logger.debug(f"Waiting {self.settle_timeout_ms}ms for final renders in {handle}")
            await asyncio.sleep(self.settle_timeout_ms / 1000)

            if session.consume_significant_change():
                self._stats["significant_changes"] += 1
                logger.info(f"Significant changes detected in {handle}")
                return True

            logger.info(f"No significant changes in {handle}")
            return False

        except Exception as e:
            logger.error(f"Render sweep failed for {handle}: {e}")
            return False
        finally:
            session.is_rendering = False

    async def _page_ready(self, handle: Any) -> bool:
        if self.pages is not None:
            try:
                page = await self.pages.get_page(handle)
            except HostError as e:
                logger.warning(f"Page {handle} unavailable for rendering: {e}")
                return False
            if page.status != "complete":
                logger.warning(f"Page {handle} not ready for rendering ({page.status})")
                return False

        if not await self.bridge.ensure_agent_ready(handle):
            logger.error(f"Agent unavailable, cannot render {handle}")
            return False
        return True

    async def _page_height(self, handle: Any) -> int:
        try:
            dimensions = await self.bridge.request(
                handle, "getPageDimensions", timeout_ms=self.dimension_timeout_ms
            )
            height = int(dimensions["height"])
        except (AgentError, KeyError, TypeError, ValueError) as e:
            self._stats["fallback_heights"] += 1
            logger.warning(f"Page dimensions unavailable for {handle}, using {self.fallback_height}: {e}")
            return self.fallback_height
        return height

    def get_stats(self) -> Dict[str, Any]:
        """Get monitor statistics."""
        return {
            "monitored_pages": len(self.registry),
            **self._stats,
        }
