"""Host capabilities the capture pipeline depends on.

The pipeline never talks to a browser directly. Everything it needs from the
host (page control, agent injection, messaging, screenshots, single-file
document snapshots and user notifications) is expressed here as an abstract
capability, together with the errors those capabilities may raise.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..errors import (
    ChannelClosedError,
    DocumentCaptureError,
    HostError,
    InjectionError,
    NoResponseError,
    PageAccessDeniedError,
    PageNotFoundError,
    RateLimitedError,
    ScreenshotError,
    StorageWriteError,
)


logger = logging.getLogger(__name__)


EventSink = Callable[[Any, Dict[str, Any]], Awaitable[None]]


@dataclass
class PageInfo:
    """Live page state as reported by the host."""
    handle: Any
    url: str
    title: Optional[str] = None
    status: str = "complete"


class PageController(ABC):
    """Tab/page control capability."""

    @abstractmethod
    async def get_page(self, handle: Any) -> PageInfo:
        """Resolve a handle to its live page.

        Raises:
            PageNotFoundError: If the page is gone
            PageAccessDeniedError: If the page is restricted
        """

    @abstractmethod
    async def navigate(self, handle: Any, url: str) -> None:
        """Navigate a page to a new URL."""

    @abstractmethod
    async def get_active_page(self) -> Optional[Any]:
        """Handle of the currently active page, if any."""


class ScriptInjector(ABC):
    """Injects the in-page agent."""

    @abstractmethod
    async def is_injected(self, handle: Any) -> bool:
        """Whether the agent already marked itself as present in the page."""

    @abstractmethod
    async def inject(self, handle: Any) -> None:
        """Inject the agent script.

        Raises:
            InjectionError: If the script could not be evaluated
        """


class MessageChannel(ABC):
    """Request/response channel to the in-page agent plus its event stream."""

    def __init__(self):
        self._event_sink: Optional[EventSink] = None

    @abstractmethod
    async def send(self, handle: Any, message: Dict[str, Any]) -> Any:
        """Send a JSON-serializable message and return the raw reply.

        Raises:
            ChannelClosedError: If the page or channel is gone
            NoResponseError: If nothing in the page answered
        """

    def set_event_sink(self, sink: Optional[EventSink]) -> None:
        """Register the coroutine receiving ``(handle, event)`` from pages."""
        self._event_sink = sink

    async def emit_event(self, handle: Any, event: Dict[str, Any]) -> None:
        """Forward a page event to the registered sink."""
        if self._event_sink is None:
            logger.debug(f"Dropping page event without sink: {event.get('action')}")
            return
        try:
            await self._event_sink(handle, event)
        except Exception as e:
            logger.warning(f"Page event handler failed for {handle}: {e}")


class ScreenshotProvider(ABC):
    """Screenshot capability; the host rate-limits it globally."""

    @abstractmethod
    async def capture_visible(self, handle: Optional[Any] = None) -> bytes:
        """PNG of the visible viewport of the given (or active) page."""

    @abstractmethod
    async def capture_full_page(self, handle: Any) -> bytes:
        """PNG of the whole scrollable document."""


class DocumentSnapshotter(ABC):
    """Single-file (MHTML) snapshot capability."""

    @abstractmethod
    async def capture_mhtml(self, handle: Any) -> Union[bytes, str]:
        """Complete single-file snapshot of the page.

        Raises:
            DocumentCaptureError: If the snapshot failed
        """


class Notifier(ABC):
    """User-visible notification capability."""

    @abstractmethod
    async def notify(self, title: str, message: str) -> None:
        pass


class LoggingNotifier(Notifier):
    """Notifier that reports through the log when no UI is available."""

    def __init__(self):
        self.sent = []

    async def notify(self, title: str, message: str) -> None:
        self.sent.append((title, message))
        logger.warning(f"{title}: {message}")


@dataclass
class HostCapabilities:
    """The set of capabilities one capture pipeline runs against."""
    pages: PageController
    injector: ScriptInjector
    channel: MessageChannel
    screenshots: ScreenshotProvider
    documents: DocumentSnapshotter
    notifier: Notifier

    @classmethod
    def from_host(cls, host: Any, notifier: Optional[Notifier] = None) -> "HostCapabilities":
        """Use one object implementing every capability."""
        return cls(
            pages=host,
            injector=host,
            channel=host,
            screenshots=host,
            documents=host,
            notifier=notifier or LoggingNotifier(),
        )


__all__ = [
    "ChannelClosedError",
    "DocumentCaptureError",
    "DocumentSnapshotter",
    "EventSink",
    "HostCapabilities",
    "HostError",
    "InjectionError",
    "LoggingNotifier",
    "MessageChannel",
    "NoResponseError",
    "Notifier",
    "PageAccessDeniedError",
    "PageController",
    "PageInfo",
    "PageNotFoundError",
    "RateLimitedError",
    "ScreenshotError",
    "ScreenshotProvider",
    "ScriptInjector",
    "StorageWriteError",
]
