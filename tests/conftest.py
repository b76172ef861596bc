"""Pytest configuration and shared fixtures for SiteScribe tests."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import pytest

from sitescribe.capture.bridge import ContentScriptBridge
from sitescribe.capture.config import CaptureSettings, EngineTimings
from sitescribe.capture.host import (
    ChannelClosedError,
    DocumentCaptureError,
    DocumentSnapshotter,
    HostCapabilities,
    InjectionError,
    LoggingNotifier,
    MessageChannel,
    NoResponseError,
    PageAccessDeniedError,
    PageController,
    PageInfo,
    PageNotFoundError,
    ScreenshotError,
    ScreenshotProvider,
    ScriptInjector,
    StorageWriteError,
)
from sitescribe.persistence.storage import ArtifactRef, ArtifactStore


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"

DEFAULT_METADATA = {
    "title": "Example Page",
    "description": "An example page",
    "scripts": [{"type": "inline", "scriptType": "text/javascript", "content": "var a = 1;"}],
    "networkRequests": [{"type": "fetch", "url": "https://example.com/api/items", "method": "GET"}],
    "apiEndpoints": [{"url": "https://example.com/api/items", "method": "GET", "type": "fetch"}],
    "performance": {"loadTime": 120.5, "ttfb": 30.0, "firstContentfulPaint": None, "resourceCount": 4},
    "pageStructure": {"headings": [{"level": 1, "text": "Example Page", "id": None}],
                      "sections": [{"role": "main", "id": None, "className": ""}]},
    "codeSnippets": [{"id": "snippet-0", "language": "python", "code": "print(1)", "context": "Example Page"}],
}


class FakePages(PageController):
    """In-memory page controller."""

    def __init__(self):
        self.pages: Dict[Any, PageInfo] = {}
        self.active: Optional[Any] = None
        self.denied: Set[Any] = set()

    def add(self, handle: Any, url: str, title: Optional[str] = "Example Page", status: str = "complete") -> None:
        self.pages[handle] = PageInfo(handle=handle, url=url, title=title, status=status)
        self.active = handle

    def close(self, handle: Any) -> None:
        self.pages.pop(handle, None)
        if self.active == handle:
            self.active = None

    async def get_page(self, handle: Any) -> PageInfo:
        if handle in self.denied:
            raise PageAccessDeniedError(f"Access to {handle} denied")
        if handle not in self.pages:
            raise PageNotFoundError(f"No page {handle}")
        return self.pages[handle]

    async def navigate(self, handle: Any, url: str) -> None:
        page = await self.get_page(handle)
        page.url = url

    async def get_active_page(self) -> Optional[Any]:
        return self.active


class FakeChannel(MessageChannel):
    """Message channel answering for a scripted in-page agent.

    Pages only answer once an agent was installed in them. Handlers can be
    overridden per action with a value, an exception, or a coroutine function
    receiving the message.
    """

    def __init__(self, pages: FakePages):
        super().__init__()
        self.pages = pages
        self.agents: Set[Any] = set()
        self.handlers: Dict[str, Any] = {}
        self.sent: List[Tuple[Any, Dict[str, Any]]] = []
        self.page_height = 600

    def install(self, handle: Any) -> None:
        self.agents.add(handle)

    def actions(self, action: str) -> List[Dict[str, Any]]:
        return [message for _, message in self.sent if message.get("action") == action]

    async def send(self, handle: Any, message: Dict[str, Any]) -> Any:
        self.sent.append((handle, message))
        if handle not in self.pages.pages:
            raise ChannelClosedError(f"Page {handle} closed")
        if handle not in self.agents:
            raise NoResponseError(f"No agent in {handle}")

        action = message.get("action")
        handler = self.handlers.get(action, self._default_handler(action))
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            result = await handler(message)
        else:
            result = handler
        if isinstance(result, dict) and "ok" in result:
            return result
        return {"ok": True, "result": result}

    def _default_handler(self, action: Optional[str]) -> Any:
        page_url = next(iter(self.pages.pages.values())).url if self.pages.pages else ""
        defaults = {
            "ping": "pong",
            "observe": True,
            "scrollTo": {"success": True},
            "getPageDimensions": {"width": 1200, "height": self.page_height, "viewportHeight": 600},
            "getContent": {"content": "# Example Page\n\nHello world", "metadata": dict(DEFAULT_METADATA)},
            "getHTML": "<html><body><h1>Example Page</h1></body></html>",
            "getText": "Example Page\nHello world",
            "getReadableContent": f"# Example Page\n\nHello world from {page_url}",
        }
        if action not in defaults:
            return {"ok": False, "error": {"name": "UnknownAction", "message": f"Unknown action: {action}"}}
        return defaults[action]


class FakeInjector(ScriptInjector):
    """Injector that installs the agent into the fake channel."""

    def __init__(self, channel: FakeChannel, installs: bool = True):
        self.channel = channel
        self.installs = installs
        self.flagged: Set[Any] = set()
        self.inject_calls: List[Any] = []
        self.fail_with: Optional[Exception] = None

    async def is_injected(self, handle: Any) -> bool:
        return handle in self.flagged

    async def inject(self, handle: Any) -> None:
        self.inject_calls.append(handle)
        if self.fail_with is not None:
            raise self.fail_with
        if self.installs:
            self.channel.install(handle)
            self.flagged.add(handle)


class FakeScreenshots(ScreenshotProvider):
    """Screenshot provider recording when each capture ran."""

    def __init__(self):
        self.calls: List[Tuple[str, Any, float]] = []
        self.fail_visible: Optional[Exception] = None
        self.fail_full: Optional[Exception] = None

    async def capture_visible(self, handle: Optional[Any] = None) -> bytes:
        self.calls.append(("visible", handle, asyncio.get_running_loop().time()))
        if self.fail_visible is not None:
            raise self.fail_visible
        return PNG_BYTES

    async def capture_full_page(self, handle: Any) -> bytes:
        self.calls.append(("full", handle, asyncio.get_running_loop().time()))
        if self.fail_full is not None:
            raise self.fail_full
        return PNG_BYTES + b"-full"


class FakeDocuments(DocumentSnapshotter):
    """MHTML snapshotter with a switchable failure and delay."""

    def __init__(self):
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0
        self.started = asyncio.Event()

    async def capture_mhtml(self, handle: Any) -> str:
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return "MIME-Version: 1.0\r\nContent-Type: multipart/related\r\n\r\n<html></html>"


class MemoryArtifactStore(ArtifactStore):
    """Artifact store keeping files in a dict."""

    def __init__(self):
        self.files: Dict[str, Union[bytes, str]] = {}
        self.fail_suffixes: Set[str] = set()

    async def put(self, content, path, content_type=None, metadata=None) -> ArtifactRef:
        if any(path.endswith(suffix) for suffix in self.fail_suffixes):
            raise StorageWriteError(f"Disk full writing {path}")
        data = self._read_content(content)
        self.files[path] = content
        return ArtifactRef(
            path=path,
            checksum=self._calculate_checksum(data),
            size_bytes=len(data),
            content_type=content_type,
            metadata=metadata,
        )

    async def delete(self, path: str) -> bool:
        return self.files.pop(path, None) is not None

    async def exists(self, path: str) -> bool:
        return path in self.files

    def find(self, name_prefix: str) -> List[str]:
        return [path for path in self.files if path.rsplit('/', 1)[-1].startswith(name_prefix)]


class FakeHost:
    """Bundle of fake capabilities sharing one page table."""

    def __init__(self):
        self.pages = FakePages()
        self.channel = FakeChannel(self.pages)
        self.injector = FakeInjector(self.channel)
        self.screenshots = FakeScreenshots()
        self.documents = FakeDocuments()
        self.notifier = LoggingNotifier()

    def open(self, handle: Any, url: str, agent: bool = True, **kwargs) -> None:
        self.pages.add(handle, url, **kwargs)
        if agent:
            self.channel.install(handle)

    def reload(self, handle: Any) -> None:
        """Drop the page's agent, as a real reload would."""
        self.channel.agents.discard(handle)
        self.injector.flagged.discard(handle)

    @property
    def capabilities(self) -> HostCapabilities:
        return HostCapabilities(
            pages=self.pages,
            injector=self.injector,
            channel=self.channel,
            screenshots=self.screenshots,
            documents=self.documents,
            notifier=self.notifier,
        )


def fast_timings(**overrides) -> EngineTimings:
    """Engine timings small enough for unit tests."""
    values = dict(
        probe_timeout=200,
        inject_settle=0,
        agent_attempts=3,
        agent_backoff=0,
        content_timeout=500,
        request_timeout=500,
        dimension_timeout=500,
        scroll_step_px=200,
        scroll_interval=0,
        settle_timeout=0,
        fallback_height=400,
        screenshot_min_delay=0,
        capture_delay=0,
        script_cache_ttl=60000,
        max_concurrent_captures=4,
    )
    values.update(overrides)
    return EngineTimings(**values)


def fast_settings(**overrides) -> CaptureSettings:
    """Capture settings using :func:`fast_timings`; scripts are not fetched."""
    values: Dict[str, Any] = dict(timings=fast_timings(), capture_scripts=False)
    values.update(overrides)
    return CaptureSettings(**values)


def make_bridge(host: FakeHost, timings: Optional[EngineTimings] = None) -> ContentScriptBridge:
    timings = timings or fast_timings()
    return ContentScriptBridge(
        host.channel,
        host.injector,
        probe_timeout_ms=timings.probe_timeout,
        inject_settle_ms=timings.inject_settle,
        max_attempts=timings.agent_attempts,
        backoff_ms=timings.agent_backoff,
        request_timeout_ms=timings.request_timeout,
    )


@pytest.fixture
def fake_host():
    """Fake host with no pages open."""
    return FakeHost()


@pytest.fixture
def memory_store():
    """In-memory artifact store."""
    return MemoryArtifactStore()


@pytest.fixture
def settings():
    """Fast capture settings."""
    return fast_settings()


@pytest.fixture
def bridge(fake_host):
    """Bridge wired to the fake host."""
    return make_bridge(fake_host)


@pytest.fixture
def timings_factory() -> Callable[..., EngineTimings]:
    return fast_timings


@pytest.fixture
def settings_factory() -> Callable[..., CaptureSettings]:
    return fast_settings


@pytest.fixture
def bridge_factory() -> Callable[..., ContentScriptBridge]:
    return make_bridge


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
