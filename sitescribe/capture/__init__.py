"""Page capture pipeline for SiteScribe.

Main Components:
- Host capabilities: abstract browser services the pipeline depends on (host.py)
- Content script bridge: reliable request/response channel to the in-page agent
- Stability monitor: scroll-driven render sweep and change detection
- Capture orchestrator: the capture state machine producing archive bundles
- Auto-capture scheduler: debounced captures after page loads
- Playwright host: concrete host built on Playwright

Usage:
    from sitescribe.capture import HostCapabilities, PlaywrightHost, create_auto_capture

    async with PlaywrightHost().session() as browser:
        scheduler = create_auto_capture(HostCapabilities.from_host(browser), store)
        handle = await browser.open_page("https://example.com")
        outcome = await scheduler.orchestrator.capture_now(handle)
"""

from .bridge import (
    AgentError,
    AgentRequestError,
    AgentTimeoutError,
    AgentTransportError,
    ContentScriptBridge,
)
from .config import (
    BrowserSettings,
    CaptureFormatToggles,
    CaptureSettings,
    EngineTimings,
    LLMSettings,
    SettingsStore,
    StaticSettingsStore,
    YamlSettingsStore,
)
from .diagnostics import run_capture_diagnostics
from .host import (
    HostCapabilities,
    HostError,
    LoggingNotifier,
    PageInfo,
)
from .orchestrator import CaptureOrchestrator, DeferredCapture, InlineCapture
from .playwright_host import PlaywrightHost
from .scheduler import AutoCaptureScheduler, create_auto_capture
from .script_fetcher import ScriptFetcher
from .stability import PageStabilityMonitor, SessionRegistry

__all__ = [
    "AgentError",
    "AgentRequestError",
    "AgentTimeoutError",
    "AgentTransportError",
    "AutoCaptureScheduler",
    "BrowserSettings",
    "CaptureFormatToggles",
    "CaptureOrchestrator",
    "CaptureSettings",
    "ContentScriptBridge",
    "DeferredCapture",
    "EngineTimings",
    "HostCapabilities",
    "HostError",
    "InlineCapture",
    "LLMSettings",
    "LoggingNotifier",
    "PageInfo",
    "PageStabilityMonitor",
    "PlaywrightHost",
    "ScriptFetcher",
    "SessionRegistry",
    "SettingsStore",
    "StaticSettingsStore",
    "YamlSettingsStore",
    "create_auto_capture",
    "run_capture_diagnostics",
]
