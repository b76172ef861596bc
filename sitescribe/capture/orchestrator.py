"""Capture orchestration for SiteScribe.

This module turns "capture this page now" into a persisted archive bundle:
it validates the page, makes sure the in-page agent answers, collects page
content, fans out to the configured capture kinds with bounded concurrency
(screenshots go through the shared rate-limited queue), assembles the bundle
and writes it file by file.
"""

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..models.capture import (
    AbortReason,
    ArchiveBundle,
    CAPTURE_FORMATS,
    CaptureKind,
    CaptureOutcome,
    CaptureRecord,
    CaptureRequest,
    CaptureResult,
    CaptureState,
    Payload,
)
from ..persistence.recent import RecentCapturesLog
from ..persistence.storage import ArtifactStore
from ..queue.rate_limiter import RateLimitedActionQueue
from ..utils.folder_namer import FolderLayout, build_path, parse_url
from ..utils.url_rules import is_restricted_url
from .bridge import AgentError, AgentTimeoutError, ContentScriptBridge
from .config import CaptureSettings, SettingsStore, StaticSettingsStore
from .host import HostCapabilities, HostError, PageAccessDeniedError, PageInfo
from .script_fetcher import FETCH_FAILED_PLACEHOLDER, ScriptFetcher
from .stability import SessionRegistry


logger = logging.getLogger(__name__)


AGENT_FAILURE_TITLE = "Capture Failed"
AGENT_FAILURE_MESSAGE = "Could not initialize page capture. Please refresh the page and try again."

DEFAULT_PAGE_DATA = {"content": "No content available", "metadata": {}}

# Agent actions answering with a text payload
AGENT_TEXT_ACTIONS = {
    CaptureKind.HTML: "getHTML",
    CaptureKind.TEXT: "getText",
    CaptureKind.READABLE: "getReadableContent",
}


@dataclass(frozen=True)
class InlineCapture:
    """A capture kind whose payload is already known."""
    payload: Payload


@dataclass(frozen=True)
class DeferredCapture:
    """A capture kind produced by running an operation against the page."""
    operation: Callable[[], Awaitable[Payload]]


CaptureSpec = Union[InlineCapture, DeferredCapture]


@dataclass
class PageContent:
    """Content and metadata collected from the agent."""
    content: str
    metadata: Dict[str, Any]

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.content.encode('utf-8')).hexdigest()


class CaptureAborted(Exception):
    """Internal signal ending a capture attempt in a terminal state."""

    def __init__(self, reason: AbortReason, message: str, skipped: bool = False):
        super().__init__(message)
        self.reason = reason
        self.skipped = skipped


class CaptureOrchestrator:
    """Runs the capture state machine for one page at a time.

    ``capture`` never raises: every failure ends up in the returned
    :class:`CaptureOutcome`.
    """

    def __init__(
        self,
        host: HostCapabilities,
        bridge: ContentScriptBridge,
        store: ArtifactStore,
        settings_store: Optional[SettingsStore] = None,
        screenshot_queue: Optional[RateLimitedActionQueue] = None,
        script_fetcher: Optional[ScriptFetcher] = None,
        recent: Optional[RecentCapturesLog] = None,
        registry: Optional[SessionRegistry] = None
    ):
        """Initialize the orchestrator.

        Args:
            host: Host capabilities
            bridge: Bridge to the in-page agent
            store: Durable write backend for bundle files
            settings_store: Source of capture settings (defaults when omitted)
            screenshot_queue: Process-wide screenshot queue
            script_fetcher: Cached fetcher for external scripts
            recent: Recent-captures log updated after each persisted capture
            registry: Session registry shared with the stability monitor
        """
        self.host = host
        self.bridge = bridge
        self.store = store
        self.settings_store = settings_store or StaticSettingsStore()
        self.screenshot_queue = screenshot_queue or RateLimitedActionQueue(min_delay_ms=1000)
        self.script_fetcher = script_fetcher or ScriptFetcher()
        self.recent = recent if recent is not None else RecentCapturesLog()
        self.registry = registry
        self._callbacks: List[Callable[[CaptureOutcome], None]] = []

        self.stats = {
            'captures_attempted': 0,
            'captures_persisted': 0,
            'captures_aborted': 0,
            'captures_skipped': 0,
            'total_duration_ms': 0.0,
            'kind_failures': {},
            'errors': [],
        }

    def add_callback(self, callback: Callable[[CaptureOutcome], None]) -> None:
        """Add callback to be called for each finished capture attempt.

        Args:
            callback: Function to call with the CaptureOutcome
        """
        self._callbacks.append(callback)

    async def capture(self, handle: Any, url: Optional[str] = None) -> CaptureOutcome:
        """Capture a page into a persisted archive bundle.

        Args:
            handle: Page handle
            url: URL the bundle is named after (defaults to the page's URL)

        Returns:
            CaptureOutcome in a terminal state
        """
        outcome = CaptureOutcome(page_handle=handle, url=url or "")
        outcome.advance(CaptureState.INITIATED)
        logger.info(f"Initiating capture of {handle} ({url or 'current URL'})")

        try:
            settings = await self._load_settings()
            await self._run(outcome, settings)
        except CaptureAborted as e:
            if e.skipped:
                outcome.abort_reason = e.reason
                outcome.error = str(e)
                outcome.advance(CaptureState.SKIPPED)
                logger.info(f"Skipping capture of {handle}: {e}")
            else:
                outcome.abort(e.reason, str(e))
                logger.error(f"Capture of {handle} aborted ({e.reason.value}): {e}")
        except Exception as e:
            outcome.abort(AbortReason.INTERNAL_ERROR, f"{type(e).__name__}: {e}")
            logger.error(f"Unexpected capture error for {handle}: {e}")
        finally:
            outcome.finished_at = datetime.now(timezone.utc)

        self._update_stats(outcome)
        self._call_callbacks(outcome)
        return outcome

    async def capture_now(self, handle: Optional[Any] = None, url: Optional[str] = None) -> CaptureOutcome:
        """Capture immediately without waiting for the page to settle.

        Args:
            handle: Page handle (defaults to the active page)
            url: Optional URL override
        """
        if handle is None:
            try:
                handle = await self.host.pages.get_active_page()
            except HostError as e:
                logger.warning(f"Could not resolve the active page: {e}")
                handle = None
        if handle is None:
            outcome = CaptureOutcome(page_handle=None, url=url or "")
            outcome.advance(CaptureState.INITIATED)
            outcome.abort(AbortReason.PAGE_UNAVAILABLE, "No active page to capture")
            outcome.finished_at = datetime.now(timezone.utc)
            self._update_stats(outcome)
            self._call_callbacks(outcome)
            return outcome

        logger.info(f"Manual capture requested for {handle}")
        return await self.capture(handle, url)

    async def _run(self, outcome: CaptureOutcome, settings: CaptureSettings) -> None:
        handle = outcome.page_handle

        page = await self._validate_page(handle)
        url = outcome.url or page.url
        outcome.url = url
        outcome.advance(CaptureState.TAB_VALIDATED)

        if not await self.bridge.ensure_agent_ready(handle):
            await self._notify_agent_failure(handle)
            raise CaptureAborted(AbortReason.AGENT_UNREACHABLE, "In-page agent did not respond")
        outcome.advance(CaptureState.AGENT_READY)

        page_content = await self._collect_content(handle, settings)
        self._remember_fingerprint(handle, page_content)
        outcome.advance(CaptureState.CONTENT_COLLECTED)

        layout = build_path(parse_url(url), page_content.metadata, settings.base_dir)
        request = CaptureRequest.for_kinds(handle, url, settings.optional_kinds())
        specs = self._build_specs(request, page_content, layout, settings)
        outcome.advance(CaptureState.CAPTURES_RUNNING)

        outcome.results = await self._run_captures(specs, layout.capture_time, settings)

        bundle = self._assemble(outcome.results, layout, page, page_content)
        outcome.bundle = bundle
        outcome.advance(CaptureState.ASSEMBLED)

        await self._persist(outcome, bundle)
        outcome.advance(CaptureState.PERSISTED)

        await self.recent.add(bundle.record)
        logger.info(
            f"Captured {url} into {bundle.folder_path} "
            f"({len(bundle.record.formats)} formats, {len(outcome.failed_kinds)} failed)"
        )

    async def _validate_page(self, handle: Any) -> PageInfo:
        try:
            page = await self.host.pages.get_page(handle)
        except PageAccessDeniedError as e:
            raise CaptureAborted(AbortReason.RESTRICTED_PAGE, f"Access denied: {e}", skipped=True)
        except HostError as e:
            raise CaptureAborted(AbortReason.PAGE_UNAVAILABLE, f"Page unavailable: {e}")

        if is_restricted_url(page.url):
            raise CaptureAborted(
                AbortReason.RESTRICTED_PAGE, f"Restricted page: {page.url}", skipped=True
            )
        return page

    async def _notify_agent_failure(self, handle: Any) -> None:
        try:
            await self.host.notifier.notify(AGENT_FAILURE_TITLE, AGENT_FAILURE_MESSAGE)
        except Exception as e:
            logger.warning(f"Failure notification for {handle} not delivered: {e}")

    async def _collect_content(self, handle: Any, settings: CaptureSettings) -> PageContent:
        try:
            reply = await self.bridge.request(
                handle,
                "getContent",
                settings.agent_content_options(),
                timeout_ms=settings.timings.content_timeout,
            )
        except AgentTimeoutError as e:
            raise CaptureAborted(AbortReason.CONTENT_TIMEOUT, str(e))
        except AgentError as e:
            raise CaptureAborted(AbortReason.CONTENT_FAILED, str(e))

        data = reply if isinstance(reply, dict) else DEFAULT_PAGE_DATA
        content = data.get("content")
        metadata = data.get("metadata")
        page_content = PageContent(
            content=content if isinstance(content, str) else DEFAULT_PAGE_DATA["content"],
            metadata=metadata if isinstance(metadata, dict) else {},
        )

        if settings.capture_scripts:
            await self._attach_script_sources(page_content.metadata)

        logger.debug(
            f"Collected {len(page_content.content)} chars of content from {handle} "
            f"(metadata keys: {sorted(page_content.metadata)})"
        )
        return page_content

    async def _attach_script_sources(self, metadata: Dict[str, Any]) -> None:
        """Fill in the source of every external script, with a marker for failures."""
        scripts = metadata.get("scripts") or []
        external = [
            script for script in scripts
            if isinstance(script, dict) and script.get("type") == "external" and script.get("src")
        ]
        if not external:
            return

        async def fetch(script: Dict[str, Any]) -> None:
            try:
                source = await self.script_fetcher.fetch(script["src"])
            except Exception as e:
                logger.warning(f"Script fetch raised for {script['src']}: {e}")
                source = None
            script["content"] = source if source is not None else FETCH_FAILED_PLACEHOLDER

        await asyncio.gather(*(fetch(script) for script in external))

    def _remember_fingerprint(self, handle: Any, page_content: PageContent) -> None:
        if self.registry is None:
            return
        session = self.registry.get(handle)
        if session is not None:
            session.content_fingerprint = page_content.fingerprint

    def _build_specs(
        self,
        request: CaptureRequest,
        page_content: PageContent,
        layout: FolderLayout,
        settings: CaptureSettings
    ) -> Dict[CaptureKind, CaptureSpec]:
        """Map every requested kind to an inline payload or a deferred operation."""
        handle = request.page_handle
        timeout_ms = settings.timings.request_timeout
        specs: Dict[CaptureKind, CaptureSpec] = {}

        for kind in request.capture_set:
            if kind == CaptureKind.METADATA:
                specs[kind] = InlineCapture(json.dumps(layout.metadata, indent=2))
            elif kind == CaptureKind.SCRIPT_DATA:
                specs[kind] = InlineCapture(
                    json.dumps(build_script_data(page_content.metadata, settings), indent=2)
                )
            elif kind == CaptureKind.MARKDOWN:
                specs[kind] = InlineCapture(page_content.content)
            elif kind == CaptureKind.SCREENSHOT_VISIBLE:
                specs[kind] = DeferredCapture(self._visible_screenshot_operation(handle))
            elif kind == CaptureKind.SCREENSHOT_FULL:
                specs[kind] = DeferredCapture(self._full_screenshot_operation(handle, timeout_ms))
            elif kind == CaptureKind.MHTML:
                specs[kind] = DeferredCapture(self._mhtml_operation(handle))
            elif kind in AGENT_TEXT_ACTIONS:
                specs[kind] = DeferredCapture(
                    self._agent_text_operation(handle, AGENT_TEXT_ACTIONS[kind], timeout_ms)
                )
        return specs

    def _visible_screenshot_operation(self, handle: Any) -> Callable[[], Awaitable[Payload]]:
        async def operation() -> Payload:
            return await self.screenshot_queue.enqueue(
                lambda: self.host.screenshots.capture_visible(handle)
            )
        return operation

    def _full_screenshot_operation(self, handle: Any, timeout_ms: int) -> Callable[[], Awaitable[Payload]]:
        async def operation() -> Payload:
            dimensions = await self.bridge.request(handle, "getPageDimensions", timeout_ms=timeout_ms)
            logger.debug(f"Full-page screenshot of {handle} at {dimensions}")
            return await self.screenshot_queue.enqueue(
                lambda: self.host.screenshots.capture_full_page(handle)
            )
        return operation

    def _mhtml_operation(self, handle: Any) -> Callable[[], Awaitable[Payload]]:
        async def operation() -> Payload:
            return await self.host.documents.capture_mhtml(handle)
        return operation

    def _agent_text_operation(
        self,
        handle: Any,
        action: str,
        timeout_ms: int
    ) -> Callable[[], Awaitable[Payload]]:
        async def operation() -> Payload:
            reply = await self.bridge.request(handle, action, timeout_ms=timeout_ms)
            if not isinstance(reply, str):
                raise TypeError(f"'{action}' returned {type(reply).__name__}, expected text")
            return reply
        return operation

    async def _run_captures(
        self,
        specs: Dict[CaptureKind, CaptureSpec],
        timestamp: str,
        settings: CaptureSettings
    ) -> List[CaptureResult]:
        """Produce every capture kind independently; one failure never affects another."""
        semaphore = asyncio.Semaphore(settings.timings.max_concurrent_captures)

        async def run_one(kind: CaptureKind, spec: CaptureSpec) -> CaptureResult:
            capture_format = CAPTURE_FORMATS[kind]
            try:
                if isinstance(spec, InlineCapture):
                    payload = spec.payload
                elif isinstance(spec, DeferredCapture):
                    async with semaphore:
                        payload = await spec.operation()
                else:
                    raise TypeError(f"Unknown capture spec {spec!r}")

                if not isinstance(payload, (bytes, str)):
                    raise TypeError(f"Unsupported payload type {type(payload).__name__}")

                logger.debug(f"{kind.value} captured ({len(payload)} bytes/chars)")
                return CaptureResult(
                    kind=kind,
                    filename=capture_format.filename(timestamp),
                    content_type=capture_format.mime_type,
                    payload=payload,
                )
            except Exception as e:
                logger.warning(f"{kind.value} capture failed: {e}")
                return CaptureResult.failed(kind, f"{type(e).__name__}: {e}")

        return list(await asyncio.gather(*(run_one(kind, spec) for kind, spec in specs.items())))

    def _assemble(
        self,
        results: List[CaptureResult],
        layout: FolderLayout,
        page: PageInfo,
        page_content: PageContent
    ) -> ArchiveBundle:
        succeeded = [result for result in results if result.succeeded]
        record = CaptureRecord(
            title=page.title or page_content.metadata.get("title"),
            url=page.url,
            formats=[result.kind.value for result in succeeded],
        )
        return ArchiveBundle(
            folder_path=layout.folder_path,
            entries={result.filename: result.payload for result in succeeded},
            content_types={result.filename: result.content_type for result in succeeded},
            record=record,
            metadata=layout.metadata,
        )

    async def _persist(self, outcome: CaptureOutcome, bundle: ArchiveBundle) -> None:
        """Write each bundle file independently, dropping the ones that fail."""
        results_by_file = {result.filename: result for result in outcome.results if result.succeeded}

        async def write(filename: str, payload: Payload) -> Optional[str]:
            path = f"{bundle.folder_path}/{filename}"
            try:
                await self.store.put(
                    payload,
                    path,
                    content_type=bundle.content_types.get(filename),
                    metadata={"url": bundle.record.url, "captureTime": bundle.metadata.get("captureTime")},
                )
                return path
            except Exception as e:
                logger.warning(f"Failed to write {path}: {e}")
                result = results_by_file.get(filename)
                if result is not None:
                    result.failure_reason = f"write failed: {e}"
                return None

        written = await asyncio.gather(
            *(write(filename, payload) for filename, payload in list(bundle.entries.items()))
        )

        for filename, path in zip(list(bundle.entries), written):
            if path is None:
                result = results_by_file.get(filename)
                bundle.remove(filename)
                if result is not None and result.kind.value in bundle.record.formats:
                    bundle.record.formats.remove(result.kind.value)
        outcome.written_paths = [path for path in written if path]

        if not outcome.written_paths:
            raise CaptureAborted(AbortReason.PERSIST_FAILED, "No bundle file could be written")

    async def _load_settings(self) -> CaptureSettings:
        try:
            return await self.settings_store.load()
        except ValueError as e:
            logger.warning(f"Invalid settings, using defaults: {e}")
            return CaptureSettings()

    def _update_stats(self, outcome: CaptureOutcome) -> None:
        """Update orchestrator statistics.

        Args:
            outcome: Finished capture attempt
        """
        self.stats['captures_attempted'] += 1

        if outcome.state == CaptureState.PERSISTED:
            self.stats['captures_persisted'] += 1
        elif outcome.state == CaptureState.SKIPPED:
            self.stats['captures_skipped'] += 1
        else:
            self.stats['captures_aborted'] += 1

        if outcome.duration_ms:
            self.stats['total_duration_ms'] += outcome.duration_ms

        for kind in outcome.failed_kinds:
            failures = self.stats['kind_failures']
            failures[kind.value] = failures.get(kind.value, 0) + 1

        if outcome.state == CaptureState.ABORTED and outcome.error:
            self.stats['errors'].append({
                'url': outcome.url,
                'reason': outcome.abort_reason.value if outcome.abort_reason else None,
                'error': outcome.error,
                'timestamp': outcome.started_at.isoformat(),
            })

            # Limit error history
            if len(self.stats['errors']) > 100:
                self.stats['errors'] = self.stats['errors'][-100:]

    def _call_callbacks(self, outcome: CaptureOutcome) -> None:
        for callback in self._callbacks:
            try:
                callback(outcome)
            except Exception as e:
                logger.error(f"Error in capture orchestrator callback: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics.

        Returns:
            Dictionary with capture counts, per-kind failures and recent errors
        """
        stats = self.stats.copy()
        stats['kind_failures'] = dict(self.stats['kind_failures'])

        if stats['captures_attempted'] > 0:
            stats['success_rate'] = (stats['captures_persisted'] / stats['captures_attempted']) * 100
            stats['average_duration_ms'] = stats['total_duration_ms'] / stats['captures_attempted']
        else:
            stats['success_rate'] = 0
            stats['average_duration_ms'] = 0

        stats['screenshot_queue'] = self.screenshot_queue.get_stats()
        stats['bridge'] = self.bridge.get_stats()
        stats['recent_captures'] = len(self.recent)
        return stats

    def __repr__(self) -> str:
        stats = self.get_stats()
        return (
            f"CaptureOrchestrator(attempted={stats['captures_attempted']}, "
            f"success_rate={stats['success_rate']:.1f}%)"
        )


def build_script_data(metadata: Dict[str, Any], settings: CaptureSettings) -> Dict[str, List[Any]]:
    """Script and network data document for a capture.

    Args:
        metadata: Page metadata from the agent
        settings: Capture settings deciding which lists are kept

    Returns:
        ``{"scripts", "networkRequests", "apiEndpoints"}``, lists empty when disabled
    """
    network_requests = metadata.get("networkRequests") or []
    return {
        "scripts": list(metadata.get("scripts") or []) if settings.capture_scripts else [],
        "networkRequests": (
            list(network_requests[-settings.max_network_requests:])
            if settings.capture_network_requests else []
        ),
        "apiEndpoints": (
            list(metadata.get("apiEndpoints") or []) if settings.capture_network_requests else []
        ),
    }
