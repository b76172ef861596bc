"""Data models for page capture requests, results and archive bundles.

This module defines the data models shared by the stability monitor, the
content script bridge and the capture orchestrator, including the capture
kind catalogue, per-page monitoring state and the final archive bundle.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


Payload = Union[bytes, str]


class CaptureKind(str, Enum):
    """Distinct output formats produced for a captured page."""
    METADATA = "metadata"
    SCREENSHOT_VISIBLE = "screenshot_visible"
    SCREENSHOT_FULL = "screenshot_full"
    MHTML = "mhtml"
    HTML = "html"
    TEXT = "text"
    MARKDOWN = "markdown"
    READABLE = "readable"
    SCRIPT_DATA = "script_data"


# Canonical ordering of kinds inside a capture set
CAPTURE_ORDER: List[CaptureKind] = [
    CaptureKind.METADATA,
    CaptureKind.SCREENSHOT_VISIBLE,
    CaptureKind.SCREENSHOT_FULL,
    CaptureKind.MHTML,
    CaptureKind.HTML,
    CaptureKind.TEXT,
    CaptureKind.MARKDOWN,
    CaptureKind.READABLE,
    CaptureKind.SCRIPT_DATA,
]

MANDATORY_KINDS = frozenset({CaptureKind.METADATA, CaptureKind.SCRIPT_DATA})


@dataclass(frozen=True)
class CaptureFormat:
    """MIME type and file naming for one capture kind."""
    mime_type: str
    filename_template: str

    def filename(self, timestamp: str) -> str:
        return self.filename_template.format(ts=timestamp)


CAPTURE_FORMATS: Dict[CaptureKind, CaptureFormat] = {
    CaptureKind.METADATA: CaptureFormat("application/json", "metadata.json"),
    CaptureKind.SCREENSHOT_VISIBLE: CaptureFormat("image/png", "screenshot_visible_{ts}.png"),
    CaptureKind.SCREENSHOT_FULL: CaptureFormat("image/png", "screenshot_full_{ts}.png"),
    CaptureKind.MHTML: CaptureFormat("application/mhtml", "page_{ts}.mhtml"),
    CaptureKind.HTML: CaptureFormat("text/html", "page_{ts}.html"),
    CaptureKind.TEXT: CaptureFormat("text/plain", "content_{ts}.txt"),
    CaptureKind.MARKDOWN: CaptureFormat("text/markdown", "content_{ts}.md"),
    CaptureKind.READABLE: CaptureFormat("text/plain", "readable_{ts}.txt"),
    CaptureKind.SCRIPT_DATA: CaptureFormat("application/json", "script_data_{ts}.json"),
}


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class PageSession:
    """Monitoring state for one live page.

    Only the stability monitor and the orchestrator for the same page handle
    mutate a session.
    """
    page_handle: Any
    url: str
    last_capture_at: float = field(default_factory=time.time)
    content_fingerprint: Optional[str] = None
    is_rendering: bool = False
    has_pending_significant_change: bool = False
    last_mutation_at: Optional[float] = None
    scroll_position: int = 0

    def mark_significant_change(self) -> None:
        self.has_pending_significant_change = True
        self.last_mutation_at = time.time()

    def consume_significant_change(self) -> bool:
        """Clear the pending-change flag, returning whether it was set."""
        if not self.has_pending_significant_change:
            return False
        self.has_pending_significant_change = False
        self.last_capture_at = time.time()
        return True


class CaptureRequest(BaseModel):
    """One capture attempt and the ordered set of kinds it asks for."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    page_handle: Any = Field(description="Opaque page identifier")
    url: str = Field(description="URL being captured")
    capture_set: List[CaptureKind] = Field(
        default_factory=lambda: sorted(MANDATORY_KINDS, key=CAPTURE_ORDER.index),
        description="Ordered capture kinds"
    )

    @field_validator('capture_set')
    @classmethod
    def include_mandatory_kinds(cls, v):
        """Always include metadata and script/network data, in canonical order."""
        kinds = set(v) | MANDATORY_KINDS
        return [kind for kind in CAPTURE_ORDER if kind in kinds]

    @classmethod
    def for_kinds(cls, page_handle: Any, url: str, optional_kinds) -> "CaptureRequest":
        return cls(page_handle=page_handle, url=url, capture_set=list(optional_kinds))


class CaptureResult(BaseModel):
    """Outcome of a single capture kind within a request."""

    kind: CaptureKind = Field(description="Capture kind")
    filename: Optional[str] = Field(default=None, description="File name inside the bundle")
    content_type: Optional[str] = Field(default=None, description="MIME type of the payload")
    payload: Optional[Payload] = Field(default=None, description="Captured content")
    failure_reason: Optional[str] = Field(default=None, description="Why the kind failed")

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None and self.payload is not None

    @classmethod
    def failed(cls, kind: CaptureKind, reason: str) -> "CaptureResult":
        return cls(kind=kind, failure_reason=reason)


class CaptureRecord(BaseModel):
    """Summary of a persisted capture, kept in the recent-captures log."""

    title: Optional[str] = Field(default=None, description="Page title")
    url: str = Field(description="Captured URL")
    timestamp: str = Field(default_factory=utc_now_iso, description="ISO-8601 capture time")
    formats: List[str] = Field(default_factory=list, description="Successfully captured kinds")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "timestamp": self.timestamp,
            "formats": list(self.formats),
        }


class ArchiveBundle(BaseModel):
    """Final output of one successful capture request."""

    folder_path: str = Field(description="Storage folder derived from URL")
    entries: Dict[str, Payload] = Field(default_factory=dict, description="Filename to payload")
    content_types: Dict[str, str] = Field(default_factory=dict, description="Filename to MIME type")
    record: CaptureRecord = Field(description="Capture summary")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Bundle metadata document")

    def paths(self) -> List[str]:
        return [f"{self.folder_path}/{name}" for name in self.entries]

    def remove(self, filename: str) -> None:
        self.entries.pop(filename, None)
        self.content_types.pop(filename, None)


class CaptureState(str, Enum):
    """States of the capture state machine."""
    INITIATED = "initiated"
    TAB_VALIDATED = "tab_validated"
    AGENT_READY = "agent_ready"
    CONTENT_COLLECTED = "content_collected"
    CAPTURES_RUNNING = "captures_running"
    ASSEMBLED = "assembled"
    PERSISTED = "persisted"
    ABORTED = "aborted"
    SKIPPED = "skipped"


class AbortReason(str, Enum):
    """Fatal precondition failures that end a capture attempt."""
    RESTRICTED_PAGE = "restricted_page"
    PAGE_UNAVAILABLE = "page_unavailable"
    AGENT_UNREACHABLE = "agent_unreachable"
    CONTENT_TIMEOUT = "content_timeout"
    CONTENT_FAILED = "content_failed"
    PERSIST_FAILED = "persist_failed"
    INTERNAL_ERROR = "internal_error"


class CaptureOutcome(BaseModel):
    """Everything known about one capture attempt once it has finished."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    page_handle: Any = Field(description="Opaque page identifier")
    url: str = Field(description="Requested URL")
    state: CaptureState = Field(default=CaptureState.INITIATED, description="Current state")
    transitions: List[CaptureState] = Field(default_factory=list, description="Visited states")
    abort_reason: Optional[AbortReason] = Field(default=None, description="Why the attempt aborted")
    error: Optional[str] = Field(default=None, description="Error message for aborts")
    results: List[CaptureResult] = Field(default_factory=list, description="Per-kind results")
    bundle: Optional[ArchiveBundle] = Field(default=None, description="Assembled bundle")
    written_paths: List[str] = Field(default_factory=list, description="Paths persisted")
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = Field(default=None)

    def advance(self, state: CaptureState) -> None:
        self.state = state
        self.transitions.append(state)

    def abort(self, reason: AbortReason, error: Optional[str] = None) -> None:
        self.abort_reason = reason
        self.error = error
        self.advance(CaptureState.ABORTED)

    @property
    def succeeded_kinds(self) -> List[CaptureKind]:
        return [r.kind for r in self.results if r.succeeded]

    @property
    def failed_kinds(self) -> List[CaptureKind]:
        return [r.kind for r in self.results if not r.succeeded]

    @property
    def is_successful(self) -> bool:
        """Persisted with both mandatory kinds present."""
        if self.state != CaptureState.PERSISTED or self.bundle is None:
            return False
        return MANDATORY_KINDS.issubset(set(self.bundle.record.formats))

    @property
    def duration_ms(self) -> Optional[float]:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds() * 1000
        return None
