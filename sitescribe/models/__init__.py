"""Data models for SiteScribe."""

from .capture import (
    AbortReason,
    ArchiveBundle,
    CAPTURE_FORMATS,
    CAPTURE_ORDER,
    CaptureFormat,
    CaptureKind,
    CaptureOutcome,
    CaptureRecord,
    CaptureRequest,
    CaptureResult,
    CaptureState,
    MANDATORY_KINDS,
    PageSession,
)

__all__ = [
    "AbortReason",
    "ArchiveBundle",
    "CAPTURE_FORMATS",
    "CAPTURE_ORDER",
    "CaptureFormat",
    "CaptureKind",
    "CaptureOutcome",
    "CaptureRecord",
    "CaptureRequest",
    "CaptureResult",
    "CaptureState",
    "MANDATORY_KINDS",
    "PageSession",
]
