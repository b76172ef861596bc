"""Errors raised by host capabilities and durable writes."""


class HostError(Exception):
    """Base error raised by host capabilities."""


class PageNotFoundError(HostError):
    """The page handle no longer resolves to a live page."""


class PageAccessDeniedError(HostError):
    """The host refuses access to the page (internal or restricted page)."""


class ChannelClosedError(HostError):
    """The page or its message channel went away."""


class NoResponseError(HostError):
    """The message was delivered but nothing in the page answered."""


class InjectionError(HostError):
    """The agent script could not be injected."""


class ScreenshotError(HostError):
    """A screenshot could not be taken."""


class RateLimitedError(ScreenshotError):
    """The host rejected a screenshot because of its own rate limit."""


class DocumentCaptureError(HostError):
    """A single-file document snapshot failed."""


class StorageWriteError(HostError):
    """A durable write failed for one file."""
