"""Queueing primitives for SiteScribe."""

from .rate_limiter import QueueEntry, RateLimitedActionQueue

__all__ = ["QueueEntry", "RateLimitedActionQueue"]
