"""SiteScribe persistence layer.

Durable writes of bundle files and the bounded recent-captures log.
"""

from .recent import DEFAULT_CAPACITY, RecentCapturesLog
from .storage import ArtifactRef, ArtifactStore, LocalArtifactStore

__all__ = [
    "ArtifactRef",
    "ArtifactStore",
    "DEFAULT_CAPACITY",
    "LocalArtifactStore",
    "RecentCapturesLog",
]
