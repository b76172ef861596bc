"""Deterministic storage paths for captured pages.

Pure functions deriving the bundle folder and the bundle metadata document
from a URL and the page metadata reported by the in-page agent.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from ..models.capture import utc_now_iso


DEFAULT_BASE_DIR = "webData"

_UNSAFE_TIMESTAMP_CHARS = re.compile(r"[:.]")


@dataclass(frozen=True)
class DomainParts:
    """Hostname split into its registrable part and subdomain."""
    full: str
    main: str
    sub: str


@dataclass(frozen=True)
class ParsedUrl:
    """URL components used to build a capture folder."""
    full_url: str
    protocol: str
    domain: DomainParts
    path: List[str] = field(default_factory=list)
    query: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class FolderLayout:
    """Folder path plus the metadata document written as ``metadata.json``."""
    folder_path: str
    metadata: Dict[str, Any]

    @property
    def capture_time(self) -> str:
        return self.metadata["captureTime"]


def split_domain(hostname: str) -> DomainParts:
    """Split a hostname on its last two dot-separated segments.

    Examples:
        >>> split_domain("shop.example.com")
        DomainParts(full='shop.example.com', main='example.com', sub='shop')
    """
    parts = hostname.split('.')
    return DomainParts(
        full=hostname,
        main='.'.join(parts[-2:]),
        sub='.'.join(parts[:-2]) if len(parts) > 2 else '',
    )


def parse_url(url: str, timestamp: Optional[str] = None) -> ParsedUrl:
    """Parse a URL into the components used for folder naming.

    Args:
        url: Absolute URL of the captured page
        timestamp: ISO-8601 capture time (defaults to now)

    Returns:
        ParsedUrl with protocol, domain split, non-empty path segments,
        query string (including the leading ``?``) and capture timestamp
    """
    parsed = urlparse(url)
    hostname = parsed.hostname or ''
    return ParsedUrl(
        full_url=url,
        protocol=parsed.scheme,
        domain=split_domain(hostname),
        path=[segment for segment in parsed.path.split('/') if segment],
        query=f"?{parsed.query}" if parsed.query else '',
        timestamp=timestamp or utc_now_iso(),
    )


def sanitize_timestamp(timestamp: str) -> str:
    """Make an ISO timestamp safe for file names (``:`` and ``.`` become ``-``)."""
    return _UNSAFE_TIMESTAMP_CHARS.sub('-', timestamp)


def build_path(
    parsed: ParsedUrl,
    page_metadata: Optional[Dict[str, Any]] = None,
    base_dir: str = DEFAULT_BASE_DIR
) -> FolderLayout:
    """Build the bundle folder path and metadata document.

    Args:
        parsed: Output of :func:`parse_url`
        page_metadata: Opaque page metadata, passed through unchanged
        base_dir: Root folder for all captures

    Returns:
        FolderLayout with ``base/main/sub/path...`` (empty segments dropped)
    """
    parts = [base_dir, parsed.domain.main, parsed.domain.sub, *parsed.path]
    folder_path = '/'.join(part for part in parts if part)

    metadata = {
        'captureTime': sanitize_timestamp(parsed.timestamp),
        'url': {
            'full': parsed.full_url,
            'domain': parsed.domain.full,
            'mainDomain': parsed.domain.main,
            'subdomain': parsed.domain.sub,
            'path': '/'.join(parsed.path),
            'query': parsed.query,
        },
        'page': page_metadata if page_metadata is not None else {},
    }
    return FolderLayout(folder_path=folder_path, metadata=metadata)
