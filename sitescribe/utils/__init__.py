"""Utility helpers for SiteScribe."""

from .folder_namer import (
    DEFAULT_BASE_DIR,
    DomainParts,
    FolderLayout,
    ParsedUrl,
    build_path,
    parse_url,
    sanitize_timestamp,
    split_domain,
)
from .url_rules import RESTRICTED_SCHEMES, is_restricted_url, is_valid_http_url

__all__ = [
    "DEFAULT_BASE_DIR",
    "DomainParts",
    "FolderLayout",
    "ParsedUrl",
    "build_path",
    "parse_url",
    "sanitize_timestamp",
    "split_domain",
    "RESTRICTED_SCHEMES",
    "is_restricted_url",
    "is_valid_http_url",
]
