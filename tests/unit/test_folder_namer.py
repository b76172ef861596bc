"""Unit tests for folder naming and URL rules."""

import pytest

from sitescribe.utils.folder_namer import (
    DEFAULT_BASE_DIR,
    build_path,
    parse_url,
    sanitize_timestamp,
    split_domain,
)
from sitescribe.utils.url_rules import is_restricted_url, is_valid_http_url


class TestParseUrl:
    """Tests for parse_url."""

    def test_subdomain_path_and_query(self):
        """Domain is split on its last two labels; path and query are kept."""
        parsed = parse_url("https://shop.example.com/a/b?x=1")

        assert parsed.protocol == "https"
        assert parsed.domain.full == "shop.example.com"
        assert parsed.domain.main == "example.com"
        assert parsed.domain.sub == "shop"
        assert parsed.path == ["a", "b"]
        assert parsed.query == "?x=1"

    def test_bare_domain(self):
        """A two-label host has no subdomain and an empty path."""
        parsed = parse_url("http://example.com/")

        assert parsed.domain.main == "example.com"
        assert parsed.domain.sub == ""
        assert parsed.path == []
        assert parsed.query == ""

    def test_deep_subdomain(self):
        """Every label before the last two belongs to the subdomain."""
        parts = split_domain("a.b.example.co")

        assert parts.main == "example.co"
        assert parts.sub == "a.b"

    def test_empty_path_segments_dropped(self):
        """Repeated and trailing slashes produce no empty segments."""
        parsed = parse_url("https://example.com//docs///intro/")

        assert parsed.path == ["docs", "intro"]

    def test_explicit_timestamp(self):
        """A given timestamp is kept as-is on the parsed URL."""
        parsed = parse_url("https://example.com", timestamp="2024-01-02T03:04:05.678Z")

        assert parsed.timestamp == "2024-01-02T03:04:05.678Z"

    def test_default_timestamp(self):
        """Without a timestamp the current UTC time is used."""
        parsed = parse_url("https://example.com")

        assert parsed.timestamp.endswith("Z")
        assert "T" in parsed.timestamp


class TestBuildPath:
    """Tests for build_path."""

    def test_folder_path(self):
        """Folder path is base/main/sub/path with empty segments dropped."""
        layout = build_path(parse_url("https://shop.example.com/a/b?x=1"), base_dir="webData")

        assert layout.folder_path == "webData/example.com/shop/a/b"

    def test_default_base_dir(self):
        """The default base directory is used when none is given."""
        layout = build_path(parse_url("https://example.com/"))

        assert layout.folder_path == f"{DEFAULT_BASE_DIR}/example.com"

    def test_metadata_document(self):
        """Metadata carries sanitized capture time, URL parts and page metadata."""
        page = {"title": "Shop", "wordCount": 42}
        parsed = parse_url("https://shop.example.com/a/b?x=1", timestamp="2024-01-02T03:04:05.678Z")

        layout = build_path(parsed, page)

        assert layout.metadata["captureTime"] == "2024-01-02T03-04-05-678Z"
        assert layout.capture_time == "2024-01-02T03-04-05-678Z"
        assert layout.metadata["url"] == {
            "full": "https://shop.example.com/a/b?x=1",
            "domain": "shop.example.com",
            "mainDomain": "example.com",
            "subdomain": "shop",
            "path": "a/b",
            "query": "?x=1",
        }
        assert layout.metadata["page"] is page

    def test_missing_page_metadata(self):
        """Missing page metadata becomes an empty object."""
        layout = build_path(parse_url("https://example.com"))

        assert layout.metadata["page"] == {}

    def test_deterministic(self):
        """Same URL and timestamp always give the same layout."""
        first = build_path(parse_url("https://example.com/x", timestamp="2024-01-01T00:00:00.000Z"))
        second = build_path(parse_url("https://example.com/x", timestamp="2024-01-01T00:00:00.000Z"))

        assert first == second

    def test_sanitize_timestamp(self):
        assert sanitize_timestamp("2024-05-06T07:08:09.010Z") == "2024-05-06T07-08-09-010Z"


class TestUrlRules:
    """Tests for URL capture rules."""

    @pytest.mark.parametrize("url", [
        "chrome://settings",
        "chrome-extension://abcdef/popup.html",
        "about:blank",
        "edge://flags",
        "view-source:https://example.com",
        "",
    ])
    def test_restricted(self, url):
        assert is_restricted_url(url) is True

    @pytest.mark.parametrize("url", [
        "https://example.com",
        "http://localhost:8000/page",
        "file:///tmp/page.html",
    ])
    def test_not_restricted(self, url):
        assert is_restricted_url(url) is False

    def test_valid_http_url(self):
        assert is_valid_http_url("https://example.com/a") is True
        assert is_valid_http_url("http://example.com") is True
        assert is_valid_http_url("ftp://example.com") is False
        assert is_valid_http_url("chrome://newtab") is False
        assert is_valid_http_url("https://") is False
        assert is_valid_http_url("") is False
