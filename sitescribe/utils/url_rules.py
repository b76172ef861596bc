"""URL checks deciding whether a page may be captured."""

from urllib.parse import urlparse


# Internal browser pages never reachable by the in-page agent
RESTRICTED_SCHEMES = frozenset({
    'chrome',
    'chrome-extension',
    'chrome-search',
    'chrome-untrusted',
    'edge',
    'about',
    'devtools',
    'view-source',
    'moz-extension',
})


def is_valid_http_url(url: str) -> bool:
    """Check that a URL is an absolute http(s) URL with a host."""
    if not url:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def is_restricted_url(url: str) -> bool:
    """Check whether a URL points at an internal browser page.

    Examples:
        >>> is_restricted_url("chrome://settings")
        True
        >>> is_restricted_url("https://example.com")
        False
    """
    if not url:
        return True
    scheme = url.split(':', 1)[0].lower() if ':' in url else ''
    return scheme in RESTRICTED_SCHEMES
