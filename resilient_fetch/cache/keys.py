"""Cache key normalization."""

import hashlib
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def normalize_cache_key(key: str) -> str:
    """Normalize a cache key.

    Absolute URLs (scheme and host present) are canonicalized so that
    equivalent spellings share one entry:
    - Lowercasing the scheme and host
    - Defaulting an empty path to "/"
    - Sorting query parameters (blank values kept)

    Any other key is replaced by the SHA-256 hex digest of the raw string.

    Args:
        key: Raw cache key, usually a URL.

    Returns:
        Normalized key.

    Examples:
        >>> normalize_cache_key("HTTPS://Example.com?b=2&a=1")
        'https://example.com/?a=1&b=2'
    """
    try:
        parsed = urlsplit(key)
    except ValueError:
        parsed = None

    if parsed is None or not parsed.scheme or not parsed.netloc:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    path = parsed.path or "/"

    params = parse_qsl(parsed.query, keep_blank_values=True)
    query = urlencode(sorted(params))

    return urlunsplit((scheme, netloc, path, query, parsed.fragment))
