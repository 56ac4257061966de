"""
URL helpers shared by the frontier and page stores.
"""

from urllib.parse import urlsplit, urlunsplit


def normalize_url(url: str) -> str:
    """
    Normalize a URL for use as a storage key.

    Only the scheme and host are lower-cased; path, query and fragment are kept
    verbatim so that syntactically different URLs stay distinct.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    if not parts.scheme or not parts.netloc:
        return url

    return urlunsplit((
        parts.scheme.lower(),
        parts.netloc.lower(),
        parts.path,
        parts.query,
        parts.fragment,
    ))
