"""
Result-location rewriting.
Re-houses the upstream result token under the proxy's own /api/results path so
the backend origin never reaches the browser.
"""

import re
from typing import Any
from urllib.parse import parse_qs, quote, urlsplit

RESULTS_PATH = "/api/results"

_TOKEN_RE = re.compile(r"[?&]token=([^&]+)")
# Same unreserved set as JavaScript's encodeURIComponent.
_TOKEN_SAFE_CHARS = "-_.!~*'()"


def _results_path_for(token: str) -> str:
    return f"{RESULTS_PATH}?token={quote(token, safe=_TOKEN_SAFE_CHARS)}"


def _token_from_absolute_url(value: str) -> str:
    try:
        parts = urlsplit(value)
    except ValueError:
        return ""
    if not (parts.scheme and parts.netloc):
        return ""
    values = parse_qs(parts.query).get("token") or []
    return values[0] if values else ""


def rewrite_result_url(result_url: Any) -> str:
    """
    Map an upstream result URL to /api/results?token=...

    Absolute URLs are parsed strictly; anything else (relative or malformed)
    falls back to a regex scan. Without a token the bare path is returned and
    the upstream rejects it on the next poll.
    """
    if not isinstance(result_url, str):
        return RESULTS_PATH

    token = _token_from_absolute_url(result_url)
    if token:
        return _results_path_for(token)

    match = _TOKEN_RE.search(result_url)
    if match:
        return _results_path_for(match.group(1))
    return RESULTS_PATH
