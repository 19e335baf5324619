"""URL normalization, title extraction and citation overlap."""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import unquote, urlparse, urlunparse

_SEPARATOR_RE = re.compile(r"[-_+.]+")
_WHITESPACE_RE = re.compile(r"\s+")
_PAGE_SUFFIXES = (".html", ".htm", ".shtml", ".php", ".asp", ".aspx", ".jsp")
_MIN_TITLE_LETTERS = 3


def canonicalize_url(url: str) -> str:
    """Normalize URL for comparisons: lowercase host, default ports, sorted query.

    A string `urlparse` rejects (e.g. `http://[broken`) is returned stripped, so
    it still compares equal to itself.
    """

    raw = url.strip()
    try:
        parsed = urlparse(raw)
    except ValueError:
        return raw
    scheme = (parsed.scheme or "https").lower()
    netloc = parsed.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    if netloc.endswith(":80") and scheme == "http":
        netloc = netloc[:-3]
    if netloc.endswith(":443") and scheme == "https":
        netloc = netloc[:-4]

    path = re.sub(r"/{2,}", "/", parsed.path or "/")
    if len(path) > 1:
        path = path.rstrip("/")
    normalized_query = "&".join(
        sorted(filter(None, parsed.query.split("&"))),
    )
    cleaned = parsed._replace(
        scheme=scheme,
        netloc=netloc,
        path=path,
        params="",
        query=normalized_query,
        fragment="",
    )
    return str(urlunparse(cleaned))


def extract_title(url: str) -> str | None:
    """Turn the most descriptive path segment of a URL into a search phrase.

    Returns None when the URL has no host or no segment carries words, e.g.
    `https://example.com/` or `https://example.com/12345`.
    """

    raw = url.strip()
    if not raw:
        return None
    if "://" not in raw:
        raw = f"https://{raw}"
    try:
        parsed = urlparse(raw)
    except ValueError:
        return None
    if not parsed.netloc:
        return None

    segments = [unquote(part) for part in parsed.path.split("/") if part.strip()]
    for segment in reversed(segments):
        lowered = segment.lower()
        for suffix in _PAGE_SUFFIXES:
            if lowered.endswith(suffix):
                segment = segment[: -len(suffix)]
                break
        words = _WHITESPACE_RE.sub(" ", _SEPARATOR_RE.sub(" ", segment)).strip()
        if sum(char.isalpha() for char in words) >= _MIN_TITLE_LETTERS:
            return words
    return None


def citation_similarity(expected: Iterable[str], actual: Iterable[str]) -> float:
    """Jaccard overlap of canonicalized citation URLs."""

    expected_set = {canonicalize_url(item) for item in expected if item and item.strip()}
    actual_set = {canonicalize_url(item) for item in actual if item and item.strip()}
    if not expected_set and not actual_set:
        return 1.0
    if not expected_set or not actual_set:
        return 0.0
    return len(expected_set & actual_set) / len(expected_set | actual_set)
