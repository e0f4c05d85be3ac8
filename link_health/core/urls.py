from __future__ import annotations

from urllib.parse import urlparse, urlunparse

SUPPORTED_SCHEMES = ("http://", "https://")


def normalize_target_url(raw_url: str) -> str:
    """Trimmed URL with ``https://`` prepended when no http(s) scheme is present."""
    candidate = raw_url.strip()
    if not candidate.lower().startswith(SUPPORTED_SCHEMES):
        candidate = f"https://{candidate}"
    return candidate


def comparable_url(raw_url: str) -> str:
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if ":" in netloc and not netloc.endswith("]"):
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ""))


def urls_equivalent(left: str, right: str) -> bool:
    """True when both URLs address the same resource, ignoring case of scheme/host,
    default ports, an empty path and the fragment."""
    return comparable_url(left) == comparable_url(right)
