"""Domain normalization shared by every deduplication step."""

from __future__ import annotations

from urllib.parse import urlsplit


def normalize_domain(raw: str | None) -> str:
    """Return the comparable domain key for a URL or bare host.

    ``https://`` is assumed when no scheme is present. The host is lowercased and
    a leading ``www.`` is dropped. Unparsable input falls back to the lowercased
    literal. Applying the function twice yields the same value.
    """
    if not raw:
        return ""
    candidate = raw.strip()
    if not candidate:
        return ""
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        host = ""
    if not host:
        return _strip_www(raw.strip().lower())
    return _strip_www(host.lower().rstrip("."))


def _strip_www(value: str) -> str:
    return value[4:] if value.startswith("www.") else value
