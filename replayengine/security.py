"""Per-flow navigation allowlist."""

from __future__ import annotations

from urllib.parse import urlsplit

from replayengine.exceptions import SecurityViolation


def is_domain_allowed(url: str, allowlist: list[str]) -> bool:
    """Check a URL's hostname against exact and ``*.domain`` entries.

    An empty allowlist permits everything. ``*.example.com`` matches
    ``example.com`` itself and any of its subdomains.
    """
    if not allowlist:
        return True

    try:
        hostname = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False

    for entry in allowlist:
        pattern = entry.strip().lower()
        if not pattern:
            continue
        if pattern.startswith("*."):
            domain = pattern[2:]
            if hostname == domain or hostname.endswith("." + domain):
                return True
        elif hostname == pattern:
            return True

    return False


def assert_allowed(url: str, allowlist: list[str], flow_name: str) -> None:
    """Raise SecurityViolation unless ``url`` may be navigated to."""
    if not is_domain_allowed(url, allowlist):
        raise SecurityViolation(flow_name, url, allowlist)
