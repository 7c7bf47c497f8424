"""Domain normalization shared by every equality and dedup check in the agent."""

import re
from typing import Iterable
from urllib.parse import urlsplit

from .exceptions import DomainValidationError

# Trailing ":port" on a bare host (IPv6 literals are bracketed and handled separately)
PORT_PATTERN = re.compile(r":\d*$")


def _strip_port(host: str) -> str:
    if host.count(":") > 1:
        return host  # bare IPv6 literal
    return PORT_PATTERN.sub("", host)


def _host_from_netloc(netloc: str) -> str:
    """Drop userinfo and port from a URL netloc."""
    host = netloc.rsplit("@", 1)[-1]
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else host[1:]
    return _strip_port(host)


def normalize_domain(raw: str) -> str:
    """
    Turn arbitrary user or remote input into a canonical hostname.

    "https://www.Example.com/path?a=1" becomes "example.com". An empty
    string signals input that cannot be used as a domain; it is never an
    error. The function is deterministic and idempotent.

    Args:
        raw: URL, hostname or free text

    Returns:
        Canonical hostname, or "" if the input is unusable
    """
    if not raw or not isinstance(raw, str):
        return ""

    value = raw.strip().lower()
    if not value:
        return ""

    candidate = value
    if not candidate.startswith(("http://", "https://")):
        candidate = "http://" + candidate

    host = ""
    try:
        host = _host_from_netloc(urlsplit(candidate).netloc)
    except ValueError:
        host = ""

    if not host:
        # Parser gave up; strip the scheme by hand and keep the first segment
        stripped = value
        for scheme in ("http://", "https://"):
            if stripped.startswith(scheme):
                stripped = stripped[len(scheme):]
        host = _strip_port(stripped.split("/", 1)[0])

    while host.startswith("www."):
        host = host[len("www."):]

    host = host.split("?", 1)[0].split("#", 1)[0].strip()

    if not host or any(ch.isspace() for ch in host):
        return ""
    return host


def require_domain(raw: str) -> str:
    """
    Normalize a domain or raise if it is unusable.

    Raises:
        DomainValidationError: If normalization yields an empty result
    """
    domain = normalize_domain(raw)
    if not domain:
        raise DomainValidationError(f"Invalid domain: {raw!r}")
    return domain


def normalize_all(values: Iterable[str]) -> set[str]:
    """Normalize many inputs, dropping unusable ones and duplicates."""
    result = set()
    for value in values:
        domain = normalize_domain(value)
        if domain:
            result.add(domain)
    return result
