"""Domain normalization and audited-domain matching."""

from __future__ import annotations

import ipaddress
import re
from urllib.parse import urlsplit

from app.models.visibility import DomainInfo

# Two-label public suffixes that need three labels to form a registrable domain.
TWO_LABEL_SUFFIXES = frozenset(
    {
        "co.uk",
        "org.uk",
        "ac.uk",
        "gov.uk",
        "com.au",
        "net.au",
        "org.au",
        "co.jp",
        "com.br",
        "co.in",
        "co.za",
        "co.nz",
        "com.mx",
    }
)

_HOST_RE = re.compile(r"^[a-z0-9.-]+$")
_DOMAIN_TOKEN_RE = re.compile(
    r"(?<![@\w.-])((?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,24})(?![\w-])",
    re.IGNORECASE,
)
# File-ish tokens that look like hostnames in prose.
_NON_HOST_SUFFIXES = frozenset({"js", "py", "json", "html", "htm", "php", "png", "jpg", "pdf", "txt", "md"})


class InvalidDomainError(ValueError):
    """Raised when a URL or bare domain cannot be parsed into a hostname."""


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return True


def _strip_www(host: str) -> str:
    return host[4:] if host.startswith("www.") else host


def hostname_of(url: str) -> str | None:
    """Lower-cased hostname of a URL (or bare domain) with ``www.`` removed."""
    value = (url or "").strip()
    if not value:
        return None
    if "://" not in value:
        value = f"https://{value}"
    try:
        host = urlsplit(value).hostname
    except ValueError:
        return None
    if not host:
        return None
    return _strip_www(host.lower().rstrip("."))


def etld1_of(value: str) -> str:
    """eTLD+1 of a URL or bare domain, or "" when it has no hostname."""
    host = hostname_of(value)
    return etld1(host) if host else ""


def etld1(host: str) -> str:
    host = (host or "").strip().lower().rstrip(".")
    if not host or _is_ip(host):
        return host
    labels = [part for part in host.split(".") if part]
    if len(labels) <= 2:
        return ".".join(labels)
    suffix = ".".join(labels[-2:])
    if suffix in TWO_LABEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def normalize_from_url(value: str) -> DomainInfo:
    raw = (value or "").strip()
    if not raw:
        raise InvalidDomainError("Empty domain")
    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parts = urlsplit(candidate)
        host = parts.hostname
    except ValueError as exc:
        raise InvalidDomainError(f"Invalid URL: {raw}") from exc

    if parts.scheme.lower() not in ("http", "https"):
        raise InvalidDomainError(f"Unsupported scheme: {parts.scheme}")
    if not host:
        raise InvalidDomainError(f"No hostname in: {raw}")

    host = host.lower().rstrip(".")
    if not _is_ip(host) and (not _HOST_RE.match(host) or "." not in host and host != "localhost"):
        raise InvalidDomainError(f"Invalid hostname: {host}")

    return DomainInfo(
        audited_url=f"{parts.scheme.lower()}://{host}",
        hostname=host,
        etld1=etld1(host),
        path=parts.path or "/",
    )


def is_audited_url(candidate_url: str, audited_host: str, aliases: list[str] | None = None) -> bool:
    """True when the candidate URL points at the audited host, an alias, or a sibling subdomain."""
    candidate = hostname_of(candidate_url)
    if not candidate:
        return False
    owned = [h for h in (hostname_of(x) for x in [audited_host, *(aliases or [])]) if h]
    if candidate in owned:
        return True
    candidate_root = etld1(candidate)
    return any(etld1(host) == candidate_root for host in owned)


def derive_aliases(
    audited_host: str,
    site_description: str | None = None,
    known_aliases: dict[str, list[str]] | None = None,
) -> list[str]:
    """Brand hostnames to treat as the audited domain's own.

    Draws from hostnames mentioned in the free-text site description plus an
    optional static alias map keyed by eTLD+1. Makes no network calls.
    """
    host = hostname_of(audited_host) or ""
    root = etld1(host)
    found: set[str] = set()

    for alias in (known_aliases or {}).get(root, []):
        alias_host = hostname_of(alias)
        if alias_host:
            found.add(alias_host)

    for match in _DOMAIN_TOKEN_RE.findall(site_description or ""):
        token = _strip_www(match.lower())
        if token.rsplit(".", 1)[-1] in _NON_HOST_SUFFIXES:
            continue
        found.add(token)

    return sorted(alias for alias in found if alias and etld1(alias) != root)
