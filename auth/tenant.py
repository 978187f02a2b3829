"""
auth/tenant.py -- Derive the active tenant identifier from request headers.

Precedence:
  1. Explicit tenant header (X-Tenant-ID by default) when present and not blank.
  2. First label of the Host header when the host name contains a dot
     (acme.example.com -> "acme"). The port is ignored and IP literals are
     not treated as subdomains.
  3. The configured default tenant.

Tenant ids are case-insensitive: every source is folded to lower case by
normalize_tenant(), so "X-Tenant-ID: ACME" and host acme.example.com name the
same tenant.

resolve_tenant() is a pure, total function: it never raises and always
returns a non-empty tenant id. Whether that id is trusted for authorization
is decided by the edge filter (see gateway/edge.py, TENANT_ENFORCEMENT).

Layer rule: stdlib only.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Mapping

DEFAULT_TENANT = "default"
TENANT_HEADER = "X-Tenant-ID"


def normalize_tenant(value: str) -> str:
    return value.strip().lower()


def _host_name(host: str) -> str:
    host = host.strip()
    if host.startswith("["):
        # Bracketed IPv6 literal, optionally with a port.
        return host[1 : host.find("]")] if "]" in host else host
    if host.count(":") == 1:
        host = host.split(":", 1)[0]
    return host.rstrip(".").lower()


def _is_ip(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def tenant_from_host(host: str | None) -> str | None:
    """Return the subdomain label of host, or None if it has none."""
    if not host:
        return None
    name = _host_name(host)
    if "." not in name or _is_ip(name):
        return None
    label = name.split(".", 1)[0]
    return label or None


def _get_header(headers: Mapping[str, str], name: str) -> str | None:
    # Starlette Headers and plain dicts from tests both reach here; only the
    # former is case-insensitive.
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def resolve_tenant(
    headers: Mapping[str, str],
    default: str = DEFAULT_TENANT,
    header_name: str = TENANT_HEADER,
) -> str:
    explicit = _get_header(headers, header_name)
    if explicit is not None and explicit.strip():
        return normalize_tenant(explicit)
    from_host = tenant_from_host(_get_header(headers, "host"))
    if from_host:
        return from_host
    return normalize_tenant(default)
