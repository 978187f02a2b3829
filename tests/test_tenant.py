"""
tests/test_tenant.py -- Unit tests for auth.tenant.resolve_tenant.

Precedence: explicit header > first host label (dotted, non-IP) > default.
The resolver is total: every input yields a non-empty tenant id, and every
source is folded to lower case.
"""

from __future__ import annotations

import pytest
from starlette.datastructures import Headers

from auth.tenant import resolve_tenant, tenant_from_host


class TestResolveTenant:
    def test_header_wins(self) -> None:
        assert resolve_tenant({"X-Tenant-ID": "acme", "host": "globex.example.com"}) == "acme"

    def test_host_subdomain(self) -> None:
        assert resolve_tenant({"host": "acme.example.com"}) == "acme"

    def test_localhost_falls_back_to_default(self) -> None:
        assert resolve_tenant({"host": "localhost"}) == "default"

    def test_no_headers_at_all(self) -> None:
        assert resolve_tenant({}) == "default"

    def test_blank_header_is_ignored(self) -> None:
        assert resolve_tenant({"X-Tenant-ID": "   ", "host": "acme.example.com"}) == "acme"

    def test_header_value_is_stripped(self) -> None:
        assert resolve_tenant({"X-Tenant-ID": "  acme  "}) == "acme"

    def test_header_and_host_fold_to_the_same_tenant(self) -> None:
        assert resolve_tenant({"X-Tenant-ID": "ACME"}) == "acme"
        assert resolve_tenant({"X-Tenant-ID": "ACME"}) == resolve_tenant({"host": "acme.example.com"})

    def test_plain_dict_header_lookup_is_case_insensitive(self) -> None:
        assert resolve_tenant({"x-tenant-id": "acme"}) == "acme"

    def test_starlette_headers(self) -> None:
        headers = Headers(raw=[(b"host", b"initech.example.com:8443")])
        assert resolve_tenant(headers) == "initech"

    def test_custom_default_and_header_name(self) -> None:
        assert resolve_tenant({}, default="public") == "public"
        assert resolve_tenant({"X-Org": "acme"}, header_name="X-Org") == "acme"
        assert resolve_tenant({"X-Tenant-ID": "acme"}, header_name="X-Org") == "default"


class TestTenantFromHost:
    @pytest.mark.parametrize(
        ("host", "expected"),
        [
            ("acme.example.com", "acme"),
            ("ACME.Example.com", "acme"),
            ("acme.example.com:8080", "acme"),
            ("localhost", None),
            ("localhost:8000", None),
            ("127.0.0.1", None),
            ("127.0.0.1:8000", None),
            ("[::1]:8000", None),
            ("", None),
            (None, None),
        ],
    )
    def test_host_label(self, host, expected) -> None:
        assert tenant_from_host(host) == expected
