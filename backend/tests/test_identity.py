"""Unit tests for caller identity resolution."""

from quotaguard.services.identity import (
    UNKNOWN_IP,
    extract_api_key,
    resolve_client_ip,
    resolve_identity,
)
from quotaguard.services.records import IdentityClass, Principal


class TestResolveIdentity:
    """Priority: API key > principal > IP."""

    def test_api_key_header_wins_over_principal(self):
        identity = resolve_identity(
            {"X-API-Key": "abc123"}, {}, "10.0.0.1", Principal(user_id="42"),
        )
        assert identity.value == "key:abc123"
        assert identity.id_class == IdentityClass.API_KEY

    def test_api_key_query_param_used_when_header_missing(self):
        identity = resolve_identity({}, {"api_key": "qk"}, "10.0.0.1", None)
        assert identity.value == "key:qk"

    def test_header_preferred_over_query_param(self):
        identity = resolve_identity({"x-api-key": "hdr"}, {"api_key": "qk"}, None, None)
        assert identity.value == "key:hdr"

    def test_principal_without_key(self):
        identity = resolve_identity({}, {}, "10.0.0.1", Principal(user_id="42", role="editor"))
        assert identity.value == "user:42"
        assert identity.id_class == IdentityClass.USER
        assert not identity.is_anonymous

    def test_anonymous_falls_back_to_ip(self):
        identity = resolve_identity({}, {}, "198.51.100.9", None)
        assert identity.value == "ip:198.51.100.9"
        assert identity.is_anonymous
        assert identity.bare == "198.51.100.9"

    def test_blank_api_key_ignored(self):
        identity = resolve_identity({"X-API-Key": "   "}, {}, "198.51.100.9", None)
        assert identity.id_class == IdentityClass.IP

    def test_custom_header_name(self):
        identity = resolve_identity(
            {"Authorization-Key": "zzz"}, {}, None, None, api_key_header="Authorization-Key",
        )
        assert identity.value == "key:zzz"


class TestResolveClientIp:
    def test_cloudflare_header_first(self):
        headers = {
            "CF-Connecting-IP": "203.0.113.1",
            "X-Forwarded-For": "203.0.113.2",
        }
        assert resolve_client_ip(headers, "10.0.0.1") == "203.0.113.1"

    def test_forwarded_for_takes_first_hop(self):
        headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.2, 10.0.0.3"}
        assert resolve_client_ip(headers, "10.0.0.1") == "203.0.113.7"

    def test_invalid_header_value_skipped(self):
        headers = {"X-Forwarded-For": "not-an-ip", "X-Real-IP": "203.0.113.8"}
        assert resolve_client_ip(headers, "10.0.0.1") == "203.0.113.8"

    def test_peer_address_when_no_proxy_headers(self):
        assert resolve_client_ip({}, "192.0.2.4") == "192.0.2.4"

    def test_ipv6_accepted(self):
        assert resolve_client_ip({}, "2001:db8::1") == "2001:db8::1"

    def test_unknown_sentinel(self):
        assert resolve_client_ip({}, None) == UNKNOWN_IP
        assert resolve_client_ip({}, "testclient") == UNKNOWN_IP

    def test_untrusted_header_ignored(self):
        headers = {"X-Forwarded-For": "203.0.113.7"}
        assert resolve_client_ip(headers, "192.0.2.4", trusted_proxy_headers=()) == "192.0.2.4"


class TestExtractApiKey:
    def test_none_when_absent(self):
        assert extract_api_key({}, {}) is None

    def test_strips_whitespace(self):
        assert extract_api_key({"X-API-Key": "  k1 "}, {}) == "k1"
