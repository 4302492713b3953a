"""Tests for capability_scope.py."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from capability_codec import InvalidCapability
from capability_scope import (
    AccessCapabilityPayload,
    ApiAllowance,
    AuthorizationCodePayload,
    LegacyPinnedPayload,
    compile_pattern,
    is_canonical_path,
    issue_scoped_capability,
    matches,
    parse_capability,
    proxy_url,
)

BUILDS = [ApiAllowance(path="/api/v1/sites/:site_id/builds", method="POST")]


# ---------------------------------------------------------------------------
# Pattern matching
# ---------------------------------------------------------------------------

class TestMatches:
    def test_placeholder_matches_site_id(self):
        assert matches(BUILDS, "/api/v1/sites/abc-123_x/builds", "POST")

    def test_method_must_match_exactly(self):
        assert not matches(BUILDS, "/api/v1/sites/abc/builds", "GET")
        assert not matches(BUILDS, "/api/v1/sites/abc/builds", "post")

    def test_other_path_refused(self):
        assert not matches(BUILDS, "/api/v1/sites/abc/deploys", "POST")
        assert not matches(BUILDS, "/api/v1/user", "POST")

    def test_placeholder_does_not_cross_segments(self):
        assert not matches(BUILDS, "/api/v1/sites/a/b/builds", "POST")

    def test_placeholder_rejects_empty_segment(self):
        assert not matches(BUILDS, "/api/v1/sites//builds", "POST")

    def test_literal_characters_are_escaped(self):
        allow = [ApiAllowance(path="/api/v1/files/site.zip", method="GET")]
        assert matches(allow, "/api/v1/files/site.zip", "GET")
        assert not matches(allow, "/api/v1/files/siteXzip", "GET")

    def test_search_is_unanchored(self):
        # Substring matches are accepted; callers scope with full paths.
        assert matches(BUILDS, "/prefix/api/v1/sites/abc/builds/extra", "POST")

    def test_any_entry_may_match(self):
        allow = [
            ApiAllowance(path="/api/v1/user", method="GET"),
            ApiAllowance(path="/api/v1/sites/:id", method="GET"),
        ]
        assert matches(allow, "/api/v1/sites/xyz", "GET")
        assert matches(allow, "/api/v1/user", "GET")
        assert not matches(allow, "/api/v1/user", "DELETE")

    @pytest.mark.parametrize("allow_list", [None, []])
    def test_empty_allow_list_is_unrestricted_by_default(self, allow_list):
        assert matches(allow_list, "/anything", "DELETE")

    @pytest.mark.parametrize("allow_list", [None, []])
    def test_empty_allow_list_refused_when_disabled(self, allow_list):
        assert not matches(allow_list, "/anything", "GET", unrestricted_when_empty=False)

    def test_compile_pattern(self):
        pattern = compile_pattern("/sites/:id/deploys/:deploy_id")
        assert pattern.search("/sites/s-1/deploys/d_2")
        assert not pattern.search("/sites/s-1/deploys/")

    @pytest.mark.parametrize("path", [
        "/api/v1/sites/abc/builds/../../victim",
        "/api/v1/sites/abc/builds/./x",
        "/x//api/v1/sites/abc/builds",
        "/api/v1/sites/abc/builds/%2e%2e/x",
        "api/v1/sites/abc/builds",
    ])
    def test_non_canonical_path_refused(self, path):
        assert not matches(BUILDS, path, "POST")

    def test_trailing_slash_still_matches(self):
        assert matches(BUILDS, "/api/v1/sites/abc/builds/", "POST")


class TestIsCanonicalPath:
    @pytest.mark.parametrize("path", [
        "/",
        "/api/v1/user",
        "/api/v1/user/",
        "/api/v1/files/site.v1.zip",
        "/api/v1/files/...",
    ])
    def test_canonical(self, path):
        assert is_canonical_path(path)

    @pytest.mark.parametrize("path", [
        "",
        "api/v1/user",
        "//api/v1/user",
        "/api//v1/user",
        "/api/v1/user//",
        "/api/./v1",
        "/api/v1/..",
        "/api/%2E%2e/user",
        "/api/%2e/user",
    ])
    def test_not_canonical(self, path):
        assert not is_canonical_path(path)


# ---------------------------------------------------------------------------
# Payload classification
# ---------------------------------------------------------------------------

class TestParseCapability:
    def test_authorization_code(self):
        payload = parse_capability({"state": {"client_id": "c"}, "accessToken": "tok"})
        assert payload == AuthorizationCodePayload(access_token="tok", state={"client_id": "c"})

    def test_unscoped_access_capability(self):
        payload = parse_capability({"accessToken": "tok"})
        assert isinstance(payload, AccessCapabilityPayload)
        assert payload.apis_allowed is None
        assert not payload.is_scoped

    def test_scoped_access_capability(self):
        payload = parse_capability({
            "accessToken": "tok",
            "apisAllowed": [{"path": "/api/v1/sites/:id/builds", "method": "POST"}],
        })
        assert isinstance(payload, AccessCapabilityPayload)
        assert payload.is_scoped
        assert payload.apis_allowed == (ApiAllowance("/api/v1/sites/:id/builds", "POST"),)

    def test_empty_allow_list_is_not_scoped(self):
        payload = parse_capability({"accessToken": "tok", "apisAllowed": []})
        assert payload.apis_allowed == ()
        assert not payload.is_scoped

    def test_legacy_pinned(self):
        payload = parse_capability({"accessToken": "tok", "apiPath": "/api/v1/user"})
        assert payload == LegacyPinnedPayload("tok", "/api/v1/user", "GET")

    @pytest.mark.parametrize("claims", [
        {},
        {"accessToken": ""},
        {"accessToken": 42},
        {"accessToken": "tok", "state": "not-a-dict"},
        {"accessToken": "tok", "apisAllowed": "POST /x"},
        {"accessToken": "tok", "apisAllowed": [{"path": "/x"}]},
        {"accessToken": "tok", "apisAllowed": ["/x"]},
        {"accessToken": "tok", "apiPath": 7},
    ])
    def test_malformed_claims_rejected(self, claims):
        with pytest.raises(InvalidCapability):
            parse_capability(claims)

    def test_to_claims_round_trip(self):
        for payload in (
            AuthorizationCodePayload("tok", {"redirect_uri": "https://c/cb"}),
            AccessCapabilityPayload("tok"),
            AccessCapabilityPayload("tok", tuple(BUILDS)),
            LegacyPinnedPayload("tok", "/api/v1/sites/x", "DELETE"),
        ):
            assert parse_capability(payload.to_claims()) == payload


# ---------------------------------------------------------------------------
# Issuing scoped capabilities
# ---------------------------------------------------------------------------

class TestIssueScopedCapability:
    def test_issued_capability_carries_allow_list(self, codec):
        token = issue_scoped_capability(codec, "nfp_user", BUILDS, 600)
        payload = parse_capability(codec.decode(token))
        assert payload == AccessCapabilityPayload("nfp_user", tuple(BUILDS))

    def test_empty_allow_list_refused(self, codec):
        with pytest.raises(ValueError):
            issue_scoped_capability(codec, "nfp_user", [], 600)

    def test_expires(self, codec, clock):
        token = issue_scoped_capability(codec, "nfp_user", BUILDS, 30)
        clock.advance(31)
        with pytest.raises(InvalidCapability):
            codec.decode(token)


class TestProxyUrl:
    def test_builds_url(self):
        assert proxy_url("https://gw.example.com/", "a.b.c.d.e", "/api/v1/user") == \
            "https://gw.example.com/proxy/a.b.c.d.e/api/v1/user"

    def test_adds_leading_slash(self):
        assert proxy_url("https://gw", "tok", "api/v1/user") == "https://gw/proxy/tok/api/v1/user"
