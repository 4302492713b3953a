"""
capability_scope.py: what a capability is allowed to do.

Decoded capability payloads come in three shapes, told apart by which fields
are present:

  AuthorizationCodePayload   {state, accessToken}           token endpoint only
  AccessCapabilityPayload    {accessToken, apisAllowed?}    gate and proxy
  LegacyPinnedPayload        {accessToken, apiPath, apiMethod}  proxy only

An allow-list entry pairs a path pattern with one HTTP method. ``:name``
segments in the pattern match one path segment of word characters and
hyphens.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote

from capability_codec import CapabilityCodec, InvalidCapability

_PLACEHOLDER = re.compile(r":\w+")
_SEGMENT_CLASS = r"[\w-]+"
_DOT_SEGMENTS = (".", "..")


@dataclass(frozen=True)
class ApiAllowance:
    path: str
    method: str

    @classmethod
    def from_dict(cls, raw: Any) -> "ApiAllowance":
        if not isinstance(raw, dict):
            raise InvalidCapability()
        path, method = raw.get("path"), raw.get("method")
        if not isinstance(path, str) or not isinstance(method, str):
            raise InvalidCapability()
        return cls(path=path, method=method)

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "method": self.method}


@dataclass(frozen=True)
class AuthorizationCodePayload:
    access_token: str
    state: dict[str, Any]

    def to_claims(self) -> dict[str, Any]:
        return {"state": self.state, "accessToken": self.access_token}


@dataclass(frozen=True)
class AccessCapabilityPayload:
    access_token: str
    apis_allowed: tuple[ApiAllowance, ...] | None = None

    @property
    def is_scoped(self) -> bool:
        return bool(self.apis_allowed)

    def to_claims(self) -> dict[str, Any]:
        claims: dict[str, Any] = {"accessToken": self.access_token}
        if self.apis_allowed is not None:
            claims["apisAllowed"] = [a.to_dict() for a in self.apis_allowed]
        return claims


@dataclass(frozen=True)
class LegacyPinnedPayload:
    access_token: str
    api_path: str
    api_method: str = field(default="GET")

    def to_claims(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "apiPath": self.api_path,
            "apiMethod": self.api_method,
        }


CapabilityPayload = AuthorizationCodePayload | AccessCapabilityPayload | LegacyPinnedPayload


def parse_capability(claims: dict[str, Any]) -> CapabilityPayload:
    """Classify decoded claims into one of the payload variants."""
    access_token = claims.get("accessToken")
    if not isinstance(access_token, str) or not access_token:
        raise InvalidCapability()

    if "state" in claims:
        state = claims["state"]
        if not isinstance(state, dict):
            raise InvalidCapability()
        return AuthorizationCodePayload(access_token=access_token, state=state)

    if "apiPath" in claims:
        api_path = claims["apiPath"]
        api_method = claims.get("apiMethod", "GET")
        if not isinstance(api_path, str) or not isinstance(api_method, str):
            raise InvalidCapability()
        return LegacyPinnedPayload(access_token, api_path, api_method)

    raw_allowed = claims.get("apisAllowed")
    if raw_allowed is None:
        return AccessCapabilityPayload(access_token=access_token)
    if not isinstance(raw_allowed, list):
        raise InvalidCapability()
    allowed = tuple(ApiAllowance.from_dict(a) for a in raw_allowed)
    return AccessCapabilityPayload(access_token=access_token, apis_allowed=allowed)


def compile_pattern(path: str) -> re.Pattern[str]:
    """Translate ``/sites/:id/builds`` into a regular expression."""
    parts = []
    last = 0
    for m in _PLACEHOLDER.finditer(path):
        parts.append(re.escape(path[last:m.start()]))
        parts.append(_SEGMENT_CLASS)
        last = m.end()
    parts.append(re.escape(path[last:]))
    return re.compile("".join(parts))


def is_canonical_path(path: str) -> bool:
    """True if ``path`` is absolute and has no empty, ``.`` or ``..`` segment.

    A single trailing slash is allowed. Percent-encoded dots count as dots,
    since HTTP clients and servers may normalize them away after checking.
    """
    if not path.startswith("/"):
        return False
    segments = path[1:].split("/")
    if segments[-1] == "":
        segments.pop()
    for segment in segments:
        if not segment or unquote(segment) in _DOT_SEGMENTS:
            return False
    return True


def matches(
    allow_list: Iterable[ApiAllowance] | None,
    requested_path: str,
    requested_method: str,
    unrestricted_when_empty: bool = True,
) -> bool:
    """True if any entry allows ``requested_method`` on ``requested_path``.

    Path patterns are searched unanchored. Method comparison is exact and
    case-sensitive. An absent or empty allow-list yields
    ``unrestricted_when_empty``. A non-canonical path never matches a
    non-empty allow-list.
    """
    entries = list(allow_list or ())
    if not entries:
        return unrestricted_when_empty
    if not is_canonical_path(requested_path):
        return False
    for entry in entries:
        if entry.method != requested_method:
            continue
        if compile_pattern(entry.path).search(requested_path):
            return True
    return False


def issue_scoped_capability(
    codec: CapabilityCodec,
    access_token: str,
    apis_allowed: Iterable[ApiAllowance],
    ttl: int,
) -> str:
    """Mint an access capability limited to ``apis_allowed``."""
    allowed = tuple(apis_allowed)
    if not allowed:
        raise ValueError("a scoped capability needs at least one allowed API")
    payload = AccessCapabilityPayload(access_token=access_token, apis_allowed=allowed)
    return codec.encode(payload.to_claims(), ttl)


def proxy_url(issuer_url: str, capability: str, upstream_path: str) -> str:
    """URL a delegate uses to reach ``upstream_path`` through the proxy."""
    if not upstream_path.startswith("/"):
        upstream_path = "/" + upstream_path
    return f"{issuer_url.rstrip('/')}/proxy/{capability}{upstream_path}"
