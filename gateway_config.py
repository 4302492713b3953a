"""
gateway_config.py: process-wide, read-only gateway configuration.

Values come from an optional ``gateway.yaml`` next to this file (or the path
passed to ``load_config``) and are then overridden by environment variables:

  OAUTH_ISSUER                            public base URL of this service
  JWE_SECRET                              symmetric secret for capabilities
  NTL_AUTH_CLIENT_ID                      OAuth client id at the identity provider
  NETLIFY_API_ORIGIN                      upstream API origin
  NETLIFY_AUTHORIZE_URL                   identity provider authorize endpoint
  NETLIFY_PERSONAL_ACCESS_TOKEN           credential for stdio mode
  GATEWAY_UPSTREAM_TIMEOUT                seconds, 10-30 recommended
  GATEWAY_ALLOW_UNSCOPED_CAPABILITIES     empty allow-list means "allow all"
  GATEWAY_ALLOW_INSECURE_DEFAULT_SECRET   permit the legacy fallback secret

Invalid configuration aborts startup with SystemExit.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

logger = logging.getLogger("gateway")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "gateway.yaml"

# Legacy fallback kept only for deployments that opt in explicitly.
INSECURE_DEFAULT_SECRET = "mysecrtypekey1234567890123456789012345678901234567890"

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}

_ENV_OVERRIDES = {
    "OAUTH_ISSUER": "issuer_url",
    "JWE_SECRET": "jwe_secret",
    "NTL_AUTH_CLIENT_ID": "idp_client_id",
    "NETLIFY_API_ORIGIN": "upstream_origin",
    "NETLIFY_AUTHORIZE_URL": "idp_authorize_url",
    "NETLIFY_PERSONAL_ACCESS_TOKEN": "personal_access_token",
    "GATEWAY_UPSTREAM_TIMEOUT": "upstream_timeout",
    "GATEWAY_ALLOW_UNSCOPED_CAPABILITIES": "allow_unscoped_capabilities",
    "GATEWAY_ALLOW_INSECURE_DEFAULT_SECRET": "allow_insecure_default_secret",
}


@dataclass(frozen=True)
class GatewayConfig:
    issuer_url: str = "http://localhost:8888"
    jwe_secret: str = field(default="", repr=False)
    upstream_origin: str = "https://api.netlify.com"
    idp_authorize_url: str = "https://app.netlify.com/authorize"
    idp_client_id: str = ""
    raw_token_prefixes: tuple[str, ...] = ("nfp_", "nfc_")
    upstream_timeout: float = 30.0
    code_ttl: int = 60
    access_ttl: int = 48 * 3600
    proxy_capability_ttl: int = 3600
    allow_unscoped_capabilities: bool = True
    allow_insecure_default_secret: bool = False
    max_registered_clients: int = 100
    personal_access_token: str = field(default="", repr=False)

    def effective_secret(self) -> str:
        """Secret the capability codec is keyed with.

        Raises SystemExit when no secret is configured and the insecure
        fallback has not been enabled.
        """
        if self.jwe_secret:
            return self.jwe_secret
        if not self.allow_insecure_default_secret:
            raise SystemExit(
                "JWE_SECRET is not configured. Set it, or set "
                "GATEWAY_ALLOW_INSECURE_DEFAULT_SECRET=true for local development only."
            )
        logger.warning("gateway: using the insecure default capability secret")
        return INSECURE_DEFAULT_SECRET


def _validate_url(name: str, value: str) -> str:
    try:
        _URL_ADAPTER.validate_python(value)
    except ValidationError:
        raise SystemExit(f"Invalid {name}: {value!r} is not an http(s) URL")
    return value.rstrip("/")


def _coerce_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise SystemExit(f"Invalid {name}: expected a boolean, got {value!r}")


def _coerce(name: str, value: Any) -> Any:
    if name in ("allow_unscoped_capabilities", "allow_insecure_default_secret"):
        return _coerce_bool(name, value)
    if name == "raw_token_prefixes":
        if isinstance(value, str):
            value = [p.strip() for p in value.split(",")]
        if not isinstance(value, (list, tuple)):
            raise SystemExit(f"Invalid {name}: expected a list of prefixes")
        return tuple(str(p) for p in value if p)
    try:
        if name == "upstream_timeout":
            return float(value)
        if name in ("code_ttl", "access_ttl", "proxy_capability_ttl", "max_registered_clients"):
            return int(value)
    except (TypeError, ValueError):
        raise SystemExit(f"Invalid {name}: {value!r} is not a number")
    return str(value)


def _read_yaml(config_path: Path) -> dict[str, Any]:
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid {config_path}: expected a mapping at the top level")
    return raw


def load_config(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> GatewayConfig:
    """Build a GatewayConfig from YAML (optional) and environment overrides."""
    if environ is None:
        environ = os.environ

    values: dict[str, Any] = {}
    if config_path is None and DEFAULT_CONFIG_PATH.exists():
        config_path = DEFAULT_CONFIG_PATH
    if config_path is not None:
        if not config_path.exists():
            raise SystemExit(f"Gateway config not found: {config_path}")
        values.update(_read_yaml(config_path))

    for env_name, attr in _ENV_OVERRIDES.items():
        if env_name in environ:
            values[attr] = environ[env_name]

    known = {f.name for f in fields(GatewayConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise SystemExit(f"Unknown gateway config keys: {', '.join(unknown)}")

    coerced = {name: _coerce(name, value) for name, value in values.items()}
    for name in ("issuer_url", "upstream_origin", "idp_authorize_url"):
        if name in coerced:
            coerced[name] = _validate_url(name, coerced[name])

    timeout = coerced.get("upstream_timeout", GatewayConfig.upstream_timeout)
    if timeout <= 0:
        raise SystemExit("Invalid upstream_timeout: must be positive")
    for name in ("code_ttl", "access_ttl", "proxy_capability_ttl"):
        if coerced.get(name, 1) <= 0:
            raise SystemExit(f"Invalid {name}: must be positive")

    return GatewayConfig(**coerced)
