"""Shared fixtures for the gateway tests."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from capability_codec import CapabilityCodec
from gateway_config import GatewayConfig

ISSUER = "https://gw.example.com"
UPSTREAM = "https://api.netlify.test"


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return GatewayConfig(
        issuer_url=ISSUER,
        jwe_secret="test-secret-for-capabilities",
        upstream_origin=UPSTREAM,
        idp_authorize_url="https://idp.example.com/authorize",
        idp_client_id="idp-client",
        upstream_timeout=10.0,
        max_registered_clients=3,
    )


@pytest.fixture
def codec(config, clock):
    return CapabilityCodec(config.jwe_secret, clock=clock)
