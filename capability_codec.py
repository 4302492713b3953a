"""
capability_codec.py: encrypted, time-boxed capability tokens.

A capability is a compact JWE (``alg=dir``, ``enc=A256GCM``) whose plaintext
is a JSON object plus an ``exp`` claim. The key is a single process-wide
256-bit secret. Every decode failure surfaces as ``InvalidCapability`` so
callers cannot tell an expired token from a forged one.
"""

import logging
import time
from collections.abc import Callable
from typing import Any

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError
from cryptography.exceptions import InvalidTag

logger = logging.getLogger("gateway-codec")

KEY_LENGTH = 32
JWE_HEADER = {"alg": "dir", "enc": "A256GCM"}
RESERVED_CLAIMS = frozenset({"exp"})


class InvalidCapability(Exception):
    """The token is malformed, tampered, expired, or of the wrong shape."""

    def __init__(self, message: str = "Invalid capability") -> None:
        super().__init__(message)


def derive_key(secret: str) -> bytes:
    """Pad (with ``"0"``) or truncate the secret to exactly 32 bytes."""
    if not secret:
        raise ValueError("capability secret must not be empty")
    return secret.encode("utf-8").ljust(KEY_LENGTH, b"0")[:KEY_LENGTH]


class CapabilityCodec:
    """Encrypt and decrypt capability payloads under one symmetric key."""

    def __init__(self, secret: str, clock: Callable[[], float] = time.time) -> None:
        self._key = derive_key(secret)
        self._clock = clock
        self._jwt = JsonWebToken([JWE_HEADER["alg"], JWE_HEADER["enc"]])

    def encode(self, payload: dict[str, Any], ttl: int) -> str:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        clashing = RESERVED_CLAIMS.intersection(payload)
        if clashing:
            raise ValueError(f"payload uses reserved claim(s): {', '.join(sorted(clashing))}")

        claims = {**payload, "exp": int(self._clock()) + ttl}
        # Claims are encrypted, so authlib's plaintext-leak heuristics do not apply.
        token = self._jwt.encode(dict(JWE_HEADER), claims, self._key, check=False)
        return token.decode("ascii")

    def decode(self, token: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidCapability()
        now = int(self._clock())
        try:
            claims = self._jwt.decode(
                token,
                self._key,
                claims_options={"exp": {"essential": True}},
            )
            claims.validate(now=now, leeway=0)
            # authlib accepts exp == now; a capability is dead at its exp second.
            expired = claims["exp"] <= now
        except (JoseError, InvalidTag, ValueError, TypeError, KeyError) as e:
            logger.debug("capability rejected: %s", type(e).__name__)
            raise InvalidCapability() from None
        if expired:
            raise InvalidCapability()

        if claims.header.get("alg") != JWE_HEADER["alg"] or claims.header.get("enc") != JWE_HEADER["enc"]:
            raise InvalidCapability()

        payload = dict(claims)
        for name in RESERVED_CLAIMS:
            payload.pop(name, None)
        return payload
