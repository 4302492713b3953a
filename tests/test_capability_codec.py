"""Tests for capability_codec.py."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from capability_codec import KEY_LENGTH, CapabilityCodec, InvalidCapability, derive_key


def _flip_middle(segment: str) -> str:
    i = len(segment) // 2
    replacement = "A" if segment[i] != "A" else "B"
    return segment[:i] + replacement + segment[i + 1:]


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

class TestDeriveKey:
    def test_short_secret_is_zero_padded(self):
        assert derive_key("abc") == b"abc" + b"0" * (KEY_LENGTH - 3)

    def test_long_secret_is_truncated(self):
        assert derive_key("x" * 50) == b"x" * KEY_LENGTH

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            derive_key("")


# ---------------------------------------------------------------------------
# Round trip
# ---------------------------------------------------------------------------

class TestRoundTrip:
    @pytest.mark.parametrize("payload", [
        {"accessToken": "nfp_abc"},
        {"accessToken": "t", "apisAllowed": [{"path": "/api/v1/sites/:id/builds", "method": "POST"}]},
        {"state": {"redirect_uri": "https://c.example.com/cb", "state": "xyz"}, "accessToken": "t"},
        {"unicode": "déploiement ✓", "nested": {"list": [1, 2.5, None, True]}},
    ])
    def test_decode_returns_original_payload(self, codec, payload):
        assert codec.decode(codec.encode(payload, 60)) == payload

    def test_token_is_compact_jwe(self, codec):
        token = codec.encode({"accessToken": "t"}, 60)
        assert token.count(".") == 4
        # dir key management: no encrypted key segment
        assert token.split(".")[1] == ""

    def test_payload_is_not_readable_in_token(self, codec):
        token = codec.encode({"accessToken": "super-secret-credential"}, 60)
        assert "super-secret-credential" not in token

    def test_reserved_claim_rejected(self, codec):
        with pytest.raises(ValueError, match="exp"):
            codec.encode({"accessToken": "t", "exp": 1}, 60)

    def test_non_positive_ttl_rejected(self, codec):
        with pytest.raises(ValueError):
            codec.encode({"accessToken": "t"}, 0)


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

class TestExpiry:
    def test_valid_until_ttl(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 60)
        clock.advance(59)
        assert codec.decode(token) == {"accessToken": "t"}

    def test_expired_after_ttl(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 60)
        clock.advance(61)
        with pytest.raises(InvalidCapability):
            codec.decode(token)

    def test_rejected_at_exact_expiry(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 60)
        clock.advance(60)
        with pytest.raises(InvalidCapability):
            codec.decode(token)

    def test_fractional_clock_before_expiry_is_valid(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 60)
        clock.advance(59.9)
        assert codec.decode(token) == {"accessToken": "t"}

    def test_long_ttl_survives_hours(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 48 * 3600)
        clock.advance(47 * 3600)
        assert codec.decode(token)["accessToken"] == "t"


# ---------------------------------------------------------------------------
# Tampering and malformed input
# ---------------------------------------------------------------------------

class TestTamperRejection:
    @pytest.mark.parametrize("segment_index", [0, 2, 3, 4])
    def test_flipped_segment_rejected(self, codec, segment_index):
        token = codec.encode({"accessToken": "t", "apisAllowed": []}, 60)
        parts = token.split(".")
        parts[segment_index] = _flip_middle(parts[segment_index])
        with pytest.raises(InvalidCapability):
            codec.decode(".".join(parts))

    def test_every_ciphertext_position_rejected(self, codec):
        token = codec.encode({"accessToken": "nfp_1234"}, 60)
        header, key, iv, ciphertext, tag = token.split(".")
        # Skip the final char: its low bits may be base64 padding.
        for i in range(len(ciphertext) - 1):
            replacement = "A" if ciphertext[i] != "A" else "B"
            tampered = ciphertext[:i] + replacement + ciphertext[i + 1:]
            with pytest.raises(InvalidCapability):
                codec.decode(".".join([header, key, iv, tampered, tag]))

    def test_wrong_key_rejected(self, codec, clock):
        token = codec.encode({"accessToken": "t"}, 60)
        other = CapabilityCodec("a-different-secret", clock=clock)
        with pytest.raises(InvalidCapability):
            other.decode(token)

    @pytest.mark.parametrize("token", [
        "",
        "not-a-token",
        "a.b.c",
        "a.b.c.d.e",
        "....",
    ])
    def test_malformed_rejected(self, codec, token):
        with pytest.raises(InvalidCapability):
            codec.decode(token)

    def test_errors_are_indistinguishable(self, codec, clock):
        expired = codec.encode({"accessToken": "t"}, 10)
        tampered = _flip_middle(codec.encode({"accessToken": "t"}, 600))
        clock.advance(11)

        with pytest.raises(InvalidCapability) as expired_exc:
            codec.decode(expired)
        with pytest.raises(InvalidCapability) as tampered_exc:
            codec.decode(tampered)
        assert str(expired_exc.value) == str(tampered_exc.value)
