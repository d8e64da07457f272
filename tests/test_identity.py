"""
Unit tests for identity resolution and bearer token verification.
"""

import time

import pytest
from jose import jwt

from ai_credit_guard.core.identity import JWTTokenVerifier, resolve_identity, sanitize_fingerprint

SECRET = "test-secret"


def _token(sub="alice", secret=SECRET, **claims):
    payload = {"sub": sub, "exp": int(time.time()) + 3600}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


class StaticVerifier:
    """Verifier double accepting one token."""

    def __init__(self, token="good", user_id="alice"):
        self.token = token
        self.user_id = user_id
        self.calls = []

    def verify(self, token):
        self.calls.append(token)
        return self.user_id if token == self.token else None


class TestResolveIdentity:
    """Test classification into user or demo scope."""

    def test_valid_bearer_token(self):
        identity = resolve_identity(
            {"Authorization": "Bearer good", "X-Device-Fingerprint": "dev-1"},
            StaticVerifier(),
        )
        assert not identity.is_demo
        assert identity.user_id == "alice"
        assert identity.scope_key == "user:alice"
        assert identity.device_fingerprint == "dev-1"

    def test_invalid_token_falls_back_to_demo(self):
        """A bad token is never an error, only demo scope."""
        identity = resolve_identity(
            {"authorization": "Bearer forged", "x-device-fingerprint": "dev-1"},
            StaticVerifier(),
        )
        assert identity.is_demo
        assert identity.user_id is None
        assert identity.scope_key == "demo:dev-1"

    def test_bearer_prefix_is_exact(self):
        """Only the exact 'Bearer ' prefix is honored."""
        verifier = StaticVerifier()
        identity = resolve_identity({"authorization": "bearer good", "x-device-fingerprint": "d"}, verifier)
        assert identity.is_demo
        assert verifier.calls == []

    def test_no_verifier_means_demo_only(self):
        identity = resolve_identity({"authorization": "Bearer good", "x-device-fingerprint": "d"}, None)
        assert identity.is_demo

    def test_fingerprint_is_sanitized(self):
        identity = resolve_identity({"x-device-fingerprint": "ab c/<d>.e:f_g-h"})
        assert identity.device_fingerprint == "abcd.e:f_g-h"
        assert identity.scope_key == "demo:abcd.e:f_g-h"

    def test_fingerprint_truncated(self):
        assert len(sanitize_fingerprint("x" * 500)) == 120

    def test_forwarded_ip_fallback(self):
        """Without a fingerprint the first forwarded address is used."""
        identity = resolve_identity({"x-forwarded-for": "203.0.113.9, 10.0.0.1"})
        assert identity.device_fingerprint == "ip_203.0.113.9"

    def test_cloudflare_ip_fallback(self):
        identity = resolve_identity({"cf-connecting-ip": "198.51.100.4"})
        assert identity.device_fingerprint == "ip_198.51.100.4"

    def test_anonymous_fallback_is_random(self):
        first = resolve_identity({})
        second = resolve_identity({})
        assert first.device_fingerprint.startswith("anon_")
        assert first.device_fingerprint != second.device_fingerprint


class TestJWTTokenVerifier:
    """Test JWT verification with python-jose."""

    def test_valid_token(self):
        assert JWTTokenVerifier(SECRET).verify(_token()) == "alice"

    def test_wrong_secret(self):
        assert JWTTokenVerifier(SECRET).verify(_token(secret="other")) is None

    def test_expired_token(self):
        token = _token(exp=int(time.time()) - 10)
        assert JWTTokenVerifier(SECRET).verify(token) is None

    def test_garbage_token(self):
        assert JWTTokenVerifier(SECRET).verify("not.a.jwt") is None

    def test_missing_subject(self):
        token = jwt.encode({"exp": int(time.time()) + 60}, SECRET, algorithm="HS256")
        assert JWTTokenVerifier(SECRET).verify(token) is None

    def test_audience_enforced(self):
        verifier = JWTTokenVerifier(SECRET, audience="app")
        assert verifier.verify(_token(aud="app")) == "alice"
        assert verifier.verify(_token(aud="other")) is None

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            JWTTokenVerifier("")
