"""
Identity resolution.

Classifies a request as an authenticated user or an anonymous,
device-scoped demo visitor. Resolution never fails: anything that cannot be
authenticated is served in demo scope.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

from jose import JWTError, jwt

logger = logging.getLogger(__name__)

FINGERPRINT_HEADER = "x-device-fingerprint"
_FINGERPRINT_UNSAFE = re.compile(r"[^a-zA-Z0-9._:-]")
_MAX_FINGERPRINT_LENGTH = 120


class TokenVerifier(Protocol):
    def verify(self, token: str) -> Optional[str]:
        """Return the user id for a valid token, None otherwise."""


class JWTTokenVerifier:
    """Verifies bearer JWTs signed with a shared secret.

    The ``sub`` claim is the user id. Expired, malformed or wrongly signed
    tokens verify to None.
    """

    def __init__(self, secret: str, algorithms: Sequence[str] = ("HS256",), audience: Optional[str] = None):
        if not secret:
            raise ValueError("secret is required and cannot be empty")
        self.secret = secret
        self.algorithms = list(algorithms)
        self.audience = audience

    def verify(self, token: str) -> Optional[str]:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as e:
            logger.info("Bearer token rejected, falling back to demo scope: %s", e)
            return None
        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            return None
        return subject


@dataclass(frozen=True)
class RequestIdentity:
    """Who a request is billed to."""
    user_id: Optional[str]
    is_demo: bool
    scope_key: str
    device_fingerprint: str


def sanitize_fingerprint(value: str) -> str:
    return _FINGERPRINT_UNSAFE.sub("", value)[:_MAX_FINGERPRINT_LENGTH]


def _fallback_fingerprint(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for") or headers.get("cf-connecting-ip") or ""
    ip = forwarded.split(",")[0].strip()
    if ip:
        fingerprint = sanitize_fingerprint(f"ip_{ip}")
        if fingerprint != "ip_":
            return fingerprint
    return sanitize_fingerprint(f"anon_{uuid.uuid4()}")


def resolve_identity(headers: Mapping[str, str], verifier: Optional[TokenVerifier] = None) -> RequestIdentity:
    """Resolve the billing identity of a request.

    Args:
        headers: Request headers (any casing)
        verifier: Bearer token verifier; None disables authentication

    Returns:
        RequestIdentity with a ``user:<id>`` or ``demo:<fingerprint>`` scope key
    """
    normalized = {str(k).lower(): str(v) for k, v in headers.items()}

    fingerprint = sanitize_fingerprint(normalized.get(FINGERPRINT_HEADER, ""))
    if not fingerprint:
        fingerprint = _fallback_fingerprint(normalized)

    user_id = None
    authorization = normalized.get("authorization", "")
    if verifier is not None and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            user_id = verifier.verify(token)

    if user_id is None:
        return RequestIdentity(
            user_id=None,
            is_demo=True,
            scope_key=f"demo:{fingerprint}",
            device_fingerprint=fingerprint,
        )
    return RequestIdentity(
        user_id=user_id,
        is_demo=False,
        scope_key=f"user:{user_id}",
        device_fingerprint=fingerprint,
    )
