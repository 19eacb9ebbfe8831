"""
Test helper functions and factory methods for the admission pipeline.
"""

import base64
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from jose import jwt


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is accepted."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, now: float) -> None:
        with self._lock:
            self._now = now


@dataclass
class TestUser:
    """Test user data."""
    __test__ = False

    user_id: str
    scopes: List[str] = field(default_factory=list)
    token: str = ""


class TestDataFactory:
    """Factory for creating test data."""
    __test__ = False

    @staticmethod
    def create_test_users() -> List[TestUser]:
        """Create test users."""
        return [
            TestUser(user_id="user1", scopes=["orders:read"], token="token-user1"),
            TestUser(user_id="user2", scopes=["orders:read", "orders:write"], token="token-user2"),
            TestUser(user_id="admin", scopes=["admin"], token="token-admin"),
        ]


class MockTokenGenerator:
    """Issues HS256 JWTs and the matching JWKS document."""

    def __init__(self, issuer: str = "http://localhost:8080/realms/admission", secret: str = "mock-secret", kid: str = "test-key"):
        self.issuer = issuer
        self.secret = secret
        self.kid = kid

    def jwk(self) -> Dict[str, Any]:
        encoded = base64.urlsafe_b64encode(self.secret.encode("utf-8")).rstrip(b"=").decode("ascii")
        return {"kty": "oct", "kid": self.kid, "alg": "HS256", "k": encoded}

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.jwk()]}

    def generate_access_token(
        self,
        subject: str,
        scopes: Iterable[str] = (),
        expires_in: int = 3600,
        **extra_claims: Any,
    ) -> str:
        now = int(time.time())
        payload = {
            "sub": subject,
            "iss": self.issuer,
            "iat": now,
            "exp": now + expires_in,
            "scope": " ".join(scopes),
        }
        payload.update(extra_claims)
        return jwt.encode(payload, self.secret, algorithm="HS256", headers={"kid": self.kid})

