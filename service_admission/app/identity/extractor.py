"""
Client identity derivation for admission control.
"""

import hashlib
from typing import Callable, Dict, Iterable, Optional

from shared.config import IdentitySettings

from ..domain.models import Request

ANONYMOUS = "anonymous"
KNOWN_SOURCES = ("api_key", "bearer", "ip")
DEFAULT_PRECEDENCE = ("ip",)


def _digest(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]


class ClientKeyExtractor:
    """Derive a stable rate-limit key from a request.

    Sources are tried in ``precedence`` order and the first one that yields a
    value wins. Keys carry their source as a prefix so an API key can never
    collide with an IP address. Secrets are hashed before use.

    Extraction runs before authentication, so ``api_key`` and ``bearer`` keys
    come from unverified headers: a client that rotates header values gets a
    fresh bucket per value. Only list them ahead of ``ip`` when an upstream
    proxy has already vetted those headers. The default keys on the network
    address alone.
    """

    def __init__(
        self,
        precedence: Iterable[str] = DEFAULT_PRECEDENCE,
        *,
        trust_forwarded_headers: bool = False,
        api_key_header: str = "X-API-Key",
    ) -> None:
        self.precedence = tuple(precedence)
        if not self.precedence:
            raise ValueError("At least one identity source is required")
        unknown = [source for source in self.precedence if source not in KNOWN_SOURCES]
        if unknown:
            raise ValueError(f"Unknown identity sources: {', '.join(unknown)}")
        self.trust_forwarded_headers = trust_forwarded_headers
        self.api_key_header = api_key_header
        self._sources: Dict[str, Callable[[Request], Optional[str]]] = {
            "api_key": self._from_api_key,
            "bearer": self._from_bearer,
            "ip": self._from_ip,
        }

    @classmethod
    def from_settings(cls, settings: IdentitySettings) -> "ClientKeyExtractor":
        return cls(
            settings.precedence,
            trust_forwarded_headers=settings.trust_forwarded_headers,
            api_key_header=settings.api_key_header,
        )

    def extract(self, request: Request) -> str:
        """Return the identity key for ``request``."""
        for source in self.precedence:
            key = self._sources[source](request)
            if key:
                return key
        return ANONYMOUS

    def _from_api_key(self, request: Request) -> Optional[str]:
        api_key = request.header(self.api_key_header)
        if api_key and api_key.strip():
            return f"key:{_digest(api_key.strip())}"
        return None

    def _from_bearer(self, request: Request) -> Optional[str]:
        authorization = request.header("Authorization")
        if authorization and authorization.startswith("Bearer "):
            token = authorization[7:].strip()
            if token:
                return f"bearer:{_digest(token)}"
        return None

    def _from_ip(self, request: Request) -> Optional[str]:
        if self.trust_forwarded_headers:
            forwarded_for = request.header("X-Forwarded-For")
            if forwarded_for:
                first_hop = forwarded_for.split(",")[0].strip()
                if first_hop:
                    return f"ip:{first_hop}"

            real_ip = request.header("X-Real-IP")
            if real_ip and real_ip.strip():
                return f"ip:{real_ip.strip()}"

        if request.client_host:
            return f"ip:{request.client_host}"
        return None
