"""
Bearer credential authentication for the admission pipeline.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from shared.errors import FailureKind, ForbiddenError, UnauthorizedError
from shared.logging import get_logger

from ..domain.models import Principal, Request

CredentialVerifier = Callable[[str], Union[Optional[Principal], Awaitable[Optional[Principal]]]]


@dataclass(frozen=True)
class Rejection:
    """Authentication refused; ``reason`` is UNAUTHORIZED or FORBIDDEN."""

    reason: FailureKind
    message: str


AuthResult = Union[Principal, Rejection]


class Authenticator:
    """Orchestrates credential checks around an injected verifier.

    The verifier owns the cryptography (JWT, opaque token lookup, ...); this
    class only pulls the credential out of the ``Authorization`` header,
    refuses obviously broken headers without calling it, and maps its outcome.
    """

    def __init__(self, verifier: CredentialVerifier, header: str = "Authorization", scheme: str = "Bearer"):
        self.verifier = verifier
        self.header = header
        self.scheme = scheme
        self.logger = get_logger("admission.authenticator")

    def extract_credential(self, request: Request) -> Optional[str]:
        """Return the bearer credential, or None if absent or malformed."""
        authorization = request.header(self.header)
        if not authorization:
            return None

        parts = authorization.strip().split(None, 1)
        if len(parts) != 2 or parts[0].lower() != self.scheme.lower():
            return None

        credential = parts[1].strip()
        if not credential or any(ch.isspace() for ch in credential):
            return None
        return credential

    async def authenticate(self, request: Request, required_scopes: Iterable[str] = ()) -> AuthResult:
        """Authenticate the request and check route scopes."""
        credential = self.extract_credential(request)
        if credential is None:
            self.logger.info("Missing or malformed credential", path=request.path)
            return Rejection(FailureKind.UNAUTHORIZED, "Missing or invalid Authorization header")

        try:
            principal = await self._verify(credential)
        except UnauthorizedError as e:
            self.logger.warning("Credential rejected", error=e.message)
            return Rejection(FailureKind.UNAUTHORIZED, e.message)
        except ForbiddenError as e:
            self.logger.warning("Credential lacks permission", error=e.message)
            return Rejection(FailureKind.FORBIDDEN, e.message)

        if principal is None:
            return Rejection(FailureKind.UNAUTHORIZED, "Invalid credential")

        missing = sorted(set(required_scopes) - set(principal.scopes))
        if missing:
            self.logger.warning(
                "Principal missing required scopes",
                principal=principal.subject,
                missing_scopes=missing,
            )
            return Rejection(FailureKind.FORBIDDEN, f"Missing required scope: {', '.join(missing)}")

        return principal

    async def _verify(self, credential: str) -> Any:
        result = self.verifier(credential)
        if inspect.isawaitable(result):
            result = await result
        return result
