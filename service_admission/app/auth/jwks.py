"""
JSON Web Key Set (JWKS) credential verifier.

Plugs into :class:`~service_admission.app.auth.authenticator.Authenticator`
as its verifier: ``await verifier(token)`` returns a
:class:`~service_admission.app.domain.models.Principal` or raises
:class:`~shared.errors.UnauthorizedError`.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional, Set

import httpx
from jose import JWTError, jwt

from shared.errors import UnauthorizedError
from shared.logging import get_logger

from ..domain.models import Principal


class JWKSVerifier:
    """Validates JWTs against a remote JWKS endpoint."""

    def __init__(
        self,
        jwks_url: str,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        *,
        refresh_interval: int = 300,
        http_timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.refresh_interval = refresh_interval
        self.logger = get_logger("admission.auth.jwks")

        self._keys: Optional[Dict[str, Dict[str, Any]]] = None
        self._last_refresh: float = 0.0
        self._lock = asyncio.Lock()
        self._client = client or httpx.AsyncClient(timeout=http_timeout)

    async def __call__(self, token: str) -> Principal:
        return await self.verify(token)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def warmup(self) -> None:
        """Eagerly load JWKS metadata so the first request does not pay the cost."""
        try:
            await self._refresh_keys(force=True)
        except (httpx.HTTPError, UnauthorizedError) as exc:
            self.logger.warning("JWKS warmup failed", error=str(exc))

    async def verify(self, token: str) -> Principal:
        """Validate ``token`` and build the principal from its claims."""
        claims = await self._validate_token(token)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise UnauthorizedError("JWT missing subject claim")

        return Principal(subject=subject, scopes=frozenset(self._extract_scopes(claims)), claims=claims)

    async def _validate_token(self, token: str) -> Dict[str, Any]:
        """Validate the JWT and return its claims."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise UnauthorizedError("Malformed JWT") from exc

        kid = header.get("kid")
        if not isinstance(kid, str):
            raise UnauthorizedError("JWT header missing key id (kid)")

        key_data = await self._get_key(kid)
        if not key_data:
            raise UnauthorizedError("Signing key not found for token")

        algorithms = [key_data.get("alg", "RS256")]
        options: Dict[str, Any] = {"verify_aud": self.audience is not None}

        try:
            return jwt.decode(
                token,
                key_data,
                algorithms=algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options=options,
            )
        except JWTError as exc:
            raise UnauthorizedError("JWT validation failed") from exc

    async def _get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Look up ``kid``, refetching once when it is unknown (key rotation)."""
        await self._refresh_keys(force=False)
        key = self._keys.get(kid) if self._keys is not None else None
        if key is None:
            self.logger.info("Unknown signing key, refreshing JWKS", kid=kid)
            await self._refresh_keys(force=True)
            key = self._keys.get(kid) if self._keys is not None else None
        return key

    async def _refresh_keys(self, *, force: bool) -> None:
        if not force and self._is_fresh():
            return

        async with self._lock:
            if not force and self._is_fresh():
                return

            response = await self._client.get(self.jwks_url)
            response.raise_for_status()
            document = response.json()
            keys = document.get("keys") if isinstance(document, dict) else None
            if not isinstance(keys, list):
                raise UnauthorizedError("JWKS response missing 'keys' array")

            self._keys = {
                key["kid"]: key
                for key in keys
                if isinstance(key, dict) and isinstance(key.get("kid"), str)
            }
            self._last_refresh = time.monotonic()
            self.logger.debug("JWKS refreshed", key_count=len(self._keys))

    def _is_fresh(self) -> bool:
        return self._keys is not None and (time.monotonic() - self._last_refresh) < self.refresh_interval

    @staticmethod
    def _extract_scopes(claims: Dict[str, Any]) -> Set[str]:
        """Union of OAuth scopes and role claims.

        Handles a space-delimited ``scope`` string, ``scp``/``roles`` lists and
        Keycloak's ``realm_access.roles``.
        """
        scopes: Set[str] = set()
        if isinstance(claims.get("scope"), str):
            scopes.update(claims["scope"].split())

        realm_access = claims.get("realm_access")
        candidates = [claims.get("scp"), claims.get("roles")]
        if isinstance(realm_access, dict):
            candidates.append(realm_access.get("roles"))

        for values in candidates:
            if isinstance(values, list):
                scopes.update(value for value in values if isinstance(value, str))
        return scopes
