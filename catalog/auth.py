import json
import time
from collections.abc import Iterable
from typing import Any

import httpx
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt.algorithms import RSAAlgorithm
from jwt.utils import base64url_decode

bearer = HTTPBearer(auto_error=True)

READ_PERMISSION = "books:read"
WRITE_PERMISSION = "books:write"


class JWKSCache:
    def __init__(self, url: str, cache_ttl_seconds: int = 300):
        self.url = url
        self.cache_ttl_seconds = cache_ttl_seconds
        self._keys: dict[str, dict[str, Any]] = {}
        self._exp = 0.0

    def get_keys(self) -> dict[str, dict[str, Any]]:
        now = time.time()
        if self._keys and now < self._exp:
            return self._keys

        with httpx.Client(timeout=5.0) as client:
            resp = client.get(self.url)
            resp.raise_for_status()
            payload = resp.json()

        self._keys = {k["kid"]: k for k in payload.get("keys", []) if k.get("kid")}
        self._exp = now + self.cache_ttl_seconds
        return self._keys


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


class AuthVerifier:
    """Verifies bearer tokens against the identity provider's published keys."""

    def __init__(
        self,
        issuer: str,
        audience: str,
        jwks_url: str,
        cache_ttl_seconds: int = 300,
        allowed_algs: Iterable[str] | None = None,
        clock_skew_seconds: int = 30,
    ):
        self.issuer = issuer
        self.audience = audience
        self.jwks = JWKSCache(jwks_url, cache_ttl_seconds)
        self.allowed_algs: set[str] = set(allowed_algs or {"RS256"})
        self.clock_skew_seconds = clock_skew_seconds

    def _signing_key(self, token: str) -> Any:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise _unauthorized("Invalid token header") from exc

        if header.get("typ", "JWT").upper() != "JWT":
            raise _unauthorized("Invalid token type")
        if header.get("alg") not in self.allowed_algs:
            raise _unauthorized("Invalid token algorithm")

        key_data = self.jwks.get_keys().get(header.get("kid"))
        if not key_data:
            raise _unauthorized("Unknown signing key")
        if key_data.get("kty") == "oct":
            return base64url_decode(key_data["k"].encode())
        return RSAAlgorithm.from_jwk(json.dumps(key_data))

    def __call__(self, creds: HTTPAuthorizationCredentials = Depends(bearer)) -> dict[str, Any]:
        token = creds.credentials
        key = self._signing_key(token)
        try:
            return jwt.decode(
                token,
                key=key,
                algorithms=list(self.allowed_algs),
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.clock_skew_seconds,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.PyJWTError as exc:
            raise _unauthorized("Invalid token") from exc


def granted_permissions(claims: dict[str, Any]) -> set[str]:
    """Permissions come from realm roles and from the space-separated ``scope`` claim."""
    permissions = set(claims.get("realm_access", {}).get("roles", []))
    permissions.update(claims.get("scope", "").split())
    return permissions


def require_permission(permission: str, verifier: AuthVerifier):
    def dependency(credentials: HTTPAuthorizationCredentials = Depends(bearer)) -> dict[str, Any]:
        claims = verifier(credentials)
        if permission not in granted_permissions(claims):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="your user account doesn't have the necessary permissions to access this resource",
            )
        return claims

    return dependency
