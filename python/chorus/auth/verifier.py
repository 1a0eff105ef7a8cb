"""Token verification implementations.

Provides:
- TokenVerifier: Protocol for token verification
- JwksTokenVerifier: Verifier backed by the identity provider's JWKS endpoint

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

import threading
from typing import Any, Protocol
from uuid import UUID

import jwt
from jwt import PyJWKClient
from jwt.exceptions import (
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidTokenError,
    PyJWKClientError,
)

from chorus.errors import ApiError, ApiErrorCode
from chorus.logging import get_logger

logger = get_logger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60


class TokenVerifier(Protocol):
    """Protocol for token verification."""

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid, expired, or malformed.
            ApiError(E_AUTH_UNAVAILABLE): Infrastructure failure (JWKS unreachable).
        """
        ...


def validate_subject(payload: dict[str, Any]) -> dict[str, Any]:
    """Require a UUID `sub` claim; shared by all verifiers."""
    sub = payload.get("sub")
    if not sub:
        logger.warning("auth_failure", reason="missing_sub")
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token: missing sub")
    try:
        UUID(str(sub))
    except ValueError as e:
        logger.warning("auth_failure", reason="invalid_sub")
        raise ApiError(
            ApiErrorCode.E_UNAUTHENTICATED, "Invalid token: sub is not a valid UUID"
        ) from e
    return payload


class JwksTokenVerifier:
    """Production verifier: RS256/ES256 tokens signed by keys from a JWKS URL.

    Validates signature, exp (±60s skew), iss, aud (when configured) and
    requires a UUID sub claim.
    """

    def __init__(
        self,
        jwks_url: str,
        issuer: str,
        audiences: list[str],
        cache_ttl: int = 3600,
    ):
        self.jwks_url = jwks_url
        self.issuer = issuer.rstrip("/")
        self.audiences = audiences
        self.cache_ttl = cache_ttl
        self._jwks_client: PyJWKClient | None = None
        self._jwks_lock = threading.Lock()

    def _get_jwks_client(self, refresh: bool = False) -> PyJWKClient:
        with self._jwks_lock:
            if self._jwks_client is None or refresh:
                self._jwks_client = PyJWKClient(
                    self.jwks_url,
                    cache_keys=True,
                    lifespan=self.cache_ttl,
                )
            return self._jwks_client

    def _get_signing_key(self, token: str) -> Any:
        """Fetch the signing key, refreshing the key set once on a kid miss."""
        try:
            return self._get_jwks_client().get_signing_key_from_jwt(token)
        except PyJWKClientError as e:
            if "kid" not in str(e).lower() and "unable to find" not in str(e).lower():
                raise
            logger.info("jwks_refresh_on_kid_miss")
            try:
                return self._get_jwks_client(refresh=True).get_signing_key_from_jwt(token)
            except PyJWKClientError as retry_e:
                logger.warning("auth_failure", reason="kid_not_found")
                raise ApiError(
                    ApiErrorCode.E_UNAUTHENTICATED,
                    "Invalid token: signing key not found",
                ) from retry_e

    def verify(self, token: str) -> dict[str, Any]:
        try:
            signing_key = self._get_signing_key(token)
        except PyJWKClientError as e:
            logger.warning("auth_failure", reason="jwks_unavailable", error=str(e))
            raise ApiError(
                ApiErrorCode.E_AUTH_UNAVAILABLE,
                "Authentication service unavailable",
            ) from e

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=self.audiences or None,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={
                    "require": ["exp", "iss", "sub"],
                    "verify_aud": bool(self.audiences),
                },
            )
        except ExpiredSignatureError as e:
            logger.warning("auth_failure", reason="expired_token")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Token expired") from e
        except InvalidIssuerError as e:
            logger.warning("auth_failure", reason="invalid_issuer")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token issuer") from e
        except InvalidAudienceError as e:
            logger.warning("auth_failure", reason="invalid_audience")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token audience") from e
        except InvalidTokenError as e:
            logger.warning("auth_failure", reason="invalid_token", error=str(e))
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token") from e

        return validate_subject(payload)
