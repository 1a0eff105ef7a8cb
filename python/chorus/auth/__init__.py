"""Authentication module.

This module provides:
- Token verification (JWKS verifier)
- Auth middleware for FastAPI, authenticated or anonymous viewers

Note: Test-only verifiers are in tests/support/test_verifier.py
"""

from chorus.auth.middleware import AuthMiddleware, Viewer, get_viewer
from chorus.auth.verifier import JwksTokenVerifier, TokenVerifier

__all__ = [
    "AuthMiddleware",
    "Viewer",
    "get_viewer",
    "JwksTokenVerifier",
    "TokenVerifier",
]
