"""
Authentication helpers for the admission pipeline.
"""

from .authenticator import Authenticator, AuthResult, CredentialVerifier, Rejection
from .jwks import JWKSVerifier

__all__ = [
    "AuthResult",
    "Authenticator",
    "CredentialVerifier",
    "JWKSVerifier",
    "Rejection",
]
