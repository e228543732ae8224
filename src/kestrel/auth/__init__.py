# =============================================================================
# Auth Module
# =============================================================================
# Everything needed to get an account logged in and keep it that way:
#   - OAuth2 Authorization Code + PKCE flow and token refresh (httpx)
#   - CredentialProvider: login material per account, with transparent refresh
#   - AccountManager: the logged-in registry, login and logout
# =============================================================================

from kestrel.auth.accounts import AccountManager
from kestrel.auth.credentials import AuthMaterial, CredentialProvider
from kestrel.auth.oauth import (
    AuthorizationHandoff,
    OAuthAttempt,
    OAuthLoginFlow,
    OAuthProvider,
    TokenBundle,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)

__all__ = [
    "AccountManager",
    "AuthMaterial",
    "CredentialProvider",
    "AuthorizationHandoff",
    "OAuthAttempt",
    "OAuthLoginFlow",
    "OAuthProvider",
    "TokenBundle",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_state",
]
