"""
Data Models Module

This module defines the Pydantic models shared by the authentication
components:
- Pending logins held by the nonce store during the IdP round trip
- Token endpoint responses
- The verified identity persisted in the session store
- Response bodies (user profile, errors)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Login State Models
# ============================================================================

class PendingAuth(BaseModel):
    """A login in flight between the IdP redirect and the callback."""

    model_config = ConfigDict(frozen=True)

    state: str = Field(..., description="Opaque random state, the lookup key")
    nonce: str = Field(..., description="Opaque random nonce echoed in the ID token")
    destination_url: str = Field(..., description="Local path to return to after login")
    created_at: float = Field(..., description="Monotonic creation time in seconds")
    ttl_seconds: float = Field(..., description="Lifetime of this entry in seconds")
    code_verifier: Optional[str] = Field(None, description="PKCE code verifier, when PKCE is used")

    def is_expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl_seconds


# ============================================================================
# Token Models
# ============================================================================

class TokenSet(BaseModel):
    """Token endpoint response (authorization code or refresh grant)."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    token_type: str = Field(default="Bearer")
    id_token: Optional[str] = Field(None)
    refresh_token: Optional[str] = Field(None)
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    scope: Optional[str] = Field(None)


# ============================================================================
# Identity Models
# ============================================================================

class Identity(BaseModel):
    """
    Verified user identity bound to one session.

    Immutable: a refresh produces a new Identity that replaces the old one.
    """

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1, description="The 'sub' claim")
    issuer: str = Field(..., description="The 'iss' claim")
    claims: Dict[str, Any] = Field(default_factory=dict)
    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = Field(None)
    expires_at: datetime = Field(..., description="Access token expiry (UTC)")

    def is_expired(
        self,
        now: Optional[datetime] = None,
        leeway_seconds: int = 0,
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at - timedelta(seconds=leeway_seconds)

    @property
    def email(self) -> Optional[str]:
        for claim_name in ("email", "preferred_username", "upn"):
            value = self.claims.get(claim_name)
            if isinstance(value, str) and "@" in value:
                return value.lower().strip()
        return None

    @property
    def display_name(self) -> str:
        name = self.claims.get("name") or self.claims.get("given_name")
        if name:
            return str(name)
        if self.email:
            return self.email.split("@")[0].title()
        return self.subject


# ============================================================================
# Response Models
# ============================================================================

class UserProfile(BaseModel):
    """User profile returned to downstream clients."""

    subject: str = Field(..., description="Unique user identifier at the IdP")
    issuer: str = Field(..., description="Issuing IdP")
    email: Optional[str] = Field(None, description="User email address, if released")
    name: str = Field(..., description="User display name")
    expires_at: datetime = Field(..., description="When the current session needs a refresh")

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserProfile":
        return cls(
            subject=identity.subject,
            issuer=identity.issuer,
            email=identity.email,
            name=identity.display_name,
            expires_at=identity.expires_at,
        )


class ErrorResponse(BaseModel):
    """Standardized error response model. Never carries validation detail."""

    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
