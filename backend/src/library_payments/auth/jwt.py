"""JWT authentication for library members and staff.

Tokens are issued by the library's identity service and signed with a shared
secret. The subject claim carries the member ID and the role claim decides
whether the caller may act on other members' payments.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt

from library_payments.config import settings

ADMIN_ROLES = frozenset({"admin", "librarian"})


class JWTAuth:
    """JWT authentication handler with shared-secret signing."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        access_token_expire_minutes: Optional[int] = None,
    ):
        """Initialize JWT auth from settings unless overridden."""
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.access_token_expire_minutes = access_token_expire_minutes or settings.access_token_expire_minutes

    def create_access_token(
        self,
        member_id: str,
        role: str = "member",
        additional_claims: Optional[Dict] = None,
    ) -> str:
        """
        Create JWT access token.

        Args:
            member_id: Library member ID
            role: Member role (member, librarian, admin)
            additional_claims: Additional JWT claims

        Returns:
            Encoded JWT token
        """
        now = datetime.now(timezone.utc)
        claims = {
            "sub": member_id,
            "role": role,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "type": "access",
        }
        if additional_claims:
            claims.update(additional_claims)

        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict:
        """
        Verify and decode JWT token.

        Raises:
            jwt.ExpiredSignatureError: If token is expired
            jwt.InvalidTokenError: If token is invalid
        """
        return jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            options={"require": ["sub", "exp"]},
        )

    def verify_access_token(self, token: str) -> Dict:
        """
        Verify access token specifically.

        Args:
            token: JWT access token

        Returns:
            Decoded token claims

        Raises:
            jwt.InvalidTokenError: If not an access token
        """
        payload = self.verify_token(token)

        if payload.get("type") != "access":
            raise jwt.InvalidTokenError("Not an access token")

        return payload


def is_admin_role(role: Optional[str]) -> bool:
    return (role or "").lower() in ADMIN_ROLES


# Global JWT auth instance
jwt_auth = JWTAuth()
