"""Governance Auth - bearer token -> AuthenticatedUser, patient access gate

Self-Explanatory: Decode Entra ID style tokens and decide who may touch which patient's files.
How: python-jose for JWT; signature check is opt-in (shared secret or JWKS fetched with httpx).
Roles: 'patient' (own records only), 'provider' / 'researcher' (no patient restriction yet).
"""

import time
from typing import Dict, List, Optional

import httpx
import structlog
from jose import JWTError, jwt
from pydantic import BaseModel

logger = structlog.get_logger()

PATIENT_ROLE = "patient"
JWKS_CACHE_SECONDS = 3600


class AuthenticationError(Exception):
    pass


class AuthenticatedUser(BaseModel):
    user_id: str
    email: str
    role: str = PATIENT_ROLE
    linked_patient_id: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    tenant_id: str = ""
    oid: str = ""


def user_from_claims(claims: Dict, default_tenant_id: str = "") -> AuthenticatedUser:
    """Map token claims onto our identity model

    Raises:
        AuthenticationError if the token carries no user id or email
    """
    user_id = claims.get("oid") or claims.get("sub") or claims.get("unique_name") or ""
    email = claims.get("email") or claims.get("unique_name") or claims.get("upn") or ""
    if not user_id or not email:
        raise AuthenticationError("Unauthorized: Invalid token: missing user ID or email")

    return AuthenticatedUser(
        user_id=user_id,
        email=email,
        role=claims.get("role") or PATIENT_ROLE,
        linked_patient_id=claims.get("patient_id") or claims.get("extension_patientId") or user_id,
        first_name=claims.get("given_name") or "",
        last_name=claims.get("family_name") or "",
        tenant_id=claims.get("tid") or default_tenant_id,
        oid=claims.get("oid") or "",
    )


def can_access_patient(user: AuthenticatedUser, patient_id: str) -> bool:
    """Patients only reach their own linked record; other roles are not restricted here"""
    if user.role == PATIENT_ROLE:
        return user.linked_patient_id == patient_id
    return True


class AuthResolver:
    """Turns an Authorization header into an AuthenticatedUser, fresh per request"""

    def __init__(
        self,
        verify_signature: bool = False,
        shared_secret: Optional[str] = None,
        jwks_url: Optional[str] = None,
        tenant_id: Optional[str] = None,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        algorithms: Optional[List[str]] = None,
    ):
        self.verify_signature = verify_signature
        self.shared_secret = shared_secret
        self.tenant_id = tenant_id or ""
        if not jwks_url and tenant_id:
            jwks_url = f"https://login.microsoftonline.com/{tenant_id}/discovery/v2.0/keys"
        self.jwks_url = jwks_url
        self.audience = audience
        self.issuer = issuer
        self.algorithms = algorithms or ["RS256"]
        self._jwks: Optional[Dict] = None
        self._jwks_expiry = 0.0

    @classmethod
    def from_settings(cls, settings) -> "AuthResolver":
        return cls(
            verify_signature=settings.auth_verify_signature,
            shared_secret=settings.auth_shared_secret,
            jwks_url=settings.auth_jwks_url,
            tenant_id=settings.auth_tenant_id,
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            algorithms=settings.auth_algorithms,
        )

    async def resolve(self, authorization: Optional[str]) -> AuthenticatedUser:
        """Get user from auth header

        Args:
            authorization: 'Bearer <jwt>'

        Returns:
            AuthenticatedUser

        Raises:
            AuthenticationError with an 'Unauthorized: ...' message
        """
        if not authorization:
            raise AuthenticationError("Missing Authorization header")
        if not authorization.startswith("Bearer "):
            raise AuthenticationError("Missing or invalid Authorization header")

        token = authorization[len("Bearer "):].strip()
        if len(token.split(".")) != 3:
            logger.warning("Token rejected", reason="format")
            raise AuthenticationError("Unauthorized: Invalid token format")

        try:
            claims = await self._claims(token)
        except (JWTError, httpx.HTTPError) as e:
            logger.warning("Token verification failed", error=str(e))
            raise AuthenticationError(f"Unauthorized: {e}") from e

        user = user_from_claims(claims, self.tenant_id)
        logger.info("User authenticated", user_id=user.user_id, role=user.role)
        return user

    async def _claims(self, token: str) -> Dict:
        if not self.verify_signature:
            return jwt.get_unverified_claims(token)

        if self.shared_secret:
            key = self.shared_secret
            algorithms = ["HS256"]
        elif self.jwks_url:
            key = await self._load_jwks()
            algorithms = self.algorithms
        else:
            raise JWTError("No verification key configured")

        return jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience=self.audience,
            issuer=self.issuer,
            options={"verify_aud": self.audience is not None},
        )

    async def _load_jwks(self) -> Dict:
        now = time.time()
        if self._jwks and self._jwks_expiry > now:
            return self._jwks

        async with httpx.AsyncClient(timeout=10) as client:
            response = await client.get(self.jwks_url)
            response.raise_for_status()
            self._jwks = response.json()

        self._jwks_expiry = now + JWKS_CACHE_SECONDS
        logger.info("JWKS refreshed", url=self.jwks_url, keys=len(self._jwks.get("keys", [])))
        return self._jwks
