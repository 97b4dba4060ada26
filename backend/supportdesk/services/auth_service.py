"""
Bearer-token identity for support agents.

Every task operation is attributed to the profile in the token's ``sub``
claim; the ``role`` claim gates supervisor-only routes such as duration
recomputation.
"""
from typing import Optional, Dict, Any, Iterable, FrozenSet
from datetime import datetime, timedelta, timezone
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..models import Profile, UserRole

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


class AuthService:
    """Issues and checks agent tokens and verifies profile passwords."""

    def __init__(self):
        self.algorithm = settings.jwt_algorithm
        self.expiration_hours = settings.jwt_expiration_hours

    @property
    def secret_key(self) -> str:
        return settings.get_secret_key()

    def create_token(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Sign an access token for a profile.

        Args:
            user_id: Profile id, becomes the ``sub`` claim
            metadata: Extra claims, normally ``{"role": ...}``
        """
        issued_at = datetime.now(timezone.utc)
        claims: Dict[str, Any] = dict(metadata or {})
        claims.update({
            "sub": user_id,
            "iat": issued_at,
            "exp": issued_at + timedelta(hours=self.expiration_hours),
            "type": "access"
        })
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Decode a token, raising 401 when it is expired or tampered with."""
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise _unauthorized("Token has expired")
        except jwt.InvalidTokenError as e:
            raise _unauthorized(f"Invalid token: {e}")

    def hash_password(self, password: str) -> str:
        return pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        return pwd_context.verify(plain_password, hashed_password)

    def authenticate(self, db: Session, email: str, password: str) -> Optional[Profile]:
        """Return the active profile for ``email`` if ``password`` matches."""
        profile = db.query(Profile).filter(Profile.email == email).first()
        if profile is None or not profile.is_active or not profile.password_hash:
            return None
        if not self.verify_password(password, profile.password_hash):
            logger.warning(f"Failed login for {email}")
            return None
        return profile

    def issue_for_profile(self, profile: Profile) -> str:
        return self.create_token(profile.id, {"role": profile.role})


auth_service = AuthService()


def _claims(credentials: Optional[HTTPAuthorizationCredentials]) -> Dict[str, Any]:
    if not credentials:
        raise _unauthorized("Authentication required")
    claims = auth_service.verify_token(credentials.credentials)
    if not claims.get("sub"):
        raise _unauthorized("Invalid token payload")
    return claims


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Optional[str]:
    """Acting user id, or ``None`` for anonymous or invalid tokens."""
    try:
        return _claims(credentials)["sub"]
    except HTTPException:
        return None


def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> str:
    """Acting user id; 401 without a valid token."""
    return _claims(credentials)["sub"]


class RoleChecker:
    """Dependency admitting only tokens whose ``role`` claim is in ``allowed_roles``."""

    def __init__(self, allowed_roles: Iterable[str]):
        self.allowed_roles: FrozenSet[str] = frozenset(allowed_roles)

    def __call__(
        self,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> str:
        claims = _claims(credentials)
        role = claims.get("role", UserRole.AGENT.value)
        if role not in self.allowed_roles:
            logger.info(f"User {claims['sub']} with role {role} denied")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return claims["sub"]


require_supervisor = RoleChecker([UserRole.ADMIN.value, UserRole.SUPERVISOR.value])
