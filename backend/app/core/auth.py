"""JWT authentication dependencies for FastAPI.

The dashboard frontend signs users in and sends a JWT in the Authorization
header: "Bearer <token>". The backend only verifies the signature with the
shared secret (AUTH_SECRET) and trusts the claims; it keeps no user table.

JWT Payload Structure:
{
    "sub": "user-id",             # User ID, used as the caller identity
    "email": "test@example.com",
    "name": "Jane Doe",
    "plan": "free",               # "premium" skips the authenticated limiter
    "iat": 1234567890,            # Issued at
    "exp": 1234567890             # Expiration
}
"""
import jwt
from datetime import datetime, timedelta, timezone
import logging
from typing import Optional
from fastapi import HTTPException, status, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.config import settings

logger = logging.getLogger(__name__)

# Security scheme for Swagger UI
security = HTTPBearer(
    scheme_name="JWT Bearer Token",
    description="Enter your dashboard JWT token"
)


class JWTPayload:
    """
    Structured JWT payload.

    Attributes:
        sub: User ID
        email: User's email address
        name: User's display name
        plan: Subscription plan ("free" or "premium")
        iat: Issued at timestamp
        exp: Expiration timestamp
    """
    def __init__(self, payload: dict):
        self.sub: str = str(payload.get("sub", ""))
        self.email: Optional[str] = payload.get("email")
        self.name: Optional[str] = payload.get("name")
        self.plan: str = payload.get("plan", "free")
        self.iat: int = payload.get("iat", 0)
        self.exp: int = payload.get("exp", 0)

    @property
    def id(self) -> str:
        return self.sub

    def is_expired(self) -> bool:
        """Check if token is expired."""
        return datetime.now(timezone.utc).timestamp() > self.exp


def verify_jwt_token(token: str) -> JWTPayload:
    """
    Verify JWT token signature and extract payload.

    Args:
        token: JWT token string from Authorization header

    Returns:
        JWTPayload: Parsed and validated JWT payload

    Raises:
        HTTPException: 401 if token is invalid or expired, 500 if the
            server has no AUTH_SECRET configured
    """
    try:
        if not settings.AUTH_SECRET:
            logger.error("AUTH_SECRET is not configured; refusing to verify JWTs")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server authentication is not configured",
            )

        required_claims = ["sub", "exp"]
        if settings.AUTH_JWT_ISSUER:
            required_claims.append("iss")
        if settings.AUTH_JWT_AUDIENCE:
            required_claims.append("aud")

        payload = jwt.decode(
            token,
            settings.AUTH_SECRET,
            algorithms=["HS256"],
            issuer=settings.AUTH_JWT_ISSUER,
            audience=settings.AUTH_JWT_AUDIENCE,
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require": required_claims,
            }
        )

        return JWTPayload(payload)

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired. Please log in again.",
            headers={"WWW-Authenticate": "Bearer"}
        )
    except jwt.InvalidTokenError as e:
        logger.info("JWT validation failed", exc_info=e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"}
        )


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> JWTPayload:
    """
    FastAPI dependency requiring a valid bearer token.

    Usage:
        @router.delete("/{id}")
        async def delete(user: JWTPayload = Depends(get_current_user)):
            ...

    Raises:
        HTTPException: 401 if the token is invalid or expired
    """
    user = verify_jwt_token(credentials.credentials)
    request.state.user = user
    return user


async def get_optional_user(request: Request) -> Optional[JWTPayload]:
    """
    Optional authentication - returns the payload if a valid token is sent,
    None otherwise. Never raises.

    The result is memoised on ``request.state`` so the rate limiter's
    identity resolution and the route share one verification.
    """
    if hasattr(request.state, "user"):
        return request.state.user

    user: Optional[JWTPayload] = None
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer ") and settings.AUTH_SECRET:
        try:
            user = verify_jwt_token(auth_header[len("Bearer "):])
        except HTTPException:
            user = None

    request.state.user = user
    return user


def create_test_token(
    user_id: str,
    email: str = "test@example.com",
    plan: str = "free",
    expires_in_minutes: int = 30,
) -> str:
    """
    Create a signed JWT for development/testing.

    WARNING: Only use in development! Production tokens come from the frontend.
    """
    if settings.ENVIRONMENT.lower() in {"production", "prod"}:
        raise RuntimeError("create_test_token is not allowed in production")

    if not settings.AUTH_SECRET:
        raise RuntimeError("AUTH_SECRET is not configured")

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email,
        "name": "Test User",
        "plan": plan,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_in_minutes)).timestamp())
    }

    return jwt.encode(payload, settings.AUTH_SECRET, algorithm="HS256")
