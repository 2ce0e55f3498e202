"""Authentication and authorization for DentaRad.

Access tokens are Supabase-style JWTs. The application role (admin,
clinic, reporter) and the clinic a user belongs to are carried in the
token's ``app_metadata`` claim.

The router at the bottom of this module serves the account security
endpoints: login lockout, password strength, CSRF tokens, MFA backup codes
and idle-session tracking.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated, Any

import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..cases.constants import UserRole
from ..config import get_settings
from ..db import get_db
from ..security.backup_codes import BackupCodeService
from ..security.csrf import CsrfService
from ..security.login_limiter import LoginCheckResult, LoginRateLimiter
from ..security.password import validate_password_strength
from ..security.sanitization import sanitize_email
from ..security.session import SessionStatus, get_session_tracker
from . import AuthenticationError, AuthorizationError, ValidationError
from .audit import AuditAction, AuditResourceType, get_client_ip, log_audit_event

# Security scheme
security = HTTPBearer(auto_error=False)


# =========================
# User Models
# =========================


class User(BaseModel):
    """Authenticated user information."""

    id: str
    email: str = ""
    role: UserRole = UserRole.CLINIC
    clinic_id: str | None = None

    def has_role(self, *roles: UserRole | str) -> bool:
        """Check if user has one of the given roles."""
        return self.role in roles

    def is_admin(self) -> bool:
        """Check if user is an admin."""
        return self.role == UserRole.ADMIN

    def is_staff(self) -> bool:
        """Admins and reporters work on any clinic's cases."""
        return self.role in (UserRole.ADMIN, UserRole.REPORTER)

    def can_access_clinic(self, clinic_id: str | None) -> bool:
        """Check if the user may see data owned by ``clinic_id``."""
        if self.is_staff():
            return True
        return clinic_id is not None and str(clinic_id) == str(self.clinic_id)


class TokenPayload(BaseModel):
    """JWT token payload."""

    sub: str  # Subject (user ID)
    email: str = ""
    role: str = "authenticated"
    aud: str | None = None
    app_metadata: dict[str, Any] = Field(default_factory=dict)
    exp: datetime
    iat: datetime | None = None


# =========================
# JWT Functions
# =========================


def create_access_token(user: User, expires_in: timedelta | None = None) -> str:
    """Create a JWT access token for a user.

    Args:
        user: User to create token for
        expires_in: Lifetime override (defaults to the configured hours)

    Returns:
        Encoded JWT token
    """
    settings = get_settings()

    now = datetime.now(timezone.utc)
    lifetime = expires_in or timedelta(hours=settings.jwt_expiration_hours)
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": "authenticated",
        "app_metadata": {"role": user.role.value if isinstance(user.role, UserRole) else user.role},
        "exp": now + lifetime,
        "iat": now,
    }
    if user.clinic_id:
        payload["app_metadata"]["clinic_id"] = user.clinic_id
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience

    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenPayload:
    """Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Token payload

    Raises:
        AuthenticationError: If token is invalid or expired
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
        return TokenPayload(**payload)
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}")


def _user_from_payload(payload: TokenPayload) -> User:
    metadata = payload.app_metadata
    try:
        role = UserRole(metadata.get("role", UserRole.CLINIC.value))
    except ValueError:
        raise AuthenticationError(f"Unknown role: {metadata.get('role')}")
    return User(
        id=payload.sub,
        email=payload.email,
        role=role,
        clinic_id=metadata.get("clinic_id"),
    )


def user_from_token(token: str) -> User:
    """Decode a bearer token into a user. Used where headers are unavailable."""
    return _user_from_payload(decode_access_token(token))


# =========================
# Dependency Injection
# =========================


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> User:
    """Get the current authenticated user.

    The user id is also stored on ``request.state`` for the audit middleware.

    Raises:
        AuthenticationError: If not authenticated
    """
    if not credentials:
        raise AuthenticationError("Missing authorization header")

    user = user_from_token(credentials.credentials)
    request.state.user_id = user.id
    return user


def require_role(*roles: UserRole):
    """Create a dependency that requires one of the given roles.

    Usage:
        @router.delete("/cases", dependencies=[Depends(require_role(UserRole.ADMIN))])
        async def delete_cases():
            ...
    """

    async def role_checker(user: User = Depends(get_current_user)) -> User:
        if not user.has_role(*roles):
            allowed = ", ".join(r.value for r in roles)
            raise AuthorizationError(f"Role required: {allowed}")
        return user

    return role_checker


# Type aliases for cleaner dependency injection
CurrentUser = Annotated[User, Depends(get_current_user)]
AdminUser = Annotated[User, Depends(require_role(UserRole.ADMIN))]
StaffUser = Annotated[User, Depends(require_role(UserRole.ADMIN, UserRole.REPORTER))]


# =========================
# Account security routes
# =========================

router = APIRouter(prefix="/auth", tags=["auth"])


class EmailRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)


class LoginAttemptRequest(EmailRequest):
    successful: bool


class PasswordRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class BackupCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


def _clean_email(raw: str) -> str:
    email = sanitize_email(raw)
    if not email:
        raise ValidationError("Invalid email address")
    return email


@router.post("/login-check", response_model=LoginCheckResult)
async def login_check(body: EmailRequest, session: AsyncSession = Depends(get_db)) -> LoginCheckResult:
    """Whether an email may try to log in, or how long it is locked out."""
    return await LoginRateLimiter(session).check(_clean_email(body.email))


@router.post("/login-attempt", status_code=204)
async def login_attempt(
    body: LoginAttemptRequest,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> None:
    email = _clean_email(body.email)
    await LoginRateLimiter(session).record_attempt(
        email,
        body.successful,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    await log_audit_event(
        AuditAction.LOGIN if body.successful else AuditAction.FAILED_LOGIN,
        AuditResourceType.USER_ACCOUNT,
        details={"email": email},
        request=request,
        session=session,
    )


@router.post("/password-strength")
async def password_strength(body: PasswordRequest) -> dict[str, Any]:
    result = validate_password_strength(body.password)
    return {**result.model_dump(), "label": result.label}


@router.get("/csrf")
async def csrf_token(user: CurrentUser, session: AsyncSession = Depends(get_db)) -> dict[str, Any]:
    token, expires_at = await CsrfService(session).issue(user.id)
    return {"csrf_token": token, "expires_at": expires_at}


@router.post("/backup-codes")
async def regenerate_backup_codes(
    user: CurrentUser,
    request: Request,
    session: AsyncSession = Depends(get_db),
) -> dict[str, list[str]]:
    """Issue a fresh set of MFA backup codes. The plain codes are shown once."""
    codes = await BackupCodeService(session).regenerate(user.id)
    await log_audit_event(
        AuditAction.MFA_SETUP,
        AuditResourceType.USER_ACCOUNT,
        user.id,
        details={"backup_codes": len(codes)},
        user_id=user.id,
        request=request,
        session=session,
    )
    return {"codes": codes}


@router.post("/backup-codes/verify")
async def verify_backup_code(
    body: BackupCodeRequest,
    user: CurrentUser,
    session: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    service = BackupCodeService(session)
    valid = await service.verify_and_consume(user.id, body.code)
    return {"valid": valid, "remaining": await service.remaining(user.id)}


@router.post("/session/touch", response_model=SessionStatus)
async def touch_session(user: CurrentUser) -> SessionStatus:
    """Record activity on the caller's session."""
    return await get_session_tracker().touch(user.id)


@router.get("/session", response_model=SessionStatus)
async def session_state(user: CurrentUser) -> SessionStatus:
    return await get_session_tracker().state(user.id)
