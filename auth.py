from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, func
import logging

from config import Settings, settings as default_settings
from database import get_db
from errors import (
    AccountSuspended,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidOrExpiredToken,
    Unauthorized,
    ValidationError,
)
from models import (
    Profile,
    User,
    ROLE_ADMIN,
    ROLE_SUB_ADMIN,
    ROLE_USER,
    STATUS_ACTIVE,
    STATUS_PENDING,
    STATUS_SUSPENDED,
    utc_now,
)
from utils import random_suffix, slugify_username, username_from_email

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bearer header is optional: the session cookie is the primary carrier
security = HTTPBearer(auto_error=False)

# Sub-admin permissions
PERM_USERS_READ = "users.read"
PERM_USERS_WRITE = "users.write"
PERM_USERS_DELETE = "users.delete"
PERMISSIONS = (PERM_USERS_READ, PERM_USERS_WRITE, PERM_USERS_DELETE)

# ============================================
# PASSWORD UTILITIES
# ============================================
def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verify a plain password against a hashed password"""
    if not hashed_password:
        # Keep timing comparable to a real check
        pwd_context.dummy_verify()
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ============================================
# SESSION TOKENS
# ============================================
def create_session_token(
    user: User,
    settings: Optional[Settings] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Signed token carrying {userId, email, role, exp}."""
    settings = settings or default_settings
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.SESSION_EXPIRE_DAYS))
    to_encode = {
        "userId": user.id,
        "email": user.email,
        "role": user.role,
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def verify_token(token: Optional[str], settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Check signature and expiry and return the claims.
    Stateless: the store is not consulted, so a token stays valid for its
    whole lifetime. Raises Unauthorized on any failure.
    """
    settings = settings or default_settings
    if not token:
        raise Unauthorized()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid or expired session")

    if not isinstance(payload.get("userId"), int) or not payload.get("email") or not payload.get("role"):
        raise Unauthorized("Invalid or expired session")
    return payload


def set_session_cookie(response: Response, token: str, settings: Settings):
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=token,
        max_age=settings.SESSION_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


def clear_session_cookie(response: Response, settings: Settings):
    # Already expired, so the browser drops it immediately
    response.delete_cookie(
        key=settings.SESSION_COOKIE_NAME,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="strict",
    )


# ============================================
# DATABASE USER OPERATIONS
# ============================================
async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get a user by email (case-insensitive)"""
    result = await db.execute(select(User).where(User.email == normalize_email(email)))
    return result.scalar_one_or_none()


async def username_taken(db: AsyncSession, username: str) -> bool:
    result = await db.execute(select(func.count(Profile.id)).where(Profile.username == username))
    return result.scalar() > 0


async def available_username(db: AsyncSession, base: str) -> str:
    """`base` if free, otherwise `base-xxxxxx`."""
    candidate = base
    while await username_taken(db, candidate):
        candidate = f"{base}-{random_suffix()}"
    return candidate


async def create_user(
    db: AsyncSession,
    email: str,
    password: Optional[str],
    role: str = ROLE_USER,
    status: str = STATUS_ACTIVE,
    **fields,
) -> User:
    """
    Insert a user. Raises Conflict if the email is taken.
    Flushes but does not commit.
    """
    email = normalize_email(email)
    if await get_user_by_email(db, email):
        raise Conflict("User already exists")

    user = User(
        email=email,
        hashed_password=get_password_hash(password) if password else None,
        role=role,
        status=status,
        permissions=fields.pop("permissions", None) or [],
        **fields,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("User already exists")
    return user


async def create_default_profile(
    db: AsyncSession,
    user: User,
    full_name: str,
    username_base: Optional[str] = None,
    show_phone: bool = True,
) -> Profile:
    base = slugify_username(username_base) if username_base else username_from_email(user.email)
    profile = Profile(
        user_id=user.id,
        username=await available_username(db, base),
        full_name=full_name,
        email=user.email,
        phone_numbers=[],
        show_email=True,
        show_phone=show_phone,
    )
    db.add(profile)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise Conflict("Username already taken")
    return profile


async def register(db: AsyncSession, email: str, password: str, full_name: str) -> Tuple[User, Profile]:
    """Self-service signup: a regular active user plus a default profile."""
    if not full_name or not full_name.strip():
        raise ValidationError("Missing required fields")
    user = await create_user(db, email, password)
    profile = await create_default_profile(db, user, full_name.strip())
    await db.commit()
    logger.info(f"Registered user {user.id} with profile '{profile.username}'")
    return user, profile


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User:
    """
    Unknown email, wrong password and a pending invitation all fail the same
    way so callers cannot tell which accounts exist.
    """
    user = await get_user_by_email(db, email)
    if not user:
        verify_password(password, None)
        raise InvalidCredentials()
    if not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    if user.status == STATUS_SUSPENDED:
        raise AccountSuspended()
    return user


async def login(
    db: AsyncSession, email: str, password: str, settings: Optional[Settings] = None
) -> Tuple[User, str]:
    user = await authenticate_user(db, email, password)
    return user, create_session_token(user, settings)


async def accept_invitation(db: AsyncSession, token: str, new_password: str) -> User:
    """Redeem a single-use invitation: set password, activate, clear the token."""
    result = await db.execute(
        select(User).where(
            User.invitation_token == token,
            User.invitation_expires > utc_now(),
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise InvalidOrExpiredToken()

    user.hashed_password = get_password_hash(new_password)
    user.status = STATUS_ACTIVE
    user.invitation_token = None
    user.invitation_expires = None

    has_profile = await db.execute(select(func.count(Profile.id)).where(Profile.user_id == user.id))
    if not has_profile.scalar():
        await create_default_profile(db, user, "New User", username_base=f"user{random_suffix()}", show_phone=False)

    await db.commit()
    logger.info(f"Invitation accepted for user {user.id}")
    return user


async def change_password(db: AsyncSession, user: User, current_password: str, new_password: str):
    if not verify_password(current_password, user.hashed_password):
        raise ValidationError("Incorrect current password")
    user.hashed_password = get_password_hash(new_password)
    await db.commit()
    logger.info(f"Password updated for user {user.id}")


# ============================================
# DEPENDENCIES
# ============================================
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_token_payload(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict[str, Any]:
    """Claims from the session cookie, or from an Authorization: Bearer header."""
    settings = get_settings(request)
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token and credentials:
        token = credentials.credentials
    return verify_token(token, settings)


async def get_current_user(
    payload: Dict[str, Any] = Depends(get_token_payload),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Dependency to get the current authenticated user.
    Unlike verify_token this re-reads the account, so deleted or suspended
    users lose access to store-backed routes straight away.
    """
    user = await db.get(User, payload["userId"])
    if user is None:
        raise Unauthorized("User not found")
    if user.status == STATUS_SUSPENDED:
        raise AccountSuspended()
    if user.status == STATUS_PENDING:
        raise Unauthorized("Account not activated")
    return user


async def require_admin(
    payload: Dict[str, Any] = Depends(get_token_payload),
    current_user: User = Depends(get_current_user),
) -> User:
    if payload["role"] != ROLE_ADMIN:
        raise Forbidden()
    return current_user


def require_permission(permission: str):
    """Admins always pass; sub-admins need `permission` in their list."""

    async def dependency(
        payload: Dict[str, Any] = Depends(get_token_payload),
        current_user: User = Depends(get_current_user),
    ) -> User:
        role = payload["role"]
        if role == ROLE_ADMIN:
            return current_user
        if role == ROLE_SUB_ADMIN and permission in (current_user.permissions or []):
            return current_user
        raise Forbidden()

    return dependency


def is_admin(user: User) -> bool:
    return user.role == ROLE_ADMIN
