from fastapi import APIRouter, Depends, Request, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, delete
from datetime import timedelta
from typing import List
import math
import logging

from database import get_db, get_database
from auth import (
    PERM_USERS_DELETE,
    PERM_USERS_READ,
    PERM_USERS_WRITE,
    PERMISSIONS,
    create_default_profile,
    create_user,
    get_password_hash,
    get_settings,
    is_admin,
    require_admin,
    require_permission,
)
from errors import Forbidden, NotFound, ValidationError
from models import User, Profile, QRCode, ROLE_SUB_ADMIN, ROLE_ADMIN, STATUS_ACTIVE, STATUS_PENDING, utc_now
from schemas import (
    AdminUserCreate,
    AdminUserUpdate,
    AdminUserItem,
    AdminUserList,
    AuditLogResponse,
    SubAdminCreate,
    UserResponse,
    Message,
    UserDeletedMeta,
    UserInvitedMeta,
    UserUpdatedMeta,
    SubAdminCreatedMeta,
)
from utils import generate_invitation_token, random_suffix
import audit

router = APIRouter(prefix="/api/admin", tags=["Admin"])
logger = logging.getLogger(__name__)


def default_limits(settings) -> dict:
    return {
        "max_profiles": settings.DEFAULT_MAX_PROFILES,
        "max_qr_codes": settings.DEFAULT_MAX_QR_CODES,
    }


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


def _check_can_manage(actor: User, target: User):
    """Sub-admins manage regular users only."""
    if not is_admin(actor) and target.role in (ROLE_ADMIN, ROLE_SUB_ADMIN):
        raise Forbidden()


def _check_permissions(permissions: List[str]):
    unknown = sorted(set(permissions) - set(PERMISSIONS))
    if unknown:
        raise ValidationError(f"Unknown permissions: {', '.join(unknown)}")


# ============================================
# USERS
# ============================================
@router.get("/users", response_model=AdminUserList)
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(PERM_USERS_READ)),
):
    """
    All users, newest first, with how many profiles each one owns.
    """
    total = (await db.execute(select(func.count(User.id)))).scalar() or 0

    profile_count = (
        select(func.count(Profile.id))
        .where(Profile.user_id == User.id)
        .correlate(User)
        .scalar_subquery()
    )
    result = await db.execute(
        select(User, profile_count.label("profile_count"))
        .order_by(User.created_at.desc(), User.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    users = []
    for user, count in result.all():
        item = AdminUserItem.model_validate(user)
        item.profile_count = count or 0
        users.append(item)

    total_pages = math.ceil(total / limit) if total else 0
    return {
        "users": users,
        "pagination": {
            "total": total,
            "page": page,
            "totalPages": total_pages,
            "hasMore": page < total_pages,
        },
    }


@router.post("/users", status_code=status.HTTP_201_CREATED)
async def invite_user(
    data: AdminUserCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(PERM_USERS_WRITE)),
):
    """
    Invite a user. Without a password the account stays pending until the
    invitation link is accepted.
    """
    settings = get_settings(request)
    if data.role != "user" and not is_admin(current_user):
        raise Forbidden()

    limits = default_limits(settings)
    if data.limits:
        limits.update(data.limits.model_dump(exclude_none=True))

    pending = not data.password
    token = generate_invitation_token() if pending else None
    user = await create_user(
        db,
        data.email,
        data.password,
        role=data.role,
        status=STATUS_PENDING if pending else STATUS_ACTIVE,
        limits=limits,
        features=data.features or {},
        invitation_token=token,
        invitation_expires=utc_now() + timedelta(hours=settings.INVITATION_EXPIRE_HOURS) if pending else None,
    )
    if not pending:
        await create_default_profile(db, user, full_name=user.email.split("@")[0])
    await db.commit()
    await db.refresh(user)

    if pending:
        # No mailer: the link is handed over out of band
        logger.info(f"Invitation link for {user.email}: {settings.BASE_URL.rstrip('/')}/invite/{token}")

    await audit.log_action(
        get_database(request),
        audit.USER_INVITED,
        f"Invited {user.email} as {user.role}",
        UserInvitedMeta(user_id=user.id, email=user.email, role=user.role, pending=pending),
        actor_id=current_user.id,
    )
    return {
        "message": "User invited" if pending else "User created",
        "user": UserResponse.model_validate(user).model_dump(mode="json"),
        "invitation_token": token,
    }


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: int,
    data: AdminUserUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(PERM_USERS_WRITE)),
):
    user = await _get_user(db, user_id)
    _check_can_manage(current_user, user)
    actor_id = current_user.id

    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    if "permissions" in updates:
        if not is_admin(current_user):
            raise Forbidden()
        _check_permissions(updates["permissions"])
        user.permissions = updates["permissions"]
    if "status" in updates:
        user.status = updates["status"]
    if "limits" in updates:
        user.limits = {**(user.limits or {}), **updates["limits"]}
    if "features" in updates:
        user.features = {**(user.features or {}), **updates["features"]}
    if "password" in updates:
        user.hashed_password = get_password_hash(updates["password"])

    await db.commit()
    await db.refresh(user)

    changes = sorted(updates)
    logger.info(f"User {user_id} updated by {actor_id}: {', '.join(changes)}")
    await audit.log_action(
        get_database(request),
        audit.USER_UPDATED,
        f"Updated {user.email}",
        UserUpdatedMeta(user_id=user.id, changes=changes),
        actor_id=actor_id,
    )
    return user


@router.delete("/users/{user_id}", response_model=Message)
async def delete_user(
    user_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_permission(PERM_USERS_DELETE)),
):
    """
    Remove a user and their profiles. QR codes that pointed at those
    profiles are kept but unbound, so they resolve to the fallback.
    """
    user = await _get_user(db, user_id)
    _check_can_manage(current_user, user)
    actor_id = current_user.id
    if user.id == actor_id:
        raise Forbidden("Cannot delete your own account")
    email = user.email

    profile_ids = select(Profile.id).where(Profile.user_id == user_id)
    profiles_removed = (
        await db.execute(select(func.count(Profile.id)).where(Profile.user_id == user_id))
    ).scalar() or 0

    await db.execute(
        update(QRCode).where(QRCode.profile_id.in_(profile_ids)).values(profile_id=None)
    )
    await db.execute(delete(Profile).where(Profile.user_id == user_id))
    await db.execute(delete(User).where(User.id == user_id))
    await db.commit()

    logger.info(f"User {user_id} ({email}) deleted by {actor_id}")
    await audit.log_action(
        get_database(request),
        audit.USER_DELETED,
        f"Deleted {email}",
        UserDeletedMeta(user_id=user_id, email=email, profiles_removed=profiles_removed),
        actor_id=actor_id,
    )
    return {"message": "User deleted"}


# ============================================
# SUB-ADMINS
# ============================================
@router.get("/sub-admins", response_model=List[UserResponse])
async def list_sub_admins(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    result = await db.execute(
        select(User).where(User.role == ROLE_SUB_ADMIN).order_by(User.created_at.desc(), User.id.desc())
    )
    return result.scalars().all()


@router.post("/sub-admins", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_sub_admin(
    data: SubAdminCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _check_permissions(data.permissions)
    actor_id = current_user.id

    user = await create_user(
        db,
        data.email,
        data.password,
        role=ROLE_SUB_ADMIN,
        permissions=list(data.permissions),
        limits=default_limits(get_settings(request)),
        features={},
    )
    await create_default_profile(
        db,
        user,
        full_name=data.name or "Sub Admin",
        username_base=f"admin{random_suffix()}",
        show_phone=False,
    )
    await db.commit()
    await db.refresh(user)

    logger.info(f"Sub-admin {user.email} created by {actor_id}")
    await audit.log_action(
        get_database(request),
        audit.SUB_ADMIN_CREATED,
        f"Created sub-admin {user.email}",
        SubAdminCreatedMeta(user_id=user.id, email=user.email, permissions=user.permissions or []),
        actor_id=actor_id,
    )
    return user


# ============================================
# AUDIT LOG
# ============================================
@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(require_admin),
):
    return await audit.recent_entries(get_database(request), limit=limit)
