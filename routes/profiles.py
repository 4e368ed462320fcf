from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, func
from typing import List, Optional
import logging

from database import get_db
from auth import get_current_user, available_username, username_taken, is_admin
from errors import Conflict, Forbidden, NotFound
from models import Profile, User
from schemas import ProfileCreate, ProfileUpdate, ProfileResponse, Message
from utils import random_suffix, slugify_username

router = APIRouter(prefix="/api/profiles", tags=["Profiles"])
logger = logging.getLogger(__name__)

NON_NULLABLE_FIELDS = {"username", "full_name", "show_email", "show_phone"}


async def get_owned_profile(db: AsyncSession, profile_id: int, user: User) -> Profile:
    """Owner-scoped lookup, deleted profiles included."""
    result = await db.execute(
        select(Profile).where(Profile.id == profile_id, Profile.user_id == user.id)
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFound("Profile not found")
    return profile


async def _commit_profile(db: AsyncSession, profile: Profile) -> Profile:
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race on the unique username index
        await db.rollback()
        raise Conflict("Username already taken")
    await db.refresh(profile)
    return profile


# ============================================
# LIST PROFILES
# ============================================
@router.get("", response_model=List[ProfileResponse])
async def list_profiles(
    status_filter: str = Query("active", alias="status", pattern="^(active|deleted)$"),
    search: Optional[str] = Query(None, max_length=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    The caller's profiles, most recently updated first.
    `status=deleted` lists the trash.
    """
    query = select(Profile).where(Profile.user_id == current_user.id)
    if status_filter == "deleted":
        query = query.where(Profile.deleted_at.isnot(None))
    else:
        query = query.where(Profile.deleted_at.is_(None))
    if search:
        query = query.where(func.lower(Profile.full_name).contains(search.lower()))

    result = await db.execute(query.order_by(Profile.updated_at.desc(), Profile.id.desc()))
    return result.scalars().all()


# ============================================
# CREATE PROFILE
# ============================================
@router.post("", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def create_profile(
    data: ProfileCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    max_profiles = (current_user.limits or {}).get("max_profiles")
    if max_profiles is not None and not is_admin(current_user):
        result = await db.execute(
            select(func.count(Profile.id)).where(
                Profile.user_id == current_user.id, Profile.deleted_at.is_(None)
            )
        )
        if result.scalar() >= max_profiles:
            raise Forbidden(f"Plan limit reached: {max_profiles} profiles")

    fields = {
        k: v for k, v in data.model_dump(exclude_unset=True, exclude={"username"}).items()
        if v is not None
    }
    if data.username:
        if await username_taken(db, data.username):
            raise Conflict("Username already taken")
        username = data.username
    else:
        base = slugify_username(data.full_name or "", fallback="user")
        username = await available_username(db, f"{base}-{random_suffix()}")

    profile = Profile(
        user_id=current_user.id,
        username=username,
        full_name=fields.pop("full_name", None) or "New Profile",
        phone_numbers=fields.pop("phone_numbers", None) or [],
        **fields,
    )
    db.add(profile)
    profile = await _commit_profile(db, profile)

    logger.info(f"Created profile '{profile.username}' for user {current_user.id}")
    return profile


# ============================================
# GET / UPDATE PROFILE
# ============================================
@router.get("/{profile_id}", response_model=ProfileResponse)
async def get_profile(
    profile_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return await get_owned_profile(db, profile_id, current_user)


@router.patch("/{profile_id}", response_model=ProfileResponse)
async def update_profile(
    profile_id: int,
    data: ProfileUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    profile = await get_owned_profile(db, profile_id, current_user)
    updates = data.model_dump(exclude_unset=True)

    new_username = updates.get("username")
    if new_username and new_username != profile.username:
        if await username_taken(db, new_username):
            raise Conflict("Username already taken")

    for field, value in updates.items():
        if value is None and field in NON_NULLABLE_FIELDS:
            continue
        if field == "phone_numbers" and value is None:
            value = []
        setattr(profile, field, value)

    profile = await _commit_profile(db, profile)
    logger.info(f"Updated profile {profile_id} by user {current_user.id}")
    return profile


# ============================================
# SOFT DELETE / RESTORE
# ============================================
@router.delete("/{profile_id}", response_model=Message)
async def delete_profile(
    profile_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Move a profile to the trash. Deleting a deleted profile is a no-op.
    """
    profile = await get_owned_profile(db, profile_id, current_user)
    if profile.soft_delete():
        await db.commit()
        logger.info(f"Soft-deleted profile {profile_id} by user {current_user.id}")
    return {"message": "Profile deleted"}


@router.post("/{profile_id}/restore", response_model=ProfileResponse)
async def restore_profile(
    profile_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Bring a profile back from the trash. Restoring an active profile is a no-op.
    """
    profile = await get_owned_profile(db, profile_id, current_user)
    if profile.restore():
        await db.commit()
        await db.refresh(profile)
        logger.info(f"Restored profile {profile_id} by user {current_user.id}")
    return profile
