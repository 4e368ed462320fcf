from fastapi import APIRouter, Depends, Request, BackgroundTasks
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging

from database import get_db, get_database
from errors import NotFound
from models import Profile
from schemas import PublicProfile
from scans import (
    FALLBACK_URL,
    SOURCE_PROFILE_VIEW,
    ScanContext,
    count_profile_view,
    record_scan,
    resolve_code,
)

router = APIRouter(tags=["Public"])
logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=302, headers=NO_CACHE_HEADERS)


# ============================================
# PUBLIC QR CODE REDIRECT
# ============================================
@router.get("/qr/{code}")
@router.get("/api/qr/{code}")
async def redirect_qr(
    code: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """
    Public endpoint that redirects a scanned code to its profile page.
    Scanners never see an error: anything that goes wrong lands on "/".
    The scan event is written in the background after the redirect.

    Example: https://yourdomain.com/qr/Ab3dE9xZ -> /u/alice
    """
    try:
        resolution = await resolve_code(db, code)
    except Exception as e:
        logger.error(f"Error in redirect_qr for code {code}: {str(e)}", exc_info=True)
        return _redirect(FALLBACK_URL)

    if resolution.resolved:
        background_tasks.add_task(
            record_scan,
            get_database(request),
            request.app.state.settings,
            ScanContext.from_request(request),
            qr_code_id=resolution.qr_code_id,
            profile_id=resolution.profile_id,
        )

    return _redirect(resolution.location)


# ============================================
# PUBLIC PROFILE
# ============================================
@router.get("/api/profile/{username}", response_model=PublicProfile, response_model_exclude_unset=True)
async def public_profile(
    username: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """
    Visible fields of an active profile. Email and phone numbers are left
    out of the body entirely unless the owner opted in.
    """
    result = await db.execute(
        select(Profile).where(Profile.username == username, Profile.deleted_at.is_(None))
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFound("Profile not found")

    fields = {
        "username": profile.username,
        "full_name": profile.full_name,
        "job_title": profile.job_title,
        "company": profile.company,
        "photo": profile.photo,
        "linkedin": profile.linkedin,
        "website": profile.website,
        "twitter": profile.twitter,
        "instagram": profile.instagram,
    }
    if profile.show_email:
        fields["email"] = profile.email
    if profile.show_phone:
        fields["phone_numbers"] = profile.phone_numbers or []
    public = PublicProfile(**fields)

    try:
        await count_profile_view(db, profile.id)
        background_tasks.add_task(
            record_scan,
            get_database(request),
            request.app.state.settings,
            ScanContext.from_request(request),
            profile_id=profile.id,
            source=SOURCE_PROFILE_VIEW,
        )
    except Exception as e:
        await db.rollback()
        logger.warning(f"Failed to count view of profile {profile.id}: {str(e)}")

    return public
