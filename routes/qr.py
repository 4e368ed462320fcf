from fastapi import APIRouter, Depends, Request, Response, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError
from sqlalchemy import select, func, and_, case, extract, delete
from typing import List, Optional
from datetime import datetime, timedelta, timezone
import qrcode
import io
import logging

from database import get_db
from auth import get_current_user, get_settings, is_admin
from errors import Conflict, Forbidden, NotFound
from models import User, Profile, QRCode, ScanEvent
from schemas import QRCodeCreate, QRCodeUpdate, QRCodeRestore, QRCodeResponse, QRAnalytics, Message
from utils import generate_code

router = APIRouter(prefix="/api/qr-codes", tags=["QR Codes"])
logger = logging.getLogger(__name__)

CODE_ATTEMPTS = 5


def short_url(request: Request, code: str) -> str:
    return f"{get_settings(request).BASE_URL.rstrip('/')}/qr/{code}"


def to_response(request: Request, qr_code: QRCode) -> QRCodeResponse:
    response = QRCodeResponse.model_validate(qr_code)
    response.short_url = short_url(request, qr_code.code)
    return response


def owned_by(user: User):
    """QR codes are owned through the profile they point at."""
    return QRCode.profile_id.in_(select(Profile.id).where(Profile.user_id == user.id))


async def get_owned_qr_code(db: AsyncSession, qr_id: int, user: User) -> QRCode:
    result = await db.execute(select(QRCode).where(and_(QRCode.id == qr_id, owned_by(user))))
    qr_code = result.scalar_one_or_none()
    if not qr_code:
        raise NotFound("QR code not found")
    return qr_code


async def get_owned_active_profile(db: AsyncSession, profile_id: int, user: User) -> Profile:
    result = await db.execute(
        select(Profile).where(
            Profile.id == profile_id,
            Profile.user_id == user.id,
            Profile.deleted_at.is_(None),
        )
    )
    profile = result.scalar_one_or_none()
    if not profile:
        raise NotFound("Profile not found")
    return profile


# ============================================
# LIST QR CODES
# ============================================
@router.get("", response_model=List[QRCodeResponse])
async def list_qr_codes(
    request: Request,
    profile_id: Optional[int] = Query(None, alias="profileId"),
    include_deleted: bool = Query(False, alias="includeDeleted"),
    deleted_only: bool = Query(False, alias="deletedOnly"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    The caller's QR codes, newest first. Trashed codes are hidden unless
    includeDeleted or deletedOnly is set.
    """
    query = select(QRCode).where(owned_by(current_user))
    if profile_id is not None:
        query = query.where(QRCode.profile_id == profile_id)
    if deleted_only:
        query = query.where(QRCode.deleted_at.isnot(None))
    elif not include_deleted:
        query = query.where(QRCode.deleted_at.is_(None))

    result = await db.execute(
        query.order_by(QRCode.created_at.desc(), QRCode.id.desc()).offset(skip).limit(limit)
    )
    qr_codes = result.scalars().all()

    logger.info(f"Listed {len(qr_codes)} QR codes for user {current_user.id}")
    return [to_response(request, qr) for qr in qr_codes]


# ============================================
# CREATE QR CODE
# ============================================
@router.post("", response_model=QRCodeResponse, status_code=201)
async def create_qr_code(
    qr_data: QRCodeCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Create a QR code bound to one of the caller's active profiles.
    """
    await get_owned_active_profile(db, qr_data.profile_id, current_user)
    user_id = current_user.id

    max_qr_codes = (current_user.limits or {}).get("max_qr_codes")
    if max_qr_codes is not None and not is_admin(current_user):
        count = await db.execute(
            select(func.count(QRCode.id)).where(owned_by(current_user), QRCode.deleted_at.is_(None))
        )
        if count.scalar() >= max_qr_codes:
            raise Forbidden(f"Plan limit reached: {max_qr_codes} QR codes")

    for attempt in range(CODE_ATTEMPTS):
        new_qr = QRCode(
            code=generate_code(),
            profile_id=qr_data.profile_id,
            name=qr_data.name or "Untitled QR",
            color=qr_data.color or "#000000",
            scans=0,
        )
        db.add(new_qr)
        try:
            await db.commit()
            break
        except IntegrityError:
            # Code collision, draw again
            await db.rollback()
    else:
        raise Conflict("Could not allocate a unique code")

    await db.refresh(new_qr)
    logger.info(f"Created QR code {new_qr.code} for profile {qr_data.profile_id} by user {user_id}")
    return to_response(request, new_qr)


# ============================================
# RESTORE QR CODE
# ============================================
@router.post("/restore", response_model=QRCodeResponse)
async def restore_qr_code(
    data: QRCodeRestore,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Take a QR code out of the trash. Restoring an active code is a no-op.
    """
    qr_code = await get_owned_qr_code(db, data.id, current_user)
    if qr_code.restore():
        await db.commit()
        await db.refresh(qr_code)
        logger.info(f"Restored QR code {data.id} by user {current_user.id}")
    return to_response(request, qr_code)


# ============================================
# GET SINGLE QR CODE
# ============================================
@router.get("/{qr_id}", response_model=QRCodeResponse)
async def get_qr_code(
    qr_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return to_response(request, await get_owned_qr_code(db, qr_id, current_user))


# ============================================
# UPDATE QR CODE
# ============================================
@router.put("/{qr_id}", response_model=QRCodeResponse)
async def update_qr_code(
    qr_id: int,
    qr_update: QRCodeUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Rename, recolor or point a QR code at another of the caller's profiles.
    """
    qr_code = await get_owned_qr_code(db, qr_id, current_user)

    if qr_update.profile_id is not None:
        await get_owned_active_profile(db, qr_update.profile_id, current_user)
        qr_code.profile_id = qr_update.profile_id
    if qr_update.name is not None:
        qr_code.name = qr_update.name
    if qr_update.color is not None:
        qr_code.color = qr_update.color

    await db.commit()
    await db.refresh(qr_code)

    logger.info(f"Updated QR code {qr_id} by user {current_user.id}")
    return to_response(request, qr_code)


# ============================================
# DELETE QR CODE
# ============================================
@router.delete("/{qr_id}", response_model=Message)
async def delete_qr_code(
    qr_id: int,
    permanent: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Move a QR code to the trash, or remove it for good with ?permanent=true.
    Scan history is kept either way.
    """
    qr_code = await get_owned_qr_code(db, qr_id, current_user)

    if permanent:
        await db.execute(delete(QRCode).where(QRCode.id == qr_code.id))
        await db.commit()
        logger.info(f"Permanently deleted QR code {qr_id} by user {current_user.id}")
        return {"message": "QR code permanently deleted"}

    if qr_code.soft_delete():
        await db.commit()
        logger.info(f"Soft-deleted QR code {qr_id} by user {current_user.id}")
    return {"message": "QR code moved to trash"}


# ============================================
# GET QR CODE IMAGE (PNG)
# ============================================
@router.get("/{qr_id}/image")
async def get_qr_image(
    qr_id: int,
    request: Request,
    download: bool = False,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Generate QR code image (view or download).
    """
    qr_code = await get_owned_qr_code(db, qr_id, current_user)

    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=10,
        border=4,
    )
    qr.add_data(short_url(request, qr_code.code))
    qr.make(fit=True)

    img = qr.make_image(fill_color=qr_code.color, back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")

    headers = {}
    if download:
        headers["Content-Disposition"] = f"attachment; filename=qr-{qr_code.code}.png"

    return Response(content=buffer.getvalue(), media_type="image/png", headers=headers)


# ============================================
# GET QR CODE ANALYTICS
# ============================================
async def _breakdown(db: AsyncSession, column, qr_id: int, since: Optional[datetime]):
    conditions = [ScanEvent.qr_code_id == qr_id]
    if since is not None:
        conditions.append(ScanEvent.scanned_at >= since)
    result = await db.execute(
        select(column, func.count(ScanEvent.id).label('count'))
        .where(and_(*conditions))
        .group_by(column)
        .order_by(func.count(ScanEvent.id).desc())
    )
    return [{"label": row[0] or "Unknown", "count": row.count} for row in result.all()]


@router.get("/{qr_id}/analytics", response_model=QRAnalytics)
async def get_qr_analytics(
    qr_id: int,
    time_range: str = Query("30days", pattern="^(today|7days|30days|90days|all)$"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Scan analytics for one QR code: period totals, device/browser/os
    breakdowns, top locations and an hourly profile of the last 24h.
    """
    qr_code = await get_owned_qr_code(db, qr_id, current_user)

    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = now - timedelta(days=7)
    month_start = now - timedelta(days=30)
    since = {
        "today": today_start,
        "7days": week_start,
        "30days": month_start,
        "90days": now - timedelta(days=90),
        "all": None,
    }[time_range]

    # All counts in a single query
    counts_result = await db.execute(
        select(
            func.count(ScanEvent.id).label('total'),
            func.sum(case((ScanEvent.scanned_at >= today_start, 1), else_=0)).label('today'),
            func.sum(case((ScanEvent.scanned_at >= week_start, 1), else_=0)).label('week'),
            func.sum(case((ScanEvent.scanned_at >= month_start, 1), else_=0)).label('month'),
        )
        .where(ScanEvent.qr_code_id == qr_id)
    )
    counts = counts_result.one()

    devices = await _breakdown(db, ScanEvent.device_type, qr_id, since)
    browsers = await _breakdown(db, ScanEvent.browser, qr_id, since)
    operating_systems = await _breakdown(db, ScanEvent.os, qr_id, since)

    range_filter = [ScanEvent.qr_code_id == qr_id]
    if since is not None:
        range_filter.append(ScanEvent.scanned_at >= since)

    city_result = await db.execute(
        select(ScanEvent.city, ScanEvent.country, func.count(ScanEvent.id).label('count'))
        .where(and_(*range_filter, ScanEvent.city.isnot(None)))
        .group_by(ScanEvent.city, ScanEvent.country)
        .order_by(func.count(ScanEvent.id).desc())
        .limit(5)
    )
    top_cities = [
        {"country": row.country, "city": row.city, "count": row.count}
        for row in city_result.all()
    ]

    country_result = await db.execute(
        select(ScanEvent.country, func.count(ScanEvent.id).label('count'))
        .where(and_(*range_filter, ScanEvent.country.isnot(None)))
        .group_by(ScanEvent.country)
        .order_by(func.count(ScanEvent.id).desc())
        .limit(5)
    )
    top_countries = [{"country": row.country, "count": row.count} for row in country_result.all()]

    hour = extract('hour', ScanEvent.scanned_at)
    hourly_result = await db.execute(
        select(hour.label('hour'), func.count(ScanEvent.id).label('count'))
        .where(and_(ScanEvent.qr_code_id == qr_id, ScanEvent.scanned_at >= now - timedelta(hours=24)))
        .group_by(hour)
    )
    hourly_data = {int(row.hour): row.count for row in hourly_result.all()}
    hourly_breakdown = [{"hour": i, "count": hourly_data.get(i, 0)} for i in range(24)]
    peak_hour = max(hourly_data.items(), key=lambda x: x[1])[0] if hourly_data else None

    recent_result = await db.execute(
        select(ScanEvent)
        .where(ScanEvent.qr_code_id == qr_id)
        .order_by(ScanEvent.scanned_at.desc(), ScanEvent.id.desc())
        .limit(10)
    )

    logger.info(f"Generated analytics for QR {qr_id}")
    return {
        "qr_code_id": qr_id,
        "scans": qr_code.scans,
        "total_events": counts.total or 0,
        "scans_today": counts.today or 0,
        "scans_this_week": counts.week or 0,
        "scans_this_month": counts.month or 0,
        "devices": devices,
        "browsers": browsers,
        "operating_systems": operating_systems,
        "top_countries": top_countries,
        "top_cities": top_cities,
        "hourly_breakdown": hourly_breakdown,
        "peak_hour": peak_hour,
        "recent_scans": recent_result.scalars().all(),
    }
