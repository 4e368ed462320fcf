"""
Owner dashboards built from the scan log: per-profile totals, a
period-over-period summary of all the caller's codes and a profile ranking.
Date series are bucketed in SQL and gap-filled here, in UTC.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, case, distinct, literal_column
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List
import logging

from database import get_db
from auth import get_current_user
from errors import NotFound
from models import User, Profile, QRCode, ScanEvent
from routes.qr import owned_by
from scans import SOURCE_QR
from schemas import ProfileAnalytics, DashboardStats, TopProfiles

router = APIRouter(prefix="/api/analytics", tags=["Analytics"])
logger = logging.getLogger(__name__)

RANGE_PATTERN = "^(week|month|year)$"
RANGE_DAYS = {"week": 7, "month": 30}
TOP_QR_CODES = 5
TOP_PROFILES = 10


@dataclass
class Window:
    """A reporting period, the one before it and the bucket keys covering it."""
    start: datetime
    previous_start: datetime
    keys: List[str]
    monthly: bool


def month_keys(now: datetime, count: int = 12) -> List[str]:
    keys = []
    year, month = now.year, now.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        year, month = (year, month - 1) if month > 1 else (year - 1, 12)
    return keys[::-1]


def make_window(time_range: str, now: datetime) -> Window:
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range == "year":
        keys = month_keys(now)
        start = today.replace(year=int(keys[0][:4]), month=int(keys[0][5:]), day=1)
        return Window(start, start.replace(year=start.year - 1), keys, monthly=True)

    days = RANGE_DAYS[time_range]
    start = today - timedelta(days=days - 1)
    keys = [(start + timedelta(days=i)).date().isoformat() for i in range(days)]
    return Window(start, start - timedelta(days=days), keys, monthly=False)


def growth(current: int, previous: int) -> int:
    """Percent change; anything from nothing counts as +100."""
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)


def _date_bucket(db: AsyncSession, column, monthly: bool):
    # Inline formats: GROUP BY has to repeat the exact select expression
    if db.get_bind().dialect.name == "sqlite":
        return func.strftime(literal_column("'%Y-%m'" if monthly else "'%Y-%m-%d'"), column)
    return func.to_char(column, literal_column("'YYYY-MM'" if monthly else "'YYYY-MM-DD'"))


async def _timeline(db: AsyncSession, column, conditions, window: Window) -> List[Dict]:
    bucket = _date_bucket(db, column, window.monthly).label("bucket")
    result = await db.execute(
        select(bucket, func.count().label("count"))
        .where(and_(*conditions, column >= window.start))
        .group_by(bucket)
    )
    counts = {row.bucket: row.count for row in result.all()}
    return [{"date": key, "count": counts.get(key, 0)} for key in window.keys]


async def _breakdown(db: AsyncSession, column, conditions) -> List[Dict]:
    result = await db.execute(
        select(column, func.count(ScanEvent.id).label("count"))
        .where(and_(*conditions))
        .group_by(column)
        .order_by(func.count(ScanEvent.id).desc())
    )
    return [{"label": row[0] or "Unknown", "count": row.count} for row in result.all()]


# ============================================
# PROFILE ANALYTICS
# ============================================
@router.get("/profile/{profile_id}", response_model=ProfileAnalytics)
async def profile_analytics(
    profile_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    QR scans attributed to one of the caller's profiles: total, unique by
    IP address and a daily series over the last 30 days.
    """
    result = await db.execute(
        select(Profile.id).where(Profile.id == profile_id, Profile.user_id == current_user.id)
    )
    if result.scalar_one_or_none() is None:
        raise NotFound("Profile not found")

    scope = [ScanEvent.profile_id == profile_id, ScanEvent.source == SOURCE_QR]
    counts = (await db.execute(
        select(
            func.count(ScanEvent.id).label("total"),
            func.count(distinct(ScanEvent.ip_address)).label("unique"),
            func.max(ScanEvent.scanned_at).label("last"),
        ).where(and_(*scope))
    )).one()

    window = make_window("month", datetime.now(timezone.utc))
    scans_by_date = await _timeline(db, ScanEvent.scanned_at, scope, window)

    logger.info(f"Generated analytics for profile {profile_id}")
    return {
        "profile_id": profile_id,
        "total_scans": counts.total or 0,
        "unique_scans": counts.unique or 0,
        "last_scanned_at": counts.last,
        "scans_by_date": scans_by_date,
    }


# ============================================
# DASHBOARD STATS
# ============================================
@router.get("/dashboard-stats", response_model=DashboardStats)
async def dashboard_stats(
    time_range: str = Query("month", alias="range", pattern=RANGE_PATTERN),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    Summary over all of the caller's QR codes for the last week, month or
    year, with scan growth against the period right before it.
    """
    window = make_window(time_range, datetime.now(timezone.utc))
    owned_codes = select(QRCode.id).where(owned_by(current_user))
    scan_scope = [ScanEvent.qr_code_id.in_(owned_codes), ScanEvent.source == SOURCE_QR]

    counts = (await db.execute(
        select(
            func.count(ScanEvent.id).label("total"),
            func.sum(case((ScanEvent.scanned_at >= window.start, 1), else_=0)).label("current"),
            func.sum(case(
                (and_(ScanEvent.scanned_at >= window.previous_start, ScanEvent.scanned_at < window.start), 1),
                else_=0,
            )).label("previous"),
        ).where(and_(*scan_scope))
    )).one()
    total = counts.total or 0
    current = counts.current or 0
    previous = counts.previous or 0

    active_scope = [owned_by(current_user), QRCode.deleted_at.is_(None)]
    active = (await db.execute(select(func.count(QRCode.id)).where(and_(*active_scope)))).scalar()
    links_updated = (await db.execute(
        select(func.count(QRCode.id)).where(owned_by(current_user), QRCode.updated_at >= window.start)
    )).scalar()

    scan_count = func.count(ScanEvent.id)
    top_result = await db.execute(
        select(QRCode.id, QRCode.name, QRCode.code, scan_count.label("scans"))
        .join(ScanEvent, ScanEvent.qr_code_id == QRCode.id)
        .where(owned_by(current_user), ScanEvent.source == SOURCE_QR)
        .group_by(QRCode.id, QRCode.name, QRCode.code)
        .order_by(scan_count.desc(), QRCode.id)
        .limit(TOP_QR_CODES)
    )
    top_qr_codes = [
        {"id": row.id, "name": row.name, "code": row.code, "scans": row.scans, "rank": rank}
        for rank, row in enumerate(top_result.all(), start=1)
    ]

    location_result = await db.execute(
        select(ScanEvent.city, ScanEvent.country, scan_count.label("count"))
        .where(and_(*scan_scope))
        .group_by(ScanEvent.city, ScanEvent.country)
        .order_by(scan_count.desc())
        .limit(5)
    )
    top_locations = [
        {"country": row.country or "Unknown", "city": row.city or "Unknown", "count": row.count}
        for row in location_result.all()
    ]

    logger.info(f"Generated {time_range} dashboard stats for user {current_user.id}")
    return {
        "range": time_range,
        "total_scans": total,
        "scans_in_period": current,
        "scans_previous_period": previous,
        "scan_growth": growth(current, previous),
        "active_qr_codes": active,
        "links_updated": links_updated,
        "avg_scans_per_qr": round(total / active) if active else 0,
        "scans_timeline": await _timeline(db, ScanEvent.scanned_at, scan_scope, window),
        "created_timeline": await _timeline(db, QRCode.created_at, active_scope, window),
        "updates_timeline": await _timeline(db, QRCode.updated_at, [owned_by(current_user)], window),
        "top_qr_codes": top_qr_codes,
        "devices": await _breakdown(db, ScanEvent.device_type, scan_scope),
        "operating_systems": await _breakdown(db, ScanEvent.os, scan_scope),
        "top_locations": top_locations,
    }


# ============================================
# TOP PROFILES
# ============================================
@router.get("/top-profiles", response_model=TopProfiles)
async def top_profiles(
    time_range: str = Query("month", alias="range", pattern=RANGE_PATTERN),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """
    The caller's active profiles ranked by QR scans, plus totals and a
    scan series for the chosen range.
    """
    scan_count = func.count(ScanEvent.id)
    result = await db.execute(
        select(Profile.id, Profile.full_name, Profile.job_title, Profile.photo, scan_count.label("total_scans"))
        .outerjoin(ScanEvent, and_(ScanEvent.profile_id == Profile.id, ScanEvent.source == SOURCE_QR))
        .where(Profile.user_id == current_user.id, Profile.deleted_at.is_(None))
        .group_by(Profile.id, Profile.full_name, Profile.job_title, Profile.photo)
        .order_by(scan_count.desc(), Profile.id)
    )
    rows = result.all()

    active_profiles = select(Profile.id).where(Profile.user_id == current_user.id, Profile.deleted_at.is_(None))
    window = make_window(time_range, datetime.now(timezone.utc))
    scans_by_date = await _timeline(
        db,
        ScanEvent.scanned_at,
        [ScanEvent.profile_id.in_(active_profiles), ScanEvent.source == SOURCE_QR],
        window,
    )

    return {
        "top_profiles": [
            {
                "profile_id": row.id,
                "full_name": row.full_name,
                "job_title": row.job_title,
                "photo": row.photo,
                "total_scans": row.total_scans,
            }
            for row in rows[:TOP_PROFILES]
        ],
        "stats": {"total_scans": sum(row.total_scans for row in rows), "active_count": len(rows)},
        "scans_by_date": scans_by_date,
    }
