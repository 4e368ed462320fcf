"""
QR resolution and scan recording.

Resolution is on the scanner's critical path and only does the lookups
plus atomic counter increments. Building and storing the ScanEvent
(user agent parsing, IP geolocation) happens afterwards as a background
task and can never fail the redirect.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings
from database import Database
from models import Profile, QRCode, ScanEvent, utc_now
from rate_limit import client_ip
from utils import UNKNOWN_LOCATION, get_location_from_ip, parse_device_info

logger = logging.getLogger(__name__)

FALLBACK_URL = "/"
SOURCE_QR = "qr"
SOURCE_PROFILE_VIEW = "profile_view"


def profile_path(username: str) -> str:
    return f"/u/{username}"


@dataclass
class Resolution:
    location: str
    qr_code_id: Optional[int] = None
    profile_id: Optional[int] = None

    @property
    def resolved(self) -> bool:
        return self.profile_id is not None


@dataclass
class ScanContext:
    """Request details captured before the response is sent."""
    ip_address: Optional[str]
    user_agent: str
    referrer: str

    @classmethod
    def from_request(cls, request: Request) -> "ScanContext":
        return cls(
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            referrer=request.headers.get("referer", "Direct"),
        )


async def resolve_code(db: AsyncSession, code: str) -> Resolution:
    """
    Map a short code to its profile URL and count the scan.
    Unknown codes, deleted codes and codes whose profile is gone or deleted
    resolve to the fallback and are not counted.
    """
    result = await db.execute(
        select(
            QRCode.id,
            QRCode.deleted_at,
            Profile.id,
            Profile.username,
            Profile.deleted_at,
        )
        .outerjoin(Profile, QRCode.profile_id == Profile.id)
        .where(QRCode.code == code)
    )
    row = result.one_or_none()

    if row is None:
        logger.info(f"QR code not found: {code}")
        return Resolution(FALLBACK_URL)

    qr_id, qr_deleted_at, profile_id, username, profile_deleted_at = row
    if qr_deleted_at is not None:
        logger.info(f"Deleted QR code scanned: {code}")
        return Resolution(FALLBACK_URL, qr_code_id=qr_id)
    if profile_id is None or profile_deleted_at is not None:
        logger.info(f"QR code {code} points at a missing profile")
        return Resolution(FALLBACK_URL, qr_code_id=qr_id)

    try:
        await increment_scan_counters(db, qr_id, profile_id)
    except Exception as e:
        await db.rollback()
        logger.error(f"Failed to count scan for {code}: {str(e)}", exc_info=True)

    return Resolution(profile_path(username), qr_code_id=qr_id, profile_id=profile_id)


async def increment_scan_counters(db: AsyncSession, qr_id: int, profile_id: int):
    # Single UPDATE ... SET n = n + 1 statements: concurrent scans never lose updates
    now = utc_now()
    await db.execute(
        update(QRCode)
        .where(QRCode.id == qr_id)
        # A scan is not an edit: updated_at stays put
        .values(scans=QRCode.scans + 1, last_scan_at=now, updated_at=QRCode.updated_at)
    )
    await db.execute(
        update(Profile)
        .where(Profile.id == profile_id)
        .values(total_scans=Profile.total_scans + 1, last_scanned_at=now)
    )
    await db.commit()


async def count_profile_view(db: AsyncSession, profile_id: int):
    await db.execute(
        update(Profile).where(Profile.id == profile_id).values(views=Profile.views + 1)
    )
    await db.commit()


async def record_scan(
    database: Database,
    settings: Settings,
    context: ScanContext,
    qr_code_id: Optional[int] = None,
    profile_id: Optional[int] = None,
    source: str = SOURCE_QR,
) -> Optional[int]:
    """
    Append one ScanEvent. Meant to run as a background task: retries a
    bounded number of times, then gives up quietly. Returns the event id.
    """
    device = parse_device_info(context.user_agent)
    if settings.LOCATION_LOOKUP_ENABLED:
        location = await get_location_from_ip(context.ip_address, timeout=settings.LOCATION_LOOKUP_TIMEOUT)
    else:
        location = dict(UNKNOWN_LOCATION)

    attempts = max(1, settings.SCAN_RECORD_RETRIES)
    for attempt in range(1, attempts + 1):
        try:
            async with database.session() as session:
                event = ScanEvent(
                    qr_code_id=qr_code_id,
                    profile_id=profile_id,
                    source=source,
                    scanned_at=utc_now(),
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    referrer=context.referrer,
                    device_type=device["device_type"],
                    device_name=device["device_name"],
                    browser=device["browser"],
                    os=device["os"],
                    country=location["country"],
                    city=location["city"],
                    region=location["region"],
                    latitude=location["latitude"],
                    longitude=location["longitude"],
                )
                session.add(event)
                await session.commit()
                logger.info(
                    f"Scan recorded: source={source}, qr={qr_code_id}, profile={profile_id}, "
                    f"device={device['device_type']}, country={location['country']}"
                )
                return event.id
        except Exception as e:
            logger.warning(f"Scan record attempt {attempt}/{attempts} failed: {str(e)}")
            if attempt < attempts:
                await asyncio.sleep(0.05 * attempt)

    logger.error(f"Dropped scan event for qr={qr_code_id}, profile={profile_id}")
    return None
