from pydantic import BaseModel, EmailStr, Field, ConfigDict
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

# ============================================
# USER SCHEMAS
# ============================================
class UserSignup(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=100)
    full_name: str = Field(min_length=1, max_length=255, alias="fullName")

    model_config = ConfigDict(populate_by_name=True)


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class PasswordUpdate(BaseModel):
    current_password: str = Field(min_length=1, alias="currentPassword")
    new_password: str = Field(min_length=6, max_length=100, alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class InvitationAccept(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=6, max_length=100)


class PlanLimits(BaseModel):
    max_profiles: Optional[int] = Field(None, ge=0)
    max_qr_codes: Optional[int] = Field(None, ge=0)


class UserResponse(BaseModel):
    """Public view of a user. Never carries the password hash or invitation token."""
    id: int
    email: str
    role: str
    status: str
    limits: Optional[Dict[str, Any]] = None
    features: Optional[Dict[str, Any]] = None
    permissions: List[str] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MeResponse(UserResponse):
    full_name: str = ""
    username: str = ""


class SessionResponse(BaseModel):
    message: str
    user: Dict[str, Any]
    access_token: str
    token_type: str = "bearer"


# ============================================
# ADMIN SCHEMAS
# ============================================
class AdminUserCreate(BaseModel):
    email: EmailStr
    role: Literal["admin", "sub-admin", "user"] = "user"
    password: Optional[str] = Field(None, min_length=6, max_length=100)
    limits: Optional[PlanLimits] = None
    features: Optional[Dict[str, bool]] = None


class AdminUserUpdate(BaseModel):
    status: Optional[Literal["active", "suspended", "pending"]] = None
    limits: Optional[PlanLimits] = None
    features: Optional[Dict[str, bool]] = None
    permissions: Optional[List[str]] = None
    password: Optional[str] = Field(None, min_length=6, max_length=100)


class SubAdminCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6, max_length=100)
    name: Optional[str] = None
    permissions: List[str] = []


class AdminUserItem(UserResponse):
    profile_count: int = 0


class Pagination(BaseModel):
    total: int
    page: int
    totalPages: int
    hasMore: bool


class AdminUserList(BaseModel):
    users: List[AdminUserItem]
    pagination: Pagination


# ============================================
# AUDIT METADATA (tagged by `kind`)
# ============================================
class UserDeletedMeta(BaseModel):
    kind: Literal["user_deleted"] = "user_deleted"
    user_id: int
    email: str
    profiles_removed: int = 0


class UserInvitedMeta(BaseModel):
    kind: Literal["user_invited"] = "user_invited"
    user_id: int
    email: str
    role: str
    pending: bool


class UserUpdatedMeta(BaseModel):
    kind: Literal["user_updated"] = "user_updated"
    user_id: int
    changes: List[str]


class SubAdminCreatedMeta(BaseModel):
    kind: Literal["sub_admin_created"] = "sub_admin_created"
    user_id: int
    email: str
    permissions: List[str] = []


class OpaqueMeta(BaseModel):
    """Escape hatch for payloads without a dedicated shape."""
    kind: Literal["opaque"] = "opaque"
    data: Dict[str, Any] = {}


AuditMetadata = Annotated[
    Union[UserDeletedMeta, UserInvitedMeta, UserUpdatedMeta, SubAdminCreatedMeta, OpaqueMeta],
    Field(discriminator="kind"),
]


class AuditLogResponse(BaseModel):
    id: int
    action: str
    description: str
    metadata: AuditMetadata = Field(validation_alias="meta")
    actor_id: Optional[int] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


# ============================================
# PROFILE SCHEMAS
# ============================================
class ProfileBase(BaseModel):
    full_name: Optional[str] = Field(None, max_length=255)
    job_title: Optional[str] = Field(None, max_length=255)
    company: Optional[str] = Field(None, max_length=255)
    photo: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_numbers: Optional[List[str]] = None
    linkedin: Optional[str] = Field(None, max_length=500)
    website: Optional[str] = Field(None, max_length=500)
    twitter: Optional[str] = Field(None, max_length=500)
    instagram: Optional[str] = Field(None, max_length=500)
    show_email: Optional[bool] = None
    show_phone: Optional[bool] = None


class ProfileCreate(ProfileBase):
    username: Optional[str] = Field(None, min_length=3, max_length=100, pattern=r'^[a-z0-9\-_]+$')


class ProfileUpdate(ProfileBase):
    # user_id and id are not accepted here: owner and identity are immutable
    username: Optional[str] = Field(None, min_length=3, max_length=100, pattern=r'^[a-z0-9\-_]+$')


class ProfileResponse(BaseModel):
    id: int
    user_id: int
    username: str
    full_name: str
    job_title: Optional[str] = None
    company: Optional[str] = None
    photo: Optional[str] = None
    email: Optional[str] = None
    phone_numbers: List[str] = []
    linkedin: Optional[str] = None
    website: Optional[str] = None
    twitter: Optional[str] = None
    instagram: Optional[str] = None
    show_email: bool
    show_phone: bool
    status: str
    views: int = 0
    total_scans: int = 0
    last_scanned_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class PublicProfile(BaseModel):
    """What an anonymous visitor may see."""
    username: str
    full_name: str
    job_title: Optional[str] = None
    company: Optional[str] = None
    photo: Optional[str] = None
    email: Optional[str] = None
    phone_numbers: List[str] = []
    linkedin: Optional[str] = None
    website: Optional[str] = None
    twitter: Optional[str] = None
    instagram: Optional[str] = None


# ============================================
# QR CODE SCHEMAS
# ============================================
class QRCodeCreate(BaseModel):
    profile_id: int = Field(alias="profileId")
    name: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, pattern=r'^#[0-9a-fA-F]{6}$')

    model_config = ConfigDict(populate_by_name=True)


class QRCodeUpdate(BaseModel):
    profile_id: Optional[int] = Field(None, alias="profileId")
    name: Optional[str] = Field(None, max_length=255)
    color: Optional[str] = Field(None, pattern=r'^#[0-9a-fA-F]{6}$')

    model_config = ConfigDict(populate_by_name=True)


class QRCodeRestore(BaseModel):
    id: int


class QRCodeResponse(BaseModel):
    id: int
    code: str
    profile_id: Optional[int]
    name: str
    color: str
    scans: int
    short_url: str = ""
    last_scan_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# ============================================
# SCAN / ANALYTICS SCHEMAS
# ============================================
class ScanEventResponse(BaseModel):
    id: int
    qr_code_id: Optional[int]
    profile_id: Optional[int]
    source: str
    scanned_at: datetime
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class BreakdownItem(BaseModel):
    label: str
    count: int


class LocationItem(BaseModel):
    country: Optional[str]
    city: Optional[str] = None
    count: int


class HourlyItem(BaseModel):
    hour: int
    count: int


class QRAnalytics(BaseModel):
    qr_code_id: int
    scans: int
    total_events: int
    scans_today: int
    scans_this_week: int
    scans_this_month: int
    devices: List[BreakdownItem]
    browsers: List[BreakdownItem]
    operating_systems: List[BreakdownItem]
    top_countries: List[LocationItem]
    top_cities: List[LocationItem]
    hourly_breakdown: List[HourlyItem]
    peak_hour: Optional[int]
    recent_scans: List[ScanEventResponse]


class DateCount(BaseModel):
    date: str  # YYYY-MM-DD, or YYYY-MM for yearly ranges
    count: int


class ProfileAnalytics(BaseModel):
    profile_id: int
    total_scans: int
    unique_scans: int
    last_scanned_at: Optional[datetime] = None
    scans_by_date: List[DateCount]


class TopQRCode(BaseModel):
    id: int
    name: str
    code: str
    scans: int
    rank: int


class DashboardStats(BaseModel):
    range: str
    total_scans: int
    scans_in_period: int
    scans_previous_period: int
    scan_growth: int  # percent, against the previous period
    active_qr_codes: int
    links_updated: int
    avg_scans_per_qr: int
    scans_timeline: List[DateCount]
    created_timeline: List[DateCount]
    updates_timeline: List[DateCount]
    top_qr_codes: List[TopQRCode]
    devices: List[BreakdownItem]
    operating_systems: List[BreakdownItem]
    top_locations: List[LocationItem]


class TopProfileItem(BaseModel):
    profile_id: int
    full_name: str
    job_title: Optional[str] = None
    photo: Optional[str] = None
    total_scans: int


class ProfileTotals(BaseModel):
    total_scans: int
    active_count: int


class TopProfiles(BaseModel):
    top_profiles: List[TopProfileItem]
    stats: ProfileTotals
    scans_by_date: List[DateCount]


class Message(BaseModel):
    message: str
