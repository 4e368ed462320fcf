from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Text, Index, JSON, Float
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from datetime import datetime, timezone
from database import Base


def utc_now():
    return datetime.now(timezone.utc)


ROLE_ADMIN = "admin"
ROLE_SUB_ADMIN = "sub-admin"
ROLE_USER = "user"
ROLES = (ROLE_ADMIN, ROLE_SUB_ADMIN, ROLE_USER)

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_PENDING = "pending"
USER_STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_PENDING)


class SoftDeleteMixin:
    """Shared soft-delete convention: a row is deleted while deleted_at is set."""

    deleted_at = Column(DateTime(timezone=True), nullable=True, index=True)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self) -> bool:
        """Mark as deleted. Returns False if it already was."""
        if self.deleted_at is not None:
            return False
        self.deleted_at = utc_now()
        return True

    def restore(self) -> bool:
        """Clear the deletion marker. Returns False if it was not deleted."""
        if self.deleted_at is None:
            return False
        self.deleted_at = None
        return True


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Always stored lower-cased, which makes the unique index case-insensitive
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=True)  # NULL while an invitation is pending
    role = Column(String(20), nullable=False, default=ROLE_USER, index=True)
    status = Column(String(20), nullable=False, default=STATUS_ACTIVE, index=True)

    # Plan entitlements, e.g. {"max_profiles": 1, "max_qr_codes": 5}
    limits = Column(JSON, nullable=True)
    features = Column(JSON, nullable=True)
    # Only meaningful for sub-admins, e.g. ["users.read"]
    permissions = Column(JSON, nullable=False, default=list)

    invitation_token = Column(String(64), unique=True, nullable=True, index=True)
    invitation_expires = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    profiles = relationship("Profile", back_populates="owner")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"


class Profile(SoftDeleteMixin, Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    # Unique across all profiles, deleted or not
    username = Column(String(100), unique=True, nullable=False, index=True)

    full_name = Column(String(255), nullable=False, default="")
    job_title = Column(String(255))
    company = Column(String(255))
    photo = Column(Text)

    email = Column(String(255))
    phone_numbers = Column(JSON, nullable=False, default=list)

    linkedin = Column(String(500))
    website = Column(String(500))
    twitter = Column(String(500))
    instagram = Column(String(500))

    show_email = Column(Boolean, nullable=False, default=True)
    show_phone = Column(Boolean, nullable=False, default=True)

    # Rollups, only ever changed through SQL increments
    views = Column(Integer, nullable=False, default=0)
    total_scans = Column(Integer, nullable=False, default=0)
    last_scanned_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="profiles")
    qr_codes = relationship("QRCode", back_populates="profile")

    __table_args__ = (
        Index('idx_profile_owner_deleted', 'user_id', 'deleted_at'),
    )

    @property
    def status(self) -> str:
        return "deleted" if self.is_deleted else "active"

    def __repr__(self):
        return f"<Profile(id={self.id}, username='{self.username}')>"


class QRCode(SoftDeleteMixin, Base):
    __tablename__ = "qr_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(32), unique=True, nullable=False, index=True)
    # Reference, not ownership: cleared when the owning user is removed
    profile_id = Column(Integer, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(255), nullable=False, default="Untitled QR")
    color = Column(String(20), nullable=False, default="#000000")

    scans = Column(Integer, nullable=False, default=0)
    last_scan_at = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    profile = relationship("Profile", back_populates="qr_codes")

    __table_args__ = (
        Index('idx_qr_profile_deleted', 'profile_id', 'deleted_at'),
    )

    def __repr__(self):
        return f"<QRCode(id={self.id}, code='{self.code}')>"


class ScanEvent(Base):
    """Append-only. Rows are inserted by the scan recorder and never updated."""

    __tablename__ = "scan_events"

    id = Column(Integer, primary_key=True, index=True)
    qr_code_id = Column(Integer, ForeignKey("qr_codes.id", ondelete="SET NULL"), nullable=True, index=True)
    profile_id = Column(Integer, ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    source = Column(String(20), nullable=False, default="qr")  # "qr" or "profile_view"
    scanned_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    # Request origin
    ip_address = Column(String(45))
    user_agent = Column(Text)
    referrer = Column(Text)

    # Device info (user-friendly)
    device_type = Column(String(20), index=True)  # "Mobile", "Desktop", "Tablet"
    device_name = Column(String(100))
    browser = Column(String(50), index=True)
    os = Column(String(50))

    # Location info (best effort)
    country = Column(String(100), index=True)
    city = Column(String(100), index=True)
    region = Column(String(100))
    latitude = Column(Float)
    longitude = Column(Float)

    __table_args__ = (
        Index('idx_scan_qr_time', 'qr_code_id', 'scanned_at'),
        Index('idx_scan_qr_device', 'qr_code_id', 'device_type'),
        Index('idx_scan_qr_location', 'qr_code_id', 'country', 'city'),
    )

    def __repr__(self):
        return f"<ScanEvent(id={self.id}, qr_code_id={self.qr_code_id}, source='{self.source}')>"


class AuditLogEntry(Base):
    """Append-only admin audit trail."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    description = Column(Text, nullable=False)
    # `metadata` is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=False, default=dict)
    actor_id = Column(Integer, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def __repr__(self):
        return f"<AuditLogEntry(id={self.id}, action='{self.action}')>"
