from __future__ import annotations

import base64
import binascii
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Literal, Optional, Union

TENANT_ROLES = ("admin", "member", "viewer")
MFA_TYPES = ("totp", "sms")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class DeviceInfo:
    """Client metadata captured when a session is opened."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "device": self.device,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            device=data.get("device"),
        )


@dataclass(frozen=True)
class TotpFactor:
    secret: str
    kind: Literal["totp"] = "totp"


@dataclass(frozen=True)
class SmsFactor:
    phone: str
    pending_code: Optional[str] = None
    kind: Literal["sms"] = "sms"


MfaFactor = Union[TotpFactor, SmsFactor]


def _is_base32(secret: str) -> bool:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        return False
    return True


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    is_active: bool = True
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    reset_token: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    reset_otp: Optional[str] = None
    reset_otp_expires_at: Optional[datetime] = None
    recovery_token: Optional[str] = None
    recovery_token_expires_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    mfa_enabled: bool = False
    mfa_type: Optional[str] = None
    mfa_secret: Optional[str] = None
    sms_mfa_code: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def mfa_factor(self) -> Optional[MfaFactor]:
        """Return the configured factor, or None when MFA is not usable."""
        if not self.mfa_type or not self.mfa_secret:
            return None
        if self.mfa_type == "totp":
            return TotpFactor(secret=self.mfa_secret)
        if self.mfa_type == "sms":
            return SmsFactor(phone=self.mfa_secret, pending_code=self.sms_mfa_code)
        return None

    def check_mfa_invariant(self) -> None:
        """Raise ValueError when MFA is enabled without a usable type and secret."""
        if not self.mfa_enabled:
            return
        if self.mfa_type not in MFA_TYPES:
            raise ValueError("mfa_enabled requires mfa_type of totp or sms")
        if not self.mfa_secret:
            raise ValueError("mfa_enabled requires an mfa secret")
        if self.mfa_type == "totp" and not _is_base32(self.mfa_secret):
            raise ValueError("totp secret must be base32")


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    is_active: bool = True
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_info: Dict | None = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("session expires_at must be after created_at")
        if self.revoked and self.revoked_at is None:
            raise ValueError("revoked session requires revoked_at")

    @property
    def last_activity(self) -> datetime:
        if self.last_used_at and self.last_used_at > self.created_at:
            return self.last_used_at
        return self.created_at

    @classmethod
    def new(
        cls,
        user_id: str,
        max_age_hours: int = 24,
        device: Optional[DeviceInfo] = None,
    ) -> "Session":
        now = utcnow()
        device = device or DeviceInfo()
        return cls(
            id=_new_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(hours=max_age_hours),
            last_used_at=now,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            device_info=device.to_dict(),
        )


@dataclass
class RefreshToken:
    """Persisted refresh credential; ``token_hash`` is the SHA-256 of the raw token."""

    id: str
    token_hash: str
    user_id: str
    session_id: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None
    revocation_reason: Optional[str] = None
    replaced_by_token: Optional[str] = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("refresh token expires_at must be after created_at")
        if self.revoked and self.revoked_at is None:
            raise ValueError("revoked refresh token requires revoked_at")

    @classmethod
    def new(
        cls, token_hash: str, user_id: str, session_id: str, ttl_seconds: int
    ) -> "RefreshToken":
        now = utcnow()
        return cls(
            id=_new_id(),
            token_hash=token_hash,
            user_id=user_id,
            session_id=session_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )


@dataclass
class PasswordHistoryEntry:
    id: str
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    is_active: bool = True
    settings: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


@dataclass
class TenantMembership:
    id: str
    user_id: str
    tenant_id: str
    role: str = "member"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
