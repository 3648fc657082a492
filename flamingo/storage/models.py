from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    LOCKED = "locked"


class UserType(str, Enum):
    ARTIST = "artist"
    STUDENT = "student"
    TEACHER = "teacher"
    CREATOR = "creator"


class ProjectRole(str, Enum):
    OWNER = "owner"
    EDITOR = "editor"
    VIEWER = "viewer"


@dataclass
class User:
    id: int
    email: str
    name: str
    password_hash: Optional[str] = None
    user_type: UserType = UserType.CREATOR
    provider: str = "email"
    provider_id: Optional[str] = None
    status: UserStatus = UserStatus.PENDING
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    agree_terms: bool = False
    agree_privacy: bool = False
    agree_marketing: bool = False
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """True while a lockout window is still running."""
        if self.locked_until is None:
            return False
        return self.locked_until > (now or utcnow())


@dataclass
class NewUser:
    """Fields supplied when registering or provisioning a user."""

    email: str
    name: str
    password_hash: Optional[str] = None
    user_type: UserType = UserType.CREATOR
    provider: str = "email"
    provider_id: Optional[str] = None
    status: UserStatus = UserStatus.PENDING
    email_verified: bool = False
    agree_terms: bool = False
    agree_privacy: bool = False
    agree_marketing: bool = False


@dataclass
class EmailVerification:
    id: int
    user_id: int
    token: str
    expires_at: datetime
    verified_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_used(self) -> bool:
        return self.verified_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(32)


@dataclass
class Session:
    id: str
    user_id: int
    refresh_token_hash: str
    expires_at: datetime
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: int,
        refresh_token_hash: str,
        ttl_seconds: int,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            device_info=device_info,
            ip_address=ip_address,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Project:
    id: str
    name: str
    owner_id: int
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProjectCollaborator:
    project_id: str
    user_id: int
    role: ProjectRole
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CollaboratorSummary:
    """Listing row joining a collaborator edge with the user's public fields."""

    user_id: int
    name: str
    email: str
    role: ProjectRole
