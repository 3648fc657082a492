from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from flamingo.logging import get_correlation_id
from flamingo.service.errors import ErrorCode
from flamingo.storage.models import (
    CollaboratorSummary,
    Project,
    ProjectCollaborator,
    User,
)

_VALID_ERROR_CODES = frozenset(code.value for code in ErrorCode)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"Invalid error code '{value}'")
        return value


class Envelope(BaseModel):
    """Response wrapper shared by every ``/api/v1`` route."""

    success: bool
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    """Check address shape; the address keeps its case."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_PASSWORD_LETTER = re.compile(r"[a-zA-Z]")
_PASSWORD_DIGIT = re.compile(r"\d")
_PASSWORD_SPECIAL = re.compile(r"[\W_]")


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not (
        _PASSWORD_LETTER.search(value)
        and _PASSWORD_DIGIT.search(value)
        and _PASSWORD_SPECIAL.search(value)
    ):
        raise ValueError("password must contain a letter, a digit and a special character")
    return value


# -- auth requests ---------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=2, max_length=20)
    user_type: Literal["artist", "student", "teacher"]
    agree_terms: bool
    agree_privacy: bool
    agree_marketing: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _normalize_unicode(value.strip())
        return value


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _strip_email(cls, value: str) -> str:
        return value.strip()


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


class RefreshTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., alias="refreshToken", min_length=1, max_length=2048)


# -- auth responses --------------------------------------------------------


class RegisterResponse(BaseModel):
    user_id: int
    email: str
    message: str


class EmailAvailabilityResponse(BaseModel):
    available: bool


class UserSummary(BaseModel):
    id: int
    name: str
    user_type: str


class UserProfile(BaseModel):
    id: int
    email: str
    name: str
    user_type: str

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(id=user.id, email=user.email, name=user.name, user_type=user.user_type.value)


class VerifyEmailResponse(BaseModel):
    message: str
    user: UserProfile


class TokenBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    access_token: str
    refresh_token: str = Field(..., alias="refreshToken")


class LoginResponse(BaseModel):
    user: UserSummary
    token: TokenBody


class AccessTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    access_token: str = Field(..., alias="accessToken")
    expires_in: int = Field(..., alias="expiresIn")


class GoogleStartResponse(BaseModel):
    authorization_url: str
    state: str


class MessageResponse(BaseModel):
    message: str


# -- projects --------------------------------------------------------------


class ProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name", mode="before")
    @classmethod
    def _normalize_name(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _normalize_unicode(value.strip())
        return value


class CollaboratorAddRequest(BaseModel):
    email: str
    role: Literal["editor", "viewer"]

    @field_validator("email")
    @classmethod
    def _validate_collaborator_email(cls, value: str) -> str:
        return validate_email(value)


class CollaboratorRoleRequest(BaseModel):
    role: Literal["editor", "viewer"]


class ProjectResponse(BaseModel):
    id: str
    name: str
    owner_id: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_project(cls, project: Project) -> "ProjectResponse":
        return cls(
            id=project.id,
            name=project.name,
            owner_id=project.owner_id,
            created_at=project.created_at,
            updated_at=project.updated_at,
        )


class ProjectListResponse(BaseModel):
    items: List[ProjectResponse]


class CollaboratorResponse(BaseModel):
    project_id: str
    user_id: int
    role: str

    @classmethod
    def from_edge(cls, edge: ProjectCollaborator) -> "CollaboratorResponse":
        return cls(project_id=edge.project_id, user_id=edge.user_id, role=edge.role.value)


class CollaboratorSummaryResponse(BaseModel):
    user_id: int
    name: str
    email: str
    role: str

    @classmethod
    def from_summary(cls, row: CollaboratorSummary) -> "CollaboratorSummaryResponse":
        return cls(user_id=row.user_id, name=row.name, email=row.email, role=row.role.value)


class CollaboratorListResponse(BaseModel):
    items: List[CollaboratorSummaryResponse]
