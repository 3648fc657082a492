from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    """Closed set of API error codes.

    Each member carries the HTTP status it maps to and the client-facing
    message, so the boundary handler never consults a side table.
    """

    def __new__(cls, value: str, status_code: int, message: str) -> "ErrorCode":
        member = str.__new__(cls, value)
        member._value_ = value
        member.status_code = status_code
        member.message = message
        return member

    # 400
    VALIDATION_ERROR = ("VALIDATION_ERROR", 400, "invalid request input")
    INVALID_EMAIL_FORMAT = ("INVALID_EMAIL_FORMAT", 400, "email address is not valid")
    REQUIRED_TERMS = ("REQUIRED_TERMS", 400, "terms of service consent is required")
    REQUIRED_PRIVACY = (
        "REQUIRED_PRIVACY",
        400,
        "terms of service and privacy policy consent is required",
    )
    VERIFICATION_TOKEN_EXPIRED = (
        "VERIFICATION_TOKEN_EXPIRED",
        400,
        "verification token has expired",
    )
    VERIFICATION_TOKEN_ALREADY_USED = (
        "VERIFICATION_TOKEN_ALREADY_USED",
        400,
        "verification token has already been used",
    )
    PROJECT_ID_REQUIRED = ("PROJECT_ID_REQUIRED", 400, "project id is required")
    CANNOT_CHANGE_OWN_ROLE = (
        "CANNOT_CHANGE_OWN_ROLE",
        400,
        "you cannot change your own role",
    )
    CANNOT_CHANGE_OWNER_ROLE = (
        "CANNOT_CHANGE_OWNER_ROLE",
        400,
        "the project owner's role cannot be changed",
    )
    CANNOT_REMOVE_SELF = (
        "CANNOT_REMOVE_SELF",
        400,
        "you cannot remove yourself from the project",
    )
    # 401
    LOGIN_FAILED = ("LOGIN_FAILED", 401, "email or password is incorrect")
    UNAUTHORIZED = ("UNAUTHORIZED", 401, "authentication required")
    TOKEN_EXPIRED = ("TOKEN_EXPIRED", 401, "token has expired")
    INVALID_TOKEN = ("INVALID_TOKEN", 401, "token is invalid")
    INVALID_REFRESH_TOKEN = ("INVALID_REFRESH_TOKEN", 401, "refresh token is invalid")
    # 403
    ACCOUNT_NOT_ACTIVE = ("ACCOUNT_NOT_ACTIVE", 403, "account is not active")
    FORBIDDEN = ("FORBIDDEN", 403, "you do not have permission for this action")
    # 404
    NOT_FOUND = ("NOT_FOUND", 404, "resource not found")
    VERIFICATION_TOKEN_NOT_FOUND = (
        "VERIFICATION_TOKEN_NOT_FOUND",
        404,
        "verification token is invalid",
    )
    PROFILE_NOT_FOUND = ("PROFILE_NOT_FOUND", 404, "profile not found")
    PROJECT_NOT_FOUND = ("PROJECT_NOT_FOUND", 404, "project not found")
    USER_TO_ADD_NOT_FOUND = ("USER_TO_ADD_NOT_FOUND", 404, "user to add was not found")
    COLLABORATOR_NOT_FOUND = (
        "COLLABORATOR_NOT_FOUND",
        404,
        "collaborator not found in this project",
    )
    # 409
    EMAIL_ALREADY_EXISTS = ("EMAIL_ALREADY_EXISTS", 409, "email is already in use")
    USER_ALREADY_COLLABORATOR = (
        "USER_ALREADY_COLLABORATOR",
        409,
        "user is already a collaborator on this project",
    )
    CONFLICT = ("CONFLICT", 409, "request conflicts with existing data")
    # 423
    ACCOUNT_LOCKED = ("ACCOUNT_LOCKED", 423, "account is locked")
    # 429
    TOO_MANY_REQUESTS = ("TOO_MANY_REQUESTS", 429, "too many requests")
    # 500
    INTERNAL_SERVER_ERROR = ("INTERNAL_SERVER_ERROR", 500, "internal server error")


class ServiceError(Exception):
    """Domain error raised where a failure is detected.

    The boundary handler turns it into the error envelope using the status
    and message carried by ``code``.
    """

    def __init__(self, code: ErrorCode, *, details: Optional[Any] = None) -> None:
        super().__init__(code.message)
        self.code = code
        self.details = details

    @property
    def status_code(self) -> int:
        return self.code.status_code

    @property
    def message(self) -> str:
        return self.code.message

    def __repr__(self) -> str:
        return f"ServiceError({self.code.value})"


__all__ = ["ErrorCode", "ServiceError"]
