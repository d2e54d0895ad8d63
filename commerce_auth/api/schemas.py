from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from commerce_auth.storage.models import Account

USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


class AuthOutcome(str, Enum):
    """Stable outcome codes carried by every ``AuthResult``."""

    SUCCESS = "success"
    DUPLICATE_USERNAME = "duplicate_username"
    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    ACCOUNT_NOT_FOUND = "account_not_found"


# Failure messages deliberately do not say which check failed
FAILURE_MESSAGES: dict[AuthOutcome, str] = {
    AuthOutcome.DUPLICATE_USERNAME: "Username already exists",
    AuthOutcome.DUPLICATE_EMAIL: "Email already exists",
    AuthOutcome.INVALID_CREDENTIALS: "Invalid username or password",
    AuthOutcome.INVALID_OR_EXPIRED_TOKEN: "Invalid or expired refresh token",
    AuthOutcome.ACCOUNT_NOT_FOUND: "Account not found",
}


class AccountSummary(BaseModel):
    """Public view of an account; never carries the digest or refresh token."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    last_login_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            last_login_time=account.last_login_time,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class AuthResult(BaseModel):
    """Outcome of one authentication operation.

    ``token_expiry`` is the refresh-token expiry. Build instances through
    ``ok``/``fail`` so no field is carried over from an earlier call.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    message: str
    outcome: AuthOutcome
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expiry: Optional[datetime] = None
    account: Optional[AccountSummary] = None

    @classmethod
    def ok(
        cls,
        message: str,
        *,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expiry: Optional[datetime] = None,
        account: Optional[AccountSummary] = None,
    ) -> "AuthResult":
        return cls(
            success=True,
            message=message,
            outcome=AuthOutcome.SUCCESS,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expiry=token_expiry,
            account=account,
        )

    @classmethod
    def fail(cls, outcome: AuthOutcome) -> "AuthResult":
        return cls(success=False, message=FAILURE_MESSAGES[outcome], outcome=outcome)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_email(value: str) -> str:
    # Stored case-sensitively, so only surrounding whitespace is dropped
    normalized = _normalize_unicode(value.strip())
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValueError(f"email cannot exceed {EMAIL_MAX_LENGTH} characters")
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


def _validate_username(value: str) -> str:
    normalized = _normalize_unicode(value.strip())
    if len(normalized) < 3 or len(normalized) > USERNAME_MAX_LENGTH:
        raise ValueError(
            f"username must be between 3 and {USERNAME_MAX_LENGTH} characters"
        )
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must contain only alphanumeric characters, dots, underscores, or hyphens"
        )
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not value.strip():
        raise ValueError("password cannot be whitespace only")
    if any("\ud800" <= c <= "\udfff" for c in value):
        raise ValueError("password contains invalid characters")
    return value


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    confirm_password: str

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=USERNAME_MAX_LENGTH)
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class ChangePasswordRequest(BaseModel):
    """Request to change password (requires current password)."""
    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)
