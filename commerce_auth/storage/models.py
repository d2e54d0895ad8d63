from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: Optional[int]
    username: str
    email: str
    password_digest: str
    refresh_token: Optional[str] = None
    refresh_token_expiry: Optional[datetime] = None
    last_login_time: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, username: str, email: str, password_digest: str) -> "Account":
        """Unsaved account; the store assigns ``id`` on insert."""
        now = utcnow()
        return cls(
            id=None,
            username=username,
            email=email,
            password_digest=password_digest,
            created_at=now,
            updated_at=now,
        )

    def copy(self) -> "Account":
        return replace(self)

    def has_live_refresh_token(self, now: datetime) -> bool:
        return (
            self.refresh_token is not None
            and self.refresh_token_expiry is not None
            and self.refresh_token_expiry > now
        )
