from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Admin:
    id: str
    name: str
    username: str
    password_hash: str
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    banned: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class LoginToken:
    """Short-lived, email-bound request to sign in.

    ``authorized`` and ``denied`` are mutually exclusive; a token with
    neither flag set is pending.
    """

    id: str
    email: str
    ip_address: str
    device: str
    expires_at: datetime
    authorized: bool = False
    denied: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @property
    def pending(self) -> bool:
        return not self.authorized and not self.denied

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class UserToken:
    """A session. Derived from exactly one of a login token or a parent session."""

    id: str
    user_id: str
    ip_address: str
    device: str
    expires_at: datetime
    last_activity: datetime
    login_token_id: Optional[str] = None
    parent_user_token_id: Optional[str] = None
    disconnected: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class EmailSettings:
    id: str
    host: str
    port: int
    username: str
    password_encrypted: Optional[str] = None
    use_tls: bool = True
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
