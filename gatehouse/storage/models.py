from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    verified: bool = False
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def redacted(self) -> "Account":
        """Copy safe to hand to callers: the password digest is stripped."""
        return dataclasses.replace(self, password_hash=None)


@dataclass
class SessionRecord:
    id: str
    account_id: str
    access_token_hash: str
    refresh_token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    device_info: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class Claims:
    sub: str
    sid: str
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    token_type: str
    email: Optional[str] = None
    username: Optional[str] = None

    def to_payload(self) -> dict:
        return {k: v for k, v in dataclasses.asdict(self).items() if v is not None}


@dataclass(frozen=True)
class SessionInfo:
    device_info: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class RegisterInput:
    username: str
    email: str
    password: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str
    mfa_code: Optional[str] = None


@dataclass
class MFAConfig:
    account_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
