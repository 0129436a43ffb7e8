from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional


class UserStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    DELETED = "deleted"


class UserRole(str, Enum):
    """Account roles; ``root`` is the single distinguished administrator."""

    USER = "user"
    ADMIN = "admin"
    ROOT = "root"


@dataclass
class User:
    id: str
    username: str
    display_name: Optional[str] = None
    role: str = UserRole.USER.value
    status: str = UserStatus.ENABLED.value
    wallet_address: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None

    @property
    def is_enabled(self) -> bool:
        return self.status == UserStatus.ENABLED.value

    @property
    def is_deleted(self) -> bool:
        return self.status == UserStatus.DELETED.value


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = datetime.utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            meta=meta,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at
