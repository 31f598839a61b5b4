from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def new(cls, email: str, first_name: str = "", last_name: str = "") -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
        )


@dataclass
class AccountProfile:
    """Public view of an account, safe to cache and return to clients."""

    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    is_active: bool = True

    @classmethod
    def from_account(cls, account: Account) -> "AccountProfile":
        return cls(
            id=account.id,
            email=account.email,
            first_name=account.first_name,
            last_name=account.last_name,
            is_active=account.is_active,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccountProfile":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class RefreshToken:
    """One issued refresh credential.

    ``token_value`` and ``expiry_date`` never change after creation; the only
    permitted mutation is the one-way flip of ``is_revoked``.
    """

    id: str
    token_value: str
    user_id: str
    created_at: datetime
    expiry_date: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        token_value: str,
        user_id: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_value=token_value,
            user_id=user_id,
            created_at=created,
            expiry_date=created + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # A token whose expiry equals "now" is already expired.
        return (now or utcnow()) >= self.expiry_date

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_revoked and not self.is_expired(now)
