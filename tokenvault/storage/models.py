from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a stored timestamp; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    email: str = ""
    id: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Token:
    """Session or application bearer token."""

    token: str
    valid_until: datetime
    user_email: str = ""
    app_name: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_app_token(self) -> bool:
        return not self.user_email and bool(self.app_name)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        current = now or utcnow()
        return as_utc(current) < as_utc(self.valid_until)

    def to_document(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "user_email": self.user_email,
            "app_name": self.app_name,
            "created_at": self.created_at,
            "valid_until": self.valid_until,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Token":
        return cls(
            token=doc["token"],
            user_email=doc.get("user_email") or "",
            app_name=doc.get("app_name") or "",
            created_at=as_utc(doc["created_at"]),
            valid_until=as_utc(doc["valid_until"]),
        )

    def to_wire(self) -> Dict[str, str]:
        from tokenvault.schemas import TokenWire

        return TokenWire.from_token(self).model_dump(by_alias=True)

    def to_json(self) -> str:
        from tokenvault.schemas import TokenWire

        return TokenWire.from_token(self).model_dump_json(by_alias=True)


@dataclass
class PasswordResetToken:
    token: str
    user_email: str
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False

    def to_document(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "user_email": self.user_email,
            "created_at": self.created_at,
            "used": self.used,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "PasswordResetToken":
        return cls(
            token=doc["token"],
            user_email=doc["user_email"],
            created_at=as_utc(doc["created_at"]),
            used=bool(doc.get("used", False)),
        )
