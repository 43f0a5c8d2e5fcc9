from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_serializer

if TYPE_CHECKING:
    from tokenvault.storage.models import Token


def format_rfc3339_nano(value: datetime) -> str:
    """Render ``value`` in RFC 3339 with the shortest exact fractional second.

    Trailing zeros of the fraction are dropped (no fraction at all when the
    microseconds are zero), UTC is written as ``Z`` and any other offset as
    ``+HH:MM``. Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    hours, remainder = divmod(abs(total), 3600)
    return f"{text}{sign}{hours:02d}:{remainder // 60:02d}"


class TokenWire(BaseModel):
    """External representation of a session token.

    Field names and order are part of the wire contract.
    """

    model_config = ConfigDict(populate_by_name=True, serialize_by_alias=True)

    token: str
    valid_until: datetime = Field(alias="valid-until")
    email: str = ""
    app: str = ""

    @field_serializer("valid_until")
    def _serialize_valid_until(self, value: datetime) -> str:
        return format_rfc3339_nano(value)

    @classmethod
    def from_token(cls, token: "Token") -> "TokenWire":
        return cls(
            token=token.token,
            valid_until=token.valid_until,
            email=token.user_email,
            app=token.app_name,
        )
