from datetime import datetime, timedelta, timezone

import pytest

from tokenvault.schemas import TokenWire, format_rfc3339_nano
from tokenvault.storage.models import Token


def test_token_marshal_json():
    valid_until = datetime(2024, 3, 5, 10, 15, 30, 123456, tzinfo=timezone.utc)
    token = Token(
        token="12saii",
        valid_until=valid_until,
        user_email="something@something.com",
        app_name="myapp",
    )

    assert token.to_json() == (
        '{"token":"12saii","valid-until":"2024-03-05T10:15:30.123456Z",'
        '"email":"something@something.com","app":"myapp"}'
    )


def test_app_token_wire_has_empty_email():
    token = Token(
        token="abc",
        valid_until=datetime(2024, 1, 1, tzinfo=timezone.utc),
        app_name="healer",
    )

    assert token.to_wire() == {
        "token": "abc",
        "valid-until": "2024-01-01T00:00:00Z",
        "email": "",
        "app": "healer",
    }


@pytest.mark.parametrize(
    "value,expected",
    [
        (datetime(2024, 1, 1, tzinfo=timezone.utc), "2024-01-01T00:00:00Z"),
        (datetime(2024, 1, 1, 0, 0, 0, 500000, tzinfo=timezone.utc), "2024-01-01T00:00:00.5Z"),
        (datetime(2024, 1, 1, 0, 0, 0, 120, tzinfo=timezone.utc), "2024-01-01T00:00:00.00012Z"),
        (datetime(2024, 1, 1, 9, 30), "2024-01-01T09:30:00Z"),
        (
            datetime(2024, 1, 1, 9, 30, tzinfo=timezone(timedelta(hours=-3))),
            "2024-01-01T09:30:00-03:00",
        ),
        (
            datetime(2024, 1, 1, 9, 30, tzinfo=timezone(timedelta(hours=5, minutes=30))),
            "2024-01-01T09:30:00+05:30",
        ),
    ],
)
def test_format_rfc3339_nano(value, expected):
    assert format_rfc3339_nano(value) == expected


def test_wire_model_accepts_alias_and_field_name():
    when = datetime(2024, 6, 1, tzinfo=timezone.utc)

    by_alias = TokenWire.model_validate({"token": "t", "valid-until": when})
    by_name = TokenWire(token="t", valid_until=when)

    assert by_alias == by_name
    assert by_name.model_dump()["valid-until"] == "2024-06-01T00:00:00Z"
