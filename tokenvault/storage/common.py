"""Storage contract and helpers shared between the memory, postgres and redis adapters.

The token engine talks to persistence through two protocols: a
``DocumentCollection`` offering keyed CRUD over plain-dict documents, and a
``TokenStore`` bundling the collections the engine needs. Queries are dicts
of field equality; a value may instead be a dict of comparison operators,
e.g. ``{"valid_until": {"$lte": now}}``.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from tokenvault.storage.models import User, as_utc

Document = Dict[str, Any]
Query = Dict[str, Any]

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$lt": operator.lt,
    "$lte": operator.le,
    "$gt": operator.gt,
    "$gte": operator.ge,
}


class DocumentCollection(Protocol):
    def insert(self, document: Document) -> None: ...

    def find_one(self, query: Query) -> Optional[Document]: ...

    def update(self, query: Query, changes: Document) -> int: ...

    def remove(self, query: Query) -> int: ...

    def count(self, query: Query) -> int: ...


class TokenStore(Protocol):
    tokens: DocumentCollection
    password_tokens: DocumentCollection


class UserDirectory(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, email: str, password_hash: str, password_algo: str
    ) -> None: ...


@dataclass(frozen=True)
class CollectionSpec:
    """Name, primary key and column layout of a collection."""

    name: str
    key: str
    fields: Tuple[str, ...]
    datetime_fields: Tuple[str, ...] = ()

    def key_of(self, document: Document) -> str:
        value = document.get(self.key)
        if not value:
            raise ValueError(f"{self.name} document missing key field '{self.key}'")
        return str(value)


TOKENS = CollectionSpec(
    name="auth_token",
    key="token",
    fields=("token", "user_email", "app_name", "created_at", "valid_until"),
    datetime_fields=("created_at", "valid_until"),
)

PASSWORD_TOKENS = CollectionSpec(
    name="password_token",
    key="token",
    fields=("token", "user_email", "created_at", "used"),
    datetime_fields=("created_at",),
)


def validate_query(spec: CollectionSpec, query: Query) -> None:
    """Reject unknown fields and operators before they reach a backend."""
    for field, expected in query.items():
        if field not in spec.fields:
            raise ValueError(f"unknown field '{field}' for {spec.name}")
        if isinstance(expected, dict):
            for op in expected:
                if op not in _OPERATORS:
                    raise ValueError(f"unsupported query operator: {op}")


def key_lookup(spec: CollectionSpec, query: Query) -> Optional[str]:
    """Return the primary key when the query pins it to a single value."""
    value = query.get(spec.key)
    if value is None or isinstance(value, dict):
        return None
    return str(value)


def matches(document: Document, query: Query) -> bool:
    for field, expected in query.items():
        actual = document.get(field)
        if isinstance(expected, dict):
            for op, operand in expected.items():
                compare = _OPERATORS.get(op)
                if compare is None:
                    raise ValueError(f"unsupported query operator: {op}")
                if actual is None and op not in ("$eq", "$ne"):
                    return False
                if isinstance(actual, datetime) and isinstance(operand, datetime):
                    actual, operand = as_utc(actual), as_utc(operand)
                if not compare(actual, operand):
                    return False
        elif actual != expected:
            return False
    return True


def encode_document(spec: CollectionSpec, document: Document) -> Dict[str, Any]:
    """Convert datetime fields to ISO strings for JSON persistence."""
    encoded = dict(document)
    for field in spec.datetime_fields:
        value = encoded.get(field)
        if isinstance(value, datetime):
            encoded[field] = as_utc(value).isoformat()
    return encoded


def decode_document(spec: CollectionSpec, raw: Dict[str, Any]) -> Document:
    decoded = dict(raw)
    for field in spec.datetime_fields:
        value = decoded.get(field)
        if isinstance(value, str):
            decoded[field] = as_utc(datetime.fromisoformat(value))
    return decoded


def project(spec: CollectionSpec, document: Document) -> Document:
    """Keep only the collection's known fields."""
    return {field: document.get(field) for field in spec.fields if field in document}
