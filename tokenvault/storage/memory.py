from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from tokenvault.logging import get_logger
from tokenvault.storage.common import (
    PASSWORD_TOKENS,
    TOKENS,
    CollectionSpec,
    Document,
    Query,
    decode_document,
    encode_document,
    key_lookup,
    matches,
    project,
    validate_query,
)
from tokenvault.storage.errors import ConstraintViolation, DuplicateKeyError
from tokenvault.storage.models import User, as_utc


class MemoryCollection:
    """Dict-backed document collection keyed by the collection's primary key.

    All access goes through the owning store's lock; documents handed out are
    deep copies so callers never alias stored state.
    """

    def __init__(
        self,
        spec: CollectionSpec,
        lock: threading.RLock,
        on_change: Callable[[], None],
    ) -> None:
        self.spec = spec
        self._lock = lock
        self._on_change = on_change
        self.documents: Dict[str, Document] = {}

    def _candidates(self, query: Query) -> Iterable[Document]:
        key = key_lookup(self.spec, query)
        if key is None:
            return list(self.documents.values())
        doc = self.documents.get(key)
        return [doc] if doc is not None else []

    def insert(self, document: Document) -> None:
        record = project(self.spec, document)
        key = self.spec.key_of(record)
        with self._lock:
            if key in self.documents:
                raise DuplicateKeyError(
                    f"duplicate key in {self.spec.name}", {"field": self.spec.key}
                )
            self.documents[key] = copy.deepcopy(record)
            self._on_change()

    def find_one(self, query: Query) -> Optional[Document]:
        validate_query(self.spec, query)
        with self._lock:
            for doc in self._candidates(query):
                if matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def update(self, query: Query, changes: Document) -> int:
        validate_query(self.spec, query)
        if self.spec.key in changes:
            raise ValueError("primary key cannot be updated")
        validate_query(self.spec, {field: None for field in changes})
        updated = 0
        with self._lock:
            for doc in self._candidates(query):
                if matches(doc, query):
                    doc.update(copy.deepcopy(changes))
                    updated += 1
            if updated:
                self._on_change()
        return updated

    def remove(self, query: Query) -> int:
        validate_query(self.spec, query)
        with self._lock:
            doomed = [
                self.spec.key_of(doc)
                for doc in self._candidates(query)
                if matches(doc, query)
            ]
            for key in doomed:
                self.documents.pop(key, None)
            if doomed:
                self._on_change()
        return len(doomed)

    def count(self, query: Query) -> int:
        validate_query(self.spec, query)
        with self._lock:
            return sum(1 for doc in self._candidates(query) if matches(doc, query))


class MemoryStore:
    """In-process token store and user directory.

    With ``state_dir`` set, every write is flushed to a JSON state file and
    reloaded on construction, so a restarted process sees the same tokens.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        # RLock so collection calls can nest inside store-level operations
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        self.tokens = MemoryCollection(TOKENS, self._data_lock, self._persist_state)
        self.password_tokens = MemoryCollection(
            PASSWORD_TOKENS, self._data_lock, self._persist_state
        )
        self.users: Dict[str, User] = {}
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # user directory
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        if not email:
            raise ConstraintViolation("email required", {"field": "email"})
        with self._data_lock:
            if email in self.users:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                email=email,
                id=str(uuid.uuid4()),
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.users[email] = user
            self._persist_state()
            return replace(user)

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(email)
            return replace(user) if user else None

    def delete_user(self, email: str) -> bool:
        with self._data_lock:
            if self.users.pop(email, None) is None:
                return False
            self._persist_state()
            return True

    def save_password(
        self, email: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            user = self.users.get(email)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"email_known": False}
                )
            user.password_hash = password_hash
            user.password_algo = password_algo
            self._persist_state()

    # state file
    def _state_path(self) -> Path:
        assert self.state_dir is not None
        return self.state_dir / "token_store.json"

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        with self._data_lock:
            state = {
                "tokens": [
                    encode_document(TOKENS, doc)
                    for doc in self.tokens.documents.values()
                ],
                "password_tokens": [
                    encode_document(PASSWORD_TOKENS, doc)
                    for doc in self.password_tokens.documents.values()
                ],
                "users": [self._serialize_user(u) for u in self.users.values()],
            }
            path = self._state_path()
            try:
                path.write_text(json.dumps(state, indent=2))
            except OSError as exc:
                raise RuntimeError(f"failed to persist token store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except rather than exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for collection, key in ((self.tokens, "tokens"), (self.password_tokens, "password_tokens")):
            collection.documents = {}
            for raw in data.get(key, []):
                doc = decode_document(collection.spec, raw)
                collection.documents[collection.spec.key_of(doc)] = doc
        self.users = {
            u["email"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            tokens=len(self.tokens.documents),
            password_tokens=len(self.password_tokens.documents),
            users=len(self.users),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "created_at": as_utc(user.created_at).isoformat(),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data.get("id"),
            email=data["email"],
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            created_at=as_utc(datetime.fromisoformat(data["created_at"])),
        )
