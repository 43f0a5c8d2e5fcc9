from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

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
from tokenvault.storage.errors import (
    ConstraintViolation,
    DuplicateKeyError,
    StoreUnavailableError,
)
from tokenvault.storage.models import User, as_utc

logger = get_logger(__name__)


class RedisCollection:
    """Document collection stored as one JSON string per key.

    A companion set tracks the keys so non-key queries can enumerate the
    collection without SCAN. Inserts go through a Lua script so the document
    and its index entry appear together; updates and removals use
    WATCH/MULTI so a conditional write is applied at most once.
    """

    _INSERT_SCRIPT = """
if redis.call('SET', KEYS[1], ARGV[1], 'NX') then
  redis.call('SADD', KEYS[2], ARGV[2])
  return 1
end
return 0
"""

    def __init__(self, spec: CollectionSpec, store: "RedisStore") -> None:
        self.spec = spec
        self._store = store
        self._insert = store.client.register_script(self._INSERT_SCRIPT)

    def _doc_key(self, key: str) -> str:
        return f"{self._store.prefix}:{self.spec.name}:{key}"

    @property
    def _index_key(self) -> str:
        return f"{self._store.prefix}:{self.spec.name}:keys"

    def _decode(self, raw: Optional[str]) -> Optional[Document]:
        if raw is None:
            return None
        return decode_document(self.spec, json.loads(raw))

    def _encode(self, doc: Document) -> str:
        return json.dumps(encode_document(self.spec, doc))

    def _candidate_keys(self, query: Query) -> List[str]:
        key = key_lookup(self.spec, query)
        if key is not None:
            return [key]
        return sorted(self._store.client.smembers(self._index_key))

    def _scan(self, query: Query) -> List[Tuple[str, Document]]:
        keys = self._candidate_keys(query)
        if not keys:
            return []
        raws = self._store.client.mget([self._doc_key(k) for k in keys])
        found = []
        for key, raw in zip(keys, raws):
            doc = self._decode(raw)
            if doc is not None and matches(doc, query):
                found.append((key, doc))
        return found

    def insert(self, document: Document) -> None:
        record = project(self.spec, document)
        key = self.spec.key_of(record)
        with self._store._guard("insert", self.spec):
            created = self._insert(
                keys=[self._doc_key(key), self._index_key],
                args=[self._encode(record), key],
            )
        if not created:
            raise DuplicateKeyError(
                f"duplicate key in {self.spec.name}", {"field": self.spec.key}
            )

    def find_one(self, query: Query) -> Optional[Document]:
        validate_query(self.spec, query)
        with self._store._guard("find_one", self.spec):
            found = self._scan(query)
        return found[0][1] if found else None

    def update(self, query: Query, changes: Document) -> int:
        validate_query(self.spec, query)
        if self.spec.key in changes:
            raise ValueError("primary key cannot be updated")
        validate_query(self.spec, {field: None for field in changes})
        updated = 0
        with self._store._guard("update", self.spec):
            for key, _ in self._scan(query):
                if self._apply(key, query, changes):
                    updated += 1
        return updated

    def _apply(self, key: str, query: Query, changes: Optional[Document]) -> bool:
        """Re-check ``query`` under WATCH, then write (or delete when ``changes`` is None)."""
        doc_key = self._doc_key(key)

        def _transaction(pipe) -> bool:
            current = self._decode(pipe.get(doc_key))
            if current is None or not matches(current, query):
                return False
            pipe.multi()
            if changes is None:
                pipe.delete(doc_key)
                pipe.srem(self._index_key, key)
            else:
                current.update(changes)
                pipe.set(doc_key, self._encode(current))
            return True

        return self._store.client.transaction(
            _transaction, doc_key, value_from_callable=True
        )

    def remove(self, query: Query) -> int:
        validate_query(self.spec, query)
        removed = 0
        with self._store._guard("remove", self.spec):
            for key, _ in self._scan(query):
                if self._apply(key, query, None):
                    removed += 1
        return removed

    def count(self, query: Query) -> int:
        validate_query(self.spec, query)
        with self._store._guard("count", self.spec):
            return len(self._scan(query))


class RedisStore:
    """Redis-backed token store and user directory."""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "tokenvault",
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.prefix = prefix
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.tokens = RedisCollection(TOKENS, self)
        self.password_tokens = RedisCollection(PASSWORD_TOKENS, self)

    @contextlib.contextmanager
    def _guard(
        self, operation: str, spec: Optional[CollectionSpec] = None
    ) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "redis_store_unavailable",
                operation=operation,
                collection=spec.name if spec else "user",
                error=str(exc),
            )
            raise StoreUnavailableError(str(exc), backend="redis") from exc

    def verify_connection(self) -> None:
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    def _user_key(self, email: str) -> str:
        return f"{self.prefix}:user:{email}"

    # user directory
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> User:
        user = User(
            email=email,
            id=str(uuid.uuid4()),
            password_hash=password_hash,
            password_algo=password_algo,
        )
        with self._guard("create_user"):
            created = self.client.set(
                self._user_key(email), json.dumps(self._serialize_user(user)), nx=True
            )
        if not created:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._guard("find_by_email"):
            raw = self.client.get(self._user_key(email))
        if raw is None:
            return None
        return self._deserialize_user(json.loads(raw))

    def save_password(
        self, email: str, password_hash: str, password_algo: str
    ) -> None:
        user_key = self._user_key(email)

        def _transaction(pipe) -> bool:
            raw = pipe.get(user_key)
            if raw is None:
                return False
            data = json.loads(raw)
            data["password_hash"] = password_hash
            data["password_algo"] = password_algo
            pipe.multi()
            pipe.set(user_key, json.dumps(data))
            return True

        with self._guard("save_password"):
            saved = self.client.transaction(
                _transaction, user_key, value_from_callable=True
            )
        if not saved:
            raise ConstraintViolation(
                "user not found for credentials", {"email_known": False}
            )

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
