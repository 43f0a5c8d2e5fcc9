from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tokenvault.logging import get_logger
from tokenvault.storage.common import (
    PASSWORD_TOKENS,
    TOKENS,
    CollectionSpec,
    Document,
    Query,
    project,
    validate_query,
)
from tokenvault.storage.errors import (
    ConstraintViolation,
    DuplicateKeyError,
    StoreUnavailableError,
)
from tokenvault.storage.models import User, as_utc, utcnow

_SQL_OPERATORS = {
    "$eq": "=",
    "$ne": "<>",
    "$lt": "<",
    "$lte": "<=",
    "$gt": ">",
    "$gte": ">=",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_token (
        token TEXT PRIMARY KEY,
        user_email TEXT NOT NULL DEFAULT '',
        app_name TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL,
        valid_until TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_token_user_email_idx ON auth_token (user_email)",
    """
    CREATE TABLE IF NOT EXISTS password_token (
        token TEXT PRIMARY KEY,
        user_email TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        password_algo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def build_where(query: Query) -> Tuple[sql.Composable, List[Any]]:
    """Translate an equality/operator query into a WHERE clause and params."""
    clauses: List[sql.Composable] = []
    params: List[Any] = []
    for field, expected in query.items():
        conditions = expected.items() if isinstance(expected, dict) else [("$eq", expected)]
        for op, operand in conditions:
            column = sql.Identifier(field)
            if operand is None and op in ("$eq", "$ne"):
                null_test = "IS NULL" if op == "$eq" else "IS NOT NULL"
                clauses.append(sql.SQL("{} " + null_test).format(column))
                continue
            clauses.append(
                sql.SQL("{} {} {}").format(
                    column, sql.SQL(_SQL_OPERATORS[op]), sql.Placeholder()
                )
            )
            params.append(operand)
    if not clauses:
        return sql.SQL("TRUE"), params
    return sql.SQL(" AND ").join(clauses), params


class PostgresCollection:
    """One table of the token schema exposed as a document collection."""

    def __init__(self, spec: CollectionSpec, store: "PostgresStore") -> None:
        self.spec = spec
        self._store = store

    @property
    def _table(self) -> sql.Identifier:
        return sql.Identifier(self.spec.name)

    def _columns(self) -> sql.Composable:
        return sql.SQL(", ").join(sql.Identifier(f) for f in self.spec.fields)

    def insert(self, document: Document) -> None:
        record = project(self.spec, document)
        self.spec.key_of(record)
        columns = list(record)
        stmt = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
            table=self._table,
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        with self._store._execute("insert", self.spec) as conn:
            conn.execute(stmt, [record[c] for c in columns])

    def find_one(self, query: Query) -> Optional[Document]:
        validate_query(self.spec, query)
        where, params = build_where(query)
        stmt = sql.SQL("SELECT {cols} FROM {table} WHERE {where} LIMIT 1").format(
            cols=self._columns(), table=self._table, where=where
        )
        with self._store._execute("find_one", self.spec) as conn:
            row = conn.execute(stmt, params).fetchone()
        if not row:
            return None
        return self._from_row(row)

    def update(self, query: Query, changes: Document) -> int:
        validate_query(self.spec, query)
        if self.spec.key in changes:
            raise ValueError("primary key cannot be updated")
        if not changes:
            return 0
        validate_query(self.spec, {field: None for field in changes})
        where, params = build_where(query)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = {}").format(sql.Identifier(field), sql.Placeholder())
            for field in changes
        )
        stmt = sql.SQL("UPDATE {table} SET {assignments} WHERE {where}").format(
            table=self._table, assignments=assignments, where=where
        )
        # Row locks make "WHERE used = FALSE" style updates succeed at most once
        with self._store._execute("update", self.spec) as conn:
            cur = conn.execute(stmt, [*changes.values(), *params])
            return cur.rowcount

    def remove(self, query: Query) -> int:
        validate_query(self.spec, query)
        where, params = build_where(query)
        stmt = sql.SQL("DELETE FROM {table} WHERE {where}").format(
            table=self._table, where=where
        )
        with self._store._execute("remove", self.spec) as conn:
            cur = conn.execute(stmt, params)
            return cur.rowcount

    def count(self, query: Query) -> int:
        validate_query(self.spec, query)
        where, params = build_where(query)
        stmt = sql.SQL("SELECT count(*) AS n FROM {table} WHERE {where}").format(
            table=self._table, where=where
        )
        with self._store._execute("count", self.spec) as conn:
            row = conn.execute(stmt, params).fetchone()
        return int(row["n"]) if row else 0

    def _from_row(self, row: dict) -> Document:
        doc = dict(row)
        for field in self.spec.datetime_fields:
            value = doc.get(field)
            if isinstance(value, datetime):
                doc[field] = as_utc(value)
        return doc


class PostgresStore:
    """Postgres-backed token store and user directory."""

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.tokens = PostgresCollection(TOKENS, self)
        self.password_tokens = PostgresCollection(PASSWORD_TOKENS, self)
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _execute(
        self, operation: str, spec: Optional[CollectionSpec] = None
    ) -> Iterator[Any]:
        table = spec.name if spec else "app_user"
        try:
            with self._connect() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise DuplicateKeyError(
                f"duplicate key in {table}",
                {"field": spec.key if spec else "email"},
            ) from exc
        except psycopg.OperationalError as exc:
            self.logger.error(
                "postgres_store_unavailable",
                operation=operation,
                table=table,
                error=str(exc),
            )
            raise StoreUnavailableError(str(exc), backend="postgres") from exc

    def ensure_schema(self) -> None:
        """Create the token and user tables if they are missing."""

        with self._execute("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

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
        try:
            with self._execute("create_user") as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (user.id, email, password_hash, password_algo, user.created_at),
                )
        except DuplicateKeyError as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._execute("find_by_email") as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        created_at = row.get("created_at")
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            created_at=as_utc(created_at) if created_at else utcnow(),
        )

    def save_password(
        self, email: str, password_hash: str, password_algo: str
    ) -> None:
        with self._execute("save_password") as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, password_algo = %s WHERE email = %s",
                (password_hash, password_algo, email),
            )
            updated = cur.rowcount
        if not updated:
            raise ConstraintViolation(
                "user not found for credentials", {"email_known": False}
            )
