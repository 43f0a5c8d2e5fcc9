from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from tokenvault.config import Settings
from tokenvault.logging import get_logger, hash_identity
from tokenvault.service.errors import (
    EmptyTokenError,
    MissingEmailError,
    NilUserError,
    TokenExpiredError,
    TokenNotFoundError,
    UserNotFoundError,
)
from tokenvault.service.fingerprint import FingerprintGenerator
from tokenvault.storage.common import Document, DocumentCollection, TokenStore, UserDirectory
from tokenvault.storage.errors import DuplicateKeyError
from tokenvault.storage.models import Token, User, utcnow

logger = get_logger(__name__)

Now = Callable[[], datetime]


def insert_unique(
    collection: DocumentCollection,
    build: Callable[[], Document],
    *,
    max_attempts: int,
    kind: str,
) -> Document:
    """Insert a freshly built document, rebuilding it on a primary-key clash.

    ``build`` must draw a new fingerprint on every call. A clash is not
    expected outside of broken entropy, so after ``max_attempts`` the last
    ``DuplicateKeyError`` propagates. Store outages are never retried here.
    """
    for attempt in range(1, max_attempts + 1):
        document = build()
        try:
            collection.insert(document)
            return document
        except DuplicateKeyError:
            logger.warning(
                "fingerprint_collision",
                kind=kind,
                attempt=attempt,
                max_attempts=max_attempts,
            )
            if attempt >= max_attempts:
                raise
    raise RuntimeError("max_attempts must be at least 1")


class SessionTokenManager:
    """Issues, resolves, refreshes and revokes user and application tokens."""

    def __init__(
        self,
        store: TokenStore,
        directory: UserDirectory,
        settings: Settings,
        *,
        generator: Optional[FingerprintGenerator] = None,
        now: Optional[Now] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self.generator = generator or FingerprintGenerator(
            settings.token_hash_algorithm
        )
        self._now: Now = now or utcnow
        self.logger = logger

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_token_ttl_minutes)

    def issue(self, user: Optional[User], app_name: Optional[str] = None) -> Token:
        """Issue a token for ``user``, or a pure application token.

        ``user`` may only be omitted when ``app_name`` names the application
        the token is for.
        """
        if user is None:
            if not app_name:
                raise NilUserError()
            seed = self.settings.app_token_seed
            email = ""
        else:
            if not user.email:
                raise MissingEmailError(
                    "Impossible to generate tokens for users without email"
                )
            seed = user.email
            email = user.email

        created_at = self._now()

        def _build() -> Document:
            return Token(
                token=self.generator(seed),
                user_email=email,
                app_name=app_name or "",
                created_at=created_at,
                valid_until=created_at + self.ttl,
            ).to_document()

        doc = insert_unique(
            self.store.tokens,
            _build,
            max_attempts=self.settings.max_issue_attempts,
            kind="session",
        )
        token = Token.from_document(doc)
        self.logger.info(
            "token_issued",
            kind="app" if token.is_app_token else "user",
            app_name=token.app_name or None,
            email_hash=hash_identity(email),
            valid_until=token.valid_until.isoformat(),
        )
        return token

    def issue_user_token(self, user: Optional[User]) -> Token:
        if user is None:
            raise NilUserError()
        return self.issue(user)

    def issue_app_token(self, app_name: str, user: Optional[User] = None) -> Token:
        return self.issue(user, app_name)

    def lookup(self, value: str) -> Token:
        if not value:
            raise EmptyTokenError()
        doc = self.store.tokens.find_one({"token": value})
        if doc is None:
            raise TokenNotFoundError()
        token = Token.from_document(doc)
        if not token.is_valid(self._now()):
            self.logger.info(
                "token_expired",
                app_name=token.app_name or None,
                email_hash=hash_identity(token.user_email),
            )
            raise TokenExpiredError()
        return token

    def resolve_owner(self, token: Token) -> User:
        user = self.directory.find_by_email(token.user_email) if token.user_email else None
        if user is None:
            self.logger.warning(
                "token_owner_missing", email_hash=hash_identity(token.user_email)
            )
            raise UserNotFoundError()
        return user

    def revoke(self, value: str) -> None:
        if not value:
            return
        removed = self.store.tokens.remove({"token": value})
        self.logger.info("token_revoked", removed=removed)

    def refresh(self, value: str) -> Token:
        """Push a still-valid token's expiry out by one full TTL."""
        token = self.lookup(value)
        now = self._now()
        valid_until = now + self.ttl
        updated = self.store.tokens.update(
            {"token": value, "valid_until": {"$gt": now}},
            {"valid_until": valid_until},
        )
        if not updated:
            # Revoked or expired between lookup and update
            self.lookup(value)
            raise TokenNotFoundError()
        token.valid_until = valid_until
        self.logger.info("token_refreshed", valid_until=valid_until.isoformat())
        return token

    def revoke_all(self, email: str) -> int:
        if not email:
            raise MissingEmailError()
        removed = self.store.tokens.remove({"user_email": email})
        self.logger.info(
            "user_tokens_revoked", email_hash=hash_identity(email), removed=removed
        )
        return removed

    def count_active(self, email: str) -> int:
        return self.store.tokens.count(
            {"user_email": email, "valid_until": {"$gt": self._now()}}
        )

    def purge_expired(self) -> int:
        removed = self.store.tokens.remove({"valid_until": {"$lte": self._now()}})
        if removed:
            self.logger.info("expired_tokens_purged", removed=removed)
        return removed
