from __future__ import annotations

from datetime import timedelta
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from tokenvault.config import Settings
from tokenvault.logging import get_logger, hash_identity
from tokenvault.service.errors import (
    EmptyTokenError,
    MissingEmailError,
    NilUserError,
    TokenExpiredError,
    TokenNotFoundError,
    TokenUsedError,
    UserNotFoundError,
    ValidationError,
)
from tokenvault.service.fingerprint import FingerprintGenerator
from tokenvault.service.tokens import Now, insert_unique
from tokenvault.storage.common import Document, TokenStore, UserDirectory
from tokenvault.storage.models import PasswordResetToken, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordResetManager:
    """Single-use, time-boxed password-reset tokens.

    A reset token is consumed by flipping ``used`` from False to True with a
    conditional store update, so when two requests race on the same token
    exactly one of them wins and the other sees ``TokenUsedError``.
    """

    def __init__(
        self,
        store: TokenStore,
        directory: UserDirectory,
        settings: Settings,
        *,
        generator: Optional[FingerprintGenerator] = None,
        now: Optional[Now] = None,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self.generator = generator or FingerprintGenerator(
            settings.token_hash_algorithm
        )
        self._now: Now = now or utcnow
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.reset_token_ttl_minutes)

    def issue(self, user: Optional[User]) -> PasswordResetToken:
        if user is None:
            raise NilUserError()
        if not user.email:
            raise MissingEmailError()
        email = user.email
        created_at = self._now()

        def _build() -> Document:
            return PasswordResetToken(
                token=self.generator(email),
                user_email=email,
                created_at=created_at,
                used=False,
            ).to_document()

        doc = insert_unique(
            self.store.password_tokens,
            _build,
            max_attempts=self.settings.max_issue_attempts,
            kind="password_reset",
        )
        self.logger.info("password_reset_requested", email_hash=hash_identity(email))
        return PasswordResetToken.from_document(doc)

    def consume(self, value: str) -> PasswordResetToken:
        if not value:
            raise EmptyTokenError()
        doc = self.store.password_tokens.find_one({"token": value})
        if doc is None:
            raise TokenNotFoundError()
        reset = PasswordResetToken.from_document(doc)
        if reset.used:
            raise TokenUsedError()
        if self._now() >= reset.created_at + self.ttl:
            self.logger.info(
                "password_token_expired", email_hash=hash_identity(reset.user_email)
            )
            raise TokenExpiredError()
        updated = self.store.password_tokens.update(
            {"token": value, "used": False}, {"used": True}
        )
        if not updated:
            self.logger.warning(
                "password_token_consume_lost_race",
                email_hash=hash_identity(reset.user_email),
            )
            raise TokenUsedError()
        reset.used = True
        self.logger.info(
            "password_token_consumed", email_hash=hash_identity(reset.user_email)
        )
        return reset

    def reset_password(self, value: str, new_password: str) -> User:
        """Consume ``value`` and store an argon2id hash of ``new_password``."""
        minimum = self.settings.min_password_length
        if not new_password or len(new_password) < minimum:
            raise ValidationError(
                f"Password must be at least {minimum} characters",
                detail={"min_length": minimum},
            )
        reset = self.consume(value)
        user = self.directory.find_by_email(reset.user_email)
        if user is None:
            self.logger.warning(
                "password_reset_user_missing",
                email_hash=hash_identity(reset.user_email),
            )
            raise UserNotFoundError()
        pwd_hash = self._pwd_hasher.hash(new_password)
        self.directory.save_password(user.email, pwd_hash, PASSWORD_ALGO)
        user.password_hash = pwd_hash
        user.password_algo = PASSWORD_ALGO
        self.logger.info("password_reset_completed", user_id=user.id)
        return user

    def verify_password(self, email: str, password: str) -> bool:
        user = self.directory.find_by_email(email)
        if not user or not user.password_hash:
            return False
        if user.password_algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", algo=user.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False
