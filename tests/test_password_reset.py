"""Password reset token tests: issuance, single use, expiry and the reset flow."""

import threading

import pytest
from argon2 import PasswordHasher, Type

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
from tokenvault.service.password_reset import PASSWORD_ALGO, PasswordResetManager
from tokenvault.storage.models import User


@pytest.fixture
def fast_resets(memory_store, settings, clock):
    hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    return PasswordResetManager(
        memory_store, memory_store, settings, now=clock, hasher=hasher
    )


def test_create_password_token(resets, user, memory_store, clock):
    token = resets.issue(user)

    assert token.user_email == user.email
    assert token.used is False
    assert token.created_at == clock.current
    stored = memory_store.password_tokens.find_one({"token": token.token})
    assert stored == token.to_document()


@pytest.mark.parametrize(
    "candidate,error,message",
    [
        (None, NilUserError, "User is nil"),
        (User(), MissingEmailError, "User email is empty"),
    ],
)
def test_create_password_token_errors(resets, candidate, error, message):
    with pytest.raises(error) as exc:
        resets.issue(candidate)

    assert str(exc.value) == message


def test_consume_marks_token_used(resets, user, memory_store):
    token = resets.issue(user)

    consumed = resets.consume(token.token)

    assert consumed.used is True
    assert consumed.user_email == user.email
    assert memory_store.password_tokens.find_one({"token": token.token})["used"] is True


def test_consume_twice_fails(resets, user):
    token = resets.issue(user)
    resets.consume(token.token)

    with pytest.raises(TokenUsedError):
        resets.consume(token.token)


def test_consume_empty_and_unknown(resets):
    with pytest.raises(EmptyTokenError):
        resets.consume("")
    with pytest.raises(TokenNotFoundError) as exc:
        resets.consume("nope")
    assert str(exc.value) == "Token not found"


def test_consume_expired_token(resets, user, clock, memory_store):
    token = resets.issue(user)
    clock.advance(minutes=30)

    with pytest.raises(TokenExpiredError):
        resets.consume(token.token)
    # an expired token is left unused
    assert memory_store.password_tokens.find_one({"token": token.token})["used"] is False


def test_consume_just_before_expiry(resets, user, clock):
    token = resets.issue(user)
    clock.advance(minutes=29, seconds=59)

    assert resets.consume(token.token).used is True


def test_concurrent_consume_has_single_winner(resets, user):
    token = resets.issue(user)
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            resets.consume(token.token)
            result = "ok"
        except TokenUsedError:
            result = "used"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("used") == workers - 1


class TestResetPassword:
    def test_reset_password_stores_argon2_hash(self, fast_resets, user, memory_store):
        token = fast_resets.issue(user)

        updated = fast_resets.reset_password(token.token, "correct horse")

        assert updated.password_algo == PASSWORD_ALGO
        stored = memory_store.find_by_email(user.email)
        assert stored.password_hash.startswith("$argon2id$")
        assert fast_resets.verify_password(user.email, "correct horse")
        assert not fast_resets.verify_password(user.email, "wrong horse")

    def test_reset_token_cannot_be_replayed(self, fast_resets, user):
        token = fast_resets.issue(user)
        fast_resets.reset_password(token.token, "first-password")

        with pytest.raises(TokenUsedError):
            fast_resets.reset_password(token.token, "second-password")
        assert fast_resets.verify_password(user.email, "first-password")

    def test_short_password_rejected_without_consuming(self, fast_resets, user):
        token = fast_resets.issue(user)

        with pytest.raises(ValidationError) as exc:
            fast_resets.reset_password(token.token, "short")

        assert exc.value.detail == {"min_length": 8}
        assert fast_resets.consume(token.token).used is True

    def test_reset_for_deleted_user(self, fast_resets, user, memory_store):
        token = fast_resets.issue(user)
        memory_store.delete_user(user.email)

        with pytest.raises(UserNotFoundError):
            fast_resets.reset_password(token.token, "long-enough")

    def test_verify_password_unknown_or_unset(self, fast_resets, user):
        assert not fast_resets.verify_password("ghost@example.com", "whatever")
        assert not fast_resets.verify_password(user.email, "whatever")

    def test_verify_password_other_algorithm(self, fast_resets, memory_store):
        memory_store.create_user(
            "legacy@example.com", password_hash="abc", password_algo="bcrypt"
        )

        assert not fast_resets.verify_password("legacy@example.com", "abc")

    def test_expired_token_leaves_password_alone(self, fast_resets, user, clock):
        token = fast_resets.issue(user)
        clock.advance(hours=1)

        with pytest.raises(TokenExpiredError):
            fast_resets.reset_password(token.token, "long-enough")
