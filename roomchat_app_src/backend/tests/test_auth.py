"""
Tests for auth.py - registration and login.
"""
import pytest

from auth import register, authenticate, get_password_hash, verify_password
from errors import AuthError, DuplicateError, ValidationError


class TestPasswords:
    def test_hash_roundtrip(self):
        hashed = get_password_hash("secret")
        assert hashed != "secret"
        assert verify_password("secret", hashed)
        assert not verify_password("wrong", hashed)

    def test_garbage_hash(self):
        assert not verify_password("secret", "not-a-bcrypt-hash")


class TestRegister:
    async def test_register_returns_stable_id(self, session_factory):
        async with session_factory() as session:
            user = await register(session, "kim", "pw")
        assert user.username == "kim"
        assert len(user.user_id) == 36

        async with session_factory() as session:
            again = await authenticate(session, "kim", "pw")
        assert again.user_id == user.user_id

    async def test_duplicate(self, session_factory):
        async with session_factory() as session:
            await register(session, "kim", "pw")
        async with session_factory() as session:
            with pytest.raises(DuplicateError):
                await register(session, "kim", "other")

    async def test_blank(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(ValidationError):
                await register(session, "  ", "pw")


class TestAuthenticate:
    async def test_unknown_user(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(AuthError, match="unknown"):
                await authenticate(session, "ghost", "pw")

    async def test_wrong_password(self, session_factory):
        async with session_factory() as session:
            await register(session, "kim", "pw")
        async with session_factory() as session:
            with pytest.raises(AuthError, match="wrong password"):
                await authenticate(session, "kim", "nope")
