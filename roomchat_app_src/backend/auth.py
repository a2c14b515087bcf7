import os
import logging
import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from dotenv import load_dotenv

from db import User
from errors import AuthError, DuplicateError, PersistenceError, ValidationError

load_dotenv()

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

logger = logging.getLogger(__name__)

def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")

def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False

async def register(session: AsyncSession, username: str, password: str) -> User:
    """Create a user with a fresh stable user_id. Usernames are unique."""
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("username and password are required")
    try:
        existing = await session.execute(select(User).where(User.username == username))
        if existing.scalar_one_or_none():
            raise DuplicateError(f"username '{username}' is already taken")
        user = User(username=username, password_hash=get_password_hash(password))
        session.add(user)
        await session.commit()
    except IntegrityError as e:
        # Lost a race with another registration for the same name
        await session.rollback()
        raise DuplicateError(f"username '{username}' is already taken") from e
    except SQLAlchemyError as e:
        await session.rollback()
        logger.exception("Registering %r failed", username)
        raise PersistenceError("could not register the user") from e
    logger.info("Registered user %s (%s)", username, user.user_id)
    return user

async def authenticate(session: AsyncSession, username: str, password: str) -> User:
    try:
        res = await session.execute(select(User).where(User.username == (username or "").strip()))
        user = res.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.exception("Looking up %r failed", username)
        raise PersistenceError("could not check the credentials") from e
    if not user:
        raise AuthError("unknown username")
    if not verify_password(password or "", user.password_hash):
        raise AuthError("wrong password")
    return user
