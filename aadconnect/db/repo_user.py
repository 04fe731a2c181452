"""User and linked-account repository operations."""

import re
from collections.abc import Collection

import uuid_utils
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.db.models_user import LinkedAccountEntity, UserEntity

_USERNAME_UNSAFE = re.compile(r"[^a-z0-9._@-]+")
USERNAME_FALLBACK = "user"


class NewUserData(BaseModel):
    """Parameters for provisioning a local user bound to a subject."""

    subject_identity: str
    username: str
    email: str | None = None
    display_name: str | None = None
    nickname: str | None = None


async def get_user_by_id(session: AsyncSession, user_id: str) -> UserEntity | None:
    """Look up a user by primary key."""
    stmt = select(UserEntity).where(UserEntity.id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_users_by_email(session: AsyncSession, email: str) -> list[UserEntity]:
    """Return every user whose email matches (case-insensitive)."""
    stmt = select(UserEntity).where(func.lower(UserEntity.email) == email.lower())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_users_by_username(
    session: AsyncSession, username: str
) -> list[UserEntity]:
    """Return every user whose username matches (case-insensitive)."""
    stmt = select(UserEntity).where(
        func.lower(UserEntity.username) == username.lower()
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_linked_account_by_subject(
    session: AsyncSession, subject_identity: str
) -> LinkedAccountEntity | None:
    """Look up the linked account for an external subject identity."""
    stmt = select(LinkedAccountEntity).where(
        LinkedAccountEntity.subject_identity == subject_identity
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_linked_account_for_user(
    session: AsyncSession, user_id: str
) -> LinkedAccountEntity | None:
    """Look up the linked account attached to a local user."""
    stmt = select(LinkedAccountEntity).where(LinkedAccountEntity.user_id == user_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def sanitize_username(raw: str) -> str:
    """Lower-case and strip characters not allowed in usernames."""
    cleaned = _USERNAME_UNSAFE.sub("", raw.strip().lower().replace(" ", "."))
    return cleaned.strip(".-") or USERNAME_FALLBACK


async def unique_username(
    session: AsyncSession, base: str, exclude: Collection[str] = ()
) -> str:
    """Return ``base`` or ``base`` with the first free numeric suffix.

    Names in ``exclude`` count as taken even if no committed row holds them.
    """
    stmt = select(UserEntity.username).where(UserEntity.username.like(f"{base}%"))
    result = await session.execute(stmt)
    taken = {name.lower() for name in result.scalars().all()}
    taken.update(name.lower() for name in exclude)
    if base not in taken:
        return base
    suffix = 2
    while f"{base}{suffix}" in taken:
        suffix += 1
    return f"{base}{suffix}"


async def link_user(
    session: AsyncSession, user: UserEntity, subject_identity: str
) -> LinkedAccountEntity:
    """Bind an existing local user to an external subject identity."""
    account = LinkedAccountEntity(user_id=user.id, subject_identity=subject_identity)
    session.add(account)
    await session.flush()
    return account


async def insert_linked_user(
    session: AsyncSession, data: NewUserData
) -> LinkedAccountEntity:
    """Insert a user and its linked account.

    Raises ``IntegrityError`` when the subject identity or username is taken.
    """
    user = UserEntity(
        id=str(uuid_utils.uuid7()),
        username=data.username,
        email=data.email.lower() if data.email else None,
        display_name=data.display_name,
        nickname=data.nickname,
    )
    session.add(user)
    await session.flush()
    return await link_user(session, user, data.subject_identity)
