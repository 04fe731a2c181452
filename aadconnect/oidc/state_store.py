"""Single-use, time-boxed anti-forgery states for the authorization request."""

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from aadconnect.core.errors import ExpiredState, InvalidState
from aadconnect.core.settings import STATE_TIME_LIMIT_DEFAULT
from aadconnect.db.models_state import AuthStateEntity
from aadconnect.oidc.types import AuthRequestState

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def generate_state() -> str:
    """Generate a cryptographically random state token."""
    return secrets.token_urlsafe(32)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _align(now: datetime, stored: datetime) -> datetime:
    """Drop tzinfo from ``now`` when the backend returned a naive timestamp."""
    if stored.tzinfo is None:
        return now.astimezone(UTC).replace(tzinfo=None)
    return now


class StateStore:
    """Issues and consumes states on one database session."""

    def __init__(
        self,
        session: AsyncSession,
        ttl_seconds: int = STATE_TIME_LIMIT_DEFAULT,
        clock: Clock = _utcnow,
    ) -> None:
        self._session = session
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def issue(self, redirect_to: str | None = None) -> str:
        """Record a new state token and return it."""
        token = generate_state()
        self._session.add(
            AuthStateEntity(
                token=token, created_at=self._clock(), redirect_to=redirect_to
            )
        )
        await self._session.flush()
        await self.prune()
        return token

    async def prune(self) -> int:
        """Delete expired states. Best-effort: failures are logged, not raised.

        The delete runs in a savepoint so a failure does not abort the
        caller's transaction.
        """
        cutoff = self._clock() - self._ttl
        stmt = (
            delete(AuthStateEntity)
            .where(AuthStateEntity.created_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
        except SQLAlchemyError:
            logger.warning("pruning expired states failed", exc_info=True)
            return 0
        return result.rowcount or 0

    async def validate_and_consume(self, token: str) -> AuthRequestState:
        """Atomically remove the state; fail if it was unknown or expired."""
        if not token:
            raise InvalidState("empty state")
        stmt = (
            delete(AuthStateEntity)
            .where(AuthStateEntity.token == token)
            .returning(AuthStateEntity.created_at, AuthStateEntity.redirect_to)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            raise InvalidState("unknown or already used state")

        created_at, redirect_to = row
        now = _align(self._clock(), created_at)
        if now - created_at > self._ttl:
            raise ExpiredState(f"state older than {self._ttl.total_seconds():.0f}s")
        return AuthRequestState(
            token=token, created_at=created_at, redirect_to=redirect_to
        )
