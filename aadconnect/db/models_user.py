"""SQLAlchemy models for local accounts and their linked external identity."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column

from aadconnect.db.base import BaseEntity


class UserEntity(BaseEntity):
    """A local user account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(48), primary_key=True)
    username: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    nickname: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class LinkedAccountEntity(BaseEntity):
    """Binding between a local user and one external subject identity."""

    __tablename__ = "linked_accounts"

    user_id: Mapped[str] = mapped_column(
        String(48), ForeignKey("users.id"), primary_key=True
    )
    subject_identity: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    last_id_token_claims: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    last_user_claims: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    last_token_response: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
