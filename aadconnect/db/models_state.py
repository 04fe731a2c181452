"""SQLAlchemy model for pending authorization-request states."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from aadconnect.db.base import BaseEntity


class AuthStateEntity(BaseEntity):
    """Single-use anti-forgery token round-tripped through the provider."""

    __tablename__ = "auth_states"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    redirect_to: Mapped[str | None] = mapped_column(String(2048), nullable=True)
