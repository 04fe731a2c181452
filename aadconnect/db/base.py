"""Declarative base for aadconnect SQLAlchemy models."""

from sqlalchemy.orm import DeclarativeBase


class BaseEntity(DeclarativeBase):
    """Base class for all aadconnect database entities."""
