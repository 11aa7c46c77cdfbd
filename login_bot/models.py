"""
SQLAlchemy models for the durable code store.
Two entry families per issued code: code -> identity (authoritative) and identity -> code.
Identity refs are Delta Chat contact ids stored as plain INTEGER columns.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    # Naive UTC: SQLite drops tzinfo, and validity-window comparisons happen in SQL
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class AuthorizationCode(Base):
    __tablename__ = "authorization_codes"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    identity_ref: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    consumed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class IdentityCode(Base):
    """Reverse mapping: latest code issued for an identity."""

    __tablename__ = "identity_codes"

    identity_ref: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
