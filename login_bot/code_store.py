"""
Durable code store: code -> identity (authoritative) and identity -> code, in SQLite via SQLAlchemy.
Consumption is a single conditional UPDATE so two concurrent redemptions cannot both win.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from login_bot.errors import StoreUnavailable
from login_bot.models import AuthorizationCode, IdentityCode, utc_now

logger = logging.getLogger(__name__)


def code_prefix(code: str) -> str:
    """Loggable prefix of a code; full codes never go to the logs."""
    return (code or "")[:6]


class CodeStore:
    def __init__(self, session_factory: sessionmaker, code_ttl_seconds: int):
        self._session_factory = session_factory
        self._code_ttl = timedelta(seconds=code_ttl_seconds)
        # A reissued code must leave the relying party this much time to redeem it
        self._min_remaining = timedelta(seconds=code_ttl_seconds / 2)

    def _cutoff(self) -> datetime:
        return utc_now() - self._code_ttl

    def save(self, code: str, identity_ref: int) -> None:
        """Persist both directions in one transaction; code -> identity is written first."""
        try:
            with self._session_factory() as db:
                db.add(AuthorizationCode(code=code, identity_ref=identity_ref, issued_at=utc_now()))
                db.flush()
                db.merge(IdentityCode(identity_ref=identity_ref, code=code))
                db.commit()
        except SQLAlchemyError as e:
            logger.error("code store write failed for identity=%s: %s", identity_ref, e)
            raise StoreUnavailable("code store write failed") from e

    def get(self, code: str) -> AuthorizationCode | None:
        try:
            with self._session_factory() as db:
                return db.get(AuthorizationCode, code)
        except SQLAlchemyError as e:
            logger.error("code store read failed: %s", e)
            raise StoreUnavailable("code store read failed") from e

    def active_code_for(self, identity_ref: int) -> str | None:
        """
        Return the identity's latest code if it is unconsumed and at least half of its validity
        window remains, else None (the caller mints a fresh code).
        """
        try:
            with self._session_factory() as db:
                reverse = db.get(IdentityCode, identity_ref)
                if reverse is None:
                    return None
                row = db.get(AuthorizationCode, reverse.code)
        except SQLAlchemyError as e:
            logger.error("code store read failed for identity=%s: %s", identity_ref, e)
            raise StoreUnavailable("code store read failed") from e
        if row is None or row.consumed or row.issued_at < self._cutoff() + self._min_remaining:
            return None
        return row.code

    def consume(self, code: str) -> int | None:
        """
        Atomically mark code consumed. Returns the bound identity ref, or None when the code
        is unknown, already consumed or outside its validity window.
        """
        stmt = (
            update(AuthorizationCode)
            .where(
                AuthorizationCode.code == code,
                AuthorizationCode.consumed.is_(False),
                AuthorizationCode.issued_at >= self._cutoff(),
            )
            .values(consumed=True, consumed_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        try:
            with self._session_factory() as db:
                result = db.execute(stmt)
                if result.rowcount != 1:
                    db.rollback()
                    self._log_rejected(db, code)
                    return None
                identity_ref = db.execute(
                    select(AuthorizationCode.identity_ref).where(AuthorizationCode.code == code)
                ).scalar_one()
                db.commit()
                return identity_ref
        except SQLAlchemyError as e:
            logger.error("code store consume failed for code=%s...: %s", code_prefix(code), e)
            raise StoreUnavailable("code store consume failed") from e

    def _log_rejected(self, db, code: str) -> None:
        row = db.get(AuthorizationCode, code)
        if row is None:
            reason = "unknown"
        elif row.consumed:
            reason = "already consumed"
        else:
            reason = "expired"
        logger.info("code %s... rejected: %s", code_prefix(code), reason)
