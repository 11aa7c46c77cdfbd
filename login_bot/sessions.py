"""
In-memory session store: opaque handle -> verification session.
Process-lifetime only; absolute TTL per session. Each session has its own lock so the
polling endpoint and /authorize never lose each other's updates.
"""
import copy
import enum
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from login_bot.errors import SessionExpired

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, enum.Enum):
    NEW = "new"
    CHANNEL_CREATED = "channel_created"
    AWAITING_JOIN = "awaiting_join"
    VERIFIED = "verified"
    CODE_ISSUED = "code_issued"
    CONSUMED = "consumed"


@dataclass
class Session:
    id: str
    created_at: float
    state: SessionState = SessionState.NEW
    channel_ref: int | None = None
    verified_identity: int | None = None
    notified: bool = False
    code: str | None = None

    @property
    def is_verified(self) -> bool:
        return self.verified_identity is not None


def handle_prefix(handle: str | None) -> str:
    """Loggable prefix of a session handle."""
    return (handle or "")[:8]


@dataclass
class _Record:
    session: Session
    lock: threading.RLock = field(default_factory=threading.RLock)


class SessionStore:
    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._records: dict[str, _Record] = {}
        self._lock = threading.Lock()

    def _expired(self, session: Session) -> bool:
        return (self._clock() - session.created_at) > self._ttl

    def create(self) -> str:
        handle = secrets.token_urlsafe(32)
        with self._lock:
            self._clean_expired()
            self._records[handle] = _Record(Session(id=handle, created_at=self._clock()))
        logger.debug("session %s created", handle_prefix(handle))
        return handle

    def _record(self, handle: str) -> _Record | None:
        with self._lock:
            record = self._records.get(handle)
            if record is None:
                return None
            if self._expired(record.session):
                del self._records[handle]
                logger.info("session %s expired", handle_prefix(handle))
                raise SessionExpired(handle_prefix(handle))
            return record

    def get(self, handle: str) -> Session | None:
        """Snapshot of the session, None if unknown. Raises SessionExpired past the TTL."""
        record = self._record(handle)
        if record is None:
            return None
        with record.lock:
            return copy.copy(record.session)

    def update(self, handle: str, mutator: Callable[[Session], T]) -> T:
        """
        Run mutator(session) while holding the session's lock and return its result.
        The TTL is re-checked after the lock is acquired, so a session that expired while
        waiting is never mutated.
        """
        record = self._record(handle)
        if record is None:
            raise SessionExpired(handle_prefix(handle))
        with record.lock:
            if self._expired(record.session):
                self.expire(handle)
                raise SessionExpired(handle_prefix(handle))
            return mutator(record.session)

    def expire(self, handle: str) -> None:
        with self._lock:
            self._records.pop(handle, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _clean_expired(self) -> None:
        expired = [h for h, r in self._records.items() if self._expired(r.session)]
        for h in expired:
            del self._records[h]
