"""
Authorization code issuance for verified sessions.
Reissue is idempotent: while the identity's last code is unconsumed and has at least half of its
validity window left, the same code is returned (e.g. when the relying party retries the redirect).
"""
import logging
import uuid

from login_bot.audit import EVENT_CODE_ISSUED, log_audit
from login_bot.code_store import CodeStore, code_prefix
from login_bot.errors import NotVerified, SessionExpired
from login_bot.sessions import Session, SessionState, SessionStore, handle_prefix

logger = logging.getLogger(__name__)


def new_code() -> str:
    """uuid4 hex: 122 random bits."""
    return uuid.uuid4().hex


class CodeIssuer:
    def __init__(self, sessions: SessionStore, code_store: CodeStore):
        self._sessions = sessions
        self._codes = code_store

    def issue_code(self, handle: str, *, client_id: str | None = None) -> str:
        """
        Return a single-use code for the session's verified identity.
        Raises NotVerified before identity binding. Once the session's code has been redeemed the
        session is finished: it is expired and SessionExpired is raised so the user logs in anew.
        """

        def issue(session: Session) -> str | None:
            if not session.is_verified:
                raise NotVerified(handle_prefix(handle))

            if session.code is not None:
                previous = self._codes.get(session.code)
                if previous is not None and previous.consumed:
                    session.state = SessionState.CONSUMED
                    return None

            code = self._codes.active_code_for(session.verified_identity)
            if code is None:
                code = new_code()
                self._codes.save(code, session.verified_identity)
                logger.info(
                    "session %s: issued code %s... for identity %s",
                    handle_prefix(handle),
                    code_prefix(code),
                    session.verified_identity,
                )
                log_audit(
                    EVENT_CODE_ISSUED,
                    client_id=client_id,
                    session=handle_prefix(handle),
                    identity=session.verified_identity,
                )
            session.code = code
            session.state = SessionState.CODE_ISSUED
            return code

        code = self._sessions.update(handle, issue)
        if code is None:
            logger.info("session %s: code already redeemed, ending session", handle_prefix(handle))
            self._sessions.expire(handle)
            raise SessionExpired(handle_prefix(handle))
        return code
