"""
Verification orchestrator: per-session channel creation, membership polling and identity binding.
A session is verified the first time its channel has exactly two members (the bot and one
other identity); any other member count besides 1 is an invariant violation and is never
guessed around.
"""
import enum
import logging
import uuid

from login_bot.audit import (
    EVENT_CHANNEL_CREATED,
    EVENT_IDENTITY_BOUND,
    EVENT_INVARIANT_VIOLATION,
    OUTCOME_FAIL,
    log_audit,
)
from login_bot.errors import InvariantViolation, NotReady, StoreUnavailable
from login_bot.platform import InviteArtifact, VerificationPlatform
from login_bot.sessions import Session, SessionState, SessionStore, handle_prefix

logger = logging.getLogger(__name__)


class PollResult(str, enum.Enum):
    WAITING = "waiting"
    SUCCESS = "success"


def channel_name() -> str:
    """Short human-distinguishable group name from a fresh random token (not the session id)."""
    return f"LoginBot group {uuid.uuid4().hex[:5]}"


class VerificationOrchestrator:
    def __init__(
        self,
        sessions: SessionStore,
        platform: VerificationPlatform,
        *,
        send_disposal_notice: bool = True,
        disposal_notice: str = "",
    ):
        self._sessions = sessions
        self._platform = platform
        self._send_disposal_notice = send_disposal_notice
        self._disposal_notice = disposal_notice

    def start_verification(self, handle: str) -> InviteArtifact:
        """Create the session's channel unless it already has one; return its invite artifact."""

        def ensure_channel(session: Session) -> int:
            if session.channel_ref is None:
                name = channel_name()
                session.channel_ref = self._platform.create_channel(name)
                session.state = SessionState.CHANNEL_CREATED
                logger.info(
                    "session %s: created channel %s (%s)",
                    handle_prefix(handle),
                    session.channel_ref,
                    name,
                )
                log_audit(
                    EVENT_CHANNEL_CREATED,
                    session=handle_prefix(handle),
                    channel=session.channel_ref,
                )
            return session.channel_ref

        channel_ref = self._sessions.update(handle, ensure_channel)
        return self._platform.get_invite(channel_ref)

    def _channel_of(self, handle: str) -> tuple[Session, int]:
        session = self._sessions.get(handle)
        if session is None or session.channel_ref is None:
            raise NotReady(handle_prefix(handle))
        return session, session.channel_ref

    def has_channel(self, handle: str) -> bool:
        session = self._sessions.get(handle)
        return session is not None and session.channel_ref is not None

    def get_invite_artifact(self, handle: str) -> InviteArtifact:
        _, channel_ref = self._channel_of(handle)
        return self._platform.get_invite(channel_ref)

    def poll_membership(self, handle: str) -> PollResult:
        """
        Query channel membership once.
        1 member: waiting. 2 members: bind the non-self member on the first transition, success.
        Anything else: InvariantViolation; the session stays unverified.
        """
        session, channel_ref = self._channel_of(handle)
        if session.is_verified:
            return PollResult.SUCCESS

        logger.info("session %s: getting members of channel %s", handle_prefix(handle), channel_ref)
        members = self._platform.list_members(channel_ref)
        count = len(members)

        if count == 1:
            self._sessions.update(handle, _mark_awaiting)
            return PollResult.WAITING

        if count == 2:
            self_ref = self._platform.self_identity
            others = [m for m in members if m != self_ref]
            if len(others) != 1:
                self._violation(handle, channel_ref, count, "bot is not a member of its own channel")
            return self._bind(handle, channel_ref, others[0])

        self._violation(handle, channel_ref, count, "member count is not 1 or 2")

    def _violation(self, handle: str, channel_ref: int, count: int, reason: str):
        logger.error(
            "session %s: this must not happen, there are %s members in channel %s (%s)",
            handle_prefix(handle),
            count,
            channel_ref,
            reason,
        )
        log_audit(
            EVENT_INVARIANT_VIOLATION,
            session=handle_prefix(handle),
            channel=channel_ref,
            outcome=OUTCOME_FAIL,
            reason=f"members={count}",
        )
        raise InvariantViolation(f"channel {channel_ref} has {count} members")

    def _bind(self, handle: str, channel_ref: int, identity_ref: int) -> PollResult:
        def bind(session: Session) -> None:
            if session.verified_identity is not None:
                # Another request bound first; never re-bind
                return
            session.verified_identity = identity_ref
            session.state = SessionState.VERIFIED
            logger.info(
                "session %s: bound identity %s from channel %s",
                handle_prefix(handle),
                identity_ref,
                channel_ref,
            )
            log_audit(
                EVENT_IDENTITY_BOUND,
                session=handle_prefix(handle),
                channel=channel_ref,
                identity=identity_ref,
            )
            if self._send_disposal_notice and not session.notified:
                try:
                    self._platform.send_disposal_notice(channel_ref, self._disposal_notice)
                    session.notified = True
                except StoreUnavailable:
                    logger.warning(
                        "session %s: could not send disposal notice to channel %s",
                        handle_prefix(handle),
                        channel_ref,
                    )

        self._sessions.update(handle, bind)
        return PollResult.SUCCESS


def _mark_awaiting(session: Session) -> None:
    if session.state == SessionState.CHANNEL_CREATED:
        session.state = SessionState.AWAITING_JOIN
