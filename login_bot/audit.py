"""
Audit logging. Security-relevant events only; no codes, tokens or secrets.
Records go to the "login_bot.audit" logger as key=value lines so they can be routed separately.
"""
import logging

from fastapi import Request

EVENT_CHANNEL_CREATED = "channel_created"
EVENT_IDENTITY_BOUND = "identity_bound"
EVENT_INVARIANT_VIOLATION = "invariant_violation"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_FAIL = "token_fail"
EVENT_AUTHORIZE_REJECTED = "authorize_rejected"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"

audit_logger = logging.getLogger("login_bot.audit")


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    event_type: str,
    *,
    client_id: str | None = None,
    session: str | None = None,
    channel: int | None = None,
    identity: int | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
    reason: str | None = None,
) -> None:
    """Emit one audit record. session is a handle prefix, never the full handle."""
    fields = {
        "event": event_type,
        "outcome": outcome,
        "client_id": client_id,
        "session": session,
        "channel": channel,
        "identity": identity,
        "ip": ip,
        "reason": reason,
    }
    level = logging.INFO if outcome == OUTCOME_SUCCESS else logging.WARNING
    if event_type == EVENT_INVARIANT_VIOLATION:
        level = logging.ERROR
    audit_logger.log(
        level,
        " ".join(f"{k}={v}" for k, v in fields.items() if v is not None),
        extra={"audit": fields},
    )
