"""
Token exchange: authenticate the relying party, consume the code exactly once, return an
identity assertion (bearer token + user info).
The bearer token is a one-shot identity carrier read by the relying party's back-channel call,
so its lifetime is minimal.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from login_bot.audit import EVENT_TOKEN_FAIL, EVENT_TOKEN_ISSUED, OUTCOME_FAIL, log_audit
from login_bot.client_auth import verify_client_credentials
from login_bot.code_store import CodeStore, code_prefix
from login_bot.config import Settings
from login_bot.errors import ClientMismatch, InvalidGrant, StoreUnavailable
from login_bot.keys import SigningKey
from login_bot.platform import Identity, VerificationPlatform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityAssertion:
    access_token: str
    expires_in: int
    identity: Identity
    token_type: str = "bearer"

    def to_response(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "info": {
                "username": self.identity.name,
                "email": self.identity.address,
            },
        }


class TokenExchanger:
    def __init__(
        self,
        settings: Settings,
        code_store: CodeStore,
        platform: VerificationPlatform,
        signing_key: SigningKey,
    ):
        self._settings = settings
        self._codes = code_store
        self._platform = platform
        self._key = signing_key

    def exchange(
        self,
        client_id: str | None,
        client_secret: str | None,
        code: str | None,
        *,
        ip: str | None = None,
    ) -> IdentityAssertion:
        """
        Raises ClientMismatch before any store access when credentials are wrong, and InvalidGrant
        when the code is missing, unknown, expired or already redeemed.
        """
        if not verify_client_credentials(self._settings, client_id, client_secret):
            log_audit(EVENT_TOKEN_FAIL, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL, reason="client")
            raise ClientMismatch(client_id)
        if not code:
            log_audit(EVENT_TOKEN_FAIL, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL, reason="no_code")
            raise InvalidGrant("no code in form data nor query string")

        identity_ref = self._codes.consume(code)
        if identity_ref is None:
            log_audit(EVENT_TOKEN_FAIL, client_id=client_id, ip=ip, outcome=OUTCOME_FAIL, reason="grant")
            raise InvalidGrant(code_prefix(code))

        try:
            identity = self._platform.resolve_identity(identity_ref)
        except StoreUnavailable:
            # The code is already consumed; the relying party has to start a new login
            logger.warning(
                "/token code %s... consumed but identity %s could not be resolved", code_prefix(code), identity_ref
            )
            log_audit(
                EVENT_TOKEN_FAIL, client_id=client_id, identity=identity_ref, ip=ip, outcome=OUTCOME_FAIL, reason="identity"
            )
            raise
        token = self._sign(identity)
        logger.info("/token issued assertion for identity %s (code %s...)", identity_ref, code_prefix(code))
        log_audit(EVENT_TOKEN_ISSUED, client_id=client_id, identity=identity_ref, ip=ip)
        return IdentityAssertion(
            access_token=token,
            expires_in=self._settings.assertion_expires_in,
            identity=identity,
        )

    def _sign(self, identity: Identity) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "iss": self._settings.issuer,
            "aud": self._settings.client_id,
            "sub": str(identity.ref),
            "name": identity.name,
            "email": identity.address,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self._settings.assertion_expires_in)).timestamp()),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(
            payload,
            self._key.private_key,
            algorithm="RS256",
            headers={"kid": self._key.kid, "typ": "JWT"},
        )
