"""
Relying-party client authentication. RFC 6749 §2.3.1.
/token credentials come via Authorization: Basic base64(client_id:client_secret) and are
compared in constant time against the configured client (or its bcrypt hash).
"""
import base64
import binascii
import hmac
import logging

import bcrypt

from login_bot.config import Settings

logger = logging.getLogger(__name__)


def parse_basic(header_value: str | None) -> tuple[str, str] | None:
    """Parse 'Basic <base64(client_id:client_secret)>'. Returns (client_id, client_secret) or None."""
    if not header_value or not header_value.strip().lower().startswith("basic "):
        return None
    encoded = header_value.strip()[6:].strip()
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    if ":" not in decoded:
        return None
    client_id, _, client_secret = decoded.partition(":")
    return client_id, client_secret


def _equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def hash_secret(secret: str) -> str:
    # Bcrypt has a 72-byte limit
    raw = secret.encode("utf-8")[:72]
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def _secret_matches(settings: Settings, client_secret: str) -> bool:
    if settings.client_secret_hash:
        try:
            return bcrypt.checkpw(client_secret.encode("utf-8")[:72], settings.client_secret_hash.encode("utf-8"))
        except ValueError:
            logger.error("configured client_secret_hash is not a valid bcrypt hash")
            return False
    return _equal(client_secret, settings.client_secret or "")


def verify_client_credentials(settings: Settings, client_id: str | None, client_secret: str | None) -> bool:
    """True only if both client_id and client_secret match. Both are always checked."""
    id_ok = _equal(client_id or "", settings.client_id)
    secret_ok = _secret_matches(settings, client_secret or "")
    if not id_ok:
        logger.info("client authentication failed: client_id mismatch")
    elif not secret_ok:
        logger.info("client authentication failed: client_secret mismatch")
    return id_ok and secret_ok


def authorize_request_allowed(settings: Settings, client_id: str, redirect_uri: str) -> bool:
    """client_id and redirect_uri must exactly match the configured relying party."""
    if client_id != settings.client_id:
        logger.info("/authorize invalid client_id: %s", client_id)
        return False
    if redirect_uri != settings.redirect_uri:
        logger.info("/authorize invalid redirect_uri: %s", redirect_uri)
        return False
    return True
