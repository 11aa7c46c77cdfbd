"""
RSA key for signing identity assertions (the access_token returned by /token).
Loaded from a PEM file, or generated and persisted on first start; no key material in code.
"""
import base64
import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
KID = "login-bot-key"


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_or_create_signing_key(path: str | None) -> RSAPrivateKey:
    """Load RSA private key from path, or generate one (and save it when path is set)."""
    if path:
        p = Path(path)
        if p.exists():
            try:
                return serialization.load_pem_private_key(p.read_bytes(), password=None)
            except ValueError as e:
                logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = generate_private_key(public_exponent=65537, key_size=_KEY_BITS)
    if path:
        try:
            Path(path).write_bytes(_serialize_private(key))
            Path(path).chmod(0o600)
            logger.info("Generated and saved signing key to %s", path)
        except OSError as e:
            logger.warning("Could not save signing key to %s: %s", path, e)
    return key


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key, kid: str = KID) -> dict:
    """Export cryptography RSA public key to JWK with given kid."""
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


class SigningKey:
    def __init__(self, private_key: RSAPrivateKey, kid: str = KID):
        self.private_key = private_key
        self.kid = kid

    @classmethod
    def from_path(cls, path: str | None) -> "SigningKey":
        return cls(load_or_create_signing_key(path))

    @property
    def public_key(self):
        return self.private_key.public_key()

    def jwks(self) -> dict:
        return {"keys": [public_key_to_jwk(self.public_key, self.kid)]}
