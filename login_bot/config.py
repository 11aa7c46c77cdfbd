"""
Login bot configuration.
Values come from the environment, optionally layered over a TOML file (LOGIN_BOT_CONFIG).
Credentials are never hardcoded; the settings object is built once and passed to create_app.
"""
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path

# Sessions are short on purpose: the login page has no logout button, so on a shared
# computer a still-valid session would log the next person in without a new QR scan.
SESSION_TTL_SECONDS = 15 * 60

# Authorization code validity window, enforced at /token even if the row still exists
CODE_TTL_SECONDS = 60

# Declared lifetime of the identity assertion; the relying party consumes it immediately
ASSERTION_EXPIRES_IN = 1

DISPOSAL_NOTICE = (
    "This chat is a vehicle to connect you with me, the loginbot. "
    "You can leave this chat and delete it now."
)

SESSION_COOKIE_NAME = "login_bot_session"

_PACKAGE_STATIC_DIR = str(Path(__file__).parent / "static")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    client_id: str
    client_secret: str | None
    redirect_uri: str
    # Optional bcrypt hash of the client secret; takes precedence over client_secret
    client_secret_hash: str | None = None
    issuer: str = "http://127.0.0.1:3000"
    listen_addr: str = "127.0.0.1:3000"
    database_url: str = "sqlite:///./login_bot_oauth.db"
    # Delta Chat account used by the bot
    email: str | None = None
    password: str | None = None
    deltachat_db: str = "./deltachat-accounts"
    static_dir: str = _PACKAGE_STATIC_DIR
    log_level: str = "WARNING"
    enable_request_logging: bool = False
    session_ttl_seconds: int = SESSION_TTL_SECONDS
    code_ttl_seconds: int = CODE_TTL_SECONDS
    assertion_expires_in: int = ASSERTION_EXPIRES_IN
    send_disposal_notice: bool = True
    disposal_notice: str = DISPOSAL_NOTICE
    signing_key_path: str = ".login_bot_signing_key.pem"
    rate_limit_token_per_minute: int = 60
    secure_cookies: bool = False

    @property
    def host(self) -> str:
        return self.listen_addr.rsplit(":", 1)[0]

    @property
    def port(self) -> int:
        return int(self.listen_addr.rsplit(":", 1)[1])


def _from_toml(path: str) -> dict:
    """Flatten the bot's config.toml (top-level keys plus an [oauth] table) into Settings fields."""
    with open(path, "rb") as f:
        data = tomllib.load(f)
    values: dict = {}
    oauth = data.pop("oauth", {}) or {}
    for key in ("client_id", "client_secret", "client_secret_hash", "redirect_uri"):
        if key in oauth:
            values[key] = oauth[key]
    renames = {"oauth_db": "database_url"}
    for key, value in data.items():
        values[renames.get(key, key)] = value
    return values


# Environment variable -> Settings field
_ENV = {
    "OAUTH_CLIENT_ID": "client_id",
    "OAUTH_CLIENT_SECRET": "client_secret",
    "OAUTH_CLIENT_SECRET_HASH": "client_secret_hash",
    "OAUTH_REDIRECT_URI": "redirect_uri",
    "OAUTH_ISSUER": "issuer",
    "OAUTH_DB": "database_url",
    "LOGIN_BOT_LISTEN_ADDR": "listen_addr",
    "LOGIN_BOT_EMAIL": "email",
    "LOGIN_BOT_PASSWORD": "password",
    "LOGIN_BOT_DELTACHAT_DB": "deltachat_db",
    "LOGIN_BOT_STATIC_DIR": "static_dir",
    "LOG_LEVEL": "log_level",
    "ENABLE_REQUEST_LOGGING": "enable_request_logging",
    "SESSION_TTL_SECONDS": "session_ttl_seconds",
    "CODE_TTL_SECONDS": "code_ttl_seconds",
    "ASSERTION_EXPIRES_IN": "assertion_expires_in",
    "SEND_DISPOSAL_NOTICE": "send_disposal_notice",
    "LOGIN_BOT_SIGNING_KEY_PATH": "signing_key_path",
    "OAUTH_RATE_LIMIT_TOKEN_PER_MINUTE": "rate_limit_token_per_minute",
    "LOGIN_BOT_SECURE_COOKIES": "secure_cookies",
}

_INT_FIELDS = {
    "session_ttl_seconds",
    "code_ttl_seconds",
    "assertion_expires_in",
    "rate_limit_token_per_minute",
}
_BOOL_FIELDS = {"enable_request_logging", "send_disposal_notice", "secure_cookies"}


def load_settings(config_path: str | None = None) -> Settings:
    """
    Build Settings from an optional TOML file and the environment (environment wins).
    Raises ValueError when the OAuth client is not configured.
    """
    values: dict = {}
    config_path = config_path or os.environ.get("LOGIN_BOT_CONFIG")
    if config_path:
        values.update(_from_toml(config_path))
    for env_name, field_name in _ENV.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    for name in _INT_FIELDS & values.keys():
        values[name] = int(values[name])
    for name in _BOOL_FIELDS & values.keys():
        values[name] = _as_bool(values[name])
    if "issuer" in values:
        values["issuer"] = values["issuer"].rstrip("/")
    db = values.get("database_url")
    # A plain file path (as in the bot's config.toml) means a SQLite file
    if db and "://" not in db:
        values["database_url"] = f"sqlite:///{db}"

    missing = [k for k in ("client_id", "redirect_uri") if not values.get(k)]
    if missing:
        raise ValueError(f"Missing OAuth configuration: {', '.join(missing)}")
    if not values.get("client_secret") and not values.get("client_secret_hash"):
        raise ValueError("Missing OAuth configuration: client_secret or client_secret_hash")

    known = Settings.__dataclass_fields__.keys()
    return Settings(**{k: v for k, v in values.items() if k in known})
