"""
Pytest configuration for login_bot. File-backed SQLite in tmp_path (real connections, real
locking) and an in-memory stand-in for the Delta Chat platform.
"""
import pytest
from fastapi.testclient import TestClient

from login_bot.code_store import CodeStore
from login_bot.config import Settings
from login_bot.database import init_db, make_engine, make_session_factory
from login_bot.errors import StoreUnavailable
from login_bot.keys import SigningKey, load_or_create_signing_key
from login_bot.main import create_app
from login_bot.platform import Identity, InviteArtifact
from login_bot.sessions import SessionStore

CLIENT_ID = "discourse"
CLIENT_SECRET = "s3cret-value"
REDIRECT_URI = "http://127.0.0.1:4200/auth/oauth2_basic/callback"
SELF_ID = 1


class FakePlatform:
    """Delta Chat stand-in: groups are lists of contact ids, the bot (contact 1) is always in them."""

    self_identity = SELF_ID

    def __init__(self):
        self.channels: dict[int, list[int]] = {}
        self.channel_names: list[str] = []
        self.contacts: dict[int, tuple[str, str]] = {}
        self.notices: list[tuple[int, str]] = []
        self.list_calls = 0
        self.fail_notices = False
        self._next_channel = 10

    def create_channel(self, name: str) -> int:
        channel = self._next_channel
        self._next_channel += 1
        self.channels[channel] = [SELF_ID]
        self.channel_names.append(name)
        return channel

    def get_invite(self, channel_ref: int) -> InviteArtifact:
        if channel_ref not in self.channels:
            raise StoreUnavailable(f"unknown chat {channel_ref}")
        return InviteArtifact(
            link=f"https://i.delta.chat/#ABCDEF&g=LoginBot&x=grp{channel_ref}",
            svg=f'<svg xmlns="http://www.w3.org/2000/svg"><title>{channel_ref}</title></svg>',
        )

    def list_members(self, channel_ref: int) -> list[int]:
        self.list_calls += 1
        return list(self.channels[channel_ref])

    def send_disposal_notice(self, channel_ref: int, text: str) -> None:
        if self.fail_notices:
            raise StoreUnavailable("smtp down")
        self.notices.append((channel_ref, text))

    def resolve_identity(self, identity_ref: int) -> Identity:
        name, address = self.contacts[identity_ref]
        return Identity(ref=identity_ref, name=name, address=address)

    # test helpers
    def add_contact(self, contact_id: int, name: str, address: str) -> int:
        self.contacts[contact_id] = (name, address)
        return contact_id

    def join(self, channel_ref: int, contact_id: int) -> None:
        self.channels[channel_ref].append(contact_id)

    def only_channel(self) -> int:
        assert len(self.channels) == 1
        return next(iter(self.channels))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uri=REDIRECT_URI,
        database_url=f"sqlite:///{tmp_path / 'oauth.db'}",
        signing_key_path=str(tmp_path / "key.pem"),
        issuer="http://testserver",
    )


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def code_store(engine, settings):
    return CodeStore(make_session_factory(engine), settings.code_ttl_seconds)


@pytest.fixture
def sessions(settings):
    return SessionStore(settings.session_ttl_seconds)


@pytest.fixture(scope="session")
def signing_key():
    # One RSA key for the whole run; generation is slow
    return SigningKey(load_or_create_signing_key(None))


@pytest.fixture
def app(settings, platform, engine, signing_key):
    return create_app(settings, platform=platform, engine=engine, signing_key=signing_key)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def services(app):
    return app.state.services
