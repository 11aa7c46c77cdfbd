"""
Delta Chat implementation of the verification platform, over the deltachat-rpc-server JSON-RPC API.
Verification groups are protected (securejoin) groups; joining one by scanning its QR code proves
control of the e-mail address bound to the joining contact.
"""
import logging
import threading

from deltachat_rpc_client import Rpc
from deltachat_rpc_client.rpc import JsonRpcError

from login_bot.config import Settings
from login_bot.errors import StoreUnavailable
from login_bot.platform import Identity, InviteArtifact

logger = logging.getLogger(__name__)

# Delta Chat's fixed contact id for the account itself
CONTACT_ID_SELF = 1

_EVENT_THREAD_JOIN_TIMEOUT = 5

_EVENT_LEVELS = {
    "Error": logging.ERROR,
    "Warning": logging.WARNING,
    "Info": logging.INFO,
}


class DeltaChatPlatform:
    def __init__(self, settings: Settings, rpc: Rpc | None = None):
        self._settings = settings
        self._rpc = rpc if rpc is not None else Rpc(accounts_dir=settings.deltachat_db)
        self._account_id: int | None = None
        self._event_thread: threading.Thread | None = None
        self._stopping = threading.Event()

    @property
    def self_identity(self) -> int:
        return CONTACT_ID_SELF

    def _call(self, method: str, *args):
        if self._account_id is None:
            raise StoreUnavailable("Delta Chat account is not started")
        try:
            return getattr(self._rpc, method)(self._account_id, *args)
        except JsonRpcError as e:
            logger.error("deltachat %s failed: %s", method, e)
            raise StoreUnavailable(f"deltachat {method} failed") from e

    def start(self) -> None:
        """
        Start the RPC server, configure the bot account on first run and connect to the mail server.
        On failure the RPC server is shut down again before the error propagates.
        """
        self._rpc.start()
        try:
            self._connect()
        except Exception:
            logger.error("Delta Chat startup failed, stopping rpc server")
            self.close()
            raise

    def _connect(self) -> None:
        account_ids = self._rpc.get_all_account_ids()
        self._account_id = account_ids[0] if account_ids else self._rpc.add_account()

        if not self._rpc.is_configured(self._account_id):
            if not self._settings.email or not self._settings.password:
                raise ValueError("Delta Chat account is not configured and email/password are not set")
            logger.info("Configure deltachat account %s", self._settings.email)
            self._rpc.set_config(self._account_id, "addr", self._settings.email)
            self._rpc.set_config(self._account_id, "mail_pw", self._settings.password)
            self._rpc.set_config(self._account_id, "bot", "1")
            self._rpc.set_config(self._account_id, "e2ee_enabled", "1")
            self._rpc.configure(self._account_id)

        self._event_thread = threading.Thread(target=self._drain_events, name="deltachat-events", daemon=True)
        self._event_thread.start()
        self._rpc.start_io(self._account_id)

    def close(self) -> None:
        logger.info("Shutting down")
        self._stopping.set()
        if self._account_id is not None:
            try:
                self._rpc.stop_io(self._account_id)
            except JsonRpcError as e:
                logger.warning("deltachat stop_io failed: %s", e)
        self._rpc.close()
        if self._event_thread is not None and self._event_thread is not threading.current_thread():
            self._event_thread.join(timeout=_EVENT_THREAD_JOIN_TIMEOUT)
            if self._event_thread.is_alive():
                logger.warning("deltachat event thread did not stop within %ss", _EVENT_THREAD_JOIN_TIMEOUT)

    def _drain_events(self) -> None:
        """Log platform events at their own severity; membership is polled, never derived from events."""
        while not self._stopping.is_set():
            event = self._rpc.wait_for_event(self._account_id)
            if event is None:
                break
            kind = event.get("kind")
            level = _EVENT_LEVELS.get(kind)
            if level is not None:
                logger.log(level, "%s", event.get("msg"))
            else:
                logger.debug("%r", event)

    def create_channel(self, name: str) -> int:
        return self._call("create_group_chat", name, True)

    def get_invite(self, channel_ref: int) -> InviteArtifact:
        link, svg = self._call("get_chat_securejoin_qr_code_svg", channel_ref)
        return InviteArtifact(link=link, svg=svg)

    def list_members(self, channel_ref: int) -> list[int]:
        return list(self._call("get_chat_contacts", channel_ref))

    def send_disposal_notice(self, channel_ref: int, text: str) -> None:
        self._call("misc_send_text_message", channel_ref, text)

    def resolve_identity(self, identity_ref: int) -> Identity:
        contact = self._call("get_contact", identity_ref)
        return Identity(
            ref=identity_ref,
            name=contact.get("displayName") or contact.get("name") or "",
            address=contact.get("address") or "",
        )
