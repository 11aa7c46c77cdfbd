"""
Identity verification platform port.
The orchestrator only needs a polled capability interface; the platform's event stream is
drained elsewhere (see deltachat_platform.DeltaChatPlatform).
"""
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class InviteArtifact:
    """Invite link plus the rendered scannable code (SVG) for a channel."""

    link: str
    svg: str


@dataclass(frozen=True)
class Identity:
    ref: int
    name: str
    address: str


class VerificationPlatform(Protocol):
    """Channel creation, invite artifacts and membership queries on the messaging platform."""

    @property
    def self_identity(self) -> int:
        """Identity ref of the bot itself (always a member of its own channels)."""
        ...

    def create_channel(self, name: str) -> int:
        """Create a protected group and return its channel id."""
        ...

    def get_invite(self, channel_ref: int) -> InviteArtifact:
        ...

    def list_members(self, channel_ref: int) -> list[int]:
        ...

    def send_disposal_notice(self, channel_ref: int, text: str) -> None:
        ...

    def resolve_identity(self, identity_ref: int) -> Identity:
        ...
