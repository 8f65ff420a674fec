"""Events a ``ChatSession`` reports to its owner (usually a UI)."""

from dataclasses import dataclass
from typing import List, Optional, Union

from p2pchat.file_transfer import ReceivedFile
from p2pchat.mesh.groups import Group


@dataclass(frozen=True)
class MessageReceived:
    """A text message, direct or in a group.

    ``sender`` is the peer that wrote it, which for relayed group messages
    differs from the peer that delivered it (``via``).
    """

    sender: str
    content: str
    timestamp: int
    group_id: Optional[str] = None
    message_id: Optional[str] = None
    via: Optional[str] = None


@dataclass(frozen=True)
class TypingChanged:
    peer_id: str
    is_typing: bool


@dataclass(frozen=True)
class FileReceived:
    file: ReceivedFile


@dataclass(frozen=True)
class GroupInvitationReceived:
    group: Group
    invited_by: str


@dataclass(frozen=True)
class MembersJoined:
    group_id: str
    peer_ids: List[str]


@dataclass(frozen=True)
class ConnectivityChanged:
    peer_id: str
    connected: bool


@dataclass(frozen=True)
class PeerPresenceChanged:
    peer_id: str
    online: bool


@dataclass(frozen=True)
class GroupDissolved:
    group: Group


ChatEvent = Union[
    MessageReceived,
    TypingChanged,
    FileReceived,
    GroupInvitationReceived,
    MembersJoined,
    ConnectivityChanged,
    PeerPresenceChanged,
    GroupDissolved,
]
