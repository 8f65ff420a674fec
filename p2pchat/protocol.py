"""Wire formats for p2pchat.

Two JSON envelopes travel between peers: signaling messages over the relay
server, and application messages over the WebRTC data channel. Both are
decoded into closed sets of frozen dataclasses so that handlers can dispatch
on the Python type instead of on a ``type`` string.

Signaling Envelope
------------------

Sent over the relay server, addressed per peer id (``to``) or broadcast on the
presence topic (``to`` omitted)::

    {
      "type": "OFFER" | "ANSWER" | "ICE_CANDIDATE" | "PEER_ONLINE" | "PEER_OFFLINE",
      "from": "<peer id>",
      "to": "<peer id>",                 # omitted for broadcasts
      "payload": {...},                  # session description or ICE candidate
      "timestamp": <epoch-ms>
    }

**OFFER / ANSWER**
    payload: ``{"type": "offer" | "answer", "sdp": "<sdp>"}``

**ICE_CANDIDATE**
    payload: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``

**PEER_ONLINE / PEER_OFFLINE**
    no payload; presence of ``from``.

Data Channel Envelope
---------------------

Sent over an open data channel as a JSON text frame::

    {
      "type": "text" | "typing" | "file-start" | "file-chunk" | "file-end"
              | "group-invitation" | "member-joined",
      ...type specific fields...,
      "timestamp": <epoch-ms>,
      "groupId": "<group id>",           # group traffic only
      "messageId": "<message id>",       # relayable group traffic only
      "originalSender": "<peer id>"      # relayable group traffic only
    }

**text**
    ``content``: message text.

**typing**
    ``isTyping``: bool.

**file-start**
    ``fileName``, ``fileType`` (MIME), ``fileSize`` (bytes), ``totalChunks``.

**file-chunk**
    ``chunkIndex``, ``data`` (a slice of the base64 encoded file). Also carries
    ``fileName`` and ``timestamp`` of the matching ``file-start`` when sent by
    p2pchat; browser peers omit them.

**file-end**
    ``fileName`` (and ``timestamp`` when sent by p2pchat).

**group-invitation**
    ``groupName``, ``memberPeerIds`` (all members including the inviter),
    ``memberCount``, ``createdBy``, ``creatorUsername``.

**member-joined**
    ``content``: JSON string ``{"groupId": ..., "newMemberPeerIds": [...]}``.
    Sent with ``messageId``/``originalSender`` so it is relayed like a group
    text message.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from p2pchat.errors import ProtocolError
from p2pchat.ids import now_ms


# =============================================================================
# Signaling
# =============================================================================


class SignalType(str, Enum):
    """Kinds of signal carried by the relay server."""

    OFFER = "OFFER"
    ANSWER = "ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"
    PEER_ONLINE = "PEER_ONLINE"
    PEER_OFFLINE = "PEER_OFFLINE"


@dataclass(frozen=True)
class SessionDescription:
    """An SDP offer or answer."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Any) -> "SessionDescription":
        if not isinstance(data, dict):
            raise ProtocolError(f"Session description must be an object, got {data!r}")
        sdp_type = data.get("type")
        sdp = data.get("sdp")
        if sdp_type not in ("offer", "answer") or not isinstance(sdp, str):
            raise ProtocolError(f"Invalid session description: {data!r}")
        return cls(type=sdp_type, sdp=sdp)


@dataclass(frozen=True)
class IceCandidate:
    """A remote ICE candidate in browser (``RTCIceCandidateInit``) form."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "IceCandidate":
        if not isinstance(data, dict) or not isinstance(data.get("candidate"), str):
            raise ProtocolError(f"Invalid ICE candidate: {data!r}")
        return cls(
            candidate=data["candidate"],
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=data.get("sdpMLineIndex"),
        )


@dataclass(frozen=True)
class OfferSignal:
    from_peer: str
    to_peer: str
    description: SessionDescription
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class AnswerSignal:
    from_peer: str
    to_peer: str
    description: SessionDescription
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class IceCandidateSignal:
    from_peer: str
    to_peer: str
    candidate: IceCandidate
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class PeerOnlineSignal:
    from_peer: str
    to_peer: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class PeerOfflineSignal:
    from_peer: str
    to_peer: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)


Signal = Union[
    OfferSignal, AnswerSignal, IceCandidateSignal, PeerOnlineSignal, PeerOfflineSignal
]


def build_signal(
    kind: SignalType,
    from_peer: str,
    to_peer: Optional[str],
    payload: Optional[Dict[str, Any]] = None,
    timestamp: Optional[int] = None,
) -> Signal:
    """Build a typed signal from its wire components.

    Raises:
        ProtocolError: If the payload does not fit the signal kind.
    """
    timestamp = timestamp if timestamp is not None else now_ms()
    kind = SignalType(kind)

    if kind in (SignalType.OFFER, SignalType.ANSWER, SignalType.ICE_CANDIDATE):
        if not to_peer:
            raise ProtocolError(f"{kind.value} signal requires a recipient")

    if kind == SignalType.OFFER:
        description = SessionDescription.from_dict(payload)
        if description.type != "offer":
            raise ProtocolError("OFFER payload must carry an offer description")
        return OfferSignal(from_peer, to_peer, description, timestamp)
    elif kind == SignalType.ANSWER:
        description = SessionDescription.from_dict(payload)
        if description.type != "answer":
            raise ProtocolError("ANSWER payload must carry an answer description")
        return AnswerSignal(from_peer, to_peer, description, timestamp)
    elif kind == SignalType.ICE_CANDIDATE:
        return IceCandidateSignal(
            from_peer, to_peer, IceCandidate.from_dict(payload), timestamp
        )
    elif kind == SignalType.PEER_ONLINE:
        return PeerOnlineSignal(from_peer, to_peer, timestamp)
    elif kind == SignalType.PEER_OFFLINE:
        return PeerOfflineSignal(from_peer, to_peer, timestamp)
    raise ProtocolError(f"Unhandled signal kind: {kind}")


def signal_to_dict(signal: Signal) -> Dict[str, Any]:
    """Convert a typed signal to its wire dictionary."""
    if isinstance(signal, OfferSignal):
        kind, payload = SignalType.OFFER, signal.description.to_dict()
    elif isinstance(signal, AnswerSignal):
        kind, payload = SignalType.ANSWER, signal.description.to_dict()
    elif isinstance(signal, IceCandidateSignal):
        kind, payload = SignalType.ICE_CANDIDATE, signal.candidate.to_dict()
    elif isinstance(signal, PeerOnlineSignal):
        kind, payload = SignalType.PEER_ONLINE, None
    elif isinstance(signal, PeerOfflineSignal):
        kind, payload = SignalType.PEER_OFFLINE, None
    else:
        raise ProtocolError(f"Not a signal: {signal!r}")

    data: Dict[str, Any] = {
        "type": kind.value,
        "from": signal.from_peer,
        "timestamp": signal.timestamp,
    }
    if signal.to_peer:
        data["to"] = signal.to_peer
    if payload is not None:
        data["payload"] = payload
    return data


def encode_signal(signal: Signal) -> str:
    return json.dumps(signal_to_dict(signal))


def decode_signal(raw: Union[str, bytes, Dict[str, Any]]) -> Signal:
    """Parse a signaling envelope.

    Args:
        raw: JSON text or an already parsed dictionary.

    Returns:
        The typed signal.

    Raises:
        ProtocolError: On invalid JSON, unknown type or missing fields.
    """
    data = _load_object(raw)

    try:
        kind = SignalType(data.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown signal type: {data.get('type')!r}")

    from_peer = data.get("from")
    if not isinstance(from_peer, str) or not from_peer:
        raise ProtocolError("Signal is missing 'from'")

    timestamp = data.get("timestamp")
    if not isinstance(timestamp, int):
        timestamp = None

    return build_signal(kind, from_peer, data.get("to"), data.get("payload"), timestamp)


# =============================================================================
# Data channel envelopes
# =============================================================================

MSG_TEXT = "text"
MSG_TYPING = "typing"
MSG_FILE_START = "file-start"
MSG_FILE_CHUNK = "file-chunk"
MSG_FILE_END = "file-end"
MSG_GROUP_INVITATION = "group-invitation"
MSG_MEMBER_JOINED = "member-joined"


@dataclass(frozen=True)
class TextMessage:
    content: str
    timestamp: int = field(default_factory=now_ms)
    group_id: Optional[str] = None
    message_id: Optional[str] = None
    original_sender: Optional[str] = None


@dataclass(frozen=True)
class TypingIndicator:
    is_typing: bool
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class FileStart:
    file_name: str
    file_type: str
    file_size: int
    total_chunks: int
    timestamp: int = field(default_factory=now_ms)
    group_id: Optional[str] = None


@dataclass(frozen=True)
class FileChunk:
    chunk_index: int
    data: str
    group_id: Optional[str] = None
    file_name: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class FileEnd:
    file_name: str
    group_id: Optional[str] = None
    timestamp: Optional[int] = None


@dataclass(frozen=True)
class GroupInvitation:
    group_id: str
    group_name: str
    member_peer_ids: List[str]
    created_by: str
    creator_username: Optional[str] = None
    member_count: Optional[int] = None
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class MemberJoined:
    group_id: str
    new_member_peer_ids: List[str]
    message_id: Optional[str] = None
    original_sender: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)


Envelope = Union[
    TextMessage,
    TypingIndicator,
    FileStart,
    FileChunk,
    FileEnd,
    GroupInvitation,
    MemberJoined,
]


def _load_object(raw: Union[str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}")
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _require(data: Dict[str, Any], key: str, expected: type) -> Any:
    value = data.get(key)
    if not isinstance(value, expected) or isinstance(value, bool) and expected is int:
        raise ProtocolError(
            f"'{data.get('type')}' envelope has invalid '{key}': {value!r}"
        )
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _timestamp(data: Dict[str, Any]) -> int:
    value = _optional_int(data, "timestamp")
    return value if value is not None else now_ms()


def envelope_to_dict(envelope: Envelope) -> Dict[str, Any]:
    """Convert an envelope to its wire dictionary (camelCase keys)."""
    if isinstance(envelope, TextMessage):
        data = {
            "type": MSG_TEXT,
            "content": envelope.content,
            "timestamp": envelope.timestamp,
            "groupId": envelope.group_id,
            "messageId": envelope.message_id,
            "originalSender": envelope.original_sender,
        }
    elif isinstance(envelope, TypingIndicator):
        data = {
            "type": MSG_TYPING,
            "isTyping": envelope.is_typing,
            "timestamp": envelope.timestamp,
        }
    elif isinstance(envelope, FileStart):
        data = {
            "type": MSG_FILE_START,
            "fileName": envelope.file_name,
            "fileType": envelope.file_type,
            "fileSize": envelope.file_size,
            "totalChunks": envelope.total_chunks,
            "timestamp": envelope.timestamp,
            "groupId": envelope.group_id,
        }
    elif isinstance(envelope, FileChunk):
        data = {
            "type": MSG_FILE_CHUNK,
            "chunkIndex": envelope.chunk_index,
            "data": envelope.data,
            "groupId": envelope.group_id,
            "fileName": envelope.file_name,
            "timestamp": envelope.timestamp,
        }
    elif isinstance(envelope, FileEnd):
        data = {
            "type": MSG_FILE_END,
            "fileName": envelope.file_name,
            "groupId": envelope.group_id,
            "timestamp": envelope.timestamp,
        }
    elif isinstance(envelope, GroupInvitation):
        data = {
            "type": MSG_GROUP_INVITATION,
            "groupId": envelope.group_id,
            "groupName": envelope.group_name,
            "memberPeerIds": list(envelope.member_peer_ids),
            "memberCount": (
                envelope.member_count
                if envelope.member_count is not None
                else len(envelope.member_peer_ids)
            ),
            "createdBy": envelope.created_by,
            "creatorUsername": envelope.creator_username,
            "timestamp": envelope.timestamp,
        }
    elif isinstance(envelope, MemberJoined):
        data = {
            "type": MSG_MEMBER_JOINED,
            "content": json.dumps(
                {
                    "groupId": envelope.group_id,
                    "newMemberPeerIds": list(envelope.new_member_peer_ids),
                }
            ),
            "timestamp": envelope.timestamp,
            "groupId": envelope.group_id,
            "messageId": envelope.message_id,
            "originalSender": envelope.original_sender,
        }
    else:
        raise ProtocolError(f"Not an envelope: {envelope!r}")

    # Optional fields are omitted rather than sent as null
    return {k: v for k, v in data.items() if v is not None}


def encode_envelope(envelope: Envelope) -> str:
    return json.dumps(envelope_to_dict(envelope))


def _decode_member_joined(data: Dict[str, Any]) -> MemberJoined:
    content = data.get("content")
    if isinstance(content, str):
        body = _load_object(content)
    elif isinstance(content, dict):
        body = content
    else:
        raise ProtocolError("'member-joined' envelope is missing 'content'")

    group_id = body.get("groupId") or data.get("groupId")
    new_ids = body.get("newMemberPeerIds")
    if not isinstance(group_id, str) or not isinstance(new_ids, list):
        raise ProtocolError(f"Invalid 'member-joined' content: {body!r}")
    if not all(isinstance(pid, str) for pid in new_ids):
        raise ProtocolError("'newMemberPeerIds' must be a list of strings")

    return MemberJoined(
        group_id=group_id,
        new_member_peer_ids=list(new_ids),
        message_id=_optional_str(data, "messageId"),
        original_sender=_optional_str(data, "originalSender"),
        timestamp=_timestamp(data),
    )


def decode_envelope(raw: Union[str, bytes, Dict[str, Any]]) -> Envelope:
    """Parse a data channel envelope.

    Raises:
        ProtocolError: On invalid JSON, unknown type or missing fields.
    """
    data = _load_object(raw)
    msg_type = data.get("type")

    if msg_type == MSG_TEXT:
        return TextMessage(
            content=_require(data, "content", str),
            timestamp=_timestamp(data),
            group_id=_optional_str(data, "groupId"),
            message_id=_optional_str(data, "messageId"),
            original_sender=_optional_str(data, "originalSender"),
        )
    elif msg_type == MSG_TYPING:
        return TypingIndicator(
            is_typing=bool(data.get("isTyping")), timestamp=_timestamp(data)
        )
    elif msg_type == MSG_FILE_START:
        return FileStart(
            file_name=_require(data, "fileName", str),
            file_type=_optional_str(data, "fileType") or "application/octet-stream",
            file_size=_require(data, "fileSize", int),
            total_chunks=_require(data, "totalChunks", int),
            timestamp=_require(data, "timestamp", int),
            group_id=_optional_str(data, "groupId"),
        )
    elif msg_type == MSG_FILE_CHUNK:
        return FileChunk(
            chunk_index=_require(data, "chunkIndex", int),
            data=_require(data, "data", str),
            group_id=_optional_str(data, "groupId"),
            file_name=_optional_str(data, "fileName"),
            timestamp=_optional_int(data, "timestamp"),
        )
    elif msg_type == MSG_FILE_END:
        return FileEnd(
            file_name=_require(data, "fileName", str),
            group_id=_optional_str(data, "groupId"),
            timestamp=_optional_int(data, "timestamp"),
        )
    elif msg_type == MSG_GROUP_INVITATION:
        members = _require(data, "memberPeerIds", list)
        if not all(isinstance(pid, str) for pid in members):
            raise ProtocolError("'memberPeerIds' must be a list of strings")
        return GroupInvitation(
            group_id=_require(data, "groupId", str),
            group_name=_optional_str(data, "groupName") or "",
            member_peer_ids=list(members),
            created_by=_require(data, "createdBy", str),
            creator_username=_optional_str(data, "creatorUsername"),
            member_count=_optional_int(data, "memberCount"),
            timestamp=_timestamp(data),
        )
    elif msg_type == MSG_MEMBER_JOINED:
        return _decode_member_joined(data)

    raise ProtocolError(f"Unknown envelope type: {msg_type!r}")


def is_relayable(envelope: Envelope) -> bool:
    """True for group traffic that goes through relay and dedup."""
    return (
        isinstance(envelope, (TextMessage, MemberJoined))
        and bool(envelope.group_id)
        and bool(envelope.message_id)
    )
