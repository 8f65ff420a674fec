"""Tests for signaling and data channel envelope encoding."""

import json

import pytest

from p2pchat.errors import ProtocolError
from p2pchat.protocol import (
    AnswerSignal,
    FileChunk,
    FileEnd,
    FileStart,
    GroupInvitation,
    IceCandidate,
    IceCandidateSignal,
    MemberJoined,
    OfferSignal,
    PeerOfflineSignal,
    PeerOnlineSignal,
    SessionDescription,
    SignalType,
    TextMessage,
    TypingIndicator,
    build_signal,
    decode_envelope,
    decode_signal,
    encode_envelope,
    encode_signal,
    envelope_to_dict,
    is_relayable,
)


class TestDecodeSignal:
    """Tests for parsing signaling envelopes."""

    def test_offer(self):
        """An OFFER decodes into an OfferSignal with its description."""
        raw = json.dumps(
            {
                "type": "OFFER",
                "from": "peer_a",
                "to": "peer_b",
                "payload": {"type": "offer", "sdp": "v=0"},
                "timestamp": 1700000000000,
            }
        )
        signal = decode_signal(raw)
        assert isinstance(signal, OfferSignal)
        assert signal.from_peer == "peer_a"
        assert signal.to_peer == "peer_b"
        assert signal.description == SessionDescription(type="offer", sdp="v=0")
        assert signal.timestamp == 1700000000000

    def test_ice_candidate_browser_keys(self):
        """Browser candidate keys sdpMid/sdpMLineIndex are mapped."""
        signal = decode_signal(
            {
                "type": "ICE_CANDIDATE",
                "from": "peer_a",
                "to": "peer_b",
                "payload": {
                    "candidate": "candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host",
                    "sdpMid": "0",
                    "sdpMLineIndex": 0,
                },
            }
        )
        assert isinstance(signal, IceCandidateSignal)
        assert signal.candidate.sdp_mid == "0"
        assert signal.candidate.sdp_mline_index == 0

    def test_presence_without_recipient(self):
        """Presence signals have no recipient and no payload."""
        online = decode_signal({"type": "PEER_ONLINE", "from": "peer_a"})
        offline = decode_signal({"type": "PEER_OFFLINE", "from": "peer_a"})
        assert isinstance(online, PeerOnlineSignal)
        assert isinstance(offline, PeerOfflineSignal)
        assert online.to_peer is None

    def test_unknown_type_raises(self):
        with pytest.raises(ProtocolError, match="Unknown signal type"):
            decode_signal({"type": "HELLO", "from": "peer_a"})

    def test_invalid_json_raises(self):
        with pytest.raises(ProtocolError, match="Invalid JSON"):
            decode_signal("{not json")

    def test_missing_from_raises(self):
        with pytest.raises(ProtocolError, match="from"):
            decode_signal({"type": "PEER_ONLINE"})

    def test_offer_without_recipient_raises(self):
        with pytest.raises(ProtocolError, match="recipient"):
            decode_signal(
                {
                    "type": "OFFER",
                    "from": "peer_a",
                    "payload": {"type": "offer", "sdp": "v=0"},
                }
            )

    def test_answer_payload_must_be_answer(self):
        with pytest.raises(ProtocolError):
            build_signal(
                SignalType.ANSWER, "peer_a", "peer_b", {"type": "offer", "sdp": "v=0"}
            )


class TestEncodeSignal:
    """Tests for serializing signals."""

    def test_offer_wire_shape(self):
        signal = OfferSignal(
            "peer_a", "peer_b", SessionDescription("offer", "v=0"), timestamp=5
        )
        data = json.loads(encode_signal(signal))
        assert data == {
            "type": "OFFER",
            "from": "peer_a",
            "to": "peer_b",
            "payload": {"type": "offer", "sdp": "v=0"},
            "timestamp": 5,
        }

    def test_broadcast_omits_to_and_payload(self):
        data = json.loads(encode_signal(PeerOnlineSignal("peer_a", timestamp=1)))
        assert "to" not in data
        assert "payload" not in data

    def test_answer_survives_encoding(self):
        signal = AnswerSignal("peer_b", "peer_a", SessionDescription("answer", "v=0 x"))
        assert decode_signal(encode_signal(signal)) == signal


class TestDecodeEnvelope:
    """Tests for parsing data channel envelopes."""

    def test_direct_text(self):
        envelope = decode_envelope({"type": "text", "content": "hi", "timestamp": 3})
        assert envelope == TextMessage(content="hi", timestamp=3)
        assert not is_relayable(envelope)

    def test_group_text_is_relayable(self):
        envelope = decode_envelope(
            {
                "type": "text",
                "content": "hi",
                "timestamp": 3,
                "groupId": "group_1_abcdef",
                "messageId": "group_1_abcdef_2_xyz",
                "originalSender": "peer_a",
            }
        )
        assert envelope.group_id == "group_1_abcdef"
        assert envelope.original_sender == "peer_a"
        assert is_relayable(envelope)

    def test_typing(self):
        envelope = decode_envelope({"type": "typing", "isTyping": True})
        assert isinstance(envelope, TypingIndicator)
        assert envelope.is_typing is True

    def test_browser_file_chunk_without_name(self):
        """Chunks from browser peers carry only index, data and group."""
        envelope = decode_envelope({"type": "file-chunk", "chunkIndex": 2, "data": "QUJD"})
        assert envelope == FileChunk(chunk_index=2, data="QUJD")

    def test_file_start_requires_total_chunks(self):
        with pytest.raises(ProtocolError, match="totalChunks"):
            decode_envelope(
                {
                    "type": "file-start",
                    "fileName": "a.txt",
                    "fileSize": 3,
                    "timestamp": 1,
                }
            )

    def test_bool_is_not_a_chunk_index(self):
        with pytest.raises(ProtocolError, match="chunkIndex"):
            decode_envelope({"type": "file-chunk", "chunkIndex": True, "data": ""})

    def test_member_joined_content_is_json_string(self):
        envelope = decode_envelope(
            {
                "type": "member-joined",
                "content": json.dumps(
                    {"groupId": "group_1_abcdef", "newMemberPeerIds": ["peer_c"]}
                ),
                "groupId": "group_1_abcdef",
                "messageId": "group_1_abcdef_9_abc",
                "originalSender": "peer_c",
            }
        )
        assert isinstance(envelope, MemberJoined)
        assert envelope.new_member_peer_ids == ["peer_c"]
        assert is_relayable(envelope)

    def test_unknown_type_raises(self):
        with pytest.raises(ProtocolError, match="Unknown envelope type"):
            decode_envelope({"type": "video"})

    def test_non_object_raises(self):
        with pytest.raises(ProtocolError, match="JSON object"):
            decode_envelope("[1, 2]")


class TestEncodeEnvelope:
    """Tests for serializing data channel envelopes."""

    def test_optional_fields_omitted(self):
        data = envelope_to_dict(TextMessage(content="hi", timestamp=1))
        assert data == {"type": "text", "content": "hi", "timestamp": 1}

    def test_file_start_camel_case(self):
        data = envelope_to_dict(
            FileStart(
                file_name="a.png",
                file_type="image/png",
                file_size=10,
                total_chunks=1,
                timestamp=7,
                group_id="group_1_abcdef",
            )
        )
        assert data["fileName"] == "a.png"
        assert data["fileType"] == "image/png"
        assert data["totalChunks"] == 1
        assert data["groupId"] == "group_1_abcdef"

    def test_invitation_member_count_defaults_to_list_length(self):
        data = envelope_to_dict(
            GroupInvitation(
                group_id="group_1_abcdef",
                group_name="team",
                member_peer_ids=["peer_a", "peer_b", "peer_c"],
                created_by="peer_a",
            )
        )
        assert data["memberCount"] == 3

    def test_member_joined_nests_content(self):
        raw = encode_envelope(
            MemberJoined(
                group_id="group_1_abcdef",
                new_member_peer_ids=["peer_c"],
                message_id="m1",
                original_sender="peer_c",
            )
        )
        data = json.loads(raw)
        assert json.loads(data["content"]) == {
            "groupId": "group_1_abcdef",
            "newMemberPeerIds": ["peer_c"],
        }
        assert decode_envelope(raw).new_member_peer_ids == ["peer_c"]

    def test_file_end_keeps_transfer_key(self):
        envelope = FileEnd(file_name="a.txt", timestamp=42)
        assert decode_envelope(encode_envelope(envelope)) == envelope


class TestIceCandidate:
    def test_from_dict_requires_candidate(self):
        with pytest.raises(ProtocolError):
            IceCandidate.from_dict({"sdpMid": "0"})

    def test_hashable_for_dedup(self):
        a = IceCandidate("candidate:1", "0", 0)
        b = IceCandidate("candidate:1", "0", 0)
        assert len({a, b}) == 1
