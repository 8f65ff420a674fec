"""Native WebRTC capability used by the negotiation engine.

The engine never touches ``aiortc`` directly. It drives a ``Transport``, which
exposes just the operations negotiation needs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from p2pchat.protocol import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

# Label and ordering used by every chat data channel
DATA_CHANNEL_LABEL = "chat"


class Transport(ABC):
    """One native peer connection.

    Callbacks are assigned by the owner after construction:

    Attributes:
        on_datachannel: Called with a channel opened by the remote side.
        on_ice_candidate: Coroutine called with each locally gathered
            candidate when the stack trickles them.
        on_ice_state_change: Coroutine called with the new ICE connection
            state string ("new", "checking", "connected", "completed",
            "failed", "disconnected" or "closed").
    """

    def __init__(self):
        self.on_datachannel: Optional[Callable[[Any], None]] = None
        self.on_ice_candidate: Optional[
            Callable[[IceCandidate], Awaitable[None]]
        ] = None
        self.on_ice_state_change: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    @abstractmethod
    def ice_connection_state(self) -> str:
        """Current ICE connection state."""

    @abstractmethod
    async def create_local_offer(self) -> SessionDescription:
        """Create an offer and apply it as the local description."""

    @abstractmethod
    async def create_local_answer(self) -> SessionDescription:
        """Create an answer and apply it as the local description."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        """Apply the remote offer or answer."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Add a remote ICE candidate. Requires the remote description."""

    @abstractmethod
    def open_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> Any:
        """Create an ordered data channel and return it."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection and every channel on it."""


class AiortcTransport(Transport):
    """``Transport`` backed by an aiortc ``RTCPeerConnection``.

    aiortc gathers ICE candidates during ``setLocalDescription`` and embeds
    them in the SDP, so ``on_ice_candidate`` is never called here. Remote
    candidates trickled by browser peers are still accepted.

    Args:
        ice_servers: STUN server URLs, e.g. ``"stun:stun.l.google.com:19302"``.
    """

    def __init__(self, ice_servers: Optional[List[str]] = None):
        super().__init__()

        if ice_servers:
            config = RTCConfiguration(
                iceServers=[RTCIceServer(urls=url) for url in ice_servers]
            )
            self._pc = RTCPeerConnection(configuration=config)
        else:
            logger.warning("No ICE servers configured, using default RTCPeerConnection")
            self._pc = RTCPeerConnection()

        @self._pc.on("datachannel")
        def on_datachannel(channel):
            if self.on_datachannel is not None:
                self.on_datachannel(channel)

        @self._pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            if self.on_ice_state_change is not None:
                await self.on_ice_state_change(self._pc.iceConnectionState)

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState

    def _local_description(self) -> SessionDescription:
        local = self._pc.localDescription
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def create_local_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def create_local_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:") :]
        if not sdp.strip():
            # End-of-candidates marker
            return

        rtc_candidate = candidate_from_sdp(sdp)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(rtc_candidate)

    def open_data_channel(self, label: str = DATA_CHANNEL_LABEL) -> Any:
        return self._pc.createDataChannel(label, ordered=True)

    async def close(self) -> None:
        await self._pc.close()
