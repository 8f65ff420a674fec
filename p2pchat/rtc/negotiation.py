"""Per-peer WebRTC negotiation.

The engine owns one ``PeerConnection`` record per remote peer and drives it
through the offer/answer exchange in response to local intents
(``initiate``) and inbound signals (``handle_signal``). Signals for one peer
are handled under that peer's lock, so the remote description and queued ICE
candidates are always applied in arrival order.

State machine::

    NONE -> HAVE_LOCAL_OFFER -> STABLE        (we offered)
    NONE -> HAVE_REMOTE_OFFER -> STABLE       (we answered)
    any  -> CLOSED | FAILED                   (teardown, terminal)

When both peers offer at once (glare) the peer with the lexicographically
smaller id keeps its offer and the other yields: it discards its own
connection and answers the incoming offer.

A connection that has not reached ICE connectivity ``stale_after`` seconds
after it was created is stale. Its offer or answer was most likely lost in
signaling, so it is never reused: ``initiate`` replaces it with a fresh
offer, and an incoming offer replaces it even when we would otherwise keep
our own.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from p2pchat.protocol import (
    AnswerSignal,
    IceCandidate,
    IceCandidateSignal,
    OfferSignal,
    SessionDescription,
    SignalType,
)
from p2pchat.rtc.transport import DATA_CHANNEL_LABEL, Transport

logger = logging.getLogger(__name__)

HEALTHY_ICE_STATES = {"connected", "completed"}
FAILED_ICE_STATES = {"failed", "disconnected", "closed"}

STALE_AFTER = 10.0  # seconds


class NegotiationState(str, Enum):
    """Negotiation progress of a peer connection."""

    NONE = "none"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(eq=False)
class PeerConnection:
    """Negotiation record for one remote peer.

    Attributes:
        peer_id: Remote peer id.
        transport: Native connection driven by the engine.
        state: Negotiation state.
        ice_state: Last ICE connection state reported by the transport.
        remote_description_set: True once queued candidates have been drained
            after applying the remote description.
        remote_offer_sdp: SDP of the offer this connection answered, if any.
        known_candidates: Remote candidates already added to this connection.
        created_at: Engine clock reading when the record was created.
    """

    peer_id: str
    transport: Transport
    created_at: float = 0.0
    state: NegotiationState = NegotiationState.NONE
    ice_state: str = "new"
    remote_description_set: bool = False
    remote_offer_sdp: Optional[str] = None
    known_candidates: Set[IceCandidate] = field(default_factory=set)

    @property
    def is_closed(self) -> bool:
        return self.state in (NegotiationState.CLOSED, NegotiationState.FAILED)

    @property
    def is_healthy(self) -> bool:
        return not self.is_closed and self.ice_state in HEALTHY_ICE_STATES

    @property
    def is_live(self) -> bool:
        """Negotiating or connected, i.e. worth reusing."""
        return not self.is_closed and self.ice_state not in FAILED_ICE_STATES


class NegotiationEngine:
    """Drives offer/answer negotiation for every remote peer.

    Args:
        local_peer_id: Our peer id, used for glare tie-breaking.
        signaling: Object with ``async send(kind, to_peer_id, payload)``.
        transport_factory: Returns a fresh ``Transport`` per connection.
        on_data_channel: Called with ``(peer_id, channel)`` for every data
            channel, both the one opened locally and remote ones.
        on_teardown: Called with ``(peer_id, replaced)`` when a connection is
            discarded. ``replaced`` is True when a new connection to the same
            peer takes its place immediately (glare or restart on offer).
        on_connectivity: Called with ``(peer_id, connected)`` when ICE
            connectivity is established or lost.
        stale_after: Seconds after which a connection without ICE
            connectivity is considered stale.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        local_peer_id: str,
        signaling: Any,
        transport_factory: Callable[[], Transport],
        on_data_channel: Optional[Callable[[str, Any], None]] = None,
        on_teardown: Optional[Callable[[str, bool], None]] = None,
        on_connectivity: Optional[Callable[[str, bool], None]] = None,
        stale_after: float = STALE_AFTER,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.local_peer_id = local_peer_id
        self.signaling = signaling
        self.transport_factory = transport_factory
        self.on_data_channel = on_data_channel
        self.on_teardown = on_teardown
        self.on_connectivity = on_connectivity
        self.stale_after = stale_after
        self.clock = clock

        self._connections: Dict[str, PeerConnection] = {}
        self._pending_candidates: Dict[str, List[IceCandidate]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    # ===== Queries =====

    def get_connection(self, peer_id: str) -> Optional[PeerConnection]:
        return self._connections.get(peer_id)

    def get_state(self, peer_id: str) -> NegotiationState:
        conn = self._connections.get(peer_id)
        return conn.state if conn else NegotiationState.NONE

    def is_connected(self, peer_id: str) -> bool:
        conn = self._connections.get(peer_id)
        return conn is not None and conn.is_healthy

    def pending_candidates(self, peer_id: str) -> List[IceCandidate]:
        return list(self._pending_candidates.get(peer_id, []))

    def is_stale(self, conn: PeerConnection) -> bool:
        """True if ``conn`` never got ICE connectivity within ``stale_after``."""
        if conn.is_healthy:
            return False
        return self.clock() - conn.created_at >= self.stale_after

    @property
    def peer_ids(self) -> List[str]:
        return list(self._connections)

    # ===== Internals =====

    def _lock(self, peer_id: str) -> asyncio.Lock:
        lock = self._locks.get(peer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[peer_id] = lock
        return lock

    def _is_current(self, peer_id: str, conn: PeerConnection) -> bool:
        """False once ``conn`` has been torn down or replaced."""
        return self._connections.get(peer_id) is conn and not conn.is_closed

    def _create_connection(self, peer_id: str) -> PeerConnection:
        transport = self.transport_factory()
        conn = PeerConnection(
            peer_id=peer_id, transport=transport, created_at=self.clock()
        )

        def on_datachannel(channel):
            if not self._is_current(peer_id, conn):
                logger.debug(f"Ignoring data channel from stale connection to {peer_id}")
                return
            logger.info(f"Remote data channel '{channel.label}' from {peer_id}")
            if self.on_data_channel:
                self.on_data_channel(peer_id, channel)

        async def on_ice_candidate(candidate: IceCandidate):
            if not self._is_current(peer_id, conn):
                return
            await self.signaling.send(
                SignalType.ICE_CANDIDATE, peer_id, candidate.to_dict()
            )

        async def on_ice_state_change(state: str):
            await self._handle_ice_state(peer_id, conn, state)

        transport.on_datachannel = on_datachannel
        transport.on_ice_candidate = on_ice_candidate
        transport.on_ice_state_change = on_ice_state_change

        self._connections[peer_id] = conn
        return conn

    async def _teardown(
        self,
        peer_id: str,
        conn: PeerConnection,
        state: NegotiationState = NegotiationState.CLOSED,
        replaced: bool = False,
        keep_pending: bool = False,
    ) -> None:
        """Discard a connection. Safe to call more than once."""
        if conn.is_closed:
            return

        was_healthy = conn.is_healthy
        conn.state = state
        if self._connections.get(peer_id) is conn:
            del self._connections[peer_id]
        if not keep_pending:
            self._pending_candidates.pop(peer_id, None)

        logger.info(f"Tearing down connection to {peer_id} ({state.value})")

        if self.on_teardown:
            self.on_teardown(peer_id, replaced)
        if was_healthy and not replaced and self.on_connectivity:
            self.on_connectivity(peer_id, False)

        try:
            await conn.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {peer_id}: {e}")

    async def _add_candidate(
        self, peer_id: str, conn: PeerConnection, candidate: IceCandidate
    ) -> None:
        conn.known_candidates.add(candidate)
        try:
            await conn.transport.add_ice_candidate(candidate)
            logger.debug(f"Added ICE candidate from {peer_id}")
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate from {peer_id}: {e}")

    async def _drain_candidates(self, peer_id: str, conn: PeerConnection) -> None:
        """Apply candidates queued before the remote description, in order."""
        queued = self._pending_candidates.pop(peer_id, [])
        if queued:
            logger.debug(f"Draining {len(queued)} queued ICE candidate(s) for {peer_id}")
        for candidate in queued:
            if not self._is_current(peer_id, conn):
                return
            await self._add_candidate(peer_id, conn, candidate)
        conn.remote_description_set = True

    async def _handle_ice_state(
        self, peer_id: str, conn: PeerConnection, state: str
    ) -> None:
        if not self._is_current(peer_id, conn):
            logger.debug(f"Ignoring ICE state '{state}' from stale connection to {peer_id}")
            return

        previous = conn.ice_state
        logger.info(f"ICE state with {peer_id}: {state}")

        if state in HEALTHY_ICE_STATES:
            conn.ice_state = state
            if previous not in HEALTHY_ICE_STATES and self.on_connectivity:
                self.on_connectivity(peer_id, True)
        elif state in FAILED_ICE_STATES:
            logger.warning(f"Connection {state} with {peer_id}")
            conn.ice_state = state
            await self._teardown(
                peer_id,
                conn,
                state=(
                    NegotiationState.FAILED
                    if state == "failed"
                    else NegotiationState.CLOSED
                ),
            )
            if self.on_connectivity:
                self.on_connectivity(peer_id, False)
        else:
            conn.ice_state = state

    # ===== Local intents =====

    async def initiate(self, peer_id: str) -> Optional[PeerConnection]:
        """Start negotiating with a peer as the offerer.

        A live connection (negotiating or connected) is reused as is, unless
        it is stale.

        Args:
            peer_id: Remote peer id.

        Returns:
            The connection record, or None if the offer could not be produced
            or sent.
        """
        if peer_id == self.local_peer_id:
            raise ValueError("Cannot connect to self")

        async with self._lock(peer_id):
            conn = self._connections.get(peer_id)
            if conn is not None:
                if conn.is_live and not self.is_stale(conn):
                    logger.debug(
                        f"Reusing {conn.state.value} connection to {peer_id}"
                    )
                    return conn
                if conn.is_live:
                    logger.info(
                        f"Discarding stale {conn.state.value} connection to {peer_id}"
                    )
                await self._teardown(peer_id, conn)

            logger.info(f"Initiating connection to {peer_id}")
            conn = self._create_connection(peer_id)
            channel = conn.transport.open_data_channel(DATA_CHANNEL_LABEL)
            if self.on_data_channel:
                self.on_data_channel(peer_id, channel)

            try:
                offer = await conn.transport.create_local_offer()
            except Exception as e:
                logger.error(f"Failed to create offer for {peer_id}: {e}")
                await self._teardown(peer_id, conn, state=NegotiationState.FAILED)
                return None

            if not self._is_current(peer_id, conn):
                return None

            conn.state = NegotiationState.HAVE_LOCAL_OFFER
            sent = await self.signaling.send(SignalType.OFFER, peer_id, offer.to_dict())
            if sent is False:
                logger.error(f"Could not deliver offer to {peer_id}")
                await self._teardown(peer_id, conn, state=NegotiationState.FAILED)
                return None

            return conn

    async def close(self, peer_id: str) -> None:
        """Tear down the connection to a peer, if any."""
        conn = self._connections.get(peer_id)
        if conn is not None:
            await self._teardown(peer_id, conn)
        self._pending_candidates.pop(peer_id, None)

    async def close_all(self) -> None:
        for peer_id in list(self._connections):
            await self.close(peer_id)

    # ===== Inbound signals =====

    async def handle_signal(self, signal) -> None:
        """Route an offer, answer or candidate to its handler.

        Presence signals are not the engine's concern and are ignored.
        """
        if isinstance(signal, OfferSignal):
            await self.handle_offer(signal.from_peer, signal.description)
        elif isinstance(signal, AnswerSignal):
            await self.handle_answer(signal.from_peer, signal.description)
        elif isinstance(signal, IceCandidateSignal):
            await self.handle_ice_candidate(signal.from_peer, signal.candidate)

    async def handle_offer(self, peer_id: str, description: SessionDescription) -> None:
        """Answer a remote offer, resolving glare and stale connections."""
        async with self._lock(peer_id):
            conn = self._connections.get(peer_id)

            if conn is not None:
                if conn.remote_offer_sdp == description.sdp:
                    logger.debug(f"Ignoring duplicate offer from {peer_id}")
                    return

                stale = self.is_stale(conn)

                if (
                    conn.state == NegotiationState.STABLE
                    and conn.ice_state not in FAILED_ICE_STATES
                    and not stale
                ):
                    logger.debug(
                        f"Ignoring offer from {peer_id}: connection already "
                        f"negotiated (ICE {conn.ice_state})"
                    )
                    return

                if conn.state == NegotiationState.HAVE_LOCAL_OFFER:
                    if self.local_peer_id < peer_id and not stale:
                        logger.info(
                            f"Offer collision with {peer_id}: keeping our offer"
                        )
                        return
                    logger.info(f"Offer collision with {peer_id}: yielding to theirs")
                else:
                    logger.info(
                        f"New offer from {peer_id} replaces "
                        f"{conn.state.value} connection (ICE {conn.ice_state})"
                    )

                await self._teardown(peer_id, conn, replaced=True, keep_pending=True)

            conn = self._create_connection(peer_id)
            conn.state = NegotiationState.HAVE_REMOTE_OFFER
            conn.remote_offer_sdp = description.sdp

            try:
                await conn.transport.set_remote_description(description)
                if not self._is_current(peer_id, conn):
                    return
                await self._drain_candidates(peer_id, conn)
                if not self._is_current(peer_id, conn):
                    return
                answer = await conn.transport.create_local_answer()
            except Exception as e:
                logger.error(f"Failed to answer offer from {peer_id}: {e}")
                await self._teardown(peer_id, conn, state=NegotiationState.FAILED)
                return

            if not self._is_current(peer_id, conn):
                return

            conn.state = NegotiationState.STABLE
            await self.signaling.send(SignalType.ANSWER, peer_id, answer.to_dict())
            logger.info(f"Answered offer from {peer_id}")

    async def handle_answer(self, peer_id: str, description: SessionDescription) -> None:
        """Apply a remote answer to our outstanding offer."""
        async with self._lock(peer_id):
            conn = self._connections.get(peer_id)
            if conn is None or conn.state != NegotiationState.HAVE_LOCAL_OFFER:
                logger.debug(
                    f"Ignoring answer from {peer_id} in state "
                    f"{conn.state.value if conn else NegotiationState.NONE.value}"
                )
                return

            try:
                await conn.transport.set_remote_description(description)
            except Exception as e:
                logger.error(f"Failed to apply answer from {peer_id}: {e}")
                await self._teardown(peer_id, conn, state=NegotiationState.FAILED)
                return

            if not self._is_current(peer_id, conn):
                return
            await self._drain_candidates(peer_id, conn)
            if not self._is_current(peer_id, conn):
                return

            conn.state = NegotiationState.STABLE
            logger.info(f"Negotiation with {peer_id} complete")

    async def handle_ice_candidate(self, peer_id: str, candidate: IceCandidate) -> None:
        """Add a remote candidate now, or queue it until the remote description."""
        async with self._lock(peer_id):
            conn = self._connections.get(peer_id)

            if conn is not None and conn.remote_description_set:
                if candidate in conn.known_candidates:
                    logger.debug(f"Ignoring duplicate ICE candidate from {peer_id}")
                    return
                await self._add_candidate(peer_id, conn, candidate)
                return

            queue = self._pending_candidates.setdefault(peer_id, [])
            if candidate in queue:
                logger.debug(f"Ignoring duplicate queued ICE candidate from {peer_id}")
                return
            queue.append(candidate)
            logger.debug(f"Queued ICE candidate from {peer_id} ({len(queue)} pending)")
