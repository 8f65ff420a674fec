"""Per-identity chat session.

``ChatSession`` owns every component for one local peer id and wires them
together:

    signaling --> NegotiationEngine --> ChannelTransport --> MessageRelay
                                              |                  |
                                              v                  v
                                        FileAssembler      GroupMeshManager

Everything the owner needs to know is reported as an event object (see
``p2pchat.events``) through the ``on_event`` callback.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from p2pchat.config import Config, get_config
from p2pchat.errors import (
    ChannelUnavailableError,
    DeliveryFailedError,
    FileTooLargeError,
    GroupError,
    TransferAbortedError,
)
from p2pchat.events import (
    ChatEvent,
    ConnectivityChanged,
    FileReceived,
    GroupDissolved,
    GroupInvitationReceived,
    MembersJoined,
    MessageReceived,
    PeerPresenceChanged,
    TypingChanged,
)
from p2pchat.file_transfer import FileAssembler, send_file
from p2pchat.ids import now_ms
from p2pchat.mesh.groups import Group, GroupRegistry
from p2pchat.mesh.mesh_manager import BroadcastResult, GroupMeshManager
from p2pchat.mesh.relay import MessageRelay, SeenMessageSet
from p2pchat.presence import PresenceTracker
from p2pchat.protocol import (
    Envelope,
    FileChunk,
    FileEnd,
    FileStart,
    GroupInvitation,
    MemberJoined,
    PeerOfflineSignal,
    PeerOnlineSignal,
    Signal,
    TextMessage,
    TypingIndicator,
    is_relayable,
)
from p2pchat.rtc.channel import ChannelTransport
from p2pchat.rtc.connector import PeerConnector
from p2pchat.rtc.negotiation import NegotiationEngine
from p2pchat.rtc.transport import AiortcTransport, Transport
from p2pchat.signaling.transport import SignalTransport

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL = 10.0  # seconds


class ChatSession:
    """All chat state for one local peer.

    Args:
        peer_id: Local peer id.
        signaling: Transport carrying signals for ``peer_id``.
        transport_factory: Builds the native connection for each peer.
            Defaults to aiortc with the configured ICE servers.
        config: Settings; the global configuration if omitted.
        on_event: Called with every ``ChatEvent``.
    """

    def __init__(
        self,
        peer_id: str,
        signaling: SignalTransport,
        transport_factory: Optional[Callable[[], Transport]] = None,
        config: Optional[Config] = None,
        on_event: Optional[Callable[[ChatEvent], None]] = None,
    ):
        self.peer_id = peer_id
        self.signaling = signaling
        self.config = config if config is not None else get_config()
        self.on_event = on_event
        self.maintenance_interval = MAINTENANCE_INTERVAL

        self.presence = PresenceTracker(peer_id)
        self.channels = ChannelTransport(on_envelope=self._on_envelope)
        self.engine = NegotiationEngine(
            peer_id,
            signaling,
            transport_factory or self._default_transport,
            on_data_channel=self.channels.attach,
            on_teardown=self._on_teardown,
            on_connectivity=self._on_connectivity,
            stale_after=self.config.connect_timeout,
        )
        self.connector = PeerConnector(
            self.engine,
            self.channels,
            timeout=self.config.connect_timeout,
            attempts=self.config.connect_attempts,
        )
        self.seen = SeenMessageSet(ttl=self.config.seen_message_ttl)
        self.groups = GroupRegistry(peer_id)
        self.relay = MessageRelay(
            peer_id, self.channels, self._group_peers, seen=self.seen
        )
        self.mesh = GroupMeshManager(
            peer_id,
            self.engine,
            self.channels,
            self.connector,
            self.groups,
            self.relay,
            chunk_size=self.config.transfer.chunk_size,
            buffer_threshold=self.config.transfer.buffer_threshold,
        )
        self.files = FileAssembler(
            assembly_timeout=self.config.transfer.assembly_timeout
        )

        self._maintenance_task: Optional[asyncio.Task] = None
        signaling.on_signal(self._on_signal)

    def _default_transport(self) -> Transport:
        return AiortcTransport(self.config.ice_servers)

    def _group_peers(self, group_id: str) -> List[str]:
        return self.mesh.group_peers(group_id)

    def _emit(self, event: ChatEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Event handler failed on {type(event).__name__}: {e}")

    # ===== Lifecycle =====

    async def start(self) -> None:
        await self.signaling.start()
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(f"Session started for {self.peer_id}")

    async def stop(self) -> None:
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        await self.engine.close_all()
        await self.signaling.stop()
        logger.info(f"Session stopped for {self.peer_id}")

    def run_maintenance(self) -> None:
        """Purge expired seen ids and stalled file assemblies."""
        self.seen.purge()
        self.files.purge_stale()

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval)
            self.run_maintenance()

    # ===== Wiring =====

    def _on_teardown(self, peer_id: str, replaced: bool) -> None:
        self.channels.detach(peer_id, replaced=replaced)

    def _on_connectivity(self, peer_id: str, connected: bool) -> None:
        self._emit(ConnectivityChanged(peer_id=peer_id, connected=connected))

    async def _on_signal(self, signal: Signal) -> None:
        peer_id = signal.from_peer

        if isinstance(signal, PeerOfflineSignal):
            if self.presence.mark_offline(peer_id):
                logger.info(f"Peer offline: {peer_id}")
                self._emit(PeerPresenceChanged(peer_id=peer_id, online=False))
            await self.engine.close(peer_id)
            self.mesh.forget_peer(peer_id)
            self.files.discard_sender(peer_id)
            for group in self.mesh.prune(self.presence.online_peers):
                self._emit(GroupDissolved(group=group))
            return

        # Any other signal proves the sender is online
        if self.presence.mark_online(peer_id):
            logger.info(f"Peer online: {peer_id}")
            self._emit(PeerPresenceChanged(peer_id=peer_id, online=True))

        if not isinstance(signal, PeerOnlineSignal):
            await self.engine.handle_signal(signal)

    async def _on_envelope(self, peer_id: str, envelope: Envelope, raw: str) -> None:
        if is_relayable(envelope):
            if envelope.group_id not in self.groups:
                logger.debug(f"Dropping message for unknown group {envelope.group_id}")
                return
            if not self.relay.admit(envelope.message_id):
                return
            await self._deliver(peer_id, envelope)
            self.relay.forward(
                envelope.group_id, raw, peer_id, envelope.original_sender
            )
            return

        await self._deliver(peer_id, envelope)

    async def _deliver(self, peer_id: str, envelope: Envelope) -> None:
        if isinstance(envelope, TextMessage):
            self._emit(
                MessageReceived(
                    sender=envelope.original_sender or peer_id,
                    content=envelope.content,
                    timestamp=envelope.timestamp,
                    group_id=envelope.group_id,
                    message_id=envelope.message_id,
                    via=peer_id,
                )
            )
        elif isinstance(envelope, TypingIndicator):
            self._emit(TypingChanged(peer_id=peer_id, is_typing=envelope.is_typing))
        elif isinstance(envelope, FileStart):
            self.files.start(peer_id, envelope)
        elif isinstance(envelope, FileChunk):
            self.files.add_chunk(peer_id, envelope)
        elif isinstance(envelope, FileEnd):
            received = self.files.finish(peer_id, envelope)
            if received is not None:
                self._emit(FileReceived(file=received))
        elif isinstance(envelope, GroupInvitation):
            group = self.mesh.handle_invitation(peer_id, envelope)
            if group is not None:
                self._emit(GroupInvitationReceived(group=group, invited_by=peer_id))
        elif isinstance(envelope, MemberJoined):
            added = await self.mesh.handle_member_joined(envelope)
            if added:
                self._emit(MembersJoined(group_id=envelope.group_id, peer_ids=added))

    # ===== Queries =====

    @property
    def online_peers(self) -> List[str]:
        return self.presence.online_peers

    @property
    def pending_invitations(self) -> List[Group]:
        return self.mesh.pending_invitations

    # ===== Direct messaging =====

    async def connect(self, peer_id: str) -> None:
        """Open a data channel to a peer.

        Raises:
            DeliveryFailedError: If the channel does not open in time.
        """
        await self.connector.ensure_channel(peer_id)

    async def send_message(self, peer_id: str, content: str) -> TextMessage:
        """Send a direct text message.

        Raises:
            DeliveryFailedError: If no channel could be opened to the peer.
        """
        message = TextMessage(content=content, timestamp=now_ms())
        await self.connector.send(peer_id, message)
        return message

    def send_typing(self, peer_id: str, is_typing: bool) -> bool:
        """Best-effort typing indicator; never negotiates a connection."""
        try:
            self.channels.send(peer_id, TypingIndicator(is_typing=is_typing))
            return True
        except ChannelUnavailableError:
            logger.debug(f"Typing indicator to {peer_id} dropped: channel not open")
            return False

    def _check_size(self, data: bytes, file_name: str) -> None:
        limit = self.config.transfer.max_file_size
        if len(data) > limit:
            raise FileTooLargeError(
                f"{file_name} is {len(data)} bytes, limit is {limit} bytes"
            )

    async def send_file(
        self,
        peer_id: str,
        data: bytes,
        file_name: str,
        file_type: str = "application/octet-stream",
    ) -> FileStart:
        """Send a file directly to a peer.

        Raises:
            FileTooLargeError: If the file exceeds the configured limit.
            DeliveryFailedError: If no channel could be opened to the peer.
            TransferAbortedError: If the channel closes mid-transfer.
        """
        self._check_size(data, file_name)
        await self.connector.ensure_channel(peer_id)
        return await send_file(
            self.channels,
            peer_id,
            data,
            file_name,
            file_type,
            chunk_size=self.config.transfer.chunk_size,
            buffer_threshold=self.config.transfer.buffer_threshold,
        )

    # ===== Groups =====

    async def create_group(self, name: str, member_peer_ids: List[str]) -> Group:
        return await self.mesh.create_group(name, member_peer_ids)

    async def accept_invitation(self, group_id: str) -> Group:
        return await self.mesh.accept_invitation(group_id)

    def reject_invitation(self, group_id: str) -> bool:
        return self.mesh.reject_invitation(group_id)

    async def invite_members(
        self, group_id: str, peer_ids: List[str]
    ) -> BroadcastResult:
        return await self.mesh.invite_members(group_id, peer_ids)

    async def send_group_message(self, group_id: str, content: str) -> BroadcastResult:
        """Send a text message to every other member of a group.

        Raises:
            GroupError: If the group is unknown.
        """
        _, result = await self.mesh.send_group_message(group_id, content)
        return result

    async def send_group_file(
        self,
        group_id: str,
        data: bytes,
        file_name: str,
        file_type: str = "application/octet-stream",
    ) -> BroadcastResult:
        self._check_size(data, file_name)
        return await self.mesh.send_group_file(group_id, data, file_name, file_type)

    # ===== Multi-target broadcast =====

    async def broadcast(
        self,
        peer_ids: Iterable[str] = (),
        group_ids: Iterable[str] = (),
        content: Optional[str] = None,
        data: Optional[bytes] = None,
        file_name: Optional[str] = None,
        file_type: str = "application/octet-stream",
    ) -> BroadcastResult:
        """Send one text or one file to several peers and groups.

        Each peer and each group is one target in the result, sent to in
        turn; a failing target never stops the others. A group counts as
        delivered when at least one of its members received the payload.

        Args:
            peer_ids: Direct recipients.
            group_ids: Groups to send to.
            content: Text to send. Exclusive with ``data``.
            data: File contents to send. Exclusive with ``content``.
            file_name: Name of the file; required with ``data``.
            file_type: MIME type of the file.

        Returns:
            ``BroadcastResult`` whose ``failed_peers`` lists the peer and group
            ids that were not reached.

        Raises:
            ValueError: If not exactly one of ``content`` and ``data`` is given.
            FileTooLargeError: If the file exceeds the configured limit.
        """
        if (content is None) == (data is None):
            raise ValueError("Broadcast needs exactly one of content or data")
        if data is not None:
            if not file_name:
                raise ValueError("Broadcasting a file needs a file name")
            self._check_size(data, file_name)

        result = BroadcastResult()

        for peer_id in dict.fromkeys(peer_ids):
            try:
                if data is not None:
                    await self.send_file(peer_id, data, file_name, file_type)
                else:
                    await self.send_message(peer_id, content)
                result.sent += 1
            except (DeliveryFailedError, TransferAbortedError) as e:
                logger.warning(f"Broadcast to {peer_id} failed: {e}")
                result.record_failure(peer_id)

        for group_id in dict.fromkeys(group_ids):
            try:
                if data is not None:
                    outcome = await self.send_group_file(
                        group_id, data, file_name, file_type
                    )
                else:
                    outcome = await self.send_group_message(group_id, content)
            except GroupError as e:
                logger.warning(f"Broadcast to group {group_id} failed: {e}")
                result.record_failure(group_id)
                continue
            if outcome.sent:
                result.sent += 1
            else:
                result.record_failure(group_id)

        logger.info(f"Broadcast: {result.sent} target(s) reached, {result.failed} failed")
        return result

    def leave_group(self, group_id: str) -> Group:
        group = self.mesh.leave_group(group_id)
        if group is None:
            raise GroupError(f"Unknown group: {group_id}")
        return group
