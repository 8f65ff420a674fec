"""Full-mesh connectivity and messaging for chat groups.

Each group member keeps a direct data channel to every other member. The
manager records, per group, which peers it has asked the negotiation engine
to connect to (the group's mesh set); that set only makes connecting
idempotent. Group traffic is fanned out to the group's member list, one
recipient at a time, so a member that dropped out of the mesh set (it went
offline and came back) is reconnected lazily on the next send.

Membership flow:
1. The creator sends ``group-invitation`` (full member list) to each invitee
2. An invitee that accepts connects to every member and announces itself
   with a relayable ``member-joined`` message
3. Members receiving ``member-joined`` merge the ids and connect to them
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from p2pchat.errors import DeliveryFailedError, GroupError, TransferAbortedError
from p2pchat.file_transfer import (
    BUFFER_THRESHOLD,
    CHUNK_SIZE,
    DRAIN_TIMEOUT,
    send_file,
)
from p2pchat.ids import generate_message_id, nickname_from_peer_id, now_ms
from p2pchat.mesh.groups import Group, GroupRegistry
from p2pchat.mesh.relay import MessageRelay
from p2pchat.protocol import Envelope, GroupInvitation, MemberJoined, TextMessage
from p2pchat.rtc.channel import ChannelTransport
from p2pchat.rtc.connector import PeerConnector
from p2pchat.rtc.negotiation import NegotiationEngine

logger = logging.getLogger(__name__)


@dataclass
class BroadcastResult:
    """Outcome of sending one payload to every member of a group.

    Attributes:
        sent: Recipients the payload was delivered to.
        failed: Recipients that could not be reached.
        failed_peers: Ids of the failed recipients.
    """

    sent: int = 0
    failed: int = 0
    failed_peers: List[str] = field(default_factory=list)

    def record_failure(self, peer_id: str) -> None:
        self.failed += 1
        self.failed_peers.append(peer_id)


class GroupMeshManager:
    """Keeps every group's mesh connected and broadcasts group traffic.

    Args:
        local_peer_id: Our peer id.
        engine: Negotiation engine used to open connections.
        channels: Channel registry.
        connector: Lazy connector used for per-recipient sends.
        groups: Group registry.
        relay: Relay whose seen-set receives our own message ids.
    """

    def __init__(
        self,
        local_peer_id: str,
        engine: NegotiationEngine,
        channels: ChannelTransport,
        connector: PeerConnector,
        groups: GroupRegistry,
        relay: MessageRelay,
        chunk_size: int = CHUNK_SIZE,
        buffer_threshold: int = BUFFER_THRESHOLD,
    ):
        self.local_peer_id = local_peer_id
        self.engine = engine
        self.channels = channels
        self.connector = connector
        self.groups = groups
        self.relay = relay
        self.chunk_size = chunk_size
        self.buffer_threshold = buffer_threshold

        self._mesh: Dict[str, Set[str]] = {}
        self._pending_invitations: Dict[str, Group] = {}

    # ===== Mesh tracking =====

    def tracked_peers(self, group_id: str) -> Set[str]:
        return set(self._mesh.get(group_id, ()))

    def group_peers(self, group_id: str) -> List[str]:
        """Members of a group other than self, in member order."""
        group = self.groups.get(group_id)
        if group is None:
            return []
        return group.other_members(self.local_peer_id)

    async def connect_to_group(
        self, group_id: str, member_peer_ids: Iterable[str]
    ) -> List[str]:
        """Connect to every member of a group not already tracked.

        Healthy or still negotiating connections are reused, whichever group
        they were opened for.

        Returns:
            Peers a new negotiation was started for.
        """
        mesh = self._mesh.setdefault(group_id, set())
        to_initiate = []

        for peer_id in member_peer_ids:
            if peer_id == self.local_peer_id or peer_id in mesh:
                continue
            mesh.add(peer_id)

            conn = self.engine.get_connection(peer_id)
            if self.channels.is_open(peer_id) or (conn is not None and conn.is_live):
                logger.debug(f"Reusing connection to {peer_id} for group {group_id}")
                continue
            to_initiate.append(peer_id)

        if not to_initiate:
            return []

        logger.info(f"Connecting to {len(to_initiate)} peer(s) of group {group_id}")
        results = await asyncio.gather(
            *(self.engine.initiate(pid) for pid in to_initiate),
            return_exceptions=True,
        )
        for peer_id, result in zip(to_initiate, results):
            if isinstance(result, Exception):
                logger.error(f"Failed to connect to {peer_id}: {result}")
            elif result is None:
                logger.warning(f"Could not start negotiation with {peer_id}")
        return to_initiate

    def disconnect_from_group(self, group_id: str) -> None:
        """Stop tracking a group's mesh. Connections stay open for other groups."""
        self._mesh.pop(group_id, None)

    def forget_peer(self, peer_id: str) -> None:
        """Untrack a peer everywhere so it is reconnected when it returns."""
        for mesh in self._mesh.values():
            mesh.discard(peer_id)

    # ===== Broadcast =====

    async def broadcast(
        self, group_id: str, envelope: Envelope, recipients: Optional[Iterable[str]] = None
    ) -> BroadcastResult:
        """Send an envelope to each recipient in turn.

        A failure for one recipient never stops the others.
        """
        result = BroadcastResult()
        targets = recipients if recipients is not None else self.group_peers(group_id)

        for peer_id in targets:
            try:
                await self.connector.send(peer_id, envelope)
                result.sent += 1
            except DeliveryFailedError as e:
                logger.warning(f"Group {group_id}: failed to send to {peer_id}: {e}")
                result.record_failure(peer_id)

        logger.debug(
            f"Group {group_id} broadcast: {result.sent} sent, {result.failed} failed"
        )
        return result

    async def send_group_message(self, group_id: str, content: str):
        """Send a text message to every member of a group.

        Returns:
            ``(message, result)``: the envelope sent and the broadcast outcome.

        Raises:
            GroupError: If the group is unknown.
        """
        self.groups.require(group_id)
        message = TextMessage(
            content=content,
            timestamp=now_ms(),
            group_id=group_id,
            message_id=generate_message_id(group_id),
            original_sender=self.local_peer_id,
        )
        self.relay.prepare_outbound(message.message_id)
        result = await self.broadcast(group_id, message)
        return message, result

    async def send_group_file(
        self,
        group_id: str,
        data: bytes,
        file_name: str,
        file_type: str = "application/octet-stream",
    ) -> BroadcastResult:
        """Send a file to every member of a group, one after another.

        Raises:
            GroupError: If the group is unknown.
        """
        self.groups.require(group_id)
        result = BroadcastResult()

        for peer_id in self.group_peers(group_id):
            try:
                await self.connector.ensure_channel(peer_id)
                await send_file(
                    self.channels,
                    peer_id,
                    data,
                    file_name,
                    file_type,
                    group_id=group_id,
                    chunk_size=self.chunk_size,
                    buffer_threshold=self.buffer_threshold,
                    drain_timeout=DRAIN_TIMEOUT,
                )
                result.sent += 1
            except (DeliveryFailedError, TransferAbortedError) as e:
                logger.warning(f"Group {group_id}: file to {peer_id} failed: {e}")
                result.record_failure(peer_id)

        return result

    # ===== Membership =====

    def _invitation_for(self, group: Group, member_peer_ids: List[str]) -> GroupInvitation:
        return GroupInvitation(
            group_id=group.group_id,
            group_name=group.name,
            member_peer_ids=list(member_peer_ids),
            created_by=group.created_by,
            creator_username=nickname_from_peer_id(group.created_by),
            member_count=len(member_peer_ids),
            timestamp=now_ms(),
        )

    async def create_group(self, name: str, member_peer_ids: Iterable[str]) -> Group:
        """Create a group, connect its mesh and invite every other member.

        Raises:
            GroupError: If no other member is given.
        """
        group = self.groups.create(name, member_peer_ids)
        await self.connect_to_group(group.group_id, group.member_peer_ids)

        invitation = self._invitation_for(group, group.member_peer_ids)
        result = await self.broadcast(group.group_id, invitation)
        if result.failed:
            logger.warning(
                f"Group {group.group_id}: invitation not delivered to {result.failed_peers}"
            )
        return group

    @property
    def pending_invitations(self) -> List[Group]:
        return list(self._pending_invitations.values())

    def handle_invitation(
        self, from_peer_id: str, invitation: GroupInvitation
    ) -> Optional[Group]:
        """Hold an invitation until it is accepted or rejected.

        Returns:
            The pending group, or None if we already belong to it.
        """
        if invitation.group_id in self.groups:
            logger.debug(f"Ignoring invitation to joined group {invitation.group_id}")
            return None

        members = list(invitation.member_peer_ids)
        if from_peer_id not in members:
            members.insert(0, from_peer_id)

        group = Group(
            group_id=invitation.group_id,
            name=invitation.group_name,
            member_peer_ids=members,
            created_by=invitation.created_by,
            created_at=invitation.timestamp,
        )
        self._pending_invitations[group.group_id] = group
        logger.info(f"Invitation to group '{group.name}' from {from_peer_id}")
        return group

    async def accept_invitation(self, group_id: str) -> Group:
        """Join a pending group and announce ourselves to its members.

        Raises:
            GroupError: If there is no pending invitation for the group.
        """
        group = self._pending_invitations.pop(group_id, None)
        if group is None:
            raise GroupError(f"No pending invitation for group {group_id}")

        self.groups.add(group)
        await self.connect_to_group(group_id, group.member_peer_ids)

        announcement = MemberJoined(
            group_id=group_id,
            new_member_peer_ids=[self.local_peer_id],
            message_id=generate_message_id(group_id),
            original_sender=self.local_peer_id,
        )
        self.relay.prepare_outbound(announcement.message_id)
        await self.broadcast(group_id, announcement)

        logger.info(f"Joined group {group_id} ({group.member_count} members)")
        return group

    def reject_invitation(self, group_id: str) -> bool:
        return self._pending_invitations.pop(group_id, None) is not None

    async def invite_members(
        self, group_id: str, new_peer_ids: Iterable[str]
    ) -> BroadcastResult:
        """Invite more peers into an existing group.

        Local membership is only updated once the invitees announce
        themselves with ``member-joined``.

        Raises:
            GroupError: If the group is unknown.
        """
        group = self.groups.require(group_id)
        invitees = []
        for peer_id in new_peer_ids:
            if peer_id != self.local_peer_id and peer_id not in group.member_peer_ids:
                if peer_id not in invitees:
                    invitees.append(peer_id)
        if not invitees:
            return BroadcastResult()

        invitation = self._invitation_for(group, group.member_peer_ids + invitees)
        return await self.broadcast(group_id, invitation, recipients=invitees)

    async def handle_member_joined(self, joined: MemberJoined) -> List[str]:
        """Merge announced members into a group and connect to them.

        Returns:
            The ids newly added to the group.
        """
        group = self.groups.get(joined.group_id)
        if group is None:
            logger.debug(f"Ignoring member-joined for unknown group {joined.group_id}")
            return []

        added = group.add_members(joined.new_member_peer_ids)
        if added:
            logger.info(f"Group {joined.group_id}: {added} joined")
            await self.connect_to_group(joined.group_id, added)
        return added

    def prune(self, online_peer_ids: Iterable[str]) -> List[Group]:
        """Dissolve groups with no other member online."""
        removed = self.groups.prune_offline(online_peer_ids)
        for group in removed:
            self.disconnect_from_group(group.group_id)
        return removed

    def leave_group(self, group_id: str) -> Optional[Group]:
        """Stop participating in a group locally."""
        group = self.groups.remove(group_id)
        self.disconnect_from_group(group_id)
        return group
