"""Group records kept by each peer."""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from p2pchat.errors import GroupError
from p2pchat.ids import generate_group_id, now_ms

logger = logging.getLogger(__name__)


@dataclass
class Group:
    """A named set of peers chatting over a full mesh.

    Attributes:
        group_id: ``group_<epoch-ms>_<random>``.
        name: Display name.
        member_peer_ids: Ordered member ids, always including the local peer.
        created_by: Peer id of the creator.
        created_at: Epoch-ms creation time.
    """

    group_id: str
    name: str
    member_peer_ids: List[str]
    created_by: str
    created_at: int = field(default_factory=now_ms)

    @property
    def member_count(self) -> int:
        return len(self.member_peer_ids)

    def add_members(self, peer_ids: Iterable[str]) -> List[str]:
        """Append members not already present.

        Returns:
            The ids that were actually added, in order.
        """
        added = []
        for peer_id in peer_ids:
            if peer_id not in self.member_peer_ids:
                self.member_peer_ids.append(peer_id)
                added.append(peer_id)
        return added

    def other_members(self, local_peer_id: str) -> List[str]:
        return [pid for pid in self.member_peer_ids if pid != local_peer_id]


class GroupRegistry:
    """The groups the local peer belongs to, keyed by group id."""

    def __init__(self, local_peer_id: str):
        self.local_peer_id = local_peer_id
        self._groups: Dict[str, Group] = {}

    def __contains__(self, group_id: str) -> bool:
        return group_id in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def all(self) -> List[Group]:
        return list(self._groups.values())

    def get(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def require(self, group_id: str) -> Group:
        group = self._groups.get(group_id)
        if group is None:
            raise GroupError(f"Unknown group: {group_id}")
        return group

    def create(self, name: str, member_peer_ids: Iterable[str]) -> Group:
        """Create a group owned by the local peer.

        Raises:
            GroupError: If no other member is given.
        """
        members = [self.local_peer_id]
        for peer_id in member_peer_ids:
            if peer_id not in members:
                members.append(peer_id)
        if len(members) < 2:
            raise GroupError("A group needs at least one other member")

        group = Group(
            group_id=generate_group_id(),
            name=name,
            member_peer_ids=members,
            created_by=self.local_peer_id,
        )
        self._groups[group.group_id] = group
        logger.info(f"Created group {group.group_id} '{name}' with {group.member_count} members")
        return group

    def add(self, group: Group) -> Group:
        """Store a group joined from an invitation, ensuring self is a member."""
        if self.local_peer_id not in group.member_peer_ids:
            group.member_peer_ids.append(self.local_peer_id)
        self._groups[group.group_id] = group
        return group

    def remove(self, group_id: str) -> Optional[Group]:
        return self._groups.pop(group_id, None)

    def prune_offline(self, online_peer_ids: Iterable[str]) -> List[Group]:
        """Drop groups none of whose other members is online.

        Args:
            online_peer_ids: Remote peers currently online. The local peer is
                never counted as online here.

        Returns:
            The removed groups.
        """
        online = set(online_peer_ids)
        online.discard(self.local_peer_id)

        removed = []
        for group_id, group in list(self._groups.items()):
            if not any(pid in online for pid in group.other_members(self.local_peer_id)):
                del self._groups[group_id]
                removed.append(group)
                logger.info(f"Dissolving group {group_id}: no member online")
        return removed
