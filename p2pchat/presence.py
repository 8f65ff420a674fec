"""Online peer tracking from the presence feed.

The same presence signal can arrive once per signaling server, so marks are
idempotent and report whether anything changed.
"""

from typing import List, Set


class PresenceTracker:
    """Set of remote peers currently announced online."""

    def __init__(self, local_peer_id: str):
        self.local_peer_id = local_peer_id
        self._online: Set[str] = set()

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._online

    @property
    def online_peers(self) -> List[str]:
        return sorted(self._online)

    def mark_online(self, peer_id: str) -> bool:
        """Returns True if the peer was not already online."""
        if peer_id == self.local_peer_id or peer_id in self._online:
            return False
        self._online.add(peer_id)
        return True

    def mark_offline(self, peer_id: str) -> bool:
        """Returns True if the peer was online."""
        if peer_id not in self._online:
            return False
        self._online.discard(peer_id)
        return True
