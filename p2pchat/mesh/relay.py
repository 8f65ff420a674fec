"""Deduplication and store-and-forward relay of group messages.

A group message carries a ``messageId`` and ``originalSender``. The first
copy a peer receives is delivered and then forwarded, unchanged, to every
other group member it has an open channel to, which heals gaps in a mesh that
is not yet fully connected. Later copies are dropped by id.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional

from p2pchat.errors import ChannelUnavailableError
from p2pchat.rtc.channel import ChannelTransport

logger = logging.getLogger(__name__)

DEFAULT_SEEN_TTL = 60.0


class SeenMessageSet:
    """Message ids already processed, with their receipt time.

    Args:
        ttl: Seconds after which an entry may be purged.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(
        self, ttl: float = DEFAULT_SEEN_TTL, clock: Callable[[], float] = time.monotonic
    ):
        self.ttl = ttl
        self._clock = clock
        self._seen: Dict[str, float] = {}

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def mark(self, message_id: str) -> None:
        self._seen.setdefault(message_id, self._clock())

    def check_and_mark(self, message_id: str) -> bool:
        """Mark an id as seen.

        Returns:
            True if the id is new, False if it was already seen.
        """
        if message_id in self._seen:
            return False
        self._seen[message_id] = self._clock()
        return True

    def purge(self) -> int:
        """Drop entries aged ``ttl`` or more. Returns how many were dropped."""
        cutoff = self._clock() - self.ttl
        expired = [mid for mid, seen_at in self._seen.items() if seen_at <= cutoff]
        for message_id in expired:
            del self._seen[message_id]
        if expired:
            logger.debug(f"Purged {len(expired)} seen message id(s)")
        return len(expired)


class MessageRelay:
    """Admits and forwards relayable group messages.

    Args:
        local_peer_id: Our peer id; never a forwarding target.
        channels: Channel registry used for forwarding.
        group_peers: Returns the members of a group other than self.
        seen: Shared seen-message set.
    """

    def __init__(
        self,
        local_peer_id: str,
        channels: ChannelTransport,
        group_peers: Callable[[str], Iterable[str]],
        seen: Optional[SeenMessageSet] = None,
    ):
        self.local_peer_id = local_peer_id
        self.channels = channels
        self.group_peers = group_peers
        self.seen = seen if seen is not None else SeenMessageSet()

    def prepare_outbound(self, message_id: str) -> None:
        """Pre-mark a locally originated message so echoes are dropped."""
        self.seen.mark(message_id)

    def admit(self, message_id: str) -> bool:
        """True the first time a message id is received, False for duplicates."""
        if self.seen.check_and_mark(message_id):
            return True
        logger.debug(f"Dropping duplicate group message {message_id}")
        return False

    def forward(
        self,
        group_id: str,
        raw: str,
        from_peer_id: str,
        original_sender: Optional[str],
    ) -> int:
        """Forward a raw group payload over already open channels.

        Skips the immediate sender, the declared origin and self. Failures
        are logged per recipient.

        Returns:
            Number of peers the payload was written to.
        """
        skip = {from_peer_id, self.local_peer_id}
        if original_sender:
            skip.add(original_sender)

        forwarded = 0
        for peer_id in self.group_peers(group_id):
            if peer_id in skip or not self.channels.is_open(peer_id):
                continue
            try:
                self.channels.send_raw(peer_id, raw)
                forwarded += 1
            except ChannelUnavailableError as e:
                logger.warning(f"Failed to relay group message to {peer_id}: {e}")

        if forwarded:
            logger.debug(f"Relayed group {group_id} message to {forwarded} peer(s)")
        return forwarded
