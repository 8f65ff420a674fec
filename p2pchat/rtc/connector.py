"""Lazy (re-)establishment of data channels on send."""

import asyncio
import logging

from p2pchat.errors import ChannelUnavailableError, DeliveryFailedError
from p2pchat.protocol import Envelope
from p2pchat.rtc.channel import ChannelTransport
from p2pchat.rtc.negotiation import NegotiationEngine

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_CONNECT_ATTEMPTS = 2


class PeerConnector:
    """Makes sure a channel is open before sending to a peer.

    If the channel is not open, negotiation is (re)started through the engine
    and the caller waits, bounded by ``timeout``, for the channel to open.
    When an attempt times out the connection is torn down and a fresh offer
    is sent, up to ``attempts`` offers in total.

    Args:
        engine: Negotiation engine used to initiate connections.
        channels: Channel registry used to wait and send.
        timeout: Seconds to wait for a channel to open, per attempt.
        attempts: Offers to try before giving up.
    """

    def __init__(
        self,
        engine: NegotiationEngine,
        channels: ChannelTransport,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
        attempts: int = DEFAULT_CONNECT_ATTEMPTS,
    ):
        self.engine = engine
        self.channels = channels
        self.timeout = timeout
        self.attempts = max(1, attempts)

    async def ensure_channel(self, peer_id: str) -> None:
        """Return once the peer's channel is open.

        Raises:
            DeliveryFailedError: If the channel cannot be opened in time.
        """
        if self.channels.is_open(peer_id):
            return

        for attempt in range(1, self.attempts + 1):
            logger.debug(
                f"No open channel to {peer_id}, negotiating "
                f"(attempt {attempt}/{self.attempts})"
            )
            conn = await self.engine.initiate(peer_id)
            if conn is None:
                raise DeliveryFailedError(peer_id)

            try:
                await self.channels.wait_until_open(peer_id, self.timeout)
                return
            except asyncio.TimeoutError:
                logger.warning(f"Timed out after {self.timeout}s waiting for {peer_id}")
            except ChannelUnavailableError as e:
                raise DeliveryFailedError(
                    peer_id, f"Connection to {peer_id} was torn down while waiting"
                ) from e

            # Offer or answer lost in signaling: start over with a new offer
            if self.engine.get_connection(peer_id) is conn and not self.channels.is_open(
                peer_id
            ):
                await self.engine.close(peer_id)

        raise DeliveryFailedError(
            peer_id,
            f"Timed out waiting for data channel with {peer_id} "
            f"after {self.attempts} attempt(s)",
        )

    async def send(self, peer_id: str, envelope: Envelope) -> None:
        """Send an envelope, establishing the channel first if needed.

        Raises:
            DeliveryFailedError: If no open channel could be obtained.
        """
        await self.ensure_channel(peer_id)
        try:
            self.channels.send(peer_id, envelope)
        except ChannelUnavailableError as e:
            raise DeliveryFailedError(peer_id, str(e)) from e
