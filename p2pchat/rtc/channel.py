"""Data channel registry: sends envelopes and dispatches inbound ones.

One chat channel is tracked per remote peer. Waiting for a channel to open
or for its send buffer to drain suspends on futures that the channel's
``open``, ``close`` and ``bufferedamountlow`` events resolve, so callers
never poll.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from aiortc.exceptions import InvalidStateError

from p2pchat.errors import ChannelUnavailableError, ProtocolError
from p2pchat.protocol import Envelope, decode_envelope, encode_envelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[str, Envelope, str], Awaitable[None]]


class ChannelTransport:
    """Tracks the chat data channel of every peer.

    Args:
        on_envelope: Coroutine called with ``(peer_id, envelope, raw)`` for
            each decoded inbound message. ``raw`` is the original JSON text,
            kept so relayed messages are forwarded unchanged.
    """

    def __init__(self, on_envelope: Optional[EnvelopeHandler] = None):
        self.on_envelope = on_envelope
        self._channels: Dict[str, Any] = {}
        self._open_waiters: Dict[str, List[asyncio.Future]] = {}
        self._drain_waiters: Dict[str, List[asyncio.Future]] = {}

    # ===== Registry =====

    def get_channel(self, peer_id: str) -> Optional[Any]:
        return self._channels.get(peer_id)

    def is_open(self, peer_id: str) -> bool:
        channel = self._channels.get(peer_id)
        return channel is not None and channel.readyState == "open"

    def open_peers(self) -> List[str]:
        return [pid for pid in self._channels if self.is_open(pid)]

    def buffered_amount(self, peer_id: str) -> int:
        channel = self._channels.get(peer_id)
        return channel.bufferedAmount if channel is not None else 0

    def attach(self, peer_id: str, channel: Any) -> None:
        """Track a channel for a peer and wire its events.

        An already open channel for the peer is kept and the new one ignored.
        """
        existing = self._channels.get(peer_id)
        if existing is channel:
            return
        if existing is not None and existing.readyState == "open":
            logger.debug(f"Keeping open data channel to {peer_id}, ignoring new one")
            return

        self._channels[peer_id] = channel
        self._fail_waiters(self._drain_waiters, peer_id)

        @channel.on("open")
        def on_open():
            if self._channels.get(peer_id) is channel:
                logger.info(f"Data channel open with {peer_id}")
                self._resolve_waiters(self._open_waiters, peer_id)

        @channel.on("close")
        def on_close():
            if self._channels.get(peer_id) is channel:
                logger.info(f"Data channel closed with {peer_id}")
                self.detach(peer_id)

        @channel.on("bufferedamountlow")
        def on_bufferedamountlow():
            if self._channels.get(peer_id) is channel:
                self._resolve_waiters(self._drain_waiters, peer_id)

        @channel.on("message")
        async def on_message(message):
            if self._channels.get(peer_id) is not channel:
                logger.debug(f"Dropping message from stale channel to {peer_id}")
                return
            await self.handle_message(peer_id, message)

        if channel.readyState == "open":
            self._resolve_waiters(self._open_waiters, peer_id)

    def detach(self, peer_id: str, replaced: bool = False) -> None:
        """Forget a peer's channel.

        Pending open waits fail immediately unless ``replaced`` is set, in
        which case they keep waiting for the replacement channel.
        """
        self._channels.pop(peer_id, None)
        self._fail_waiters(self._drain_waiters, peer_id)
        if not replaced:
            self._fail_waiters(self._open_waiters, peer_id)

    # ===== Waiting =====

    def _resolve_waiters(self, waiters: Dict[str, List[asyncio.Future]], peer_id: str):
        for fut in waiters.pop(peer_id, []):
            if not fut.done():
                fut.set_result(None)

    def _fail_waiters(self, waiters: Dict[str, List[asyncio.Future]], peer_id: str):
        for fut in waiters.pop(peer_id, []):
            if not fut.done():
                fut.set_exception(ChannelUnavailableError(peer_id))

    async def _wait(
        self,
        waiters: Dict[str, List[asyncio.Future]],
        peer_id: str,
        timeout: float,
    ) -> None:
        fut = asyncio.get_running_loop().create_future()
        waiters.setdefault(peer_id, []).append(fut)
        try:
            await asyncio.wait_for(fut, timeout)
        finally:
            pending = waiters.get(peer_id)
            if pending and fut in pending:
                pending.remove(fut)

    async def wait_until_open(self, peer_id: str, timeout: float) -> None:
        """Suspend until the peer's channel is open.

        Raises:
            asyncio.TimeoutError: If it does not open within ``timeout``.
            ChannelUnavailableError: If the connection is torn down first.
        """
        if self.is_open(peer_id):
            return
        await self._wait(self._open_waiters, peer_id, timeout)

    async def wait_for_buffer_below(
        self, peer_id: str, threshold: int, timeout: float
    ) -> None:
        """Suspend while the channel holds more than ``threshold`` buffered bytes.

        Raises:
            asyncio.TimeoutError: If the buffer does not drain within ``timeout``.
            ChannelUnavailableError: If the channel is closed or replaced.
        """
        channel = self._channels.get(peer_id)
        if channel is None or channel.readyState != "open":
            raise ChannelUnavailableError(peer_id)

        while channel.bufferedAmount > threshold:
            channel.bufferedAmountLowThreshold = threshold
            await self._wait(self._drain_waiters, peer_id, timeout)
            if self._channels.get(peer_id) is not channel or channel.readyState != "open":
                raise ChannelUnavailableError(peer_id)

    # ===== Send / receive =====

    def send_raw(self, peer_id: str, raw: str) -> None:
        """Write already encoded JSON text to a peer's open channel.

        Raises:
            ChannelUnavailableError: If the channel is missing or not open.
        """
        channel = self._channels.get(peer_id)
        if channel is None or channel.readyState != "open":
            raise ChannelUnavailableError(peer_id)
        try:
            channel.send(raw)
        except InvalidStateError as e:
            raise ChannelUnavailableError(peer_id, str(e)) from e

    def send(self, peer_id: str, envelope: Envelope) -> None:
        self.send_raw(peer_id, encode_envelope(envelope))

    async def handle_message(self, peer_id: str, message: Union[str, bytes]) -> None:
        """Decode an inbound frame and hand it to ``on_envelope``.

        Malformed frames are logged and dropped.
        """
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError:
                logger.warning(f"Dropping non-UTF-8 binary frame from {peer_id}")
                return

        try:
            envelope = decode_envelope(message)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message from {peer_id}: {e}")
            return

        if self.on_envelope is None:
            return
        try:
            await self.on_envelope(peer_id, envelope, message)
        except Exception as e:
            logger.error(f"Error handling {type(envelope).__name__} from {peer_id}: {e}")
