"""Signaling transports: deliver offers, answers, candidates and presence.

Frames exchanged with the relay server are the signaling envelopes described
in ``p2pchat.protocol``, preceded by one registration frame::

    {"type": "register", "peer_id": "<local peer id>"}

A signal with ``to`` is routed to that peer only; a signal without ``to`` is
broadcast to every peer (presence).
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets

from p2pchat.errors import ProtocolError
from p2pchat.protocol import Signal, SignalType, build_signal, decode_signal, encode_signal

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 5.0

SignalHandler = Callable[[Signal], Awaitable[None]]


class SignalTransport(ABC):
    """Delivery path for signals to and from one local peer id.

    Args:
        peer_id: Local peer id. Signals sent by it are never delivered back.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self._handlers: List[SignalHandler] = []

    def on_signal(self, handler: SignalHandler) -> None:
        """Register a coroutine called for every inbound signal."""
        self._handlers.append(handler)

    async def dispatch(self, signal: Signal) -> None:
        if signal.from_peer == self.peer_id:
            return
        if signal.to_peer and signal.to_peer != self.peer_id:
            logger.debug(f"Dropping signal addressed to {signal.to_peer}")
            return
        for handler in self._handlers:
            try:
                await handler(signal)
            except Exception as e:
                logger.error(f"Error handling {type(signal).__name__}: {e}")

    @property
    @abstractmethod
    def connected(self) -> bool:
        """True while signals can be sent."""

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def stop(self) -> None:
        pass

    @abstractmethod
    async def send(
        self,
        kind: SignalType,
        to_peer_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send a signal. ``to_peer_id=None`` broadcasts on the presence topic.

        Returns:
            False if the signal could not be handed to the server.
        """


class WebSocketSignalTransport(SignalTransport):
    """Signal transport over a WebSocket connection to a relay server.

    Registers with the server, announces ``PEER_ONLINE`` on every (re)connect
    and ``PEER_OFFLINE`` on stop. A dropped connection is retried after
    ``reconnect_delay`` seconds until ``stop`` is called.

    Args:
        url: Relay server URL, e.g. ``ws://localhost:8765``.
        peer_id: Local peer id.
        reconnect_delay: Seconds between reconnection attempts.
    """

    def __init__(
        self, url: str, peer_id: str, reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    ):
        super().__init__(peer_id)
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.connected_at: Optional[float] = None

        self._websocket = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._connected_event = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run(self) -> None:
        while self._running:
            try:
                async with websockets.connect(self.url) as websocket:
                    await websocket.send(
                        json.dumps({"type": "register", "peer_id": self.peer_id})
                    )
                    self._websocket = websocket
                    self.connected_at = time.monotonic()
                    self._connected_event.set()
                    logger.info(f"Connected to signaling server {self.url}")

                    await self.send(SignalType.PEER_ONLINE, None)

                    async for message in websocket:
                        await self._handle_frame(message)

                logger.warning(f"Signaling server {self.url} closed the connection")
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Signaling connection to {self.url} failed: {e}")
            finally:
                self._websocket = None
                self.connected_at = None
                self._connected_event.clear()

            if self._running:
                logger.info(f"Reconnecting to {self.url} in {self.reconnect_delay}s")
                await asyncio.sleep(self.reconnect_delay)

    async def _handle_frame(self, message) -> None:
        try:
            signal = decode_signal(message)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed signal from {self.url}: {e}")
            return
        await self.dispatch(signal)

    async def send(
        self,
        kind: SignalType,
        to_peer_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        websocket = self._websocket
        if websocket is None:
            logger.warning(f"Cannot send {SignalType(kind).value}: not connected to {self.url}")
            return False

        signal = build_signal(kind, self.peer_id, to_peer_id, payload)
        try:
            await websocket.send(encode_signal(signal))
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Failed to send {signal.__class__.__name__} via {self.url}: {e}")
            return False
        return True

    async def stop(self) -> None:
        self._running = False
        websocket = self._websocket
        if websocket is not None:
            await self.send(SignalType.PEER_OFFLINE, None)
            await websocket.close()

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class MultiSignalTransport(SignalTransport):
    """Several redundant transports presented as one.

    Every underlying transport delivers inbound signals, so handlers see
    duplicates. Outbound signals go through the transport that has been
    connected the longest.
    """

    def __init__(self, transports: List[WebSocketSignalTransport]):
        if not transports:
            raise ValueError("At least one signal transport is required")
        super().__init__(transports[0].peer_id)
        self.transports = transports
        for transport in transports:
            transport.on_signal(self.dispatch)

    @property
    def connected(self) -> bool:
        return any(t.connected for t in self.transports)

    def _primary(self) -> Optional[WebSocketSignalTransport]:
        live = [t for t in self.transports if t.connected]
        if not live:
            return None
        return min(live, key=lambda t: t.connected_at or 0.0)

    async def start(self) -> None:
        for transport in self.transports:
            await transport.start()

    async def wait_connected(self, timeout: float) -> bool:
        tasks = [asyncio.create_task(t.wait_connected(timeout)) for t in self.transports]
        try:
            for finished in asyncio.as_completed(tasks):
                if await finished:
                    return True
            return False
        finally:
            for task in tasks:
                task.cancel()

    async def send(
        self,
        kind: SignalType,
        to_peer_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        primary = self._primary()
        if primary is None:
            logger.warning("Cannot send signal: no signaling server connected")
            return False
        return await primary.send(kind, to_peer_id, payload)

    async def stop(self) -> None:
        for transport in self.transports:
            await transport.stop()


def create_signal_transport(
    urls: List[str], peer_id: str, reconnect_delay: float = DEFAULT_RECONNECT_DELAY
) -> SignalTransport:
    """Build a transport for one or more relay server URLs."""
    if not urls:
        raise ValueError("No signaling server configured")
    transports = [
        WebSocketSignalTransport(url, peer_id, reconnect_delay) for url in urls
    ]
    if len(transports) == 1:
        return transports[0]
    return MultiSignalTransport(transports)
