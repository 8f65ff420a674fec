"""Minimal WebSocket relay for p2pchat signaling.

The relay only routes metadata: it never inspects SDP or candidates.

- ``{"type": "register", "peer_id": ...}`` binds a socket to a peer id and
  replies with a ``PEER_ONLINE`` signal for every peer already registered
- A signal with ``to`` is forwarded to that peer's socket
- A signal without ``to`` is broadcast to every other registered peer
- When a socket closes, ``PEER_OFFLINE`` is broadcast on its behalf

Usage:
    p2pchat relay [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import websockets

from p2pchat.protocol import PeerOfflineSignal, PeerOnlineSignal, encode_signal

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8765


class RelayServer:
    """Routes signaling frames between registered peers."""

    def __init__(self):
        # Connected peers: peer_id -> websocket
        self.peers: Dict[str, Any] = {}

    async def _send(self, peer_id: str, websocket: Any, frame: str) -> bool:
        try:
            await websocket.send(frame)
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Could not reach {peer_id}: connection closed")
            return False

    async def broadcast(self, frame: str, exclude: Optional[str] = None) -> int:
        sent = 0
        for peer_id, websocket in list(self.peers.items()):
            if peer_id == exclude:
                continue
            if await self._send(peer_id, websocket, frame):
                sent += 1
        return sent

    async def _register(self, peer_id: str, websocket: Any) -> None:
        previous = self.peers.get(peer_id)
        if previous is not None and previous is not websocket:
            logger.warning(f"Peer {peer_id} re-registered, replacing old socket")
        self.peers[peer_id] = websocket
        logger.info(f"Registered peer: {peer_id} (total: {len(self.peers)})")

        for other_id in list(self.peers):
            if other_id != peer_id:
                frame = encode_signal(PeerOnlineSignal(from_peer=other_id, to_peer=peer_id))
                await self._send(peer_id, websocket, frame)

    async def _route(self, peer_id: str, data: Dict[str, Any]) -> None:
        # The registered id is authoritative for the sender
        data["from"] = peer_id
        frame = json.dumps(data)

        target = data.get("to")
        if target:
            websocket = self.peers.get(target)
            if websocket is None:
                logger.warning(f"Target peer not found: {target}")
                return
            await self._send(target, websocket, frame)
            logger.debug(f"Forwarded {data.get('type')} from {peer_id} to {target}")
        else:
            sent = await self.broadcast(frame, exclude=peer_id)
            logger.debug(f"Broadcast {data.get('type')} from {peer_id} to {sent} peer(s)")

    async def handler(self, websocket: Any) -> None:
        """Handle one WebSocket connection."""
        peer_id = None

        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except ValueError:
                    logger.warning(f"Dropping invalid JSON from {peer_id or 'unregistered peer'}")
                    continue
                if not isinstance(data, dict):
                    continue

                if data.get("type") == "register":
                    new_id = data.get("peer_id")
                    if not isinstance(new_id, str) or not new_id:
                        logger.warning("Register frame without peer_id")
                        continue
                    peer_id = new_id
                    await self._register(peer_id, websocket)
                elif peer_id is None:
                    logger.warning("Dropping frame from unregistered socket")
                else:
                    await self._route(peer_id, data)

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed: {peer_id}")
        finally:
            if peer_id and self.peers.get(peer_id) is websocket:
                del self.peers[peer_id]
                logger.info(f"Removed peer: {peer_id} (remaining: {len(self.peers)})")
                await self.broadcast(encode_signal(PeerOfflineSignal(from_peer=peer_id)))

    async def serve(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Run the relay until cancelled."""
        async with websockets.serve(self.handler, host, port):
            logger.info(f"Relay server running on ws://{host}:{port}")
            await asyncio.Future()  # Run forever


def run_relay(host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
    try:
        asyncio.run(RelayServer().serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay server stopped")
