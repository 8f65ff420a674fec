"""WebRTC layer for p2pchat.

This module provides:
- transport: Transport capability and its aiortc implementation
- negotiation: per-peer offer/answer state machine with glare handling
- channel: data channel registry, envelope send and dispatch
- connector: lazy channel (re-)establishment with a bounded wait
"""

from p2pchat.rtc.channel import ChannelTransport
from p2pchat.rtc.connector import PeerConnector
from p2pchat.rtc.negotiation import NegotiationEngine, NegotiationState, PeerConnection
from p2pchat.rtc.transport import AiortcTransport, Transport

__all__ = [
    "AiortcTransport",
    "ChannelTransport",
    "NegotiationEngine",
    "NegotiationState",
    "PeerConnection",
    "PeerConnector",
    "Transport",
]
