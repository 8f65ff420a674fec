"""Signal transports carrying WebRTC setup metadata and presence."""

from p2pchat.signaling.transport import (
    MultiSignalTransport,
    SignalTransport,
    WebSocketSignalTransport,
    create_signal_transport,
)

__all__ = [
    "MultiSignalTransport",
    "SignalTransport",
    "WebSocketSignalTransport",
    "create_signal_transport",
]
