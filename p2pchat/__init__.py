"""Serverless peer-to-peer chat over WebRTC data channels.

This package provides:
- session: ChatSession, the per-identity context tying everything together
- rtc: negotiation engine, data channel registry and lazy connector
- mesh: groups, full-mesh management and group message relay
- signaling: WebSocket signal transports for the relay server
- file_transfer: chunked file send and reassembly
"""

__version__ = "0.1.0"
