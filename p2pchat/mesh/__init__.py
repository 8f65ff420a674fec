"""Group chat over a full mesh of data channels.

This module provides:
- groups: Group records and the local registry
- relay: seen-message set and store-and-forward relay
- mesh_manager: mesh connectivity, membership and group broadcast
"""

from p2pchat.mesh.groups import Group, GroupRegistry
from p2pchat.mesh.mesh_manager import BroadcastResult, GroupMeshManager
from p2pchat.mesh.relay import MessageRelay, SeenMessageSet

__all__ = [
    "BroadcastResult",
    "Group",
    "GroupMeshManager",
    "GroupRegistry",
    "MessageRelay",
    "SeenMessageSet",
]
