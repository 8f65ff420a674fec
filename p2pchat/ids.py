"""Identifier helpers for peers, groups and group messages.

Formats:
    peer id:    peer_<lowercased-nickname>_<epoch-ms>_<8 base36 chars>
    group id:   group_<epoch-ms>_<6 base36 chars>
    message id: <group id>_<epoch-ms>_<9 base36 chars>
"""

import secrets
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_peer_id(nickname: str) -> str:
    """Mint a globally unique peer id for a nickname.

    Args:
        nickname: Display name chosen by the user. Must be non-empty.

    Returns:
        Peer id string.

    Raises:
        ValueError: If the nickname is empty or contains an underscore, which
            would make the id ambiguous to parse.
    """
    nickname = nickname.strip().lower()
    if not nickname:
        raise ValueError("Nickname cannot be empty")
    if "_" in nickname:
        raise ValueError("Nickname cannot contain '_'")
    return f"peer_{nickname}_{now_ms()}_{_random_suffix(8)}"


def generate_group_id() -> str:
    return f"group_{now_ms()}_{_random_suffix(6)}"


def is_group_id(value: str) -> bool:
    return value.startswith("group_")


def generate_message_id(group_id: str) -> str:
    return f"{group_id}_{now_ms()}_{_random_suffix(9)}"


def nickname_from_peer_id(peer_id: str) -> str:
    """Extract the nickname part of a peer id.

    Falls back to the whole id when it does not follow the peer id format.
    """
    parts = peer_id.split("_")
    if len(parts) >= 2 and parts[0] == "peer":
        return parts[1]
    return peer_id
