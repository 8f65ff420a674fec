"""Runners behind the ``p2pchat send`` and ``p2pchat chat`` commands."""

import asyncio
import logging
import mimetypes
import shlex
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import click

from p2pchat.config import Config, get_config
from p2pchat.errors import P2PChatError
from p2pchat.events import (
    ChatEvent,
    ConnectivityChanged,
    FileReceived,
    GroupDissolved,
    GroupInvitationReceived,
    MembersJoined,
    MessageReceived,
    PeerPresenceChanged,
    TypingChanged,
)
from p2pchat.file_transfer import ReceivedFile
from p2pchat.ids import is_group_id, nickname_from_peer_id
from p2pchat.session import ChatSession
from p2pchat.signaling.transport import create_signal_transport

HELP_TEXT = """Commands:
  <text>                          send text to the current peer (see /to)
  /to <peer>                      set the current peer
  /msg <peer> <text>              send a direct message
  /file <peer> <path>             send a file
  /peers                          list online peers
  /group create <name> <peer>...  create a group and invite peers
  /group accept <group>           accept a pending invitation
  /group reject <group>           reject a pending invitation
  /group invite <group> <peer>... invite more peers
  /group send <group> <text>      send text to a group
  /group file <group> <path>      send a file to a group
  /group leave <group>            leave a group
  /groups                         list joined groups and pending invitations
  /broadcast <targets> <text>     send text to peers and groups (comma-separated)
  /broadcast-file <targets> <path> send a file to peers and groups
  /quit                           leave"""


def configure_logging(verbose: bool = False) -> None:
    """Configure the root logger for CLI use and quiet the WebRTC stack."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("aiortc").setLevel(logging.WARNING)
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def guess_type(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


def save_received_file(received: ReceivedFile, directory: Path) -> Path:
    """Write a received file into ``directory`` without overwriting.

    Only the base name sent by the peer is used.
    """
    directory.mkdir(parents=True, exist_ok=True)
    name = Path(received.file_name).name or "received.bin"
    target = directory / name
    counter = 1
    while target.exists():
        target = directory / f"{Path(name).stem} ({counter}){Path(name).suffix}"
        counter += 1
    target.write_bytes(received.data)
    return target


def split_targets(targets: str) -> Tuple[List[str], List[str]]:
    """Split a comma-separated target list into ``(peer_ids, group_ids)``."""
    peer_ids, group_ids = [], []
    for target in targets.split(","):
        target = target.strip()
        if not target:
            continue
        if is_group_id(target):
            group_ids.append(target)
        else:
            peer_ids.append(target)
    return peer_ids, group_ids


def format_event(event: ChatEvent) -> Optional[str]:
    """One-line rendering of a session event, or None to stay quiet."""
    if isinstance(event, MessageReceived):
        who = nickname_from_peer_id(event.sender)
        if event.group_id:
            return f"[{event.group_id}] {who}: {event.content}"
        return f"{who}: {event.content}"
    elif isinstance(event, TypingChanged):
        return None
    elif isinstance(event, FileReceived):
        f = event.file
        return f"{nickname_from_peer_id(f.sender)} sent {f.file_name} ({f.file_size} bytes)"
    elif isinstance(event, GroupInvitationReceived):
        g = event.group
        return (
            f"{nickname_from_peer_id(event.invited_by)} invited you to '{g.name}' "
            f"({g.member_count} members). /group accept {g.group_id}"
        )
    elif isinstance(event, MembersJoined):
        names = ", ".join(nickname_from_peer_id(p) for p in event.peer_ids)
        return f"[{event.group_id}] {names} joined"
    elif isinstance(event, ConnectivityChanged):
        state = "connected" if event.connected else "disconnected"
        return f"* {state}: {event.peer_id}"
    elif isinstance(event, PeerPresenceChanged):
        state = "online" if event.online else "offline"
        return f"* {event.peer_id} is {state}"
    elif isinstance(event, GroupDissolved):
        return f"* group '{event.group.name}' closed: no member online"
    return None


class ChatConsole:
    """Line-oriented front end for a ``ChatSession``.

    Args:
        session: The session commands act on.
        download_dir: Where received files are written.
        echo: Output function.
    """

    def __init__(self, session: ChatSession, download_dir: Path, echo=click.echo):
        self.session = session
        self.download_dir = download_dir
        self.echo = echo
        self.current_peer: Optional[str] = None

    def on_event(self, event: ChatEvent) -> None:
        if isinstance(event, FileReceived):
            path = save_received_file(event.file, self.download_dir)
            self.echo(f"{format_event(event)} -> {path}")
            return
        line = format_event(event)
        if line:
            self.echo(line)

    async def _send_file(self, peer_id: str, path: Path, group_id: Optional[str] = None):
        data = path.read_bytes()
        if group_id:
            result = await self.session.send_group_file(
                group_id, data, path.name, guess_type(path)
            )
            self.echo(f"Sent {path.name} to {result.sent} member(s), {result.failed} failed")
        else:
            await self.session.send_file(peer_id, data, path.name, guess_type(path))
            self.echo(f"Sent {path.name}")

    async def _group_command(self, args) -> None:
        if not args:
            self.echo(HELP_TEXT)
            return
        action, rest = args[0], args[1:]

        if action == "create" and len(rest) >= 2:
            group = await self.session.create_group(rest[0], rest[1:])
            self.echo(f"Created group {group.group_id}")
        elif action == "accept" and len(rest) == 1:
            group = await self.session.accept_invitation(rest[0])
            self.echo(f"Joined '{group.name}' ({group.member_count} members)")
        elif action == "reject" and len(rest) == 1:
            if not self.session.reject_invitation(rest[0]):
                self.echo(f"No pending invitation for {rest[0]}")
        elif action == "invite" and len(rest) >= 2:
            result = await self.session.invite_members(rest[0], rest[1:])
            self.echo(f"Invited {result.sent} peer(s), {result.failed} failed")
        elif action == "send" and len(rest) >= 2:
            result = await self.session.send_group_message(rest[0], " ".join(rest[1:]))
            if result.failed:
                self.echo(f"Not delivered to: {', '.join(result.failed_peers)}")
        elif action == "file" and len(rest) == 2:
            await self._send_file(None, Path(rest[1]), group_id=rest[0])
        elif action == "leave" and len(rest) == 1:
            group = self.session.leave_group(rest[0])
            self.echo(f"Left '{group.name}'")
        else:
            self.echo(HELP_TEXT)

    async def _broadcast(self, targets: str, text=None, path: Optional[Path] = None):
        peer_ids, group_ids = split_targets(targets)
        if path is not None:
            result = await self.session.broadcast(
                peer_ids,
                group_ids,
                data=path.read_bytes(),
                file_name=path.name,
                file_type=guess_type(path),
            )
        else:
            result = await self.session.broadcast(peer_ids, group_ids, content=text)
        self.echo(f"Broadcast reached {result.sent} target(s), {result.failed} failed")
        if result.failed:
            self.echo(f"Not delivered to: {', '.join(result.failed_peers)}")

    async def handle_line(self, line: str) -> bool:
        """Run one input line. Returns False when the user quits."""
        line = line.strip()
        if not line:
            return True

        if not line.startswith("/"):
            if self.current_peer is None:
                self.echo("No current peer, use /to <peer>")
                return True
            try:
                await self.session.send_message(self.current_peer, line)
            except P2PChatError as e:
                self.echo(f"Error: {e}")
            return True

        try:
            args = shlex.split(line[1:])
        except ValueError as e:
            self.echo(f"Cannot parse command: {e}")
            return True
        if not args:
            return True
        command, rest = args[0], args[1:]

        try:
            if command == "quit":
                return False
            elif command == "help":
                self.echo(HELP_TEXT)
            elif command == "to" and len(rest) == 1:
                self.current_peer = rest[0]
                self.echo(f"Talking to {rest[0]}")
            elif command == "msg" and len(rest) >= 2:
                await self.session.send_message(rest[0], " ".join(rest[1:]))
            elif command == "file" and len(rest) == 2:
                await self._send_file(rest[0], Path(rest[1]))
            elif command == "peers":
                peers = self.session.online_peers
                self.echo("\n".join(peers) if peers else "No peers online")
            elif command == "groups":
                for group in self.session.groups.all():
                    self.echo(f"{group.group_id} '{group.name}' ({group.member_count})")
                for group in self.session.pending_invitations:
                    self.echo(f"{group.group_id} '{group.name}' (pending)")
            elif command == "group":
                await self._group_command(rest)
            elif command == "broadcast" and len(rest) >= 2:
                await self._broadcast(rest[0], text=" ".join(rest[1:]))
            elif command == "broadcast-file" and len(rest) == 2:
                await self._broadcast(rest[0], path=Path(rest[1]))
            else:
                self.echo(HELP_TEXT)
        except (P2PChatError, OSError) as e:
            self.echo(f"Error: {e}")
        return True


async def _read_lines(console: ChatConsole) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return
        if not await console.handle_line(line):
            return


async def _chat(peer_id: str, config: Config, download_dir: Path) -> None:
    signaling = create_signal_transport(
        config.signaling_servers, peer_id, config.reconnect_delay
    )
    session = ChatSession(peer_id, signaling, config=config)
    console = ChatConsole(session, download_dir)
    session.on_event = console.on_event

    await session.start()
    click.echo(f"You are {peer_id}. Type /help for commands.")
    try:
        await _read_lines(console)
    finally:
        await session.stop()


async def deliver(
    session: ChatSession,
    to_peer_ids: Sequence[str],
    message: Optional[str],
    file_path: Optional[Path],
    echo=click.echo,
) -> List[str]:
    """Send a message and/or file to every recipient.

    Returns:
        Ids of the recipients that missed at least one payload.
    """
    recipients = list(dict.fromkeys(to_peer_ids))
    failed: List[str] = []
    if message:
        result = await session.broadcast(recipients, content=message)
        echo(f"Message delivered to {result.sent} of {len(recipients)} peer(s)")
        failed.extend(result.failed_peers)
    if file_path:
        result = await session.broadcast(
            recipients,
            data=file_path.read_bytes(),
            file_name=file_path.name,
            file_type=guess_type(file_path),
        )
        echo(f"{file_path.name} delivered to {result.sent} of {len(recipients)} peer(s)")
        failed.extend(p for p in result.failed_peers if p not in failed)
    return failed


async def _send(
    peer_id: str,
    to_peer_ids: Sequence[str],
    message: Optional[str],
    file_path: Optional[Path],
    config: Config,
) -> None:
    signaling = create_signal_transport(
        config.signaling_servers, peer_id, config.reconnect_delay
    )
    session = ChatSession(peer_id, signaling, config=config)
    await session.start()
    try:
        if not await signaling.wait_connected(config.connect_timeout):
            raise click.ClickException("Could not reach any signaling server")
        failed = await deliver(session, to_peer_ids, message, file_path)
        if failed:
            raise click.ClickException(f"Not delivered to: {', '.join(failed)}")
    finally:
        await session.stop()


def run_chat(peer_id: str, download_dir: str = ".", config: Optional[Config] = None):
    """Standalone function to run an interactive chat session."""
    try:
        asyncio.run(_chat(peer_id, config or get_config(), Path(download_dir)))
    except KeyboardInterrupt:
        logging.info("Chat interrupted by user. Shutting down...")


def run_send(
    peer_id: str,
    to_peer_ids: Sequence[str],
    message: Optional[str] = None,
    file_path: Optional[str] = None,
    config: Optional[Config] = None,
):
    """Standalone function to deliver one message and/or file, then exit."""
    asyncio.run(
        _send(
            peer_id,
            list(to_peer_ids),
            message,
            Path(file_path) if file_path else None,
            config or get_config(),
        )
    )
