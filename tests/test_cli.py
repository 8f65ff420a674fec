"""Unit tests for CLI commands and the chat console.

Tests for:
- Command wiring and option validation
- Console command parsing
- Rendering and saving of session events
"""

from unittest import mock

import pytest
from click.testing import CliRunner

from p2pchat.cli import cli
from p2pchat.errors import DeliveryFailedError, GroupError
from p2pchat.events import (
    FileReceived,
    GroupInvitationReceived,
    MessageReceived,
    PeerPresenceChanged,
    TypingChanged,
)
from p2pchat.file_transfer import ReceivedFile
from p2pchat.mesh.groups import Group
from p2pchat.mesh.mesh_manager import BroadcastResult
from p2pchat.rtc_chat import (
    ChatConsole,
    deliver,
    format_event,
    save_received_file,
    split_targets,
)

ALICE = "peer_alice_1700000000000_abcd1234"
BOB = "peer_bob_1700000000000_efgh5678"
CAROL = "peer_carol_1700000000000_ijkl9012"


@pytest.fixture
def runner():
    """Create a CLI runner for testing."""
    return CliRunner()


class TestNewIdCommand:
    def test_prints_peer_id(self, runner):
        result = runner.invoke(cli, ["new-id", "Alice"])
        assert result.exit_code == 0
        assert result.output.startswith("peer_alice_")

    def test_rejects_underscore(self, runner):
        result = runner.invoke(cli, ["new-id", "al_ice"])
        assert result.exit_code != 0


class TestSendCommand:
    def test_requires_something_to_send(self, runner):
        result = runner.invoke(cli, ["send", "-n", "alice", "--to", BOB])
        assert result.exit_code != 0
        assert "Nothing to send" in result.output

    def test_requires_identity(self, runner):
        result = runner.invoke(cli, ["send", "--to", BOB, "-m", "hi"])
        assert result.exit_code != 0
        assert "--nickname" in result.output

    def test_passes_options_through(self, runner):
        """Should hand the message and server overrides to run_send."""
        with mock.patch("p2pchat.cli.run_send") as run_send:
            result = runner.invoke(
                cli,
                ["send", "--peer-id", ALICE, "--to", BOB, "-m", "hello", "-s", "ws://x:1"],
            )

        assert result.exit_code == 0
        args, kwargs = run_send.call_args
        assert args == (ALICE, [BOB])
        assert kwargs["message"] == "hello"
        assert kwargs["file_path"] is None
        assert kwargs["config"].signaling_servers == ["ws://x:1"]

    def test_several_recipients(self, runner):
        with mock.patch("p2pchat.cli.run_send") as run_send:
            result = runner.invoke(
                cli,
                ["send", "--peer-id", ALICE, "--to", BOB, "--to", CAROL, "-m", "hello"],
            )

        assert result.exit_code == 0
        args, _ = run_send.call_args
        assert args == (ALICE, [BOB, CAROL])

    def test_oversized_file_rejected(self, runner, tmp_path):
        big = tmp_path / "big.bin"
        big.write_bytes(b"x" * 32)
        with mock.patch("p2pchat.cli.get_config") as get_config, mock.patch(
            "p2pchat.cli.run_send"
        ) as run_send:
            get_config.return_value.transfer.max_file_size = 16
            result = runner.invoke(
                cli, ["send", "--peer-id", ALICE, "--to", BOB, "--file", str(big)]
            )

        assert result.exit_code == 1
        run_send.assert_not_called()

    def test_failure_exits_nonzero(self, runner):
        with mock.patch(
            "p2pchat.cli.run_send", side_effect=DeliveryFailedError(BOB)
        ):
            result = runner.invoke(cli, ["send", "--peer-id", ALICE, "--to", BOB, "-m", "hi"])
        assert result.exit_code == 1


class TestChatCommand:
    def test_help(self, runner):
        result = runner.invoke(cli, ["chat", "--help"])
        assert result.exit_code == 0
        assert "--download-dir" in result.output

    def test_mints_id_from_nickname(self, runner):
        with mock.patch("p2pchat.cli.run_chat") as run_chat:
            result = runner.invoke(cli, ["chat", "-n", "alice", "--download-dir", "dl"])
        assert result.exit_code == 0
        args, kwargs = run_chat.call_args
        assert args[0].startswith("peer_alice_")
        assert kwargs["download_dir"] == "dl"


class TestRelayCommand:
    def test_runs_relay(self, runner):
        with mock.patch("p2pchat.cli.run_relay") as run_relay:
            result = runner.invoke(cli, ["relay", "--host", "0.0.0.0", "--port", "9000"])
        assert result.exit_code == 0
        run_relay.assert_called_once_with("0.0.0.0", 9000)


def make_console(tmp_path):
    session = mock.MagicMock()
    session.send_message = mock.AsyncMock()
    session.send_file = mock.AsyncMock()
    session.create_group = mock.AsyncMock()
    session.accept_invitation = mock.AsyncMock()
    session.send_group_message = mock.AsyncMock(return_value=BroadcastResult(sent=2))
    session.broadcast = mock.AsyncMock(return_value=BroadcastResult(sent=3))
    session.online_peers = [ALICE, BOB]
    output = []
    console = ChatConsole(session, tmp_path, echo=output.append)
    return console, session, output


class TestChatConsole:
    @pytest.mark.asyncio
    async def test_plain_text_needs_current_peer(self, tmp_path):
        console, session, output = make_console(tmp_path)

        assert await console.handle_line("hello") is True
        session.send_message.assert_not_awaited()

        await console.handle_line(f"/to {BOB}")
        await console.handle_line("hello there")
        session.send_message.assert_awaited_once_with(BOB, "hello there")

    @pytest.mark.asyncio
    async def test_msg_command(self, tmp_path):
        console, session, _ = make_console(tmp_path)
        await console.handle_line(f'/msg {BOB} "quoted words" and more')
        session.send_message.assert_awaited_once_with(BOB, "quoted words and more")

    @pytest.mark.asyncio
    async def test_quit(self, tmp_path):
        console, _, _ = make_console(tmp_path)
        assert await console.handle_line("/quit") is False

    @pytest.mark.asyncio
    async def test_errors_are_reported(self, tmp_path):
        console, session, output = make_console(tmp_path)
        session.send_message.side_effect = DeliveryFailedError(BOB)
        session.accept_invitation.side_effect = GroupError("No pending invitation")

        await console.handle_line(f"/msg {BOB} hi")
        await console.handle_line("/group accept group_1_abcdef")

        assert len([line for line in output if line.startswith("Error:")]) == 2

    @pytest.mark.asyncio
    async def test_file_command(self, tmp_path):
        console, session, _ = make_console(tmp_path)
        path = tmp_path / "notes.txt"
        path.write_text("hello")

        await console.handle_line(f"/file {BOB} {path}")

        session.send_file.assert_awaited_once_with(BOB, b"hello", "notes.txt", "text/plain")

    @pytest.mark.asyncio
    async def test_missing_file_reported(self, tmp_path):
        console, session, output = make_console(tmp_path)
        await console.handle_line(f"/file {BOB} {tmp_path / 'nope.txt'}")
        assert output[-1].startswith("Error:")
        session.send_file.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_group_commands(self, tmp_path):
        console, session, output = make_console(tmp_path)
        session.create_group.return_value = Group(
            "group_1_abcdef", "team", [ALICE, BOB], created_by=ALICE
        )

        await console.handle_line(f"/group create team {BOB}")
        await console.handle_line("/group send group_1_abcdef hi team")

        session.create_group.assert_awaited_once_with("team", [BOB])
        session.send_group_message.assert_awaited_once_with("group_1_abcdef", "hi team")
        assert "Created group group_1_abcdef" in output

    @pytest.mark.asyncio
    async def test_broadcast_splits_peers_and_groups(self, tmp_path):
        console, session, output = make_console(tmp_path)

        await console.handle_line(f"/broadcast {BOB},group_1_abcdef,{CAROL} big news")

        session.broadcast.assert_awaited_once_with(
            [BOB, CAROL], ["group_1_abcdef"], content="big news"
        )
        assert output[-1] == "Broadcast reached 3 target(s), 0 failed"

    @pytest.mark.asyncio
    async def test_broadcast_file_reports_failures(self, tmp_path):
        console, session, output = make_console(tmp_path)
        session.broadcast.return_value = BroadcastResult(
            sent=1, failed=1, failed_peers=[CAROL]
        )
        path = tmp_path / "notes.txt"
        path.write_text("hello")

        await console.handle_line(f"/broadcast-file {BOB},{CAROL} {path}")

        session.broadcast.assert_awaited_once_with(
            [BOB, CAROL],
            [],
            data=b"hello",
            file_name="notes.txt",
            file_type="text/plain",
        )
        assert output[-1] == f"Not delivered to: {CAROL}"

    @pytest.mark.asyncio
    async def test_peers(self, tmp_path):
        console, _, output = make_console(tmp_path)
        await console.handle_line("/peers")
        assert output == [f"{ALICE}\n{BOB}"]

    def test_received_file_saved(self, tmp_path):
        console, _, output = make_console(tmp_path)
        received = ReceivedFile(BOB, "photo.png", "image/png", 3, b"abc", 1)

        console.on_event(FileReceived(received))

        assert (tmp_path / "photo.png").read_bytes() == b"abc"
        assert output[-1].endswith(str(tmp_path / "photo.png"))


class TestSaveReceivedFile:
    def test_does_not_overwrite(self, tmp_path):
        received = ReceivedFile(BOB, "a.txt", "text/plain", 1, b"1", 1)
        first = save_received_file(received, tmp_path)
        second = save_received_file(received, tmp_path)
        assert first.name == "a.txt"
        assert second.name == "a (1).txt"

    def test_strips_directories(self, tmp_path):
        received = ReceivedFile(BOB, "../../etc/passwd", "text/plain", 1, b"1", 1)
        path = save_received_file(received, tmp_path)
        assert path.parent == tmp_path
        assert path.name == "passwd"


class TestFormatEvent:
    def test_direct_and_group_messages(self):
        assert format_event(MessageReceived(BOB, "hi", 1)) == "bob: hi"
        assert (
            format_event(MessageReceived(BOB, "hi", 1, group_id="group_1_abcdef"))
            == "[group_1_abcdef] bob: hi"
        )

    def test_typing_is_silent(self):
        assert format_event(TypingChanged(BOB, True)) is None

    def test_invitation_shows_accept_command(self):
        group = Group("group_1_abcdef", "team", [BOB, ALICE], created_by=BOB)
        line = format_event(GroupInvitationReceived(group, BOB))
        assert "/group accept group_1_abcdef" in line

    def test_presence(self):
        assert format_event(PeerPresenceChanged(BOB, False)) == f"* {BOB} is offline"


class TestSplitTargets:
    def test_groups_by_prefix(self):
        assert split_targets(f" {BOB}, group_1_abcdef ,,{CAROL}") == (
            [BOB, CAROL],
            ["group_1_abcdef"],
        )


class TestDeliver:
    @pytest.mark.asyncio
    async def test_message_and_file_to_each_recipient(self, tmp_path):
        session = mock.MagicMock()
        session.broadcast = mock.AsyncMock(
            side_effect=[
                BroadcastResult(sent=2),
                BroadcastResult(sent=1, failed=1, failed_peers=[CAROL]),
            ]
        )
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        output = []

        failed = await deliver(session, [BOB, CAROL, BOB], "hi", path, echo=output.append)

        assert failed == [CAROL]
        first, second = session.broadcast.await_args_list
        assert first == mock.call([BOB, CAROL], content="hi")
        assert second.args == ([BOB, CAROL],)
        assert second.kwargs["data"] == b"hello"
        assert output == [
            "Message delivered to 2 of 2 peer(s)",
            "notes.txt delivered to 1 of 2 peer(s)",
        ]
