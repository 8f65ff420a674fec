"""Tests for chunked file sending and reassembly."""

import asyncio
import base64
import json
import os

import pytest

from fakes import FakeChannel, FakeClock, settle
from p2pchat.errors import TransferAbortedError
from p2pchat.file_transfer import (
    FileAssembler,
    count_chunks,
    encode_file,
    send_file,
    split_encoded,
)
from p2pchat.protocol import FileChunk, FileEnd, FileStart, decode_envelope
from p2pchat.rtc.channel import ChannelTransport

PEER = "peer_alice_1_aaaaaaaa"
SENDER = "peer_carol_1_aaaaaaaa"


class TestChunking:
    def test_split_sizes(self):
        chunks = split_encoded("a" * 10, chunk_size=4)
        assert chunks == ["aaaa", "aaaa", "aa"]

    def test_empty_file_has_no_chunks(self):
        assert split_encoded(encode_file(b"")) == []
        assert count_chunks(0) == 0

    def test_count_matches_split(self):
        for size in (1, 3, 191_999, 192_000, 192_001, 600_000):
            encoded = encode_file(b"x" * size)
            assert count_chunks(size) == len(split_encoded(encoded))

    def test_600kb_file_is_four_chunks(self):
        """800,000 base64 characters split at 256,000 per chunk."""
        assert count_chunks(600_000) == 4

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            split_encoded("abc", chunk_size=0)


def open_channel():
    channels = ChannelTransport()
    channel = FakeChannel(ready_state="open")
    channels.attach(PEER, channel)
    return channels, channel


class TestSendFile:
    @pytest.mark.asyncio
    async def test_start_chunks_end(self):
        channels, channel = open_channel()
        data = os.urandom(1000)
        progress = []

        header = await send_file(
            channels,
            PEER,
            data,
            "photo.png",
            "image/png",
            group_id="group_1_abcdef",
            chunk_size=400,
            on_progress=lambda sent, total: progress.append((sent, total)),
        )

        frames = [decode_envelope(raw) for raw in channel.sent]
        assert frames[0] == header
        assert header.file_size == 1000
        assert header.total_chunks == 4
        assert header.group_id == "group_1_abcdef"
        assert [f.chunk_index for f in frames[1:-1]] == [0, 1, 2, 3]
        assert all(f.file_name == "photo.png" for f in frames[1:])
        assert isinstance(frames[-1], FileEnd)
        assert "".join(f.data for f in frames[1:-1]) == encode_file(data)
        assert progress[-1] == (4, 4)

    @pytest.mark.asyncio
    async def test_waits_for_buffer_to_drain(self):
        channels, channel = open_channel()
        channel.bufferedAmount = 200_000

        task = asyncio.create_task(
            send_file(channels, PEER, b"hello", "a.txt", buffer_threshold=65_536)
        )
        await settle()

        assert len(channel.sent) == 1  # only file-start
        assert json.loads(channel.sent[0])["type"] == "file-start"

        channel.drain(0)
        await asyncio.wait_for(task, 1.0)
        assert len(channel.sent) == 3

    @pytest.mark.asyncio
    async def test_channel_close_aborts(self):
        channels, channel = open_channel()
        channel.bufferedAmount = 200_000

        task = asyncio.create_task(send_file(channels, PEER, b"hello", "a.txt"))
        await settle()
        channel.close()

        with pytest.raises(TransferAbortedError):
            await asyncio.wait_for(task, 1.0)

    @pytest.mark.asyncio
    async def test_stalled_buffer_aborts(self):
        channels, channel = open_channel()
        channel.bufferedAmount = 200_000
        with pytest.raises(TransferAbortedError):
            await send_file(channels, PEER, b"hello", "a.txt", drain_timeout=0.05)

    @pytest.mark.asyncio
    async def test_no_channel_aborts(self):
        with pytest.raises(TransferAbortedError):
            await send_file(ChannelTransport(), PEER, b"hello", "a.txt")


def transfer_frames(data, file_name="report.pdf", chunk_size=256_000, group_id=None):
    chunks = split_encoded(encode_file(data), chunk_size)
    header = FileStart(
        file_name=file_name,
        file_type="application/pdf",
        file_size=len(data),
        total_chunks=len(chunks),
        timestamp=1_700_000_000_000,
        group_id=group_id,
    )
    pieces = [
        FileChunk(i, chunk, group_id, file_name, header.timestamp)
        for i, chunk in enumerate(chunks)
    ]
    end = FileEnd(file_name, group_id, header.timestamp)
    return header, pieces, end


class TestFileAssembler:
    def test_out_of_order_chunks_reassemble(self):
        data = os.urandom(600_000)
        header, pieces, end = transfer_frames(data)
        assert len(pieces) == 4

        assembler = FileAssembler()
        assembler.start(SENDER, header)
        for index in (0, 2, 1, 3):
            assert assembler.add_chunk(SENDER, pieces[index])

        received = assembler.finish(SENDER, end)

        assert received.data == data
        assert received.file_size == 600_000
        assert received.file_type == "application/pdf"
        assert received.sender == SENDER
        assert len(assembler) == 0

    def test_missing_chunk_discards_file(self):
        header, pieces, end = transfer_frames(os.urandom(600_000))
        assembler = FileAssembler()
        assembler.start(SENDER, header)
        for piece in pieces[:-1]:
            assembler.add_chunk(SENDER, piece)

        assert assembler.finish(SENDER, end) is None
        assert len(assembler) == 0

    def test_out_of_range_chunk_rejected(self):
        header, pieces, _ = transfer_frames(b"abc")
        assembler = FileAssembler()
        assembler.start(SENDER, header)
        bogus = FileChunk(5, "QUFB", None, header.file_name, header.timestamp)
        assert assembler.add_chunk(SENDER, bogus) is False

    def test_chunk_without_transfer_dropped(self):
        _, pieces, end = transfer_frames(b"abc")
        assembler = FileAssembler()
        assert assembler.add_chunk(SENDER, pieces[0]) is False
        assert assembler.finish(SENDER, end) is None

    def test_chunks_without_name_match_latest_transfer(self):
        """Browser peers send bare chunks; they join the latest transfer."""
        data = b"browser payload"
        header, _, _ = transfer_frames(data, group_id="group_1_abcdef")
        assembler = FileAssembler()
        assembler.start(SENDER, header)

        encoded = base64.b64encode(data).decode("ascii")
        assembler.add_chunk(SENDER, FileChunk(0, encoded, group_id="group_1_abcdef"))
        received = assembler.finish(
            SENDER, FileEnd(header.file_name, group_id="group_1_abcdef")
        )

        assert received.data == data
        assert received.group_id == "group_1_abcdef"

    def test_concurrent_transfers_kept_apart(self):
        first_data, second_data = b"first file", b"second file"
        first = transfer_frames(first_data, file_name="one.txt")
        second = transfer_frames(second_data, file_name="two.txt")
        assembler = FileAssembler()
        assembler.start(SENDER, first[0])
        assembler.start(SENDER, second[0])

        assembler.add_chunk(SENDER, second[1][0])
        assembler.add_chunk(SENDER, first[1][0])

        assert assembler.finish(SENDER, second[2]).data == second_data
        assert assembler.finish(SENDER, first[2]).data == first_data

    def test_invalid_base64_discarded(self):
        header = FileStart("bad.bin", "application/octet-stream", 3, 1, timestamp=1)
        assembler = FileAssembler()
        assembler.start(SENDER, header)
        assembler.add_chunk(SENDER, FileChunk(0, "!!!!", None, "bad.bin", 1))
        assert assembler.finish(SENDER, FileEnd("bad.bin", None, 1)) is None

    def test_purge_stale(self):
        clock = FakeClock()
        assembler = FileAssembler(assembly_timeout=300, clock=clock)
        header, pieces, _ = transfer_frames(b"abc")
        assembler.start(SENDER, header)

        clock.now += 299
        assert assembler.purge_stale() == 0
        assembler.add_chunk(SENDER, pieces[0])

        clock.now += 300
        assert assembler.purge_stale() == 1
        assert len(assembler) == 0

    def test_discard_sender(self):
        assembler = FileAssembler()
        assembler.start(SENDER, transfer_frames(b"a", file_name="a")[0])
        assembler.start(PEER, transfer_frames(b"b", file_name="b")[0])
        assert assembler.discard_sender(SENDER) == 1
        assert len(assembler) == 1
