"""Chunked file transfer over chat data channels.

A file is base64 encoded and the encoded text is split into fixed-size chunks
sent as JSON envelopes::

    file-start  {fileName, fileType, fileSize, totalChunks, timestamp, groupId?}
    file-chunk  {chunkIndex, data, fileName, timestamp, groupId?}   x totalChunks
    file-end    {fileName, timestamp, groupId?}

The sender waits for the channel's send buffer to drain below a threshold
before each chunk. The receiver stores chunks by index and rebuilds the file
only when every declared chunk has arrived.
"""

import asyncio
import base64
import binascii
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, NamedTuple, Optional

from p2pchat.errors import ChannelUnavailableError, TransferAbortedError
from p2pchat.ids import now_ms
from p2pchat.protocol import FileChunk, FileEnd, FileStart
from p2pchat.rtc.channel import ChannelTransport

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256_000  # base64 characters per chunk
BUFFER_THRESHOLD = 64 * 1024  # 64 KB
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DRAIN_TIMEOUT = 30.0  # seconds
ASSEMBLY_TIMEOUT = 300.0  # seconds


def encode_file(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def split_encoded(encoded: str, chunk_size: int = CHUNK_SIZE) -> List[str]:
    """Split base64 text into chunks of at most ``chunk_size`` characters."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [encoded[i : i + chunk_size] for i in range(0, len(encoded), chunk_size)]


def count_chunks(file_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Number of chunks a file of ``file_size`` bytes is split into."""
    encoded_length = 4 * math.ceil(file_size / 3)
    return math.ceil(encoded_length / chunk_size)


async def send_file(
    channels: ChannelTransport,
    peer_id: str,
    data: bytes,
    file_name: str,
    file_type: str = "application/octet-stream",
    group_id: Optional[str] = None,
    chunk_size: int = CHUNK_SIZE,
    buffer_threshold: int = BUFFER_THRESHOLD,
    drain_timeout: float = DRAIN_TIMEOUT,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> FileStart:
    """Send a file to one peer over its open channel.

    Args:
        channels: Channel registry holding the peer's open channel.
        peer_id: Recipient.
        data: File contents.
        file_name: Name shown to the recipient.
        file_type: MIME type.
        group_id: Group the file is shared in, if any.
        chunk_size: Base64 characters per chunk.
        buffer_threshold: Pause before a chunk while more bytes than this are
            buffered on the channel.
        drain_timeout: Seconds to wait for the buffer to drain.
        on_progress: Optional callable(chunks_sent, total_chunks).

    Returns:
        The ``file-start`` envelope that was sent.

    Raises:
        TransferAbortedError: If the channel closes or stalls mid-transfer.
    """
    chunks = split_encoded(encode_file(data), chunk_size)
    header = FileStart(
        file_name=file_name,
        file_type=file_type,
        file_size=len(data),
        total_chunks=len(chunks),
        timestamp=now_ms(),
        group_id=group_id,
    )

    logger.info(
        f"Sending {file_name} ({len(data)} bytes, {len(chunks)} chunks) to {peer_id}"
    )

    try:
        channels.send(peer_id, header)

        for index, chunk in enumerate(chunks):
            await channels.wait_for_buffer_below(
                peer_id, buffer_threshold, drain_timeout
            )
            channels.send(
                peer_id,
                FileChunk(
                    chunk_index=index,
                    data=chunk,
                    group_id=group_id,
                    file_name=file_name,
                    timestamp=header.timestamp,
                ),
            )
            if on_progress:
                on_progress(index + 1, len(chunks))

        channels.send(
            peer_id,
            FileEnd(file_name=file_name, group_id=group_id, timestamp=header.timestamp),
        )
    except ChannelUnavailableError as e:
        logger.error(f"Transfer of {file_name} to {peer_id} aborted: {e}")
        raise TransferAbortedError(
            f"Channel to {peer_id} closed while sending {file_name}"
        ) from e
    except asyncio.TimeoutError:
        logger.error(f"Transfer of {file_name} to {peer_id} stalled")
        raise TransferAbortedError(
            f"Send buffer to {peer_id} did not drain within {drain_timeout}s"
        )

    logger.info(f"Sent {file_name} to {peer_id}")
    return header


@dataclass(frozen=True)
class ReceivedFile:
    """A fully reassembled incoming file."""

    sender: str
    file_name: str
    file_type: str
    file_size: int
    data: bytes
    timestamp: int
    group_id: Optional[str] = None


class AssemblyKey(NamedTuple):
    sender: str
    group_id: Optional[str]
    file_name: str
    timestamp: int


@dataclass
class IncomingFileAssembly:
    header: FileStart
    chunks: Dict[int, str] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def is_complete(self) -> bool:
        return len(self.chunks) == self.header.total_chunks


class FileAssembler:
    """Reassembles incoming files from start/chunk/end envelopes.

    Chunk and end envelopes that do not name their transfer (browser peers
    send only ``chunkIndex``/``data``/``groupId``) are matched to the sender's
    most recently started transfer in the same group scope.

    Args:
        assembly_timeout: Seconds without progress before an incomplete
            assembly is dropped by ``purge_stale``.
        clock: Monotonic time source, replaceable in tests.
    """

    def __init__(
        self,
        assembly_timeout: float = ASSEMBLY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.assembly_timeout = assembly_timeout
        self._clock = clock
        self._assemblies: Dict[AssemblyKey, IncomingFileAssembly] = {}

    def __len__(self) -> int:
        return len(self._assemblies)

    def _find(
        self,
        sender: str,
        group_id: Optional[str],
        file_name: Optional[str],
        timestamp: Optional[int],
    ) -> Optional[AssemblyKey]:
        if file_name is not None and timestamp is not None:
            key = AssemblyKey(sender, group_id, file_name, timestamp)
            return key if key in self._assemblies else None

        # Dict order is start order, so the last match is the most recent
        match = None
        for key in self._assemblies:
            if key.sender != sender or key.group_id != group_id:
                continue
            if file_name is not None and key.file_name != file_name:
                continue
            match = key
        return match

    def start(self, sender: str, header: FileStart) -> AssemblyKey:
        key = AssemblyKey(sender, header.group_id, header.file_name, header.timestamp)
        if key in self._assemblies:
            logger.warning(f"Restarting transfer of {header.file_name} from {sender}")
        self._assemblies[key] = IncomingFileAssembly(
            header=header, last_activity=self._clock()
        )
        logger.info(
            f"Receiving {header.file_name} from {sender} "
            f"({header.file_size} bytes, {header.total_chunks} chunks)"
        )
        return key

    def add_chunk(self, sender: str, chunk: FileChunk) -> bool:
        """Store a chunk by index. Returns False if it matched no transfer."""
        key = self._find(sender, chunk.group_id, chunk.file_name, chunk.timestamp)
        if key is None:
            logger.debug(f"Dropping chunk {chunk.chunk_index} from {sender}: no transfer")
            return False

        assembly = self._assemblies[key]
        if not 0 <= chunk.chunk_index < assembly.header.total_chunks:
            logger.warning(
                f"Dropping out-of-range chunk {chunk.chunk_index} of {key.file_name} "
                f"from {sender}"
            )
            return False

        assembly.chunks[chunk.chunk_index] = chunk.data
        assembly.last_activity = self._clock()
        return True

    def finish(self, sender: str, end: FileEnd) -> Optional[ReceivedFile]:
        """Complete a transfer.

        The assembly is discarded either way. Returns the file only if every
        declared chunk arrived and the payload decodes.
        """
        key = self._find(sender, end.group_id, end.file_name, end.timestamp)
        if key is None:
            logger.debug(f"Dropping file-end for {end.file_name} from {sender}: no transfer")
            return None

        assembly = self._assemblies.pop(key)
        header = assembly.header
        if not assembly.is_complete:
            logger.debug(
                f"Discarding {header.file_name} from {sender}: "
                f"{len(assembly.chunks)}/{header.total_chunks} chunks"
            )
            return None

        encoded = "".join(assembly.chunks[i] for i in sorted(assembly.chunks))
        try:
            data = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Discarding {header.file_name} from {sender}: bad base64 ({e})")
            return None

        logger.info(f"Received {header.file_name} from {sender} ({len(data)} bytes)")
        return ReceivedFile(
            sender=sender,
            file_name=header.file_name,
            file_type=header.file_type,
            file_size=header.file_size,
            data=data,
            timestamp=header.timestamp,
            group_id=header.group_id,
        )

    def purge_stale(self) -> int:
        """Drop assemblies idle for ``assembly_timeout`` or longer."""
        cutoff = self._clock() - self.assembly_timeout
        stale = [k for k, a in self._assemblies.items() if a.last_activity <= cutoff]
        for key in stale:
            del self._assemblies[key]
            logger.info(f"Dropped stalled transfer of {key.file_name} from {key.sender}")
        return len(stale)

    def discard_sender(self, sender: str) -> int:
        """Drop every assembly from a sender, e.g. when it goes offline."""
        keys = [k for k in self._assemblies if k.sender == sender]
        for key in keys:
            del self._assemblies[key]
        return len(keys)
