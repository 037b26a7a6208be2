# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Compressor - Streaming gzip for snapshot artifacts.

Snapshots are stored as gzip (RFC 1952) so operators can inspect them
with standard tools (``gunzip -c dump.sql.gz | less``).

Both directions work chunk by chunk: neither the uncompressed export nor
the decompressed restore stream is ever held in memory as a whole. Peak
memory is a small multiple of the chunk size plus the fixed zlib state.
"""

import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator

import aiofiles
import structlog

from pgsnap.exceptions import CompressionError

logger = structlog.get_logger()

# wbits=31 selects the gzip container with a 32 KiB window
GZIP_WBITS = 31
DEFAULT_LEVEL = 6
DEFAULT_CHUNK_SIZE = 64 * 1024


@dataclass
class CompressionStats:
    """Byte counts for one compression pass."""

    original_size: int = 0
    compressed_size: int = 0

    @property
    def ratio(self) -> float:
        if self.compressed_size == 0:
            return 0.0
        return self.original_size / self.compressed_size


async def compress_stream(
    chunks: AsyncIterator[bytes],
    sink: Any,
    level: int = DEFAULT_LEVEL,
) -> CompressionStats:
    """
    Compress an async byte stream into a sink.

    Args:
        chunks: Async iterator of uncompressed chunks
        sink: Object with an async ``write(bytes)`` (e.g. an aiofiles handle)
        level: gzip compression level (1-9)

    Returns:
        CompressionStats for the stream

    Raises:
        CompressionError: If zlib rejects the input or level
    """
    stats = CompressionStats()
    try:
        compressor = zlib.compressobj(level, zlib.DEFLATED, GZIP_WBITS)
    except (ValueError, zlib.error) as e:
        raise CompressionError(
            f"Invalid compression settings: {e}", details={"level": level}
        ) from e

    async for chunk in chunks:
        if not chunk:
            continue
        stats.original_size += len(chunk)
        out = compressor.compress(chunk)
        if out:
            stats.compressed_size += len(out)
            await sink.write(out)

    tail = compressor.flush()
    stats.compressed_size += len(tail)
    await sink.write(tail)

    logger.debug(
        "compression_complete",
        original_size=stats.original_size,
        compressed_size=stats.compressed_size,
        compression_ratio=f"{stats.ratio:.2f}x",
    )

    return stats


async def decompress_stream(
    chunks: AsyncIterator[bytes],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[bytes]:
    """
    Decompress a gzip byte stream.

    Output is produced in pieces of at most ``chunk_size`` bytes, so a
    highly compressible input cannot inflate into one huge buffer.
    Concatenated gzip members are decoded back to back.

    Raises:
        CompressionError: If the input is corrupt, truncated or empty
    """
    decompressor = zlib.decompressobj(GZIP_WBITS)
    seen_input = False
    member_open = False

    async for chunk in chunks:
        if not chunk:
            continue
        seen_input = True
        data = chunk
        while data:
            member_open = True
            try:
                out = decompressor.decompress(data, chunk_size)
            except zlib.error as e:
                raise CompressionError(f"Decompression failed: {e}") from e
            if out:
                yield out

            if decompressor.eof:
                # Next gzip member, if any
                data = decompressor.unused_data
                decompressor = zlib.decompressobj(GZIP_WBITS)
                member_open = False
            else:
                data = decompressor.unconsumed_tail

    if not seen_input:
        raise CompressionError("Decompression failed: empty input")

    if member_open:
        # Output may still be pending when the last call hit chunk_size
        try:
            tail = decompressor.flush()
        except zlib.error as e:
            raise CompressionError(f"Decompression failed: {e}") from e
        if tail:
            yield tail
        if not decompressor.eof:
            raise CompressionError("Decompression failed: truncated gzip stream")


async def iter_file(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read a file as an async iterator of chunks."""
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk
