"""
Readers over remote command output.

Provides:
- LineReader: line-oriented UTF-8 reader over an asyncssh bytes stream
- drain_to_string: read a stream to EOF and decode it as UTF-8

Both are only valid while the channel that owns the stream is connected.
Read and decode failures are raised as StreamError.
"""
from __future__ import annotations

from typing import AsyncIterator

import asyncssh

from scopessh.errors import StreamError

ENCODING = "utf-8"


def _decode(data: bytes, encoding: str) -> str:
    try:
        return data.decode(encoding)
    except UnicodeDecodeError as e:
        raise StreamError(f"Remote output is not valid {encoding}: {e}") from e


class LineReader:
    """
    Buffered line reader over a channel's stdout.

    Usage:
        async def count(reader: LineReader) -> int:
            return len([line async for line in reader])

    Lines are returned without their trailing newline (``\\n`` or ``\\r\\n``).
    A reader over a missing stream behaves as an empty one.
    """

    def __init__(self, stream: asyncssh.SSHReader | None, encoding: str = ENCODING) -> None:
        self._stream = stream
        self._encoding = encoding
        self._eof = stream is None
        self._lines_read = 0

    @property
    def lines_read(self) -> int:
        return self._lines_read

    @property
    def at_eof(self) -> bool:
        return self._eof

    async def readline(self) -> str | None:
        """Return the next line, or None at end of stream."""
        if self._eof:
            return None
        try:
            raw = await self._stream.readline()
        except (asyncssh.Error, OSError) as e:
            raise StreamError(f"Failed reading remote output: {e}") from e

        if not raw:
            self._eof = True
            return None

        self._lines_read += 1
        line = _decode(raw, self._encoding)
        if line.endswith("\n"):
            line = line[:-1]
            if line.endswith("\r"):
                line = line[:-1]
        return line

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter_lines()

    async def _iter_lines(self) -> AsyncIterator[str]:
        while True:
            line = await self.readline()
            if line is None:
                return
            yield line

    async def read_lines(self) -> list[str]:
        """Read every remaining line."""
        return [line async for line in self]

    async def read_all(self) -> str:
        """Read the rest of the stream as one string, newlines preserved."""
        if self._eof:
            return ""
        text = await drain_to_string(self._stream, self._encoding)
        self._eof = True
        return text


async def drain_to_string(stream: asyncssh.SSHReader | None, encoding: str = ENCODING) -> str:
    """
    Read ``stream`` to EOF and decode it.

    Returns an empty string when the stream is missing.
    """
    if stream is None:
        return ""
    try:
        data = await stream.read()
    except (asyncssh.Error, OSError) as e:
        raise StreamError(f"Failed reading remote output: {e}") from e
    return _decode(data or b"", encoding)
