"""Streaming search for a multipart boundary inside a request body."""

from typing import BinaryIO

LINE_FEED = 0x0A
FLUSH_SIZE = 64 * 1024


def _fallback_table(pattern: bytes) -> list[int]:
    """table[i]: length of the longest proper prefix of pattern[:i+1] that is
    also its suffix."""
    table = [0] * len(pattern)
    matched = 0
    for index in range(1, len(pattern)):
        while matched and pattern[index] != pattern[matched]:
            matched = table[matched - 1]
        if pattern[index] == pattern[matched]:
            matched += 1
        table[index] = matched
    return table


class BoundaryScanner:
    """Copies a stream up to a boundary one byte at a time.

    Bytes that might belong to the boundary are held back in a lookahead
    buffer no longer than the boundary. On a mismatch the bytes that can no
    longer start a match are forwarded verbatim, so a boundary split across
    any number of underlying reads is still found.
    """

    def __init__(self, boundary: bytes, flush_size: int = FLUSH_SIZE) -> None:
        if not boundary:
            raise ValueError("boundary must not be empty")
        self.boundary = boundary
        self._table = _fallback_table(boundary)
        self._flush_size = flush_size

    def copy_until(self, source: BinaryIO, destination: BinaryIO) -> bool:
        """Copy ``source`` into ``destination`` until the boundary line.

        Returns True with ``source`` positioned after the boundary line, or
        False when the stream ended first (everything read is written out).
        """
        boundary = self.boundary
        table = self._table
        pending = bytearray()
        matched = 0
        while True:
            chunk = source.read(1)
            if not chunk:
                pending += boundary[:matched]
                if pending:
                    destination.write(bytes(pending))
                return False
            byte = chunk[0]
            while matched and byte != boundary[matched]:
                fallback = table[matched - 1]
                pending += boundary[: matched - fallback]
                matched = fallback
            if byte == boundary[matched]:
                matched += 1
            else:
                pending.append(byte)
            if matched == len(boundary):
                if pending:
                    destination.write(bytes(pending))
                _skip_line(source)
                return True
            if len(pending) >= self._flush_size:
                destination.write(bytes(pending))
                pending.clear()


def _skip_line(source: BinaryIO) -> None:
    while True:
        chunk = source.read(1)
        if not chunk or chunk[0] == LINE_FEED:
            return


def copy_until_boundary(
    source: BinaryIO, destination: BinaryIO, boundary: bytes
) -> bool:
    """Functional form of ``BoundaryScanner(boundary).copy_until``."""
    return BoundaryScanner(boundary).copy_until(source, destination)
