"""A readable stream that passes on only part of a tar archive."""

from __future__ import annotations

import tarfile
from typing import BinaryIO, Iterator


class _Sink:
    """Write target that collects bytes until drained."""

    def __init__(self) -> None:
        self._data = bytearray()

    def write(self, data: bytes) -> int:
        self._data += data
        return len(data)

    def drain(self) -> bytes:
        data = bytes(self._data)
        self._data.clear()
        return data


class TarFilter:
    """Read a tar stream, keeping only entries below ``only``.

    The entry named exactly ``only`` is dropped, as is anything whose name does
    not start with it. A leading "/" on ``only`` is ignored, since tar names
    rarely carry one. With ``trim`` the prefix is removed from the names kept.
    """

    def __init__(self, source: BinaryIO, only: str, trim: bool = False) -> None:
        self._source = source
        self._only = only.removeprefix("/")
        self._trim = trim
        self._chunks: Iterator[bytes] | None = None
        self._buffer = bytearray()
        self._closed = False

    def __enter__(self) -> "TarFilter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def readable(self) -> bool:
        return True

    def _wanted(self, name: str) -> bool:
        return name != self._only and name.startswith(self._only)

    def _generate(self) -> Iterator[bytes]:
        sink = _Sink()
        src = tarfile.open(fileobj=self._source, mode="r|")
        dst = tarfile.open(fileobj=sink, mode="w|", format=tarfile.PAX_FORMAT)
        try:
            for member in src:
                if not self._wanted(member.name):
                    continue
                if self._trim:
                    member.name = member.name.removeprefix(self._only).removeprefix("/")
                    member.pax_headers = {
                        key: value for key, value in member.pax_headers.items() if key != "path"
                    }
                content = src.extractfile(member) if member.isreg() else None
                dst.addfile(member, content)
                chunk = sink.drain()
                if chunk:
                    yield chunk
        finally:
            dst.close()
            src.close()
        yield sink.drain()

    def _fill(self, size: int | None) -> None:
        if self._chunks is None:
            self._chunks = self._generate()
        while size is None or len(self._buffer) < size:
            try:
                self._buffer += next(self._chunks)
            except StopIteration:
                break

    def read(self, size: int | None = -1) -> bytes:
        """Read up to ``size`` bytes of the filtered archive; all of it when negative."""
        if self._closed:
            return b""
        if size is None or size < 0:
            self._fill(None)
            size = len(self._buffer)
        else:
            self._fill(size)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def close(self) -> None:
        """Close the underlying stream."""
        self._closed = True
        self._buffer.clear()
        self._source.close()