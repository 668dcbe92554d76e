# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Re-readable containers for message bodies.

A Buffer is any object offering the capability set below; callers never
depend on the concrete class:

- ``open()``: a fresh, independently positioned binary stream.
- ``length()``: total size in bytes, or None if unknown.
- ``retain()``: take an additional reference, returns the buffer itself.
- ``remove()``: drop one reference; storage is released exactly once,
  when the last reference goes away.

Two variants are provided:

- MemoryBuffer: owns a ``bytes`` object.
- FileBuffer: owns a temporary file.

Dropping the last reference while streams are still open is permitted:
already opened streams remain readable (memory streams own their bytes,
file streams keep the unlinked inode alive). ``open()`` after that point
raises ResourceError.

BufferFactory chooses the variant: bodies up to the configured threshold
stay in memory, larger ones are spooled to disk.

Example::

    factory = BufferFactory(BufferConfig(memory_threshold_kb=100))
    buffer = await factory.create(reader, size_hint=meta.size_hint)
    try:
        await deliver(target, meta, sender, rcpts, header, buffer)
    finally:
        buffer.remove()
"""

from __future__ import annotations

import asyncio
import inspect
import io
import os
import tempfile
import threading
from typing import Any, BinaryIO, Protocol, runtime_checkable

from .config import BufferConfig
from .errors import ResourceError
from .logger import get_logger


@runtime_checkable
class Buffer(Protocol):
    """Capability interface shared by all body containers."""

    def open(self) -> BinaryIO: ...

    def length(self) -> int | None: ...

    def retain(self) -> Buffer: ...

    def remove(self) -> None: ...


class _RefCount:
    """Reference counter invoking ``release`` once when it drops to zero."""

    def __init__(self, release):
        self._count = 1
        self._lock = threading.Lock()
        self._release = release

    @property
    def alive(self) -> bool:
        return self._count > 0

    def incr(self) -> None:
        with self._lock:
            if self._count <= 0:
                raise ResourceError("Buffer storage was already released")
            self._count += 1

    def decr(self) -> None:
        with self._lock:
            if self._count <= 0:
                return
            self._count -= 1
            if self._count:
                return
        self._release()


class MemoryBuffer:
    """Body held in memory as an immutable ``bytes`` object."""

    def __init__(self, data: bytes | bytearray | memoryview):
        self._data: bytes | None = bytes(data)
        self._size = len(self._data)
        self._refs = _RefCount(self._release)

    def open(self) -> BinaryIO:
        data = self._data
        if data is None:
            raise ResourceError("Memory buffer was removed")
        return io.BytesIO(data)

    def length(self) -> int | None:
        return self._size

    def retain(self) -> MemoryBuffer:
        self._refs.incr()
        return self

    def remove(self) -> None:
        self._refs.decr()

    @property
    def removed(self) -> bool:
        return not self._refs.alive

    def _release(self) -> None:
        self._data = None

    def __repr__(self) -> str:
        return f"<MemoryBuffer {self._size} bytes>"


class FileBuffer:
    """Body spooled to a file that is deleted when the last reference goes away."""

    def __init__(self, path: str, size: int | None = None, *, logger=None):
        self.path = path
        self._size = size
        self._refs = _RefCount(self._release)
        self.logger = logger or get_logger()

    def open(self) -> BinaryIO:
        if not self._refs.alive:
            raise ResourceError(f"File buffer {self.path} was removed")
        try:
            return open(self.path, "rb")
        except OSError as exc:
            raise ResourceError(f"Cannot open spooled body {self.path}: {exc}") from exc

    def length(self) -> int | None:
        return self._size

    def retain(self) -> FileBuffer:
        self._refs.incr()
        return self

    def remove(self) -> None:
        self._refs.decr()

    @property
    def removed(self) -> bool:
        return not self._refs.alive

    def _release(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            self.logger.warning("Spooled body %s was already deleted", self.path)
        else:
            self.logger.debug("Removed spooled body %s", self.path)

    def __repr__(self) -> str:
        return f"<FileBuffer {self.path} {self._size} bytes>"


async def _read(source: Any, size: int) -> bytes:
    data = source.read(size)
    if inspect.isawaitable(data):
        data = await data
    return data


class BufferFactory:
    """Create buffers, choosing memory or disk storage by size.

    Args:
        config: Buffer settings (threshold, spool directory, chunk size).
        metrics: Optional DeliveryMetrics, counts spooled bodies.
        logger: Custom logger instance. If None, uses default logger.
    """

    def __init__(self, config: BufferConfig | None = None, *, metrics=None, logger=None):
        self.config = config or BufferConfig()
        self.metrics = metrics
        self.logger = logger or get_logger()

    @property
    def threshold(self) -> int:
        return self.config.threshold_bytes

    async def create(self, source: Any, size_hint: int | None = None) -> MemoryBuffer | FileBuffer:
        """Build a buffer from ``source``.

        Args:
            source: ``bytes``-like object, or a readable whose ``read(n)`` is
                either a plain or an async method.
            size_hint: Expected size in bytes, if known.

        Raises:
            ResourceError: If spooling to disk fails.
        """
        if isinstance(source, (bytes, bytearray, memoryview)):
            if len(source) <= self.threshold:
                return MemoryBuffer(source)
            return await self.spool(io.BytesIO(bytes(source)))

        if size_hint is not None and size_hint > self.threshold:
            return await self.spool(source)

        head = bytearray()
        while len(head) <= self.threshold:
            chunk = await _read(source, min(self.config.chunk_size, self.threshold + 1 - len(head)))
            if not chunk:
                return MemoryBuffer(head)
            head += chunk

        self.logger.debug("Body exceeds %d bytes, spooling to disk", self.threshold)
        return await self.spool(source, prefix=bytes(head))

    async def spool(self, source: Any, *, prefix: bytes = b"") -> FileBuffer:
        """Write ``prefix`` followed by the rest of ``source`` into a temp file.

        The partial file is deleted if writing fails or the task is cancelled.
        """
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))

        try:
            fd, path = await asyncio.to_thread(
                tempfile.mkstemp, prefix="mdc-", suffix=".msg", dir=self.config.spool_dir
            )
        except OSError as exc:
            raise ResourceError(f"Cannot create spool file: {exc}") from exc

        size = 0
        fp = os.fdopen(fd, "wb")
        try:
            if prefix:
                await asyncio.to_thread(fp.write, prefix)
                size += len(prefix)
            while True:
                chunk = await _read(source, self.config.chunk_size)
                if not chunk:
                    break
                await asyncio.to_thread(fp.write, chunk)
                size += len(chunk)
            await asyncio.to_thread(fp.close)
        except BaseException as exc:
            fp.close()
            _discard(path)
            if isinstance(exc, OSError):
                raise ResourceError(f"Cannot write spool file {path}: {exc}") from exc
            raise

        if self.metrics is not None:
            self.metrics.inc_spooled()
        self.logger.debug("Spooled %d bytes to %s", size, path)
        return FileBuffer(path, size, logger=self.logger)


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


__all__ = ["Buffer", "BufferFactory", "FileBuffer", "MemoryBuffer"]
