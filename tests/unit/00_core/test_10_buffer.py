"""Tests for message body buffers and the buffer factory."""

import asyncio
import io
import os
from unittest.mock import MagicMock

import pytest

from mail_delivery.buffer import Buffer, BufferFactory, FileBuffer, MemoryBuffer
from mail_delivery.config import BufferConfig
from mail_delivery.errors import ResourceError


class AsyncReader:
    """Reader exposing ``async read(n)`` like asyncio.StreamReader."""

    def __init__(self, data: bytes):
        self._stream = io.BytesIO(data)
        self.calls = 0

    async def read(self, n: int = -1) -> bytes:
        self.calls += 1
        await asyncio.sleep(0)
        return self._stream.read(n)


class BrokenReader:
    """Reader failing after the first chunk."""

    def __init__(self):
        self.calls = 0

    def read(self, n: int = -1) -> bytes:
        self.calls += 1
        if self.calls > 1:
            raise OSError("connection reset")
        return b"x" * n


class StalledReader:
    """Reader that never returns any data."""

    async def read(self, n: int = -1) -> bytes:
        await asyncio.Event().wait()
        return b""


@pytest.fixture
def factory(tmp_path):
    """Factory with a 1 KB threshold spooling into tmp_path."""
    config = BufferConfig(memory_threshold_kb=1, spool_dir=str(tmp_path), chunk_size=100)
    return BufferFactory(config)


class TestMemoryBuffer:
    """Tests for the MemoryBuffer class."""

    def test_independent_reads_are_identical(self):
        """Test that two streams read the same bytes independently."""
        data = os.urandom(4096)
        buffer = MemoryBuffer(data)

        first = buffer.open()
        second = buffer.open()
        assert first.read(10) == data[:10]
        assert second.read() == data
        assert first.read() == data[10:]

        assert buffer.open().read() == buffer.open().read() == data

    def test_length(self):
        """Test that length reports the byte count."""
        assert MemoryBuffer(b"abc").length() == 3
        assert MemoryBuffer(b"").length() == 0

    def test_satisfies_buffer_protocol(self):
        """Test that both variants implement the capability set."""
        assert isinstance(MemoryBuffer(b""), Buffer)
        assert isinstance(FileBuffer("/nonexistent"), Buffer)

    def test_open_after_remove_fails(self):
        """Test that a released buffer cannot be opened."""
        buffer = MemoryBuffer(b"abc")
        buffer.remove()

        assert buffer.removed
        with pytest.raises(ResourceError):
            buffer.open()

    def test_retain_keeps_storage_alive(self):
        """Test that storage is released only with the last reference."""
        buffer = MemoryBuffer(b"abc")
        assert buffer.retain() is buffer

        buffer.remove()
        assert not buffer.removed
        assert buffer.open().read() == b"abc"

        buffer.remove()
        assert buffer.removed

    def test_extra_remove_is_noop(self):
        """Test that removing a released buffer does nothing."""
        buffer = MemoryBuffer(b"abc")
        buffer.remove()
        buffer.remove()
        assert buffer.removed

    def test_retain_after_release_fails(self):
        """Test that a released buffer cannot be revived."""
        buffer = MemoryBuffer(b"abc")
        buffer.remove()
        with pytest.raises(ResourceError):
            buffer.retain()

    def test_open_stream_survives_remove(self):
        """Test that already opened streams stay readable."""
        buffer = MemoryBuffer(b"abc")
        stream = buffer.open()
        buffer.remove()

        assert stream.read() == b"abc"


class TestFileBuffer:
    """Tests for disk-backed buffers created by BufferFactory.spool."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [0, 1, 1023, 1025])
    async def test_spool_round_trip_is_byte_identical(self, factory, tmp_path, size):
        """Test that N spooled bytes read back exactly, around the threshold."""
        data = os.urandom(size)
        buffer = await factory.spool(io.BytesIO(data))

        assert isinstance(buffer, FileBuffer)
        assert buffer.length() == size
        with buffer.open() as fp:
            assert fp.read() == data
        with buffer.open() as fp:
            assert fp.read() == data

        buffer.remove()
        assert not os.path.exists(buffer.path)
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_spool_with_prefix(self, factory):
        """Test that the prefix is written before the source."""
        buffer = await factory.spool(io.BytesIO(b"world"), prefix=b"hello ")
        try:
            with buffer.open() as fp:
                assert fp.read() == b"hello world"
            assert buffer.length() == 11
        finally:
            buffer.remove()

    @pytest.mark.asyncio
    async def test_file_removed_with_last_reference(self, factory):
        """Test that the file stays while another reference is held."""
        buffer = await factory.spool(io.BytesIO(b"data"))
        buffer.retain()

        buffer.remove()
        assert os.path.exists(buffer.path)

        buffer.remove()
        assert not os.path.exists(buffer.path)
        with pytest.raises(ResourceError):
            buffer.open()

    @pytest.mark.asyncio
    async def test_open_stream_survives_remove(self, factory):
        """Test that an open stream keeps reading after the file is unlinked."""
        buffer = await factory.spool(io.BytesIO(b"still here"))
        fp = buffer.open()
        try:
            buffer.remove()
            assert not os.path.exists(buffer.path)
            assert fp.read() == b"still here"
        finally:
            fp.close()

    def test_missing_file_is_resource_error(self, tmp_path):
        """Test that a vanished spool file surfaces as ResourceError."""
        buffer = FileBuffer(str(tmp_path / "gone.msg"), 0)
        with pytest.raises(ResourceError):
            buffer.open()
        buffer.remove()
        assert buffer.removed


class TestBufferFactory:
    """Tests for memory/disk selection and spooling failures."""

    @pytest.mark.asyncio
    async def test_small_bytes_stay_in_memory(self, factory):
        """Test that bodies up to the threshold use memory."""
        buffer = await factory.create(b"x" * 1024)
        assert isinstance(buffer, MemoryBuffer)
        assert buffer.length() == 1024

    @pytest.mark.asyncio
    async def test_large_bytes_are_spooled(self, factory, tmp_path):
        """Test that bodies above the threshold go to disk."""
        buffer = await factory.create(b"x" * 1025)
        assert isinstance(buffer, FileBuffer)
        assert os.path.dirname(buffer.path) == str(tmp_path)
        buffer.remove()

    @pytest.mark.asyncio
    async def test_stream_at_threshold_stays_in_memory(self, factory):
        """Test that a stream of exactly threshold bytes stays in memory."""
        data = os.urandom(1024)
        buffer = await factory.create(io.BytesIO(data))

        assert isinstance(buffer, MemoryBuffer)
        assert buffer.open().read() == data

    @pytest.mark.asyncio
    async def test_stream_above_threshold_is_spooled(self, factory):
        """Test that reading past the threshold switches to disk."""
        data = os.urandom(5000)
        buffer = await factory.create(io.BytesIO(data))
        try:
            assert isinstance(buffer, FileBuffer)
            assert buffer.length() == 5000
            with buffer.open() as fp:
                assert fp.read() == data
        finally:
            buffer.remove()

    @pytest.mark.asyncio
    async def test_size_hint_spools_directly(self, factory):
        """Test that a large size hint skips the memory attempt."""
        buffer = await factory.create(io.BytesIO(b"short"), size_hint=10_000)
        try:
            assert isinstance(buffer, FileBuffer)
            with buffer.open() as fp:
                assert fp.read() == b"short"
        finally:
            buffer.remove()

    @pytest.mark.asyncio
    async def test_async_reader(self, factory):
        """Test that sources with an async read() are supported."""
        data = os.urandom(3000)
        reader = AsyncReader(data)
        buffer = await factory.create(reader)
        try:
            assert reader.calls > 1
            with buffer.open() as fp:
                assert fp.read() == data
        finally:
            buffer.remove()

    @pytest.mark.asyncio
    async def test_read_failure_leaves_no_file(self, factory, tmp_path):
        """Test that a failing source is reported and the partial file removed."""
        with pytest.raises(ResourceError, match="connection reset"):
            await factory.spool(BrokenReader())
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_missing_spool_dir(self, tmp_path):
        """Test that an unusable spool directory is a ResourceError."""
        config = BufferConfig(memory_threshold_kb=0, spool_dir=str(tmp_path / "missing"))
        with pytest.raises(ResourceError):
            await BufferFactory(config).create(b"x")

    @pytest.mark.asyncio
    async def test_cancel_while_spooling_leaves_no_file(self, factory, tmp_path):
        """Test that cancelling a spool removes the partial file."""
        task = asyncio.create_task(factory.spool(StalledReader(), prefix=b"partial"))
        for _ in range(50):
            await asyncio.sleep(0.01)
            if os.listdir(tmp_path):
                break
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert os.listdir(tmp_path) == []

    @pytest.mark.asyncio
    async def test_spooled_metric(self, factory):
        """Test that spooling increments the metrics counter."""
        factory.metrics = MagicMock()
        buffer = await factory.create(b"x" * 2048)
        buffer.remove()

        factory.metrics.inc_spooled.assert_called_once_with()

    def test_threshold_from_config(self):
        """Test the default 100 KB threshold."""
        assert BufferFactory().threshold == 100 * 1024
