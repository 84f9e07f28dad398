"""Test queue-backed readers, endpoint negotiation and chunking."""

from __future__ import annotations

import asyncio

import pytest

from gattcat.endpoint import QueueReader, chunked, negotiate
from gattcat.exceptions import CapabilityUnsupported, RemoteIoFailure


class _FakeCharacteristic:
    def __init__(self, notify: bool = True, write: bool = True) -> None:
        self._notify = notify
        self._write = write

    async def notify_io(self) -> QueueReader:
        if not self._notify:
            raise CapabilityUnsupported("notify not supported")
        return QueueReader(mtu=20)

    async def write_io(self):
        if not self._write:
            raise RemoteIoFailure("write not supported")
        return _FakeWriter()


class _FakeWriter:
    mtu = 40

    async def write(self, data: bytes) -> None:
        pass

    async def wait_closed(self) -> None:
        await asyncio.Event().wait()

    def close(self) -> None:
        pass


@pytest.mark.asyncio
async def test_queue_reader_returns_partial_reads_then_eof() -> None:
    reader = QueueReader(mtu=20)
    reader.feed(b"abcdef")
    reader.feed(b"")
    reader.feed(b"gh")
    reader.feed_eof()

    assert await reader.read(4) == b"abcd"
    assert await reader.read(4) == b"ef"
    assert await reader.read(4) == b"gh"
    assert await reader.read(4) == b""
    assert await reader.read(4) == b""


@pytest.mark.asyncio
async def test_cancelled_read_keeps_queued_data() -> None:
    """Abandoning a pending read must not drop data fed afterwards."""
    reader = QueueReader(mtu=20)
    pending = asyncio.ensure_future(reader.read(10))
    await asyncio.sleep(0)
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    reader.feed(b"kept")
    assert await reader.read(10) == b"kept"


@pytest.mark.asyncio
async def test_closed_reader_reports_eof() -> None:
    reader = QueueReader(mtu=20)
    reader.feed(b"unread")
    reader.close()

    assert await reader.read(10) == b""


@pytest.mark.asyncio
async def test_negotiate_keeps_available_side() -> None:
    endpoint = await negotiate(_FakeCharacteristic(notify=False))

    assert endpoint.reader is None
    assert endpoint.writer is not None
    assert endpoint.mtu == 40

    endpoint = await negotiate(_FakeCharacteristic(write=False))

    assert endpoint.writer is None
    assert endpoint.mtu == 20


@pytest.mark.asyncio
async def test_negotiate_fails_without_any_capability() -> None:
    with pytest.raises(CapabilityUnsupported, match="neither writing nor notify are supported"):
        await negotiate(_FakeCharacteristic(notify=False, write=False))


def test_chunked_respects_mtu() -> None:
    assert list(chunked(b"0123456789", 4)) == [b"0123", b"4567", b"89"]
    assert list(chunked(b"", 4)) == []


def test_chunked_rejects_zero_mtu() -> None:
    with pytest.raises(ValueError):
        list(chunked(b"abc", 0))
