"""Test the client relay loop."""

from __future__ import annotations

import asyncio

import pytest

from gattcat.endpoint import QueueReader
from gattcat.exceptions import CapabilityUnsupported, LocalIoFailure, RemoteIoFailure
from gattcat.relay import io_loop


class _FakeInput(QueueReader):
    def __init__(self) -> None:
        super().__init__(mtu=0)
        self.closed = False

    def close(self) -> None:
        super().close()
        self.closed = True


class _FakeOutput:
    def __init__(self, fail: bool = False):
        self.data = bytearray()
        self.closed = False
        self._fail = fail

    async def write(self, data: bytes) -> None:
        if self._fail or self.closed:
            raise LocalIoFailure("output gone")
        self.data += data

    def close(self) -> None:
        self.closed = True


class _FakeWriter:
    def __init__(self, mtu: int = 20, fail: bool = False):
        self.mtu = mtu
        self.writes: list[bytes] = []
        self.closed = False
        self._fail = fail
        self._peer_closed = asyncio.Event()

    async def write(self, data: bytes) -> None:
        if self._fail:
            raise RemoteIoFailure("write rejected")
        self.writes.append(bytes(data))

    async def wait_closed(self) -> None:
        await self._peer_closed.wait()

    def close(self) -> None:
        self.closed = True


async def _until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_remote_data_then_close_reaches_local_output() -> None:
    """20 bytes followed by remote EOF end up on the local output, which is then closed."""
    reader = QueueReader(mtu=20)
    reader.feed(bytes(range(20)))
    reader.feed_eof()
    local_in = _FakeInput()
    out = _FakeOutput()

    await asyncio.wait_for(
        io_loop(reader, _FakeWriter(), local_in, out, reader_required=True), 2.0
    )

    assert bytes(out.data) == bytes(range(20))
    assert out.closed


@pytest.mark.asyncio
async def test_local_data_is_split_into_writer_mtu_chunks() -> None:
    """Remote writes never exceed the writer MTU, even with a larger read size."""
    reader = QueueReader(mtu=100)
    reader.feed_eof()
    writer = _FakeWriter(mtu=20)
    local_in = _FakeInput()
    local_in.feed(b"x" * 50)
    local_in.feed_eof()

    await asyncio.wait_for(io_loop(reader, writer, local_in, _FakeOutput()), 2.0)

    assert b"".join(writer.writes) == b"x" * 50
    assert [len(w) for w in writer.writes] == [20, 20, 10]
    assert all(len(w) <= writer.mtu for w in writer.writes)


@pytest.mark.asyncio
async def test_remote_eof_keeps_forwarding_local_input() -> None:
    """Remote half-close closes the local output but local input still flows."""
    reader = QueueReader(mtu=20)
    writer = _FakeWriter()
    local_in = _FakeInput()
    out = _FakeOutput()

    task = asyncio.ensure_future(io_loop(reader, writer, local_in, out))
    reader.feed_eof()
    await _until(lambda: out.closed)

    local_in.feed(b"late")
    local_in.feed_eof()
    await asyncio.wait_for(task, 2.0)

    assert writer.writes == [b"late"]
    assert writer.closed
    assert local_in.closed


@pytest.mark.asyncio
async def test_local_eof_keeps_forwarding_remote_data() -> None:
    """Local half-close drops the writer but remote data still reaches the output."""
    reader = QueueReader(mtu=20)
    writer = _FakeWriter()
    local_in = _FakeInput()
    out = _FakeOutput()

    task = asyncio.ensure_future(io_loop(reader, writer, local_in, out))
    local_in.feed_eof()
    await _until(lambda: writer.closed)

    reader.feed(b"still here")
    reader.feed_eof()
    await asyncio.wait_for(task, 2.0)

    assert bytes(out.data) == b"still here"
    assert out.closed


@pytest.mark.asyncio
async def test_both_sides_ready_in_same_turn_lose_nothing() -> None:
    reader = QueueReader(mtu=20)
    reader.feed(b"from remote")
    reader.feed_eof()
    writer = _FakeWriter()
    local_in = _FakeInput()
    local_in.feed(b"from local")
    local_in.feed_eof()
    out = _FakeOutput()

    await asyncio.wait_for(io_loop(reader, writer, local_in, out), 2.0)

    assert bytes(out.data) == b"from remote"
    assert writer.writes == [b"from local"]


@pytest.mark.asyncio
async def test_remote_write_failure_closes_local_input() -> None:
    writer = _FakeWriter(fail=True)
    local_in = _FakeInput()
    local_in.feed(b"abc")

    await asyncio.wait_for(io_loop(None, writer, local_in, _FakeOutput()), 2.0)

    assert local_in.closed


@pytest.mark.asyncio
async def test_local_output_failure_drops_remote_reader() -> None:
    reader = QueueReader(mtu=20)
    reader.feed(b"nowhere to go")
    local_in = _FakeInput()

    await asyncio.wait_for(
        io_loop(reader, None, local_in, _FakeOutput(fail=True), reader_required=True), 2.0
    )

    assert local_in.closed


@pytest.mark.asyncio
async def test_required_input_stops_loop_on_local_eof() -> None:
    """With input required, local EOF ends the relay although the remote reader is idle."""
    reader = QueueReader(mtu=20)
    local_in = _FakeInput()
    local_in.feed_eof()

    await asyncio.wait_for(
        io_loop(reader, _FakeWriter(), local_in, _FakeOutput(), input_required=True), 2.0
    )


@pytest.mark.asyncio
async def test_endpoint_without_capabilities_is_rejected() -> None:
    with pytest.raises(CapabilityUnsupported, match="neither writing nor notify are supported"):
        await io_loop(None, None, _FakeInput(), _FakeOutput())
