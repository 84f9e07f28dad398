"""Test local streams and child processes."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

from gattcat.exceptions import ChildSpawnFailure
from gattcat.local_io import (
    FileInput,
    FileOutput,
    StreamInput,
    open_input,
    open_output,
    open_stdio,
    raw_terminal,
    spawn_piped,
    spawn_pty,
)

CAT = "import sys\nsys.stdout.buffer.write(sys.stdin.buffer.read())\n"
SHOUT = (
    "import os, sys\n"
    "line = sys.stdin.readline()\n"
    "sys.stdout.write(line.strip().upper() + \" \" + str(os.isatty(1)) + \"\\n\")\n"
    "sys.stdout.flush()\n"
    "sys.stdin.read()\n"
)


@pytest.mark.asyncio
async def test_piped_child_echoes_until_input_closes() -> None:
    child = await spawn_piped(sys.executable, ["-c", CAT])
    async with child:
        await child.local_out.write(b"ping")
        child.local_out.close()

        received = b""
        while True:
            data = await asyncio.wait_for(child.local_in.read(100), 10.0)
            if not data:
                break
            received += data

        assert received == b"ping"
        assert await asyncio.wait_for(child.wait(), 10.0) == 0


@pytest.mark.asyncio
async def test_closing_child_kills_a_running_command() -> None:
    child = await spawn_piped(sys.executable, ["-c", "import time\ntime.sleep(60)\n"])

    await asyncio.wait_for(child.close(), 10.0)

    assert child.returncode is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("spawn", [spawn_piped, spawn_pty])
async def test_unexecutable_command_fails_to_spawn(spawn) -> None:
    with pytest.raises(ChildSpawnFailure, match="Cannot execute /nonexistent/program"):
        await spawn("/nonexistent/program", [])


@pytest.mark.asyncio
async def test_regular_files_use_file_streams(tmp_path) -> None:
    source = tmp_path / "in.bin"
    source.write_bytes(b"file contents")
    target = tmp_path / "out.bin"

    local_in = await open_input(os.open(source, os.O_RDONLY))
    local_out = await open_output(os.open(target, os.O_WRONLY | os.O_CREAT))
    assert isinstance(local_in, FileInput)
    assert isinstance(local_out, FileOutput)

    while data := await local_in.read(4):
        await local_out.write(data)
    local_in.close()
    local_out.close()

    assert target.read_bytes() == b"file contents"


@pytest.mark.asyncio
async def test_pipes_use_stream_wrappers() -> None:
    read_fd, write_fd = os.pipe()
    local_in = await open_input(read_fd)
    local_out = await open_output(write_fd)

    await local_out.write(b"through the pipe")
    local_out.close()

    assert await asyncio.wait_for(local_in.read(100), 2.0) == b"through the pipe"
    assert await asyncio.wait_for(local_in.read(100), 2.0) == b""
    local_in.close()


def test_raw_terminal_is_a_no_op_without_a_tty(tmp_path) -> None:
    fd = os.open(tmp_path / "not-a-tty", os.O_RDWR | os.O_CREAT)
    try:
        with raw_terminal(True, fd) as enabled:
            assert not enabled
        with raw_terminal(False, fd) as enabled:
            assert not enabled
    finally:
        os.close(fd)


@pytest.mark.asyncio
async def test_pty_child_sees_a_terminal() -> None:
    child = await spawn_pty(sys.executable, ["-c", SHOUT])
    async with child:
        await child.local_out.write(b"hi\n")

        received = b""
        while b"\n" not in received:
            data = await asyncio.wait_for(child.local_in.read(100), 10.0)
            assert data
            received += data

        assert received == b"HI True\n"


@pytest.fixture
def std_fds():
    """Save fd 0 and 1 and put them back after the test."""
    saved = os.dup(0), os.dup(1)
    try:
        yield
    finally:
        os.dup2(saved[0], 0)
        os.dup2(saved[1], 1)
        os.close(saved[0])
        os.close(saved[1])


@pytest.mark.asyncio
async def test_stdio_from_dev_null_reads_eof(std_fds) -> None:
    devnull = os.open(os.devnull, os.O_RDONLY)
    os.dup2(devnull, 0)
    os.close(devnull)

    local_in, local_out = await open_stdio()
    try:
        assert isinstance(local_in, FileInput)
        assert await asyncio.wait_for(local_in.read(20), 2.0) == b""
    finally:
        local_in.close()
        local_out.close()


@pytest.mark.asyncio
async def test_closing_stdout_ends_the_downstream_pipe(std_fds) -> None:
    read_fd, write_fd = os.pipe()
    os.dup2(write_fd, 1)
    os.close(write_fd)
    downstream = await open_input(read_fd)
    assert isinstance(downstream, StreamInput)

    local_in, local_out = await open_stdio()
    try:
        await local_out.write(b"out")
        local_out.close()

        received = b""
        while data := await asyncio.wait_for(downstream.read(100), 2.0):
            received += data
        assert received == b"out"
    finally:
        local_in.close()
        downstream.close()
