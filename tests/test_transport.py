from __future__ import annotations

import asyncio
import logging
import os
import stat
import sys
from pathlib import Path

import pytest

from fstar_lsp.config import FStarConfig
from fstar_lsp.exceptions import ExecutableNotFoundError, TransportWriteError
from fstar_lsp.transport import (
    JsonlBuffer,
    fstar_arguments,
    kill_solver_processes,
    resolve_executable,
    spawn_process,
)

VALID_MESSAGE = '{"kind": "message"}\n'
FRAGMENTS = ['{"kind": "', "message", '"}\n']


def _buffer() -> tuple[JsonlBuffer, list[object]]:
    received: list[object] = []
    return JsonlBuffer(received.append), received


def test_valid_message_is_delivered() -> None:
    buffer, received = _buffer()
    buffer.feed(VALID_MESSAGE)
    assert received == [{"kind": "message"}]


def test_fragmented_message_waits_for_newline() -> None:
    buffer, received = _buffer()
    buffer.feed(FRAGMENTS[0])
    buffer.feed(FRAGMENTS[1])
    assert received == []
    buffer.feed(FRAGMENTS[2])
    assert received == [{"kind": "message"}]


def test_valid_messages_then_fragments() -> None:
    buffer, received = _buffer()
    buffer.feed(VALID_MESSAGE)
    buffer.feed(VALID_MESSAGE)
    assert len(received) == 2
    for fragment in FRAGMENTS[:2]:
        buffer.feed(fragment)
    assert len(received) == 2
    buffer.feed(FRAGMENTS[2])
    assert len(received) == 3


def test_combined_chunk_is_split_into_messages() -> None:
    buffer, received = _buffer()
    buffer.feed("".join([VALID_MESSAGE, *FRAGMENTS]))
    assert received == [{"kind": "message"}, {"kind": "message"}]


def test_invalid_line_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    buffer, received = _buffer()
    with caplog.at_level(logging.WARNING, logger="fstar_lsp.transport"):
        buffer.feed("Warning: not json\n\n" + VALID_MESSAGE)
    assert received == [{"kind": "message"}]
    assert "failed to decode message" in caplog.text


def test_utf8_split_across_chunks() -> None:
    buffer, received = _buffer()
    payload = '{"name": "λ"}\n'.encode("utf-8")
    split = payload.index(b"\xce") + 1
    buffer.feed(payload[:split])
    buffer.feed(payload[split:])
    assert received == [{"name": "λ"}]


def test_handler_errors_do_not_stop_the_buffer(caplog: pytest.LogCaptureFixture) -> None:
    seen: list[object] = []

    def _handler(message: object) -> None:
        seen.append(message)
        if len(seen) == 1:
            raise RuntimeError("boom")

    buffer = JsonlBuffer(_handler)
    with caplog.at_level(logging.ERROR, logger="fstar_lsp.transport"):
        buffer.feed(VALID_MESSAGE + VALID_MESSAGE)
    assert len(seen) == 2
    assert "failed to handle message" in caplog.text


def test_fstar_arguments_order(tmp_path: Path) -> None:
    config = FStarConfig(options=["--cache_checked_modules"], include_dirs=["lib", "/abs"])
    file_path = tmp_path / "A.fst"
    assert fstar_arguments(config, file_path) == [
        "--ide",
        str(file_path),
        "--cache_checked_modules",
        "--include",
        "lib",
        "--include",
        "/abs",
    ]
    assert fstar_arguments(config, file_path, lax=True)[2:4] == ["--admit_smt_queries", "true"]


@pytest.mark.skipif(os.name != "posix", reason="requires executable bit semantics")
def test_resolve_executable_relative_to_cwd(tmp_path: Path) -> None:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    exe = bin_dir / "fstar.exe"
    exe.write_text("#!/bin/sh\n", encoding="utf-8")
    exe.chmod(exe.stat().st_mode | stat.S_IXUSR)
    assert resolve_executable("bin/fstar.exe", tmp_path) == str(exe.resolve())
    assert resolve_executable(str(exe), Path("/")) == str(exe.resolve())


def test_resolve_executable_reports_missing_binary(tmp_path: Path) -> None:
    with pytest.raises(ExecutableNotFoundError, match="Failed to find no-such-fstar.exe in path"):
        resolve_executable("no-such-fstar.exe", tmp_path)


def test_kill_solver_processes_without_process() -> None:
    assert kill_solver_processes(None) == []
    assert kill_solver_processes(2**22 + 12345) == []


_ECHO = "import sys\nfor line in sys.stdin:\n    sys.stdout.write(line)\n    sys.stdout.flush()\n"


@pytest.mark.asyncio
async def test_process_transport_round_trip() -> None:
    transport = await spawn_process(sys.executable, ["-c", _ECHO], cwd=None, role="checker")
    received: list[object] = []
    transport.listen(received.append)
    with pytest.raises(RuntimeError):
        transport.listen(received.append)
    assert transport.exit_code is None
    transport.send({"query-id": "1", "query": "vfs-add", "args": {}})
    transport.close_input()
    code = await asyncio.wait_for(transport.wait(), timeout=10)
    assert code == 0
    assert received == [{"query-id": "1", "query": "vfs-add", "args": {}}]
    with pytest.raises(TransportWriteError, match="checker process"):
        transport.send({"query": "late"})
