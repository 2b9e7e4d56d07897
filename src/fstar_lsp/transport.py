from __future__ import annotations

import asyncio
import codecs
import json
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Protocol, Sequence

import psutil

from fstar_lsp.config import FStarConfig
from fstar_lsp.exceptions import ExecutableNotFoundError, TransportWriteError
from fstar_lsp.json_types import JSONObject

logger = logging.getLogger(__name__)

MessageHandler = Callable[[JSONObject], None]

_READ_CHUNK_SIZE = 1 << 16


def encode_line(message: JSONObject) -> bytes:
    return (json.dumps(message) + "\n").encode("utf-8")


class JsonlBuffer:
    """Reassembles newline-delimited JSON from arbitrarily split chunks."""

    def __init__(self, on_message: MessageHandler) -> None:
        self.on_message = on_message
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> None:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        while True:
            line, sep, rest = self._buffer.partition("\n")
            if not sep:
                break
            self._buffer = rest
            if not line.strip():
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("failed to decode message: %r", line)
                continue
            try:
                self.on_message(message)
            except Exception:
                logger.exception("failed to handle message: %r", line)


class Transport(Protocol):
    role: str

    @property
    def exit_code(self) -> int | None:
        """Exit status of the process, or None while it is running."""

    def listen(self, on_message: MessageHandler) -> None:
        """Start delivering decoded messages to the single listener."""

    def send(self, message: JSONObject) -> None:
        """Write one message as a line."""

    def kill(self) -> None:
        """Terminate the process."""

    def close_input(self) -> None:
        """Close the write side; the process exits once it has answered."""

    async def wait(self) -> int:
        """Wait for exit and for every buffered output line to be delivered."""

    def kill_solver_children(self) -> list[int]:
        """Terminate the SMT solver processes spawned by the checker."""


class ProcessTransport:
    """Line-buffered duplex connection to a child process."""

    def __init__(self, process: asyncio.subprocess.Process, *, role: str) -> None:
        self.process = process
        self.role = role
        self._listening = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def exit_code(self) -> int | None:
        return self.process.returncode

    def listen(self, on_message: MessageHandler) -> None:
        if self._listening:
            raise RuntimeError(f"{self.role} transport already has a listener")
        self._listening = True
        self._spawn(self._pump_stdout(JsonlBuffer(on_message)))
        self._spawn(self._pump_stderr())

    def send(self, message: JSONObject) -> None:
        stdin = self.process.stdin
        if stdin is None or stdin.is_closing():
            raise TransportWriteError(f"ERROR: Error writing to F* {self.role} process: stdin closed")
        try:
            stdin.write(encode_line(message))
        except (OSError, RuntimeError) as exc:
            raise TransportWriteError(f"ERROR: Error writing to F* {self.role} process: {exc}") from exc

    def close_input(self) -> None:
        stdin = self.process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def kill(self) -> None:
        if self.process.returncode is not None:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        code = await self.process.wait()
        if self._tasks:
            await asyncio.wait(list(self._tasks))
        return code

    def kill_solver_children(self) -> list[int]:
        return kill_solver_processes(self.process.pid)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _pump_stdout(self, buffer: JsonlBuffer) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_CHUNK_SIZE)
            if not chunk:
                break
            buffer.feed(chunk)
        logger.debug("%s stdout closed", self.role)

    async def _pump_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        async for line in stream:
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.warning("fstar %s stderr: %s", self.role, text)


def kill_solver_processes(pid: int | None) -> list[int]:
    """Kill every ``z3*`` descendant of `pid`; returns the killed pids."""
    if pid is None:
        return []
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    killed: list[int] = []
    for child in children:
        try:
            if not child.name().startswith("z3"):
                continue
            logger.debug("killing z3 process with pid %s", child.pid)
            child.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        killed.append(child.pid)
    return killed


def resolve_executable(fstar_exe: str, cwd: Path) -> str:
    candidate = fstar_exe
    # Paths with a separator are relative to the configured cwd; an absolute
    # path ignores it.
    if os.sep in candidate or (os.altsep and os.altsep in candidate):
        candidate = str((cwd / candidate).resolve())
    resolved = shutil.which(candidate)
    if resolved is None:
        raise ExecutableNotFoundError(f"Failed to find {fstar_exe} in path")
    return resolved


def fstar_arguments(config: FStarConfig, file_path: Path, *, lax: bool = False) -> list[str]:
    args = ["--ide", str(file_path)]
    if lax:
        # The flycheck process is an ordinary checker that admits SMT queries.
        args.extend(["--admit_smt_queries", "true"])
    args.extend(config.options)
    for include_dir in config.include_dirs:
        args.extend(["--include", include_dir])
    return args


async def spawn_process(
    command: str,
    args: Sequence[str],
    *,
    cwd: Path | None,
    role: str,
) -> ProcessTransport:
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        cwd=str(cwd) if cwd is not None else None,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    return ProcessTransport(process, role=role)


async def spawn_fstar(
    config: FStarConfig,
    file_path: Path,
    *,
    lax: bool = False,
    role: str | None = None,
) -> ProcessTransport:
    cwd = config.resolved_cwd(file_path)
    executable = resolve_executable(config.fstar_exe, cwd)
    args = fstar_arguments(config, file_path, lax=lax)
    logger.debug("spawning %s with options %s", executable, args)
    return await spawn_process(
        executable,
        args,
        cwd=cwd,
        role=role or ("flycheck" if lax else "checker"),
    )
