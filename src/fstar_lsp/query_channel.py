"""Request multiplexing over one ``fstar.exe --ide`` process.

F* handles one request at a time. For full-buffer queries it chunks the
buffer into fragments and answers with several messages, one for each
fragment until the first failing fragment, ending with
``full-buffer-finished``. Those replies carry ids such as ``"4"``, ``"4.1"``,
``"4.2"``; everything before the first dot names the request.

While a full-buffer query is streaming, ordinary requests are held back and
flushed in order once it finishes. A second full-buffer query arriving in
that window replaces any earlier one waiting for its turn.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Callable

from fstar_lsp.exceptions import (
    CapabilityError,
    FStarLspError,
    ProtocolViolation,
    TransportExitedError,
)
from fstar_lsp.json_types import JSONObject
from fstar_lsp.messages import (
    INPUT_FILE_NAME,
    FStarPosition,
    FullBufferKind,
    FullBufferQuery,
    IdeQuery,
    IdeResponse,
    ProgressMessage,
    ProtocolInfo,
    QueryReply,
    autocomplete_query,
    cancel_query,
    lookup_query,
    owning_query_id,
    parse_inbound,
    restart_solver_query,
    vfs_add_query,
)
from fstar_lsp.transport import Transport

logger = logging.getLogger(__name__)

FullBufferHandler = Callable[[QueryReply, FullBufferQuery], None]

DEFAULT_IDE_VERSION = 3


class ChannelRole(StrEnum):
    CHECKER = "checker"
    FLYCHECK = "flycheck"


@dataclass
class FullBufferSession:
    query: FullBufferQuery
    query_id: str
    buffered_requests: list[JSONObject] = field(default_factory=list)
    buffered_replacement: FullBufferQuery | None = None


def _ignore_full_buffer_message(message: QueryReply, query: FullBufferQuery) -> None:
    return None


class QueryChannel:
    def __init__(
        self,
        transport: Transport,
        *,
        on_full_buffer_message: FullBufferHandler | None = None,
        debug: bool = False,
    ) -> None:
        self.transport = transport
        self.role = ChannelRole(transport.role)
        self.debug = debug
        self.supports_full_buffer = True
        self.ide_version = DEFAULT_IDE_VERSION
        self.on_full_buffer_message = on_full_buffer_message or _ignore_full_buffer_message
        self._last_query_id = 0
        self._pending: dict[str, asyncio.Future[IdeResponse]] = {}
        self._full_buffer: FullBufferSession | None = None
        self._closed = False
        transport.listen(self._handle_message)

    @property
    def full_buffer_in_flight(self) -> bool:
        return self._full_buffer is not None

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def map_input_file(self, path: str) -> str:
        return INPUT_FILE_NAME if self.ide_version < 3 else path

    def fname_matches_current_file(self, fname: str, document_uri: str) -> bool:
        if self.ide_version < 3 and fname == INPUT_FILE_NAME:
            return True
        return fname == PurePosixPath(document_uri).name

    # -- sending -----------------------------------------------------------

    def _next_query_id(self) -> str:
        self._last_query_id += 1
        return str(self._last_query_id)

    def _ensure_running(self) -> None:
        exit_code = self.transport.exit_code
        if exit_code is not None:
            raise TransportExitedError(self.role.value, exit_code)

    def _send_now(self, message: JSONObject) -> None:
        if self.debug:
            logger.debug(">>> %s", json.dumps(message))
        self._ensure_running()
        self.transport.send(message)

    def _send_request(self, message: JSONObject) -> None:
        if self._full_buffer is not None:
            self._full_buffer.buffered_requests.append(message)
        else:
            self._send_now(message)

    def request(self, query: IdeQuery) -> asyncio.Future[IdeResponse]:
        """Send `query` now, or once the running full-buffer query finishes.

        The returned future resolves with the matching ``response`` message.
        """
        self._ensure_running()
        query_id = self._next_query_id()
        future: asyncio.Future[IdeResponse] = asyncio.get_running_loop().create_future()
        self._pending[query_id] = future
        try:
            self._send_request(query.to_wire(query_id))
        except FStarLspError:
            del self._pending[query_id]
            raise
        return future

    def notify(self, query: IdeQuery) -> None:
        query_id = self._next_query_id()
        try:
            self._send_request(query.to_wire(query_id))
        except FStarLspError as exc:
            logger.warning("dropping %s query %s: %s", query.query, query_id, exc)

    def full_buffer_query(self, query: FullBufferQuery) -> None:
        if not self.supports_full_buffer:
            raise CapabilityError("ERROR: F* process does not support full-buffer queries")
        session = self._full_buffer
        if session is not None:
            if session.buffered_replacement is not None:
                logger.debug(
                    "replacing buffered %s query", session.buffered_replacement.kind
                )
            session.buffered_replacement = query
            return
        query_id = self._next_query_id()
        self._send_now(query.to_wire(query_id))
        self._full_buffer = FullBufferSession(query=query, query_id=query_id)

    def full_buffer_request(
        self, code: str, kind: FullBufferKind, with_symbols: bool = False
    ) -> None:
        self.full_buffer_query(FullBufferQuery(kind=kind, code=code, with_symbols=with_symbols))

    def partial_buffer_request(
        self, code: str, kind: FullBufferKind, position: FStarPosition
    ) -> None:
        self.full_buffer_query(FullBufferQuery(kind=kind, code=code, to_position=position))

    def cancel(self, position: FStarPosition) -> None:
        """Ask F* to stop checking fragments past `position`."""
        if self._full_buffer is None:
            return
        self._send_now(cancel_query(position).to_wire(self._next_query_id()))

    def vfs_add(self, path: str | None, contents: str) -> asyncio.Future[IdeResponse]:
        return self.request(vfs_add_query(path, contents))

    def lookup(
        self, path: str, position: FStarPosition, word: str
    ) -> asyncio.Future[IdeResponse]:
        return self.request(lookup_query(path, position, word))

    def autocomplete(self, word: str) -> asyncio.Future[IdeResponse]:
        return self.request(autocomplete_query(word))

    async def restart_solver(self, grace_ms: float = 1000) -> None:
        killed = self.transport.kill_solver_children()
        logger.debug("killed solver processes %s of the %s", killed, self.role.value)
        # Give the killed processes time to exit before F* respawns a solver.
        await asyncio.sleep(grace_ms / 1000)
        self.notify(restart_solver_query())

    def close(self) -> None:
        self._closed = True
        self.transport.kill()
        self._pending.clear()
        self._full_buffer = None

    # -- receiving ---------------------------------------------------------

    def _handle_message(self, raw: JSONObject) -> None:
        if self.debug:
            logger.debug("<<< %s", json.dumps(raw))
        if self._closed:
            return
        try:
            message = parse_inbound(raw)
        except ProtocolViolation as exc:
            logger.warning("%s from %s: %r", exc, self.role.value, raw)
            return
        if isinstance(message, ProtocolInfo):
            self._handle_protocol_info(message)
            return

        query_id = owning_query_id(message.query_id)
        # Replies to requests sent before the full-buffer query may still
        # arrive while it streams.
        session = self._full_buffer
        if session is not None and query_id == session.query_id:
            self._handle_full_buffer_message(message, session)
        elif isinstance(message, IdeResponse):
            self._respond(query_id, message)
        else:
            logger.warning(
                "dropping %s message for query-id %s: no full-buffer query in flight",
                message.level,
                message.query_id,
            )

    def _handle_full_buffer_message(
        self, message: QueryReply, session: FullBufferSession
    ) -> None:
        done = isinstance(message, ProgressMessage) and message.is_full_buffer_finished
        try:
            self.on_full_buffer_message(message, session.query)
        except ProtocolViolation as exc:
            logger.warning("%s from %s: %r", exc, self.role.value, exc.payload)
        finally:
            if done:
                self._finish_full_buffer(session)

    def _finish_full_buffer(self, session: FullBufferSession) -> None:
        self._full_buffer = None
        for message in session.buffered_requests:
            try:
                self._send_now(message)
            except FStarLspError as exc:
                future = self._pending.pop(str(message["query-id"]), None)
                if future is None:
                    logger.warning("dropping buffered %s query: %s", message["query"], exc)
                elif not future.done():
                    future.set_exception(exc)
        if session.buffered_replacement is not None:
            try:
                self.full_buffer_query(session.buffered_replacement)
            except FStarLspError as exc:
                logger.error("failed to start buffered full-buffer query: %s", exc)

    def _respond(self, query_id: str, response: IdeResponse) -> None:
        future = self._pending.pop(query_id, None)
        if future is None:
            logger.warning("no inflight query found for query-id %s", query_id)
            return
        if not future.done():
            future.set_result(response)

    def _handle_protocol_info(self, info: ProtocolInfo) -> None:
        if "full-buffer" not in info.features:
            self.supports_full_buffer = False
            logger.error("fstar.exe does not support full-buffer queries.")
        self.ide_version = info.version
