"""Live verification state for one open F* document.

A session drives a strict checker and, when fly-checking is enabled, a lax
one. Each is wrapped in a `VerificationLane` that folds the streamed progress
of full-buffer queries into a `DocumentResults`. Full-buffer queries start by
replaying the verdicts of fragments F* already has cached; those land in a
shadow result set that replaces the visible one when the first fragment is
actually checked, so the editor never sees the status flicker.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Awaitable, Callable, Literal, Protocol
from urllib.parse import unquote, urlparse

from fstar_lsp.config import AssistantSettings, FStarConfig
from fstar_lsp.exceptions import FStarLspError, ProtocolViolation
from fstar_lsp.hover import completion_label, find_word_at_position, format_lookup, format_proof_state
from fstar_lsp.invariants import never
from fstar_lsp.json_types import JSONObject
from fstar_lsp.messages import (
    INPUT_FILE_NAME,
    FStarRange,
    FullBufferKind,
    FullBufferQuery,
    IdeDiagnostic,
    IdeModule,
    IdeProgress,
    IdeProofState,
    IdeResponse,
    IdeSymbol,
    ProgressMessage,
    ProofStateMessage,
    QueryReply,
    StatusMessage,
    format_query,
    parse_diagnostics,
    parse_inbound,
    parse_lookup,
)
from fstar_lsp.positions import (
    Position,
    Range,
    end_position,
    fstar_pos_le,
    offset_at,
    pos_le,
    position_at,
    range_to_editor,
    to_editor,
    to_external,
)
from fstar_lsp.query_channel import QueryChannel
from fstar_lsp.results import (
    Diagnostic,
    DiagnosticSeverity,
    DocumentResults,
    Fragment,
    FragmentStatus,
    Location,
    RelatedInformation,
    first_diff_offset,
    invalidate_results,
)
from fstar_lsp.signals import AsyncRateLimiter, Debouncer, RateLimiter
from fstar_lsp.transport import Transport, spawn_fstar

logger = logging.getLogger(__name__)

FLYCHECK_SOURCE = "F* flycheck"
FORMATTER_FILE = "Prims.fst"

AlertFn = Callable[[str], None]
Spawner = Callable[..., Awaitable[Transport]]

# Whole-document kinds; "lax" leaves the strict process alone.
VerifyAllKind = Literal["full", "lax", "cache", "reload-deps"]

_ORIGIN = Position(0, 0)


class DocumentEvents(Protocol):
    def send_diagnostics(self, uri: str, diagnostics: list[Diagnostic]) -> None:
        """Replace the published diagnostics of `uri`."""

    def send_status(self, uri: str, fragments: list[FragmentStatus]) -> None:
        """Replace the per-fragment verification status of `uri`."""


def uri_to_path(uri: str) -> Path:
    if "://" not in uri:
        return Path(uri)
    return Path(unquote(urlparse(uri).path))


def _log_alert(message: str) -> None:
    logger.error("%s", message)


class VerificationLane:
    """One checker process and the results it has produced so far."""

    def __init__(
        self,
        session: DocumentSession,
        transport: Transport,
        *,
        lax: bool,
        text: str,
    ) -> None:
        self.session = session
        self.lax = lax
        self.channel = QueryChannel(
            transport,
            on_full_buffer_message=self._handle_full_buffer_message,
            debug=session.settings.debug,
        )
        self.results = DocumentResults()
        # Replayed verdicts collect here until the first fragment is checked.
        self.new_results: DocumentResults | None = None
        # Set while a full-buffer query runs: how far F* was asked to check.
        self.started_to: Position | None = None
        self.current_text = text
        self.pending_change = False
        self.last_sent_text = text
        self._change_dispatcher = Debouncer(
            session.settings.change_debounce_ms, self._dispatch_change
        )

    @property
    def name(self) -> str:
        return self.channel.role.value

    def open(self) -> None:
        future = self.channel.vfs_add(str(self.session.file_path), self.current_text)
        future.add_done_callback(self._vfs_add_done)

    def _vfs_add_done(self, future: asyncio.Future[IdeResponse]) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("vfs-add request to F* %s process failed: %s", self.name, exc)

    def set_debug(self, debug: bool) -> None:
        self.channel.debug = debug

    def dispose(self) -> None:
        self._change_dispatcher.cancel()
        self.channel.close()

    # -- edits and requests ------------------------------------------------

    def change_document(self, text: str) -> None:
        self.current_text = text
        self.pending_change = True
        self._change_dispatcher.fire()

        diff_offset = first_diff_offset(text, self.last_sent_text)
        if diff_offset is not None:
            diff_pos = position_at(text, diff_offset)
            try:
                self.channel.cancel(to_external(diff_pos))
            except FStarLspError as exc:
                self.session.alert(str(exc))
            if self.started_to is not None and pos_le(diff_pos, self.started_to):
                self.started_to = diff_pos

        invalidate_results(self.results, text)
        if self.new_results is not None:
            invalidate_results(self.new_results, text)

    def _dispatch_change(self) -> None:
        if not self.pending_change:
            return
        try:
            self.validate("lax" if self.lax else "cache")
        except FStarLspError as exc:
            self.session.alert(str(exc))

    def _apply_pending_change(self) -> None:
        # The check about to be sent covers the pending edit.
        if self.pending_change:
            self.pending_change = False
            self.last_sent_text = self.current_text

    def validate(self, kind: FullBufferKind) -> None:
        self._apply_pending_change()
        self.channel.full_buffer_request(self.current_text, kind, False)

    def validate_to_position(self, kind: FullBufferKind, position: Position) -> None:
        self._apply_pending_change()
        self.channel.partial_buffer_request(self.current_text, kind, to_external(position))

    # -- streamed replies --------------------------------------------------

    def _handle_full_buffer_message(self, message: QueryReply, query: FullBufferQuery) -> None:
        match message:
            case ProgressMessage(contents=progress):
                self._handle_progress(progress, query)
            case ProofStateMessage(contents=proof_state):
                self._handle_proof_state(proof_state)
            case StatusMessage(level="info", contents=contents):
                logger.info("Info: %s", contents)
            case StatusMessage(level="warning", contents=contents):
                logger.warning("Warning: %s", contents)
            case StatusMessage(level="error", contents=contents):
                logger.error("Error: %s", contents)
                self._record_out_of_band_error(contents)
            case IdeResponse(response=None):
                logger.info("Query cancelled")
            case IdeResponse(response=list() as payload):
                self._handle_diagnostics(payload)
            case IdeResponse():
                pass
            case _:
                never("unhandled full-buffer reply", message=message)

    def _handle_progress(self, progress: IdeProgress, query: FullBufferQuery) -> None:
        match progress.stage:
            case "full-buffer-started":
                if query.to_position is not None:
                    self.started_to = to_editor(query.to_position)
                else:
                    self.started_to = end_position(self.current_text)
                self.new_results = DocumentResults(source_text=query.code)
            case "full-buffer-fragment-started":
                self._fragment_started(self._fragment_range(progress))
            case "full-buffer-fragment-ok" | "full-buffer-fragment-lax-ok":
                self._fragment_ok(
                    self._fragment_range(progress),
                    lax=progress.stage != "full-buffer-fragment-ok",
                )
            case "full-buffer-fragment-failed":
                self._fragment_failed()
            case "full-buffer-finished":
                self._finished()
            case _:
                never("unknown progress stage", stage=progress.stage)

    @staticmethod
    def _fragment_range(progress: IdeProgress) -> FStarRange:
        if progress.ranges is None:
            raise ProtocolViolation(
                f"{progress.stage} without a range", payload=progress.model_dump()
            )
        return progress.ranges

    def _fragment_started(self, rng: FStarRange) -> None:
        shadow = self.new_results
        if shadow is not None:
            # First fragment F* really checks; replayed ones produced no proof
            # states, so keep the earlier ones that still apply.
            start = range_to_editor(rng).start
            shadow.out_of_band_errors.extend(
                d for d in self.results.out_of_band_errors if pos_le(d.range.end, start)
            )
            shadow.proof_states.extend(
                s for s in self.results.proof_states if fstar_pos_le(s.location.end, rng.beg)
            )
            self.results = shadow
            self.new_results = None

        self.results.fragments.append(
            Fragment(range=rng, invalidated_through_edits=self.results.ends_past_edit(rng))
        )
        self.session.publish_status()

    def _fragment_ok(self, rng: FStarRange, *, lax: bool) -> None:
        shadow = self.new_results
        if shadow is not None:
            shadow.fragments.append(
                Fragment(
                    range=rng,
                    ok=True,
                    lax=lax,
                    invalidated_through_edits=shadow.ends_past_edit(rng),
                )
            )
            return

        fragment = self.results.last_fragment()
        if fragment is None:
            logger.error("fragment verdict without full-buffer-fragment-started")
            return
        fragment.ok = True
        fragment.lax = lax
        fragment.invalidated_through_edits = self.results.ends_past_edit(rng)
        self.session.publish_status()

    def _fragment_failed(self) -> None:
        fragment = self.results.last_fragment()
        if self.new_results is not None or fragment is None:
            logger.error("full-buffer-fragment-failed without full-buffer-fragment-started")
            return
        fragment.ok = False
        self.session.publish_status()

    def _finished(self) -> None:
        shadow = self.new_results
        if shadow is not None:
            # No fragment was checked; everything was replayed.
            shadow.out_of_band_errors = self.results.out_of_band_errors
            shadow.proof_states = self.results.proof_states
            self.results = shadow
            self.new_results = None
        else:
            # A cancelled query leaves the last fragment started but unanswered.
            fragment = self.results.last_fragment()
            if fragment is not None and fragment.ok is None:
                self.results.fragments.pop()
        self.started_to = None
        self.session.publish_status()
        self.session.publish_diagnostics()

    def _handle_proof_state(self, proof_state: IdeProofState) -> None:
        if self.new_results is not None:
            logger.error("received proof state before full-buffer-fragment-started")
        self.results.proof_states.append(proof_state)

    def _handle_diagnostics(self, payload: list[object]) -> None:
        try:
            ide_diagnostics = parse_diagnostics(payload)
        except ProtocolViolation as exc:
            logger.warning("%s from %s: %r", exc, self.name, exc.payload)
            return
        target = self.new_results if self.new_results is not None else self.results
        target.diagnostics.extend(self.convert_diagnostic(d) for d in ide_diagnostics)
        self.session.publish_diagnostics()

    def _record_out_of_band_error(self, contents: object) -> None:
        if not isinstance(contents, str):
            return
        target = self.new_results if self.new_results is not None else self.results
        fragment = target.last_fragment()
        rng = range_to_editor(fragment.range) if fragment is not None else Range(_ORIGIN, _ORIGIN)
        target.out_of_band_errors.append(Diagnostic(range=rng, message=contents))
        self.session.publish_diagnostics()

    # -- diagnostics and navigation ----------------------------------------

    def qualify_filename(self, fname: str) -> str:
        if fname == INPUT_FILE_NAME:
            return self.session.uri
        path = Path(fname)
        if not path.is_absolute() and self.session.config.cwd:
            path = Path(self.session.config.cwd) / path
        # Editors do not resolve symlinks themselves; a missing file keeps its
        # unresolved path.
        return Path(os.path.realpath(path)).as_uri()

    def _is_current_file(self, fname: str) -> bool:
        return fname == INPUT_FILE_NAME or self.channel.fname_matches_current_file(
            fname, self.session.uri
        )

    def convert_diagnostic(self, diag: IdeDiagnostic) -> Diagnostic:
        ranges = [rng for rng in diag.ranges if not rng.is_dummy]
        main_range = Range(_ORIGIN, _ORIGIN)
        if ranges and self._is_current_file(ranges[0].fname):
            main_range = range_to_editor(ranges.pop(0))
        related = tuple(
            RelatedInformation(
                location=Location(self.qualify_filename(rng.fname), range_to_editor(rng)),
                message="related location",
            )
            for rng in ranges
        )
        return Diagnostic(
            range=main_range,
            message=diag.message,
            severity=DiagnosticSeverity.from_ide_level(diag.level),
            related_information=related,
        )

    async def _lookup(self, position: Position) -> IdeSymbol | IdeModule | None:
        word = find_word_at_position(self.current_text, position)
        # Must be the same file name the full-buffer query checks under.
        response = await self.channel.lookup(INPUT_FILE_NAME, to_external(position), word.word)
        if response.status != "success":
            return None
        return parse_lookup(response.response)

    async def hover(self, position: Position) -> str | None:
        result = await self._lookup(position)
        return format_lookup(result) if result is not None else None

    async def definition(self, position: Position) -> list[Location] | None:
        result = await self._lookup(position)
        match result:
            case None:
                return []
            case IdeSymbol(defined_at=defined_at):
                # Spliced definitions have dummy ranges.
                if defined_at is None or defined_at.is_dummy:
                    return None
                return [Location(self.qualify_filename(defined_at.fname), range_to_editor(defined_at))]
            case IdeModule(path=path):
                return [Location(self.qualify_filename(path), Range(_ORIGIN, _ORIGIN))]
            case _:
                never("unknown lookup result", result=result)

    async def completion(self, position: Position) -> list[str] | None:
        word = find_word_at_position(self.current_text, position)
        if len(word.word) < 2:
            return None
        response = await self.channel.autocomplete(word.word)
        if response.status != "success" or not isinstance(response.response, list):
            return None
        labels = []
        for entry in response.response:
            # Each candidate is [match-length, annotation, candidate].
            if isinstance(entry, list) and len(entry) >= 3 and isinstance(entry[2], str):
                labels.append(completion_label(entry[2]))
        return labels

    def proof_state_at_line(self, position: Position) -> IdeProofState | None:
        return self.results.proof_state_at_line(position)


class DocumentSession:
    """All checker state for a single open document."""

    def __init__(
        self,
        uri: str,
        text: str,
        *,
        config: FStarConfig,
        settings: AssistantSettings,
        events: DocumentEvents,
        strict_transport: Transport,
        lax_transport: Transport | None = None,
        on_alert: AlertFn | None = None,
        spawn: Spawner = spawn_fstar,
    ) -> None:
        self.uri = uri
        self.file_path = uri_to_path(uri)
        self.config = config
        self.settings = settings
        self.events = events
        self._on_alert = on_alert or _log_alert
        self._spawn = spawn
        self.disposed = False
        self._diagnostics_limiter = RateLimiter(
            settings.publish_interval_ms, self._send_diagnostics_now
        )
        self._status_limiter = RateLimiter(settings.publish_interval_ms, self._send_status_now)
        self._solver_restarts = AsyncRateLimiter(settings.solver_restart_grace_ms)

        self.strict = VerificationLane(self, strict_transport, lax=False, text=text)
        self.flycheck = (
            VerificationLane(self, lax_transport, lax=True, text=text)
            if lax_transport is not None
            else None
        )
        for lane in self.lanes:
            lane.open()

    @classmethod
    async def launch(
        cls,
        uri: str,
        text: str,
        *,
        config: FStarConfig,
        settings: AssistantSettings,
        events: DocumentEvents,
        on_alert: AlertFn | None = None,
        spawn: Spawner = spawn_fstar,
    ) -> DocumentSession:
        """Spawn the checker processes for `uri` and send them the document."""
        file_path = uri_to_path(uri)
        strict = await spawn(config, file_path, lax=False)
        lax = None
        if settings.fly_check:
            try:
                lax = await spawn(config, file_path, lax=True)
            except BaseException:
                strict.kill()
                raise
        return cls(
            uri,
            text,
            config=config,
            settings=settings,
            events=events,
            strict_transport=strict,
            lax_transport=lax,
            on_alert=on_alert,
            spawn=spawn,
        )

    @property
    def lanes(self) -> list[VerificationLane]:
        return [self.strict] if self.flycheck is None else [self.strict, self.flycheck]

    @property
    def assist_lane(self) -> VerificationLane:
        # Symbol queries prefer the lax process; it is never blocked on SMT.
        return self.flycheck if self.flycheck is not None else self.strict

    def alert(self, message: str) -> None:
        self._on_alert(f"{self.file_path}: {message}")

    def set_debug(self, debug: bool) -> None:
        for lane in self.lanes:
            lane.set_debug(debug)

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self._diagnostics_limiter.cancel()
        self._status_limiter.cancel()
        self._solver_restarts.cancel()
        for lane in self.lanes:
            lane.dispose()
        self.events.send_diagnostics(self.uri, [])
        self.events.send_status(self.uri, [])

    # -- verification ------------------------------------------------------

    def change_document(self, text: str) -> None:
        for lane in self.lanes:
            lane.change_document(text)
        self.publish_status()

    def verify_all(self, kind: VerifyAllKind = "full") -> None:
        if kind != "lax":
            self.strict.validate(kind)
        if self.flycheck is not None:
            self.flycheck.validate("lax")

    def verify_to_position(self, position: Position) -> None:
        self.strict.validate_to_position("verify-to-position", position)
        if self.flycheck is not None:
            self.flycheck.validate("lax")

    def lax_to_position(self, position: Position) -> None:
        self.strict.validate_to_position("lax-to-position", position)
        if self.flycheck is not None:
            self.flycheck.validate("lax")

    async def kill_and_restart_solver(self) -> None:
        # Only the strict process runs the solver for real.
        grace_ms = self.settings.solver_restart_grace_ms
        self._solver_restarts.fire(lambda: self.strict.channel.restart_solver(grace_ms))
        await self._solver_restarts.settled

    # -- publication -------------------------------------------------------

    def publish_diagnostics(self) -> None:
        self._diagnostics_limiter.fire()

    def publish_status(self) -> None:
        self._status_limiter.fire()

    def merged_diagnostics(self) -> list[Diagnostic]:
        strict = self.strict.results
        diagnostics = [*strict.diagnostics, *strict.out_of_band_errors]
        if self.flycheck is None:
            return diagnostics
        # Lax results only matter past what the strict checker has settled.
        last_verdict = strict.last_valid_verdict()
        checked_to = to_editor(last_verdict.range.end if last_verdict is not None else (1, 1))
        for diag in self.flycheck.results.diagnostics:
            if not pos_le(checked_to, diag.range.start):
                continue
            severity = (
                DiagnosticSeverity.WARNING
                if diag.severity == DiagnosticSeverity.ERROR
                else diag.severity
            )
            diagnostics.append(replace(diag, source=FLYCHECK_SOURCE, severity=severity))
        return diagnostics

    def status_fragments(self) -> list[FragmentStatus]:
        results = self.strict.results
        statuses = []
        for fragment in results.fragments:
            if fragment.invalidated_through_edits and fragment.has_verdict:
                continue
            if fragment.status_kind == "lax-ok" and not self.settings.show_light_check_icon:
                continue
            statuses.append(FragmentStatus(range_to_editor(fragment.range), fragment.status_kind))
        started_to = self.strict.started_to
        if started_to is not None:
            last = results.last_fragment()
            start = to_editor(last.range.end if last is not None else (1, 0))
            statuses.append(FragmentStatus(Range(start, started_to), "started"))
        return statuses

    def _send_diagnostics_now(self) -> None:
        if self.disposed:
            return
        self.events.send_diagnostics(self.uri, self.merged_diagnostics())

    def _send_status_now(self) -> None:
        if self.disposed:
            return
        self.events.send_status(self.uri, self.status_fragments())

    # -- editor features ---------------------------------------------------

    async def hover(self, position: Position) -> str | None:
        # Proof states only come from the strict process.
        proof_state = self.strict.proof_state_at_line(position)
        if proof_state is not None:
            return format_proof_state(proof_state)
        return await self.assist_lane.hover(position)

    async def definition(self, position: Position) -> list[Location] | None:
        return await self.assist_lane.definition(position)

    async def completion(self, position: Position) -> list[str] | None:
        return await self.assist_lane.completion(position)

    async def format_range(self, rng: Range) -> str | None:
        """Format `rng` with a short-lived fstar.exe; None if F* declined."""
        text = self.assist_lane.current_text
        code = text[offset_at(text, rng.start) : offset_at(text, rng.end)]
        transport = await self._spawn(self.config, Path(FORMATTER_FILE), lax=False, role="formatter")
        formatted: list[str] = []

        def _on_message(raw: JSONObject) -> None:
            try:
                reply = parse_inbound(raw)
            except ProtocolViolation:
                logger.debug("formatter sent %r", raw)
                return
            if (
                isinstance(reply, IdeResponse)
                and reply.status == "success"
                and isinstance(reply.response, dict)
                and isinstance(reply.response.get("formatted-code"), str)
            ):
                formatted.append(reply.response["formatted-code"])

        transport.listen(_on_message)
        try:
            transport.send(format_query(code).to_wire("1"))
            transport.close_input()
            await transport.wait()
        finally:
            transport.kill()
        return formatted[-1] if formatted else None

    async def translated_fst(self, position: Position) -> None:
        # F* documents are not translated from another language.
        return None
