from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Mapping

from lsprotocol.types import (
    INITIALIZED,
    TEXT_DOCUMENT_COMPLETION,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DID_SAVE,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_RANGE_FORMATTING,
    WORKSPACE_DID_CHANGE_CONFIGURATION,
    CompletionItem,
    CompletionItemKind,
    CompletionOptions,
    CompletionParams,
    ConfigurationItem,
    ConfigurationParams,
    DefinitionParams,
    Diagnostic,
    DiagnosticRelatedInformation,
    DiagnosticSeverity,
    DidChangeConfigurationParams,
    DidChangeTextDocumentParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DidSaveTextDocumentParams,
    DocumentRangeFormattingParams,
    Hover,
    HoverParams,
    InitializedParams,
    Location,
    LocationLink,
    MarkupContent,
    MarkupKind,
    MessageType,
    Position,
    PublishDiagnosticsParams,
    Range,
    ShowMessageParams,
    TextEdit,
)
from pygls.lsp.server import LanguageServer

from fstar_lsp import __version__
from fstar_lsp import positions, results
from fstar_lsp.config import (
    CLIENT_SETTINGS_SECTION,
    AssistantSettings,
    load_fstar_config,
    load_settings,
)
from fstar_lsp.document_session import DocumentSession, uri_to_path
from fstar_lsp.exceptions import FStarLspError
from fstar_lsp.registry import SessionRegistry

logger = logging.getLogger(__name__)

STATUS_NOTIFICATION = "$/fstar/status"
VERIFY_TO_POSITION_NOTIFICATION = "$/fstar/verifyToPosition"
RESTART_NOTIFICATION = "$/fstar/restart"
KILL_AND_RESTART_SOLVER_NOTIFICATION = "$/fstar/killAndRestartSolver"
KILL_ALL_NOTIFICATION = "$/fstar/killAll"
GET_TRANSLATED_FST_REQUEST = "$/fstar/getTranslatedFst"


def _field(params: object, name: str) -> Any:
    # Custom notifications arrive as plain mappings or attribute objects,
    # depending on how the client and pygls decoded them.
    if isinstance(params, Mapping):
        return params.get(name)
    return getattr(params, name, None)


def _position_param(value: object) -> positions.Position:
    return positions.Position(int(_field(value, "line")), int(_field(value, "character")))


def to_lsp_position(pos: positions.Position) -> Position:
    return Position(line=pos.line, character=pos.character)


def to_lsp_range(rng: positions.Range) -> Range:
    return Range(start=to_lsp_position(rng.start), end=to_lsp_position(rng.end))


def from_lsp_range(rng: Range) -> positions.Range:
    return positions.Range(
        positions.Position(rng.start.line, rng.start.character),
        positions.Position(rng.end.line, rng.end.character),
    )


def to_lsp_diagnostic(diag: results.Diagnostic) -> Diagnostic:
    return Diagnostic(
        range=to_lsp_range(diag.range),
        message=diag.message,
        severity=DiagnosticSeverity(int(diag.severity)),
        source=diag.source,
        related_information=[
            DiagnosticRelatedInformation(
                location=Location(uri=info.location.uri, range=to_lsp_range(info.location.range)),
                message=info.message,
            )
            for info in diag.related_information
        ],
    )


def status_payload(uri: str, fragments: list[results.FragmentStatus]) -> dict[str, object]:
    def _pos(pos: positions.Position) -> dict[str, int]:
        return {"line": pos.line, "character": pos.character}

    return {
        "uri": uri,
        "fragments": [
            {
                "kind": fragment.kind,
                "range": {"start": _pos(fragment.range.start), "end": _pos(fragment.range.end)},
            }
            for fragment in fragments
        ],
    }


class FStarLanguageServer(LanguageServer):
    """LanguageServer that owns one `DocumentSession` per open F* file."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.settings = AssistantSettings()
        self.registry = SessionRegistry(self.create_session)

    # DocumentEvents
    def send_diagnostics(self, uri: str, diagnostics: list[results.Diagnostic]) -> None:
        self.text_document_publish_diagnostics(
            PublishDiagnosticsParams(
                uri=uri, diagnostics=[to_lsp_diagnostic(diag) for diag in diagnostics]
            )
        )

    def send_status(self, uri: str, fragments: list[results.FragmentStatus]) -> None:
        self.protocol.notify(STATUS_NOTIFICATION, status_payload(uri, fragments))

    def show_error(self, message: str) -> None:
        self.window_show_message(ShowMessageParams(type=MessageType.Error, message=message))

    def workspace_folder_paths(self) -> list[Path]:
        folders = [uri_to_path(folder.uri) for folder in self.workspace.folders.values()]
        if not folders and self.workspace.root_path:
            folders.append(Path(self.workspace.root_path))
        return folders

    def workspace_root(self) -> Path | None:
        return Path(self.workspace.root_path) if self.workspace.root_path else None

    async def refresh_settings(self) -> AssistantSettings:
        client_settings: Mapping[str, object] | None = None
        workspace_caps = self.client_capabilities.workspace
        if workspace_caps is not None and workspace_caps.configuration:
            items = await self.workspace_configuration_async(
                ConfigurationParams(items=[ConfigurationItem(section=CLIENT_SETTINGS_SECTION)])
            )
            if items and isinstance(items[0], Mapping):
                client_settings = items[0]
        self.settings = load_settings(client_settings, root=self.workspace_root())
        if self.settings.debug:
            logger.debug("server got settings: %s", self.settings.model_dump(by_alias=True))
        self.registry.set_debug(self.settings.debug)
        return self.settings

    async def create_session(self, uri: str, text: str) -> DocumentSession:
        file_path = uri_to_path(uri)

        def _alert(message: str) -> None:
            self.show_error(message)

        config = await load_fstar_config(
            file_path, self.workspace_folder_paths(), on_alert=_alert
        )
        return await DocumentSession.launch(
            uri,
            text,
            config=config,
            settings=self.settings,
            events=self,
            on_alert=_alert,
        )

    def report(self, uri: str, exc: Exception) -> None:
        logger.warning("request for %s failed: %s", uri, exc)
        self.show_error(f"{uri_to_path(uri)}: {exc}")


server = FStarLanguageServer("fstar-lsp", __version__)


@server.feature(INITIALIZED)
async def initialized(ls: FStarLanguageServer, params: InitializedParams) -> None:
    await ls.refresh_settings()


@server.feature(WORKSPACE_DID_CHANGE_CONFIGURATION)
async def did_change_configuration(
    ls: FStarLanguageServer, params: DidChangeConfigurationParams
) -> None:
    await ls.refresh_settings()


@server.feature(TEXT_DOCUMENT_DID_OPEN)
async def did_open(ls: FStarLanguageServer, params: DidOpenTextDocumentParams) -> None:
    uri = params.text_document.uri
    try:
        await ls.refresh_settings()
        session = await ls.registry.open(uri, params.text_document.text)
        if session is None:
            return
        session.verify_all("full" if ls.settings.verify_on_open else "lax")
    except FStarLspError as exc:
        ls.report(uri, exc)


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
def did_change(ls: FStarLanguageServer, params: DidChangeTextDocumentParams) -> None:
    uri = params.text_document.uri
    session = ls.registry.get(uri)
    if session is None:
        return
    session.change_document(ls.workspace.get_text_document(uri).source)


@server.feature(TEXT_DOCUMENT_DID_SAVE)
def did_save(ls: FStarLanguageServer, params: DidSaveTextDocumentParams) -> None:
    uri = params.text_document.uri
    session = ls.registry.get(uri)
    if session is None or not ls.settings.verify_on_save:
        return
    try:
        session.verify_all()
    except FStarLspError as exc:
        ls.report(uri, exc)


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
def did_close(ls: FStarLanguageServer, params: DidCloseTextDocumentParams) -> None:
    ls.registry.close(params.text_document.uri)


@server.feature(TEXT_DOCUMENT_HOVER)
async def hover(ls: FStarLanguageServer, params: HoverParams) -> Hover | None:
    session = ls.registry.get(params.text_document.uri)
    if session is None:
        return None
    position = positions.Position(params.position.line, params.position.character)
    try:
        value = await session.hover(position)
    except FStarLspError as exc:
        ls.report(params.text_document.uri, exc)
        return None
    if value is None:
        return None
    return Hover(contents=MarkupContent(kind=MarkupKind.Markdown, value=value))


@server.feature(TEXT_DOCUMENT_DEFINITION)
async def definition(
    ls: FStarLanguageServer, params: DefinitionParams
) -> list[LocationLink] | None:
    session = ls.registry.get(params.text_document.uri)
    if session is None:
        return None
    position = positions.Position(params.position.line, params.position.character)
    try:
        locations = await session.definition(position)
    except FStarLspError as exc:
        ls.report(params.text_document.uri, exc)
        return None
    if locations is None:
        return None
    return [
        LocationLink(
            target_uri=location.uri,
            target_range=to_lsp_range(location.range),
            target_selection_range=to_lsp_range(location.range),
        )
        for location in locations
    ]


@server.feature(TEXT_DOCUMENT_COMPLETION, CompletionOptions(resolve_provider=False))
async def completion(
    ls: FStarLanguageServer, params: CompletionParams
) -> list[CompletionItem] | None:
    session = ls.registry.get(params.text_document.uri)
    if session is None:
        return None
    position = positions.Position(params.position.line, params.position.character)
    try:
        labels = await session.completion(position)
    except FStarLspError as exc:
        ls.report(params.text_document.uri, exc)
        return None
    if labels is None:
        return None
    return [CompletionItem(label=label, kind=CompletionItemKind.Method) for label in labels]


@server.feature(TEXT_DOCUMENT_RANGE_FORMATTING)
async def range_formatting(
    ls: FStarLanguageServer, params: DocumentRangeFormattingParams
) -> list[TextEdit]:
    session = ls.registry.get(params.text_document.uri)
    if session is None:
        return []
    try:
        formatted = await session.format_range(from_lsp_range(params.range))
    except FStarLspError as exc:
        ls.report(params.text_document.uri, exc)
        return []
    if formatted is None:
        return []
    return [TextEdit(range=params.range, new_text=formatted)]


@server.feature(VERIFY_TO_POSITION_NOTIFICATION)
def verify_to_position(ls: FStarLanguageServer, params: object) -> None:
    uri = _field(params, "uri")
    session = ls.registry.get(uri)
    if session is None:
        return
    position = _position_param(_field(params, "position"))
    try:
        if _field(params, "lax"):
            session.lax_to_position(position)
        else:
            session.verify_to_position(position)
    except FStarLspError as exc:
        ls.report(uri, exc)


@server.feature(RESTART_NOTIFICATION)
async def restart(ls: FStarLanguageServer, params: object) -> None:
    uri = _field(params, "uri")
    document = ls.workspace.text_documents.get(uri)
    if document is None:
        return
    try:
        session = await ls.registry.restart(uri, document.source)
        if session is None:
            return
        session.verify_all("lax")
    except FStarLspError as exc:
        ls.report(uri, exc)


@server.feature(KILL_AND_RESTART_SOLVER_NOTIFICATION)
async def kill_and_restart_solver(ls: FStarLanguageServer, params: object) -> None:
    session = ls.registry.get(_field(params, "uri"))
    if session is not None:
        await session.kill_and_restart_solver()


@server.feature(KILL_ALL_NOTIFICATION)
def kill_all(ls: FStarLanguageServer, params: object) -> None:
    killed = ls.registry.kill_all()
    logger.info("killed %d document sessions", killed)


@server.feature(GET_TRANSLATED_FST_REQUEST)
async def get_translated_fst(ls: FStarLanguageServer, params: object) -> None:
    session = ls.registry.get(_field(params, "uri"))
    if session is None:
        return None
    return await session.translated_fst(_position_param(_field(params, "position")))


def start(start_fn: Callable[[], None] | None = None) -> None:
    """Serve the F* language server over stdio."""
    (start_fn or server.start_io)()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
