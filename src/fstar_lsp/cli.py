from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from fstar_lsp.config import load_fstar_config, load_settings
from fstar_lsp.document_session import DocumentSession, Spawner
from fstar_lsp.exceptions import FStarLspError
from fstar_lsp.results import Diagnostic, DiagnosticSeverity, FragmentStatus
from fstar_lsp.transport import spawn_fstar

LOG_LEVEL_ENV = "FSTAR_LSP_LOG_LEVEL"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_POLL_SECONDS = 0.05

app = typer.Typer(add_completion=False)


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"unknown log level: {level}", param_hint="--log-level")
    # stdout carries the LSP stream.
    logging.basicConfig(level=numeric, stream=sys.stderr, format=_LOG_FORMAT)


class _DiscardEvents:
    def send_diagnostics(self, uri: str, diagnostics: list[Diagnostic]) -> None:
        return None

    def send_status(self, uri: str, fragments: list[FragmentStatus]) -> None:
        return None


def format_status(fragment: FragmentStatus) -> str:
    start, end = fragment.range.start, fragment.range.end
    return f"{start.line + 1}:{start.character}-{end.line + 1}:{end.character} {fragment.kind}"


def format_diagnostic(path: Path, diag: Diagnostic) -> str:
    start = diag.range.start
    severity = diag.severity.name.lower()
    return f"{path}:{start.line + 1}:{start.character + 1}: {severity}: {diag.message}"


async def run_check(
    path: Path,
    *,
    lax: bool = False,
    fstar_exe: str | None = None,
    spawn: Spawner = spawn_fstar,
) -> int:
    """Check `path` once; 0 when every fragment verified, 1 on failures, 2 on errors."""
    text = path.read_text(encoding="utf-8")
    config = await load_fstar_config(
        path, [path.parent], on_alert=lambda message: typer.echo(message, err=True)
    )
    if fstar_exe:
        config = config.model_copy(update={"fstar_exe": fstar_exe})
    settings = load_settings(root=path.parent).model_copy(update={"fly_check": False})
    try:
        session = await DocumentSession.launch(
            path.as_uri(),
            text,
            config=config,
            settings=settings,
            events=_DiscardEvents(),
            spawn=spawn,
        )
    except FStarLspError as exc:
        typer.echo(str(exc), err=True)
        return 2
    try:
        lane = session.strict
        lane.validate("lax" if lax else "full")
        while lane.channel.full_buffer_in_flight:
            exit_code = lane.channel.transport.exit_code
            if exit_code is not None:
                typer.echo(f"ERROR: F* checker process exited with code {exit_code}", err=True)
                return 2
            await asyncio.sleep(_POLL_SECONDS)
        statuses = session.status_fragments()
        diagnostics = session.merged_diagnostics()
    except FStarLspError as exc:
        typer.echo(str(exc), err=True)
        return 2
    finally:
        session.dispose()

    for fragment in statuses:
        typer.echo(format_status(fragment))
    for diag in diagnostics:
        typer.echo(format_diagnostic(path, diag))
    failed = any(fragment.kind == "failed" for fragment in statuses) or any(
        diag.severity == DiagnosticSeverity.ERROR for diag in diagnostics
    )
    return 1 if failed else 0


@app.command()
def serve(
    log_level: str = typer.Option("WARNING", "--log-level", envvar=LOG_LEVEL_ENV),
) -> None:
    """Run the language server over stdio."""
    _configure_logging(log_level)
    # pygls is only needed for the server itself.
    from fstar_lsp.server import start

    start()


@app.command()
def check(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, resolve_path=True),
    lax: bool = typer.Option(False, "--lax/--no-lax", help="Admit SMT queries."),
    fstar_exe: Optional[str] = typer.Option(None, "--fstar-exe"),
    log_level: str = typer.Option("WARNING", "--log-level", envvar=LOG_LEVEL_ENV),
) -> None:
    """Verify one F* file and print its fragment status and diagnostics."""
    _configure_logging(log_level)
    exit_code = asyncio.run(run_check(path, lax=lax, fstar_exe=fstar_exe))
    raise typer.Exit(code=exit_code)
