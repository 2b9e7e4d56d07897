from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from datetime import date, datetime, time
from pathlib import Path
from typing import Callable, Mapping, Sequence, TypeAlias
import tomllib

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel, to_snake

from fstar_lsp.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "fstar-lsp.toml"
CLIENT_SETTINGS_SECTION = "fstarVSCodeAssistant"
FSTAR_CONFIG_SUFFIX = ".fst.config.json"
DEBUG_ENV_KEY = "FSTAR_LSP_DEBUG"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]

AlertFn = Callable[[str], None]

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_ENV_VAR_RE = re.compile(r"\$([A-Z_]+[A-Z0-9_]*)|\$\{([A-Z0-9_]*)\}", re.IGNORECASE)


class AssistantSettings(BaseModel):
    """Editor-facing switches, read from the client's configuration section."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    verify_on_open: bool = False
    verify_on_save: bool = True
    fly_check: bool = True
    debug: bool = False
    show_light_check_icon: bool = True
    change_debounce_ms: int = 200
    publish_interval_ms: int = 200
    solver_restart_grace_ms: int = 1000


class FStarConfig(BaseModel):
    """The contents of a ``*.fst.config.json`` file."""

    model_config = ConfigDict(extra="ignore")

    include_dirs: list[str] = []
    options: list[str] = []
    fstar_exe: str = "fstar.exe"
    cwd: str | None = None

    def resolved_cwd(self, file_path: Path) -> Path:
        return Path(self.cwd) if self.cwd else file_path.parent


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        logger.warning("ignoring malformed %s: %s", path, exc)
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def assistant_defaults(
    root: Path | None = None, config_path: Path | None = None
) -> TomlTable:
    data = load_config(root=root, config_path=config_path)
    section = data.get("assistant", {})
    return section if isinstance(section, dict) else {}


def _truthy_flag(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY_VALUES


def load_settings(
    client_settings: Mapping[str, object] | None = None,
    *,
    root: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AssistantSettings:
    """Layer client settings over ``[assistant]`` in fstar-lsp.toml.

    Keys may be given in camelCase (as VS Code sends them) or snake_case (as
    written in TOML). ``FSTAR_LSP_DEBUG`` forces debug logging on.
    """
    environ = os.environ if environ is None else environ
    merged: dict[str, object] = {
        to_snake(str(key)): value for key, value in assistant_defaults(root).items()
    }
    for key, value in (client_settings or {}).items():
        merged[to_snake(str(key))] = value
    env_debug = environ.get(DEBUG_ENV_KEY, "").strip()
    if env_debug:
        merged["debug"] = _truthy_flag(env_debug)
    try:
        return AssistantSettings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid {CLIENT_SETTINGS_SECTION} settings: {exc}") from exc


def substitute_env_vars(
    value: object,
    *,
    environ: Mapping[str, str],
    on_unresolved: Callable[[str], None],
) -> object:
    if isinstance(value, str):

        def _replace(match: re.Match[str]) -> str:
            name = match.group(1) or match.group(2)
            resolved = environ.get(name)
            if resolved:
                return resolved
            on_unresolved(name)
            return ""

        return _ENV_VAR_RE.sub(_replace, value)
    if isinstance(value, list):
        return [
            substitute_env_vars(item, environ=environ, on_unresolved=on_unresolved)
            for item in value
        ]
    if isinstance(value, dict):
        return {
            key: substitute_env_vars(item, environ=environ, on_unresolved=on_unresolved)
            for key, item in value.items()
        }
    return value


def find_config_file(file_path: Path, workspace_folders: Sequence[Path]) -> Path | None:
    """Nearest ``*.fst.config.json`` above `file_path`, inside a workspace folder."""
    for directory in file_path.parents:
        if not any(directory.is_relative_to(folder) for folder in workspace_folders):
            break
        try:
            matches = sorted(
                entry
                for entry in directory.iterdir()
                if entry.name.endswith(FSTAR_CONFIG_SUFFIX) and entry.is_file()
            )
        except OSError:
            continue
        if matches:
            logger.debug("using config file %s for %s", matches[0], file_path)
            return matches[0]
    return None


def parse_config_file(
    config_file: Path,
    *,
    file_path: Path,
    on_alert: AlertFn,
    environ: Mapping[str, str] | None = None,
) -> FStarConfig:
    environ = os.environ if environ is None else environ
    try:
        raw = json.loads(config_file.read_text(encoding="utf-8"))
    except (OSError, UnicodeError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"cannot read {config_file}: {exc}") from exc

    def _unresolved(name: str) -> None:
        on_alert(f"Failed to resolve environment variable {name} for file {file_path}")

    substituted = substitute_env_vars(raw, environ=environ, on_unresolved=_unresolved)
    try:
        config = FStarConfig.model_validate(substituted)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid {config_file}: {exc}") from exc
    if config.cwd is None:
        # A config file without cwd is relative to its own directory.
        config = config.model_copy(update={"cwd": str(config_file.parent)})
    return config


def split_make_options(output: str, cwd: Path) -> FStarConfig:
    options: list[str] = []
    include_dirs: list[str] = []
    next_is_include = False
    for opt in output.strip().split():
        if next_is_include:
            include_dirs.append(opt)
            next_is_include = False
        elif opt == "--include":
            next_is_include = True
        else:
            options.append(opt)
    return FStarConfig(options=options, include_dirs=include_dirs, cwd=str(cwd))


async def config_from_makefile(file_path: Path) -> FStarConfig | None:
    """Ask ``make <File.fst>-in`` for the command line the build would use."""
    cwd = file_path.parent
    try:
        process = await asyncio.create_subprocess_exec(
            "make",
            f"{file_path.name}-in",
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None
    out, _ = await process.communicate()
    if process.returncode != 0:
        return None
    return split_make_options(out.decode("utf-8", errors="replace"), cwd)


async def load_fstar_config(
    file_path: Path,
    workspace_folders: Sequence[Path],
    *,
    on_alert: AlertFn,
) -> FStarConfig:
    """Load the checker configuration from the first available source.

    1. A ``*.fst.config.json`` file in an enclosing directory of the workspace.
    2. The output printed by ``make My.File.fst-in``.
    3. A default configuration.
    """
    config_file = find_config_file(file_path, workspace_folders)
    if config_file is not None:
        return parse_config_file(config_file, file_path=file_path, on_alert=on_alert)
    from_make = await config_from_makefile(file_path)
    if from_make is not None:
        return from_make
    return FStarConfig(cwd=str(file_path.parent))
