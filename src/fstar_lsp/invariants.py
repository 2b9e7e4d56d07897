"""Invariant markers for exhaustive dispatch."""

from __future__ import annotations

from typing import NoReturn

from fstar_lsp.exceptions import NeverThrown


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The optional env payload is attached to the raised exception for
    diagnosis; it is not otherwise evaluated.
    """
    raise NeverThrown(reason or "never() marker reached", env=env)
