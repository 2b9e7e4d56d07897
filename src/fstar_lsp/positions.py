"""Coordinate conversion between fstar.exe and the editor.

F* reports 1-based lines and 0-based columns; the editor (LSP) uses 0-based
lines and columns. Offsets index the document text as a Python string.
"""

from __future__ import annotations

from dataclasses import dataclass

from fstar_lsp.messages import INPUT_FILE_NAME, FStarPosition, FStarRange


@dataclass(frozen=True, order=True)
class Position:
    line: int
    character: int


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position


def to_editor(pos: FStarPosition) -> Position:
    line, column = pos
    # Line 0 only shows up in dummy ranges; keep it on the first line.
    return Position(line - 1 if line > 0 else line, column)


def to_external(pos: Position) -> FStarPosition:
    return (pos.line + 1, pos.character)


def range_to_editor(rng: FStarRange) -> Range:
    return Range(to_editor(rng.beg), to_editor(rng.end))


def range_to_external(rng: Range, fname: str = INPUT_FILE_NAME) -> FStarRange:
    return FStarRange(fname=fname, beg=to_external(rng.start), end=to_external(rng.end))


def pos_le(a: Position, b: Position) -> bool:
    return a <= b


def fstar_pos_le(a: FStarPosition, b: FStarPosition) -> bool:
    return tuple(a) <= tuple(b)


def position_at(text: str, offset: int) -> Position:
    offset = max(0, min(offset, len(text)))
    line = text.count("\n", 0, offset)
    line_start = text.rfind("\n", 0, offset) + 1
    return Position(line, offset - line_start)


def offset_at(text: str, pos: Position) -> int:
    line_start = 0
    for _ in range(pos.line):
        newline = text.find("\n", line_start)
        if newline < 0:
            return len(text)
        line_start = newline + 1
    line_end = text.find("\n", line_start)
    if line_end < 0:
        line_end = len(text)
    return min(line_start + max(pos.character, 0), line_end)


def end_position(text: str) -> Position:
    return position_at(text, len(text))
