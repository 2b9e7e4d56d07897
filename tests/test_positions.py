from __future__ import annotations

from fstar_lsp.messages import FStarRange
from fstar_lsp.positions import (
    Position,
    Range,
    end_position,
    fstar_pos_le,
    offset_at,
    pos_le,
    position_at,
    range_to_editor,
    range_to_external,
    to_editor,
    to_external,
)


def test_fstar_lines_are_one_based() -> None:
    assert to_editor((1, 0)) == Position(0, 0)
    assert to_editor((12, 7)) == Position(11, 7)
    assert to_external(Position(0, 3)) == (1, 3)


def test_dummy_line_zero_stays_on_first_line() -> None:
    assert to_editor((0, 5)) == Position(0, 5)


def test_conversion_round_trips_for_editor_positions() -> None:
    for pos in (Position(0, 0), Position(3, 9), Position(40, 1)):
        assert to_editor(to_external(pos)) == pos
        assert to_external(to_editor(to_external(pos))) == to_external(pos)


def test_range_conversion_keeps_file_name() -> None:
    rng = FStarRange(fname="<input>", beg=(2, 1), end=(3, 4))
    editor = range_to_editor(rng)
    assert editor == Range(Position(1, 1), Position(2, 4))
    assert range_to_external(editor) == rng
    assert range_to_external(editor, "Other.fst").fname == "Other.fst"


def test_position_ordering() -> None:
    assert pos_le(Position(1, 2), Position(1, 2))
    assert pos_le(Position(1, 2), Position(2, 0))
    assert not pos_le(Position(2, 0), Position(1, 9))
    assert fstar_pos_le((1, 5), (2, 0))
    assert not fstar_pos_le((3, 1), (3, 0))


def test_offsets_and_positions() -> None:
    text = "ab\ncd\n"
    assert position_at(text, 0) == Position(0, 0)
    assert position_at(text, 4) == Position(1, 1)
    assert position_at(text, 99) == Position(2, 0)
    assert offset_at(text, Position(1, 1)) == 4
    assert offset_at(text, Position(0, 99)) == 2
    assert offset_at(text, Position(7, 0)) == len(text)
    assert end_position(text) == Position(2, 0)
    assert end_position("let x = 1") == Position(0, 9)
