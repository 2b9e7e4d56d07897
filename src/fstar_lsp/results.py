"""Per-document verification results and their invalidation on edit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Literal

from fstar_lsp.messages import FStarRange, IdeProofState
from fstar_lsp.positions import Position, Range, pos_le, position_at, to_editor, to_external

FragmentStatusKind = Literal["ok", "lax-ok", "failed", "in-progress", "started"]


class DiagnosticSeverity(IntEnum):
    ERROR = 1
    WARNING = 2
    INFORMATION = 3
    HINT = 4

    @classmethod
    def from_ide_level(cls, level: str) -> DiagnosticSeverity:
        match level:
            case "warning":
                return cls.WARNING
            case "info":
                return cls.INFORMATION
            case _:
                return cls.ERROR


@dataclass(frozen=True)
class Location:
    uri: str
    range: Range


@dataclass(frozen=True)
class RelatedInformation:
    location: Location
    message: str


@dataclass(frozen=True)
class Diagnostic:
    range: Range
    message: str
    severity: DiagnosticSeverity = DiagnosticSeverity.ERROR
    source: str = "F*"
    related_information: tuple[RelatedInformation, ...] = ()


@dataclass
class Fragment:
    range: FStarRange
    # None while the fragment is still being checked.
    ok: bool | None = None
    lax: bool = False
    invalidated_through_edits: bool = False

    @property
    def has_verdict(self) -> bool:
        return self.ok is not None

    @property
    def status_kind(self) -> FragmentStatusKind:
        if self.ok is None:
            return "in-progress"
        if not self.ok:
            return "failed"
        return "lax-ok" if self.lax else "ok"


@dataclass(frozen=True)
class FragmentStatus:
    range: Range
    kind: FragmentStatusKind


@dataclass
class DocumentResults:
    source_text: str = ""
    fragments: list[Fragment] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    proof_states: list[IdeProofState] = field(default_factory=list)
    out_of_band_errors: list[Diagnostic] = field(default_factory=list)
    # Everything past this position was edited after the results were produced.
    invalid_after: Position | None = None

    def ends_past_edit(self, rng: FStarRange) -> bool:
        return self.invalid_after is not None and not pos_le(
            to_editor(rng.end), self.invalid_after
        )

    def last_fragment(self) -> Fragment | None:
        return self.fragments[-1] if self.fragments else None

    def last_valid_verdict(self) -> Fragment | None:
        for fragment in reversed(self.fragments):
            if fragment.has_verdict and not fragment.invalidated_through_edits:
                return fragment
        return None

    def proof_state_at_line(self, position: Position) -> IdeProofState | None:
        line, _ = to_external(position)
        for proof_state in self.proof_states:
            if proof_state.location.beg[0] == line:
                return proof_state
        return None


def first_diff_offset(a: str, b: str) -> int | None:
    """Offset of the first differing character, or None if `a == b`."""
    limit = min(len(a), len(b))
    i = 0
    while i < limit and a[i] == b[i]:
        i += 1
    if i == len(a) and i == len(b):
        return None
    return i


def invalidate_results(results: DocumentResults, new_text: str) -> None:
    """Mark fragments that do not end before the first edit as stale."""
    diff_offset = first_diff_offset(results.source_text, new_text)
    if diff_offset is None:
        return
    diff_pos = position_at(new_text, diff_offset)
    if results.invalid_after is not None and pos_le(results.invalid_after, diff_pos):
        return
    results.invalid_after = diff_pos
    for fragment in results.fragments:
        if not pos_le(to_editor(fragment.range.end), diff_pos):
            fragment.invalidated_through_edits = True
