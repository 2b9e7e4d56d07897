"""Markdown rendering for hovers and the identifier under the cursor."""

from __future__ import annotations

import re
from dataclasses import dataclass

from fstar_lsp.invariants import never
from fstar_lsp.messages import IdeModule, IdeProofState, IdeSymbol, ProofStateContextualGoal
from fstar_lsp.positions import Position, Range, offset_at, position_at

_IDENT_CHAR = re.compile(r"[a-zA-Z_.'0-9]")


@dataclass(frozen=True)
class WordAtPosition:
    word: str
    range: Range


def find_word_at_position(text: str, position: Position) -> WordAtPosition:
    """The identifier touching `position`, qualified names included.

    A cursor placed right after an identifier still selects it, which is where
    completion requests arrive.
    """
    offset = offset_at(text, position)
    start = offset
    while start > 0 and _IDENT_CHAR.match(text[start - 1]):
        start -= 1
    end = offset
    while end < len(text) and _IDENT_CHAR.match(text[end]):
        end += 1
    return WordAtPosition(
        word=text[start:end],
        range=Range(position_at(text, start), position_at(text, end)),
    )


def completion_label(candidate: str) -> str:
    # Editors replace only the part after the last dot.
    dot = candidate.rfind(".")
    return candidate[dot + 1 :] if dot > 0 else candidate


def _format_contextual_goal(goal: ProofStateContextualGoal) -> str:
    lines = [f"{hyp.name} : {hyp.type}" for hyp in goal.hyps]
    lines.append(f"------------------ {goal.goal.witness}")
    lines.append(goal.goal.type)
    return "\n".join(lines)


def _format_goals(goals: list[ProofStateContextualGoal]) -> str:
    parts = []
    for index, goal in enumerate(goals, start=1):
        parts.append(
            f"Goal {index} of {len(goals)} :\n"
            f"```fstar\n{_format_contextual_goal(goal)}\n```\n\n"
        )
    return "".join(parts)


def format_proof_state(proof_state: IdeProofState) -> str:
    result = f"### Proof state \n({proof_state.label})\n"
    if proof_state.goals:
        result += "**Goals**\n" + _format_goals(proof_state.goals)
    if proof_state.smt_goals:
        result += "**SMT Goals**\n" + _format_goals(proof_state.smt_goals)
    return result


def format_lookup(result: IdeSymbol | IdeModule) -> str:
    match result:
        case IdeSymbol(name=name, type=type_):
            return f"```fstar\n{name}:\n{type_}\n```\n"
        case IdeModule(name=name):
            return f"```fstar\nmodule {name}\n```\n"
        case _:
            never("unknown lookup result", result=result)
