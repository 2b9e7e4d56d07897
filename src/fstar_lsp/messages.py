"""Typed model of the fstar.exe IDE protocol.

Inbound lines are validated once, in `parse_inbound`, into a closed union of
pydantic models discriminated on ``kind`` and then ``level``. Outbound
queries are small frozen dataclasses that render their own wire form.

See https://github.com/FStarLang/FStar/wiki/Editor-support-for-F* for the
message formats.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from fstar_lsp.exceptions import ProtocolViolation
from fstar_lsp.json_types import JSONObject

# F* positions are (line, column) with 1-based lines and 0-based columns.
FStarPosition = tuple[int, int]

INPUT_FILE_NAME = "<input>"

ProgressStage = Literal[
    "full-buffer-started",
    "full-buffer-fragment-started",
    "full-buffer-fragment-ok",
    "full-buffer-fragment-lax-ok",
    "full-buffer-fragment-failed",
    "full-buffer-finished",
]

FullBufferKind = Literal[
    "full",
    "lax",
    "cache",
    "reload-deps",
    "verify-to-position",
    "lax-to-position",
]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FStarRange(_WireModel):
    fname: str
    beg: tuple[int, int]
    end: tuple[int, int]

    @property
    def is_dummy(self) -> bool:
        return self.fname == "dummy" or self.beg[1] < 0


class CodeFragment(_WireModel):
    code_digest: str = Field(alias="code-digest")
    range: FStarRange


class IdeProgress(_WireModel):
    stage: ProgressStage
    ranges: FStarRange | None = None
    code_fragment: CodeFragment | None = Field(default=None, alias="code-fragment")


class ProofStateHypothesis(_WireModel):
    name: str
    type: str


class ProofStateGoal(_WireModel):
    witness: str
    type: str
    label: str = ""


class ProofStateContextualGoal(_WireModel):
    hyps: list[ProofStateHypothesis] = []
    goal: ProofStateGoal


class IdeProofState(_WireModel):
    """A tactic ``dump`` emitted as a side effect of checking."""

    label: str = ""
    depth: int = 0
    urgency: int = 0
    goals: list[ProofStateContextualGoal] = []
    smt_goals: list[ProofStateContextualGoal] = Field(default=[], alias="smt-goals")
    location: FStarRange


class IdeDiagnostic(_WireModel):
    message: str
    number: int = 0
    level: str = "error"
    ranges: list[FStarRange] = []


class IdeSymbol(_WireModel):
    kind: Literal["symbol"]
    name: str
    type: str = ""
    documentation: str = ""
    definition: str = ""
    defined_at: FStarRange | None = Field(default=None, alias="defined-at")
    symbol_range: FStarRange | None = Field(default=None, alias="symbol-range")
    symbol: str = ""


class IdeModule(_WireModel):
    kind: Literal["module"]
    name: str
    path: str = ""


LookupResult = Annotated[Union[IdeSymbol, IdeModule], Field(discriminator="kind")]


class ProtocolInfo(_WireModel):
    kind: Literal["protocol-info"]
    version: int = 3
    features: list[str] = []


class IdeResponse(_WireModel):
    kind: Literal["response"]
    query_id: str = Field(alias="query-id")
    status: Literal["success", "failure"]
    response: Any = None


class _IdeMessageBase(_WireModel):
    kind: Literal["message"]
    query_id: str = Field(alias="query-id")


class ProgressMessage(_IdeMessageBase):
    level: Literal["progress"]
    contents: IdeProgress

    @property
    def is_full_buffer_finished(self) -> bool:
        return self.contents.stage == "full-buffer-finished"


class StatusMessage(_IdeMessageBase):
    level: Literal["error", "warning", "info"]
    contents: Any = None


class ProofStateMessage(_IdeMessageBase):
    level: Literal["proof-state"]
    contents: IdeProofState


IdeMessage = Annotated[
    Union[ProgressMessage, StatusMessage, ProofStateMessage],
    Field(discriminator="level"),
]
QueryReply = Union[IdeResponse, ProgressMessage, StatusMessage, ProofStateMessage]
InboundMessage = Annotated[
    Union[ProtocolInfo, IdeResponse, IdeMessage],
    Field(discriminator="kind"),
]

_INBOUND = TypeAdapter(InboundMessage)
_DIAGNOSTICS = TypeAdapter(list[IdeDiagnostic])
_LOOKUP = TypeAdapter(LookupResult)


def parse_inbound(raw: object) -> ProtocolInfo | QueryReply:
    try:
        return _INBOUND.validate_python(raw)
    except ValidationError as exc:
        raise ProtocolViolation(
            f"unrecognized IDE message: {exc.error_count()} validation error(s)",
            payload=raw,
        ) from exc


def parse_diagnostics(payload: object) -> list[IdeDiagnostic]:
    try:
        return _DIAGNOSTICS.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolViolation("malformed diagnostics payload", payload=payload) from exc


def parse_lookup(payload: object) -> IdeSymbol | IdeModule | None:
    try:
        return _LOOKUP.validate_python(payload)
    except ValidationError:
        return None


def owning_query_id(query_id: str) -> str:
    """Strip the fractional suffix F* appends to streamed response ids.

    A full-buffer query with id ``"2"`` is answered with ids such as ``"2"``,
    ``"2.1"``, ``"2.1"``, ``"2.2"``.
    """
    head, _, _ = query_id.partition(".")
    return head


@dataclass(frozen=True)
class IdeQuery:
    query: str
    args: JSONObject = field(default_factory=dict)

    def to_wire(self, query_id: str) -> JSONObject:
        return {"query-id": query_id, "query": self.query, "args": dict(self.args)}


@dataclass(frozen=True)
class FullBufferQuery:
    """Ask fstar.exe to check a whole buffer, optionally up to a position.

    The reply is a stream: one progress message per fragment until the first
    failing fragment, ending with ``full-buffer-finished``.
    """

    query: ClassVar[str] = "full-buffer"

    kind: FullBufferKind
    code: str
    with_symbols: bool = False
    to_position: FStarPosition | None = None

    @property
    def args(self) -> JSONObject:
        args: JSONObject = {
            "kind": self.kind,
            "with-symbols": self.with_symbols,
            "code": self.code,
            "line": 0,
            "column": 0,
        }
        if self.to_position is not None:
            line, column = self.to_position
            args["to-position"] = {"line": line, "column": column}
        return args

    def to_wire(self, query_id: str) -> JSONObject:
        return {"query-id": query_id, "query": self.query, "args": self.args}


def cancel_query(position: FStarPosition) -> IdeQuery:
    line, column = position
    return IdeQuery("cancel", {"cancel-line": line, "cancel-column": column})


def vfs_add_query(filename: str | None, contents: str) -> IdeQuery:
    return IdeQuery("vfs-add", {"filename": filename, "contents": contents})


def lookup_query(filename: str, position: FStarPosition, symbol: str) -> IdeQuery:
    line, column = position
    return IdeQuery(
        "lookup",
        {
            "context": "code",
            "symbol": symbol,
            "requested-info": ["type", "documentation", "defined-at"],
            "location": {"filename": filename, "line": line, "column": column},
        },
    )


def autocomplete_query(partial_symbol: str) -> IdeQuery:
    return IdeQuery("autocomplete", {"partial-symbol": partial_symbol, "context": "code"})


def restart_solver_query() -> IdeQuery:
    return IdeQuery("restart-solver", {})


def format_query(code: str) -> IdeQuery:
    return IdeQuery("format", {"code": code})
