from __future__ import annotations

import pytest

from fstar_lsp.exceptions import ProtocolViolation
from fstar_lsp.messages import (
    FStarRange,
    FullBufferQuery,
    IdeModule,
    IdeResponse,
    IdeSymbol,
    ProgressMessage,
    ProofStateMessage,
    ProtocolInfo,
    StatusMessage,
    cancel_query,
    lookup_query,
    owning_query_id,
    parse_diagnostics,
    parse_inbound,
    parse_lookup,
    vfs_add_query,
)
from tests.fakes import fstar_range, progress, protocol_info, response


def test_parse_protocol_info() -> None:
    message = parse_inbound(protocol_info(("full-buffer", "lookup"), version=2))
    assert isinstance(message, ProtocolInfo)
    assert message.version == 2
    assert "lookup" in message.features


def test_parse_response_and_progress() -> None:
    reply = parse_inbound(response("3", None))
    assert isinstance(reply, IdeResponse)
    assert reply.query_id == "3"
    assert reply.response is None

    rng = fstar_range((1, 0), (2, 4))
    message = parse_inbound(progress("4.2", "full-buffer-fragment-ok", rng))
    assert isinstance(message, ProgressMessage)
    assert message.contents.ranges is not None
    assert message.contents.ranges.end == (2, 4)
    assert message.contents.code_fragment is not None
    assert message.contents.code_fragment.code_digest == "d41d8cd9"
    assert not message.is_full_buffer_finished
    assert parse_inbound(progress("4.3", "full-buffer-finished")).is_full_buffer_finished


def test_parse_status_and_proof_state() -> None:
    info = parse_inbound({"kind": "message", "query-id": "5", "level": "info", "contents": "hi"})
    assert isinstance(info, StatusMessage)
    state = parse_inbound(
        {
            "kind": "message",
            "query-id": "5.1",
            "level": "proof-state",
            "contents": {
                "label": "at_dump",
                "depth": 0,
                "urgency": 1,
                "goals": [
                    {
                        "hyps": [{"name": "x", "type": "int"}],
                        "goal": {"witness": "?u", "type": "x > 0", "label": ""},
                    }
                ],
                "smt-goals": [],
                "location": fstar_range((3, 2), (3, 10)),
            },
        }
    )
    assert isinstance(state, ProofStateMessage)
    assert state.contents.goals[0].hyps[0].name == "x"


@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "gossip"},
        {"kind": "message", "query-id": "1", "level": "progress", "contents": {"stage": "x"}},
        {"kind": "response", "status": "success"},
        "not an object",
    ],
)
def test_parse_inbound_rejects_unknown_shapes(raw: object) -> None:
    with pytest.raises(ProtocolViolation) as exc:
        parse_inbound(raw)
    assert exc.value.payload == raw


def test_owning_query_id_truncates_at_first_dot() -> None:
    assert owning_query_id("7") == "7"
    assert owning_query_id("7.2") == "7"
    assert owning_query_id("12.3.1") == "12"
    assert owning_query_id("7.20") == "7"
    assert owning_query_id("72") == "72"


def test_full_buffer_query_wire_form() -> None:
    query = FullBufferQuery(kind="full", code="let x = 1")
    assert query.to_wire("4") == {
        "query-id": "4",
        "query": "full-buffer",
        "args": {
            "kind": "full",
            "with-symbols": False,
            "code": "let x = 1",
            "line": 0,
            "column": 0,
        },
    }
    partial = FullBufferQuery(kind="verify-to-position", code="", to_position=(3, 1))
    assert partial.args["to-position"] == {"line": 3, "column": 1}


def test_simple_query_builders() -> None:
    assert cancel_query((2, 5)).args == {"cancel-line": 2, "cancel-column": 5}
    assert vfs_add_query("/a/B.fst", "x").to_wire("1")["args"] == {
        "filename": "/a/B.fst",
        "contents": "x",
    }
    lookup = lookup_query("<input>", (1, 4), "foo").args
    assert lookup["location"] == {"filename": "<input>", "line": 1, "column": 4}
    assert lookup["requested-info"] == ["type", "documentation", "defined-at"]


def test_parse_diagnostics_and_lookup() -> None:
    diagnostics = parse_diagnostics(
        [{"message": "boom", "number": 19, "level": "warning", "ranges": [fstar_range((1, 0), (1, 3))]}]
    )
    assert diagnostics[0].level == "warning"
    with pytest.raises(ProtocolViolation):
        parse_diagnostics([{"number": 1}])

    module = parse_lookup({"kind": "module", "name": "FStar.List", "path": "/lib/FStar.List.fst"})
    assert isinstance(module, IdeModule)
    symbol = parse_lookup({"kind": "symbol", "name": "x", "type": "int", "defined-at": fstar_range((1, 4), (1, 5))})
    assert isinstance(symbol, IdeSymbol)
    assert symbol.defined_at is not None and not symbol.defined_at.is_dummy
    assert parse_lookup({"kind": "nothing"}) is None


def test_dummy_ranges() -> None:
    assert FStarRange(fname="dummy", beg=(0, 0), end=(0, 0)).is_dummy
    assert FStarRange(fname="A.fst", beg=(1, -1), end=(1, 0)).is_dummy
    assert not FStarRange(fname="A.fst", beg=(1, 0), end=(1, 0)).is_dummy
