from __future__ import annotations

"""JSON-like value types used at the IDE wire boundary.

Raw decoded lines from the checker process are typed as `JSONObject` until
`fstar_lsp.messages.parse_inbound` turns them into protocol models; nothing
past that boundary should handle the untyped form.
"""

from typing import TypeAlias


JSONScalar: TypeAlias = str | int | float | bool | None
JSONValue: TypeAlias = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
JSONObject: TypeAlias = dict[str, JSONValue]
