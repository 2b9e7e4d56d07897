"""Error taxonomy for the F* IDE bridge."""

from __future__ import annotations


class FStarLspError(RuntimeError):
    """Base class for failures surfaced to the editor as alerts."""


class TransportExitedError(FStarLspError):
    """Raised when a request is sent to a checker process that already exited."""

    def __init__(self, role: str, exit_code: int | None) -> None:
        super().__init__(f"ERROR: F* {role} process exited with code {exit_code}")
        self.role = role
        self.exit_code = exit_code


class TransportWriteError(FStarLspError):
    """Raised when writing a request line to the checker process fails."""


class CapabilityError(FStarLspError):
    """Raised when the checker lacks a protocol feature a request relies on."""


class ProtocolViolation(FStarLspError):
    """A line from the checker that does not match the IDE protocol.

    Protocol violations are logged and dropped by the query channel; they are
    never fatal to the connection.
    """

    def __init__(self, message: str, *, payload: object = None) -> None:
        super().__init__(message)
        self.payload = payload


class ExecutableNotFoundError(FStarLspError):
    """Raised when the configured fstar.exe cannot be resolved."""


class ConfigurationError(FStarLspError):
    """Raised for unreadable or malformed project configuration."""


class NeverThrown(RuntimeError):
    """Sentinel exception for code paths that exhaustive matching rules out."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.env = dict(env or {})
