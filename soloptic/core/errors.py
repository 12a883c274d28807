"""Error taxonomy for the profiling pipeline.

Fatal errors abort a run and reach the caller as a single error.
Recoverable errors are absorbed per fuzz iteration by the gas fuzzer.
"""

from __future__ import annotations


class SolOpticError(Exception):
    """Base class for all pipeline errors."""

    recoverable: bool = False


class DecodeError(SolOpticError):
    """Bytecode is empty or not valid hex."""


class MapFormatError(SolOpticError):
    """A present source-map field could not be parsed."""

    def __init__(self, message: str, record_index: int | None = None) -> None:
        self.record_index = record_index
        super().__init__(message)


class CompilationError(SolOpticError):
    """The compiler rejected the source. Diagnostics are kept verbatim."""

    def __init__(self, diagnostics: list[str]) -> None:
        self.diagnostics = list(diagnostics)
        super().__init__("Compilation failed:\n" + "\n".join(self.diagnostics))


class DeploymentError(SolOpticError):
    """The contract could not be deployed (no account, failed creation)."""


class InvalidTraceError(SolOpticError):
    """A trace lacks a step list."""

    recoverable = True


class InvocationError(SolOpticError):
    """An invocation could not be submitted."""

    recoverable = True


class InvocationTimeout(InvocationError):
    """No receipt arrived within the wait bound."""


NoReceipt = InvocationTimeout


class TraceUnavailable(SolOpticError):
    """The trace could not be fetched after all retries."""

    recoverable = True
