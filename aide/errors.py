"""
Error taxonomy for the aide agent.

Every failure the session can meet is enumerated here together with the way
the session deals with it. Recoverable conditions are reported inline (as a
tool result or a cache miss), cancellation is a clean exit, and anything else
is escalated to the user through the ignore-this-error gate. The mapping is a
table rather than ad hoc ``isinstance`` checks scattered through the loop, so
adding a new error class means adding one row.
"""

from __future__ import annotations

import asyncio
import sqlite3
from enum import Enum


class AideError(Exception):
    """Base class for all aide errors."""


class CompilationFailure(AideError):
    """Submitted tool source did not compile, load, or validate."""

    def __init__(self, diagnostics: list[str]):
        self.diagnostics = list(diagnostics)
        super().__init__("; ".join(self.diagnostics) or "compilation failed")


class DuplicateToolName(AideError):
    """A tool with the same name is already registered."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' is already registered.")


class ToolNotFound(AideError):
    """No tool with the requested name exists."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ApprovalDenied(AideError):
    """The user refused a sensitive tool call."""

    def __init__(self, name: str, answer: str = ""):
        self.name = name
        self.answer = answer
        super().__init__(f"Call refused by user: '{name}' was not approved.")


class CancellationRequested(AideError):
    """The session is shutting down; treated as a clean exit."""


class TransientServiceFailure(AideError):
    """A completion, embedding, or storage service could not be reached."""


class SessionAborted(AideError):
    """The user declined to ignore an error; the session ends."""

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Session aborted after {type(cause).__name__}: {cause}")


class ErrorDisposition(str, Enum):
    """What the session does when an error escapes a turn."""

    REPORT_INLINE = "report_inline"   # becomes a tool result; loop continues
    CLEAN_EXIT = "clean_exit"         # session ends without an error
    ASK = "ask"                       # pause and ask whether to ignore
    FATAL = "fatal"                   # session ends, no question asked


ERROR_POLICY: dict[type[BaseException], ErrorDisposition] = {
    CompilationFailure: ErrorDisposition.REPORT_INLINE,
    DuplicateToolName: ErrorDisposition.REPORT_INLINE,
    ToolNotFound: ErrorDisposition.REPORT_INLINE,
    ApprovalDenied: ErrorDisposition.REPORT_INLINE,
    CancellationRequested: ErrorDisposition.CLEAN_EXIT,
    asyncio.CancelledError: ErrorDisposition.CLEAN_EXIT,
    SessionAborted: ErrorDisposition.FATAL,
    KeyboardInterrupt: ErrorDisposition.FATAL,
    SystemExit: ErrorDisposition.FATAL,
    TransientServiceFailure: ErrorDisposition.ASK,
    sqlite3.Error: ErrorDisposition.ASK,
    ConnectionError: ErrorDisposition.ASK,
    TimeoutError: ErrorDisposition.ASK,
    Exception: ErrorDisposition.ASK,
}


def classify(exc: BaseException) -> ErrorDisposition:
    """Return the disposition of *exc* by walking its MRO through ERROR_POLICY."""
    for klass in type(exc).__mro__:
        disposition = ERROR_POLICY.get(klass)
        if disposition is not None:
            return disposition
    return ErrorDisposition.FATAL
