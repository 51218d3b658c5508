"""
Errors the Quill runtime reports to its host.

Inside a running script, exceptions are ordinary values carried by a
RaiseSignal. They only become Python exceptions when they cross the
extension boundary: a native function raising one of these is turned
into a script exception of the same kind, and a script exception that
nobody catches reaches the embedder as a ScriptError.
"""
from typing import Any, List, Optional


class QuillError(Exception):
    """Base class for everything the interpreter raises at its host."""


class LexError(QuillError):
    """Source text could not be tokenized."""

    def __init__(self, message: str, line: int, column: int):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def __str__(self):
        return f"LexError: {self.message} (line {self.line}, col {self.column})"


class ParseError(QuillError):
    """Token stream does not form a valid program."""

    def __init__(self, message: str, line: int, column: int, expected: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column
        self.expected = expected

    def __str__(self):
        return f"ParseError: {self.message} (line {self.line}, col {self.column})"


class ScriptError(QuillError):
    """A script-level exception.

    Native code raises it (or one of the subclasses below) to throw an
    exception into the script; the embedder receives it when a script
    exception escapes evaluation. `exception` holds the script's own
    exception object when there is one, so the value survives a round
    trip through host code unchanged.
    """
    kind = "RuntimeError"

    def __init__(self, message: str = "", kind: Optional[str] = None, *,
                 exception: Any = None, line: Optional[int] = None,
                 column: Optional[int] = None, trace: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.exception = exception
        self.line = line
        self.column = column
        self.trace = trace or []

    def __str__(self):
        if self.message:
            return f"{self.kind}: {self.message}"
        return self.kind


class QuillTypeError(ScriptError):
    kind = "TypeError"


class QuillValueError(ScriptError):
    kind = "ValueError"


class QuillNameError(ScriptError):
    kind = "NameError"


class QuillImportError(ScriptError):
    kind = "ImportError"


class ArityError(QuillTypeError):
    """Wrong number or names of arguments in a call."""
    kind = "ArityError"


class PermissionDenied(ScriptError):
    """The sandbox refused access to a host resource."""
    kind = "PermissionError"


class Cancelled(ScriptError):
    """The execution context was cancelled or its deadline passed."""
    kind = "Cancelled"


class ScriptExit(ScriptError):
    """The script asked to exit. Never terminates the host process."""
    kind = "SystemExit"

    def __init__(self, code: int = 0, message: str = "", **kwargs):
        super().__init__(message or f"exit requested with code {code}", **kwargs)
        self.code = code


class InterpreterFault(QuillError):
    """An internal invariant was violated. This is a bug in the interpreter."""


# Python exception types mapped onto script exception kinds when they
# escape a native function. Order matters: subclasses first.
PYTHON_ERROR_KINDS = (
    (ZeroDivisionError, "ZeroDivisionError"),
    (FileNotFoundError, "FileNotFoundError"),
    (PermissionError, "PermissionError"),
    (OSError, "OSError"),
    (KeyError, "KeyError"),
    (IndexError, "IndexError"),
    (RecursionError, "RuntimeError"),
    (OverflowError, "ValueError"),
    (UnicodeError, "ValueError"),
    (TypeError, "TypeError"),
    (ValueError, "ValueError"),
    (AttributeError, "AttributeError"),
    (NotImplementedError, "RuntimeError"),
)


def kind_for_python_error(exc: BaseException) -> str:
    for py_type, kind in PYTHON_ERROR_KINDS:
        if isinstance(exc, py_type):
            return kind
    return "RuntimeError"


def python_error_message(exc: BaseException) -> str:
    # KeyError wraps its argument in quotes via repr; keep that behaviour
    if isinstance(exc, KeyError) and exc.args:
        return repr(exc.args[0])
    return str(exc)
