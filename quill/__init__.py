from quill.quill_context import CancellationToken, ExecutionContext
from quill.quill_datatypes import Library, QuillClass, QuillDict, QuillSet, Instance
from quill.quill_errors import (
    QuillError, LexError, ParseError, ScriptError, ScriptExit, Cancelled, PermissionDenied,
    ArityError, QuillTypeError, QuillValueError, QuillNameError, QuillImportError, InterpreterFault,
)
from quill.quill_library import LibraryBuilder, ClassBuilder
from quill.quill_runtime import (
    Interpreter, ScriptRunner, ExecutionResult, QuillHost, quill_api_method,
)
from quill.quill_sandbox import SandboxConfig

__all__ = [
    "CancellationToken", "ExecutionContext",
    "Library", "QuillClass", "QuillDict", "QuillSet", "Instance",
    "QuillError", "LexError", "ParseError", "ScriptError", "ScriptExit", "Cancelled",
    "PermissionDenied", "ArityError", "QuillTypeError", "QuillValueError", "QuillNameError",
    "QuillImportError", "InterpreterFault",
    "LibraryBuilder", "ClassBuilder",
    "Interpreter", "ScriptRunner", "ExecutionResult", "QuillHost", "quill_api_method",
    "SandboxConfig",
]
