import inspect
import io
import sys
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Union

from quill.quill_ast import Program
from quill.quill_context import ExecutionContext
from quill.quill_datatypes import (
    Environment, Library, Builtin, QuillFunction, QuillClass, Instance, to_value,
    as_int, as_float, as_string, as_bool, as_list, as_dict, type_name,
)
from quill.quill_errors import (
    LexError, ParseError, ScriptError, ScriptExit, QuillNameError,
    QuillTypeError, QuillImportError, InterpreterFault,
)
from quill.quill_interpreter import Evaluator
from quill.quill_libraries import STANDARD_LIBRARIES
from quill.quill_parser import parse_source
from quill.quill_printer import Printer
from quill.quill_sandbox import SandboxConfig
from quill.quill_stdlib import StdLib


# ===================================================================
# 1. Host objects
# ===================================================================

def quill_api_method(func):
    """A decorator to explicitly mark methods as safe for Quill execution."""
    func._is_quill_api = True
    return func


class QuillHost(ABC):
    """Base class for a Python object whose marked methods scripts may call."""
    def __init__(self):
        self.active_contexts: set = set()

    @quill_api_method
    def cancel_running(self):
        """Cancels every script currently running against this host; returns how many."""
        count = len(self.active_contexts)
        for ctx in list(self.active_contexts):
            ctx.cancel("cancelled by host")
        self.active_contexts.clear()
        return count

    def _register_context(self, ctx: ExecutionContext):
        self.active_contexts.add(ctx)

    def _release_context(self, ctx: ExecutionContext):
        self.active_contexts.discard(ctx)


class _CallableWriter:
    def __init__(self, fn: Callable[[str], Any]):
        self._fn = fn

    def write(self, text: str):
        self._fn(text)


# ===================================================================
# 2. The embedder API
# ===================================================================

def _freeze_classes(library: Library):
    for member in library.functions.values():
        if isinstance(member, QuillClass):
            member.frozen = True
    for sub in library.sub_libraries.values():
        _freeze_classes(sub)


class Interpreter:
    """One isolated Quill runtime: globals, libraries, output sink, sandbox.

    Nothing mutable is shared between Interpreter objects, so separate
    instances may run on separate threads.
    """

    def __init__(self, sandbox: Optional[SandboxConfig] = None, *, max_depth: int = 200):
        self.sandbox = sandbox if sandbox is not None else SandboxConfig()
        self.evaluator = Evaluator(self, max_depth=max_depth)
        self.stdlib = StdLib(self.evaluator)
        self.builtins_env = self.stdlib.install(Environment(name="<builtins>"))
        self.globals = Environment(self.builtins_env, is_module=True, name="<module>")

        self._libraries: Dict[str, Library] = {}
        self._script_libraries: Dict[str, Program] = {}
        self._loaded: Dict[str, Library] = {}
        self._loading: set = set()
        self._on_demand: Optional[Callable] = None
        self._on_demand_results: Dict[str, Any] = {}

        self._writer: Any = None
        self._capture: Optional[io.StringIO] = None

    # --- Evaluation ---

    def new_context(self, timeout: Optional[float] = None) -> ExecutionContext:
        """A fresh context carrying this interpreter's sandbox, output and globals."""
        seconds = timeout if timeout is not None else self.sandbox.timeout
        kwargs = dict(sandbox=self.sandbox, output=self._current_writer(), env=self.globals)
        if seconds is not None:
            return ExecutionContext.with_timeout(seconds, **kwargs)
        return ExecutionContext(**kwargs)

    async def eval(self, source: str) -> Any:
        """Runs source; returns the value of the last top-level expression or assignment."""
        return await self.eval_with_context(self.new_context(), source)

    async def eval_with_context(self, ctx: ExecutionContext, source: str) -> Any:
        program = parse_source(source)
        return await self.run_program(ctx, program)

    async def run_program(self, ctx: ExecutionContext, program: Program) -> Any:
        env = ctx.env if isinstance(ctx.env, Environment) else self.globals
        return await self._with_context(ctx, lambda: self.evaluator.run_program(program, env))

    async def _with_context(self, ctx: ExecutionContext, action: Callable):
        ev = self.evaluator
        previous = ev.ctx
        outermost = ev.depth == 0
        if ctx.env is None:
            ctx.env = self.globals
        ev.ctx = ctx
        if outermost:
            ev.call_stack.clear()
            ev._handling.clear()
        try:
            ctx.check()
            return await action()
        except RecursionError:
            raise ScriptError("maximum recursion depth exceeded", "RuntimeError") from None
        finally:
            ev.ctx = previous

    # --- Variables ---

    def set_var(self, name: str, value: Any):
        self.globals[name] = to_value(value)

    def get_var(self, name: str) -> Tuple[Any, bool]:
        found, value = self.globals.lookup(name)
        return value, found

    def _require(self, name: str) -> Any:
        value, found = self.get_var(name)
        if not found:
            raise QuillNameError(f"name '{name}' is not defined")
        return value

    def get_var_as_int(self, name: str) -> int:
        return as_int(self._require(name))

    def get_var_as_float(self, name: str) -> float:
        return as_float(self._require(name))

    def get_var_as_string(self, name: str) -> str:
        return as_string(self._require(name))

    def get_var_as_bool(self, name: str) -> bool:
        return as_bool(self._require(name))

    def get_var_as_list(self, name: str) -> list:
        return as_list(self._require(name))

    def get_var_as_dict(self, name: str) -> dict:
        return as_dict(self._require(name))

    # --- Registration ---

    def register_func(self, name: str, fn: Callable, help_text: Optional[str] = None):
        self.builtins_env[name] = fn if isinstance(fn, Builtin) else Builtin(fn, name, help_text)

    def register_class(self, cls: QuillClass):
        """Registered classes may be shared by several interpreters, so scripts cannot modify them."""
        cls.frozen = True
        self.builtins_env[cls.name] = cls

    def register_library(self, library: Library):
        _freeze_classes(library)
        self._libraries[library.name] = library
        self._loaded.pop(library.name, None)

    def register_sub_library(self, parent: Union[str, Library], name: str, library: Library):
        if isinstance(parent, str):
            if parent not in self._libraries:
                raise KeyError(f"library '{parent}' is not registered")
            parent = self._libraries[parent]
        _freeze_classes(library)
        parent.sub_libraries[name] = library
        self._loaded.pop(parent.name, None)

    def register_script_library(self, name: str, source: str):
        """Parses now (errors surface at registration); evaluates on first import."""
        self._script_libraries[name] = parse_source(source)
        self._loaded.pop(name, None)

    def set_on_demand_library_callback(self, fn: Optional[Callable[[str], Any]]):
        """fn(name) -> Library | source str | None, asked once per unresolved name."""
        self._on_demand = fn
        self._on_demand_results.clear()

    # --- Imports ---

    async def import_library(self, dotted: str) -> Tuple[Library, Library]:
        """Resolves `a.b.c`; returns (top-level library, library named by the full path)."""
        parts = dotted.split(".")
        top = await self._load_library(parts[0])
        leaf = top
        for i, part in enumerate(parts[1:], start=2):
            found, member = leaf.get_member(part)
            if not found or not isinstance(member, Library):
                raise QuillImportError(f"No module named '{'.'.join(parts[:i])}'")
            leaf = member
        return top, leaf

    async def _load_library(self, name: str) -> Library:
        if name in self._loaded:
            return self._loaded[name]
        if name in self._loading:
            raise QuillImportError(f"circular import of '{name}'")
        self._loading.add(name)
        try:
            lib = await self._resolve_library(name)
        finally:
            self._loading.discard(name)
        if lib is None:
            raise QuillImportError(f"No module named '{name}'")
        if lib.is_template:
            lib = lib.instantiate(self.sandbox)
        self._loaded[name] = lib
        self.evaluator._dbg("import", name, lib.member_names())
        return lib

    async def _resolve_library(self, name: str) -> Optional[Library]:
        if name in self._libraries:
            return self._libraries[name]
        if name in self._script_libraries:
            return await self._run_script_library(name, self._script_libraries[name])
        if name in STANDARD_LIBRARIES:
            return STANDARD_LIBRARIES[name](self)
        if self._on_demand is None:
            return None
        if name not in self._on_demand_results:
            result = self._on_demand(name)
            if inspect.isawaitable(result):
                result = await result
            if isinstance(result, str):
                result = parse_source(result)
            self._on_demand_results[name] = result
        result = self._on_demand_results[name]
        if isinstance(result, Program):
            return await self._run_script_library(name, result)
        if isinstance(result, Library):
            _freeze_classes(result)
        return result

    async def _run_script_library(self, name: str, program: Program) -> Library:
        env = Environment(self.builtins_env, is_module=True, name=name)
        await self.evaluator.run_program(program, env)
        functions, constants, subs = {}, {}, {}
        for key, value in env.bindings.items():
            if key.startswith("_"):
                continue
            match value:
                case QuillFunction() | Builtin() | QuillClass():
                    functions[key] = value
                case Library():
                    subs[key] = value
                case _:
                    constants[key] = value
        return Library(name, functions, constants, subs)

    # --- Calling into scripts ---

    async def call_function(self, name: str, *args, **kwargs) -> Any:
        return await self.call_function_with_context(self.new_context(), name, *args, **kwargs)

    async def call_function_with_context(self, ctx: ExecutionContext, name: str, *args, **kwargs) -> Any:
        fn = self._require(name)
        return await self._invoke(ctx, fn, args, kwargs)

    async def create_instance(self, class_name: str, *args, **kwargs) -> Instance:
        cls = self._require(class_name)
        if not isinstance(cls, QuillClass):
            raise QuillTypeError(f"'{class_name}' is not a class, it is {type_name(cls)}")
        return await self._invoke(self.new_context(), cls, args, kwargs)

    async def call_method(self, instance: Any, name: str, *args, **kwargs) -> Any:
        method = self.evaluator.get_attribute(instance, name)
        return await self._invoke(self.new_context(), method, args, kwargs)

    async def _invoke(self, ctx: ExecutionContext, fn: Any, args, kwargs) -> Any:
        script_args = [to_value(a) for a in args]
        script_kwargs = {k: to_value(v) for k, v in kwargs.items()}
        return await self._with_context(ctx, lambda: self.evaluator.invoke(fn, *script_args, **script_kwargs))

    # --- Output ---

    def enable_output_capture(self):
        self._capture = io.StringIO()
        self._writer = self._capture

    def get_output(self) -> str:
        """Returns captured output and clears the buffer."""
        if self._capture is None:
            return ""
        text = self._capture.getvalue()
        self._capture.seek(0)
        self._capture.truncate(0)
        return text

    def set_output_writer(self, writer: Any):
        """`writer` is a file-like object or a callable taking the text."""
        self._capture = None
        self._writer = writer if hasattr(writer, "write") else _CallableWriter(writer)

    def _current_writer(self):
        return self._writer if self._writer is not None else sys.stdout


# ===================================================================
# 3. Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error', 'exit']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)
    exit_code: Optional[int] = None

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and self.error_token.get('line') is not None:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class _EffectsWriter:
    """Turns printed text into one stdout side effect per line."""
    def __init__(self, effects: List[Dict]):
        self._effects = effects
        self._pending = ""

    def write(self, text: str):
        self._pending += text
        while "\n" in self._pending:
            line, self._pending = self._pending.split("\n", 1)
            self._effects.append({'topics': ['stdout'], 'message': line})

    def flush(self):
        if self._pending:
            self._effects.append({'topics': ['stdout'], 'message': self._pending})
            self._pending = ""


class ScriptRunner:
    """Parses and executes Quill code, reporting the outcome as an ExecutionResult."""

    def __init__(self, interpreter: Optional[Interpreter] = None, host_object: Optional[QuillHost] = None):
        self.interpreter = interpreter or Interpreter()
        self.host_object = host_object
        self.side_effects: List[Dict] = []
        self._host_api_names: set = set()
        self._shadowed: Dict[str, Any] = {}

    @property
    def evaluator(self) -> Evaluator:
        return self.interpreter.evaluator

    def _format_parse_error(self, e: Union[LexError, ParseError], source: str) -> str:
        context = self._source_context(source, e.line, e.column)
        msg = f"{type(e).__name__}: {e.message} (line {e.line}, col {e.column})"
        return f"{msg}\n{context}" if context else msg

    def _format_runtime_error(self, e: Exception, source: str) -> Tuple[str, Optional[Token]]:
        token = None
        match e:
            case ScriptError():
                msg = str(e)
                line, col = e.line, e.column
                if line is not None:
                    token = {'line': line, 'col': col}
                    context = self._source_context(source, line, col)
                    msg = f"{msg}\n(line {line}, col {col})"
                    if context:
                        msg = f"{msg}\n{context}"
                st = self._format_stacktrace(e.trace)
                if st:
                    msg += "\n" + st
            case InterpreterFault():
                msg = f"InternalError: {e}"
            case _:
                msg = f"InternalError: {type(e).__name__}: {e}"
        return msg, token

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            ln = str(i).rjust(width)
            out.append(f"{prefix} {ln} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_stacktrace(self, trace: Optional[List[dict]]) -> str:
        if not trace:
            return ""
        pf = Printer().pformat

        def fmt(arg):
            match arg:
                case None | bool() | int() | float() | str():
                    return pf(arg)
                case list() | tuple():
                    return f"{type_name(arg)}[{len(arg)}]"
                case QuillFunction() | Builtin():
                    return arg.name
            return f"<{type_name(arg)}>"

        frames = []
        for frame in trace:
            name = frame.get('name') or '<call>'
            args_s = " ".join(fmt(a) for a in frame.get('args') or [])
            frames.append(f"({name} {args_s})" if args_s else f"({name})")
        return "Quill stacktrace: " + " ".join(frames)

    def _bind_host_api_methods(self):
        """Bind @quill_api_method methods of the host as builtins."""
        env = self.interpreter.builtins_env
        for n in self._host_api_names:
            if n in self._shadowed:
                env[n] = self._shadowed.pop(n)
            else:
                env.bindings.pop(n, None)
        self._host_api_names = set()

        host = self.host_object
        if not host:
            return
        for name, member in inspect.getmembers(host):
            if not callable(member):
                continue
            is_api = getattr(member, "_is_quill_api", False)
            if not is_api:
                func = getattr(member, "__func__", None)
                is_api = getattr(func, "_is_quill_api", False) if func is not None else False
            if not is_api:
                continue
            if name in env.bindings:
                self._shadowed[name] = env.bindings[name]
            env[name] = Builtin(member, name)
            self._host_api_names.add(name)

    async def handle_script(self, source_code: str, timeout: Optional[float] = None) -> ExecutionResult:
        """The main entry point to execute a script. Never raises."""
        self.side_effects = []
        writer = _EffectsWriter(self.side_effects)
        self._bind_host_api_methods()

        # 1. Parse
        try:
            program = parse_source(source_code)
        except (LexError, ParseError) as e:
            msg = self._format_parse_error(e, source_code)
            self.side_effects.append({'topics': ['stderr'], 'message': msg})
            return ExecutionResult(
                status='error',
                error_message=msg,
                error_token={'line': e.line, 'col': e.column},
                side_effects=self.side_effects,
            )

        # 2. Evaluate
        ctx = self.interpreter.new_context(timeout)
        ctx.output = writer
        host = self.host_object
        if host is not None:
            host._register_context(ctx)
        try:
            value = await self.interpreter.run_program(ctx, program)
        except ScriptExit as e:
            writer.flush()
            # Integer codes are silent; any other exit argument is reported
            args = e.exception.fields.get("args", ()) if e.exception is not None else ()
            if args and not isinstance(args[0], int):
                self.side_effects.append({'topics': ['stderr'], 'message': e.exception.message})
            return ExecutionResult(status='exit', exit_code=e.code, side_effects=self.side_effects)
        except Exception as e:
            writer.flush()
            err_msg, err_token = self._format_runtime_error(e, source_code)
            self.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_token=err_token,
                side_effects=self.side_effects,
            )
        finally:
            if host is not None:
                host._release_context(ctx)

        writer.flush()
        return ExecutionResult(status='success', value=value, side_effects=self.side_effects)
