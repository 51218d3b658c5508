"""
The core Quill interpreter: an async tree-walking Evaluator.

Statements evaluate to None or a Signal (return, break, continue, raise);
expressions evaluate to a value or a RaiseSignal. Signals are returned,
never raised, so every control-flow path is visible in the code below.
Helpers that run deep inside an expression may raise ScriptError instead;
the nearest eval()/exec() turns it back into a RaiseSignal carrying the
same exception object.
"""
import asyncio
import inspect
import math
import operator
import os
import sys
from typing import Any, Dict, List, Optional

from quill.quill_ast import (
    Program, ExpressionStatement, Assign, AugAssign, If, While, For, FunctionDef,
    ClassDef, Try, Return, Break, Continue, Pass, Import, FromImport, Raise, Global,
    Nonlocal, Delete, Assert, Literal, FString, Identifier, BinaryOp, BoolOp, UnaryOp,
    Compare, Conditional, Call, Starred, Attribute, Index, Slice, ListLiteral,
    TupleLiteral, SetLiteral, DictLiteral, Lambda, Comprehension,
)
from quill.quill_binding import bind_arguments, prepare_native_call
from quill.quill_context import ExecutionContext
from quill.quill_datatypes import (
    Environment, QuillDict, QuillSet, QuillFunction, Builtin, BoundMethod, QuillClass,
    Instance, ExceptionInstance, SuperProxy, Library, Signal, ReturnSignal, RaiseSignal,
    BREAK, CONTINUE, BUILTIN_EXCEPTIONS, make_exception, type_name, is_truthy,
    iter_values, to_value,
)
from quill.quill_errors import (
    ScriptError, ScriptExit, Cancelled, QuillTypeError, QuillValueError, QuillNameError,
    QuillImportError, InterpreterFault, kind_for_python_error, python_error_message,
)
from quill.quill_printer import Printer
from quill import quill_methods

# Yield to the event loop every this many loop iterations / calls.
YIELD_EVERY = 100

# Results above this many bits are refused instead of hanging the host.
MAX_INT_BITS = 1_000_000
MAX_SEQUENCE_LENGTH = 50_000_000

# Python frames one script-level call nests, for sizing the host recursion limit.
FRAMES_PER_CALL = 16

_ARITH = {
    "+": operator.add, "-": operator.sub, "*": operator.mul, "/": operator.truediv,
    "//": operator.floordiv, "%": operator.mod, "**": operator.pow,
    "<<": operator.lshift, ">>": operator.rshift, "&": operator.and_,
    "|": operator.or_, "^": operator.xor,
}

_ORDER = {"<": operator.lt, ">": operator.gt, "<=": operator.le, ">=": operator.ge}


def _is_number(value) -> bool:
    return isinstance(value, (int, float))


class Evaluator:
    """Walks the AST for one Interpreter."""

    def __init__(self, interpreter=None, max_depth: int = 200):
        self.interp = interpreter
        self.max_depth = max_depth
        needed = max_depth * FRAMES_PER_CALL + 1000
        if sys.getrecursionlimit() < needed:
            sys.setrecursionlimit(needed)
        self.ctx: ExecutionContext = ExecutionContext()
        self.call_stack: List[dict] = []
        self.depth = 0
        self._handling: List[ExceptionInstance] = []
        self._ticks = 0
        cap = os.environ.get("QUILL_MAX_LOOP_ITERS", "").strip()
        self.max_loop_iters: Optional[int] = int(cap) if cap.isdigit() else None

    def _dbg(self, *parts):
        if os.environ.get("QUILL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    # ===================================================================
    # Signals and the extension boundary
    # ===================================================================

    def _push_frame(self, name, args, call_site):
        self.call_stack.append({
            "name": name,
            "args": list(args),
            "line": getattr(call_site, "line", None),
            "column": getattr(call_site, "column", None),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _signal(self, exc: ExceptionInstance, node=None) -> RaiseSignal:
        if exc.trace is None:
            exc.trace = [dict(frame) for frame in self.call_stack]
            if node is not None:
                exc.line, exc.column = node.line, node.column
        return RaiseSignal(exc)

    def _raise(self, kind: str, message: str, node=None) -> RaiseSignal:
        return self._signal(make_exception(kind, message), node)

    def signal_from_error(self, err: BaseException, node=None) -> RaiseSignal:
        """Turns a Python exception from host code into a script exception."""
        match err:
            case ScriptError() if isinstance(err.exception, ExceptionInstance):
                return self._signal(err.exception, node)
            case ScriptExit():
                exc = make_exception("SystemExit", str(err.code), code=err.code)
                return self._signal(exc, node)
            case ScriptError():
                return self._raise(err.kind, err.message, node)
        self._dbg("native error", type(err).__name__, err)
        return self._raise(kind_for_python_error(err), python_error_message(err), node)

    def error_from_signal(self, sig: RaiseSignal) -> ScriptError:
        """Turns an escaping script exception into the Python exception the host sees."""
        exc = sig.exception
        details = dict(exception=exc, line=exc.line, column=exc.column, trace=exc.trace or [])
        if exc.cls.is_subclass_of(BUILTIN_EXCEPTIONS["SystemExit"]):
            return ScriptExit(exc.code, exc.message, **details)
        if exc.cls.is_subclass_of(BUILTIN_EXCEPTIONS["Cancelled"]):
            return Cancelled(exc.message, **details)
        return ScriptError(exc.message, exc.kind, **details)

    async def invoke(self, fn, *args, **kwargs):
        """Calls a script value from host code. Script exceptions become ScriptError."""
        result = await self.call(fn, list(args), kwargs)
        if isinstance(result, RaiseSignal):
            raise self.error_from_signal(result)
        return result

    async def _tick(self):
        self.ctx.check()
        self._ticks += 1
        if self._ticks % YIELD_EVERY == 0:
            await asyncio.sleep(0)

    async def _loop_tick(self, iterations: int):
        await self._tick()
        if self.max_loop_iters is not None and iterations >= self.max_loop_iters:
            raise ScriptError(f"loop exceeded {self.max_loop_iters} iterations", "RuntimeError")

    # ===================================================================
    # Programs and statements
    # ===================================================================

    async def run_program(self, program: Program, env: Environment) -> Any:
        """Runs top-level statements; returns the last expression or assignment value."""
        result = None
        for stmt in program.body:
            match stmt:
                case ExpressionStatement(expr=expr):
                    value = await self.eval(expr, env)
                case Assign():
                    value = await self.exec_assign(stmt, env)
                case _:
                    value = await self.exec(stmt, env)
            if isinstance(value, RaiseSignal):
                raise self.error_from_signal(value)
            if isinstance(value, Signal):
                raise InterpreterFault(f"{type(value).__name__} escaped to module level")
            result = value if isinstance(stmt, (ExpressionStatement, Assign)) else None
        return result

    async def exec_block(self, body, env: Environment) -> Optional[Signal]:
        for stmt in body:
            sig = await self.exec(stmt, env)
            if sig is not None:
                return sig
        return None

    async def exec(self, stmt, env: Environment) -> Optional[Signal]:
        try:
            return await self._exec(stmt, env)
        except ScriptError as e:
            return self.signal_from_error(e, stmt)
        except RecursionError:
            return self._raise("RuntimeError", "maximum recursion depth exceeded", stmt)

    async def _exec(self, stmt, env: Environment) -> Optional[Signal]:
        match stmt:
            case ExpressionStatement(expr=expr):
                value = await self.eval(expr, env)
                return value if isinstance(value, RaiseSignal) else None
            case Assign():
                value = await self.exec_assign(stmt, env)
                return value if isinstance(value, RaiseSignal) else None
            case AugAssign():
                return await self._exec_aug_assign(stmt, env)
            case If(test=test, body=body, orelse=orelse):
                cond = await self._value(test, env)
                return await self.exec_block(body if await self.truth(cond) else orelse, env)
            case While():
                return await self._exec_while(stmt, env)
            case For():
                return await self._exec_for(stmt, env)
            case FunctionDef():
                defaults = await self._eval_defaults(stmt.params, env)
                closure = env.parent if env.is_class_body else env
                env.assign(stmt.name, QuillFunction(stmt.name, stmt.params, stmt.body, closure,
                                                    defaults, doc=stmt.doc))
                return None
            case ClassDef():
                return await self._exec_class(stmt, env)
            case Try():
                return await self._exec_try(stmt, env)
            case Return(value=value):
                return ReturnSignal(None if value is None else await self._value(value, env))
            case Break():
                return BREAK
            case Continue():
                return CONTINUE
            case Pass():
                return None
            case Raise():
                return await self._exec_raise(stmt, env)
            case Import(names=names):
                for dotted, alias in names:
                    top, leaf = await self.interp.import_library(dotted)
                    if alias:
                        env.assign(alias, leaf)
                    else:
                        env.assign(dotted.split(".")[0], top)
                return None
            case FromImport(module=module, names=names):
                _, lib = await self.interp.import_library(module)
                for name, alias in names:
                    found, member = lib.get_member(name)
                    if not found:
                        raise QuillImportError(f"cannot import name '{name}' from '{module}'")
                    env.assign(alias or name, member)
                return None
            case Global(names=names):
                for name in names:
                    env.declare_global(name)
                return None
            case Nonlocal(names=names):
                for name in names:
                    env.declare_nonlocal(name)
                return None
            case Delete(targets=targets):
                for target in targets:
                    await self._delete_target(target, env)
                return None
            case Assert(test=test, msg=msg):
                if not await self.truth(await self._value(test, env)):
                    text = "" if msg is None else await self.render(await self._value(msg, env), "str")
                    return self._raise("AssertionError", text, stmt)
                return None
        raise InterpreterFault(f"unknown statement node {type(stmt).__name__}")

    async def exec_assign(self, stmt: Assign, env: Environment):
        value = await self.eval(stmt.value, env)
        if isinstance(value, RaiseSignal):
            return value
        try:
            for target in stmt.targets:
                await self.assign_target(target, value, env)
        except ScriptError as e:
            return self.signal_from_error(e, stmt)
        return value

    async def _exec_aug_assign(self, stmt: AugAssign, env: Environment):
        target = stmt.target
        match target:
            case Identifier(name=name):
                found, current = env.lookup(name)
                if not found:
                    return self._raise("NameError", f"name '{name}' is not defined", target)
                rhs = await self._value(stmt.value, env)
                env.assign(name, self._inplace(stmt.op, current, rhs))
            case Attribute(value=obj_node, attr=attr):
                obj = await self._value(obj_node, env)
                current = self.get_attribute(obj, attr)
                rhs = await self._value(stmt.value, env)
                self.set_attribute(obj, attr, self._inplace(stmt.op, current, rhs))
            case Index(index=Slice()):
                return self._raise("TypeError", "augmented assignment to a slice is not supported", target)
            case Index(value=obj_node, index=index_node):
                obj = await self._value(obj_node, env)
                key = await self._value(index_node, env)
                current = self.get_item(obj, key)
                rhs = await self._value(stmt.value, env)
                self.set_item(obj, key, self._inplace(stmt.op, current, rhs))
            case _:
                raise InterpreterFault("invalid augmented assignment target")
        return None

    def _inplace(self, op: str, current, rhs):
        if op == "+" and isinstance(current, list):
            current.extend(self.ctx.checked(iter_values(rhs)))
            return current
        return self.binary_op(op, current, rhs)

    async def _exec_while(self, stmt: While, env: Environment):
        iterations = 0
        while True:
            await self._loop_tick(iterations)
            iterations += 1
            if not await self.truth(await self._value(stmt.test, env)):
                break
            sig = await self.exec_block(stmt.body, env)
            if sig is BREAK:
                return None
            if sig is None or sig is CONTINUE:
                continue
            return sig
        return await self.exec_block(stmt.orelse, env)

    async def _exec_for(self, stmt: For, env: Environment):
        iterable = await self._value(stmt.iter, env)
        iterations = 0
        for item in self.iterate(iterable):
            await self._loop_tick(iterations)
            iterations += 1
            await self.assign_target(stmt.target, item, env)
            sig = await self.exec_block(stmt.body, env)
            if sig is BREAK:
                return None
            if sig is None or sig is CONTINUE:
                continue
            return sig
        return await self.exec_block(stmt.orelse, env)

    async def _eval_defaults(self, params, env: Environment) -> Dict[str, Any]:
        defaults = {}
        for param in params:
            if param.default is not None:
                defaults[param.name] = await self._value(param.default, env)
        return defaults

    async def _exec_class(self, stmt: ClassDef, env: Environment):
        bases = [await self._value(b, env) for b in stmt.bases]
        if len(bases) > 1:
            return self._raise(
                "TypeError",
                f"multiple inheritance is not supported: class {stmt.name} lists {len(bases)} bases",
                stmt)
        base = bases[0] if bases else None
        if base is not None and not isinstance(base, QuillClass):
            return self._raise("TypeError", f"base of class {stmt.name} must be a class, not {type_name(base)}", stmt)

        class_env = Environment(env, is_class_body=True, name=stmt.name)
        sig = await self.exec_block(stmt.body, class_env)
        if sig is not None:
            return sig

        methods, attributes = {}, {}
        for name, value in class_env.bindings.items():
            if isinstance(value, (QuillFunction, Builtin)):
                methods[name] = value
            else:
                attributes[name] = value
        cls = QuillClass(stmt.name, base, methods, attributes, doc=stmt.doc)
        for fn in methods.values():
            if isinstance(fn, QuillFunction) and fn.owner_class is None:
                fn.owner_class = cls
        env.assign(stmt.name, cls)
        self._dbg("class", stmt.name, "methods", list(methods))
        return None

    async def _exec_try(self, stmt: Try, env: Environment):
        sig = await self.exec_block(stmt.body, env)
        if isinstance(sig, RaiseSignal) and stmt.handlers:
            exc = sig.exception
            for handler in stmt.handlers:
                matched = await self._handler_matches(handler, exc, env)
                if isinstance(matched, RaiseSignal):
                    sig = matched
                    break
                if not matched:
                    continue
                if handler.name:
                    env.assign(handler.name, exc)
                self._handling.append(exc)
                try:
                    sig = await self.exec_block(handler.body, env)
                finally:
                    self._handling.pop()
                break
        elif sig is None and stmt.orelse:
            sig = await self.exec_block(stmt.orelse, env)

        if stmt.finalbody:
            final = await self.exec_block(stmt.finalbody, env)
            if final is not None:
                return final
        return sig

    async def _handler_matches(self, handler, exc: ExceptionInstance, env: Environment):
        if handler.type is None:
            return True
        spec = await self.eval(handler.type, env)
        if isinstance(spec, RaiseSignal):
            return spec
        classes = spec if isinstance(spec, tuple) else (spec,)
        for cls in classes:
            if not (isinstance(cls, QuillClass) and cls.is_exception_class):
                return self._raise("TypeError",
                                   "catching classes that do not inherit from BaseException is not allowed",
                                   handler)
            if exc.cls.is_subclass_of(cls):
                return True
        return False

    async def _exec_raise(self, stmt: Raise, env: Environment):
        if stmt.exc is None:
            if not self._handling:
                return self._raise("RuntimeError", "No active exception to reraise", stmt)
            return RaiseSignal(self._handling[-1])
        value = await self._value(stmt.exc, env)
        match value:
            case str():
                exc = make_exception("Exception", value)
            case ExceptionInstance():
                exc = value
            case QuillClass() if value.is_exception_class:
                exc = await self.call(value, [], {}, stmt, env)
                if isinstance(exc, RaiseSignal):
                    return exc
            case _:
                return self._raise("TypeError", "exceptions must derive from BaseException", stmt)
        return self._signal(exc, stmt)

    async def _delete_target(self, target, env: Environment):
        match target:
            case Identifier(name=name):
                env.delete(name)
            case Attribute(value=obj_node, attr=attr):
                obj = await self._value(obj_node, env)
                if isinstance(obj, Instance) and attr in obj.fields:
                    del obj.fields[attr]
                else:
                    raise ScriptError(f"'{type_name(obj)}' object has no attribute '{attr}'", "AttributeError")
            case Index(value=obj_node, index=Slice() as s):
                obj = await self._value(obj_node, env)
                if not isinstance(obj, list):
                    raise QuillTypeError(f"'{type_name(obj)}' object does not support item deletion")
                del obj[await self._slice_of(s, env)]
            case Index(value=obj_node, index=index_node):
                obj = await self._value(obj_node, env)
                key = await self._value(index_node, env)
                match obj:
                    case list():
                        self._check_index(obj, key)
                        del obj[key]
                    case QuillDict():
                        if key not in obj:
                            raise ScriptError(Printer().pformat(key), "KeyError")
                        del obj[key]
                    case _:
                        raise QuillTypeError(f"'{type_name(obj)}' object does not support item deletion")

    # ===================================================================
    # Assignment targets
    # ===================================================================

    async def assign_target(self, target, value, env: Environment):
        match target:
            case Identifier(name=name):
                env.assign(name, value)
            case Attribute(value=obj_node, attr=attr):
                self.set_attribute(await self._value(obj_node, env), attr, value)
            case Index(value=obj_node, index=Slice() as s):
                obj = await self._value(obj_node, env)
                if not isinstance(obj, list):
                    raise QuillTypeError(f"'{type_name(obj)}' object does not support slice assignment")
                obj[await self._slice_of(s, env)] = list(self.ctx.checked(iter_values(value)))
            case Index(value=obj_node, index=index_node):
                obj = await self._value(obj_node, env)
                self.set_item(obj, await self._value(index_node, env), value)
            case TupleLiteral(elts=elts) | ListLiteral(elts=elts):
                await self._unpack(elts, value, env)
            case _:
                raise InterpreterFault(f"invalid assignment target {type(target).__name__}")

    async def _unpack(self, targets, value, env: Environment):
        items = list(self.iterate(value))
        star = next((i for i, t in enumerate(targets) if isinstance(t, Starred)), None)
        if star is None:
            if len(items) < len(targets):
                raise QuillValueError(f"not enough values to unpack (expected {len(targets)}, got {len(items)})")
            if len(items) > len(targets):
                raise QuillValueError(f"too many values to unpack (expected {len(targets)})")
            pairs = list(zip(targets, items))
        else:
            after = len(targets) - star - 1
            if len(items) < star + after:
                raise QuillValueError(
                    f"not enough values to unpack (expected at least {star + after}, got {len(items)})")
            middle = items[star:len(items) - after]
            pairs = list(zip(targets[:star], items[:star]))
            pairs.append((targets[star].value, middle))
            pairs.extend(zip(targets[star + 1:], items[len(items) - after:]))
        for target, item in pairs:
            await self.assign_target(target, item, env)

    # ===================================================================
    # Expressions
    # ===================================================================

    async def eval(self, node, env: Environment) -> Any:
        """Evaluates an expression to a value or a RaiseSignal."""
        try:
            return await self._eval(node, env)
        except ScriptError as e:
            return self.signal_from_error(e, node)
        except RecursionError:
            return self._raise("RuntimeError", "maximum recursion depth exceeded", node)

    async def _value(self, node, env: Environment) -> Any:
        """Like eval(), but a script exception is raised as ScriptError."""
        result = await self.eval(node, env)
        if isinstance(result, RaiseSignal):
            raise self.error_from_signal(result)
        return result

    async def _eval(self, node, env: Environment) -> Any:
        match node:
            case Literal(value=value):
                return value
            case Identifier(name=name):
                found, value = env.lookup(name)
                if not found:
                    return self._raise("NameError", f"name '{name}' is not defined", node)
                return value
            case FString():
                return await self._eval_fstring(node, env)
            case BinaryOp(op=op, left=left, right=right):
                lhs = await self._value(left, env)
                rhs = await self._value(right, env)
                return self.binary_op(op, lhs, rhs)
            case BoolOp(op=op, values=values):
                result = None
                for expr in values:
                    result = await self._value(expr, env)
                    truth = await self.truth(result)
                    if (op == "and" and not truth) or (op == "or" and truth):
                        return result
                return result
            case UnaryOp(op="not", operand=operand):
                return not await self.truth(await self._value(operand, env))
            case UnaryOp(op=op, operand=operand):
                return self.unary_op(op, await self._value(operand, env))
            case Compare(left=left, ops=ops, comparators=comparators):
                lhs = await self._value(left, env)
                for op, comp in zip(ops, comparators):
                    rhs = await self._value(comp, env)
                    if not await self.compare(op, lhs, rhs):
                        return False
                    lhs = rhs
                return True
            case Conditional(test=test, body=body, orelse=orelse):
                if await self.truth(await self._value(test, env)):
                    return await self.eval(body, env)
                return await self.eval(orelse, env)
            case Call():
                return await self._eval_call(node, env)
            case Attribute(value=obj_node, attr=attr):
                return self.get_attribute(await self._value(obj_node, env), attr)
            case Index(value=obj_node, index=Slice() as s):
                obj = await self._value(obj_node, env)
                return self.get_slice(obj, await self._slice_of(s, env))
            case Index(value=obj_node, index=index_node):
                obj = await self._value(obj_node, env)
                return self.get_item(obj, await self._value(index_node, env))
            case ListLiteral(elts=elts):
                return await self._eval_elements(elts, env)
            case TupleLiteral(elts=elts):
                return tuple(await self._eval_elements(elts, env))
            case SetLiteral(elts=elts):
                return QuillSet(await self._eval_elements(elts, env))
            case DictLiteral(keys=keys, values=values):
                result = QuillDict()
                for key_node, value_node in zip(keys, values):
                    if key_node is None:
                        mapping = await self._value(value_node, env)
                        if not isinstance(mapping, QuillDict):
                            raise QuillTypeError(f"'{type_name(mapping)}' object is not a mapping")
                        for k, v in mapping.items():
                            result[k] = v
                    else:
                        key = await self._value(key_node, env)
                        result[key] = await self._value(value_node, env)
                return result
            case Lambda(params=params, body=body):
                defaults = await self._eval_defaults(params, env)
                closure = env.parent if env.is_class_body else env
                return QuillFunction("<lambda>", params, body, closure, defaults, is_lambda=True)
            case Comprehension():
                return await self._eval_comprehension(node, env)
            case Starred():
                raise ScriptError("can't use starred expression here", "RuntimeError")
        raise InterpreterFault(f"unknown expression node {type(node).__name__}")

    async def _eval_elements(self, elts, env: Environment) -> list:
        items = []
        for elt in elts:
            if isinstance(elt, Starred):
                items.extend(self.iterate(await self._value(elt.value, env)))
            else:
                items.append(await self._value(elt, env))
        return items

    async def _slice_of(self, s: Slice, env: Environment) -> slice:
        parts = []
        for part in (s.start, s.stop, s.step):
            value = None if part is None else await self._value(part, env)
            if value is not None and not isinstance(value, int):
                raise QuillTypeError("slice indices must be integers or None")
            parts.append(value)
        if parts[2] == 0:
            raise QuillValueError("slice step cannot be zero")
        return slice(*parts)

    async def _eval_fstring(self, node: FString, env: Environment) -> str:
        out = []
        for part in node.parts:
            if isinstance(part, str):
                out.append(part)
                continue
            value = await self._value(part.expr, env)
            if part.conversion in ("r", "a"):
                value = await self.render(value, "repr")
            elif part.conversion == "s":
                value = await self.render(value, "str")
            spec = "" if part.format_spec is None else await self._eval_fstring(part.format_spec, env)
            if spec:
                if not isinstance(value, (int, float, str)):
                    value = await self.render(value, "str")
                try:
                    out.append(format(value, spec))
                except (ValueError, TypeError) as e:
                    raise QuillValueError(str(e)) from None
            else:
                out.append(value if isinstance(value, str) else await self.render(value, "str"))
        return "".join(out)

    async def _eval_comprehension(self, node: Comprehension, env: Environment):
        scope = Environment(env, name="<comprehension>")
        if node.kind == "dict":
            result = QuillDict()
        elif node.kind == "set":
            result = QuillSet()
        else:
            result = []
        await self._comprehend(node, 0, env, scope, result)
        return result

    async def _comprehend(self, node: Comprehension, depth: int, outer: Environment,
                          scope: Environment, result):
        gen = node.generators[depth]
        iterable = await self._value(gen.iter, outer if depth == 0 else scope)
        iterations = 0
        for item in self.iterate(iterable):
            await self._loop_tick(iterations)
            iterations += 1
            await self.assign_target(gen.target, item, scope)
            keep = True
            for cond in gen.conditions:
                if not await self.truth(await self._value(cond, scope)):
                    keep = False
                    break
            if not keep:
                continue
            if depth + 1 < len(node.generators):
                await self._comprehend(node, depth + 1, outer, scope, result)
            elif node.kind == "dict":
                key = await self._value(node.key, scope)
                result[key] = await self._value(node.element, scope)
            elif node.kind == "set":
                result.add(await self._value(node.element, scope))
            else:
                result.append(await self._value(node.element, scope))

    # ===================================================================
    # Calls
    # ===================================================================

    async def _eval_call(self, node: Call, env: Environment):
        func = await self._value(node.func, env)
        args = []
        for arg in node.args:
            if isinstance(arg, Starred):
                args.extend(self.iterate(await self._value(arg.value, env)))
            else:
                args.append(await self._value(arg, env))
        kwargs: Dict[str, Any] = {}
        for kw in node.keywords:
            value = await self._value(kw.value, env)
            if kw.name is not None:
                if kw.name in kwargs:
                    raise QuillTypeError(f"keyword argument repeated: {kw.name}")
                kwargs[kw.name] = value
                continue
            if not isinstance(value, QuillDict):
                raise QuillTypeError(f"argument after ** must be a dict, not {type_name(value)}")
            for key, item in value.items():
                if not isinstance(key, str):
                    raise QuillTypeError("keywords must be strings")
                if key in kwargs:
                    raise QuillTypeError(f"got multiple values for keyword argument '{key}'")
                kwargs[key] = item
        return await self.call(func, args, kwargs, node, env)

    async def call(self, func, args: List[Any], kwargs: Optional[Dict[str, Any]] = None,
                   node=None, env: Optional[Environment] = None) -> Any:
        """Calls any callable value. Returns the result or a RaiseSignal."""
        kwargs = kwargs or {}
        try:
            await self._tick()
            match func:
                case QuillFunction():
                    return await self._call_function(func, args, kwargs, node)
                case BoundMethod(receiver=receiver, function=function):
                    return await self.call(function, [receiver, *args], kwargs, node, env)
                case Builtin():
                    return await self._call_builtin(func, args, kwargs, node, env)
                case QuillClass():
                    return await self._instantiate(func, args, kwargs, node, env)
            return self._raise("TypeError", f"'{type_name(func)}' object is not callable", node)
        except ScriptError as e:
            return self.signal_from_error(e, node)
        except RecursionError:
            return self._raise("RuntimeError", "maximum recursion depth exceeded", node)

    async def _call_function(self, func: QuillFunction, args, kwargs, node):
        if self.depth >= self.max_depth:
            return self._raise("RuntimeError", "maximum recursion depth exceeded", node)
        bound = bind_arguments(func.name, func.params, func.defaults, args, kwargs)
        call_env = Environment(func.closure, name=func.name)
        call_env.bindings.update(bound)
        if func.owner_class is not None:
            call_env.method_class = func.owner_class
            call_env.method_self = args[0] if args else None

        self._push_frame(func.name, args, node)
        self.depth += 1
        try:
            if func.is_lambda:
                return await self.eval(func.body, call_env)
            sig = await self.exec_block(func.body, call_env)
        finally:
            self.depth -= 1
            self._pop_frame()

        match sig:
            case None:
                return None
            case ReturnSignal():
                return sig.value
            case RaiseSignal():
                return sig
        raise InterpreterFault(f"{type(sig).__name__} escaped function '{func.name}'")

    async def _call_builtin(self, builtin: Builtin, args, kwargs, node, env):
        injections = {"ctx": self.ctx, "interp": self.interp, "env": env}
        call_args, call_kwargs = prepare_native_call(builtin, args, kwargs, injections)
        self._push_frame(builtin.name, args, node)
        try:
            result = builtin.fn(*call_args, **call_kwargs)
            if inspect.isawaitable(result):
                result = await result
        except (InterpreterFault, RecursionError):
            raise
        except ScriptError as e:
            return self.signal_from_error(e, node)
        except Exception as e:
            return self.signal_from_error(e, node)
        finally:
            self._pop_frame()
        if isinstance(result, RaiseSignal):
            return result
        return to_value(result)

    async def _instantiate(self, cls: QuillClass, args, kwargs, node, env):
        instance = ExceptionInstance(cls) if cls.is_exception_class else Instance(cls)
        init = cls.find_method("__init__")
        if init is None:
            if args or kwargs:
                return self._raise("TypeError", f"{cls.name}() takes no arguments", node)
            return instance
        result = await self.call(BoundMethod(instance, init, "__init__"), args, kwargs, node, env)
        if isinstance(result, RaiseSignal):
            return result
        if result is not None:
            return self._raise("TypeError", f"__init__() should return None, not '{type_name(result)}'", node)
        return instance

    # ===================================================================
    # Attributes and items
    # ===================================================================

    def get_attribute(self, obj, name: str) -> Any:
        match obj:
            case Instance():
                if name in obj.fields:
                    return obj.fields[name]
                if name == "__class__":
                    return obj.cls
                found, member = obj.cls.find_attribute(name)
                if found:
                    if isinstance(member, (QuillFunction, Builtin)):
                        return BoundMethod(obj, member, name)
                    return member
            case SuperProxy():
                if obj.start is not None:
                    found, member = obj.start.find_attribute(name)
                    if found:
                        if isinstance(member, (QuillFunction, Builtin)):
                            return BoundMethod(obj.instance, member, name)
                        return member
                raise ScriptError(f"'super' object has no attribute '{name}'", "AttributeError")
            case QuillClass():
                if name == "__name__":
                    return obj.name
                if name == "__doc__":
                    return obj.doc
                if name == "__base__":
                    return obj.base
                found, member = obj.find_attribute(name)
                if found:
                    return member
                raise ScriptError(f"type object '{obj.name}' has no attribute '{name}'", "AttributeError")
            case Library():
                found, member = obj.get_member(name)
                if found:
                    return member
                raise ScriptError(f"library '{obj.name}' has no attribute '{name}'", "AttributeError")
            case QuillFunction():
                if name == "__name__":
                    return obj.name
                if name == "__doc__":
                    return obj.doc
            case Builtin():
                if name == "__name__":
                    return obj.name
                if name == "__doc__":
                    return obj.help_text
            case _:
                method = quill_methods.lookup(obj, name)
                if method is not None:
                    return BoundMethod(obj, method, name)
        raise ScriptError(f"'{type_name(obj)}' object has no attribute '{name}'", "AttributeError")

    def set_attribute(self, obj, name: str, value):
        match obj:
            case Instance():
                obj.fields[name] = value
                return
            case QuillClass():
                if obj.frozen:
                    raise QuillTypeError(f"cannot set '{name}' attribute of immutable type '{obj.name}'")
                if isinstance(value, (QuillFunction, Builtin)):
                    obj.methods[name] = value
                else:
                    obj.attributes[name] = value
                return
            case Library():
                raise ScriptError(f"cannot set attribute '{name}' of library '{obj.name}'", "AttributeError")
        raise ScriptError(f"'{type_name(obj)}' object has no attribute '{name}'", "AttributeError")

    def _check_index(self, seq, key):
        if not isinstance(key, int):
            raise QuillTypeError(f"{type_name(seq)} indices must be integers, not {type_name(key)}")
        if not -len(seq) <= key < len(seq):
            raise ScriptError(f"{type_name(seq)} index out of range", "IndexError")

    def get_item(self, obj, key) -> Any:
        match obj:
            case list() | tuple() | str() | range():
                self._check_index(obj, key)
                return obj[key]
            case QuillDict():
                if key not in obj:
                    raise ScriptError(Printer().pformat(key), "KeyError")
                return obj[key]
        raise QuillTypeError(f"'{type_name(obj)}' object is not subscriptable")

    def get_slice(self, obj, s: slice) -> Any:
        if isinstance(obj, (list, tuple, str, range)):
            return obj[s]
        raise QuillTypeError(f"'{type_name(obj)}' object is not subscriptable")

    def set_item(self, obj, key, value):
        match obj:
            case list():
                if not isinstance(key, int):
                    raise QuillTypeError(f"list indices must be integers, not {type_name(key)}")
                if not -len(obj) <= key < len(obj):
                    raise ScriptError("list assignment index out of range", "IndexError")
                obj[key] = value
            case QuillDict():
                obj[key] = value
            case _:
                raise QuillTypeError(f"'{type_name(obj)}' object does not support item assignment")

    def iterate(self, value):
        return iter_values(value)

    # ===================================================================
    # Operators
    # ===================================================================

    def binary_op(self, op: str, left, right) -> Any:
        fn = _ARITH[op]
        if _is_number(left) and _is_number(right):
            return self._arith(op, fn, left, right)
        match op:
            case "+":
                if type(left) is type(right) and isinstance(left, (str, list, tuple)):
                    return left + right
            case "*":
                seq, count = (left, right) if isinstance(right, int) else (right, left)
                if isinstance(seq, (str, list, tuple)) and isinstance(count, int):
                    if count > 0 and len(seq) * count > MAX_SEQUENCE_LENGTH:
                        raise QuillValueError("repeated sequence is too large")
                    return seq * count
            case "%":
                if isinstance(left, str):
                    return self._percent_format(left, right)
            case "|" | "&" | "-" | "^":
                if isinstance(left, QuillSet) and isinstance(right, QuillSet):
                    return fn(left, right)
                if op == "|" and isinstance(left, QuillDict) and isinstance(right, QuillDict):
                    merged = left.copy()
                    merged.update(right.items())
                    return merged
        raise QuillTypeError(
            f"unsupported operand type(s) for {op}: '{type_name(left)}' and '{type_name(right)}'")

    def _arith(self, op, fn, left, right):
        if op in ("<<", ">>", "&", "|", "^"):
            if isinstance(left, float) or isinstance(right, float):
                raise QuillTypeError(
                    f"unsupported operand type(s) for {op}: '{type_name(left)}' and '{type_name(right)}'")
            if op in ("<<", ">>") and right < 0:
                raise QuillValueError("negative shift count")
            if op == "<<" and left and right > MAX_INT_BITS:
                raise QuillValueError("shift count too large")
        if op in ("/", "//", "%") and right == 0:
            raise ScriptError("division by zero" if op == "/" else "integer division or modulo by zero",
                              "ZeroDivisionError")
        if op == "**":
            if left == 0 and right < 0:
                raise ScriptError("0.0 cannot be raised to a negative power", "ZeroDivisionError")
            if isinstance(left, int) and isinstance(right, int) and right > 0 and abs(left) > 1 \
                    and right * math.log2(abs(left)) > MAX_INT_BITS:
                raise QuillValueError("exponent too large")
        try:
            result = fn(left, right)
        except OverflowError as e:
            raise QuillValueError(str(e)) from None
        if isinstance(result, complex):
            raise QuillValueError("math domain error")
        return result

    def _percent_format(self, fmt: str, args):
        if isinstance(args, QuillDict):
            values: Any = {k: v for k, v in args.items()}
        elif isinstance(args, tuple):
            values = args
        else:
            values = (args,)
        try:
            return fmt % values
        except (TypeError, ValueError, KeyError) as e:
            raise QuillTypeError(str(e)) from None

    def unary_op(self, op: str, value) -> Any:
        if _is_number(value):
            match op:
                case "-":
                    return -value
                case "+":
                    return +value
                case "~":
                    if not isinstance(value, float):
                        return ~value
        raise QuillTypeError(f"bad operand type for unary {op}: '{type_name(value)}'")

    async def compare(self, op: str, left, right) -> bool:
        match op:
            case "==":
                return await self.equals(left, right)
            case "!=":
                return not await self.equals(left, right)
            case "is":
                return left is right
            case "is not":
                return left is not right
            case "in":
                return await self.contains(right, left)
            case "not in":
                return not await self.contains(right, left)
        return await self._order(op, left, right)

    async def _order(self, op: str, left, right) -> bool:
        if isinstance(left, Instance) or isinstance(right, Instance):
            lhs, rhs = (left, right) if op == "<" else (right, left) if op == ">" else (None, None)
            if isinstance(lhs, Instance):
                method = lhs.cls.find_method("__lt__")
                if method is not None:
                    return await self.truth(await self.invoke(BoundMethod(lhs, method, "__lt__"), rhs))
        elif (_is_number(left) and _is_number(right)) or \
                (type(left) is type(right) and isinstance(left, (str, list, tuple))):
            try:
                return _ORDER[op](left, right)
            except TypeError:
                pass
        raise QuillTypeError(
            f"'{op}' not supported between instances of '{type_name(left)}' and '{type_name(right)}'")

    async def less_than(self, left, right) -> bool:
        return await self._order("<", left, right)

    async def equals(self, left, right) -> bool:
        if left is right:
            return True
        for a, b in ((left, right), (right, left)):
            if isinstance(a, Instance):
                method = a.cls.find_method("__eq__")
                if method is not None:
                    return await self.truth(await self.invoke(BoundMethod(a, method, "__eq__"), b))
        if isinstance(left, (list, tuple)) and type(left) is type(right):
            if len(left) != len(right):
                return False
            for x, y in zip(left, right):
                if not await self.equals(x, y):
                    return False
            return True
        if isinstance(left, QuillDict) and isinstance(right, QuillDict):
            if len(left) != len(right):
                return False
            for key, value in left.items():
                if key not in right or not await self.equals(value, right[key]):
                    return False
            return True
        if isinstance(left, Instance) or isinstance(right, Instance):
            return False
        return bool(left == right)

    async def contains(self, container, item) -> bool:
        match container:
            case str():
                if not isinstance(item, str):
                    raise QuillTypeError(f"'in <string>' requires string as left operand, not {type_name(item)}")
                return item in container
            case list() | tuple():
                for element in container:
                    if await self.equals(element, item):
                        return True
                return False
            case QuillDict() | QuillSet() | range():
                return item in container
            case Instance():
                method = container.cls.find_method("__contains__")
                if method is not None:
                    return await self.truth(await self.invoke(BoundMethod(container, method, "__contains__"), item))
        raise QuillTypeError(f"argument of type '{type_name(container)}' is not iterable")

    async def truth(self, value) -> bool:
        if isinstance(value, Instance):
            method = value.cls.find_method("__len__")
            if method is not None:
                return await self.length(value) != 0
        return is_truthy(value)

    async def length(self, value) -> int:
        if isinstance(value, Instance):
            method = value.cls.find_method("__len__")
            if method is None:
                raise QuillTypeError(f"object of type '{type_name(value)}' has no len()")
            result = await self.invoke(BoundMethod(value, method, "__len__"))
            if not isinstance(result, int) or isinstance(result, bool) or result < 0:
                raise QuillTypeError("__len__() should return an integer >= 0")
            return result
        if isinstance(value, (str, list, tuple, range, QuillDict, QuillSet)):
            return len(value)
        raise QuillTypeError(f"object of type '{type_name(value)}' has no len()")

    async def sort_values(self, items: list, key=None, reverse: bool = False) -> list:
        """Stable sort honouring key functions and script __lt__."""
        keys = items if key is None else [await self.invoke(key, item) for item in items]
        order = list(range(len(items)))
        if any(isinstance(k, Instance) for k in keys):
            order = await self._merge_sort(order, keys, reverse)
        else:
            for a, b in self.ctx.checked(zip(keys, keys[1:])):
                if not ((_is_number(a) and _is_number(b)) or (type(a) is type(b) and isinstance(a, (str, list, tuple)))):
                    raise QuillTypeError(
                        f"'<' not supported between instances of '{type_name(b)}' and '{type_name(a)}'")
            try:
                order.sort(key=lambda i: keys[i], reverse=reverse)
            except TypeError as e:
                raise QuillTypeError(str(e)) from None
        return [items[i] for i in order]

    async def _merge_sort(self, order: list, keys: list, reverse: bool) -> list:
        if len(order) <= 1:
            return order
        mid = len(order) // 2
        left = await self._merge_sort(order[:mid], keys, reverse)
        right = await self._merge_sort(order[mid:], keys, reverse)
        merged = []
        i = j = 0
        while i < len(left) and j < len(right):
            a, b = keys[left[i]], keys[right[j]]
            take_right = await self.less_than(a, b) if reverse else await self.less_than(b, a)
            if take_right:
                merged.append(right[j])
                j += 1
            else:
                merged.append(left[i])
                i += 1
        merged.extend(left[i:])
        merged.extend(right[j:])
        return merged

    # ===================================================================
    # Rendering
    # ===================================================================

    async def render(self, value, mode: str = "str") -> str:
        """str()/repr() of a value, running script __str__/__repr__ where defined."""
        overrides: Dict[tuple, str] = {}
        await self._collect_overrides(value, mode, overrides, set())
        return Printer(overrides).pformat(value, mode)

    async def _collect_overrides(self, value, mode: str, overrides: dict, seen: set):
        if id(value) in seen:
            return
        match value:
            case Instance():
                seen.add(id(value))
                method = value.cls.find_method("__str__" if mode == "str" else "__repr__")
                if method is None and mode == "str":
                    method = value.cls.find_method("__repr__")
                if method is None:
                    return
                text = await self.invoke(BoundMethod(value, method, method_name(method)))
                if not isinstance(text, str):
                    raise QuillTypeError(f"__{mode}__ returned non-string (type {type_name(text)})")
                overrides[(id(value), mode)] = text
            case list() | tuple() | QuillSet():
                seen.add(id(value))
                for item in value:
                    await self._collect_overrides(item, "repr", overrides, seen)
            case QuillDict():
                seen.add(id(value))
                for k, v in value.items():
                    await self._collect_overrides(k, "repr", overrides, seen)
                    await self._collect_overrides(v, "repr", overrides, seen)


def method_name(method) -> str:
    return getattr(method, "name", "<method>")
