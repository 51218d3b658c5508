"""
The global built-in functions every script sees.

Each `_name` method of StdLib becomes the builtin `name`. Methods that
need to run script code (a key function, a __str__ override) are async
and go through the evaluator.
"""
import inspect
from typing import Any

from quill.quill_datatypes import (
    Environment, Builtin, BoundMethod, QuillFunction, QuillClass, Instance, QuillDict,
    QuillSet, SuperProxy, Library, BUILTIN_EXCEPTIONS, canonical_key, iter_values,
    make_system_exit, type_name,
)
from quill import quill_methods
from quill.quill_errors import (
    ScriptError, ScriptExit, QuillTypeError, QuillValueError, PermissionDenied,
)

_MISSING = object()

# Conversion builtins double as the types of their values.
TYPE_CHECKS = {
    "int": (int,),
    "float": (float,),
    "str": (str,),
    "bool": (bool,),
    "list": (list,),
    "tuple": (tuple,),
    "dict": (QuillDict,),
    "set": (QuillSet,),
    "range": (range,),
}


class StdLib:
    """Python implementations of the Quill built-in functions."""

    def __init__(self, evaluator):
        self.evaluator = evaluator
        self.builtins = {}

    def install(self, env: Environment) -> Environment:
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                quill_name = name[1:]
                builtin = Builtin(member, quill_name)
                builtin.type_check = TYPE_CHECKS.get(quill_name)
                self.builtins[quill_name] = builtin
                env[quill_name] = builtin
        for name, cls in BUILTIN_EXCEPTIONS.items():
            env[name] = cls
        return env

    # --- Output and input ---

    async def _print(self, *values, sep=" ", end="\n", ctx=None):
        """print(*values, sep=' ', end='\\n')"""
        sep = " " if sep is None else sep
        end = "\n" if end is None else end
        if not isinstance(sep, str) or not isinstance(end, str):
            raise QuillTypeError("print() sep and end must be strings")
        parts = [await self.evaluator.render(v, "str") for v in values]
        ctx.write(sep.join(parts) + end)

    def _input(self, prompt=None):
        """Reading from the host's stdin is not available to scripts."""
        raise PermissionDenied("input() is disabled in embedded scripts")

    def _exit(self, code=None):
        """exit(code=0): raise SystemExit."""
        exc = make_system_exit(code)
        raise ScriptExit(exc.code, exc.message, exception=exc)

    # --- Conversions ---

    def _int(self, value=0, base=None):
        """int(x=0, base=10)"""
        if base is not None:
            if not isinstance(value, str):
                raise QuillTypeError("int() can't convert non-string with explicit base")
            return int(value, base)
        match value:
            case bool():
                return int(value)
            case int():
                return value
            case float():
                return int(value)
            case str():
                return int(value)
        raise QuillTypeError(f"int() argument must be a string or a number, not '{type_name(value)}'")

    def _float(self, value=0.0):
        """float(x=0.0)"""
        if isinstance(value, (int, float, str)):
            return float(value)
        raise QuillTypeError(f"float() argument must be a string or a number, not '{type_name(value)}'")

    async def _str(self, value=""):
        """str(x): the printable form of x."""
        if isinstance(value, str):
            return value
        return await self.evaluator.render(value, "str")

    async def _repr(self, value):
        """repr(x): the source-like form of x."""
        return await self.evaluator.render(value, "repr")

    async def _bool(self, value=False):
        return await self.evaluator.truth(value)

    def _list(self, iterable=(), *, ctx):
        return list(ctx.checked(iter_values(iterable)))

    def _tuple(self, iterable=(), *, ctx):
        return tuple(ctx.checked(iter_values(iterable)))

    def _set(self, iterable=(), *, ctx):
        return QuillSet(ctx.checked(iter_values(iterable)))

    def _dict(self, mapping=None, *, ctx, **kwargs):
        """dict(mapping_or_pairs=None, **kwargs)"""
        result = QuillDict()
        if isinstance(mapping, QuillDict):
            result = mapping.copy()
        elif mapping is not None:
            for pair in ctx.checked(iter_values(mapping)):
                items = list(iter_values(pair))
                if len(items) != 2:
                    raise QuillValueError(
                        f"dictionary update sequence element has length {len(items)}; 2 is required")
                result[items[0]] = items[1]
        for key, value in kwargs.items():
            result[key] = value
        return result

    def _range(self, *args: int):
        """range(stop) or range(start, stop[, step])"""
        if not 1 <= len(args) <= 3:
            raise QuillTypeError(f"range expected 1 to 3 arguments, got {len(args)}")
        if len(args) == 3 and args[2] == 0:
            raise QuillValueError("range() arg 3 must not be zero")
        return range(*args)

    def _chr(self, code: int):
        return chr(code)

    def _ord(self, char: str):
        if len(char) != 1:
            raise QuillTypeError(f"ord() expected a character, but string of length {len(char)} found")
        return ord(char)

    async def _format(self, value, spec: str = ""):
        """format(value, spec='')"""
        if not isinstance(value, (int, float, str)):
            value = await self.evaluator.render(value, "str")
        return format(value, spec)

    # --- Types and introspection ---

    def _type(self, value):
        """type(x): the class of an instance, or the builtin type of a value."""
        if isinstance(value, Instance):
            return value.cls
        for name, types in TYPE_CHECKS.items():
            if type(value) in types:
                return self.builtins[name]
        return type_name(value)

    def _isinstance(self, value, classinfo):
        """isinstance(x, cls_or_tuple)"""
        options = classinfo if isinstance(classinfo, tuple) else (classinfo,)
        for cls in options:
            match cls:
                case QuillClass():
                    if isinstance(value, Instance) and value.cls.is_subclass_of(cls):
                        return True
                case Builtin() if cls.type_check is not None:
                    if isinstance(value, cls.type_check):
                        return True
                case _:
                    raise QuillTypeError("isinstance() arg 2 must be a type or tuple of types")
        return False

    def _issubclass(self, cls, classinfo):
        if not isinstance(cls, QuillClass):
            raise QuillTypeError("issubclass() arg 1 must be a class")
        options = classinfo if isinstance(classinfo, tuple) else (classinfo,)
        for other in options:
            if not isinstance(other, QuillClass):
                raise QuillTypeError("issubclass() arg 2 must be a class or tuple of classes")
            if cls.is_subclass_of(other):
                return True
        return False

    def _callable(self, value):
        return isinstance(value, (QuillFunction, Builtin, BoundMethod, QuillClass))

    def _id(self, value):
        return id(value)

    def _hash(self, value):
        return hash(canonical_key(value))

    def _getattr(self, obj, name: str, default=_MISSING):
        """getattr(obj, name[, default])"""
        try:
            return self.evaluator.get_attribute(obj, name)
        except ScriptError as e:
            if e.kind != "AttributeError" or default is _MISSING:
                raise
            return default

    def _setattr(self, obj, name: str, value):
        self.evaluator.set_attribute(obj, name, value)

    def _hasattr(self, obj, name: str):
        try:
            self.evaluator.get_attribute(obj, name)
        except ScriptError as e:
            if e.kind != "AttributeError":
                raise
            return False
        return True

    def _super(self, *, env=None):
        """super(): the base-class view of the current method's receiver."""
        scope = env
        while scope is not None and scope.method_class is None:
            scope = scope.parent
        if scope is None:
            raise ScriptError("super(): no arguments", "RuntimeError")
        return SuperProxy(scope.method_self, scope.method_class.base)

    # --- Sequences ---

    async def _len(self, value):
        return await self.evaluator.length(value)

    def _reversed(self, sequence, *, ctx):
        if not isinstance(sequence, (list, tuple, str, range)):
            raise QuillTypeError(f"'{type_name(sequence)}' object is not reversible")
        return list(ctx.checked(reversed(sequence)))

    def _enumerate(self, iterable, start: int = 0, *, ctx):
        return [(i, item) for i, item in enumerate(ctx.checked(iter_values(iterable)), start)]

    def _zip(self, *iterables, ctx):
        columns = [list(ctx.checked(iter_values(it))) for it in iterables]
        return [tuple(items) for items in ctx.checked(zip(*columns))]

    async def _map(self, fn, *iterables, ctx):
        """map(fn, *iterables): a list of fn applied elementwise."""
        if not iterables:
            raise QuillTypeError("map() must have at least two arguments.")
        columns = zip(*(list(ctx.checked(iter_values(it))) for it in iterables))
        return [await self.evaluator.invoke(fn, *args) for args in columns]

    async def _filter(self, fn, iterable, *, ctx):
        """filter(fn, iterable): the items for which fn is truthy (fn None keeps truthy items)."""
        result = []
        for item in ctx.checked(iter_values(iterable)):
            keep = item if fn is None else await self.evaluator.invoke(fn, item)
            if await self.evaluator.truth(keep):
                result.append(item)
        return result

    async def _sorted(self, iterable, key=None, reverse: bool = False, *, ctx):
        return await self.evaluator.sort_values(list(ctx.checked(iter_values(iterable))), key, reverse)

    async def _any(self, iterable, *, ctx):
        for item in ctx.checked(iter_values(iterable)):
            if await self.evaluator.truth(item):
                return True
        return False

    async def _all(self, iterable, *, ctx):
        for item in ctx.checked(iter_values(iterable)):
            if not await self.evaluator.truth(item):
                return False
        return True

    async def _min(self, *args, key=None, default=_MISSING, ctx):
        """min(iterable) or min(a, b, ...), with optional key and default."""
        return await self.extreme("min", args, key, default, ctx)

    async def _max(self, *args, key=None, default=_MISSING, ctx):
        """max(iterable) or max(a, b, ...), with optional key and default."""
        return await self.extreme("max", args, key, default, ctx)

    async def extreme(self, name: str, args, key, default, ctx) -> Any:
        if not args:
            raise QuillTypeError(f"{name} expected at least 1 argument, got 0")
        items = list(ctx.checked(iter_values(args[0]))) if len(args) == 1 else list(args)
        if not items:
            if default is _MISSING:
                raise QuillValueError(f"{name}() arg is an empty sequence")
            return default
        best = items[0]
        best_key = best if key is None else await self.evaluator.invoke(key, best)
        for item in ctx.checked(items[1:]):
            item_key = item if key is None else await self.evaluator.invoke(key, item)
            if name == "min":
                better = await self.evaluator.less_than(item_key, best_key)
            else:
                better = await self.evaluator.less_than(best_key, item_key)
            if better:
                best, best_key = item, item_key
        return best

    # --- Numbers ---

    def _abs(self, x):
        if isinstance(x, (int, float)):
            return abs(x)
        raise QuillTypeError(f"bad operand type for abs(): '{type_name(x)}'")

    def _sum(self, iterable, start=0, *, ctx):
        total = start
        for item in ctx.checked(iter_values(iterable)):
            total = self.evaluator.binary_op("+", total, item)
        return total

    def _round(self, number, ndigits=None):
        if not isinstance(number, (int, float)):
            raise QuillTypeError(f"type {type_name(number)} doesn't define __round__ method")
        if ndigits is None:
            return round(number)
        if not isinstance(ndigits, int):
            raise QuillTypeError("round() ndigits must be an integer")
        return round(number, ndigits)

    def _divmod(self, a, b):
        return (self.evaluator.binary_op("//", a, b), self.evaluator.binary_op("%", a, b))

    # --- Libraries ---

    def _dir(self, obj=None, *, env=None):
        """dir(obj): sorted names reachable on obj (or in the current scope)."""
        match obj:
            case None:
                return sorted(env.bindings) if env is not None else []
            case Library():
                return obj.member_names()
            case Instance():
                names = set(obj.fields)
                for cls in obj.cls.mro():
                    names.update(cls.methods)
                    names.update(cls.attributes)
                return sorted(names)
            case QuillClass():
                names = set()
                for cls in obj.mro():
                    names.update(cls.methods)
                    names.update(cls.attributes)
                return sorted(names)
        return quill_methods.method_names(obj)
