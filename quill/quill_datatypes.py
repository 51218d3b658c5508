"""
The Quill object model.

Primitives (int, float, str, bool, None), lists and tuples are the plain
Python objects. Everything that needs extra behaviour gets a class here:
dicts and sets with type-tagged keys, functions and classes defined by
scripts, native builtins, libraries, and the control-flow signals the
evaluator passes around instead of raising.
"""
import collections.abc
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from quill.quill_errors import QuillTypeError, QuillNameError


class Environment:
    """A lexical scope: a dict of bindings plus an optional parent.

    `global` and `nonlocal` declarations are recorded on the scope that
    made them and redirect assignment from there.
    """
    def __init__(self, parent: Optional['Environment'] = None, *, is_module: bool = False,
                 is_class_body: bool = False, name: Optional[str] = None):
        self.bindings: Dict[str, Any] = {}
        self.parent = parent
        self.is_module = is_module
        self.is_class_body = is_class_body
        self.name = name
        self.globals_declared: set = set()
        self.nonlocals_declared: set = set()
        # Set on method call scopes so super() can find its starting point.
        self.method_class: Optional['QuillClass'] = None
        self.method_self: Any = None

    def __repr__(self):
        return f"<Environment {self.name or ''} {list(self.bindings)}>"

    def __contains__(self, name: str) -> bool:
        return self.find_owner(name) is not None

    def __getitem__(self, name: str) -> Any:
        owner = self.find_owner(name)
        if owner is None:
            raise KeyError(name)
        return owner.bindings[name]

    def __setitem__(self, name: str, value: Any):
        self.bindings[name] = value

    def find_owner(self, name: str) -> Optional['Environment']:
        env = self
        while env is not None:
            if name in env.bindings:
                return env
            env = env.parent
        return None

    def lookup(self, name: str) -> Tuple[bool, Any]:
        env = self
        while env is not None:
            if name in env.bindings:
                return True, env.bindings[name]
            env = env.parent
        return False, None

    def get(self, name: str, default: Any = None) -> Any:
        found, value = self.lookup(name)
        return value if found else default

    def module(self) -> 'Environment':
        """The nearest module-level scope (the target of `global`)."""
        env = self
        while env is not None:
            if env.is_module:
                return env
            env = env.parent
        return self

    def _enclosing_owner(self, name: str) -> Optional['Environment']:
        env = self.parent
        while env is not None and not env.is_module:
            if name in env.bindings and not env.is_class_body:
                return env
            env = env.parent
        return None

    def declare_global(self, name: str):
        if name in self.bindings and not self.is_module:
            raise QuillNameError(f"name '{name}' is assigned to before global declaration")
        if not self.is_module:
            self.globals_declared.add(name)

    def declare_nonlocal(self, name: str):
        if self.is_module:
            raise QuillNameError("nonlocal declaration not allowed at module level")
        if self._enclosing_owner(name) is None:
            raise QuillNameError(f"no binding for nonlocal '{name}' found")
        self.nonlocals_declared.add(name)

    def target_for(self, name: str) -> 'Environment':
        if name in self.globals_declared:
            return self.module()
        if name in self.nonlocals_declared:
            owner = self._enclosing_owner(name)
            if owner is None:
                raise QuillNameError(f"no binding for nonlocal '{name}' found")
            return owner
        return self

    def assign(self, name: str, value: Any):
        self.target_for(name).bindings[name] = value

    def delete(self, name: str):
        target = self.target_for(name)
        if name not in target.bindings:
            raise QuillNameError(f"name '{name}' is not defined")
        del target.bindings[name]


# ===================================================================
# Dicts and sets with canonical keys
# ===================================================================

def canonical_key(key: Any) -> str:
    """Type-tagged string form of a hashable value.

    Keeps 1, "1", True and 1.0 distinct as dict keys and set members.
    """
    match key:
        case bool():
            return f"b:{key}"
        case int():
            return f"i:{key}"
        case float():
            return f"f:{key!r}"
        case str():
            return f"s:{key}"
        case None:
            return "n:"
        case tuple():
            return "t:(" + ",".join(canonical_key(k) for k in key) + ")"
        case range():
            return f"r:{key.start},{key.stop},{key.step}"
    if isinstance(key, (QuillFunction, Builtin, QuillClass, Library)):
        return f"o:{id(key)}"
    raise QuillTypeError(f"unhashable type: '{type_name(key)}'")


class QuillDict(collections.abc.MutableMapping):
    """Insertion-ordered mapping keyed by canonical_key()."""
    __hash__ = None

    def __init__(self, items: Iterable = ()):
        self._data: Dict[str, Tuple[Any, Any]] = {}
        if isinstance(items, collections.abc.Mapping):
            items = items.items()
        for k, v in items:
            self[k] = v

    def __getitem__(self, key):
        try:
            return self._data[canonical_key(key)][1]
        except KeyError:
            raise KeyError(key) from None

    def __setitem__(self, key, value):
        ck = canonical_key(key)
        existing = self._data.get(ck)
        self._data[ck] = (existing[0] if existing else key, value)

    def __delitem__(self, key):
        try:
            del self._data[canonical_key(key)]
        except KeyError:
            raise KeyError(key) from None

    def __contains__(self, key):
        return canonical_key(key) in self._data

    def __iter__(self):
        for k, _ in list(self._data.values()):
            yield k

    def __len__(self):
        return len(self._data)

    def __eq__(self, other):
        if isinstance(other, QuillDict):
            if self._data.keys() != other._data.keys():
                return False
            return all(v == other._data[ck][1] for ck, (_, v) in self._data.items())
        if isinstance(other, collections.abc.Mapping):
            return self == QuillDict(other)
        return NotImplemented

    def __repr__(self):
        from quill.quill_printer import Printer
        return Printer().pformat(self)

    def items(self):
        return [(k, v) for k, v in self._data.values()]

    def keys(self):
        return [k for k, _ in self._data.values()]

    def values(self):
        return [v for _, v in self._data.values()]

    def copy(self) -> 'QuillDict':
        new = QuillDict()
        new._data = dict(self._data)
        return new


class QuillSet(collections.abc.MutableSet):
    """Insertion-ordered set keyed by canonical_key()."""
    __hash__ = None

    def __init__(self, items: Iterable = ()):
        self._data: Dict[str, Any] = {}
        for item in items:
            self.add(item)

    def __contains__(self, item):
        return canonical_key(item) in self._data

    def __iter__(self):
        return iter(list(self._data.values()))

    def __len__(self):
        return len(self._data)

    def add(self, item):
        self._data.setdefault(canonical_key(item), item)

    def discard(self, item):
        self._data.pop(canonical_key(item), None)

    def remove(self, item):
        ck = canonical_key(item)
        if ck not in self._data:
            raise KeyError(item)
        del self._data[ck]

    def copy(self) -> 'QuillSet':
        new = QuillSet()
        new._data = dict(self._data)
        return new

    def __repr__(self):
        from quill.quill_printer import Printer
        return Printer().pformat(self)


# ===================================================================
# Callables, classes, instances
# ===================================================================

class QuillFunction:
    """A function or lambda defined in script code."""
    def __init__(self, name: str, params: tuple, body: Any, closure: Environment,
                 defaults: Dict[str, Any], *, is_lambda: bool = False, doc: Optional[str] = None):
        self.name = name
        self.params = params
        self.body = body
        self.closure = closure
        self.defaults = defaults
        self.is_lambda = is_lambda
        self.doc = doc
        self.owner_class: Optional['QuillClass'] = None

    def __repr__(self):
        return f"<function {self.name}>"


class Builtin:
    """A host-implemented callable exposed to scripts."""
    def __init__(self, fn: Callable, name: Optional[str] = None, help_text: Optional[str] = None):
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "<builtin>").lstrip("_")
        self.help_text = help_text if help_text is not None else (getattr(fn, "__doc__", None) or "")
        # Set on conversion builtins (int, str, ...) so they double as types.
        self.type_check: Optional[tuple] = None
        # Cached quill_binding.NativeSignature
        self.native = None

    def __repr__(self):
        return f"<builtin {self.name}>"


class BoundMethod:
    def __init__(self, receiver: Any, function: Any, name: str):
        self.receiver = receiver
        self.function = function
        self.name = name

    def __repr__(self):
        return f"<bound method {self.name}>"


class QuillClass:
    """A class: a name, at most one base, methods and class attributes."""
    def __init__(self, name: str, base: Optional['QuillClass'] = None,
                 methods: Optional[Dict[str, Any]] = None, attributes: Optional[Dict[str, Any]] = None,
                 *, doc: Optional[str] = None, frozen: bool = False):
        self.name = name
        self.base = base
        self.methods: Dict[str, Any] = dict(methods or {})
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self.doc = doc
        # Shared between interpreters; scripts may subclass but not modify it.
        self.frozen = frozen

    def __repr__(self):
        return f"<class {self.name}>"

    def mro(self) -> List['QuillClass']:
        chain = []
        cls = self
        while cls is not None:
            chain.append(cls)
            cls = cls.base
        return chain

    def find_method(self, name: str) -> Optional[Any]:
        for cls in self.mro():
            if name in cls.methods:
                return cls.methods[name]
        return None

    def find_attribute(self, name: str) -> Tuple[bool, Any]:
        for cls in self.mro():
            if name in cls.methods:
                return True, cls.methods[name]
            if name in cls.attributes:
                return True, cls.attributes[name]
        return False, None

    def is_subclass_of(self, other: 'QuillClass') -> bool:
        return any(cls is other for cls in self.mro())

    @property
    def is_exception_class(self) -> bool:
        return self.is_subclass_of(BASE_EXCEPTION)


class Instance:
    def __init__(self, cls: QuillClass, fields: Optional[Dict[str, Any]] = None):
        self.cls = cls
        self.fields: Dict[str, Any] = dict(fields or {})

    def __repr__(self):
        return f"<{self.cls.name} object>"


class ExceptionInstance(Instance):
    """An instance of a class deriving from BaseException.

    Location and trace are filled in the first time it is raised.
    """
    def __init__(self, cls: QuillClass, fields: Optional[Dict[str, Any]] = None):
        super().__init__(cls, fields)
        self.fields.setdefault("message", "")
        self.fields.setdefault("args", ())
        self.line: Optional[int] = None
        self.column: Optional[int] = None
        self.trace: Optional[List[dict]] = None

    @property
    def kind(self) -> str:
        return self.cls.name

    @property
    def message(self) -> str:
        msg = self.fields.get("message", "")
        return msg if isinstance(msg, str) else str(msg)

    @property
    def code(self) -> int:
        code = self.fields.get("code", 0)
        return code if isinstance(code, int) else 1

    def __repr__(self):
        return f"{self.cls.name}({self.message!r})"


class SuperProxy:
    """What super() returns: method lookup starting above `start`."""
    def __init__(self, instance: Any, start: Optional[QuillClass]):
        self.instance = instance
        self.start = start

    def __repr__(self):
        return f"<super of {self.start.name if self.start else None}>"


class Library:
    """A named bundle of functions, constants and sub-libraries.

    A library built with a `factory` is a template: instantiate(config)
    produces a concrete library whose functions close over that config.
    """
    def __init__(self, name: str, functions: Optional[Dict[str, Any]] = None,
                 constants: Optional[Dict[str, Any]] = None,
                 sub_libraries: Optional[Dict[str, 'Library']] = None,
                 description: str = "", *, factory: Optional[Callable[[Any], Dict[str, Any]]] = None):
        self.name = name
        self.functions: Dict[str, Any] = {}
        for fname, fn in (functions or {}).items():
            self.functions[fname] = fn if isinstance(fn, (Builtin, QuillFunction, QuillClass)) else Builtin(fn, fname)
        self.constants: Dict[str, Any] = dict(constants or {})
        self.sub_libraries: Dict[str, Library] = dict(sub_libraries or {})
        self.description = description
        self.factory = factory

    def __repr__(self):
        return f"<library {self.name}>"

    @property
    def is_template(self) -> bool:
        if self.factory is not None:
            return True
        return any(sub.is_template for sub in self.sub_libraries.values())

    def instantiate(self, config: Any) -> 'Library':
        functions = dict(self.functions)
        if self.factory is not None:
            functions.update(self.factory(config))
        return Library(
            self.name,
            functions,
            self.constants,
            {n: (sub.instantiate(config) if sub.is_template else sub) for n, sub in self.sub_libraries.items()},
            self.description,
        )

    def get_member(self, name: str) -> Tuple[bool, Any]:
        if name in self.functions:
            return True, self.functions[name]
        if name in self.constants:
            return True, self.constants[name]
        if name in self.sub_libraries:
            return True, self.sub_libraries[name]
        return False, None

    def member_names(self) -> List[str]:
        return sorted(set(self.functions) | set(self.constants) | set(self.sub_libraries))


# ===================================================================
# Control-flow signals
# ===================================================================

class Signal:
    """Returned, never raised, through the evaluator's exec/eval functions."""
    __slots__ = ()


class ReturnSignal(Signal):
    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value


class BreakSignal(Signal):
    __slots__ = ()


class ContinueSignal(Signal):
    __slots__ = ()


class RaiseSignal(Signal):
    __slots__ = ("exception",)

    def __init__(self, exception: ExceptionInstance):
        self.exception = exception

    def __repr__(self):
        return f"<raise {self.exception!r}>"


BREAK = BreakSignal()
CONTINUE = ContinueSignal()


# ===================================================================
# Built-in exception classes
# ===================================================================

def _exception_init(self, *args):
    self.fields["args"] = tuple(args)
    self.fields["message"] = "" if not args else (args[0] if isinstance(args[0], str) else _plain_str(args[0]))


def _system_exit_init(self, code=None):
    self.fields["args"] = () if code is None else (code,)
    if code is None:
        self.fields["code"] = 0
        self.fields["message"] = ""
    elif isinstance(code, int) and not isinstance(code, bool):
        self.fields["code"] = code
        self.fields["message"] = str(code)
    else:
        self.fields["code"] = 1
        self.fields["message"] = code if isinstance(code, str) else _plain_str(code)


def _plain_str(value: Any) -> str:
    from quill.quill_printer import Printer
    return Printer().pformat(value, "str")


BASE_EXCEPTION = QuillClass("BaseException", methods={"__init__": Builtin(_exception_init, "__init__")})

EXCEPTION_HIERARCHY = (
    ("Exception", "BaseException"),
    ("SystemExit", "BaseException"),
    ("Cancelled", "BaseException"),
    ("RuntimeError", "Exception"),
    ("TypeError", "Exception"),
    ("ArityError", "TypeError"),
    ("ValueError", "Exception"),
    ("NameError", "Exception"),
    ("AttributeError", "Exception"),
    ("LookupError", "Exception"),
    ("KeyError", "LookupError"),
    ("IndexError", "LookupError"),
    ("ZeroDivisionError", "Exception"),
    ("PermissionError", "Exception"),
    ("OSError", "Exception"),
    ("FileNotFoundError", "OSError"),
    ("ImportError", "Exception"),
    ("AssertionError", "Exception"),
)


def _build_exception_classes() -> Dict[str, QuillClass]:
    classes = {"BaseException": BASE_EXCEPTION}
    for name, base in EXCEPTION_HIERARCHY:
        classes[name] = QuillClass(name, classes[base])
    classes["SystemExit"].methods["__init__"] = Builtin(_system_exit_init, "__init__")
    for cls in classes.values():
        cls.frozen = True
    return classes


BUILTIN_EXCEPTIONS: Dict[str, QuillClass] = _build_exception_classes()


def make_exception(kind: str, message: str = "", *, code: Optional[int] = None) -> ExceptionInstance:
    """Builds an exception object of a built-in class without running script code."""
    cls = BUILTIN_EXCEPTIONS.get(kind, BUILTIN_EXCEPTIONS["RuntimeError"])
    exc = ExceptionInstance(cls, {"message": message, "args": (message,) if message else ()})
    if code is not None:
        exc.fields["code"] = code
    return exc


def make_system_exit(code: Any = None) -> ExceptionInstance:
    """A SystemExit exactly as `raise SystemExit(code)` would build it."""
    exc = ExceptionInstance(BUILTIN_EXCEPTIONS["SystemExit"])
    _system_exit_init(exc, code)
    return exc


# ===================================================================
# Type names, truthiness, accessors, marshalling
# ===================================================================

def type_name(value: Any) -> str:
    match value:
        case None:
            return "NoneType"
        case bool():
            return "bool"
        case int():
            return "int"
        case float():
            return "float"
        case str():
            return "str"
        case list():
            return "list"
        case tuple():
            return "tuple"
        case range():
            return "range"
        case QuillDict():
            return "dict"
        case QuillSet():
            return "set"
        case QuillFunction():
            return "function"
        case Builtin():
            return "builtin_function"
        case BoundMethod():
            return "method"
        case QuillClass():
            return "class"
        case Instance():
            return value.cls.name
        case Library():
            return "library"
        case SuperProxy():
            return "super"
    return type(value).__name__


def is_truthy(value: Any) -> bool:
    match value:
        case None | False:
            return False
        case bool() | int() | float() | str() | list() | tuple() | range() | QuillDict() | QuillSet():
            return bool(value)
    return True


def iter_values(value: Any):
    """Python iterator over a script iterable. Dicts and sets iterate a snapshot."""
    match value:
        case list() | tuple() | str() | range():
            return iter(value)
        case QuillDict():
            return iter(value.keys())
        case QuillSet():
            return iter(list(value))
    raise QuillTypeError(f"'{type_name(value)}' object is not iterable")


def as_int(value: Any) -> int:
    match value:
        case bool():
            return int(value)
        case int():
            return value
        case float():
            return int(value)
    raise QuillTypeError(f"expected int, got {type_name(value)}")


def as_float(value: Any) -> float:
    match value:
        case bool():
            raise QuillTypeError("expected float, got bool")
        case int() | float():
            return float(value)
    raise QuillTypeError(f"expected float, got {type_name(value)}")


def as_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise QuillTypeError(f"expected str, got {type_name(value)}")


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise QuillTypeError(f"expected bool, got {type_name(value)}")


def as_list(value: Any) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise QuillTypeError(f"expected list, got {type_name(value)}")


def as_dict(value: Any) -> dict:
    if isinstance(value, QuillDict):
        return to_python(value)
    raise QuillTypeError(f"expected dict, got {type_name(value)}")


def to_value(obj: Any) -> Any:
    """Marshals a host object into a script value."""
    match obj:
        case None | bool() | int() | float() | str() | range():
            return obj
        case QuillDict() | QuillSet() | QuillFunction() | Builtin() | BoundMethod() | \
                QuillClass() | Instance() | Library() | SuperProxy():
            return obj
        case list():
            for i, item in enumerate(obj):
                converted = to_value(item)
                if converted is not item:
                    obj[i] = converted
            return obj
        case tuple():
            return tuple(to_value(item) for item in obj)
        case collections.abc.Mapping():
            return QuillDict((to_value(k), to_value(v)) for k, v in obj.items())
        case set() | frozenset():
            return QuillSet(to_value(item) for item in obj)
    if callable(obj):
        return Builtin(obj)
    raise QuillTypeError(f"cannot convert {type(obj).__name__} to a script value")


def to_python(value: Any) -> Any:
    """Converts script containers into plain Python ones, recursively."""
    match value:
        case QuillDict():
            return {_python_key(k): to_python(v) for k, v in value.items()}
        case QuillSet():
            return {_python_key(k) for k in value}
        case list():
            return [to_python(v) for v in value]
        case tuple():
            return tuple(to_python(v) for v in value)
    return value


def _python_key(key: Any) -> Any:
    return tuple(_python_key(k) for k in key) if isinstance(key, tuple) else key
