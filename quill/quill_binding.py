"""
Argument binding.

Script functions bind by declared Params. Native builtins bind through
inspect.signature; annotated parameters get the coercions scripts expect
(an int parameter accepts a float and truncates it, and so on) and
keyword-only `ctx`, `interp` and `env` parameters are filled in by the
evaluator instead of by the caller.
"""
import inspect
from typing import Any, Dict, List, Optional, Sequence, Tuple

from quill.quill_errors import ArityError, QuillTypeError
from quill.quill_datatypes import Builtin, QuillDict, is_truthy, to_python, type_name

INJECTED_PARAMS = ("ctx", "interp", "env")

_COERCIBLE = {int: "int", float: "float", str: "str", bool: "bool", list: "list", dict: "dict"}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def bind_arguments(name: str, params: Sequence, defaults: Dict[str, Any],
                   args: List[Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Maps call arguments onto a script function's parameters."""
    positional = [p for p in params if p.kind == "positional"]
    kwonly = [p for p in params if p.kind == "kwonly"]
    varargs = next((p for p in params if p.kind == "varargs"), None)
    varkw = next((p for p in params if p.kind == "varkw"), None)

    bound: Dict[str, Any] = {}
    if len(args) > len(positional):
        if varargs is None:
            raise ArityError(
                f"{name}() takes {_plural(len(positional), 'positional argument')} "
                f"but {len(args)} {'was' if len(args) == 1 else 'were'} given")
        bound[varargs.name] = tuple(args[len(positional):])
    elif varargs is not None:
        bound[varargs.name] = ()
    for param, value in zip(positional, args):
        bound[param.name] = value

    by_name = {p.name: p for p in positional + kwonly}
    extra = QuillDict()
    for key, value in kwargs.items():
        if key in by_name:
            if key in bound:
                raise ArityError(f"{name}() got multiple values for argument '{key}'")
            bound[key] = value
        elif varkw is not None:
            extra[key] = value
        else:
            raise ArityError(f"{name}() got an unexpected keyword argument '{key}'")

    missing = []
    for param in positional + kwonly:
        if param.name in bound:
            continue
        if param.name in defaults:
            bound[param.name] = defaults[param.name]
        else:
            missing.append(param.name)
    if missing:
        names = ", ".join(f"'{m}'" for m in missing)
        raise ArityError(f"{name}() missing {_plural(len(missing), 'required argument')}: {names}")

    if varkw is not None:
        bound[varkw.name] = extra
    return bound


class NativeSignature:
    """What the evaluator needs to know about a host callable, computed once."""

    def __init__(self, fn):
        self.signature: Optional[inspect.Signature] = None
        self.injected: Tuple[str, ...] = ()
        self.coercions: Dict[str, str] = {}
        self.kinds: Dict[str, Any] = {}
        self.defaults: Dict[str, Any] = {}
        try:
            sig = inspect.signature(fn)
        except (TypeError, ValueError):
            # Some C callables have no introspectable signature; call them as is.
            return
        params = []
        injected = []
        for p in sig.parameters.values():
            if p.kind is inspect.Parameter.KEYWORD_ONLY and p.name in INJECTED_PARAMS:
                injected.append(p.name)
                continue
            params.append(p)
            kind = _annotation_kind(p.annotation)
            if kind is not None:
                self.coercions[p.name] = kind
            self.kinds[p.name] = p.kind
            self.defaults[p.name] = p.default
        self.injected = tuple(injected)
        self.signature = sig.replace(parameters=params)


def _annotation_kind(annotation) -> Optional[str]:
    if annotation is inspect.Parameter.empty:
        return None
    if isinstance(annotation, str):
        return annotation if annotation in _COERCIBLE.values() else None
    return _COERCIBLE.get(annotation)


def native_signature(builtin: Builtin) -> NativeSignature:
    if builtin.native is None:
        builtin.native = NativeSignature(builtin.fn)
    return builtin.native


def coerce_argument(value: Any, kind: str, param: str, func: str) -> Any:
    match kind:
        case "int":
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, int):
                return value
            if isinstance(value, float):
                if value != value or value in (float("inf"), float("-inf")):
                    raise QuillTypeError(f"{func}() argument '{param}' cannot convert {value!r} to int")
                return int(value)
        case "float":
            if isinstance(value, (int, float)):
                return float(value)
        case "str":
            if isinstance(value, str):
                return value
        case "bool":
            return is_truthy(value)
        case "list":
            if isinstance(value, list):
                return value
            if isinstance(value, tuple):
                return list(value)
        case "dict":
            if isinstance(value, QuillDict):
                return to_python(value)
            if isinstance(value, dict):
                return value
    raise QuillTypeError(f"{func}() argument '{param}' must be {kind}, not {type_name(value)}")


def prepare_native_call(builtin: Builtin, args: List[Any], kwargs: Dict[str, Any],
                        injections: Dict[str, Any]) -> Tuple[tuple, Dict[str, Any]]:
    """Binds and coerces arguments for a host callable."""
    native = native_signature(builtin)
    name = builtin.name
    if native.signature is None:
        return tuple(args), dict(kwargs)

    for key in kwargs:
        if key in native.injected:
            raise ArityError(f"{name}() got an unexpected keyword argument '{key}'")
    try:
        bound = native.signature.bind(*args, **kwargs)
    except TypeError as e:
        raise ArityError(f"{name}(): {e}") from None

    for pname, value in list(bound.arguments.items()):
        kind = native.coercions.get(pname)
        if kind is None:
            continue
        pkind = native.kinds[pname]
        if pkind is inspect.Parameter.VAR_POSITIONAL:
            bound.arguments[pname] = tuple(coerce_argument(v, kind, pname, name) for v in value)
        elif pkind is inspect.Parameter.VAR_KEYWORD:
            bound.arguments[pname] = {k: coerce_argument(v, kind, k, name) for k, v in value.items()}
        elif value is None and native.defaults.get(pname) is None:
            continue
        else:
            bound.arguments[pname] = coerce_argument(value, kind, pname, name)

    call_kwargs = dict(bound.kwargs)
    for inj in native.injected:
        call_kwargs[inj] = injections.get(inj)
    return bound.args, call_kwargs
