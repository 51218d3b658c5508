"""
Standard libraries available to `import`.

Each entry of STANDARD_LIBRARIES is a factory `(interpreter) -> Library`,
run the first time an interpreter imports that name. Factories close over
the interpreter's own state (its random generator, its sandbox), so
nothing here is shared between interpreters.
"""
import math
import platform
import random
import sys
import time
from typing import Callable, Dict

import pystache

from quill.quill_datatypes import Library, QuillDict, iter_values, make_system_exit, to_python, type_name
from quill.quill_errors import QuillTypeError, QuillValueError, ScriptExit
from quill.quill_library import LibraryBuilder
from quill.quill_serialize import serialize, deserialize
from quill import quill_file, quill_http, quill_process

QUILL_VERSION = "0.3.0"

# factorial() above this would stall the evaluator
MAX_FACTORIAL = 5000


def _number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise QuillTypeError(f"must be real number, not {type_name(value)}")
    return value


def math_library(interp) -> Library:
    def log(x: float, base=None):
        if base is None:
            return math.log(x)
        return math.log(x, _number(base))

    def factorial(n: int):
        if n < 0:
            raise QuillValueError("factorial() not defined for negative values")
        if n > MAX_FACTORIAL:
            raise QuillValueError(f"factorial() argument should not exceed {MAX_FACTORIAL}")
        return math.factorial(n)

    def pow_(x: float, y: float):
        return math.pow(x, y)

    b = LibraryBuilder("math", "Mathematical functions")
    for name in ("sqrt", "exp", "sin", "cos", "tan", "asin", "acos", "atan", "log10", "log2",
                 "fabs", "degrees", "radians"):
        fn = getattr(math, name)
        b.function(name, (lambda f: lambda x: f(_number(x)))(fn), fn.__doc__)
    return (b.function("floor", lambda x: math.floor(_number(x)), "Largest integer <= x.")
             .function("ceil", lambda x: math.ceil(_number(x)), "Smallest integer >= x.")
             .function("trunc", lambda x: math.trunc(_number(x)), "Truncates x toward zero.")
             .function("isnan", lambda x: math.isnan(_number(x)))
             .function("isinf", lambda x: math.isinf(_number(x)))
             .function("atan2", lambda y, x: math.atan2(_number(y), _number(x)))
             .function("hypot", lambda *xs: math.hypot(*(_number(x) for x in xs)))
             .function("gcd", lambda *ns: math.gcd(*(int(n) for n in ns)))
             .function("log", log, "log(x[, base])")
             .function("pow", pow_, "pow(x, y) as a float.")
             .function("factorial", factorial)
             .constant("pi", math.pi)
             .constant("e", math.e)
             .constant("tau", math.tau)
             .constant("inf", math.inf)
             .constant("nan", math.nan)
             .build())


def time_library(interp) -> Library:
    async def sleep(seconds: float, *, ctx):
        """Sleeps without blocking the event loop; wakes up early on cancellation."""
        if seconds < 0:
            raise QuillValueError("sleep length must be non-negative")
        await ctx.sleep(seconds)

    return (LibraryBuilder("time", "Clocks and sleeping")
            .function("time", time.time, "Seconds since the epoch as a float.")
            .function("monotonic", time.monotonic, "A clock that never goes backwards.")
            .function("sleep", sleep)
            .build())


def sys_library(interp) -> Library:
    def exit_(code=None):
        exc = make_system_exit(code)
        raise ScriptExit(exc.code, exc.message, exception=exc)

    return (LibraryBuilder("sys", "Interpreter information")
            .function("exit", exit_, "exit(code=0): raise SystemExit.")
            .constant("version", QUILL_VERSION)
            .constant("platform", sys.platform)
            .constant("python_version", platform.python_version())
            .constant("maxsize", sys.maxsize)
            .build())


def random_library(interp) -> Library:
    rng = random.Random()

    def seed(value=None):
        rng.seed(value)

    def choice(seq):
        items = list(iter_values(seq))
        if not items:
            raise QuillValueError("Cannot choose from an empty sequence")
        return rng.choice(items)

    def shuffle(items: list):
        rng.shuffle(items)

    def sample(population, k: int):
        return rng.sample(list(iter_values(population)), k)

    return (LibraryBuilder("random", "Pseudo-random numbers, seeded per interpreter")
            .function("seed", seed)
            .function("random", rng.random, "A float in [0.0, 1.0).")
            .function("randint", lambda a, b: rng.randint(int(a), int(b)), "An int N with a <= N <= b.")
            .function("uniform", lambda a, b: rng.uniform(a, b))
            .function("choice", choice)
            .function("shuffle", shuffle, "Shuffles a list in place.")
            .function("sample", sample)
            .build())


def json_library(interp) -> Library:
    def dumps(value, indent=None, sort_keys: bool = False):
        return serialize(value, fmt="json", indent=None if indent is None else int(indent), sort_keys=sort_keys)

    def loads(text: str):
        return deserialize(text, fmt="json")

    return (LibraryBuilder("json", "JSON encoding and decoding")
            .function("dumps", dumps, "dumps(value, indent=None, sort_keys=False)")
            .function("loads", loads, "loads(text): parse JSON text.")
            .build())


def yaml_library(interp) -> Library:
    def dump(value, sort_keys: bool = False):
        return serialize(value, fmt="yaml", sort_keys=sort_keys)

    def load(text: str):
        return deserialize(text, fmt="yaml")

    return (LibraryBuilder("yaml", "YAML encoding and decoding (safe subset)")
            .function("dump", dump)
            .function("load", load)
            .build())


def template_library(interp) -> Library:
    renderer = pystache.Renderer(escape=lambda u: u)

    def render(template: str, context=None, **kwargs):
        """render(template, context=None, **values): fill a mustache template."""
        data = {}
        if context is not None:
            if not isinstance(context, QuillDict):
                raise QuillTypeError("render() context must be a dict")
            data.update(to_python(context))
        data.update(to_python(QuillDict(kwargs)))
        return renderer.render(template, data)

    return (LibraryBuilder("template", "Mustache templates")
            .function("render", render)
            .build())


def _instantiated(template: Library) -> Callable:
    return lambda interp: template.instantiate(interp.sandbox)


STANDARD_LIBRARIES: Dict[str, Callable] = {
    "math": math_library,
    "time": time_library,
    "sys": sys_library,
    "random": random_library,
    "json": json_library,
    "yaml": yaml_library,
    "template": template_library,
    "os": _instantiated(quill_file.OS_TEMPLATE),
    "http": _instantiated(quill_http.HTTP_TEMPLATE),
    "subprocess": _instantiated(quill_process.SUBPROCESS_TEMPLATE),
}
