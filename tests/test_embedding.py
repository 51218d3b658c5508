import pytest

from quill import (
    ClassBuilder, Interpreter, QuillDict, QuillTypeError, QuillValueError,
    ScriptError,
)
from quill.quill_datatypes import ExceptionInstance, Instance


@pytest.mark.asyncio
async def test_eval_returns_last_expression_value():
    interp = Interpreter()
    assert await interp.eval("1 + 2") == 3
    assert await interp.eval("x = 4") == 4
    assert await interp.eval("def f():\n    pass") is None


@pytest.mark.asyncio
async def test_set_and_get_variables():
    interp = Interpreter()
    interp.set_var("config", {"name": "quill", "sizes": [1, 2]})
    assert isinstance(interp.get_var("config")[0], QuillDict)
    assert await interp.eval("config['sizes'][1] + len(config['name'])") == 7

    await interp.eval("ratio = 3.75\nlabel = 'x'\nflag = True\nitems = (1, 2)\nmapping = {'a': [1]}")
    assert interp.get_var_as_int("ratio") == 3
    assert interp.get_var_as_float("ratio") == 3.75
    assert interp.get_var_as_string("label") == "x"
    assert interp.get_var_as_bool("flag") is True
    assert interp.get_var_as_list("items") == [1, 2]
    assert interp.get_var_as_dict("mapping") == {"a": [1]}
    assert interp.get_var("nope") == (None, False)


def test_accessors_fail_explicitly():
    interp = Interpreter()
    interp.set_var("label", "x")
    with pytest.raises(QuillTypeError, match="expected int, got str"):
        interp.get_var_as_int("label")
    with pytest.raises(ScriptError, match="name 'missing' is not defined"):
        interp.get_var_as_string("missing")


@pytest.mark.asyncio
async def test_registered_function_with_declared_int_signature():
    interp = Interpreter()

    def add(a: int, b: int) -> int:
        return a + b

    interp.register_func("add", add)
    assert await interp.eval("add(2, 3)") == add(2, 3)
    # Floats truncate toward zero where an int is declared
    assert await interp.eval("add(2.9, -1.9)") == 1
    with pytest.raises(ScriptError) as ei:
        await interp.eval("add('2', 3)")
    assert ei.value.kind == "TypeError"
    assert "add() argument 'a' must be int, not str" in str(ei.value)
    with pytest.raises(ScriptError) as ei:
        await interp.eval("add(1)")
    assert ei.value.kind == "ArityError"


@pytest.mark.asyncio
async def test_native_exceptions_keep_their_kind():
    interp = Interpreter()

    def parse_port(text: str) -> int:
        port = int(text)
        if not 0 < port < 65536:
            raise QuillValueError(f"port out of range: {port}")
        return port

    interp.register_func("parse_port", parse_port)
    src = """
results = []
for text in ['80', 'http', '99999']:
    try:
        results.append(parse_port(text))
    except ValueError as e:
        results.append(str(e))
results
"""
    assert await interp.eval(src) == [80, "invalid literal for int() with base 10: 'http'", "port out of range: 99999"]


@pytest.mark.asyncio
async def test_script_exception_round_trips_through_native_code():
    interp = Interpreter()

    async def apply(fn, value, *, interp):
        return await interp.evaluator.invoke(fn, value)

    interp.register_func("apply", apply)
    src = """
class Special(Exception):
    pass

def explode(v):
    raise Special('from script ' + str(v))

try:
    apply(explode, 7)
except Special as e:
    caught = (type(e).__name__, e.message)
caught
"""
    assert await interp.eval(src) == ("Special", "from script 7")


@pytest.mark.asyncio
async def test_uncaught_script_exception_reaches_host_as_script_error():
    interp = Interpreter()
    with pytest.raises(ScriptError) as ei:
        await interp.eval("x = 1\nraise KeyError('k')")
    err = ei.value
    assert err.kind == "KeyError"
    assert err.message == "k"
    assert err.line == 2
    assert isinstance(err.exception, ExceptionInstance)


@pytest.mark.asyncio
async def test_call_function_create_instance_and_call_method():
    interp = Interpreter()
    await interp.eval("""
def greet(name, punctuation='!'):
    return 'hello ' + name + punctuation

class Point:
    def __init__(self, x, y):
        self.x = x
        self.y = y
    def total(self, scale=1):
        return (self.x + self.y) * scale
""")
    assert await interp.call_function("greet", "bob") == "hello bob!"
    assert await interp.call_function("greet", "bob", punctuation="?") == "hello bob?"
    p = await interp.create_instance("Point", 1, 2)
    assert isinstance(p, Instance)
    assert await interp.call_method(p, "total") == 3
    assert await interp.call_method(p, "total", scale=10) == 30
    with pytest.raises(ScriptError) as ei:
        await interp.call_function("greet")
    assert ei.value.kind == "ArityError"
    with pytest.raises(QuillTypeError):
        await interp.create_instance("greet")


@pytest.mark.asyncio
async def test_register_class_built_natively():
    def init(self, start: int = 0):
        self.fields["n"] = start

    def incr(self, by: int = 1):
        self.fields["n"] += by
        return self.fields["n"]

    counter = (ClassBuilder("Counter", doc="Counts up.")
               .method("__init__", init)
               .method("incr", incr)
               .attribute("kind", "counter")
               .build())
    interp = Interpreter()
    interp.register_class(counter)
    src = """
class Stepper(Counter):
    def incr(self, by=1):
        return super().incr(by * 10)
c = Stepper(5)
c.incr()
(c.incr(2), c.kind, Counter.__doc__, isinstance(c, Counter))
"""
    assert await interp.eval(src) == (35, "counter", "Counts up.", True)


@pytest.mark.asyncio
async def test_native_exception_class_extends_builtin_hierarchy():
    interp = Interpreter()
    interp.register_class(ClassBuilder("HttpError", base="OSError").build())
    src = """
try:
    raise HttpError('503')
except OSError as e:
    caught = e.message
caught
"""
    assert await interp.eval(src) == "503"


def test_class_builder_rejects_unknown_base():
    with pytest.raises(ValueError):
        ClassBuilder("Broken", base="NoSuchError")


@pytest.mark.asyncio
async def test_output_capture():
    interp = Interpreter()
    interp.enable_output_capture()
    await interp.eval("print('hello')\nprint(1, 2, sep=',')")
    assert interp.get_output() == "hello\n1,2\n"
    assert interp.get_output() == ""


@pytest.mark.asyncio
async def test_output_writer_callable():
    chunks = []
    interp = Interpreter()
    interp.set_output_writer(chunks.append)
    await interp.eval("print('a')")
    assert "".join(chunks) == "a\n"


@pytest.mark.asyncio
async def test_interpreters_are_isolated():
    one, two = Interpreter(), Interpreter()
    await one.eval("shared = 1")
    one.register_func("only_here", lambda: 1)
    assert two.get_var("shared") == (None, False)
    with pytest.raises(ScriptError, match="NameError"):
        await two.eval("only_here()")


@pytest.mark.asyncio
async def test_builtin_exception_classes_cannot_be_modified():
    one, two = Interpreter(), Interpreter()
    src = """
def hijack(self):
    return 'hijacked by one'
errors = []
for attempt in [lambda: setattr(ValueError, '__str__', hijack), lambda: setattr(Exception, 'tag', 'one')]:
    try:
        attempt()
    except TypeError as e:
        errors.append(str(e))
errors
"""
    assert await one.eval(src) == [
        "cannot set '__str__' attribute of immutable type 'ValueError'",
        "cannot set 'tag' attribute of immutable type 'Exception'",
    ]
    with pytest.raises(ScriptError) as ei:
        await one.eval("Exception.tag = 'one'")
    assert ei.value.kind == "TypeError"

    assert await two.eval("str(ValueError('x'))") == "x"
    assert await two.eval("hasattr(Exception, 'tag')") is False


@pytest.mark.asyncio
async def test_registered_classes_are_shared_read_only():
    shared = ClassBuilder("Shared").attribute("kind", "original").build()
    one, two = Interpreter(), Interpreter()
    one.register_class(shared)
    two.register_class(shared)
    with pytest.raises(ScriptError, match="immutable type 'Shared'"):
        await one.eval("Shared.kind = 'changed'")
    src = """
class Local(Shared):
    pass
Local.kind = 'local'
(Local.kind, Shared.kind)
"""
    assert await one.eval(src) == ("local", "original")
    assert await two.eval("Shared.kind") == "original"


@pytest.mark.asyncio
async def test_max_depth_is_configurable():
    interp = Interpreter(max_depth=20)
    src = """
def down(n):
    return 0 if n == 0 else down(n - 1)
down(15)
"""
    assert await interp.eval(src) == 0
    with pytest.raises(ScriptError, match="maximum recursion depth exceeded"):
        await interp.eval("down(50)")
