import math

import pytest

from quill import Interpreter, ScriptRunner


def assert_ok(res, expected=None):
    assert res.status == "success", f"expected success, got {res.error_message}"
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


def assert_error(res, fragment):
    assert res.status == "error", f"expected error, got {res}"
    assert fragment in res.error_message, res.error_message


async def run(src):
    return await ScriptRunner().handle_script(src)


@pytest.mark.asyncio
async def test_math_library():
    src = """
import math
(math.sqrt(16), math.floor(2.7), math.ceil(2.1), math.factorial(5), math.gcd(12, 18), math.log2(8))
"""
    assert_ok(await run(src), (4.0, 2, 3, 120, 6, 3.0))
    res = await run("import math\nmath.pi")
    assert res.value == math.pi


@pytest.mark.asyncio
async def test_math_errors():
    assert_error(await run("import math\nmath.sqrt('4')"), "TypeError: must be real number, not str")
    assert_error(await run("import math\nmath.sqrt(-1)"), "ValueError:")
    assert_error(await run("import math\nmath.factorial(-1)"), "factorial() not defined for negative values")
    assert_error(await run("import math\nmath.factorial(100000)"), "factorial() argument should not exceed 5000")


@pytest.mark.asyncio
async def test_json_library():
    src = """
import json
text = json.dumps({'name': 'quill', 'tags': ['a', 'b'], 'ok': True, 'none': None})
data = json.loads(text)
(text, data['tags'][1], json.dumps({'b': 1, 'a': 2}, sort_keys=True))
"""
    assert_ok(await run(src), (
        '{"name": "quill", "tags": ["a", "b"], "ok": true, "none": null}',
        "b",
        '{"a": 2, "b": 1}',
    ))


@pytest.mark.asyncio
async def test_json_errors_are_catchable():
    src = """
import json
try:
    json.loads('{oops')
except ValueError as e:
    result = str(e).startswith('invalid JSON')
result
"""
    assert_ok(await run(src), True)
    assert_error(await run("import json\njson.dumps(lambda: 1)"), "TypeError: Object of type")


@pytest.mark.asyncio
async def test_yaml_library():
    src = """
import yaml
config = yaml.load('name: quill\\nlimits:\\n  depth: 200\\n')
(config['limits']['depth'], yaml.dump({'a': [1, 2]}))
"""
    assert_ok(await run(src), (200, "a:\n- 1\n- 2\n"))


@pytest.mark.asyncio
async def test_template_library():
    src = """
import template
template.render('Hello {{name}}, you have {{count}} new <b>items</b>', {'name': 'Ada'}, count=3)
"""
    assert_ok(await run(src), "Hello Ada, you have 3 new <b>items</b>")
    src = """
import template
template.render('{{#users}}- {{name}}\\n{{/users}}', users=[{'name': 'a'}, {'name': 'b'}])
"""
    assert_ok(await run(src), "- a\n- b\n")


@pytest.mark.asyncio
async def test_random_is_reproducible_per_interpreter():
    src = """
import random
random.seed(42)
values = [random.randint(1, 100) for _ in range(5)]
items = [1, 2, 3, 4]
random.shuffle(items)
(values, sorted(items), random.choice(['only']), len(random.sample(range(10), 3)))
"""
    first = await Interpreter().eval(src)
    second = await Interpreter().eval(src)
    assert first == second
    assert first[1:] == ([1, 2, 3, 4], "only", 3)
    assert all(1 <= v <= 100 for v in first[0])
    assert_error(await run("import random\nrandom.choice([])"), "Cannot choose from an empty sequence")


@pytest.mark.asyncio
async def test_sys_library():
    assert_ok(await run("import sys\nsys.version"), "0.3.0")
    res = await run("import sys\nsys.exit(4)")
    assert res.status == "exit"
    assert res.exit_code == 4
    assert not [e for e in res.side_effects if e["topics"] == ["stderr"]]


@pytest.mark.asyncio
async def test_time_library():
    src = """
import time
start = time.monotonic()
time.sleep(0.01)
time.monotonic() >= start and time.time() > 0
"""
    assert_ok(await run(src), True)
    assert_error(await run("import time\ntime.sleep(-1)"), "sleep length must be non-negative")


@pytest.mark.asyncio
async def test_standard_library_members_are_discoverable():
    src = """
import math
(hasattr(math, 'sqrt'), hasattr(math, 'nope'), math.sqrt.__doc__ is not None)
"""
    assert_ok(await run(src), (True, False, True))
