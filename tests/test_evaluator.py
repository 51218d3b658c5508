import pytest

from quill import ScriptRunner


def assert_ok(res, expected=None):
    assert res.status == "success", f"expected success, got {res.error_message}"
    if expected is not None:
        assert res.value == expected, f"expected {expected!r}, got {res.value!r}"


def assert_error(res, fragment):
    assert res.status == "error", f"expected error, got {res}"
    assert fragment in res.error_message, res.error_message


async def run(src):
    return await ScriptRunner().handle_script(src)


def stdout_lines(res):
    return [e["message"] for e in res.side_effects if e["topics"] == ["stdout"]]


# --- arithmetic ---

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("1 + 2 * 3", 7),
    ("(1 + 2) * 3", 9),
    ("7 / 2", 3.5),
    ("6 / 3", 2.0),
    ("7 // 2", 3),
    ("-7 // 2", -4),
    ("-7 % 2", 1),
    ("7 % -2", -1),
    ("2 ** 10", 1024),
    ("-2 ** 2", -4),
    ("2 ** -1", 0.5),
    ("1 + 2.5", 3.5),
    ("True + 1", 2),
    ("5 & 3 | 8 ^ 1", 9),
    ("1 << 4 >> 2", 4),
    ("~5", -6),
])
async def test_arithmetic(src, expected):
    res = await run(src)
    assert_ok(res, expected)
    assert type(res.value) is type(expected)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, message", [
    ("1 / 0", "ZeroDivisionError: division by zero"),
    ("1 // 0", "ZeroDivisionError: integer division or modulo by zero"),
    ("5 % 0", "ZeroDivisionError: integer division or modulo by zero"),
    ("'a' + 1", "TypeError: unsupported operand type(s) for +: 'str' and 'int'"),
    ("-'a'", "TypeError: bad operand type for unary -: 'str'"),
    ("1 < 'a'", "TypeError: '<' not supported between instances of 'int' and 'str'"),
])
async def test_arithmetic_errors(src, message):
    assert_error(await run(src), message)


@pytest.mark.asyncio
async def test_huge_power_is_refused():
    assert_error(await run("10 ** 10 ** 10"), "ValueError: exponent too large")


@pytest.mark.asyncio
async def test_comparison_chains_and_boolean_operators():
    assert_ok(await run("1 < 2 < 3"), True)
    assert_ok(await run("1 < 3 < 2"), False)
    assert_ok(await run("0 or 'x'"), "x")
    assert_ok(await run("'' and crash()"), "")
    assert_ok(await run("not []"), True)
    assert_ok(await run("None is None"), True)


# --- strings ---

@pytest.mark.asyncio
async def test_string_operations():
    assert_ok(await run("'ab' * 3"), "ababab")
    assert_ok(await run("'hello'[1:4]"), "ell")
    assert_ok(await run("'hello'[-1]"), "o")
    assert_ok(await run("'a,b,c'.split(',')"), ["a", "b", "c"])
    assert_ok(await run("'-'.join(['x', 'y'])"), "x-y")
    assert_ok(await run("'Quill'.upper()"), "QUILL")
    assert_ok(await run("'ell' in 'hello'"), True)
    assert_ok(await run("'%s=%d' % ('x', 3)"), "x=3")
    assert_ok(await run("'{}-{}'.format(1, 2)"), "1-2")


@pytest.mark.asyncio
async def test_fstrings():
    src = """
name = 'quill'
width = 8
f'{name!r} {3.14159:.2f} [{name:>{width}}] {{literal}} {1 + 1}'
"""
    assert_ok(await run(src), "'quill' 3.14 [   quill] {literal} 2")


@pytest.mark.asyncio
async def test_string_index_out_of_range():
    assert_error(await run("'abc'[5]"), "IndexError: str index out of range")


# --- containers and aliasing ---

@pytest.mark.asyncio
async def test_assignment_aliases_lists():
    src = """
a = [1, 2]
b = a
b.append(3)
a
"""
    assert_ok(await run(src), [1, 2, 3])


@pytest.mark.asyncio
async def test_full_slice_copies():
    src = """
a = [1, 2]
b = a[:]
b.append(3)
(a, b, a == b[:2], a is b)
"""
    assert_ok(await run(src), ([1, 2], [1, 2, 3], True, False))


@pytest.mark.asyncio
async def test_dict_aliasing_and_mutation_through_function():
    src = """
def add_key(d):
    d['k'] = 1

config = {}
add_key(config)
config
"""
    assert_ok(await run(src), {"k": 1})


@pytest.mark.asyncio
async def test_augmented_add_extends_list_in_place():
    src = """
a = [1]
b = a
b += [2]
a
"""
    assert_ok(await run(src), [1, 2])


@pytest.mark.asyncio
async def test_dict_keys_of_different_types_stay_distinct():
    src = """
d = {}
d[1] = 'int'
d['1'] = 'str'
d[None] = 'none'
(len(d), d[1], d['1'], d[None])
"""
    assert_ok(await run(src), (3, "int", "str", "none"))


@pytest.mark.asyncio
async def test_dict_operations():
    src = """
d = {'a': 1, 'b': 2}
d.update({'c': 3})
del d['a']
(list(d.keys()), d.get('zz', 0), 'b' in d, sorted(d.items()))
"""
    assert_ok(await run(src), (["b", "c"], 0, True, [("b", 2), ("c", 3)]))


@pytest.mark.asyncio
async def test_missing_dict_key():
    assert_error(await run("{'a': 1}['b']"), "KeyError: 'b'")


@pytest.mark.asyncio
async def test_list_index_assignment_and_errors():
    assert_ok(await run("a = [1, 2, 3]\na[-1] = 9\na"), [1, 2, 9])
    assert_error(await run("a = [1]\na[3] = 0"), "IndexError: list assignment index out of range")
    assert_error(await run("[1, 2][1.0]"), "TypeError: list indices must be integers, not float")


@pytest.mark.asyncio
async def test_unpacking():
    assert_ok(await run("a, *rest, z = [1, 2, 3, 4]\n(a, rest, z)"), (1, [2, 3], 4))
    assert_ok(await run("a, b = 1, 2\na, b = b, a\n(a, b)"), (2, 1))
    assert_error(await run("a, b = [1, 2, 3]"), "ValueError: too many values to unpack (expected 2)")
    assert_error(await run("a, b, c = [1]"), "ValueError: not enough values to unpack (expected 3, got 1)")


@pytest.mark.asyncio
async def test_sets():
    src = """
s = {1, 2, 3}
s.add(2)
t = {3, 4}
(len(s), sorted(s | t), sorted(s & t), sorted(s - t))
"""
    assert_ok(await run(src), (3, [1, 2, 3, 4], [3], [1, 2]))


@pytest.mark.asyncio
async def test_slice_step_zero():
    assert_error(await run("[1, 2, 3][::0]"), "ValueError: slice step cannot be zero")


# --- control flow ---

@pytest.mark.asyncio
async def test_while_with_break_continue_and_else():
    src = """
total = 0
i = 0
while i < 10:
    i += 1
    if i % 2 == 0:
        continue
    if i > 7:
        break
    total += i
else:
    total = -1
total
"""
    assert_ok(await run(src), 1 + 3 + 5 + 7)


@pytest.mark.asyncio
async def test_for_else_runs_when_not_broken():
    src = """
found = None
for x in range(3):
    pass
else:
    found = 'done'
found
"""
    assert_ok(await run(src), "done")


@pytest.mark.asyncio
async def test_for_over_dict_iterates_keys():
    src = """
out = []
for k in {'x': 1, 'y': 2}:
    out.append(k)
out
"""
    assert_ok(await run(src), ["x", "y"])


@pytest.mark.asyncio
async def test_print_goes_to_stdout_side_effects():
    res = await run("print('a', 1, [2])\nprint('b', end='')\nprint('c', sep='-')")
    assert_ok(res)
    assert stdout_lines(res) == ["a 1 [2]", "bc"]


# --- functions and scope ---

@pytest.mark.asyncio
async def test_defaults_keywords_varargs_and_kwargs():
    src = """
def f(a, b=2, *args, c=3, **kw):
    return (a, b, args, c, kw)
(f(1), f(1, 5, 6, 7, c=0, z=9))
"""
    assert_ok(await run(src), ((1, 2, (), 3, {}), (1, 5, (6, 7), 0, {"z": 9})))


@pytest.mark.asyncio
async def test_star_and_double_star_call_expansion():
    src = """
def f(a, b, c):
    return a * 100 + b * 10 + c
f(*[1, 2], **{'c': 3})
"""
    assert_ok(await run(src), 123)


@pytest.mark.asyncio
@pytest.mark.parametrize("src, message", [
    ("def f(a):\n    pass\nf()", "f() missing 1 required argument: 'a'"),
    ("def f(a):\n    pass\nf(1, 2)", "f() takes 1 positional argument but 2 were given"),
    ("def f(a):\n    pass\nf(b=1)", "f() got an unexpected keyword argument 'b'"),
    ("def f(a):\n    pass\nf(1, a=2)", "f() got multiple values for argument 'a'"),
])
async def test_arity_errors(src, message):
    assert_error(await run(src), message)


@pytest.mark.asyncio
async def test_closures_capture_variables():
    src = """
def make_counter():
    count = 0
    def inc():
        nonlocal count
        count += 1
        return count
    return inc

c = make_counter()
c()
c()
c()
"""
    assert_ok(await run(src), 3)


@pytest.mark.asyncio
async def test_global_declaration():
    src = """
total = 0
def bump(n):
    global total
    total += n
bump(2)
bump(3)
total
"""
    assert_ok(await run(src), 5)


@pytest.mark.asyncio
async def test_assignment_in_function_is_local():
    src = """
x = 1
def f():
    x = 2
    return x
(f(), x)
"""
    assert_ok(await run(src), (2, 1))


@pytest.mark.asyncio
async def test_lambda_and_higher_order_builtins():
    src = """
nums = [3, 1, 2]
(sorted(nums, key=lambda n: -n), list(map(lambda n: n * 2, nums)), list(filter(lambda n: n > 1, nums)))
"""
    assert_ok(await run(src), ([3, 2, 1], [6, 2, 4], [3, 2]))


@pytest.mark.asyncio
async def test_recursion_and_depth_limit():
    src = """
def fact(n):
    return 1 if n <= 1 else n * fact(n - 1)
fact(10)
"""
    assert_ok(await run(src), 3628800)
    res = await run("def f():\n    return f()\nf()")
    assert_error(res, "RuntimeError: maximum recursion depth exceeded")


@pytest.mark.asyncio
async def test_undefined_name():
    assert_error(await run("y = missing + 1"), "NameError: name 'missing' is not defined")


@pytest.mark.asyncio
async def test_calling_a_non_callable():
    assert_error(await run("x = 3\nx()"), "TypeError: 'int' object is not callable")


# --- comprehensions ---

@pytest.mark.asyncio
async def test_comprehensions():
    assert_ok(await run("[x * x for x in range(5) if x % 2]"), [1, 9])
    assert_ok(await run("{k: v for k, v in [('a', 1), ('b', 2)]}"), {"a": 1, "b": 2})
    assert_ok(await run("[(i, j) for i in range(2) for j in range(i + 1)]"), [(0, 0), (1, 0), (1, 1)])
    assert_ok(await run("sum(x for x in [1, 2, 3])"), 6)


@pytest.mark.asyncio
async def test_comprehension_variable_does_not_leak():
    res = await run("[x for x in range(3)]\nx")
    assert_error(res, "NameError: name 'x' is not defined")


@pytest.mark.asyncio
async def test_comprehension_reads_enclosing_scope():
    src = """
def scaled(items, factor):
    return [i * factor for i in items]
scaled([1, 2], 10)
"""
    assert_ok(await run(src), [10, 20])


# --- builtins ---

@pytest.mark.asyncio
@pytest.mark.parametrize("src, expected", [
    ("len([1, 2, 3])", 3),
    ("int('42')", 42),
    ("int(3.9)", 3),
    ("int(-3.9)", -3),
    ("float('1.5')", 1.5),
    ("str(12)", "12"),
    ("repr('a')", "'a'"),
    ("bool([])", False),
    ("list(range(2, 8, 3))", [2, 5]),
    ("tuple([1, 2])", (1, 2)),
    ("abs(-4)", 4),
    ("min(3, 1, 2)", 1),
    ("max([3, 1, 2])", 3),
    ("max(['aa', 'b'], key=len)", "aa"),
    ("sum([1, 2, 3], 10)", 16),
    ("round(2.567, 2)", 2.57),
    ("divmod(7, 2)", (3, 1)),
    ("list(zip([1, 2], 'ab'))", [(1, "a"), (2, "b")]),
    ("list(enumerate('ab', 1))", [(1, "a"), (2, "b")]),
    ("list(reversed([1, 2, 3]))", [3, 2, 1]),
    ("any([0, 1])", True),
    ("all([1, 0])", False),
    ("chr(65) + str(ord('a'))", "A97"),
    ("isinstance(1, int)", True),
    ("isinstance('x', (int, str))", True),
    ("callable(len)", True),
])
async def test_builtins(src, expected):
    assert_ok(await run(src), expected)


@pytest.mark.asyncio
async def test_int_conversion_error():
    assert_error(await run("int('abc')"), "ValueError")


@pytest.mark.asyncio
async def test_input_is_disabled():
    assert_error(await run("input('name? ')"), "PermissionError: input() is disabled in embedded scripts")
