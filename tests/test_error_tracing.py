import pytest

from quill import Interpreter, ScriptRunner
from quill.quill_errors import ParseError


@pytest.mark.asyncio
async def test_runtime_type_error_traces_and_stderr():
    runner = ScriptRunner()
    res = await runner.handle_script("x = 1 + 'a'")
    assert res.status == 'error'
    msg = res.error_message or ''
    # Basic runtime error
    assert msg.startswith("TypeError: unsupported operand type(s) for +")

    # Location and context
    assert "(line 1, col 5)" in msg
    assert "> 1 | x = 1 + 'a'" in msg
    assert "    ^" in msg
    assert res.error_token == {'line': 1, 'col': 5}

    # Consolidated stderr side-effect contains the formatted error
    stderr_effects = [e for e in res.side_effects if e.get('topics') == ['stderr']]
    assert stderr_effects, f"stderr side effect missing: {res.side_effects}"
    assert msg in stderr_effects[-1]['message']


@pytest.mark.asyncio
async def test_stacktrace_shows_function_chain_and_context():
    runner = ScriptRunner()
    script = """
def boom(x):
    return x / 0

def call_boom(y):
    return boom(y)

def outer(z):
    return call_boom(z)

outer(5)
"""
    res = await runner.handle_script(script)
    assert res.status == 'error', res.error_message
    msg = res.error_message or ''
    assert "ZeroDivisionError: division by zero" in msg
    assert "line 3" in msg
    assert "return x / 0" in msg
    assert "Quill stacktrace: (outer 5) (call_boom 5) (boom 5)" in msg


@pytest.mark.asyncio
async def test_stacktrace_summarises_container_arguments():
    runner = ScriptRunner()
    script = """
def first(items):
    return items[10]
first([1, 2, 3])
"""
    res = await runner.handle_script(script)
    assert res.status == 'error'
    assert "Quill stacktrace: (first list[3])" in res.error_message


@pytest.mark.asyncio
async def test_parse_error_is_reported_with_context():
    runner = ScriptRunner()
    res = await runner.handle_script("x = 1\ny = (2 +)\nz = 3\n")
    assert res.status == 'error'
    msg = res.error_message
    assert msg.startswith("ParseError:")
    assert res.error_token == {'line': 2, 'col': 9}
    assert "^" in msg


@pytest.mark.asyncio
async def test_deep_nesting_is_reported_as_parse_error():
    runner = ScriptRunner()
    res = await runner.handle_script("x = " + "(" * 3000 + "1" + ")" * 3000)
    assert res.status == 'error'
    assert res.error_message.startswith("ParseError: too deeply nested")
    assert res.error_token['line'] == 1
    with pytest.raises(ParseError, match="too deeply nested"):
        await Interpreter().eval("y = " + "[" * 3000 + "]" * 3000)


@pytest.mark.asyncio
async def test_lex_error_is_reported_with_location():
    runner = ScriptRunner()
    res = await runner.handle_script("name = 'unterminated\n")
    assert res.status == 'error'
    assert res.error_message.startswith("LexError: Unterminated string literal (line 1, col 8)")
    assert res.error_token == {'line': 1, 'col': 8}


@pytest.mark.asyncio
async def test_format_error_prefixes_location():
    runner = ScriptRunner()
    res = await runner.handle_script("undefined_name")
    formatted = res.format_error()
    assert formatted.startswith("Error on line 1, col 1: NameError: name 'undefined_name' is not defined")


@pytest.mark.asyncio
async def test_output_before_error_is_kept():
    runner = ScriptRunner()
    res = await runner.handle_script("print('before')\nprint('partial', end='')\nraise ValueError('x')")
    assert res.status == 'error'
    stdout = [e['message'] for e in res.side_effects if e['topics'] == ['stdout']]
    assert stdout == ['before', 'partial']


@pytest.mark.asyncio
async def test_runner_state_persists_between_scripts():
    runner = ScriptRunner()
    await runner.handle_script("counter = 10")
    res = await runner.handle_script("counter += 1\ncounter")
    assert res.status == 'success'
    assert res.value == 11


@pytest.mark.asyncio
async def test_caught_exception_does_not_leak_trace_into_next_error():
    runner = ScriptRunner()
    script = """
def f():
    try:
        1 / 0
    except ZeroDivisionError:
        pass
f()
missing
"""
    res = await runner.handle_script(script)
    assert res.status == 'error'
    assert "NameError" in res.error_message
    assert "Quill stacktrace" not in res.error_message
