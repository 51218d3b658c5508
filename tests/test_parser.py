import pytest

from quill.quill_ast import (
    Assign, AugAssign, BinaryOp, Call, ClassDef, Compare, Comprehension, Conditional,
    ExpressionStatement, FString, FormattedValue, FunctionDef, Identifier, If, Index,
    Keyword, Literal, Slice, Starred, TupleLiteral, Try, UnaryOp,
)
from quill.quill_errors import ParseError
from quill.quill_parser import parse_source


def expr(source):
    program = parse_source(source)
    assert len(program.body) == 1
    stmt = program.body[0]
    assert isinstance(stmt, ExpressionStatement)
    return stmt.expr


def parse_error(source):
    with pytest.raises(ParseError) as ei:
        parse_source(source)
    return ei.value


def test_precedence_multiplication_binds_tighter():
    assert expr("1 + 2 * 3") == BinaryOp("+", Literal(1), BinaryOp("*", Literal(2), Literal(3)))


def test_binary_operators_are_left_associative():
    assert expr("10 - 4 - 3") == BinaryOp("-", BinaryOp("-", Literal(10), Literal(4)), Literal(3))


def test_power_is_right_associative_and_binds_tighter_than_unary_minus():
    assert expr("2 ** 3 ** 2") == BinaryOp("**", Literal(2), BinaryOp("**", Literal(3), Literal(2)))
    assert expr("-2 ** 2") == UnaryOp("-", BinaryOp("**", Literal(2), Literal(2)))


def test_negative_literal_is_folded():
    assert expr("-5") == Literal(-5)


def test_binary_op_location_is_left_operand():
    node = expr("(a) + b")
    assert (node.line, node.column) == (1, 2)


def test_chained_comparison():
    node = expr("a < b <= c")
    assert node == Compare(Identifier("a"), ("<", "<="), (Identifier("b"), Identifier("c")))
    assert expr("a not in b").ops == ("not in",)
    assert expr("a is not None").ops == ("is not",)


def test_conditional_expression():
    assert expr("x if c else y") == Conditional(Identifier("c"), Identifier("x"), Identifier("y"))


def test_call_with_keywords_and_star_args():
    node = expr("f(1, *rest, key=2, **opts)")
    assert isinstance(node, Call)
    assert node.args == (Literal(1), Starred(Identifier("rest")))
    assert node.keywords == (Keyword("key", Literal(2)), Keyword(None, Identifier("opts")))


def test_slices():
    assert expr("a[1:2]") == Index(Identifier("a"), Slice(Literal(1), Literal(2), None))
    assert expr("a[::-1]") == Index(Identifier("a"), Slice(None, None, Literal(-1)))


def test_tuple_assignment_and_chained_assignment():
    stmt = parse_source("a, b = 1, 2").body[0]
    assert isinstance(stmt, Assign)
    assert stmt.targets == (TupleLiteral((Identifier("a"), Identifier("b"))),)
    stmt = parse_source("a = b = 0").body[0]
    assert stmt.targets == (Identifier("a"), Identifier("b"))


def test_augmented_assignment():
    stmt = parse_source("total += 1").body[0]
    assert stmt == AugAssign(Identifier("total"), "+", Literal(1))


def test_semicolons_separate_statements():
    program = parse_source("a = 1; b = 2; c = 3")
    assert len(program.body) == 3


def test_if_elif_else_nests_elif_in_orelse():
    src = "if a:\n    x = 1\nelif b:\n    x = 2\nelse:\n    x = 3\n"
    node = parse_source(src).body[0]
    assert isinstance(node, If)
    assert isinstance(node.orelse[0], If)
    assert len(node.orelse[0].orelse) == 1


def test_function_definition_params_and_docstring():
    src = 'def f(a, b=2, *args, c, d=4, **kw):\n    "Adds."\n    return a\n'
    node = parse_source(src).body[0]
    assert isinstance(node, FunctionDef)
    assert [(p.name, p.kind) for p in node.params] == [
        ("a", "positional"), ("b", "positional"), ("args", "varargs"),
        ("c", "kwonly"), ("d", "kwonly"), ("kw", "varkw"),
    ]
    assert node.doc == "Adds."


def test_class_definition():
    node = parse_source("class B(A):\n    x = 1\n").body[0]
    assert isinstance(node, ClassDef)
    assert node.bases == (Identifier("A"),)


def test_try_with_handlers_else_and_finally():
    src = (
        "try:\n    x = 1\n"
        "except ValueError as e:\n    pass\n"
        "except:\n    pass\n"
        "else:\n    y = 2\n"
        "finally:\n    z = 3\n"
    )
    node = parse_source(src).body[0]
    assert isinstance(node, Try)
    assert node.handlers[0].name == "e"
    assert node.handlers[1].type is None
    assert len(node.orelse) == 1 and len(node.finalbody) == 1


def test_comprehensions():
    node = expr("[x * 2 for x in xs if x]")
    assert isinstance(node, Comprehension) and node.kind == "list"
    assert expr("{k: v for k, v in items}").kind == "dict"
    assert expr("{x for x in xs}").kind == "set"
    assert expr("sum(x for x in xs)").args[0].kind == "gen"


def test_fstring_parts():
    node = expr("f'a{x!r:>{width}}b'")
    assert isinstance(node, FString)
    assert node.parts[0] == "a"
    field = node.parts[1]
    assert isinstance(field, FormattedValue)
    assert field.conversion == "r"
    assert field.format_spec.parts[0] == ">"
    assert node.parts[2] == "b"


def test_adjacent_strings_concatenate():
    assert expr("'a' 'b'") == Literal("ab")


@pytest.mark.parametrize("source, message", [
    ("return 1", "'return' outside function"),
    ("break", "'break' outside loop"),
    ("def f(a=1, b):\n    pass", "non-default argument follows default argument"),
    ("def f(a, a):\n    pass", "duplicate argument 'a' in function definition"),
    ("f(a=1, 2)", "positional argument follows keyword argument"),
    ("1 = x", "cannot assign to expression"),
    ("a, *b, *c = xs", "multiple starred expressions in assignment"),
    ("@decorator\ndef f():\n    pass", "decorators are not supported"),
    ("x: int = 1", "annotations are not supported"),
    ("def f():\n    class A:\n        pass", "nested class definitions are not supported"),
])
def test_parse_time_rules(source, message):
    assert parse_error(source).message == message


def test_break_inside_function_inside_loop_is_rejected():
    src = "while True:\n    def f():\n        break\n"
    assert parse_error(src).message == "'break' outside loop"


def test_unexpected_indent():
    err = parse_error("x = 1\n    y = 2\n")
    assert err.message.startswith("unexpected indent")
    assert err.line == 2


def test_missing_block_reports_expected_token():
    err = parse_error("if x\n    y = 1\n")
    assert err.message == "expected ':', found newline"
    assert err.line == 1


def test_try_without_handlers():
    err = parse_error("try:\n    pass\nx = 1\n")
    assert "expected 'except' or 'finally' block" in err.message


def test_parse_error_str_includes_location():
    err = parse_error("x = (1 +\n)")
    assert str(err).startswith("ParseError: invalid syntax")
    assert "line 2" in str(err)


def test_deeply_nested_brackets_are_rejected():
    assert expr("(" * 50 + "1" + ")" * 50) == Literal(1)
    err = parse_error("x = " + "(" * 3000 + "1" + ")" * 3000)
    assert err.message == "too deeply nested"
    assert err.line == 1
    assert parse_error("x = " + "[" * 500 + "]" * 500).message == "too deeply nested"
    assert parse_error("f(" * 500 + ")" * 500).message == "too deeply nested"


def test_long_unary_chain_is_rejected():
    assert parse_error("x = " + "-" * 20000 + "1").message == "too deeply nested"
    assert parse_error("x = " + "not " * 20000 + "y").message == "too deeply nested"
