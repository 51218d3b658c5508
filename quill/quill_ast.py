"""
AST node definitions.

Nodes are frozen after parsing so a Program can be evaluated any number
of times, including by several interpreters importing the same script
library.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Node:
    line: int = field(default=0, kw_only=True, compare=False)
    column: int = field(default=0, kw_only=True, compare=False)


# ===================================================================
# Expressions
# ===================================================================

@dataclass(frozen=True)
class Literal(Node):
    value: Any


@dataclass(frozen=True)
class FormattedValue(Node):
    expr: Node
    conversion: Optional[str] = None
    format_spec: Optional["FString"] = None


@dataclass(frozen=True)
class FString(Node):
    parts: Tuple[Union[str, FormattedValue], ...]


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class BinaryOp(Node):
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class BoolOp(Node):
    op: str
    values: Tuple[Node, ...]


@dataclass(frozen=True)
class UnaryOp(Node):
    op: str
    operand: Node


@dataclass(frozen=True)
class Compare(Node):
    left: Node
    ops: Tuple[str, ...]
    comparators: Tuple[Node, ...]


@dataclass(frozen=True)
class Conditional(Node):
    test: Node
    body: Node
    orelse: Node


@dataclass(frozen=True)
class Starred(Node):
    value: Node


@dataclass(frozen=True)
class Keyword(Node):
    name: Optional[str]  # None for a **mapping argument
    value: Node


@dataclass(frozen=True)
class Call(Node):
    func: Node
    args: Tuple[Node, ...] = ()
    keywords: Tuple[Keyword, ...] = ()


@dataclass(frozen=True)
class Attribute(Node):
    value: Node
    attr: str


@dataclass(frozen=True)
class Slice(Node):
    start: Optional[Node] = None
    stop: Optional[Node] = None
    step: Optional[Node] = None


@dataclass(frozen=True)
class Index(Node):
    value: Node
    index: Node


@dataclass(frozen=True)
class ListLiteral(Node):
    elts: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class TupleLiteral(Node):
    elts: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class SetLiteral(Node):
    elts: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class DictLiteral(Node):
    keys: Tuple[Optional[Node], ...] = ()  # None marks a **mapping entry
    values: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class Param(Node):
    name: str
    default: Optional[Node] = None
    kind: str = "positional"  # positional | varargs | kwonly | varkw


@dataclass(frozen=True)
class Lambda(Node):
    params: Tuple[Param, ...]
    body: Node


@dataclass(frozen=True)
class ComprehensionFor(Node):
    target: Node
    iter: Node
    conditions: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class Comprehension(Node):
    kind: str  # list | set | dict | gen
    element: Node
    generators: Tuple[ComprehensionFor, ...]
    key: Optional[Node] = None


# ===================================================================
# Statements
# ===================================================================

@dataclass(frozen=True)
class ExpressionStatement(Node):
    expr: Node


@dataclass(frozen=True)
class Assign(Node):
    targets: Tuple[Node, ...]
    value: Node


@dataclass(frozen=True)
class AugAssign(Node):
    target: Node
    op: str
    value: Node


@dataclass(frozen=True)
class If(Node):
    test: Node
    body: Tuple[Node, ...]
    orelse: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class While(Node):
    test: Node
    body: Tuple[Node, ...]
    orelse: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class For(Node):
    target: Node
    iter: Node
    body: Tuple[Node, ...]
    orelse: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class FunctionDef(Node):
    name: str
    params: Tuple[Param, ...]
    body: Tuple[Node, ...]
    doc: Optional[str] = None


@dataclass(frozen=True)
class ClassDef(Node):
    name: str
    bases: Tuple[Node, ...]
    body: Tuple[Node, ...]
    doc: Optional[str] = None


@dataclass(frozen=True)
class ExceptHandler(Node):
    type: Optional[Node]
    name: Optional[str]
    body: Tuple[Node, ...]


@dataclass(frozen=True)
class Try(Node):
    body: Tuple[Node, ...]
    handlers: Tuple[ExceptHandler, ...] = ()
    orelse: Tuple[Node, ...] = ()
    finalbody: Tuple[Node, ...] = ()


@dataclass(frozen=True)
class Return(Node):
    value: Optional[Node] = None


@dataclass(frozen=True)
class Break(Node):
    pass


@dataclass(frozen=True)
class Continue(Node):
    pass


@dataclass(frozen=True)
class Pass(Node):
    pass


@dataclass(frozen=True)
class Import(Node):
    names: Tuple[Tuple[str, Optional[str]], ...]  # (dotted name, alias)


@dataclass(frozen=True)
class FromImport(Node):
    module: str
    names: Tuple[Tuple[str, Optional[str]], ...]


@dataclass(frozen=True)
class Raise(Node):
    exc: Optional[Node] = None


@dataclass(frozen=True)
class Global(Node):
    names: Tuple[str, ...]


@dataclass(frozen=True)
class Nonlocal(Node):
    names: Tuple[str, ...]


@dataclass(frozen=True)
class Delete(Node):
    targets: Tuple[Node, ...]


@dataclass(frozen=True)
class Assert(Node):
    test: Node
    msg: Optional[Node] = None


@dataclass(frozen=True)
class Program(Node):
    body: Tuple[Node, ...]


def docstring_of(body: List[Node]) -> Optional[str]:
    if body and isinstance(body[0], ExpressionStatement) and isinstance(body[0].expr, Literal) \
            and isinstance(body[0].expr.value, str):
        return body[0].expr.value
    return None
