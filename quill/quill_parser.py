"""
Recursive-descent parser for statements, precedence climbing for
expressions.
"""
from typing import List, Optional, Tuple

from quill.quill_errors import ParseError, LexError
from quill.quill_lexer import Token, tokenize
from quill.quill_ast import (
    Node, Program, ExpressionStatement, Assign, AugAssign, If, While, For,
    FunctionDef, ClassDef, Try, ExceptHandler, Return, Break, Continue, Pass,
    Import, FromImport, Raise, Global, Nonlocal, Delete, Assert,
    Literal, FString, FormattedValue, Identifier, BinaryOp, BoolOp, UnaryOp,
    Compare, Conditional, Call, Keyword, Starred, Attribute, Index, Slice,
    ListLiteral, TupleLiteral, SetLiteral, DictLiteral, Lambda, Param,
    Comprehension, ComprehensionFor, docstring_of,
)

# Binary operators from loosest to tightest; all left associative.
BINARY_PRECEDENCE = {
    "|": 1,
    "^": 2,
    "&": 3,
    "<<": 4, ">>": 4,
    "+": 5, "-": 5,
    "*": 6, "/": 6, "//": 6, "%": 6,
}

COMPARISON_OPS = {"<", ">", "<=", ">=", "==", "!=", "in", "not", "is"}

AUGMENTED = {
    "+=": "+", "-=": "-", "*=": "*", "/=": "/", "//=": "//", "%=": "%",
    "**=": "**", "&=": "&", "|=": "|", "^=": "^", "<<=": "<<", ">>=": ">>",
}

COMPOUND_KEYWORDS = {"if", "while", "for", "def", "class", "try", "@"}

# Brackets, calls and blocks may nest this deep.
MAX_NESTING = 200


class Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.function_depth = 0
        self.loop_depth = 0
        self.class_depth = 0
        self.nesting = 0

    # --- token helpers ---

    def _peek(self, offset: int = 0) -> Token:
        pos = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[pos]

    def _check(self, *types: str) -> bool:
        return self._peek().type in types

    def _advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.type != "EOF":
            self.pos += 1
        return tok

    def _match(self, *types: str) -> Optional[Token]:
        if self._check(*types):
            return self._advance()
        return None

    def _expect(self, type_: str, message: Optional[str] = None) -> Token:
        tok = self._peek()
        if tok.type == type_:
            return self._advance()
        raise self._error(message or f"expected {self._describe_type(type_)}", tok, expected=type_)

    def _error(self, message: str, tok: Optional[Token] = None, expected: Optional[str] = None) -> ParseError:
        tok = tok or self._peek()
        if tok.type == "EOF":
            message = f"{message}, found end of input"
        elif tok.type in ("NEWLINE", "INDENT", "DEDENT"):
            message = f"{message}, found {tok.type.lower()}"
        else:
            message = f"{message}, found '{tok.value}'"
        return ParseError(message, tok.line, tok.column, expected)

    @staticmethod
    def _describe_type(type_: str) -> str:
        if type_ in ("NAME", "NEWLINE", "INDENT", "DEDENT", "STRING", "NUMBER"):
            return {"NAME": "a name", "NEWLINE": "end of line", "INDENT": "an indented block",
                    "DEDENT": "end of block", "STRING": "a string", "NUMBER": "a number"}[type_]
        return f"'{type_}'"

    @staticmethod
    def _loc(tok: Token) -> dict:
        return {"line": tok.line, "column": tok.column}

    def _enter(self):
        self.nesting += 1
        if self.nesting > MAX_NESTING:
            tok = self._peek()
            raise ParseError("too deeply nested", tok.line, tok.column)

    # --- program and blocks ---

    def parse(self) -> Program:
        try:
            return self._parse_program()
        except RecursionError:
            tok = self._peek()
            raise ParseError("too deeply nested", tok.line, tok.column) from None

    def _parse_program(self) -> Program:
        body: List[Node] = []
        while not self._check("EOF"):
            if self._match("NEWLINE", "SEMI"):
                continue
            if self._check("INDENT"):
                raise self._error("unexpected indent")
            body.extend(self._parse_statement())
        return Program(tuple(body), line=1, column=1)

    def _parse_block(self) -> Tuple[Node, ...]:
        self._expect(":")
        self._enter()
        try:
            return self._parse_block_body()
        finally:
            self.nesting -= 1

    def _parse_block_body(self) -> Tuple[Node, ...]:
        if self._match("NEWLINE"):
            self._expect("INDENT", "expected an indented block")
            body: List[Node] = []
            while not self._check("DEDENT", "EOF"):
                if self._match("NEWLINE", "SEMI"):
                    continue
                body.extend(self._parse_statement())
            self._match("DEDENT")
            return tuple(body)
        if self._check(*COMPOUND_KEYWORDS):
            raise self._error("compound statement must start on its own line")
        return tuple(self._parse_simple_line())

    # --- statements ---

    def _parse_statement(self) -> List[Node]:
        tok = self._peek()
        match tok.type:
            case "if":
                return [self._parse_if()]
            case "while":
                return [self._parse_while()]
            case "for":
                return [self._parse_for()]
            case "def":
                return [self._parse_def()]
            case "class":
                return [self._parse_class()]
            case "try":
                return [self._parse_try()]
            case "@":
                raise ParseError("decorators are not supported", tok.line, tok.column)
            case "elif" | "else" | "except" | "finally":
                raise self._error("invalid syntax")
            case _:
                return self._parse_simple_line()

    def _parse_simple_line(self) -> List[Node]:
        stmts = [self._parse_simple_statement()]
        while self._match("SEMI"):
            if self._check("NEWLINE", "EOF"):
                break
            stmts.append(self._parse_simple_statement())
        if not self._match("NEWLINE"):
            if not self._check("EOF", "DEDENT"):
                raise self._error("expected end of line")
        return stmts

    def _parse_simple_statement(self) -> Node:
        tok = self._peek()
        loc = self._loc(tok)
        match tok.type:
            case "pass":
                self._advance()
                return Pass(**loc)
            case "break" | "continue":
                self._advance()
                if self.loop_depth == 0:
                    raise ParseError(f"'{tok.type}' outside loop", tok.line, tok.column)
                return Break(**loc) if tok.type == "break" else Continue(**loc)
            case "return":
                self._advance()
                if self.function_depth == 0:
                    raise ParseError("'return' outside function", tok.line, tok.column)
                value = None
                if not self._at_statement_end():
                    value = self._parse_expression_list()
                return Return(value, **loc)
            case "raise":
                self._advance()
                exc = None if self._at_statement_end() else self._parse_expression()
                if self._check("from"):
                    raise self._error("'raise ... from' is not supported")
                return Raise(exc, **loc)
            case "global" | "nonlocal":
                self._advance()
                names = [self._expect("NAME").value]
                while self._match(","):
                    names.append(self._expect("NAME").value)
                return Global(tuple(names), **loc) if tok.type == "global" else Nonlocal(tuple(names), **loc)
            case "del":
                self._advance()
                targets = [self._parse_postfix_target()]
                while self._match(","):
                    targets.append(self._parse_postfix_target())
                return Delete(tuple(targets), **loc)
            case "assert":
                self._advance()
                test = self._parse_expression()
                msg = self._parse_expression() if self._match(",") else None
                return Assert(test, msg, **loc)
            case "import":
                return self._parse_import()
            case "from":
                return self._parse_from_import()
            case "class" | "def" | "if" | "while" | "for" | "try":
                raise self._error("compound statement must start on its own line")
        return self._parse_expression_statement()

    def _at_statement_end(self) -> bool:
        return self._check("NEWLINE", "SEMI", "EOF", "DEDENT")

    def _parse_expression_statement(self) -> Node:
        tok = self._peek()
        loc = self._loc(tok)
        expr = self._parse_expression_list(allow_star=True)

        aug = self._peek()
        if aug.type in AUGMENTED:
            self._advance()
            if not isinstance(expr, (Identifier, Attribute, Index)):
                raise ParseError("illegal expression for augmented assignment", tok.line, tok.column)
            value = self._parse_expression_list()
            return AugAssign(expr, AUGMENTED[aug.type], value, **loc)

        if self._check("="):
            targets = [expr]
            while self._match("="):
                targets.append(self._parse_expression_list(allow_star=True))
            value = targets.pop()
            for target in targets:
                self._validate_target(target)
            return Assign(tuple(targets), value, **loc)

        if self._check(":"):
            raise ParseError("annotations are not supported", self._peek().line, self._peek().column)
        if isinstance(expr, Starred):
            raise ParseError("can't use starred expression here", tok.line, tok.column)
        return ExpressionStatement(expr, **loc)

    def _validate_target(self, target: Node, nested: bool = False):
        match target:
            case Identifier() | Attribute() | Index():
                return
            case Starred(value=inner) if nested:
                self._validate_target(inner, True)
                return
            case TupleLiteral(elts=elts) | ListLiteral(elts=elts):
                if sum(1 for e in elts if isinstance(e, Starred)) > 1:
                    raise ParseError("multiple starred expressions in assignment", target.line, target.column)
                for elt in elts:
                    self._validate_target(elt, True)
                return
        raise ParseError("cannot assign to expression", target.line, target.column)

    def _parse_postfix_target(self) -> Node:
        target = self._parse_postfix()
        if not isinstance(target, (Identifier, Attribute, Index)):
            raise ParseError("cannot delete expression", target.line, target.column)
        return target

    def _parse_dotted_name(self) -> str:
        parts = [self._expect("NAME").value]
        while self._match("."):
            parts.append(self._expect("NAME").value)
        return ".".join(parts)

    def _parse_import(self) -> Node:
        tok = self._advance()
        names = []
        while True:
            dotted = self._parse_dotted_name()
            alias = self._expect("NAME").value if self._match("as") else None
            names.append((dotted, alias))
            if not self._match(","):
                break
        return Import(tuple(names), **self._loc(tok))

    def _parse_from_import(self) -> Node:
        tok = self._advance()
        module = self._parse_dotted_name()
        self._expect("import")
        if self._check("*"):
            raise self._error("wildcard imports are not supported")
        paren = self._match("(")
        names = []
        while True:
            name = self._expect("NAME").value
            alias = self._expect("NAME").value if self._match("as") else None
            names.append((name, alias))
            if not self._match(","):
                break
            if paren and self._check(")"):
                break
        if paren:
            self._expect(")")
        return FromImport(module, tuple(names), **self._loc(tok))

    def _parse_if(self) -> Node:
        tok = self._advance()
        test = self._parse_expression()
        body = self._parse_block()
        orelse: Tuple[Node, ...] = ()
        if self._check("elif"):
            orelse = (self._parse_if(),)
        elif self._match("else"):
            orelse = self._parse_block()
        return If(test, body, orelse, **self._loc(tok))

    def _parse_loop_body(self) -> Tuple[Node, ...]:
        self.loop_depth += 1
        try:
            return self._parse_block()
        finally:
            self.loop_depth -= 1

    def _parse_while(self) -> Node:
        tok = self._advance()
        test = self._parse_expression()
        body = self._parse_loop_body()
        orelse = self._parse_block() if self._match("else") else ()
        return While(test, body, orelse, **self._loc(tok))

    def _parse_for(self) -> Node:
        tok = self._advance()
        target = self._parse_target_list()
        self._expect("in")
        iterable = self._parse_expression_list()
        body = self._parse_loop_body()
        orelse = self._parse_block() if self._match("else") else ()
        return For(target, iterable, body, orelse, **self._loc(tok))

    def _parse_target_list(self) -> Node:
        tok = self._peek()
        targets = [self._parse_target_atom()]
        trailing = False
        while self._match(","):
            if self._check("in", "="):
                trailing = True
                break
            targets.append(self._parse_target_atom())
        if len(targets) == 1 and not trailing:
            target = targets[0]
        else:
            target = TupleLiteral(tuple(targets), **self._loc(tok))
        self._validate_target(target)
        return target

    def _parse_target_atom(self) -> Node:
        if self._check("*"):
            tok = self._advance()
            return Starred(self._parse_binary(0), **self._loc(tok))
        return self._parse_binary(0)

    def _parse_def(self) -> Node:
        tok = self._advance()
        name = self._expect("NAME").value
        self._expect("(")
        params = self._parse_params(")")
        self._expect(")")
        if self._check("->"):
            raise ParseError("annotations are not supported", self._peek().line, self._peek().column)

        saved_loop = self.loop_depth
        self.loop_depth = 0
        self.function_depth += 1
        try:
            body = self._parse_block()
        finally:
            self.function_depth -= 1
            self.loop_depth = saved_loop
        return FunctionDef(name, params, body, docstring_of(list(body)), **self._loc(tok))

    def _parse_params(self, closer: str) -> Tuple[Param, ...]:
        params: List[Param] = []
        seen = set()
        seen_default = False
        seen_star = False
        seen_varkw = False
        while not self._check(closer):
            tok = self._peek()
            if seen_varkw:
                raise ParseError("parameter after '**' parameter", tok.line, tok.column)
            if self._match("**"):
                name_tok = self._expect("NAME")
                param = Param(name_tok.value, None, "varkw", **self._loc(name_tok))
                seen_varkw = True
            elif self._match("*"):
                if seen_star:
                    raise ParseError("'*' parameter may appear only once", tok.line, tok.column)
                seen_star = True
                if self._check(",", closer):
                    if not self._check(","):
                        raise ParseError("named arguments must follow bare '*'", tok.line, tok.column)
                    self._advance()
                    continue
                name_tok = self._expect("NAME")
                param = Param(name_tok.value, None, "varargs", **self._loc(name_tok))
            else:
                name_tok = self._expect("NAME")
                if self._check(":"):
                    if closer == ")":
                        raise ParseError("annotations are not supported", self._peek().line, self._peek().column)
                default = None
                if self._match("="):
                    default = self._parse_expression()
                kind = "kwonly" if seen_star else "positional"
                if kind == "positional":
                    if default is not None:
                        seen_default = True
                    elif seen_default:
                        raise ParseError("non-default argument follows default argument",
                                         name_tok.line, name_tok.column)
                param = Param(name_tok.value, default, kind, **self._loc(name_tok))
            if param.name in seen:
                raise ParseError(f"duplicate argument '{param.name}' in function definition",
                                 param.line, param.column)
            seen.add(param.name)
            params.append(param)
            if not self._match(","):
                break
        return tuple(params)

    def _parse_class(self) -> Node:
        tok = self._advance()
        if self.class_depth or self.function_depth:
            raise ParseError("nested class definitions are not supported", tok.line, tok.column)
        name = self._expect("NAME").value
        bases: List[Node] = []
        if self._match("("):
            while not self._check(")"):
                if self._check("NAME") and self._peek(1).type == "=":
                    raise self._error("class keyword arguments are not supported")
                bases.append(self._parse_expression())
                if not self._match(","):
                    break
            self._expect(")")

        saved_loop = self.loop_depth
        self.loop_depth = 0
        self.class_depth += 1
        try:
            body = self._parse_block()
        finally:
            self.class_depth -= 1
            self.loop_depth = saved_loop
        return ClassDef(name, tuple(bases), body, docstring_of(list(body)), **self._loc(tok))

    def _parse_try(self) -> Node:
        tok = self._advance()
        body = self._parse_block()
        handlers: List[ExceptHandler] = []
        while self._check("except"):
            htok = self._advance()
            exc_type = None
            name = None
            if self._match("as"):
                name = self._expect("NAME").value
            elif not self._check(":"):
                exc_type = self._parse_expression()
                if self._match("as"):
                    name = self._expect("NAME").value
            handler_body = self._parse_block()
            handlers.append(ExceptHandler(exc_type, name, handler_body, **self._loc(htok)))
        orelse: Tuple[Node, ...] = ()
        finalbody: Tuple[Node, ...] = ()
        if self._check("else"):
            if not handlers:
                raise self._error("'else' requires an 'except' clause")
            self._advance()
            orelse = self._parse_block()
        if self._match("finally"):
            finalbody = self._parse_block()
        if not handlers and not finalbody:
            raise self._error("expected 'except' or 'finally' block")
        return Try(body, tuple(handlers), orelse, finalbody, **self._loc(tok))

    # --- expressions ---

    def _parse_expression_list(self, allow_star: bool = False) -> Node:
        """Comma separated expressions; more than one (or a trailing comma) builds a tuple."""
        tok = self._peek()
        first = self._parse_star_or_expression(allow_star)
        if not self._check(","):
            return first
        elts = [first]
        while self._match(","):
            if self._at_statement_end() or self._check("=", ")", *AUGMENTED):
                break
            elts.append(self._parse_star_or_expression(allow_star))
        return TupleLiteral(tuple(elts), **self._loc(tok))

    def _parse_star_or_expression(self, allow_star: bool) -> Node:
        if allow_star and self._check("*"):
            tok = self._advance()
            return Starred(self._parse_binary(0), **self._loc(tok))
        return self._parse_expression()

    def parse_expression(self) -> Node:
        return self._parse_expression()

    def _parse_expression(self) -> Node:
        self._enter()
        try:
            return self._parse_conditional()
        finally:
            self.nesting -= 1

    def _parse_conditional(self) -> Node:
        if self._check("lambda"):
            return self._parse_lambda()
        tok = self._peek()
        expr = self._parse_or()
        if self._match("if"):
            test = self._parse_or()
            self._expect("else", "expected 'else' in conditional expression")
            orelse = self._parse_expression()
            return Conditional(test, expr, orelse, **self._loc(tok))
        return expr

    def _parse_lambda(self) -> Node:
        tok = self._advance()
        params = self._parse_params(":")
        self._expect(":")
        saved = self.function_depth
        self.function_depth += 1
        try:
            body = self._parse_expression()
        finally:
            self.function_depth = saved
        return Lambda(params, body, **self._loc(tok))

    def _parse_or(self) -> Node:
        tok = self._peek()
        values = [self._parse_and()]
        while self._match("or"):
            values.append(self._parse_and())
        return values[0] if len(values) == 1 else BoolOp("or", tuple(values), **self._loc(tok))

    def _parse_and(self) -> Node:
        tok = self._peek()
        values = [self._parse_not()]
        while self._match("and"):
            values.append(self._parse_not())
        return values[0] if len(values) == 1 else BoolOp("and", tuple(values), **self._loc(tok))

    def _parse_not(self) -> Node:
        if self._check("not"):
            tok = self._advance()
            return UnaryOp("not", self._parse_not(), **self._loc(tok))
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        tok = self._peek()
        left = self._parse_binary(0)
        ops: List[str] = []
        comparators: List[Node] = []
        while self._check(*COMPARISON_OPS):
            op_tok = self._advance()
            op = op_tok.type
            if op == "not":
                self._expect("in", "expected 'in' after 'not'")
                op = "not in"
            elif op == "is" and self._match("not"):
                op = "is not"
            ops.append(op)
            comparators.append(self._parse_binary(0))
        if not ops:
            return left
        return Compare(left, tuple(ops), tuple(comparators), **self._loc(tok))

    def _parse_binary(self, min_prec: int) -> Node:
        left = self._parse_unary()
        while True:
            tok = self._peek()
            prec = BINARY_PRECEDENCE.get(tok.type)
            if prec is None or prec < min_prec:
                return left
            self._advance()
            right = self._parse_binary(prec + 1)
            left = BinaryOp(tok.type, left, right, line=left.line, column=left.column)

    def _parse_unary(self) -> Node:
        if self._check("-", "+", "~"):
            tok = self._advance()
            operand = self._parse_unary()
            if tok.type == "-" and isinstance(operand, Literal) and type(operand.value) in (int, float) \
                    and not self._check("**"):
                return Literal(-operand.value, **self._loc(tok))
            return UnaryOp(tok.type, operand, **self._loc(tok))
        return self._parse_power()

    def _parse_power(self) -> Node:
        base = self._parse_postfix()
        if self._check("**"):
            self._advance()
            exponent = self._parse_unary()
            return BinaryOp("**", base, exponent, line=base.line, column=base.column)
        return base

    def _parse_postfix(self) -> Node:
        expr = self._parse_atom()
        while True:
            tok = self._peek()
            if tok.type == "(":
                self._advance()
                args, keywords = self._parse_call_args()
                self._expect(")")
                expr = Call(expr, args, keywords, **self._loc(tok))
            elif tok.type == "[":
                self._advance()
                index = self._parse_subscript()
                self._expect("]")
                expr = Index(expr, index, **self._loc(tok))
            elif tok.type == ".":
                self._advance()
                name = self._expect("NAME", "expected attribute name")
                expr = Attribute(expr, name.value, **self._loc(name))
            else:
                return expr

    def _parse_call_args(self) -> Tuple[Tuple[Node, ...], Tuple[Keyword, ...]]:
        args: List[Node] = []
        keywords: List[Keyword] = []
        while not self._check(")"):
            tok = self._peek()
            if self._match("**"):
                keywords.append(Keyword(None, self._parse_expression(), **self._loc(tok)))
            elif self._match("*"):
                if keywords and any(k.name is None for k in keywords):
                    raise ParseError("iterable argument unpacking follows keyword argument unpacking",
                                     tok.line, tok.column)
                args.append(Starred(self._parse_expression(), **self._loc(tok)))
            elif tok.type == "NAME" and self._peek(1).type == "=":
                self._advance()
                self._advance()
                keywords.append(Keyword(tok.value, self._parse_expression(), **self._loc(tok)))
            else:
                if keywords:
                    raise ParseError("positional argument follows keyword argument", tok.line, tok.column)
                value = self._parse_expression()
                if self._check("for"):
                    value = self._parse_comprehension("gen", value, tok)
                args.append(value)
            if not self._match(","):
                break
        return tuple(args), tuple(keywords)

    def _parse_subscript(self) -> Node:
        tok = self._peek()
        first = self._parse_slice_item()
        if not self._check(","):
            return first
        elts = [first]
        while self._match(","):
            if self._check("]"):
                break
            elts.append(self._parse_slice_item())
        return TupleLiteral(tuple(elts), **self._loc(tok))

    def _parse_slice_item(self) -> Node:
        tok = self._peek()
        start = None
        if not self._check(":"):
            start = self._parse_expression()
            if not self._check(":"):
                return start
        self._expect(":")
        stop = None
        step = None
        if not self._check(":", "]", ","):
            stop = self._parse_expression()
        if self._match(":"):
            if not self._check("]", ","):
                step = self._parse_expression()
        return Slice(start, stop, step, **self._loc(tok))

    def _parse_atom(self) -> Node:
        tok = self._peek()
        loc = self._loc(tok)
        match tok.type:
            case "NUMBER":
                self._advance()
                return Literal(tok.value, **loc)
            case "STRING" | "FSTRING":
                return self._parse_strings()
            case "NAME":
                self._advance()
                return Identifier(tok.value, **loc)
            case "True":
                self._advance()
                return Literal(True, **loc)
            case "False":
                self._advance()
                return Literal(False, **loc)
            case "None":
                self._advance()
                return Literal(None, **loc)
            case "(":
                return self._parse_paren()
            case "[":
                return self._parse_list()
            case "{":
                return self._parse_brace()
            case "lambda":
                return self._parse_lambda()
            case "@":
                raise ParseError("decorators are not supported", tok.line, tok.column)
        raise self._error("invalid syntax")

    def _parse_strings(self) -> Node:
        """Adjacent string literals concatenate, as in 'a' 'b' or 'a' f'{b}'."""
        first = self._peek()
        parts: List = []
        has_fstring = False
        while self._check("STRING", "FSTRING"):
            tok = self._advance()
            if tok.type == "STRING":
                parts.append(tok.value)
            else:
                has_fstring = True
                parts.extend(self._parse_fstring(tok))
        if not has_fstring:
            return Literal("".join(parts), **self._loc(first))
        merged: List = []
        for part in parts:
            if isinstance(part, str) and merged and isinstance(merged[-1], str):
                merged[-1] += part
            elif part != "":
                merged.append(part)
        return FString(tuple(merged), **self._loc(first))

    def _parse_fstring(self, tok: Token) -> List:
        return list(_FStringScanner(tok).scan())

    def _parse_paren(self) -> Node:
        tok = self._advance()
        loc = self._loc(tok)
        if self._match(")"):
            return TupleLiteral((), **loc)
        first = self._parse_star_or_expression(True)
        if self._check("for"):
            comp = self._parse_comprehension("gen", first, tok)
            self._expect(")")
            return comp
        if self._match(")"):
            if isinstance(first, Starred):
                raise ParseError("can't use starred expression here", first.line, first.column)
            return first
        elts = [first]
        while self._match(","):
            if self._check(")"):
                break
            elts.append(self._parse_star_or_expression(True))
        self._expect(")")
        return TupleLiteral(tuple(elts), **loc)

    def _parse_list(self) -> Node:
        tok = self._advance()
        loc = self._loc(tok)
        if self._match("]"):
            return ListLiteral((), **loc)
        first = self._parse_star_or_expression(True)
        if self._check("for"):
            comp = self._parse_comprehension("list", first, tok)
            self._expect("]")
            return comp
        elts = [first]
        while self._match(","):
            if self._check("]"):
                break
            elts.append(self._parse_star_or_expression(True))
        self._expect("]")
        return ListLiteral(tuple(elts), **loc)

    def _parse_brace(self) -> Node:
        tok = self._advance()
        loc = self._loc(tok)
        if self._match("}"):
            return DictLiteral((), (), **loc)

        if self._match("**"):
            keys: List[Optional[Node]] = [None]
            values: List[Node] = [self._parse_binary(0)]
            return self._finish_dict(keys, values, loc)

        first = self._parse_star_or_expression(True)
        if self._match(":"):
            value = self._parse_expression()
            if self._check("for"):
                comp = self._parse_comprehension("dict", value, tok, key=first)
                self._expect("}")
                return comp
            return self._finish_dict([first], [value], loc)

        if self._check("for"):
            comp = self._parse_comprehension("set", first, tok)
            self._expect("}")
            return comp
        elts = [first]
        while self._match(","):
            if self._check("}"):
                break
            elts.append(self._parse_star_or_expression(True))
        self._expect("}")
        return SetLiteral(tuple(elts), **loc)

    def _finish_dict(self, keys: List[Optional[Node]], values: List[Node], loc: dict) -> Node:
        while self._match(","):
            if self._check("}"):
                break
            if self._match("**"):
                keys.append(None)
                values.append(self._parse_binary(0))
                continue
            keys.append(self._parse_expression())
            self._expect(":")
            values.append(self._parse_expression())
        self._expect("}")
        return DictLiteral(tuple(keys), tuple(values), **loc)

    def _parse_comprehension(self, kind: str, element: Node, tok: Token, key: Optional[Node] = None) -> Node:
        if isinstance(element, Starred):
            raise ParseError("iterable unpacking cannot be used in comprehension", element.line, element.column)
        generators: List[ComprehensionFor] = []
        while self._check("for"):
            for_tok = self._advance()
            target = self._parse_target_list()
            self._expect("in")
            iterable = self._parse_or()
            conditions: List[Node] = []
            while self._match("if"):
                conditions.append(self._parse_or())
            generators.append(ComprehensionFor(target, iterable, tuple(conditions), **self._loc(for_tok)))
        return Comprehension(kind, element, tuple(generators), key, **self._loc(tok))


class _FStringScanner:
    """Splits the decoded body of an f-string into text and replacement fields."""

    def __init__(self, tok: Token):
        self.tok = tok
        self.text = tok.value
        self.i = 0

    def _fail(self, message: str) -> ParseError:
        return ParseError(f"f-string: {message}", self.tok.line, self.tok.column)

    def scan(self, stop_at_brace: bool = False):
        buf: List[str] = []
        text = self.text
        while self.i < len(text):
            ch = text[self.i]
            if ch == "{":
                if text.startswith("{{", self.i):
                    buf.append("{")
                    self.i += 2
                    continue
                if buf:
                    yield "".join(buf)
                    buf = []
                yield self._scan_field()
            elif ch == "}":
                if stop_at_brace:
                    break
                if text.startswith("}}", self.i):
                    buf.append("}")
                    self.i += 2
                    continue
                raise self._fail("single '}' is not allowed")
            else:
                buf.append(ch)
                self.i += 1
        if buf:
            yield "".join(buf)

    def _scan_field(self) -> FormattedValue:
        text = self.text
        self.i += 1
        start = self.i
        depth = 0
        quote = None
        while self.i < len(text):
            ch = text[self.i]
            if quote:
                if ch == quote:
                    quote = None
            elif ch in "'\"":
                quote = ch
            elif ch in "([{":
                depth += 1
            elif ch in ")]}":
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0 and (ch == ":" or (ch == "!" and text[self.i + 1:self.i + 2] != "=")):
                break
            self.i += 1
        else:
            raise self._fail("expecting '}'")

        source = text[start:self.i]
        if not source.strip():
            raise self._fail("empty expression not allowed")
        expr = self._parse_embedded(source)

        conversion = None
        if text[self.i] == "!":
            conversion = text[self.i + 1:self.i + 2]
            if conversion not in ("r", "s", "a"):
                raise self._fail("invalid conversion character")
            self.i += 2
        format_spec = None
        if self.i < len(text) and text[self.i] == ":":
            self.i += 1
            spec_parts = list(self.scan(stop_at_brace=True))
            format_spec = FString(tuple(spec_parts), line=self.tok.line, column=self.tok.column)
        if self.i >= len(text) or text[self.i] != "}":
            raise self._fail("expecting '}'")
        self.i += 1
        return FormattedValue(expr, conversion, format_spec, line=self.tok.line, column=self.tok.column)

    def _parse_embedded(self, source: str) -> Node:
        try:
            tokens = tokenize(f"({source.strip()})", self.tok.line, self.tok.column)
        except LexError as e:
            raise self._fail(e.message) from None
        parser = Parser(tokens)
        parser.function_depth = 1
        expr = parser.parse_expression()
        parser._match("NEWLINE")
        if not parser._check("EOF"):
            raise self._fail("invalid expression")
        return expr


def parse(tokens: List[Token]) -> Program:
    return Parser(tokens).parse()


def parse_source(source: str) -> Program:
    """Lexes and parses `source` into a Program."""
    return Parser(tokenize(source)).parse()
