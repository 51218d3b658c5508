"""
Tokenizer for Quill source text.

Produces a flat token list with synthesized NEWLINE, INDENT and DEDENT
tokens so the parser can treat indentation like brackets.
"""
from dataclasses import dataclass
from typing import Any, List, Optional

from quill.quill_errors import LexError

KEYWORDS = frozenset({
    "and", "as", "assert", "break", "class", "continue", "def", "del", "elif",
    "else", "except", "False", "finally", "for", "from", "global", "if",
    "import", "in", "is", "lambda", "None", "nonlocal", "not", "or", "pass",
    "raise", "return", "True", "try", "while",
})

# Longest operators first so the scanner can match greedily.
OPERATORS = (
    "**=", "//=", "<<=", ">>=",
    "**", "//", "<<", ">>", "<=", ">=", "==", "!=", "+=", "-=", "*=", "/=",
    "%=", "&=", "|=", "^=", "->",
    "+", "-", "*", "/", "%", "~", "&", "|", "^", "<", ">", "=", "(", ")",
    "[", "]", "{", "}", ",", ":", ".", ";", "@",
)

OPENERS = {"(": ")", "[": "]", "{": "}"}
CLOSERS = {")", "]", "}"}

TAB_WIDTH = 8

ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", "'": "'",
    '"': '"', "a": "\a", "b": "\b", "f": "\f", "v": "\v",
}


@dataclass(frozen=True)
class Token:
    type: str
    value: Any
    line: int
    column: int

    def __repr__(self):
        return f"Token({self.type}, {self.value!r}, {self.line}:{self.column})"


class Lexer:
    def __init__(self, source: str):
        self.source = source.replace("\r\n", "\n").replace("\r", "\n")
        self.index = 0
        self.line = 1
        self.column = 1
        self.tokens: List[Token] = []
        self.indents = [0]
        self.depth = 0
        self.brackets: List[Token] = []

    def tokenize(self) -> List[Token]:
        at_line_start = True
        while self.index < len(self.source):
            if at_line_start and self.depth == 0:
                at_line_start = False
                if self._handle_indentation():
                    at_line_start = True
                    continue

            ch = self.source[self.index]
            if ch in " \t\f":
                self._advance()
            elif ch == "#":
                self._skip_comment()
            elif ch == "\\":
                self._consume_continuation()
            elif ch == "\n":
                if self.depth == 0:
                    self._emit_newline(self.line, self.column)
                    at_line_start = True
                self._advance()
            elif ch == ";":
                self._emit_newline(self.line, self.column, "SEMI")
                self._advance()
            elif ch in "'\"" or self._at_string_prefix():
                self._consume_string()
            elif ch.isdigit() or (ch == "." and self._peek(1).isdigit()):
                self._consume_number()
            elif ch.isalpha() or ch == "_":
                self._consume_name()
            else:
                self._consume_operator()

        if self.brackets:
            opener = self.brackets[-1]
            raise LexError(f"'{opener.value}' was never closed", opener.line, opener.column)
        if self.tokens and self.tokens[-1].type not in ("NEWLINE", "DEDENT", "INDENT"):
            self._emit("NEWLINE", None, self.line, self.column)
        while len(self.indents) > 1:
            self.indents.pop()
            self._emit("DEDENT", None, self.line, self.column)
        self._emit("EOF", None, self.line, self.column)
        return self.tokens

    # --- scanning helpers ---

    def _peek(self, offset: int = 0) -> str:
        pos = self.index + offset
        return self.source[pos] if pos < len(self.source) else ""

    def _advance(self) -> str:
        ch = self.source[self.index]
        self.index += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _emit(self, type_: str, value: Any, line: int, column: int):
        self.tokens.append(Token(type_, value, line, column))

    def _emit_newline(self, line: int, column: int, kind: str = "NEWLINE"):
        if kind == "SEMI":
            self._emit("SEMI", ";", line, column)
            return
        if self.tokens and self.tokens[-1].type not in ("NEWLINE", "INDENT", "DEDENT"):
            self._emit("NEWLINE", None, line, column)

    def _skip_comment(self):
        while self.index < len(self.source) and self.source[self.index] != "\n":
            self._advance()

    def _consume_continuation(self):
        line, column = self.line, self.column
        self._advance()
        if self._peek() != "\n":
            raise LexError("unexpected character after line continuation", line, column)
        self._advance()

    def _handle_indentation(self) -> bool:
        """Measures leading whitespace. Returns True when the line is blank."""
        width = 0
        while self.index < len(self.source) and self.source[self.index] in " \t\f":
            ch = self._advance()
            if ch == "\t":
                width = (width // TAB_WIDTH + 1) * TAB_WIDTH
            elif ch == " ":
                width += 1
        ch = self._peek()
        if ch == "#":
            self._skip_comment()
            ch = self._peek()
        if ch == "\n":
            self._advance()
            return True
        if ch == "":
            return True

        if width > self.indents[-1]:
            self.indents.append(width)
            self._emit("INDENT", width, self.line, self.column)
        elif width < self.indents[-1]:
            while width < self.indents[-1]:
                self.indents.pop()
                self._emit("DEDENT", width, self.line, self.column)
            if width != self.indents[-1]:
                raise LexError("unindent does not match any outer indentation level",
                               self.line, self.column)
        return False

    def _at_string_prefix(self) -> bool:
        for size in (2, 1):
            prefix = self.source[self.index:self.index + size].lower()
            if len(prefix) == size and prefix in ("r", "f", "rf", "fr") and self._peek(size) in ("'", '"'):
                return True
        return False

    def _consume_string(self):
        line, column = self.line, self.column
        prefix = ""
        while self._peek() not in ("'", '"'):
            prefix += self._advance().lower()
        raw = "r" in prefix
        is_fstring = "f" in prefix

        quote = self._advance()
        triple = False
        if self._peek() == quote and self._peek(1) == quote:
            self._advance()
            self._advance()
            triple = True

        chars: List[str] = []
        while True:
            if self.index >= len(self.source):
                raise LexError("Unterminated string literal", line, column)
            ch = self._peek()
            if ch == quote:
                if not triple:
                    self._advance()
                    break
                if self._peek(1) == quote and self._peek(2) == quote:
                    self._advance()
                    self._advance()
                    self._advance()
                    break
            if ch == "\n" and not triple:
                raise LexError("Unterminated string literal", line, column)
            if ch == "\\":
                self._advance()
                if self.index >= len(self.source):
                    raise LexError("Unterminated string literal", line, column)
                if raw:
                    chars.append("\\")
                    chars.append(self._advance())
                else:
                    chars.append(self._consume_escape(line, column))
                continue
            chars.append(self._advance())

        value = "".join(chars)
        self._emit("FSTRING" if is_fstring else "STRING", value, line, column)

    def _consume_escape(self, line: int, column: int) -> str:
        ch = self._advance()
        if ch == "\n":
            return ""
        if ch in ESCAPES:
            return ESCAPES[ch]
        if ch in "xuU":
            size = {"x": 2, "u": 4, "U": 8}[ch]
            digits = self.source[self.index:self.index + size]
            if len(digits) != size or any(d not in "0123456789abcdefABCDEF" for d in digits):
                raise LexError(f"truncated \\{ch} escape", line, column)
            for _ in range(size):
                self._advance()
            return chr(int(digits, 16))
        # Unknown escapes are kept verbatim
        return "\\" + ch

    def _consume_number(self):
        line, column = self.line, self.column
        start = self.index
        is_float = False
        if self._peek() == "0" and self._peek(1).lower() in ("x", "o", "b"):
            self._advance()
            self._advance()
            while self._peek().isalnum() or self._peek() == "_":
                self._advance()
        else:
            while self._peek().isdigit() or self._peek() == "_":
                self._advance()
            if self._peek() == "." and not self._peek(1).isalpha() and self._peek(1) != ".":
                is_float = True
                self._advance()
                while self._peek().isdigit() or self._peek() == "_":
                    self._advance()
            if self._peek().lower() == "e" and (self._peek(1).isdigit() or
                                                (self._peek(1) in "+-" and self._peek(2).isdigit())):
                is_float = True
                self._advance()
                if self._peek() in "+-":
                    self._advance()
                while self._peek().isdigit():
                    self._advance()
        text = self.source[start:self.index].replace("_", "")
        try:
            value = float(text) if is_float else int(text, 0)
        except ValueError:
            raise LexError(f"invalid number literal '{self.source[start:self.index]}'", line, column) from None
        if self._peek().isalpha() or self._peek() == "_":
            raise LexError(f"invalid number literal '{self.source[start:self.index + 1]}'", line, column)
        self._emit("NUMBER", value, line, column)

    def _consume_name(self):
        line, column = self.line, self.column
        start = self.index
        while self._peek().isalnum() or self._peek() == "_":
            self._advance()
        text = self.source[start:self.index]
        if text in KEYWORDS:
            self._emit(text, text, line, column)
        else:
            self._emit("NAME", text, line, column)

    def _consume_operator(self):
        line, column = self.line, self.column
        for op in OPERATORS:
            if self.source.startswith(op, self.index):
                for _ in op:
                    self._advance()
                token = Token(op, op, line, column)
                self.tokens.append(token)
                if op in OPENERS:
                    self.depth += 1
                    self.brackets.append(token)
                elif op in CLOSERS:
                    if not self.brackets:
                        raise LexError(f"unmatched '{op}'", line, column)
                    opener = self.brackets.pop()
                    if OPENERS[opener.value] != op:
                        raise LexError(f"closing '{op}' does not match '{opener.value}'", line, column)
                    self.depth -= 1
                return
        raise LexError(f"Unexpected character '{self._peek()}'", line, column)


def tokenize(source: str, line_offset: Optional[int] = None, column_offset: Optional[int] = None) -> List[Token]:
    """Tokenizes `source`. Offsets relocate tokens of an embedded fragment."""
    tokens = Lexer(source).tokenize()
    if line_offset is None:
        return tokens
    relocated = []
    for tok in tokens:
        col = tok.column + (column_offset or 0) if tok.line == 1 else tok.column
        relocated.append(Token(tok.type, tok.value, tok.line + line_offset - 1, col))
    return relocated
