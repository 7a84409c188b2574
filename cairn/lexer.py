"""CAIRN Lexer — Tokenizer with line/column tracking.

Produces a stream of tokens from Cairo-flavoured contract source. Ordinary
`//` comments are skipped; comments of the form `// @kind text` are kept as
ANNOTATION tokens so the parser can attach them to the next function.
The same lexer tokenizes annotation payloads, starting at the payload's
position in the file so diagnostics point at the right column.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from cairn.errors import SourceLocation, syntax_error, CompileError


class TokenType(Enum):
    # Keywords
    FUNC = auto()
    LET = auto()
    TEMPVAR = auto()
    LOCAL = auto()
    RETURN = auto()
    IF = auto()
    ELSE = auto()
    ASSERT = auto()
    TRUE = auto()
    FALSE = auto()

    # Literals
    INT_LIT = auto()

    # Names
    IDENT = auto()
    LOGICAL_VAR = auto()   # $name
    DECORATOR = auto()     # @storage_var
    ANNOTATION = auto()    # // @pre ...

    # Operators
    PLUS = auto()
    MINUS = auto()
    STAR = auto()
    POW = auto()
    SLASH = auto()
    PERCENT = auto()
    EQ = auto()
    NEQ = auto()
    GTE = auto()
    LTE = auto()
    GT = auto()
    LT = auto()
    ARROW = auto()
    AND = auto()
    OR = auto()
    NOT = auto()
    ASSIGN = auto()
    WALRUS = auto()
    DOT = auto()

    # Delimiters
    LBRACE = auto()
    RBRACE = auto()
    LPAREN = auto()
    RPAREN = auto()
    COLON = auto()
    COMMA = auto()
    SEMICOLON = auto()

    # Special
    EOF = auto()


KEYWORDS: dict[str, TokenType] = {
    "func": TokenType.FUNC,
    "let": TokenType.LET,
    "tempvar": TokenType.TEMPVAR,
    "local": TokenType.LOCAL,
    "return": TokenType.RETURN,
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "assert": TokenType.ASSERT,
    "True": TokenType.TRUE,
    "False": TokenType.FALSE,
    "and": TokenType.AND,
    "or": TokenType.OR,
    "not": TokenType.NOT,
}

_SIMPLE_TOKENS: dict[str, TokenType] = {
    "+": TokenType.PLUS,
    "/": TokenType.SLASH,
    "%": TokenType.PERCENT,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    ",": TokenType.COMMA,
    ";": TokenType.SEMICOLON,
    ".": TokenType.DOT,
}


@dataclass
class Token:
    type: TokenType
    value: str
    location: SourceLocation
    payload: str = ""
    payload_location: Optional[SourceLocation] = None

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, {self.location})"


class Lexer:
    """Tokenizer for CAIRN source code and annotation payloads."""

    def __init__(self, source: str, filename: str = "<stdin>",
                 line: int = 1, column: int = 1):
        self.source = source
        self.filename = filename
        self.pos = 0
        self.line = line
        self.column = column

    def _loc(self) -> SourceLocation:
        return SourceLocation(self.line, self.column, self.filename)

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.source):
            return self.source[self.pos]
        return None

    def _peek_ahead(self, offset: int = 1) -> Optional[str]:
        idx = self.pos + offset
        if idx < len(self.source):
            return self.source[idx]
        return None

    def _advance(self) -> str:
        ch = self.source[self.pos]
        self.pos += 1
        if ch == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return ch

    def _skip_whitespace(self) -> None:
        while self.pos < len(self.source) and self.source[self.pos] in (" ", "\t", "\r", "\n"):
            self._advance()

    def _read_comment(self) -> Optional[Token]:
        """Consume a `//` comment; return an ANNOTATION token for `// @kind`."""
        self._advance()
        self._advance()
        while self._peek() in (" ", "\t"):
            self._advance()
        if self._peek() != "@":
            while self.pos < len(self.source) and self.source[self.pos] != "\n":
                self._advance()
            return None

        loc = self._loc()
        self._advance()  # @
        kind = ""
        while self.pos < len(self.source) and (self.source[self.pos].isalnum() or self.source[self.pos] == "_"):
            kind += self._advance()
        while self._peek() in (" ", "\t"):
            self._advance()
        payload_loc = self._loc()
        payload = ""
        while self.pos < len(self.source) and self.source[self.pos] != "\n":
            payload += self._advance()
        return Token(TokenType.ANNOTATION, kind, loc,
                     payload=payload.rstrip(), payload_location=payload_loc)

    def _read_number(self) -> Token:
        loc = self._loc()
        value = ""
        if self._peek() == "0" and self._peek_ahead() in ("x", "X"):
            value += self._advance() + self._advance()
            while self.pos < len(self.source) and self.source[self.pos] in "0123456789abcdefABCDEF":
                value += self._advance()
            return Token(TokenType.INT_LIT, str(int(value, 16)), loc)
        while self.pos < len(self.source) and self.source[self.pos].isdigit():
            value += self._advance()
        return Token(TokenType.INT_LIT, value, loc)

    def _read_word(self) -> str:
        value = ""
        while self.pos < len(self.source) and (self.source[self.pos].isalnum() or self.source[self.pos] == "_"):
            value += self._advance()
        return value

    def _read_identifier(self) -> Token:
        loc = self._loc()
        value = self._read_word()
        token_type = KEYWORDS.get(value, TokenType.IDENT)
        return Token(token_type, value, loc)

    def _read_prefixed(self, token_type: TokenType) -> Token:
        loc = self._loc()
        sigil = self._advance()
        name = self._read_word()
        if not name:
            raise CompileError(syntax_error(f"Expected a name after '{sigil}'", loc))
        return Token(token_type, sigil + name if token_type == TokenType.LOGICAL_VAR else name, loc)

    def tokenize(self) -> list[Token]:
        tokens: list[Token] = []
        while self.pos < len(self.source):
            self._skip_whitespace()
            if self.pos >= len(self.source):
                break

            ch = self._peek()
            loc = self._loc()

            if ch == "/" and self._peek_ahead() == "/":
                annotation = self._read_comment()
                if annotation is not None:
                    tokens.append(annotation)
            elif ch.isdigit():
                tokens.append(self._read_number())
            elif ch.isalpha() or ch == "_":
                tokens.append(self._read_identifier())
            elif ch == "$":
                tokens.append(self._read_prefixed(TokenType.LOGICAL_VAR))
            elif ch == "@":
                tokens.append(self._read_prefixed(TokenType.DECORATOR))
            elif ch in _SIMPLE_TOKENS:
                self._advance()
                tokens.append(Token(_SIMPLE_TOKENS[ch], ch, loc))
            elif ch == "-":
                self._advance()
                if self._peek() == ">":
                    self._advance()
                    tokens.append(Token(TokenType.ARROW, "->", loc))
                else:
                    tokens.append(Token(TokenType.MINUS, "-", loc))
            elif ch == "*":
                self._advance()
                if self._peek() == "*":
                    self._advance()
                    tokens.append(Token(TokenType.POW, "**", loc))
                else:
                    tokens.append(Token(TokenType.STAR, "*", loc))
            elif ch == "=":
                self._advance()
                if self._peek() == "=":
                    self._advance()
                    tokens.append(Token(TokenType.EQ, "==", loc))
                else:
                    tokens.append(Token(TokenType.ASSIGN, "=", loc))
            elif ch == ":":
                self._advance()
                if self._peek() == "=":
                    self._advance()
                    tokens.append(Token(TokenType.WALRUS, ":=", loc))
                else:
                    tokens.append(Token(TokenType.COLON, ":", loc))
            elif ch == "!":
                self._advance()
                if self._peek() == "=":
                    self._advance()
                    tokens.append(Token(TokenType.NEQ, "!=", loc))
                else:
                    tokens.append(Token(TokenType.NOT, "!", loc))
            elif ch == ">":
                self._advance()
                if self._peek() == "=":
                    self._advance()
                    tokens.append(Token(TokenType.GTE, ">=", loc))
                else:
                    tokens.append(Token(TokenType.GT, ">", loc))
            elif ch == "<":
                self._advance()
                if self._peek() == "=":
                    self._advance()
                    tokens.append(Token(TokenType.LTE, "<=", loc))
                else:
                    tokens.append(Token(TokenType.LT, "<", loc))
            elif ch == "&":
                self._advance()
                if self._peek() == "&":
                    self._advance()
                    tokens.append(Token(TokenType.AND, "&&", loc))
                else:
                    raise CompileError(syntax_error("Unexpected character '&'", loc))
            elif ch == "|":
                self._advance()
                if self._peek() == "|":
                    self._advance()
                    tokens.append(Token(TokenType.OR, "||", loc))
                else:
                    raise CompileError(syntax_error("Unexpected character '|'", loc))
            else:
                self._advance()
                raise CompileError(syntax_error(f"Unexpected character '{ch}'", loc))

        tokens.append(Token(TokenType.EOF, "", self._loc()))
        return tokens


def tokenize(source: str, filename: str = "<stdin>") -> list[Token]:
    """Convenience function to tokenize CAIRN source code."""
    return Lexer(source, filename).tokenize()
