"""CAIRN Lexer Tests — LEX-001 through LEX-004."""

import pytest
from cairn.lexer import TokenType, Lexer, tokenize
from cairn.errors import CompileError, ErrorKind


def _types(source):
    return [t.type for t in tokenize(source)][:-1]


class TestLEX001:
    """LEX-001: Operators and delimiters."""

    def test_arithmetic(self):
        assert _types("a + b * c - d / e % f") == [
            TokenType.IDENT, TokenType.PLUS, TokenType.IDENT, TokenType.STAR,
            TokenType.IDENT, TokenType.MINUS, TokenType.IDENT, TokenType.SLASH,
            TokenType.IDENT, TokenType.PERCENT, TokenType.IDENT,
        ]

    def test_two_char_operators(self):
        assert _types("** -> == != <= >= := && ||") == [
            TokenType.POW, TokenType.ARROW, TokenType.EQ, TokenType.NEQ,
            TokenType.LTE, TokenType.GTE, TokenType.WALRUS, TokenType.AND, TokenType.OR,
        ]

    def test_word_operators(self):
        assert _types("and or not") == [TokenType.AND, TokenType.OR, TokenType.NOT]

    def test_single_ampersand_rejected(self):
        with pytest.raises(CompileError) as exc:
            tokenize("a & b")
        assert exc.value.errors[0].kind == ErrorKind.SYNTAX_ERROR

    def test_unknown_character(self):
        with pytest.raises(CompileError):
            tokenize("a # b")


class TestLEX002:
    """LEX-002: Literals and names."""

    def test_decimal(self):
        tok = tokenize("12345")[0]
        assert tok.type == TokenType.INT_LIT and tok.value == "12345"

    def test_hex_is_normalised(self):
        tok = tokenize("0x10")[0]
        assert tok.type == TokenType.INT_LIT and tok.value == "16"

    def test_keywords(self):
        assert _types("func let tempvar local return if else assert") == [
            TokenType.FUNC, TokenType.LET, TokenType.TEMPVAR, TokenType.LOCAL,
            TokenType.RETURN, TokenType.IF, TokenType.ELSE, TokenType.ASSERT,
        ]

    def test_logical_variable_keeps_sigil(self):
        tok = tokenize("$old_balance")[0]
        assert tok.type == TokenType.LOGICAL_VAR and tok.value == "$old_balance"

    def test_decorator_drops_sigil(self):
        tok = tokenize("@storage_var")[0]
        assert tok.type == TokenType.DECORATOR and tok.value == "storage_var"

    def test_bare_sigil_rejected(self):
        with pytest.raises(CompileError):
            tokenize("$ x")


class TestLEX003:
    """LEX-003: Comments and annotations."""

    def test_plain_comment_skipped(self):
        assert _types("// just a comment\nx") == [TokenType.IDENT]

    def test_annotation_token(self):
        tok = tokenize("// @pre amount > 0")[0]
        assert tok.type == TokenType.ANNOTATION
        assert tok.value == "pre"
        assert tok.payload == "amount > 0"

    def test_annotation_payload_location(self):
        tok = tokenize("// @pre x > 0")[0]
        assert tok.location.column == 4
        assert tok.payload_location.line == 1
        assert tok.payload_location.column == 9

    def test_annotation_trailing_whitespace_trimmed(self):
        tok = tokenize("// @post $Return.res == 1   \n")[0]
        assert tok.payload == "$Return.res == 1"


class TestLEX004:
    """LEX-004: Positions."""

    def test_line_and_column(self):
        tokens = tokenize("func\n  foo")
        assert (tokens[1].location.line, tokens[1].location.column) == (2, 3)

    def test_fragment_offset(self):
        tokens = Lexer("a + b", "c.cairo", line=7, column=10).tokenize()
        assert tokens[0].location.line == 7
        assert tokens[2].location.column == 14
        assert tokens[0].location.file == "c.cairo"

    def test_eof_token(self):
        tokens = tokenize("")
        assert len(tokens) == 1 and tokens[0].type == TokenType.EOF
