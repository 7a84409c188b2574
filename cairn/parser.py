"""CAIRN Parser — LL(1) recursive-descent parser.

Parses the token stream into an AST. Top-level declarations:

  @storage_var
  func balance(account: felt) -> (res: felt) {
  }

  // @pre amount > 0
  // @post $Return.res == balance(account)
  func get_balance(account: felt) -> (res: felt) {
      let (res) = balance.read(account);
      return (res=res);
  }

Annotation comments are attached verbatim to the function that follows them;
their payloads are parsed later by cairn.annotations so that a malformed
clause only invalidates its own function. The expression grammar is shared
with the annotation parser through `parse_expression`.
"""

from __future__ import annotations

from typing import Optional

from cairn.lexer import Lexer, Token, TokenType, tokenize
from cairn.ast_nodes import (
    Program, Declaration, StorageVarDecl, FuncDef, Parameter, AnnotationClause,
    Statement, LetStmt, ExprStmt, AssertStmt, IfStmt, ReturnStmt,
    Expr, IntLiteral, BoolLiteral, Identifier, LogicalRef,
    BinaryOp, UnaryOp, FunctionCall, MethodCall,
)
from cairn.errors import SourceLocation, syntax_error, CompileError


_LOGICAL_OPS = {
    "and": "&&", "&&": "&&",
    "or": "||", "||": "||",
}


class Parser:
    """LL(1) recursive-descent parser for CAIRN."""

    def __init__(self, tokens: list[Token], filename: str = "<stdin>"):
        self.tokens = tokens
        self.pos = 0
        self.filename = filename

    def _current(self) -> Token:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return self.tokens[-1]  # EOF

    def _peek(self) -> TokenType:
        return self._current().type

    def _peek_at(self, offset: int) -> TokenType:
        idx = self.pos + offset
        if idx < len(self.tokens):
            return self.tokens[idx].type
        return TokenType.EOF

    def _loc(self) -> SourceLocation:
        return self._current().location

    def _advance(self) -> Token:
        tok = self._current()
        if self.pos < len(self.tokens) - 1:
            self.pos += 1
        return tok

    def _expect(self, tt: TokenType) -> Token:
        tok = self._current()
        if tok.type != tt:
            raise CompileError(syntax_error(
                f"Expected {tt.name}, got {tok.type.name} ('{tok.value}')",
                tok.location,
            ))
        return self._advance()

    def _match(self, tt: TokenType) -> Optional[Token]:
        if self._peek() == tt:
            return self._advance()
        return None

    # Public helpers used by the annotation parser

    def expect(self, tt: TokenType) -> Token:
        return self._expect(tt)

    def peek(self) -> TokenType:
        return self._peek()

    def expect_end(self) -> None:
        if self._peek() != TokenType.EOF:
            tok = self._current()
            raise CompileError(syntax_error(
                f"Unexpected trailing input '{tok.value}'", tok.location,
            ))

    # -------------------------------------------------------------------
    # Top-level
    # -------------------------------------------------------------------

    def parse(self) -> Program:
        decls: list[Declaration] = []
        pending: list[AnnotationClause] = []
        seen: set[str] = set()
        while self._peek() != TokenType.EOF:
            if self._peek() == TokenType.ANNOTATION:
                pending.append(self._parse_annotation())
                continue
            if self._at_directive():
                self._skip_directive()
                continue
            decl = self._parse_declaration(pending)
            pending = []
            if decl.name in seen:
                raise CompileError(syntax_error(
                    f"Duplicate definition of '{decl.name}'", decl.location,
                ))
            seen.add(decl.name)
            decls.append(decl)
        if pending:
            raise CompileError(syntax_error(
                "Annotation is not followed by a function", pending[0].location,
            ))
        return Program(declarations=decls, filename=self.filename)

    def _at_directive(self) -> bool:
        """`%lang starknet`, `%builtins ...` and `from a.b import c` lines."""
        tok = self._current()
        if tok.type == TokenType.PERCENT:
            return True
        return tok.type == TokenType.IDENT and tok.value == "from"

    def _skip_directive(self) -> None:
        line = self._current().location.line
        depth = 0
        while self._peek() != TokenType.EOF:
            tok = self._current()
            if depth == 0 and tok.location.line != line:
                break
            if tok.type == TokenType.LPAREN:
                depth += 1
            elif tok.type == TokenType.RPAREN:
                depth -= 1
            self._advance()

    def _parse_annotation(self) -> AnnotationClause:
        tok = self._expect(TokenType.ANNOTATION)
        return AnnotationClause(
            kind=tok.value, text=tok.payload,
            location=tok.location, text_location=tok.payload_location,
        )

    def _parse_declaration(self, annotations: list[AnnotationClause]) -> Declaration:
        decorators: list[str] = []
        while self._peek() == TokenType.DECORATOR:
            decorators.append(self._advance().value)
        if self._peek() != TokenType.FUNC:
            raise CompileError(syntax_error(
                f"Expected 'func', got '{self._current().value}'",
                self._loc(),
            ))
        if "storage_var" in decorators:
            if annotations:
                raise CompileError(syntax_error(
                    "Storage variables cannot carry annotations", annotations[0].location,
                ))
            return self._parse_storage_var()
        return self._parse_func(annotations)

    # -------------------------------------------------------------------
    # Storage variables
    # -------------------------------------------------------------------

    def _parse_storage_var(self) -> StorageVarDecl:
        loc = self._loc()
        self._expect(TokenType.FUNC)
        name = self._expect(TokenType.IDENT).value
        self._skip_implicit_args()
        self._expect(TokenType.LPAREN)
        keys = self._parse_param_list()
        self._expect(TokenType.RPAREN)
        self._expect(TokenType.ARROW)
        returns = self._parse_return_list()
        if len(returns) != 1:
            raise CompileError(syntax_error(
                f"Storage variable '{name}' must declare exactly one value", loc,
            ))
        self._expect(TokenType.LBRACE)
        self._expect(TokenType.RBRACE)
        return StorageVarDecl(name=name, keys=keys, value=returns[0], location=loc)

    # -------------------------------------------------------------------
    # Functions
    # -------------------------------------------------------------------

    def _parse_func(self, annotations: list[AnnotationClause]) -> FuncDef:
        loc = self._loc()
        self._expect(TokenType.FUNC)
        name = self._expect(TokenType.IDENT).value
        self._skip_implicit_args()
        self._expect(TokenType.LPAREN)
        params = self._parse_param_list()
        self._expect(TokenType.RPAREN)

        returns: list[Parameter] = []
        if self._match(TokenType.ARROW):
            returns = self._parse_return_list()

        self._expect(TokenType.LBRACE)
        body = self._parse_body()
        self._expect(TokenType.RBRACE)

        return FuncDef(
            name=name, params=params, returns=returns,
            annotations=list(annotations), body=body, location=loc,
        )

    def _skip_implicit_args(self) -> None:
        """Skip Cairo implicit arguments: {syscall_ptr: felt*, range_check_ptr}."""
        if self._peek() != TokenType.LBRACE:
            return
        self._advance()
        while self._peek() not in (TokenType.RBRACE, TokenType.EOF):
            self._advance()
        self._expect(TokenType.RBRACE)

    def _parse_param_list(self) -> list[Parameter]:
        params: list[Parameter] = []
        if self._peek() == TokenType.RPAREN:
            return params
        params.append(self._parse_parameter())
        while self._match(TokenType.COMMA):
            params.append(self._parse_parameter())
        return params

    def _parse_parameter(self) -> Parameter:
        loc = self._loc()
        name = self._expect(TokenType.IDENT).value
        type_name = "felt"
        if self._match(TokenType.COLON):
            type_name = self._parse_type_name()
        return Parameter(name=name, type_name=type_name, location=loc)

    def _parse_type_name(self) -> str:
        name = self._expect(TokenType.IDENT).value
        while self._match(TokenType.STAR):
            name += "*"
        return name

    def _parse_return_list(self) -> list[Parameter]:
        if self._match(TokenType.LPAREN):
            returns = self._parse_param_list()
            self._expect(TokenType.RPAREN)
            return returns
        loc = self._loc()
        return [Parameter(name="res", type_name=self._parse_type_name(), location=loc)]

    # -------------------------------------------------------------------
    # Body (list of statements)
    # -------------------------------------------------------------------

    def _parse_body(self) -> list[Statement]:
        stmts: list[Statement] = []
        while self._peek() not in (TokenType.RBRACE, TokenType.EOF):
            stmts.append(self._parse_statement())
        return stmts

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _parse_statement(self) -> Statement:
        tt = self._peek()

        if tt in (TokenType.LET, TokenType.TEMPVAR, TokenType.LOCAL):
            return self._parse_let()
        elif tt == TokenType.IF:
            return self._parse_if()
        elif tt == TokenType.ASSERT:
            return self._parse_assert()
        elif tt == TokenType.RETURN:
            return self._parse_return()
        elif tt == TokenType.ANNOTATION:
            raise CompileError(syntax_error(
                "Annotations are only supported before a function", self._loc(),
            ))
        else:
            loc = self._loc()
            expr = self._parse_expression()
            self._expect(TokenType.SEMICOLON)
            return ExprStmt(expr=expr, location=loc)

    def _parse_let(self) -> LetStmt:
        loc = self._loc()
        binder = self._advance().value
        names: list[str] = []
        destructure = False
        if self._match(TokenType.LPAREN):
            destructure = True
            if self._peek() != TokenType.RPAREN:
                names.append(self._parse_binding_name())
                while self._match(TokenType.COMMA):
                    names.append(self._parse_binding_name())
            self._expect(TokenType.RPAREN)
        else:
            names.append(self._parse_binding_name())
        self._expect(TokenType.ASSIGN)
        value = self._parse_expression()
        self._expect(TokenType.SEMICOLON)
        return LetStmt(names=names, value=value, destructure=destructure,
                       binder=binder, location=loc)

    def _parse_binding_name(self) -> str:
        name = self._expect(TokenType.IDENT).value
        if self._match(TokenType.COLON):
            self._parse_type_name()
        return name

    def _parse_if(self) -> IfStmt:
        loc = self._loc()
        self._expect(TokenType.IF)
        condition = self._parse_expression()
        self._expect(TokenType.LBRACE)
        then_body = self._parse_body()
        self._expect(TokenType.RBRACE)
        else_body: list[Statement] = []
        if self._match(TokenType.ELSE):
            if self._peek() == TokenType.IF:
                else_body = [self._parse_if()]
            else:
                self._expect(TokenType.LBRACE)
                else_body = self._parse_body()
                self._expect(TokenType.RBRACE)
        return IfStmt(condition=condition, then_body=then_body, else_body=else_body, location=loc)

    def _parse_assert(self) -> AssertStmt:
        loc = self._loc()
        self._expect(TokenType.ASSERT)
        condition = self._parse_expression()
        # Cairo spells an equality assertion with a single '='
        if self._peek() == TokenType.ASSIGN:
            op_loc = self._loc()
            self._advance()
            right = self._parse_expression()
            condition = BinaryOp(op="==", left=condition, right=right, location=op_loc)
        self._expect(TokenType.SEMICOLON)
        return AssertStmt(condition=condition, location=loc)

    def _parse_return(self) -> ReturnStmt:
        loc = self._loc()
        self._expect(TokenType.RETURN)
        fields: list[tuple[Optional[str], Expr]] = []
        if self._match(TokenType.LPAREN):
            if self._peek() != TokenType.RPAREN:
                fields.append(self._parse_return_field())
                while self._match(TokenType.COMMA):
                    fields.append(self._parse_return_field())
            self._expect(TokenType.RPAREN)
        elif self._peek() != TokenType.SEMICOLON:
            fields.append((None, self._parse_expression()))
        self._expect(TokenType.SEMICOLON)
        return ReturnStmt(fields=fields, location=loc)

    def _parse_return_field(self) -> tuple[Optional[str], Expr]:
        if self._peek() == TokenType.IDENT and self._peek_at(1) == TokenType.ASSIGN:
            name = self._advance().value
            self._advance()
            return name, self._parse_expression()
        return None, self._parse_expression()

    # -------------------------------------------------------------------
    # Expressions (precedence climbing)
    # -------------------------------------------------------------------

    def parse_expression(self) -> Expr:
        return self._parse_expression()

    def _parse_expression(self) -> Expr:
        return self._parse_or()

    def _parse_or(self) -> Expr:
        left = self._parse_and()
        while self._peek() == TokenType.OR:
            loc = self._loc()
            op = _LOGICAL_OPS[self._advance().value]
            right = self._parse_and()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_and(self) -> Expr:
        left = self._parse_not()
        while self._peek() == TokenType.AND:
            loc = self._loc()
            op = _LOGICAL_OPS[self._advance().value]
            right = self._parse_not()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_not(self) -> Expr:
        if self._peek() == TokenType.NOT:
            loc = self._loc()
            self._advance()
            operand = self._parse_not()
            return UnaryOp(op="!", operand=operand, location=loc)
        return self._parse_equality()

    def _parse_equality(self) -> Expr:
        left = self._parse_comparison()
        while self._peek() in (TokenType.EQ, TokenType.NEQ):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_comparison()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_comparison(self) -> Expr:
        left = self._parse_additive()
        while self._peek() in (TokenType.LT, TokenType.GT, TokenType.LTE, TokenType.GTE):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_additive()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_additive(self) -> Expr:
        left = self._parse_multiplicative()
        while self._peek() in (TokenType.PLUS, TokenType.MINUS):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_multiplicative()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_multiplicative(self) -> Expr:
        left = self._parse_unary()
        while self._peek() in (TokenType.STAR, TokenType.SLASH, TokenType.PERCENT):
            loc = self._loc()
            op = self._advance().value
            right = self._parse_unary()
            left = BinaryOp(op=op, left=left, right=right, location=loc)
        return left

    def _parse_unary(self) -> Expr:
        if self._peek() == TokenType.MINUS:
            loc = self._loc()
            self._advance()
            operand = self._parse_unary()
            return UnaryOp(op="-", operand=operand, location=loc)
        return self._parse_power()

    def _parse_power(self) -> Expr:
        base = self._parse_postfix()
        if self._peek() == TokenType.POW:
            loc = self._loc()
            self._advance()
            exponent = self._parse_unary()
            return BinaryOp(op="**", left=base, right=exponent, location=loc)
        return base

    def _parse_postfix(self) -> Expr:
        tt = self._peek()
        loc = self._loc()
        if tt == TokenType.IDENT and self._peek_at(1) == TokenType.LPAREN:
            name = self._advance().value
            return FunctionCall(callee=name, args=self._parse_args(), location=loc)
        if (tt == TokenType.IDENT and self._peek_at(1) == TokenType.DOT
                and self._peek_at(2) == TokenType.IDENT and self._peek_at(3) == TokenType.LPAREN):
            obj = self._advance().value
            self._advance()
            method = self._advance().value
            return MethodCall(obj=obj, method_name=method, args=self._parse_args(), location=loc)
        return self._parse_primary()

    def _parse_args(self) -> list[Expr]:
        self._expect(TokenType.LPAREN)
        args: list[Expr] = []
        if self._peek() != TokenType.RPAREN:
            args.append(self._parse_arg())
            while self._match(TokenType.COMMA):
                args.append(self._parse_arg())
        self._expect(TokenType.RPAREN)
        return args

    def _parse_arg(self) -> Expr:
        # Named arguments (value=v) bind positionally
        if self._peek() == TokenType.IDENT and self._peek_at(1) == TokenType.ASSIGN:
            self._advance()
            self._advance()
        return self._parse_expression()

    def _parse_primary(self) -> Expr:
        tt = self._peek()
        loc = self._loc()

        if tt == TokenType.INT_LIT:
            tok = self._advance()
            return IntLiteral(value=int(tok.value), location=loc)

        if tt == TokenType.TRUE:
            self._advance()
            return BoolLiteral(value=True, location=loc)

        if tt == TokenType.FALSE:
            self._advance()
            return BoolLiteral(value=False, location=loc)

        if tt == TokenType.IDENT:
            tok = self._advance()
            return Identifier(name=tok.value, location=loc)

        if tt == TokenType.LOGICAL_VAR:
            tok = self._advance()
            field_name: Optional[str] = None
            if self._match(TokenType.DOT):
                field_name = self._expect(TokenType.IDENT).value
            return LogicalRef(name=tok.value, field_name=field_name, location=loc)

        if tt == TokenType.LPAREN:
            self._advance()
            expr = self._parse_expression()
            self._expect(TokenType.RPAREN)
            return expr

        raise CompileError(syntax_error(
            f"Unexpected token '{self._current().value or tt.name}'", loc,
        ))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse(source: str, filename: str = "<stdin>") -> Program:
    """Parse CAIRN source code into an AST."""
    tokens = tokenize(source, filename)
    parser = Parser(tokens, filename)
    return parser.parse()


def parser_for_fragment(text: str, location: Optional[SourceLocation],
                        filename: str = "<stdin>") -> Parser:
    """Build a parser over an annotation payload positioned at `location`."""
    if location is not None:
        lexer = Lexer(text, location.file, line=location.line, column=location.column)
        return Parser(lexer.tokenize(), location.file)
    return Parser(Lexer(text, filename).tokenize(), filename)


def parse_expression(text: str, location: Optional[SourceLocation] = None) -> Expr:
    """Parse a single standalone expression (annotation formula)."""
    parser = parser_for_fragment(text, location)
    expr = parser.parse_expression()
    parser.expect_end()
    return expr
