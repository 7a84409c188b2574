"""CAIRN AST Node definitions.

Top-level constructs: storage variables (`@storage_var func ...`) and
functions (`func ...`) preceded by their annotation comments.
Statements cover the Cairo subset the verifier understands: let-style
bindings (with destructuring), storage reads and writes, calls, asserts,
conditionals and named returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from cairn.errors import SourceLocation


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------

@dataclass
class Expr:
    location: Optional[SourceLocation] = None


@dataclass
class IntLiteral(Expr):
    value: int = 0


@dataclass
class BoolLiteral(Expr):
    value: bool = False


@dataclass
class Identifier(Expr):
    name: str = ""


@dataclass
class LogicalRef(Expr):
    """`$name` or `$Return.field` inside an annotation."""
    name: str = ""
    field_name: Optional[str] = None


@dataclass
class BinaryOp(Expr):
    op: str = ""
    left: Expr = field(default_factory=Expr)
    right: Expr = field(default_factory=Expr)


@dataclass
class UnaryOp(Expr):
    op: str = ""
    operand: Expr = field(default_factory=Expr)


@dataclass
class FunctionCall(Expr):
    callee: str = ""
    args: list[Expr] = field(default_factory=list)


@dataclass
class MethodCall(Expr):
    """`balance.read(k)` / `balance.write(k, v)`."""
    obj: str = ""
    method_name: str = ""
    args: list[Expr] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

@dataclass
class Statement:
    location: Optional[SourceLocation] = None


@dataclass
class LetStmt(Statement):
    """let x = e;  tempvar x = e;  local x = e;  let (a, b) = f(...);"""
    names: list[str] = field(default_factory=list)
    value: Expr = field(default_factory=Expr)
    destructure: bool = False
    binder: str = "let"


@dataclass
class ExprStmt(Statement):
    expr: Expr = field(default_factory=Expr)


@dataclass
class AssertStmt(Statement):
    condition: Expr = field(default_factory=Expr)


@dataclass
class IfStmt(Statement):
    condition: Expr = field(default_factory=Expr)
    then_body: list[Statement] = field(default_factory=list)
    else_body: list[Statement] = field(default_factory=list)


@dataclass
class ReturnStmt(Statement):
    """return (res=a, rem=b);  field names are None for positional returns."""
    fields: list[tuple[Optional[str], Expr]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

@dataclass
class Parameter:
    name: str
    type_name: str = "felt"
    location: Optional[SourceLocation] = None


@dataclass
class AnnotationClause:
    """One `// @kind payload` comment line."""
    kind: str
    text: str
    location: Optional[SourceLocation] = None
    text_location: Optional[SourceLocation] = None


@dataclass
class Declaration:
    location: Optional[SourceLocation] = None


@dataclass
class StorageVarDecl(Declaration):
    name: str = ""
    keys: list[Parameter] = field(default_factory=list)
    value: Parameter = field(default_factory=lambda: Parameter(name="res"))


@dataclass
class FuncDef(Declaration):
    name: str = ""
    params: list[Parameter] = field(default_factory=list)
    returns: list[Parameter] = field(default_factory=list)
    annotations: list[AnnotationClause] = field(default_factory=list)
    body: list[Statement] = field(default_factory=list)

    @property
    def has_contract(self) -> bool:
        return bool(self.annotations)


# ---------------------------------------------------------------------------
# Program (root node)
# ---------------------------------------------------------------------------

@dataclass
class Program:
    declarations: list[Declaration] = field(default_factory=list)
    filename: str = "<stdin>"

    @property
    def functions(self) -> list[FuncDef]:
        return [d for d in self.declarations if isinstance(d, FuncDef)]

    @property
    def storage_vars(self) -> list[StorageVarDecl]:
        return [d for d in self.declarations if isinstance(d, StorageVarDecl)]
