"""CAIRN Annotation Model — function specifications from comment clauses.

Recognised clause kinds:

  // @declare $old : felt                  typed logical variable
  // @pre balance(account) == $old         precondition (pre-state reads)
  // @post $Return.res == balance(account) postcondition (post-state reads)
  // @storage_update balance(account) := $old + amount

Storage applications in preconditions, update keys and update right-hand
sides read the pre-state map (`s@pre`); in postconditions they read the
post-state map (`s`). `$Return.<field>` names a result field and is only
legal in postconditions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from cairn.ast_nodes import (
    AnnotationClause, BinaryOp, BoolLiteral, Expr, FuncDef, FunctionCall,
    Identifier, IntLiteral, LogicalRef, MethodCall, StorageVarDecl, UnaryOp,
)
from cairn.errors import (
    CompileError, Diagnostic, SourceLocation, annotation_error, name_error,
    storage_error,
)
from cairn.formula import (
    F_AND, F_BINOP, F_BOOL, F_EQ, F_INT, F_MAP, F_NOT, F_OR, F_POW,
    F_SELECT, F_UNOP, F_VAR, Formula, FormulaKind, conjuncts,
    collect_free_vars, is_boolean, substitute_all,
)
from cairn.lexer import TokenType
from cairn.parser import parser_for_fragment


CLAUSE_KINDS = ("declare", "pre", "post", "storage_update")
LOGICAL_TYPES = ("felt", "bool")
RETURN_SELECTOR = "$Return"
PRE_SUFFIX = "@pre"


@dataclass(frozen=True)
class LogicalVariable:
    name: str
    type_name: str = "felt"
    location: Optional[SourceLocation] = None


@dataclass(frozen=True)
class StorageVariable:
    name: str
    keys: Tuple[str, ...] = ()
    value_type: str = "felt"
    location: Optional[SourceLocation] = None

    @property
    def arity(self) -> int:
        return len(self.keys)

    @classmethod
    def from_decl(cls, decl: StorageVarDecl) -> StorageVariable:
        return cls(
            name=decl.name,
            keys=tuple(k.name for k in decl.keys),
            value_type=decl.value.type_name,
            location=decl.location,
        )


@dataclass
class StorageUpdate:
    """new_s == store(old_s, keys, value); keys and value read the pre-state."""
    storage: str
    keys: Tuple[Formula, ...]
    value: Formula
    location: Optional[SourceLocation] = None


@dataclass
class FunctionSpec:
    """Contract of one function: {pre} f(params) {post} plus storage updates."""
    name: str
    params: List[str] = field(default_factory=list)
    results: List[str] = field(default_factory=list)
    logical_vars: List[LogicalVariable] = field(default_factory=list)
    preconditions: List[Formula] = field(default_factory=list)
    postconditions: List[Formula] = field(default_factory=list)
    storage_updates: Dict[str, StorageUpdate] = field(default_factory=dict)
    location: Optional[SourceLocation] = None

    @property
    def precondition(self) -> Formula:
        return F_AND(*self.preconditions)

    @property
    def postcondition(self) -> Formula:
        return F_AND(*self.postconditions)

    @property
    def bool_vars(self) -> set[str]:
        return {lv.name for lv in self.logical_vars if lv.type_name == "bool"}

    def result_var(self, field_name: str) -> str:
        return f"{RETURN_SELECTOR}.{field_name}"

    def definitions(self) -> Dict[str, Formula]:
        """Logical variables pinned by a precondition equality `$x == e`.

        Later definitions may refer to earlier ones; the returned formulas
        are fully expanded.
        """
        logical = {lv.name for lv in self.logical_vars}
        defs: Dict[str, Formula] = {}
        for clause in self.preconditions:
            for conj in conjuncts(clause):
                if conj.kind != FormulaKind.BINOP or conj.op != "==":
                    continue
                left, right = conj.children
                for var, expr in ((left, right), (right, left)):
                    if (var.kind == FormulaKind.VAR and var.name in logical
                            and var.name not in defs
                            and var.name not in collect_free_vars(expr)):
                        expr = substitute_all(expr, defs)
                        if var.name in collect_free_vars(expr):
                            continue
                        defs[var.name] = expr
                        break
        return defs

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "params": list(self.params),
            "results": list(self.results),
            "logical_vars": {lv.name: lv.type_name for lv in self.logical_vars},
            "pre": [str(f) for f in self.preconditions],
            "post": [str(f) for f in self.postconditions],
            "storage_updates": {
                name: {"keys": [str(k) for k in up.keys], "value": str(up.value)}
                for name, up in self.storage_updates.items()
            },
        }


def trivial_spec(func: FuncDef) -> FunctionSpec:
    """true => true, used for uncontracted entry points."""
    return FunctionSpec(
        name=func.name,
        params=[p.name for p in func.params],
        results=[r.name for r in func.returns],
        location=func.location,
    )


def _builtin_unsigned_div_rem() -> FunctionSpec:
    value, div = F_VAR("value"), F_VAR("div")
    q, r = F_VAR("$Return.q"), F_VAR("$Return.r")
    return FunctionSpec(
        name="unsigned_div_rem",
        params=["value", "div"],
        results=["q", "r"],
        preconditions=[F_BINOP(">", div, F_INT(0))],
        postconditions=[
            F_EQ(value, F_BINOP("+", F_BINOP("*", q, div), r)),
            F_BINOP("<=", F_INT(0), r),
            F_BINOP("<", r, div),
        ],
    )


# Contracted primitives available to every program.
BUILTINS: Dict[str, FunctionSpec] = {
    "unsigned_div_rem": _builtin_unsigned_div_rem(),
}


# ---------------------------------------------------------------------------
# Clause resolution
# ---------------------------------------------------------------------------

class _Resolver:
    """Turns an annotation expression into a Formula for one clause mode.

    mode is "pre", "post" or "update".
    """

    def __init__(self, func: FuncDef, storage: Dict[str, StorageVariable],
                 logical: Dict[str, LogicalVariable], mode: str, clause: str):
        self.func = func
        self.storage = storage
        self.logical = logical
        self.mode = mode
        self.clause = clause
        self.params = {p.name for p in func.params}
        self.results = [r.name for r in func.returns]

    def _fail(self, message: str, loc: Optional[SourceLocation]) -> CompileError:
        return CompileError(annotation_error(message, loc, clause=self.clause))

    def storage_map(self, name: str) -> Formula:
        var = self.storage[name]
        suffix = "" if self.mode == "post" else PRE_SUFFIX
        return F_MAP(var.name + suffix, var.arity)

    def resolve(self, expr: Expr) -> Formula:
        if isinstance(expr, IntLiteral):
            return F_INT(expr.value)

        if isinstance(expr, BoolLiteral):
            return F_BOOL(expr.value)

        if isinstance(expr, Identifier):
            if expr.name in self.params:
                return F_VAR(expr.name)
            if expr.name in self.storage:
                raise self._fail(
                    f"Storage variable '{expr.name}' must be applied to its keys",
                    expr.location,
                )
            raise CompileError(name_error(expr.name, expr.location, f"@{self.clause}"))

        if isinstance(expr, LogicalRef):
            return self._resolve_logical(expr)

        if isinstance(expr, FunctionCall):
            if expr.callee not in self.storage:
                raise CompileError(name_error(expr.callee, expr.location, f"@{self.clause}"))
            return self.storage_app(expr.callee, expr.args, expr.location)

        if isinstance(expr, MethodCall):
            raise self._fail(
                f"'{expr.obj}.{expr.method_name}' is not allowed in annotations; "
                f"write {expr.obj}(...) instead",
                expr.location,
            )

        if isinstance(expr, UnaryOp):
            operand = self.resolve(expr.operand)
            if expr.op == "!":
                self.require_bool(operand, expr.operand.location)
                return F_NOT(operand)
            return F_UNOP(expr.op, operand)

        if isinstance(expr, BinaryOp):
            left = self.resolve(expr.left)
            right = self.resolve(expr.right)
            if expr.op in ("&&", "||"):
                self.require_bool(left, expr.left.location)
                self.require_bool(right, expr.right.location)
                return F_AND(left, right) if expr.op == "&&" else F_OR(left, right)
            if expr.op == "**":
                try:
                    return F_POW(left, right)
                except ValueError as e:
                    raise self._fail(str(e), expr.location) from e
            return F_BINOP(expr.op, left, right)

        raise self._fail(f"Unsupported expression {type(expr).__name__}", expr.location)

    def _resolve_logical(self, expr: LogicalRef) -> Formula:
        if expr.name == RETURN_SELECTOR:
            if self.mode != "post":
                raise self._fail(f"{RETURN_SELECTOR} is only allowed in @post", expr.location)
            field_name = expr.field_name
            if field_name is None:
                if len(self.results) != 1:
                    raise self._fail(
                        f"{RETURN_SELECTOR} needs a field name; '{self.func.name}' "
                        f"returns {len(self.results)} values",
                        expr.location,
                    )
                field_name = self.results[0]
            if field_name not in self.results:
                raise CompileError(name_error(
                    f"{RETURN_SELECTOR}.{field_name}", expr.location,
                    f"results of '{self.func.name}'",
                ))
            return F_VAR(f"{RETURN_SELECTOR}.{field_name}")

        if expr.field_name is not None:
            raise self._fail(f"Logical variable '{expr.name}' has no fields", expr.location)
        if expr.name not in self.logical:
            raise self._fail(f"Undeclared logical variable '{expr.name}'", expr.location)
        return F_VAR(expr.name)

    def storage_app(self, name: str, args: List[Expr],
                    loc: Optional[SourceLocation]) -> Formula:
        var = self.storage[name]
        if len(args) != var.arity:
            raise CompileError(storage_error(
                name, f"expects {var.arity} key(s), got {len(args)}", loc,
            ))
        keys = [self.resolve(a) for a in args]
        for key, arg in zip(keys, args):
            if is_boolean(key, self.bool_vars):
                raise self._fail("Storage keys must be felt values", arg.location)
        return F_SELECT(self.storage_map(name), keys)

    @property
    def bool_vars(self) -> set[str]:
        return {name for name, lv in self.logical.items() if lv.type_name == "bool"}

    def require_bool(self, f: Formula, loc: Optional[SourceLocation]) -> None:
        if not is_boolean(f, self.bool_vars):
            raise self._fail("Expected a boolean formula", loc)


# ---------------------------------------------------------------------------
# Spec construction
# ---------------------------------------------------------------------------

def _parse_declaration(clause: AnnotationClause) -> LogicalVariable:
    parser = parser_for_fragment(clause.text, clause.text_location)
    tok = parser.expect(TokenType.LOGICAL_VAR)
    if tok.value == RETURN_SELECTOR:
        raise CompileError(annotation_error(
            f"'{RETURN_SELECTOR}' is reserved", tok.location, clause="declare",
        ))
    parser.expect(TokenType.COLON)
    type_tok = parser.expect(TokenType.IDENT)
    parser.expect_end()
    if type_tok.value not in LOGICAL_TYPES:
        raise CompileError(annotation_error(
            f"Unsupported logical type '{type_tok.value}'", type_tok.location,
            clause="declare",
        ))
    return LogicalVariable(name=tok.value, type_name=type_tok.value, location=tok.location)


def _parse_formula(clause: AnnotationClause, resolver: _Resolver) -> Formula:
    parser = parser_for_fragment(clause.text, clause.text_location)
    expr = parser.parse_expression()
    parser.expect_end()
    formula = resolver.resolve(expr)
    resolver.require_bool(formula, expr.location)
    return formula


def _parse_update(clause: AnnotationClause, resolver: _Resolver) -> StorageUpdate:
    parser = parser_for_fragment(clause.text, clause.text_location)
    target = parser.parse_expression()
    parser.expect(TokenType.WALRUS)
    rhs = parser.parse_expression()
    parser.expect_end()

    if not isinstance(target, FunctionCall):
        raise CompileError(annotation_error(
            "Expected a storage application 's(k...)' before ':='",
            target.location, clause="storage_update",
        ))
    if target.callee not in resolver.storage:
        raise CompileError(name_error(target.callee, target.location, "@storage_update"))

    var = resolver.storage[target.callee]
    if len(target.args) != var.arity:
        raise CompileError(storage_error(
            var.name, f"expects {var.arity} key(s), got {len(target.args)}", target.location,
        ))
    keys = tuple(resolver.resolve(a) for a in target.args)
    value = resolver.resolve(rhs)
    if is_boolean(value, resolver.bool_vars):
        raise CompileError(annotation_error(
            "Storage update value must be a felt", rhs.location, clause="storage_update",
        ))
    return StorageUpdate(storage=var.name, keys=keys, value=value, location=clause.location)


def build_spec(func: FuncDef, storage: Dict[str, StorageVariable]) -> FunctionSpec:
    """Parse a function's annotation clauses into a FunctionSpec.

    All clause errors are collected and raised together as one CompileError.
    """
    errors: List[Diagnostic] = []
    logical: Dict[str, LogicalVariable] = {}

    for clause in func.annotations:
        if clause.kind not in CLAUSE_KINDS:
            errors.append(annotation_error(
                f"Unknown annotation '@{clause.kind}'", clause.location, clause=clause.kind,
            ))
        elif clause.kind == "declare":
            try:
                lv = _parse_declaration(clause)
            except CompileError as e:
                errors.extend(e.errors)
                continue
            if lv.name in logical:
                errors.append(annotation_error(
                    f"Duplicate declaration of '{lv.name}'", lv.location, clause="declare",
                ))
                continue
            logical[lv.name] = lv

    spec = FunctionSpec(
        name=func.name,
        params=[p.name for p in func.params],
        results=[r.name for r in func.returns],
        logical_vars=list(logical.values()),
        location=func.location,
    )

    for clause in func.annotations:
        if clause.kind not in ("pre", "post", "storage_update"):
            continue
        mode = "update" if clause.kind == "storage_update" else clause.kind
        resolver = _Resolver(func, storage, logical, mode, clause.kind)
        try:
            if clause.kind == "pre":
                spec.preconditions.append(_parse_formula(clause, resolver))
            elif clause.kind == "post":
                spec.postconditions.append(_parse_formula(clause, resolver))
            else:
                update = _parse_update(clause, resolver)
                if update.storage in spec.storage_updates:
                    errors.append(annotation_error(
                        f"Duplicate @storage_update for '{update.storage}'",
                        clause.location, clause="storage_update",
                    ))
                else:
                    spec.storage_updates[update.storage] = update
        except CompileError as e:
            errors.extend(e.errors)

    if errors:
        raise CompileError(errors)
    return spec
