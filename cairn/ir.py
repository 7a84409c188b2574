"""CAIRN Program IR — function bodies as ProgramNode trees.

Node kinds:

  Assign       x := e
  Assume       restrict the path to states where a condition holds (assert)
  StorageRead  x := s(K)
  StorageWrite s(K) := v
  Call         (r1, ..., rn) := f(args) for a contracted callee
  Return       leave the function, or bind an inlined helper's results
  Branch       if c then A else B
  Sequence     A; B; ...
  Inline       expanded body of an uncontracted helper

Expressions inside nodes are already Formulas over local names. Locals of an
inlined helper are renamed `helper#site.name` so every expansion is unique.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from cairn.annotations import BUILTINS, StorageVariable
from cairn.ast_nodes import (
    AssertStmt, BinaryOp, BoolLiteral, Expr, ExprStmt, FuncDef, FunctionCall,
    Identifier, IfStmt, IntLiteral, LetStmt, LogicalRef, MethodCall, Program,
    ReturnStmt, Statement, UnaryOp,
)
from cairn.errors import (
    CompileError, SourceLocation, call_error, name_error, storage_error,
    syntax_error,
)
from cairn.formula import (
    F_AND, F_BINOP, F_BOOL, F_INT, F_NOT, F_OR, F_POW, F_UNOP, F_VAR, Formula,
    is_boolean,
)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

@dataclass
class Node:
    location: Optional[SourceLocation] = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"node": type(self).__name__}
        if self.location:
            d["line"] = self.location.line
        return d


@dataclass
class Assign(Node):
    target: str = ""
    value: Formula = field(default_factory=lambda: F_INT(0))

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "target": self.target, "value": str(self.value)}


@dataclass
class Assume(Node):
    condition: Formula = field(default_factory=lambda: F_BOOL(True))

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "condition": str(self.condition)}


@dataclass
class StorageRead(Node):
    target: str = ""
    storage: str = ""
    keys: Tuple[Formula, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "target": self.target, "storage": self.storage,
                "keys": [str(k) for k in self.keys]}


@dataclass
class StorageWrite(Node):
    storage: str = ""
    keys: Tuple[Formula, ...] = ()
    value: Formula = field(default_factory=lambda: F_INT(0))

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "storage": self.storage,
                "keys": [str(k) for k in self.keys], "value": str(self.value)}


@dataclass
class Call(Node):
    callee: str = ""
    args: Tuple[Formula, ...] = ()
    results: Tuple[str, ...] = ()
    site: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "callee": self.callee, "site": self.site,
                "args": [str(a) for a in self.args], "results": list(self.results)}


@dataclass
class Return(Node):
    """fields are (result name, value) in declaration order.

    bind_to is set for returns inside an inlined helper: the values are bound
    to the caller's names and execution continues after the Inline node.
    """
    fields: Tuple[Tuple[str, Formula], ...] = ()
    bind_to: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> dict[str, Any]:
        d = {**super().to_dict(), "fields": {n: str(v) for n, v in self.fields}}
        if self.bind_to is not None:
            d["bind_to"] = list(self.bind_to)
        return d


@dataclass
class Branch(Node):
    condition: Formula = field(default_factory=lambda: F_BOOL(True))
    then_node: Node = field(default_factory=lambda: Sequence())
    else_node: Node = field(default_factory=lambda: Sequence())

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "condition": str(self.condition),
                "then": self.then_node.to_dict(), "else": self.else_node.to_dict()}


@dataclass
class Sequence(Node):
    nodes: List[Node] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "nodes": [n.to_dict() for n in self.nodes]}


@dataclass
class Inline(Node):
    callee: str = ""
    body: Node = field(default_factory=lambda: Sequence())
    site: int = 0
    has_results: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "callee": self.callee, "site": self.site,
                "body": self.body.to_dict()}


@dataclass
class CallSite:
    callee: str
    site: int
    location: Optional[SourceLocation] = None


@dataclass
class FunctionIR:
    name: str
    params: List[str]
    results: List[str]
    body: Node
    call_sites: List[CallSite] = field(default_factory=list)
    inline_sites: List[CallSite] = field(default_factory=list)
    writes: Dict[str, SourceLocation] = field(default_factory=dict)
    bool_locals: Set[str] = field(default_factory=set)
    location: Optional[SourceLocation] = None

    @property
    def callees(self) -> List[str]:
        """Contracted callees in first-call order (builtins included)."""
        seen: List[str] = []
        for cs in self.call_sites:
            if cs.callee not in seen:
                seen.append(cs.callee)
        return seen

    @property
    def inlined(self) -> List[str]:
        seen: List[str] = []
        for cs in self.inline_sites:
            if cs.callee not in seen:
                seen.append(cs.callee)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "params": self.params,
            "results": self.results,
            "calls": [cs.callee for cs in self.call_sites],
            "inlined": self.inlined,
            "writes": sorted(self.writes),
            "body": self.body.to_dict(),
        }


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

@dataclass
class _Frame:
    """One function body being translated (the root or an inlined helper)."""
    func: FuncDef
    prefix: str = ""
    bind_to: Optional[Tuple[str, ...]] = None

    def rename(self, name: str) -> str:
        return self.prefix + name


class IRBuilder:
    """Translates FuncDef bodies into FunctionIR.

    A function is contracted when it carries annotations or is a builtin;
    calls to contracted functions stay Call nodes, all other calls are
    expanded in place.
    """

    def __init__(self, program: Program):
        self.program = program
        self.functions: Dict[str, FuncDef] = {f.name: f for f in program.functions}
        self.storage: Dict[str, StorageVariable] = {
            d.name: StorageVariable.from_decl(d) for d in program.storage_vars
        }

    def is_contracted(self, name: str) -> bool:
        if name in self.functions:
            return self.functions[name].has_contract
        return name in BUILTINS

    def _signature(self, name: str) -> Tuple[List[str], List[str]]:
        if name in self.functions:
            f = self.functions[name]
            return [p.name for p in f.params], [r.name for r in f.returns]
        spec = BUILTINS[name]
        return list(spec.params), list(spec.results)

    def build(self, func: FuncDef) -> FunctionIR:
        self._ir = FunctionIR(
            name=func.name,
            params=[p.name for p in func.params],
            results=[r.name for r in func.returns],
            body=Sequence(),
            location=func.location,
        )
        self._site = 0
        self._stack: List[str] = [func.name]
        frame = _Frame(func=func)
        scope = set(self._ir.params)
        body, _ = self._build_block(func.body, frame, scope)
        self._ir.body = body
        return self._ir

    def _next_site(self) -> int:
        self._site += 1
        return self._site

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _build_block(self, stmts: List[Statement], frame: _Frame,
                     scope: Set[str]) -> Tuple[Sequence, Set[str]]:
        scope = set(scope)
        nodes: List[Node] = []
        for stmt in stmts:
            node, scope = self._build_stmt(stmt, frame, scope)
            nodes.append(node)
        return Sequence(nodes=nodes, location=stmts[0].location if stmts else None), scope

    def _build_stmt(self, stmt: Statement, frame: _Frame,
                    scope: Set[str]) -> Tuple[Node, Set[str]]:
        if isinstance(stmt, LetStmt):
            return self._build_let(stmt, frame, scope)

        if isinstance(stmt, ExprStmt):
            expr = stmt.expr
            if isinstance(expr, MethodCall):
                return self._build_method_stmt(expr, frame, scope), scope
            if isinstance(expr, FunctionCall):
                node = self._build_call(expr, None, frame, scope, stmt.location)
                return node, scope
            raise CompileError(syntax_error(
                "Expression statement has no effect", stmt.location,
            ))

        if isinstance(stmt, AssertStmt):
            cond = self._cond(stmt.condition, frame, scope)
            return Assume(condition=cond, location=stmt.location), scope

        if isinstance(stmt, IfStmt):
            cond = self._cond(stmt.condition, frame, scope)
            then_node, then_scope = self._build_block(stmt.then_body, frame, scope)
            else_node, else_scope = self._build_block(stmt.else_body, frame, scope)
            node = Branch(condition=cond, then_node=then_node, else_node=else_node,
                          location=stmt.location)
            return node, scope | (then_scope & else_scope)

        if isinstance(stmt, ReturnStmt):
            return self._build_return(stmt, frame, scope), scope

        raise CompileError(syntax_error(
            f"Unsupported statement {type(stmt).__name__}", stmt.location,
        ))

    def _build_let(self, stmt: LetStmt, frame: _Frame,
                   scope: Set[str]) -> Tuple[Node, Set[str]]:
        value = stmt.value
        if frame.bind_to is None:
            for n in stmt.names:
                if n in self._ir.params:
                    raise CompileError(syntax_error(
                        f"Cannot rebind parameter '{n}'", stmt.location,
                    ))
        targets = tuple(frame.rename(n) for n in stmt.names)

        if isinstance(value, FunctionCall):
            node = self._build_call(value, targets, frame, scope, stmt.location)
            return node, scope | set(targets)

        if len(stmt.names) != 1:
            raise CompileError(syntax_error(
                f"Cannot destructure {len(stmt.names)} names from a single value",
                stmt.location,
            ))
        target = targets[0]

        if isinstance(value, MethodCall):
            var = self._storage_var(value.obj, value.location)
            if value.method_name != "read":
                raise CompileError(storage_error(
                    var.name, f"'{value.method_name}' does not produce a value", value.location,
                ))
            keys = self._storage_keys(var, value.args, var.arity, frame, scope, value.location)
            node = StorageRead(target=target, storage=var.name, keys=keys, location=stmt.location)
            return node, scope | {target}

        formula = self._expr(value, frame, scope)
        if is_boolean(formula, self._ir.bool_locals):
            self._ir.bool_locals.add(target)
        else:
            self._ir.bool_locals.discard(target)
        return Assign(target=target, value=formula, location=stmt.location), scope | {target}

    def _build_method_stmt(self, expr: MethodCall, frame: _Frame,
                           scope: Set[str]) -> Node:
        var = self._storage_var(expr.obj, expr.location)
        if expr.method_name != "write":
            raise CompileError(storage_error(
                var.name, f"'{expr.method_name}' must be bound with let", expr.location,
            ))
        if len(expr.args) != var.arity + 1:
            raise CompileError(storage_error(
                var.name,
                f"write expects {var.arity} key(s) and a value, got {len(expr.args)} argument(s)",
                expr.location,
            ))
        keys = self._storage_keys(var, expr.args[:-1], var.arity, frame, scope, expr.location)
        value = self._felt(expr.args[-1], frame, scope)
        self._ir.writes.setdefault(var.name, expr.location)
        return StorageWrite(storage=var.name, keys=keys, value=value, location=expr.location)

    def _build_return(self, stmt: ReturnStmt, frame: _Frame, scope: Set[str]) -> Return:
        declared = [r.name for r in frame.func.returns]
        if len(stmt.fields) != len(declared):
            raise CompileError(call_error(
                frame.func.name,
                f"return provides {len(stmt.fields)} value(s), declared {len(declared)}",
                stmt.location,
            ))
        values: Dict[str, Formula] = {}
        for i, (name, expr) in enumerate(stmt.fields):
            name = name if name is not None else declared[i]
            if name not in declared:
                raise CompileError(name_error(name, stmt.location, f"results of '{frame.func.name}'"))
            if name in values:
                raise CompileError(syntax_error(f"Result '{name}' returned twice", stmt.location))
            values[name] = self._expr(expr, frame, scope)
        fields = tuple((name, values[name]) for name in declared)
        return Return(fields=fields, bind_to=frame.bind_to, location=stmt.location)

    # -------------------------------------------------------------------
    # Calls and inlining
    # -------------------------------------------------------------------

    def _build_call(self, expr: FunctionCall, targets: Optional[Tuple[str, ...]],
                    frame: _Frame, scope: Set[str], loc: Optional[SourceLocation]) -> Node:
        name = expr.callee
        if name in self.storage:
            raise CompileError(storage_error(
                name, "use .read(...) or .write(...) to access storage", expr.location,
            ))
        if name not in self.functions and name not in BUILTINS:
            raise CompileError(call_error(name, "undefined function", expr.location))

        params, results = self._signature(name)
        if len(expr.args) != len(params):
            raise CompileError(call_error(
                name, f"expects {len(params)} argument(s), got {len(expr.args)}", expr.location,
            ))
        site = self._next_site()
        if targets is None:
            targets = tuple(f"{name}#{site}.{r}" for r in results)
        elif len(targets) != len(results):
            raise CompileError(call_error(
                name, f"returns {len(results)} value(s), {len(targets)} bound", expr.location,
            ))
        args = tuple(self._felt(a, frame, scope) for a in expr.args)

        if self.is_contracted(name):
            self._ir.call_sites.append(CallSite(callee=name, site=site, location=loc))
            return Call(callee=name, args=args, results=targets, site=site, location=loc)

        if name in self._stack:
            chain = " -> ".join(self._stack + [name])
            raise CompileError(call_error(name, f"recursive inlining ({chain})", expr.location))

        self._ir.inline_sites.append(CallSite(callee=name, site=site, location=loc))
        callee = self.functions[name]
        inner = _Frame(func=callee, prefix=f"{name}#{site}.", bind_to=targets)
        binds: List[Node] = [
            Assign(target=inner.rename(p), value=a, location=loc)
            for p, a in zip(params, args)
        ]
        self._stack.append(name)
        try:
            body, _ = self._build_block(callee.body, inner, {inner.rename(p) for p in params})
        finally:
            self._stack.pop()
        return Inline(
            callee=name,
            body=Sequence(nodes=binds + [body], location=callee.location),
            site=site,
            has_results=bool(results),
            location=loc,
        )

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _storage_var(self, name: str, loc: Optional[SourceLocation]) -> StorageVariable:
        if name not in self.storage:
            raise CompileError(storage_error(name, "not declared with @storage_var", loc))
        return self.storage[name]

    def _storage_keys(self, var: StorageVariable, args: List[Expr], arity: int,
                      frame: _Frame, scope: Set[str],
                      loc: Optional[SourceLocation]) -> Tuple[Formula, ...]:
        if len(args) != arity:
            raise CompileError(storage_error(
                var.name, f"expects {arity} key(s), got {len(args)}", loc,
            ))
        return tuple(self._felt(a, frame, scope) for a in args)

    def _felt(self, expr: Expr, frame: _Frame, scope: Set[str]) -> Formula:
        f = self._expr(expr, frame, scope)
        if is_boolean(f, self._ir.bool_locals):
            raise CompileError(syntax_error("Expected a felt value, got a condition", expr.location))
        return f

    def _cond(self, expr: Expr, frame: _Frame, scope: Set[str]) -> Formula:
        f = self._expr(expr, frame, scope)
        if is_boolean(f, self._ir.bool_locals):
            return f
        return F_BINOP("!=", f, F_INT(0))

    def _expr(self, expr: Expr, frame: _Frame, scope: Set[str]) -> Formula:
        if isinstance(expr, IntLiteral):
            return F_INT(expr.value)

        if isinstance(expr, BoolLiteral):
            return F_BOOL(expr.value)

        if isinstance(expr, Identifier):
            name = frame.rename(expr.name)
            if name not in scope:
                raise CompileError(name_error(expr.name, expr.location, f"function '{frame.func.name}'"))
            return F_VAR(name)

        if isinstance(expr, UnaryOp):
            if expr.op == "!":
                return F_NOT(self._cond(expr.operand, frame, scope))
            return F_UNOP(expr.op, self._felt(expr.operand, frame, scope))

        if isinstance(expr, BinaryOp):
            if expr.op in ("&&", "||"):
                left = self._cond(expr.left, frame, scope)
                right = self._cond(expr.right, frame, scope)
                return F_AND(left, right) if expr.op == "&&" else F_OR(left, right)
            left = self._expr(expr.left, frame, scope)
            right = self._expr(expr.right, frame, scope)
            if expr.op == "**":
                try:
                    return F_POW(left, right)
                except ValueError as e:
                    raise CompileError(syntax_error(str(e), expr.location)) from e
            return F_BINOP(expr.op, left, right)

        if isinstance(expr, FunctionCall):
            raise CompileError(call_error(
                expr.callee, "calls must be statements or bound with let", expr.location,
            ))

        if isinstance(expr, MethodCall):
            raise CompileError(storage_error(
                expr.obj, "storage accesses must be statements or bound with let", expr.location,
            ))

        if isinstance(expr, LogicalRef):
            raise CompileError(syntax_error(
                f"Logical variable '{expr.name}' may only appear in annotations", expr.location,
            ))

        raise CompileError(syntax_error(f"Unsupported expression {type(expr).__name__}", expr.location))


def build_ir(program: Program, func: FuncDef) -> FunctionIR:
    """Convenience function to build the IR of one function."""
    return IRBuilder(program).build(func)
