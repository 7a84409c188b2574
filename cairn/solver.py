"""CAIRN Solver Interface — discharges VerificationConditions with Z3.

Encoding:
  felt symbols and locals  -> Int
  bool logical variables   -> Bool
  storage map of arity n   -> Array(Int, Array(Int, ... Int)), arity 0 -> Int

Validity of the conjunction of obligations is checked by asking Z3 for a
model of its negation: unsat -> Verified, sat -> Falsified, anything else
(timeout, interrupt, incomplete theory) -> undecided.

Every query runs in its own z3.Context so that concurrent discharges never
share solver state, and `cancel()` can interrupt exactly the running query.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

import z3

from cairn.formula import Formula, FormulaKind
from cairn.vcgen import VerificationCondition

logger = logging.getLogger(__name__)


class SolverStatus(Enum):
    UNSAT = "unsat"
    SAT = "sat"
    UNKNOWN = "unknown"


@dataclass
class SolverOutcome:
    status: SolverStatus
    model: Dict[str, Any] = field(default_factory=dict)
    failed: Optional[int] = None        # index of the first violated obligation
    reason: str = ""
    duration_ms: float = 0.0


class _Encoder:
    """Formula -> Z3 translation inside one context."""

    def __init__(self, ctx: z3.Context, bool_vars: Set[str], word_bits: Optional[int] = None):
        self.ctx = ctx
        self.bool_vars = bool_vars
        self.modulus = 2 ** word_bits if word_bits else None
        self.vars: Dict[str, Any] = {}
        self.maps: Dict[str, Any] = {}
        self.side_conditions: List[Any] = []

    def _in_range(self, term: Any) -> Any:
        return z3.And(term >= 0, term < self.modulus)

    def _wrap(self, term: Any) -> Any:
        if self.modulus is None:
            return term
        return term % self.modulus

    def _map_sort(self, arity: int) -> z3.SortRef:
        sort = z3.IntSort(self.ctx)
        for _ in range(arity):
            sort = z3.ArraySort(z3.IntSort(self.ctx), sort)
        return sort

    def _var(self, name: str) -> Any:
        if name not in self.vars:
            if name in self.bool_vars:
                self.vars[name] = z3.Bool(name, self.ctx)
            else:
                self.vars[name] = z3.Int(name, self.ctx)
                if self.modulus is not None:
                    self.side_conditions.append(self._in_range(self.vars[name]))
        return self.vars[name]

    def _map(self, name: str, arity: int) -> Any:
        if name not in self.maps:
            self.maps[name] = z3.Const(name, self._map_sort(arity))
            if arity == 0 and self.modulus is not None:
                self.side_conditions.append(self._in_range(self.maps[name]))
        return self.maps[name]

    def _store(self, m: Any, keys: List[Any], value: Any) -> Any:
        if len(keys) == 1:
            return z3.Store(m, keys[0], value)
        return z3.Store(m, keys[0], self._store(z3.Select(m, keys[0]), keys[1:], value))

    def encode(self, formula: Formula, bound: Optional[Dict[str, Any]] = None) -> Any:
        bound = bound or {}
        kind = formula.kind

        if kind == FormulaKind.TRUE:
            return z3.BoolVal(True, self.ctx)
        if kind == FormulaKind.FALSE:
            return z3.BoolVal(False, self.ctx)
        if kind == FormulaKind.INT_CONST:
            return z3.IntVal(formula.int_val, self.ctx)

        if kind == FormulaKind.VAR:
            if formula.name in bound:
                return bound[formula.name]
            return self._var(formula.name)

        if kind == FormulaKind.MAP:
            return self._map(formula.name, formula.int_val)

        if kind == FormulaKind.SELECT:
            term = self.encode(formula.children[0], bound)
            for key in formula.children[1:]:
                term = z3.Select(term, self.encode(key, bound))
            if self.modulus is not None and not bound:
                self.side_conditions.append(self._in_range(term))
            return term

        if kind == FormulaKind.STORE:
            m = self.encode(formula.children[0], bound)
            keys = [self.encode(k, bound) for k in formula.children[1:-1]]
            return self._store(m, keys, self.encode(formula.children[-1], bound))

        if kind == FormulaKind.BINOP:
            left = self.encode(formula.children[0], bound)
            right = self.encode(formula.children[1], bound)
            ops = {
                "+": lambda l, r: self._wrap(l + r),
                "-": lambda l, r: self._wrap(l - r),
                "*": lambda l, r: self._wrap(l * r),
                "/": lambda l, r: l / r,
                "%": lambda l, r: l % r,
                "==": lambda l, r: l == r,
                "!=": lambda l, r: l != r,
                ">=": lambda l, r: l >= r,
                "<=": lambda l, r: l <= r,
                ">": lambda l, r: l > r,
                "<": lambda l, r: l < r,
            }
            if formula.op not in ops:
                raise ValueError(f"unsupported operator '{formula.op}'")
            return ops[formula.op](left, right)

        if kind == FormulaKind.UNOP:
            inner = self.encode(formula.children[0], bound)
            if formula.op == "-":
                return self._wrap(-inner)
            raise ValueError(f"unsupported unary operator '{formula.op}'")

        if kind == FormulaKind.AND:
            return z3.And(*[self.encode(c, bound) for c in formula.children])
        if kind == FormulaKind.OR:
            return z3.Or(*[self.encode(c, bound) for c in formula.children])
        if kind == FormulaKind.NOT:
            return z3.Not(self.encode(formula.children[0], bound))
        if kind == FormulaKind.IMPLIES:
            return z3.Implies(self.encode(formula.children[0], bound),
                              self.encode(formula.children[1], bound))

        if kind in (FormulaKind.FORALL, FormulaKind.EXISTS):
            if formula.sort == "bool":
                var = z3.Bool(formula.quant_var, self.ctx)
            else:
                var = z3.Int(formula.quant_var, self.ctx)
            inner_bound = {**bound, formula.quant_var: var}
            body = self.encode(formula.children[0], inner_bound)
            if self.modulus is not None and formula.sort != "bool":
                guard = self._in_range(var)
                body = z3.Implies(guard, body) if kind == FormulaKind.FORALL else z3.And(guard, body)
            if kind == FormulaKind.FORALL:
                return z3.ForAll([var], body)
            return z3.Exists([var], body)

        raise ValueError(f"cannot encode formula kind {kind.name}")


def _model_value(value: Any) -> Any:
    if z3.is_int_value(value):
        return value.as_long()
    if z3.is_true(value):
        return True
    if z3.is_false(value):
        return False
    return str(value)


class Discharger:
    """Checks VerificationConditions; one fresh Z3 context per query."""

    def __init__(self, timeout_ms: int = 10000, word_bits: Optional[int] = None):
        self.timeout_ms = timeout_ms
        self.word_bits = word_bits
        self._lock = threading.Lock()
        self._ctx: Optional[z3.Context] = None
        self._cancelled = False

    def cancel(self) -> None:
        """Interrupt the running query; later queries return undecided."""
        with self._lock:
            self._cancelled = True
            if self._ctx is not None:
                self._ctx.interrupt()

    def check(self, vc: VerificationCondition) -> SolverOutcome:
        start = time.monotonic()
        if not vc.obligations:
            return SolverOutcome(status=SolverStatus.UNSAT)

        ctx = z3.Context()
        with self._lock:
            if self._cancelled:
                return SolverOutcome(status=SolverStatus.UNKNOWN, reason="cancelled")
            self._ctx = ctx

        try:
            encoder = _Encoder(ctx, vc.bool_vars, self.word_bits)
            goals = [encoder.encode(ob.formula) for ob in vc.obligations]

            solver = z3.Solver(ctx=ctx)
            solver.set("timeout", self.timeout_ms)
            for cond in encoder.side_conditions:
                solver.add(cond)
            solver.add(z3.Not(z3.And(*goals)))

            result = solver.check()
            outcome = self._classify(result, solver, goals, encoder)
        except z3.Z3Exception as e:
            outcome = SolverOutcome(status=SolverStatus.UNKNOWN, reason=str(e))
        finally:
            with self._lock:
                self._ctx = None

        if self._cancelled and outcome.status == SolverStatus.UNKNOWN:
            outcome.reason = "cancelled"
        outcome.duration_ms = (time.monotonic() - start) * 1000
        logger.debug("%s: %s in %.1f ms %s", vc.function, outcome.status.value,
                     outcome.duration_ms, outcome.reason)
        return outcome

    def _classify(self, result: Any, solver: z3.Solver, goals: List[Any],
                  encoder: _Encoder) -> SolverOutcome:
        if result == z3.unsat:
            return SolverOutcome(status=SolverStatus.UNSAT)

        if result == z3.sat:
            model = solver.model()
            failed = None
            for i, goal in enumerate(goals):
                if z3.is_false(model.eval(goal, model_completion=True)):
                    failed = i
                    break
            values = {
                name: _model_value(model.eval(var, model_completion=True))
                for name, var in encoder.vars.items()
            }
            return SolverOutcome(status=SolverStatus.SAT, model=values, failed=failed)

        return SolverOutcome(status=SolverStatus.UNKNOWN, reason=solver.reason_unknown())
