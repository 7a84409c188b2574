"""Logical formulas for verification conditions.

Formulas are immutable frozen dataclass trees. Besides the usual first-order
connectives and integer arithmetic they carry three storage constructors:

  MAP     a storage map symbol (`balance`, `balance@pre`, `balance@f#2`)
  SELECT  s(k1, ..., kn)            read of a map at a key tuple
  STORE   s[k1, ..., kn := v]       map with one key tuple updated

A map of arity 0 is a single value, so SELECT and STORE collapse for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Dict, List, Optional, Sequence, Set, Tuple


class FormulaKind(Enum):
    TRUE = auto()
    FALSE = auto()
    VAR = auto()
    INT_CONST = auto()
    BINOP = auto()
    UNOP = auto()
    AND = auto()
    OR = auto()
    NOT = auto()
    IMPLIES = auto()
    FORALL = auto()
    EXISTS = auto()
    MAP = auto()              # storage map symbol, int_val = key arity
    SELECT = auto()           # children = (map, k1, ..., kn)
    STORE = auto()            # children = (map, k1, ..., kn, value)


ARITH_OPS = frozenset({"+", "-", "*", "/", "%"})
COMPARE_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})

# Largest literal exponent expanded into repeated multiplication
MAX_SYMBOLIC_EXPONENT = 8


@dataclass(frozen=True)
class Formula:
    """A first-order formula over integers, booleans and storage maps."""
    kind: FormulaKind
    name: str = ""                          # VAR, MAP
    int_val: int = 0                        # INT_CONST, MAP arity
    op: str = ""                            # BINOP, UNOP
    children: Tuple[Formula, ...] = ()      # sub-formulas
    quant_var: str = ""                     # FORALL/EXISTS bound variable
    sort: str = "felt"                      # FORALL/EXISTS bound variable sort

    def __str__(self) -> str:
        if self.kind == FormulaKind.TRUE:
            return "true"
        if self.kind == FormulaKind.FALSE:
            return "false"
        if self.kind in (FormulaKind.VAR, FormulaKind.MAP):
            return self.name
        if self.kind == FormulaKind.INT_CONST:
            return str(self.int_val)
        if self.kind == FormulaKind.BINOP:
            return f"({self.children[0]} {self.op} {self.children[1]})"
        if self.kind == FormulaKind.UNOP:
            return f"({self.op}{self.children[0]})"
        if self.kind == FormulaKind.AND:
            return "(" + " /\\ ".join(str(c) for c in self.children) + ")"
        if self.kind == FormulaKind.OR:
            return "(" + " \\/ ".join(str(c) for c in self.children) + ")"
        if self.kind == FormulaKind.NOT:
            return f"!({self.children[0]})"
        if self.kind == FormulaKind.IMPLIES:
            return f"({self.children[0]} => {self.children[1]})"
        if self.kind == FormulaKind.FORALL:
            return f"(forall {self.quant_var}. {self.children[0]})"
        if self.kind == FormulaKind.EXISTS:
            return f"(exists {self.quant_var}. {self.children[0]})"
        if self.kind == FormulaKind.SELECT:
            keys = ", ".join(str(c) for c in self.children[1:])
            return f"{self.children[0]}({keys})"
        if self.kind == FormulaKind.STORE:
            keys = ", ".join(str(c) for c in self.children[1:-1])
            return f"{self.children[0]}[{keys} := {self.children[-1]}]"
        return "<?>"


# ---------------------------------------------------------------------------
# Formula constructors
# ---------------------------------------------------------------------------

def F_TRUE() -> Formula:
    return Formula(kind=FormulaKind.TRUE)

def F_FALSE() -> Formula:
    return Formula(kind=FormulaKind.FALSE)

def F_VAR(name: str) -> Formula:
    return Formula(kind=FormulaKind.VAR, name=name)

def F_INT(val: int) -> Formula:
    return Formula(kind=FormulaKind.INT_CONST, int_val=val)

def F_BOOL(val: bool) -> Formula:
    return F_TRUE() if val else F_FALSE()

def F_BINOP(op: str, left: Formula, right: Formula) -> Formula:
    return Formula(kind=FormulaKind.BINOP, op=op, children=(left, right))

def F_EQ(left: Formula, right: Formula) -> Formula:
    return F_BINOP("==", left, right)

def F_UNOP(op: str, operand: Formula) -> Formula:
    return Formula(kind=FormulaKind.UNOP, op=op, children=(operand,))

def F_AND(*children: Formula) -> Formula:
    flat: List[Formula] = []
    for c in children:
        if c.kind == FormulaKind.TRUE:
            continue
        if c.kind == FormulaKind.FALSE:
            return F_FALSE()
        if c.kind == FormulaKind.AND:
            flat.extend(c.children)
        else:
            flat.append(c)
    if not flat:
        return F_TRUE()
    if len(flat) == 1:
        return flat[0]
    return Formula(kind=FormulaKind.AND, children=tuple(flat))

def F_OR(*children: Formula) -> Formula:
    flat: List[Formula] = []
    for c in children:
        if c.kind == FormulaKind.FALSE:
            continue
        if c.kind == FormulaKind.TRUE:
            return F_TRUE()
        if c.kind == FormulaKind.OR:
            flat.extend(c.children)
        else:
            flat.append(c)
    if not flat:
        return F_FALSE()
    if len(flat) == 1:
        return flat[0]
    return Formula(kind=FormulaKind.OR, children=tuple(flat))

def F_NOT(f: Formula) -> Formula:
    if f.kind == FormulaKind.TRUE:
        return F_FALSE()
    if f.kind == FormulaKind.FALSE:
        return F_TRUE()
    if f.kind == FormulaKind.NOT:
        return f.children[0]
    return Formula(kind=FormulaKind.NOT, children=(f,))

def F_IMPLIES(lhs: Formula, rhs: Formula) -> Formula:
    if lhs.kind == FormulaKind.TRUE:
        return rhs
    if lhs.kind == FormulaKind.FALSE:
        return F_TRUE()
    if rhs.kind == FormulaKind.TRUE:
        return F_TRUE()
    return Formula(kind=FormulaKind.IMPLIES, children=(lhs, rhs))

def F_FORALL(var: str, body: Formula, sort: str = "felt") -> Formula:
    if body.kind == FormulaKind.TRUE:
        return body
    return Formula(kind=FormulaKind.FORALL, quant_var=var, sort=sort, children=(body,))

def F_EXISTS(var: str, body: Formula, sort: str = "felt") -> Formula:
    return Formula(kind=FormulaKind.EXISTS, quant_var=var, sort=sort, children=(body,))

def F_MAP(name: str, arity: int) -> Formula:
    return Formula(kind=FormulaKind.MAP, name=name, int_val=arity)

def F_SELECT(map_f: Formula, keys: Sequence[Formula]) -> Formula:
    """Read `map_f` at `keys`; a zero-arity map is its own value."""
    if not keys:
        return map_f
    return Formula(kind=FormulaKind.SELECT, children=(map_f, *keys))

def F_STORE(map_f: Formula, keys: Sequence[Formula], value: Formula) -> Formula:
    """Update `map_f` at `keys`; a zero-arity map is replaced by `value`."""
    if not keys:
        return value
    return Formula(kind=FormulaKind.STORE, children=(map_f, *keys, value))

def F_POW(base: Formula, exponent: Formula) -> Formula:
    """base ** exponent for a literal, non-negative exponent.

    Constant bases fold; symbolic bases expand into repeated multiplication
    up to MAX_SYMBOLIC_EXPONENT. Raises ValueError otherwise.
    """
    if exponent.kind != FormulaKind.INT_CONST or exponent.int_val < 0:
        raise ValueError("exponent must be a non-negative integer literal")
    n = exponent.int_val
    if base.kind == FormulaKind.INT_CONST:
        return F_INT(base.int_val ** n)
    if n == 0:
        return F_INT(1)
    if n > MAX_SYMBOLIC_EXPONENT:
        raise ValueError(f"symbolic base raised to {n} is too large to expand")
    result = base
    for _ in range(n - 1):
        result = F_BINOP("*", result, base)
    return result


def _rebuild(formula: Formula, children: Tuple[Formula, ...]) -> Formula:
    return Formula(
        kind=formula.kind, name=formula.name, int_val=formula.int_val,
        op=formula.op, children=children,
        quant_var=formula.quant_var, sort=formula.sort,
    )


# ---------------------------------------------------------------------------
# Substitution: Q[x/e]
# ---------------------------------------------------------------------------

def substitute_all(formula: Formula, mapping: Dict[str, Formula]) -> Formula:
    """Simultaneous substitution of several free variables.

    Bound variables shadow the mapping inside their quantifier. Quantified
    names are generated fresh by the VC generator, so capture cannot occur.
    """
    if not mapping:
        return formula

    if formula.kind == FormulaKind.VAR:
        return mapping.get(formula.name, formula)

    if not formula.children:
        return formula

    if formula.kind in (FormulaKind.FORALL, FormulaKind.EXISTS):
        if formula.quant_var in mapping:
            mapping = {k: v for k, v in mapping.items() if k != formula.quant_var}
        return _rebuild(formula, (substitute_all(formula.children[0], mapping),))

    return _rebuild(formula, tuple(substitute_all(c, mapping) for c in formula.children))


def substitute_maps(formula: Formula, mapping: Dict[str, Formula]) -> Formula:
    """Replace storage map symbols by name (s := store(s, K, v), s := s@pre, ...)."""
    if not mapping:
        return formula
    if formula.kind == FormulaKind.MAP:
        return mapping.get(formula.name, formula)
    if not formula.children:
        return formula
    return _rebuild(formula, tuple(substitute_maps(c, mapping) for c in formula.children))


def collect_free_vars(formula: Formula) -> Set[str]:
    """Collect all free variable names in a formula (map symbols excluded)."""
    if formula.kind == FormulaKind.VAR:
        return {formula.name}
    if formula.kind in (FormulaKind.FORALL, FormulaKind.EXISTS):
        inner = collect_free_vars(formula.children[0])
        inner.discard(formula.quant_var)
        return inner
    result: Set[str] = set()
    for child in formula.children:
        result |= collect_free_vars(child)
    return result


def collect_maps(formula: Formula) -> Dict[str, int]:
    """Map symbol name -> key arity for every map occurring in formula."""
    if formula.kind == FormulaKind.MAP:
        return {formula.name: formula.int_val}
    result: Dict[str, int] = {}
    for child in formula.children:
        result.update(collect_maps(child))
    return result


def conjuncts(formula: Formula) -> Tuple[Formula, ...]:
    if formula.kind == FormulaKind.AND:
        return formula.children
    if formula.kind == FormulaKind.TRUE:
        return ()
    return (formula,)


def is_boolean(formula: Formula, bool_vars: Optional[Set[str]] = None) -> bool:
    """Whether formula denotes a truth value rather than a felt."""
    if formula.kind in (FormulaKind.TRUE, FormulaKind.FALSE,
                        FormulaKind.AND, FormulaKind.OR, FormulaKind.NOT,
                        FormulaKind.IMPLIES, FormulaKind.FORALL, FormulaKind.EXISTS):
        return True
    if formula.kind == FormulaKind.BINOP:
        return formula.op in COMPARE_OPS
    if formula.kind == FormulaKind.VAR:
        return bool(bool_vars) and formula.name in bool_vars
    return False
