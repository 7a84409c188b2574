"""CAIRN Storage Model — storage variables as symbolic key->value maps.

Each storage variable `s` is a map symbol. Along a path:

  s@pre          the value of the map on function entry
  s              the current map; writes replace it with store(s, K, v)
  s@f#n          the map after call site n to contracted callee f

A read at K is select(s, K); z3's array theory gives the frame rule
select(store(m, K, v), K') = ite(K == K', v, select(m, K')) for free, so
unchanged keys never need to be stated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from cairn.annotations import PRE_SUFFIX, FunctionSpec, StorageVariable
from cairn.errors import SourceLocation
from cairn.formula import F_EQ, F_MAP, F_SELECT, F_STORE, Formula, substitute_maps
from cairn.ir import FunctionIR

logger = logging.getLogger(__name__)


def current_map(var: StorageVariable) -> Formula:
    return F_MAP(var.name, var.arity)


def pre_map(var: StorageVariable) -> Formula:
    return F_MAP(var.name + PRE_SUFFIX, var.arity)


def snapshot_map(var: StorageVariable, callee: str, site: int) -> Formula:
    """Fresh post-state symbol for `var` after a contracted call site."""
    return F_MAP(f"{var.name}@{callee}#{site}", var.arity)


def read(map_f: Formula, keys) -> Formula:
    return F_SELECT(map_f, tuple(keys))


def write(map_f: Formula, keys, value: Formula) -> Formula:
    return F_STORE(map_f, tuple(keys), value)


@dataclass
class WriteSite:
    """Where a body may modify a storage variable."""
    storage: str
    location: Optional[SourceLocation] = None
    via: Optional[str] = None      # contracted callee whose update clause writes it


class StorageModel:
    """Storage variables of one program plus the map algebra over them."""

    def __init__(self, variables: Mapping[str, StorageVariable]):
        self.variables: Dict[str, StorageVariable] = dict(variables)

    def __contains__(self, name: str) -> bool:
        return name in self.variables

    def variable(self, name: str) -> StorageVariable:
        return self.variables[name]

    def current(self, name: str) -> Formula:
        return current_map(self.variables[name])

    def pre(self, name: str) -> Formula:
        return pre_map(self.variables[name])

    def expected_post(self, spec: FunctionSpec, name: str) -> Formula:
        """store(s@pre, K, rhs) for an update clause, s@pre when there is none."""
        update = spec.storage_updates.get(name)
        if update is None:
            return self.pre(name)
        return write(self.pre(name), update.keys, update.value)

    def frame_goal(self, spec: FunctionSpec, name: str) -> Formula:
        """The current map of `name` must equal its expected post-state."""
        return F_EQ(self.current(name), self.expected_post(spec, name))

    def restore_pre(self, formula: Formula) -> Formula:
        """Rename every current map symbol to its pre-state symbol."""
        return substitute_maps(
            formula, {name: pre_map(var) for name, var in self.variables.items()},
        )

    def writes(self, ir: FunctionIR,
               summaries: Mapping[str, FunctionSpec]) -> List[WriteSite]:
        """Storage variables the body may modify, in source order.

        Covers direct writes, writes of inlined helpers and the update
        clauses of contracted callees.
        """
        sites: Dict[str, WriteSite] = {
            name: WriteSite(storage=name, location=loc) for name, loc in ir.writes.items()
        }
        for cs in ir.call_sites:
            callee = summaries.get(cs.callee)
            if callee is None:
                continue
            for name in callee.storage_updates:
                sites.setdefault(name, WriteSite(storage=name, location=cs.location, via=cs.callee))
        return sorted(sites.values(),
                      key=lambda w: (w.location.line, w.location.column) if w.location else (0, 0))

    def unannotated(self, spec: FunctionSpec, ir: FunctionIR,
                    summaries: Mapping[str, FunctionSpec]) -> List[WriteSite]:
        missing = [w for w in self.writes(ir, summaries) if w.storage not in spec.storage_updates]
        if missing:
            logger.debug("%s: unannotated writes to %s", spec.name,
                         ", ".join(w.storage for w in missing))
        return missing
