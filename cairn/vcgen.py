"""CAIRN VC Generator — per-path weakest preconditions.

For a function with precondition P, postcondition Q and update clauses U,
every path through the body is walked backwards:

  wp(x := e, G)            = G[x/e]
  wp(assume c, G)          = c => G
  wp(x := s(K), G)         = G[x/select(s, K)]
  wp(s(K) := v, G)         = G[s/store(s, K, v)]
  wp(return (f=e), G)      = G[$Return.f/e]
  wp(r := g(args), G)      = pre_g[args]  /\\  (post_g[args, r'] /\\ U_g => G[r/r', s/s'])

with r' and s' fresh per call site. Each goal yields one obligation
P => wp(path, goal), with current map symbols finally renamed to s@pre.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from cairn.annotations import PRE_SUFFIX, FunctionSpec
from cairn.errors import CompileError, SourceLocation, call_error, syntax_error
from cairn.formula import (
    F_AND, F_EQ, F_EXISTS, F_FORALL, F_IMPLIES, F_NOT, F_VAR, Formula,
    substitute_all, substitute_maps,
)
from cairn.ir import (
    Assign, Assume, Branch, Call, FunctionIR, Inline, Node, Return, Sequence,
    StorageRead, StorageWrite,
)
from cairn.storage import StorageModel, WriteSite, read, snapshot_map, write

logger = logging.getLogger(__name__)


POSTCONDITION = "postcondition"
STORAGE_UPDATE = "storage_update"
UNANNOTATED_WRITE = "unannotated_write"
CALL_PRECONDITION = "call_precondition"

ENTRY_PATH = "entry"


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

@dataclass
class Path:
    """One execution path: atomic steps in program order."""
    id: str
    steps: List[Node]
    returned: bool


_Partial = Tuple[Tuple[str, ...], List[Node], bool]


def _paths(node: Node, prefix: str) -> List[_Partial]:
    if isinstance(node, Sequence):
        acc: List[_Partial] = [((), [], False)]
        for child in node.nodes:
            nxt: List[_Partial] = []
            child_paths = _paths(child, prefix)
            for decisions, steps, done in acc:
                if done:
                    nxt.append((decisions, steps, done))
                    continue
                for d2, s2, t2 in child_paths:
                    nxt.append((decisions + d2, steps + s2, t2))
            acc = nxt
        return acc

    if isinstance(node, Branch):
        line = node.location.line if node.location else 0
        out: List[_Partial] = []
        for label, cond, sub in (("then", node.condition, node.then_node),
                                 ("else", F_NOT(node.condition), node.else_node)):
            guard = Assume(condition=cond, location=node.location)
            for d, s, t in _paths(sub, prefix):
                out.append(((f"{prefix}{label}@{line}",) + d, [guard] + s, t))
        return out

    if isinstance(node, Inline):
        inner_prefix = f"{prefix}{node.callee}#{node.site}:"
        out = []
        for d, s, t in _paths(node.body, inner_prefix):
            if t:
                ret = s[-1]
                if not isinstance(ret, Return) or ret.bind_to is None:
                    raise CompileError(syntax_error(
                        f"Unbound return from inlined '{node.callee}' on path {_path_id(d)}",
                        node.location,
                    ))
                binds: List[Node] = [
                    Assign(target=target, value=value, location=ret.location)
                    for target, (_, value) in zip(ret.bind_to, ret.fields)
                ]
                s = s[:-1] + binds
            elif node.has_results:
                raise CompileError(syntax_error(
                    f"Missing return in '{node.callee}' on path {_path_id(d)}",
                    node.location,
                ))
            out.append((d, s, False))
        return out

    if isinstance(node, Return):
        return [((), [node], True)]

    return [((), [node], False)]


def _path_id(decisions: Tuple[str, ...]) -> str:
    return "/".join(decisions) if decisions else ENTRY_PATH


def enumerate_paths(ir: FunctionIR) -> List[Path]:
    """Every path through the body, then-branches first.

    Raises CompileError when a function with results can fall off its end.
    """
    paths: List[Path] = []
    for decisions, steps, returned in _paths(ir.body, ""):
        pid = _path_id(decisions)
        if not returned and ir.results:
            raise CompileError(syntax_error(
                f"Missing return in '{ir.name}' on path {pid}", ir.location,
            ))
        paths.append(Path(id=pid, steps=steps, returned=returned))
    return paths


# ---------------------------------------------------------------------------
# Verification conditions
# ---------------------------------------------------------------------------

@dataclass
class Obligation:
    tag: str
    path: str
    formula: Formula
    subject: Optional[str] = None
    location: Optional[SourceLocation] = None


@dataclass
class Violation:
    """A storage write with no matching update clause."""
    storage: str
    path: str
    location: Optional[SourceLocation] = None
    via: Optional[str] = None


@dataclass
class VerificationCondition:
    function: str
    obligations: List[Obligation] = field(default_factory=list)
    bool_vars: Set[str] = field(default_factory=set)
    violations: List[Violation] = field(default_factory=list)

    @property
    def formula(self) -> Formula:
        return F_AND(*(o.formula for o in self.obligations))

    def __len__(self) -> int:
        return len(self.obligations)


@dataclass
class _CallInstance:
    obligation: Formula
    assumption: Formula
    results: Dict[str, Formula]
    maps: Dict[str, Formula]


class VCGenerator:
    """Builds the VerificationCondition of one function.

    `summaries` holds the contracts of verified callees (and builtins).
    """

    def __init__(self, storage: StorageModel, summaries: Mapping[str, FunctionSpec]):
        self.storage = storage
        self.summaries = summaries

    def generate(self, spec: FunctionSpec, ir: FunctionIR) -> VerificationCondition:
        paths = enumerate_paths(ir)
        vc = VerificationCondition(function=spec.name, bool_vars=set(ir.bool_locals) | spec.bool_vars)

        missing = self.storage.unannotated(spec, ir, self.summaries)
        vc.violations = [self._locate(w, paths) for w in missing]

        for path in paths:
            goals = [Obligation(tag=POSTCONDITION, path=path.id,
                                formula=spec.postcondition, location=spec.location)]
            for name, update in spec.storage_updates.items():
                goals.append(Obligation(
                    tag=STORAGE_UPDATE, path=path.id, subject=name,
                    formula=self.storage.frame_goal(spec, name), location=update.location,
                ))
            for ob in self._wp_path(path, goals, vc):
                ob.formula = self.storage.restore_pre(F_IMPLIES(spec.precondition, ob.formula))
                vc.obligations.append(ob)

        logger.debug("%s: %d path(s), %d obligation(s)", spec.name, len(paths), len(vc))
        return vc

    def _locate(self, site: WriteSite, paths: List[Path]) -> Violation:
        for path in paths:
            for step in path.steps:
                if isinstance(step, StorageWrite) and step.storage == site.storage:
                    return Violation(site.storage, path.id, step.location)
                if isinstance(step, Call) and site.storage in self._callee(step).storage_updates:
                    return Violation(site.storage, path.id, step.location, via=step.callee)
        return Violation(site.storage, paths[0].id if paths else ENTRY_PATH,
                         site.location, via=site.via)

    def _callee(self, call: Call) -> FunctionSpec:
        spec = self.summaries.get(call.callee)
        if spec is None:
            raise CompileError(call_error(call.callee, "no verified contract available", call.location))
        return spec

    # -------------------------------------------------------------------
    # Backward walk
    # -------------------------------------------------------------------

    def _wp_path(self, path: Path, goals: List[Obligation],
                 vc: VerificationCondition) -> List[Obligation]:
        pending = list(goals)

        def apply(fn) -> None:
            for ob in pending:
                ob.formula = fn(ob.formula)

        for step in reversed(path.steps):
            if isinstance(step, Return):
                mapping = {f"$Return.{name}": value for name, value in step.fields}
                apply(lambda f: substitute_all(f, mapping))

            elif isinstance(step, Assign):
                mapping = {step.target: step.value}
                apply(lambda f: substitute_all(f, mapping))

            elif isinstance(step, Assume):
                cond = step.condition
                apply(lambda f: F_IMPLIES(cond, f))

            elif isinstance(step, StorageRead):
                var = self.storage.variable(step.storage)
                mapping = {step.target: read(self.storage.current(var.name), step.keys)}
                apply(lambda f: substitute_all(f, mapping))

            elif isinstance(step, StorageWrite):
                current = self.storage.current(step.storage)
                maps = {step.storage: write(current, step.keys, step.value)}
                apply(lambda f: substitute_maps(f, maps))

            elif isinstance(step, Call):
                inst = self._instantiate(step, vc)
                apply(lambda f: F_IMPLIES(
                    inst.assumption,
                    substitute_maps(substitute_all(f, inst.results), inst.maps),
                ))
                pending.append(Obligation(
                    tag=CALL_PRECONDITION, path=path.id, formula=inst.obligation,
                    subject=step.callee, location=step.location,
                ))

            else:
                raise CompileError(syntax_error(
                    f"Unexpected IR node {type(step).__name__}", step.location,
                ))

        return pending

    def _instantiate(self, call: Call, vc: VerificationCondition) -> _CallInstance:
        """Callee contract at one call site with fresh results and maps."""
        callee = self._callee(call)
        tag = f"{call.callee}#{call.site}"

        defs = callee.definitions()
        quantified: List[Tuple[str, str]] = []
        names: Dict[str, Formula] = dict(zip(callee.params, call.args))
        for lv in callee.logical_vars:
            if lv.name in defs:
                continue
            fresh = f"{lv.name}@{tag}"
            names[lv.name] = F_VAR(fresh)
            quantified.append((fresh, lv.type_name))
        fresh_results = {r: F_VAR(f"{tag}.{r}") for r in callee.results}
        for r, v in fresh_results.items():
            names[callee.result_var(r)] = v

        entry_maps: Dict[str, Formula] = {}
        for name in self.storage.variables:
            entry_maps[name + PRE_SUFFIX] = self.storage.current(name)
            if name in callee.storage_updates:
                entry_maps[name] = snapshot_map(self.storage.variable(name), call.callee, call.site)

        def localize(f: Formula) -> Formula:
            return substitute_maps(substitute_all(substitute_all(f, defs), names), entry_maps)

        pre = localize(callee.precondition)
        post = localize(callee.postcondition)
        updates = [
            F_EQ(snapshot_map(self.storage.variable(name), call.callee, call.site),
                 write(self.storage.current(name),
                       [localize(k) for k in update.keys], localize(update.value)))
            for name, update in callee.storage_updates.items()
        ]

        obligation = pre
        assumption = F_AND(post, *updates)
        if quantified:
            assumption = F_IMPLIES(pre, assumption)
            for fresh, sort in reversed(quantified):
                obligation = F_EXISTS(fresh, obligation, sort)
                assumption = F_FORALL(fresh, assumption, sort)

        results = {local: fresh_results[r] for local, r in zip(call.results, callee.results)}
        maps = {
            name: snapshot_map(self.storage.variable(name), call.callee, call.site)
            for name in callee.storage_updates
        }
        vc.bool_vars.update(fresh for fresh, sort in quantified if sort == "bool")
        return _CallInstance(obligation=obligation, assumption=assumption,
                             results=results, maps=maps)


def generate_vc(spec: FunctionSpec, ir: FunctionIR, storage: StorageModel,
                summaries: Mapping[str, FunctionSpec]) -> VerificationCondition:
    """Convenience function to build one VerificationCondition."""
    return VCGenerator(storage, summaries).generate(spec, ir)
