"""CAIRN Call-Graph Composer — modular verification in dependency order.

Functions are verified callees first. A Verified function publishes its
contract as a CallSummary; callers use it as an axiom instead of looking
at the callee's body. Falsified or undecided callees publish nothing and
their callers are reported as blocked.

Ordering uses Tarjan's SCC algorithm over contracted call edges (inlined
helpers contribute no edge of their own). Strongly connected components
with more than one member, or with a self edge, are cyclic dependencies
and are rejected.

Independent tasks are grouped into waves:

  level(f) = 1 + max(level(g) for contracted callees g), 0 for leaves

and every wave runs in parallel on a multiprocessing Pool once all lower
waves have published their summaries.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Dict, List, Optional, Tuple

from cairn.annotations import (
    BUILTINS, FunctionSpec, StorageVariable, build_spec, trivial_spec,
)
from cairn.ast_nodes import FuncDef, Program
from cairn.config import CairnConfig
from cairn.errors import CompileError
from cairn.formula import collect_free_vars
from cairn.ir import FunctionIR, IRBuilder
from cairn.parser import parse
from cairn.report import ReportEntry, VerificationReport
from cairn.solver import Discharger, SolverStatus
from cairn.storage import StorageModel
from cairn.vcgen import UNANNOTATED_WRITE, VCGenerator
from cairn.verdict import CANCELLED, UNDECIDED, Verdict, Witness

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallSummary:
    """A verified callee's contract, shared read-only by all callers."""
    name: str
    spec: FunctionSpec


class SummaryRegistry:
    """Append-only table of published CallSummaries.

    Populated bottom-up: callees before callers. Builtin contracts are
    available from the start.
    """

    def __init__(self) -> None:
        self._table: Dict[str, CallSummary] = {}
        self._lock = threading.Lock()

    def publish(self, summary: CallSummary) -> None:
        with self._lock:
            if summary.name in self._table:
                raise ValueError(f"summary for '{summary.name}' already published")
            self._table[summary.name] = summary

    def get(self, name: str) -> Optional[FunctionSpec]:
        if name in self._table:
            return self._table[name].spec
        return BUILTINS.get(name)

    def has(self, name: str) -> bool:
        return name in self._table or name in BUILTINS

    def all_names(self) -> List[str]:
        return list(self._table.keys())

    def specs_for(self, names: List[str]) -> Dict[str, FunctionSpec]:
        return {n: self.get(n) for n in names if self.has(n)}


# ---------------------------------------------------------------------------
# Verification tasks
# ---------------------------------------------------------------------------

@dataclass
class VerificationTask:
    """FunctionSpec + IR + the callee summaries it needs -> Verdict."""
    name: str
    spec: FunctionSpec
    ir: FunctionIR
    summaries: Dict[str, FunctionSpec]
    storage: Dict[str, StorageVariable]
    timeout_ms: int = 10000
    word_bits: Optional[int] = None

    def run(self, discharger: Optional[Discharger] = None) -> Verdict:
        discharger = discharger or Discharger(self.timeout_ms, self.word_bits)
        model = StorageModel(self.storage)
        try:
            vc = VCGenerator(model, self.summaries).generate(self.spec, self.ir)
        except CompileError as e:
            return Verdict.error(str(e.errors[0]), e.errors)

        if vc.violations:
            v = vc.violations[0]
            return Verdict.falsified(Witness(
                tag=UNANNOTATED_WRITE, path=v.path, subject=v.storage, location=v.location,
            ))

        outcome = discharger.check(vc)
        if outcome.status == SolverStatus.UNSAT:
            return Verdict.verified()
        if outcome.status == SolverStatus.SAT:
            ob = vc.obligations[outcome.failed if outcome.failed is not None else 0]
            relevant = collect_free_vars(ob.formula)
            model_values = {k: v for k, v in outcome.model.items() if k in relevant}
            return Verdict.falsified(Witness(
                tag=ob.tag, path=ob.path, subject=ob.subject,
                location=ob.location, model=model_values,
            ))
        if outcome.reason == CANCELLED:
            return Verdict.error(CANCELLED)
        return Verdict.error(UNDECIDED)


def _run_task(task: VerificationTask) -> Tuple[str, Verdict]:
    """Run one task (worker function for multiprocessing)."""
    return task.name, task.run()


# ---------------------------------------------------------------------------
# Composer
# ---------------------------------------------------------------------------

@dataclass
class _Unit:
    """Per-function bookkeeping while composing."""
    func: FuncDef
    spec: Optional[FunctionSpec] = None
    ir: Optional[FunctionIR] = None
    verdict: Optional[Verdict] = None
    inlined_by: List[str] = field(default_factory=list)


class Composer:
    """Verifies every function of a program in call-graph order."""

    def __init__(self, program: Program, config: Optional[CairnConfig] = None):
        self.program = program
        self.config = config or CairnConfig()
        self.registry = SummaryRegistry()
        self.order: List[str] = []
        self._discharger = Discharger(self.config.timeout_ms, self.config.word_bits)
        self._cancelled = False
        self._pool = None
        self._storage: Dict[str, StorageVariable] = {}

    def cancel(self) -> None:
        """Stop the run; unfinished functions are reported as cancelled."""
        self._cancelled = True
        self._discharger.cancel()
        if self._pool is not None:
            self._pool.terminate()

    # -------------------------------------------------------------------
    # Front end
    # -------------------------------------------------------------------

    def _prepare(self) -> Dict[str, _Unit]:
        builder = IRBuilder(self.program)
        self._storage = builder.storage
        units: Dict[str, _Unit] = {}
        for func in self.program.functions:
            unit = _Unit(func=func)
            units[func.name] = unit
            try:
                unit.ir = builder.build(func)
            except CompileError as e:
                unit.verdict = Verdict.error(str(e.errors[0]), e.errors)
            if func.has_contract:
                try:
                    unit.spec = build_spec(func, builder.storage)
                except CompileError as e:
                    unit.verdict = Verdict.error(str(e.errors[0]), e.errors)

        for unit in units.values():
            if unit.ir is None:
                continue
            for helper in unit.ir.inlined:
                if helper in units:
                    units[helper].inlined_by.append(unit.func.name)

        for unit in units.values():
            if not unit.func.has_contract and not unit.inlined_by:
                unit.spec = trivial_spec(unit.func)
        return units

    # -------------------------------------------------------------------
    # Ordering
    # -------------------------------------------------------------------

    def _call_graph(self, units: Dict[str, _Unit]) -> Dict[str, List[str]]:
        """Verified-unit name -> contracted callees defined in the program."""
        graph: Dict[str, List[str]] = {}
        for name, unit in units.items():
            if unit.func.has_contract or not unit.inlined_by:
                callees = unit.ir.callees if unit.ir is not None else []
                graph[name] = [c for c in callees if c in units]
        return graph

    def _tarjan_sccs(self, graph: Dict[str, List[str]]) -> List[List[str]]:
        """Compute strongly connected components using Tarjan's algorithm.

        Returns SCCs in reverse topological order (callees before callers);
        roots are visited in source order.
        """
        index_counter = [0]
        stack: List[str] = []
        lowlink: Dict[str, int] = {}
        index: Dict[str, int] = {}
        on_stack: Dict[str, bool] = {}
        sccs: List[List[str]] = []

        def strongconnect(v: str) -> None:
            index[v] = index_counter[0]
            lowlink[v] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack[v] = True

            for w in graph.get(v, []):
                if w not in index:
                    strongconnect(w)
                    lowlink[v] = min(lowlink[v], lowlink[w])
                elif on_stack.get(w, False):
                    lowlink[v] = min(lowlink[v], index[w])

            if lowlink[v] == index[v]:
                scc: List[str] = []
                while True:
                    w = stack.pop()
                    on_stack[w] = False
                    scc.append(w)
                    if w == v:
                        break
                sccs.append(list(reversed(scc)))

        for v in graph:
            if v not in index:
                strongconnect(v)
        return sccs

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    def run(self) -> VerificationReport:
        self.registry = SummaryRegistry()
        self.order = []
        units = self._prepare()
        graph = self._call_graph(units)
        sccs = self._tarjan_sccs(graph)
        self.order = [name for scc in sccs for name in scc]

        for scc in sccs:
            if len(scc) > 1 or scc[0] in graph[scc[0]]:
                cycle = " -> ".join(scc + [scc[0]])
                for name in scc:
                    if units[name].verdict is None:
                        units[name].verdict = Verdict.error(f"cyclic dependency: {cycle}")

        levels: Dict[str, int] = {}
        for name in self.order:
            below = [levels[c] for c in graph[name] if c in levels and c != name]
            levels[name] = 1 + max(below) if below else 0

        waves: Dict[int, List[str]] = {}
        for name in self.order:
            waves.setdefault(levels[name], []).append(name)

        for level in sorted(waves):
            self._run_wave(waves[level], units, graph)

        return self._report(units)

    def _run_wave(self, wave: List[str], units: Dict[str, _Unit],
                  graph: Dict[str, List[str]]) -> None:
        tasks: List[VerificationTask] = []
        for name in wave:
            unit = units[name]
            if unit.verdict is not None:
                continue
            if self._cancelled:
                unit.verdict = Verdict.error(CANCELLED)
                continue
            blocked = [c for c in graph[name] if not self.registry.has(c)]
            if blocked:
                callee = blocked[0]
                unit.verdict = Verdict.error(f"blocked: callee '{callee}' not verified")
                continue
            tasks.append(VerificationTask(
                name=name,
                spec=unit.spec,
                ir=unit.ir,
                summaries=self.registry.specs_for(unit.ir.callees),
                storage=dict(self._storage),
                timeout_ms=self.config.timeout_ms,
                word_bits=self.config.word_bits,
            ))

        for name, verdict in self._execute(tasks):
            unit = units[name]
            unit.verdict = verdict
            logger.info("%s: %s", name, verdict.label)
            if verdict.is_verified and unit.func.has_contract:
                self.registry.publish(CallSummary(name=name, spec=unit.spec))

    def _execute(self, tasks: List[VerificationTask]) -> List[Tuple[str, Verdict]]:
        workers = max(1, self.config.workers)
        if workers == 1 or len(tasks) <= 2:
            # Sequential for small waves (avoid multiprocessing overhead)
            results = []
            for task in tasks:
                if self._cancelled:
                    results.append((task.name, Verdict.error(CANCELLED)))
                    continue
                logger.debug("verifying %s", task.name)
                results.append((task.name, task.run(self._discharger)))
            return results

        with Pool(processes=min(workers, len(tasks))) as pool:
            self._pool = pool
            pending = pool.map_async(_run_task, tasks)
            while not pending.ready() and not self._cancelled:
                pending.wait(0.1)
            self._pool = None
            if self._cancelled and not pending.ready():
                return [(task.name, Verdict.error(CANCELLED)) for task in tasks]
            return pending.get()

    # -------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------

    def _report(self, units: Dict[str, _Unit]) -> VerificationReport:
        report = VerificationReport(filename=self.program.filename)
        position = {name: i for i, name in enumerate(self.order)}

        helpers_after: Dict[str, List[str]] = {}
        for name, unit in units.items():
            if unit.func.has_contract or not unit.inlined_by:
                continue
            last = max(unit.inlined_by, key=lambda caller: position.get(caller, -1))
            helpers_after.setdefault(last, []).append(name)

        for name in self.order:
            unit = units[name]
            report.add(ReportEntry(name=name, verdict=unit.verdict))
            for helper in helpers_after.get(name, []):
                report.add(ReportEntry(name=helper, verdict=unit.verdict, inlined=True))
        return report


def verify_program(program: Program, config: Optional[CairnConfig] = None) -> VerificationReport:
    return Composer(program, config).run()


def verify_source(source: str, filename: str = "<stdin>",
                  config: Optional[CairnConfig] = None) -> VerificationReport:
    """Parse and verify CAIRN source text.

    Raises CompileError when the file itself cannot be parsed.
    """
    return verify_program(parse(source, filename), config)
