"""CAIRN Call-Graph Composer Tests — COMP-001 through COMP-010.

End-to-end: source text in, one verdict per function out.
"""

import os

import pytest
from cairn.callgraph import (
    CallSummary, Composer, SummaryRegistry, VerificationTask, verify_source,
)
from cairn.annotations import BUILTINS
from cairn.config import CairnConfig
from cairn.errors import CompileError
from cairn.parser import parse
from cairn.report import INLINED_SUFFIX
from cairn.verdict import VerdictKind


EXAMPLES = os.path.join(os.path.dirname(__file__), "..", "..", "examples")

BALANCE = """
@storage_var
func balance(account: felt) -> (res: felt) {
}

// @post $Return.res == balance(account)
func get_balance(account: felt) -> (res: felt) {
    let (res) = balance.read(account);
    return (res=res);
}

// @storage_update balance(account) := balance(account) + amount
func increase_balance(account: felt, amount: felt) {
    let (res) = balance.read(account);
    balance.write(account, res + amount);
    return ();
}
"""

SWAP = """
@storage_var
func pool_balance(token_type: felt) -> (balance: felt) {
}

// @declare $old_from : felt
// @declare $old_to : felt
// @pre 0 < amount and amount < 2**64
// @pre $old_from == pool_balance(from_token) and $old_from >= 0
// @pre $old_to == pool_balance(to_token)
// @post $old_to * amount == $Return.amount_out * ($old_from + amount) + $Return.remainder
func get_swap_amount(from_token: felt, to_token: felt, amount: felt) -> (
    amount_out: felt, remainder: felt
) {
    let (from_balance) = pool_balance.read(from_token);
    let (to_balance) = pool_balance.read(to_token);
    let (q, r) = unsigned_div_rem(to_balance * amount, from_balance + amount);
    return (amount_out=q, remainder=r);
}
"""


def _verdicts(source, config=None):
    report = verify_source(source, config=config)
    return {e.display_name: e.verdict for e in report.entries}


def _labels(source, config=None):
    return {name: v.label for name, v in _verdicts(source, config).items()}


# ===========================================================================
# COMP-001: Single functions
# ===========================================================================

class TestCOMP001:
    """COMP-001: Leaf functions against their own contracts."""

    def test_getter_verified(self):
        assert _labels(BALANCE)["get_balance"] == "Verified"

    def test_update_verified(self):
        assert _labels(BALANCE)["increase_balance"] == "Verified"

    def test_off_by_one_falsified(self):
        source = BALANCE.replace("res + amount);", "res + amount + 1);")
        verdict = _verdicts(source)["increase_balance"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.tag == "storage_update"
        assert verdict.witness.subject == "balance"
        assert "amount" in verdict.witness.model

    def test_wrong_postcondition(self):
        source = BALANCE.replace(
            "$Return.res == balance(account)", "$Return.res == balance(account) + 1",
        )
        verdict = _verdicts(source)["get_balance"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.tag == "postcondition"
        assert verdict.witness.path == "entry"

    def test_swap_verified(self):
        assert _labels(SWAP)["get_swap_amount"] == "Verified"

    def test_swap_wrong_divisor_falsified(self):
        source = SWAP.replace("from_balance + amount);", "from_balance + amount + 1);")
        assert _labels(source)["get_swap_amount"] != "Verified"

    def test_branching_function(self):
        source = """
// @post $Return.res >= x and $Return.res >= y
func max(x: felt, y: felt) -> (res: felt) {
    if x > y {
        return (res=x);
    }
    return (res=y);
}
"""
        assert _labels(source)["max"] == "Verified"

    def test_branch_witness_path(self):
        source = """
// @post $Return.res > x
func bump(x: felt) -> (res: felt) {
    if x == 0 {
        return (res=1);
    }
    return (res=x);
}
"""
        verdict = _verdicts(source)["bump"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.path.startswith("else@")


# ===========================================================================
# COMP-002: Storage writes
# ===========================================================================

class TestCOMP002:
    """COMP-002: Every write needs an update clause."""

    def test_unannotated_write(self):
        source = BALANCE + """
// @post 1 == 1
func reset(account: felt) {
    balance.write(account, 0);
    return ();
}
"""
        verdict = _verdicts(source)["reset"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.tag == "unannotated_write"
        assert verdict.witness.subject == "balance"

    def test_uncontracted_root_writing(self):
        source = BALANCE + """
func wipe(account: felt) {
    balance.write(account, 0);
    return ();
}
"""
        assert _verdicts(source)["wipe"].witness.tag == "unannotated_write"

    def test_write_hidden_behind_postcondition(self):
        source = BALANCE + """
// @pre a != b
// @post balance(b) == $Return.res
func credit_other(a: felt, b: felt) -> (res: felt) {
    let (before) = balance.read(b);
    balance.write(a, 5);
    return (res=before);
}
"""
        verdict = _verdicts(source)["credit_other"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.tag == "unannotated_write"

    def test_scalar_counter(self):
        source = """
@storage_var
func counter() -> (value: felt) {
}

// @storage_update counter() := counter() + 1
func tick() {
    let (v) = counter.read();
    counter.write(v + 1);
    return ();
}
"""
        assert _labels(source)["tick"] == "Verified"


# ===========================================================================
# COMP-003: Composition
# ===========================================================================

class TestCOMP003:
    """COMP-003: Callers use verified callee contracts."""

    CALLS = BALANCE + """
// @post $Return.res == balance(a) + balance(b)
func sum_two(a: felt, b: felt) -> (res: felt) {
    let (x) = get_balance(a);
    let (y) = get_balance(b);
    return (res=x + y);
}

// @storage_update balance(who) := balance(who) + 3
func add_three(who: felt) {
    increase_balance(who, 1);
    increase_balance(who, 2);
    return ();
}
"""

    def test_independent_call_results(self):
        assert _labels(self.CALLS)["sum_two"] == "Verified"

    def test_callee_updates_compose(self):
        assert _labels(self.CALLS)["add_three"] == "Verified"

    def test_wrong_composed_update(self):
        source = self.CALLS.replace("balance(who) + 3", "balance(who) + 4")
        verdict = _verdicts(source)["add_three"]
        assert verdict.witness.tag == "storage_update"

    def test_caller_needs_update_for_callee_write(self):
        source = BALANCE + """
// @post 1 == 1
func pay(who: felt) {
    increase_balance(who, 1);
    return ();
}
"""
        verdict = _verdicts(source)["pay"]
        assert verdict.witness.tag == "unannotated_write"

    def test_callee_precondition_checked(self):
        source = """
// @post 1 == 1
func ratio(a: felt, b: felt) -> (res: felt) {
    let (q, r) = unsigned_div_rem(a, b);
    return (res=q);
}
"""
        verdict = _verdicts(source)["ratio"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.tag == "call_precondition"
        assert verdict.witness.subject == "unsigned_div_rem"

    def test_callee_precondition_established(self):
        source = """
// @pre b > 0
// @post $Return.res * b <= a
func ratio(a: felt, b: felt) -> (res: felt) {
    let (q, r) = unsigned_div_rem(a, b);
    return (res=q);
}
"""
        assert _labels(source)["ratio"] == "Verified"

    def test_callee_body_is_not_inspected(self):
        source = """
// @post $Return.res >= 0
func weak(x: felt) -> (res: felt) {
    return (res=5);
}

// @post $Return.res == 5
func strong() -> (res: felt) {
    let (v) = weak(0);
    return (res=v);
}
"""
        labels = _labels(source)
        assert labels["weak"] == "Verified"
        assert labels["strong"] == "Falsified"


# ===========================================================================
# COMP-004: Blocking and cycles
# ===========================================================================

class TestCOMP004:
    """COMP-004: Callers of unverified callees are blocked."""

    def test_falsified_callee_blocks_caller(self):
        source = """
// @post $Return.res == 1
func one() -> (res: felt) {
    return (res=2);
}

// @post $Return.res == 1
func use_one() -> (res: felt) {
    let (v) = one();
    return (res=v);
}
"""
        verdicts = _verdicts(source)
        assert verdicts["one"].kind == VerdictKind.FALSIFIED
        assert verdicts["use_one"].kind == VerdictKind.ERROR
        assert verdicts["use_one"].reason == "blocked: callee 'one' not verified"

    def test_mutual_recursion(self):
        source = """
// @post 1 == 1
func ping(x: felt) -> (res: felt) {
    let (r) = pong(x);
    return (res=r);
}

// @post 1 == 1
func pong(x: felt) -> (res: felt) {
    let (r) = ping(x);
    return (res=r);
}
"""
        verdicts = _verdicts(source)
        assert verdicts["ping"].reason == "cyclic dependency: ping -> pong -> ping"
        assert verdicts["pong"].kind == VerdictKind.ERROR

    def test_self_recursion(self):
        source = """
// @post 1 == 1
func spin(x: felt) -> (res: felt) {
    let (r) = spin(x);
    return (res=r);
}
"""
        assert _verdicts(source)["spin"].reason == "cyclic dependency: spin -> spin"

    def test_front_end_error_is_local(self):
        source = BALANCE + """
// @post $Return.res == $missing
func broken(x: felt) -> (res: felt) {
    return (res=x);
}
"""
        verdicts = _verdicts(source)
        assert verdicts["broken"].kind == VerdictKind.ERROR
        assert "Undeclared logical variable" in verdicts["broken"].reason
        assert verdicts["broken"].diagnostics
        assert verdicts["get_balance"].is_verified

    def test_parse_error_raises(self):
        with pytest.raises(CompileError):
            verify_source("func f( {")


# ===========================================================================
# COMP-005: Inlined helpers
# ===========================================================================

class TestCOMP005:
    """COMP-005: Uncontracted helpers are verified inside their callers."""

    HELPERS = """
func double(x: felt) -> (res: felt) {
    return (res=x + x);
}

func clamp(x: felt, bound: felt) -> (res: felt) {
    if x > bound {
        return (res=bound);
    }
    return (res=x);
}

// @pre limit >= 0
// @post $Return.res <= limit and $Return.res <= x + x
func double_clamped(x: felt, limit: felt) -> (res: felt) {
    let (d) = double(x);
    let (c) = clamp(d, limit);
    return (res=c);
}
"""

    def test_inlined_entries(self):
        report = verify_source(self.HELPERS)
        assert [e.display_name for e in report.entries] == [
            "double_clamped", "double" + INLINED_SUFFIX, "clamp" + INLINED_SUFFIX,
        ]

    def test_helper_mirrors_caller(self):
        report = verify_source(self.HELPERS)
        assert all(e.verdict.is_verified for e in report.entries)

    def test_helper_failure_surfaces_in_caller(self):
        source = self.HELPERS.replace("return (res=bound);", "return (res=bound + 1);")
        labels = _labels(source)
        assert labels["double_clamped"] == "Falsified"
        assert labels["clamp" + INLINED_SUFFIX] == "Falsified"

    def test_uncontracted_root(self):
        source = "func identity(x: felt) -> (res: felt) {\n    return (res=x);\n}\n"
        assert _labels(source) == {"identity": "Verified"}


# ===========================================================================
# COMP-006: Ordering
# ===========================================================================

class TestCOMP006:
    """COMP-006: Callees are reported before callers."""

    def test_callee_first(self):
        source = """
// @post $Return.res == 2
func caller() -> (res: felt) {
    let (v) = callee();
    return (res=v + 1);
}

// @post $Return.res == 1
func callee() -> (res: felt) {
    return (res=1);
}
"""
        report = verify_source(source)
        assert report.order == ["callee", "caller"]
        assert report.exit_code == 0

    def test_idempotent(self):
        source = TestCOMP003.CALLS
        first = [(e.name, e.verdict.label) for e in verify_source(source).entries]
        second = [(e.name, e.verdict.label) for e in verify_source(source).entries]
        assert first == second

    def test_same_composer_twice(self):
        composer = Composer(parse(TestCOMP003.CALLS))
        first = composer.run().lines()
        second = composer.run().lines()
        assert first == second
        assert composer.registry.has("get_balance")

    def test_parallel_matches_sequential(self):
        source = TestCOMP003.CALLS + """
// @post $Return.res == x
func id_a(x: felt) -> (res: felt) {
    return (res=x);
}

// @post $Return.res == x + 1
func id_b(x: felt) -> (res: felt) {
    return (res=x);
}
"""
        sequential = _labels(source)
        parallel = _labels(source, CairnConfig(workers=4))
        assert sequential == parallel
        assert parallel["id_b"] == "Falsified"


# ===========================================================================
# COMP-007: Configuration
# ===========================================================================

class TestCOMP007:
    """COMP-007: Solver settings reach every task."""

    SOURCE = """
// @post $Return.res > x
func succ(x: felt) -> (res: felt) {
    return (res=x + 1);
}
"""

    def test_unbounded(self):
        assert _labels(self.SOURCE)["succ"] == "Verified"

    def test_word_bits(self):
        verdict = _verdicts(self.SOURCE, CairnConfig(word_bits=8))["succ"]
        assert verdict.kind == VerdictKind.FALSIFIED
        assert verdict.witness.model["x"] == 255

    def test_timeout_is_undecided(self):
        source = """
// @pre x > 1 and y > 1 and z > 1
// @post x * x * x + y * y * y != z * z * z
func fermat(x: felt, y: felt, z: felt) {
    return ();
}
"""
        verdict = _verdicts(source, CairnConfig(timeout_ms=50))["fermat"]
        assert verdict.kind == VerdictKind.ERROR
        assert verdict.label == "Error"
        assert verdict.reason == "undecided"


# ===========================================================================
# COMP-008: Cancellation
# ===========================================================================

class TestCOMP008:
    """COMP-008: A cancelled run reports every pending function."""

    def test_cancel_before_run(self):
        composer = Composer(parse(BALANCE))
        composer.cancel()
        report = composer.run()
        assert all(e.verdict.reason == "cancelled" for e in report.entries)
        assert report.exit_code == 2


# ===========================================================================
# COMP-009: Summaries and tasks
# ===========================================================================

class TestCOMP009:
    """COMP-009: Summary registry and standalone tasks."""

    def test_builtins_present(self):
        registry = SummaryRegistry()
        assert registry.has("unsigned_div_rem")
        assert registry.all_names() == []

    def test_publish_once(self):
        registry = SummaryRegistry()
        spec = BUILTINS["unsigned_div_rem"]
        registry.publish(CallSummary(name="f", spec=spec))
        assert registry.get("f") is spec
        with pytest.raises(ValueError):
            registry.publish(CallSummary(name="f", spec=spec))

    def test_specs_for_skips_unknown(self):
        registry = SummaryRegistry()
        assert list(registry.specs_for(["unsigned_div_rem", "nope"])) == ["unsigned_div_rem"]

    def test_composer_publishes_verified(self):
        composer = Composer(parse(BALANCE))
        composer.run()
        assert sorted(composer.registry.all_names()) == ["get_balance", "increase_balance"]

    def test_task_runs_alone(self):
        from cairn.annotations import build_spec
        from cairn.ir import IRBuilder
        program = parse(BALANCE)
        builder = IRBuilder(program)
        func = program.functions[0]
        task = VerificationTask(
            name=func.name, spec=build_spec(func, builder.storage), ir=builder.build(func),
            summaries={}, storage=builder.storage,
        )
        assert task.run().is_verified


# ===========================================================================
# Shipped examples
# ===========================================================================

class TestExamples:
    """Every example contract verifies."""

    @pytest.mark.parametrize("name", ["balance.cairo", "swap.cairo", "helpers.cairo"])
    def test_example(self, name):
        path = os.path.join(EXAMPLES, name)
        with open(path) as f:
            report = verify_source(f.read(), filename=path)
        assert report.exit_code == 0, report.format_text()


# ===========================================================================
# COMP-010: Contract-relative soundness
# ===========================================================================

class TestCOMP010:
    """COMP-010: A body reading the wrong key verifies against a matching contract."""

    MIXED = """
@storage_var
func pool_balance(token_type: felt) -> (balance: felt) {
}

// @post $Return.res == pool_balance(from_token)
func get_from(from_token: felt, to_token: felt) -> (res: felt) {
    let (b) = pool_balance.read(to_token);
    return (res=b);
}
"""

    def test_mismatch_detected(self):
        assert _labels(self.MIXED)["get_from"] == "Falsified"

    def test_consistent_mismatch_verifies(self):
        source = self.MIXED.replace(
            "$Return.res == pool_balance(from_token)", "$Return.res == pool_balance(to_token)",
        )
        assert _labels(source)["get_from"] == "Verified"
