"""CAIRN Program IR Tests — IR-001 through IR-006."""

import pytest
from cairn.parser import parse
from cairn.ir import (
    Assign, Assume, Branch, Call, Inline, Return, Sequence, StorageRead,
    StorageWrite, IRBuilder, build_ir,
)
from cairn.errors import CompileError, ErrorKind
from cairn.formula import F_INT, F_VAR, FormulaKind


PRELUDE = """
@storage_var
func balance(account: felt) -> (res: felt) {
}

@storage_var
func counter() -> (value: felt) {
}

// @post $Return.res == balance(account)
func get_balance(account: felt) -> (res: felt) {
    let (res) = balance.read(account);
    return (res=res);
}

func double(x: felt) -> (res: felt) {
    return (res=x + x);
}
"""


def _ir(body, signature="func f(a: felt, b: felt) -> (res: felt)"):
    program = parse(f"{PRELUDE}\n{signature} {{\n{body}\n}}\n")
    return build_ir(program, program.functions[-1])


def _error(body, **kwargs):
    with pytest.raises(CompileError) as exc:
        _ir(body, **kwargs)
    return exc.value.errors[0]


# ===========================================================================
# IR-001: Straight-line code
# ===========================================================================

class TestIR001:
    """IR-001: Bindings, reads and returns."""

    def test_getter_shape(self):
        program = parse(PRELUDE)
        ir = build_ir(program, program.functions[0])
        read, ret = ir.body.nodes
        assert isinstance(read, StorageRead)
        assert read.target == "res" and read.storage == "balance"
        assert read.keys == (F_VAR("account"),)
        assert isinstance(ret, Return)
        assert ret.fields == (("res", F_VAR("res")),)
        assert ret.bind_to is None

    def test_assign(self):
        ir = _ir("let c = a + 1;\nreturn (res=c);")
        node = ir.body.nodes[0]
        assert isinstance(node, Assign)
        assert node.target == "c" and str(node.value) == "(a + 1)"

    def test_positional_return_uses_declared_names(self):
        ir = _ir("return (a);")
        assert ir.body.nodes[0].fields[0][0] == "res"

    def test_zero_arity_read(self):
        ir = _ir("let (v) = counter.read();\nreturn (res=v);")
        assert ir.body.nodes[0].keys == ()

    def test_assert_is_assume(self):
        ir = _ir("assert a = b;\nreturn (res=a);")
        node = ir.body.nodes[0]
        assert isinstance(node, Assume)
        assert str(node.condition) == "(a == b)"

    def test_power_folds_in_body(self):
        ir = _ir("let c = 2 ** 10;\nreturn (res=c);")
        assert ir.body.nodes[0].value == F_INT(1024)

    def test_to_dict(self):
        ir = _ir("let c = a;\nreturn (res=c);")
        d = ir.to_dict()
        assert d["name"] == "f"
        assert [n["node"] for n in d["body"]["nodes"]] == ["Assign", "Return"]


# ===========================================================================
# IR-002: Storage writes
# ===========================================================================

class TestIR002:
    """IR-002: Writes are recorded with their first location."""

    def test_write_node(self):
        ir = _ir("balance.write(a, b);\nreturn (res=0);")
        node = ir.body.nodes[0]
        assert isinstance(node, StorageWrite)
        assert node.keys == (F_VAR("a"),) and node.value == F_VAR("b")
        assert list(ir.writes) == ["balance"]

    def test_first_write_location_kept(self):
        ir = _ir("balance.write(a, 1);\nbalance.write(b, 2);\nreturn (res=0);")
        first = ir.body.nodes[0].location
        assert ir.writes["balance"] == first

    def test_write_arity(self):
        error = _error("balance.write(a);\nreturn (res=0);")
        assert error.kind == ErrorKind.STORAGE_ERROR

    def test_read_arity(self):
        error = _error("let (v) = balance.read();\nreturn (res=v);")
        assert error.kind == ErrorKind.STORAGE_ERROR

    def test_unknown_storage(self):
        error = _error("let (v) = ghost.read(a);\nreturn (res=v);")
        assert "not declared with @storage_var" in error.message

    def test_write_must_be_statement(self):
        error = _error("let v = balance.write(a, b);\nreturn (res=v);")
        assert error.kind == ErrorKind.STORAGE_ERROR

    def test_storage_called_like_function(self):
        error = _error("let (v) = balance(a);\nreturn (res=v);")
        assert "use .read" in error.message


# ===========================================================================
# IR-003: Calls
# ===========================================================================

class TestIR003:
    """IR-003: Contracted callees stay Call nodes."""

    def test_contracted_call(self):
        ir = _ir("let (x) = get_balance(a);\nreturn (res=x);")
        node = ir.body.nodes[0]
        assert isinstance(node, Call)
        assert node.callee == "get_balance" and node.results == ("x",)
        assert node.args == (F_VAR("a"),)
        assert ir.callees == ["get_balance"]

    def test_sites_are_distinct(self):
        ir = _ir("let (x) = get_balance(a);\nlet (y) = get_balance(b);\nreturn (res=x + y);")
        sites = [n.site for n in ir.body.nodes[:2]]
        assert sites == [1, 2]
        assert ir.callees == ["get_balance"]
        assert len(ir.call_sites) == 2

    def test_builtin_call(self):
        ir = _ir("let (q, r) = unsigned_div_rem(a, b);\nreturn (res=q);")
        node = ir.body.nodes[0]
        assert isinstance(node, Call) and node.results == ("q", "r")

    def test_statement_call_results(self):
        ir = _ir("get_balance(a);\nreturn (res=0);")
        assert ir.body.nodes[0].results == ("get_balance#1.res",)

    def test_argument_count(self):
        error = _error("let (x) = get_balance(a, b);\nreturn (res=x);")
        assert error.kind == ErrorKind.CALL_ERROR

    def test_result_count(self):
        error = _error("let (x, y) = get_balance(a);\nreturn (res=x);")
        assert "bound" in error.message

    def test_undefined_function(self):
        error = _error("let (x) = nowhere(a);\nreturn (res=x);")
        assert "undefined function" in error.message

    def test_call_inside_expression(self):
        error = _error("return (res=double(a));")
        assert error.kind == ErrorKind.CALL_ERROR


# ===========================================================================
# IR-004: Inlining
# ===========================================================================

class TestIR004:
    """IR-004: Uncontracted helpers are expanded with renamed locals."""

    def test_inline_node(self):
        ir = _ir("let (d) = double(a);\nreturn (res=d);")
        node = ir.body.nodes[0]
        assert isinstance(node, Inline)
        assert node.callee == "double" and node.has_results
        assert ir.inlined == ["double"]
        assert ir.call_sites == []

    def test_parameters_bound_with_prefix(self):
        ir = _ir("let (d) = double(a);\nreturn (res=d);")
        bind = ir.body.nodes[0].body.nodes[0]
        assert isinstance(bind, Assign)
        assert bind.target == "double#1.x" and bind.value == F_VAR("a")

    def test_inlined_return_binds_caller_names(self):
        ir = _ir("let (d) = double(a);\nreturn (res=d);")
        inner = ir.body.nodes[0].body.nodes[1]
        ret = inner.nodes[0]
        assert isinstance(ret, Return)
        assert ret.bind_to == ("d",)
        assert str(ret.fields[0][1]) == "(double#1.x + double#1.x)"

    def test_recursive_helper(self):
        source = PRELUDE + """
func loop(x: felt) -> (res: felt) {
    let (y) = loop(x);
    return (res=y);
}
"""
        program = parse(source)
        with pytest.raises(CompileError) as exc:
            build_ir(program, program.functions[-1])
        assert "recursive inlining" in exc.value.errors[0].message

    def test_contracted_detection(self):
        builder = IRBuilder(parse(PRELUDE))
        assert builder.is_contracted("get_balance")
        assert builder.is_contracted("unsigned_div_rem")
        assert not builder.is_contracted("double")


# ===========================================================================
# IR-005: Conditionals
# ===========================================================================

class TestIR005:
    """IR-005: Branch conditions."""

    def test_boolean_condition(self):
        ir = _ir("if a == b {\n return (res=1);\n}\nreturn (res=0);")
        branch = ir.body.nodes[0]
        assert isinstance(branch, Branch)
        assert str(branch.condition) == "(a == b)"
        assert isinstance(branch.else_node, Sequence) and branch.else_node.nodes == []

    def test_felt_condition_is_nonzero(self):
        ir = _ir("if a {\n return (res=1);\n}\nreturn (res=0);")
        assert str(ir.body.nodes[0].condition) == "(a != 0)"

    def test_bool_local(self):
        ir = _ir("let ok = a < b;\nif ok {\n return (res=1);\n}\nreturn (res=0);")
        assert "ok" in ir.bool_locals
        assert ir.body.nodes[1].condition.kind == FormulaKind.VAR


# ===========================================================================
# IR-006: Scoping
# ===========================================================================

class TestIR006:
    """IR-006: Names must be bound before use."""

    def test_unknown_name(self):
        error = _error("return (res=zz);")
        assert error.kind == ErrorKind.NAME_ERROR

    def test_parameter_rebinding(self):
        error = _error("let a = 1;\nreturn (res=a);")
        assert "Cannot rebind parameter" in error.message

    def test_branch_local_not_visible_after(self):
        error = _error("if a == 0 {\n let t = 1;\n} else {\n let u = 2;\n}\nreturn (res=t);")
        assert error.kind == ErrorKind.NAME_ERROR

    def test_return_arity(self):
        error = _error("return (res=a, extra=b);")
        assert error.kind == ErrorKind.CALL_ERROR

    def test_logical_variable_in_body(self):
        error = _error("return (res=$old);")
        assert "only appear in annotations" in error.message

    def test_felt_expected(self):
        error = _error("balance.write(a, a == b);\nreturn (res=0);")
        assert "Expected a felt" in error.message
