"""CAIRN Verdict Reporter Tests — REP-001 through REP-004."""

import json

from cairn.report import INLINED_SUFFIX, ReportEntry, VerificationReport
from cairn.verdict import Verdict, VerdictKind, Witness
from cairn.errors import SourceLocation, syntax_error


def _report(*verdicts):
    report = VerificationReport(filename="t.cairo")
    for i, v in enumerate(verdicts):
        report.add(ReportEntry(name=f"f{i}", verdict=v))
    return report


WITNESS = Witness(
    tag="storage_update", path="entry", subject="balance",
    location=SourceLocation(9, 1, "t.cairo"), model={"amount": 1, "account": 0},
)


class TestREP001:
    """REP-001: Exit codes."""

    def test_all_verified(self):
        assert _report(Verdict.verified(), Verdict.verified()).exit_code == 0

    def test_falsified(self):
        assert _report(Verdict.verified(), Verdict.falsified(WITNESS)).exit_code == 1

    def test_error_wins(self):
        report = _report(Verdict.falsified(WITNESS), Verdict.error("undecided"))
        assert report.exit_code == 2

    def test_empty(self):
        assert VerificationReport().exit_code == 0


class TestREP002:
    """REP-002: Text format."""

    def test_name_then_label(self):
        assert _report(Verdict.verified()).lines() == ["f0", "Verified"]

    def test_detail_line(self):
        lines = _report(Verdict.falsified(WITNESS)).lines()
        assert lines[:2] == ["f0", "Falsified"]
        assert lines[2] == (
            "  storage 'balance' does not match its @storage_update "
            "(line 9, path entry) with account=0, amount=1"
        )

    def test_error_reason(self):
        lines = _report(Verdict.error("cyclic dependency: a -> b -> a")).lines()
        assert lines == ["f0", "Error", "  cyclic dependency: a -> b -> a"]

    def test_inlined_suffix(self):
        entry = ReportEntry(name="helper", verdict=Verdict.verified(), inlined=True)
        assert entry.display_name == "helper" + INLINED_SUFFIX
        assert entry.lines()[0] == "helper [inlined]"

    def test_format_text_joins_lines(self):
        text = _report(Verdict.verified(), Verdict.verified()).format_text()
        assert text == "f0\nVerified\nf1\nVerified"


class TestREP003:
    """REP-003: JSON format."""

    def test_structure(self):
        data = json.loads(_report(Verdict.verified(), Verdict.falsified(WITNESS)).to_json())
        assert data["file"] == "t.cairo"
        assert [f["verdict"] for f in data["functions"]] == ["Verified", "Falsified"]
        assert data["functions"][1]["witness"]["model"] == {"amount": 1, "account": 0}
        assert data["summary"] == {"Verified": 1, "Falsified": 1, "Error": 0}

    def test_error_diagnostics(self):
        verdict = Verdict.error("bad", [syntax_error("Expected RPAREN", SourceLocation(3, 4))])
        data = _report(verdict).to_dict()
        diag = data["functions"][0]["diagnostics"][0]
        assert diag["kind"] == "syntax_error"
        assert diag["location"]["line"] == 3


class TestREP004:
    """REP-004: Lookup."""

    def test_verdict_of(self):
        report = _report(Verdict.verified(), Verdict.error("x"))
        assert report.verdict_of("f1").kind == VerdictKind.ERROR
        assert report.order == ["f0", "f1"]

    def test_verdict_of_skips_inlined(self):
        report = VerificationReport()
        report.add(ReportEntry(name="h", verdict=Verdict.error("x"), inlined=True))
        report.add(ReportEntry(name="h", verdict=Verdict.verified()))
        assert report.verdict_of("h").is_verified

    def test_witness_descriptions(self):
        for tag, fragment in [
            ("postcondition", "postcondition violated"),
            ("unannotated_write", "written without @storage_update"),
            ("call_precondition", "precondition of 'g' may not hold"),
        ]:
            text = Witness(tag=tag, path="then@4", subject="g").describe()
            assert fragment in text
            assert "path then@4" in text
