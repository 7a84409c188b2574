"""CAIRN Verdict Reporter — per-function verdicts in call-graph order.

Text output is two lines per function, plus an indented detail line for
anything that is not Verified:

    get_balance
    Verified
    increase_balance
    Falsified
      storage 'balance' does not match its @storage_update (line 9, path entry) with amount=1
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from cairn.verdict import Verdict, VerdictKind


INLINED_SUFFIX = " [inlined]"


@dataclass
class ReportEntry:
    name: str
    verdict: Verdict
    inlined: bool = False

    @property
    def display_name(self) -> str:
        return self.name + INLINED_SUFFIX if self.inlined else self.name

    def lines(self) -> List[str]:
        out = [self.display_name, self.verdict.label]
        if not self.verdict.is_verified and self.verdict.detail:
            out.append("  " + self.verdict.detail)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "inlined": self.inlined, **self.verdict.to_dict()}


@dataclass
class VerificationReport:
    """Append-only buffer of entries for one verification run."""
    filename: str = "<stdin>"
    entries: List[ReportEntry] = field(default_factory=list)

    def add(self, entry: ReportEntry) -> None:
        self.entries.append(entry)

    def verdict_of(self, name: str) -> Verdict:
        for entry in self.entries:
            if entry.name == name and not entry.inlined:
                return entry.verdict
        raise KeyError(name)

    @property
    def order(self) -> List[str]:
        return [e.name for e in self.entries]

    def counts(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in VerdictKind}
        for e in self.entries:
            counts[e.verdict.label] += 1
        return counts

    @property
    def exit_code(self) -> int:
        """0 if everything verified, 2 if any Error, 1 otherwise."""
        kinds = {e.verdict.kind for e in self.entries}
        if VerdictKind.ERROR in kinds:
            return 2
        if VerdictKind.FALSIFIED in kinds:
            return 1
        return 0

    def lines(self) -> List[str]:
        out: List[str] = []
        for entry in self.entries:
            out.extend(entry.lines())
        return out

    def format_text(self) -> str:
        return "\n".join(self.lines())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file": self.filename,
            "functions": [e.to_dict() for e in self.entries],
            "summary": self.counts(),
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)
