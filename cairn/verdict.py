"""Verdicts: Verified | Falsified(witness) | Error(reason)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from cairn.errors import Diagnostic, SourceLocation


class VerdictKind(Enum):
    VERIFIED = "Verified"
    FALSIFIED = "Falsified"
    ERROR = "Error"


UNDECIDED = "undecided"
CANCELLED = "cancelled"


@dataclass
class Witness:
    """Why a function was falsified.

    tag is one of postcondition, storage_update, unannotated_write or
    call_precondition; subject names the storage variable or callee.
    """
    tag: str
    path: str
    subject: Optional[str] = None
    location: Optional[SourceLocation] = None
    model: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        where = f"line {self.location.line}, " if self.location else ""
        if self.tag == "postcondition":
            text = f"postcondition violated ({where}path {self.path})"
        elif self.tag == "storage_update":
            text = f"storage '{self.subject}' does not match its @storage_update ({where}path {self.path})"
        elif self.tag == "unannotated_write":
            text = f"storage '{self.subject}' written without @storage_update ({where}path {self.path})"
        elif self.tag == "call_precondition":
            text = f"precondition of '{self.subject}' may not hold ({where}path {self.path})"
        else:
            text = f"{self.tag} ({where}path {self.path})"
        if self.model:
            values = ", ".join(f"{k}={v}" for k, v in sorted(self.model.items()))
            text += f" with {values}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"tag": self.tag, "path": self.path}
        if self.subject:
            d["subject"] = self.subject
        if self.location:
            d["line"] = self.location.line
        if self.model:
            d["model"] = dict(self.model)
        return d


@dataclass
class Verdict:
    kind: VerdictKind
    witness: Optional[Witness] = None
    reason: str = ""
    diagnostics: List[Diagnostic] = field(default_factory=list)

    @classmethod
    def verified(cls) -> Verdict:
        return cls(kind=VerdictKind.VERIFIED)

    @classmethod
    def falsified(cls, witness: Witness) -> Verdict:
        return cls(kind=VerdictKind.FALSIFIED, witness=witness)

    @classmethod
    def error(cls, reason: str, diagnostics: Optional[List[Diagnostic]] = None) -> Verdict:
        return cls(kind=VerdictKind.ERROR, reason=reason, diagnostics=list(diagnostics or []))

    @property
    def label(self) -> str:
        return self.kind.value

    @property
    def is_verified(self) -> bool:
        return self.kind == VerdictKind.VERIFIED

    @property
    def detail(self) -> str:
        if self.kind == VerdictKind.FALSIFIED and self.witness is not None:
            return self.witness.describe()
        return self.reason

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"verdict": self.label}
        if self.witness is not None:
            d["witness"] = self.witness.to_dict()
        if self.reason:
            d["reason"] = self.reason
        if self.diagnostics:
            d["diagnostics"] = [e.to_dict() for e in self.diagnostics]
        return d
