"""Structured diagnostics for the CAIRN verifier.

Every diagnostic is machine-readable: a kind, a message, an optional source
location and a details dict. Front-end failures (syntax, unknown names,
malformed annotations, bad storage or call usage) are raised as CompileError
and later recorded as an Error verdict for the function they belong to.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(Enum):
    SYNTAX_ERROR = "syntax_error"
    NAME_ERROR = "name_error"
    ANNOTATION_ERROR = "annotation_error"
    STORAGE_ERROR = "storage_error"
    CALL_ERROR = "call_error"


@dataclass(frozen=True)
class SourceLocation:
    line: int
    column: int
    file: str = "<stdin>"

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column}"


@dataclass
class Diagnostic:
    kind: ErrorKind
    message: str
    location: Optional[SourceLocation] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
        }
        if self.location:
            d["location"] = {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            }
        if self.details:
            d["details"] = self.details
        return d

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __str__(self) -> str:
        loc = f" at {self.location}" if self.location else ""
        return f"[{self.kind.value}]{loc}: {self.message}"


def syntax_error(
    message: str,
    location: Optional[SourceLocation] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.SYNTAX_ERROR,
        message=message,
        location=location,
    )


def name_error(
    name: str,
    location: Optional[SourceLocation] = None,
    context: str = "",
) -> Diagnostic:
    suffix = f" in {context}" if context else ""
    return Diagnostic(
        kind=ErrorKind.NAME_ERROR,
        message=f"Unknown identifier '{name}'{suffix}",
        location=location,
        details={"name": name},
    )


def annotation_error(
    message: str,
    location: Optional[SourceLocation] = None,
    clause: Optional[str] = None,
) -> Diagnostic:
    details: dict[str, Any] = {}
    if clause:
        details["clause"] = clause
    return Diagnostic(
        kind=ErrorKind.ANNOTATION_ERROR,
        message=message,
        location=location,
        details=details,
    )


def storage_error(
    storage_var: str,
    message: str,
    location: Optional[SourceLocation] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.STORAGE_ERROR,
        message=f"Storage variable '{storage_var}': {message}",
        location=location,
        details={"storage_var": storage_var},
    )


def call_error(
    callee: str,
    message: str,
    location: Optional[SourceLocation] = None,
) -> Diagnostic:
    return Diagnostic(
        kind=ErrorKind.CALL_ERROR,
        message=f"Call to '{callee}': {message}",
        location=location,
        details={"callee": callee},
    )


class CompileError(Exception):
    """Exception wrapping one or more Diagnostics."""

    def __init__(self, errors: list[Diagnostic] | Diagnostic):
        if isinstance(errors, Diagnostic):
            errors = [errors]
        self.errors = errors
        super().__init__(self._format())

    def _format(self) -> str:
        return "\n".join(str(e) for e in self.errors)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps([e.to_dict() for e in self.errors], indent=indent)
