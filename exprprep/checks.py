"""Typed check results and the errors raised when a structural check fails."""
from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, List, Optional


class PipelineCheckError(RuntimeError):
    """Base class for failed structural checks; always names the offender."""


class StructuralMismatch(PipelineCheckError):
    """Row/column counts or identifiers differ from what the dataset should hold."""


class OrderingViolation(PipelineCheckError):
    """Long-table attributes do not cycle the way the fast reshape assumes."""


class SourceMismatch(PipelineCheckError):
    """Two sources cannot be merged without realignment."""


class IncompleteCopy(PipelineCheckError):
    """Per-sample copy left columns at their default value."""


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    detail: str = ""
    location: Optional[int] = None

    def __str__(self) -> str:
        if self.ok:
            return f"{self.name}: ok"
        where = f" (row {self.location})" if self.location is not None else ""
        return f"{self.name}: FAILED{where} {self.detail}".rstrip()


def failed(results: Iterable[CheckResult]) -> List[CheckResult]:
    return [r for r in results if not r.ok]
