"""Structured error types for parser/runtime separation."""

from __future__ import annotations

from dataclasses import dataclass

from .parser import ErrorCode, ParseError


class SymgradError(Exception):
    """Base class for structured symgrad errors."""


@dataclass(frozen=True)
class SymgradParseError(SymgradError):
    """Wraps parser failures with explicit parse-stage typing."""

    message: str
    start: int
    end: int
    expected: tuple[str, ...] = ()
    found: str | None = None
    code: ErrorCode = ErrorCode.SYNTAX

    @classmethod
    def from_parse_error(cls, err: ParseError) -> "SymgradParseError":
        return cls(
            message=err.message,
            start=err.start,
            end=err.end,
            expected=err.expected,
            found=err.found,
            code=err.code,
        )

    def __str__(self) -> str:
        expected = ""
        if self.expected:
            expected = f"; expected {', '.join(self.expected)}"
        found = ""
        if self.found is not None:
            found = f"; found {self.found}"
        return f"{self.code.value}: {self.message} at span [{self.start}, {self.end}){expected}{found}"


class SymgradRuntimeError(SymgradError):
    """Generic runtime failure after successful parse."""


class ShapeError(SymgradRuntimeError, ValueError):
    """Tensor or autodiff shape/rank/index precondition violated."""


class LifetimeError(SymgradRuntimeError):
    """Arena-scoped data was read after its arena was reset."""


class ModelFormatError(SymgradError, ValueError):
    """Model or checkpoint file is truncated, foreign, or does not fit the model."""
