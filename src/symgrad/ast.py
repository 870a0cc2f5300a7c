"""Expression tree nodes for the infix arithmetic/logical grammar."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .tensor import TensorHandle

BINARY_OPS = ("+", "-", "*", "/", "^", "&&", "||", ">", "<", ">=", "<=", "==", "!=")
COMPARISON_OPS = (">", "<", ">=", "<=", "==", "!=")
LOGICAL_OPS = ("&&", "||")
UNARY_OPS = ("-", "!")


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Expr"
    right: "Expr"


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Expr"


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple["Expr", ...] = ()


@dataclass(frozen=True, eq=False)
class TensorLiteral:
    """Shared reference to a tensor; compares by handle identity."""

    handle: "TensorHandle"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, TensorLiteral) and other.handle is self.handle

    def __hash__(self) -> int:
        return id(self.handle)


Expr = Union[Number, Variable, Binary, Unary, FunctionCall, TensorLiteral]
