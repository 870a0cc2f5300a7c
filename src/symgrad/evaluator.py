"""Tree-walking scalar evaluator and the built-in function table.

Evaluation is deliberately permissive: division by zero, unknown variables,
unknown functions, arity mismatches and math domain errors all produce 0.0
instead of raising.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Callable, Final

from .ast import Binary, Expr, FunctionCall, Number, TensorLiteral, Unary, Variable
from .debug import DebugLevel, debug_enabled, debug_log
from .lexer import MAX_IDENTIFIER_LENGTH
from .rng import uniform_scalar

EQUALITY_TOLERANCE: Final[float] = 1e-12
LETTER_SLOTS: Final[int] = 26


def canonical_name(name: str) -> str:
    return name.upper()[:MAX_IDENTIFIER_LENGTH]


@dataclass
class VariableContext:
    """Variable bindings: a name->index map over `values`, or 26 letter slots.

    Without a name map, single letters A..Z index `values` directly.
    """

    values: list[float] = field(default_factory=lambda: [0.0] * LETTER_SLOTS)
    names: dict[str, int] | None = None

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, float]) -> "VariableContext":
        names: dict[str, int] = {}
        values: list[float] = []
        for name, value in mapping.items():
            key = canonical_name(name)
            if key in names:
                values[names[key]] = float(value)
                continue
            names[key] = len(values)
            values.append(float(value))
        return cls(values=values, names=names)

    @classmethod
    def from_names(cls, names: list[str] | tuple[str, ...], values) -> "VariableContext":
        if len(names) != len(values):
            raise ValueError(f"Expected {len(names)} values, got {len(values)}")
        return cls.from_mapping(dict(zip(names, values)))

    @classmethod
    def letters(cls, **bindings: float) -> "VariableContext":
        ctx = cls()
        for name, value in bindings.items():
            ctx.set(name, value)
        return ctx

    def index_of(self, name: str) -> int | None:
        key = canonical_name(name)
        if self.names is not None:
            idx = self.names.get(key)
            if idx is None or not (0 <= idx < len(self.values)):
                return None
            return idx
        if len(key) == 1 and "A" <= key <= "Z":
            idx = ord(key) - ord("A")
            if idx < len(self.values):
                return idx
        return None

    def lookup(self, name: str) -> float | None:
        idx = self.index_of(name)
        if idx is None:
            return None
        return self.values[idx]

    def value_at(self, index: int) -> float:
        if 0 <= index < len(self.values):
            return self.values[index]
        return 0.0

    def set(self, name: str, value: float) -> None:
        idx = self.index_of(name)
        if idx is not None:
            self.values[idx] = float(value)
            return
        if self.names is None:
            raise KeyError(f"Variable {name!r} has no letter slot in this context")
        self.names[canonical_name(name)] = len(self.values)
        self.values.append(float(value))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.index_of(name) is not None


def _is_finite(x: float) -> bool:
    return not (math.isinf(x) or math.isnan(x))


def _round_half_away(x: float) -> float:
    if not _is_finite(x):
        return x
    if x >= 0:
        return float(math.floor(x + 0.5))
    return -float(math.floor(-x + 0.5))


def _floor(x: float) -> float:
    return float(math.floor(x)) if _is_finite(x) else x


def _ceil(x: float) -> float:
    return float(math.ceil(x)) if _is_finite(x) else x


def _sqrt(x: float) -> float:
    return math.sqrt(x) if x >= 0.0 else 0.0


def _log(x: float) -> float:
    return math.log(x) if x > 0.0 else 0.0


def _log10(x: float) -> float:
    return math.log10(x) if x > 0.0 else 0.0


def _exp(x: float) -> float:
    try:
        return math.exp(x)
    except OverflowError:
        return math.inf


def _sign(x: float) -> float:
    if x > 0.0:
        return 1.0
    if x < 0.0:
        return -1.0
    return 0.0


def _fmin(x: float, y: float) -> float:
    if math.isnan(x):
        return y
    if math.isnan(y):
        return x
    return min(x, y)


def _fmax(x: float, y: float) -> float:
    if math.isnan(x):
        return y
    if math.isnan(y):
        return x
    return max(x, y)


def power(base: float, exponent: float) -> float:
    """C `pow` semantics: overflow gives +-inf, negative base with a fractional exponent gives nan."""
    try:
        return math.pow(base, exponent)
    except OverflowError:
        if base < 0 and float(exponent).is_integer() and int(exponent) % 2 == 1:
            return -math.inf
        return math.inf
    except ValueError:
        if base == 0.0:
            return math.inf
        return math.nan


def _fmod(x: float, y: float) -> float:
    if y == 0.0 or math.isinf(x):
        return 0.0
    return math.fmod(x, y)


_ZERO_ARG_FUNCTIONS: Final[dict[str, Callable[[], float]]] = {
    "RANDOM": uniform_scalar,
    "RND": uniform_scalar,
}

_ONE_ARG_FUNCTIONS: Final[dict[str, Callable[[float], float]]] = {
    "ABS": abs,
    "ROUND": _round_half_away,
    "FLOOR": _floor,
    "CEIL": _ceil,
    "INT": _floor,
    "SQRT": _sqrt,
    "SIN": math.sin,
    "COS": math.cos,
    "TAN": math.tan,
    "ASIN": math.asin,
    "ACOS": math.acos,
    "ATAN": math.atan,
    "LOG": _log,
    "LN": _log,
    "LOG10": _log10,
    "EXP": _exp,
    "SGN": _sign,
}

_TWO_ARG_FUNCTIONS: Final[dict[str, Callable[[float, float], float]]] = {
    "MIN": _fmin,
    "MAX": _fmax,
    "POW": power,
    "ATAN2": math.atan2,
    "MOD": _fmod,
}

FUNCTION_ARITIES: Final[dict[str, int]] = {
    **{name: 0 for name in _ZERO_ARG_FUNCTIONS},
    **{name: 1 for name in _ONE_ARG_FUNCTIONS},
    **{name: 2 for name in _TWO_ARG_FUNCTIONS},
}


def call_function(name: str, args: tuple[float, ...] | list[float]) -> float:
    """Apply a built-in; unknown names, wrong arity and domain errors give 0.0."""
    key = name.upper()
    arity = len(args)
    try:
        if arity == 0 and key in _ZERO_ARG_FUNCTIONS:
            return _ZERO_ARG_FUNCTIONS[key]()
        if arity == 1 and key in _ONE_ARG_FUNCTIONS:
            return float(_ONE_ARG_FUNCTIONS[key](float(args[0])))
        if arity == 2 and key in _TWO_ARG_FUNCTIONS:
            return float(_TWO_ARG_FUNCTIONS[key](float(args[0]), float(args[1])))
    except (ValueError, OverflowError):
        return 0.0
    return 0.0


def _truth(x: float) -> bool:
    return x != 0.0


_BINARY_OPS: Final[dict[str, Callable[[float, float], float]]] = {
    "+": lambda a, b: a + b,
    "-": lambda a, b: a - b,
    "*": lambda a, b: a * b,
    "/": lambda a, b: a / b if b != 0.0 else 0.0,
    "^": power,
    "&&": lambda a, b: 1.0 if (_truth(a) and _truth(b)) else 0.0,
    "||": lambda a, b: 1.0 if (_truth(a) or _truth(b)) else 0.0,
    ">": lambda a, b: 1.0 if a > b else 0.0,
    "<": lambda a, b: 1.0 if a < b else 0.0,
    ">=": lambda a, b: 1.0 if a >= b else 0.0,
    "<=": lambda a, b: 1.0 if a <= b else 0.0,
    "==": lambda a, b: 1.0 if abs(a - b) < EQUALITY_TOLERANCE else 0.0,
    "!=": lambda a, b: 1.0 if not (abs(a - b) < EQUALITY_TOLERANCE) else 0.0,
}

_UNARY_OPS: Final[dict[str, Callable[[float], float]]] = {
    "-": lambda a: -a,
    "!": lambda a: 1.0 if a == 0.0 else 0.0,
}


def apply_binary(op: str, left: float, right: float) -> float:
    fn = _BINARY_OPS.get(op)
    if fn is None:
        return 0.0
    return fn(left, right)


def apply_unary(op: str, operand: float) -> float:
    fn = _UNARY_OPS.get(op)
    if fn is None:
        return 0.0
    return fn(operand)


def _evaluate(expr: Expr, context: VariableContext | None) -> float:
    if isinstance(expr, Number):
        return expr.value
    if isinstance(expr, Variable):
        if context is None:
            return 0.0
        value = context.lookup(expr.name)
        return 0.0 if value is None else value
    if isinstance(expr, Binary):
        left = _evaluate(expr.left, context)
        right = _evaluate(expr.right, context)
        return apply_binary(expr.op, left, right)
    if isinstance(expr, Unary):
        return apply_unary(expr.op, _evaluate(expr.operand, context))
    if isinstance(expr, FunctionCall):
        args = [_evaluate(arg, context) for arg in expr.args]
        return call_function(expr.name, args)
    if isinstance(expr, TensorLiteral):
        return expr.handle.mean()
    return 0.0


def evaluate(expr: Expr, context: VariableContext | Mapping[str, float] | None = None) -> float:
    """Evaluate `expr` to a float under `context` (a VariableContext or a name->value mapping)."""
    if context is not None and not isinstance(context, VariableContext):
        context = VariableContext.from_mapping(context)
    value = _evaluate(expr, context)
    if debug_enabled(DebugLevel.EVAL):
        debug_log(DebugLevel.EVAL, "%s -> %.17g", type(expr).__name__, value)
    return value
