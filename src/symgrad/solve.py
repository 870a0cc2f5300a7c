"""Equation solving (closed-form and Newton-Raphson) and numerical quadrature."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Final

from .ast import Binary, Expr, Number
from .evaluator import VariableContext, canonical_name, evaluate
from .symbolic import partial_derivative

logger = logging.getLogger(__name__)

LINEAR_TOLERANCE: Final[float] = 1e-10
QUADRATIC_TOLERANCE: Final[float] = 1e-9
ZERO_TOLERANCE: Final[float] = 1e-12
ZERO_DERIVATIVE: Final[float] = 1e-15
DIVERGENCE_LIMIT: Final[float] = 1e10


@dataclass(frozen=True)
class SolveResult:
    solutions: tuple[Expr, ...] = ()
    has_solution: bool = False
    error_message: str = ""

    @property
    def solution_count(self) -> int:
        return len(self.solutions)

    @property
    def values(self) -> list[float]:
        return [evaluate(s) for s in self.solutions]


@dataclass(frozen=True)
class NumericalSolveResult:
    solution: float = 0.0
    converged: bool = False
    iterations: int = 0
    final_error: float = math.inf
    error_message: str = ""


def _as_zero_form(equation: Expr) -> Expr:
    # "lhs == rhs" is solved as lhs - rhs = 0.
    if isinstance(equation, Binary) and equation.op == "==":
        return Binary("-", equation.left, equation.right)
    return equation


class _Probe:
    """Evaluates an expression at successive values of one variable."""

    def __init__(self, expr: Expr, var: str) -> None:
        self.expr = expr
        self.context = VariableContext.from_mapping({var: 0.0})

    def __call__(self, value: float) -> float:
        self.context.values[0] = value
        return evaluate(self.expr, self.context)


def _linear_coefficients(f: _Probe) -> tuple[float, float] | None:
    at_zero = f(0.0)
    slope = f(1.0) - at_zero
    if abs(f(2.0) - (2.0 * slope + at_zero)) < LINEAR_TOLERANCE:
        return slope, at_zero
    return None


def _quadratic_coefficients(f: _Probe) -> tuple[float, float, float] | None:
    y0, y1, y2 = f(0.0), f(1.0), f(2.0)
    a = (y2 - 2.0 * y1 + y0) / 2.0
    b = y1 - y0 - a
    c = y0
    if abs(f(3.0) - (9.0 * a + 3.0 * b + c)) < QUADRATIC_TOLERANCE:
        return a, b, c
    return None


def solve(equation: Expr, var: str) -> SolveResult:
    """Solve `equation = 0` for `var` when it is linear or quadratic in `var`."""
    f = _Probe(_as_zero_form(equation), canonical_name(var))

    linear = _linear_coefficients(f)
    if linear is not None:
        a, b = linear
        if abs(a) < ZERO_TOLERANCE:
            message = "Infinite solutions" if abs(b) < ZERO_TOLERANCE else "No solution"
            return SolveResult(error_message=message)
        return SolveResult(solutions=(Number(-b / a),), has_solution=True)

    quadratic = _quadratic_coefficients(f)
    if quadratic is not None:
        a, b, c = quadratic
        if abs(a) < ZERO_TOLERANCE:
            return SolveResult(error_message="Equation is linear, not quadratic")
        discriminant = b * b - 4.0 * a * c
        if discriminant < -ZERO_TOLERANCE:
            return SolveResult(error_message="No real solutions (discriminant < 0)")
        if abs(discriminant) < ZERO_TOLERANCE:
            return SolveResult(solutions=(Number(-b / (2.0 * a)),), has_solution=True)
        root = math.sqrt(discriminant)
        return SolveResult(
            solutions=(Number((-b + root) / (2.0 * a)), Number((-b - root) / (2.0 * a))),
            has_solution=True,
        )

    return SolveResult(error_message="Equation type not supported (only linear and quadratic)")


def solve_numerical(
    equation: Expr,
    var: str,
    initial_guess: float,
    tolerance: float = 1e-10,
    max_iterations: int = 100,
) -> NumericalSolveResult:
    """Newton-Raphson on `equation = 0` using the symbolic derivative."""
    var = canonical_name(var)
    equation = _as_zero_form(equation)
    f = _Probe(equation, var)
    df = _Probe(partial_derivative(equation, var), var)

    x = float(initial_guess)
    final_error = math.inf
    for iteration in range(1, max_iterations + 1):
        fx = f(x)
        dfx = df(x)
        final_error = abs(fx)
        if final_error < tolerance:
            logger.debug("Newton converged to %.12g after %d iterations", x, iteration)
            return NumericalSolveResult(x, True, iteration, final_error)

        if abs(dfx) < ZERO_DERIVATIVE:
            return NumericalSolveResult(
                x, False, iteration, final_error, f"Derivative is zero at x={x:.6f}, cannot continue"
            )

        x_new = x - fx / dfx
        if not math.isfinite(x_new) or abs(x_new) > DIVERGENCE_LIMIT:
            return NumericalSolveResult(x, False, iteration, final_error, "Solution diverged (x -> infinity)")

        if iteration > 11 and abs(x_new - x) < ZERO_DERIVATIVE:
            # Step has hit machine precision.
            return NumericalSolveResult(x_new, True, iteration, final_error)

        x = x_new

    return NumericalSolveResult(
        x,
        False,
        max_iterations,
        final_error,
        f"Max iterations ({max_iterations}) reached, error={final_error:.6e}",
    )


def integrate_trapezoidal(expr: Expr, var: str, a: float, b: float, n: int) -> float:
    """Composite trapezoidal rule with `n` panels."""
    if n <= 0:
        raise ValueError(f"Step count must be positive, got {n}")
    f = _Probe(expr, canonical_name(var))
    h = (b - a) / n
    interior = sum(f(a + i * h) for i in range(1, n))
    return (h / 2.0) * (f(a) + 2.0 * interior + f(b))


def integrate_simpson(expr: Expr, var: str, a: float, b: float, n: int) -> float:
    """Composite Simpson's rule; odd `n` is rounded up to the next even count."""
    if n <= 0:
        raise ValueError(f"Step count must be positive, got {n}")
    if n % 2 == 1:
        n += 1
    f = _Probe(expr, canonical_name(var))
    h = (b - a) / n
    odd = sum(f(a + i * h) for i in range(1, n, 2))
    even = sum(f(a + i * h) for i in range(2, n, 2))
    return (h / 3.0) * (f(a) + 4.0 * odd + 2.0 * even + f(b))
