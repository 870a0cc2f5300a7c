"""Pure symbolic rewrites over expression trees.

Every function here returns a new tree and leaves its input untouched.
Constructs a rule does not cover collapse to `Number(0.0)` rather than
raising, so callers can chain rewrites freely.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

from .ast import Binary, Expr, FunctionCall, Number, TensorLiteral, Unary, Variable
from .evaluator import VariableContext, apply_binary, apply_unary, canonical_name, evaluate

NUMBER_TOLERANCE: Final[float] = 1e-12
FACTOR_TOLERANCE: Final[float] = 1e-9
TAYLOR_COEFFICIENT_CUTOFF: Final[float] = 1e-12


def _at(var: str, value: float) -> VariableContext:
    return VariableContext.from_mapping({var: value})


def clone(expr: Expr) -> Expr:
    """Deep copy. Tensor literals share their handle and bump its refcount."""
    if isinstance(expr, Number):
        return Number(expr.value)
    if isinstance(expr, Variable):
        return Variable(expr.name)
    if isinstance(expr, Binary):
        return Binary(expr.op, clone(expr.left), clone(expr.right))
    if isinstance(expr, Unary):
        return Unary(expr.op, clone(expr.operand))
    if isinstance(expr, FunctionCall):
        return FunctionCall(expr.name, tuple(clone(arg) for arg in expr.args))
    if isinstance(expr, TensorLiteral):
        return TensorLiteral(expr.handle.retain())
    raise TypeError(f"Unsupported expression node: {type(expr).__name__}")


def equal(a: Expr, b: Expr) -> bool:
    """Structural equality; numbers match within 1e-12, tensor literals by identity."""
    if type(a) is not type(b):
        return False
    if isinstance(a, Number):
        return abs(a.value - b.value) < NUMBER_TOLERANCE
    if isinstance(a, Variable):
        return a.name == b.name
    if isinstance(a, Binary):
        return a.op == b.op and equal(a.left, b.left) and equal(a.right, b.right)
    if isinstance(a, Unary):
        return a.op == b.op and equal(a.operand, b.operand)
    if isinstance(a, FunctionCall):
        if a.name != b.name or len(a.args) != len(b.args):
            return False
        return all(equal(x, y) for x, y in zip(a.args, b.args))
    if isinstance(a, TensorLiteral):
        return a.handle is b.handle
    return False


def contains_variable(expr: Expr, var: str) -> bool:
    var = canonical_name(var)
    if isinstance(expr, Variable):
        return expr.name == var
    if isinstance(expr, Binary):
        return contains_variable(expr.left, var) or contains_variable(expr.right, var)
    if isinstance(expr, Unary):
        return contains_variable(expr.operand, var)
    if isinstance(expr, FunctionCall):
        return any(contains_variable(arg, var) for arg in expr.args)
    return False


def count_operations(expr: Expr) -> int:
    """Number of operator and function nodes in the tree."""
    if isinstance(expr, Binary):
        return 1 + count_operations(expr.left) + count_operations(expr.right)
    if isinstance(expr, Unary):
        return 1 + count_operations(expr.operand)
    if isinstance(expr, FunctionCall):
        return 1 + sum(count_operations(arg) for arg in expr.args)
    return 0


def substitute(expr: Expr, var: str, replacement: Expr) -> Expr:
    """Replace every occurrence of variable `var` with a fresh copy of `replacement`."""
    var = canonical_name(var)
    if isinstance(expr, Variable):
        return clone(replacement) if expr.name == var else Variable(expr.name)
    if isinstance(expr, Binary):
        return Binary(expr.op, substitute(expr.left, var, replacement), substitute(expr.right, var, replacement))
    if isinstance(expr, Unary):
        return Unary(expr.op, substitute(expr.operand, var, replacement))
    if isinstance(expr, FunctionCall):
        return FunctionCall(expr.name, tuple(substitute(arg, var, replacement) for arg in expr.args))
    return clone(expr)


# ---------------------------------------------------------------------------
# Simplification
# ---------------------------------------------------------------------------


def _is_number(expr: Expr, value: float | None = None) -> bool:
    if not isinstance(expr, Number):
        return False
    return value is None or expr.value == value


def _split_coefficient(expr: Expr) -> tuple[float, Expr]:
    if isinstance(expr, Binary) and expr.op == "*":
        if isinstance(expr.left, Number):
            return expr.left.value, expr.right
        if isinstance(expr.right, Number):
            return expr.right.value, expr.left
    return 1.0, expr


def _combine_like_terms(left: Expr, right: Expr) -> Expr | None:
    coef_left, term_left = _split_coefficient(left)
    coef_right, term_right = _split_coefficient(right)
    if not equal(term_left, term_right):
        return None
    coef = coef_left + coef_right
    if abs(coef) < NUMBER_TOLERANCE:
        return Number(0.0)
    if abs(coef - 1.0) < NUMBER_TOLERANCE:
        return clone(term_left)
    return Binary("*", Number(coef), clone(term_left))


def _simplify_binary(op: str, left: Expr, right: Expr) -> Expr:
    if isinstance(left, Number) and isinstance(right, Number):
        return Number(apply_binary(op, left.value, right.value))

    if op == "+":
        if _is_number(right, 0.0):
            return left
        if _is_number(left, 0.0):
            return right
        combined = _combine_like_terms(left, right)
        if combined is not None:
            return combined
    elif op == "-":
        if _is_number(right, 0.0):
            return left
    elif op == "*":
        if _is_number(right, 0.0) or _is_number(left, 0.0):
            return Number(0.0)
        if _is_number(right, 1.0):
            return left
        if _is_number(left, 1.0):
            return right
    elif op == "/":
        if _is_number(left, 0.0):
            return Number(0.0)
        if _is_number(right, 1.0):
            return left
    elif op == "^":
        if _is_number(right, 0.0):
            return Number(1.0)
        if _is_number(right, 1.0):
            return left
        if _is_number(left, 0.0):
            return Number(0.0)
        if _is_number(left, 1.0):
            return Number(1.0)
    return Binary(op, left, right)


def simplify(expr: Expr) -> Expr:
    """Bottom-up constant folding, algebraic identities and like-term combining."""
    if isinstance(expr, Binary):
        return _simplify_binary(expr.op, simplify(expr.left), simplify(expr.right))
    if isinstance(expr, Unary):
        operand = simplify(expr.operand)
        if isinstance(operand, Number):
            return Number(apply_unary(expr.op, operand.value))
        if expr.op == "-" and isinstance(operand, Unary) and operand.op == "-":
            return operand.operand
        return Unary(expr.op, operand)
    if isinstance(expr, FunctionCall):
        return FunctionCall(expr.name, tuple(simplify(arg) for arg in expr.args))
    return clone(expr)


# ---------------------------------------------------------------------------
# Differentiation
# ---------------------------------------------------------------------------


def _call(name: str, arg: Expr) -> FunctionCall:
    return FunctionCall(name, (arg,))


def _differentiate_function(expr: FunctionCall, var: str) -> Expr:
    if len(expr.args) != 1:
        return Number(0.0)
    arg = expr.args[0]
    darg = differentiate(arg, var)
    name = expr.name
    if name == "SIN":
        return Binary("*", _call("COS", clone(arg)), darg)
    if name == "COS":
        return Binary("*", Unary("-", _call("SIN", clone(arg))), darg)
    if name == "TAN":
        sec2 = Binary("/", Number(1.0), Binary("^", _call("COS", clone(arg)), Number(2.0)))
        return Binary("*", sec2, darg)
    if name in {"LOG", "LN"}:
        return Binary("/", darg, clone(arg))
    if name == "EXP":
        return Binary("*", _call("EXP", clone(arg)), darg)
    if name == "SQRT":
        return Binary("/", darg, Binary("*", Number(2.0), _call("SQRT", clone(arg))))
    return Number(0.0)


def differentiate(expr: Expr, var: str) -> Expr:
    """d(expr)/d(var), unsimplified. Variable exponents are not supported and give 0."""
    var = canonical_name(var)
    if isinstance(expr, Number):
        return Number(0.0)
    if isinstance(expr, Variable):
        return Number(1.0 if expr.name == var else 0.0)
    if isinstance(expr, Binary):
        left, right = expr.left, expr.right
        if expr.op == "+":
            return Binary("+", differentiate(left, var), differentiate(right, var))
        if expr.op == "-":
            return Binary("-", differentiate(left, var), differentiate(right, var))
        if expr.op == "*":
            return Binary(
                "+",
                Binary("*", differentiate(left, var), clone(right)),
                Binary("*", clone(left), differentiate(right, var)),
            )
        if expr.op == "/":
            numerator = Binary(
                "-",
                Binary("*", differentiate(left, var), clone(right)),
                Binary("*", clone(left), differentiate(right, var)),
            )
            return Binary("/", numerator, Binary("^", clone(right), Number(2.0)))
        if expr.op == "^":
            if contains_variable(right, var):
                return Number(0.0)
            reduced = Binary("^", clone(left), Binary("-", clone(right), Number(1.0)))
            return Binary("*", Binary("*", clone(right), reduced), differentiate(left, var))
        return Number(0.0)
    if isinstance(expr, Unary):
        if expr.op == "-":
            return Unary("-", differentiate(expr.operand, var))
        return Number(0.0)
    if isinstance(expr, FunctionCall):
        return _differentiate_function(expr, var)
    return Number(0.0)


def partial_derivative(expr: Expr, var: str) -> Expr:
    """Simplified derivative with respect to `var`."""
    return simplify(differentiate(expr, var))


@dataclass(frozen=True)
class Gradient:
    components: tuple[Expr, ...]
    var_names: tuple[str, ...]

    def evaluate(self, context: VariableContext | Mapping[str, float] | Sequence[float]) -> list[float]:
        if not isinstance(context, (VariableContext, Mapping)):
            context = VariableContext.from_names(self.var_names, list(context))
        return [evaluate(component, context) for component in self.components]


def gradient(expr: Expr, var_names: Sequence[str]) -> Gradient:
    names = tuple(canonical_name(name) for name in var_names)
    return Gradient(components=tuple(partial_derivative(expr, name) for name in names), var_names=names)


# ---------------------------------------------------------------------------
# Integration
# ---------------------------------------------------------------------------


def integrate(expr: Expr, var: str) -> Expr:
    """Closed-form antiderivative for a fixed rule set; anything else gives 0."""
    var = canonical_name(var)
    x = Variable(var)
    if isinstance(expr, Number):
        return Binary("*", Number(expr.value), x)
    if isinstance(expr, Variable):
        if expr.name == var:
            return Binary("/", Binary("^", x, Number(2.0)), Number(2.0))
        return Binary("*", Variable(expr.name), x)
    if isinstance(expr, Binary):
        left, right = expr.left, expr.right
        if expr.op in {"+", "-"}:
            return Binary(expr.op, integrate(left, var), integrate(right, var))
        if expr.op == "*":
            if not contains_variable(left, var):
                return Binary("*", clone(left), integrate(right, var))
            if not contains_variable(right, var):
                return Binary("*", clone(right), integrate(left, var))
            return Number(0.0)
        if expr.op == "^":
            if isinstance(left, Variable) and left.name == var and isinstance(right, Number):
                n = right.value
                if abs(n + 1.0) < NUMBER_TOLERANCE:
                    return _call("LN", x)
                return Binary("/", Binary("^", x, Number(n + 1.0)), Number(n + 1.0))
        return Number(0.0)
    if isinstance(expr, Unary):
        if expr.op == "-":
            return Unary("-", integrate(expr.operand, var))
        return Number(0.0)
    if isinstance(expr, FunctionCall):
        if len(expr.args) == 1 and isinstance(expr.args[0], Variable) and expr.args[0].name == var:
            if expr.name == "SIN":
                return Unary("-", _call("COS", Variable(var)))
            if expr.name == "COS":
                return _call("SIN", Variable(var))
            if expr.name == "EXP":
                return _call("EXP", Variable(var))
            if expr.name in {"LN", "LOG"}:
                return Binary("-", Binary("*", Variable(var), _call("LN", Variable(var))), Variable(var))
        return Number(0.0)
    return Number(0.0)


# ---------------------------------------------------------------------------
# Factoring
# ---------------------------------------------------------------------------


def quadratic_coefficients(expr: Expr, var: str) -> tuple[float, float, float] | None:
    """(a, b, c) when expr behaves as a*x^2 + b*x + c at x = 0, 1, -1 and 2."""
    c = evaluate(expr, _at(var, 0.0))
    total = evaluate(expr, _at(var, 1.0)) - c
    alternating = evaluate(expr, _at(var, -1.0)) - c
    a = (total + alternating) / 2.0
    b = (total - alternating) / 2.0
    at_two = evaluate(expr, _at(var, 2.0))
    if abs(at_two - (4.0 * a + 2.0 * b + c)) < FACTOR_TOLERANCE:
        return a, b, c
    return None


def _near_integer(value: float) -> bool:
    return math.isfinite(value) and abs(value - round(value)) < FACTOR_TOLERANCE


def _factor_difference_of_squares(expr: Expr, var: str) -> Expr | None:
    if not (isinstance(expr, Binary) and expr.op == "-"):
        return None
    left, right = expr.left, expr.right
    if not (
        isinstance(left, Binary)
        and left.op == "^"
        and isinstance(left.left, Variable)
        and left.left.name == var
        and isinstance(left.right, Number)
        and abs(left.right.value - 2.0) < NUMBER_TOLERANCE
        and isinstance(right, Number)
        and right.value > 0
    ):
        return None
    root = math.sqrt(right.value)
    if not _near_integer(root):
        return None
    k = float(round(root))
    return Binary("*", Binary("-", Variable(var), Number(k)), Binary("+", Variable(var), Number(k)))


def _factor_quadratic(expr: Expr, var: str) -> Expr | None:
    coefficients = quadratic_coefficients(expr, var)
    if coefficients is None:
        return None
    a, b, c = coefficients
    if abs(a) <= FACTOR_TOLERANCE:
        return None
    discriminant = b * b - 4 * a * c
    if discriminant < 0:
        return None
    root_disc = math.sqrt(discriminant)
    r1 = (-b + root_disc) / (2 * a)
    r2 = (-b - root_disc) / (2 * a)
    if not (_near_integer(r1) and _near_integer(r2)):
        return None
    product = Binary(
        "*",
        Binary("-", Variable(var), Number(float(round(r1)))),
        Binary("-", Variable(var), Number(float(round(r2)))),
    )
    if abs(a - 1.0) < FACTOR_TOLERANCE:
        return product
    return Binary("*", Number(a), product)


def _factor_common(expr: Expr) -> Expr | None:
    if not (isinstance(expr, Binary) and expr.op == "+"):
        return None
    left, right = expr.left, expr.right
    if not (
        isinstance(left, Binary)
        and left.op == "*"
        and isinstance(left.left, Number)
        and isinstance(right, Number)
    ):
        return None
    coef = left.left.value
    constant = right.value
    divisor = abs(coef)
    if abs(constant) > FACTOR_TOLERANCE:
        divisor = float(math.gcd(int(round(abs(coef))), int(round(abs(constant)))))
    if divisor <= 1.0 + FACTOR_TOLERANCE:
        return None
    return Binary(
        "*",
        Number(divisor),
        Binary("+", Binary("*", Number(coef / divisor), clone(left.right)), Number(constant / divisor)),
    )


def factor(expr: Expr, var: str) -> Expr:
    """Difference of squares, integer-root quadratics, then a common integer factor."""
    var = canonical_name(var)
    for attempt in (
        lambda: _factor_difference_of_squares(expr, var),
        lambda: _factor_quadratic(expr, var),
        lambda: _factor_common(expr),
    ):
        factored = attempt()
        if factored is not None:
            return factored
    return clone(expr)


# ---------------------------------------------------------------------------
# Taylor series
# ---------------------------------------------------------------------------


def taylor(expr: Expr, var: str, center: float, order: int) -> Expr:
    """Taylor polynomial of `expr` about `center` up to `order`.

    Stops early when a derivative is non-finite at the center.
    """
    var = canonical_name(var)
    if order < 0:
        raise ValueError(f"Taylor order must be non-negative, got {order}")
    point = _at(var, center)
    base: Expr = Variable(var) if center == 0 else Binary("-", Variable(var), Number(center))

    series: Expr | None = None
    derivative = expr
    factorial = 1.0
    for k in range(order + 1):
        if k > 0:
            factorial *= k
        value = evaluate(derivative, point)
        if not math.isfinite(value):
            break
        coefficient = value / factorial
        if abs(coefficient) >= TAYLOR_COEFFICIENT_CUTOFF:
            if k == 0:
                term: Expr = Number(coefficient)
            else:
                power = clone(base) if k == 1 else Binary("^", clone(base), Number(float(k)))
                term = Binary("*", Number(coefficient), power)
            series = term if series is None else Binary("+", series, term)
        if k < order:
            derivative = partial_derivative(derivative, var)

    return series if series is not None else Number(0.0)
