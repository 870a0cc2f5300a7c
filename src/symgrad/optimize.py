"""Gradient-based minimisation of symbolic objectives.

The gradient is derived symbolically once per run; every iteration evaluates
each partial derivative tree against one shared context holding the current
position.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from .ast import Expr, Unary
from .debug import DebugLevel, debug_enabled, debug_log
from .evaluator import VariableContext, evaluate
from .parser import parse
from .symbolic import Gradient, gradient

logger = logging.getLogger(__name__)

LINE_SEARCH_HALVINGS = 20
LINE_SEARCH_INITIAL_STEP = 1.0


class OptimizerType(str, Enum):
    GRADIENT_DESCENT = "gradient_descent"
    MOMENTUM = "momentum"
    ADAM = "adam"
    CONJUGATE_GRADIENT = "conjugate_gradient"


@dataclass(frozen=True)
class OptimizerConfig:
    """Shared optimizer knobs.

    Conjugate gradient ignores `learning_rate`: its line search always starts
    from a unit step. `restart=0` restarts every `len(var_names)` iterations.
    """

    learning_rate: float = 0.01
    momentum: float = 0.9
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    tolerance: float = 1e-6
    max_iterations: int = 1000
    restart: int = 0
    verbose: bool = False

    @classmethod
    def default(cls, kind: OptimizerType | str = OptimizerType.GRADIENT_DESCENT) -> "OptimizerConfig":
        kind = OptimizerType(kind)
        if kind is OptimizerType.ADAM:
            return cls(learning_rate=0.001)
        return cls()


@dataclass(frozen=True)
class OptimizationResult:
    solution: tuple[float, ...]
    final_value: float
    iterations: int
    converged: bool
    history: tuple[float, ...] = ()
    error_message: str = ""
    var_names: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, float]:
        return dict(zip(self.var_names, self.solution))


def _norm(values: Sequence[float]) -> float:
    return math.sqrt(sum(v * v for v in values))


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


class _Problem:
    """Objective, its symbolic gradient and the shared position context."""

    def __init__(self, objective: Expr, var_names: Sequence[str], initial: Sequence[float]) -> None:
        if len(var_names) != len(initial):
            raise ValueError(f"Expected {len(var_names)} initial values, got {len(initial)}")
        if not var_names:
            raise ValueError("At least one variable is required")
        self.objective = objective
        self.grad: Gradient = gradient(objective, var_names)
        self.context = VariableContext.from_names(self.grad.var_names, [float(v) for v in initial])

    @property
    def x(self) -> list[float]:
        return self.context.values

    def value(self) -> float:
        return evaluate(self.objective, self.context)

    def value_at(self, point: Sequence[float]) -> float:
        saved = list(self.context.values)
        self.context.values[:] = point
        try:
            return self.value()
        finally:
            self.context.values[:] = saved

    def gradient(self) -> list[float]:
        return self.grad.evaluate(self.context)


def _log_iteration(kind: OptimizerType, iteration: int, problem: _Problem, grad_norm: float) -> None:
    if debug_enabled(DebugLevel.OPTIMIZE):
        debug_log(
            DebugLevel.OPTIMIZE,
            "%s iter %d: f=%.6e |g|=%.3e x=%s",
            kind.value,
            iteration,
            problem.value(),
            grad_norm,
            ", ".join(f"{v:.6g}" for v in problem.x),
        )


def _run_first_order(problem: _Problem, kind: OptimizerType, config: OptimizerConfig) -> tuple[int, bool, list[float], str]:
    n = len(problem.x)
    velocity = [0.0] * n
    m = [0.0] * n
    v = [0.0] * n
    history: list[float] = []
    iterations = 0

    for iteration in range(config.max_iterations):
        g = problem.gradient()
        grad_norm = _norm(g)
        _log_iteration(kind, iteration, problem, grad_norm)
        if grad_norm < config.tolerance:
            return iterations, True, history, ""
        if not math.isfinite(grad_norm):
            return iterations, False, history, "Gradient is not finite"

        x = problem.x
        if kind is OptimizerType.GRADIENT_DESCENT:
            for i in range(n):
                x[i] -= config.learning_rate * g[i]
        elif kind is OptimizerType.MOMENTUM:
            for i in range(n):
                velocity[i] = config.momentum * velocity[i] + config.learning_rate * g[i]
                x[i] -= velocity[i]
        else:
            t = iteration + 1
            bias1 = 1.0 - config.beta1**t
            bias2 = 1.0 - config.beta2**t
            for i in range(n):
                m[i] = config.beta1 * m[i] + (1.0 - config.beta1) * g[i]
                v[i] = config.beta2 * v[i] + (1.0 - config.beta2) * g[i] * g[i]
                m_hat = m[i] / bias1
                v_hat = v[i] / bias2
                x[i] -= config.learning_rate * m_hat / (math.sqrt(v_hat) + config.epsilon)

        iterations = iteration + 1
        if config.verbose:
            history.append(problem.value())

    return iterations, False, history, f"Max iterations ({config.max_iterations}) reached"


def _line_search(problem: _Problem, direction: Sequence[float]) -> float | None:
    start = list(problem.x)
    fx = problem.value()
    alpha = LINE_SEARCH_INITIAL_STEP
    for _ in range(LINE_SEARCH_HALVINGS):
        trial = [xi + alpha * di for xi, di in zip(start, direction)]
        if problem.value_at(trial) < fx:
            return alpha
        alpha *= 0.5
    return None


def _run_conjugate_gradient(problem: _Problem, config: OptimizerConfig) -> tuple[int, bool, list[float], str]:
    n = len(problem.x)
    restart = config.restart if config.restart > 0 else n
    history: list[float] = []
    g_prev: list[float] | None = None
    direction: list[float] = [0.0] * n
    iterations = 0

    for iteration in range(config.max_iterations):
        g = problem.gradient()
        grad_norm = _norm(g)
        _log_iteration(OptimizerType.CONJUGATE_GRADIENT, iteration, problem, grad_norm)
        if grad_norm < config.tolerance:
            return iterations, True, history, ""
        if not math.isfinite(grad_norm):
            return iterations, False, history, "Gradient is not finite"

        steepest = [-gi for gi in g]
        if g_prev is None or iteration % restart == 0:
            direction = steepest
        else:
            prev_sq = _dot(g_prev, g_prev)
            beta = 0.0
            if prev_sq > 0.0:
                # Polak-Ribiere, clamped at zero.
                beta = max(0.0, _dot(g, [gi - pi for gi, pi in zip(g, g_prev)]) / prev_sq)
            direction = [si + beta * di for si, di in zip(steepest, direction)]

        alpha = _line_search(problem, direction)
        if alpha is None and direction != steepest:
            direction = steepest
            alpha = _line_search(problem, direction)
        if alpha is None:
            return iterations, False, history, "Line search failed to decrease the objective"

        x = problem.x
        for i in range(n):
            x[i] += alpha * direction[i]
        g_prev = g
        iterations = iteration + 1
        if config.verbose:
            history.append(problem.value())

    return iterations, False, history, f"Max iterations ({config.max_iterations}) reached"


def _coerce_objective(objective: Expr | str) -> Expr:
    if isinstance(objective, str):
        return parse(objective)
    return objective


def minimize(
    objective: Expr | str,
    var_names: Sequence[str],
    initial: Sequence[float],
    method: OptimizerType | str = OptimizerType.GRADIENT_DESCENT,
    config: OptimizerConfig | None = None,
    **options,
) -> OptimizationResult:
    """Minimise `objective` over `var_names` starting at `initial`.

    `options` override individual `OptimizerConfig` fields, e.g.
    ``minimize("x^2", ["x"], [1.0], "adam", learning_rate=0.1)``.
    """
    kind = OptimizerType(method)
    cfg = config or OptimizerConfig.default(kind)
    if options:
        cfg = dataclasses.replace(cfg, **options)

    problem = _Problem(_coerce_objective(objective), var_names, initial)
    if kind is OptimizerType.CONJUGATE_GRADIENT:
        iterations, converged, history, message = _run_conjugate_gradient(problem, cfg)
    else:
        iterations, converged, history, message = _run_first_order(problem, kind, cfg)

    final_value = problem.value()
    if not converged:
        logger.debug("%s stopped without converging: %s", kind.value, message)
    return OptimizationResult(
        solution=tuple(problem.x),
        final_value=final_value,
        iterations=iterations,
        converged=converged,
        history=tuple(history),
        error_message=message,
        var_names=problem.grad.var_names,
    )


def maximize(
    objective: Expr | str,
    var_names: Sequence[str],
    initial: Sequence[float],
    method: OptimizerType | str = OptimizerType.GRADIENT_DESCENT,
    config: OptimizerConfig | None = None,
    **options,
) -> OptimizationResult:
    """Maximise by minimising the negated objective."""
    negated = Unary("-", _coerce_objective(objective))
    result = minimize(negated, var_names, initial, method, config, **options)
    return dataclasses.replace(
        result,
        final_value=-result.final_value,
        history=tuple(-h for h in result.history),
    )
