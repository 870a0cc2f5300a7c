"""Reverse-mode autodiff: variables, the tape, and the per-thread context.

A training iteration runs

    optimizer.zero_grad() -> forward (records on the tape) -> loss
    -> ctx.tape.backward(loss) -> optimizer.step() -> ctx.reset_iteration()

`reset_iteration` must come last: reverse functions read activations that
live in the arena.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Final

import jax
import jax.numpy as jnp

from .arena import Arena
from .tensor import Storage, Tensor, clone, wrap, zeros

logger = logging.getLogger(__name__)

AGGRESSIVE_RESET_EVERY: Final[int] = max(1, int(os.environ.get("SYMGRAD_AGGRESSIVE_RESET_EVERY", "10")))
INITIAL_TAPE_CAPACITY: Final[int] = 256
TAPE_SHRINK_THRESHOLD: Final[int] = 10000


class Variable:
    """A tensor plus its gradient.

    Parameters keep data and grad persistent; every other variable is
    arena-scoped and dies with the next reset.
    """

    __slots__ = ("data", "grad", "requires_grad", "is_parameter", "name")

    def __init__(
        self,
        data: Tensor,
        requires_grad: bool = False,
        is_parameter: bool = False,
        name: str = "",
        arena: Arena | None = None,
    ) -> None:
        self.data = data
        self.requires_grad = requires_grad
        self.is_parameter = is_parameter
        self.name = name
        self.grad: Tensor | None = zeros(data.shape, arena=arena) if requires_grad else None

    @classmethod
    def parameter(cls, data: Tensor, name: str = "") -> "Variable":
        if data.storage is not Storage.PERSISTENT:
            data = clone(data)
        return cls(data, requires_grad=True, is_parameter=True, name=name)

    @classmethod
    def temporary(cls, data, requires_grad: bool = False, ctx: "AutogradContext | None" = None) -> "Variable":
        arena = (ctx or get_context()).arena
        if not isinstance(data, Tensor) or data.storage is not Storage.ARENA:
            data = wrap(data.data if isinstance(data, Tensor) else data, arena)
        return cls(data, requires_grad=requires_grad, arena=arena)

    @property
    def shape(self) -> tuple[int, ...]:
        return self.data.shape

    def zero_grad(self) -> None:
        if self.grad is not None:
            self.grad.assign(jnp.zeros(self.grad.shape, dtype=self.grad.data.dtype))

    def accumulate_grad(self, g: jax.Array) -> None:
        if self.grad is not None:
            self.grad.assign(self.grad.data + g)

    def __repr__(self) -> str:
        kind = "parameter" if self.is_parameter else "temporary"
        label = f" {self.name!r}" if self.name else ""
        return f"Variable({kind}{label}, shape={self.shape}, requires_grad={self.requires_grad})"


ReverseFn = Callable[["TapeRecord", jax.Array], None]


@dataclass
class TapeRecord:
    """One recorded op; `saved` holds arena clones of the activations its reverse reads."""

    op: str
    inputs: tuple[Variable, ...]
    output: Variable
    reverse: ReverseFn
    saved: tuple[Tensor, ...] = ()
    attrs: Mapping[str, object] = field(default_factory=dict)


class Tape:
    """Ordered forward records.

    `capacity` is a statistic only: it doubles when the record count reaches it
    and drops back to its initial value when a reset finds it past the shrink
    threshold. The backing list grows on its own.
    """

    def __init__(self) -> None:
        self._records: list[TapeRecord] = []
        self.capacity = INITIAL_TAPE_CAPACITY

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[TapeRecord]:
        return iter(self._records)

    @property
    def count(self) -> int:
        return len(self._records)

    def record(self, entry: TapeRecord) -> None:
        if len(self._records) >= self.capacity:
            self.capacity *= 2
        self._records.append(entry)

    def backward(self, loss: Variable | None = None) -> None:
        """Seed `loss.grad` with ones (when given) and run every reverse in reverse order."""
        if loss is not None:
            if loss.grad is None:
                raise ValueError("backward() needs a loss that requires grad")
            loss.grad.assign(jnp.ones(loss.shape, dtype=loss.grad.data.dtype))
        for entry in reversed(self._records):
            if entry.output.grad is not None:
                entry.reverse(entry, entry.output.grad.data)

    def reset(self) -> None:
        self._records.clear()
        if self.capacity > TAPE_SHRINK_THRESHOLD:
            self.capacity = INITIAL_TAPE_CAPACITY


@dataclass
class AutogradContext:
    arena: Arena = field(default_factory=Arena)
    tape: Tape = field(default_factory=Tape)
    aggressive_reset_every: int = AGGRESSIVE_RESET_EVERY
    iterations: int = 0

    def reset_iteration(self) -> None:
        self.tape.reset()
        self.iterations += 1
        if self.iterations % self.aggressive_reset_every == 0:
            self.arena.reset_aggressive()
        else:
            self.arena.reset()

    def stats(self) -> dict[str, int]:
        return {
            "tape_count": self.tape.count,
            "tape_capacity": self.tape.capacity,
            "iterations": self.iterations,
            **{f"arena_{k}": v for k, v in self.arena.stats().items()},
        }


_THREAD_STATE = threading.local()


def get_context() -> AutogradContext:
    ctx = getattr(_THREAD_STATE, "context", None)
    if ctx is None:
        ctx = AutogradContext()
        _THREAD_STATE.context = ctx
    return ctx


def set_context(ctx: AutogradContext | None) -> None:
    _THREAD_STATE.context = ctx


@contextmanager
def use_context(ctx: AutogradContext) -> Iterator[AutogradContext]:
    previous = getattr(_THREAD_STATE, "context", None)
    _THREAD_STATE.context = ctx
    try:
        yield ctx
    finally:
        _THREAD_STATE.context = previous
