"""Dense float64 tensors backed by `jax.numpy`.

A tensor is either persistent (lives until `free`) or arena-scoped (accounted
against an `Arena` and invalid after that arena's next reset). Every operation
takes an optional `arena`; results land in the arena when one is given and
are persistent otherwise.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from enum import Enum
from typing import Final

import jax
import jax.numpy as jnp

from .arena import Arena, ArenaBlock
from .ast import TensorLiteral
from .errors import LifetimeError, ShapeError
from .rng import next_key

jax.config.update("jax_enable_x64", True)

logger = logging.getLogger(__name__)

MAX_RANK: Final[int] = 8
DTYPE: Final = jnp.float64


class Storage(str, Enum):
    PERSISTENT = "persistent"
    ARENA = "arena"


class Tensor:
    __slots__ = ("_data", "shape", "storage", "_block")

    def __init__(self, data: jax.Array, storage: Storage = Storage.PERSISTENT, block: ArenaBlock | None = None):
        self._data = data
        self.shape: tuple[int, ...] = tuple(int(d) for d in data.shape)
        self.storage = storage
        self._block = block

    @property
    def data(self) -> jax.Array:
        if self._block is not None:
            self._block.check()
        if self._data is None:
            raise LifetimeError("tensor was freed")
        return self._data

    @property
    def rank(self) -> int:
        return len(self.shape)

    ndim = rank

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    @property
    def is_valid(self) -> bool:
        return self._data is not None and (self._block is None or self._block.valid)

    def assign(self, data) -> "Tensor":
        """Replace the contents in place; the shape must not change."""
        data = jnp.asarray(data, dtype=DTYPE)
        if tuple(data.shape) != self.shape:
            raise ShapeError(f"assign: shape {tuple(data.shape)} does not match {self.shape}")
        if self._block is not None:
            self._block.check()
        self._data = data
        return self

    def free(self) -> None:
        if self.storage is Storage.ARENA:
            raise LifetimeError("arena tensors are released by resetting their arena")
        self._data = None

    def tolist(self) -> list:
        return self.data.tolist()

    def item(self) -> float:
        if self.size != 1:
            raise ShapeError(f"item() needs a single-element tensor, got shape {self.shape}")
        return float(self.data.reshape(()))

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape}, storage={self.storage.value})"


def check_shape(shape: Sequence[int]) -> tuple[int, ...]:
    shape = tuple(int(d) for d in shape)
    if not 1 <= len(shape) <= MAX_RANK:
        raise ShapeError(f"tensor rank must be between 1 and {MAX_RANK}, got {len(shape)}")
    if any(d <= 0 for d in shape):
        raise ShapeError(f"tensor dimensions must be positive, got {shape}")
    return shape


def wrap(data, arena: Arena | None = None) -> Tensor:
    """Place `data` in a tensor, arena-scoped when `arena` is given."""
    data = jnp.asarray(data, dtype=DTYPE)
    check_shape(data.shape)
    if arena is None:
        return Tensor(data)
    block = arena.alloc(data.size * data.dtype.itemsize)
    if block is None:
        raise MemoryError(f"arena allocation of {data.size} doubles failed")
    return Tensor(data, Storage.ARENA, block)


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def create(shape: Sequence[int], arena: Arena | None = None) -> Tensor:
    return wrap(jnp.empty(check_shape(shape), dtype=DTYPE), arena)


def zeros(shape: Sequence[int], arena: Arena | None = None) -> Tensor:
    return wrap(jnp.zeros(check_shape(shape), dtype=DTYPE), arena)


def ones(shape: Sequence[int], arena: Arena | None = None) -> Tensor:
    return wrap(jnp.ones(check_shape(shape), dtype=DTYPE), arena)


def uniform(shape: Sequence[int], arena: Arena | None = None) -> Tensor:
    """Uniform draws on [0, 1)."""
    shape = check_shape(shape)
    return wrap(jax.random.uniform(next_key(), shape, dtype=DTYPE), arena)


def randn(shape: Sequence[int], mean: float = 0.0, std: float = 1.0, arena: Arena | None = None) -> Tensor:
    """Normal draws via Box-Muller over the shared uniform stream."""
    shape = check_shape(shape)
    u1, u2 = jax.random.uniform(next_key(), (2, *shape), dtype=DTYPE)
    u1 = jnp.maximum(u1, jnp.finfo(DTYPE).tiny)
    z = jnp.sqrt(-2.0 * jnp.log(u1)) * jnp.cos(2.0 * math.pi * u2)
    return wrap(mean + std * z, arena)


def from_data(values, shape: Sequence[int] | None = None, arena: Arena | None = None) -> Tensor:
    data = jnp.asarray(values, dtype=DTYPE)
    if shape is not None:
        shape = check_shape(shape)
        if data.size != math.prod(shape):
            raise ShapeError(f"{data.size} values do not fill shape {shape}")
        data = data.reshape(shape)
    return wrap(data, arena)


def clone(t: Tensor, arena: Arena | None = None) -> Tensor:
    return wrap(t.data, arena)


# ---------------------------------------------------------------------------
# Elementwise
# ---------------------------------------------------------------------------


def _same_shape(op: str, a: Tensor, b: Tensor) -> None:
    if a.shape != b.shape:
        raise ShapeError(f"{op}: shape mismatch {a.shape} vs {b.shape}")


def add(a: Tensor, b: Tensor, arena: Arena | None = None) -> Tensor:
    _same_shape("add", a, b)
    return wrap(a.data + b.data, arena)


def sub(a: Tensor, b: Tensor, arena: Arena | None = None) -> Tensor:
    _same_shape("sub", a, b)
    return wrap(a.data - b.data, arena)


def mul(a: Tensor, b: Tensor, arena: Arena | None = None) -> Tensor:
    _same_shape("mul", a, b)
    return wrap(a.data * b.data, arena)


def div(a: Tensor, b: Tensor, arena: Arena | None = None) -> Tensor:
    _same_shape("div", a, b)
    return wrap(a.data / b.data, arena)


def add_scalar(a: Tensor, value: float, arena: Arena | None = None) -> Tensor:
    return wrap(a.data + value, arena)


def mul_scalar(a: Tensor, value: float, arena: Arena | None = None) -> Tensor:
    return wrap(a.data * value, arena)


def negate(a: Tensor, arena: Arena | None = None) -> Tensor:
    return wrap(-a.data, arena)


# ---------------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------------


def matmul(a: Tensor, b: Tensor, arena: Arena | None = None) -> Tensor:
    """(m, k) x (k, n) -> (m, n)."""
    if a.rank != 2 or b.rank != 2:
        raise ShapeError(f"matmul needs rank-2 operands, got ranks {a.rank} and {b.rank}")
    if a.shape[1] != b.shape[0]:
        raise ShapeError(f"matmul inner dimensions differ: {a.shape} x {b.shape}")
    return wrap(jnp.matmul(a.data, b.data), arena)


def transpose(a: Tensor, arena: Arena | None = None) -> Tensor:
    if a.rank != 2:
        raise ShapeError(f"transpose needs a rank-2 tensor, got rank {a.rank}")
    return wrap(a.data.T, arena)


def dot(a: Tensor, b: Tensor) -> float:
    if a.rank != 1 or b.rank != 1:
        raise ShapeError(f"dot needs rank-1 operands, got ranks {a.rank} and {b.rank}")
    _same_shape("dot", a, b)
    return float(jnp.dot(a.data, b.data))


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------


def relu(a: Tensor, arena: Arena | None = None) -> Tensor:
    return wrap(jnp.maximum(a.data, 0.0), arena)


def sigmoid(a: Tensor, arena: Arena | None = None) -> Tensor:
    return wrap(1.0 / (1.0 + jnp.exp(-a.data)), arena)


def tanh(a: Tensor, arena: Arena | None = None) -> Tensor:
    return wrap(jnp.tanh(a.data), arena)


def softmax_array(x: jax.Array) -> jax.Array:
    shifted = jnp.exp(x - jnp.max(x, axis=-1, keepdims=True))
    return shifted / jnp.sum(shifted, axis=-1, keepdims=True)


def softmax(a: Tensor, arena: Arena | None = None) -> Tensor:
    """Softmax over the last axis, shifted by the row max."""
    return wrap(softmax_array(a.data), arena)


# ---------------------------------------------------------------------------
# Reductions
# ---------------------------------------------------------------------------


def reduce_sum(a: Tensor) -> float:
    return float(jnp.sum(a.data))


def reduce_mean(a: Tensor) -> float:
    return float(jnp.mean(a.data))


def reduce_max(a: Tensor) -> float:
    return float(jnp.max(a.data))


def reduce_min(a: Tensor) -> float:
    return float(jnp.min(a.data))


# ---------------------------------------------------------------------------
# Tensor literals in expression trees
# ---------------------------------------------------------------------------


class TensorHandle:
    """Reference-counted owner of a persistent tensor shared by tree nodes."""

    __slots__ = ("tensor", "_refcount")

    def __init__(self, tensor: Tensor) -> None:
        if tensor.storage is not Storage.PERSISTENT:
            tensor = clone(tensor)
        self.tensor = tensor
        self._refcount = 1

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def shape(self) -> tuple[int, ...]:
        return self.tensor.shape

    def retain(self) -> "TensorHandle":
        self._refcount += 1
        return self

    def release(self) -> None:
        if self._refcount <= 0:
            raise LifetimeError("tensor handle released more times than retained")
        self._refcount -= 1
        if self._refcount == 0:
            self.tensor.free()

    def mean(self) -> float:
        return reduce_mean(self.tensor)

    def __repr__(self) -> str:
        return f"TensorHandle(shape={self.shape}, refcount={self._refcount})"


def tensor_literal(t: Tensor) -> TensorLiteral:
    return TensorLiteral(TensorHandle(t))


def literal_matmul(a: TensorLiteral, b: TensorLiteral) -> TensorLiteral:
    return tensor_literal(matmul(a.handle.tensor, b.handle.tensor))


def literal_add(a: TensorLiteral, b: TensorLiteral) -> TensorLiteral:
    return tensor_literal(add(a.handle.tensor, b.handle.tensor))
