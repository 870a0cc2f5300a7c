"""Differentiable operations recorded on the autodiff tape.

Each op computes its output in the context's arena, wraps it in a Variable
that requires grad when any input does, and, in that case, appends a record
whose reverse accumulates into the inputs' gradients. Activations a reverse
needs are cloned into the arena at forward time.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

import jax
import jax.numpy as jnp

from .autograd import AutogradContext, TapeRecord, Variable, get_context
from .errors import ShapeError
from .tensor import Tensor, check_shape, softmax_array, wrap

logger = logging.getLogger(__name__)

LAYER_NORM_EPS = 1e-5


def _record(
    ctx: AutogradContext,
    op: str,
    inputs: tuple[Variable, ...],
    out: jax.Array,
    reverse,
    saved: Sequence[jax.Array] = (),
    **attrs,
) -> Variable:
    requires_grad = any(v.requires_grad for v in inputs)
    output = Variable(wrap(out, ctx.arena), requires_grad=requires_grad, arena=ctx.arena)
    if requires_grad:
        ctx.tape.record(
            TapeRecord(
                op=op,
                inputs=inputs,
                output=output,
                reverse=reverse,
                saved=tuple(wrap(x, ctx.arena) for x in saved),
                attrs=attrs,
            )
        )
    return output


def _send(var: Variable, g: jax.Array) -> None:
    if var.requires_grad:
        var.accumulate_grad(g)


# ---------------------------------------------------------------------------
# Elementwise and structural
# ---------------------------------------------------------------------------


def _add_reverse(record: TapeRecord, grad: jax.Array) -> None:
    for var in record.inputs:
        if var.shape == tuple(grad.shape):
            _send(var, grad)
        else:
            # Rank-1 bias broadcast across rows.
            _send(var, jnp.sum(grad, axis=0))


def add(a: Variable, b: Variable, ctx: AutogradContext | None = None) -> Variable:
    """Elementwise sum; a rank-1 operand broadcasts across the rows of a rank-2 one."""
    ctx = ctx or get_context()
    if a.shape != b.shape:
        matrix, vector = (a, b) if len(a.shape) == 2 else (b, a)
        if not (len(matrix.shape) == 2 and len(vector.shape) == 1 and matrix.shape[1] == vector.shape[0]):
            raise ShapeError(f"add: cannot broadcast {a.shape} with {b.shape}")
    return _record(ctx, "add", (a, b), a.data.data + b.data.data, _add_reverse)


def _multiply_reverse(record: TapeRecord, grad: jax.Array) -> None:
    a, b = record.inputs
    a_saved, b_saved = record.saved
    _send(a, grad * b_saved.data)
    _send(b, grad * a_saved.data)


def multiply(a: Variable, b: Variable, ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    if a.shape != b.shape:
        raise ShapeError(f"multiply: shape mismatch {a.shape} vs {b.shape}")
    x, y = a.data.data, b.data.data
    return _record(ctx, "multiply", (a, b), x * y, _multiply_reverse, saved=(x, y))


def _scale_reverse(record: TapeRecord, grad: jax.Array) -> None:
    _send(record.inputs[0], grad * record.attrs["factor"])


def scale(x: Variable, factor: float, ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    return _record(ctx, "scale", (x,), x.data.data * factor, _scale_reverse, factor=float(factor))


def _matmul_reverse(record: TapeRecord, grad: jax.Array) -> None:
    a, b = record.inputs
    a_saved, b_saved = record.saved
    _send(a, grad @ b_saved.data.T)
    _send(b, a_saved.data.T @ grad)


def matmul(a: Variable, b: Variable, ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    if len(a.shape) != 2 or len(b.shape) != 2:
        raise ShapeError(f"matmul needs rank-2 operands, got {a.shape} and {b.shape}")
    if a.shape[1] != b.shape[0]:
        raise ShapeError(f"matmul inner dimensions differ: {a.shape} x {b.shape}")
    x, y = a.data.data, b.data.data
    return _record(ctx, "matmul", (a, b), x @ y, _matmul_reverse, saved=(x, y))


def _transpose_reverse(record: TapeRecord, grad: jax.Array) -> None:
    _send(record.inputs[0], grad.T)


def transpose(x: Variable, ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    if len(x.shape) != 2:
        raise ShapeError(f"transpose needs a rank-2 variable, got shape {x.shape}")
    return _record(ctx, "transpose", (x,), x.data.data.T, _transpose_reverse)


def _reshape_reverse(record: TapeRecord, grad: jax.Array) -> None:
    source = record.inputs[0]
    _send(source, grad.reshape(source.shape))


def reshape(x: Variable, shape: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    shape = check_shape(shape)
    if math.prod(shape) != math.prod(x.shape):
        raise ShapeError(f"reshape: cannot view {x.shape} as {shape}")
    return _record(ctx, "reshape", (x,), x.data.data.reshape(shape), _reshape_reverse)


# ---------------------------------------------------------------------------
# Activations
# ---------------------------------------------------------------------------


def _relu_reverse(record: TapeRecord, grad: jax.Array) -> None:
    (pre,) = record.saved
    _send(record.inputs[0], jnp.where(pre.data > 0.0, grad, 0.0))


def relu(x: Variable, ctx: AutogradContext | None = None) -> Variable:
    ctx = ctx or get_context()
    data = x.data.data
    return _record(ctx, "relu", (x,), jnp.maximum(data, 0.0), _relu_reverse, saved=(data,))


def _softmax_reverse(record: TapeRecord, grad: jax.Array) -> None:
    (y_saved,) = record.saved
    y = y_saved.data
    # Row-wise Jacobian-vector product: J = diag(y) - y y^T.
    _send(record.inputs[0], y * (grad - jnp.sum(grad * y, axis=-1, keepdims=True)))


def softmax(x: Variable, ctx: AutogradContext | None = None) -> Variable:
    """Softmax over the last axis."""
    ctx = ctx or get_context()
    y = softmax_array(x.data.data)
    return _record(ctx, "softmax", (x,), y, _softmax_reverse, saved=(y,))


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _layer_norm_reverse(record: TapeRecord, grad: jax.Array) -> None:
    x, gamma, beta = record.inputs
    x_saved, mean_saved, var_saved = record.saved
    eps = record.attrs["eps"]
    inv_std = 1.0 / jnp.sqrt(var_saved.data + eps)
    x_hat = (x_saved.data - mean_saved.data) * inv_std
    leading = tuple(range(grad.ndim - 1))

    _send(gamma, jnp.sum(grad * x_hat, axis=leading))
    _send(beta, jnp.sum(grad, axis=leading))

    d_hat = grad * gamma.data.data
    _send(
        x,
        inv_std
        * (
            d_hat
            - jnp.mean(d_hat, axis=-1, keepdims=True)
            - x_hat * jnp.mean(d_hat * x_hat, axis=-1, keepdims=True)
        ),
    )


def layer_norm(
    x: Variable,
    gamma: Variable,
    beta: Variable,
    eps: float = LAYER_NORM_EPS,
    ctx: AutogradContext | None = None,
) -> Variable:
    """Normalise each position over the last axis, then apply `gamma`/`beta`."""
    ctx = ctx or get_context()
    dim = x.shape[-1]
    if gamma.shape != (dim,) or beta.shape != (dim,):
        raise ShapeError(f"layer_norm: gamma/beta must have shape ({dim},), got {gamma.shape} and {beta.shape}")
    data = x.data.data
    mean = jnp.mean(data, axis=-1, keepdims=True)
    var = jnp.mean((data - mean) ** 2, axis=-1, keepdims=True)
    out = gamma.data.data * (data - mean) / jnp.sqrt(var + eps) + beta.data.data
    return _record(
        ctx, "layer_norm", (x, gamma, beta), out, _layer_norm_reverse, saved=(data, mean, var), eps=float(eps)
    )


# ---------------------------------------------------------------------------
# Lookup and attention
# ---------------------------------------------------------------------------


def _embedding_reverse(record: TapeRecord, grad: jax.Array) -> None:
    table = record.inputs[0]
    indices = jnp.asarray(record.attrs["indices"])
    _send(table, jnp.zeros(table.shape, dtype=grad.dtype).at[indices].add(grad))


def embedding(table: Variable, indices: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
    """Gather rows of a `(vocab, dim)` table into `(len(indices), dim)`."""
    ctx = ctx or get_context()
    if len(table.shape) != 2:
        raise ShapeError(f"embedding table must be rank 2, got shape {table.shape}")
    indices = tuple(int(i) for i in indices)
    if not indices:
        raise ShapeError("embedding needs at least one index")
    vocab = table.shape[0]
    for i in indices:
        if not 0 <= i < vocab:
            raise ShapeError(f"embedding index {i} out of range for {vocab} rows")
    out = table.data.data[jnp.asarray(indices)]
    return _record(ctx, "embedding", (table,), out, _embedding_reverse, indices=indices)


def _attention_scores_reverse(record: TapeRecord, grad: jax.Array) -> None:
    q, k = record.inputs
    q_saved, k_saved = record.saved
    factor = record.attrs["scale"]
    if record.attrs["causal"]:
        grad = jnp.where(_causal_mask(grad.shape[-1]), grad, 0.0)
    _send(q, jnp.einsum("hqk,khd->qhd", grad, k_saved.data) * factor)
    _send(k, jnp.einsum("hqk,qhd->khd", grad, q_saved.data) * factor)


def _causal_mask(seq_len: int) -> jax.Array:
    return jnp.tril(jnp.ones((seq_len, seq_len), dtype=bool))


def attention_scores(
    q: Variable,
    k: Variable,
    scale: float,
    causal: bool = False,
    ctx: AutogradContext | None = None,
) -> Variable:
    """Per-head `q . k` products: `(seq, h, d_h)` x2 -> `(h, seq, seq)`.

    With `causal`, positions after the query are set to -inf.
    """
    ctx = ctx or get_context()
    if len(q.shape) != 3 or q.shape != k.shape:
        raise ShapeError(f"attention_scores needs matching (seq, h, d_h) operands, got {q.shape} and {k.shape}")
    qd, kd = q.data.data, k.data.data
    scores = jnp.einsum("qhd,khd->hqk", qd, kd) * scale
    if causal:
        scores = jnp.where(_causal_mask(q.shape[0]), scores, -jnp.inf)
    return _record(
        ctx,
        "attention_scores",
        (q, k),
        scores,
        _attention_scores_reverse,
        saved=(qd, kd),
        scale=float(scale),
        causal=bool(causal),
    )


def _attention_apply_reverse(record: TapeRecord, grad: jax.Array) -> None:
    weights, v = record.inputs
    w_saved, v_saved = record.saved
    _send(weights, jnp.einsum("qhd,khd->hqk", grad, v_saved.data))
    _send(v, jnp.einsum("hqk,qhd->khd", w_saved.data, grad))


def attention_apply(weights: Variable, v: Variable, ctx: AutogradContext | None = None) -> Variable:
    """Mix values by attention weights: `(h, seq, seq)` x `(seq, h, d_h)` -> `(seq, h, d_h)`."""
    ctx = ctx or get_context()
    if len(weights.shape) != 3 or len(v.shape) != 3:
        raise ShapeError(f"attention_apply needs rank-3 operands, got {weights.shape} and {v.shape}")
    h, seq, seq2 = weights.shape
    if seq != seq2 or v.shape[0] != seq or v.shape[1] != h:
        raise ShapeError(f"attention_apply: weights {weights.shape} do not match values {v.shape}")
    wd, vd = weights.data.data, v.data.data
    out = jnp.einsum("hqk,khd->qhd", wd, vd)
    return _record(ctx, "attention_apply", (weights, v), out, _attention_apply_reverse, saved=(wd, vd))


# ---------------------------------------------------------------------------
# Losses
# ---------------------------------------------------------------------------


def _cross_entropy_reverse(record: TapeRecord, grad: jax.Array) -> None:
    (logits_saved,) = record.saved
    targets = jnp.asarray(record.attrs["targets"])
    logits = logits_saved.data
    seq_len, vocab = logits.shape
    probs = softmax_array(logits)
    one_hot = jax.nn.one_hot(targets, vocab, dtype=probs.dtype)
    _send(record.inputs[0], (probs - one_hot) * grad[0] / seq_len)


def cross_entropy(logits: Variable, targets: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
    """Mean negative log-likelihood over a `(seq, vocab)` logit matrix; returns shape (1,)."""
    ctx = ctx or get_context()
    if len(logits.shape) != 2:
        raise ShapeError(f"cross_entropy needs (seq, vocab) logits, got shape {logits.shape}")
    seq_len, vocab = logits.shape
    targets = tuple(int(t) for t in targets)
    if len(targets) != seq_len:
        raise ShapeError(f"cross_entropy: {len(targets)} targets for {seq_len} positions")
    for t in targets:
        if not 0 <= t < vocab:
            raise ShapeError(f"cross_entropy target {t} out of range for vocab {vocab}")
    data = logits.data.data
    log_probs = data - jax.nn.logsumexp(data, axis=-1, keepdims=True)
    picked = log_probs[jnp.arange(seq_len), jnp.asarray(targets)]
    loss = -jnp.mean(picked).reshape((1,))
    return _record(ctx, "cross_entropy", (logits,), loss, _cross_entropy_reverse, saved=(data,), targets=targets)


def _mse_reverse(record: TapeRecord, grad: jax.Array) -> None:
    pred_saved, target_saved = record.saved
    diff = pred_saved.data - target_saved.data
    _send(record.inputs[0], 2.0 * diff / diff.size * grad[0])


def mse_loss(pred: Variable, target, ctx: AutogradContext | None = None) -> Variable:
    """Mean squared error against a fixed target; returns shape (1,)."""
    ctx = ctx or get_context()
    if isinstance(target, Variable):
        target = target.data
    if isinstance(target, Tensor):
        target = target.data
    target_data = jnp.asarray(target, dtype=pred.data.data.dtype)
    if tuple(target_data.shape) != pred.shape:
        raise ShapeError(f"mse_loss: target shape {tuple(target_data.shape)} does not match {pred.shape}")
    data = pred.data.data
    loss = jnp.mean((data - target_data) ** 2).reshape((1,))
    return _record(ctx, "mse_loss", (pred,), loss, _mse_reverse, saved=(data, target_data))
