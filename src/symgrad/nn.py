"""Layers and the pre-norm transformer language model."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from . import ops
from .autograd import AutogradContext, Variable, get_context
from .errors import ShapeError
from .tensor import ones, randn, zeros


class Linear:
    """y = x . W^T + b"""

    def __init__(self, in_features: int, out_features: int, name: str = "linear"):
        self.in_features = in_features
        self.out_features = out_features
        self.weight = Variable.parameter(
            randn((out_features, in_features), std=math.sqrt(2.0 / in_features)), name=f"{name}.weight"
        )
        self.bias = Variable.parameter(zeros((out_features,)), name=f"{name}.bias")

    def __call__(self, x: Variable, ctx: AutogradContext | None = None) -> Variable:
        ctx = ctx or get_context()
        return ops.add(ops.matmul(x, ops.transpose(self.weight, ctx), ctx), self.bias, ctx)

    def parameters(self) -> list[Variable]:
        return [self.weight, self.bias]


class Embedding:
    def __init__(self, vocab_size: int, dim: int, name: str = "embedding"):
        self.vocab_size = vocab_size
        self.dim = dim
        self.weight = Variable.parameter(randn((vocab_size, dim), std=0.01), name=f"{name}.weight")

    def __call__(self, indices: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
        return ops.embedding(self.weight, indices, ctx)

    def parameters(self) -> list[Variable]:
        return [self.weight]


class LayerNorm:
    def __init__(self, dim: int, eps: float = ops.LAYER_NORM_EPS, name: str = "ln"):
        self.eps = eps
        self.gamma = Variable.parameter(ones((dim,)), name=f"{name}.gamma")
        self.beta = Variable.parameter(zeros((dim,)), name=f"{name}.beta")

    def __call__(self, x: Variable, ctx: AutogradContext | None = None) -> Variable:
        return ops.layer_norm(x, self.gamma, self.beta, self.eps, ctx)

    def parameters(self) -> list[Variable]:
        return [self.gamma, self.beta]


class MultiHeadAttention:
    """Scaled dot-product self-attention over a `(seq, d_model)` input.

    Scores are not masked unless `causal=True`.
    """

    def __init__(self, d_model: int, n_heads: int, causal: bool = False, name: str = "attn"):
        if n_heads <= 0 or d_model % n_heads != 0:
            raise ShapeError(f"d_model={d_model} is not divisible by n_heads={n_heads}")
        self.d_model = d_model
        self.n_heads = n_heads
        self.head_dim = d_model // n_heads
        self.scale = 1.0 / math.sqrt(self.head_dim)
        self.causal = causal
        self.q_proj = Linear(d_model, d_model, name=f"{name}.q_proj")
        self.k_proj = Linear(d_model, d_model, name=f"{name}.k_proj")
        self.v_proj = Linear(d_model, d_model, name=f"{name}.v_proj")
        self.out_proj = Linear(d_model, d_model, name=f"{name}.out_proj")

    def __call__(self, x: Variable, ctx: AutogradContext | None = None) -> Variable:
        ctx = ctx or get_context()
        seq_len = x.shape[0]
        heads = (seq_len, self.n_heads, self.head_dim)

        q = ops.reshape(self.q_proj(x, ctx), heads, ctx)
        k = ops.reshape(self.k_proj(x, ctx), heads, ctx)
        v = ops.reshape(self.v_proj(x, ctx), heads, ctx)

        scores = ops.attention_scores(q, k, self.scale, self.causal, ctx)  # (h, seq, seq)
        weights = ops.softmax(scores, ctx)
        mixed = ops.attention_apply(weights, v, ctx)  # (seq, h, d_h)
        return self.out_proj(ops.reshape(mixed, (seq_len, self.d_model), ctx), ctx)

    def parameters(self) -> list[Variable]:
        return [
            *self.q_proj.parameters(),
            *self.k_proj.parameters(),
            *self.v_proj.parameters(),
            *self.out_proj.parameters(),
        ]


class FeedForward:
    def __init__(self, d_model: int, d_ff: int, name: str = "ff"):
        self.fc1 = Linear(d_model, d_ff, name=f"{name}.fc1")
        self.fc2 = Linear(d_ff, d_model, name=f"{name}.fc2")

    def __call__(self, x: Variable, ctx: AutogradContext | None = None) -> Variable:
        ctx = ctx or get_context()
        return self.fc2(ops.relu(self.fc1(x, ctx), ctx), ctx)

    def parameters(self) -> list[Variable]:
        return [*self.fc1.parameters(), *self.fc2.parameters()]


class TransformerBlock:
    """Pre-norm residual block: x + Attn(LN(x)), then x + FF(LN(x))."""

    def __init__(self, d_model: int, n_heads: int, d_ff: int, causal: bool = False, name: str = "block"):
        self.ln1 = LayerNorm(d_model, name=f"{name}.ln1")
        self.attn = MultiHeadAttention(d_model, n_heads, causal=causal, name=f"{name}.attn")
        self.ln2 = LayerNorm(d_model, name=f"{name}.ln2")
        self.ff = FeedForward(d_model, d_ff, name=f"{name}.ff")

    def __call__(self, x: Variable, ctx: AutogradContext | None = None) -> Variable:
        ctx = ctx or get_context()
        x = ops.add(x, self.attn(self.ln1(x, ctx), ctx), ctx)
        return ops.add(x, self.ff(self.ln2(x, ctx), ctx), ctx)

    def parameters(self) -> list[Variable]:
        return [
            *self.ln1.parameters(),
            *self.ln2.parameters(),
            *self.attn.parameters(),
            *self.ff.parameters(),
        ]


@dataclass(frozen=True)
class TransformerConfig:
    vocab_size: int = 256
    d_model: int = 256
    n_heads: int = 8
    n_layers: int = 4
    d_ff: int = 1024
    max_seq_len: int = 128

    @classmethod
    def tiny(cls, vocab_size: int = 256) -> "TransformerConfig":
        return cls(vocab_size=vocab_size, d_model=64, n_heads=2, n_layers=1, d_ff=128)

    @classmethod
    def small(cls, vocab_size: int = 256) -> "TransformerConfig":
        return cls(vocab_size=vocab_size, d_model=128, n_heads=4, n_layers=2, d_ff=512)

    @classmethod
    def medium(cls, vocab_size: int = 256) -> "TransformerConfig":
        return cls(vocab_size=vocab_size, d_model=256, n_heads=8, n_layers=4, d_ff=1024)

    @classmethod
    def large(cls, vocab_size: int = 256) -> "TransformerConfig":
        return cls(vocab_size=vocab_size, d_model=512, n_heads=16, n_layers=6, d_ff=2048)


class Transformer:
    """Token + position embeddings, `n_layers` blocks, final norm, vocab head."""

    def __init__(self, config: TransformerConfig, causal: bool = False):
        self.config = config
        self.token_embed = Embedding(config.vocab_size, config.d_model, name="token_embed")
        self.pos_embed = Embedding(config.max_seq_len, config.d_model, name="pos_embed")
        self.blocks = [
            TransformerBlock(config.d_model, config.n_heads, config.d_ff, causal=causal, name=f"blocks.{i}")
            for i in range(config.n_layers)
        ]
        self.ln_final = LayerNorm(config.d_model, name="ln_final")
        self.lm_head = Linear(config.d_model, config.vocab_size, name="lm_head")

    def __call__(self, tokens: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
        """Logits of shape `(len(tokens), vocab_size)`."""
        ctx = ctx or get_context()
        seq_len = len(tokens)
        if not 0 < seq_len <= self.config.max_seq_len:
            raise ShapeError(f"sequence length {seq_len} outside 1..{self.config.max_seq_len}")
        x = ops.add(self.token_embed(tokens, ctx), self.pos_embed(range(seq_len), ctx), ctx)
        for block in self.blocks:
            x = block(x, ctx)
        return self.lm_head(self.ln_final(x, ctx), ctx)

    def loss(self, tokens: Sequence[int], targets: Sequence[int], ctx: AutogradContext | None = None) -> Variable:
        ctx = ctx or get_context()
        return ops.cross_entropy(self(tokens, ctx), targets, ctx)

    def parameters(self) -> list[Variable]:
        params = [*self.token_embed.parameters(), *self.pos_embed.parameters()]
        for block in self.blocks:
            params.extend(block.parameters())
        params.extend(self.ln_final.parameters())
        params.extend(self.lm_head.parameters())
        return params

    def num_parameters(self) -> int:
        return sum(p.data.size for p in self.parameters())
