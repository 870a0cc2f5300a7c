"""Optimizers over model parameters."""

from __future__ import annotations

from collections.abc import Iterable

import jax.numpy as jnp

from .autograd import Variable


class Optimizer:
    """Base optimizer class."""

    def __init__(self, params: Iterable[Variable], lr: float = 0.001):
        self.params = [p for p in params if p.requires_grad]
        self.lr = lr

    def zero_grad(self) -> None:
        for p in self.params:
            p.zero_grad()

    def step(self) -> None:
        raise NotImplementedError


class SGD(Optimizer):
    """Plain gradient descent: p -= lr * grad."""

    def __init__(self, params: Iterable[Variable], lr: float = 0.01):
        super().__init__(params, lr)

    def step(self) -> None:
        for p in self.params:
            if p.grad is None:
                continue
            p.data.assign(p.data.data - self.lr * p.grad.data)


class Adam(Optimizer):
    """Adam with bias-corrected moments; `t` counts completed steps."""

    def __init__(
        self,
        params: Iterable[Variable],
        lr: float = 0.001,
        betas: tuple[float, float] = (0.9, 0.999),
        eps: float = 1e-8,
    ):
        super().__init__(params, lr)
        self.b1, self.b2 = betas
        self.eps = eps
        self.m = [jnp.zeros(p.shape, dtype=p.data.data.dtype) for p in self.params]
        self.v = [jnp.zeros(p.shape, dtype=p.data.data.dtype) for p in self.params]
        self.t = 0

    def step(self) -> None:
        self.t += 1
        bc1 = 1.0 - self.b1**self.t
        bc2 = 1.0 - self.b2**self.t
        for i, p in enumerate(self.params):
            if p.grad is None:
                continue
            g = p.grad.data
            self.m[i] = self.b1 * self.m[i] + (1.0 - self.b1) * g
            self.v[i] = self.b2 * self.v[i] + (1.0 - self.b2) * g * g
            m_hat = self.m[i] / bc1
            v_hat = self.v[i] / bc2
            p.data.assign(p.data.data - self.lr * m_hat / (jnp.sqrt(v_hat) + self.eps))
