"""Process-wide random sources.

Scalar draws (the RANDOM/RND expression functions) and tensor initialisers
share one lock and one lazily-seeded state. The jax key is only built on the
first tensor draw, so the scalar engine never imports jax.
"""

from __future__ import annotations

import random
import threading
import time

_RNG_LOCK = threading.Lock()
_SCALAR_RNG = random.Random()
_seed_value: int | None = None
_key = None


def _ensure_seeded_locked() -> int:
    global _seed_value
    if _seed_value is None:
        _seed_value = time.time_ns() & 0xFFFFFFFF
        _SCALAR_RNG.seed(_seed_value)
    return _seed_value


def seed(value: int) -> None:
    """Reseed both the scalar and the tensor streams."""
    global _seed_value, _key
    with _RNG_LOCK:
        _seed_value = int(value) & 0xFFFFFFFF
        _SCALAR_RNG.seed(_seed_value)
        _key = None


def uniform_scalar() -> float:
    with _RNG_LOCK:
        _ensure_seeded_locked()
        return _SCALAR_RNG.random()


def next_key():
    """Split a fresh subkey off the shared jax PRNG key."""
    import jax

    global _key
    with _RNG_LOCK:
        if _key is None:
            _key = jax.random.PRNGKey(_ensure_seeded_locked())
        _key, sub = jax.random.split(_key)
        return sub
