"""Binary model and checkpoint files.

Layout (little-endian):

    uint32 magic, uint32 version
    [checkpoint only] int32 iteration, float64 loss, float64 learning_rate
    int32 vocab_size, d_model, n_heads, n_layers, d_ff, max_seq_len
    int32 n_params
    per parameter: int32 rank, int32 shape[rank], int32 size, float64 data[size]
                   [checkpoint only] float64 m[size], float64 v[size]

Parameters appear in `Transformer.parameters()` order.
"""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Final

import jax.numpy as jnp
import numpy as np

from .errors import ModelFormatError
from .nn import Transformer, TransformerConfig
from .optim import Adam

logger = logging.getLogger(__name__)

MODEL_MAGIC: Final[int] = 0x464C5558
MODEL_VERSION: Final[int] = 2

_HEADER = struct.Struct("<II")
_TRAINING_STATE = struct.Struct("<idd")
_ARCHITECTURE = struct.Struct("<6i")
_INT = struct.Struct("<i")
_FLOAT64: Final = np.dtype("<f8")


@dataclass(frozen=True)
class Checkpoint:
    model: Transformer
    optimizer: Adam
    iteration: int
    loss: float
    learning_rate: float


def checkpoint_path(prefix: str | os.PathLike, iteration: int) -> str:
    return f"{os.fspath(prefix)}.iter_{iteration:06d}.ckpt"


def _read_exact(f: BinaryIO, n: int) -> bytes:
    data = f.read(n)
    if len(data) != n:
        raise ModelFormatError(f"unexpected end of file: wanted {n} bytes, got {len(data)}")
    return data


def _unpack(f: BinaryIO, fmt: struct.Struct) -> tuple:
    return fmt.unpack(_read_exact(f, fmt.size))


def _write_array(f: BinaryIO, values) -> None:
    f.write(np.asarray(values, dtype=_FLOAT64).tobytes())


def _read_array(f: BinaryIO, size: int) -> np.ndarray:
    return np.frombuffer(_read_exact(f, size * _FLOAT64.itemsize), dtype=_FLOAT64)


def _architecture(config: TransformerConfig) -> tuple[int, ...]:
    return (config.vocab_size, config.d_model, config.n_heads, config.n_layers, config.d_ff, config.max_seq_len)


def _check_header(f: BinaryIO) -> None:
    magic, version = _unpack(f, _HEADER)
    if magic != MODEL_MAGIC:
        raise ModelFormatError(f"bad magic 0x{magic:08X}, expected 0x{MODEL_MAGIC:08X}")
    if version != MODEL_VERSION:
        raise ModelFormatError(f"unsupported version {version}, expected {MODEL_VERSION}")


def _read_config(f: BinaryIO) -> TransformerConfig:
    vocab, d_model, n_heads, n_layers, d_ff, max_seq_len = _unpack(f, _ARCHITECTURE)
    return TransformerConfig(vocab, d_model, n_heads, n_layers, d_ff, max_seq_len)


def _write_params(f: BinaryIO, model: Transformer, optimizer: Adam | None) -> None:
    params = model.parameters()
    f.write(_INT.pack(len(params)))
    for i, param in enumerate(params):
        shape = param.shape
        f.write(_INT.pack(len(shape)))
        f.write(struct.pack(f"<{len(shape)}i", *shape))
        f.write(_INT.pack(param.data.size))
        _write_array(f, param.data.data)
        if optimizer is not None:
            _write_array(f, optimizer.m[i])
            _write_array(f, optimizer.v[i])


def _read_params(f: BinaryIO, model: Transformer, optimizer: Adam | None) -> None:
    params = model.parameters()
    (count,) = _unpack(f, _INT)
    if count != len(params):
        raise ModelFormatError(f"file has {count} parameters, model has {len(params)}")
    for i, param in enumerate(params):
        (rank,) = _unpack(f, _INT)
        if rank != len(param.shape):
            raise ModelFormatError(f"parameter {i} ({param.name}): rank {rank}, expected {len(param.shape)}")
        shape = struct.unpack(f"<{rank}i", _read_exact(f, 4 * rank))
        (size,) = _unpack(f, _INT)
        if tuple(shape) != param.shape or size != param.data.size:
            raise ModelFormatError(f"parameter {i} ({param.name}): shape {shape}, expected {param.shape}")
        param.data.assign(_read_array(f, size).reshape(shape))
        if optimizer is not None:
            optimizer.m[i] = jnp.asarray(_read_array(f, size).reshape(shape))
            optimizer.v[i] = jnp.asarray(_read_array(f, size).reshape(shape))


def save_model(model: Transformer, path: str | os.PathLike) -> int:
    """Write `model` to `path`; returns the file size in bytes."""
    with open(path, "wb") as f:
        f.write(_HEADER.pack(MODEL_MAGIC, MODEL_VERSION))
        f.write(_ARCHITECTURE.pack(*_architecture(model.config)))
        _write_params(f, model, None)
        size = f.tell()
    logger.info("saved model to %s (%d bytes, %d parameters)", path, size, model.num_parameters())
    return size


def load_model(path: str | os.PathLike, model: Transformer | None = None) -> Transformer:
    """Read a model file into `model`, or into a fresh `Transformer` built from the header."""
    with open(path, "rb") as f:
        _check_header(f)
        config = _read_config(f)
        if model is None:
            model = Transformer(config)
        elif model.config != config:
            raise ModelFormatError(f"architecture mismatch: file has {config}, model has {model.config}")
        _read_params(f, model, None)
    logger.info("loaded model from %s", path)
    return model


def save_checkpoint(
    model: Transformer,
    optimizer: Adam,
    iteration: int,
    loss: float,
    path: str | os.PathLike,
) -> int:
    """Write model parameters plus Adam moments and training state."""
    if len(optimizer.params) != len(model.parameters()):
        raise ModelFormatError("optimizer does not track every model parameter")
    with open(path, "wb") as f:
        f.write(_HEADER.pack(MODEL_MAGIC, MODEL_VERSION))
        f.write(_TRAINING_STATE.pack(iteration, loss, optimizer.lr))
        f.write(_ARCHITECTURE.pack(*_architecture(model.config)))
        _write_params(f, model, optimizer)
        size = f.tell()
    logger.info("saved checkpoint to %s (iteration %d, loss %.6f)", path, iteration, loss)
    return size


def load_checkpoint(path: str | os.PathLike) -> Checkpoint:
    """Rebuild model and optimizer from a checkpoint; Adam resumes at step `iteration`."""
    with open(path, "rb") as f:
        _check_header(f)
        iteration, loss, learning_rate = _unpack(f, _TRAINING_STATE)
        model = Transformer(_read_config(f))
        optimizer = Adam(model.parameters(), lr=learning_rate)
        _read_params(f, model, optimizer)
    optimizer.t = iteration
    logger.info("loaded checkpoint %s (iteration %d, loss %.6f)", path, iteration, loss)
    return Checkpoint(model, optimizer, iteration, loss, learning_rate)
