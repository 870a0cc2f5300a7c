"""Bump allocator with bulk reset.

An `Arena` hands out 8-byte aligned blocks from a list of chunks. Nothing is
freed individually: `reset` rewinds every chunk, `reset_aggressive` also
drops every chunk after the first. Each reset bumps `generation`, which
arena-scoped tensors compare against to detect use after reset.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Final

from .errors import LifetimeError

logger = logging.getLogger(__name__)

ALIGNMENT: Final[int] = 8
DEFAULT_CHUNK_SIZE: Final[int] = max(
    ALIGNMENT, int(os.environ.get("SYMGRAD_ARENA_CHUNK_SIZE", str(10 * 1024 * 1024)))
)


def _align(n: int) -> int:
    return (n + ALIGNMENT - 1) & ~(ALIGNMENT - 1)


@dataclass
class _Chunk:
    buffer: bytearray
    used: int = 0

    @property
    def size(self) -> int:
        return len(self.buffer)

    def remaining(self) -> int:
        return self.size - self.used


@dataclass(frozen=True)
class ArenaBlock:
    arena: "Arena"
    chunk: int
    offset: int
    size: int
    generation: int

    @property
    def valid(self) -> bool:
        return self.generation == self.arena.generation

    def check(self) -> None:
        if not self.valid:
            raise LifetimeError(
                f"arena block from generation {self.generation} read after reset "
                f"(arena is at generation {self.arena.generation})"
            )

    def view(self) -> memoryview:
        self.check()
        return memoryview(self.arena._chunks[self.chunk].buffer)[self.offset : self.offset + self.size]


@dataclass
class Arena:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    generation: int = 0
    _chunks: list[_Chunk] = field(default_factory=list, repr=False)
    _current: int = field(default=0, repr=False)

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        self.chunk_size = _align(self.chunk_size)
        self._chunks.append(_Chunk(bytearray(self.chunk_size)))

    @property
    def used(self) -> int:
        return sum(chunk.used for chunk in self._chunks)

    @property
    def allocated(self) -> int:
        return sum(chunk.size for chunk in self._chunks)

    @property
    def chunk_count(self) -> int:
        return len(self._chunks)

    def alloc(self, n_bytes: int) -> ArenaBlock | None:
        """Reserve `n_bytes` (rounded up to 8); returns None if memory is exhausted."""
        if n_bytes <= 0:
            return None
        size = _align(n_bytes)

        index = self._current
        while index < len(self._chunks) and self._chunks[index].remaining() < size:
            index += 1
        if index == len(self._chunks):
            try:
                self._chunks.append(_Chunk(bytearray(max(self.chunk_size, 2 * size))))
            except MemoryError:
                logger.error("arena could not grow by %d bytes", max(self.chunk_size, 2 * size))
                return None
            logger.debug("arena grew to %d chunks (%d bytes)", len(self._chunks), self.allocated)

        chunk = self._chunks[index]
        offset = chunk.used
        chunk.used += size
        self._current = index
        return ArenaBlock(self, index, offset, size, self.generation)

    def calloc(self, count: int, size: int) -> ArenaBlock | None:
        block = self.alloc(count * size)
        if block is not None:
            buffer = self._chunks[block.chunk].buffer
            buffer[block.offset : block.offset + block.size] = bytes(block.size)
        return block

    def reset(self) -> None:
        """Rewind every chunk; memory is kept and not zeroed."""
        for chunk in self._chunks:
            chunk.used = 0
        self._current = 0
        self.generation += 1

    def reset_aggressive(self) -> None:
        """Rewind and release every chunk except the first."""
        released = len(self._chunks) - 1
        del self._chunks[1:]
        self.reset()
        if released:
            logger.debug("arena released %d chunks, %d bytes remain", released, self.allocated)

    def destroy(self) -> None:
        self._chunks.clear()
        self._current = 0
        self.generation += 1

    def stats(self) -> dict[str, int]:
        return {
            "used": self.used,
            "allocated": self.allocated,
            "chunks": self.chunk_count,
            "generation": self.generation,
        }
