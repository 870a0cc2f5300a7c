"""Debug bitmask levels shared by the parser, evaluator and optimizers.

The process-wide level is guarded by a lock. A thread may install its own
override, which parse calls configured with `thread_safe=True` consult first.
"""

from __future__ import annotations

import logging
import os
import threading
from enum import IntFlag
from typing import Callable

logger = logging.getLogger(__name__)


class DebugLevel(IntFlag):
    NONE = 0
    TOKENS = 1
    AST = 2
    EVAL = 4
    VARS = 8
    FUNCS = 16
    OPTIMIZE = 32
    TIMING = 64
    ALL = 255


_LEVEL_LOCK = threading.Lock()
_GLOBAL_LEVEL = DebugLevel(int(os.environ.get("SYMGRAD_DEBUG_LEVEL", "0")) & int(DebugLevel.ALL))
_THREAD_STATE = threading.local()
_DEBUG_CALLBACK: Callable[[DebugLevel, str], None] | None = None


def set_debug_level(level: int) -> None:
    global _GLOBAL_LEVEL
    with _LEVEL_LOCK:
        _GLOBAL_LEVEL = DebugLevel(int(level) & int(DebugLevel.ALL))


def get_debug_level() -> DebugLevel:
    with _LEVEL_LOCK:
        return _GLOBAL_LEVEL


def set_thread_debug_level(level: int) -> None:
    _THREAD_STATE.level = DebugLevel(int(level) & int(DebugLevel.ALL))


def get_thread_debug_level() -> DebugLevel | None:
    return getattr(_THREAD_STATE, "level", None)


def clear_thread_debug_level() -> None:
    if hasattr(_THREAD_STATE, "level"):
        del _THREAD_STATE.level


def effective_debug_level(*, thread_safe: bool = False) -> DebugLevel:
    if thread_safe:
        local = get_thread_debug_level()
        if local is not None:
            return local
    return get_debug_level()


def debug_enabled(flag: DebugLevel, *, thread_safe: bool = False) -> bool:
    return bool(effective_debug_level(thread_safe=thread_safe) & flag)


def set_debug_callback(callback: Callable[[DebugLevel, str], None] | None) -> None:
    """Route debug messages to `callback(flag, message)` in addition to logging."""
    global _DEBUG_CALLBACK
    with _LEVEL_LOCK:
        _DEBUG_CALLBACK = callback


def debug_log(flag: DebugLevel, fmt: str, *args, thread_safe: bool = False) -> None:
    if not debug_enabled(flag, thread_safe=thread_safe):
        return
    message = fmt % args if args else fmt
    logger.debug("[%s] %s", flag.name, message)
    with _LEVEL_LOCK:
        callback = _DEBUG_CALLBACK
    if callback is not None:
        callback(flag, message)
