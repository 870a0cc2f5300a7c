"""Stack bytecode compiler and VM for expression trees.

Programs are produced by a post-order walk and always end with HALT. The VM
shares the evaluator's operator and function tables, so for any tree and any
context it yields the same double as `evaluate`.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Final

from .ast import Binary, Expr, FunctionCall, Number, TensorLiteral, Unary, Variable
from .debug import DebugLevel, debug_enabled, debug_log
from .evaluator import VariableContext, apply_binary, apply_unary, call_function
from .parser import parse

logger = logging.getLogger(__name__)

_COMPILE_CACHE_MAX: Final[int] = max(1, int(os.environ.get("SYMGRAD_COMPILE_CACHE_MAX", "256")))


class Opcode(Enum):
    PUSH_CONST = "PUSH_CONST"
    PUSH_VAR = "PUSH_VAR"
    ADD = "ADD"
    SUBTRACT = "SUBTRACT"
    MULTIPLY = "MULTIPLY"
    DIVIDE = "DIVIDE"
    POWER = "POWER"
    NEGATE = "NEGATE"
    NOT = "NOT"
    AND = "AND"
    OR = "OR"
    GREATER = "GREATER"
    LESS = "LESS"
    GREATER_EQ = "GREATER_EQ"
    LESS_EQ = "LESS_EQ"
    EQUAL = "EQUAL"
    NOT_EQUAL = "NOT_EQUAL"
    CALL = "CALL"
    HALT = "HALT"


_BINARY_OPCODES: Final[dict[str, Opcode]] = {
    "+": Opcode.ADD,
    "-": Opcode.SUBTRACT,
    "*": Opcode.MULTIPLY,
    "/": Opcode.DIVIDE,
    "^": Opcode.POWER,
    "&&": Opcode.AND,
    "||": Opcode.OR,
    ">": Opcode.GREATER,
    "<": Opcode.LESS,
    ">=": Opcode.GREATER_EQ,
    "<=": Opcode.LESS_EQ,
    "==": Opcode.EQUAL,
    "!=": Opcode.NOT_EQUAL,
}
_UNARY_OPCODES: Final[dict[str, Opcode]] = {
    "-": Opcode.NEGATE,
    "!": Opcode.NOT,
}
_OPCODE_BINARY_OPS: Final[dict[Opcode, str]] = {code: op for op, code in _BINARY_OPCODES.items()}
_OPCODE_UNARY_OPS: Final[dict[Opcode, str]] = {code: op for op, code in _UNARY_OPCODES.items()}


@dataclass(frozen=True)
class Instruction:
    op: Opcode
    value: float = 0.0
    index: int = -1
    name: str = ""
    argc: int = 0

    def __str__(self) -> str:
        if self.op is Opcode.PUSH_CONST:
            return f"PUSH_CONST {self.value:.17g}"
        if self.op is Opcode.PUSH_VAR:
            return f"PUSH_VAR {self.index} ({self.name})"
        if self.op is Opcode.CALL:
            return f"CALL {self.name}({self.argc})"
        return self.op.value


@dataclass(frozen=True)
class Program:
    instructions: tuple[Instruction, ...]

    def __len__(self) -> int:
        return len(self.instructions)

    def disassemble(self) -> str:
        lines = [f"Bytecode ({len(self.instructions)} instructions):"]
        for pc, inst in enumerate(self.instructions):
            lines.append(f"  {pc:3d}: {inst}")
        return "\n".join(lines)


def _letter_index(name: str) -> int:
    if len(name) == 1 and "A" <= name <= "Z":
        return ord(name) - ord("A")
    return -1


def _emit(expr: Expr, out: list[Instruction]) -> None:
    if isinstance(expr, Number):
        out.append(Instruction(Opcode.PUSH_CONST, value=expr.value))
    elif isinstance(expr, Variable):
        out.append(Instruction(Opcode.PUSH_VAR, index=_letter_index(expr.name), name=expr.name))
    elif isinstance(expr, Binary):
        _emit(expr.left, out)
        _emit(expr.right, out)
        out.append(Instruction(_BINARY_OPCODES[expr.op]))
    elif isinstance(expr, Unary):
        _emit(expr.operand, out)
        out.append(Instruction(_UNARY_OPCODES[expr.op]))
    elif isinstance(expr, FunctionCall):
        for arg in expr.args:
            _emit(arg, out)
        out.append(Instruction(Opcode.CALL, name=expr.name, argc=len(expr.args)))
    elif isinstance(expr, TensorLiteral):
        out.append(Instruction(Opcode.PUSH_CONST, value=expr.handle.mean()))
    else:
        raise TypeError(f"Unsupported expression node: {type(expr).__name__}")


def compile_tree(expr: Expr) -> Program:
    instructions: list[Instruction] = []
    _emit(expr, instructions)
    instructions.append(Instruction(Opcode.HALT))
    return Program(tuple(instructions))


@dataclass
class VM:
    """Operand-stack machine bound to a variable context."""

    context: VariableContext | None = None
    stack: list[float] = field(default_factory=list)

    def _push(self, value: float) -> None:
        self.stack.append(value)

    def _pop(self) -> float:
        return self.stack.pop() if self.stack else 0.0

    def _load(self, inst: Instruction) -> float:
        ctx = self.context
        if ctx is None:
            return 0.0
        if ctx.names is not None:
            value = ctx.lookup(inst.name)
            return 0.0 if value is None else value
        if inst.index < 0:
            return 0.0
        return ctx.value_at(inst.index)

    def execute(self, program: Program) -> float:
        self.stack.clear()
        for inst in program.instructions:
            op = inst.op
            if op is Opcode.PUSH_CONST:
                self._push(inst.value)
            elif op is Opcode.PUSH_VAR:
                self._push(self._load(inst))
            elif op in _OPCODE_BINARY_OPS:
                # Right operand sits on top of the stack.
                right = self._pop()
                left = self._pop()
                self._push(apply_binary(_OPCODE_BINARY_OPS[op], left, right))
            elif op in _OPCODE_UNARY_OPS:
                self._push(apply_unary(_OPCODE_UNARY_OPS[op], self._pop()))
            elif op is Opcode.CALL:
                args = [self._pop() for _ in range(inst.argc)]
                args.reverse()
                self._push(call_function(inst.name, args))
            elif op is Opcode.HALT:
                break
        return self.stack[-1] if self.stack else 0.0


def _coerce_context(context: VariableContext | Mapping[str, float] | None) -> VariableContext | None:
    if context is None or isinstance(context, VariableContext):
        return context
    return VariableContext.from_mapping(context)


def execute(program: Program, context: VariableContext | Mapping[str, float] | None = None) -> float:
    return VM(context=_coerce_context(context)).execute(program)


@dataclass(frozen=True)
class CompiledExpression:
    """Parsed tree plus its bytecode; evaluate repeatedly under different contexts."""

    source: str | None
    expr: Expr
    program: Program

    @classmethod
    def from_tree(cls, expr: Expr) -> "CompiledExpression":
        return cls(source=None, expr=expr, program=compile_tree(expr))

    def evaluate(self, context: VariableContext | Mapping[str, float] | None = None) -> float:
        value = execute(self.program, context)
        if debug_enabled(DebugLevel.EVAL):
            debug_log(DebugLevel.EVAL, "vm %s -> %.17g", self.source or "<tree>", value)
        return value

    __call__ = evaluate

    def disassemble(self) -> str:
        return self.program.disassemble()


_COMPILE_CACHE: "OrderedDict[str, CompiledExpression]" = OrderedDict()
_COMPILE_CACHE_STATS: dict[str, int] = {"hits": 0, "misses": 0}
_COMPILE_CACHE_LOCK = threading.Lock()


def compile_expression(source: str) -> CompiledExpression:
    """Parse and compile `source`, reusing a bounded per-process cache.

    Raises `ParseError` for malformed input.
    """
    with _COMPILE_CACHE_LOCK:
        cached = _COMPILE_CACHE.get(source)
        if cached is not None:
            _COMPILE_CACHE.move_to_end(source)
            _COMPILE_CACHE_STATS["hits"] += 1
            return cached
        _COMPILE_CACHE_STATS["misses"] += 1

    expr = parse(source)
    compiled = CompiledExpression(source=source, expr=expr, program=compile_tree(expr))
    if debug_enabled(DebugLevel.AST):
        debug_log(DebugLevel.AST, "\n%s", compiled.disassemble())

    with _COMPILE_CACHE_LOCK:
        _COMPILE_CACHE[source] = compiled
        _COMPILE_CACHE.move_to_end(source)
        while len(_COMPILE_CACHE) > _COMPILE_CACHE_MAX:
            _COMPILE_CACHE.popitem(last=False)
    return compiled


def compile_cache_stats(*, reset: bool = False) -> dict[str, float | int]:
    with _COMPILE_CACHE_LOCK:
        hits = _COMPILE_CACHE_STATS["hits"]
        misses = _COMPILE_CACHE_STATS["misses"]
        total = hits + misses
        stats: dict[str, float | int] = {
            "hits": hits,
            "misses": misses,
            "size": len(_COMPILE_CACHE),
            "max_size": _COMPILE_CACHE_MAX,
            "hit_rate": float(hits / total) if total else 0.0,
        }
        if reset:
            _COMPILE_CACHE.clear()
            _COMPILE_CACHE_STATS["hits"] = 0
            _COMPILE_CACHE_STATS["misses"] = 0
    return stats
