"""Rendering expression trees as infix source and as indented dumps."""

from __future__ import annotations

import math

from .ast import Binary, Expr, FunctionCall, Number, TensorLiteral, Unary, Variable


def format_number(value: float) -> str:
    """Shortest text that re-lexes to exactly `value`."""
    if math.isnan(value):
        return "(0/0)"
    if math.isinf(value):
        return "1e999" if value > 0 else "-1e999"
    return repr(float(value))


def to_string(expr: Expr) -> str:
    """Infix source for `expr`; every binary node is parenthesised."""
    if isinstance(expr, Number):
        return format_number(expr.value)
    if isinstance(expr, Variable):
        return expr.name
    if isinstance(expr, Binary):
        return f"({to_string(expr.left)} {expr.op} {to_string(expr.right)})"
    if isinstance(expr, Unary):
        operand = to_string(expr.operand)
        # A bare "-2.0" re-parses as a folded literal, not a negation node.
        if isinstance(expr.operand, Number):
            return f"{expr.op}({operand})"
        return f"{expr.op}{operand}"
    if isinstance(expr, FunctionCall):
        return f"{expr.name}({', '.join(to_string(arg) for arg in expr.args)})"
    if isinstance(expr, TensorLiteral):
        return f"TENSOR{tuple(expr.handle.shape)}"
    raise TypeError(f"Unsupported expression node: {type(expr).__name__}")


def format_tree(expr: Expr, indent: int = 0) -> str:
    """Indented one-node-per-line dump used by the AST debug channel."""
    lines: list[str] = []
    _format_tree(expr, indent, lines)
    return "\n".join(lines)


def _format_tree(expr: Expr, indent: int, lines: list[str]) -> None:
    pad = "  " * indent
    if isinstance(expr, Number):
        lines.append(f"{pad}NUMBER: {expr.value:g}")
    elif isinstance(expr, Variable):
        lines.append(f"{pad}VARIABLE: {expr.name}")
    elif isinstance(expr, Binary):
        lines.append(f"{pad}BINARY_OP: {expr.op}")
        _format_tree(expr.left, indent + 1, lines)
        _format_tree(expr.right, indent + 1, lines)
    elif isinstance(expr, Unary):
        lines.append(f"{pad}UNARY_OP: {expr.op}")
        _format_tree(expr.operand, indent + 1, lines)
    elif isinstance(expr, FunctionCall):
        lines.append(f"{pad}FUNCTION: {expr.name}({len(expr.args)} args)")
        for arg in expr.args:
            _format_tree(arg, indent + 1, lines)
    elif isinstance(expr, TensorLiteral):
        lines.append(f"{pad}TENSOR: shape={tuple(expr.handle.shape)} refcount={expr.handle.refcount}")
    else:
        raise TypeError(f"Unsupported expression node: {type(expr).__name__}")
