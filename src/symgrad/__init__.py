"""symgrad public API."""

import logging

from .arena import Arena
from .ast import Binary, Expr, FunctionCall, Number, TensorLiteral, Unary, Variable
from .bytecode import CompiledExpression, Program, compile_cache_stats, compile_expression, compile_tree, execute
from .debug import (
    DebugLevel,
    clear_thread_debug_level,
    get_debug_level,
    set_debug_callback,
    set_debug_level,
    set_thread_debug_level,
)
from .errors import (
    LifetimeError,
    ModelFormatError,
    ShapeError,
    SymgradError,
    SymgradParseError,
    SymgradRuntimeError,
)
from .evaluator import VariableContext, evaluate
from .expressions import (
    differentiate_expression,
    factor_expression,
    integrate_expression,
    simplify_expression,
    solve_expression,
    taylor_expression,
)
from .optimize import OptimizationResult, OptimizerConfig, OptimizerType, maximize, minimize
from .parser import (
    ErrorCode,
    ParseConfig,
    ParseError,
    ParseResult,
    format_parse_error,
    parse,
    parse_and_eval,
    parse_expression,
    set_error_callback,
)
from .printer import format_tree, to_string
from .rng import seed
from .solve import (
    NumericalSolveResult,
    SolveResult,
    integrate_simpson,
    integrate_trapezoidal,
    solve,
    solve_numerical,
)
from .symbolic import (
    Gradient,
    clone,
    differentiate,
    equal,
    factor,
    gradient,
    integrate,
    partial_derivative,
    simplify,
    substitute,
    taylor,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

_JAX_EXPORTS = (
    "Tensor",
    "TensorHandle",
    "tensor_literal",
    "AutogradContext",
    "Tape",
    "get_context",
    "set_context",
    "use_context",
    "Transformer",
    "TransformerConfig",
    "SGD",
    "Adam",
    "save_model",
    "load_model",
    "save_checkpoint",
    "load_checkpoint",
)

try:
    from .autograd import AutogradContext, Tape, get_context, set_context, use_context
    from .model_io import load_checkpoint, load_model, save_checkpoint, save_model
    from .nn import Transformer, TransformerConfig
    from .optim import SGD, Adam
    from .tensor import Tensor, TensorHandle, tensor_literal
except ModuleNotFoundError as exc:
    if exc.name and exc.name.startswith("jax"):
        _jax_import_error = exc

        def __getattr__(name):
            if name in _JAX_EXPORTS:
                raise ModuleNotFoundError(
                    f"jax is required for {name}. Install runtime deps first."
                ) from _jax_import_error
            raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    else:
        raise

__all__ = [
    "Arena",
    "Binary",
    "CompiledExpression",
    "DebugLevel",
    "ErrorCode",
    "Expr",
    "FunctionCall",
    "Gradient",
    "LifetimeError",
    "ModelFormatError",
    "Number",
    "NumericalSolveResult",
    "OptimizationResult",
    "OptimizerConfig",
    "OptimizerType",
    "ParseConfig",
    "ParseError",
    "ParseResult",
    "Program",
    "ShapeError",
    "SolveResult",
    "SymgradError",
    "SymgradParseError",
    "SymgradRuntimeError",
    "TensorLiteral",
    "Unary",
    "Variable",
    "VariableContext",
    "clear_thread_debug_level",
    "clone",
    "compile_cache_stats",
    "compile_expression",
    "compile_tree",
    "differentiate",
    "differentiate_expression",
    "equal",
    "evaluate",
    "execute",
    "factor",
    "factor_expression",
    "format_parse_error",
    "format_tree",
    "get_debug_level",
    "gradient",
    "integrate",
    "integrate_expression",
    "integrate_simpson",
    "integrate_trapezoidal",
    "maximize",
    "minimize",
    "parse",
    "parse_and_eval",
    "parse_expression",
    "partial_derivative",
    "seed",
    "set_debug_callback",
    "set_debug_level",
    "set_error_callback",
    "set_thread_debug_level",
    "simplify",
    "simplify_expression",
    "solve",
    "solve_expression",
    "solve_numerical",
    "substitute",
    "taylor",
    "taylor_expression",
    "to_string",
    *_JAX_EXPORTS,
]
