"""String-in, string-out wrappers around the symbolic rewriter."""

from __future__ import annotations

from .ast import Expr
from .errors import SymgradParseError
from .parser import ParseError, parse
from .printer import to_string
from .solve import SolveResult, solve
from .symbolic import factor, integrate, partial_derivative, simplify, taylor


def _parse(source: str) -> Expr:
    try:
        return parse(source)
    except ParseError as err:
        raise SymgradParseError.from_parse_error(err) from err


def differentiate_expression(source: str, var: str) -> str:
    return to_string(partial_derivative(_parse(source), var))


def simplify_expression(source: str) -> str:
    return to_string(simplify(_parse(source)))


def integrate_expression(source: str, var: str) -> str:
    return to_string(simplify(integrate(_parse(source), var)))


def solve_expression(source: str, var: str) -> SolveResult:
    """Solve `source` for `var`; an `==` equation is moved to zero form first."""
    return solve(_parse(source), var)


def taylor_expression(source: str, var: str, center: float = 0.0, order: int = 5) -> str:
    return to_string(taylor(_parse(source), var, center, order))


def factor_expression(source: str, var: str) -> str:
    return to_string(factor(_parse(source), var))
