"""Recursive-descent parser for the infix arithmetic/logical grammar.

Two surfaces share one parser:

* `parse` builds an expression tree and raises `ParseError` on the first
  problem. Unbound identifiers become free `Variable` nodes so the tree can be
  handed to the symbolic rewriter.
* `parse_expression` is the safe surface. It never raises; it returns a
  `ParseResult` carrying the evaluated value, the tree and structured error
  records. Identifiers must resolve to constants, bound variables or known
  functions with the right arity.

`parse_and_eval` is the legacy convenience wrapper: errors are logged and the
value falls back to 0.0.
"""

from __future__ import annotations

import logging
import math
import os
import sys
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Final

from .ast import Binary, Expr, FunctionCall, Number, Unary, Variable
from .debug import DebugLevel, debug_enabled, debug_log
from .evaluator import FUNCTION_ARITIES, VariableContext, evaluate
from .lexer import Token, number_value, tokenize
from .printer import format_tree

logger = logging.getLogger(__name__)

DEFAULT_MAX_EXPR_LENGTH: Final[int] = max(1, int(os.environ.get("SYMGRAD_MAX_EXPR_LENGTH", "10000")))
DEFAULT_MAX_DEPTH: Final[int] = max(1, int(os.environ.get("SYMGRAD_MAX_DEPTH", "100")))
DEFAULT_MAX_ARGS: Final[int] = 10

CONSTANTS: Final[dict[str, float]] = {
    "PI": math.pi,
    "E": math.e,
}


class ErrorCode(str, Enum):
    OK = "OK"
    EMPTY_EXPR = "EMPTY_EXPR"
    TOO_LONG = "TOO_LONG"
    TOO_DEEP = "TOO_DEEP"
    SYNTAX = "SYNTAX"
    UNKNOWN_FUNC = "UNKNOWN_FUNC"
    WRONG_ARGS = "WRONG_ARGS"
    DIVISION_BY_ZERO = "DIVISION_BY_ZERO"
    DOMAIN = "DOMAIN"
    UNEXPECTED_TOKEN = "UNEXPECTED_TOKEN"
    UNMATCHED_PAREN = "UNMATCHED_PAREN"
    UNKNOWN_VAR = "UNKNOWN_VAR"

    @property
    def description(self) -> str:
        return _ERROR_DESCRIPTIONS[self]


_ERROR_DESCRIPTIONS: Final[dict[ErrorCode, str]] = {
    ErrorCode.OK: "No error",
    ErrorCode.EMPTY_EXPR: "Empty expression",
    ErrorCode.TOO_LONG: "Expression too long",
    ErrorCode.TOO_DEEP: "Expression too deeply nested",
    ErrorCode.SYNTAX: "Syntax error",
    ErrorCode.UNKNOWN_FUNC: "Unknown function",
    ErrorCode.WRONG_ARGS: "Wrong number of arguments",
    ErrorCode.DIVISION_BY_ZERO: "Division by zero",
    ErrorCode.DOMAIN: "Math domain error",
    ErrorCode.UNEXPECTED_TOKEN: "Unexpected token",
    ErrorCode.UNMATCHED_PAREN: "Unmatched parenthesis",
    ErrorCode.UNKNOWN_VAR: "Unknown variable",
}


def error_string(code: ErrorCode) -> str:
    return ErrorCode(code).description


class ParseError(SyntaxError):
    def __init__(
        self,
        message: str,
        start: int,
        end: int,
        expected: tuple[str, ...] = (),
        found: str | None = None,
        code: ErrorCode = ErrorCode.SYNTAX,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.start = start
        self.end = end
        self.expected = expected
        self.found = found
        self.code = code

    @property
    def info(self) -> "ParseErrorInfo":
        return ParseErrorInfo(code=self.code, position=self.start, message=self.message, end=self.end)

    def __str__(self) -> str:
        expected_text = ""
        if self.expected:
            expected_text = f"; expected {', '.join(self.expected)}"
        found_text = ""
        if self.found is not None:
            found_text = f"; found {self.found}"
        return f"{self.message} at span [{self.start}, {self.end}){expected_text}{found_text}"


@dataclass(frozen=True)
class ParseErrorInfo:
    code: ErrorCode
    position: int
    message: str
    end: int | None = None


@dataclass(frozen=True)
class ParseConfig:
    """Parse policy. `timeout_ms=0` disables the wall-clock limit."""

    timeout_ms: float = 0
    continue_on_error: bool = False
    thread_safe: bool = False
    max_length: int = DEFAULT_MAX_EXPR_LENGTH
    max_depth: int = DEFAULT_MAX_DEPTH
    max_args: int = DEFAULT_MAX_ARGS


@dataclass(frozen=True)
class ParseResult:
    value: float = 0.0
    expr: Expr | None = None
    has_error: bool = False
    error: ParseErrorInfo = ParseErrorInfo(ErrorCode.OK, 0, "")
    errors: tuple[ParseErrorInfo, ...] = ()
    error_count: int = 0


_DEFAULT_CONFIG: Final[ParseConfig] = ParseConfig()

_CALLBACK_LOCK = threading.Lock()
_ERROR_CALLBACK: Callable[[ParseErrorInfo, str], None] | None = None


def set_error_callback(callback: Callable[[ParseErrorInfo, str], None] | None) -> None:
    """Install `callback(error_info, source)`, invoked for every recorded parse error."""
    global _ERROR_CALLBACK
    with _CALLBACK_LOCK:
        _ERROR_CALLBACK = callback


def _notify(info: ParseErrorInfo, source: str) -> None:
    with _CALLBACK_LOCK:
        callback = _ERROR_CALLBACK
    if callback is not None:
        callback(info, source)


def format_parse_error(source: str | None, error: ParseErrorInfo | ParseError | ParseResult) -> str:
    """Human-readable report with a caret under the error position."""
    if isinstance(error, ParseResult):
        if not error.has_error:
            return ""
        error = error.error
    if isinstance(error, ParseError):
        error = error.info
    lines = [f"Parse error: {error.message}", f"Position: {error.position}"]
    if source is not None and error.position >= 0:
        lines.append("")
        lines.append(source)
        lines.append(" " * min(error.position, len(source)) + "^")
    return "\n".join(lines)


# Binding powers, low to high. Equal left/right powers make "^" right-associative.
_INFIX_BINDING: Final[dict[str, tuple[int, int]]] = {
    "OR": (1, 2),
    "AND": (3, 4),
    "GT": (5, 6),
    "LT": (5, 6),
    "GE": (5, 6),
    "LE": (5, 6),
    "EQ": (5, 6),
    "NE": (5, 6),
    "PLUS": (7, 8),
    "MINUS": (7, 8),
    "STAR": (9, 10),
    "SLASH": (9, 10),
    "CARET": (11, 11),
}
_COMPARISON_KINDS: Final[frozenset[str]] = frozenset({"GT", "LT", "GE", "LE", "EQ", "NE"})
_LOGICAL_KINDS: Final[frozenset[str]] = frozenset({"AND", "OR"})
_PRIMARY_START: Final[tuple[str, ...]] = ("NUMBER", "IDENT", "LPAREN")

# Parse-time domain checks on literal arguments: the call folds to 0 with a warning.
_LITERAL_DOMAIN_CHECKS: Final[dict[str, tuple[Callable[[float], bool], str]]] = {
    "SQRT": (lambda x: x < 0.0, "SQRT of negative number"),
    "LOG": (lambda x: x <= 0.0, "LOG of non-positive number"),
    "LN": (lambda x: x <= 0.0, "LOG of non-positive number"),
    "LOG10": (lambda x: x <= 0.0, "LOG10 of non-positive number"),
}


class _Abort(Exception):
    """Unwinds the parser after a fatal error has been recorded."""


@dataclass
class _Parser:
    tokens: list[Token]
    source: str
    context: VariableContext | None = None
    config: ParseConfig = _DEFAULT_CONFIG
    strict_names: bool = False
    index: int = 0
    depth: int = 0
    max_depth_reached: int = 0
    errors: list[ParseError] = field(default_factory=list)
    deadline: float | None = None

    def parse_expression_only(self) -> Expr:
        expr = self._parse_binary(0)
        tok = self._peek()
        if tok.kind == "ERROR":
            self._fail(ErrorCode.SYNTAX, tok.text, tok)
        elif tok.kind != "EOF":
            self._fail(
                ErrorCode.UNEXPECTED_TOKEN,
                "Unexpected tokens at end of expression",
                expected=("EOF",),
            )
        return expr

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        tok = self.tokens[self.index]
        if tok.kind != "EOF":
            self.index += 1
        return tok

    def _match(self, kind: str) -> bool:
        if self._peek().kind == kind:
            self._advance()
            return True
        return False

    def _fail(
        self,
        code: ErrorCode,
        message: str,
        tok: Token | None = None,
        *,
        expected: tuple[str, ...] = (),
        fatal: bool = False,
    ) -> None:
        err = self._record(code, message, tok, expected=expected)
        if fatal:
            raise _Abort()
        if not self.config.continue_on_error:
            raise err

    def _record(
        self,
        code: ErrorCode,
        message: str,
        tok: Token | None = None,
        *,
        expected: tuple[str, ...] = (),
    ) -> ParseError:
        token = tok if tok is not None else self._peek()
        if token.kind == "EOF":
            found = "EOF"
        elif token.text:
            found = f"{token.kind}({token.text})"
        else:
            found = token.kind
        err = ParseError(message, token.pos, token.end, expected=tuple(dict.fromkeys(expected)), found=found, code=code)
        self.errors.append(err)
        _notify(err.info, self.source)
        return err

    def _check_timeout(self) -> None:
        if self.deadline is not None and time.perf_counter() > self.deadline:
            self._fail(ErrorCode.SYNTAX, "Parsing timeout exceeded", fatal=True)

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > self.config.max_depth:
            self._fail(
                ErrorCode.TOO_DEEP,
                f"Expression too deeply nested (max depth: {self.config.max_depth})",
                fatal=True,
            )
        if self.depth > self.max_depth_reached:
            self.max_depth_reached = self.depth

    def _leave(self) -> None:
        self.depth -= 1

    def _parse_binary(self, min_bp: int) -> Expr:
        self._check_timeout()
        left = self._parse_unary()
        seen_comparison = False
        seen_logical = False

        while True:
            tok = self._peek()
            binding = _INFIX_BINDING.get(tok.kind)
            if binding is None:
                break
            lbp, rbp = binding
            if lbp < min_bp:
                break
            is_comparison = tok.kind in _COMPARISON_KINDS
            if is_comparison and (seen_comparison or seen_logical):
                # Comparisons are non-associative; one left over after a logical
                # operand was refused by the operand itself. The caller reports it.
                break
            self._check_timeout()
            self._advance()
            if tok.kind == "CARET":
                self._enter()
                right = self._parse_binary(rbp)
                self._leave()
            else:
                right = self._parse_binary(rbp)
            left = Binary(op=tok.text, left=left, right=right)
            seen_comparison = seen_comparison or is_comparison
            seen_logical = seen_logical or tok.kind in _LOGICAL_KINDS

        return left

    def _parse_unary(self) -> Expr:
        tok = self._peek()
        if tok.kind not in {"MINUS", "NOT"}:
            return self._parse_primary()
        self._advance()
        if tok.kind == "MINUS" and self._peek().kind == "NUMBER":
            # Negated literals fold so that printed trees re-parse identically.
            number_tok = self._advance()
            return Number(-number_value(number_tok.text))
        self._enter()
        operand = self._parse_unary()
        self._leave()
        return Unary(op=tok.text, operand=operand)

    def _parse_primary(self) -> Expr:
        tok = self._peek()

        if tok.kind == "NUMBER":
            self._advance()
            return Number(number_value(tok.text))

        if tok.kind == "IDENT":
            return self._parse_identifier()

        if tok.kind == "LPAREN":
            self._advance()
            self._enter()
            inner = self._parse_binary(0)
            self._leave()
            if not self._match("RPAREN"):
                self._fail(ErrorCode.UNMATCHED_PAREN, "Expected closing parenthesis", expected=("RPAREN",))
            return inner

        if tok.kind == "ERROR":
            self._fail(ErrorCode.SYNTAX, tok.text, tok)
        elif tok.kind == "RPAREN":
            self._fail(ErrorCode.UNMATCHED_PAREN, "Unexpected closing parenthesis", tok, expected=_PRIMARY_START)
        elif tok.kind == "EOF":
            self._fail(ErrorCode.SYNTAX, "Unexpected end of expression", tok, expected=_PRIMARY_START)
        else:
            self._fail(ErrorCode.SYNTAX, "Expected number, function, or '('", tok, expected=_PRIMARY_START)
        # Recovery: skip the offending token and stand in a zero.
        self._advance()
        return Number(0.0)

    def _parse_identifier(self) -> Expr:
        tok = self._advance()
        name = tok.text.upper()

        if name in CONSTANTS:
            return Number(CONSTANTS[name])

        if self.context is not None:
            value = self.context.lookup(name)
            if value is not None:
                if debug_enabled(DebugLevel.VARS, thread_safe=self.config.thread_safe):
                    debug_log(DebugLevel.VARS, "%s = %.6g", name, value, thread_safe=self.config.thread_safe)
                return Number(value)

        if self._peek().kind == "LPAREN":
            return self._parse_call(name, tok)

        if self.strict_names:
            self._fail(ErrorCode.UNKNOWN_VAR, f"Unknown variable '{name}'", tok)
            return Number(0.0)
        return Variable(name=name)

    def _parse_call(self, name: str, name_tok: Token) -> Expr:
        self._advance()
        self._enter()
        args: list[Expr] = []
        if not self._match("RPAREN"):
            while True:
                if len(args) >= self.config.max_args:
                    self._fail(ErrorCode.WRONG_ARGS, f"Too many function arguments (max {self.config.max_args})")
                    break
                args.append(self._parse_binary(0))
                if self._match("COMMA"):
                    continue
                if self._match("RPAREN"):
                    break
                self._fail(
                    ErrorCode.SYNTAX,
                    "Expected ',' or ')' in function call",
                    expected=("COMMA", "RPAREN"),
                )
                break
        self._leave()

        if debug_enabled(DebugLevel.FUNCS, thread_safe=self.config.thread_safe):
            debug_log(DebugLevel.FUNCS, "%s(%d args)", name, len(args), thread_safe=self.config.thread_safe)

        if self.strict_names:
            arity = FUNCTION_ARITIES.get(name)
            if arity is None:
                self._fail(ErrorCode.UNKNOWN_FUNC, f"Unknown function '{name}'", name_tok)
                return Number(0.0)
            if arity != len(args):
                self._fail(
                    ErrorCode.WRONG_ARGS,
                    f"{name} expects {arity} argument{'s' if arity != 1 else ''}, got {len(args)}",
                    name_tok,
                )
                return Number(0.0)

        check = _LITERAL_DOMAIN_CHECKS.get(name)
        if check is not None and len(args) == 1 and isinstance(args[0], Number):
            out_of_domain, message = check
            if out_of_domain(args[0].value):
                logger.warning("%s at index %d; using 0", message, name_tok.pos)
                return Number(0.0)

        return FunctionCall(name=name, args=tuple(args))


def _coerce_context(context: VariableContext | Mapping[str, float] | None) -> VariableContext | None:
    if context is None or isinstance(context, VariableContext):
        return context
    return VariableContext.from_mapping(context)


def _precheck(source: str | None, config: ParseConfig) -> ParseErrorInfo | None:
    if source is None:
        return ParseErrorInfo(ErrorCode.EMPTY_EXPR, 0, "Expression is NULL")
    if not source or not source.strip():
        return ParseErrorInfo(ErrorCode.EMPTY_EXPR, 0, "Expression is empty")
    length = len(source.encode("utf-8"))
    if length > config.max_length:
        return ParseErrorInfo(
            ErrorCode.TOO_LONG,
            0,
            f"Expression too long ({length} chars, max {config.max_length})",
        )
    return None


def _run(
    source: str,
    context: VariableContext | None,
    config: ParseConfig,
    *,
    strict_names: bool,
) -> tuple[Expr | None, list[ParseError]]:
    started = time.perf_counter()
    tokens = tokenize(source)
    if debug_enabled(DebugLevel.TOKENS, thread_safe=config.thread_safe):
        for tok in tokens:
            debug_log(DebugLevel.TOKENS, "%s %r", tok.kind, tok.text, thread_safe=config.thread_safe)

    parser = _Parser(
        tokens=tokens,
        source=source,
        context=context,
        config=config,
        strict_names=strict_names,
        deadline=(started + config.timeout_ms / 1000.0) if config.timeout_ms > 0 else None,
    )
    expr: Expr | None = None
    try:
        expr = parser.parse_expression_only()
    except (ParseError, _Abort):
        expr = None
    except RecursionError:
        # A configured max_depth above what the interpreter stack can hold.
        expr = None
        parser._record(
            ErrorCode.TOO_DEEP,
            f"Expression too deeply nested (interpreter recursion limit {sys.getrecursionlimit()})",
        )

    if expr is not None and debug_enabled(DebugLevel.AST, thread_safe=config.thread_safe):
        debug_log(DebugLevel.AST, "\n%s", format_tree(expr), thread_safe=config.thread_safe)
    if debug_enabled(DebugLevel.TIMING, thread_safe=config.thread_safe):
        elapsed_us = (time.perf_counter() - started) * 1e6
        debug_log(
            DebugLevel.TIMING,
            "parsed %d chars in %.1f us (max depth %d)",
            len(source),
            elapsed_us,
            parser.max_depth_reached,
            thread_safe=config.thread_safe,
        )
    return expr, parser.errors


def parse(
    source: str,
    context: VariableContext | Mapping[str, float] | None = None,
    config: ParseConfig | None = None,
) -> Expr:
    """Parse `source` into an expression tree, raising `ParseError` on failure.

    Identifiers bound in `context` are substituted as numbers; the rest stay
    symbolic.
    """
    cfg = config or _DEFAULT_CONFIG
    pre = _precheck(source, cfg)
    if pre is not None:
        _notify(pre, source or "")
        raise ParseError(pre.message, 0, 0, code=pre.code)
    expr, errors = _run(source, _coerce_context(context), cfg, strict_names=False)
    if errors:
        raise errors[0]
    if expr is None:
        raise ParseError("Expression could not be parsed", 0, len(source))
    return expr


def parse_expression(
    source: str | None,
    context: VariableContext | Mapping[str, float] | None = None,
    config: ParseConfig | None = None,
    *,
    free_variables: bool = False,
) -> ParseResult:
    """Safe parse-and-evaluate. Never raises for malformed input.

    With `free_variables=True`, unbound identifiers and unknown functions are
    kept in the tree (and evaluate to 0) instead of being reported.
    """
    cfg = config or _DEFAULT_CONFIG
    pre = _precheck(source, cfg)
    if pre is not None:
        _notify(pre, source or "")
        return ParseResult(value=0.0, expr=None, has_error=True, error=pre, errors=(pre,), error_count=1)

    ctx = _coerce_context(context)
    expr, errors = _run(source, ctx, cfg, strict_names=not free_variables)
    if errors or expr is None:
        infos = tuple(err.info for err in errors)
        if not infos:
            infos = (ParseErrorInfo(ErrorCode.SYNTAX, 0, "Expression could not be parsed"),)
        return ParseResult(
            value=0.0,
            expr=expr,
            has_error=True,
            error=infos[0],
            errors=infos,
            error_count=len(infos),
        )
    return ParseResult(value=evaluate(expr, ctx), expr=expr)


def parse_and_eval(source: str | None, context: VariableContext | Mapping[str, float] | None = None) -> float:
    """Legacy surface: evaluate `source`, logging any parse errors and returning 0.0 for them."""
    result = parse_expression(source, context)
    if result.has_error:
        for info in result.errors:
            logger.error("%s (at index %d)", info.message, info.position)
    return result.value
