"""Tokenization for the infix arithmetic/logical expression grammar."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int
    end: int


# Longest match first: two-character operators shadow their one-character prefixes.
_DOUBLE_TOKENS = {
    "&&": "AND",
    "||": "OR",
    ">=": "GE",
    "<=": "LE",
    "==": "EQ",
    "!=": "NE",
}

_SINGLE_TOKENS = {
    "+": "PLUS",
    "-": "MINUS",
    "*": "STAR",
    "/": "SLASH",
    "^": "CARET",
    "!": "NOT",
    "(": "LPAREN",
    ")": "RPAREN",
    ",": "COMMA",
    ">": "GT",
    "<": "LT",
}

# Lone characters that only exist as the first half of a two-character operator.
_INCOMPLETE_OPERATORS = {
    "&": "Expected '&&' but got '&'",
    "|": "Expected '||' but got '|'",
    "=": "Expected '==' but got '='",
}

MAX_IDENTIFIER_LENGTH = 31

_HEX_RE = re.compile(r"0[xX](?:[0-9a-fA-F]+(?:\.[0-9a-fA-F]*)?|\.[0-9a-fA-F]+)(?:[pP][+-]?[0-9]+)?")
_DECIMAL_RE = re.compile(r"(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")


def _is_ident_start(ch: str) -> bool:
    return ch.isascii() and ch.isalpha()


def _is_ident_continue(ch: str) -> bool:
    return ch.isascii() and ch.isalnum()


def _scan_number(source: str, start: int) -> int | None:
    m = _HEX_RE.match(source, start) or _DECIMAL_RE.match(source, start)
    if m is None:
        return None
    return m.end()


def number_value(text: str) -> float:
    """Decode a NUMBER token's text with strtod-compatible semantics."""
    if text[:2] in {"0x", "0X"}:
        return float.fromhex(text)
    return float(text)


def tokenize(source: str) -> list[Token]:
    """Split `source` into tokens terminated by an EOF token.

    Malformed input becomes ERROR tokens whose text is the diagnostic message;
    the parser turns those into positioned errors.
    """
    tokens: list[Token] = []
    i = 0
    n = len(source)

    def _bad(message: str, start: int, end: int) -> None:
        tokens.append(Token("ERROR", message, start, end))

    while i < n:
        ch = source[i]

        if ch.isspace():
            i += 1
            continue

        if ch.isdigit() or ch == ".":
            end = _scan_number(source, i)
            if end is None:
                _bad(f"Invalid numeric literal {ch!r}", i, i + 1)
                i += 1
                continue
            tokens.append(Token("NUMBER", source[i:end], i, end))
            i = end
            continue

        if _is_ident_start(ch):
            start = i
            while i < n and _is_ident_continue(source[i]):
                i += 1
            tokens.append(Token("IDENT", source[start:i][:MAX_IDENTIFIER_LENGTH], start, i))
            continue

        pair = source[i : i + 2]
        if pair in _DOUBLE_TOKENS:
            tokens.append(Token(_DOUBLE_TOKENS[pair], pair, i, i + 2))
            i += 2
            continue

        if ch in _SINGLE_TOKENS:
            tokens.append(Token(_SINGLE_TOKENS[ch], ch, i, i + 1))
            i += 1
            continue

        if ch in _INCOMPLETE_OPERATORS:
            _bad(_INCOMPLETE_OPERATORS[ch], i, i + 1)
            i += 1
            continue

        _bad(f"Unexpected character {ch!r}", i, i + 1)
        i += 1

    tokens.append(Token("EOF", "", n, n))
    return tokens
