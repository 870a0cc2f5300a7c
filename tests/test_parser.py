from __future__ import annotations

import unittest

from symgrad.ast import Binary, FunctionCall, Number, Unary, Variable
from symgrad.lexer import tokenize
from symgrad.parser import (
    ErrorCode,
    ParseConfig,
    ParseError,
    format_parse_error,
    parse,
    parse_expression,
    set_error_callback,
)
from symgrad.printer import format_tree, to_string
from symgrad.symbolic import equal


ROUND_TRIP_SOURCES = (
    "1 + 2 * 3",
    "(a + b) * c",
    "2 ^ 3 ^ 2",
    "-x + -2.5",
    "-(x * y)",
    "!(a > b) && c <= 4 || d != 1",
    "sin(x) / cos(x) - tan(0.5)",
    "max(a, b) + atan2(y, x)",
    "random() * 10",
    "1e-300 * 12345.678901234567",
    "0x1F + .5",
    "--x",
    "a == b",
)


class ParserGrammarTests(unittest.TestCase):
    def test_printed_tree_reparses_to_equal_tree(self) -> None:
        for source in ROUND_TRIP_SOURCES:
            with self.subTest(source=source):
                expr = parse(source)
                self.assertTrue(equal(parse(to_string(expr)), expr), to_string(expr))

    def test_power_is_right_associative(self) -> None:
        self.assertEqual(parse_expression("2^3^2").value, 512.0)
        self.assertEqual(parse("2^3^2"), Binary("^", Number(2.0), Binary("^", Number(3.0), Number(2.0))))

    def test_precedence_of_comparisons_and_logic(self) -> None:
        self.assertEqual(parse_expression("2 + 3 * 4 > 10").value, 1.0)
        self.assertEqual(parse_expression("!(5 > 10)").value, 1.0)
        self.assertEqual(parse_expression("1 || 0 && 0").value, 1.0)
        self.assertEqual(parse_expression("10 - 4 - 3").value, 3.0)
        self.assertEqual(parse_expression("8 / 4 / 2").value, 1.0)

    def test_negative_literal_folds_into_number(self) -> None:
        self.assertEqual(parse("-2"), Number(-2.0))
        self.assertEqual(parse("-x"), Unary("-", Variable("X")))
        self.assertEqual(parse("-(2)"), Unary("-", Number(2.0)))

    def test_identifiers_are_case_insensitive_and_truncated(self) -> None:
        self.assertEqual(parse("abc"), Variable("ABC"))
        self.assertEqual(parse("Sin(x)"), FunctionCall("SIN", (Variable("X"),)))
        long_name = "v" * 40
        self.assertEqual(parse(long_name), Variable("V" * 31))

    def test_constants(self) -> None:
        self.assertAlmostEqual(parse_expression("pi").value, 3.141592653589793)
        self.assertAlmostEqual(parse_expression("E").value, 2.718281828459045)

    def test_context_values_are_substituted(self) -> None:
        self.assertEqual(parse("x + 1", {"x": 4.0}), Binary("+", Number(4.0), Number(1.0)))
        result = parse_expression("(a + b) * c", {"a": 10, "b": 20, "c": 5})
        self.assertFalse(result.has_error)
        self.assertEqual(result.value, 150.0)

    def test_format_tree_lists_every_node(self) -> None:
        dump = format_tree(parse("sqrt(x) + 2"))
        self.assertIn("BINARY_OP", dump)
        self.assertIn("FUNCTION: SQRT(1 args)", dump)
        self.assertIn("VARIABLE", dump)
        self.assertIn("NUMBER", dump)


class ParserErrorTests(unittest.TestCase):
    def test_empty_and_null_input(self) -> None:
        for source in (None, "", "   "):
            with self.subTest(source=source):
                result = parse_expression(source)
                self.assertTrue(result.has_error)
                self.assertEqual(result.error.code, ErrorCode.EMPTY_EXPR)
                self.assertEqual(result.value, 0.0)

    def test_too_long(self) -> None:
        source = "1+" * 5000 + "1"
        self.assertGreater(len(source), 10000)
        result = parse_expression(source)
        self.assertEqual(result.error.code, ErrorCode.TOO_LONG)

    def test_length_limit_is_configurable(self) -> None:
        result = parse_expression("1 + 2 + 3", config=ParseConfig(max_length=5))
        self.assertEqual(result.error.code, ErrorCode.TOO_LONG)

    def test_too_deep(self) -> None:
        source = "(" * 101 + "1" + ")" * 101
        result = parse_expression(source)
        self.assertEqual(result.error.code, ErrorCode.TOO_DEEP)
        self.assertIn("max depth: 100", result.error.message)

        ok = parse_expression("(" * 100 + "1" + ")" * 100)
        self.assertFalse(ok.has_error)
        self.assertEqual(ok.value, 1.0)

    def test_nesting_beyond_interpreter_stack_is_reported(self) -> None:
        config = ParseConfig(max_depth=100000, max_length=100000)
        source = "(" * 20000 + "1" + ")" * 20000
        result = parse_expression(source, config=config)
        self.assertTrue(result.has_error)
        self.assertEqual(result.error.code, ErrorCode.TOO_DEEP)
        self.assertEqual(result.value, 0.0)

        with self.assertRaises(ParseError) as caught:
            parse(source, config=config)
        self.assertEqual(caught.exception.code, ErrorCode.TOO_DEEP)

    def test_comparisons_do_not_chain_through_logical_operands(self) -> None:
        for source in ("1 < 2 < 3", "1 && 1 < 2 < 3", "0 || 1 < 2 < 3"):
            with self.subTest(source=source):
                result = parse_expression(source)
                self.assertTrue(result.has_error)
                self.assertEqual(result.error.code, ErrorCode.UNEXPECTED_TOKEN)
        with self.assertRaises(ParseError):
            parse("1 && 1 < 2 < 3")

        ok = parse_expression("1 && 1 < 2 || 2 > 3")
        self.assertFalse(ok.has_error)
        self.assertEqual(ok.value, 1.0)

    def test_unknown_names_in_safe_api(self) -> None:
        self.assertEqual(parse_expression("foo(1)").error.code, ErrorCode.UNKNOWN_FUNC)
        self.assertEqual(parse_expression("q + 1").error.code, ErrorCode.UNKNOWN_VAR)
        wrong = parse_expression("sin(1, 2)")
        self.assertEqual(wrong.error.code, ErrorCode.WRONG_ARGS)
        self.assertIn("SIN expects 1 argument, got 2", wrong.error.message)

    def test_free_variables_evaluate_to_zero(self) -> None:
        result = parse_expression("q + 1", free_variables=True)
        self.assertFalse(result.has_error)
        self.assertEqual(result.value, 1.0)

    def test_too_many_arguments(self) -> None:
        source = "max(" + ", ".join("1" for _ in range(11)) + ")"
        self.assertEqual(parse_expression(source).error.code, ErrorCode.WRONG_ARGS)

    def test_unmatched_parentheses(self) -> None:
        self.assertEqual(parse_expression("(1 + 2").error.code, ErrorCode.UNMATCHED_PAREN)
        self.assertEqual(parse_expression(")").error.code, ErrorCode.UNMATCHED_PAREN)

    def test_syntax_errors_carry_positions(self) -> None:
        result = parse_expression("1 + * 2")
        self.assertEqual(result.error.code, ErrorCode.SYNTAX)
        self.assertEqual(result.error.position, 4)

        trailing = parse_expression("1 2")
        self.assertEqual(trailing.error.code, ErrorCode.UNEXPECTED_TOKEN)
        self.assertEqual(trailing.error.position, 2)

        lone = parse_expression("1 = 2")
        self.assertEqual(lone.error.code, ErrorCode.SYNTAX)

    def test_malformed_characters_become_error_tokens(self) -> None:
        tokens = tokenize("1 $ 2")
        self.assertEqual([tok.kind for tok in tokens], ["NUMBER", "ERROR", "NUMBER", "EOF"])
        self.assertEqual(tokens[1].pos, 2)
        self.assertEqual(tokens[1].text, "Unexpected character '$'")

        result = parse_expression("1 $ 2")
        self.assertEqual(result.error.code, ErrorCode.SYNTAX)
        self.assertEqual(result.error.position, 2)

    def test_continue_on_error_collects_all_errors(self) -> None:
        result = parse_expression("(1 + ) * (2 + )", config=ParseConfig(continue_on_error=True))
        self.assertTrue(result.has_error)
        self.assertGreaterEqual(result.error_count, 2)
        self.assertEqual(result.error_count, len(result.errors))
        self.assertEqual(result.error, result.errors[0])

    def test_timeout_reports_syntax_error(self) -> None:
        result = parse_expression("1 + 2", config=ParseConfig(timeout_ms=1e-9))
        self.assertTrue(result.has_error)
        self.assertEqual(result.error.code, ErrorCode.SYNTAX)
        self.assertIn("timeout", result.error.message)

    def test_parse_raises_parse_error(self) -> None:
        with self.assertRaises(ParseError) as caught:
            parse("2 +")
        self.assertEqual(caught.exception.code, ErrorCode.SYNTAX)
        self.assertIn("at span", str(caught.exception))

    def test_error_callback_receives_every_error(self) -> None:
        seen = []
        set_error_callback(lambda info, source: seen.append((info.code, source)))
        try:
            parse_expression("")
            parse_expression("foo(1)")
        finally:
            set_error_callback(None)
        self.assertEqual(seen, [(ErrorCode.EMPTY_EXPR, ""), (ErrorCode.UNKNOWN_FUNC, "foo(1)")])

    def test_format_parse_error_points_at_position(self) -> None:
        source = "1 + * 2"
        text = format_parse_error(source, parse_expression(source))
        lines = text.splitlines()
        self.assertTrue(lines[0].startswith("Parse error: "))
        self.assertEqual(lines[1], "Position: 4")
        self.assertEqual(lines[-2], source)
        self.assertEqual(lines[-1], "    ^")

    def test_error_code_descriptions(self) -> None:
        self.assertEqual(ErrorCode.OK.description, "No error")
        self.assertEqual(ErrorCode.TOO_DEEP.description, "Expression too deeply nested")
        self.assertEqual(ErrorCode.UNKNOWN_VAR.description, "Unknown variable")

    def test_literal_domain_errors_fold_to_zero_with_warning(self) -> None:
        with self.assertLogs("symgrad.parser", level="WARNING") as logs:
            result = parse_expression("sqrt(-4) + 1")
        self.assertFalse(result.has_error)
        self.assertEqual(result.value, 1.0)
        self.assertTrue(any("SQRT of negative number" in line for line in logs.output))

        with self.assertLogs("symgrad.parser", level="WARNING"):
            self.assertEqual(parse("log(0)"), Number(0.0))


if __name__ == "__main__":
    unittest.main()
