from __future__ import annotations

import math
import unittest

from symgrad.ast import Binary, Number, Variable
from symgrad.errors import SymgradParseError
from symgrad.evaluator import evaluate
from symgrad.expressions import (
    differentiate_expression,
    factor_expression,
    integrate_expression,
    simplify_expression,
    taylor_expression,
)
from symgrad.parser import ErrorCode, parse
from symgrad.symbolic import (
    clone,
    count_operations,
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


class DifferentiationTests(unittest.TestCase):
    def test_power_rule(self) -> None:
        derivative = partial_derivative(parse("x^3"), "x")
        self.assertTrue(equal(derivative, parse("3*x^2")))

    def test_sum_with_function(self) -> None:
        derivative = simplify(differentiate(parse("x^2 + sin(x)"), "x"))
        self.assertAlmostEqual(evaluate(derivative, {"x": 0.0}), 1.0)
        self.assertAlmostEqual(evaluate(derivative, {"x": 1.0}), 2.0 + math.cos(1.0))

    def test_chain_rule_through_functions(self) -> None:
        cases = {
            "sin(2*x)": lambda x: 2.0 * math.cos(2.0 * x),
            "cos(x^2)": lambda x: -math.sin(x * x) * 2.0 * x,
            "tan(x)": lambda x: 1.0 / math.cos(x) ** 2,
            "ln(3*x)": lambda x: 1.0 / x,
            "exp(x^2)": lambda x: math.exp(x * x) * 2.0 * x,
            "sqrt(x)": lambda x: 0.5 / math.sqrt(x),
            "x / (x + 1)": lambda x: 1.0 / (x + 1.0) ** 2,
            "-x * x": lambda x: -2.0 * x,
        }
        for source, expected in cases.items():
            with self.subTest(source=source):
                derivative = partial_derivative(parse(source), "x")
                self.assertAlmostEqual(evaluate(derivative, {"x": 0.7}), expected(0.7), places=10)

    def test_other_variables_are_constants(self) -> None:
        derivative = partial_derivative(parse("x*y + y^2"), "x")
        self.assertEqual(derivative, Variable("Y"))

    def test_variable_exponent_gives_zero(self) -> None:
        self.assertEqual(partial_derivative(parse("2^x"), "x"), Number(0.0))

    def test_gradient_components(self) -> None:
        grad = gradient(parse("x^2 + 3*x*y"), ["x", "y"])
        self.assertEqual(grad.var_names, ("X", "Y"))
        self.assertEqual(grad.evaluate([1.0, 2.0]), [8.0, 3.0])
        self.assertEqual(grad.evaluate({"x": 2.0, "y": 0.0}), [4.0, 6.0])


class SimplifyTests(unittest.TestCase):
    def test_like_terms_combine(self) -> None:
        self.assertEqual(simplify(parse("2*x + 3*x")), Binary("*", Number(5.0), Variable("X")))
        self.assertEqual(simplify(parse("x + x")), Binary("*", Number(2.0), Variable("X")))
        self.assertEqual(simplify(parse("x*2 + -(2)*x")), Number(0.0))

    def test_identities(self) -> None:
        cases = {
            "x + 0": Variable("X"),
            "0 + x": Variable("X"),
            "x - 0": Variable("X"),
            "x * 1": Variable("X"),
            "1 * x": Variable("X"),
            "x * 0": Number(0.0),
            "0 / x": Number(0.0),
            "x / 1": Variable("X"),
            "x ^ 0": Number(1.0),
            "x ^ 1": Variable("X"),
            "1 ^ x": Number(1.0),
            "--x": Variable("X"),
            "2 * 3 + 4": Number(10.0),
        }
        for source, expected in cases.items():
            with self.subTest(source=source):
                self.assertEqual(simplify(parse(source)), expected)

    def test_simplify_does_not_mutate_input(self) -> None:
        expr = parse("(x + 0) * 1")
        before = clone(expr)
        simplify(expr)
        self.assertTrue(equal(expr, before))

    def test_string_wrappers(self) -> None:
        self.assertEqual(differentiate_expression("x^2", "x"), "(2.0 * X)")
        self.assertEqual(simplify_expression("x * 1 + 0"), "X")

    def test_wrappers_raise_structured_parse_errors(self) -> None:
        with self.assertRaises(SymgradParseError) as caught:
            differentiate_expression("2 +", "x")
        self.assertEqual(caught.exception.code, ErrorCode.SYNTAX)
        self.assertIn("at span", str(caught.exception))


class TreeUtilityTests(unittest.TestCase):
    def test_clone_is_deep_and_equal(self) -> None:
        expr = parse("max(x, 2) + -y")
        copy = clone(expr)
        self.assertTrue(equal(copy, expr))
        self.assertIsNot(copy, expr)
        self.assertIsNot(copy.left, expr.left)

    def test_equal_uses_numeric_tolerance(self) -> None:
        self.assertTrue(equal(Number(1.0), Number(1.0 + 1e-14)))
        self.assertFalse(equal(Number(1.0), Number(1.0 + 1e-9)))
        self.assertFalse(equal(parse("x + y"), parse("y + x")))

    def test_count_operations(self) -> None:
        self.assertEqual(count_operations(parse("sin(x) + 2*y")), 3)
        self.assertEqual(count_operations(parse("x")), 0)
        self.assertEqual(count_operations(parse("-x")), 1)

    def test_substitute(self) -> None:
        result = substitute(parse("x + 1"), "x", parse("y * 2"))
        self.assertEqual(result, Binary("+", Binary("*", Variable("Y"), Number(2.0)), Number(1.0)))
        self.assertEqual(evaluate(result, {"y": 3.0}), 7.0)


class IntegrationTests(unittest.TestCase):
    def assertAntiderivative(self, source: str, a: float, b: float, expected: float) -> None:
        antiderivative = simplify(integrate(parse(source), "x"))
        value = evaluate(antiderivative, {"x": b}) - evaluate(antiderivative, {"x": a})
        self.assertAlmostEqual(value, expected, places=10, msg=source)

    def test_polynomials(self) -> None:
        self.assertAntiderivative("x^2", 0.0, 3.0, 9.0)
        self.assertAntiderivative("3*x + 2", 0.0, 2.0, 10.0)
        self.assertAntiderivative("x^3 - x", 1.0, 2.0, 3.75 - 1.5)

    def test_functions(self) -> None:
        self.assertAntiderivative("sin(x)", 0.0, math.pi, 2.0)
        self.assertAntiderivative("cos(x)", 0.0, math.pi / 2, 1.0)
        self.assertAntiderivative("exp(x)", 0.0, 1.0, math.e - 1.0)
        self.assertAntiderivative("ln(x)", 1.0, math.e, 1.0)
        self.assertAntiderivative("x^(-1)", 1.0, math.e, 1.0)

    def test_unsupported_forms_give_zero(self) -> None:
        self.assertEqual(integrate(parse("x * sin(x)"), "x"), Number(0.0))
        self.assertEqual(integrate(parse("sin(2*x)"), "x"), Number(0.0))

    def test_integrate_expression(self) -> None:
        text = integrate_expression("x^2", "x")
        self.assertAlmostEqual(evaluate(parse(text), {"x": 3.0}), 9.0)


class FactorAndTaylorTests(unittest.TestCase):
    def test_quadratic_with_integer_roots(self) -> None:
        factored = factor(parse("x^2 - 5*x + 6"), "x")
        self.assertEqual(count_operations(factored), 3)
        for x in (-1.0, 0.0, 2.5, 7.0):
            self.assertAlmostEqual(evaluate(factored, {"x": x}), x * x - 5 * x + 6)
        self.assertEqual(factor_expression("x^2 - 5*x + 6", "x"), "((X - 3.0) * (X - 2.0))")

    def test_difference_of_squares(self) -> None:
        self.assertEqual(factor_expression("x^2 - 9", "x"), "((X - 3.0) * (X + 3.0))")

    def test_common_factor(self) -> None:
        factored = factor(parse("6*x + 9"), "x")
        self.assertEqual(factored.left, Number(3.0))
        self.assertAlmostEqual(evaluate(factored, {"x": 2.0}), 21.0)

    def test_unfactorable_is_returned_unchanged(self) -> None:
        expr = parse("x^2 + 1")
        self.assertTrue(equal(factor(expr, "x"), expr))

    def test_exp_series_at_one(self) -> None:
        series = taylor(parse("exp(x)"), "x", 0.0, 10)
        self.assertLess(abs(evaluate(series, {"x": 1.0}) - math.e), 1e-6)

    def test_series_about_nonzero_center(self) -> None:
        series = taylor(parse("sin(x)"), "x", 1.0, 6)
        self.assertAlmostEqual(evaluate(series, {"x": 1.2}), math.sin(1.2), places=8)

    def test_polynomial_series_is_exact(self) -> None:
        text = taylor_expression("x^3 + 2*x", "x", center=0.0, order=5)
        for x in (-2.0, 0.5, 3.0):
            self.assertAlmostEqual(evaluate(parse(text), {"x": x}), x**3 + 2 * x)

    def test_negative_order_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            taylor(parse("x"), "x", 0.0, -1)


if __name__ == "__main__":
    unittest.main()
