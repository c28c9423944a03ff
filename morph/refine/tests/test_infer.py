# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import pytest

from morph.core.types_core import ANY, FLOAT, INT, STRING, TypeShape, list_of, record_of
from morph.ir.nodes import MLiteral
from morph.parser import parse_function, parse_module
from morph.refine.infer import infer_function, stored_shape


def returns(source, shape, lookup=None):
	return infer_function(parse_function(source), TypeShape.parse(shape), lookup).returns


@pytest.mark.parametrize(
	"shape, expected",
	[("Int, Int", INT), ("Int, Float", FLOAT), ("String, String", STRING), ("Int, String", ANY)],
)
def test_arithmetic_result_shapes(shape, expected):
	assert returns("proto add(a, b) { a + b }", shape) == expected


def test_modulo_needs_two_ints():
	assert returns("proto m(a, b) { a % b }", "Int, Int") == INT
	assert returns("proto m(a, b) { a % b }", "Float, Int") == ANY


def test_bindings_join_across_assignments():
	fn = parse_function("proto f(c) { var x = 1; if c { x = 2.5 }; x }")
	result = infer_function(fn, TypeShape.parse("Bool"))
	assert result.binding("x") == ANY
	assert result.returns == ANY


def test_loop_variables():
	fn = parse_function("proto f(xs) { var s = 0; for x in xs { s = s + x }; s }")
	result = infer_function(fn, TypeShape.parse("List[Int]"))
	assert result.binding("x") == INT
	assert result.returns == INT
	result = infer_function(fn, TypeShape.parse("String"))
	assert result.binding("x") == STRING
	assert result.binding("s") == ANY


def test_explicit_returns_join_with_the_tail():
	assert returns("proto f(n) { if n > 0 { return 1.5 }; 2.0 }", "Int") == FLOAT
	assert returns("proto f(n) { if n > 0 { return 1 }; 2.0 }", "Int") == ANY
	assert returns("proto f(n) { return n }", "Int") == INT


def test_builtin_results():
	assert returns("proto f(xs) { len(xs) }", "List[Any]") == INT
	assert returns("proto f(n) { range(n) }", "Int") == list_of(INT)


def test_field_and_index_shapes():
	assert returns("proto f(p) { p.x }", "{x: Int, y: String}") == INT
	assert returns("proto f(p) { p.z }", "{x: Int}") == ANY
	assert returns("proto f(xs) { xs[0] }", "List[Float]") == FLOAT


def test_stored_shapes():
	point = record_of({"x": INT, "y": STRING})
	assert stored_shape(list_of(INT), [MLiteral(value=0)], INT) == list_of(INT)
	assert stored_shape(list_of(INT), [MLiteral(value=0)], FLOAT) == list_of(ANY)
	assert stored_shape(point, ["x"], FLOAT) == record_of({"x": FLOAT, "y": STRING})
	assert stored_shape(point, ["z"], INT) == ANY
	assert stored_shape(list_of(point), [MLiteral(value=0), "y"], STRING) == list_of(point)
	assert returns("proto f(xs) { var ys = xs; ys[0] = 1; ys }", "List[Int]") == list_of(INT)
	assert returns("proto f(xs) { var ys = xs; ys[0] = 1.5; ys }", "List[Int]") == list_of(ANY)


def test_calls_are_inferred_under_argument_shapes():
	module = parse_module(
		"""
		proto sq(x) { x * x }
		proto f(a) { sq(a) + 1 }
		"""
	)
	functions = {fn.name: fn for fn in module.functions}
	f = functions["f"]
	assert infer_function(f, TypeShape.parse("Float"), functions.get).returns == FLOAT
	assert infer_function(f, TypeShape.parse("Int"), functions.get).returns == INT
	assert infer_function(f, TypeShape.parse("Int")).returns == ANY


def test_recursion_widens_to_any():
	module = parse_module("proto fact(n) { if n <= 1 { 1 } else { n * fact(n - 1) } }")
	fact = module.functions[0]
	result = infer_function(fact, TypeShape.parse("Int"), {"fact": fact}.get)
	assert result.returns == ANY
	assert result.binding("n") == INT
