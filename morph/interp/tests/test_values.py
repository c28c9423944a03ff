# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import io

import pytest

from morph.core.errors import MorphRuntimeError
from morph.interp import values as V
from morph.interp.builtins import BUILTINS, BuiltinContext
from morph.ir.nodes import BinaryOp
from morph.pulse.arena import PulseArena


def test_i64_wraps():
	assert V.wrap_i64(V.I64_MAX + 1) == V.I64_MIN
	assert V.arith_plain(BinaryOp.MUL, V.I64_MAX, 2) == -2
	assert V.int_div(V.I64_MIN, -1) == V.I64_MIN


@pytest.mark.parametrize("a, b, q, r", [(7, 2, 3, 1), (-7, 2, -3, -1), (7, -2, -3, 1), (-7, -2, 3, -1)])
def test_division_truncates_toward_zero(a, b, q, r):
	assert V.int_div(a, b) == q
	assert V.int_rem(a, b) == r


def test_division_by_zero():
	with pytest.raises(MorphRuntimeError, match="Division by zero"):
		V.arith_plain(BinaryOp.DIV, 1, 0)
	with pytest.raises(MorphRuntimeError, match="Modulo by zero"):
		V.arith_plain(BinaryOp.MOD, 1, 0)
	with pytest.raises(MorphRuntimeError, match="Division by zero"):
		V.arith_plain(BinaryOp.DIV, 1.0, 0.0)


def test_mixed_arithmetic_promotes_to_float():
	assert V.arith_plain(BinaryOp.ADD, 1, 0.5) == 1.5
	assert V.arith_plain(BinaryOp.DIV, 1, 2.0) == 0.5
	assert V.arith_plain(BinaryOp.ADD, "ab", "c") == "abc"
	assert V.arith_plain(BinaryOp.ADD, [1], [2]) == [1, 2]


def test_type_errors_name_both_kinds():
	with pytest.raises(MorphRuntimeError, match="Type error: Cannot add Int and String"):
		V.arith_plain(BinaryOp.ADD, 1, "a")
	with pytest.raises(MorphRuntimeError, match="Type error: Cannot modulo Float and Int"):
		V.arith_plain(BinaryOp.MOD, 1.5, 2)
	with pytest.raises(MorphRuntimeError, match="Cannot compare Bool and Int"):
		V.compare_plain(BinaryOp.LT, True, 1)


def test_equality_is_strict():
	assert not V.plain_equal(1, 1.0)
	assert not V.plain_equal(1, True)
	assert V.plain_equal([1, {"a": "x"}], [1, {"a": "x"}])
	assert not V.plain_equal({"a": 1}, {"b": 1})


@pytest.mark.parametrize(
	"value, text",
	[
		(1.0, "1"),
		(2.5, "2.5"),
		(1e20, "100000000000000000000"),
		(True, "true"),
		(None, "()"),
		([1, "a", 0.5], "[1, a, 0.5]"),
		({"x": 1}, "{ x: 1 }"),
	],
)
def test_display(value, text):
	assert V.display_plain(value) == text


def test_host_values_are_normalized_and_detached():
	arena = PulseArena()
	ref = V.from_host(({"k": (1, 2)},), arena)
	assert arena.payload(ref) == [{"k": [1, 2]}]
	out = V.to_host(ref, arena)
	out[0]["k"].append(3)
	assert arena.payload(ref) == [{"k": [1, 2]}]
	assert V.from_host(5, arena) == 5
	with pytest.raises(TypeError):
		V.normalize_plain({1: "a"})
	with pytest.raises(TypeError):
		V.normalize_plain(object())


def test_access_lifts_into_current_zone():
	arena = PulseArena()
	record = V.build_record([("name", V.lift("ann", arena)), ("age", 3)], arena)
	inner = arena.open_zone(arena.root)
	name = V.field(record, "name", arena)
	assert arena.owner(name) == inner
	assert V.field(record, "age", arena) == 3
	with pytest.raises(MorphRuntimeError, match="Field 'x' not found"):
		V.field(record, "x", arena)
	xs = V.lift([10, 20], arena)
	assert V.index(xs, 1, arena) == 20
	with pytest.raises(MorphRuntimeError, match="Index 2 out of bounds for list of length 2"):
		V.index(xs, 2, arena)


def test_truthiness():
	arena = PulseArena()
	assert not V.truthy(0, arena)
	assert not V.truthy(None, arena)
	assert not V.truthy(V.lift("", arena), arena)
	assert V.truthy(V.lift([0], arena), arena)


def call_builtin(name, *args):
	arena = PulseArena()
	stdout = io.StringIO()
	values = [V.from_host(a, arena) for a in args]
	result = BUILTINS[name](values, BuiltinContext(arena, stdout))
	return V.to_host(result, arena), stdout.getvalue()


def test_builtins():
	assert call_builtin("len", "héllo") == (5, "")
	assert call_builtin("len", {"a": 1, "b": 2}) == (2, "")
	assert call_builtin("range", 3) == ([0, 1, 2], "")
	assert call_builtin("range", 1, 10, 3) == ([1, 4, 7], "")
	assert call_builtin("log", "n", 1.0, [True]) == (None, "n 1 [true]\n")
	assert call_builtin("print", "a", "b") == (None, "a b")


def test_builtin_errors():
	with pytest.raises(MorphRuntimeError, match="step must be positive"):
		call_builtin("range", 0, 5, 0)
	with pytest.raises(MorphRuntimeError, match="Expected 1 arguments, got 2"):
		call_builtin("len", "a", "b")
	with pytest.raises(MorphRuntimeError, match="Type error"):
		call_builtin("len", 5)
