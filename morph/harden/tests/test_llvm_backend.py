# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import random

import pytest

pytest.importorskip("llvmlite")

from morph.core.errors import MorphRuntimeError  # noqa: E402
from morph.harden.llvm_backend import ineligibility  # noqa: E402
from morph.interp.values import I64_MAX, I64_MIN  # noqa: E402
from morph.profile.profiler import Stage  # noqa: E402

PROGRAM = """
proto poly(a, b) {
	let c = a * b - 7
	if c > a { c % 5 } else { -c / 3 }
}
proto clamp(x) { if x < 0.0 { 0.0 } else { if x > 1.0 { 1.0 } else { x } } }
proto sign(n) { if n < 0 { return -1 }; if n == 0 { return 0 }; 1 }
proto above(a, b) { a > b }
proto grade(n) { match n { 0 => 0, 1..9 => 1, other => other * 2 } }
proto mix(a, x) { var y = x; y = y * 2.0 + a; !(y > 3.0) }
"""

CASES = [
	("poly", "Int, Int", lambda rng: [rng.randint(I64_MIN, I64_MAX), rng.choice([-1, 0, 3, rng.randint(-99, 99)])]),
	("clamp", "Float", lambda rng: [rng.uniform(-0.5, 1.5)]),
	("sign", "Int", lambda rng: [rng.randint(-3, 3)]),
	("above", "Int, Int", lambda rng: [rng.randint(-3, 3), rng.randint(-3, 3)]),
	("grade", "Int", lambda rng: [rng.randint(-5, 15)]),
	("mix", "Int, Float", lambda rng: [rng.randint(-3, 3), rng.uniform(-2, 2)]),
]


@pytest.mark.parametrize("name, shape, gen", CASES, ids=[c[0] for c in CASES])
def test_llvm_kernel_agrees_with_interpreter(make_engine, name, shape, gen):
	native = make_engine(PROGRAM)
	plain = make_engine(PROGRAM)
	form = native.harden(name, shape)
	assert form.kind == "llvm"
	assert f"morph_{name}" in form.kernel.ir_text
	rng = random.Random(11)
	for _ in range(100):
		args = gen(rng)
		assert native.invoke(name, args) == plain.invoke(name, args)
	assert native.current_stage(name) is Stage.SOLID
	assert native.form_of(name) is form


@pytest.mark.parametrize(
	"source, args, message",
	[
		("proto f(a, b) { a / b }", [1, 0], "Division by zero"),
		("proto f(a, b) { a % b }", [1, 0], "Modulo by zero"),
		("proto f(a, b) { a / b }", [1.0, 0.0], "Division by zero"),
		("proto f(a, b) { match a { 1 => b } }", [2, 0], "No match arm matched"),
	],
)
def test_status_codes_raise_runtime_errors(make_engine, source, args, message):
	engine = make_engine(source)
	shape = ", ".join("Float" if isinstance(a, float) else "Int" for a in args)
	assert engine.harden("f", shape).kind == "llvm"
	with pytest.raises(MorphRuntimeError, match=message):
		engine.invoke("f", args)


def test_int_min_divided_by_minus_one_wraps(make_engine):
	engine = make_engine("proto f(a, b) { a / b }\nproto g(a, b) { a % b }")
	engine.harden("f", "Int, Int")
	engine.harden("g", "Int, Int")
	assert engine.invoke("f", [I64_MIN, -1]) == I64_MIN
	assert engine.invoke("g", [I64_MIN, -1]) == 0


def test_ineligible_functions_use_closures(make_engine):
	engine = make_engine(
		"""
		type Count = Int<Ghost: Min = 0>
		proto greet(name) { "hi " + name }
		proto wrap(n) { [n] }
		proto sq(x) { x * x }
		proto twice(a) { sq(a) + sq(a) }
		proto checked(a) { let c: Count = a; c }
		"""
	)
	expected = {
		("greet", "String"): "parameter shape",
		("wrap", "Int"): "return shape",
		("twice", "Int"): "MCall is not supported natively",
		("checked", "Int"): "let c keeps a runtime ghost check",
	}
	for (name, shape), reason in expected.items():
		fn = engine.registry.get(name).fn
		assert reason in ineligibility(fn, engine.analyze(name, shape))
		assert engine.harden(name, shape).kind == "closure"
	assert engine.invoke("twice", [3]) == 18
	assert engine.invoke("checked", [4]) == 4


def test_stores_use_closures(make_engine):
	engine = make_engine("proto slot(n) { var xs = [n, 0]; xs[1] = n * 2; xs[0] + xs[1] }")
	assert ineligibility(engine.registry.get("slot").fn, engine.analyze("slot", "Int")) is not None
	assert engine.harden("slot", "Int").kind == "closure"
	assert engine.invoke("slot", [3]) == 9


def test_scalar_function_is_eligible(make_engine):
	engine = make_engine("proto f(a) { a }")
	fn = engine.registry.get("f").fn
	assert ineligibility(fn, engine.analyze("f", "Float")) is None
