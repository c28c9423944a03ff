# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""End-to-end behaviour of the engine on small Morph programs."""
import pytest

from morph.core.errors import DanglingPulseError, GhostValidationError, HardeningFailure
from morph.core.types_core import TypeShape
from morph.harden.forms import InterpretedForm, NativeForm
from morph.profile.profiler import Stage

BACKENDS = ["closure", "llvm"]


@pytest.mark.parametrize("backend", BACKENDS)
def test_promote_harden_and_deoptimize(make_engine, backend):
	engine = make_engine("proto add(a, b) { a + b }", t1=100, t2=140, s1=0.9, window=150, backend=backend)
	for i in range(10):
		assert engine.invoke("add", [i + 0.5, 1.0]) == i + 1.5
	for i in range(89):
		engine.invoke("add", [i, 1])
	assert engine.current_stage("add") is Stage.DRAFT
	engine.invoke("add", [1, 1])
	assert engine.current_stage("add") is Stage.OBSERVE

	for i in range(39):
		engine.invoke("add", [i, 2])
	assert engine.current_stage("add") is Stage.OBSERVE
	assert engine.invoke("add", [40, 2]) == 42
	refine, solid = engine.transitions("add")[1:]
	assert refine.calls == 140
	assert refine.score == pytest.approx(130 / 140)
	assert refine.reason == "stable on (Int, Int)"
	assert solid.target is Stage.SOLID
	form = engine.form_of("add")
	assert form.kind == backend
	assert form.shape == TypeShape.parse("Int, Int")
	assert engine.invoke("add", [20, 22]) == 42

	assert engine.invoke("add", [1.25, 1.0]) == 2.25
	assert engine.current_stage("add") is Stage.OBSERVE
	deopt = engine.transitions("add")[-1]
	assert deopt.reason == "guard miss on (Float, Float)"
	assert deopt.score == pytest.approx(0.5 * 131 / 142)
	assert isinstance(engine.form_of("add"), InterpretedForm)
	assert engine.invoke("add", [2, 2]) == 4


def test_unprovable_regex_stays_as_a_guard(make_engine):
	engine = make_engine(
		"""
		type Email = String<Ghost: Regex = "^[^@]+@[^@]+$">
		proto domain(e: Email) -> Int {
			var at = 0
			var i = 0
			for c in e {
				if c == "@" { at = i }
				i = i + 1
			}
			len(e) - at - 1
		}
		""",
		t1=2,
		t2=4,
	)
	for _ in range(4):
		assert engine.invoke("domain", ["ada@example.org"]) == 11
	form = engine.form_of("domain")
	assert isinstance(form, NativeForm)
	assert [index for index, _ in form.param_checks] == [0]
	retained = [d for d in engine.diagnostics if d.code == "N-GHOST-RETAINED"]
	assert "Email.Regex" in retained[0].message

	with pytest.raises(GhostValidationError, match="Email"):
		engine.invoke("domain", ["not-an-address"])
	assert engine.current_stage("domain") is Stage.SOLID


def test_erasure_for_one_function_keeps_the_guard_of_another(make_engine):
	engine = make_engine(
		"""
		type Email = String<Ghost: Regex = "^[^@]+@[^@]+$">
		proto tag(e: Email) { e }
		proto check(e: Email) -> Int { len(e) }
		""",
		backend="closure",
	)
	assert engine.harden("tag", "Int").param_checks == ()
	form = engine.harden("check", "String")
	assert [index for index, _ in form.param_checks] == [0]
	assert engine.invoke("check", ["ada@example.org"]) == 15
	with pytest.raises(GhostValidationError, match="Email"):
		engine.invoke("check", ["not-an-email"])


def test_total_regex_is_erased(make_engine):
	engine = make_engine(
		"""
		type Note = String<Ghost: Regex = ".*">
		proto size(n: Note) -> Int { len(n) }
		""",
		backend="closure",
	)
	form = engine.harden("size", "String")
	assert form.param_checks == ()
	assert "N-GHOST-RETAINED" not in [d.code for d in engine.diagnostics]
	assert engine.invoke("size", ["anything"]) == 8


def test_dangling_branches_never_harden(make_engine):
	engine = make_engine(
		"""
		proto bad(c) { if c { "yes" } else { "no" } }
		proto good(c) { if c { claim "yes" } else { claim "no" } }
		""",
		t1=1,
		t2=2,
		backend="closure",
	)
	for _ in range(3):
		with pytest.raises(DanglingPulseError):
			engine.invoke("bad", [True])
	assert isinstance(engine.form_of("bad"), InterpretedForm)
	assert "E-PULSE-DANGLING" in [d.code for d in engine.diagnostics]
	with pytest.raises(HardeningFailure):
		engine.harden("bad", "Bool")

	for flag in (True, False, True):
		engine.invoke("good", [flag])
	assert isinstance(engine.form_of("good"), NativeForm)
	assert engine.invoke("good", [False]) == "no"


def test_record_layout_is_reported(make_engine):
	engine = make_engine(
		"""
		type Point = {x: Int, y: Float, b: Bool}
		proto area(p: Point) -> Float { p.x * p.y }
		""",
		t1=1,
		t2=2,
	)
	point = {"x": 2, "y": 1.5, "b": True}
	assert engine.invoke("area", [point]) == 3.0
	assert engine.invoke("area", [point]) == 3.0
	form = engine.form_of("area")
	assert form.kind == "closure"
	assert form.layouts["Point"].describe() == "Point: natural, size 24, align 8 [x@0:8, y@8:8, b@16:1]"


def test_mutual_calls_between_hardened_and_interpreted(make_engine):
	engine = make_engine(
		"""
		proto sq(x) { x * x }
		proto norm(a, b) { sq(a) + sq(b) }
		""",
		backend="closure",
	)
	engine.harden("norm", "Int, Int")
	assert engine.invoke("norm", [3, 4]) == 25
	assert engine.current_stage("sq") is Stage.DRAFT
	assert engine.registry.get("sq").profile.calls == 2
	assert engine.invoke("norm", [1.5, 2]) == 6.25
