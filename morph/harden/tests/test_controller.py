# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from concurrent.futures import ThreadPoolExecutor

import pytest

from morph.core.errors import DanglingPulseError, HardeningFailure
from morph.core.types_core import TypeShape
from morph.harden.forms import InterpretedForm, NativeForm
from morph.profile.profiler import Stage

ADD = "proto add(a, b) { a + b }"


def codes(engine):
	return [d.code for d in engine.diagnostics]


def test_explicit_harden_installs_a_native_form(make_engine):
	engine = make_engine(ADD, backend="closure")
	form = engine.harden("add", "Int, Int")
	assert isinstance(form, NativeForm)
	assert engine.form_of("add") is form
	assert [t.target for t in engine.transitions("add")] == [Stage.REFINE, Stage.SOLID]
	hardened = [d for d in engine.diagnostics if d.code == "N-HARDENED"]
	assert hardened[0].message == "add hardened on (Int, Int) with the closure kernel"
	assert engine.harden("add", "Int, Int") is form


def test_hardening_is_single_flight(make_engine):
	engine = make_engine(ADD, backend="closure")
	ctx = engine.registry.get("add")
	with ctx.harden_lock:
		assert engine.harden("add", "Int, Int") is None
	assert engine.current_stage("add") is Stage.DRAFT
	assert isinstance(engine.form_of("add"), InterpretedForm)


def test_rehardening_on_another_shape_is_refused(make_engine):
	engine = make_engine(ADD, backend="closure")
	engine.harden("add", "Int, Int")
	with pytest.raises(HardeningFailure) as info:
		engine.harden("add", "Float, Float")
	assert [d.code for d in info.value.diagnostics] == ["E-HARDEN-STATE"]
	assert engine.current_stage("add") is Stage.SOLID


def test_shape_of_wrong_arity(make_engine):
	engine = make_engine(ADD, backend="closure")
	with pytest.raises(HardeningFailure, match="takes 2 parameters"):
		engine.harden("add", "Int")
	assert "E-HARDEN-SHAPE" in codes(engine)
	assert codes(engine)[-1] == "W-HARDEN-FAILED"
	assert engine.current_stage("add") is Stage.OBSERVE
	assert engine.registry.get("add").profile.failures == 1


def test_refused_analysis_keeps_the_function_interpreted(make_engine):
	engine = make_engine('proto pick(c) { if c { "a" } else { "b" } }', backend="closure")
	with pytest.raises(HardeningFailure) as info:
		engine.harden("pick", "Bool")
	assert isinstance(info.value.__cause__, DanglingPulseError)
	assert "E-PULSE-DANGLING" in codes(engine)
	assert isinstance(engine.form_of("pick"), InterpretedForm)
	assert engine.current_stage("pick") is Stage.OBSERVE


def test_failed_automatic_hardening_is_silent(make_engine):
	engine = make_engine(
		"""
		type Email = String<Ghost: Regex = "^[^@]+@[^@]+$">
		proto size(e: Email) { len(e) }
		""",
		t1=1,
		t2=2,
		ghost_policy="refuse",
		backend="closure",
	)
	assert engine.invoke("size", ["a@b"]) == 3
	assert engine.invoke("size", ["a@b"]) == 3
	assert [t.target for t in engine.transitions("size")] == [Stage.OBSERVE, Stage.REFINE, Stage.OBSERVE]
	assert "E-GHOST-REFUSED" in codes(engine)
	assert "W-HARDEN-FAILED" in codes(engine)
	assert isinstance(engine.form_of("size"), InterpretedForm)


def test_deoptimization_is_compare_and_swap(make_engine):
	engine = make_engine(ADD, backend="closure")
	form = engine.harden("add", "Int, Int")
	ctx = engine.registry.get("add")
	floats = TypeShape.parse("Float, Float")
	engine.controller.deoptimize(ctx, form, floats)
	engine.controller.deoptimize(ctx, form, floats)
	assert ctx.profile.deopts == 1
	assert codes(engine).count("N-DEOPT") == 1


def test_call_during_installation_sees_a_consistent_stage(make_engine, monkeypatch):
	engine = make_engine(ADD, backend="closure")
	ctx = engine.registry.get("add")
	mark_solid = ctx.profile.mark_solid
	seen = []

	def installing(*args, **kwargs):
		seen.append(engine.invoke("add", [1.5, 2.0]))
		return mark_solid(*args, **kwargs)

	monkeypatch.setattr(ctx.profile, "mark_solid", installing)
	form = engine.harden("add", "Int, Int")
	assert seen == [3.5]
	assert engine.current_stage("add") is Stage.SOLID
	assert engine.form_of("add") is form

	assert engine.invoke("add", [1.5, 2.0]) == 3.5
	assert engine.current_stage("add") is Stage.OBSERVE
	assert isinstance(engine.form_of("add"), InterpretedForm)
	assert codes(engine).count("N-DEOPT") == 1


def test_concurrent_guard_misses_deoptimize_once(make_engine):
	engine = make_engine(ADD, backend="closure")
	engine.harden("add", "Int, Int")
	with ThreadPoolExecutor(max_workers=8) as pool:
		results = list(pool.map(lambda i: engine.invoke("add", [i + 0.5, 1]), range(64)))
	assert results == [i + 1.5 for i in range(64)]
	assert engine.registry.get("add").profile.deopts == 1
	assert engine.current_stage("add") is Stage.OBSERVE


def test_background_hardening(make_engine):
	engine = make_engine(ADD, t1=1, t2=2, async_hardening=True, backend="closure")
	seen = []
	engine.subscribe(lambda d: seen.append(d.code))
	assert engine.invoke("add", [1, 2]) == 3
	assert engine.invoke("add", [3, 4]) == 7
	engine.wait_idle(timeout=10)
	assert engine.current_stage("add") is Stage.SOLID
	assert engine.form_of("add").kind == "closure"
	assert engine.invoke("add", [5, 6]) == 11
	assert "N-HARDENED" in seen


def test_solid_functions_harden_after_two_calls(make_engine):
	engine = make_engine("solid add(a, b) { a + b }", backend="closure")
	engine.invoke("add", [1, 2])
	assert engine.current_stage("add") is Stage.OBSERVE
	engine.invoke("add", [1, 2])
	assert engine.current_stage("add") is Stage.SOLID
	assert engine.form_of("add").shape == TypeShape.parse("Int, Int")
