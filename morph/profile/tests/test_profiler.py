# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import random

import pytest

from morph.core.config import EngineConfig
from morph.core.errors import StageError
from morph.core.types_core import TypeShape
from morph.profile.profiler import FunctionProfile, Stage, Thresholds

INTS = TypeShape.parse("Int, Int")
FLOATS = TypeShape.parse("Float, Float")


def make_profile(t1=3, t2=6, s1=0.9, window=10, damping=0.5):
	return FunctionProfile("f", Thresholds(t1=t1, t2=t2, s1=s1, window=window, damping=damping))


def test_draft_to_observe_to_refine():
	profile = make_profile()
	assert [profile.record(INTS) for _ in range(2)] == [None, None]
	to_observe = profile.record(INTS)
	assert (to_observe.source, to_observe.target, to_observe.calls) == (Stage.DRAFT, Stage.OBSERVE, 3)
	assert [profile.record(INTS) for _ in range(2)] == [None, None]
	to_refine = profile.record(INTS)
	assert to_refine.target is Stage.REFINE
	assert to_refine.reason == "stable on (Int, Int)"
	assert to_refine.score == 1.0
	solid = profile.mark_solid()
	assert solid.target is Stage.SOLID
	assert [t.target for t in profile.transitions] == [Stage.OBSERVE, Stage.REFINE, Stage.SOLID]


def test_calls_without_a_shape_stay_in_draft():
	profile = make_profile()
	for _ in range(20):
		assert profile.record(None) is None
	assert profile.stage is Stage.DRAFT
	assert profile.score == 0.0


def test_unstable_shapes_do_not_refine():
	profile = make_profile()
	for i in range(40):
		profile.record(INTS if i % 2 else FLOATS)
	assert profile.stage is Stage.OBSERVE
	assert profile.score == pytest.approx(0.5)


def test_ties_go_to_the_first_shape_seen():
	profile = make_profile(window=4)
	for shape in (FLOATS, INTS, INTS, FLOATS):
		profile.record(shape)
	assert profile.dominant() == FLOATS


def test_failed_refine_waits_for_the_window_to_move():
	profile = make_profile(t1=1, t2=2, s1=0.75, window=4)
	profile.record(INTS)
	assert profile.record(INTS).target is Stage.REFINE
	failed = profile.mark_failed("pulse check failed")
	assert failed.target is Stage.OBSERVE
	assert profile.failures == 1
	assert profile.retry_blocked

	assert profile.record(INTS) is None
	assert profile.record(FLOATS) is None
	assert profile.record(FLOATS) is None
	assert not profile.retry_blocked
	retry = profile.record(FLOATS)
	assert retry.target is Stage.REFINE
	assert retry.reason == "stable on (Float, Float)"


def test_deoptimization_damps_the_score():
	profile = make_profile(t1=1, t2=2, s1=0.95, window=10, damping=0.5)
	profile.record(INTS)
	profile.record(INTS)
	profile.mark_solid()
	deopt = profile.deoptimize(FLOATS)
	assert deopt.source is Stage.SOLID and deopt.target is Stage.OBSERVE
	assert deopt.reason == "guard miss on (Float, Float)"
	assert profile.deopts == 1
	assert profile.damping == 0.5
	assert profile.score == pytest.approx(0.5)
	assert profile.deoptimize(FLOATS) is None

	assert profile.record(INTS) is None
	assert profile.damping == pytest.approx(0.6)
	for _ in range(3):
		profile.record(INTS)
	assert profile.damping == pytest.approx(0.9)
	assert profile.record(INTS).target is Stage.REFINE


def test_explicit_refine():
	profile = make_profile()
	assert profile.begin_refine("requested").source is Stage.DRAFT
	profile.mark_solid()
	with pytest.raises(StageError):
		profile.begin_refine("again")
	with pytest.raises(StageError):
		profile.mark_failed("late")


def test_guard_miss_while_refining_is_a_stage_error():
	profile = make_profile()
	profile.begin_refine("requested")
	with pytest.raises(StageError, match="deoptimize in stage Refine"):
		profile.deoptimize(FLOATS)
	assert profile.stage is Stage.REFINE
	assert profile.deopts == 0


def test_solid_declarations_use_eager_thresholds():
	config = EngineConfig()
	eager = Thresholds.from_config(config, eager=True)
	assert (eager.t1, eager.t2, eager.s1) == (1, 2, config.s1)
	normal = Thresholds.from_config(config)
	assert (normal.t1, normal.t2, normal.window) == (config.t1, config.t2, config.window)


def replay(events, thresholds):
	"""Feed `events` to a fresh profile the way the engine does; return its transitions."""
	profile = FunctionProfile("f", thresholds)
	for shape in events:
		if profile.stage is Stage.SOLID and shape != profile.dominant():
			profile.deoptimize(shape)
		transition = profile.record(shape)
		if transition is not None and transition.target is Stage.REFINE:
			profile.mark_solid()
	return [(t.source, t.target, t.calls, t.score, t.reason) for t in profile.transitions]


def test_replaying_events_is_deterministic():
	rng = random.Random(42)
	shapes = [INTS, FLOATS, TypeShape.parse("String")]
	thresholds = Thresholds(t1=5, t2=10, s1=0.8, window=12, damping=0.5)
	for _ in range(20):
		events = [shapes[0] if rng.random() < 0.85 else rng.choice(shapes) for _ in range(300)]
		first = replay(events, thresholds)
		assert first == replay(events, thresholds)
		assert first and first[0][:2] == (Stage.DRAFT, Stage.OBSERVE)
		for (_, target, *_), (source, *_) in zip(first, first[1:]):
			assert target is source
