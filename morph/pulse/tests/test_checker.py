# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from morph.core.types_core import TypeShape
from morph.parser import parse_function
from morph.pulse.checker import check_function
from morph.refine.infer import infer_function


def check(source, shape="", arities=None):
	fn = parse_function(source)
	inference = infer_function(fn, TypeShape.parse(shape))
	return check_function(fn, inference, (arities or {}).get)


def codes(report):
	return [d.code for d in report.diagnostics]


def test_heap_branch_value_needs_claim():
	report = check('proto f() { let s = if true { "a" } else { "b" }; s }')
	assert not report.ok
	assert codes(report) == ["E-PULSE-DANGLING", "E-PULSE-DANGLING"]
	assert "claim" in report.diagnostics[0].notes[0]


def test_claimed_branch_values_pass():
	report = check('proto f() { let s = if true { claim "a" } else { claim "b" }; s }')
	assert report.ok
	assert report.max_depth == 1


def test_copy_values_need_no_claim():
	report = check("proto f(c) { if c > 0 { if c > 5 { c * 2 } else { c } } else { 0 } }", "Int")
	assert report.ok
	assert report.max_depth == 2


def test_unknown_shape_is_treated_as_heap():
	report = check("proto f(c) { if true { c + 1 } else { c } }", "Any")
	assert codes(report) == ["E-PULSE-DANGLING"]


def test_return_from_interior_zone():
	report = check("proto f(c) { if c { return [1] }; [2] }", "Bool")
	assert codes(report) == ["E-PULSE-DANGLING"]
	assert "interior zone" in report.diagnostics[0].message


def test_parameters_can_be_returned_from_anywhere():
	report = check("proto f(s, c) { if c { return s }; s }", "String, Bool")
	assert report.ok


def test_assignment_from_deeper_zone():
	report = check('proto f() { var s = "a"; if true { s = "b" }; s }')
	assert codes(report) == ["E-PULSE-DANGLING"]
	report = check('proto f() { var s = "a"; if true { s = claim "b" }; s }')
	assert report.ok


def test_store_from_deeper_zone():
	report = check('proto f() { var xs = ["a"]; if true { xs[0] = "b" }; xs }')
	assert codes(report) == ["E-PULSE-DANGLING"]
	assert "is stored into it" in report.diagnostics[0].message
	report = check('proto f() { var xs = ["a"]; if true { xs[0] = claim "b" }; xs }')
	assert report.ok
	report = check("proto f() { var xs = [0, 0]; for i in range(2) { xs[i] = i * 2 }; xs }")
	assert report.ok


def test_store_into_immutable_binding():
	report = check("proto f(p) { p.x = 1; p }", "Any")
	assert codes(report) == ["E-ASSIGN-IMMUTABLE"]


def test_loop_carried_assignment():
	report = check('proto f(xs) { var last = ""; for x in xs { last = x }; last }', "List[String]")
	assert codes(report) == ["E-PULSE-DANGLING"]
	report = check("proto f(xs) { var total = 0; for x in xs { total = total + x }; total }", "List[Int]")
	assert report.ok


def test_names_arity_and_mutability():
	report = check("proto f() { let a = 1; a = 2; g(1) + missing(a) + y }", arities={"g": 2})
	assert sorted(codes(report)) == ["E-ASSIGN-IMMUTABLE", "E-CALL-ARITY", "E-NAME-UNKNOWN", "E-NAME-UNKNOWN"]
	assert all(d.phase == "pulse" and d.function == "f" for d in report.diagnostics)


def test_builtins_are_known():
	report = check("proto f(xs) { log(len(xs)) }", "List[Int]")
	assert report.ok
