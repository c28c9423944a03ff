# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import pytest

from morph.core.types_core import TypeShape, TypeTable
from morph.ghost.resolver import GhostResolver, ResolutionState
from morph.parser import parse_function
from morph.refine.analysis import analyze

EMAIL = "^[^@]+@[^@]+$"


@pytest.fixture
def ghosts():
	types = TypeTable()
	types.define_alias("Email", "String")
	types.define_alias("Name", "String")
	types.define_alias("Count", "Int")
	types.define_alias("Emails", "List", "Email")
	resolver = GhostResolver(types)
	resolver.annotate("Email", {"Regex": EMAIL})
	resolver.annotate("Name", {"Regex": ".*", "Layout": "c"})
	resolver.annotate("Count", {"Min": 0})
	return resolver


def test_shape_must_fit_the_parameters(ghosts):
	fn = parse_function("proto f(a) { a }")
	with pytest.raises(ValueError, match="takes 1 parameters"):
		analyze(fn, TypeShape.parse("Int, Int"), ghosts)


def test_unprovable_predicate_is_kept_as_a_check(ghosts):
	fn = parse_function("proto greet(e: Email) { e }")
	report = analyze(fn, TypeShape.parse("String"), ghosts)
	assert report.ok
	[site] = report.sites
	assert site.label == "param e"
	assert not site.erased
	assert site.retained[0].checks == (f"Email.Regex = '{EMAIL}'",)
	[note] = report.diagnostics
	assert note.code == "N-GHOST-RETAINED"
	assert note.severity == "note"
	assert ghosts.state("Email") is ResolutionState.ANNOTATED


def test_refuse_policy_fails_the_report(ghosts):
	fn = parse_function("proto greet(e: Email) { e }")
	report = analyze(fn, TypeShape.parse("String"), ghosts, ghost_policy="refuse")
	assert not report.ok
	assert [d.code for d in report.diagnostics] == ["E-GHOST-REFUSED"]


def test_provable_predicates_are_erased(ghosts):
	fn = parse_function("proto hello(n: Name) -> Name { n }")
	report = analyze(fn, TypeShape.parse("String"), ghosts)
	assert report.ok
	assert [s.label for s in report.sites] == ["param n", "return"]
	assert all(s.erased for s in report.sites)
	assert report.diagnostics == []
	assert report.layouts()["Name"].strategy == "c"
	assert ghosts.state("Name") is ResolutionState.ERASED


def test_let_and_return_sites(ghosts):
	fn = parse_function("proto f(a, b) -> Count { let total: Count = a + b; total }")
	report = analyze(fn, TypeShape.parse("Int, Int"), ghosts)
	assert [s.label for s in report.sites] == ["let total", "return"]
	assert len(report.retained_sites) == 2
	let_stmt = fn.body.statements[0]
	assert report.site(let_stmt).label == "let total"


def test_list_element_annotations(ghosts):
	fn = parse_function("proto first(xs: List<Email>) { xs[0] }")
	report = analyze(fn, TypeShape.parse("List[String]"), ghosts)
	[site] = report.sites
	assert [type(r).__name__ for r in site.results] == ["Erased", "Retained"]


def test_pulse_errors_fail_the_report(ghosts):
	fn = parse_function('proto f(c) { if c { "a" } else { "b" } }')
	report = analyze(fn, TypeShape.parse("Bool"), ghosts)
	assert not report.ok
	assert {d.code for d in report.diagnostics} == {"E-PULSE-DANGLING"}
	assert report.inference.returns.kind.value == "String"


def test_arity_of_uses_lookup(ghosts):
	fn = parse_function("proto f(x) { g(x, x) }")
	callee = parse_function("proto g(a) { a }")
	report = analyze(fn, TypeShape.parse("Int"), ghosts, lookup={"g": callee}.get)
	assert [d.code for d in report.diagnostics] == ["E-CALL-ARITY"]
