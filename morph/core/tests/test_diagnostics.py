# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from morph.core.diagnostics import Diagnostic, DiagnosticSink, errors_in
from morph.core.span import Span


def test_render_includes_code_span_and_notes():
	diag = Diagnostic(
		message="block yields a value owned by its own zone",
		code="E-PULSE-DANGLING",
		phase="pulse",
		span=Span(file="m.mo", line=3, column=5),
		notes=["claim it"],
	)
	assert diag.render() == "m.mo:3:5: error[E-PULSE-DANGLING]: block yields a value owned by its own zone\n  note: claim it"
	assert diag.to_dict()["span"]["line"] == 3


def test_none_span_is_replaced():
	diag = Diagnostic(message="x", span=None)  # type: ignore[arg-type]
	assert diag.span == Span()


def test_sink_is_bounded_and_filters_by_code():
	sink = DiagnosticSink(capacity=2)
	for i in range(3):
		sink.publish(Diagnostic(message=f"m{i}", code="N-STAGE" if i else "W-HARDEN-FAILED", severity="note"))
	assert [d.message for d in sink.snapshot()] == ["m1", "m2"]
	assert len(sink.snapshot("N-STAGE")) == 2
	assert errors_in(sink.snapshot()) == []


def test_listeners_can_unsubscribe():
	sink = DiagnosticSink()
	seen = []
	unsubscribe = sink.subscribe(seen.append)
	sink.publish(Diagnostic(message="first"))
	unsubscribe()
	sink.publish(Diagnostic(message="second"))
	assert [d.message for d in seen] == ["first"]
	assert len(sink) == 2
