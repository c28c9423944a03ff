# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import pytest

from morph.core.errors import MorphSyntaxError
from morph.ir import nodes as M
from morph.ir.printer import format_module
from morph.parser import parse_function, parse_module


def test_function_with_annotations_and_mode():
	fn = parse_function("solid add(a: Int, b: Int) -> Int { a + b }")
	assert fn.name == "add"
	assert fn.mode is M.FunctionMode.SOLID
	assert [p.name for p in fn.params] == ["a", "b"]
	assert fn.params[0].annotation.name == "Int"
	assert fn.return_type.name == "Int"
	tail = fn.body.tail
	assert isinstance(tail, M.MBinary) and tail.op is M.BinaryOp.ADD


def test_newlines_terminate_statements():
	fn = parse_function(
		"""
		proto f(x) {
			let a = x * 2
			var b = a +
				1
			b = b - 3
			return b
		}
		"""
	)
	kinds = [type(s).__name__ for s in fn.body.statements]
	assert kinds == ["MLet", "MLet", "MAssign", "MReturn"]
	assert fn.body.statements[1].mutable


def test_semicolons_and_calls_across_lines():
	fn = parse_function("proto f() { let x = max(1,\n 2); x }")
	call = fn.body.statements[0].value
	assert isinstance(call, M.MCall) and len(call.args) == 2


def test_else_on_its_own_line():
	fn = parse_function(
		"""
		proto pick(c) {
			if c {
				1
			}
			else {
				2
			}
		}
		"""
	)
	expr = fn.body.tail
	assert isinstance(expr, M.MIf) and expr.else_block is not None


def test_else_if_chains_nest():
	fn = parse_function("proto s(n) { if n < 0 { -1 } else if n == 0 { 0 } else { 1 } }")
	outer = fn.body.tail
	inner = outer.else_block.tail
	assert isinstance(inner, M.MIf)
	assert isinstance(inner.else_block.tail, M.MLiteral)


def test_pipe_desugars_to_call():
	fn = parse_function("proto p(xs) { xs |> len }")
	tail = fn.body.tail
	assert isinstance(tail, M.MCall) and tail.callee == "len"
	fn = parse_function("proto p(x) { x |> add(1) }")
	tail = fn.body.tail
	assert tail.callee == "add"
	assert isinstance(tail.args[0], M.MVar) and tail.args[1].value == 1


def test_match_patterns():
	fn = parse_function(
		"""
		proto classify(n) {
			match n {
				0 => "zero",
				1..9 => "small",
				-5 => "minus five",
				other => "big"
			}
		}
		"""
	)
	arms = fn.body.tail.arms
	assert isinstance(arms[0].pattern, M.MLiteralPattern) and arms[0].pattern.value == 0
	assert isinstance(arms[1].pattern, M.MRangePattern) and (arms[1].pattern.lo, arms[1].pattern.hi) == (1, 9)
	assert arms[2].pattern.value == -5
	assert isinstance(arms[3].pattern, M.MBindPattern)


def test_records_lists_and_claim():
	fn = parse_function("proto r() { let p = {x: 1, y: [2, 3]}; claim p.y[0] }")
	record = fn.body.statements[0].value
	assert isinstance(record, M.MRecord) and [k for k, _ in record.fields] == ["x", "y"]
	tail = fn.body.tail
	assert isinstance(tail, M.MClaim)
	assert isinstance(tail.operand, M.MIndex)


def test_field_and_element_stores():
	fn = parse_function("proto f() { var p = {xs: [1]}; p.xs[0] = 2; p }")
	store = fn.body.statements[1]
	assert isinstance(store, M.MStore)
	assert store.name == "p"
	assert store.path[0] == "xs"
	assert isinstance(store.path[1], M.MLiteral) and store.path[1].value == 0
	assert isinstance(store.value, M.MLiteral) and store.value.value == 2
	assert store.span.line == 1


def test_for_with_guard():
	fn = parse_function("proto f(xs) { for x in xs where x > 1 { log(x) } }")
	loop = fn.body.statements[0]
	assert isinstance(loop, M.MFor) and loop.var == "x" and loop.guard is not None


def test_type_declarations_with_ghosts():
	module = parse_module(
		"""
		type Email = String<Ghost: Regex = "^[^@]+@[^@]+$">
		type Percent = Int<Ghost: Min = 0, Max = 100>
		type Point = { y: Float, x: Float }
		type Emails = List<Email>
		"""
	)
	email, percent, point, emails = module.types
	assert email.target.ghost == {"Regex": "^[^@]+@[^@]+$"}
	assert percent.target.ghost == {"Min": 0, "Max": 100}
	assert [name for name, _ in point.fields] == ["y", "x"]
	assert emails.target.name == "List" and emails.target.args[0].name == "Email"


def test_ghosts_only_on_type_declarations():
	with pytest.raises(MorphSyntaxError, match="only allowed in a type declaration"):
		parse_function('proto f(e: String<Ghost: Regex = "a">) { e }')


def test_nodes_are_numbered():
	fn = parse_function("proto f(a) { a + 1 }")
	ids = [n.node_id for n in M.walk(fn)]
	assert all(ids)
	assert len(set(ids)) == len(ids)


@pytest.mark.parametrize(
	"source, message",
	[
		("proto f( { }", "unexpected"),
		("proto f() { let = 1 }", "unexpected"),
		("proto f() { 1 }\nproto f() { 2 }", "defined twice"),
		("proto f(a, a) { a }", "declared twice"),
		("proto f(n) { match n { 5..1 => 0 } }", "empty range"),
		("proto f() { g(1)[0] = 2 }", "only a variable or a field or element of one can be assigned"),
	],
)
def test_syntax_errors(source, message):
	with pytest.raises(MorphSyntaxError, match=message) as info:
		parse_module(source, file="bad.mo")
	diag = info.value.to_diagnostic()
	assert diag.code == "E-SYNTAX"
	assert diag.span.file in ("bad.mo", None)


def test_printer_shows_structure():
	module = parse_module(
		"""
		type Age = Int<Ghost: Min = 0>
		proto f(a: Age) -> Int {
			let s = {x: 1}
			var t = [s]
			t[0].x = 2
			if a > 1 { claim s.x } else { 0 }
		}
		"""
	)
	text = format_module(module)
	assert "type Age = Int<Ghost: Min = 0>" in text
	assert "proto f(a: Age) -> Int {" in text
	assert "let s = {x: 1}" in text
	assert "t[0].x = 2" in text
	assert "if (a > 1) {" in text
	assert "claim s.x" in text
