# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Closure kernel: a function body compiled once into nested Python closures.

The compiler resolves every name to a slot index, picks specialized scalar
operations where inference proved both operands Int (or both Float) under the
hardened shape, drops ghost checks that erasure discharged, and omits the
dynamic dangling checks the interpreter makes (the static Pulse check has
already ruled those programs out).

Values, zones and arithmetic go through the same arena and `values` helpers
the interpreter uses, so a deoptimized call resumes on an identical
ownership picture.
"""

from __future__ import annotations

import operator
from typing import Callable, Dict, List, Optional

from morph.core.errors import MorphRuntimeError
from morph.core.types_core import TypeKind
from morph.ghost.resolver import GhostResolver
from morph.interp import values as V
from morph.interp.interpreter import CallDispatcher, ExecContext, claim_in_frame, pattern_matches, run_frame
from morph.interp.values import RValue
from morph.ir.nodes import (
	BinaryOp,
	MAssign,
	MBindPattern,
	MBinary,
	MBlock,
	MBlockExpr,
	MCall,
	MClaim,
	MExpr,
	MExprStmt,
	MField,
	MFor,
	MFunction,
	MIf,
	MIndex,
	MLet,
	MList,
	MLiteral,
	MMatch,
	MRecord,
	MReturn,
	MStmt,
	MStore,
	MTypeRef,
	MUnary,
	MVar,
	UnaryOp,
)
from morph.pulse.arena import PulseArena, ZoneId
from morph.refine.analysis import RefineReport


class _KFrame:
	__slots__ = ("ctx", "arena", "zones", "slots")

	def __init__(self, ctx: ExecContext, entry: ZoneId, nslots: int) -> None:
		self.ctx = ctx
		self.arena: PulseArena = ctx.arena
		self.zones: List[ZoneId] = [entry]
		self.slots: List[RValue] = [None] * nslots


class _KReturn(Exception):
	def __init__(self, value: RValue) -> None:
		super().__init__()
		self.value = value


Compiled = Callable[[_KFrame], RValue]

_CMP = {
	BinaryOp.LT: operator.lt,
	BinaryOp.LE: operator.le,
	BinaryOp.GT: operator.gt,
	BinaryOp.GE: operator.ge,
	BinaryOp.EQ: operator.eq,
	BinaryOp.NE: operator.ne,
}

_INT_ARITH = {
	BinaryOp.ADD: lambda a, b: V.wrap_i64(a + b),
	BinaryOp.SUB: lambda a, b: V.wrap_i64(a - b),
	BinaryOp.MUL: lambda a, b: V.wrap_i64(a * b),
}

_FLOAT_ARITH = {
	BinaryOp.ADD: operator.add,
	BinaryOp.SUB: operator.sub,
	BinaryOp.MUL: operator.mul,
}


class ClosureKernel:
	kind = "closure"

	def __init__(
		self,
		fn: MFunction,
		report: RefineReport,
		dispatcher: CallDispatcher,
		ghosts: GhostResolver,
	) -> None:
		self.fn = fn
		self.ghosts = ghosts
		compiler = _Compiler(fn, report, dispatcher, ghosts)
		self._body = compiler.function_body()
		self._nslots = compiler.nslots
		self._return_check = compiler.retained(fn, fn.return_type)

	def __call__(self, args: List[RValue], ctx: ExecContext) -> RValue:
		arena = ctx.arena

		def body(entry: ZoneId) -> RValue:
			frame = _KFrame(ctx, entry, self._nslots)
			frame.slots[: len(args)] = args
			try:
				result = self._body(frame)
			except _KReturn as ret:
				result = ret.value
			if self._return_check is not None:
				self.ghosts.validate_annotation(self._return_check, V.payload_of(result, arena))
			return result

		return run_frame(arena, body)


class _Compiler:
	def __init__(self, fn: MFunction, report: RefineReport, dispatcher: CallDispatcher, ghosts: GhostResolver) -> None:
		self.fn = fn
		self.report = report
		self.inference = report.inference
		self.dispatcher = dispatcher
		self.ghosts = ghosts
		self.nslots = 0
		self.scopes: List[Dict[str, int]] = [{}]
		# zone nesting while compiling; a slot's binding zone is frame.zones[slot_depth[slot]]
		self.depth = 0
		self.slot_depth: Dict[int, int] = {}

	def retained(self, node, ref: Optional[MTypeRef]) -> Optional[MTypeRef]:
		"""`ref` when erasure kept a runtime check at `node`, else None."""
		if ref is None:
			return None
		site = self.report.site(node)
		if site is None or site.erased:
			return None
		return ref

	def _slot(self, name: str) -> int:
		slot = self.nslots
		self.nslots += 1
		self.scopes[-1][name] = slot
		self.slot_depth[slot] = self.depth
		return slot

	def _resolve(self, name: str) -> int:
		for scope in reversed(self.scopes):
			if name in scope:
				return scope[name]
		raise AssertionError(f"{self.fn.name}: unresolved name '{name}' reached the closure compiler")

	def _kind(self, expr: MExpr) -> TypeKind:
		return self.inference.type_of(expr).kind

	def function_body(self) -> Compiled:
		for param in self.fn.params:
			self._slot(param.name)
		return self._statements(self.fn.body)

	# Blocks

	def _statements(self, block: MBlock) -> Compiled:
		steps = [self._stmt(s) for s in block.statements]
		yields = bool(block.statements) and isinstance(block.statements[-1], MExprStmt)

		def run(frame: _KFrame) -> RValue:
			result = None
			for step in steps:
				result = step(frame)
			return result if yields else None

		return run

	def _zone(self, block: MBlock) -> Compiled:
		self.scopes.append({})
		self.depth += 1
		try:
			inner = self._statements(block)
		finally:
			self.depth -= 1
			self.scopes.pop()

		def run(frame: _KFrame) -> RValue:
			arena = frame.arena
			zone = arena.open_zone(arena.current)
			frame.zones.append(zone)
			try:
				return inner(frame)
			finally:
				frame.zones.pop()
				arena.seal_zone(zone)

		return run

	# Statements

	def _stmt(self, stmt: MStmt) -> Compiled:
		if isinstance(stmt, MExprStmt):
			return self._expr(stmt.expr)
		if isinstance(stmt, MLet):
			return self._let(stmt)
		if isinstance(stmt, MAssign):
			value = self._expr(stmt.value)
			slot = self._resolve(stmt.name)

			def assign(frame: _KFrame) -> RValue:
				frame.slots[slot] = value(frame)
				return None

			return assign
		if isinstance(stmt, MStore):
			return self._store(stmt)
		if isinstance(stmt, MReturn):
			if stmt.value is None:

				def return_unit(frame: _KFrame) -> RValue:
					raise _KReturn(None)

				return return_unit
			result = self._expr(stmt.value)

			def return_value(frame: _KFrame) -> RValue:
				raise _KReturn(result(frame))

			return return_value
		if isinstance(stmt, MFor):
			return self._for(stmt)
		raise AssertionError(f"unknown statement node {type(stmt).__name__}")

	def _let(self, stmt: MLet) -> Compiled:
		value = self._expr(stmt.value)
		slot = self._slot(stmt.name)
		check = self.retained(stmt, stmt.annotation)
		ghosts = self.ghosts
		if check is None:

			def let(frame: _KFrame) -> RValue:
				frame.slots[slot] = value(frame)
				return None

			return let

		def let_checked(frame: _KFrame) -> RValue:
			v = value(frame)
			ghosts.validate_annotation(check, V.payload_of(v, frame.arena))
			frame.slots[slot] = v
			return None

		return let_checked

	def _store(self, stmt: MStore) -> Compiled:
		value = self._expr(stmt.value)
		slot = self._resolve(stmt.name)
		depth = self.slot_depth[slot]
		steps = [s if isinstance(s, str) else self._expr(s) for s in stmt.path]
		span = stmt.span

		def store(frame: _KFrame) -> RValue:
			v = value(frame)
			path = [s if isinstance(s, str) else s(frame) for s in steps]
			frame.slots[slot] = V.store(frame.slots[slot], path, v, frame.arena, frame.zones[depth], span)
			return None

		return store

	def _for(self, stmt: MFor) -> Compiled:
		iterable = self._expr(stmt.iterable)
		span = stmt.span
		self.scopes.append({})
		self.depth += 1
		try:
			slot = self._slot(stmt.var)
			guard = self._condition(stmt.guard) if stmt.guard is not None else None
			body = self._statements(stmt.body)
		finally:
			self.depth -= 1
			self.scopes.pop()

		def run(frame: _KFrame) -> RValue:
			arena = frame.arena
			for item in V.iteration_items(iterable(frame), arena, span):
				zone = arena.open_zone(arena.current)
				frame.zones.append(zone)
				try:
					frame.slots[slot] = V.lift(item, arena, zone)
					if guard is not None and not guard(frame):
						continue
					body(frame)
				finally:
					frame.zones.pop()
					arena.seal_zone(zone)
			return None

		return run

	# Expressions

	def _condition(self, expr: MExpr) -> Callable[[_KFrame], bool]:
		test = self._expr(expr)
		if self._kind(expr) is TypeKind.BOOL:
			return test
		return lambda frame: V.truthy(test(frame), frame.arena)

	def _expr(self, expr: MExpr) -> Compiled:
		span = expr.span
		if isinstance(expr, MLiteral):
			literal = expr.value
			if isinstance(literal, (str, list, dict)):
				return lambda frame: V.lift(literal, frame.arena)
			return lambda frame: literal
		if isinstance(expr, MVar):
			slot = self._resolve(expr.name)
			return lambda frame: frame.slots[slot]
		if isinstance(expr, MBinary):
			return self._binary(expr)
		if isinstance(expr, MUnary):
			return self._unary(expr)
		if isinstance(expr, MCall):
			args = [self._expr(a) for a in expr.args]
			name = expr.callee
			call = self.dispatcher.call
			return lambda frame: call(name, [a(frame) for a in args], frame.ctx, span)
		if isinstance(expr, MField):
			target = self._expr(expr.target)
			fname = expr.name
			return lambda frame: V.field(target(frame), fname, frame.arena, span)
		if isinstance(expr, MIndex):
			target = self._expr(expr.target)
			idx = self._expr(expr.index)
			return lambda frame: V.index(target(frame), idx(frame), frame.arena, span)
		if isinstance(expr, MList):
			items = [self._expr(i) for i in expr.items]
			return lambda frame: V.build_list([i(frame) for i in items], frame.arena)
		if isinstance(expr, MRecord):
			fields = [(name, self._expr(v)) for name, v in expr.fields]
			return lambda frame: V.build_record([(n, v(frame)) for n, v in fields], frame.arena)
		if isinstance(expr, MClaim):
			operand = self._expr(expr.operand)
			return lambda frame: claim_in_frame(operand(frame), frame.arena, frame.zones)
		if isinstance(expr, MIf):
			return self._if(expr)
		if isinstance(expr, MMatch):
			return self._match(expr)
		if isinstance(expr, MBlockExpr):
			return self._zone(expr.block)
		raise AssertionError(f"unknown expression node {type(expr).__name__}")

	def _binary(self, expr: MBinary) -> Compiled:
		left = self._expr(expr.left)
		right = self._expr(expr.right)
		op = expr.op
		span = expr.span
		lk, rk = self._kind(expr.left), self._kind(expr.right)
		if lk is rk and lk in (TypeKind.INT, TypeKind.FLOAT):
			if op in _CMP:
				cmp = _CMP[op]
				return lambda frame: cmp(left(frame), right(frame))
			if op is BinaryOp.DIV:
				div = V.int_div if lk is TypeKind.INT else V.float_div
				return lambda frame: div(left(frame), right(frame), span)
			if op is BinaryOp.MOD and lk is TypeKind.INT:
				return lambda frame: V.int_rem(left(frame), right(frame), span)
			table = _INT_ARITH if lk is TypeKind.INT else _FLOAT_ARITH
			if op in table:
				fn = table[op]
				return lambda frame: fn(left(frame), right(frame))
		if lk is rk is TypeKind.BOOL and op.is_equality:
			cmp = _CMP[op]
			return lambda frame: cmp(left(frame), right(frame))
		return lambda frame: V.binary(op, left(frame), right(frame), frame.arena, span)

	def _unary(self, expr: MUnary) -> Compiled:
		operand = self._expr(expr.operand)
		kind = self._kind(expr.operand)
		span = expr.span
		if expr.op is UnaryOp.NEG:
			if kind is TypeKind.INT:
				return lambda frame: V.wrap_i64(-operand(frame))
			if kind is TypeKind.FLOAT:
				return lambda frame: -operand(frame)
		elif kind is TypeKind.BOOL:
			return lambda frame: not operand(frame)
		op = expr.op
		return lambda frame: V.unary(op, operand(frame), frame.arena, span)

	def _if(self, expr: MIf) -> Compiled:
		cond = self._condition(expr.cond)
		then = self._zone(expr.then_block)
		other = self._zone(expr.else_block) if expr.else_block is not None else None

		def run(frame: _KFrame) -> RValue:
			if cond(frame):
				return then(frame)
			if other is not None:
				return other(frame)
			return None

		return run

	def _match(self, expr: MMatch) -> Compiled:
		subject = self._expr(expr.subject)
		span = expr.span
		arms = []
		for arm in expr.arms:
			if isinstance(arm.pattern, MBindPattern):
				self.scopes.append({})
				try:
					slot: Optional[int] = self._slot(arm.pattern.name)
					body = self._expr(arm.body)
				finally:
					self.scopes.pop()
			else:
				slot = None
				body = self._expr(arm.body)
			arms.append((arm.pattern, slot, body))

		def run(frame: _KFrame) -> RValue:
			value = subject(frame)
			for pattern, slot, body in arms:
				if pattern_matches(pattern, value, frame.arena):
					if slot is not None:
						frame.slots[slot] = value
					return body(frame)
			raise MorphRuntimeError("No match arm matched", span)

		return run


def compile_closure(
	fn: MFunction,
	report: RefineReport,
	dispatcher: CallDispatcher,
	ghosts: GhostResolver,
) -> ClosureKernel:
	return ClosureKernel(fn, report, dispatcher, ghosts)


__all__ = ["ClosureKernel", "compile_closure"]
