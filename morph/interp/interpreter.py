# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Tree-walking interpreter: the Draft/Observe execution form.

Pipeline placement:
  MFunction --(this module)--> result, under the caller's Pulse arena

Every `MBlock` opens a zone on entry and seals it on exit; the function body
block is the entry zone, opened as a child of the caller's current zone by
`run_frame`. The interpreter enforces the ownership rules dynamically, for
code that has not been through the static Pulse check:

- a block may not yield a value owned by its own (sealing) zone;
- `return` may not carry a value owned by an interior zone of the frame;
- assignment, and a store into a field or element of a binding, may not
  keep a value in a binding that outlives its owner;
- `claim e` moves e's value from its zone to that zone's parent; values
  owned outside the frame already outlive it and stay put.

Violations raise DanglingPulseError. Ghost predicates
on parameter, `let` and return annotations are validated on every call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, TextIO

from morph.core.errors import DanglingPulseError, MorphRuntimeError
from morph.core.span import Span
from morph.ir.nodes import (
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
	MLiteralPattern,
	MMatch,
	MPattern,
	MRangePattern,
	MRecord,
	MReturn,
	MStmt,
	MStore,
	MTypeRef,
	MUnary,
	MVar,
	MWildcard,
)
from morph.pulse.arena import PulseArena, PulseRef, ZoneId

from . import values as V
from .values import RValue


@dataclass
class ExecContext:
	"""Per-call-stack execution state: the stack's arena and output stream."""

	arena: PulseArena
	stdout: TextIO
	depth: int = 0


class CallDispatcher(Protocol):
	"""Resolves a call by name (user function or builtin) and runs it."""

	def call(self, name: str, args: List[RValue], ctx: ExecContext, span: Span) -> RValue:
		...


class GhostValidator(Protocol):
	def validate_annotation(self, ref: MTypeRef, value: Any) -> None:
		...

	def needs_validation(self, ref: MTypeRef) -> bool:
		...


def check_arity(fn: MFunction, args: List[RValue], span: Optional[Span] = None) -> None:
	if len(args) != len(fn.params):
		raise MorphRuntimeError(f"Expected {len(fn.params)} arguments, got {len(args)}", span or fn.span)


def run_frame(arena: PulseArena, body: Callable[[ZoneId], RValue]) -> RValue:
	"""
	Run `body` inside a fresh entry zone under the caller's current zone.

	A result still owned by the entry zone is claimed into the caller's
	zone before the entry zone seals; anything else in the entry zone is
	reclaimed.
	"""
	caller = arena.current
	entry = arena.open_zone(caller)
	try:
		result = body(entry)
		if isinstance(result, PulseRef) and arena.owner(result) == entry:
			arena.claim(result, caller)
		return result
	finally:
		arena.seal_zone(entry)


class _Return(Exception):
	"""Unwinds to the frame boundary carrying the returned value."""

	def __init__(self, value: RValue) -> None:
		super().__init__()
		self.value = value


class _Binding:
	__slots__ = ("value", "mutable", "zone")

	def __init__(self, value: RValue, mutable: bool, zone: ZoneId) -> None:
		self.value = value
		self.mutable = mutable
		self.zone = zone


class _Frame:
	__slots__ = ("ctx", "zones", "scopes")

	def __init__(self, ctx: ExecContext, entry: ZoneId) -> None:
		self.ctx = ctx
		self.zones: List[ZoneId] = [entry]
		self.scopes: List[Dict[str, _Binding]] = [{}]

	@property
	def arena(self) -> PulseArena:
		return self.ctx.arena

	def lookup(self, name: str) -> Optional[_Binding]:
		for scope in reversed(self.scopes):
			binding = scope.get(name)
			if binding is not None:
				return binding
		return None

	def bind(self, name: str, value: RValue, mutable: bool = False) -> None:
		self.scopes[-1][name] = _Binding(value, mutable, self.zones[-1])


class Interpreter:
	"""Interprets one function. Stateless between calls; safe to share across threads."""

	def __init__(self, fn: MFunction, dispatcher: CallDispatcher, ghosts: Optional[GhostValidator] = None) -> None:
		self.fn = fn
		self.dispatcher = dispatcher
		self.ghosts = ghosts

	def run(self, args: List[RValue], ctx: ExecContext) -> RValue:
		check_arity(self.fn, args)
		arena = ctx.arena
		for param, arg in zip(self.fn.params, args):
			self._validate(param.annotation, arg, arena)

		def body(entry: ZoneId) -> RValue:
			frame = _Frame(ctx, entry)
			for param, arg in zip(self.fn.params, args):
				frame.bind(param.name, arg)
			try:
				result = self._statements(self.fn.body, frame)
			except _Return as ret:
				result = ret.value
			self._validate(self.fn.return_type, result, arena)
			return result

		return run_frame(arena, body)

	def _validate(self, ref: Optional[MTypeRef], value: RValue, arena: PulseArena) -> None:
		if ref is None or self.ghosts is None or not self.ghosts.needs_validation(ref):
			return
		self.ghosts.validate_annotation(ref, V.payload_of(value, arena))

	# Blocks and statements

	def _check_block_value(self, value: RValue, zone: ZoneId, frame: _Frame) -> None:
		if not isinstance(value, PulseRef):
			return
		if frame.arena.owner(value) == zone:
			raise DanglingPulseError(
				f"block value is owned by zone {zone}, which seals at the end of the block; claim it first"
			)

	def _statements(self, block: MBlock, frame: _Frame) -> RValue:
		result: RValue = None
		for stmt in block.statements:
			result = self._stmt(stmt, frame)
		if block.statements and not isinstance(block.statements[-1], MExprStmt):
			result = None
		return result

	def _zone_block(self, block: MBlock, frame: _Frame) -> RValue:
		arena = frame.arena
		zone = arena.open_zone(arena.current)
		frame.zones.append(zone)
		frame.scopes.append({})
		try:
			result = self._statements(block, frame)
			self._check_block_value(result, zone, frame)
			return result
		finally:
			frame.scopes.pop()
			frame.zones.pop()
			arena.seal_zone(zone)

	def _stmt(self, stmt: MStmt, frame: _Frame) -> RValue:
		if isinstance(stmt, MExprStmt):
			return self._expr(stmt.expr, frame)
		if isinstance(stmt, MLet):
			value = self._expr(stmt.value, frame)
			self._validate(stmt.annotation, value, frame.arena)
			frame.bind(stmt.name, value, stmt.mutable)
			return None
		if isinstance(stmt, MAssign):
			self._assign(stmt, frame)
			return None
		if isinstance(stmt, MStore):
			self._store(stmt, frame)
			return None
		if isinstance(stmt, MReturn):
			value = self._expr(stmt.value, frame) if stmt.value is not None else None
			if isinstance(value, PulseRef):
				owner = frame.arena.owner(value)
				if owner in frame.zones[1:]:
					raise DanglingPulseError(
						f"'{self.fn.name}' returns a value owned by zone {owner}, "
						"which seals on return; claim it first"
					)
			raise _Return(value)
		if isinstance(stmt, MFor):
			self._for(stmt, frame)
			return None
		raise AssertionError(f"unknown statement node {type(stmt).__name__}")

	def _mutable(self, name: str, frame: _Frame, span: Span) -> _Binding:
		binding = frame.lookup(name)
		if binding is None:
			raise MorphRuntimeError(f"Undefined variable: {name}", span)
		if not binding.mutable:
			raise MorphRuntimeError(f"Cannot assign to immutable binding '{name}'", span)
		return binding

	def _check_outlives(self, value: RValue, binding: _Binding, name: str, frame: _Frame) -> None:
		if not isinstance(value, PulseRef):
			return
		owner = frame.arena.owner(value)
		if not frame.arena.is_ancestor(owner, binding.zone):
			raise DanglingPulseError(
				f"assigning a value owned by zone {owner} to '{name}', "
				f"which lives in outer zone {binding.zone}"
			)

	def _assign(self, stmt: MAssign, frame: _Frame) -> None:
		binding = self._mutable(stmt.name, frame, stmt.span)
		value = self._expr(stmt.value, frame)
		self._check_outlives(value, binding, stmt.name, frame)
		binding.value = value

	def _store(self, stmt: MStore, frame: _Frame) -> None:
		binding = self._mutable(stmt.name, frame, stmt.span)
		value = self._expr(stmt.value, frame)
		path = [s if isinstance(s, str) else self._expr(s, frame) for s in stmt.path]
		self._check_outlives(value, binding, stmt.name, frame)
		binding.value = V.store(binding.value, path, value, frame.arena, binding.zone, stmt.span)

	def _for(self, stmt: MFor, frame: _Frame) -> None:
		items = V.iteration_items(self._expr(stmt.iterable, frame), frame.arena, stmt.span)
		arena = frame.arena
		for item in items:
			zone = arena.open_zone(arena.current)
			frame.zones.append(zone)
			frame.scopes.append({})
			try:
				frame.bind(stmt.var, V.lift(item, arena, zone))
				if stmt.guard is not None and not V.truthy(self._expr(stmt.guard, frame), arena):
					continue
				self._statements(stmt.body, frame)
			finally:
				frame.scopes.pop()
				frame.zones.pop()
				arena.seal_zone(zone)

	# Expressions

	def _expr(self, expr: MExpr, frame: _Frame) -> RValue:
		arena = frame.arena
		if isinstance(expr, MLiteral):
			return V.lift(expr.value, arena)
		if isinstance(expr, MVar):
			binding = frame.lookup(expr.name)
			if binding is None:
				raise MorphRuntimeError(f"Undefined variable: {expr.name}", expr.span)
			return binding.value
		if isinstance(expr, MBinary):
			left = self._expr(expr.left, frame)
			right = self._expr(expr.right, frame)
			return V.binary(expr.op, left, right, arena, expr.span)
		if isinstance(expr, MUnary):
			return V.unary(expr.op, self._expr(expr.operand, frame), arena, expr.span)
		if isinstance(expr, MCall):
			args = [self._expr(a, frame) for a in expr.args]
			return self.dispatcher.call(expr.callee, args, frame.ctx, expr.span)
		if isinstance(expr, MField):
			return V.field(self._expr(expr.target, frame), expr.name, arena, expr.span)
		if isinstance(expr, MIndex):
			target = self._expr(expr.target, frame)
			return V.index(target, self._expr(expr.index, frame), arena, expr.span)
		if isinstance(expr, MList):
			return V.build_list([self._expr(i, frame) for i in expr.items], arena)
		if isinstance(expr, MRecord):
			return V.build_record([(name, self._expr(v, frame)) for name, v in expr.fields], arena)
		if isinstance(expr, MClaim):
			return self._claim(expr, frame)
		if isinstance(expr, MIf):
			if V.truthy(self._expr(expr.cond, frame), arena):
				return self._zone_block(expr.then_block, frame)
			if expr.else_block is not None:
				return self._zone_block(expr.else_block, frame)
			return None
		if isinstance(expr, MMatch):
			return self._match(expr, frame)
		if isinstance(expr, MBlockExpr):
			return self._zone_block(expr.block, frame)
		raise AssertionError(f"unknown expression node {type(expr).__name__}")

	def _claim(self, expr: MClaim, frame: _Frame) -> RValue:
		value = self._expr(expr.operand, frame)
		if not isinstance(value, PulseRef):
			return value
		return claim_in_frame(value, frame.arena, frame.zones)

	def _match(self, expr: MMatch, frame: _Frame) -> RValue:
		subject = self._expr(expr.subject, frame)
		for arm in expr.arms:
			if not pattern_matches(arm.pattern, subject, frame.arena):
				continue
			if isinstance(arm.pattern, MBindPattern):
				frame.scopes.append({})
				try:
					frame.bind(arm.pattern.name, subject)
					return self._expr(arm.body, frame)
				finally:
					frame.scopes.pop()
			return self._expr(arm.body, frame)
		raise MorphRuntimeError("No match arm matched", expr.span)


def claim_in_frame(value: RValue, arena: PulseArena, frame_zones: List[ZoneId]) -> RValue:
	"""
	`claim value` evaluated in a frame whose open zones are `frame_zones`.

	A value owned by one of the frame's zones moves to that zone's parent
	(the caller's zone, for the entry zone). A value owned outside the frame
	already outlives it and is left where it is.
	"""
	if not isinstance(value, PulseRef):
		return value
	owner = arena.owner(value)
	if owner in frame_zones:
		arena.claim(value, arena.parent(owner))
	return value


def pattern_matches(pattern: MPattern, subject: RValue, arena: PulseArena) -> bool:
	if isinstance(pattern, (MWildcard, MBindPattern)):
		return True
	if isinstance(pattern, MLiteralPattern):
		return V.matches_literal(subject, pattern.value, arena)
	if isinstance(pattern, MRangePattern):
		return (
			isinstance(subject, int)
			and not isinstance(subject, bool)
			and pattern.lo <= subject <= pattern.hi
		)
	raise AssertionError(f"unknown pattern node {type(pattern).__name__}")


__all__ = [
	"ExecContext",
	"CallDispatcher",
	"GhostValidator",
	"Interpreter",
	"check_arity",
	"claim_in_frame",
	"pattern_matches",
	"run_frame",
]
