# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Static Pulse ownership checker (hardening-time).

Pipeline placement:
  MFunction + InferenceResult --(this pass)--> [Diagnostic]

The checker proves, for one function under one inferred TypeShape, that no
value can outlive the zone that owns it. A function with an error diagnostic
here is never hardened; the native forms therefore run without the dynamic
dangling checks the interpreter performs.

Abstract domain: every heap-valued expression is mapped to the set of zone
depths that may own its value. Depth 0 is the function's entry zone, depth k
the k-th nested block; `ANCESTOR` stands for any zone outside the frame
(parameters, values claimed out of the entry zone). Copy-typed expressions
(Int, Float, Bool, Unit, per inference) have no owner. Expressions of unknown
shape are treated as heap values.

Rules, mirroring the interpreter:
  - a block's value may not be owned at the block's own depth;
  - a `return` value may not be owned at depth >= 1;
  - an assignment, or a store into a field or element of a binding, may not
    keep a value owned deeper than the binding's zone;
  - `claim` maps depth d to d - 1 (entry zone to ANCESTOR); ANCESTOR stays.

Bindings are tracked flow-insensitively (owner sets only grow) and the body
is re-walked until they settle, so loop-carried assignments are covered.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional

from morph.core.diagnostics import Diagnostic
from morph.core.types_core import TypeKind
from morph.interp.builtins import is_builtin
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
	MMatch,
	MNode,
	MRecord,
	MReturn,
	MStmt,
	MStore,
	MUnary,
	MVar,
)
from morph.refine.infer import InferenceResult

ANCESTOR = -1

Owners = FrozenSet[int]
NO_OWNER: Owners = frozenset()

_MAX_PASSES = 16


@dataclass
class _Binding:
	key: int
	depth: int
	mutable: bool


@dataclass
class PulseReport:
	function: str
	diagnostics: List[Diagnostic] = field(default_factory=list)
	max_depth: int = 0

	@property
	def ok(self) -> bool:
		return not any(d.is_error for d in self.diagnostics)


class PulseChecker:
	"""
	Checks one function. `arity_of(name)` returns a callee's parameter count,
	or None when no such Morph function exists.
	"""

	def __init__(
		self,
		fn: MFunction,
		inference: InferenceResult,
		arity_of: Callable[[str], Optional[int]],
	) -> None:
		self.fn = fn
		self.inference = inference
		self.arity_of = arity_of
		self._owners: Dict[int, Owners] = {}
		self._scopes: List[Dict[str, _Binding]] = []
		self._diagnostics: List[Diagnostic] = []
		self._reported: set = set()
		self._changed = False
		self._next_key = 0
		self._max_depth = 0

	def check(self) -> PulseReport:
		for _ in range(_MAX_PASSES):
			self._changed = False
			self._diagnostics = []
			self._reported = set()
			self._pass()
			if not self._changed:
				break
		return PulseReport(function=self.fn.name, diagnostics=list(self._diagnostics), max_depth=self._max_depth)

	# Bookkeeping

	def _pass(self) -> None:
		self._next_key = 0
		self._scopes = [{}]
		for param in self.fn.params:
			key = self._new_key()
			shape = self.inference.binding(param.name)
			self._join_owner(key, NO_OWNER if shape.kind.is_copy else frozenset({ANCESTOR}))
			self._scopes[-1][param.name] = _Binding(key, 0, False)
		self._statements(self.fn.body, 0)

	def _new_key(self) -> int:
		self._next_key += 1
		return self._next_key

	def _join_owner(self, key: int, owners: Owners) -> Owners:
		old = self._owners.get(key, NO_OWNER)
		new = old | owners
		if new != old:
			self._owners[key] = new
			self._changed = True
		return new

	def _lookup(self, name: str) -> Optional[_Binding]:
		for scope in reversed(self._scopes):
			if name in scope:
				return scope[name]
		return None

	def _error(self, node: MNode, code: str, message: str, notes: Optional[List[str]] = None) -> None:
		ident = (node.node_id, code)
		if ident in self._reported:
			return
		self._reported.add(ident)
		self._diagnostics.append(
			Diagnostic(
				message=message,
				code=code,
				phase="pulse",
				span=node.span,
				notes=notes or [],
				function=self.fn.name,
			)
		)

	def _is_copy(self, expr: MExpr) -> bool:
		kind = self.inference.type_of(expr).kind
		return kind.is_copy and kind is not TypeKind.ANY

	def _fresh(self, expr: MExpr, depth: int) -> Owners:
		"""Owner of a value created by `expr` in the zone at `depth`."""
		return NO_OWNER if self._is_copy(expr) else frozenset({depth})

	# Blocks

	def _statements(self, block: MBlock, depth: int) -> Owners:
		self._max_depth = max(self._max_depth, depth)
		value = NO_OWNER
		for stmt in block.statements:
			value = self._stmt(stmt, depth)
		if block.statements and not isinstance(block.statements[-1], MExprStmt):
			value = NO_OWNER
		return value

	def _zone(self, block: MBlock, depth: int, owner_node: MNode) -> Owners:
		inner = depth + 1
		self._scopes.append({})
		try:
			value = self._statements(block, inner)
		finally:
			self._scopes.pop()
		if inner in value:
			self._error(
				owner_node,
				"E-PULSE-DANGLING",
				"block yields a value owned by its own zone, which seals when the block ends",
				["wrap the value in `claim` to move it to the enclosing zone"],
			)
			value = (value - {inner}) | {depth}
		return value

	def _stmt(self, stmt: MStmt, depth: int) -> Owners:
		if isinstance(stmt, MExprStmt):
			return self._expr(stmt.expr, depth)
		if isinstance(stmt, MLet):
			owners = self._expr(stmt.value, depth)
			key = self._new_key()
			self._join_owner(key, owners)
			self._scopes[-1][stmt.name] = _Binding(key, depth, stmt.mutable)
		elif isinstance(stmt, MAssign):
			self._assign(stmt, depth)
		elif isinstance(stmt, MStore):
			self._store(stmt, depth)
		elif isinstance(stmt, MReturn):
			owners = self._expr(stmt.value, depth) if stmt.value is not None else NO_OWNER
			interior = sorted(o for o in owners if o >= 1)
			if interior:
				self._error(
					stmt,
					"E-PULSE-DANGLING",
					f"'{self.fn.name}' may return a value owned by an interior zone (depth {interior[-1]}), "
					"which seals on return",
					["claim the value up to the function's entry zone before returning it"],
				)
		elif isinstance(stmt, MFor):
			self._expr(stmt.iterable, depth)
			inner = depth + 1
			self._max_depth = max(self._max_depth, inner)
			self._scopes.append({})
			try:
				key = self._new_key()
				elem_shape = self.inference.binding(stmt.var)
				self._join_owner(key, NO_OWNER if elem_shape.kind.is_copy else frozenset({inner}))
				self._scopes[-1][stmt.var] = _Binding(key, inner, False)
				if stmt.guard is not None:
					self._expr(stmt.guard, inner)
				self._scopes.append({})
				try:
					self._statements(stmt.body, inner)
				finally:
					self._scopes.pop()
			finally:
				self._scopes.pop()
		else:
			raise AssertionError(f"unknown statement node {type(stmt).__name__}")
		return NO_OWNER

	def _target(self, stmt: MStmt, name: str) -> Optional[_Binding]:
		binding = self._lookup(name)
		if binding is None:
			self._error(stmt, "E-NAME-UNKNOWN", f"assignment to undefined variable '{name}'")
			return None
		if not binding.mutable:
			self._error(stmt, "E-ASSIGN-IMMUTABLE", f"cannot assign to immutable binding '{name}'")
			return None
		return binding

	def _assign(self, stmt: MAssign, depth: int) -> None:
		owners = self._expr(stmt.value, depth)
		binding = self._target(stmt, stmt.name)
		if binding is None:
			return
		deeper = sorted(o for o in owners if o > binding.depth)
		if deeper:
			self._error(
				stmt,
				"E-PULSE-DANGLING",
				f"'{stmt.name}' lives in the zone at depth {binding.depth} but is assigned a value "
				f"owned at depth {deeper[-1]}, which seals first",
			)
			owners = (owners - set(deeper)) | {binding.depth}
		self._join_owner(binding.key, owners)

	def _store(self, stmt: MStore, depth: int) -> None:
		owners = self._expr(stmt.value, depth)
		for step in stmt.path:
			if isinstance(step, MExpr):
				self._expr(step, depth)
		binding = self._target(stmt, stmt.name)
		if binding is None:
			return
		deeper = sorted(o for o in owners if o > binding.depth)
		if deeper:
			self._error(
				stmt,
				"E-PULSE-DANGLING",
				f"'{stmt.name}' lives in the zone at depth {binding.depth} but a value owned at depth "
				f"{deeper[-1]}, which seals first, is stored into it",
				["wrap the value in `claim` to move it to the enclosing zone"],
			)
		# the updated copy is allocated in the binding's own zone
		self._join_owner(binding.key, frozenset({binding.depth}))

	# Expressions

	def _expr(self, expr: MExpr, depth: int) -> Owners:
		if isinstance(expr, MLiteral):
			return self._fresh(expr, depth)
		if isinstance(expr, MVar):
			binding = self._lookup(expr.name)
			if binding is None:
				self._error(expr, "E-NAME-UNKNOWN", f"undefined variable '{expr.name}'")
				return NO_OWNER
			return self._owners.get(binding.key, NO_OWNER)
		if isinstance(expr, MBinary):
			self._expr(expr.left, depth)
			self._expr(expr.right, depth)
			return self._fresh(expr, depth)
		if isinstance(expr, MUnary):
			self._expr(expr.operand, depth)
			return NO_OWNER
		if isinstance(expr, MCall):
			for arg in expr.args:
				self._expr(arg, depth)
			arity = self.arity_of(expr.callee)
			if arity is None and not is_builtin(expr.callee):
				self._error(expr, "E-NAME-UNKNOWN", f"call to undefined function '{expr.callee}'")
			elif arity is not None and arity != len(expr.args):
				self._error(
					expr,
					"E-CALL-ARITY",
					f"'{expr.callee}' expects {arity} arguments, this call passes {len(expr.args)}",
				)
			return self._fresh(expr, depth)
		if isinstance(expr, (MField, MIndex)):
			self._expr(expr.target, depth)
			if isinstance(expr, MIndex):
				self._expr(expr.index, depth)
			return self._fresh(expr, depth)
		if isinstance(expr, MList):
			for item in expr.items:
				self._expr(item, depth)
			return frozenset({depth})
		if isinstance(expr, MRecord):
			for _, value in expr.fields:
				self._expr(value, depth)
			return frozenset({depth})
		if isinstance(expr, MClaim):
			owners = self._expr(expr.operand, depth)
			return frozenset(o - 1 if o >= 1 else ANCESTOR for o in owners)
		if isinstance(expr, MIf):
			self._expr(expr.cond, depth)
			owners = self._zone(expr.then_block, depth, expr.then_block)
			if expr.else_block is not None:
				owners = owners | self._zone(expr.else_block, depth, expr.else_block)
			return owners
		if isinstance(expr, MMatch):
			subject = self._expr(expr.subject, depth)
			owners = NO_OWNER
			for arm in expr.arms:
				if isinstance(arm.pattern, MBindPattern):
					self._scopes.append({})
					try:
						key = self._new_key()
						self._join_owner(key, subject)
						self._scopes[-1][arm.pattern.name] = _Binding(key, depth, False)
						owners = owners | self._expr(arm.body, depth)
					finally:
						self._scopes.pop()
				else:
					owners = owners | self._expr(arm.body, depth)
			return owners
		if isinstance(expr, MBlockExpr):
			return self._zone(expr.block, depth, expr)
		raise AssertionError(f"unknown expression node {type(expr).__name__}")


def check_function(
	fn: MFunction,
	inference: InferenceResult,
	arity_of: Callable[[str], Optional[int]],
) -> PulseReport:
	return PulseChecker(fn, inference, arity_of).check()


__all__ = ["ANCESTOR", "PulseChecker", "PulseReport", "check_function"]
