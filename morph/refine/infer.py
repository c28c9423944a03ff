# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Shape inference for one function under one argument TypeShape.

The result is a side table `node_id -> ShapeType` for every expression of the
body, used by the Pulse checker (which values are Copy) and by the backends
(which arithmetic to specialize, whether the LLVM kernel applies).

Bindings are typed flow-insensitively: every assignment to a name joins into
that name's shape, and the body is re-walked until no binding changes.
Unrelated kinds join to ANY, so the lattice is shallow and the iteration is
short. Calls to other Morph functions are typed by inferring the callee
under the argument shapes at the call site (memoized; recursion yields ANY).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from morph.core.types_core import (
	ANY,
	BOOL,
	FLOAT,
	INT,
	STRING,
	UNIT,
	ShapeType,
	TypeKind,
	TypeShape,
	join_shapes,
	list_of,
	record_of,
	shape_of_plain,
)
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
	MUnary,
	MVar,
	NodeId,
	UnaryOp,
)

FunctionLookup = Callable[[str], Optional[MFunction]]

_BUILTIN_RESULTS = {
	"len": INT,
	"range": list_of(INT),
	"log": UNIT,
	"print": UNIT,
}

_MAX_PASSES = 16


@dataclass
class InferenceResult:
	function: str
	shape: TypeShape
	node_types: Dict[NodeId, ShapeType] = field(default_factory=dict)
	bindings: Dict[str, ShapeType] = field(default_factory=dict)
	returns: ShapeType = UNIT

	def type_of(self, node: MExpr) -> ShapeType:
		return self.node_types.get(node.node_id, ANY)

	def binding(self, name: str) -> ShapeType:
		return self.bindings.get(name, ANY)


def _join(a: Optional[ShapeType], b: ShapeType) -> ShapeType:
	return b if a is None else join_shapes(a, b)


def arith_shape(op: BinaryOp, left: ShapeType, right: ShapeType) -> ShapeType:
	"""Result shape of an arithmetic operator (ANY where the runtime would fail or cannot be known)."""
	lk, rk = left.kind, right.kind
	if lk is TypeKind.INT and rk is TypeKind.INT:
		return INT
	if lk.is_numeric and rk.is_numeric and op is not BinaryOp.MOD:
		return FLOAT
	if op is BinaryOp.ADD:
		if lk is TypeKind.STRING and rk is TypeKind.STRING:
			return STRING
		if lk is TypeKind.LIST and rk is TypeKind.LIST:
			return join_shapes(left, right)
	return ANY


def stored_shape(root: ShapeType, path: List[Union[str, MExpr]], value: ShapeType) -> ShapeType:
	"""Shape of `root` after storing a `value` shape at `path`."""
	if not path:
		return value
	step, rest = path[0], path[1:]
	if isinstance(step, str):
		current = root.field(step) if root.kind is TypeKind.RECORD else None
		if current is None:
			return ANY
		fields = dict(root.fields)
		fields[step] = stored_shape(current, rest, value)
		return record_of(fields)
	if root.kind is not TypeKind.LIST:
		return ANY
	elem = stored_shape(root.elem or ANY, rest, value)
	return list_of(join_shapes(root.elem, elem) if root.elem is not None else elem)


class ReturnOracle:
	"""Memoized interprocedural return-shape inference with a recursion guard."""

	def __init__(self, lookup: FunctionLookup) -> None:
		self.lookup = lookup
		self._memo: Dict[Tuple[str, TypeShape], ShapeType] = {}
		self._active: Set[Tuple[str, TypeShape]] = set()

	def returns(self, name: str, args: List[ShapeType]) -> ShapeType:
		if name in _BUILTIN_RESULTS and self.lookup(name) is None:
			return _BUILTIN_RESULTS[name]
		fn = self.lookup(name)
		if fn is None or fn.arity != len(args):
			return ANY
		key = (name, TypeShape(tuple(args)))
		if key in self._memo:
			return self._memo[key]
		if key in self._active:
			return ANY
		self._active.add(key)
		try:
			result = _Inferencer(fn, key[1], self).run().returns
		finally:
			self._active.discard(key)
		self._memo[key] = result
		return result


def infer_function(fn: MFunction, shape: TypeShape, lookup: Optional[FunctionLookup] = None) -> InferenceResult:
	"""Infer shapes for `fn`'s body when called with argument shapes `shape`."""
	oracle = ReturnOracle(lookup or (lambda _name: None))
	return _Inferencer(fn, shape, oracle).run()


class _Inferencer:
	def __init__(self, fn: MFunction, shape: TypeShape, oracle: ReturnOracle) -> None:
		self.fn = fn
		self.shape = shape
		self.oracle = oracle
		self.result = InferenceResult(function=fn.name, shape=shape)
		self._changed = False
		self._returns: Optional[ShapeType] = None

	def run(self) -> InferenceResult:
		bindings = self.result.bindings
		for i, param in enumerate(self.fn.params):
			bindings[param.name] = self.shape.args[i] if i < len(self.shape.args) else ANY
		for _ in range(_MAX_PASSES):
			self._changed = False
			self._returns = None
			tail = self._block(self.fn.body)
			if not self._changed:
				break
		else:
			# did not settle; widen every binding
			for name in bindings:
				bindings[name] = ANY
			self._returns = None
			tail = self._block(self.fn.body)
		falls_through = not (self.fn.body.statements and isinstance(self.fn.body.statements[-1], MReturn))
		returns = self._returns
		if falls_through:
			returns = _join(returns, tail)
		self.result.returns = returns if returns is not None else UNIT
		return self.result

	def _bind(self, name: str, shape: ShapeType) -> None:
		bindings = self.result.bindings
		old = bindings.get(name)
		new = _join(old, shape)
		if new != old:
			bindings[name] = new
			self._changed = True

	def _record(self, node: MExpr, shape: ShapeType) -> ShapeType:
		self.result.node_types[node.node_id] = shape
		return shape

	def _block(self, block: MBlock) -> ShapeType:
		value = UNIT
		for stmt in block.statements:
			value = self._stmt(stmt)
		if block.statements and not isinstance(block.statements[-1], MExprStmt):
			value = UNIT
		return value

	def _stmt(self, stmt: MStmt) -> ShapeType:
		if isinstance(stmt, MExprStmt):
			return self._expr(stmt.expr)
		if isinstance(stmt, MLet):
			self._bind(stmt.name, self._expr(stmt.value))
		elif isinstance(stmt, MAssign):
			self._bind(stmt.name, self._expr(stmt.value))
		elif isinstance(stmt, MStore):
			value = self._expr(stmt.value)
			for step in stmt.path:
				if isinstance(step, MExpr):
					self._expr(step)
			root = self.result.bindings.get(stmt.name, ANY)
			self._bind(stmt.name, stored_shape(root, stmt.path, value))
		elif isinstance(stmt, MReturn):
			value = self._expr(stmt.value) if stmt.value is not None else UNIT
			self._returns = _join(self._returns, value)
		elif isinstance(stmt, MFor):
			iterable = self._expr(stmt.iterable)
			if iterable.kind is TypeKind.LIST:
				elem = iterable.elem or ANY
			elif iterable.kind is TypeKind.STRING:
				elem = STRING
			else:
				elem = ANY
			self._bind(stmt.var, elem)
			if stmt.guard is not None:
				self._expr(stmt.guard)
			self._block(stmt.body)
		return UNIT

	def _expr(self, expr: MExpr) -> ShapeType:
		return self._record(expr, self._shape(expr))

	def _shape(self, expr: MExpr) -> ShapeType:
		if isinstance(expr, MLiteral):
			return shape_of_plain(expr.value)
		if isinstance(expr, MVar):
			return self.result.bindings.get(expr.name, ANY)
		if isinstance(expr, MBinary):
			left = self._expr(expr.left)
			right = self._expr(expr.right)
			if expr.op.is_comparison or expr.op.is_equality:
				return BOOL
			return arith_shape(expr.op, left, right)
		if isinstance(expr, MUnary):
			operand = self._expr(expr.operand)
			if expr.op is UnaryOp.NOT:
				return BOOL
			return operand if operand.kind.is_numeric else ANY
		if isinstance(expr, MCall):
			args = [self._expr(a) for a in expr.args]
			return self.oracle.returns(expr.callee, args)
		if isinstance(expr, MField):
			target = self._expr(expr.target)
			if target.kind is TypeKind.RECORD:
				return target.field(expr.name) or ANY
			return ANY
		if isinstance(expr, MIndex):
			target = self._expr(expr.target)
			self._expr(expr.index)
			if target.kind is TypeKind.LIST:
				return target.elem or ANY
			if target.kind is TypeKind.STRING:
				return STRING
			return ANY
		if isinstance(expr, MList):
			elem: Optional[ShapeType] = None
			for item in expr.items:
				elem = _join(elem, self._expr(item))
			return list_of(elem or ANY)
		if isinstance(expr, MRecord):
			return record_of({name: self._expr(value) for name, value in expr.fields})
		if isinstance(expr, MClaim):
			return self._expr(expr.operand)
		if isinstance(expr, MIf):
			self._expr(expr.cond)
			then = self._block(expr.then_block)
			other = self._block(expr.else_block) if expr.else_block is not None else UNIT
			return join_shapes(then, other)
		if isinstance(expr, MMatch):
			subject = self._expr(expr.subject)
			out: Optional[ShapeType] = None
			for arm in expr.arms:
				if isinstance(arm.pattern, MBindPattern):
					self._bind(arm.pattern.name, subject)
				out = _join(out, self._expr(arm.body))
			return out or ANY
		if isinstance(expr, MBlockExpr):
			return self._block(expr.block)
		raise AssertionError(f"unknown expression node {type(expr).__name__}")


__all__ = ["InferenceResult", "ReturnOracle", "FunctionLookup", "arith_shape", "infer_function", "stored_shape"]
