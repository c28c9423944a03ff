# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Morph IR consumed by the engine.

Pipeline placement:
  source --(morph.parser)--> IR (this file) --> interpreter / refine / harden

The IR is a sugar-free tree: pipes are already calls, `else if` is a nested
`MIf`, and every lexical block is an explicit `MBlock`. Each `MBlock` marks a
Pulse zone: entering it opens a zone, leaving it seals the zone. The body
block of a function is the function's entry zone. Match arms are not blocks
and evaluate in the enclosing zone.

Rules:
- Nodes carry no type or ownership information; passes keep side tables
  keyed by `node_id` (see `number_nodes`).
- A block's value is the value of its trailing `MExprStmt`, or Unit.
- Hosts that bring their own front end build these nodes directly.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from morph.core.span import Span

NodeId = int


class MNode:
	"""Base class for all IR nodes."""

	node_id: NodeId = 0
	span: Span = Span()


class MExpr(MNode):
	pass


class MStmt(MNode):
	pass


class MPattern(MNode):
	pass


class UnaryOp(Enum):
	NEG = "-"
	NOT = "!"


class BinaryOp(Enum):
	ADD = "+"
	SUB = "-"
	MUL = "*"
	DIV = "/"
	MOD = "%"
	EQ = "=="
	NE = "!="
	LT = "<"
	LE = "<="
	GT = ">"
	GE = ">="

	@property
	def is_comparison(self) -> bool:
		return self in (BinaryOp.LT, BinaryOp.LE, BinaryOp.GT, BinaryOp.GE)

	@property
	def is_equality(self) -> bool:
		return self in (BinaryOp.EQ, BinaryOp.NE)

	@property
	def is_arithmetic(self) -> bool:
		return not (self.is_comparison or self.is_equality)


class FunctionMode(Enum):
	"""Declared intent: `proto` profiles normally, `solid` hardens eagerly."""

	PROTO = "proto"
	SOLID = "solid"


# Types

@dataclass
class MTypeRef(MNode):
	"""`Name`, `List<T>`, optionally with ghost metadata (type declarations only)."""

	name: str
	args: List["MTypeRef"] = field(default_factory=list)
	ghost: Dict[str, Any] = field(default_factory=dict)

	def __str__(self) -> str:
		text = self.name
		if self.args:
			text += "<" + ", ".join(str(a) for a in self.args) + ">"
		return text


@dataclass
class MTypeDecl(MNode):
	"""`type Name = Target` or `type Name = { field: Type, ... }`."""

	name: str
	target: Optional[MTypeRef] = None
	fields: Optional[List[Tuple[str, MTypeRef]]] = None


# Expressions

@dataclass
class MLiteral(MExpr):
	value: Any  # int | float | bool | str | None (Unit)


@dataclass
class MVar(MExpr):
	name: str


@dataclass
class MUnary(MExpr):
	op: UnaryOp
	operand: MExpr


@dataclass
class MBinary(MExpr):
	op: BinaryOp
	left: MExpr
	right: MExpr


@dataclass
class MCall(MExpr):
	callee: str
	args: List[MExpr] = field(default_factory=list)


@dataclass
class MField(MExpr):
	target: MExpr
	name: str


@dataclass
class MIndex(MExpr):
	target: MExpr
	index: MExpr


@dataclass
class MList(MExpr):
	items: List[MExpr] = field(default_factory=list)


@dataclass
class MRecord(MExpr):
	fields: List[Tuple[str, MExpr]] = field(default_factory=list)


@dataclass
class MClaim(MExpr):
	"""Transfer the operand's value to the parent of its owning zone."""

	operand: MExpr


@dataclass
class MIf(MExpr):
	cond: MExpr
	then_block: "MBlock"
	else_block: Optional["MBlock"] = None


@dataclass
class MMatchArm(MNode):
	pattern: MPattern
	body: MExpr


@dataclass
class MMatch(MExpr):
	subject: MExpr
	arms: List[MMatchArm] = field(default_factory=list)


@dataclass
class MBlockExpr(MExpr):
	block: "MBlock"


# Patterns

@dataclass
class MWildcard(MPattern):
	pass


@dataclass
class MLiteralPattern(MPattern):
	value: Any


@dataclass
class MRangePattern(MPattern):
	"""Inclusive integer range `lo..hi`."""

	lo: int
	hi: int


@dataclass
class MBindPattern(MPattern):
	name: str


# Statements

@dataclass
class MBlock(MNode):
	statements: List[MStmt] = field(default_factory=list)

	@property
	def tail(self) -> Optional[MExpr]:
		if self.statements and isinstance(self.statements[-1], MExprStmt):
			return self.statements[-1].expr
		return None


@dataclass
class MLet(MStmt):
	name: str
	value: MExpr
	mutable: bool = False
	annotation: Optional[MTypeRef] = None


@dataclass
class MAssign(MStmt):
	name: str
	value: MExpr


@dataclass
class MStore(MStmt):
	"""
	`name.f[i] = value`. `path` holds field names (str) and index
	expressions, outermost first. The store rebinds `name` to an updated
	copy; the old payload is never changed.
	"""

	name: str
	path: List[Union[str, MExpr]]
	value: MExpr


@dataclass
class MReturn(MStmt):
	value: Optional[MExpr] = None


@dataclass
class MFor(MStmt):
	var: str
	iterable: MExpr
	body: MBlock
	guard: Optional[MExpr] = None


@dataclass
class MExprStmt(MStmt):
	expr: MExpr


# Top level

@dataclass
class MParam(MNode):
	name: str
	annotation: Optional[MTypeRef] = None


@dataclass
class MFunction(MNode):
	name: str
	params: List[MParam]
	body: MBlock
	return_type: Optional[MTypeRef] = None
	mode: FunctionMode = FunctionMode.PROTO

	@property
	def arity(self) -> int:
		return len(self.params)


@dataclass
class MModule(MNode):
	functions: List[MFunction] = field(default_factory=list)
	types: List[MTypeDecl] = field(default_factory=list)


# Traversal helpers

def children(node: MNode) -> Iterator[MNode]:
	"""Direct child nodes, in evaluation order."""
	if isinstance(node, MUnary):
		yield node.operand
	elif isinstance(node, MBinary):
		yield node.left
		yield node.right
	elif isinstance(node, MCall):
		yield from node.args
	elif isinstance(node, MField):
		yield node.target
	elif isinstance(node, MIndex):
		yield node.target
		yield node.index
	elif isinstance(node, MList):
		yield from node.items
	elif isinstance(node, MRecord):
		for _, value in node.fields:
			yield value
	elif isinstance(node, MClaim):
		yield node.operand
	elif isinstance(node, MIf):
		yield node.cond
		yield node.then_block
		if node.else_block is not None:
			yield node.else_block
	elif isinstance(node, MMatch):
		yield node.subject
		yield from node.arms
	elif isinstance(node, MMatchArm):
		yield node.pattern
		yield node.body
	elif isinstance(node, MBlockExpr):
		yield node.block
	elif isinstance(node, MBlock):
		yield from node.statements
	elif isinstance(node, MLet):
		if node.annotation is not None:
			yield node.annotation
		yield node.value
	elif isinstance(node, MAssign):
		yield node.value
	elif isinstance(node, MStore):
		yield node.value
		for step in node.path:
			if isinstance(step, MExpr):
				yield step
	elif isinstance(node, MReturn):
		if node.value is not None:
			yield node.value
	elif isinstance(node, MFor):
		yield node.iterable
		if node.guard is not None:
			yield node.guard
		yield node.body
	elif isinstance(node, MExprStmt):
		yield node.expr
	elif isinstance(node, MParam):
		if node.annotation is not None:
			yield node.annotation
	elif isinstance(node, MFunction):
		yield from node.params
		if node.return_type is not None:
			yield node.return_type
		yield node.body
	elif isinstance(node, MTypeRef):
		yield from node.args
	elif isinstance(node, MTypeDecl):
		if node.target is not None:
			yield node.target
		for _, ftype in node.fields or ():
			yield ftype
	elif isinstance(node, MModule):
		yield from node.types
		yield from node.functions


def walk(node: MNode) -> Iterator[MNode]:
	"""Pre-order traversal."""
	stack = [node]
	while stack:
		current = stack.pop()
		yield current
		stack.extend(reversed(list(children(current))))


_NODE_IDS = itertools.count(1)


def number_nodes(root: MNode) -> MNode:
	"""
	Give every node without an id a process-unique `node_id`.

	Side tables (inferred types, ownership facts) are keyed by node_id, so a
	tree must be numbered before analysis. Already-numbered nodes keep theirs.
	"""
	for node in walk(root):
		if not node.node_id:
			node.node_id = next(_NODE_IDS)
	return root


def calls_in(fn: MFunction) -> List[str]:
	"""Names of every function called from `fn`'s body."""
	return [n.callee for n in walk(fn.body) if isinstance(n, MCall)]


__all__ = [
	"NodeId",
	"MNode",
	"MExpr",
	"MStmt",
	"MPattern",
	"UnaryOp",
	"BinaryOp",
	"FunctionMode",
	"MTypeRef",
	"MTypeDecl",
	"MLiteral",
	"MVar",
	"MUnary",
	"MBinary",
	"MCall",
	"MField",
	"MIndex",
	"MList",
	"MRecord",
	"MClaim",
	"MIf",
	"MMatchArm",
	"MMatch",
	"MBlockExpr",
	"MWildcard",
	"MLiteralPattern",
	"MRangePattern",
	"MBindPattern",
	"MBlock",
	"MLet",
	"MAssign",
	"MStore",
	"MReturn",
	"MFor",
	"MExprStmt",
	"MParam",
	"MFunction",
	"MModule",
	"children",
	"walk",
	"number_nodes",
	"calls_in",
]
