# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
LLVM kernel for scalar functions (llvmlite, MCJIT).

Eligible functions take and return only Int/Float/Bool under the hardened
shape, and their bodies use only scalar literals, variables, arithmetic,
comparisons, `let`/`var`, assignment, `if`/`else`, `match`, block
expressions, `claim` and `return`. No heap value ever exists in such a body,
so the kernel needs no arena.

ABI of the emitted function:

	i32 morph_<name>(i64|double|i8 args..., ret* out)

The return value is a status: 0 ok, 1 division by zero, 2 modulo by zero,
3 no match arm. The wrapper raises the same MorphRuntimeError the
interpreter raises for each.
"""

from __future__ import annotations

import ctypes
import logging
import threading
from typing import Dict, List, Optional, Tuple

from llvmlite import binding as llvm  # type: ignore
from llvmlite import ir  # type: ignore

from morph.core.errors import MorphRuntimeError
from morph.core.types_core import ShapeType, TypeKind
from morph.ghost.resolver import GhostResolver
from morph.interp.interpreter import ExecContext
from morph.interp.values import RValue, payload_of
from morph.ir.nodes import (
	BinaryOp,
	MAssign,
	MBindPattern,
	MBinary,
	MBlock,
	MBlockExpr,
	MClaim,
	MExpr,
	MExprStmt,
	MFunction,
	MIf,
	MLet,
	MLiteral,
	MLiteralPattern,
	MMatch,
	MRangePattern,
	MReturn,
	MStmt,
	MTypeRef,
	MUnary,
	MVar,
	MWildcard,
	UnaryOp,
)
from morph.refine.analysis import RefineReport

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_DIV_ZERO = 1
STATUS_MOD_ZERO = 2
STATUS_NO_MATCH = 3

_STATUS_MESSAGES = {
	STATUS_DIV_ZERO: "Division by zero",
	STATUS_MOD_ZERO: "Modulo by zero",
	STATUS_NO_MATCH: "No match arm matched",
}

_SCALARS = (TypeKind.INT, TypeKind.FLOAT, TypeKind.BOOL)

I64 = ir.IntType(64)
I32 = ir.IntType(32)
I8 = ir.IntType(8)
I1 = ir.IntType(1)
F64 = ir.DoubleType()

_CTYPES = {
	TypeKind.INT: ctypes.c_int64,
	TypeKind.FLOAT: ctypes.c_double,
	TypeKind.BOOL: ctypes.c_uint8,
}

_ICMP = {
	BinaryOp.LT: "<",
	BinaryOp.LE: "<=",
	BinaryOp.GT: ">",
	BinaryOp.GE: ">=",
	BinaryOp.EQ: "==",
	BinaryOp.NE: "!=",
}

_target_lock = threading.Lock()
_target_machine: Optional["llvm.TargetMachine"] = None


def _machine() -> "llvm.TargetMachine":
	global _target_machine
	with _target_lock:
		if _target_machine is None:
			llvm.initialize_native_target()
			llvm.initialize_native_asmprinter()
			target = llvm.Target.from_default_triple()
			_target_machine = target.create_target_machine()
		return _target_machine


def _llvm_type(kind: TypeKind) -> ir.Type:
	if kind is TypeKind.INT:
		return I64
	if kind is TypeKind.FLOAT:
		return F64
	return I1


def _abi_type(kind: TypeKind) -> ir.Type:
	return I8 if kind is TypeKind.BOOL else _llvm_type(kind)


def shape_supported(shape: ShapeType) -> bool:
	return shape.kind in _SCALARS


# Eligibility

def ineligibility(fn: MFunction, report: RefineReport) -> Optional[str]:
	"""Why `fn` cannot use the LLVM kernel under `report`, or None if it can."""
	inference = report.inference
	for shape in report.shape.args:
		if not shape_supported(shape):
			return f"parameter shape {shape} is not scalar"
	if not shape_supported(inference.returns):
		return f"return shape {inference.returns} is not scalar"
	for site in report.retained_sites:
		if site.label.startswith("let "):
			return f"{site.label} keeps a runtime ghost check"
	checker = _EligibilityWalk(report)
	try:
		checker.block(fn.body, value=not _ends_in_return(fn.body))
	except _Ineligible as reason:
		return str(reason)
	return None


def _ends_in_return(block: MBlock) -> bool:
	return bool(block.statements) and isinstance(block.statements[-1], MReturn)


class _Ineligible(Exception):
	pass


class _EligibilityWalk:
	def __init__(self, report: RefineReport) -> None:
		self.inference = report.inference

	def _scalar(self, expr: MExpr) -> None:
		shape = self.inference.type_of(expr)
		if shape.kind not in _SCALARS:
			raise _Ineligible(f"{type(expr).__name__} at {expr.span} has shape {shape}")

	def block(self, block: MBlock, value: bool) -> None:
		for i, stmt in enumerate(block.statements):
			last = i == len(block.statements) - 1
			self.stmt(stmt, value=value and last)
		if value and not isinstance(block.tail, MExpr):
			raise _Ineligible(f"block at {block.span} yields no value")

	def stmt(self, stmt: MStmt, value: bool) -> None:
		if isinstance(stmt, MExprStmt):
			self.expr(stmt.expr, value=value)
		elif isinstance(stmt, (MLet, MAssign)):
			self.expr(stmt.value, value=True)
		elif isinstance(stmt, MReturn):
			if stmt.value is None:
				raise _Ineligible("bare return yields Unit")
			self.expr(stmt.value, value=True)
		else:
			raise _Ineligible(f"{type(stmt).__name__} is not supported natively")

	def expr(self, expr: MExpr, value: bool) -> None:
		if isinstance(expr, MIf):
			if value and expr.else_block is None:
				raise _Ineligible(f"if without else at {expr.span} used as a value")
			self.expr(expr.cond, value=True)
			self.block(expr.then_block, value=value)
			if expr.else_block is not None:
				self.block(expr.else_block, value=value)
		elif isinstance(expr, MMatch):
			self.expr(expr.subject, value=True)
			for arm in expr.arms:
				if not isinstance(arm.pattern, (MWildcard, MBindPattern, MLiteralPattern, MRangePattern)):
					raise _Ineligible(f"pattern {type(arm.pattern).__name__} is not supported natively")
				if isinstance(arm.pattern, MLiteralPattern) and not isinstance(arm.pattern.value, (int, float)):
					raise _Ineligible("non-scalar literal pattern")
				self.expr(arm.body, value=value)
		elif isinstance(expr, MBlockExpr):
			self.block(expr.block, value=value)
		elif isinstance(expr, MLiteral):
			if not isinstance(expr.value, (int, float)):
				raise _Ineligible("non-scalar literal")
		elif isinstance(expr, MBinary):
			self.expr(expr.left, value=True)
			self.expr(expr.right, value=True)
			if expr.op.is_comparison:
				for side in (expr.left, expr.right):
					if not self.inference.type_of(side).kind.is_numeric:
						raise _Ineligible(f"ordering comparison on {self.inference.type_of(side)}")
		elif isinstance(expr, (MUnary, MClaim)):
			self.expr(expr.operand, value=True)
		elif not isinstance(expr, MVar):
			raise _Ineligible(f"{type(expr).__name__} is not supported natively")
		if value:
			self._scalar(expr)


# Code generation

class _Codegen:
	def __init__(self, fn: MFunction, report: RefineReport, module: ir.Module, symbol: str) -> None:
		self.fn = fn
		self.inference = report.inference
		kinds = [s.kind for s in report.shape.args]
		self.ret_kind = report.inference.returns.kind
		fnty = ir.FunctionType(I32, [_abi_type(k) for k in kinds] + [_abi_type(self.ret_kind).as_pointer()])
		self.func = ir.Function(module, fnty, name=symbol)
		entry = self.func.append_basic_block("entry")
		self.alloca_builder = ir.IRBuilder(entry)
		body = self.func.append_basic_block("body")
		self.builder = ir.IRBuilder(body)
		self.scopes: List[Dict[str, Tuple[ir.AllocaInstr, TypeKind]]] = [{}]
		self.out = self.func.args[-1]
		for param, kind, arg in zip(fn.params, kinds, self.func.args):
			arg.name = param.name
			value = self.builder.trunc(arg, I1) if kind is TypeKind.BOOL else arg
			self._bind(param.name, kind, value)

	def emit(self) -> ir.Function:
		b = self.builder
		value = self._block(self.fn.body, value=not _ends_in_return(self.fn.body))
		if not b.block.is_terminated:
			if value is None:
				b.unreachable()
			else:
				self._return(value, self._kind_of_tail(self.fn.body))
		self.alloca_builder.branch(self.func.basic_blocks[1])
		return self.func

	# Helpers

	def _kind(self, expr: MExpr) -> TypeKind:
		return self.inference.type_of(expr).kind

	def _kind_of_tail(self, block: MBlock) -> TypeKind:
		tail = block.tail
		if tail is None:
			raise AssertionError("value block without a tail expression")
		return self._kind(tail)

	def _bind(self, name: str, kind: TypeKind, value: ir.Value) -> None:
		slot = self.alloca_builder.alloca(_llvm_type(kind), name=name)
		self.builder.store(value, slot)
		self.scopes[-1][name] = (slot, kind)

	def _lookup(self, name: str) -> Tuple[ir.AllocaInstr, TypeKind]:
		for scope in reversed(self.scopes):
			if name in scope:
				return scope[name]
		raise AssertionError(f"{self.fn.name}: unresolved name '{name}' reached the LLVM backend")

	def _fresh_block(self, name: str) -> ir.Block:
		return self.func.append_basic_block(name)

	def _coerce(self, value: ir.Value, source: TypeKind, target: TypeKind) -> ir.Value:
		if source is target:
			return value
		if source is TypeKind.INT and target is TypeKind.FLOAT:
			return self.builder.sitofp(value, F64)
		raise AssertionError(f"cannot coerce {source.value} to {target.value}")

	def _return(self, value: ir.Value, kind: TypeKind) -> None:
		b = self.builder
		value = self._coerce(value, kind, self.ret_kind) if kind is not self.ret_kind else value
		if self.ret_kind is TypeKind.BOOL:
			value = b.zext(value, I8)
		b.store(value, self.out)
		b.ret(ir.Constant(I32, STATUS_OK))

	def _fail(self, status: int) -> None:
		self.builder.ret(ir.Constant(I32, status))

	def _guard_nonzero(self, divisor: ir.Value, kind: TypeKind, status: int) -> None:
		b = self.builder
		if kind is TypeKind.INT:
			is_zero = b.icmp_signed("==", divisor, ir.Constant(I64, 0))
		else:
			is_zero = b.fcmp_ordered("==", divisor, ir.Constant(F64, 0.0))
		fail = self._fresh_block("fault")
		ok = self._fresh_block("nonzero")
		b.cbranch(is_zero, fail, ok)
		b.position_at_end(fail)
		self._fail(status)
		b.position_at_end(ok)

	def _truth(self, value: ir.Value, kind: TypeKind) -> ir.Value:
		b = self.builder
		if kind is TypeKind.BOOL:
			return value
		if kind is TypeKind.INT:
			return b.icmp_signed("!=", value, ir.Constant(I64, 0))
		return b.fcmp_unordered("!=", value, ir.Constant(F64, 0.0))

	# Blocks and statements

	def _block(self, block: MBlock, value: bool) -> Optional[ir.Value]:
		self.scopes.append({})
		try:
			result = None
			for i, stmt in enumerate(block.statements):
				last = i == len(block.statements) - 1
				result = self._stmt(stmt, value=value and last)
			return result if value else None
		finally:
			self.scopes.pop()

	def _stmt(self, stmt: MStmt, value: bool) -> Optional[ir.Value]:
		b = self.builder
		if isinstance(stmt, MExprStmt):
			return self._expr(stmt.expr, value=value)
		if isinstance(stmt, MLet):
			kind = self._kind(stmt.value)
			self._bind(stmt.name, kind, self._expr(stmt.value))
		elif isinstance(stmt, MAssign):
			slot, kind = self._lookup(stmt.name)
			b.store(self._coerce(self._expr(stmt.value), self._kind(stmt.value), kind), slot)
		elif isinstance(stmt, MReturn):
			self._return(self._expr(stmt.value), self._kind(stmt.value))
			b.position_at_end(self._fresh_block("after_return"))
		else:
			raise AssertionError(f"unsupported statement {type(stmt).__name__}")
		return None

	# Expressions

	def _expr(self, expr: MExpr, value: bool = True) -> Optional[ir.Value]:
		b = self.builder
		if isinstance(expr, MLiteral):
			v = expr.value
			if isinstance(v, bool):
				return ir.Constant(I1, int(v))
			if isinstance(v, int):
				return ir.Constant(I64, v)
			return ir.Constant(F64, v)
		if isinstance(expr, MVar):
			slot, _ = self._lookup(expr.name)
			return b.load(slot, name=expr.name)
		if isinstance(expr, MClaim):
			return self._expr(expr.operand)
		if isinstance(expr, MUnary):
			operand = self._expr(expr.operand)
			kind = self._kind(expr.operand)
			if expr.op is UnaryOp.NOT:
				return b.not_(self._truth(operand, kind))
			if kind is TypeKind.INT:
				return b.sub(ir.Constant(I64, 0), operand)
			return b.fsub(ir.Constant(F64, -0.0), operand)
		if isinstance(expr, MBinary):
			return self._binary(expr)
		if isinstance(expr, MIf):
			return self._if(expr, value)
		if isinstance(expr, MMatch):
			return self._match(expr, value)
		if isinstance(expr, MBlockExpr):
			return self._block(expr.block, value)
		raise AssertionError(f"unsupported expression {type(expr).__name__}")

	def _binary(self, expr: MBinary) -> ir.Value:
		b = self.builder
		op = expr.op
		lk, rk = self._kind(expr.left), self._kind(expr.right)
		left = self._expr(expr.left)
		right = self._expr(expr.right)
		if op.is_equality and lk is not rk:
			# strict equality: different kinds never compare equal
			return ir.Constant(I1, int(op is BinaryOp.NE))
		if lk is TypeKind.BOOL and rk is TypeKind.BOOL:
			return b.icmp_unsigned(_ICMP[op], left, right)
		if lk is TypeKind.INT and rk is TypeKind.INT:
			if op in _ICMP:
				return b.icmp_signed(_ICMP[op], left, right)
			return self._int_arith(op, left, right)
		left = self._coerce(left, lk, TypeKind.FLOAT)
		right = self._coerce(right, rk, TypeKind.FLOAT)
		if op is BinaryOp.NE:
			return b.fcmp_unordered("!=", left, right)
		if op in _ICMP:
			return b.fcmp_ordered(_ICMP[op], left, right)
		if op is BinaryOp.ADD:
			return b.fadd(left, right)
		if op is BinaryOp.SUB:
			return b.fsub(left, right)
		if op is BinaryOp.MUL:
			return b.fmul(left, right)
		if op is BinaryOp.DIV:
			self._guard_nonzero(right, TypeKind.FLOAT, STATUS_DIV_ZERO)
			return b.fdiv(left, right)
		raise AssertionError(f"unsupported float operator {op.value}")

	def _int_arith(self, op: BinaryOp, left: ir.Value, right: ir.Value) -> ir.Value:
		b = self.builder
		if op is BinaryOp.ADD:
			return b.add(left, right)
		if op is BinaryOp.SUB:
			return b.sub(left, right)
		if op is BinaryOp.MUL:
			return b.mul(left, right)
		status = STATUS_DIV_ZERO if op is BinaryOp.DIV else STATUS_MOD_ZERO
		self._guard_nonzero(right, TypeKind.INT, status)
		# sdiv/srem of I64_MIN by -1 is undefined in LLVM; the wrapped results are -a and 0
		minus_one = b.icmp_signed("==", right, ir.Constant(I64, -1))
		divisor = b.select(minus_one, ir.Constant(I64, 1), right)
		if op is BinaryOp.DIV:
			return b.select(minus_one, b.sub(ir.Constant(I64, 0), left), b.sdiv(left, divisor))
		return b.select(minus_one, ir.Constant(I64, 0), b.srem(left, divisor))

	def _result_slot(self, expr: MExpr, value: bool) -> Optional[Tuple[ir.AllocaInstr, TypeKind]]:
		if not value:
			return None
		kind = self._kind(expr)
		return self.alloca_builder.alloca(_llvm_type(kind), name="result"), kind

	def _store_result(self, slot, produced: Optional[ir.Value], source: MExpr) -> None:
		if slot is None or self.builder.block.is_terminated or produced is None:
			return
		alloca, kind = slot
		self.builder.store(self._coerce(produced, self._kind(source), kind), alloca)

	def _if(self, expr: MIf, value: bool) -> Optional[ir.Value]:
		b = self.builder
		cond = self._truth(self._expr(expr.cond), self._kind(expr.cond))
		slot = self._result_slot(expr, value)
		then_bb = self._fresh_block("then")
		else_bb = self._fresh_block("else")
		merge_bb = self._fresh_block("endif")
		b.cbranch(cond, then_bb, else_bb)

		b.position_at_end(then_bb)
		produced = self._block(expr.then_block, value)
		if value:
			self._store_result(slot, produced, expr.then_block.tail)
		if not b.block.is_terminated:
			b.branch(merge_bb)

		b.position_at_end(else_bb)
		if expr.else_block is not None:
			produced = self._block(expr.else_block, value)
			if value:
				self._store_result(slot, produced, expr.else_block.tail)
		if not b.block.is_terminated:
			b.branch(merge_bb)

		b.position_at_end(merge_bb)
		return b.load(slot[0]) if slot is not None else None

	def _match(self, expr: MMatch, value: bool) -> Optional[ir.Value]:
		b = self.builder
		subject = self._expr(expr.subject)
		skind = self._kind(expr.subject)
		slot = self._result_slot(expr, value)
		merge_bb = self._fresh_block("endmatch")
		for arm in expr.arms:
			hit = self._pattern_test(arm.pattern, subject, skind)
			arm_bb = self._fresh_block("arm")
			next_bb = self._fresh_block("next_arm")
			b.cbranch(hit, arm_bb, next_bb)
			b.position_at_end(arm_bb)
			self.scopes.append({})
			try:
				if isinstance(arm.pattern, MBindPattern):
					self._bind(arm.pattern.name, skind, subject)
				produced = self._expr(arm.body, value)
				self._store_result(slot, produced, arm.body)
			finally:
				self.scopes.pop()
			if not b.block.is_terminated:
				b.branch(merge_bb)
			b.position_at_end(next_bb)
		self._fail(STATUS_NO_MATCH)
		b.position_at_end(merge_bb)
		return b.load(slot[0]) if slot is not None else None

	def _pattern_test(self, pattern, subject: ir.Value, kind: TypeKind) -> ir.Value:
		b = self.builder
		if isinstance(pattern, (MWildcard, MBindPattern)):
			return ir.Constant(I1, 1)
		if isinstance(pattern, MRangePattern):
			if kind is not TypeKind.INT:
				return ir.Constant(I1, 0)
			lo = b.icmp_signed(">=", subject, ir.Constant(I64, pattern.lo))
			hi = b.icmp_signed("<=", subject, ir.Constant(I64, pattern.hi))
			return b.and_(lo, hi)
		literal = pattern.value
		if isinstance(literal, bool):
			if kind is not TypeKind.BOOL:
				return ir.Constant(I1, 0)
			return b.icmp_unsigned("==", subject, ir.Constant(I1, int(literal)))
		if isinstance(literal, int):
			if kind is not TypeKind.INT:
				return ir.Constant(I1, 0)
			return b.icmp_signed("==", subject, ir.Constant(I64, literal))
		if kind is not TypeKind.FLOAT:
			return ir.Constant(I1, 0)
		return b.fcmp_ordered("==", subject, ir.Constant(F64, literal))


# Kernel

class LLVMKernel:
	kind = "llvm"

	def __init__(
		self,
		fn: MFunction,
		report: RefineReport,
		ghosts: GhostResolver,
		return_check: Optional[MTypeRef] = None,
	) -> None:
		self.fn = fn
		self.ghosts = ghosts
		self.return_check = return_check
		self.param_kinds = [s.kind for s in report.shape.args]
		self.ret_kind = report.inference.returns.kind
		self.symbol = f"morph_{fn.name}"
		module = ir.Module(name=f"morph.{fn.name}")
		module.triple = llvm.get_default_triple()
		_Codegen(fn, report, module, self.symbol).emit()
		self.ir_text = str(module)
		machine = _machine()
		with _target_lock:
			parsed = llvm.parse_assembly(self.ir_text)
			parsed.verify()
			self._engine = llvm.create_mcjit_compiler(parsed, machine)
			self._engine.finalize_object()
			self._engine.run_static_constructors()
			address = self._engine.get_function_address(self.symbol)
		ret_ctype = _CTYPES[self.ret_kind]
		proto = ctypes.CFUNCTYPE(
			ctypes.c_int32, *[_CTYPES[k] for k in self.param_kinds], ctypes.POINTER(ret_ctype)
		)
		self._cfunc = proto(address)
		self._ret_ctype = ret_ctype
		logger.debug("compiled LLVM kernel %s (%d bytes of IR)", self.symbol, len(self.ir_text))

	def __call__(self, args: List[RValue], ctx: ExecContext) -> RValue:
		out = self._ret_ctype()
		status = self._cfunc(*[int(a) if isinstance(a, bool) else a for a in args], ctypes.byref(out))
		if status != STATUS_OK:
			raise MorphRuntimeError(_STATUS_MESSAGES.get(status, f"native fault {status}"), self.fn.span)
		if self.ret_kind is TypeKind.BOOL:
			result: RValue = bool(out.value)
		elif self.ret_kind is TypeKind.INT:
			result = int(out.value)
		else:
			result = float(out.value)
		if self.return_check is not None:
			self.ghosts.validate_annotation(self.return_check, payload_of(result, ctx.arena))
		return result


def compile_llvm(
	fn: MFunction,
	report: RefineReport,
	ghosts: GhostResolver,
	return_check: Optional[MTypeRef] = None,
) -> LLVMKernel:
	return LLVMKernel(fn, report, ghosts, return_check)


__all__ = [
	"LLVMKernel",
	"STATUS_DIV_ZERO",
	"STATUS_MOD_ZERO",
	"STATUS_NO_MATCH",
	"STATUS_OK",
	"compile_llvm",
	"ineligibility",
	"shape_supported",
]
