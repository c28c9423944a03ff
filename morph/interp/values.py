# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Runtime value operations shared by every execution form.

Representation:
  Int    -> Python int, kept in the signed 64-bit range
  Float  -> Python float
  Bool   -> Python bool (always tested before int)
  Unit   -> None
  String, List, Record -> PulseRef into the current stack's arena; the
		   payload is plain, immutable data (str / list / dict of plain data)

Reading an element or a field lifts it into the current zone: scalars are
returned as is, heap payloads become a new value owned by the innermost open
zone. Payloads are never mutated after allocation, so a lifted value may
share its payload object with the source.

The interpreter and the closure kernel call the same functions here; that is
what keeps interpreted and hardened results identical.
"""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from morph.core.errors import MorphRuntimeError
from morph.core.span import Span
from morph.core.types_core import ShapeType, TypeKind, shape_of_plain
from morph.ir.nodes import BinaryOp, UnaryOp
from morph.pulse.arena import PulseArena, PulseRef

RValue = Union[int, float, bool, None, PulseRef]

I64_MIN = -(1 << 63)
I64_MAX = (1 << 63) - 1
_MASK = (1 << 64) - 1


def wrap_i64(value: int) -> int:
	value &= _MASK
	return value - (1 << 64) if value >> 63 else value


def type_error(message: str, span: Optional[Span] = None) -> MorphRuntimeError:
	return MorphRuntimeError(f"Type error: {message}", span)


def plain_kind(value: Any) -> TypeKind:
	if isinstance(value, bool):
		return TypeKind.BOOL
	if isinstance(value, int):
		return TypeKind.INT
	if isinstance(value, float):
		return TypeKind.FLOAT
	if value is None:
		return TypeKind.UNIT
	if isinstance(value, str):
		return TypeKind.STRING
	if isinstance(value, list):
		return TypeKind.LIST
	if isinstance(value, dict):
		return TypeKind.RECORD
	raise TypeError(f"not a Morph value: {value!r}")


def kind_of(value: RValue, arena: PulseArena) -> TypeKind:
	if isinstance(value, PulseRef):
		return plain_kind(arena.payload(value))
	return plain_kind(value)


def shape_of(value: RValue, arena: PulseArena) -> ShapeType:
	if isinstance(value, PulseRef):
		return shape_of_plain(arena.payload(value))
	return shape_of_plain(value)


def is_heap(value: Any) -> bool:
	return isinstance(value, PulseRef)


# Conversions between plain data and runtime values

def normalize_plain(value: Any) -> Any:
	"""
	Validate host data and convert it to the plain payload form.

	Tuples become lists, record keys must be strings, ints wrap to i64.
	"""
	if isinstance(value, bool) or value is None or isinstance(value, (float, str)):
		return value
	if isinstance(value, int):
		return wrap_i64(value)
	if isinstance(value, (list, tuple)):
		return [normalize_plain(v) for v in value]
	if isinstance(value, dict):
		out: Dict[str, Any] = {}
		for key, item in value.items():
			if not isinstance(key, str):
				raise TypeError(f"record keys must be strings, got {key!r}")
			out[key] = normalize_plain(item)
		return out
	raise TypeError(f"cannot pass {type(value).__name__} to Morph code")


def lift(plain: Any, arena: PulseArena, zone: Optional[int] = None) -> RValue:
	"""Turn a plain payload into a runtime value owned by `zone` (default: current)."""
	if isinstance(plain, (str, list, dict)):
		return arena.alloc(plain, zone)
	return plain


def from_host(value: Any, arena: PulseArena, zone: Optional[int] = None) -> RValue:
	return lift(normalize_plain(value), arena, zone)


def payload_of(value: RValue, arena: PulseArena) -> Any:
	"""The plain form of a runtime value (shares heap payloads; do not mutate)."""
	if isinstance(value, PulseRef):
		return arena.payload(value)
	return value


def _copy_plain(value: Any) -> Any:
	if isinstance(value, list):
		return [_copy_plain(v) for v in value]
	if isinstance(value, dict):
		return {k: _copy_plain(v) for k, v in value.items()}
	return value


def to_host(value: RValue, arena: PulseArena) -> Any:
	"""Detached plain copy of a runtime value, safe to hand to the host."""
	return _copy_plain(payload_of(value, arena))


# Display

def format_float(value: float) -> str:
	"""Positional float formatting: `1.0` prints as `1`, never an exponent."""
	if math.isnan(value):
		return "NaN"
	if math.isinf(value):
		return "inf" if value > 0 else "-inf"
	text = format(Decimal(repr(value)), "f")
	if "." in text:
		text = text.rstrip("0").rstrip(".")
	return text


def display_plain(value: Any) -> str:
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, int):
		return str(value)
	if isinstance(value, float):
		return format_float(value)
	if value is None:
		return "()"
	if isinstance(value, str):
		return value
	if isinstance(value, list):
		return "[" + ", ".join(display_plain(v) for v in value) + "]"
	if isinstance(value, dict):
		return "{ " + ", ".join(f"{k}: {display_plain(v)}" for k, v in value.items()) + " }"
	raise TypeError(f"not a Morph value: {value!r}")


def display(value: RValue, arena: PulseArena) -> str:
	return display_plain(payload_of(value, arena))


# Predicates

def truthy(value: RValue, arena: PulseArena) -> bool:
	if isinstance(value, bool):
		return value
	if value is None:
		return False
	if isinstance(value, (int, float)):
		return value != 0
	return len(arena.payload(value)) > 0


def plain_equal(a: Any, b: Any) -> bool:
	"""Structural equality with strict kinds: `1 == 1.0` and `1 == true` are false."""
	ka, kb = plain_kind(a), plain_kind(b)
	if ka is not kb:
		return False
	if ka is TypeKind.LIST:
		return len(a) == len(b) and all(plain_equal(x, y) for x, y in zip(a, b))
	if ka is TypeKind.RECORD:
		return a.keys() == b.keys() and all(plain_equal(a[k], b[k]) for k in a)
	return a == b


def values_equal(a: RValue, b: RValue, arena: PulseArena) -> bool:
	if isinstance(a, PulseRef) and isinstance(b, PulseRef) and a == b:
		return True
	return plain_equal(payload_of(a, arena), payload_of(b, arena))


def matches_literal(value: RValue, literal: Any, arena: PulseArena) -> bool:
	return plain_equal(payload_of(value, arena), literal)


# Arithmetic

def int_div(a: int, b: int, span: Optional[Span] = None) -> int:
	"""Division truncating toward zero; `I64_MIN / -1` wraps."""
	if b == 0:
		raise MorphRuntimeError("Division by zero", span)
	q = abs(a) // abs(b)
	if (a < 0) != (b < 0):
		q = -q
	return wrap_i64(q)


def int_rem(a: int, b: int, span: Optional[Span] = None) -> int:
	"""Remainder with the sign of the dividend."""
	if b == 0:
		raise MorphRuntimeError("Modulo by zero", span)
	q = abs(a) // abs(b)
	if (a < 0) != (b < 0):
		q = -q
	return wrap_i64(a - b * q)


def float_div(a: float, b: float, span: Optional[Span] = None) -> float:
	if b == 0.0:
		raise MorphRuntimeError("Division by zero", span)
	return a / b


def _is_int(v: Any) -> bool:
	return isinstance(v, int) and not isinstance(v, bool)


def _is_num(v: Any) -> bool:
	return isinstance(v, (int, float)) and not isinstance(v, bool)


_VERBS = {
	BinaryOp.ADD: "add",
	BinaryOp.SUB: "subtract",
	BinaryOp.MUL: "multiply",
	BinaryOp.DIV: "divide",
	BinaryOp.MOD: "modulo",
}


def _kind_name(value: Any) -> str:
	return plain_kind(value).value


def arith_plain(op: BinaryOp, a: Any, b: Any, span: Optional[Span] = None) -> Any:
	"""Arithmetic on plain operands; returns a plain result."""
	if _is_int(a) and _is_int(b):
		if op is BinaryOp.ADD:
			return wrap_i64(a + b)
		if op is BinaryOp.SUB:
			return wrap_i64(a - b)
		if op is BinaryOp.MUL:
			return wrap_i64(a * b)
		if op is BinaryOp.DIV:
			return int_div(a, b, span)
		return int_rem(a, b, span)
	if _is_num(a) and _is_num(b) and op is not BinaryOp.MOD:
		fa, fb = float(a), float(b)
		if op is BinaryOp.ADD:
			return fa + fb
		if op is BinaryOp.SUB:
			return fa - fb
		if op is BinaryOp.MUL:
			return fa * fb
		return float_div(fa, fb, span)
	if op is BinaryOp.ADD:
		if isinstance(a, str) and isinstance(b, str):
			return a + b
		if isinstance(a, list) and isinstance(b, list):
			return a + b
	raise type_error(f"Cannot {_VERBS[op]} {_kind_name(a)} and {_kind_name(b)}", span)


def compare_plain(op: BinaryOp, a: Any, b: Any, span: Optional[Span] = None) -> bool:
	if _is_num(a) and _is_num(b):
		if _is_int(a) and _is_int(b):
			x, y = a, b
		else:
			x, y = float(a), float(b)
	elif isinstance(a, str) and isinstance(b, str):
		x, y = a, b
	else:
		raise type_error(f"Cannot compare {_kind_name(a)} and {_kind_name(b)}", span)
	if op is BinaryOp.LT:
		return x < y
	if op is BinaryOp.LE:
		return x <= y
	if op is BinaryOp.GT:
		return x > y
	return x >= y


def binary(op: BinaryOp, left: RValue, right: RValue, arena: PulseArena, span: Optional[Span] = None) -> RValue:
	"""Evaluate `left op right`; heap results are owned by the current zone."""
	if op is BinaryOp.EQ:
		return values_equal(left, right, arena)
	if op is BinaryOp.NE:
		return not values_equal(left, right, arena)
	a, b = payload_of(left, arena), payload_of(right, arena)
	if op.is_comparison:
		return compare_plain(op, a, b, span)
	return lift(arith_plain(op, a, b, span), arena)


def unary(op: UnaryOp, operand: RValue, arena: PulseArena, span: Optional[Span] = None) -> RValue:
	if op is UnaryOp.NOT:
		return not truthy(operand, arena)
	if _is_int(operand):
		return wrap_i64(-operand)
	if isinstance(operand, float):
		return -operand
	raise type_error(f"Cannot negate {kind_of(operand, arena).value}", span)


# Access

def index(target: RValue, idx: RValue, arena: PulseArena, span: Optional[Span] = None) -> RValue:
	data = payload_of(target, arena)
	if not _is_int(idx):
		raise type_error(f"Expected Int index, got {kind_of(idx, arena).value}", span)
	if isinstance(data, (list, str)):
		if idx < 0 or idx >= len(data):
			raise MorphRuntimeError(f"Index {idx} out of bounds for list of length {len(data)}", span)
		return lift(data[idx], arena)
	raise type_error("Not indexable", span)


def field(target: RValue, name: str, arena: PulseArena, span: Optional[Span] = None) -> RValue:
	data = payload_of(target, arena)
	if not isinstance(data, dict):
		raise type_error("Not a record", span)
	if name not in data:
		raise MorphRuntimeError(f"Field '{name}' not found", span)
	return lift(data[name], arena)


def _replace(data: Any, path: List[Any], new: Any, span: Optional[Span]) -> Any:
	step, rest = path[0], path[1:]
	if isinstance(step, str):
		if not isinstance(data, dict):
			raise type_error("Not a record", span)
		if step not in data:
			raise MorphRuntimeError(f"Field '{step}' not found", span)
		updated: Any = dict(data)
	else:
		if isinstance(data, str):
			raise type_error("Cannot assign into String", span)
		if not isinstance(data, list):
			raise type_error("Not indexable", span)
		if step < 0 or step >= len(data):
			raise MorphRuntimeError(f"Index {step} out of bounds for list of length {len(data)}", span)
		updated = list(data)
	updated[step] = _replace(data[step], rest, new, span) if rest else new
	return updated


def store(
	target: RValue,
	path: List[Union[str, RValue]],
	value: RValue,
	arena: PulseArena,
	zone: Optional[int] = None,
	span: Optional[Span] = None,
) -> PulseRef:
	"""
	Copy of `target` with the element at `path` replaced by `value`, owned
	by `zone`. `path` holds field names and evaluated Int indexes; the
	payload of `target` itself is left untouched.
	"""
	for step in path:
		if not isinstance(step, str) and not _is_int(step):
			raise type_error(f"Expected Int index, got {kind_of(step, arena).value}", span)
	updated = _replace(payload_of(target, arena), list(path), payload_of(value, arena), span)
	return arena.alloc(updated, zone)


def iteration_items(value: RValue, arena: PulseArena, span: Optional[Span] = None) -> List[Any]:
	"""Plain items a `for` loop walks over (list elements or characters)."""
	data = payload_of(value, arena)
	if isinstance(data, list):
		return list(data)
	if isinstance(data, str):
		return list(data)
	raise type_error(f"Cannot iterate over {plain_kind(data).value}", span)


def build_list(items: List[RValue], arena: PulseArena) -> PulseRef:
	return arena.alloc([payload_of(v, arena) for v in items])


def build_record(fields: List[tuple], arena: PulseArena) -> PulseRef:
	return arena.alloc({name: payload_of(v, arena) for name, v in fields})


__all__ = [
	"RValue",
	"I64_MIN",
	"I64_MAX",
	"wrap_i64",
	"type_error",
	"plain_kind",
	"kind_of",
	"shape_of",
	"is_heap",
	"normalize_plain",
	"lift",
	"from_host",
	"payload_of",
	"to_host",
	"format_float",
	"display_plain",
	"display",
	"truthy",
	"plain_equal",
	"values_equal",
	"matches_literal",
	"int_div",
	"int_rem",
	"float_div",
	"arith_plain",
	"compare_plain",
	"binary",
	"unary",
	"index",
	"field",
	"store",
	"iteration_items",
	"build_list",
	"build_record",
]
