# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Builtin functions available to every Morph program.

  log(a, b, ...)        space-joined, newline-terminated output
  print(a, b, ...)      space-joined output without a newline
  len(x)                characters of a String, items of a List, fields of a Record
  range(end)            [0, 1, ..., end - 1]
  range(start, end)     [start, ..., end - 1]
  range(start, end, s)  every s-th value; s must be positive

A user function with the same name shadows the builtin.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, TextIO

from morph.core.errors import MorphRuntimeError
from morph.core.span import Span
from morph.pulse.arena import PulseArena

from .values import RValue, display, kind_of, payload_of, type_error

_MAX_RANGE = 10_000_000


class BuiltinContext:
	"""What a builtin may touch: the caller's arena and the output stream."""

	__slots__ = ("arena", "stdout", "span")

	def __init__(self, arena: PulseArena, stdout: TextIO, span: Optional[Span] = None) -> None:
		self.arena = arena
		self.stdout = stdout
		self.span = span


Builtin = Callable[[List[RValue], BuiltinContext], RValue]


def _arity(args: List[RValue], expected: int, ctx: BuiltinContext) -> None:
	if len(args) != expected:
		raise MorphRuntimeError(f"Expected {expected} arguments, got {len(args)}", ctx.span)


def _log(args: List[RValue], ctx: BuiltinContext) -> RValue:
	ctx.stdout.write(" ".join(display(a, ctx.arena) for a in args) + "\n")
	return None


def _print(args: List[RValue], ctx: BuiltinContext) -> RValue:
	ctx.stdout.write(" ".join(display(a, ctx.arena) for a in args))
	return None


def _len(args: List[RValue], ctx: BuiltinContext) -> RValue:
	_arity(args, 1, ctx)
	data = payload_of(args[0], ctx.arena)
	if isinstance(data, (str, list, dict)):
		return len(data)
	raise type_error("len() requires a list or string", ctx.span)


def _as_int(value: RValue, ctx: BuiltinContext) -> int:
	if isinstance(value, int) and not isinstance(value, bool):
		return value
	raise type_error(f"Expected Int, got {kind_of(value, ctx.arena).value}", ctx.span)


def _range(args: List[RValue], ctx: BuiltinContext) -> RValue:
	if not 1 <= len(args) <= 3:
		raise MorphRuntimeError(f"Expected 3 arguments, got {len(args)}", ctx.span)
	ints = [_as_int(a, ctx) for a in args]
	if len(ints) == 1:
		start, end, step = 0, ints[0], 1
	elif len(ints) == 2:
		start, end, step = ints[0], ints[1], 1
	else:
		start, end, step = ints
	if step <= 0:
		raise MorphRuntimeError("range() step must be positive", ctx.span)
	items = range(start, end, step)
	if len(items) > _MAX_RANGE:
		raise MorphRuntimeError(f"range() of {len(items)} items exceeds the limit of {_MAX_RANGE}", ctx.span)
	return ctx.arena.alloc(list(items))


BUILTINS: Dict[str, Builtin] = {
	"log": _log,
	"print": _print,
	"len": _len,
	"range": _range,
}


def is_builtin(name: str) -> bool:
	return name in BUILTINS


__all__ = ["BUILTINS", "Builtin", "BuiltinContext", "is_builtin"]
