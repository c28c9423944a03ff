# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Execution forms: the tagged variant a function's context points at.

	ExecutionForm = InterpretedForm | NativeForm

The form is swapped as a whole (one attribute store), so a caller that read
the old form finishes its call on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Protocol, Tuple, Union

from morph.core.types_core import TypeShape
from morph.ghost.resolver import GhostResolver, PhysicalLayout
from morph.interp.interpreter import ExecContext, Interpreter
from morph.interp.values import RValue, payload_of, shape_of
from morph.ir.nodes import MTypeRef
from morph.pulse.arena import PulseArena


class Kernel(Protocol):
	"""Compiled body of a hardened function. Runs one call under `ctx`."""

	kind: str

	def __call__(self, args: List[RValue], ctx: ExecContext) -> RValue:
		...


@dataclass(frozen=True)
class InterpretedForm:
	interpreter: Interpreter

	kind = "interpreted"

	def run(self, args: List[RValue], ctx: ExecContext) -> RValue:
		return self.interpreter.run(args, ctx)


@dataclass(frozen=True)
class NativeForm:
	"""
	A kernel monomorphized to `shape` plus its guard prologue.

	`param_checks` lists (parameter index, annotation) pairs whose ghost
	predicates could not be erased; the guard validates them before entry.
	"""

	shape: TypeShape
	kernel: Kernel
	param_checks: Tuple[Tuple[int, MTypeRef], ...] = ()
	layouts: Dict[str, PhysicalLayout] = field(default_factory=dict)

	@property
	def kind(self) -> str:
		return self.kernel.kind

	def matches(self, args: List[RValue], arena: PulseArena) -> bool:
		if len(args) != len(self.shape.args):
			return False
		return all(shape_of(a, arena) == s for a, s in zip(args, self.shape.args))

	def check_ghosts(self, args: List[RValue], arena: PulseArena, ghosts: GhostResolver) -> None:
		for index, ref in self.param_checks:
			ghosts.validate_annotation(ref, payload_of(args[index], arena))

	def run(self, args: List[RValue], ctx: ExecContext) -> RValue:
		return self.kernel(args, ctx)


ExecutionForm = Union[InterpretedForm, NativeForm]


__all__ = ["ExecutionForm", "InterpretedForm", "Kernel", "NativeForm"]
