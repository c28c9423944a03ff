# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
MorphEngine: the host-facing entry point.

	engine = MorphEngine(EngineConfig(t1=10, t2=20))
	engine.load_source(source)
	engine.invoke("add", [1, 2])        # -> 3, whatever the stage

Every call, from the host or from Morph code, goes through `_call`: the
invocation is recorded in the function's profile (which may promote it and
trigger hardening), then the current execution form runs it. A native form
whose guard rejects the call's TypeShape is deoptimized on the spot and the
call is interpreted instead.

Each host `invoke` runs on a fresh Pulse arena; a `CallStack` keeps one
arena across calls so results can stay in the engine as handles and be
delegated to a worker.
"""

from __future__ import annotations

import logging
import sys
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TextIO, Union

from morph.core.config import EngineConfig
from morph.core.diagnostics import Diagnostic, DiagnosticListener, DiagnosticSink
from morph.core.errors import (
	CapabilityDenied,
	GhostValidationError,
	MorphRuntimeError,
	MorphSyntaxError,
	UnknownFunctionError,
	UnknownTypeError,
)
from morph.core.span import Span
from morph.core.types_core import TypeShape, TypeTable
from morph.ghost.resolver import GhostResolver, GhostType
from morph.harden.controller import HardeningController
from morph.harden.forms import ExecutionForm, InterpretedForm, NativeForm
from morph.interp import values as V
from morph.interp.builtins import BUILTINS, BuiltinContext
from morph.interp.interpreter import ExecContext, Interpreter, check_arity
from morph.interp.values import RValue
from morph.ir.nodes import MFunction, MModule, MTypeDecl, MTypeRef, walk
from morph.parser import parse_module
from morph.profile import persist
from morph.profile.profiler import InvocationEvent, Stage, StageTransition
from morph.pulse.arena import PulseArena, PulseRef
from morph.refine.analysis import RefineReport
from morph.registry import FunctionContext, FunctionRegistry

logger = logging.getLogger(__name__)

CapabilityCheck = Callable[[str], bool]

# Python frames used per Morph call level, with headroom
_FRAMES_PER_CALL = 40


class _Dispatcher:
	"""Resolves calls made by Morph code: user functions first, then builtins."""

	def __init__(self, engine: "MorphEngine") -> None:
		self.engine = engine

	def call(self, name: str, args: List[RValue], ctx: ExecContext, span: Span) -> RValue:
		fctx = self.engine.registry.find(name)
		if fctx is not None:
			return self.engine._call(fctx, args, ctx, span)
		builtin = BUILTINS.get(name)
		if builtin is None:
			raise UnknownFunctionError(name)
		return builtin(args, BuiltinContext(ctx.arena, ctx.stdout, span))


class CallStack:
	"""
	A host-held logical call stack with its own Pulse arena.

	Values returned by `invoke_ref` stay owned by the stack's root zone until
	read, delegated, or the stack is dropped.
	"""

	def __init__(self, engine: "MorphEngine", name: str) -> None:
		self.engine = engine
		self.arena = PulseArena(name)

	def alloc(self, value: Any) -> RValue:
		return V.from_host(value, self.arena)

	def read(self, value: RValue) -> Any:
		return V.to_host(value, self.arena)

	def invoke_ref(self, function_id: str, args: Sequence[Any]) -> RValue:
		fctx = self.engine.registry.get(function_id)
		values = [a if isinstance(a, PulseRef) else V.from_host(a, self.arena) for a in args]
		return self.engine._call_host(fctx, values, ExecContext(self.arena, self.engine.stdout))

	def delegate(self, function_id: str, args: Sequence[Any]) -> "Future[Any]":
		"""
		Run `function_id` on a worker with `args`.

		Handles among `args` are moved out of this stack before the worker
		starts; using them here afterwards raises OwnershipConflictError.
		The future resolves to the plain host result.
		"""
		engine = self.engine
		executor = engine._delegate_executor()
		fctx = engine.registry.get(function_id)
		if engine.capability_check is not None and not engine.capability_check(function_id):
			raise CapabilityDenied(f"delegation of '{function_id}' is not permitted")
		parcel = self.arena.move_out(a for a in args if isinstance(a, PulseRef))
		plain = [a for a in args if not isinstance(a, PulseRef)]
		layout = [isinstance(a, PulseRef) for a in args]

		def work() -> Any:
			arena = PulseArena(f"worker:{function_id}")
			moved = iter(arena.adopt(parcel))
			others = iter(plain)
			values = [next(moved) if is_ref else next(others) for is_ref in layout]
			result = engine._call_host(fctx, values, ExecContext(arena, engine.stdout))
			return V.to_host(result, arena)

		logger.debug("delegating %s with %d moved values", function_id, len(parcel.payloads))
		return executor.submit(work)


class MorphEngine:
	def __init__(
		self,
		config: Optional[EngineConfig] = None,
		capability_check: Optional[CapabilityCheck] = None,
		stdout: Optional[TextIO] = None,
	) -> None:
		self.config = config or EngineConfig()
		self.capability_check = capability_check
		self._stdout = stdout
		self.types = TypeTable()
		self.ghosts = GhostResolver(self.types)
		self.sink = DiagnosticSink(self.config.diagnostic_buffer)
		self.dispatcher = _Dispatcher(self)
		self.registry = FunctionRegistry(self.config, lambda fn: Interpreter(fn, self.dispatcher, self.ghosts))
		self.controller = HardeningController(self.config, self.registry, self.ghosts, self.dispatcher, self.sink)
		self._delegates: Optional[ThreadPoolExecutor] = None
		self._stacks = 0
		self._closed = False
		limit = self.config.max_call_depth * _FRAMES_PER_CALL + 1000
		if sys.getrecursionlimit() < limit:
			sys.setrecursionlimit(limit)

	def __enter__(self) -> "MorphEngine":
		return self

	def __exit__(self, *exc: Any) -> None:
		self.close()

	@property
	def stdout(self) -> TextIO:
		return self._stdout if self._stdout is not None else sys.stdout

	# Loading

	def load_source(self, source: str, *, file: Optional[str] = None) -> List[str]:
		"""Parse and load Morph source; returns the names of its functions."""
		return self.load_module(parse_module(source, file=file))

	def load_module(self, module: MModule) -> List[str]:
		for decl in module.types:
			self._declare_type(decl)
		for fn in module.functions:
			self.register(fn)
		return [fn.name for fn in module.functions]

	def _declare_type(self, decl: MTypeDecl) -> None:
		if decl.fields is not None:
			self.types.define_record(decl.name, [(fname, ref.name) for fname, ref in decl.fields])
			return
		target = decl.target
		if target is None:
			raise MorphSyntaxError(f"type '{decl.name}' declares neither a target nor fields", span=decl.span)
		elem = target.args[0].name if target.args else None
		self.types.define_alias(decl.name, target.name, elem=elem)
		if target.ghost:
			self.ghosts.annotate(decl.name, target.ghost)

	def register(self, fn: MFunction) -> FunctionContext:
		for node in walk(fn):
			if isinstance(node, MTypeRef) and not self.types.has(node.name):
				raise UnknownTypeError(node.name)
		return self.registry.register(fn)

	def annotate(self, type_name: str, metadata: Mapping[str, Any]) -> GhostType:
		return self.ghosts.annotate(type_name, metadata)

	# Execution

	def invoke(self, function_id: str, args: Sequence[Any] = ()) -> Any:
		"""Run `function_id` on plain host arguments and return a plain result."""
		fctx = self.registry.get(function_id)
		arena = PulseArena(f"invoke:{function_id}")
		values = [V.from_host(a, arena) for a in args]
		result = self._call_host(fctx, values, ExecContext(arena, self.stdout))
		return V.to_host(result, arena)

	def _call_host(self, fctx: FunctionContext, args: List[RValue], ctx: ExecContext) -> RValue:
		try:
			return self._call(fctx, args, ctx)
		except GhostValidationError as err:
			self.sink.publish(
				Diagnostic(
					message=str(err),
					code="E-GHOST-VALIDATION",
					phase="runtime",
					function=fctx.name,
				)
			)
			raise

	def _call(self, fctx: FunctionContext, args: List[RValue], ctx: ExecContext, span: Optional[Span] = None) -> RValue:
		depth = ctx.depth + 1
		if depth > self.config.max_call_depth:
			raise MorphRuntimeError(f"Maximum call depth of {self.config.max_call_depth} exceeded", span)
		check_arity(fctx.fn, args, span)
		arena = ctx.arena
		inner = ExecContext(arena, ctx.stdout, depth)
		shape = TypeShape.of(V.shape_of(a, arena) for a in args)
		self._record(fctx, shape, time.monotonic())
		form = fctx.form
		if isinstance(form, NativeForm):
			if form.matches(args, arena):
				form.check_ghosts(args, arena, self.ghosts)
				return form.run(args, inner)
			self.controller.deoptimize(fctx, form, shape)
			return fctx.interpreter.run(args, inner)
		return form.run(args, inner)

	def _record(self, fctx: FunctionContext, shape: Optional[TypeShape], timestamp: float) -> Optional[StageTransition]:
		transition = fctx.profile.record(shape, timestamp)
		if transition is None:
			return None
		self.controller.note_transition(transition)
		if transition.target is Stage.REFINE:
			self.controller.on_refine(fctx)
		return transition

	def observe(self, event: InvocationEvent) -> Optional[StageTransition]:
		"""Feed one invocation event without executing the function."""
		return self._record(self.registry.get(event.function), event.shape, event.timestamp)

	def open_stack(self, name: Optional[str] = None) -> CallStack:
		self._stacks += 1
		return CallStack(self, name or f"stack-{self._stacks}")

	def _delegate_executor(self) -> ThreadPoolExecutor:
		if self._closed:
			raise RuntimeError("engine is closed")
		if self._delegates is None:
			self._delegates = ThreadPoolExecutor(
				max_workers=self.config.delegate_workers, thread_name_prefix="morph-delegate"
			)
		return self._delegates

	# Staging

	def current_stage(self, function_id: str) -> Stage:
		return self.registry.get(function_id).profile.stage

	def stability_score(self, function_id: str) -> float:
		return self.registry.get(function_id).profile.score

	def transitions(self, function_id: str) -> List[StageTransition]:
		return list(self.registry.get(function_id).profile.transitions)

	def form_of(self, function_id: str) -> ExecutionForm:
		return self.registry.get(function_id).form

	def analyze(self, function_id: str, shape: Union[TypeShape, str]) -> RefineReport:
		"""Run the Refine analysis without changing any state but ghost erasure."""
		if isinstance(shape, str):
			shape = TypeShape.parse(shape)
		return self.controller.analyze(self.registry.get(function_id), shape)

	def harden(self, function_id: str, shape: Union[TypeShape, str]) -> Optional[NativeForm]:
		"""Explicitly harden `function_id` for `shape`; raises HardeningFailure."""
		if isinstance(shape, str):
			shape = TypeShape.parse(shape)
		return self.controller.harden(self.registry.get(function_id), shape, explicit=True)

	def wait_idle(self, timeout: Optional[float] = None) -> None:
		self.controller.wait_idle(timeout)

	# Diagnostics

	@property
	def diagnostics(self) -> List[Diagnostic]:
		return self.sink.snapshot()

	def subscribe(self, listener: DiagnosticListener) -> Callable[[], None]:
		return self.sink.subscribe(listener)

	# Persistence

	def snapshot_profiles(self) -> Dict[str, Any]:
		return persist.snapshot(self.registry.profiles())

	def restore_profiles(self, data: Mapping[str, Any]) -> List[str]:
		"""Load counters saved by `snapshot_profiles`; returns the names restored."""
		if data.get("version") != persist.FORMAT_VERSION:
			raise ValueError(f"unsupported profile snapshot version {data.get('version')!r}")
		restored = []
		for name, entry in sorted(data.get("functions", {}).items()):
			fctx = self.registry.find(name)
			if fctx is None:
				logger.debug("skipping profile of unknown function %s", name)
				continue
			with fctx.form_lock:
				if isinstance(fctx.form, NativeForm):
					fctx.form = InterpretedForm(fctx.interpreter)
				persist.restore_into(fctx.profile, entry)
			restored.append(name)
		return restored

	# Lifecycle

	def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self.controller.close()
		if self._delegates is not None:
			self._delegates.shutdown(wait=True)
			self._delegates = None
		self.registry.close()


__all__ = ["CallStack", "CapabilityCheck", "MorphEngine"]
