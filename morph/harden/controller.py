# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Hardening and deoptimization controller.

Hardening is single-flight per function: an attempt holds the function's
`harden_lock` from analysis to form installation, and a trigger that finds
the lock taken returns immediately. Callers are never blocked; until the
native form is installed they keep running the interpreted form.

The stage and the form change together under the function's `form_lock`:
a native form is only ever visible while the stage is Solid. Deoptimization
swaps the native form back to the interpreted one as a compare-and-swap on
the form, so of several callers missing the guard at once exactly one
reverts the stage and damps the score.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

from morph.core.config import EngineConfig
from morph.core.diagnostics import Diagnostic, DiagnosticSink
from morph.core.errors import (
	DanglingPulseError,
	EngineError,
	GhostConflictError,
	GhostError,
	HardeningFailure,
	StageError,
)
from morph.core.types_core import TypeShape
from morph.ghost.resolver import GhostResolver
from morph.interp.interpreter import CallDispatcher
from morph.profile.profiler import Stage, StageTransition
from morph.refine.analysis import RefineReport, analyze
from morph.registry import FunctionContext, FunctionRegistry

from .closure_backend import compile_closure
from .forms import InterpretedForm, Kernel, NativeForm
from .llvm_backend import compile_llvm, ineligibility

logger = logging.getLogger(__name__)


def _cause_of(diagnostics: List[Diagnostic]) -> Optional[EngineError]:
	"""The Pulse/Ghost exception corresponding to the first error diagnostic, if any."""
	for diag in diagnostics:
		if not diag.is_error:
			continue
		if diag.code == "E-PULSE-DANGLING":
			return DanglingPulseError(diag.message)
		if diag.code == "E-GHOST-CONFLICT":
			return GhostConflictError(diag.message)
		if diag.code == "E-GHOST-REFUSED":
			return GhostError(diag.message)
	return None


class HardeningController:
	def __init__(
		self,
		config: EngineConfig,
		registry: FunctionRegistry,
		ghosts: GhostResolver,
		dispatcher: CallDispatcher,
		sink: DiagnosticSink,
	) -> None:
		self.config = config
		self.registry = registry
		self.ghosts = ghosts
		self.dispatcher = dispatcher
		self.sink = sink
		self._executor: Optional[ThreadPoolExecutor] = None
		self._pending: List[Future] = []
		self._lock = threading.Lock()

	# Events

	def note_transition(self, transition: Optional[StageTransition]) -> None:
		if transition is None:
			return
		self.sink.publish(
			Diagnostic(
				message=str(transition),
				code="N-STAGE",
				phase="profile",
				severity="note",
				function=transition.function,
			)
		)

	def on_refine(self, ctx: FunctionContext) -> None:
		"""The profiler moved `ctx` to Refine: harden on its dominant shape."""
		if self.config.async_hardening:
			with self._lock:
				if self._executor is None:
					self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="morph-harden")
				future = self._executor.submit(self._harden_quietly, ctx)
				self._pending = [f for f in self._pending if not f.done()] + [future]
		else:
			self._harden_quietly(ctx)

	def _harden_quietly(self, ctx: FunctionContext) -> None:
		shape = ctx.profile.dominant()
		if shape is None:
			raise StageError(f"{ctx.name}: Refine without an observed shape")
		try:
			self.harden(ctx, shape)
		except HardeningFailure:
			# recorded as W-HARDEN-FAILED; the function keeps running interpreted
			pass

	def wait_idle(self, timeout: Optional[float] = None) -> None:
		"""Block until every background hardening job has finished."""
		with self._lock:
			pending = list(self._pending)
		for future in pending:
			future.result(timeout=timeout)

	# Hardening

	def harden(self, ctx: FunctionContext, shape: TypeShape, *, explicit: bool = False) -> Optional[NativeForm]:
		"""
		Analyze and compile `ctx` for `shape`.

		Returns the installed NativeForm, or None when another attempt is
		already in flight. Raises HardeningFailure when analysis refuses.
		With `explicit`, the function is first moved to Refine by hand.
		"""
		if not ctx.harden_lock.acquire(blocking=False):
			logger.debug("hardening of %s already in flight", ctx.name)
			return None
		try:
			profile = ctx.profile
			if not explicit and profile.stage is not Stage.REFINE:
				return None
			if explicit:
				current = ctx.form
				if isinstance(current, NativeForm):
					if current.shape == shape:
						return current
					raise HardeningFailure(
						ctx.name,
						[
							Diagnostic(
								message=f"already hardened on {current.shape}",
								code="E-HARDEN-STATE",
								phase="harden",
								function=ctx.name,
							)
						],
					)
				if profile.stage is not Stage.REFINE:
					self.note_transition(profile.begin_refine(f"explicit request for {shape}"))
			try:
				form, report = self._build(ctx, shape)
			except HardeningFailure as failure:
				self._failed(ctx, failure)
				raise
			with ctx.form_lock:
				transition = profile.mark_solid()
				ctx.form = form
			self.note_transition(transition)
			self.sink.extend(d for d in report.diagnostics if not d.is_error)
			self.sink.publish(
				Diagnostic(
					message=f"{ctx.name} hardened on {shape} with the {form.kind} kernel",
					code="N-HARDENED",
					phase="harden",
					severity="note",
					function=ctx.name,
				)
			)
			logger.debug("hardened %s on %s (%s kernel)", ctx.name, shape, form.kind)
			return form
		finally:
			ctx.harden_lock.release()

	def analyze(self, ctx: FunctionContext, shape: TypeShape) -> RefineReport:
		return analyze(
			ctx.fn,
			shape,
			self.ghosts,
			lookup=self.registry.lookup_fn,
			arity_of=self.registry.arity_of,
			ghost_policy=self.config.ghost_policy,
		)

	def _build(self, ctx: FunctionContext, shape: TypeShape):
		fn = ctx.fn
		try:
			report = self.analyze(ctx, shape)
		except ValueError as err:
			raise HardeningFailure(
				fn.name, [Diagnostic(message=str(err), code="E-HARDEN-SHAPE", phase="harden", function=fn.name)]
			) from err
		if not report.ok:
			failure = HardeningFailure(fn.name, report.diagnostics)
			raise failure from _cause_of(report.diagnostics)

		param_checks = []
		for index, param in enumerate(fn.params):
			site = report.site(param)
			if site is not None and not site.erased:
				param_checks.append((index, param.annotation))
		return_site = report.site(fn)
		return_check = fn.return_type if return_site is not None and not return_site.erased else None

		kernel: Optional[Kernel] = None
		if self.config.backend == "llvm":
			reason = ineligibility(fn, report)
			if reason is None:
				try:
					kernel = compile_llvm(fn, report, self.ghosts, return_check)
				except RuntimeError as err:
					logger.debug("LLVM compilation of %s failed, using closures: %s", fn.name, err)
			else:
				logger.debug("%s is not LLVM-eligible: %s", fn.name, reason)
		if kernel is None:
			kernel = compile_closure(fn, report, self.dispatcher, self.ghosts)
		form = NativeForm(
			shape=shape,
			kernel=kernel,
			param_checks=tuple(param_checks),
			layouts=report.layouts(),
		)
		return form, report

	def _failed(self, ctx: FunctionContext, failure: HardeningFailure) -> None:
		if ctx.profile.stage is Stage.REFINE:
			self.note_transition(ctx.profile.mark_failed("hardening refused"))
		self.sink.extend(failure.diagnostics)
		self.sink.publish(
			Diagnostic(
				message=str(failure),
				code="W-HARDEN-FAILED",
				phase="harden",
				severity="warning",
				function=ctx.name,
			)
		)
		logger.info("%s", failure)

	# Deoptimization

	def deoptimize(self, ctx: FunctionContext, native: NativeForm, shape: TypeShape) -> None:
		"""Guard miss on `shape`: revert `ctx` from `native` to its interpreted form."""
		with ctx.form_lock:
			if ctx.form is not native:
				return
			ctx.form = InterpretedForm(ctx.interpreter)
			transition = ctx.profile.deoptimize(shape)
		if transition is None:
			return
		self.note_transition(transition)
		self.sink.publish(
			Diagnostic(
				message=f"{ctx.name}: hardened for {native.shape}, called with {shape}; "
				f"score damped to {transition.score:.3f}",
				code="N-DEOPT",
				phase="harden",
				severity="note",
				function=ctx.name,
			)
		)
		logger.debug("deoptimized %s on %s", ctx.name, shape)

	def close(self) -> None:
		with self._lock:
			executor, self._executor = self._executor, None
			self._pending = []
		if executor is not None:
			executor.shutdown(wait=True)


__all__ = ["HardeningController"]
