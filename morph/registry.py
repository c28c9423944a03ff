# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Process-wide function registry.

Each registered function gets one `FunctionContext`: its IR, profile,
current execution form and the locks guarding form changes. Contexts are
created by `register` and dropped by `close`; nothing about a function lives
in module globals.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from morph.core.config import EngineConfig
from morph.core.errors import UnknownFunctionError
from morph.harden.forms import ExecutionForm, InterpretedForm
from morph.interp.interpreter import Interpreter
from morph.ir.nodes import FunctionMode, MFunction, number_nodes
from morph.profile.profiler import FunctionProfile, Stage, Thresholds


@dataclass
class FunctionContext:
	fn: MFunction
	profile: FunctionProfile
	interpreter: Interpreter
	form: ExecutionForm
	# single-flight: held for the whole of one hardening attempt
	harden_lock: threading.Lock = field(default_factory=threading.Lock)
	# guards `form` together with the profile stage
	form_lock: threading.Lock = field(default_factory=threading.Lock)

	@property
	def name(self) -> str:
		return self.fn.name

	@property
	def stage(self) -> Stage:
		return self.profile.stage


InterpreterFactory = Callable[[MFunction], Interpreter]


class FunctionRegistry:
	def __init__(self, config: EngineConfig, make_interpreter: InterpreterFactory) -> None:
		self.config = config
		self.make_interpreter = make_interpreter
		self._contexts: Dict[str, FunctionContext] = {}
		self._lock = threading.Lock()

	def register(self, fn: MFunction) -> FunctionContext:
		"""
		Add `fn`, replacing any function of the same name. A replaced
		function starts over in Draft with an empty profile.
		"""
		number_nodes(fn)
		thresholds = Thresholds.from_config(self.config, eager=fn.mode is FunctionMode.SOLID)
		interpreter = self.make_interpreter(fn)
		ctx = FunctionContext(
			fn=fn,
			profile=FunctionProfile(fn.name, thresholds),
			interpreter=interpreter,
			form=InterpretedForm(interpreter),
		)
		with self._lock:
			self._contexts[fn.name] = ctx
		return ctx

	def get(self, name: str) -> FunctionContext:
		with self._lock:
			ctx = self._contexts.get(name)
		if ctx is None:
			raise UnknownFunctionError(name)
		return ctx

	def find(self, name: str) -> Optional[FunctionContext]:
		with self._lock:
			return self._contexts.get(name)

	def lookup_fn(self, name: str) -> Optional[MFunction]:
		ctx = self.find(name)
		return ctx.fn if ctx is not None else None

	def arity_of(self, name: str) -> Optional[int]:
		fn = self.lookup_fn(name)
		return fn.arity if fn is not None else None

	def __contains__(self, name: str) -> bool:
		return self.find(name) is not None

	def names(self) -> List[str]:
		with self._lock:
			return sorted(self._contexts)

	def profiles(self) -> Dict[str, FunctionProfile]:
		with self._lock:
			return {name: ctx.profile for name, ctx in self._contexts.items()}

	def close(self) -> None:
		with self._lock:
			self._contexts.clear()


__all__ = ["FunctionContext", "FunctionRegistry", "InterpreterFactory"]
