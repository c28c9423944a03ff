# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Structured diagnostics and the engine's diagnostic event sink.

Analysis passes (Pulse checker, ghost erasure) return lists of `Diagnostic`
records instead of raising on the first problem; the hardening controller
turns error-severity records into exceptions at its boundary. The engine also
publishes runtime events (stage transitions, deoptimizations, hardening
failures) through a `DiagnosticSink` so a host can log or display them.

Codes in use:
  N-STAGE            stage transition (note)
  N-DEOPT            deoptimization of a Solid function (note)
  N-HARDENED         a native form was installed (note)
  W-HARDEN-FAILED    hardening attempt refused (warning)
  E-HARDEN-STATE     explicit hardening of a function already hardened on another shape (error)
  E-HARDEN-SHAPE     explicit hardening shape does not fit the parameter list (error)
  E-GHOST-VALIDATION runtime ghost predicate failed (error)
  E-GHOST-CONFLICT   incompatible ghost directives (error)
  E-GHOST-REFUSED    unprovable predicate under the "refuse" policy (error)
  N-GHOST-RETAINED   predicate kept as a runtime check in a native form (note)
  E-PULSE-DANGLING   value escapes a zone that seals before it (error)
  E-NAME-UNKNOWN     unresolved variable or function (error)
  E-CALL-ARITY       call with the wrong number of arguments (error)
  E-ASSIGN-IMMUTABLE assignment to a `let` binding or parameter (error)
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Iterable, List, Optional

from .span import Span


@dataclass
class Diagnostic:
	"""One diagnostic record (error/warning/note)."""

	message: str
	code: str | None = None
	# Pipeline phase that produced the record: "parser", "pulse", "ghost",
	# "profile", "harden", "runtime".
	phase: str | None = None
	severity: str = "error"
	span: Span = field(default_factory=Span)
	notes: list[str] = field(default_factory=list)
	function: str | None = None

	def __post_init__(self) -> None:
		if self.span is None:  # type: ignore[unreachable]
			self.span = Span()

	@property
	def is_error(self) -> bool:
		return self.severity == "error"

	def to_dict(self) -> dict:
		return {
			"severity": self.severity,
			"code": self.code,
			"phase": self.phase,
			"function": self.function,
			"message": self.message,
			"span": self.span.to_dict(),
			"notes": list(self.notes),
		}

	def render(self) -> str:
		head = f"{self.span}: {self.severity}"
		if self.code:
			head += f"[{self.code}]"
		text = f"{head}: {self.message}"
		for note in self.notes:
			text += f"\n  note: {note}"
		return text


DiagnosticListener = Callable[[Diagnostic], None]


def errors_in(diagnostics: Iterable[Diagnostic]) -> List[Diagnostic]:
	return [d for d in diagnostics if d.is_error]


class DiagnosticSink:
	"""
	Bounded, thread-safe buffer of published diagnostics plus listeners.

	Listeners run synchronously on the publishing thread, outside the buffer
	lock. A listener raising propagates to the publisher.
	"""

	def __init__(self, capacity: int = 1000) -> None:
		self._buffer: Deque[Diagnostic] = deque(maxlen=capacity)
		self._listeners: List[DiagnosticListener] = []
		self._lock = threading.Lock()

	def publish(self, diag: Diagnostic) -> None:
		with self._lock:
			self._buffer.append(diag)
			listeners = list(self._listeners)
		for listener in listeners:
			listener(diag)

	def extend(self, diags: Iterable[Diagnostic]) -> None:
		for diag in diags:
			self.publish(diag)

	def subscribe(self, listener: DiagnosticListener) -> Callable[[], None]:
		"""Register `listener`; returns a callable that unsubscribes it."""
		with self._lock:
			self._listeners.append(listener)

		def _unsubscribe() -> None:
			with self._lock:
				if listener in self._listeners:
					self._listeners.remove(listener)

		return _unsubscribe

	def snapshot(self, code: Optional[str] = None) -> List[Diagnostic]:
		with self._lock:
			items = list(self._buffer)
		if code is None:
			return items
		return [d for d in items if d.code == code]

	def clear(self) -> None:
		with self._lock:
			self._buffer.clear()

	def __len__(self) -> int:
		with self._lock:
			return len(self._buffer)


__all__ = ["Diagnostic", "DiagnosticListener", "DiagnosticSink", "errors_in"]
