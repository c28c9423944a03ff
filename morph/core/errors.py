# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Exception taxonomy of the engine.

Zone misuse (`InvalidParentError`, `OwnershipConflictError`,
`NotDirectParentError`) indicates a front-end or engine invariant violation.
`DanglingPulseError` is an ownership-safety violation; the static checker
reports it before hardening, and the interpreter raises it for programs that
were never hardened. `GhostValidationError` is ordinary, caller-visible
runtime failure. `HardeningFailure` is non-fatal: the function stays
interpreted.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from .diagnostics import Diagnostic
from .span import Span


class EngineError(Exception):
	"""Base class of every error the engine raises on purpose."""


# Pulse memory model

class PulseError(EngineError):
	"""Misuse of Pulse zones or values."""


class InvalidParentError(PulseError):
	"""`open_zone` on a sealed parent, or on a zone that is not the innermost open one."""


class OwnershipConflictError(PulseError):
	"""Claim into a sealed zone, or access to a value that was moved away."""


class NotDirectParentError(PulseError):
	"""Claim whose target is not the immediate parent of the value's zone."""


class DanglingPulseError(PulseError):
	"""A value would outlive the zone that owns it."""


# Ghost types

class GhostError(EngineError):
	"""Ghost type metadata errors."""


class GhostValidationError(GhostError):
	"""A runtime value violates a ghost predicate declared on its type."""

	def __init__(self, type_name: str, reason: str) -> None:
		super().__init__(f"{type_name}: {reason}")
		self.type_name = type_name
		self.reason = reason


class GhostConflictError(GhostError):
	"""Incompatible ghost directives registered on one type."""


# Staging

class StageError(EngineError):
	"""A stage operation requested in a stage that does not allow it."""


class HardeningFailure(EngineError):
	"""A hardening attempt was refused; carries the analysis diagnostics."""

	def __init__(self, function: str, diagnostics: Sequence[Diagnostic] = ()) -> None:
		self.function = function
		self.diagnostics: List[Diagnostic] = list(diagnostics)
		detail = "; ".join(d.message for d in self.diagnostics if d.is_error)
		msg = f"cannot harden '{function}'"
		if detail:
			msg += f": {detail}"
		super().__init__(msg)


class MorphRuntimeError(EngineError):
	"""Ordinary runtime failure of Morph code (type errors, division by zero, ...)."""

	def __init__(self, message: str, span: Optional[Span] = None) -> None:
		super().__init__(message)
		self.span = span or Span()


class UnknownFunctionError(EngineError):
	def __init__(self, name: str) -> None:
		super().__init__(f"Undefined function: {name}")
		self.name = name


class UnknownTypeError(EngineError):
	def __init__(self, name: str) -> None:
		super().__init__(f"Unknown type: {name}")
		self.name = name


class CapabilityDenied(EngineError):
	"""The host capability predicate refused a delegation."""


class MorphSyntaxError(EngineError, ValueError):
	"""Front-end error; carries the location of the offending input."""

	def __init__(self, message: str, *, span: Optional[Span] = None) -> None:
		super().__init__(message)
		self.span = span or Span()

	def to_diagnostic(self) -> Diagnostic:
		return Diagnostic(message=str(self), code="E-SYNTAX", phase="parser", span=self.span)


__all__ = [
	"EngineError",
	"PulseError",
	"InvalidParentError",
	"OwnershipConflictError",
	"NotDirectParentError",
	"DanglingPulseError",
	"GhostError",
	"GhostValidationError",
	"GhostConflictError",
	"StageError",
	"HardeningFailure",
	"MorphRuntimeError",
	"UnknownFunctionError",
	"UnknownTypeError",
	"CapabilityDenied",
	"MorphSyntaxError",
]
