# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Per-function stage machine and invocation profile.

	Draft --(calls >= T1, a shape seen)--> Observe
	Observe --(calls >= T2, score >= S1)--> Refine
	Refine --(analysis ok)--> Solid
	Refine --(analysis failed)--> Observe
	Solid --(deoptimization)--> Observe

StabilityScore is the share of the last W calls that carried the dominant
TypeShape, multiplied by a damping factor. Deoptimization multiplies the
damping by the configured factor; every later call moves it back towards 1
by 1/W, so a shape that stays dominant for a full window is fully trusted
again.

The dominant shape is the most frequent one in the window; ties go to the
shape first observed over the function's lifetime. Replaying the same event
sequence on a fresh profile therefore yields the same transitions.

After a failed Refine the profile does not promote again until the window
has moved: the dominant shape changes, or the score drops below S1 and comes
back.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional

from morph.core.config import EngineConfig
from morph.core.errors import StageError
from morph.core.types_core import TypeShape

logger = logging.getLogger(__name__)


class Stage(Enum):
	DRAFT = "Draft"
	OBSERVE = "Observe"
	REFINE = "Refine"
	SOLID = "Solid"

	@property
	def interpreted(self) -> bool:
		return self is not Stage.SOLID


@dataclass(frozen=True)
class InvocationEvent:
	"""One call as seen by the invocation layer."""

	function: str
	shape: Optional[TypeShape]
	timestamp: float = 0.0


@dataclass(frozen=True)
class StageTransition:
	function: str
	source: Stage
	target: Stage
	calls: int
	score: float
	reason: str
	timestamp: float = 0.0

	def __str__(self) -> str:
		return (
			f"{self.function}: {self.source.value} -> {self.target.value} "
			f"after {self.calls} calls (score {self.score:.3f}, {self.reason})"
		)


@dataclass(frozen=True)
class Thresholds:
	t1: int
	t2: int
	s1: float
	window: int
	damping: float

	@classmethod
	def from_config(cls, config: EngineConfig, *, eager: bool = False) -> "Thresholds":
		"""`eager` is used for functions declared `solid`."""
		if eager:
			return cls(t1=1, t2=2, s1=config.s1, window=config.window, damping=config.damping)
		return cls(t1=config.t1, t2=config.t2, s1=config.s1, window=config.window, damping=config.damping)


class FunctionProfile:
	"""
	Call counter, shape histogram, stability window and stage of one function.

	All mutation happens under the profile's lock; readers of `stage` and
	`score` may see a value one call stale.
	"""

	def __init__(self, name: str, thresholds: Thresholds) -> None:
		self.name = name
		self.thresholds = thresholds
		self.stage = Stage.DRAFT
		self.calls = 0
		self.histogram: Dict[TypeShape, int] = {}
		self.window: Deque[TypeShape] = deque(maxlen=thresholds.window)
		self.damping = 1.0
		self.deopts = 0
		self.failures = 0
		self.transitions: List[StageTransition] = []
		self._blocked_on: Optional[TypeShape] = None
		self.lock = threading.Lock()

	# Derived values

	def _window_counts(self) -> Counter:
		return Counter(self.window)

	def _dominant_locked(self) -> Optional[TypeShape]:
		counts = self._window_counts()
		if not counts:
			return None
		order = {shape: i for i, shape in enumerate(self.histogram)}
		return min(counts, key=lambda shape: (-counts[shape], order.get(shape, len(order))))

	def _score_locked(self) -> float:
		dominant = self._dominant_locked()
		if dominant is None:
			return 0.0
		raw = self._window_counts()[dominant] / len(self.window)
		return raw * self.damping

	def dominant(self) -> Optional[TypeShape]:
		with self.lock:
			return self._dominant_locked()

	@property
	def score(self) -> float:
		with self.lock:
			return self._score_locked()

	@property
	def retry_blocked(self) -> bool:
		return self._blocked_on is not None

	# Events

	def record(self, shape: Optional[TypeShape], timestamp: float = 0.0) -> Optional[StageTransition]:
		"""
		Count one call. Returns the transition it caused, if any; a transition
		to Refine obliges the caller to run the Refine analysis and report
		back through `mark_solid` or `mark_failed`.
		"""
		t = self.thresholds
		with self.lock:
			self.calls += 1
			if shape is not None:
				self.histogram[shape] = self.histogram.get(shape, 0) + 1
				self.window.append(shape)
			if self.damping < 1.0:
				self.damping = min(1.0, self.damping + 1.0 / t.window)
			score = self._score_locked()
			if self._blocked_on is not None:
				if score < t.s1 or self._dominant_locked() != self._blocked_on:
					self._blocked_on = None
			if self.stage is Stage.DRAFT and self.calls >= t.t1 and self.histogram:
				return self._move(Stage.OBSERVE, f"{self.calls} calls", timestamp)
			if (
				self.stage is Stage.OBSERVE
				and self._blocked_on is None
				and self.calls >= t.t2
				and score >= t.s1
			):
				return self._move(Stage.REFINE, f"stable on {self._dominant_locked()}", timestamp)
			return None

	def mark_solid(self, timestamp: float = 0.0) -> StageTransition:
		with self.lock:
			if self.stage is not Stage.REFINE:
				raise StageError(f"{self.name}: mark_solid in stage {self.stage.value}")
			return self._move(Stage.SOLID, "hardened", timestamp)

	def mark_failed(self, reason: str, timestamp: float = 0.0) -> StageTransition:
		with self.lock:
			if self.stage is not Stage.REFINE:
				raise StageError(f"{self.name}: mark_failed in stage {self.stage.value}")
			self.failures += 1
			self._blocked_on = self._dominant_locked()
			return self._move(Stage.OBSERVE, reason, timestamp)

	def begin_refine(self, reason: str, timestamp: float = 0.0) -> StageTransition:
		"""Explicit hardening request: enter Refine from any interpreted stage."""
		with self.lock:
			if self.stage is Stage.REFINE or self.stage is Stage.SOLID:
				raise StageError(f"{self.name}: begin_refine in stage {self.stage.value}")
			return self._move(Stage.REFINE, reason, timestamp)

	def deoptimize(self, shape: TypeShape, timestamp: float = 0.0) -> Optional[StageTransition]:
		"""
		Solid -> Observe after a guard miss on `shape`. Returns None when
		another caller already deoptimized the function. A native form is
		only installed once the stage is Solid, so a guard miss in Refine
		means the form and the stage went out of step.
		"""
		with self.lock:
			if self.stage is Stage.REFINE:
				raise StageError(f"{self.name}: deoptimize in stage {self.stage.value}")
			if self.stage is not Stage.SOLID:
				return None
			self.deopts += 1
			self.damping *= self.thresholds.damping
			return self._move(Stage.OBSERVE, f"guard miss on {shape}", timestamp)

	def _move(self, target: Stage, reason: str, timestamp: float) -> StageTransition:
		transition = StageTransition(
			function=self.name,
			source=self.stage,
			target=target,
			calls=self.calls,
			score=self._score_locked(),
			reason=reason,
			timestamp=timestamp,
		)
		self.stage = target
		self.transitions.append(transition)
		logger.debug("stage transition: %s", transition)
		return transition


__all__ = ["FunctionProfile", "InvocationEvent", "Stage", "StageTransition", "Thresholds"]
