# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Engine configuration.

Defaults follow the promotion contract: T1 < T2, "stable, then refine, then
solidify". The numbers are tunable; the ordering is not. Configuration files
are JSON objects whose keys are the field names below; unknown keys are
rejected so typos surface early.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

GHOST_POLICIES = ("retain", "refuse")
BACKENDS = ("llvm", "closure")


@dataclass(frozen=True)
class EngineConfig:
	t1: int = 100  # Draft -> Observe call count
	t2: int = 200  # Observe -> Refine call count
	s1: float = 0.9  # stability score required for Refine
	window: int = 150  # stability window, in calls
	damping: float = 0.5  # score multiplier applied on deoptimization
	ghost_policy: str = "retain"
	backend: str = "llvm"
	async_hardening: bool = False
	max_call_depth: int = 200
	delegate_workers: int = 4
	diagnostic_buffer: int = 1000

	def __post_init__(self) -> None:
		if self.t1 < 0:
			raise ValueError("t1 must be non-negative")
		if not self.t1 < self.t2:
			raise ValueError(f"t1 ({self.t1}) must be smaller than t2 ({self.t2})")
		if not 0.0 < self.s1 <= 1.0:
			raise ValueError("s1 must be in (0, 1]")
		if self.window < 1:
			raise ValueError("window must be at least 1")
		if not 0.0 < self.damping < 1.0:
			raise ValueError("damping must be in (0, 1)")
		if self.ghost_policy not in GHOST_POLICIES:
			raise ValueError(f"ghost_policy must be one of {', '.join(GHOST_POLICIES)}")
		if self.backend not in BACKENDS:
			raise ValueError(f"backend must be one of {', '.join(BACKENDS)}")
		if self.max_call_depth < 1:
			raise ValueError("max_call_depth must be positive")
		if self.delegate_workers < 1:
			raise ValueError("delegate_workers must be positive")
		if self.diagnostic_buffer < 1:
			raise ValueError("diagnostic_buffer must be positive")

	@classmethod
	def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
		known = {f.name for f in fields(cls)}
		unknown = sorted(set(data) - known)
		if unknown:
			raise ValueError(f"unknown engine config keys: {', '.join(unknown)}")
		return cls(**dict(data))

	def with_overrides(self, **overrides: Any) -> "EngineConfig":
		"""Copy with the non-None overrides applied (CLI flags)."""
		return replace(self, **{k: v for k, v in overrides.items() if v is not None})

	def to_dict(self) -> dict:
		return asdict(self)


def load_config(path: str | Path) -> EngineConfig:
	"""Read an EngineConfig from a JSON file."""
	path = Path(path)
	try:
		data = json.loads(path.read_text())
	except json.JSONDecodeError as err:
		raise ValueError(f"{path}: invalid JSON config ({err})") from err
	if not isinstance(data, dict):
		raise ValueError(f"{path}: config must be a JSON object")
	return EngineConfig.from_mapping(data)


__all__ = ["EngineConfig", "load_config", "GHOST_POLICIES", "BACKENDS"]
