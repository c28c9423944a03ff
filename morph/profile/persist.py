# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
JSON-compatible snapshots of function profiles.

A host may save these between runs to resume profiling. Native forms are
not persisted, so a profile saved in Refine or Solid resumes in Observe and
earns its hardening again.
"""

from __future__ import annotations

import json
from collections import deque
from pathlib import Path
from typing import Any, Dict, Mapping

from morph.core.types_core import TypeShape

from .profiler import FunctionProfile, Stage

FORMAT_VERSION = 1


def profile_to_dict(profile: FunctionProfile) -> Dict[str, Any]:
	with profile.lock:
		return {
			"stage": profile.stage.value,
			"calls": profile.calls,
			"damping": profile.damping,
			"deopts": profile.deopts,
			"failures": profile.failures,
			"histogram": [[shape.to_json(), count] for shape, count in profile.histogram.items()],
			"window": [shape.to_json() for shape in profile.window],
		}


def restore_into(profile: FunctionProfile, data: Mapping[str, Any]) -> None:
	"""Overwrite `profile`'s counters with a snapshot."""
	try:
		stage = Stage(data.get("stage", Stage.DRAFT.value))
	except ValueError:
		raise ValueError(f"{profile.name}: unknown stage {data.get('stage')!r}") from None
	if stage in (Stage.REFINE, Stage.SOLID):
		stage = Stage.OBSERVE
	histogram = {TypeShape.from_json(shape): int(count) for shape, count in data.get("histogram", [])}
	window = deque(
		(TypeShape.from_json(shape) for shape in data.get("window", [])),
		maxlen=profile.thresholds.window,
	)
	damping = float(data.get("damping", 1.0))
	if not 0.0 < damping <= 1.0:
		raise ValueError(f"{profile.name}: damping {damping} out of range")
	with profile.lock:
		profile.stage = stage
		profile.calls = int(data.get("calls", 0))
		profile.histogram = histogram
		profile.window = window
		profile.damping = damping
		profile.deopts = int(data.get("deopts", 0))
		profile.failures = int(data.get("failures", 0))


def snapshot(profiles: Mapping[str, FunctionProfile]) -> Dict[str, Any]:
	return {
		"version": FORMAT_VERSION,
		"functions": {name: profile_to_dict(p) for name, p in sorted(profiles.items())},
	}


def save(path: str | Path, data: Mapping[str, Any]) -> None:
	Path(path).write_text(json.dumps(data, indent=2, sort_keys=True) + "\n")


def load(path: str | Path) -> Dict[str, Any]:
	data = json.loads(Path(path).read_text())
	if not isinstance(data, dict) or data.get("version") != FORMAT_VERSION:
		raise ValueError(f"{path}: not a profile snapshot (version {FORMAT_VERSION})")
	return data


__all__ = ["FORMAT_VERSION", "load", "profile_to_dict", "restore_into", "save", "snapshot"]
