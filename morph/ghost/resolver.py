# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Ghost type resolver.

A ghost type is a named type carrying metadata tags:

  predicates  Regex = "<pattern>"    (String values; search semantics)
			  Min = n, Max = n       (Int/Float values)
  layout      Layout = natural | c | packed
			  FieldOrder = [a, b, ...]  (records only; a permutation of the fields)
			  Align = n               (power of two)
  hints       any other key; stored, never interpreted

Lifecycle: `annotate` registers tags (Annotated). While a function runs in
Draft/Observe every annotated value goes through `validate`. Hardening calls
`erase` with the shape the profiler observed; a predicate that provably holds
for every value of that shape is dropped for that shape only, and the type
becomes Erased(layout), after which its metadata is frozen. A predicate that cannot be proven is
reported back as Retained, and the hardened form keeps exactly that check in
its guard. Nothing is ever dropped silently.
"""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from morph.core.errors import GhostConflictError, GhostError, GhostValidationError
from morph.core.types_core import (
	ANY,
	ShapeType,
	TypeDefKind,
	TypeKind,
	TypeTable,
)
from morph.interp.values import I64_MAX, I64_MIN, display_plain

PREDICATE_KEYS = ("Regex", "Min", "Max")
LAYOUT_KEYS = ("Layout", "FieldOrder", "Align")
LAYOUT_STRATEGIES = ("natural", "c", "packed")

# (size, align) in bytes of each kind's slot in a physical layout
_SLOT = {
	TypeKind.INT: (8, 8),
	TypeKind.FLOAT: (8, 8),
	TypeKind.BOOL: (1, 1),
	TypeKind.STRING: (16, 8),
	TypeKind.LIST: (24, 8),
	TypeKind.UNIT: (0, 1),
	TypeKind.ANY: (16, 8),
}

# Regex constructs whose meaning depends on the surrounding text.
_CONTEXT_SENSITIVE = re.compile(r"\\[bBAZz]|\^|\$|\(\?[=!<]")


class GhostTagKind(Enum):
	PREDICATE = auto()
	LAYOUT = auto()
	HINT = auto()


@dataclass(frozen=True)
class GhostTag:
	key: str
	value: Any
	kind: GhostTagKind

	def __str__(self) -> str:
		value = list(self.value) if isinstance(self.value, tuple) else self.value
		return f"{self.key} = {value!r}"


class ResolutionState(Enum):
	ANNOTATED = auto()
	ERASED = auto()


@dataclass(frozen=True)
class FieldSlot:
	name: str
	offset: int
	size: int
	shape: str


@dataclass(frozen=True)
class PhysicalLayout:
	"""Static layout a hardened form assumes for values of one type."""

	type_name: str
	strategy: str
	size: int
	align: int
	fields: Tuple[FieldSlot, ...] = ()

	def describe(self) -> str:
		text = f"{self.type_name}: {self.strategy}, size {self.size}, align {self.align}"
		if self.fields:
			text += " [" + ", ".join(f"{f.name}@{f.offset}:{f.size}" for f in self.fields) + "]"
		return text


@dataclass(frozen=True)
class Erased:
	type_name: str
	layout: PhysicalLayout


@dataclass(frozen=True)
class Retained:
	"""Erasure could not prove `checks`; they stay as one runtime guard."""

	type_name: str
	checks: Tuple[str, ...]
	layout: PhysicalLayout


ErasureResult = Union[Erased, Retained]


@dataclass
class GhostType:
	name: str
	tags: List[GhostTag] = field(default_factory=list)
	state: ResolutionState = ResolutionState.ANNOTATED
	# observed shape -> layout, for every shape the predicates were discharged on
	erasures: Dict[ShapeType, PhysicalLayout] = field(default_factory=dict)

	def tag(self, key: str) -> Optional[GhostTag]:
		for t in self.tags:
			if t.key == key:
				return t
		return None

	@property
	def predicates(self) -> List[GhostTag]:
		return [t for t in self.tags if t.kind is GhostTagKind.PREDICATE]


def _is_number(value: Any) -> bool:
	return isinstance(value, (int, float)) and not isinstance(value, bool)


def _regex_is_total(pattern: str) -> bool:
	"""
	True when `pattern` (search semantics) matches every string.

	A pattern free of anchors, word boundaries and lookarounds that matches
	the empty string matches at offset 0 of any input.
	"""
	if _CONTEXT_SENSITIVE.search(pattern):
		return False
	return re.match(pattern, "") is not None


class GhostResolver:
	"""Ghost metadata keyed by the type names of a TypeTable."""

	def __init__(self, types: TypeTable) -> None:
		self.types = types
		self._ghosts: Dict[str, GhostType] = {}
		self._regex: Dict[str, "re.Pattern[str]"] = {}
		self._lock = threading.RLock()

	# Registration

	def annotate(self, type_name: str, metadata: Mapping[str, Any]) -> GhostType:
		"""
		Register `metadata` on `type_name`.

		All tags are checked before any is stored, so a rejected call leaves
		the type unchanged.
		"""
		tdef = self.types.lookup(type_name)
		with self._lock:
			ghost = self._ghosts.get(type_name) or GhostType(name=type_name)
			if ghost.state is ResolutionState.ERASED:
				raise GhostConflictError(f"type '{type_name}' is already erased; its metadata is frozen")
			pending = list(ghost.tags)
			for key, raw in metadata.items():
				tag = self._make_tag(type_name, tdef.kind, key, raw)
				self._check_conflicts(type_name, pending, tag)
				if tag not in pending:
					pending.append(tag)
			ghost.tags = pending
			self._ghosts[type_name] = ghost
			return ghost

	def _make_tag(self, type_name: str, tdef_kind: TypeDefKind, key: str, value: Any) -> GhostTag:
		if key == "Regex":
			if not isinstance(value, str):
				raise GhostError(f"{type_name}: Regex expects a string pattern")
			self._compiled(value)
			return GhostTag(key, value, GhostTagKind.PREDICATE)
		if key in ("Min", "Max"):
			if not _is_number(value):
				raise GhostError(f"{type_name}: {key} expects a number")
			return GhostTag(key, value, GhostTagKind.PREDICATE)
		if key == "Layout":
			if value not in LAYOUT_STRATEGIES:
				raise GhostError(f"{type_name}: Layout must be one of {', '.join(LAYOUT_STRATEGIES)}")
			return GhostTag(key, value, GhostTagKind.LAYOUT)
		if key == "Align":
			if not isinstance(value, int) or isinstance(value, bool) or value < 1 or value & (value - 1):
				raise GhostError(f"{type_name}: Align must be a positive power of two")
			return GhostTag(key, value, GhostTagKind.LAYOUT)
		if key == "FieldOrder":
			if isinstance(value, str):
				value = [value]
			if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
				raise GhostError(f"{type_name}: FieldOrder expects a list of field names")
			resolved = self.types.resolve(type_name)
			if resolved.kind is not TypeDefKind.RECORD:
				raise GhostConflictError(f"{type_name}: FieldOrder applies to record types only")
			declared = [name for name, _ in resolved.fields]
			if sorted(value) != sorted(declared):
				raise GhostConflictError(
					f"{type_name}: FieldOrder {list(value)} is not a permutation of fields {declared}"
				)
			return GhostTag(key, tuple(value), GhostTagKind.LAYOUT)
		frozen = tuple(value) if isinstance(value, list) else value
		return GhostTag(key, frozen, GhostTagKind.HINT)

	def _check_conflicts(self, type_name: str, existing: List[GhostTag], tag: GhostTag) -> None:
		if tag.kind is GhostTagKind.LAYOUT:
			for other in existing:
				if other.key == tag.key and other.value != tag.value:
					raise GhostConflictError(f"{type_name}: conflicting layout directives {other} and {tag}")
			layout = tag.value if tag.key == "Layout" else next(
				(t.value for t in existing if t.key == "Layout"), None
			)
			align = tag.value if tag.key == "Align" else next(
				(t.value for t in existing if t.key == "Align"), None
			)
			if layout == "packed" and align is not None and align > 1:
				raise GhostConflictError(f"{type_name}: a packed layout cannot also request Align = {align}")
		elif tag.key in ("Min", "Max"):
			mins = [t.value for t in existing + [tag] if t.key == "Min"]
			maxs = [t.value for t in existing + [tag] if t.key == "Max"]
			if mins and maxs and max(mins) > min(maxs):
				raise GhostConflictError(
					f"{type_name}: Min {max(mins)} exceeds Max {min(maxs)}; no value can satisfy both"
				)

	def _compiled(self, pattern: str) -> "re.Pattern[str]":
		compiled = self._regex.get(pattern)
		if compiled is None:
			try:
				compiled = re.compile(pattern)
			except re.error as err:
				raise GhostError(f"Invalid regex pattern '{pattern}': {err}") from err
			self._regex[pattern] = compiled
		return compiled

	# Queries

	def get(self, type_name: str) -> Optional[GhostType]:
		with self._lock:
			return self._ghosts.get(type_name)

	def state(self, type_name: str) -> Optional[ResolutionState]:
		ghost = self.get(type_name)
		return ghost.state if ghost is not None else None

	def predicates(self, type_name: str) -> List[Tuple[str, GhostTag]]:
		"""Predicate tags that apply to `type_name`, along its alias chain."""
		out: List[Tuple[str, GhostTag]] = []
		for tdef in self.types.alias_chain(type_name):
			ghost = self.get(tdef.name)
			if ghost is not None:
				out.extend((tdef.name, t) for t in ghost.predicates)
		return out

	def has_predicates(self, type_name: str, _seen: Optional[set] = None) -> bool:
		"""True if validating a value of `type_name` can fail (fields and elements included)."""
		seen = _seen if _seen is not None else set()
		if type_name in seen or not self.types.has(type_name):
			return False
		seen.add(type_name)
		if self.predicates(type_name):
			return True
		for tdef in self.types.alias_chain(type_name):
			if tdef.elem is not None and self.has_predicates(tdef.elem, seen):
				return True
		resolved = self.types.resolve(type_name)
		return any(self.has_predicates(ftype, seen) for _, ftype in resolved.fields)

	def needs_validation(self, ref: Any) -> bool:
		"""`ref` is an MTypeRef (name plus optional type arguments)."""
		if self.has_predicates(ref.name):
			return True
		return any(self.needs_validation(arg) for arg in ref.args)

	# Validation

	def validate(self, type_name: str, value: Any) -> None:
		"""Check a plain value against every predicate reachable from `type_name`."""
		for owner, tag in self.predicates(type_name):
			self._check(owner, tag, value)
		for tdef in self.types.alias_chain(type_name):
			if tdef.elem is not None and isinstance(value, list):
				for item in value:
					self.validate(tdef.elem, item)
		resolved = self.types.resolve(type_name)
		if resolved.kind is TypeDefKind.RECORD and isinstance(value, dict):
			for fname, ftype in resolved.fields:
				if fname in value:
					self.validate(ftype, value[fname])

	def validate_annotation(self, ref: Any, value: Any) -> None:
		if ref.args and isinstance(value, list) and self.types.resolve(ref.name).base is TypeKind.LIST:
			for item in value:
				self.validate_annotation(ref.args[0], item)
		self.validate(ref.name, value)

	def _check(self, type_name: str, tag: GhostTag, value: Any) -> None:
		if tag.key == "Regex":
			if isinstance(value, str) and self._compiled(tag.value).search(value) is None:
				raise GhostValidationError(type_name, f"Value '{value}' does not match pattern '{tag.value}'")
		elif tag.key == "Min":
			if _is_number(value) and value < tag.value:
				raise GhostValidationError(
					type_name, f"Value {display_plain(value)} is less than minimum {display_plain(tag.value)}"
				)
		elif tag.key == "Max":
			if _is_number(value) and value > tag.value:
				raise GhostValidationError(
					type_name, f"Value {display_plain(value)} is greater than maximum {display_plain(tag.value)}"
				)

	# Erasure

	def erase(self, type_name: str, observed: ShapeType) -> ErasureResult:
		"""
		Try to discharge every predicate of `type_name` for all values of
		shape `observed`.

		Erased(layout) when all of them hold (or cannot apply to that shape);
		Retained(checks, layout) otherwise. Erasure is recorded per shape: a
		type erased on one shape is proven again for any other.
		"""
		with self._lock:
			ghost = self._ghosts.get(type_name)
			if ghost is not None and observed in ghost.erasures:
				return Erased(type_name, ghost.erasures[observed])
			unproven = self._unproven(type_name, observed, set())
			layout = self.layout_for(type_name, observed)
			if unproven:
				return Retained(type_name, tuple(unproven), layout)
			ghost = ghost or GhostType(name=type_name)
			ghost.state = ResolutionState.ERASED
			ghost.erasures[observed] = layout
			self._ghosts[type_name] = ghost
			return Erased(type_name, layout)

	def _unproven(self, type_name: str, observed: ShapeType, seen: set) -> List[str]:
		if type_name in seen:
			return []
		seen = seen | {type_name}
		out: List[str] = []
		for owner, tag in self.predicates(type_name):
			if not self._provable(tag, observed):
				out.append(f"{owner}.{tag}")
		for tdef in self.types.alias_chain(type_name):
			if tdef.elem is not None:
				elem_shape = observed.elem if observed.kind is TypeKind.LIST and observed.elem else ANY
				out.extend(self._unproven(tdef.elem, elem_shape, seen))
		resolved = self.types.resolve(type_name)
		if resolved.kind is TypeDefKind.RECORD:
			for fname, ftype in resolved.fields:
				fshape = observed.field(fname) if observed.kind is TypeKind.RECORD else None
				out.extend(self._unproven(ftype, fshape or ANY, seen))
		return out

	@staticmethod
	def _provable(tag: GhostTag, observed: ShapeType) -> bool:
		kind = observed.kind
		if kind is TypeKind.ANY:
			return False
		if tag.key == "Regex":
			if kind is not TypeKind.STRING:
				return True  # vacuous: the predicate never applies
			return _regex_is_total(tag.value)
		if tag.key in ("Min", "Max"):
			if kind is TypeKind.INT:
				return tag.value <= I64_MIN if tag.key == "Min" else tag.value >= I64_MAX
			if kind is TypeKind.FLOAT:
				return tag.value == -math.inf if tag.key == "Min" else tag.value == math.inf
			return True
		return True

	# Layout

	def layout_for(self, type_name: str, observed: ShapeType) -> PhysicalLayout:
		strategy = "natural"
		order: Optional[Tuple[str, ...]] = None
		align_override = 1
		# directives on alias targets apply unless the alias overrides them
		for tdef in reversed(self.types.alias_chain(type_name)):
			ghost = self.get(tdef.name)
			if ghost is None:
				continue
			for t in ghost.tags:
				if t.key == "Layout":
					strategy = t.value
				elif t.key == "FieldOrder":
					order = t.value
				elif t.key == "Align":
					align_override = t.value
		resolved = self.types.resolve(type_name)
		if resolved.kind is TypeDefKind.RECORD:
			names = [name for name, _ in resolved.fields]
			shapes = {
				name: (observed.field(name) if observed.kind is TypeKind.RECORD else None)
				or ShapeType(self.types.resolve(ftype).base)
				for name, ftype in resolved.fields
			}
			return _record_layout(type_name, names, shapes, strategy, order, align_override)
		kind = observed.kind if observed.kind is not TypeKind.ANY else resolved.base
		size, align = _slot(ShapeType(kind) if kind is not observed.kind else observed)
		if strategy == "packed":
			align = 1
		align = max(align, align_override)
		return PhysicalLayout(type_name, strategy, _round_up(size, align), align)


def _round_up(size: int, align: int) -> int:
	return (size + align - 1) // align * align


def _slot(shape: ShapeType) -> Tuple[int, int]:
	if shape.kind is TypeKind.RECORD:
		names = [name for name, _ in shape.fields]
		inner = _record_layout("<anon>", names, dict(shape.fields), "natural", None, 1)
		return inner.size, inner.align
	return _SLOT[shape.kind]


def _record_layout(
	type_name: str,
	names: List[str],
	shapes: Dict[str, ShapeType],
	strategy: str,
	order: Optional[Tuple[str, ...]],
	align_override: int,
) -> PhysicalLayout:
	if order is not None:
		names = list(order)
	elif strategy == "natural":
		# largest alignment first; stable, so ties keep declaration order
		names = sorted(names, key=lambda n: -_slot(shapes[n])[1])
	offset = 0
	struct_align = 1
	slots: List[FieldSlot] = []
	for name in names:
		size, align = _slot(shapes[name])
		if strategy != "packed":
			offset = _round_up(offset, align)
			struct_align = max(struct_align, align)
		slots.append(FieldSlot(name, offset, size, str(shapes[name])))
		offset += size
	struct_align = max(struct_align, align_override)
	size = offset if strategy == "packed" else _round_up(offset, struct_align)
	return PhysicalLayout(type_name, strategy, size, struct_align, tuple(slots))


__all__ = [
	"PREDICATE_KEYS",
	"LAYOUT_KEYS",
	"GhostTagKind",
	"GhostTag",
	"ResolutionState",
	"FieldSlot",
	"PhysicalLayout",
	"Erased",
	"Retained",
	"ErasureResult",
	"GhostType",
	"GhostResolver",
]
