# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Pulse arena: the runtime ownership substrate.

Zones are integer ids into an arena that belongs to exactly one logical call
stack. They nest strictly: `open_zone` only accepts the innermost open zone
as parent, and `seal_zone` only the innermost zone itself, so the open zones
always form a stack. Values are referenced by `PulseRef` handles; a value is
owned by exactly one zone, and ownership moves only through `claim`, one
level at a time, toward the root. Sealing a zone reclaims every value it
still owns; there is no tracing collector.

Scalars (Int, Float, Bool, Unit) are Copy and never enter the arena.

Cross-stack transfer is a move: `move_out` tombstones the values in the
source arena and returns a `Parcel`; `adopt` installs the payloads into
another arena's zone. A handle to a moved value raises
OwnershipConflictError on any later use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from morph.core.errors import (
	DanglingPulseError,
	InvalidParentError,
	NotDirectParentError,
	OwnershipConflictError,
	PulseError,
)

ZoneId = int
ValueId = int


class ZoneStatus(Enum):
	OPEN = auto()
	SEALED = auto()


@dataclass(frozen=True)
class PulseRef:
	"""Handle to a heap value (String, List, Record) in some arena."""

	value_id: ValueId

	def __repr__(self) -> str:
		return f"PulseRef(#{self.value_id})"


@dataclass
class ZoneRecord:
	zone_id: ZoneId
	parent: Optional[ZoneId]
	depth: int
	status: ZoneStatus = ZoneStatus.OPEN
	owned: Set[ValueId] = field(default_factory=set)


@dataclass
class ValueRecord:
	value_id: ValueId
	payload: Any
	zone: ZoneId
	origin: ZoneId
	claimed: bool = False


@dataclass(frozen=True)
class Parcel:
	"""Payloads moved out of one arena, in handle order."""

	payloads: Tuple[Any, ...]
	source: str


class PulseArena:
	"""
	Zone stack plus value table for one logical call stack.

	Not thread-safe: an arena is never shared between concurrently running
	stacks. The root zone (parent None) is opened at construction.
	"""

	def __init__(self, name: str = "stack") -> None:
		self.name = name
		self._zones: List[ZoneRecord] = []
		self._stack: List[ZoneId] = []
		self._values: Dict[ValueId, ValueRecord] = {}
		self._moved: Set[ValueId] = set()
		self._next_value: ValueId = 1
		self._push_zone(None)

	# Zones

	def _push_zone(self, parent: Optional[ZoneId]) -> ZoneId:
		zid = len(self._zones)
		depth = 0 if parent is None else self._zones[parent].depth + 1
		self._zones.append(ZoneRecord(zone_id=zid, parent=parent, depth=depth))
		self._stack.append(zid)
		return zid

	def _zone(self, zone: ZoneId) -> ZoneRecord:
		if not 0 <= zone < len(self._zones):
			raise PulseError(f"unknown zone {zone} in arena '{self.name}'")
		return self._zones[zone]

	@property
	def root(self) -> ZoneId:
		return 0

	@property
	def current(self) -> ZoneId:
		if not self._stack:
			raise PulseError(f"arena '{self.name}' has no open zone")
		return self._stack[-1]

	@property
	def open_depth(self) -> int:
		return len(self._stack)

	def open_zone(self, parent: ZoneId) -> ZoneId:
		"""Open a child of `parent`, which must be the innermost open zone."""
		rec = self._zone(parent)
		if rec.status is ZoneStatus.SEALED:
			raise InvalidParentError(f"cannot open a zone under sealed zone {parent}")
		if self._stack[-1] != parent:
			raise InvalidParentError(
				f"zone {parent} is not the innermost open zone (innermost is {self._stack[-1]})"
			)
		return self._push_zone(parent)

	def seal_zone(self, zone: ZoneId) -> int:
		"""
		Seal `zone` and reclaim every value it still owns.

		Returns the number of reclaimed values. Sealing a zone that still has
		an open descendant raises DanglingPulseError.
		"""
		rec = self._zone(zone)
		if rec.status is ZoneStatus.SEALED:
			raise PulseError(f"zone {zone} is already sealed")
		if self._stack[-1] != zone:
			raise DanglingPulseError(
				f"zone {zone} cannot seal while descendant zone {self._stack[-1]} is open"
			)
		self._stack.pop()
		rec.status = ZoneStatus.SEALED
		reclaimed = len(rec.owned)
		for vid in rec.owned:
			del self._values[vid]
		rec.owned = set()
		return reclaimed

	def parent(self, zone: ZoneId) -> Optional[ZoneId]:
		return self._zone(zone).parent

	def depth(self, zone: ZoneId) -> int:
		return self._zone(zone).depth

	def status(self, zone: ZoneId) -> ZoneStatus:
		return self._zone(zone).status

	def is_open(self, zone: ZoneId) -> bool:
		return self._zone(zone).status is ZoneStatus.OPEN

	def is_ancestor(self, ancestor: ZoneId, zone: ZoneId) -> bool:
		"""True when `ancestor` is `zone` or encloses it."""
		cursor: Optional[ZoneId] = zone
		target_depth = self._zone(ancestor).depth
		while cursor is not None and self._zones[cursor].depth >= target_depth:
			if cursor == ancestor:
				return True
			cursor = self._zones[cursor].parent
		return False

	def open_zones(self) -> List[ZoneId]:
		return list(self._stack)

	# Values

	def alloc(self, payload: Any, zone: Optional[ZoneId] = None) -> PulseRef:
		"""Create a value owned by `zone` (default: the innermost open zone)."""
		zid = self.current if zone is None else zone
		rec = self._zone(zid)
		if rec.status is ZoneStatus.SEALED:
			raise OwnershipConflictError(f"cannot allocate in sealed zone {zid}")
		vid = self._next_value
		self._next_value += 1
		self._values[vid] = ValueRecord(value_id=vid, payload=payload, zone=zid, origin=zid)
		rec.owned.add(vid)
		return PulseRef(vid)

	def _record(self, ref: PulseRef) -> ValueRecord:
		rec = self._values.get(ref.value_id)
		if rec is not None:
			return rec
		if ref.value_id in self._moved:
			raise OwnershipConflictError(f"value #{ref.value_id} was moved to another stack")
		raise DanglingPulseError(f"value #{ref.value_id} was reclaimed when its zone sealed")

	def payload(self, ref: PulseRef) -> Any:
		return self._record(ref).payload

	def owner(self, ref: PulseRef) -> ZoneId:
		return self._record(ref).zone

	def was_claimed(self, ref: PulseRef) -> bool:
		return self._record(ref).claimed

	def origin(self, ref: PulseRef) -> ZoneId:
		return self._record(ref).origin

	def is_live(self, ref: PulseRef) -> bool:
		return ref.value_id in self._values

	def claim(self, ref: PulseRef, target: ZoneId) -> None:
		"""Move ownership of `ref` from its zone to that zone's direct parent `target`."""
		rec = self._record(ref)
		tgt = self._zone(target)
		if tgt.status is ZoneStatus.SEALED:
			raise OwnershipConflictError(f"cannot claim value #{ref.value_id} into sealed zone {target}")
		src = self._zones[rec.zone]
		if src.parent != target:
			raise NotDirectParentError(
				f"zone {target} is not the direct parent of zone {rec.zone} owning value #{ref.value_id}"
			)
		src.owned.discard(rec.value_id)
		tgt.owned.add(rec.value_id)
		rec.zone = target
		rec.claimed = True

	def owned_by(self, zone: ZoneId) -> List[PulseRef]:
		return [PulseRef(v) for v in sorted(self._zone(zone).owned)]

	def live_count(self) -> int:
		return len(self._values)

	# Cross-stack moves

	def move_out(self, refs: Iterable[PulseRef]) -> Parcel:
		"""
		Remove `refs` from this arena wholesale and return their payloads.

		Every handle is checked before anything moves, so a failure leaves
		the arena untouched.
		"""
		refs = list(refs)
		records = [self._record(r) for r in refs]
		if len({r.value_id for r in refs}) != len(refs):
			raise OwnershipConflictError("the same value cannot be moved twice in one parcel")
		for rec in records:
			self._zones[rec.zone].owned.discard(rec.value_id)
			del self._values[rec.value_id]
			self._moved.add(rec.value_id)
		return Parcel(payloads=tuple(rec.payload for rec in records), source=self.name)

	def adopt(self, parcel: Parcel, zone: Optional[ZoneId] = None) -> List[PulseRef]:
		"""Install a parcel's payloads as fresh values owned by `zone`."""
		return [self.alloc(payload, zone) for payload in parcel.payloads]


__all__ = [
	"ZoneId",
	"ValueId",
	"ZoneStatus",
	"PulseRef",
	"ZoneRecord",
	"ValueRecord",
	"Parcel",
	"PulseArena",
]
