# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import random

import pytest

from morph.core.errors import (
	DanglingPulseError,
	InvalidParentError,
	NotDirectParentError,
	OwnershipConflictError,
	PulseError,
)
from morph.pulse.arena import PulseArena, ZoneStatus


def test_root_zone_is_open():
	arena = PulseArena()
	assert arena.current == arena.root == 0
	assert arena.parent(0) is None
	assert arena.depth(0) == 0
	assert arena.is_open(0)


def test_open_zone_needs_innermost_parent():
	arena = PulseArena()
	a = arena.open_zone(arena.root)
	assert arena.depth(a) == 1
	with pytest.raises(InvalidParentError):
		arena.open_zone(arena.root)
	b = arena.open_zone(a)
	assert arena.open_zones() == [0, a, b]
	assert arena.is_ancestor(0, b)
	assert arena.is_ancestor(b, b)
	assert not arena.is_ancestor(b, a)


def test_seal_requires_innermost_and_reclaims():
	arena = PulseArena()
	a = arena.open_zone(arena.root)
	b = arena.open_zone(a)
	with pytest.raises(DanglingPulseError):
		arena.seal_zone(a)
	refs = [arena.alloc("x"), arena.alloc([1, 2])]
	assert arena.seal_zone(b) == 2
	assert arena.status(b) is ZoneStatus.SEALED
	with pytest.raises(PulseError):
		arena.seal_zone(b)
	for ref in refs:
		assert not arena.is_live(ref)
		with pytest.raises(DanglingPulseError):
			arena.payload(ref)
	with pytest.raises(InvalidParentError):
		arena.open_zone(b)


def test_claim_moves_one_level_at_a_time():
	arena = PulseArena()
	a = arena.open_zone(arena.root)
	b = arena.open_zone(a)
	ref = arena.alloc("hello", b)
	with pytest.raises(NotDirectParentError):
		arena.claim(ref, arena.root)
	arena.claim(ref, a)
	arena.claim(ref, arena.root)
	assert arena.owner(ref) == arena.root
	assert arena.origin(ref) == b
	assert arena.was_claimed(ref)
	assert arena.seal_zone(b) == 0
	assert arena.seal_zone(a) == 0
	assert arena.payload(ref) == "hello"


def test_claimed_value_is_reclaimed_with_its_new_owner():
	arena = PulseArena()
	a = arena.open_zone(arena.root)
	b = arena.open_zone(a)
	ref = arena.alloc("v", b)
	arena.claim(ref, a)
	arena.seal_zone(b)
	assert arena.owned_by(a) == [ref]
	arena.seal_zone(a)
	assert not arena.is_live(ref)


def test_move_out_and_adopt():
	source = PulseArena("caller")
	target = PulseArena("worker")
	keep = source.alloc("stay")
	first = source.alloc([1, 2])
	second = source.alloc({"k": "v"})
	parcel = source.move_out([first, second])
	assert parcel.payloads == ([1, 2], {"k": "v"})
	assert parcel.source == "caller"
	with pytest.raises(OwnershipConflictError):
		source.payload(first)
	assert source.payload(keep) == "stay"
	adopted = target.adopt(parcel)
	assert [target.payload(r) for r in adopted] == [[1, 2], {"k": "v"}]
	assert all(target.owner(r) == target.root for r in adopted)


def test_move_out_is_all_or_nothing():
	arena = PulseArena()
	ref = arena.alloc("once")
	with pytest.raises(OwnershipConflictError):
		arena.move_out([ref, ref])
	assert arena.payload(ref) == "once"
	arena.move_out([ref])
	with pytest.raises(OwnershipConflictError):
		arena.move_out([ref])


def test_random_zone_programs_keep_the_stack_discipline():
	rng = random.Random(1234)
	for _ in range(50):
		arena = PulseArena()
		stack = [arena.root]
		owner = {}
		for _ in range(200):
			op = rng.choice(["open", "seal", "alloc", "claim"])
			if op == "open":
				stack.append(arena.open_zone(stack[-1]))
			elif op == "seal" and len(stack) > 1:
				zone = stack.pop()
				gone = [r for r, z in owner.items() if z == zone]
				assert arena.seal_zone(zone) == len(gone)
				for ref in gone:
					del owner[ref]
			elif op == "alloc":
				ref = arena.alloc(rng.random())
				owner[ref] = stack[-1]
			elif op == "claim" and owner:
				ref = rng.choice(sorted(owner, key=lambda r: r.value_id))
				zone = owner[ref]
				parent = arena.parent(zone)
				if parent is None:
					continue
				arena.claim(ref, parent)
				owner[ref] = parent
			assert arena.open_zones() == stack
			for depth, zone in enumerate(stack):
				assert arena.depth(zone) == depth
			assert arena.live_count() == len(owner)
			for ref, zone in owner.items():
				assert arena.owner(ref) == zone
				assert arena.is_open(zone)
