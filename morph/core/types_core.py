# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Type core shared by the profiler, ghost resolver and hardening passes.

Two layers live here:

- `ShapeType` / `TypeShape`: structural signatures of runtime values, the
  currency of the profiler. A TypeShape is the tuple of argument shapes of
  one call; shapes compare structurally (dataclass equality), never by
  identity, so equal signatures built independently hash alike.
- `TypeTable`: named, declared types (`Int`, `Email`, `Point`, ...). Ghost
  metadata is not stored here; the ghost resolver keys its tags by the type
  names this table owns.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import UnknownTypeError


class TypeKind(Enum):
	"""Runtime value kinds understood by the engine."""

	INT = "Int"
	FLOAT = "Float"
	BOOL = "Bool"
	STRING = "String"
	LIST = "List"
	RECORD = "Record"
	UNIT = "Unit"
	ANY = "Any"  # join of unrelated kinds; never observed directly

	@property
	def is_copy(self) -> bool:
		"""Copy kinds are never zone-owned."""
		return self in _COPY_KINDS

	@property
	def is_numeric(self) -> bool:
		return self in (TypeKind.INT, TypeKind.FLOAT)


_COPY_KINDS = frozenset({TypeKind.INT, TypeKind.FLOAT, TypeKind.BOOL, TypeKind.UNIT})


@dataclass(frozen=True)
class ShapeType:
	"""
	Structural type of one value.

	`elem` is the element shape of a List (ANY when heterogeneous or
	empty); `fields` holds a Record's fields sorted by name.
	"""

	kind: TypeKind
	elem: Optional["ShapeType"] = None
	fields: Tuple[Tuple[str, "ShapeType"], ...] = ()

	def __str__(self) -> str:
		if self.kind is TypeKind.LIST:
			return f"List[{self.elem or ANY}]"
		if self.kind is TypeKind.RECORD:
			inner = ", ".join(f"{name}: {shape}" for name, shape in self.fields)
			return "{" + inner + "}"
		return self.kind.value

	@property
	def is_copy(self) -> bool:
		return self.kind.is_copy

	@property
	def is_scalar(self) -> bool:
		return self.kind in (TypeKind.INT, TypeKind.FLOAT, TypeKind.BOOL)

	def field(self, name: str) -> Optional["ShapeType"]:
		for fname, shape in self.fields:
			if fname == name:
				return shape
		return None

	def to_json(self) -> Any:
		if self.kind is TypeKind.LIST:
			return {"list": (self.elem or ANY).to_json()}
		if self.kind is TypeKind.RECORD:
			return {"record": {name: shape.to_json() for name, shape in self.fields}}
		return self.kind.value

	@classmethod
	def from_json(cls, data: Any) -> "ShapeType":
		if isinstance(data, str):
			return cls(TypeKind(data))
		if "list" in data:
			return list_of(cls.from_json(data["list"]))
		return record_of({name: cls.from_json(sub) for name, sub in data["record"].items()})


INT = ShapeType(TypeKind.INT)
FLOAT = ShapeType(TypeKind.FLOAT)
BOOL = ShapeType(TypeKind.BOOL)
STRING = ShapeType(TypeKind.STRING)
UNIT = ShapeType(TypeKind.UNIT)
ANY = ShapeType(TypeKind.ANY)

_SCALAR_NAMES = {
	"Int": INT,
	"i64": INT,
	"Float": FLOAT,
	"f64": FLOAT,
	"Bool": BOOL,
	"bool": BOOL,
	"String": STRING,
	"str": STRING,
	"Unit": UNIT,
	"Any": ANY,
}


def list_of(elem: ShapeType) -> ShapeType:
	return ShapeType(TypeKind.LIST, elem=elem)


def record_of(fields: Dict[str, ShapeType]) -> ShapeType:
	return ShapeType(TypeKind.RECORD, fields=tuple(sorted(fields.items())))


def join_shapes(a: ShapeType, b: ShapeType) -> ShapeType:
	"""Least upper bound used by inference; unrelated kinds join to ANY."""
	if a == b:
		return a
	if a.kind is TypeKind.LIST and b.kind is TypeKind.LIST:
		return list_of(join_shapes(a.elem or ANY, b.elem or ANY))
	return ANY


def shape_of_plain(value: Any) -> ShapeType:
	"""
	Shape of a plain payload (int/float/bool/str/list/dict/None).

	`bool` is tested before `int`: Python booleans are ints.
	"""
	if isinstance(value, bool):
		return BOOL
	if isinstance(value, int):
		return INT
	if isinstance(value, float):
		return FLOAT
	if isinstance(value, str):
		return STRING
	if value is None:
		return UNIT
	if isinstance(value, list):
		if not value:
			return list_of(ANY)
		elem = shape_of_plain(value[0])
		for item in value[1:]:
			if elem is ANY:
				break
			elem = join_shapes(elem, shape_of_plain(item))
		return list_of(elem)
	if isinstance(value, dict):
		return record_of({str(k): shape_of_plain(v) for k, v in value.items()})
	raise TypeError(f"not a Morph value: {value!r}")


@dataclass(frozen=True)
class TypeShape:
	"""Argument-type signature of one call."""

	args: Tuple[ShapeType, ...] = ()

	def __str__(self) -> str:
		return "(" + ", ".join(str(a) for a in self.args) + ")"

	def __len__(self) -> int:
		return len(self.args)

	@classmethod
	def of(cls, shapes: Iterable[ShapeType]) -> "TypeShape":
		return cls(tuple(shapes))

	@classmethod
	def of_plain(cls, values: Iterable[Any]) -> "TypeShape":
		return cls(tuple(shape_of_plain(v) for v in values))

	@classmethod
	def parse(cls, text: str) -> "TypeShape":
		"""
		Parse "Int, Float" / "(i64,f64)" / "List[Int], {x: Int}".

		Used by the CLI and by trace files.
		"""
		text = text.strip()
		if text.startswith("(") and text.endswith(")"):
			text = text[1:-1]
		parser = _ShapeTextParser(text)
		shapes: List[ShapeType] = []
		if parser.peek() != "":
			shapes.append(parser.shape())
			while parser.accept(","):
				shapes.append(parser.shape())
		parser.expect_end()
		return cls(tuple(shapes))

	def to_json(self) -> list:
		return [a.to_json() for a in self.args]

	@classmethod
	def from_json(cls, data: list) -> "TypeShape":
		return cls(tuple(ShapeType.from_json(a) for a in data))


class _ShapeTextParser:
	def __init__(self, text: str) -> None:
		self.text = text
		self.pos = 0

	def _skip(self) -> None:
		while self.pos < len(self.text) and self.text[self.pos].isspace():
			self.pos += 1

	def peek(self) -> str:
		self._skip()
		return self.text[self.pos:self.pos + 1]

	def accept(self, ch: str) -> bool:
		if self.peek() == ch:
			self.pos += 1
			return True
		return False

	def expect(self, ch: str) -> None:
		if not self.accept(ch):
			raise ValueError(f"expected '{ch}' at offset {self.pos} in shape '{self.text}'")

	def expect_end(self) -> None:
		if self.peek() != "":
			raise ValueError(f"unexpected '{self.peek()}' at offset {self.pos} in shape '{self.text}'")

	def name(self) -> str:
		self._skip()
		start = self.pos
		while self.pos < len(self.text) and (self.text[self.pos].isalnum() or self.text[self.pos] == "_"):
			self.pos += 1
		if start == self.pos:
			raise ValueError(f"expected a type name at offset {start} in shape '{self.text}'")
		return self.text[start:self.pos]

	def shape(self) -> ShapeType:
		if self.accept("{"):
			fields: Dict[str, ShapeType] = {}
			if not self.accept("}"):
				while True:
					fname = self.name()
					self.expect(":")
					fields[fname] = self.shape()
					if self.accept("}"):
						break
					self.expect(",")
			return record_of(fields)
		name = self.name()
		if name == "List":
			elem = ANY
			if self.accept("["):
				elem = self.shape()
				self.expect("]")
			return list_of(elem)
		if name not in _SCALAR_NAMES:
			raise ValueError(f"unknown shape name '{name}'")
		return _SCALAR_NAMES[name]


# Declared types

class TypeDefKind(Enum):
	BUILTIN = "builtin"
	ALIAS = "alias"
	RECORD = "record"


@dataclass(frozen=True)
class TypeDef:
	"""
	A named type. Aliases point at another named type (`target`); records
	list their fields in declaration order.
	"""

	name: str
	kind: TypeDefKind
	base: TypeKind
	target: Optional[str] = None
	fields: Tuple[Tuple[str, str], ...] = ()
	elem: Optional[str] = None  # element type name for List<T>


BUILTIN_TYPES: Dict[str, TypeKind] = {
	"Int": TypeKind.INT,
	"Float": TypeKind.FLOAT,
	"Bool": TypeKind.BOOL,
	"String": TypeKind.STRING,
	"List": TypeKind.LIST,
	"Record": TypeKind.RECORD,
	"Unit": TypeKind.UNIT,
	"Any": TypeKind.ANY,
}


class TypeTable:
	"""
	Registry of named types.

	Builtins are seeded at construction. Declarations are idempotent for an
	identical definition; redefining a name differently raises ValueError.
	"""

	def __init__(self) -> None:
		self._defs: Dict[str, TypeDef] = {}
		self._lock = threading.Lock()
		for name, kind in BUILTIN_TYPES.items():
			self._defs[name] = TypeDef(name=name, kind=TypeDefKind.BUILTIN, base=kind)

	def _install(self, tdef: TypeDef) -> TypeDef:
		with self._lock:
			existing = self._defs.get(tdef.name)
			if existing is not None:
				if existing == tdef:
					return existing
				raise ValueError(f"type '{tdef.name}' is already defined differently")
			self._defs[tdef.name] = tdef
			return tdef

	def define_alias(self, name: str, target: str, elem: Optional[str] = None) -> TypeDef:
		base = self.lookup(target).base
		if elem is not None:
			self.lookup(elem)
		return self._install(TypeDef(name=name, kind=TypeDefKind.ALIAS, base=base, target=target, elem=elem))

	def define_record(self, name: str, fields: Iterable[Tuple[str, str]]) -> TypeDef:
		fields = tuple(fields)
		seen = set()
		for fname, ftype in fields:
			if fname in seen:
				raise ValueError(f"record '{name}' declares field '{fname}' twice")
			seen.add(fname)
			self.lookup(ftype)
		return self._install(TypeDef(name=name, kind=TypeDefKind.RECORD, base=TypeKind.RECORD, fields=fields))

	def lookup(self, name: str) -> TypeDef:
		try:
			return self._defs[name]
		except KeyError:
			raise UnknownTypeError(name) from None

	def has(self, name: str) -> bool:
		return name in self._defs

	def alias_chain(self, name: str) -> List[TypeDef]:
		"""`name` followed by every alias target down to a builtin or record."""
		chain: List[TypeDef] = []
		seen = set()
		tdef = self.lookup(name)
		while True:
			if tdef.name in seen:
				raise ValueError(f"type alias cycle through '{tdef.name}'")
			seen.add(tdef.name)
			chain.append(tdef)
			if tdef.kind is not TypeDefKind.ALIAS or tdef.target is None:
				return chain
			tdef = self.lookup(tdef.target)

	def resolve(self, name: str) -> TypeDef:
		"""The non-alias definition `name` stands for."""
		return self.alias_chain(name)[-1]

	def record_fields(self, name: str) -> Tuple[Tuple[str, str], ...]:
		return self.resolve(name).fields

	def names(self) -> List[str]:
		with self._lock:
			return sorted(self._defs)


__all__ = [
	"TypeKind",
	"ShapeType",
	"TypeShape",
	"INT",
	"FLOAT",
	"BOOL",
	"STRING",
	"UNIT",
	"ANY",
	"list_of",
	"record_of",
	"join_shapes",
	"shape_of_plain",
	"TypeDefKind",
	"TypeDef",
	"TypeTable",
	"BUILTIN_TYPES",
]
