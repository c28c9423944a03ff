# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Source positions for IR nodes and diagnostics.

Morph positions are 1-based and come from lark: tokens, rule metadata and
parse errors all carry `line`/`column`. IR built by hand has no position
and uses `Span()`, which prints as `<input>`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

_POSITION = ("line", "column", "end_line", "end_column")


def _position(value: Any) -> Optional[int]:
	# lark reports -1 for positions it does not know (end of input)
	return value if isinstance(value, int) and value > 0 else None


@dataclass(frozen=True)
class Span:
	file: Optional[str] = None
	line: Optional[int] = None
	column: Optional[int] = None
	end_line: Optional[int] = None
	end_column: Optional[int] = None

	@classmethod
	def at(cls, where: Any, file: Optional[str] = None) -> "Span":
		"""
		Position of a lark Token, Tree or Meta, or of a lark parse error,
		in `file`. A Tree contributes its `meta`; an empty rule has none.
		"""
		meta = getattr(where, "meta", where)
		if meta is None or getattr(meta, "empty", False):
			return cls(file=file)
		return cls(file, *(_position(getattr(meta, name, None)) for name in _POSITION))

	def __str__(self) -> str:
		parts = [self.file or "<input>"]
		if self.line is not None:
			parts.append(str(self.line))
			if self.column is not None:
				parts.append(str(self.column))
		return ":".join(parts)

	def to_dict(self) -> Dict[str, Any]:
		return asdict(self)


__all__ = ["Span"]
