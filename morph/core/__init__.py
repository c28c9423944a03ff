# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Core data shared across the engine: spans, diagnostics, errors, types, config."""

from .config import EngineConfig, load_config
from .diagnostics import Diagnostic, DiagnosticSink
from .span import Span
from .types_core import ShapeType, TypeKind, TypeShape, TypeTable

__all__ = [
	"Diagnostic",
	"DiagnosticSink",
	"EngineConfig",
	"ShapeType",
	"Span",
	"TypeKind",
	"TypeShape",
	"TypeTable",
	"load_config",
]
