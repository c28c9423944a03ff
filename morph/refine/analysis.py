# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Refine-stage analysis: everything hardening needs to know about one function
under its dominant TypeShape.

  1. shape inference (`infer_function`)
  2. static Pulse ownership check (`check_function`)
  3. ghost erasure of every annotation site (parameters, `let`, return)

The result is a `RefineReport`. Error diagnostics make the report fail;
retained ghost checks do not, unless the policy is "refuse".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from morph.core.diagnostics import Diagnostic
from morph.core.errors import UnknownTypeError
from morph.core.types_core import ANY, ShapeType, TypeKind, TypeShape
from morph.ghost.resolver import ErasureResult, GhostResolver, PhysicalLayout, Retained
from morph.ir.nodes import MFunction, MLet, MNode, MTypeRef, number_nodes, walk
from morph.pulse.checker import PulseReport, check_function

from .infer import FunctionLookup, InferenceResult, infer_function


@dataclass(frozen=True)
class GhostSite:
	"""One annotated position and what erasure decided for it."""

	label: str  # "param email", "let total", "return"
	node: MNode
	ref: MTypeRef
	results: tuple  # ErasureResult per type reachable from `ref`

	@property
	def retained(self) -> List[Retained]:
		return [r for r in self.results if isinstance(r, Retained)]

	@property
	def erased(self) -> bool:
		return not self.retained


@dataclass
class RefineReport:
	function: str
	shape: TypeShape
	inference: InferenceResult
	pulse: PulseReport
	sites: List[GhostSite] = field(default_factory=list)
	diagnostics: List[Diagnostic] = field(default_factory=list)

	@property
	def ok(self) -> bool:
		return not any(d.is_error for d in self.diagnostics)

	@property
	def retained_sites(self) -> List[GhostSite]:
		return [s for s in self.sites if not s.erased]

	def site(self, node: MNode) -> Optional[GhostSite]:
		for s in self.sites:
			if s.node is node:
				return s
		return None

	def layouts(self) -> Dict[str, PhysicalLayout]:
		out: Dict[str, PhysicalLayout] = {}
		for s in self.sites:
			for r in s.results:
				out.setdefault(r.type_name, r.layout)
		return out


def _erase_ref(ghosts: GhostResolver, ref: MTypeRef, observed: ShapeType) -> List[ErasureResult]:
	results: List[ErasureResult] = [ghosts.erase(ref.name, observed)]
	if ref.args:
		elem = observed.elem if observed.kind is TypeKind.LIST and observed.elem is not None else ANY
		for arg in ref.args:
			results.extend(_erase_ref(ghosts, arg, elem))
	return results


def analyze(
	fn: MFunction,
	shape: TypeShape,
	ghosts: GhostResolver,
	*,
	lookup: Optional[FunctionLookup] = None,
	arity_of: Optional[Callable[[str], Optional[int]]] = None,
	ghost_policy: str = "retain",
) -> RefineReport:
	if len(shape) != fn.arity:
		raise ValueError(f"shape {shape} has {len(shape)} entries but '{fn.name}' takes {fn.arity} parameters")
	if arity_of is None:

		def arity_of(name: str) -> Optional[int]:
			callee = lookup(name) if lookup is not None else None
			return callee.arity if callee is not None else None

	number_nodes(fn)
	inference = infer_function(fn, shape, lookup)
	pulse = check_function(fn, inference, arity_of)
	report = RefineReport(function=fn.name, shape=shape, inference=inference, pulse=pulse)
	report.diagnostics.extend(pulse.diagnostics)

	pending = []
	for param, observed in zip(fn.params, shape.args):
		if param.annotation is not None:
			pending.append((f"param {param.name}", param, param.annotation, observed))
	for node in walk(fn.body):
		if isinstance(node, MLet) and node.annotation is not None:
			pending.append((f"let {node.name}", node, node.annotation, inference.type_of(node.value)))
	if fn.return_type is not None:
		pending.append(("return", fn, fn.return_type, inference.returns))

	for label, node, ref, observed in pending:
		try:
			results = _erase_ref(ghosts, ref, observed)
		except UnknownTypeError as err:
			report.diagnostics.append(
				Diagnostic(
					message=f"{label}: {err}",
					code="E-NAME-UNKNOWN",
					phase="ghost",
					span=ref.span,
					function=fn.name,
				)
			)
			continue
		site = GhostSite(label=label, node=node, ref=ref, results=tuple(results))
		report.sites.append(site)
		if site.erased:
			continue
		checks = [c for r in site.retained for c in r.checks]
		if ghost_policy == "refuse":
			report.diagnostics.append(
				Diagnostic(
					message=f"{label}: cannot prove {', '.join(checks)} for every {observed} value",
					code="E-GHOST-REFUSED",
					phase="ghost",
					span=ref.span,
					notes=["the engine is configured to refuse hardening rather than keep a runtime check"],
					function=fn.name,
				)
			)
		else:
			report.diagnostics.append(
				Diagnostic(
					message=f"{label}: keeping runtime check {', '.join(checks)}",
					code="N-GHOST-RETAINED",
					phase="ghost",
					severity="note",
					span=ref.span,
					function=fn.name,
				)
			)
	return report


__all__ = ["GhostSite", "RefineReport", "analyze"]
