# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
morph package: staging engine for Morph functions.

Subpackages:
  core: spans, diagnostics, errors, TypeShapes and config
  ir/parser: the IR and the lark front end that produces it
  pulse: zone arena and the static Pulse checker
  ghost: ghost-type resolution, validation and erasure
  interp: the tree-walking interpreter used in Draft/Observe/Refine
  refine: shape inference and the Refine analysis
  profile: per-function profiles and stage promotion
  harden: native forms (closure and LLVM kernels) and deoptimization

The host entry point is `morph.engine.MorphEngine`; the CLI is
`morph.cli:main`.
"""

__all__ = ["core", "ir", "parser", "pulse", "ghost", "interp", "refine", "profile", "harden"]
