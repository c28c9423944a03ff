# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Hardening: native execution forms, their kernels, and deoptimization back to the interpreter.
"""

__all__ = []
