# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Ghost types: annotation, runtime validation and erasure to physical layouts.
"""

__all__ = []
