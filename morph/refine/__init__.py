# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Refine-stage analysis: shape inference, Pulse checking and ghost erasure for one TypeShape.
"""

__all__ = []
