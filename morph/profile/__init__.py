# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Stage profiler: per-function invocation histograms, stability scores and promotion.
"""

__all__ = []
