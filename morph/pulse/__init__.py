# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Pulse zones: the runtime arena and the static ownership checker.
"""

__all__ = []
