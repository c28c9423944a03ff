# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Morph IR: sugar-free function bodies with explicit zone-marking blocks."""

from . import nodes
from .nodes import *  # noqa: F401,F403

__all__ = list(nodes.__all__)
