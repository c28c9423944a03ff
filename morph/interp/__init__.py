# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Tree-walking interpreter over Morph IR plus the runtime value model and builtins.
"""

__all__ = []
