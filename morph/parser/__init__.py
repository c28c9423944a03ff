# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Front end for the Morph subset the engine stages (lark-based)."""

from .parser import TerminatorInserter, parse_file, parse_function, parse_module, tokenize

__all__ = ["TerminatorInserter", "parse_file", "parse_function", "parse_module", "tokenize"]
