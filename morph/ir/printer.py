# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""Readable text dump of Morph IR (used by `morph parse`)."""

from __future__ import annotations

import json
from typing import List

from . import nodes as M


def format_literal(value: object) -> str:
	if value is None:
		return "()"
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, str):
		return json.dumps(value)
	return repr(value)


def format_type(ref: M.MTypeRef) -> str:
	if not ref.ghost:
		return str(ref)
	tags = ", ".join(f"{k} = {format_literal(v)}" for k, v in ref.ghost.items())
	return f"{ref}<Ghost: {tags}>"


def format_pattern(pattern: M.MPattern) -> str:
	if isinstance(pattern, M.MWildcard):
		return "_"
	if isinstance(pattern, M.MLiteralPattern):
		return format_literal(pattern.value)
	if isinstance(pattern, M.MRangePattern):
		return f"{pattern.lo}..{pattern.hi}"
	if isinstance(pattern, M.MBindPattern):
		return pattern.name
	return "<invalid pattern>"


def format_expr(expr: M.MExpr, indent: int = 0) -> str:
	if isinstance(expr, M.MLiteral):
		return format_literal(expr.value)
	if isinstance(expr, M.MVar):
		return expr.name
	if isinstance(expr, M.MUnary):
		return f"{expr.op.value}{format_expr(expr.operand, indent)}"
	if isinstance(expr, M.MBinary):
		return f"({format_expr(expr.left, indent)} {expr.op.value} {format_expr(expr.right, indent)})"
	if isinstance(expr, M.MCall):
		args = ", ".join(format_expr(a, indent) for a in expr.args)
		return f"{expr.callee}({args})"
	if isinstance(expr, M.MField):
		return f"{format_expr(expr.target, indent)}.{expr.name}"
	if isinstance(expr, M.MIndex):
		return f"{format_expr(expr.target, indent)}[{format_expr(expr.index, indent)}]"
	if isinstance(expr, M.MList):
		return "[" + ", ".join(format_expr(i, indent) for i in expr.items) + "]"
	if isinstance(expr, M.MRecord):
		return "{" + ", ".join(f"{k}: {format_expr(v, indent)}" for k, v in expr.fields) + "}"
	if isinstance(expr, M.MClaim):
		return f"claim {format_expr(expr.operand, indent)}"
	if isinstance(expr, M.MIf):
		text = f"if {format_expr(expr.cond, indent)} {format_block(expr.then_block, indent)}"
		if expr.else_block is not None:
			text += f" else {format_block(expr.else_block, indent)}"
		return text
	if isinstance(expr, M.MMatch):
		pad = "  " * (indent + 1)
		arms = "".join(
			f"{pad}{format_pattern(arm.pattern)} => {format_expr(arm.body, indent + 1)}\n" for arm in expr.arms
		)
		return f"match {format_expr(expr.subject, indent)} {{\n{arms}{'  ' * indent}}}"
	if isinstance(expr, M.MBlockExpr):
		return format_block(expr.block, indent)
	return "<invalid expr>"


def format_stmt(stmt: M.MStmt, indent: int) -> str:
	if isinstance(stmt, M.MLet):
		kw = "var" if stmt.mutable else "let"
		ann = f": {format_type(stmt.annotation)}" if stmt.annotation is not None else ""
		return f"{kw} {stmt.name}{ann} = {format_expr(stmt.value, indent)}"
	if isinstance(stmt, M.MAssign):
		return f"{stmt.name} = {format_expr(stmt.value, indent)}"
	if isinstance(stmt, M.MStore):
		path = "".join(f".{s}" if isinstance(s, str) else f"[{format_expr(s, indent)}]" for s in stmt.path)
		return f"{stmt.name}{path} = {format_expr(stmt.value, indent)}"
	if isinstance(stmt, M.MReturn):
		if stmt.value is None:
			return "return"
		return f"return {format_expr(stmt.value, indent)}"
	if isinstance(stmt, M.MFor):
		guard = f" where {format_expr(stmt.guard, indent)}" if stmt.guard is not None else ""
		return f"for {stmt.var} in {format_expr(stmt.iterable, indent)}{guard} {format_block(stmt.body, indent)}"
	if isinstance(stmt, M.MExprStmt):
		return format_expr(stmt.expr, indent)
	return "<invalid stmt>"


def format_block(block: M.MBlock, indent: int = 0) -> str:
	"""A zone-opening block; each statement on its own line."""
	if not block.statements:
		return "{}"
	pad = "  " * (indent + 1)
	lines = [f"{pad}{format_stmt(s, indent + 1)}" for s in block.statements]
	return "{\n" + "\n".join(lines) + "\n" + "  " * indent + "}"


def format_function(fn: M.MFunction) -> str:
	params = ", ".join(
		f"{p.name}: {format_type(p.annotation)}" if p.annotation is not None else p.name for p in fn.params
	)
	ret = f" -> {format_type(fn.return_type)}" if fn.return_type is not None else ""
	return f"{fn.mode.value} {fn.name}({params}){ret} {format_block(fn.body)}"


def format_type_decl(decl: M.MTypeDecl) -> str:
	if decl.fields is not None:
		fields = ", ".join(f"{name}: {format_type(ref)}" for name, ref in decl.fields)
		return f"type {decl.name} = {{{fields}}}"
	target = format_type(decl.target) if decl.target is not None else "<missing>"
	return f"type {decl.name} = {target}"


def format_module(module: M.MModule) -> str:
	parts: List[str] = [format_type_decl(d) for d in module.types]
	parts.extend(format_function(fn) for fn in module.functions)
	return "\n\n".join(parts) + "\n"


__all__ = ["format_block", "format_expr", "format_function", "format_module", "format_type", "format_type_decl"]
