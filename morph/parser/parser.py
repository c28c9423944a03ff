# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Morph front end: lark parse tree -> Morph IR.

Pipeline placement:
  source text --(this module)--> MModule --> FunctionRegistry

The grammar lives in grammar.lark next to this file. Newlines are significant
only where a statement can end; `TerminatorInserter` decides that between the
lexer and the parser, so the grammar stays free of newline bookkeeping.

Lowering removes surface sugar on the way:
  - `a |> f(b)` becomes `f(a, b)`; `a |> f` becomes `f(a)`.
  - `else if` becomes an else block holding a nested `MIf`.
  - `p.xs[i] = v` becomes an `MStore` on `p` with path `["xs", i]`.
  - ghost metadata is only legal on the right-hand side of a type declaration.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedInput, UnexpectedToken

from morph.core.errors import MorphSyntaxError
from morph.core.span import Span
from morph.ir.nodes import (
	BinaryOp,
	FunctionMode,
	MBindPattern,
	MBinary,
	MBlock,
	MBlockExpr,
	MCall,
	MClaim,
	MExpr,
	MExprStmt,
	MField,
	MFor,
	MFunction,
	MIf,
	MIndex,
	MLet,
	MList,
	MLiteral,
	MLiteralPattern,
	MMatch,
	MMatchArm,
	MModule,
	MNode,
	MParam,
	MPattern,
	MRangePattern,
	MRecord,
	MReturn,
	MAssign,
	MStmt,
	MStore,
	MTypeDecl,
	MTypeRef,
	MUnary,
	MVar,
	MWildcard,
	UnaryOp,
	number_nodes,
)

_GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text()

_I64_MASK = (1 << 64) - 1


class TerminatorInserter:
	"""
	Post-lexer that turns NEWLINE/SEMI into `_TERM` statement terminators.

	`;` always terminates. A newline terminates only when the previous token
	can end a statement and we are not inside parentheses or brackets. Braces
	do not suppress newlines: they delimit blocks, whose statements need them.
	A newline directly before `else` never terminates, so

		if c {
			a
		}
		else { b }

	stays one expression.
	"""

	always_accept = ("NEWLINE", "SEMI")

	TERMINABLE = {
		"NAME",
		"INT",
		"FLOAT",
		"STRING",
		"TRUE",
		"FALSE",
		"RPAR",
		"RSQB",
		"RBRACE",
		"RETURN",
		# closes a ghost metadata block or type argument list at the end of a type declaration
		"GT",
	}

	CONTINUES = {"ELSE"}

	def __init__(self) -> None:
		self._reset()

	def _reset(self) -> None:
		self.paren_depth = 0
		self.bracket_depth = 0
		self.can_terminate = False

	def process(self, stream):
		self._reset()
		pending_newline: Token | None = None

		for token in stream:
			ttype = token.type

			if ttype == "NEWLINE":
				pending_newline = token
				continue

			if ttype == "SEMI":
				pending_newline = None
				yield Token.new_borrow_pos("_TERM", token.value, token)
				self.can_terminate = False
				continue

			if pending_newline is not None:
				if self._should_emit_terminator() and ttype not in self.CONTINUES:
					yield Token.new_borrow_pos("_TERM", pending_newline.value, pending_newline)
					self.can_terminate = False
				pending_newline = None

			yield token
			self._update_depth(ttype)
			self.can_terminate = ttype in self.TERMINABLE

		if pending_newline is not None and self._should_emit_terminator():
			yield Token.new_borrow_pos("_TERM", pending_newline.value, pending_newline)
			self.can_terminate = False

	def _update_depth(self, ttype: str) -> None:
		if ttype == "LPAR":
			self.paren_depth += 1
		elif ttype == "RPAR" and self.paren_depth:
			self.paren_depth -= 1
		elif ttype == "LSQB":
			self.bracket_depth += 1
		elif ttype == "RSQB" and self.bracket_depth:
			self.bracket_depth -= 1

	def _should_emit_terminator(self) -> bool:
		return self.paren_depth == 0 and self.bracket_depth == 0 and self.can_terminate


_PARSER = Lark(
	_GRAMMAR_SRC,
	parser="earley",
	lexer="basic",
	start="start",
	propagate_positions=True,
	maybe_placeholders=False,
	postlex=TerminatorInserter(),
)


_ESCAPES = {
	"n": "\n",
	"t": "\t",
	"r": "\r",
	"0": "\0",
	"\\": "\\",
	'"': '"',
	"'": "'",
}


def _decode_string(tok: Token, file: Optional[str]) -> str:
	"""Decode a STRING token's escapes (\\n, \\t, \\r, \\0, \\\\, \\", \\')."""
	body = tok.value[1:-1]
	out: List[str] = []
	i = 0
	while i < len(body):
		ch = body[i]
		if ch != "\\":
			out.append(ch)
			i += 1
			continue
		esc = body[i + 1]
		if esc not in _ESCAPES:
			raise MorphSyntaxError(f"unknown escape sequence '\\{esc}'", span=Span.at(tok, file))
		out.append(_ESCAPES[esc])
		i += 2
	return "".join(out)


def _wrap_i64(value: int) -> int:
	value &= _I64_MASK
	return value - (1 << 64) if value >> 63 else value


def _tokens(node: Tree, *types: str) -> List[Token]:
	return [c for c in node.children if isinstance(c, Token) and (not types or c.type in types)]


def _trees(node: Tree, *names: str) -> List[Tree]:
	return [c for c in node.children if isinstance(c, Tree) and (not names or c.data in names)]


def _first_tree(node: Tree, name: str) -> Optional[Tree]:
	found = _trees(node, name)
	return found[0] if found else None


class _Lowering:
	"""Lowers one parse tree; `file` only decorates spans."""

	_BINARY_OPS = {
		"EQEQ": BinaryOp.EQ,
		"NOTEQ": BinaryOp.NE,
		"LT": BinaryOp.LT,
		"LTE": BinaryOp.LE,
		"GT": BinaryOp.GT,
		"GTE": BinaryOp.GE,
		"PLUS": BinaryOp.ADD,
		"MINUS": BinaryOp.SUB,
		"STAR": BinaryOp.MUL,
		"SLASH": BinaryOp.DIV,
		"PERCENT": BinaryOp.MOD,
	}

	def __init__(self, file: Optional[str]) -> None:
		self.file = file

	def _span(self, item: Any) -> Span:
		return Span.at(item, self.file)

	def _at(self, node: MNode, item: Any) -> Any:
		node.span = self._span(item)
		return node

	def _error(self, message: str, item: Any) -> MorphSyntaxError:
		return MorphSyntaxError(message, span=self._span(item))

	# Declarations

	def module(self, tree: Tree) -> MModule:
		functions: List[MFunction] = []
		types: List[MTypeDecl] = []
		seen: Dict[str, Tree] = {}
		for item in _trees(tree):
			if item.data == "function":
				fn = self.function(item)
				if fn.name in seen:
					raise self._error(f"function '{fn.name}' is defined twice", item)
				seen[fn.name] = item
				functions.append(fn)
			elif item.data == "type_decl":
				types.append(self.type_decl(item))
			else:
				raise AssertionError(f"unexpected top-level item {item.data}")
		return self._at(MModule(functions=functions, types=types), tree)

	def function(self, tree: Tree) -> MFunction:
		mode_tok = _tokens(tree, "PROTO", "SOLID")[0]
		name = _tokens(tree, "NAME")[0]
		params: List[MParam] = []
		params_tree = _first_tree(tree, "params")
		if params_tree is not None:
			for p in _trees(params_tree, "param"):
				pname = _tokens(p, "NAME")[0]
				ann_tree = _first_tree(p, "type_ref")
				ann = self.type_ref(ann_tree, allow_ghost=False) if ann_tree is not None else None
				if any(existing.name == pname.value for existing in params):
					raise self._error(f"parameter '{pname.value}' is declared twice", p)
				params.append(self._at(MParam(name=pname.value, annotation=ann), p))
		ret_tree = _first_tree(tree, "return_type")
		ret = self.type_ref(_trees(ret_tree)[0], allow_ghost=False) if ret_tree is not None else None
		body = self.block(_first_tree(tree, "block"))
		mode = FunctionMode.SOLID if mode_tok.type == "SOLID" else FunctionMode.PROTO
		fn = MFunction(name=name.value, params=params, body=body, return_type=ret, mode=mode)
		return self._at(fn, tree)

	def type_decl(self, tree: Tree) -> MTypeDecl:
		name = _tokens(tree, "NAME")[0].value
		rec = _first_tree(tree, "record_type")
		if rec is not None:
			fields: List[Tuple[str, MTypeRef]] = []
			for f in _trees(rec, "type_field"):
				fname = _tokens(f, "NAME")[0].value
				if any(existing == fname for existing, _ in fields):
					raise self._error(f"record '{name}' declares field '{fname}' twice", f)
				fields.append((fname, self.type_ref(_trees(f, "type_ref")[0], allow_ghost=False)))
			return self._at(MTypeDecl(name=name, fields=fields), tree)
		target = self.type_ref(_trees(tree, "type_ref")[0], allow_ghost=True)
		return self._at(MTypeDecl(name=name, target=target), tree)

	def type_ref(self, tree: Tree, *, allow_ghost: bool) -> MTypeRef:
		name = _tokens(tree, "NAME")[0].value
		args: List[MTypeRef] = []
		args_tree = _first_tree(tree, "type_args")
		if args_tree is not None:
			args = [self.type_ref(t, allow_ghost=False) for t in _trees(args_tree, "type_ref")]
		ghost: Dict[str, Any] = {}
		ghost_tree = _first_tree(tree, "ghost_meta")
		if ghost_tree is not None:
			if not allow_ghost:
				raise self._error("ghost metadata is only allowed in a type declaration", ghost_tree)
			for entry in _trees(ghost_tree, "ghost_entry"):
				key = _tokens(entry, "NAME")[0].value
				if key in ghost:
					raise self._error(f"ghost key '{key}' is given twice", entry)
				ghost[key] = self.ghost_value(_trees(entry)[0] if _trees(entry) else _tokens(entry)[-1])
		return self._at(MTypeRef(name=name, args=args, ghost=ghost), tree)

	def ghost_value(self, item: Any) -> Any:
		if isinstance(item, Token):
			raise self._error("malformed ghost value", item)
		kind = item.data
		if kind == "ghost_str":
			return _decode_string(item.children[0], self.file)
		if kind == "signed_number":
			return self.signed_number(item)
		if kind == "ghost_true":
			return True
		if kind == "ghost_false":
			return False
		if kind == "ghost_name":
			return item.children[0].value
		if kind == "ghost_names":
			return [t.value for t in _tokens(item, "NAME")]
		raise AssertionError(f"unexpected ghost value {kind}")

	def signed_number(self, tree: Tree) -> Any:
		negative = bool(_tokens(tree, "MINUS"))
		num = _tokens(tree, "INT", "FLOAT")[0]
		if num.type == "FLOAT":
			value: Any = float(num.value)
			return -value if negative else value
		value = int(num.value)
		return _wrap_i64(-value if negative else value)

	# Statements

	def block(self, tree: Tree) -> MBlock:
		stmts = [self.stmt(s) for s in _trees(tree)]
		return self._at(MBlock(statements=stmts), tree)

	def stmt(self, tree: Tree) -> MStmt:
		kind = tree.data
		if kind == "let_stmt":
			keyword = _tokens(tree, "LET", "VAR")[0]
			name = _tokens(tree, "NAME")[0].value
			ann_tree = _first_tree(tree, "type_ref")
			ann = self.type_ref(ann_tree, allow_ghost=False) if ann_tree is not None else None
			value = self.expr([t for t in _trees(tree) if t.data != "type_ref"][0])
			node: MStmt = MLet(name=name, value=value, mutable=keyword.type == "VAR", annotation=ann)
		elif kind == "assign_stmt":
			name = _tokens(tree, "NAME")[0].value
			node = MAssign(name=name, value=self.expr(_trees(tree)[0]))
		elif kind in ("field_store", "index_store"):
			node = self.store(tree)
		elif kind == "return_stmt":
			values = _trees(tree)
			node = MReturn(value=self.expr(values[0]) if values else None)
		elif kind == "for_stmt":
			var = _tokens(tree, "NAME")[0].value
			parts = _trees(tree)
			body = self.block(parts[-1])
			exprs = parts[:-1]
			guard = self.expr(exprs[1]) if len(exprs) > 1 else None
			node = MFor(var=var, iterable=self.expr(exprs[0]), body=body, guard=guard)
		elif kind == "expr_stmt":
			node = MExprStmt(expr=self.expr(tree.children[0]))
		else:
			raise AssertionError(f"unexpected statement {kind}")
		return self._at(node, tree)

	def store(self, tree: Tree) -> MStore:
		if tree.data == "field_store":
			target_item, name_tok, value_item = tree.children
			last: Union[str, MExpr] = name_tok.value
		else:
			target_item, index_item, value_item = tree.children
			last = self.expr(index_item)
		target = self.expr(target_item)
		path = [last]
		while isinstance(target, (MField, MIndex)):
			path.insert(0, target.name if isinstance(target, MField) else target.index)
			target = target.target
		if not isinstance(target, MVar):
			raise self._error("only a variable or a field or element of one can be assigned", tree)
		return MStore(name=target.name, path=path, value=self.expr(value_item))

	# Expressions

	def expr(self, item: Any) -> MExpr:
		if isinstance(item, Token):
			# `?rule` inlining can leave a bare terminal in expression position
			return self._at(self._token_expr(item), item)
		handler = getattr(self, f"_x_{item.data}", None)
		if handler is None:
			raise AssertionError(f"unexpected expression node {item.data}")
		return self._at(handler(item), item)

	def _token_expr(self, tok: Token) -> MExpr:
		if tok.type == "INT":
			return MLiteral(_wrap_i64(int(tok.value)))
		if tok.type == "FLOAT":
			return MLiteral(float(tok.value))
		if tok.type == "STRING":
			return MLiteral(_decode_string(tok, self.file))
		if tok.type == "TRUE":
			return MLiteral(True)
		if tok.type == "FALSE":
			return MLiteral(False)
		if tok.type == "NAME":
			return MVar(tok.value)
		raise AssertionError(f"unexpected token {tok.type} in expression position")

	def _x_int_lit(self, tree: Tree) -> MExpr:
		return self._token_expr(tree.children[0])

	_x_float_lit = _x_int_lit
	_x_string_lit = _x_int_lit
	_x_var = _x_int_lit

	def _x_true_lit(self, tree: Tree) -> MExpr:
		return MLiteral(True)

	def _x_false_lit(self, tree: Tree) -> MExpr:
		return MLiteral(False)

	def _x_claim(self, tree: Tree) -> MExpr:
		return MClaim(self.expr(tree.children[0]))

	def _x_pipe_call(self, tree: Tree) -> MExpr:
		lhs = self.expr(tree.children[0])
		rhs = self.expr(tree.children[1])
		if isinstance(rhs, MCall):
			return MCall(rhs.callee, [lhs] + rhs.args)
		if isinstance(rhs, MVar):
			return MCall(rhs.name, [lhs])
		raise self._error("the right side of '|>' must be a function or a call", tree.children[1])

	def _x_binary(self, tree: Tree) -> MExpr:
		left, op, right = tree.children
		return MBinary(self._BINARY_OPS[op.type], self.expr(left), self.expr(right))

	def _x_unary(self, tree: Tree) -> MExpr:
		op, operand = tree.children
		return MUnary(UnaryOp.NEG if op.type == "MINUS" else UnaryOp.NOT, self.expr(operand))

	def _x_call(self, tree: Tree) -> MExpr:
		callee = self.expr(tree.children[0])
		if not isinstance(callee, MVar):
			raise self._error("only named functions can be called", tree.children[0])
		args_tree = _first_tree(tree, "args")
		args = [self.expr(a) for a in args_tree.children] if args_tree is not None else []
		return MCall(callee.name, args)

	def _x_field(self, tree: Tree) -> MExpr:
		target, name = tree.children
		return MField(self.expr(target), name.value)

	def _x_index(self, tree: Tree) -> MExpr:
		target, index = tree.children
		return MIndex(self.expr(target), self.expr(index))

	def _x_list_lit(self, tree: Tree) -> MExpr:
		return MList([self.expr(c) for c in tree.children])

	def _x_record_lit(self, tree: Tree) -> MExpr:
		fields: List[Tuple[str, MExpr]] = []
		for f in _trees(tree, "record_field"):
			name_tok, value = f.children
			if any(existing == name_tok.value for existing, _ in fields):
				raise self._error(f"record field '{name_tok.value}' is given twice", f)
			fields.append((name_tok.value, self.expr(value)))
		return MRecord(fields)

	def _x_block_expr(self, tree: Tree) -> MExpr:
		return MBlockExpr(self.block(tree))

	def _x_if_expr(self, tree: Tree) -> MExpr:
		parts = tree.children
		cond = self.expr(parts[0])
		then_block = self.block(parts[1])
		else_block: Optional[MBlock] = None
		if len(parts) > 2:
			tail = parts[2]
			if tail.data == "if_expr":
				nested = self.expr(tail)
				else_block = MBlock([MExprStmt(nested)])
				else_block.span = nested.span
				else_block.statements[0].span = nested.span
			else:
				else_block = self.block(tail)
		return MIf(cond, then_block, else_block)

	def _x_match_expr(self, tree: Tree) -> MExpr:
		subject = self.expr(tree.children[0])
		arms: List[MMatchArm] = []
		for arm in _trees(tree, "match_arm"):
			pattern_item, body = arm.children
			pattern = self.pattern(pattern_item)
			arms.append(self._at(MMatchArm(pattern, self.expr(body)), arm))
		return MMatch(subject, arms)

	def pattern(self, tree: Tree) -> MPattern:
		kind = tree.data
		if kind == "wild_pat":
			node: MPattern = MWildcard()
		elif kind == "range_pat":
			lo_tree, hi_tree = _trees(tree, "signed_int")
			lo, hi = self.signed_number(lo_tree), self.signed_number(hi_tree)
			if lo > hi:
				raise self._error(f"empty range pattern {lo}..{hi}", tree)
			node = MRangePattern(lo, hi)
		elif kind == "lit_pat":
			item = tree.children[0]
			if isinstance(item, Tree):
				node = MLiteralPattern(self.signed_number(item))
			else:
				lit = self._token_expr(item)
				assert isinstance(lit, MLiteral)
				node = MLiteralPattern(lit.value)
		elif kind == "bind_pat":
			node = MBindPattern(tree.children[0].value)
		else:
			raise AssertionError(f"unexpected pattern {kind}")
		return self._at(node, tree)


def _syntax_error(err: UnexpectedInput, file: Optional[str]) -> MorphSyntaxError:
	span = Span.at(err, file)
	if isinstance(err, UnexpectedCharacters):
		char = err.char if hasattr(err, "char") else "?"
		message = f"unexpected character {char!r}"
	elif isinstance(err, UnexpectedEOF):
		message = "unexpected end of input"
	elif isinstance(err, UnexpectedToken):
		tok = err.token
		if tok.type == "_TERM":
			message = "unexpected end of statement"
		elif tok.type == "$END":
			message = "unexpected end of input"
		else:
			message = f"unexpected {tok.value!r}"
		expected = sorted(e for e in (err.expected or ()) if not e.startswith("__"))
		if expected:
			message += f" (expected one of: {', '.join(expected[:8])})"
	else:
		message = str(err).splitlines()[0]
	return MorphSyntaxError(message, span=span)


def tokenize(source: str, *, file: Optional[str] = None) -> List[Token]:
	"""The token stream the parser sees, statement terminators included."""
	try:
		return list(_PARSER.lex(source))
	except UnexpectedInput as err:
		raise _syntax_error(err, file) from None


def parse_module(source: str, *, file: Optional[str] = None) -> MModule:
	"""Parse Morph source into a numbered `MModule`. Raises MorphSyntaxError."""
	try:
		tree = _PARSER.parse(source)
	except UnexpectedInput as err:
		raise _syntax_error(err, file) from None
	module = _Lowering(file).module(tree)
	number_nodes(module)
	return module


def parse_function(source: str, *, file: Optional[str] = None) -> MFunction:
	"""Parse source holding exactly one function declaration."""
	module = parse_module(source, file=file)
	if len(module.functions) != 1:
		raise MorphSyntaxError(f"expected exactly one function, found {len(module.functions)}", span=Span(file=file))
	return module.functions[0]


def parse_file(path: str | Path) -> MModule:
	path = Path(path)
	return parse_module(path.read_text(), file=str(path))


__all__ = ["parse_module", "parse_function", "parse_file", "tokenize", "TerminatorInserter"]
