# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from morph.core.config import EngineConfig, load_config
from morph.core.diagnostics import Diagnostic
from morph.core.errors import EngineError, HardeningFailure, MorphSyntaxError
from morph.core.types_core import TypeShape
from morph.engine import MorphEngine
from morph.ir.printer import format_module
from morph.parser import parse_module, tokenize
from morph.profile import persist
from morph.profile.profiler import InvocationEvent

_BAR_WIDTH = 20


def _build_parser() -> argparse.ArgumentParser:
	p = argparse.ArgumentParser(prog="morph", description="Morph staging engine (run, profile and harden Morph code)")
	p.add_argument("-v", "--verbose", action="count", default=0, help="Log engine activity (-vv for debug)")
	sub = p.add_subparsers(dest="cmd", required=True)

	common = argparse.ArgumentParser(add_help=False)
	common.add_argument("file", type=Path, help="Morph source file")
	common.add_argument("--config", type=Path, default=None, help="Engine config (JSON object of EngineConfig fields)")
	common.add_argument("--backend", choices=["llvm", "closure"], default=None, help="Override the native backend")
	common.add_argument("--json", action="store_true", help="Emit machine-readable JSON")
	common.add_argument(
		"--save-profile",
		type=Path,
		default=None,
		help="Write the function profiles to this path before exiting",
	)

	run = sub.add_parser("run", parents=[common], help="Invoke a function through the engine and print its result")
	run.add_argument("--entry", default="main", help="Function to invoke (default: main)")
	run.add_argument("--args", default="[]", help="JSON array of arguments (default: [])")
	run.add_argument("--repeat", type=int, default=1, help="Invoke this many times (default: 1)")

	status = sub.add_parser("status", parents=[common], help="Replay a call trace and print stage per function")
	status.add_argument(
		"--trace",
		type=Path,
		default=None,
		help='JSONL trace: {"function": f, "args": [...]} runs a call, {"function": f, "shape": "Int, Int"} only records one',
	)
	status.add_argument("--profile", type=Path, default=None, help="Restore profiles saved with --save-profile first")

	harden = sub.add_parser("harden", parents=[common], help="Harden one function explicitly for a TypeShape")
	harden.add_argument("--function", required=True, help="Function to harden")
	harden.add_argument("--shape", required=True, help='Argument shape, e.g. "Int, Int"')

	sub.add_parser("parse", parents=[common], help="Print the IR of a Morph source file")
	sub.add_parser("tokenize", parents=[common], help="Print the token stream the parser sees")
	return p


def _configure_logging(verbosity: int) -> None:
	level = logging.WARNING
	if verbosity == 1:
		level = logging.INFO
	elif verbosity > 1:
		level = logging.DEBUG
	logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _engine_config(args: argparse.Namespace) -> EngineConfig:
	config = load_config(args.config) if args.config is not None else EngineConfig()
	return config.with_overrides(backend=args.backend)


def _emit_diagnostics(diagnostics: List[Diagnostic], as_json: bool) -> None:
	for diag in diagnostics:
		if as_json:
			print(json.dumps(diag.to_dict()), file=sys.stderr)
		else:
			print(diag.render(), file=sys.stderr)


def _bar(score: float) -> str:
	filled = int(round(score * _BAR_WIDTH))
	return "[" + "#" * filled + "-" * (_BAR_WIDTH - filled) + "]"


def _status_rows(engine: MorphEngine) -> List[dict]:
	rows = []
	for name, profile in sorted(engine.registry.profiles().items()):
		rows.append(
			{
				"function": name,
				"stage": profile.stage.value,
				"calls": profile.calls,
				"score": profile.score,
				"deopts": profile.deopts,
				"form": engine.form_of(name).kind,
			}
		)
	return rows


def _replay(engine: MorphEngine, trace: Path) -> int:
	"""Feed a JSONL trace to the engine; returns the number of events."""
	count = 0
	for lineno, line in enumerate(trace.read_text().splitlines(), start=1):
		line = line.strip()
		if not line:
			continue
		try:
			event = json.loads(line)
		except json.JSONDecodeError as err:
			raise ValueError(f"{trace}:{lineno}: invalid JSON ({err})") from err
		if not isinstance(event, dict) or "function" not in event:
			raise ValueError(f"{trace}:{lineno}: expected an object with a 'function' key")
		if "shape" in event:
			shape = TypeShape.parse(str(event["shape"]))
			engine.observe(InvocationEvent(event["function"], shape, float(event.get("timestamp", lineno))))
		else:
			engine.invoke(event["function"], event.get("args", []))
		count += 1
	return count


def _cmd_run(engine: MorphEngine, args: argparse.Namespace) -> int:
	call_args = json.loads(args.args)
	if not isinstance(call_args, list):
		raise ValueError("--args must be a JSON array")
	result: Any = None
	for _ in range(max(args.repeat, 1)):
		result = engine.invoke(args.entry, call_args)
	engine.wait_idle()
	if args.json:
		print(
			json.dumps(
				{
					"result": result,
					"stage": engine.current_stage(args.entry).value,
					"score": engine.stability_score(args.entry),
				}
			)
		)
	else:
		print(json.dumps(result))
	return 0


def _cmd_status(engine: MorphEngine, args: argparse.Namespace) -> int:
	if args.profile is not None:
		engine.restore_profiles(persist.load(args.profile))
	events = _replay(engine, args.trace) if args.trace is not None else 0
	engine.wait_idle()
	rows = _status_rows(engine)
	if args.json:
		print(json.dumps({"events": events, "functions": rows}, indent=2))
		return 0
	width = max((len(r["function"]) for r in rows), default=8)
	for r in rows:
		print(
			f"{r['function']:<{width}}  {r['stage']:<7}  {_bar(r['score'])} {r['score']:.3f}  "
			f"calls={r['calls']} deopts={r['deopts']} form={r['form']}"
		)
	return 0


def _cmd_harden(engine: MorphEngine, args: argparse.Namespace) -> int:
	try:
		form = engine.harden(args.function, args.shape)
	except HardeningFailure as failure:
		_emit_diagnostics(failure.diagnostics, args.json)
		print(f"error: {failure}", file=sys.stderr)
		return 1
	if form is None:
		print(f"error: hardening of {args.function} is already in progress", file=sys.stderr)
		return 1
	layouts = {name: layout.describe() for name, layout in sorted(form.layouts.items())}
	if args.json:
		print(json.dumps({"function": args.function, "shape": str(form.shape), "kernel": form.kind, "layouts": layouts}))
		return 0
	print(f"{args.function}: hardened on {form.shape} ({form.kind} kernel)")
	for name, text in layouts.items():
		print(f"  {name}: {text}")
	for index, ref in form.param_checks:
		print(f"  guard keeps ghost check on parameter {index} ({ref})")
	return 0


def _cmd_tokenize(source: str, args: argparse.Namespace) -> int:
	try:
		tokens = tokenize(source, file=str(args.file))
	except MorphSyntaxError as err:
		_emit_diagnostics([err.to_diagnostic()], args.json)
		return 1
	for tok in tokens:
		if args.json:
			print(json.dumps({"type": tok.type, "value": tok.value, "line": tok.line, "column": tok.column}))
		else:
			print(f"{tok.line}:{tok.column}\t{tok.type}\t{tok.value!r}")
	return 0


def main(argv: Optional[List[str]] = None) -> int:
	p = _build_parser()
	args = p.parse_args(argv)
	_configure_logging(args.verbose)

	try:
		config = _engine_config(args)
	except (OSError, ValueError) as err:
		p.error(str(err))
		return 2

	try:
		source = args.file.read_text()
	except OSError as err:
		p.error(f"cannot read {args.file}: {err}")
		return 2

	if args.cmd == "tokenize":
		return _cmd_tokenize(source, args)

	try:
		module = parse_module(source, file=str(args.file))
	except MorphSyntaxError as err:
		_emit_diagnostics([err.to_diagnostic()], args.json)
		return 1

	if args.cmd == "parse":
		sys.stdout.write(format_module(module))
		return 0

	with MorphEngine(config) as engine:
		try:
			engine.load_module(module)
			if args.cmd == "run":
				code = _cmd_run(engine, args)
			elif args.cmd == "status":
				code = _cmd_status(engine, args)
			else:
				code = _cmd_harden(engine, args)
		except (EngineError, ValueError) as err:
			print(f"error: {err}", file=sys.stderr)
			code = 1
		if args.save_profile is not None:
			persist.save(args.save_profile, engine.snapshot_profiles())
		if args.verbose and not args.json:
			_emit_diagnostics(engine.diagnostics, False)
	return code


__all__ = ["main"]
