# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import io

import pytest

from morph.core.config import EngineConfig
from morph.engine import MorphEngine


@pytest.fixture
def out() -> io.StringIO:
	return io.StringIO()


@pytest.fixture
def make_engine(out):
	"""Build engines on a captured stdout; every engine built is closed after the test."""
	engines = []

	def _make(source: str = "", **overrides) -> MorphEngine:
		engine = MorphEngine(EngineConfig(**overrides), stdout=out)
		engines.append(engine)
		if source:
			engine.load_source(source)
		return engine

	yield _make
	for engine in engines:
		engine.close()
