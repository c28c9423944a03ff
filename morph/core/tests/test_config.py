# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import json

import pytest

from morph.core.config import EngineConfig, load_config


def test_defaults_keep_promotion_order():
	config = EngineConfig()
	assert config.t1 == 100
	assert config.t2 == 200
	assert config.t1 < config.t2
	assert config.s1 == 0.9
	assert config.window == 150
	assert config.max_call_depth == 200


@pytest.mark.parametrize(
	"overrides",
	[
		{"t1": 10, "t2": 10},
		{"t1": 20, "t2": 10},
		{"s1": 0.0},
		{"s1": 1.5},
		{"window": 0},
		{"damping": 1.0},
		{"damping": 0.0},
		{"ghost_policy": "drop"},
		{"backend": "jit"},
		{"max_call_depth": 0},
	],
)
def test_invalid_values_are_rejected(overrides):
	with pytest.raises(ValueError):
		EngineConfig(**overrides)


def test_from_mapping_rejects_unknown_keys():
	with pytest.raises(ValueError, match="unknown engine config keys: tt1"):
		EngineConfig.from_mapping({"tt1": 5})


def test_with_overrides_ignores_none():
	config = EngineConfig(t1=3, t2=5)
	assert config.with_overrides(backend=None, t1=None) == config
	assert config.with_overrides(backend="closure").backend == "closure"


def test_load_config_reads_json_object(tmp_path):
	path = tmp_path / "engine.json"
	path.write_text(json.dumps({"t1": 4, "t2": 8, "backend": "closure"}))
	config = load_config(path)
	assert (config.t1, config.t2, config.backend) == (4, 8, "closure")
	assert config.to_dict()["window"] == 150


def test_load_config_rejects_non_objects(tmp_path):
	path = tmp_path / "engine.json"
	path.write_text("[1, 2]")
	with pytest.raises(ValueError, match="must be a JSON object"):
		load_config(path)
	path.write_text("{not json")
	with pytest.raises(ValueError, match="invalid JSON"):
		load_config(path)
