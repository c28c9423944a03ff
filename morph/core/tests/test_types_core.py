# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import pytest

from morph.core.errors import UnknownTypeError
from morph.core.types_core import (
	ANY,
	FLOAT,
	INT,
	STRING,
	TypeDefKind,
	TypeKind,
	TypeShape,
	TypeTable,
	join_shapes,
	list_of,
	record_of,
	shape_of_plain,
)


def test_shapes_compare_structurally():
	a = TypeShape.of_plain([1, "x", [1.5]])
	b = TypeShape((INT, STRING, list_of(FLOAT)))
	assert a == b
	assert hash(a) == hash(b)
	assert str(a) == "(Int, String, List[Float])"


def test_bool_is_not_int():
	assert shape_of_plain(True).kind is TypeKind.BOOL
	assert shape_of_plain(1).kind is TypeKind.INT


def test_heterogeneous_list_joins_to_any():
	assert shape_of_plain([1, "a"]) == list_of(ANY)
	assert shape_of_plain([]) == list_of(ANY)
	assert join_shapes(list_of(INT), list_of(FLOAT)) == list_of(ANY)
	assert join_shapes(INT, FLOAT) == ANY


def test_record_fields_are_sorted():
	shape = shape_of_plain({"y": 1, "x": "a"})
	assert shape == record_of({"x": STRING, "y": INT})
	assert [name for name, _ in shape.fields] == ["x", "y"]


def test_parse_accepts_the_printed_form():
	shape = TypeShape.of_plain([1, 2.0, [True], {"a": "s"}])
	assert TypeShape.parse(str(shape)) == shape
	assert TypeShape.parse("i64, f64") == TypeShape((INT, FLOAT))
	assert TypeShape.parse("") == TypeShape()


@pytest.mark.parametrize("text", ["Int,", "Foo", "List[Int", "{x Int}"])
def test_parse_rejects_malformed_text(text):
	with pytest.raises(ValueError):
		TypeShape.parse(text)


def test_json_form_is_stable():
	shape = TypeShape.of_plain([{"pts": [1, 2]}, "s"])
	assert TypeShape.from_json(shape.to_json()) == shape


def test_type_table_aliases_and_records():
	table = TypeTable()
	table.define_alias("Email", "String")
	table.define_alias("Work", "Email")
	table.define_record("User", [("name", "String"), ("email", "Email")])
	assert [t.name for t in table.alias_chain("Work")] == ["Work", "Email", "String"]
	assert table.resolve("Work").kind is TypeDefKind.BUILTIN
	assert table.lookup("Work").base is TypeKind.STRING
	assert table.record_fields("User") == (("name", "String"), ("email", "Email"))


def test_type_table_redefinition():
	table = TypeTable()
	table.define_alias("Age", "Int")
	table.define_alias("Age", "Int")
	with pytest.raises(ValueError):
		table.define_alias("Age", "Float")
	with pytest.raises(UnknownTypeError):
		table.define_alias("Bad", "Nope")
