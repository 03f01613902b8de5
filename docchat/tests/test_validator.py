from docchat.domain.schema import Schema, SchemaOption
from docchat.domain.validator import validate
from docchat.providers.openai_adapter import OPENAI_SCHEMA


def test_validate_accepts_defaults():
    assert validate(OPENAI_SCHEMA, OPENAI_SCHEMA.get_default()) == {}


def test_validate_rejects_non_numeric_temperature():
    errors = validate(OPENAI_SCHEMA, {"model": "gpt-4o", "temperature": "hot"})
    assert errors == {"temperature": "expected number"}


def test_validate_unknown_key():
    assert validate(OPENAI_SCHEMA, {"colour": "blue"}) == {"colour": "unknown setting"}


def test_validate_enum_lists_choices():
    schema = Schema([SchemaOption(key="model", type="enum", choices=["a", "b"])])
    assert validate(schema, {"model": "c"}) == {"model": "must be one of: a, b"}


def test_validate_enum_with_dynamic_choices():
    class Ctx:
        models = ["llama3", "mistral"]

    schema = Schema([SchemaOption(key="model", type="enum", choices=lambda ctx: ctx.models)])
    assert validate(schema, {"model": "mistral"}, Ctx()) == {}
    assert "model" in validate(schema, {"model": "gpt-4o"}, Ctx())


def test_validate_numbers_and_integers():
    schema = Schema(
        [
            SchemaOption(key="t", type="number"),
            SchemaOption(key="n", type="integer"),
        ]
    )
    assert validate(schema, {"t": "0.5", "n": 3}) == {}
    assert validate(schema, {"t": True}) == {"t": "expected number"}
    assert validate(schema, {"n": 2.5}) == {"n": "expected integer"}
    assert validate(schema, {"n": "4"}) == {}
    assert validate(schema, {"t": float("nan")}) == {"t": "expected number"}


def test_validate_boolean_tokens():
    schema = Schema([SchemaOption(key="flag", type="boolean")])
    for value in (True, False, "yes", "Off", "1", 0):
        assert validate(schema, {"flag": value}) == {}
    assert validate(schema, {"flag": "maybe"}) == {"flag": "expected boolean"}


def test_validate_string_rejects_mappings():
    schema = Schema([SchemaOption(key="stop", type="string")])
    assert validate(schema, {"stop": "END"}) == {}
    assert validate(schema, {"stop": {"a": 1}}) == {"stop": "expected string"}


def test_schema_order_and_mapping():
    schema = Schema(
        [
            SchemaOption(key="b", type="number", order=2, default=1, mapping="parameters.options"),
            SchemaOption(key="a", type="string", order=1, default="x"),
        ]
    )
    assert schema.get_ordered_keys() == ["a", "b"]
    assert schema.get_default({"b": 2}) == {"a": "x", "b": 2}
    assert schema.map_to_params({"a": "y", "b": "0.5"}) == {
        "parameters": {"a": "y"},
        "parameters.options": {"b": 0.5},
    }


def test_schema_coerce_keeps_integer_typed_values():
    assert OPENAI_SCHEMA.coerce({"max_tokens": "100", "temperature": "1"}) == {
        "max_tokens": 100,
        "temperature": 1,
    }
