import pytest

from quill import QuillDict, QuillSet, QuillTypeError, QuillValueError
from quill.quill_datatypes import to_value
from quill.quill_serialize import serialize, deserialize, detect_format, try_deserialize


def test_json_roundtrip():
    value = to_value({"a": 1, "b": [1, 2, "x"], "c": {"d": True, "e": None}})
    s = serialize(value, fmt="json")
    out = deserialize(s, fmt="json")
    assert isinstance(out, QuillDict)
    assert out == {"a": 1, "b": [1, 2, "x"], "c": {"d": True, "e": None}}


def test_yaml_roundtrip():
    value = to_value({"a": 1, "b": ["x", "y"], "c": {"d": 2.5}})
    s = serialize(value, fmt="yaml", sort_keys=True)
    assert s.startswith("a: 1\n")
    assert deserialize(s, fmt="yaml") == {"a": 1, "b": ["x", "y"], "c": {"d": 2.5}}


def test_json_options():
    value = QuillDict({"b": 1, "a": (1, 2)})
    assert serialize(value, fmt="json") == '{"b": 1, "a": [1, 2]}'
    assert serialize(value, fmt="json", sort_keys=True) == '{"a": [1, 2], "b": 1}'
    assert serialize(value, fmt="json", indent=2).startswith('{\n  "b": 1')
    assert serialize("héllo", fmt="json") == '"héllo"'


def test_sets_serialize_as_lists():
    assert serialize(QuillSet([3]), fmt="json") == "[3]"


def test_unserializable_values_are_type_errors():
    with pytest.raises(QuillTypeError, match="is not serializable"):
        serialize(object(), fmt="json")
    with pytest.raises(QuillTypeError, match="keys must be"):
        serialize(QuillDict({(1, 2): "tuple key"}), fmt="json")


def test_invalid_input_raises_value_error():
    with pytest.raises(QuillValueError, match="invalid JSON"):
        deserialize("{not json", fmt="json")
    with pytest.raises(QuillValueError, match="invalid YAML"):
        deserialize("a: [1, 2", fmt="yaml")
    with pytest.raises(QuillValueError, match="Unsupported serialization format"):
        deserialize("x", fmt="toml")
    with pytest.raises(QuillValueError, match="Unsupported serialization format"):
        serialize(1, fmt="xml")


def test_bytes_are_decoded_with_declared_charset():
    data = "{\"name\": \"café\"}".encode("latin-1")
    out = deserialize(data, fmt="json", content_type="application/json; charset=latin-1")
    assert out["name"] == "café"


@pytest.mark.parametrize("content_type, hint, expected", [
    ("application/json", None, "json"),
    ("application/problem+json; charset=utf-8", None, "json"),
    ("application/x-yaml", None, "yaml"),
    ("text/plain", "  [1, 2]", "json"),
    (None, '{"a": 1}', "json"),
    ("text/html", "<html></html>", None),
    (None, None, None),
])
def test_detect_format(content_type, hint, expected):
    assert detect_format(content_type, hint) == expected


def test_try_deserialize_is_best_effort():
    assert try_deserialize(b'{"ok": true}') == {"ok": True}
    assert try_deserialize("a: 1", content_type="text/yaml") == {"a": 1}
    assert try_deserialize("<html></html>", content_type="text/html") is None
    assert try_deserialize("{broken", content_type="application/json") is None


def test_keys_that_collide_once_written_are_rejected():
    mixed = QuillDict()
    mixed[1] = "int"
    mixed[True] = "bool"
    assert len(mixed) == 2
    with pytest.raises(QuillValueError, match="keys 1 and True collide when serialized to json"):
        serialize(mixed, fmt="json")
    with pytest.raises(QuillValueError, match="collide when serialized to yaml"):
        serialize(mixed, fmt="yaml")

    text_and_int = QuillDict()
    text_and_int[1] = "int"
    text_and_int["1"] = "str"
    with pytest.raises(QuillValueError, match="keys 1 and '1' collide"):
        serialize(text_and_int, fmt="json")
    # YAML keeps the types of its keys apart
    assert deserialize(serialize(text_and_int, fmt="yaml"), fmt="yaml") == text_and_int


def test_distinct_non_string_keys_serialize():
    value = QuillDict()
    value[1] = "a"
    value[2.5] = "b"
    value[None] = "c"
    assert serialize(value, fmt="json") == '{"1": "a", "2.5": "b", "null": "c"}'
