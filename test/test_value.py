import base64

import pytest
from pydantic import BaseModel

from replicate_client.exceptions import ValueDecodeError
from replicate_client.value import (
    Value,
    ValueKind,
    decode_data_uri,
    encode_data_uri,
    is_data_uri,
)

HELLO_URI = "data:text/plain;base64,SGVsbG8sIFdvcmxkIQ=="


def test_data_uri_encoding():
    """Binary payloads encode as data:<mime>;base64,<payload>."""
    assert base64.b64encode(b"Hello, World!").decode() == "SGVsbG8sIFdvcmxkIQ=="
    assert encode_data_uri(b"Hello, World!", "text/plain") == HELLO_URI
    assert encode_data_uri(b"Hello, World!") == "data:;base64,SGVsbG8sIFdvcmxkIQ=="


def test_is_data_uri():
    assert is_data_uri(HELLO_URI)
    assert not is_data_uri("Hello, World!")
    assert not is_data_uri("")


def test_decode_data_uri():
    assert decode_data_uri(HELLO_URI) == ("text/plain", b"Hello, World!")
    assert decode_data_uri("data:image/png;charset=binary;base64,AAE=") == ("image/png", b"\x00\x01")
    assert decode_data_uri("data:text/plain;base64,not base64!") is None
    assert decode_data_uri("data:text/plain,Hello") is None


def test_decode_data_uri_string_yields_binary_variant():
    """A data-URI string always decodes to the data variant."""
    value = Value.decode("data:text/plain;base64,SGVsbG8=")

    assert value.kind is ValueKind.data
    assert value.mime_type == "text/plain"
    assert value.as_data() == b"Hello"
    assert value.as_string() is None


def test_plain_string_is_not_binary():
    value = Value.decode("Hello, World!")

    assert value.kind is ValueKind.string
    assert value.as_string() == "Hello, World!"
    assert value.as_data() is None


def test_decode_order_distinguishes_scalars():
    """Booleans are not read as integers and integers are not read as doubles."""
    assert Value.decode(True).kind is ValueKind.bool
    assert Value.decode(1).kind is ValueKind.int
    assert Value.decode(1.0).kind is ValueKind.double
    assert Value.decode(None).kind is ValueKind.null
    assert Value.decode(True) != Value.decode(1)
    assert Value.decode(1) != Value.decode(1.0)


def test_decode_nested_json():
    value = Value.loads('{"prompt": "a llama", "steps": 50, "image": "%s", "tags": [1, null]}' % HELLO_URI)

    obj = value.as_object()
    assert obj is not None
    assert obj["prompt"].as_string() == "a llama"
    assert obj["steps"].as_int() == 50
    assert obj["image"].as_data() == b"Hello, World!"
    assert value["tags"][0].as_int() == 1
    assert value["tags"][1].is_null


def test_decode_rejects_unknown_shapes():
    with pytest.raises(ValueDecodeError):
        Value.decode(object())
    with pytest.raises(ValueDecodeError):
        Value.decode({1: "one"})


@pytest.mark.parametrize("text", ["NaN", "Infinity", "[1.5, -Infinity]"])
def test_non_finite_numbers_are_rejected(text):
    with pytest.raises(ValueDecodeError):
        Value.loads(text)


def test_non_finite_literal_cannot_be_serialized():
    with pytest.raises(ValueError):
        Value.of(float("nan")).dumps()
    with pytest.raises(ValueDecodeError):
        Value.from_codable({"score": float("inf")})


def test_accessors_return_none_on_mismatch():
    value = Value.of("text")

    assert value.as_bool() is None
    assert value.as_int() is None
    assert value.as_double() is None
    assert value.as_array() is None
    assert value.as_object() is None
    assert not value.is_null


@pytest.mark.parametrize(
    "value",
    [
        Value.null(),
        Value.of(False),
        Value.of(42),
        Value.of(-0.5),
        Value.of("Hello, World!"),
        Value.data(b"\x89PNG", "image/png"),
        Value.data(b"raw bytes"),
        Value.of([1, "two", [3.0], {"four": None}]),
        Value.of({"text": "Alice", "image": Value.data(b"x", "image/jpeg")}),
    ],
)
def test_round_trip(value):
    assert Value.loads(value.dumps()) == value


def test_string_shaped_like_data_uri_is_reinterpreted():
    """Known limitation: such strings come back as binary."""
    value = Value.of(HELLO_URI)

    assert value.kind is ValueKind.string
    assert Value.loads(value.dumps()).kind is ValueKind.data


def test_literal_construction():
    assert Value.of(None).is_null
    assert Value.of(True).kind is ValueKind.bool
    assert Value.of(3).kind is ValueKind.int
    assert Value.of(b"abc") == Value.data(b"abc")
    assert Value.of({"a": [1]}) == Value.decode({"a": [1]})


def test_from_codable_returns_values_unchanged():
    value = Value.data(b"abc", "application/octet-stream")

    assert Value.from_codable(value) is value


def test_from_codable_round_trips_through_json():
    class Input(BaseModel):
        text: str
        count: int = 1

    assert Value.from_codable({"text": "Alice"}) == Value.of({"text": "Alice"})
    assert Value.from_codable(Input(text="Bob")) == Value.of({"text": "Bob", "count": 1})
    assert Value.from_codable((1, 2)) == Value.of([1, 2])
    assert Value.from_codable({"file": b"hi"})["file"] == Value.data(b"hi")


def test_description():
    assert str(Value.null()) == ""
    assert str(Value.of(True)) == "true"
    assert str(Value.of(7)) == "7"
    assert str(Value.of("cursor")) == "cursor"
    assert str(Value.data(b"Hello, World!", "text/plain")) == HELLO_URI
    assert str(Value.of(["a"])) == '["a"]'


def test_pydantic_field_integration():
    class Payload(BaseModel):
        value: Value

    payload = Payload.model_validate({"value": {"image": HELLO_URI}})

    assert payload.value["image"].as_data() == b"Hello, World!"
    assert payload.model_dump(mode="json") == {"value": {"image": HELLO_URI}}
