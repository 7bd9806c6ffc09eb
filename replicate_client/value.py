import base64
import binascii
import json
import math
import re
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, GetCoreSchemaHandler
from pydantic_core import core_schema

from replicate_client.exceptions import ValueDecodeError

DATA_URI_PREFIX = "data:"

_DATA_URI_PATTERN = re.compile(
    r"^data:(?P<mime>[^;,]*)(?:;[^;,]+)*;base64,(?P<payload>.*)$", re.DOTALL
)


def is_data_uri(string: str) -> bool:
    return string.startswith(DATA_URI_PREFIX)


def decode_data_uri(string: str) -> Optional[tuple[str, bytes]]:
    """Split a `data:<mime>;base64,<payload>` string into its MIME type and bytes"""
    match = _DATA_URI_PATTERN.match(string)
    if match is None:
        return None

    try:
        payload = base64.b64decode(match.group("payload"), validate=True)
    except (binascii.Error, ValueError):
        return None

    return match.group("mime"), payload


def encode_data_uri(payload: bytes, mime_type: Optional[str] = None) -> str:
    encoded = base64.b64encode(payload).decode("ascii")
    return f"data:{mime_type or ''};base64,{encoded}"


class ValueKind(str, Enum):
    null = "null"
    bool = "bool"
    int = "int"
    double = "double"
    string = "string"
    data = "data"
    array = "array"
    object = "object"


class Value:
    """
    A JSON value of any shape.

    Model inputs and outputs have no fixed schema, so they are carried as a
    closed variant tagged with a `ValueKind`. Strings that look like
    `data:<mime>;base64,<payload>` are decoded into the `data` variant; this
    means a genuine string with that shape cannot survive a round trip.
    """

    __slots__ = ("kind", "raw", "mime_type")

    def __init__(self, kind: ValueKind, raw: Any = None, mime_type: Optional[str] = None):
        self.kind = kind
        self.raw = raw
        self.mime_type = mime_type if kind is ValueKind.data else None

    # Construction

    @classmethod
    def null(cls) -> "Value":
        return cls(ValueKind.null)

    @classmethod
    def data(cls, payload: bytes, mime_type: Optional[str] = None) -> "Value":
        return cls(ValueKind.data, bytes(payload), mime_type or None)

    @classmethod
    def of(cls, literal: Any) -> "Value":
        """Build a value from a Python literal without going through JSON"""
        if isinstance(literal, Value):
            return literal
        if literal is None:
            return cls(ValueKind.null)
        if isinstance(literal, bool):
            return cls(ValueKind.bool, literal)
        if isinstance(literal, int):
            return cls(ValueKind.int, literal)
        if isinstance(literal, float):
            return cls(ValueKind.double, literal)
        if isinstance(literal, str):
            return cls(ValueKind.string, literal)
        if isinstance(literal, (bytes, bytearray)):
            return cls.data(bytes(literal))
        if isinstance(literal, (list, tuple)):
            return cls(ValueKind.array, [cls.of(item) for item in literal])
        if isinstance(literal, dict):
            return cls(
                ValueKind.object, {str(key): cls.of(item) for key, item in literal.items()}
            )
        raise TypeError(f"Cannot build a Value from {type(literal).__name__}")

    @classmethod
    def from_codable(cls, value: Any) -> "Value":
        """Convert any JSON-serializable object into a value by round-tripping it through JSON"""
        if isinstance(value, Value):
            return value
        if isinstance(value, BaseModel):
            return cls.loads(value.model_dump_json(by_alias=True))
        return cls.loads(json.dumps(value, default=_encode_default))

    # Decoding

    @classmethod
    def decode(cls, node: Any) -> "Value":
        """Decode a parsed JSON node; the first matching shape wins"""
        if isinstance(node, Value):
            return node
        if node is None:
            return cls(ValueKind.null)
        if isinstance(node, bool):
            return cls(ValueKind.bool, node)
        if isinstance(node, int):
            return cls(ValueKind.int, node)
        if isinstance(node, float):
            if not math.isfinite(node):
                raise ValueDecodeError(f"{node} is not a valid JSON number")
            return cls(ValueKind.double, node)
        if isinstance(node, str):
            if is_data_uri(node):
                decoded = decode_data_uri(node)
                if decoded is not None:
                    mime_type, payload = decoded
                    return cls.data(payload, mime_type)
            return cls(ValueKind.string, node)
        if isinstance(node, list):
            return cls(ValueKind.array, [cls.decode(item) for item in node])
        if isinstance(node, dict):
            if not all(isinstance(key, str) for key in node):
                raise ValueDecodeError("Object keys must be strings")
            return cls(ValueKind.object, {key: cls.decode(item) for key, item in node.items()})
        raise ValueDecodeError(f"Value type not found for {type(node).__name__}")

    @classmethod
    def loads(cls, text: "str | bytes") -> "Value":
        return cls.decode(json.loads(text))

    # Encoding

    def encode(self) -> Any:
        """Return the JSON-compatible Python object for this value"""
        if self.kind is ValueKind.data:
            return encode_data_uri(self.raw, self.mime_type)
        if self.kind is ValueKind.array:
            return [item.encode() for item in self.raw]
        if self.kind is ValueKind.object:
            return {key: item.encode() for key, item in self.raw.items()}
        return self.raw

    def dumps(self) -> str:
        return json.dumps(self.encode(), allow_nan=False)

    # Accessors

    @property
    def is_null(self) -> bool:
        return self.kind is ValueKind.null

    def as_bool(self) -> Optional[bool]:
        return self.raw if self.kind is ValueKind.bool else None

    def as_int(self) -> Optional[int]:
        return self.raw if self.kind is ValueKind.int else None

    def as_double(self) -> Optional[float]:
        return self.raw if self.kind is ValueKind.double else None

    def as_string(self) -> Optional[str]:
        return self.raw if self.kind is ValueKind.string else None

    def as_data(self) -> Optional[bytes]:
        return self.raw if self.kind is ValueKind.data else None

    def as_array(self) -> Optional[list["Value"]]:
        return self.raw if self.kind is ValueKind.array else None

    def as_object(self) -> Optional[dict[str, "Value"]]:
        return self.raw if self.kind is ValueKind.object else None

    def __getitem__(self, key: "str | int") -> "Value":
        if self.kind not in (ValueKind.array, ValueKind.object):
            raise TypeError(f"{self.kind.value} value is not subscriptable")
        return self.raw[key]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Value):
            return NotImplemented
        return (
            self.kind is other.kind
            and self.mime_type == other.mime_type
            and self.raw == other.raw
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        if self.kind is ValueKind.null:
            return "Value.null()"
        if self.kind is ValueKind.data:
            return f"Value.data({self.raw!r}, mime_type={self.mime_type!r})"
        return f"Value({self.kind.value}, {self.raw!r})"

    def __str__(self) -> str:
        if self.kind is ValueKind.null:
            return ""
        if self.kind in (ValueKind.data, ValueKind.array, ValueKind.object):
            encoded = self.encode()
            return encoded if isinstance(encoded, str) else json.dumps(encoded)
        if self.kind is ValueKind.bool:
            return "true" if self.raw else "false"
        return str(self.raw)

    # Pydantic

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.decode,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda value: value.encode()
            ),
        )


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, Value):
        return obj.encode()
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if isinstance(obj, (bytes, bytearray)):
        return encode_data_uri(bytes(obj))
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
