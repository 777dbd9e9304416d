from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

FIELD_TYPES = ("string", "integer", "number", "boolean", "array", "object")


class ResponseFormatType(str, Enum):
    TEXT = "TEXT"
    JSON = "JSON"


@dataclass(frozen=True)
class SchemaField:
    """One named, typed field of a structured response."""

    name: str
    type: str = "string"
    description: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Schema field name must not be empty.")
        if self.type not in FIELD_TYPES:
            raise ValueError(f"Unsupported schema field type: {self.type}")


@dataclass(frozen=True)
class ResponseSchema:
    """Explicit schema for structured output, built by the caller as data."""

    fields: tuple[SchemaField, ...]
    name: str = "output"
    description: str | None = None

    @classmethod
    def of(cls, fields: Iterable[SchemaField | tuple[str, str]], **kwargs: Any) -> "ResponseSchema":
        normalized = tuple(
            item if isinstance(item, SchemaField) else SchemaField(item[0], item[1])
            for item in fields
        )
        names = [item.name for item in normalized]
        if len(set(names)) != len(names):
            raise ValueError("Schema field names must be unique.")
        return cls(fields=normalized, **kwargs)

    @property
    def field_names(self) -> list[str]:
        return [item.name for item in self.fields]

    def to_json_schema(self) -> dict[str, Any]:
        """Render the schema as a JSON schema object preserving field order."""

        properties: dict[str, Any] = {}
        for item in self.fields:
            prop: dict[str, Any] = {"type": item.type}
            if item.type == "array":
                prop["items"] = {"type": "string"}
            if item.description:
                prop["description"] = item.description
            properties[item.name] = prop
        schema: dict[str, Any] = {
            "type": "object",
            "properties": properties,
            "required": self.field_names,
            "additionalProperties": False,
        }
        if self.description:
            schema["description"] = self.description
        return schema


@dataclass(frozen=True)
class ResponseFormat:
    """Requested shape of the model answer."""

    type: ResponseFormatType = ResponseFormatType.TEXT
    schema: ResponseSchema | None = None

    def __post_init__(self) -> None:
        if self.type == ResponseFormatType.TEXT and self.schema is not None:
            raise ValueError("A schema is only allowed for the JSON response format.")

    @property
    def is_json(self) -> bool:
        return self.type == ResponseFormatType.JSON

    @classmethod
    def json(cls, schema: ResponseSchema | None = None) -> "ResponseFormat":
        return cls(type=ResponseFormatType.JSON, schema=schema)
