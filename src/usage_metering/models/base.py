from __future__ import annotations

import types
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Tuple, Union, get_args, get_origin

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for persistence (SQL rows, Mongo documents, cache values)
    - Provide a backend-agnostic schema description derived from its fields

    The schema description feeds ``usage_metering.schema_generator``; the
    concrete Postgres DDL lives next to the statements in ``db/sql.py``.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Primary key column(s); composite keys list every column
    primary_key: ClassVar[Tuple[str, ...]] = ("id",)

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for persistence.

        Enums collapse to their values; dates and datetimes stay native so
        drivers can bind them directly.
        """
        data = self.model_dump(mode="python", exclude_none=True)
        return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            annotation, nullable = cls._unwrap_optional(field.annotation)
            properties[name] = {
                "type": cls._map_type(annotation),
                "nullable": nullable,
                "default": None if field.is_required() else field.get_default(call_default_factory=False),
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": list(cls.primary_key),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _unwrap_optional(annotation: Any) -> Tuple[Any, bool]:
        origin = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            args = [a for a in get_args(annotation) if a is not type(None)]
            if len(args) == 1:
                return args[0], True
        return annotation, False

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python type annotation to a generic logical type.
        """
        origin = get_origin(annotation)
        if origin in (list, tuple, set):
            return "array"
        if origin is dict or annotation is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"
        if annotation is datetime:
            return "datetime"
        if annotation is date:
            return "date"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-based enums
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()
