"""Column types and helpers shared by the models"""
from __future__ import annotations

from datetime import datetime, timezone
import enum
from typing import Any, Type

from pydantic import TypeAdapter
from sqlalchemy import JSON, Enum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


def utc_now() -> datetime:
    """Return current UTC time - compatible with SQLAlchemy default"""
    # Timezone-naive UTC for TIMESTAMP WITHOUT TIME ZONE columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


JSONType = JSON().with_variant(JSONB(), "postgresql")


def str_enum(enum_cls: Type[enum.Enum]) -> Enum:
    """Store a str enum by value in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
        length=32,
        validate_strings=True,
    )


class PydanticJSON(TypeDecorator):
    """JSON column holding a pydantic model (or a typed container of models).

    Values are validated on the way in and rebuilt on the way out, so callers
    never see raw dictionaries.
    """

    impl = JSON
    cache_ok = True

    def __init__(self, pydantic_type: Any, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pydantic_type = pydantic_type
        self._adapter = TypeAdapter(pydantic_type)

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        return dialect.type_descriptor(JSON())

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self._adapter.dump_python(self._adapter.validate_python(value), mode="json")

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self._adapter.validate_python(value)
