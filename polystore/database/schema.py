# ==============================================================================
# MODEL SCHEMA - Backend-Agnostic Field Definitions
# ==============================================================================
# Pydantic models describing a model's fields
# Drives DDL generation and per-field value coercion
# ==============================================================================

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from polystore.core.exceptions import ValidationError
from polystore.query.operators import FIELD_PATTERN
from polystore.query.types import FieldType


_TYPE_ALIASES = {
    "str": FieldType.STRING,
    "int": FieldType.INTEGER,
    "float": FieldType.NUMBER,
    "double": FieldType.NUMBER,
    "decimal": FieldType.NUMBER,
    "bool": FieldType.BOOLEAN,
    "datetime": FieldType.DATE,
    "timestamp": FieldType.DATE,
    "object": FieldType.JSON,
    "list": FieldType.ARRAY,
}

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


def _normalize_type(value: Any) -> Any:
    if isinstance(value, str):
        return _TYPE_ALIASES.get(value.lower(), value.lower())
    return value


class FieldDefinition(BaseModel):
    """
    Definition of a single model field.

    Attributes:
        type: Portable field type
        required: Reject records where the field is missing or null
        unique: Enforce a unique constraint/index
        default: Value (or zero-argument callable) applied on create
        index: Create a non-unique index
        ref: Name of a referenced model
        items: Element type for ``array`` fields
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: FieldType = FieldType.STRING
    required: bool = False
    unique: bool = False
    default: Any = None
    index: bool = False
    ref: Optional[str] = None
    items: Optional[FieldType] = None

    @field_validator("type", "items", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        """Accept common aliases such as ``int`` or ``datetime``."""
        return _normalize_type(v)


class ModelSchema(BaseModel):
    """
    Immutable schema for one model (table, collection, label or key space).

    Example:
        >>> schema = ModelSchema.from_definition("users", {
        ...     "email": {"type": "string", "required": True, "unique": True},
        ...     "age": "integer",
        ... })
        >>> schema.coerce_value("age", "42")
        42
    """

    model_config = ConfigDict(frozen=True)

    name: str
    fields: Dict[str, FieldDefinition] = Field(default_factory=dict)
    primary_key: str = "id"

    @field_validator("name", "primary_key")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Model and key names end up in native query text."""
        if not FIELD_PATTERN.match(v) or "." in v:
            raise ValueError(f"Invalid identifier: {v!r}")
        return v

    @field_validator("fields")
    @classmethod
    def validate_field_names(
        cls,
        v: Dict[str, FieldDefinition],
    ) -> Dict[str, FieldDefinition]:
        for name in v:
            if not FIELD_PATTERN.match(name) or "." in name:
                raise ValueError(f"Invalid field name: {name!r}")
        return v

    # ==========================================================================
    # CONSTRUCTION
    # ==========================================================================

    @classmethod
    def from_definition(
        cls,
        name: str,
        definition: Union["ModelSchema", Mapping[str, Any], None],
        primary_key: str = "id",
    ) -> "ModelSchema":
        """
        Build a schema from a plain ``{field: type | {...}}`` mapping.

        Args:
            name: Model name
            definition: Existing schema, or mapping of field name to a
                type name, a FieldDefinition, or a FieldDefinition mapping
            primary_key: Identity field name

        Raises:
            ValidationError: If the definition is malformed
        """
        if isinstance(definition, ModelSchema):
            return definition

        fields: Dict[str, FieldDefinition] = {}
        try:
            for field_name, entry in (definition or {}).items():
                if isinstance(entry, FieldDefinition):
                    fields[field_name] = entry
                elif isinstance(entry, (str, FieldType)):
                    fields[field_name] = FieldDefinition(type=entry)
                else:
                    fields[field_name] = FieldDefinition(**dict(entry))
            return cls(name=name, fields=fields, primary_key=primary_key)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid schema for model '{name}': {e}",
                errors={"schema": str(e)},
            ) from e

    # ==========================================================================
    # INTROSPECTION
    # ==========================================================================

    def field_type(self, field_name: str) -> Optional[FieldType]:
        definition = self.fields.get(field_name)
        return definition.type if definition else None

    @property
    def unique_fields(self) -> List[str]:
        return [n for n, d in self.fields.items() if d.unique]

    @property
    def indexed_fields(self) -> List[str]:
        return [n for n, d in self.fields.items() if d.index and not d.unique]

    @property
    def required_fields(self) -> List[str]:
        return [n for n, d in self.fields.items() if d.required]

    # ==========================================================================
    # COERCION & VALIDATION
    # ==========================================================================

    def coerce_value(self, field_name: str, value: Any) -> Any:
        """
        Coerce a value to the declared type of ``field_name``.

        Undeclared fields and ``None`` pass through unchanged.

        Raises:
            ValidationError: If the value cannot represent the type
        """
        definition = self.fields.get(field_name)
        if definition is None or value is None:
            return value
        try:
            return _coerce(definition.type, value)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Invalid value for field '{field_name}': {e}",
                errors={field_name: str(e)},
            ) from e

    def validate_record(
        self,
        data: Mapping[str, Any],
        partial: bool = False,
        strict: bool = False,
    ) -> Dict[str, Any]:
        """
        Validate and coerce a record against this schema.

        Args:
            data: Incoming record
            partial: Skip defaults and required checks (updates)
            strict: Reject fields not declared in the schema

        Returns:
            New record with defaults applied and values coerced

        Raises:
            ValidationError: Listing every failing field
        """
        errors: Dict[str, str] = {}
        record = dict(data)

        if strict:
            for key in record:
                if key not in self.fields and key != self.primary_key:
                    errors[key] = "unknown field"

        if not partial:
            for field_name, definition in self.fields.items():
                if record.get(field_name) is None and definition.default is not None:
                    default = definition.default
                    record[field_name] = default() if callable(default) else default
            for field_name in self.required_fields:
                if record.get(field_name) is None:
                    errors.setdefault(field_name, "field is required")

        for field_name, value in list(record.items()):
            if field_name in errors:
                continue
            try:
                record[field_name] = self.coerce_value(field_name, value)
            except ValidationError as e:
                errors.update(e.errors)

        if errors:
            raise ValidationError(
                f"Record does not match schema '{self.name}'",
                errors=errors,
            )
        return record


def _coerce(field_type: FieldType, value: Any) -> Any:
    if field_type in (FieldType.STRING, FieldType.TEXT):
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, UUID)) and not isinstance(value, bool):
            return str(value)
        raise TypeError(f"expected string, got {type(value).__name__}")

    if field_type is FieldType.INTEGER:
        if isinstance(value, bool):
            raise TypeError("expected integer, got bool")
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
        raise TypeError(f"expected integer, got {type(value).__name__}")

    if field_type is FieldType.NUMBER:
        if isinstance(value, bool):
            raise TypeError("expected number, got bool")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            return float(value.strip())
        raise TypeError(f"expected number, got {type(value).__name__}")

    if field_type is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise ValueError(f"expected boolean, got {value!r}")

    if field_type is FieldType.DATE:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        if isinstance(value, str):
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        raise TypeError(f"expected date, got {type(value).__name__}")

    if field_type is FieldType.ARRAY:
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError(f"expected array, got {type(value).__name__}")

    if field_type is FieldType.UUID:
        return str(value if isinstance(value, UUID) else UUID(str(value)))

    return value
