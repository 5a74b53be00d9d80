"""
Configuration Schema System.

This module provides schema declaration and validation for host settings.

Key features:
- Type-safe field definitions with constraints
- Section validation that fills in defaults
- The schema of the ``[host]`` section
"""

from dataclasses import dataclass
from typing import Any


class SchemaError(Exception):
    """Base exception for schema-related errors."""

    pass


class ValidationError(SchemaError):
    """Raised when value validation fails."""

    pass


def _matches_type(value: Any, type_: type) -> bool:
    # bool is an int subclass; TOML integers are acceptable floats
    if isinstance(value, bool) and type_ is not bool:
        return False
    if type_ is float:
        return isinstance(value, (int, float))
    return isinstance(value, type_)


@dataclass
class ConfigField:
    """
    Represents a configuration field with type and constraints.

    Attributes:
        type_: The expected type of the field value
        default: Default value for the field
        description: Human-readable description
        min: Minimum value (for numbers) or minimum length (for strings)
        max: Maximum value (for numbers) or maximum length (for strings)
        choices: List of allowed values (optional)
    """

    type_: type
    default: Any
    description: str = ""
    min: Any = None
    max: Any = None
    choices: list[Any] | None = None

    def __post_init__(self):
        """Validate field definition."""
        if not _matches_type(self.default, self.type_):
            raise SchemaError(
                f"Default value {self.default!r} does not match type {self.type_.__name__}"
            )

        if (self.min is not None or self.max is not None) and self.type_ not in (
            int,
            float,
            str,
        ):
            raise SchemaError(
                f"min/max constraints only supported for int, float, str. Got {self.type_.__name__}"
            )

        if self.choices is not None and self.default not in self.choices:
            raise SchemaError(
                f"Default value {self.default!r} not in choices {self.choices}"
            )

    def validate(self, value: Any) -> None:
        """
        Validate a value against this field's constraints.

        Args:
            value: The value to validate

        Raises:
            ValidationError: If validation fails
        """
        if not _matches_type(value, self.type_):
            raise ValidationError(
                f"Expected type {self.type_.__name__}, got {type(value).__name__}"
            )

        if self.choices is not None and value not in self.choices:
            raise ValidationError(
                f"Value {value!r} not in allowed choices {self.choices}"
            )

        measured = len(value) if self.type_ is str else value
        label = "Length" if self.type_ is str else "Value"
        if self.min is not None and measured < self.min:
            raise ValidationError(f"{label} {measured} is less than minimum {self.min}")
        if self.max is not None and measured > self.max:
            raise ValidationError(f"{label} {measured} is greater than maximum {self.max}")


def validate_section(
    section: str, values: dict[str, Any], schema: dict[str, ConfigField]
) -> dict[str, Any]:
    """
    Validate a config section and fill in defaults for missing fields.

    Args:
        section: Section name (used in error messages)
        values: Values read from the file
        schema: The schema dictionary (field_name -> ConfigField)

    Returns:
        Complete section with defaults applied

    Raises:
        ValidationError: If an unknown field is present or a value is invalid
    """
    for key in values:
        if key not in schema:
            raise ValidationError(f"Unknown configuration field: [{section}].{key}")

    merged = {}
    for field_name, field in schema.items():
        value = values.get(field_name, field.default)
        try:
            field.validate(value)
        except ValidationError as e:
            raise ValidationError(f"Field [{section}].{field_name}: {e}") from e
        merged[field_name] = value

    return merged


def generate_default_config(schema: dict[str, ConfigField]) -> dict[str, Any]:
    """
    Generate a default configuration from a schema.

    Args:
        schema: The schema dictionary (field_name -> ConfigField)

    Returns:
        A dictionary with default values for all fields
    """
    return {field_name: field.default for field_name, field in schema.items()}


HOST_SCHEMA: dict[str, ConfigField] = {
    "plugins_dir": ConfigField(str, "plugins", "Directory holding one sub-directory per plugin", min=1),
    "key_strategy": ConfigField(
        str,
        "path",
        "Register plugins by directory name ('path') or manifest name ('manifest')",
        choices=["path", "manifest"],
    ),
    "command_prefix": ConfigField(str, "!", "Prefix that marks a chat message as a command", min=1, max=3),
    "hot_reload": ConfigField(bool, False, "Reload plugins when their files change"),
    "reload_debounce": ConfigField(float, 0.5, "Seconds of quiet before a change is applied", min=0.0, max=60.0),
    "reload_cooldown": ConfigField(float, 1.0, "Minimum seconds between reloads of one plugin", min=0.0, max=600.0),
    "log_level": ConfigField(
        str,
        "INFO",
        "Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    ),
}
