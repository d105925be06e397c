"""
Closure table configuration.

The closure relation has three logical columns (ancestor, descendant, depth).
ClosureTableConfig maps them, and the table itself, to physical names so the
manager can be pointed at an existing schema without subclassing.

Configuration sources, highest precedence first:
    1. Keyword overrides passed to resolve_closure_config()
    2. CLOSURE_TABLE_* environment variables
    3. Settings dict (flat ``closure_*`` keys, see parse_closure_config)
    4. Dataclass defaults

Example:
    >>> from closure_table.config import ClosureTableConfig
    >>>
    >>> config = ClosureTableConfig(table_name="category_closure", table_prefix="app_")
    >>> config.prefixed_table
    'app_category_closure'
    >>> config.qualified_ancestor_column
    'app_category_closure.ancestor'

Example (YAML):
    # closure.yaml
    closure_table:
      table_name: category_closure
      id_type: string
      entity_table: categories

    >>> from closure_table.config import load_closure_config
    >>> config = load_closure_config("closure.yaml")
"""

import dataclasses
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import yaml
from jsonschema import Draft202012Validator

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ID_TYPES = ("integer", "string")

# Environment variable -> config field
ENV_VARS = {
    "CLOSURE_TABLE_NAME": "table_name",
    "CLOSURE_TABLE_PREFIX": "table_prefix",
    "CLOSURE_TABLE_PRIMARY_KEY": "primary_key",
    "CLOSURE_TABLE_ANCESTOR_COLUMN": "ancestor_column",
    "CLOSURE_TABLE_DESCENDANT_COLUMN": "descendant_column",
    "CLOSURE_TABLE_DEPTH_COLUMN": "depth_column",
    "CLOSURE_TABLE_ID_TYPE": "id_type",
    "CLOSURE_TABLE_ID_LENGTH": "id_length",
    "CLOSURE_TABLE_ENTITY_TABLE": "entity_table",
    "CLOSURE_TABLE_ENTITY_KEY": "entity_key",
}

# Flat settings key -> config field
SETTINGS_KEYS = {
    "closure_table": "table_name",
    "closure_prefix": "table_prefix",
    "closure_primary_key": "primary_key",
    "closure_ancestor_column": "ancestor_column",
    "closure_descendant_column": "descendant_column",
    "closure_depth_column": "depth_column",
    "closure_id_type": "id_type",
    "closure_id_length": "id_length",
    "closure_entity_table": "entity_table",
    "closure_entity_key": "entity_key",
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "table_name": {"type": "string", "minLength": 1},
        "table_prefix": {"type": "string"},
        "primary_key": {"type": "string", "minLength": 1},
        "ancestor_column": {"type": "string", "minLength": 1},
        "descendant_column": {"type": "string", "minLength": 1},
        "depth_column": {"type": "string", "minLength": 1},
        "id_type": {"enum": list(ID_TYPES)},
        "id_length": {"type": "integer", "minimum": 1},
        "entity_table": {"type": ["string", "null"]},
        "entity_key": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}


@dataclass(frozen=True)
class ClosureTableConfig:
    """
    Physical naming and typing of the closure relation.

    Attributes:
        table_name: Closure table name (without prefix)
        table_prefix: Prefix prepended to table_name for the physical table
        primary_key: Surrogate primary key column
        ancestor_column: Physical name of the logical "ancestor" column
        descendant_column: Physical name of the logical "descendant" column
        depth_column: Physical name of the logical "depth" column
        id_type: "integer" (BigInteger ids) or "string" (String(id_length) ids)
        id_length: Length of string ids
        entity_table: Optional entity table referenced by ancestor/descendant
        entity_key: Key column of entity_table
    """

    table_name: str = "entities_closure"
    table_prefix: str = ""
    primary_key: str = "closure_id"
    ancestor_column: str = "ancestor"
    descendant_column: str = "descendant"
    depth_column: str = "depth"
    id_type: str = "integer"
    id_length: int = 128
    entity_table: Optional[str] = None
    entity_key: str = "id"

    def __post_init__(self):
        names = {
            "table_name": self.table_name,
            "primary_key": self.primary_key,
            "ancestor_column": self.ancestor_column,
            "descendant_column": self.descendant_column,
            "depth_column": self.depth_column,
            "entity_key": self.entity_key,
        }
        if self.entity_table is not None:
            names["entity_table"] = self.entity_table
        if self.table_prefix:
            names["prefixed_table"] = self.prefixed_table

        for field_name, value in names.items():
            if not isinstance(value, str) or not _IDENTIFIER.match(value):
                raise ConfigurationError(
                    f"Invalid identifier for {field_name}: {value!r}"
                )

        columns = (self.primary_key, *self.columns)
        if len(set(columns)) != len(columns):
            raise ConfigurationError(
                f"Closure columns must be distinct, got {columns}"
            )

        if self.id_type not in ID_TYPES:
            raise ConfigurationError(
                f"Unknown id_type: '{self.id_type}'. Valid types: {list(ID_TYPES)}"
            )

        if isinstance(self.id_length, bool) or not isinstance(self.id_length, int) or self.id_length < 1:
            raise ConfigurationError(f"id_length must be a positive integer, got {self.id_length!r}")

    @property
    def prefixed_table(self) -> str:
        """Physical table name, prefix included."""
        return f"{self.table_prefix}{self.table_name}"

    @property
    def columns(self) -> Tuple[str, str, str]:
        """Physical (ancestor, descendant, depth) column names."""
        return (self.ancestor_column, self.descendant_column, self.depth_column)

    @property
    def qualified_ancestor_column(self) -> str:
        return f"{self.prefixed_table}.{self.ancestor_column}"

    @property
    def qualified_descendant_column(self) -> str:
        return f"{self.prefixed_table}.{self.descendant_column}"

    @property
    def qualified_depth_column(self) -> str:
        return f"{self.prefixed_table}.{self.depth_column}"

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def parse_closure_config(settings: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract closure config kwargs from a flat settings dict.

    Args:
        settings: Dict with keys like ``closure_table``, ``closure_prefix``,
            ``closure_ancestor_column``, ``closure_id_type``. Unrelated keys
            are ignored.

    Returns:
        Dict of ClosureTableConfig keyword arguments

    Example:
        >>> parse_closure_config({"closure_table": "tree_paths", "other": 1})
        {'table_name': 'tree_paths'}
    """
    kwargs = {}
    for key, field_name in SETTINGS_KEYS.items():
        if key in settings:
            kwargs[field_name] = settings[key]
    return kwargs


def _coerce_id_length(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"id_length must be an integer, got {value!r}") from e


def resolve_closure_config(
    settings: Optional[Dict[str, Any]] = None,
    **overrides: Any,
) -> ClosureTableConfig:
    """
    Build a config with precedence: overrides > env > settings > defaults.

    Args:
        settings: Optional flat settings dict (see parse_closure_config)
        **overrides: ClosureTableConfig fields; None values are ignored

    Returns:
        ClosureTableConfig

    Raises:
        ConfigurationError: If the resulting configuration is invalid
    """
    kwargs: Dict[str, Any] = {}

    if settings:
        kwargs.update(parse_closure_config(settings))

    for env_var, field_name in ENV_VARS.items():
        value = os.environ.get(env_var)
        if value is not None and value != "":
            kwargs[field_name] = value

    for field_name, value in overrides.items():
        if field_name not in ClosureTableConfig.__dataclass_fields__:
            raise ConfigurationError(f"Unknown closure config option: '{field_name}'")
        if value is not None:
            kwargs[field_name] = value

    if "id_length" in kwargs:
        kwargs["id_length"] = _coerce_id_length(kwargs["id_length"])

    config = ClosureTableConfig(**kwargs)
    logger.debug("Resolved closure config: %s", config)
    return config


def validate_config_dict(data: Dict[str, Any]) -> None:
    """
    Validate a config mapping against CONFIG_SCHEMA.

    Raises:
        ConfigurationError: Listing every schema violation found
    """
    validator = Draft202012Validator(CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = []
        for error in errors:
            location = ".".join(str(p) for p in error.path) or "<root>"
            messages.append(f"{location}: {error.message}")
        raise ConfigurationError("Invalid closure config: " + "; ".join(messages))


def load_closure_config(path: str) -> ClosureTableConfig:
    """
    Load a ClosureTableConfig from a YAML file.

    The file holds either a top-level ``closure_table:`` mapping or the
    config fields directly. An empty file yields the defaults.

    Args:
        path: Path to the YAML file

    Returns:
        ClosureTableConfig

    Raises:
        ConfigurationError: If the document is not a mapping or fails schema
            validation
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Closure config in {path} must be a mapping")

    nested = data.get("closure_table")
    if isinstance(nested, dict):
        data = nested

    validate_config_dict(data)
    return ClosureTableConfig(**data)


__all__ = [
    "ClosureTableConfig",
    "CONFIG_SCHEMA",
    "ENV_VARS",
    "SETTINGS_KEYS",
    "parse_closure_config",
    "resolve_closure_config",
    "validate_config_dict",
    "load_closure_config",
]
