"""Centralized configuration loader for YAML-based configuration.

This module provides functions to load configuration from YAML files with:
- Environment variable overrides (env var → YAML → defaults)
- Type coercion (string to int, bool)
- Schema validation using dataclasses
- Graceful degradation (missing files use defaults)
"""

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml  # type: ignore

logger = logging.getLogger(__name__)

ENV_PREFIX = "OMOP_WIDE_"
CONFIG_FILENAME = "omop_wide.yaml"


def get_project_root() -> Path:
    """
    Get project root directory.

    Uses pattern: config_loader.py → core/ → omop_wide/ → src/ → project_root
    """
    return Path(__file__).parent.parent.parent.parent


def default_config_path() -> Path:
    """Config file location: `OMOP_WIDE_CONFIG` if set, else `<project_root>/config/omop_wide.yaml`."""
    override = os.getenv(f"{ENV_PREFIX}CONFIG")
    if override:
        return Path(override)
    return get_project_root() / "config" / CONFIG_FILENAME


def _coerce_type(value: Any, target_type: type) -> Any:
    """
    Coerce value to target type.

    Handles:
    - String "true"/"false" → bool True/False (case-insensitive)
    - String "123" → int 123

    Raises:
        ValueError: If coercion fails
    """
    if value is None:
        return None

    if isinstance(value, target_type) and not (target_type is int and isinstance(value, bool)):
        return value

    if target_type is bool:
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is int:
        if isinstance(value, bool):
            raise ValueError(f"Refusing to coerce boolean {value!r} to int")
        if isinstance(value, str):
            return int(float(value))  # Handle "3.0" → 3
        return int(value)

    if target_type is str:
        return str(value)

    return value


def _is_critical_config(key: str) -> bool:
    """
    Check if a config key is critical (should raise ValueError on type coercion failure).

    The disclosure threshold must never silently fall back to a default.
    """
    return key in ("nfilter_subset",)


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """
    Apply `OMOP_WIDE_<KEY>` environment variable overrides to config.

    Args:
        config: Configuration dictionary

    Returns:
        Config with env var overrides applied
    """
    result = config.copy()

    for config_key in result.keys():
        env_key = f"{ENV_PREFIX}{config_key.upper()}"
        env_value = os.getenv(env_key)
        if env_value is None:
            continue

        target_type = type(result[config_key])
        try:
            result[config_key] = _coerce_type(env_value, target_type)
        except (ValueError, TypeError) as e:
            if _is_critical_config(config_key):
                raise ValueError(
                    f"Type coercion failed for critical config {env_key}={env_value}: "
                    f"expected {target_type.__name__}. Error: {e}"
                ) from e
            logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    return result


@dataclass(frozen=True)
class AssemblyConfig:
    """
    Settings of the traversal and assembly engine.

    Attributes:
        root_table: Root entity table of a full assembly
        entity_column: Entity identifier column used for privacy counts and filters
        nfilter_subset: Minimum number of distinct entities in any returned group
        source_marker: Substring marking raw source-system columns, hidden by default
        vocabulary_table: Vocabulary table holding concept names
        max_extension_depth: Bound on reference-table extension passes
        remove_concept_id: Drop raw concept-id columns after a full assembly
        drop_empty_columns: Drop all-null columns after a full assembly
        log_level: Logging level used by the CLI
    """

    root_table: str = "person"
    entity_column: str = "person_id"
    nfilter_subset: int = 3
    source_marker: str = "_source"
    vocabulary_table: str = "concept"
    max_extension_depth: int = 5
    remove_concept_id: bool = True
    drop_empty_columns: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.nfilter_subset < 1:
            raise ValueError(f"nfilter_subset must be at least 1, got {self.nfilter_subset}")
        if self.max_extension_depth < 0:
            raise ValueError(f"max_extension_depth must be non-negative, got {self.max_extension_depth}")

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return asdict(self)


def load_assembly_config(config_path: Path | None = None) -> AssemblyConfig:
    """
    Load assembly config from YAML with env var overrides.

    Precedence: Environment variable → YAML value → Default value

    Args:
        config_path: Optional path to config file. If None, uses default location.

    Returns:
        AssemblyConfig

    Raises:
        ValueError: If YAML is invalid or a critical value cannot be coerced
    """
    defaults = AssemblyConfig().to_dict()
    known_keys = {f.name for f in fields(AssemblyConfig)}

    if config_path is None:
        config_path = default_config_path()

    config = defaults.copy()
    if config_path.exists():
        try:
            with open(config_path) as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}") from e

        for key, value in yaml_data.items():
            if key not in known_keys:
                logger.warning(f"Ignoring unknown config key {key!r} in {config_path}")
                continue
            target_type = type(defaults[key])
            try:
                config[key] = _coerce_type(value, target_type)
            except (ValueError, TypeError) as e:
                if _is_critical_config(key):
                    raise ValueError(
                        f"Type coercion failed for critical config {key}={value}: "
                        f"expected {target_type.__name__}, got {type(value).__name__}. "
                        f"Error: {e}"
                    ) from e
                logger.warning(
                    f"Failed to coerce YAML value {key}={value} to {target_type.__name__}: {e}, using default"
                )
    else:
        logger.debug(f"Config file not found at {config_path}, using defaults")

    config = _apply_env_overrides(config)

    return AssemblyConfig(**config)
