"""
omop_wide - wide-table assembly for OMOP CDM databases.

Relationships between tables are inferred from column naming conventions,
every related table is translated through the vocabulary and pivoted to one
row per person, and a minimum group size is enforced on everything returned.
"""

from omop_wide.core.config_loader import AssemblyConfig, load_assembly_config
from omop_wide.core.errors import (
    MissingDependencyError,
    NotFoundError,
    OMOPError,
    PrivacyViolationError,
    TranslationUnavailableError,
    UnsupportedResourceError,
)
from omop_wide.service import (
    check_connection,
    create_full_assembly,
    get_table,
    list_columns,
    list_concepts,
    list_tables,
)
from omop_wide.storage.connection import Resource

__version__ = "0.1.0"

__all__ = [
    "AssemblyConfig",
    "MissingDependencyError",
    "NotFoundError",
    "OMOPError",
    "PrivacyViolationError",
    "Resource",
    "TranslationUnavailableError",
    "UnsupportedResourceError",
    "check_connection",
    "create_full_assembly",
    "get_table",
    "list_columns",
    "list_concepts",
    "list_tables",
    "load_assembly_config",
]
