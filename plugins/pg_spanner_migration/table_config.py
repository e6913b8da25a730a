"""
Migration Configuration Module

This module reads run options from environment variables and handles the
include/exclude table filters given in 'schema.table' format.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
import fnmatch
import json
import logging
import os
import re

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    return val.strip().lower() in ('true', '1', 'yes', 'on')


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    val = os.environ.get(name)
    if val is None or not val.strip():
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got '{val}'")


@dataclass
class MigrationOptions:
    """
    Tunables for the schema pass and the data pass.

    Attributes:
        default_schema: Source namespace that is never used to qualify table names
        default_timezone: Zone for timestamps that carry no zone of their own
        array_support: Whether the target accepts ARRAY columns
        max_parallel_transfers: Number of tables converted concurrently
        bad_row_sample_size: Number of bad rows kept for diagnostics
        fetch_size: Rows fetched per round trip from the source cursor
        statement_timeout_ms: Source statement timeout (None leaves the server default)
        include_tables: 'schema.table' entries to restrict the migration to
        exclude_tables: fnmatch patterns of table names to leave out
    """

    default_schema: str = 'public'
    default_timezone: str = 'UTC'
    array_support: bool = False
    max_parallel_transfers: int = 1
    bad_row_sample_size: int = 100
    fetch_size: int = 10000
    statement_timeout_ms: Optional[int] = None
    include_tables: List[str] = field(default_factory=list)
    exclude_tables: List[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "MigrationOptions":
        """Build options from environment variables, falling back to defaults."""
        options = cls(
            default_schema=os.environ.get('SOURCE_DEFAULT_SCHEMA', 'public'),
            default_timezone=os.environ.get('SOURCE_DEFAULT_TIMEZONE', 'UTC'),
            array_support=_env_bool('SPANNER_ARRAY_SUPPORT', False),
            max_parallel_transfers=max(1, _env_int('MAX_PARALLEL_TRANSFERS', 1)),
            bad_row_sample_size=max(0, _env_int('BAD_ROW_SAMPLE_SIZE', 100)),
            fetch_size=max(1, _env_int('SOURCE_FETCH_SIZE', 10000)),
            statement_timeout_ms=_env_int('SOURCE_STATEMENT_TIMEOUT_MS', None),
            include_tables=expand_table_list_param(os.environ.get('INCLUDE_TABLES', '')),
            exclude_tables=expand_table_list_param(os.environ.get('EXCLUDE_TABLES', '')),
        )
        logger.debug(f"Migration options: {options}")
        return options


def parse_schema_table(entry: str) -> Tuple[str, str]:
    """
    Parse single 'schema.table' entry.

    Handles:
    - Simple format: "public.users" -> ("public", "users")
    - Quoted format: '"Sales"."Order Lines"' -> ("Sales", "Order Lines")

    Args:
        entry: Schema.table string in either format

    Returns:
        Tuple of (schema, table)

    Raises:
        ValueError: If format is invalid (no dot separator found)
    """
    entry = entry.strip()

    match = re.match(r'^"([^"]+)"\."([^"]+)"$', entry)
    if match:
        return (match.group(1), match.group(2))

    parts = entry.split('.', 1)
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError(
            f"Invalid table format '{entry}': must be 'schema.table' or '\"schema\".\"table\"'"
        )

    return (parts[0].strip(), parts[1].strip())


def parse_include_tables(include_tables: List[str]) -> Dict[str, List[str]]:
    """
    Parse 'schema.table' entries into {schema: [tables]} dict.

    Example:
        ["public.users", "public.posts", "sales.orders"]
        -> {"public": ["users", "posts"], "sales": ["orders"]}

    Raises:
        ValueError: If any entry is invalid format
    """
    result: Dict[str, List[str]] = {}

    for entry in include_tables:
        schema, table = parse_schema_table(entry)
        tables = result.setdefault(schema, [])
        if table not in tables:
            tables.append(table)

    return result


def expand_table_list_param(raw) -> List[str]:
    """
    Normalize a table list given as a list, a JSON string or a comma-separated string.

    Examples:
        ["public.a", "public.b"]      -> ["public.a", "public.b"]
        '["public.a", "public.b"]'    -> ["public.a", "public.b"]
        "public.a, public.b"          -> ["public.a", "public.b"]
    """
    if raw is None:
        return []

    if isinstance(raw, str):
        raw = raw.strip()
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            raw = parsed if isinstance(parsed, list) else [str(parsed)]
        except json.JSONDecodeError:
            raw = [t.strip() for t in raw.split(',') if t.strip()]

    if isinstance(raw, list):
        expanded = []
        for item in raw:
            if isinstance(item, str):
                expanded.extend(t.strip() for t in item.split(',') if t.strip())
        return expanded

    logger.warning(
        "expand_table_list_param received unsupported type %s; returning empty list.",
        type(raw).__name__,
    )
    return []


def matches_pattern(name: str, pattern: str) -> bool:
    """Case-insensitive wildcard match of a table name (or 'schema.table')."""
    return fnmatch.fnmatch(name.lower(), pattern.lower())


def is_table_selected(
    schema: str,
    table: str,
    include_tables: Optional[List[str]] = None,
    exclude_patterns: Optional[List[str]] = None
) -> bool:
    """
    Decide whether a discovered table takes part in the migration.

    A table is selected when include_tables is empty or lists it, and no
    exclude pattern matches either its bare name or 'schema.table'.
    """
    if include_tables:
        included = parse_include_tables(include_tables)
        if table not in included.get(schema, []):
            return False

    for pattern in exclude_patterns or []:
        if matches_pattern(table, pattern) or matches_pattern(f"{schema}.{table}", pattern):
            logger.info(f"Excluding table {schema}.{table} (matches pattern '{pattern}')")
            return False

    return True
