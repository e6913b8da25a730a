"""
PostgreSQL to Spanner Type Mapping Module

This module maps PostgreSQL column types onto the Spanner type system and
converts whole source tables into target tables, recording a schema issue
for every lossy or unsupported mapping.
"""

from typing import Dict, List, Optional, Tuple
import logging

from pg_spanner_migration.conversion_report import ConversionReport
from pg_spanner_migration.schema_model import (
    MAX_LENGTH,
    FkAction,
    IdGenerator,
    IndexKey,
    SchemaConversion,
    SchemaIssue,
    SourceColumn,
    SourceTable,
    SourceType,
    SpannerType,
    TargetColumn,
    TargetForeignKey,
    TargetIndex,
    TargetTable,
    TargetType,
)
from pg_spanner_migration.synthetic_keys import add_synthetic_primary_key
from pg_spanner_migration.table_config import MigrationOptions
from pg_spanner_migration.utils import to_spanner_name, unique_name

logger = logging.getLogger(__name__)


class NoValidMapping(ValueError):
    """Raised when a source type has no Spanner equivalent."""


# PostgreSQL type name (as reported by information_schema, plus common aliases)
# -> (Spanner base type, issue raised by the mapping)
TYPE_MAPPING = {
    # Boolean
    "boolean": (SpannerType.BOOL, None),
    "bool": (SpannerType.BOOL, None),

    # Integers
    "bigint": (SpannerType.INT64, None),
    "int8": (SpannerType.INT64, None),
    "bigserial": (SpannerType.INT64, None),
    "integer": (SpannerType.INT64, SchemaIssue.WIDENED),
    "int": (SpannerType.INT64, SchemaIssue.WIDENED),
    "int4": (SpannerType.INT64, SchemaIssue.WIDENED),
    "serial": (SpannerType.INT64, SchemaIssue.WIDENED),
    "smallint": (SpannerType.INT64, SchemaIssue.WIDENED),
    "int2": (SpannerType.INT64, SchemaIssue.WIDENED),
    "smallserial": (SpannerType.INT64, SchemaIssue.WIDENED),

    # Floating point
    "real": (SpannerType.FLOAT32, None),
    "float4": (SpannerType.FLOAT32, None),
    "double precision": (SpannerType.FLOAT64, None),
    "float8": (SpannerType.FLOAT64, None),
    "float": (SpannerType.FLOAT64, None),  # narrowed to FLOAT32 by precision

    # Exact numeric
    "numeric": (SpannerType.NUMERIC, None),
    "decimal": (SpannerType.NUMERIC, None),

    # Character
    "character": (SpannerType.STRING, None),
    "char": (SpannerType.STRING, None),
    "bpchar": (SpannerType.STRING, None),
    "character varying": (SpannerType.STRING, None),
    "varchar": (SpannerType.STRING, None),
    "text": (SpannerType.STRING, None),

    # Binary
    "bytea": (SpannerType.BYTES, None),

    # Date and time
    "date": (SpannerType.DATE, None),
    "timestamp": (SpannerType.TIMESTAMP, SchemaIssue.TIMESTAMP_PRECISION_LOSS),
    "timestamp without time zone": (SpannerType.TIMESTAMP, SchemaIssue.TIMESTAMP_PRECISION_LOSS),
    "timestamptz": (SpannerType.TIMESTAMP, None),
    "timestamp with time zone": (SpannerType.TIMESTAMP, None),

    # JSON
    "json": (SpannerType.JSON, None),
    "jsonb": (SpannerType.JSON, None),
}

# Types whose length modifier carries over to STRING(n)
SIZED_STRING_TYPES = frozenset(["character", "char", "bpchar", "character varying", "varchar"])

# Referential actions Spanner foreign keys accept
SUPPORTED_FK_ACTIONS = (FkAction.NO_ACTION, FkAction.CASCADE)


def map_type(src_type: SourceType, array_support: bool = False) -> Tuple[TargetType, List[SchemaIssue]]:
    """
    Map a PostgreSQL type descriptor to a Spanner type.

    Args:
        src_type: Canonical source type
        array_support: Whether the target accepts ARRAY columns. Arrays always map
            to an ARRAY of the mapped element type; without support they also
            carry ArrayTypeNotSupported.

    Returns:
        Tuple of (target type, issues raised by the mapping)

    Raises:
        NoValidMapping: If the source type (or array element type) is unknown

    Examples:
        >>> map_type(SourceType('integer'))
        (TargetType(name=<SpannerType.INT64: 'INT64'>, length=None, is_array=False), [<SchemaIssue.WIDENED: 'Widened'>])
    """
    normalized = src_type.name.lower().strip()
    if normalized not in TYPE_MAPPING:
        raise NoValidMapping(f"No valid Spanner type for PostgreSQL type '{src_type.name}'")

    base, issue = TYPE_MAPPING[normalized]
    issues = [issue] if issue else []

    if normalized == "float" and src_type.mods and src_type.mods[0] <= 24:
        base = SpannerType.FLOAT32

    length = None
    if base == SpannerType.STRING:
        if normalized in SIZED_STRING_TYPES and src_type.mods:
            length = src_type.mods[0]
        else:
            length = MAX_LENGTH
    elif base == SpannerType.BYTES:
        length = MAX_LENGTH

    if src_type.is_array:
        if not array_support:
            issues.append(SchemaIssue.ARRAY_TYPE_NOT_SUPPORTED)
        return TargetType(base, length, is_array=True), issues

    return TargetType(base, length), issues


def map_column(
    src_col: SourceColumn,
    target_name: Optional[str] = None,
    array_support: bool = False
) -> Tuple[TargetColumn, List[SchemaIssue]]:
    """
    Map a source column to a target column.

    An unknown type never fails the column: it falls back to STRING(MAX)
    with a NoGoodType issue.

    Args:
        src_col: Source column
        target_name: Target column name (defaults to the sanitised source name)
        array_support: Whether the target accepts ARRAY columns

    Returns:
        Tuple of (target column sharing the source column id, issues)
    """
    try:
        target_type, issues = map_type(src_col.type, array_support)
    except NoValidMapping as e:
        logger.warning(f"Column {src_col.name}: {e}, using STRING(MAX)")
        target_type, issues = TargetType(SpannerType.STRING, MAX_LENGTH), [SchemaIssue.NO_GOOD_TYPE]

    if src_col.ignored.default:
        issues.append(SchemaIssue.DEFAULT_VALUE_DROPPED)
    if src_col.ignored.check:
        issues.append(SchemaIssue.CHECK_CONSTRAINT_DROPPED)

    target_col = TargetColumn(
        id=src_col.id,
        name=target_name or to_spanner_name(src_col.name),
        type=target_type,
        not_null=src_col.not_null,
    )
    return target_col, issues


def map_table_schema(
    src_table: SourceTable,
    table_name: str,
    conv: SchemaConversion,
    ids: IdGenerator,
    array_support: bool = False,
    used_names: Optional[List[str]] = None
) -> TargetTable:
    """
    Map an entire source table to a Spanner table.

    Columns keep their ids. A key-less table gets a synthetic key column.
    Foreign keys are resolved separately, once every table is mapped.

    Args:
        src_table: Source table
        table_name: Target table name
        conv: Conversion receiving the schema issues and synthetic key state
        ids: Id generator of the run
        array_support: Whether the target accepts ARRAY columns
        used_names: Names taken in the schema-wide namespace (index names are added)

    Returns:
        TargetTable with the same id as the source table
    """
    used_names = used_names if used_names is not None else []
    sp_table = TargetTable(id=src_table.id, name=table_name)

    column_names: List[str] = []
    for col_id in src_table.column_ids:
        src_col = src_table.column_defs[col_id]
        col_name = unique_name(to_spanner_name(src_col.name), column_names)
        column_names.append(col_name)
        target_col, issues = map_column(src_col, col_name, array_support)
        sp_table.column_defs[col_id] = target_col
        sp_table.column_ids.append(col_id)
        for issue in issues:
            conv.add_issue(src_table.id, col_id, issue)

    sp_table.primary_keys = [
        IndexKey(column_id=key.column_id, desc=key.desc, order=key.order)
        for key in src_table.primary_keys
    ]
    if not sp_table.primary_keys:
        state = add_synthetic_primary_key(sp_table, ids)
        conv.synthetic_keys[src_table.id] = state
        conv.add_issue(src_table.id, state.column_id, SchemaIssue.MISSING_PRIMARY_KEY)

    for src_index in src_table.indexes:
        index_name = unique_name(to_spanner_name(src_index.name), used_names)
        used_names.append(index_name)
        sp_table.indexes.append(TargetIndex(
            id=src_index.id,
            name=index_name,
            table_id=sp_table.id,
            unique=src_index.unique,
            keys=[IndexKey(column_id=k.column_id, desc=k.desc, order=k.order) for k in src_index.keys],
        ))

    return sp_table


def _target_fk_action(action: FkAction) -> Tuple[FkAction, bool]:
    if action in SUPPORTED_FK_ACTIONS:
        return action, False
    return FkAction.NO_ACTION, True


def map_foreign_keys(
    src_table: SourceTable,
    conv: SchemaConversion,
    report: ConversionReport,
    used_names: List[str]
) -> List[TargetForeignKey]:
    """
    Resolve the foreign keys of one table against the mapped target tables.

    Keys referencing a table or column that was not extracted are dropped
    and reported. Actions Spanner does not accept become NO ACTION with a
    ForeignKeyActionNotSupported issue on the first local column.
    """
    result = []
    for fk in src_table.foreign_keys:
        refer_table_id = conv.table_id_by_source_name(fk.refer_table_name)
        if refer_table_id is None or refer_table_id not in conv.sp_schema:
            report.unexpected(
                f"Foreign key {fk.name} of {src_table.name} references unknown table "
                f"{fk.refer_table_name}, dropping it"
            )
            continue

        refer_ids = conv.src_schema[refer_table_id].column_id_by_name()
        missing = [name for name in fk.refer_column_names if name not in refer_ids]
        if missing or len(fk.refer_column_names) != len(fk.column_ids):
            report.unexpected(
                f"Foreign key {fk.name} of {src_table.name} has unresolved referenced columns "
                f"{missing or fk.refer_column_names}, dropping it"
            )
            continue

        on_delete, delete_unsupported = _target_fk_action(fk.on_delete)
        on_update, update_unsupported = _target_fk_action(fk.on_update)
        if delete_unsupported or update_unsupported:
            conv.add_issue(src_table.id, fk.column_ids[0], SchemaIssue.FOREIGN_KEY_ACTION_NOT_SUPPORTED)

        fk_name = unique_name(to_spanner_name(fk.name), used_names)
        used_names.append(fk_name)
        result.append(TargetForeignKey(
            id=fk.id,
            name=fk_name,
            column_ids=list(fk.column_ids),
            refer_table_id=refer_table_id,
            refer_column_ids=[refer_ids[name] for name in fk.refer_column_names],
            on_delete=on_delete,
            on_update=on_update,
        ))
    return result


def convert_schema(
    conv: SchemaConversion,
    ids: IdGenerator,
    options: MigrationOptions,
    report: ConversionReport
) -> SchemaConversion:
    """
    Run the schema pass over every extracted source table.

    Tables, indexes and foreign keys share one namespace in Spanner, so their
    names are de-duplicated together.

    Args:
        conv: Conversion with src_schema populated
        ids: Id generator used during extraction
        options: Migration options (array support)
        report: Anomaly reporter of the run

    Returns:
        The same conversion, with sp_schema, synthetic keys and issues populated
    """
    used_names: List[str] = []
    for src_table in conv.src_schema.values():
        table_name = unique_name(to_spanner_name(src_table.name), used_names)
        used_names.append(table_name)
        conv.sp_schema[src_table.id] = map_table_schema(
            src_table, table_name, conv, ids, options.array_support, used_names
        )

    for src_table in conv.src_schema.values():
        conv.sp_schema[src_table.id].foreign_keys = map_foreign_keys(src_table, conv, report, used_names)

    issue_count = sum(
        len(col_issues)
        for table_issues in conv.schema_issues.values()
        for col_issues in table_issues.values()
    )
    logger.info(
        f"Converted {len(conv.sp_schema)} tables, {len(conv.synthetic_keys)} with synthetic keys, "
        f"{issue_count} schema issues"
    )
    return conv


def issue_counts(conv: SchemaConversion) -> Dict[str, int]:
    """Count schema issues by tag across the whole conversion."""
    counts: Dict[str, int] = {}
    for table_issues in conv.schema_issues.values():
        for col_issues in table_issues.values():
            for issue in col_issues:
                counts[issue.value] = counts.get(issue.value, 0) + 1
    return counts


def validate_type_mapping(pg_type: str) -> bool:
    """
    Check if a PostgreSQL type has a known mapping.

    Args:
        pg_type: The PostgreSQL data type to check

    Returns:
        True if the type has a mapping, False otherwise
    """
    return pg_type.lower().strip() in TYPE_MAPPING


def get_supported_types() -> list:
    """
    Get a list of all supported PostgreSQL data types.

    Returns:
        List of supported PostgreSQL data type names
    """
    return list(TYPE_MAPPING.keys())
