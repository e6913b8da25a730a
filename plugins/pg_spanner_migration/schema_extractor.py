"""
PostgreSQL Schema Extraction Module

This module provides functions to extract schema metadata from PostgreSQL
databases using information schema views and the pg_catalog tables, and a
driver that builds the source schema model for the whole catalog.
"""

from typing import List, Optional, Sequence, Type
import logging

import psycopg2
from psycopg2 import sql

from pg_spanner_migration.conversion_report import ConversionReport
from pg_spanner_migration.schema_builder import SchemaBuilder, compute_schema_unique
from pg_spanner_migration.schema_model import (
    IdGenerator,
    RawColumn,
    RawConstraint,
    RawForeignKey,
    RawIndexColumn,
    SchemaAndName,
    SchemaConversion,
)
from pg_spanner_migration.source_helper import SourceConnectionHelper
from pg_spanner_migration.table_config import MigrationOptions, is_table_selected

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = frozenset([
    'information_schema',
    'postgres',
    'pg_catalog',
    'pg_temp_1',
    'pg_toast',
    'pg_toast_temp_1',
])


class CatalogReader:
    """Read raw schema metadata from a PostgreSQL database. No interpretation happens here."""

    def __init__(self, helper: SourceConnectionHelper, report: ConversionReport):
        """
        Initialize the catalog reader.

        Args:
            helper: Source connection helper
            report: Receives anomalies for rows that cannot be scanned
        """
        self.helper = helper
        self.report = report

    def _scan(self, row_type: Type, rows: Sequence[tuple]) -> List:
        result = []
        for row in rows:
            try:
                result.append(row_type(*row))
            except TypeError as e:
                self.report.unexpected(f"Can't scan {row_type.__name__} row {row}: {e}")
        return result

    def get_tables(
        self,
        include_tables: Optional[List[str]] = None,
        exclude_patterns: Optional[List[str]] = None
    ) -> List[SchemaAndName]:
        """
        Get all user base tables.

        Args:
            include_tables: Optional 'schema.table' entries to restrict to
            exclude_patterns: List of table name patterns to exclude (supports wildcards)

        Returns:
            List of SchemaAndName, ordered by schema and table name
        """
        query = """
        SELECT table_schema, table_name
        FROM information_schema.tables
        WHERE table_type = 'BASE TABLE'
        ORDER BY table_schema, table_name
        """

        rows = self.helper.get_records(query)

        result = []
        for row in rows:
            table = SchemaAndName(schema=row[0], name=row[1])
            if table.schema in SYSTEM_SCHEMAS:
                continue
            if not is_table_selected(table.schema, table.name, include_tables, exclude_patterns):
                continue
            result.append(table)

        logger.info(f"Found {len(result)} tables in {len({t.schema for t in result})} schemas")
        return result

    def get_columns(self, table: SchemaAndName) -> List[RawColumn]:
        """
        Get all columns for a table in ordinal order.

        The element type of array columns comes from information_schema.element_types.
        """
        query = """
        SELECT
            c.column_name,
            c.data_type,
            e.data_type AS element_type,
            c.is_nullable,
            c.column_default,
            c.character_maximum_length,
            c.numeric_precision,
            c.numeric_scale
        FROM information_schema.columns c
        LEFT JOIN information_schema.element_types e
            ON ((c.table_catalog, c.table_schema, c.table_name, 'TABLE', c.dtd_identifier)
                = (e.object_catalog, e.object_schema, e.object_name, e.object_type, e.collection_type_identifier))
        WHERE c.table_schema = %s AND c.table_name = %s
        ORDER BY c.ordinal_position
        """

        rows = self.helper.get_records(query, parameters=[table.schema, table.name])
        return self._scan(RawColumn, rows)

    def get_constraints(self, table: SchemaAndName) -> List[RawConstraint]:
        """
        Get key and CHECK constraint rows for a table.

        Key constraint rows are ordered by their ordinal position within the
        key, which gives the primary key column order.
        """
        query = """
        SELECT k.column_name, t.constraint_type, k.ordinal_position
        FROM information_schema.table_constraints AS t
        INNER JOIN information_schema.key_column_usage AS k
            ON t.constraint_name = k.constraint_name
            AND t.constraint_schema = k.constraint_schema
        WHERE k.table_schema = %s AND k.table_name = %s
        UNION ALL
        SELECT u.column_name, t.constraint_type, NULL
        FROM information_schema.table_constraints AS t
        INNER JOIN information_schema.constraint_column_usage AS u
            ON t.constraint_name = u.constraint_name
            AND t.constraint_schema = u.constraint_schema
        WHERE t.table_schema = %s AND t.table_name = %s
          AND t.constraint_type = 'CHECK'
          AND u.table_schema = t.table_schema AND u.table_name = t.table_name
        ORDER BY 3
        """

        rows = self.helper.get_records(
            query, parameters=[table.schema, table.name, table.schema, table.name]
        )
        return self._scan(RawConstraint, rows)

    def get_foreign_keys(self, table: SchemaAndName) -> List[RawForeignKey]:
        """
        Get foreign key rows for a table, one row per (local column, referenced column) pair.

        Rows of a multi-column key arrive in key declaration order.
        """
        query = """
        SELECT
            ref.table_schema,
            ref.table_name,
            kcu.column_name,
            ref.column_name,
            rc.constraint_name,
            rc.delete_rule,
            rc.update_rule
        FROM information_schema.referential_constraints rc
        INNER JOIN information_schema.key_column_usage kcu
            ON rc.constraint_name = kcu.constraint_name
            AND rc.constraint_schema = kcu.constraint_schema
        INNER JOIN information_schema.key_column_usage ref
            ON rc.unique_constraint_name = ref.constraint_name
            AND rc.unique_constraint_schema = ref.constraint_schema
            AND ref.ordinal_position = kcu.position_in_unique_constraint
        WHERE kcu.table_schema = %s AND kcu.table_name = %s
        ORDER BY rc.constraint_name, kcu.ordinal_position
        """

        rows = self.helper.get_records(query, parameters=[table.schema, table.name])
        return self._scan(RawForeignKey, rows)

    def get_indexes(self, table: SchemaAndName) -> List[RawIndexColumn]:
        """
        Get index column rows for a table, excluding the primary key index.

        Sort direction comes from bit 0 of pg_index.indoption.
        """
        query = """
        SELECT
            irel.relname AS index_name,
            a.attname AS column_name,
            1 + array_position(i.indkey, a.attnum) AS column_position,
            i.indisunique AS is_unique,
            CASE o.option & 1 WHEN 1 THEN 'DESC' ELSE 'ASC' END AS sort_order
        FROM pg_index AS i
        JOIN pg_class AS trel ON trel.oid = i.indrelid
        JOIN pg_namespace AS tnsp ON trel.relnamespace = tnsp.oid
        JOIN pg_class AS irel ON irel.oid = i.indexrelid
        CROSS JOIN LATERAL unnest(i.indkey) WITH ORDINALITY AS c (colnum, ordinality)
        LEFT JOIN LATERAL unnest(i.indoption) WITH ORDINALITY AS o (option, ordinality)
            ON c.ordinality = o.ordinality
        JOIN pg_attribute AS a ON trel.oid = a.attrelid AND a.attnum = c.colnum
        WHERE tnsp.nspname = %s
          AND trel.relname = %s
          AND i.indisprimary = false
        GROUP BY tnsp.nspname, trel.relname, irel.relname, a.attname,
                 array_position(i.indkey, a.attnum), o.option, i.indisunique
        ORDER BY irel.relname, array_position(i.indkey, a.attnum)
        """

        rows = self.helper.get_records(query, parameters=[table.schema, table.name])
        return self._scan(RawIndexColumn, rows)

    def get_row_count(self, table: SchemaAndName) -> int:
        """Get the exact row count of a table."""
        query = sql.SQL("SELECT COUNT(*) FROM {}.{}").format(
            sql.Identifier(table.schema),
            sql.Identifier(table.name),
        )
        result = self.helper.get_first(query)
        return result[0] if result else 0


def extract_source_schema(
    helper: SourceConnectionHelper,
    options: MigrationOptions,
    report: ConversionReport,
    ids: Optional[IdGenerator] = None
) -> SchemaConversion:
    """
    Read the whole catalog and build the source schema model.

    A failed query for one table is reported and that table is skipped.
    Failing to list the tables at all is terminal and propagates.

    Args:
        helper: Source connection helper
        options: Migration options (default schema, table filters)
        report: Anomaly reporter of the run
        ids: Id generator of the run

    Returns:
        SchemaConversion with src_schema populated
    """
    reader = CatalogReader(helper, report)
    tables = reader.get_tables(options.include_tables, options.exclude_tables)

    builder = SchemaBuilder(
        is_schema_unique=compute_schema_unique(tables),
        default_schema=options.default_schema,
        report=report,
        ids=ids,
    )

    conv = SchemaConversion()
    for table in tables:
        helper.check_cancelled()
        try:
            columns = reader.get_columns(table)
            constraints = reader.get_constraints(table)
            foreign_keys = reader.get_foreign_keys(table)
            indexes = reader.get_indexes(table)
        except psycopg2.Error as e:
            report.unexpected(f"Couldn't get schema for table {table.schema}.{table.name}: {e}")
            continue

        src_table = builder.build_table(table, columns, constraints, foreign_keys, indexes)
        conv.src_schema[src_table.id] = src_table

    logger.info(f"Extracted schema for {len(conv.src_schema)} of {len(tables)} tables")
    return conv


def count_source_rows(
    helper: SourceConnectionHelper,
    conv: SchemaConversion,
    report: ConversionReport
) -> int:
    """
    Record the source row count of every extracted table in the report.

    Returns:
        Total number of source rows counted
    """
    reader = CatalogReader(helper, report)
    total = 0
    for src_table in conv.src_schema.values():
        helper.check_cancelled()
        try:
            count = reader.get_row_count(SchemaAndName(src_table.schema, src_table.bare_name))
        except psycopg2.Error as e:
            report.unexpected(f"Couldn't get number of rows for table {src_table.name}: {e}")
            continue
        report.set_row_count(src_table.name, count)
        total += count

    logger.info(f"Source tables hold {total:,} rows")
    return total
