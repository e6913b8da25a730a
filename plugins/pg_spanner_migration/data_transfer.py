"""
Data Transfer Module

This module runs the data pass: it streams the rows of each source table,
converts every value to its Spanner representation and hands converted rows
to a sink. Rows that fail to convert are counted, sampled and skipped.

A sink is any callable taking (target table name, column names, values).
Writing to Spanner itself is left to the sink.
"""

from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, tzinfo
import logging
import threading
import time

import psycopg2
from psycopg2 import sql

from pg_spanner_migration.conversion_report import ConversionReport
from pg_spanner_migration.schema_model import SchemaConversion, SourceTable
from pg_spanner_migration.source_helper import ScanKind, ScannedValue, SourceConnectionHelper, scan_row
from pg_spanner_migration.synthetic_keys import next_synthetic_key
from pg_spanner_migration.table_config import MigrationOptions
from pg_spanner_migration.value_conversion import ConversionError, convert_value, resolve_timezone

logger = logging.getLogger(__name__)

Sink = Callable[[str, List[str], List[Any]], None]

# Columns selected as text so the converter sees the PostgreSQL text encoding
TEXT_CAST_TYPES = frozenset(['json', 'jsonb'])


class SchemaMismatchError(RuntimeError):
    """Raised when source rows and the schema model disagree on a table's columns."""


class Converted(NamedTuple):
    columns: List[str]
    values: List[Any]


class Skipped(NamedTuple):
    reason: str


RowResult = Union[Converted, Skipped]


class CountingSink:
    """Sink that only counts rows per table. Used for dry runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self.rows: Dict[str, int] = {}

    def __call__(self, table_name: str, columns: List[str], values: List[Any]) -> None:
        with self._lock:
            self.rows[table_name] = self.rows.get(table_name, 0) + 1


def build_select_query(src_table: SourceTable) -> sql.Composed:
    """
    Build the row query for a source table.

    Array and JSON columns are cast to text.

    Returns:
        psycopg2 Composed query, e.g. SELECT "a", "tags"::text AS "tags" FROM "public"."t"
    """
    fields = []
    for col_id in src_table.column_ids:
        col = src_table.column_defs[col_id]
        ident = sql.Identifier(col.name)
        if col.type.is_array or col.type.name.lower() in TEXT_CAST_TYPES:
            fields.append(sql.SQL("{}::text AS {}").format(ident, ident))
        else:
            fields.append(ident)

    return sql.SQL("SELECT {} FROM {}.{}").format(
        sql.SQL(", ").join(fields),
        sql.Identifier(src_table.schema),
        sql.Identifier(src_table.bare_name),
    )


def map_result_columns(src_table: SourceTable, result_columns: Sequence[str]) -> List[str]:
    """
    Resolve the column names of a result set to source column ids.

    Raises:
        SchemaMismatchError: If a result column is unknown, or a source column is missing
    """
    ids_by_name = src_table.column_id_by_name()
    col_ids = []
    for name in result_columns:
        if name not in ids_by_name:
            raise SchemaMismatchError(f"Column '{name}' of table {src_table.name} is not in the source schema")
        col_ids.append(ids_by_name[name])

    missing = [src_table.column_defs[c].name for c in src_table.column_ids if c not in col_ids]
    if missing:
        raise SchemaMismatchError(f"Row query for table {src_table.name} did not return columns {missing}")
    return col_ids


def convert_row(
    conv: SchemaConversion,
    table_id: str,
    col_ids: Sequence[str],
    scanned_values: Sequence[ScannedValue],
    tz: tzinfo
) -> RowResult:
    """
    Convert one scanned row to target column names and values.

    Values are emitted in target column order. NULLs are left out of both
    lists. The synthetic key is not added here.

    Args:
        conv: Schema pass result
        table_id: Table id
        col_ids: Source column ids, one per scanned value
        scanned_values: Scanned row
        tz: Default zone for unzoned timestamps

    Returns:
        Converted(columns, values) or Skipped(reason)

    Raises:
        SchemaMismatchError: If a target column has no source value
    """
    src_table = conv.src_schema[table_id]
    sp_table = conv.sp_schema[table_id]
    state = conv.synthetic_keys.get(table_id)
    synthetic_col = state.column_id if state else None

    by_id = dict(zip(col_ids, scanned_values))
    columns, values = [], []
    for col_id in sp_table.column_ids:
        if col_id == synthetic_col:
            continue
        if col_id not in by_id or col_id not in src_table.column_defs:
            raise SchemaMismatchError(
                f"Column id {col_id} of table {sp_table.name} has no source value"
            )
        scanned = by_id[col_id]
        if scanned.kind == ScanKind.NULL:
            continue
        src_col = src_table.column_defs[col_id]
        sp_col = sp_table.column_defs[col_id]
        try:
            value = convert_value(src_col, sp_col, scanned, tz)
        except ConversionError as e:
            return Skipped(f"column {src_col.name}: {e}")
        columns.append(sp_col.name)
        values.append(value)
    return Converted(columns, values)


def transfer_table(
    helper: SourceConnectionHelper,
    conv: SchemaConversion,
    table_id: str,
    sink: Sink,
    report: ConversionReport,
    tz: tzinfo,
    fetch_size: int = 10000
) -> Dict[str, Any]:
    """
    Convert every row of one table and emit it to the sink, in cursor order.

    Args:
        helper: Source connection helper (also carries the cancellation event)
        conv: Schema pass result
        table_id: Table to convert
        sink: Receives (target table name, column names, values) per converted row
        report: Bad-row counter and sampler
        tz: Default zone for unzoned timestamps
        fetch_size: Rows per round trip

    Returns:
        Transfer result dictionary with statistics

    Raises:
        SchemaMismatchError: If the table's columns do not line up
        MigrationCancelled: If cancellation was requested
        psycopg2.Error: If the row query fails
    """
    start_time = time.time()
    src_table = conv.src_schema.get(table_id)
    sp_table = conv.sp_schema.get(table_id)
    if src_table is None or sp_table is None:
        raise SchemaMismatchError(f"Table id {table_id} is missing from the schema conversion")

    state = conv.synthetic_keys.get(table_id)
    synthetic_name = sp_table.column_defs[state.column_id].name if state else None

    logger.info(f"Starting conversion: {src_table.name} -> {sp_table.name}")

    rows_converted = 0
    bad_rows = 0
    query = build_select_query(src_table)
    with helper.stream_rows(query, fetch_size=fetch_size) as (columns, rows):
        col_ids = map_result_columns(src_table, columns)
        for row in rows:
            helper.check_cancelled()

            if len(row) != len(col_ids):
                report.add_bad_row(src_table.name)
                report.unexpected(
                    f"Can't scan row of table {src_table.name}: got {len(row)} values for {len(col_ids)} columns"
                )
                report.collect_bad_row(src_table.name, columns, row)
                bad_rows += 1
                continue

            result = convert_row(conv, table_id, col_ids, scan_row(row), tz)
            if isinstance(result, Skipped):
                logger.debug(f"Skipping row of {src_table.name}: {result.reason}")
                report.add_bad_row(src_table.name)
                report.collect_bad_row(src_table.name, columns, row)
                bad_rows += 1
                continue

            out_columns, out_values = result
            key = next_synthetic_key(state)
            if key is not None:
                out_columns.append(synthetic_name)
                out_values.append(key)

            sink(sp_table.name, out_columns, out_values)
            report.add_good_row(src_table.name)
            rows_converted += 1

            if rows_converted % 100000 == 0:
                logger.info(f"{src_table.name}: {rows_converted:,} rows converted")

    elapsed_time = time.time() - start_time
    avg_rows_per_second = rows_converted / elapsed_time if elapsed_time > 0 else 0

    result = {
        'table_id': table_id,
        'source_table': src_table.name,
        'target_table': sp_table.name,
        'source_row_count': report.row_count(src_table.name),
        'rows_converted': rows_converted,
        'bad_rows': bad_rows,
        'elapsed_time_seconds': elapsed_time,
        'avg_rows_per_second': avg_rows_per_second,
        'success': True,
        'errors': [],
        'timestamp': datetime.now().isoformat(),
    }

    if bad_rows:
        logger.warning(
            f"Converted {rows_converted:,} rows of {src_table.name} in {elapsed_time:.2f} seconds, "
            f"skipped {bad_rows:,} bad rows"
        )
    else:
        logger.info(
            f"Successfully converted {rows_converted:,} rows of {src_table.name} in {elapsed_time:.2f} seconds "
            f"({avg_rows_per_second:,.0f} rows/sec average)"
        )
    return result


def _failed_result(conv: SchemaConversion, table_id: str, error: Exception) -> Dict[str, Any]:
    src_table = conv.src_schema.get(table_id)
    sp_table = conv.sp_schema.get(table_id)
    return {
        'table_id': table_id,
        'source_table': src_table.name if src_table else table_id,
        'target_table': sp_table.name if sp_table else None,
        'rows_converted': 0,
        'bad_rows': 0,
        'elapsed_time_seconds': 0,
        'success': False,
        'errors': [str(error)],
        'timestamp': datetime.now().isoformat(),
    }


def parallel_transfer_tables(
    helper: SourceConnectionHelper,
    conv: SchemaConversion,
    sink: Sink,
    report: ConversionReport,
    options: Optional[MigrationOptions] = None,
    table_ids: Optional[Iterable[str]] = None
) -> List[Dict[str, Any]]:
    """
    Run the data pass over several tables.

    Each table is converted end to end by a single worker. A table whose
    columns do not line up, or whose row query fails, is recorded as failed
    and the remaining tables carry on. Cancellation propagates.

    Args:
        helper: Source connection helper
        conv: Schema pass result
        sink: Row sink, must accept calls from several workers when running in parallel
        report: Anomaly reporter and bad-row counter of the run
        options: Migration options (timezone, parallelism, fetch size)
        table_ids: Tables to convert (defaults to every converted table)

    Returns:
        List of transfer result dictionaries, in table order
    """
    options = options or MigrationOptions()
    table_ids = list(table_ids) if table_ids is not None else list(conv.sp_schema.keys())
    tz = resolve_timezone(options.default_timezone)

    def _run(table_id: str) -> Dict[str, Any]:
        try:
            return transfer_table(helper, conv, table_id, sink, report, tz, options.fetch_size)
        except (SchemaMismatchError, psycopg2.Error) as e:
            name = conv.src_schema[table_id].name if table_id in conv.src_schema else table_id
            report.unexpected(f"Data pass for table {name} aborted: {e}")
            return _failed_result(conv, table_id, e)

    workers = max(1, min(options.max_parallel_transfers, len(table_ids) or 1))
    logger.info(f"Converting {len(table_ids)} tables with {workers} parallel workers")

    if workers == 1:
        return [_run(table_id) for table_id in table_ids]

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(_run, table_id) for table_id in table_ids]
        try:
            return [future.result() for future in futures]
        except BaseException:
            # stop the other workers before the executor waits on them
            helper.cancel()
            raise

