"""
Conversion Report Module

This module collects everything the migration skips or degrades so it can be
audited after a run that otherwise succeeded:
- anomalies (malformed catalog rows, failed per-table queries, row errors)
- bad rows per table, with a bounded sample of the raw rows
- source row counts and emitted row counts per table
- schema issues per column (read from the SchemaConversion)
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence
import logging
import threading

from pg_spanner_migration.schema_model import SchemaConversion
from pg_spanner_migration.utils import truncate_string

logger = logging.getLogger(__name__)


def _value_to_string(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    return str(value)


class ConversionReport:
    """
    Thread-safe anomaly reporter and bad-row counter/sampler.

    Counters are keyed by source table name. Data-pass workers running
    different tables may share one report.
    """

    def __init__(self, bad_row_sample_size: int = 100, max_anomaly_messages: int = 1000):
        self._lock = threading.Lock()
        self._sample_size = bad_row_sample_size
        self._max_messages = max_anomaly_messages
        self._anomaly_count = 0
        self._anomalies: List[str] = []
        self._bad_rows: Dict[str, int] = {}
        self._bad_row_samples: List[str] = []
        self._good_rows: Dict[str, int] = {}
        self._row_counts: Dict[str, int] = {}

    def unexpected(self, message: str) -> None:
        """Record an anomaly that was skipped rather than raised."""
        logger.warning(message)
        with self._lock:
            self._anomaly_count += 1
            if len(self._anomalies) < self._max_messages:
                self._anomalies.append(message)

    def unexpecteds(self) -> int:
        with self._lock:
            return self._anomaly_count

    def anomalies(self) -> List[str]:
        with self._lock:
            return list(self._anomalies)

    def add_bad_row(self, table_name: str) -> None:
        with self._lock:
            self._bad_rows[table_name] = self._bad_rows.get(table_name, 0) + 1

    def collect_bad_row(self, table_name: str, columns: Sequence[str], values: Sequence[Any]) -> None:
        """
        Keep a printable copy of a rejected row, up to the sample size.

        Args:
            table_name: Source table name
            columns: Source column names as returned by the row query
            values: Raw values of the row (None for NULL)
        """
        with self._lock:
            if len(self._bad_row_samples) >= self._sample_size:
                return
            data = ' '.join(truncate_string(_value_to_string(v), 200) for v in values)
            self._bad_row_samples.append(
                f"table={table_name} cols=[{' '.join(columns)}] data=[{data}]\n"
            )

    def bad_rows(self, table_name: Optional[str] = None) -> int:
        with self._lock:
            if table_name is not None:
                return self._bad_rows.get(table_name, 0)
            return sum(self._bad_rows.values())

    def sample_bad_rows(self, n: int) -> List[str]:
        with self._lock:
            return self._bad_row_samples[:n]

    def add_good_row(self, table_name: str) -> None:
        with self._lock:
            self._good_rows[table_name] = self._good_rows.get(table_name, 0) + 1

    def good_rows(self, table_name: str) -> int:
        with self._lock:
            return self._good_rows.get(table_name, 0)

    def set_row_count(self, table_name: str, count: int) -> None:
        with self._lock:
            self._row_counts[table_name] = count

    def row_count(self, table_name: str) -> Optional[int]:
        with self._lock:
            return self._row_counts.get(table_name)

    def summary(self, conv: SchemaConversion) -> Dict[str, Any]:
        """
        Build a JSON-serialisable summary of the run.

        Args:
            conv: Schema pass result, used for table names and schema issues

        Returns:
            Dictionary with per-table statistics and issues
        """
        tables = []
        for table_id, src_table in conv.src_schema.items():
            sp_table = conv.sp_schema.get(table_id)
            issues = {}
            for col_id, col_issues in conv.column_issues(table_id).items():
                if sp_table and col_id in sp_table.column_defs:
                    col_name = sp_table.column_defs[col_id].name
                elif col_id in src_table.column_defs:
                    col_name = src_table.column_defs[col_id].name
                else:
                    col_name = col_id
                issues[col_name] = [issue.value for issue in col_issues]
            tables.append({
                'source_table': src_table.name,
                'target_table': sp_table.name if sp_table else None,
                'source_row_count': self.row_count(src_table.name),
                'rows_converted': self.good_rows(src_table.name),
                'bad_rows': self.bad_rows(src_table.name),
                'synthetic_primary_key': table_id in conv.synthetic_keys,
                'schema_issues': issues,
            })

        return {
            'tables': tables,
            'total_tables': len(tables),
            'total_bad_rows': self.bad_rows(),
            'unexpected_conditions': self.unexpecteds(),
            'bad_row_samples': self.sample_bad_rows(self._sample_size),
            'timestamp': datetime.now().isoformat(),
        }


def generate_conversion_report(
    conv: SchemaConversion,
    report: ConversionReport,
    transfer_results: Optional[List[Dict[str, Any]]] = None
) -> str:
    """
    Generate a human-readable conversion report.

    Args:
        conv: Schema pass result
        report: Anomalies and row statistics gathered during the run
        transfer_results: Optional per-table results from data_transfer

    Returns:
        Formatted report string
    """
    summary = report.summary(conv)
    report_lines = [
        "=" * 80,
        "POSTGRESQL TO SPANNER CONVERSION REPORT",
        "=" * 80,
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "SUMMARY",
        "-" * 40,
        f"Total Tables: {summary['total_tables']}",
        f"Bad Rows: {summary['total_bad_rows']:,}",
        f"Unexpected Conditions: {summary['unexpected_conditions']:,}",
        "",
    ]

    if transfer_results:
        total_rows = sum(r.get('rows_converted', 0) for r in transfer_results)
        total_time = sum(r.get('elapsed_time_seconds', 0) for r in transfer_results)
        avg_rate = total_rows / total_time if total_time > 0 else 0
        failed = [r for r in transfer_results if not r.get('success')]

        report_lines.extend([
            "DATA CONVERSION STATISTICS",
            "-" * 40,
            f"Total Rows Converted: {total_rows:,}",
            f"Total Time: {total_time:.2f} seconds",
            f"Average Conversion Rate: {avg_rate:,.0f} rows/second",
            f"Tables Aborted: {len(failed)}",
            "",
        ])

    report_lines.extend([
        "TABLE DETAILS",
        "-" * 40,
    ])
    for table in summary['tables']:
        status = "✓ OK  " if table['bad_rows'] == 0 else "✗ BAD "
        source_count = table['source_row_count']
        source_text = f"{source_count:>10,}" if source_count is not None else f"{'?':>10}"
        key_note = " [synthetic PK]" if table['synthetic_primary_key'] else ""
        report_lines.append(
            f"{status}| {table['source_table']:<30} | Source: {source_text} | "
            f"Converted: {table['rows_converted']:>10,} | Bad: {table['bad_rows']:>6,}{key_note}"
        )
        for col_name, issues in table['schema_issues'].items():
            report_lines.append(f"        {col_name}: {', '.join(issues)}")

    if summary['bad_row_samples']:
        report_lines.extend(["", "BAD ROW SAMPLES", "-" * 40])
        report_lines.extend(sample.rstrip('\n') for sample in summary['bad_row_samples'])

    report_lines.append("=" * 80)
    return '\n'.join(report_lines)
