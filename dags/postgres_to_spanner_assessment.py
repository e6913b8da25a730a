"""
PostgreSQL to Spanner Assessment DAG

This DAG runs a dry-run conversion without writing to Spanner:
1. Read the PostgreSQL catalog and build the source schema
2. Convert the schema to Spanner (types, keys, indexes, foreign keys)
3. Count source rows
4. Stream every table through the row conversion engine into a counting sink
5. Report schema issues, bad rows and anomalies

The text report and the summary are pushed to XCom.
"""

from airflow.decorators import dag, task
from airflow.models.param import Param
from pendulum import datetime
from datetime import timedelta
from typing import Any, Dict
import logging
import os

from pg_spanner_migration.conversion_report import ConversionReport, generate_conversion_report
from pg_spanner_migration.data_transfer import CountingSink, parallel_transfer_tables
from pg_spanner_migration.schema_extractor import count_source_rows, extract_source_schema
from pg_spanner_migration.schema_model import IdGenerator
from pg_spanner_migration.source_helper import SourceConnectionHelper
from pg_spanner_migration.table_config import MigrationOptions, expand_table_list_param
from pg_spanner_migration.type_mapping import convert_schema, issue_counts

logger = logging.getLogger(__name__)


@dag(
    dag_id="postgres_to_spanner_assessment",
    start_date=datetime(2025, 1, 1),
    schedule=None,
    catchup=False,
    max_active_runs=1,
    is_paused_upon_creation=False,
    doc_md=__doc__,
    default_args={
        "owner": "data-team",
        "retries": 0,
        "retry_delay": timedelta(seconds=30),
    },
    params={
        "source_conn_id": Param(
            default="postgres_source",
            type="string",
            description="PostgreSQL source connection ID"
        ),
        "include_tables": Param(
            default=os.environ.get("INCLUDE_TABLES", ""),
            description="Tables to include in 'schema.table' format. Empty means all user tables."
        ),
        "exclude_tables": Param(
            default=os.environ.get("EXCLUDE_TABLES", ""),
            description="Table name patterns to exclude (wildcards allowed)"
        ),
        "array_support": Param(
            default=os.environ.get("SPANNER_ARRAY_SUPPORT", "false").lower() in ("true", "1", "yes"),
            type="boolean",
            description="Target accepts ARRAY columns (otherwise array columns are flagged ArrayTypeNotSupported)"
        ),
        "convert_data": Param(
            default=True,
            type="boolean",
            description="Run the dry-run data pass after the schema pass"
        ),
    },
    tags=["assessment", "postgres", "spanner"],
)
def postgres_to_spanner_assessment():
    """Assessment DAG: convert schema and data from PostgreSQL without writing to Spanner."""

    @task
    def run_assessment(**context) -> Dict[str, Any]:
        """
        Run the schema pass and the dry-run data pass.

        Returns the run summary; the text report is pushed to XCom.
        """
        params = context["params"]
        options = MigrationOptions.from_env()
        options.include_tables = expand_table_list_param(params.get("include_tables"))
        options.exclude_tables = expand_table_list_param(params.get("exclude_tables"))
        options.array_support = bool(params.get("array_support", False))

        helper = SourceConnectionHelper(
            postgres_conn_id=params["source_conn_id"],
            statement_timeout_ms=options.statement_timeout_ms,
        )
        report = ConversionReport(bad_row_sample_size=options.bad_row_sample_size)
        ids = IdGenerator()

        conv = extract_source_schema(helper, options, report, ids)
        convert_schema(conv, ids, options, report)
        logger.info(f"Schema issues by type: {issue_counts(conv)}")

        results = None
        if params.get("convert_data", True):
            count_source_rows(helper, conv, report)
            sink = CountingSink()
            results = parallel_transfer_tables(helper, conv, sink, report, options)

        text_report = generate_conversion_report(conv, report, results)
        logger.info("\n" + text_report)

        summary = report.summary(conv)
        summary["included_source_tables"] = conv.included_source_tables()
        context["ti"].xcom_push(key="conversion_report", value=text_report)
        return summary

    @task
    def log_assessment_summary(summary: Dict[str, Any], **context) -> str:
        """Log summary of the assessment."""
        tables_with_issues = [t for t in summary["tables"] if t["schema_issues"]]
        tables_with_bad_rows = [t for t in summary["tables"] if t["bad_rows"]]
        message = (
            f"Assessment complete: {summary['total_tables']} tables, "
            f"{len(tables_with_issues)} with schema issues, "
            f"{len(tables_with_bad_rows)} with bad rows ({summary['total_bad_rows']:,} total), "
            f"{summary['unexpected_conditions']} unexpected conditions"
        )
        logger.info(message)

        for t in tables_with_bad_rows:
            logger.warning(f"  {t['source_table']}: {t['bad_rows']:,} bad rows")

        return message

    # Task flow
    summary = run_assessment()
    log_assessment_summary(summary)


# Instantiate
postgres_to_spanner_assessment()
