"""
PostgreSQL to Spanner Migration Utilities

This package provides utilities for converting schemas and data from
PostgreSQL to Cloud Spanner using Apache Airflow.

Modules:
- schema_extractor: Read the PostgreSQL catalog and build the source schema
- schema_builder: Turn raw catalog rows into source tables
- type_mapping: Map PostgreSQL types and tables to Spanner
- synthetic_keys: Bit-reversed synthetic primary keys for key-less tables
- value_conversion: Convert individual values to Spanner values
- data_transfer: Stream, convert and emit rows table by table
- conversion_report: Schema issues, anomalies and bad-row statistics

Options:
- SPANNER_ARRAY_SUPPORT=true: Target accepts ARRAY columns (otherwise they are flagged ArrayTypeNotSupported)
- SOURCE_DEFAULT_TIMEZONE=<zone>: Zone for timestamps without one
- MAX_PARALLEL_TRANSFERS=N: Max concurrent table conversions
"""

__version__ = "0.3.0"

# Core modules
from pg_spanner_migration import schema_extractor
from pg_spanner_migration import schema_builder
from pg_spanner_migration import type_mapping
from pg_spanner_migration import synthetic_keys
from pg_spanner_migration import value_conversion
from pg_spanner_migration import data_transfer
from pg_spanner_migration import conversion_report

__all__ = [
    "schema_extractor",
    "schema_builder",
    "type_mapping",
    "synthetic_keys",
    "value_conversion",
    "data_transfer",
    "conversion_report",
]
