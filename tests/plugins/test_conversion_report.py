"""
Tests for Conversion Report Module

These tests validate anomaly counting, bad-row sampling and the summary
built from a schema conversion.
"""

import json
import threading

import pytest
from pg_spanner_migration.conversion_report import ConversionReport, generate_conversion_report
from pg_spanner_migration.schema_builder import SchemaBuilder
from pg_spanner_migration.schema_model import IdGenerator, RawColumn, SchemaAndName, SchemaConversion
from pg_spanner_migration.table_config import MigrationOptions
from pg_spanner_migration.type_mapping import convert_schema


def build_conv(report):
    ids = IdGenerator()
    builder = SchemaBuilder(is_schema_unique=True, default_schema='public', report=report, ids=ids)
    conv = SchemaConversion()
    table = builder.build_table(
        SchemaAndName('public', 'te st'),
        [
            RawColumn('a', 'double precision', None, 'YES', None, None, 53, None),
            RawColumn('b', 'smallint', None, 'YES', "0", None, 16, 0),
        ],
    )
    conv.src_schema[table.id] = table
    convert_schema(conv, ids, MigrationOptions(), report)
    return conv


class TestConversionReport:
    """Test counters and samples."""

    def test_anomalies_counted(self):
        report = ConversionReport()
        report.unexpected("Can't scan column row")
        report.unexpected("Unknown constraint type 'EXCLUDE'")

        assert report.unexpecteds() == 2
        assert report.anomalies()[0] == "Can't scan column row"

    def test_anomaly_messages_bounded(self):
        """The count keeps growing after the message list is full."""
        report = ConversionReport(max_anomaly_messages=2)
        for i in range(5):
            report.unexpected(f"anomaly {i}")
        assert report.unexpecteds() == 5
        assert len(report.anomalies()) == 2

    def test_bad_row_sample_format(self):
        report = ConversionReport(bad_row_sample_size=10)
        report.collect_bad_row('te st', ['a', 'b'], [6.6, None])

        assert report.sample_bad_rows(10) == ["table=te st cols=[a b] data=[6.6 NULL]\n"]

    def test_bytea_sample_in_hex(self):
        """Binary values are printed in bytea hex form."""
        report = ConversionReport()
        report.collect_bad_row('t', ['payload', 'raw'], [memoryview(b'\x01\xff'), b'ab'])

        assert report.sample_bad_rows(1) == ["table=t cols=[payload raw] data=[\\x01ff \\x6162]\n"]

    def test_sample_size_bound(self):
        report = ConversionReport(bad_row_sample_size=2)
        for i in range(4):
            report.collect_bad_row('t', ['a'], [i])
            report.add_bad_row('t')

        assert len(report.sample_bad_rows(10)) == 2
        assert report.sample_bad_rows(1) == ["table=t cols=[a] data=[0]\n"]
        assert report.bad_rows('t') == 4

    def test_long_values_truncated(self):
        report = ConversionReport()
        report.collect_bad_row('t', ['a'], ['x' * 500])
        assert len(report.sample_bad_rows(1)[0]) < 300

    def test_per_table_counters(self):
        report = ConversionReport()
        report.add_bad_row('a')
        report.add_bad_row('b')
        report.add_bad_row('b')
        report.add_good_row('a')
        report.set_row_count('a', 2)

        assert report.bad_rows('a') == 1
        assert report.bad_rows('b') == 2
        assert report.bad_rows() == 3
        assert report.bad_rows('c') == 0
        assert report.good_rows('a') == 1
        assert report.row_count('a') == 2
        assert report.row_count('b') is None

    def test_thread_safe_counting(self):
        report = ConversionReport()

        def work():
            for _ in range(1000):
                report.add_bad_row('t')

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert report.bad_rows('t') == 4000


class TestSummary:
    """Test the run summary and text report."""

    @pytest.fixture
    def report(self):
        return ConversionReport()

    def test_summary_lists_issues(self, report):
        conv = build_conv(report)
        report.set_row_count('te st', 3)
        report.add_good_row('te st')
        report.add_bad_row('te st')

        summary = report.summary(conv)

        assert summary['total_tables'] == 1
        table = summary['tables'][0]
        assert table['source_table'] == 'te st'
        assert table['target_table'] == 'te_st'
        assert table['source_row_count'] == 3
        assert table['rows_converted'] == 1
        assert table['bad_rows'] == 1
        assert table['synthetic_primary_key'] is True
        assert table['schema_issues']['b'] == ['Widened', 'DefaultValueDropped']
        assert 'MissingPrimaryKey' in table['schema_issues']['synth_id']
        json.dumps(summary)

    def test_text_report(self, report):
        conv = build_conv(report)
        report.collect_bad_row('te st', ['a', 'b'], ['dog', 1])
        report.add_bad_row('te st')
        results = [{'rows_converted': 10, 'elapsed_time_seconds': 2.0, 'success': True}]

        text = generate_conversion_report(conv, report, results)

        assert "POSTGRESQL TO SPANNER CONVERSION REPORT" in text
        assert "Total Rows Converted: 10" in text
        assert "Tables Aborted: 0" in text
        assert "[synthetic PK]" in text
        assert "table=te st cols=[a b] data=[dog 1]" in text
