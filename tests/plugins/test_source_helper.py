"""
Tests for PostgreSQL Source Connection Helper Module

These tests validate value scanning, query execution through a mocked
PostgresHook, error handling and cancellation.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import MagicMock, call, patch
import threading

import psycopg2
import pytest
from psycopg2 import extensions as pg_extensions

from pg_spanner_migration.source_helper import (
    NULL_VALUE,
    MigrationCancelled,
    ScanKind,
    ScannedValue,
    SourceConnectionHelper,
    scan_row,
    scan_value,
)


class TestScanValue:
    """Test tagging of driver values."""

    @pytest.mark.parametrize("raw,expected", [
        (None, NULL_VALUE),
        (True, ScannedValue(ScanKind.BOOL, True)),
        (0, ScannedValue(ScanKind.INT64, 0)),
        (2.5, ScannedValue(ScanKind.FLOAT64, 2.5)),
        ('abc', ScannedValue(ScanKind.STRING, 'abc')),
        (Decimal('1.50'), ScannedValue(ScanKind.STRING, '1.50')),
        (date(2020, 2, 29), ScannedValue(ScanKind.STRING, '2020-02-29')),
        ({'a': 1}, ScannedValue(ScanKind.STRING, '{"a": 1}')),
    ])
    def test_kinds(self, raw, expected):
        assert scan_value(raw) == expected

    def test_bool_before_int(self):
        """bool is tagged BOOL, not INT64."""
        assert scan_value(False).kind == ScanKind.BOOL

    def test_bytea_memoryview(self):
        scanned = scan_value(memoryview(b'\x01\x02'))
        assert scanned == ScannedValue(ScanKind.BYTES, b'\x01\x02')
        assert isinstance(scanned.value, bytes)

    def test_datetime_kept_as_timestamp(self):
        ts = datetime(2019, 10, 29, 5, 30, tzinfo=timezone.utc)
        assert scan_value(ts) == ScannedValue(ScanKind.TIMESTAMP, ts)

    def test_scan_row(self):
        assert [v.kind for v in scan_row((1, None, 'x'))] == [ScanKind.INT64, ScanKind.NULL, ScanKind.STRING]


class TestSourceConnectionHelper:
    """Test source helper queries."""

    @pytest.fixture
    def mock_conn(self):
        return MagicMock()

    @pytest.fixture
    def mock_hook(self, mock_conn):
        with patch('pg_spanner_migration.source_helper.PostgresHook') as hook_cls:
            hook_cls.return_value.get_conn.return_value = mock_conn
            yield hook_cls

    def test_get_records(self, mock_hook, mock_conn):
        """Test query execution with parameters and connection cleanup."""
        cursor = mock_conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = [(1, 'a'), (2, 'b')]

        helper = SourceConnectionHelper('pg_conn')
        rows = helper.get_records("SELECT id, name FROM t WHERE id > %s", [0])

        assert rows == [(1, 'a'), (2, 'b')]
        mock_hook.assert_called_once_with(postgres_conn_id='pg_conn')
        cursor.execute.assert_called_once_with("SELECT id, name FROM t WHERE id > %s", [0])
        mock_conn.close.assert_called_once()

    def test_get_first_without_parameters(self, mock_hook, mock_conn):
        cursor = mock_conn.cursor.return_value.__enter__.return_value
        cursor.fetchone.return_value = (42,)

        assert SourceConnectionHelper('pg_conn').get_first("SELECT 42") == (42,)
        cursor.execute.assert_called_once_with("SELECT 42")

    def test_error_is_reraised(self, mock_hook, mock_conn):
        """Driver errors propagate after the connection is closed."""
        cursor = mock_conn.cursor.return_value.__enter__.return_value
        cursor.execute.side_effect = psycopg2.ProgrammingError("syntax error")

        with pytest.raises(psycopg2.ProgrammingError):
            SourceConnectionHelper('pg_conn').get_records("SELEC 1")
        mock_conn.close.assert_called_once()

    def test_statement_timeout_applied(self, mock_hook, mock_conn):
        cursor = mock_conn.cursor.return_value.__enter__.return_value
        cursor.fetchall.return_value = []

        SourceConnectionHelper('pg_conn', statement_timeout_ms=5000).get_records("SELECT 1")

        assert cursor.execute.call_args_list[0] == call("SET statement_timeout = %s", (5000,))
        mock_conn.commit.assert_called_once()

    def test_stream_rows(self, mock_hook, mock_conn):
        """Rows come back batch by batch with the result column names."""
        cursor = mock_conn.cursor.return_value
        cursor.closed = False
        cursor.description = [('id',), ('name',)]
        cursor.fetchmany.side_effect = [[(1, 'a'), (2, 'b')], [(3, 'c')], []]

        helper = SourceConnectionHelper('pg_conn')
        with helper.stream_rows("SELECT id, name FROM t", fetch_size=2) as (columns, rows):
            assert columns == ['id', 'name']
            assert list(rows) == [(1, 'a'), (2, 'b'), (3, 'c')]

        assert mock_conn.cursor.call_args[1]['name'].startswith('pg_spanner_')
        assert cursor.itersize == 2
        cursor.close.assert_called_once()
        mock_conn.close.assert_called_once()

    def test_stream_rows_empty_result(self, mock_hook, mock_conn):
        cursor = mock_conn.cursor.return_value
        cursor.closed = False
        cursor.description = [('id',)]
        cursor.fetchmany.return_value = []

        with SourceConnectionHelper('pg_conn').stream_rows("SELECT id FROM t") as (columns, rows):
            assert columns == ['id']
            assert list(rows) == []

    def test_stream_rows_cancelled_between_batches(self, mock_hook, mock_conn):
        cursor = mock_conn.cursor.return_value
        cursor.closed = False
        cursor.description = [('id',)]
        cursor.fetchmany.side_effect = [[(1,)], [(2,)], []]

        helper = SourceConnectionHelper('pg_conn')
        seen = []
        with pytest.raises(MigrationCancelled):
            with helper.stream_rows("SELECT id FROM t", fetch_size=1) as (columns, rows):
                for row in rows:
                    seen.append(row)
                    helper.cancel()

        assert seen == [(1,)]
        mock_conn.close.assert_called_once()


class TestCancellation:
    """Test the cancellation event."""

    def test_cancel_interrupts_open_connections(self):
        conn = MagicMock()
        with patch('pg_spanner_migration.source_helper.PostgresHook') as hook_cls:
            hook_cls.return_value.get_conn.return_value = conn
            helper = SourceConnectionHelper('pg_conn')
            helper.get_conn()

            helper.cancel()

        conn.cancel.assert_called_once()
        assert helper.is_cancelled()
        with pytest.raises(MigrationCancelled):
            helper.check_cancelled()

    def test_no_connection_after_cancel(self):
        with patch('pg_spanner_migration.source_helper.PostgresHook') as hook_cls:
            helper = SourceConnectionHelper('pg_conn')
            helper.cancel()
            with pytest.raises(MigrationCancelled):
                helper.get_records("SELECT 1")
            hook_cls.assert_not_called()

    def test_query_cancelled_error_mapped(self):
        """A server-side cancel after cancellation surfaces as MigrationCancelled."""
        conn = MagicMock()
        helper = SourceConnectionHelper('pg_conn')

        def execute(*args):
            helper.cancel_event.set()
            raise pg_extensions.QueryCanceledError("canceling statement due to user request")

        conn.cursor.return_value.__enter__.return_value.execute.side_effect = execute
        with patch('pg_spanner_migration.source_helper.PostgresHook') as hook_cls:
            hook_cls.return_value.get_conn.return_value = conn
            with pytest.raises(MigrationCancelled):
                helper.get_records("SELECT pg_sleep(60)")

    def test_statement_timeout_not_mapped(self):
        """A timeout without cancellation stays a driver error."""
        conn = MagicMock()
        conn.cursor.return_value.__enter__.return_value.execute.side_effect = (
            pg_extensions.QueryCanceledError("canceling statement due to statement timeout")
        )
        with patch('pg_spanner_migration.source_helper.PostgresHook') as hook_cls:
            hook_cls.return_value.get_conn.return_value = conn
            with pytest.raises(pg_extensions.QueryCanceledError):
                SourceConnectionHelper('pg_conn').get_records("SELECT pg_sleep(60)")

    def test_shared_event(self):
        event = threading.Event()
        helper = SourceConnectionHelper('pg_conn', cancel_event=event)
        event.set()
        assert helper.is_cancelled()
