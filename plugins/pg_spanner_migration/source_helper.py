"""
PostgreSQL Source Connection Helper

This module wraps the source PostgreSQL database behind a small interface
(get_records, get_first, stream_rows) modelled on the Airflow hook methods,
and turns raw driver values into tagged values for the conversion engine.

Connections are obtained from an Airflow connection through PostgresHook.
Every query can be aborted with a caller-supplied cancellation event.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, List, NamedTuple, Optional, Sequence, Tuple
import contextlib
import json
import logging
import threading
import uuid

from airflow.providers.postgres.hooks.postgres import PostgresHook
import psycopg2
from psycopg2 import extensions as pg_extensions

logger = logging.getLogger(__name__)


class MigrationCancelled(RuntimeError):
    """Raised when the caller's cancellation event stops a query or a table."""


class ScanKind(Enum):
    """Kinds of values a source row slot can hold after scanning."""

    NULL = "null"
    BOOL = "bool"
    BYTES = "bytes"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    STRING = "string"
    TIMESTAMP = "timestamp"


class ScannedValue(NamedTuple):
    kind: ScanKind
    value: Any


NULL_VALUE = ScannedValue(ScanKind.NULL, None)


def scan_value(raw: Any) -> ScannedValue:
    """
    Tag a raw psycopg2 value with its scan kind.

    This is the only place that inspects Python types of driver values; the
    conversion engine dispatches on the returned kind.

    Driver specifics:
        bytea -> memoryview, numeric -> Decimal (kept as exact text),
        date -> date (kept as ISO text), json -> dict/list (kept as JSON text),
        time/interval/uuid and anything else -> text via str()

    Args:
        raw: Value as returned by the cursor (None for NULL)

    Returns:
        ScannedValue
    """
    if raw is None:
        return NULL_VALUE
    # bool is a subclass of int, check it first
    if isinstance(raw, bool):
        return ScannedValue(ScanKind.BOOL, raw)
    if isinstance(raw, (bytes, bytearray, memoryview)):
        return ScannedValue(ScanKind.BYTES, bytes(raw))
    if isinstance(raw, int):
        return ScannedValue(ScanKind.INT64, raw)
    if isinstance(raw, float):
        return ScannedValue(ScanKind.FLOAT64, raw)
    if isinstance(raw, str):
        return ScannedValue(ScanKind.STRING, raw)
    if isinstance(raw, Decimal):
        return ScannedValue(ScanKind.STRING, str(raw))
    # datetime is a subclass of date, check it first
    if isinstance(raw, datetime):
        return ScannedValue(ScanKind.TIMESTAMP, raw)
    if isinstance(raw, date):
        return ScannedValue(ScanKind.STRING, raw.isoformat())
    if isinstance(raw, (dict, list)):
        return ScannedValue(ScanKind.STRING, json.dumps(raw))
    return ScannedValue(ScanKind.STRING, str(raw))


def scan_row(row: Sequence[Any]) -> List[ScannedValue]:
    return [scan_value(v) for v in row]


class SourceConnectionHelper:
    """
    Query helper for the source PostgreSQL database.

    Each call opens its own connection, so one helper may be shared by
    workers converting different tables. Connection errors are logged and
    re-raised; retrying is left to the caller.
    """

    def __init__(
        self,
        postgres_conn_id: str,
        statement_timeout_ms: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize the source helper.

        Args:
            postgres_conn_id: Airflow connection ID for the source PostgreSQL database
            statement_timeout_ms: Optional statement_timeout set on each connection
            cancel_event: Optional event; once set, running and new queries are aborted
        """
        self.conn_id = postgres_conn_id
        self._statement_timeout_ms = statement_timeout_ms
        self._cancel_event = cancel_event or threading.Event()
        self._active_conns = set()
        self._lock = threading.Lock()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def is_cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check_cancelled(self) -> None:
        """Raise MigrationCancelled if cancellation was requested."""
        if self._cancel_event.is_set():
            raise MigrationCancelled("Source operation cancelled")

    def cancel(self) -> None:
        """Request cancellation and interrupt queries running on open connections."""
        self._cancel_event.set()
        with self._lock:
            conns = list(self._active_conns)
        for conn in conns:
            try:
                conn.cancel()
            except psycopg2.Error as e:
                logger.warning(f"Could not cancel running source query: {e}")

    def get_conn(self):
        """
        Open a psycopg2 connection through the Airflow connection.

        Returns:
            psycopg2 connection
        """
        self.check_cancelled()
        conn = PostgresHook(postgres_conn_id=self.conn_id).get_conn()
        if self._statement_timeout_ms:
            with conn.cursor() as cursor:
                cursor.execute("SET statement_timeout = %s", (int(self._statement_timeout_ms),))
            conn.commit()
        with self._lock:
            self._active_conns.add(conn)
        return conn

    def release_conn(self, conn) -> None:
        if conn is None:
            return
        with self._lock:
            self._active_conns.discard(conn)
        conn.close()

    def _raise_if_cancelled(self, error: Exception) -> None:
        if isinstance(error, pg_extensions.QueryCanceledError) and self.is_cancelled():
            raise MigrationCancelled("Source query cancelled") from error

    def get_records(
        self,
        sql,
        parameters: Optional[Sequence[Any]] = None
    ) -> List[Tuple[Any, ...]]:
        """
        Execute a query and return all rows as a list of tuples.

        Args:
            sql: SQL query to execute (str or psycopg2.sql.Composable)
            parameters: Optional list of parameters for the query

        Returns:
            List of tuples, one per row
        """
        conn = None
        try:
            conn = self.get_conn()
            with conn.cursor() as cursor:
                if parameters:
                    cursor.execute(sql, parameters)
                else:
                    cursor.execute(sql)
                return cursor.fetchall()
        except psycopg2.Error as e:
            self._raise_if_cancelled(e)
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    def get_first(
        self,
        sql,
        parameters: Optional[Sequence[Any]] = None
    ) -> Optional[Tuple[Any, ...]]:
        """
        Execute a query and return the first row as a tuple.

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query

        Returns:
            First row as a tuple, or None if no rows
        """
        conn = None
        try:
            conn = self.get_conn()
            with conn.cursor() as cursor:
                if parameters:
                    cursor.execute(sql, parameters)
                else:
                    cursor.execute(sql)
                return cursor.fetchone()
        except psycopg2.Error as e:
            self._raise_if_cancelled(e)
            logger.error(f"Error executing query: {e}")
            logger.error(f"Query: {sql}")
            if parameters:
                logger.error(f"Parameters: {parameters}")
            raise
        finally:
            self.release_conn(conn)

    @contextlib.contextmanager
    def stream_rows(
        self,
        sql,
        parameters: Optional[Sequence[Any]] = None,
        fetch_size: int = 10000
    ):
        """
        Stream the rows of a query through a server-side cursor.

        Usage:
            with helper.stream_rows(query) as (columns, rows):
                for row in rows:
                    ...

        Args:
            sql: SQL query to execute
            parameters: Optional list of parameters for the query
            fetch_size: Rows fetched per round trip

        Yields:
            Tuple of (column names of the result set, iterator over row tuples)
        """
        conn = None
        cursor = None
        try:
            conn = self.get_conn()
            cursor = conn.cursor(name=f"pg_spanner_{uuid.uuid4().hex[:12]}")
            cursor.itersize = fetch_size
            if parameters:
                cursor.execute(sql, parameters)
            else:
                cursor.execute(sql)
            # Named cursors only describe the result set after the first fetch.
            first_batch = cursor.fetchmany(fetch_size)
            columns = [desc[0] for desc in cursor.description or []]
            yield columns, self._iterate_batches(cursor, first_batch, fetch_size)
        except psycopg2.Error as e:
            self._raise_if_cancelled(e)
            logger.error(f"Error streaming query: {e}")
            logger.error(f"Query: {sql}")
            raise
        finally:
            if cursor is not None and not cursor.closed:
                try:
                    cursor.close()
                except psycopg2.Error as e:
                    logger.warning(f"Error closing source cursor: {e}")
            self.release_conn(conn)

    def _iterate_batches(self, cursor, first_batch, fetch_size: int) -> Iterator[Tuple[Any, ...]]:
        batch = first_batch
        while batch:
            for row in batch:
                yield row
            self.check_cancelled()
            batch = cursor.fetchmany(fetch_size)
