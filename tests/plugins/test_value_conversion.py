"""
Tests for Value Conversion Module

These tests validate the conversion matrix (destination type x scanned
kind), timestamp handling and PostgreSQL array text parsing.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
import struct

import pytest
from pg_spanner_migration.schema_model import (
    MAX_LENGTH,
    SourceColumn,
    SourceType,
    SpannerType,
    TargetColumn,
    TargetType,
)
from pg_spanner_migration.source_helper import ScanKind, ScannedValue
from pg_spanner_migration.value_conversion import (
    ConversionError,
    TypeMismatch,
    convert_array,
    convert_scalar,
    convert_timestamp,
    convert_value,
    format_float32,
    parse_array_text,
    resolve_timezone,
)

UTC = resolve_timezone('UTC')

BOOL = TargetType(SpannerType.BOOL)
BYTES = TargetType(SpannerType.BYTES, MAX_LENGTH)
DATE = TargetType(SpannerType.DATE)
INT64 = TargetType(SpannerType.INT64)
FLOAT32 = TargetType(SpannerType.FLOAT32)
FLOAT64 = TargetType(SpannerType.FLOAT64)
NUMERIC = TargetType(SpannerType.NUMERIC)
STRING = TargetType(SpannerType.STRING, MAX_LENGTH)
TIMESTAMP = TargetType(SpannerType.TIMESTAMP)
JSON = TargetType(SpannerType.JSON)


def text(value):
    return ScannedValue(ScanKind.STRING, value)


def f32(value):
    return struct.unpack('f', struct.pack('f', value))[0]


def convert(target, scanned, src_type='text', tz=UTC):
    return convert_scalar(target, src_type, scanned, tz)


class TestBoolAndBytes:
    """Test BOOL and BYTES destinations."""

    def test_bool_passthrough(self):
        assert convert(BOOL, ScannedValue(ScanKind.BOOL, True)) is True

    @pytest.mark.parametrize("value,expected", [("true", True), ("FALSE", False), ("t", True), ("f", False)])
    def test_bool_from_text(self, value, expected):
        assert convert(BOOL, text(value)) is expected

    def test_bool_bad_text(self):
        with pytest.raises(ConversionError):
            convert(BOOL, text("maybe"))

    def test_bool_rejects_int(self):
        with pytest.raises(TypeMismatch):
            convert(BOOL, ScannedValue(ScanKind.INT64, 1))

    def test_bytes_passthrough(self):
        assert convert(BYTES, ScannedValue(ScanKind.BYTES, b'\x00\x01')) == b'\x00\x01'

    def test_bytes_rejects_text(self):
        with pytest.raises(TypeMismatch):
            convert(BYTES, text("abc"))


class TestNumbers:
    """Test INT64, FLOAT32, FLOAT64 and NUMERIC destinations."""

    def test_int64_from_text(self):
        assert convert(INT64, text("-42")) == -42

    def test_int64_from_bytes(self):
        assert convert(INT64, ScannedValue(ScanKind.BYTES, b"17")) == 17

    def test_int64_passthrough(self):
        assert convert(INT64, ScannedValue(ScanKind.INT64, 2 ** 40)) == 2 ** 40

    def test_int64_truncates_float(self):
        """Floats are truncated toward zero."""
        assert convert(INT64, ScannedValue(ScanKind.FLOAT64, 3.9)) == 3
        assert convert(INT64, ScannedValue(ScanKind.FLOAT64, -3.9)) == -3

    def test_int64_rejects_decimal_text(self):
        with pytest.raises(ConversionError):
            convert(INT64, text("1.5"))

    def test_int64_out_of_range(self):
        with pytest.raises(ConversionError):
            convert(INT64, text(str(2 ** 63)))

    def test_int64_rejects_nan(self):
        with pytest.raises(ConversionError):
            convert(INT64, ScannedValue(ScanKind.FLOAT64, float('nan')))

    def test_float32_from_text(self):
        assert convert(FLOAT32, text("42.3")) == f32(42.3)

    def test_float32_narrowed(self):
        assert convert(FLOAT32, ScannedValue(ScanKind.FLOAT64, 42.3)) == f32(42.3)

    def test_float32_from_int(self):
        assert convert(FLOAT32, ScannedValue(ScanKind.INT64, 7)) == 7.0

    def test_float32_overflow(self):
        with pytest.raises(ConversionError):
            convert(FLOAT32, text("1e300"))

    def test_float64_from_text(self):
        assert convert(FLOAT64, text("6.6")) == 6.6

    def test_float64_from_int(self):
        assert convert(FLOAT64, ScannedValue(ScanKind.INT64, 22)) == 22.0

    def test_float64_bad_text(self):
        with pytest.raises(ConversionError):
            convert(FLOAT64, text("dog"))

    def test_numeric_exact(self):
        """NUMERIC never goes through floating point."""
        assert convert(NUMERIC, text("999.99999")) == Decimal("999.99999")
        assert convert(NUMERIC, text("0.1")) == Decimal("0.1")

    def test_numeric_rejects_float(self):
        with pytest.raises(TypeMismatch):
            convert(NUMERIC, ScannedValue(ScanKind.FLOAT64, 0.1))

    def test_numeric_rejects_nan(self):
        with pytest.raises(ConversionError):
            convert(NUMERIC, text("NaN"))


class TestString:
    """Test STRING destination."""

    def test_passthrough(self):
        assert convert(STRING, text("cat")) == "cat"

    def test_bool(self):
        assert convert(STRING, ScannedValue(ScanKind.BOOL, False)) == "false"

    def test_bytes(self):
        assert convert(STRING, ScannedValue(ScanKind.BYTES, "héllo".encode('utf-8'))) == "héllo"

    def test_int(self):
        assert convert(STRING, ScannedValue(ScanKind.INT64, -7)) == "-7"

    def test_float32_shortest_form(self):
        assert convert(STRING, ScannedValue(ScanKind.FLOAT32, f32(42.3))) == "42.3"

    def test_float64(self):
        assert convert(STRING, ScannedValue(ScanKind.FLOAT64, 42.3)) == "42.3"
        assert convert(STRING, ScannedValue(ScanKind.FLOAT64, 100.0)) == "100"

    def test_timestamp(self):
        value = datetime(2019, 10, 29, 5, 30, tzinfo=timezone.utc)
        assert convert(STRING, ScannedValue(ScanKind.TIMESTAMP, value)) == "2019-10-29 05:30:00+00:00"

    def test_format_float32(self):
        assert format_float32(f32(0.1)) == "0.1"
        assert format_float32(1.0) == "1"


class TestDateAndTimestamp:
    """Test DATE and TIMESTAMP destinations."""

    def test_date_from_text(self):
        assert convert(DATE, text("2019-10-29")) == date(2019, 10, 29)

    def test_date_from_timestamp(self):
        value = datetime(2019, 10, 29, 23, 59)
        assert convert(DATE, ScannedValue(ScanKind.TIMESTAMP, value)) == date(2019, 10, 29)

    def test_date_bad_text(self):
        with pytest.raises(ConversionError):
            convert(DATE, text("2019-13-01"))

    def test_zoned_text_with_offset(self):
        result = convert(TIMESTAMP, text("2019-10-29 05:30:00+10"), 'timestamp with time zone')
        assert result == datetime(2019, 10, 28, 19, 30, tzinfo=timezone.utc)

    def test_zoned_text_without_offset_uses_default_zone(self):
        result = convert(TIMESTAMP, text("2019-10-29 05:30:00"), 'timestamp with time zone')
        assert result == datetime(2019, 10, 29, 5, 30, tzinfo=timezone.utc)

    def test_unzoned_text_in_configured_zone(self):
        tz = resolve_timezone('Australia/Sydney')
        result = convert(TIMESTAMP, text("2019-10-29 05:30:00"), 'timestamp without time zone', tz)
        # Sydney is UTC+11 in October (daylight saving)
        assert result == datetime(2019, 10, 28, 18, 30, tzinfo=timezone.utc)

    def test_unzoned_text_with_offset_rejected(self):
        with pytest.raises(TypeMismatch):
            convert(TIMESTAMP, text("2019-10-29 05:30:00+10"), 'timestamp without time zone')

    def test_fractional_seconds(self):
        result = convert_timestamp('timestamptz', UTC, "2019-10-29 05:30:00.123+00")
        assert result.microsecond == 123000

    def test_offset_with_minutes(self):
        result = convert_timestamp('timestamptz', UTC, "2019-10-29 05:30:00+05:30")
        assert result.utcoffset() == timedelta(hours=5, minutes=30)

    def test_bad_timestamp_text(self):
        with pytest.raises(ConversionError):
            convert(TIMESTAMP, text("yesterday"), 'timestamptz')

    def test_native_aware_passthrough(self):
        value = datetime(2019, 10, 29, 5, 30, tzinfo=timezone.utc)
        assert convert(TIMESTAMP, ScannedValue(ScanKind.TIMESTAMP, value)) == value

    def test_native_naive_localised(self):
        value = datetime(2019, 10, 29, 5, 30)
        result = convert(TIMESTAMP, ScannedValue(ScanKind.TIMESTAMP, value))
        assert result.tzinfo is not None
        assert result == datetime(2019, 10, 29, 5, 30, tzinfo=timezone.utc)

    def test_timestamp_rejects_int(self):
        with pytest.raises(TypeMismatch):
            convert(TIMESTAMP, ScannedValue(ScanKind.INT64, 0))


class TestJson:
    """Test JSON destination."""

    def test_text(self):
        assert convert(JSON, text('{"a": 1}')) == '{"a": 1}'

    def test_bytes(self):
        assert convert(JSON, ScannedValue(ScanKind.BYTES, b'[1, 2]')) == '[1, 2]'

    def test_rejects_int(self):
        with pytest.raises(TypeMismatch):
            convert(JSON, ScannedValue(ScanKind.INT64, 1))


class TestNull:
    """NULL never reaches the converter."""

    def test_null_is_a_mismatch(self):
        with pytest.raises(TypeMismatch):
            convert(STRING, ScannedValue(ScanKind.NULL, None))


class TestParseArrayText:
    """Test PostgreSQL array text parsing."""

    def test_simple(self):
        assert parse_array_text('{1,2,3}') == ['1', '2', '3']

    def test_null_element(self):
        assert parse_array_text('{true,false,NULL}') == ['true', 'false', None]

    def test_quoted_null_is_text(self):
        assert parse_array_text('{"NULL",null}') == ['NULL', None]

    def test_quoted_elements(self):
        assert parse_array_text('{"a,b","c \\"d\\"",e}') == ['a,b', 'c "d"', 'e']

    def test_brackets(self):
        assert parse_array_text('[1, 2]') == ['1', '2']

    def test_empty(self):
        assert parse_array_text('{}') == []

    def test_dimension_prefix(self):
        assert parse_array_text('[0:1]={7,8}') == ['7', '8']

    def test_malformed(self):
        with pytest.raises(ConversionError):
            parse_array_text('1,2')

    def test_unterminated_quote(self):
        with pytest.raises(ConversionError):
            parse_array_text('{"abc}')

    def test_multi_dimensional_rejected(self):
        with pytest.raises(ConversionError):
            parse_array_text('{{1,2},{3,4}}')


class TestConvertArray:
    """Test array conversion."""

    def test_bool_array(self):
        target = TargetType(SpannerType.BOOL, is_array=True)
        assert convert_array(target, 'boolean', text('{true,false,NULL}'), UTC) == [True, False, None]

    def test_timestamp_array(self):
        target = TargetType(SpannerType.TIMESTAMP, is_array=True)
        result = convert_array(target, 'timestamp with time zone', text('{"2019-10-29 05:30:00+10",NULL}'), UTC)
        assert result == [datetime(2019, 10, 28, 19, 30, tzinfo=timezone.utc), None]

    def test_int_array_from_bytes(self):
        target = TargetType(SpannerType.INT64, is_array=True)
        assert convert_array(target, 'integer', ScannedValue(ScanKind.BYTES, b'{1,-2}'), UTC) == [1, -2]

    def test_bytes_array(self):
        target = TargetType(SpannerType.BYTES, MAX_LENGTH, is_array=True)
        assert convert_array(target, 'bytea', text('{"\\\\x0102",NULL}'), UTC) == [b'\x01\x02', None]

    def test_bad_element(self):
        target = TargetType(SpannerType.INT64, is_array=True)
        with pytest.raises(ConversionError):
            convert_array(target, 'integer', text('{1,dog}'), UTC)

    def test_rejects_non_text(self):
        target = TargetType(SpannerType.INT64, is_array=True)
        with pytest.raises(TypeMismatch):
            convert_array(target, 'integer', ScannedValue(ScanKind.INT64, 1), UTC)

    def test_convert_value_dispatch(self):
        """convert_value delegates array columns to the array converter."""
        src = SourceColumn(id='c1', name='tags', type=SourceType('text', array_bounds=(-1,)))
        as_array = TargetColumn(id='c1', name='tags', type=TargetType(SpannerType.STRING, MAX_LENGTH, is_array=True))
        as_string = TargetColumn(id='c1', name='tags', type=STRING)

        assert convert_value(src, as_array, text('{a,b}'), UTC) == ['a', 'b']
        assert convert_value(src, as_string, text('{a,b}'), UTC) == '{a,b}'
