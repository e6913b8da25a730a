"""
Value Conversion Module

This module converts scanned source values into Spanner values. Each Spanner
type accepts a fixed set of scanned kinds; anything else is a TypeMismatch.

Array columns arrive as PostgreSQL array text ('{1,2,NULL}') and are parsed
element by element with the scalar rules.

Values produced per Spanner type:
    BOOL -> bool, BYTES -> bytes, DATE -> datetime.date, INT64 -> int,
    FLOAT32/FLOAT64 -> float, NUMERIC -> decimal.Decimal, STRING/JSON -> str,
    TIMESTAMP -> timezone-aware datetime
"""

from datetime import date, datetime, timedelta, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Union
import math
import re
import struct

import pendulum

from pg_spanner_migration.schema_model import SourceColumn, SpannerType, TargetColumn, TargetType
from pg_spanner_migration.source_helper import ScanKind, ScannedValue

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

ZONED_TIMESTAMP_TYPES = frozenset(['timestamp with time zone', 'timestamptz'])
UNZONED_TIMESTAMP_TYPES = frozenset(['timestamp without time zone', 'timestamp'])

_INT_RE = re.compile(r'^[+-]?\d+$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
_TIMESTAMP_RE = re.compile(
    r'^(?P<date>\d{4}-\d{2}-\d{2})'
    r'(?:[ T](?P<hour>\d{2}):(?P<minute>\d{2})(?::(?P<second>\d{2})(?:\.(?P<fraction>\d+))?)?'
    r'\s*(?P<offset>Z|[+-]\d{2}(?::?\d{2})?(?::?\d{2})?)?)?$'
)


class ConversionError(ValueError):
    """Raised when a single value cannot be converted. The row is skipped."""


class TypeMismatch(ConversionError):
    """Raised when the scanned kind is not accepted by the destination type."""


def resolve_timezone(tz: Union[str, tzinfo, None]) -> tzinfo:
    """Resolve a zone name (e.g. 'Australia/Sydney') to a tzinfo; None means UTC."""
    if tz is None:
        return pendulum.timezone('UTC')
    if isinstance(tz, str):
        return pendulum.timezone(tz)
    return tz


def localize(dt: datetime, tz: tzinfo) -> datetime:
    """Attach tz to a naive datetime; aware datetimes are returned unchanged."""
    if dt.tzinfo is not None:
        return dt
    return pendulum.instance(dt, tz=tz)


def _mismatch(scanned: ScannedValue, target: TargetType) -> TypeMismatch:
    return TypeMismatch(f"can't convert value of kind {scanned.kind.value} to Spanner type {target}")


def _as_text(scanned: ScannedValue) -> Optional[str]:
    if scanned.kind == ScanKind.STRING:
        return scanned.value
    if scanned.kind == ScanKind.BYTES:
        try:
            return scanned.value.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ConversionError(f"can't decode bytes as UTF-8: {e}")
    return None


def _to_float32(value: float) -> float:
    try:
        return struct.unpack('f', struct.pack('f', value))[0]
    except OverflowError:
        raise ConversionError(f"value {value} out of range for FLOAT32")


def _check_int64(value: int) -> int:
    if value < INT64_MIN or value > INT64_MAX:
        raise ConversionError(f"value {value} out of range for INT64")
    return value


def format_float32(value: float) -> str:
    """Shortest text that reads back as the same FLOAT32 value."""
    if math.isnan(value) or math.isinf(value):
        return format_float64(value)
    for precision in range(1, 10):
        text = '%.*g' % (precision, value)
        if _to_float32(float(text)) == value:
            return text
    return repr(value)


def format_float64(value: float) -> str:
    text = repr(value)
    return text[:-2] if text.endswith('.0') else text


def convert_bool(text: str) -> bool:
    normalized = text.strip().lower()
    if normalized in ('true', 't', '1'):
        return True
    if normalized in ('false', 'f', '0'):
        return False
    raise ConversionError(f"can't convert '{text}' to BOOL")


def convert_int64(text: str) -> int:
    if not _INT_RE.match(text.strip()):
        raise ConversionError(f"can't convert '{text}' to INT64")
    return _check_int64(int(text.strip()))


def convert_float64(text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        raise ConversionError(f"can't convert '{text}' to FLOAT64")


def convert_float32(text: str) -> float:
    return _to_float32(convert_float64(text))


def convert_numeric(text: str) -> Decimal:
    """Parse exact decimal text; never goes through floating point."""
    try:
        value = Decimal(text.strip())
    except InvalidOperation:
        raise ConversionError(f"can't convert '{text}' to NUMERIC")
    if not value.is_finite():
        raise ConversionError(f"NUMERIC does not accept '{text}'")
    return value


def convert_date(text: str) -> date:
    if not _DATE_RE.match(text.strip()):
        raise ConversionError(f"can't convert '{text}' to DATE")
    try:
        return date.fromisoformat(text.strip())
    except ValueError as e:
        raise ConversionError(f"can't convert '{text}' to DATE: {e}")


def _parse_offset(offset: str) -> timezone:
    if offset == 'Z':
        return timezone.utc
    sign = -1 if offset[0] == '-' else 1
    digits = offset[1:].replace(':', '')
    hours = int(digits[0:2])
    minutes = int(digits[2:4] or 0)
    seconds = int(digits[4:6] or 0)
    return timezone(sign * timedelta(hours=hours, minutes=minutes, seconds=seconds))


def convert_timestamp(src_type_name: str, tz: tzinfo, text: str) -> datetime:
    """
    Parse timestamp text as produced by PostgreSQL.

    The source type name decides how a zone is treated: 'timestamp with time
    zone' text may carry an offset, 'timestamp without time zone' text must
    not. Text without an offset is read in tz.

    Args:
        src_type_name: Source column type name
        tz: Zone for text without an offset
        text: Timestamp text, e.g. '2019-10-29 05:30:00+10'

    Returns:
        Timezone-aware datetime

    Raises:
        ConversionError: If the text cannot be parsed
        TypeMismatch: If unzoned text carries an offset
    """
    match = _TIMESTAMP_RE.match(text.strip())
    if not match:
        raise ConversionError(f"can't convert '{text}' to TIMESTAMP")

    try:
        day = date.fromisoformat(match.group('date'))
        fraction = (match.group('fraction') or '')[:6].ljust(6, '0')
        value = datetime(
            day.year, day.month, day.day,
            int(match.group('hour') or 0),
            int(match.group('minute') or 0),
            int(match.group('second') or 0),
            int(fraction),
        )
    except ValueError as e:
        raise ConversionError(f"can't convert '{text}' to TIMESTAMP: {e}")

    offset = match.group('offset')
    if offset:
        if src_type_name.lower() in UNZONED_TIMESTAMP_TYPES:
            raise TypeMismatch(f"timestamp without time zone '{text}' carries a zone offset")
        return value.replace(tzinfo=_parse_offset(offset))
    return localize(value, tz)


def convert_scalar(
    target: TargetType,
    src_type_name: str,
    scanned: ScannedValue,
    tz: tzinfo
) -> Any:
    """
    Convert one scanned value to the Spanner representation of target.

    Args:
        target: Target column type (the array flag is ignored here)
        src_type_name: Source column type name (disambiguates timestamps)
        scanned: Scanned source value, never NULL
        tz: Default zone for unzoned timestamps

    Returns:
        Converted value

    Raises:
        TypeMismatch: If the scanned kind is not accepted by the destination
        ConversionError: If the value cannot be parsed
    """
    kind, value = scanned
    name = target.name

    if name == SpannerType.BOOL:
        if kind == ScanKind.BOOL:
            return value
        if kind == ScanKind.STRING:
            return convert_bool(value)

    elif name == SpannerType.BYTES:
        if kind == ScanKind.BYTES:
            return value

    elif name == SpannerType.DATE:
        if kind == ScanKind.STRING:
            return convert_date(value)
        if kind == ScanKind.TIMESTAMP:
            return value.date()

    elif name == SpannerType.INT64:
        if kind in (ScanKind.STRING, ScanKind.BYTES):
            return convert_int64(_as_text(scanned))
        if kind == ScanKind.INT64:
            return _check_int64(value)
        if kind in (ScanKind.FLOAT32, ScanKind.FLOAT64):
            if math.isnan(value) or math.isinf(value):
                raise ConversionError(f"can't convert {value} to INT64")
            return _check_int64(math.trunc(value))

    elif name == SpannerType.FLOAT32:
        if kind in (ScanKind.STRING, ScanKind.BYTES):
            return convert_float32(_as_text(scanned))
        if kind in (ScanKind.INT64, ScanKind.FLOAT32, ScanKind.FLOAT64):
            return _to_float32(float(value))

    elif name == SpannerType.FLOAT64:
        if kind in (ScanKind.STRING, ScanKind.BYTES):
            return convert_float64(_as_text(scanned))
        if kind in (ScanKind.INT64, ScanKind.FLOAT32, ScanKind.FLOAT64):
            return float(value)

    elif name == SpannerType.NUMERIC:
        if kind in (ScanKind.STRING, ScanKind.BYTES):
            return convert_numeric(_as_text(scanned))

    elif name == SpannerType.STRING:
        if kind == ScanKind.STRING:
            return value
        if kind == ScanKind.BOOL:
            return 'true' if value else 'false'
        if kind == ScanKind.BYTES:
            return _as_text(scanned)
        if kind == ScanKind.INT64:
            return str(value)
        if kind == ScanKind.FLOAT32:
            return format_float32(value)
        if kind == ScanKind.FLOAT64:
            return format_float64(value)
        if kind == ScanKind.TIMESTAMP:
            return value.isoformat(sep=' ')

    elif name == SpannerType.TIMESTAMP:
        if kind == ScanKind.STRING:
            return convert_timestamp(src_type_name, tz, value)
        if kind == ScanKind.TIMESTAMP:
            return localize(value, tz)

    elif name == SpannerType.JSON:
        if kind in (ScanKind.STRING, ScanKind.BYTES):
            return _as_text(scanned)

    raise _mismatch(scanned, target)


def parse_array_text(text: str) -> List[Optional[str]]:
    """
    Split PostgreSQL array text into element texts.

    Quoted elements may contain commas, braces and backslash escapes. An
    unquoted NULL becomes None; a quoted "NULL" stays text. Only
    one-dimensional arrays are supported.

    Examples:
        >>> parse_array_text('{true,false,NULL}')
        ['true', 'false', None]
        >>> parse_array_text('{"2019-10-29 05:30:00+10",NULL}')
        ['2019-10-29 05:30:00+10', None]
        >>> parse_array_text('[1, 2]')
        ['1', '2']
    """
    s = text.strip()
    # Arrays with non-default bounds are prefixed with '[1:3]='
    if s.startswith('[') and '=' in s and s.index('=') < s.find('{'):
        s = s[s.index('=') + 1:].strip()
    if len(s) < 2 or (s[0], s[-1]) not in (('{', '}'), ('[', ']')):
        raise ConversionError(f"malformed array literal '{text}'")

    body = s[1:-1]
    if not body.strip():
        return []

    elements: List[Optional[str]] = []
    i, n = 0, len(body)
    while True:
        while i < n and body[i].isspace():
            i += 1
        if i < n and body[i] == '"':
            i += 1
            chars = []
            while i < n and body[i] != '"':
                if body[i] == '\\':
                    i += 1
                    if i >= n:
                        break
                chars.append(body[i])
                i += 1
            if i >= n:
                raise ConversionError(f"unterminated quoted element in array literal '{text}'")
            i += 1
            elements.append(''.join(chars))
        else:
            start = i
            while i < n and body[i] != ',':
                if body[i] in '{[':
                    raise ConversionError(f"multi-dimensional array literal '{text}' is not supported")
                i += 1
            token = body[start:i].strip()
            elements.append(None if token.upper() == 'NULL' else token)

        while i < n and body[i].isspace():
            i += 1
        if i >= n:
            break
        if body[i] != ',':
            raise ConversionError(f"unexpected character '{body[i]}' in array literal '{text}'")
        i += 1

    return elements


def _convert_element(target: TargetType, src_type_name: str, text: str, tz: tzinfo) -> Any:
    if target.name == SpannerType.BYTES:
        # bytea elements use the hex output format
        if not text.startswith('\\x'):
            raise ConversionError(f"can't convert array element '{text}' to BYTES")
        try:
            return bytes.fromhex(text[2:])
        except ValueError as e:
            raise ConversionError(f"can't convert array element '{text}' to BYTES: {e}")
    return convert_scalar(target, src_type_name, ScannedValue(ScanKind.STRING, text), tz)


def convert_array(
    target: TargetType,
    src_type_name: str,
    scanned: ScannedValue,
    tz: tzinfo
) -> List[Any]:
    """
    Convert PostgreSQL array text to a list of Spanner values.

    NULL elements become None.

    Raises:
        TypeMismatch: If the scanned value is not text or bytes
        ConversionError: If the literal or an element cannot be parsed
    """
    text = _as_text(scanned)
    if text is None:
        raise _mismatch(scanned, target)
    return [
        None if element is None else _convert_element(target, src_type_name, element, tz)
        for element in parse_array_text(text)
    ]


def convert_value(
    src_col: SourceColumn,
    sp_col: TargetColumn,
    scanned: ScannedValue,
    tz: tzinfo
) -> Any:
    """Convert one non-NULL value of a column, delegating arrays to convert_array."""
    if sp_col.type.is_array:
        return convert_array(sp_col.type, src_col.type.name, scanned, tz)
    return convert_scalar(sp_col.type, src_col.type.name, scanned, tz)
