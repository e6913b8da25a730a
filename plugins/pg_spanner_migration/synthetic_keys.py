"""
Synthetic Primary Key Module

Spanner requires a primary key on every table. When the source table declares
none, a STRING column is injected as the key and filled, row by row, with the
bit-reversed value of a per-table counter. Reversing the bits of a sequential
counter spreads consecutive rows across the key space instead of appending
them all to the same split.
"""

from typing import Optional
import logging

from pg_spanner_migration.schema_model import (
    IdGenerator,
    IndexKey,
    SpannerType,
    SyntheticKeyState,
    TargetColumn,
    TargetTable,
    TargetType,
)
from pg_spanner_migration.utils import unique_name

logger = logging.getLogger(__name__)

SYNTHETIC_KEY_NAME = "synth_id"
# Wide enough for any signed 64-bit value in decimal.
SYNTHETIC_KEY_LENGTH = 50

_UINT64_MASK = (1 << 64) - 1


def bit_reverse64(value: int) -> int:
    """
    Reverse the 64 bits of value and read the result as a signed int64.

    Examples:
        >>> bit_reverse64(0)
        0
        >>> bit_reverse64(1)
        -9223372036854775808
        >>> bit_reverse64(bit_reverse64(12345))
        12345
    """
    reversed_bits = int(format(value & _UINT64_MASK, '064b')[::-1], 2)
    if reversed_bits >= 1 << 63:
        reversed_bits -= 1 << 64
    return reversed_bits


def synthetic_key_value(sequence: int) -> str:
    """Decimal text of the bit-reversed sequence value, as stored in the key column."""
    return str(bit_reverse64(sequence))


def add_synthetic_primary_key(
    sp_table: TargetTable,
    ids: IdGenerator,
    name: str = SYNTHETIC_KEY_NAME
) -> SyntheticKeyState:
    """
    Inject the synthetic key column into a key-less target table.

    The column is appended last and becomes the table's only primary key.

    Args:
        sp_table: Target table without primary key columns
        ids: Id generator of the current run
        name: Preferred column name

    Returns:
        SyntheticKeyState with the new column id and a counter at 0

    Raises:
        ValueError: If the table already has a primary key
    """
    if sp_table.primary_keys:
        raise ValueError(f"Table {sp_table.name} already has a primary key")

    col_id = ids.column_id()
    used = [col.name for col in sp_table.column_defs.values()]
    col_name = unique_name(name, used)
    sp_table.column_defs[col_id] = TargetColumn(
        id=col_id,
        name=col_name,
        type=TargetType(SpannerType.STRING, SYNTHETIC_KEY_LENGTH),
        not_null=True,
    )
    sp_table.column_ids.append(col_id)
    sp_table.primary_keys = [IndexKey(column_id=col_id, order=1)]
    logger.info(f"Table {sp_table.name} has no primary key, added synthetic key column '{col_name}'")
    return SyntheticKeyState(column_id=col_id)


def next_synthetic_key(state: Optional[SyntheticKeyState]) -> Optional[str]:
    """
    Consume one sequence value.

    Call only for rows that are actually emitted, so that emitted rows and
    consumed sequence values stay one-to-one.

    Args:
        state: Key state of the table, or None for tables with a real key

    Returns:
        Key value for the row, or None when the table has no synthetic key
    """
    if state is None:
        return None
    value = synthetic_key_value(state.sequence)
    state.sequence += 1
    return value

