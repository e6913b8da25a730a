"""
Schema Model Builder

This module turns raw catalog rows for one table into a SourceTable:
display names, canonical type descriptors, ignored constraints, primary
keys, merged foreign keys and merged indexes.

Malformed catalog rows are reported as anomalies and skipped; they never
abort the table.
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence, TypeVar
import logging

from pg_spanner_migration.conversion_report import ConversionReport
from pg_spanner_migration.schema_model import (
    FkAction,
    IdGenerator,
    IgnoredConstraints,
    IndexKey,
    RawColumn,
    RawConstraint,
    RawForeignKey,
    RawIndexColumn,
    SchemaAndName,
    SourceColumn,
    SourceForeignKey,
    SourceIndex,
    SourceTable,
    SourceType,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

KNOWN_CONSTRAINT_TYPES = ('PRIMARY KEY', 'FOREIGN KEY', 'UNIQUE', 'CHECK')


def compute_schema_unique(tables: Iterable[SchemaAndName]) -> bool:
    """True when all discovered tables live in a single namespace."""
    return len({t.schema for t in tables}) <= 1


def table_display_name(
    schema: str,
    name: str,
    is_schema_unique: bool,
    default_schema: str = 'public'
) -> str:
    """
    Display name of a source table.

    Examples:
        >>> table_display_name('public', 'users', False)
        'users'
        >>> table_display_name('sales', 'orders', False)
        'sales.orders'
        >>> table_display_name('sales', 'orders', True)
        'orders'
    """
    if is_schema_unique or schema == default_schema:
        return name
    return f"{schema}.{name}"


def to_type(
    data_type: str,
    element_type: Optional[str] = None,
    char_max_length: Optional[int] = None,
    numeric_precision: Optional[int] = None,
    numeric_scale: Optional[int] = None
) -> SourceType:
    """
    Build the canonical type descriptor of a catalog column.

    Multi-dimensional arrays are modelled as a single unbounded dimension.

    Examples:
        >>> to_type('ARRAY', 'integer')
        SourceType(name='integer', mods=(), array_bounds=(-1,))
        >>> to_type('character varying', char_max_length=8)
        SourceType(name='character varying', mods=(8,), array_bounds=())
        >>> to_type('numeric', numeric_precision=10, numeric_scale=2)
        SourceType(name='numeric', mods=(10, 2), array_bounds=())
    """
    if data_type == 'ARRAY' and element_type:
        return SourceType(name=element_type, array_bounds=(-1,))
    if char_max_length is not None:
        return SourceType(name=data_type, mods=(int(char_max_length),))
    if numeric_precision is not None and numeric_scale:
        return SourceType(name=data_type, mods=(int(numeric_precision), int(numeric_scale)))
    if numeric_precision is not None:
        return SourceType(name=data_type, mods=(int(numeric_precision),))
    return SourceType(name=data_type)


def group_by_name(rows: Iterable[T], key: Callable[[T], str]) -> Dict[str, List[T]]:
    """Group rows by key, keeping the first-seen order of keys and row order within a group."""
    groups: Dict[str, List[T]] = {}
    for row in rows:
        groups.setdefault(key(row), []).append(row)
    return groups


def _is_true(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', 't')


class SchemaBuilder:
    """Build SourceTable objects for one extraction run."""

    def __init__(
        self,
        is_schema_unique: bool,
        default_schema: str,
        report: ConversionReport,
        ids: Optional[IdGenerator] = None
    ):
        """
        Initialize the builder.

        Args:
            is_schema_unique: Computed once after table enumeration
            default_schema: Namespace that is never used to qualify names
            report: Receives anomalies for skipped catalog rows
            ids: Id generator of the run
        """
        self.is_schema_unique = is_schema_unique
        self.default_schema = default_schema
        self.report = report
        self.ids = ids or IdGenerator()

    def display_name(self, schema: str, name: str) -> str:
        return table_display_name(schema, name, self.is_schema_unique, self.default_schema)

    def build_table(
        self,
        table: SchemaAndName,
        columns: Sequence[RawColumn],
        constraints: Sequence[RawConstraint] = (),
        foreign_keys: Sequence[RawForeignKey] = (),
        indexes: Sequence[RawIndexColumn] = ()
    ) -> SourceTable:
        """
        Build the SourceTable for one discovered table.

        Args:
            table: Namespace and bare name of the table
            columns: Column rows in ordinal order
            constraints: Constraint rows in key ordinal order
            foreign_keys: Foreign key rows
            indexes: Index column rows

        Returns:
            SourceTable
        """
        display = self.display_name(table.schema, table.name)
        src_table = SourceTable(id=self.ids.table_id(), name=display, schema=table.schema, bare_name=table.name)

        primary_keys, column_constraints = self._split_constraints(display, constraints)
        self._add_columns(src_table, columns, column_constraints)

        col_ids = src_table.column_id_by_name()
        for position, col_name in enumerate(primary_keys, start=1):
            col_id = col_ids.get(col_name)
            if col_id is None:
                self.report.unexpected(
                    f"Primary key column '{col_name}' of table {display} not found among its columns"
                )
                continue
            src_table.primary_keys.append(IndexKey(column_id=col_id, order=position))

        src_table.foreign_keys = self._build_foreign_keys(display, foreign_keys, col_ids)
        src_table.indexes = self._build_indexes(src_table.id, display, indexes, col_ids)

        logger.debug(
            f"Built table {display}: {len(src_table.column_ids)} columns, "
            f"{len(src_table.primary_keys)} pk columns, {len(src_table.foreign_keys)} foreign keys, "
            f"{len(src_table.indexes)} indexes"
        )
        return src_table

    def _split_constraints(self, display: str, constraints: Sequence[RawConstraint]):
        primary_keys: List[str] = []
        by_column: Dict[str, List[str]] = {}
        for row in constraints:
            if not row.column_name or not row.constraint_type:
                self.report.unexpected(f"Got empty column or constraint for table {display}: {row}")
                continue
            if row.constraint_type not in KNOWN_CONSTRAINT_TYPES:
                self.report.unexpected(
                    f"Unknown constraint type '{row.constraint_type}' on {display}.{row.column_name}"
                )
                continue
            if row.constraint_type == 'PRIMARY KEY':
                if row.column_name not in primary_keys:
                    primary_keys.append(row.column_name)
            else:
                by_column.setdefault(row.column_name, []).append(row.constraint_type)
        return primary_keys, by_column

    def _add_columns(
        self,
        src_table: SourceTable,
        columns: Sequence[RawColumn],
        column_constraints: Dict[str, List[str]]
    ) -> None:
        for row in columns:
            if not row.column_name or not row.data_type:
                self.report.unexpected(f"Got malformed column row for table {src_table.name}: {row}")
                continue

            ignored = IgnoredConstraints(
                check='CHECK' in column_constraints.get(row.column_name, []),
                default=row.column_default is not None,
            )
            col_id = self.ids.column_id()
            src_table.column_defs[col_id] = SourceColumn(
                id=col_id,
                name=row.column_name,
                type=to_type(
                    row.data_type,
                    row.element_type,
                    row.char_max_length,
                    row.numeric_precision,
                    row.numeric_scale,
                ),
                not_null=self._not_null(src_table.name, row),
                ignored=ignored,
            )
            src_table.column_ids.append(col_id)

    def _not_null(self, display: str, row: RawColumn) -> bool:
        if row.is_nullable == 'NO':
            return True
        if row.is_nullable != 'YES':
            self.report.unexpected(
                f"Unexpected is_nullable value '{row.is_nullable}' for {display}.{row.column_name}"
            )
        return False

    def _fk_action(self, display: str, fk_name: str, rule: Optional[str]) -> FkAction:
        try:
            return FkAction.from_catalog(rule)
        except ValueError:
            self.report.unexpected(
                f"Unsupported referential action '{rule}' on foreign key {fk_name} of {display}, "
                f"using NO ACTION"
            )
            return FkAction.NO_ACTION

    def _build_foreign_keys(
        self,
        display: str,
        rows: Sequence[RawForeignKey],
        col_ids: Dict[str, str]
    ) -> List[SourceForeignKey]:
        valid_rows = []
        for row in rows:
            if not row.constraint_name or not row.column_name or not row.ref_column_name:
                self.report.unexpected(f"Got malformed foreign key row for table {display}: {row}")
                continue
            valid_rows.append(row)

        foreign_keys = []
        for fk_name, group in group_by_name(valid_rows, lambda r: r.constraint_name).items():
            missing = [r.column_name for r in group if r.column_name not in col_ids]
            if missing:
                self.report.unexpected(
                    f"Foreign key {fk_name} of {display} references unknown columns {missing}, skipping it"
                )
                continue
            last = group[-1]
            foreign_keys.append(SourceForeignKey(
                id=self.ids.foreign_key_id(),
                name=fk_name,
                column_ids=[col_ids[r.column_name] for r in group],
                refer_table_name=self.display_name(group[0].ref_schema, group[0].ref_table),
                refer_column_names=[r.ref_column_name for r in group],
                on_delete=self._fk_action(display, fk_name, last.on_delete),
                on_update=self._fk_action(display, fk_name, last.on_update),
            ))

        foreign_keys.sort(key=lambda fk: fk.name)
        return foreign_keys

    def _build_indexes(
        self,
        table_id: str,
        display: str,
        rows: Sequence[RawIndexColumn],
        col_ids: Dict[str, str]
    ) -> List[SourceIndex]:
        indexes = []
        valid_rows = [r for r in rows if r.index_name]
        if len(valid_rows) != len(rows):
            self.report.unexpected(f"Skipped {len(rows) - len(valid_rows)} index rows without a name on {display}")

        for index_name, group in group_by_name(valid_rows, lambda r: r.index_name).items():
            keys = []
            for row in sorted(group, key=lambda r: int(r.position or 0)):
                col_id = col_ids.get(row.column_name)
                if col_id is None:
                    self.report.unexpected(
                        f"Index {index_name} of {display} references unknown column '{row.column_name}'"
                    )
                    continue
                keys.append(IndexKey(
                    column_id=col_id,
                    desc=row.sort_order == 'DESC',
                    order=len(keys) + 1,
                ))
            if not keys:
                self.report.unexpected(f"Index {index_name} of {display} has no usable columns, skipping it")
                continue
            indexes.append(SourceIndex(
                id=self.ids.index_id(),
                name=index_name,
                table_id=table_id,
                unique=_is_true(group[0].is_unique),
                keys=keys,
            ))
        return indexes
