"""
Schema Model Module

This module defines the engine-independent schema model shared by the schema
pass and the data pass: source tables discovered from the PostgreSQL catalog,
the Spanner tables they are converted into, and the issues recorded while
converting one into the other.

Source and target objects are joined by ids (table ids and column ids), never
by name.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple
import itertools

# Spanner STRING(MAX) / BYTES(MAX)
MAX_LENGTH = 2 ** 63 - 1


class SpannerType(str, Enum):
    """Spanner (GoogleSQL) base types produced by the type mapper."""

    BOOL = "BOOL"
    BYTES = "BYTES"
    DATE = "DATE"
    FLOAT32 = "FLOAT32"
    FLOAT64 = "FLOAT64"
    INT64 = "INT64"
    JSON = "JSON"
    NUMERIC = "NUMERIC"
    STRING = "STRING"
    TIMESTAMP = "TIMESTAMP"


class SchemaIssue(str, Enum):
    """Lossy or unsupported mappings, reported per column id."""

    WIDENED = "Widened"
    ARRAY_TYPE_NOT_SUPPORTED = "ArrayTypeNotSupported"
    DEFAULT_VALUE_DROPPED = "DefaultValueDropped"
    TIMESTAMP_PRECISION_LOSS = "TimestampPrecisionLoss"
    CHECK_CONSTRAINT_DROPPED = "CheckConstraintDropped"
    NO_GOOD_TYPE = "NoGoodType"
    FOREIGN_KEY_ACTION_NOT_SUPPORTED = "ForeignKeyActionNotSupported"
    MISSING_PRIMARY_KEY = "MissingPrimaryKey"


class FkAction(str, Enum):
    NO_ACTION = "NO_ACTION"
    CASCADE = "CASCADE"
    SET_NULL = "SET_NULL"
    RESTRICT = "RESTRICT"

    @classmethod
    def from_catalog(cls, rule: Optional[str]) -> "FkAction":
        """
        Parse a referential rule as reported by information_schema.

        Args:
            rule: Catalog text such as 'NO ACTION' or 'SET NULL'

        Returns:
            The matching FkAction

        Raises:
            ValueError: If the rule is outside the supported set (e.g. SET DEFAULT)
        """
        if not rule:
            return cls.NO_ACTION
        return cls(rule.strip().upper().replace(' ', '_'))


class IdGenerator:
    """Hands out run-unique ids such as 't1', 'c7', 'f2', 'i3'."""

    def __init__(self):
        self._counters = {
            prefix: itertools.count(1) for prefix in ('t', 'c', 'f', 'i')
        }

    def _next(self, prefix: str) -> str:
        return f"{prefix}{next(self._counters[prefix])}"

    def table_id(self) -> str:
        return self._next('t')

    def column_id(self) -> str:
        return self._next('c')

    def foreign_key_id(self) -> str:
        return self._next('f')

    def index_id(self) -> str:
        return self._next('i')


@dataclass(frozen=True)
class SchemaAndName:
    schema: str
    name: str


class RawColumn(NamedTuple):
    """One row of the column catalog query."""

    column_name: str
    data_type: str
    element_type: Optional[str]
    is_nullable: str
    column_default: Optional[str]
    char_max_length: Optional[int]
    numeric_precision: Optional[int]
    numeric_scale: Optional[int]


class RawConstraint(NamedTuple):
    column_name: str
    constraint_type: str
    ordinal_position: Optional[int]


class RawForeignKey(NamedTuple):
    ref_schema: str
    ref_table: str
    column_name: str
    ref_column_name: str
    constraint_name: str
    on_delete: str
    on_update: str


class RawIndexColumn(NamedTuple):
    index_name: str
    column_name: str
    position: int
    is_unique: Any
    sort_order: str


@dataclass(frozen=True)
class SourceType:
    """Canonical source type descriptor: base name, modifiers and array bounds."""

    name: str
    mods: Tuple[int, ...] = ()
    array_bounds: Tuple[int, ...] = ()

    @property
    def is_array(self) -> bool:
        return len(self.array_bounds) > 0


@dataclass
class IgnoredConstraints:
    check: bool = False
    default: bool = False


@dataclass
class SourceColumn:
    id: str
    name: str
    type: SourceType
    not_null: bool = False
    ignored: IgnoredConstraints = field(default_factory=IgnoredConstraints)


@dataclass
class IndexKey:
    column_id: str
    desc: bool = False
    order: int = 0


@dataclass
class SourceForeignKey:
    id: str
    name: str
    column_ids: List[str]
    refer_table_name: str
    refer_column_names: List[str]
    on_delete: FkAction = FkAction.NO_ACTION
    on_update: FkAction = FkAction.NO_ACTION


@dataclass
class SourceIndex:
    id: str
    name: str
    table_id: str
    unique: bool
    keys: List[IndexKey]


@dataclass
class SourceTable:
    id: str
    name: str
    schema: str
    bare_name: str  # catalog table name, may itself contain dots
    column_ids: List[str] = field(default_factory=list)
    column_defs: Dict[str, SourceColumn] = field(default_factory=dict)
    primary_keys: List[IndexKey] = field(default_factory=list)
    foreign_keys: List[SourceForeignKey] = field(default_factory=list)
    indexes: List[SourceIndex] = field(default_factory=list)

    def column_id_by_name(self) -> Dict[str, str]:
        return {col.name: col_id for col_id, col in self.column_defs.items()}


@dataclass(frozen=True)
class TargetType:
    name: SpannerType
    length: Optional[int] = None
    is_array: bool = False

    def __str__(self) -> str:
        if self.length is None:
            base = self.name.value
        elif self.length == MAX_LENGTH:
            base = f"{self.name.value}(MAX)"
        else:
            base = f"{self.name.value}({self.length})"
        return f"ARRAY<{base}>" if self.is_array else base


@dataclass
class TargetColumn:
    id: str
    name: str
    type: TargetType
    not_null: bool = False


@dataclass
class TargetForeignKey:
    id: str
    name: str
    column_ids: List[str]
    refer_table_id: str
    refer_column_ids: List[str]
    on_delete: FkAction = FkAction.NO_ACTION
    on_update: FkAction = FkAction.NO_ACTION


@dataclass
class TargetIndex:
    id: str
    name: str
    table_id: str
    unique: bool
    keys: List[IndexKey]


@dataclass
class TargetTable:
    id: str
    name: str
    column_ids: List[str] = field(default_factory=list)
    column_defs: Dict[str, TargetColumn] = field(default_factory=dict)
    primary_keys: List[IndexKey] = field(default_factory=list)
    foreign_keys: List[TargetForeignKey] = field(default_factory=list)
    indexes: List[TargetIndex] = field(default_factory=list)


@dataclass
class SyntheticKeyState:
    """Injected key column of a key-less table and its row counter."""

    column_id: str
    sequence: int = 0


@dataclass
class SchemaConversion:
    """
    Result of the schema pass.

    Holds both schema representations keyed by table id, the synthetic key
    state of key-less tables, and the schema issues per table and column id.
    """

    src_schema: Dict[str, SourceTable] = field(default_factory=dict)
    sp_schema: Dict[str, TargetTable] = field(default_factory=dict)
    synthetic_keys: Dict[str, SyntheticKeyState] = field(default_factory=dict)
    schema_issues: Dict[str, Dict[str, List[SchemaIssue]]] = field(default_factory=dict)

    def add_issue(self, table_id: str, column_id: str, issue: SchemaIssue) -> None:
        self.schema_issues.setdefault(table_id, {}).setdefault(column_id, []).append(issue)

    def column_issues(self, table_id: str) -> Dict[str, List[SchemaIssue]]:
        return self.schema_issues.get(table_id, {})

    def table_id_by_source_name(self, name: str) -> Optional[str]:
        for table_id, table in self.src_schema.items():
            if table.name == name:
                return table_id
        return None

    def included_source_tables(self) -> Dict[str, Dict[str, List[str]]]:
        """
        List the source tables and columns covered by this conversion.

        This is what change-stream provisioning needs to know about the schema.

        Returns:
            {source_schema: {table_name: [column names in column order]}}
        """
        included: Dict[str, Dict[str, List[str]]] = {}
        for table in self.src_schema.values():
            columns = [table.column_defs[col_id].name for col_id in table.column_ids]
            included.setdefault(table.schema, {})[table.bare_name] = columns
        return included
