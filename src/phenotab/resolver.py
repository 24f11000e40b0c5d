"""
Context resolution.

Binds each configured series context to the concrete columns of one table.
"""

import logging
import re
import typing

from dataclasses import dataclass, field

import pandas as pd

from .concept import ConceptKind
from .config import SeriesContextConfig
from .errors import ConfigError
from .loader import cell_text, is_missing

logger = logging.getLogger(__name__)


@dataclass
class ResolvedSeriesContext:
    """
    A series context bound to zero or more columns of a specific table.

    `data_context` starts as the configured one; a strategy may re-tag the
    cells after converting them (a date column becomes an age column).
    `missing` holds the names of a list identifier that are not in the table.
    """

    config: SeriesContextConfig
    columns: list[str]
    data_context: typing.Any = None
    missing: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.data_context is None:
            self.data_context = self.config.data_context

    @property
    def header_context(self):
        return self.config.header_context

    @property
    def building_block_id(self) -> typing.Optional[str]:
        return self.config.building_block_id

    @property
    def is_bound(self) -> bool:
        return bool(self.columns)

    def has_data_kind(self, kind) -> bool:
        return self.data_context is not None and self.data_context.kind is kind

    def has_header_kind(self, kind) -> bool:
        return self.header_context is not None and self.header_context.kind is kind


def resolve_columns(headers: typing.Sequence[str], identifier: typing.Union[str, list[str]]) -> list[str]:
    """
    Bind an identifier to headers.

    - a list binds every listed name that exists, in list order
    - a string binds the column with exactly that name
    - otherwise the string is used as a regex that must match a whole header
    """
    if isinstance(identifier, list):
        present = set(headers)
        bound = [name for name in identifier if name in present]
        missing = [name for name in identifier if name not in present]
        if missing:
            logger.debug("Identifier list entries %s are not in this table", missing)
        return bound

    if identifier in headers:
        return [identifier]

    try:
        pattern = re.compile(identifier)
    except re.error as e:
        raise ConfigError(f"Identifier {identifier!r} is neither a header nor a valid regex: {e}") from e
    return [header for header in headers if pattern.fullmatch(header)]


def resolve_contexts(table, configs: typing.Sequence[SeriesContextConfig]) -> list[ResolvedSeriesContext]:
    """
    Resolve every context of a table, one result per config, in config order.
    Inert contexts are resolved too but bind nothing.
    """
    headers = table.headers
    resolved: list[ResolvedSeriesContext] = []
    for config in configs:
        if config.is_inert:
            resolved.append(ResolvedSeriesContext(config, []))
            continue
        columns = resolve_columns(headers, config.identifier)
        if len(columns) != len(set(columns)):
            raise ConfigError(f"Table {table.name!r}: identifier {config.describe()} binds a column twice")
        if not columns:
            logger.debug("Table %r: context %s matches no column", table.name, config.describe())
        missing = []
        if isinstance(config.identifier, list):
            # each absent name is a binding failure of that column alone
            missing = [name for name in config.identifier if name not in columns]
        resolved.append(ResolvedSeriesContext(config, columns, missing=missing))
    return resolved


@dataclass
class ContextualizedTable:
    """
    A working copy of one table together with its resolved contexts.

    Strategies rewrite the cells in place; `term_labels` keeps the canonical
    labels found while normalising cells, keyed by term ID.
    """

    table: typing.Any
    contexts: list[ResolvedSeriesContext]
    term_labels: dict[str, str] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def data(self):
        return self.table.data

    @property
    def n_rows(self) -> int:
        return len(self.table.data)

    def cells(self, column: str) -> list:
        return list(self.table.data[column])

    def set_cells(self, column: str, values: typing.Sequence) -> None:
        self.table.data[column] = pd.Series(list(values), index=self.table.data.index, dtype=object)

    def cell(self, row: int, column: str) -> typing.Any:
        return self.table.data[column].iloc[row]

    def bound_contexts(self) -> list[ResolvedSeriesContext]:
        return [c for c in self.contexts if c.is_bound]

    def subject_columns(self) -> list[str]:
        columns = []
        for context in self.bound_contexts():
            if context.has_data_kind(ConceptKind.SUBJECT_ID) or context.has_header_kind(ConceptKind.SUBJECT_ID):
                columns.extend(c for c in context.columns if c not in columns)
        return columns

    def subject_id_at(self, row: int) -> typing.Optional[str]:
        columns = self.subject_columns()
        if not columns:
            return None
        value = self.cell(row, columns[0])
        if is_missing(value):
            return None
        return cell_text(value)

    def block_members(self, block_id: str) -> list[ResolvedSeriesContext]:
        return [c for c in self.contexts if c.building_block_id == block_id]
