"""
Input tables.

Reads CSV and Excel sources into `TypedTable`s: patients as rows, string
headers, trimmed strings, and one scalar type per column.
"""

import datetime
import logging
import pathlib
import typing

from dataclasses import dataclass

import pandas as pd

from .concept import ConceptKind
from .config import TableConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

EXCEL_SUFFIXES = (".xlsx", ".xlsm", ".xls")


@dataclass
class TypedTable:
    """
    A rectangular table in patients-as-rows orientation.

    Attributes:
        name: Name used in reports (sheet name or file stem).
        data: Cells, one column per series. Missing cells hold `pd.NA`/`None`.
    """

    name: str
    data: pd.DataFrame

    @property
    def headers(self) -> list[str]:
        return [str(c) for c in self.data.columns]

    def copy(self) -> "TypedTable":
        return TypedTable(self.name, self.data.copy())

    @classmethod
    def from_raw(
        cls,
        name: str,
        raw: pd.DataFrame,
        has_headers: bool = True,
        patients_are_rows: bool = True,
    ) -> "TypedTable":
        """
        Build a table from an unlabeled grid of cells (read with `header=None`).

        When patients are columns the grid is transposed first, so the first
        column of the sheet becomes the header row.
        """
        grid = raw if patients_are_rows else raw.T
        grid = grid.reset_index(drop=True)
        grid.columns = range(grid.shape[1])

        if has_headers and len(grid) > 0:
            headers = [_header_text(value, index) for index, value in enumerate(grid.iloc[0])]
            body = grid.iloc[1:].reset_index(drop=True)
        else:
            headers = [str(index) for index in range(grid.shape[1])]
            body = grid

        columns = {header: normalize_column(body[index]) for index, header in enumerate(headers)}
        if len(columns) != len(headers):
            raise ConfigError(f"Table {name!r} has duplicate headers")
        return cls(name, pd.DataFrame(columns, index=range(len(body))))


def _header_text(value: typing.Any, index: int) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return str(index)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def is_missing(value: typing.Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple)):
        return not value
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def normalize_column(series: pd.Series) -> pd.Series:
    """
    Give a column a single scalar type:
      - strings are trimmed, empty strings become missing
      - all-boolean columns stay boolean
      - all-numeric columns become integer (when integral) or float
      - date/datetime columns stay as they are
      - everything else falls back to strings
    """
    values = [None if is_missing(v) else (v.strip() if isinstance(v, str) else v) for v in series]
    present = [v for v in values if v is not None]
    if not present:
        return pd.Series([None] * len(values), dtype=object)

    if all(pd.api.types.is_bool(v) for v in present):
        return pd.Series([None if v is None else bool(v) for v in values], dtype=object)

    if all(pd.api.types.is_number(v) and not pd.api.types.is_bool(v) for v in present):
        if all(float(v).is_integer() for v in present):
            return pd.Series([None if v is None else int(v) for v in values], dtype=object)
        return pd.Series([None if v is None else float(v) for v in values], dtype=object)

    if all(isinstance(v, (datetime.date, pd.Timestamp)) for v in present):
        return pd.Series(values, dtype=object)

    return pd.Series([None if v is None else cell_text(v) for v in values], dtype=object)


def cell_text(value: typing.Any) -> str:
    """String form of a cell, without the `.0` pandas adds to integral floats."""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, pd.Timestamp):
        return value.date().isoformat() if value == value.normalize() else value.isoformat()
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, datetime.date):
        return value.isoformat()
    return str(value).strip()


def subject_id_columns(table: TypedTable, table_config: TableConfig) -> list[str]:
    from .resolver import resolve_contexts

    return [
        column
        for resolved in resolve_contexts(table, table_config.contexts)
        if resolved.has_data_kind(ConceptKind.SUBJECT_ID)
        for column in resolved.columns
    ]


def cast_subject_ids(table: TypedTable, columns: typing.Iterable[str]) -> None:
    """Subject identifiers are always strings, whatever the reader inferred."""
    for column in columns:
        table.data[column] = pd.Series(
            [None if is_missing(v) else cell_text(v) for v in table.data[column]],
            index=table.data.index,
            dtype=object,
        )


def read_raw_grid(table_config: TableConfig) -> pd.DataFrame:
    """Read a CSV/TSV file or an Excel sheet as an unlabeled grid."""
    source = pathlib.Path(table_config.source)
    if not source.is_file():
        raise ConfigError(f"Data source not found: {source}")
    suffix = source.suffix.lower()
    if suffix in EXCEL_SUFFIXES:
        excel = pd.ExcelFile(source, engine="openpyxl")
        sheet = table_config.sheet_name if table_config.sheet_name is not None else excel.sheet_names[0]
        if sheet not in excel.sheet_names:
            raise ConfigError(f"Sheet {sheet!r} not found in {source}")
        return pd.read_excel(excel, sheet_name=sheet, header=None, engine="openpyxl")
    separator = table_config.separator or ("\t" if suffix in (".tsv", ".tab") else ",")
    return pd.read_csv(source, sep=separator, header=None, dtype=object, keep_default_na=False)


def load_table(table_config: TableConfig) -> TypedTable:
    logger.info("Reading table %r from %s", table_config.name, table_config.source)
    raw = read_raw_grid(table_config)
    table = TypedTable.from_raw(
        table_config.name,
        raw,
        has_headers=table_config.has_headers,
        patients_are_rows=table_config.patients_are_rows,
    )
    subject_columns = subject_id_columns(table, table_config)
    if pathlib.Path(table_config.source).suffix.lower() not in EXCEL_SUFFIXES:
        # "007" must stay "007", so subject IDs are not inferred
        table = TypedTable(table.name, pd.DataFrame({
            column: series if column in subject_columns else infer_text_column(series)
            for column, series in table.data.items()
        }, index=table.data.index))
    cast_subject_ids(table, subject_columns)
    logger.debug("Table %r: %d rows, columns %s", table.name, len(table.data), table.headers)
    return table


def infer_text_column(series: pd.Series) -> pd.Series:
    """CSV cells arrive as text; give numeric and boolean columns their type back."""
    present = [v for v in series if v is not None]
    if not present or not all(isinstance(v, str) for v in present):
        return series
    lowered = {v.lower() for v in present}
    if lowered <= {"true", "false"}:
        return pd.Series([None if v is None else v.lower() == "true" for v in series], dtype=object)
    numbers = pd.to_numeric(pd.Series(present), errors="coerce")
    if numbers.isna().any():
        return series
    return normalize_column(pd.Series([
        None if v is None else float(v) for v in series
    ], dtype=object))


def load_tables(table_configs: typing.Iterable[TableConfig]) -> list[TypedTable]:
    return [load_table(table_config) for table_config in table_configs]
