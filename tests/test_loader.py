"""
Tests for reading tables:
- header row vs. positional headers
- patients-as-columns sheets are transposed
- columns get a single scalar type, empty strings become missing
- subject IDs are always strings
"""

import datetime

import pandas as pd
import pytest

from phenotab.config import SeriesContextConfig, TableConfig
from phenotab.errors import ConfigError
from phenotab.loader import TypedTable, cell_text, is_missing, load_table


def test_from_raw_uses_first_row_as_headers():
    raw = pd.DataFrame([["id", "age"], ["P1", 3], ["P2", " "]], dtype=object)
    table = TypedTable.from_raw("t", raw)
    assert table.headers == ["id", "age"]
    assert list(table.data["id"]) == ["P1", "P2"]
    assert list(table.data["age"]) == [3, None]


def test_from_raw_without_headers():
    raw = pd.DataFrame([["P1", "HP:0001250"]], dtype=object)
    table = TypedTable.from_raw("t", raw, has_headers=False)
    assert table.headers == ["0", "1"]
    assert table.data["1"].iloc[0] == "HP:0001250"


def test_from_raw_patients_as_columns():
    raw = pd.DataFrame([["id", "P1", "P2"], ["sex", "M", "F"]], dtype=object)
    table = TypedTable.from_raw("t", raw, patients_are_rows=False)
    assert table.headers == ["id", "sex"]
    assert list(table.data["sex"]) == ["M", "F"]


def test_from_raw_rejects_duplicate_headers():
    raw = pd.DataFrame([["id", "id"], ["P1", "P2"]], dtype=object)
    with pytest.raises(ConfigError):
        TypedTable.from_raw("t", raw)


def test_mixed_column_falls_back_to_text():
    raw = pd.DataFrame([["value"], [1.0], ["high"], [2.5]], dtype=object)
    table = TypedTable.from_raw("t", raw)
    assert list(table.data["value"]) == ["1", "high", "2.5"]


@pytest.mark.parametrize(
    "value, expected",
    [
        (True, "true"),
        (3.0, "3"),
        (2.5, "2.5"),
        (" x ", "x"),
        (pd.Timestamp("2020-01-02"), "2020-01-02"),
        (datetime.date(2021, 5, 6), "2021-05-06"),
    ],
)
def test_cell_text(value, expected):
    assert cell_text(value) == expected


def test_is_missing():
    assert is_missing(None)
    assert is_missing("  ")
    assert is_missing(float("nan"))
    assert is_missing([])
    assert not is_missing(0)
    assert not is_missing(["HP:0001250"])


def test_load_csv_table(tmp_path):
    source = tmp_path / "cohort.csv"
    source.write_text("Patient,Weight,Seizure\n001,3.5,yes\n002,,no\n", encoding="utf-8")
    config = TableConfig(
        source=source,
        contexts=[SeriesContextConfig("Patient", data_context="subject_id")],
    )
    table = load_table(config)
    assert table.name == "cohort"
    # numeric-looking IDs keep their text form
    assert list(table.data["Patient"]) == ["001", "002"]
    assert list(table.data["Weight"]) == [3.5, None]
    assert list(table.data["Seizure"]) == ["yes", "no"]


def test_load_missing_source(tmp_path):
    config = TableConfig(source=tmp_path / "missing.csv", contexts=[])
    with pytest.raises(ConfigError):
        load_table(config)
