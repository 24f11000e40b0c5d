"""
Tests for binding configured identifiers to table headers.
"""

import pandas as pd
import pytest

from phenotab.config import SeriesContextConfig
from phenotab.errors import ConfigError
from phenotab.loader import TypedTable
from phenotab.resolver import ContextualizedTable, resolve_columns, resolve_contexts

HEADERS = ["Patient", "Onset 1", "Onset 2", "Onset.*", "Sex"]


def test_exact_match_wins_over_regex():
    # "Onset.*" is a header of its own, so it is not treated as a regex
    assert resolve_columns(HEADERS, "Onset.*") == ["Onset.*"]
    assert resolve_columns(HEADERS, "Sex") == ["Sex"]


def test_regex_must_match_whole_header():
    assert resolve_columns(HEADERS, r"Onset \d") == ["Onset 1", "Onset 2"]
    assert resolve_columns(HEADERS, "Onset") == []
    assert resolve_columns(HEADERS, "ex") == []


def test_list_binds_present_names_in_list_order():
    assert resolve_columns(HEADERS, ["Sex", "Missing", "Patient"]) == ["Sex", "Patient"]


def test_malformed_regex_is_config_error():
    with pytest.raises(ConfigError):
        resolve_columns(HEADERS, "Onset (")


def test_positional_headers():
    raw = pd.DataFrame([["P1", "HP:0001250"], ["P2", "HP:0001249"]], dtype=object)
    table = TypedTable.from_raw("t", raw, has_headers=False)
    assert table.headers == ["0", "1"]
    (resolved,) = resolve_contexts(table, [SeriesContextConfig("1", data_context="hpo_label_or_id")])
    assert resolved.columns == ["1"]


def test_resolve_contexts_keeps_inert_and_unbound(make_table):
    table = make_table(["Patient", "Comment"], [["P1", "note"]])
    configs = [
        SeriesContextConfig("Patient", data_context="subject_id"),
        SeriesContextConfig("Comment"),
        SeriesContextConfig("Weight.*", data_context={"quantitative_measurement": "LOINC:29463-7"}),
    ]
    patient, comment, weight = resolve_contexts(table, configs)
    assert patient.columns == ["Patient"]
    assert comment.columns == [] and not comment.is_bound
    assert weight.columns == []

    contextualized = ContextualizedTable(table, [patient, comment, weight])
    assert contextualized.bound_contexts() == [patient]
    assert contextualized.subject_columns() == ["Patient"]
    assert contextualized.subject_id_at(0) == "P1"


def test_missing_subject_id_cell(make_table):
    table = make_table(["Patient"], [["P1"], [None]])
    (patient,) = resolve_contexts(table, [SeriesContextConfig("Patient", data_context="subject_id")])
    contextualized = ContextualizedTable(table, [patient])
    assert contextualized.subject_id_at(1) is None


def test_list_identifier_keeps_missing_names(make_table):
    table = make_table(["Patient", "Onset 1"], [["P1", "P1Y"]])
    patient, onsets = resolve_contexts(table, [
        SeriesContextConfig("Patient", data_context="subject_id"),
        SeriesContextConfig(["Onset 1", "Onset 2"], data_context={"onset": "age"}),
    ])
    assert onsets.columns == ["Onset 1"]
    assert onsets.missing == ["Onset 2"]
    assert patient.missing == []
