"""
Tests for collecting normalised tables into patient records.
"""

import pytest

from phenotab.collector import Collector, observation_excluded
from phenotab.errors import CollectionError, ValidationError
from phenotab.grouper import group_contexts
from phenotab.strategies import AgeToIso8601Strategy, MultiHpoColExpansionStrategy, StrategyEngine

SUBJECT = {"identifier": "Patient", "data_context": "subject_id"}


@pytest.fixture
def collect(contextualize, report):
    """Contextualize, optionally transform, group and collect one table."""

    def run(collector, table, contexts, strategies=()):
        working = contextualize(table, contexts)
        StrategyEngine(list(strategies)).apply(working, report, collector.records)
        collector.collect(working, group_contexts(working, report), report)
        return collector.records

    return run


def test_hpo_with_onset_block(make_table, collect, report):
    table = make_table(
        ["Patient", "HPO", "Onset"],
        [["P1", "HP:0001250", "P1Y"], ["P1", "HP:0000252", None]],
    )
    records = collect(Collector(), table, [
        SUBJECT,
        {"identifier": "HPO", "data_context": "hpo_label_or_id", "building_block_id": "pheno"},
        {"identifier": "Onset", "data_context": {"onset": "age"}, "building_block_id": "pheno"},
    ])

    phenotypes = records["P1"].phenotypes
    assert [(p.term_id, p.onset, p.excluded) for p in phenotypes] == [
        ("HP:0001250", "P1Y", False),
        ("HP:0000252", None, False),
    ]
    assert not report.issues


def test_multi_hpo_broadcasts_single_onset(make_table, collect, report):
    table = make_table(["Patient", "Terms", "Onset"], [["P1", "HP:0001250;HP:0000252", 3]])
    records = collect(
        Collector(),
        table,
        [
            SUBJECT,
            {"identifier": "Terms", "data_context": "multi_hpo_id", "building_block_id": "b"},
            {"identifier": "Onset", "data_context": {"onset": "age"}, "building_block_id": "b"},
        ],
        [MultiHpoColExpansionStrategy(), AgeToIso8601Strategy()],
    )
    assert [(p.term_id, p.onset) for p in records["P1"].phenotypes] == [
        ("HP:0001250", "P3Y"),
        ("HP:0000252", "P3Y"),
    ]


def test_row_without_subject_is_skipped(make_table, collect, report):
    table = make_table(["Patient", "Sex"], [["P1", "MALE"], [None, "FEMALE"]])
    records = collect(Collector(), table, [SUBJECT, {"identifier": "Sex", "data_context": "subject_sex"}])

    assert list(records) == ["P1"]
    (issue,) = report.issues
    assert isinstance(issue, CollectionError)
    assert "row 1" in issue.message


def test_same_table_twice_appends_twice(make_table, collect, report):
    table = make_table(["Patient", "HPO"], [["P1", "HP:0001250"]])
    contexts = [SUBJECT, {"identifier": "HPO", "data_context": "hpo_label_or_id"}]
    collector = Collector()
    collect(collector, table, contexts)
    records = collect(collector, table, contexts)
    assert len(records["P1"].phenotypes) == 2


def test_subject_field_conflict(make_table, collect, report):
    table = make_table(["Patient", "Sex"], [["P1", "MALE"], ["P1", "FEMALE"], ["P1", "male"]])
    records = collect(Collector(), table, [SUBJECT, {"identifier": "Sex", "data_context": "subject_sex"}])

    assert records["P1"].subject.sex == "MALE"
    (issue,) = report.issues
    assert isinstance(issue, ValidationError)
    assert issue.subject_id == "P1"
    assert "conflicting sex" in issue.message


def test_invalid_sex_value(make_table, collect, report):
    table = make_table(["Patient", "Sex"], [["P1", "m"]])
    records = collect(Collector(), table, [SUBJECT, {"identifier": "Sex", "data_context": "subject_sex"}])
    assert records["P1"].subject.sex is None
    assert len(report.of_type(ValidationError)) == 1


def test_hpo_in_header_with_observation_status(make_table, collect, report, registry):
    table = make_table(
        ["Patient", "HP:0001250", "HP:0000252"],
        [["P1", "yes", "no"], ["P2", None, "1"]],
    )
    records = collect(Collector(registry), table, [
        SUBJECT,
        {"identifier": r"HP:\d{7}", "header_context": "hpo_label_or_id", "data_context": "observation_status"},
    ])

    assert [(p.term_id, p.label, p.excluded) for p in records["P1"].phenotypes] == [
        ("HP:0001250", "Seizure", False),
        ("HP:0000252", "Microcephaly", True),
    ]
    assert [(p.term_id, p.excluded) for p in records["P2"].phenotypes] == [("HP:0000252", False)]


def test_disease_with_interpretation(make_table, collect, report, registry):
    table = make_table(
        ["Patient", "Diagnosis", "Gene", "Variant"],
        [["P1", "MONDO:0007739", "HTT", "NM_002111.8:c.52CAG[40]"]],
    )
    records = collect(Collector(registry), table, [
        SUBJECT,
        {"identifier": "Diagnosis", "data_context": "disease_label_or_id", "building_block_id": "dx"},
        {"identifier": "Gene", "data_context": "hgnc_symbol_or_id", "building_block_id": "dx"},
        {"identifier": "Variant", "data_context": "hgvs", "building_block_id": "dx"},
    ])

    (disease,) = records["P1"].diseases
    assert (disease.term_id, disease.label) == ("MONDO:0007739", "Huntington disease")
    (interpretation,) = records["P1"].interpretations
    assert interpretation.gene_symbol == "HTT"
    assert interpretation.hgvs == ["NM_002111.8:c.52CAG[40]"]


def test_quantitative_measurement_with_reference_range(make_table, collect, report):
    table = make_table(
        ["Patient", "Glucose", "Glucose low", "Glucose high"],
        [["P1", 95, 70, 100], ["P2", "n/a", None, None]],
    )
    records = collect(Collector(), table, [
        SUBJECT,
        {
            "identifier": "Glucose",
            "data_context": {"quantitative_measurement": {"assay_id": "LOINC:2345-7", "unit_id": "UCUM:mg/dL"}},
            "building_block_id": "glucose",
        },
        {"identifier": "Glucose low", "data_context": {"reference_range": "lower"}, "building_block_id": "glucose"},
        {"identifier": "Glucose high", "data_context": {"reference_range": "upper"}, "building_block_id": "glucose"},
    ])

    (measurement,) = records["P1"].measurements
    assert measurement.assay_id == "LOINC:2345-7"
    assert measurement.value == 95.0
    assert (measurement.reference_low, measurement.reference_high) == (70.0, 100.0)
    assert records["P2"].measurements == []
    (issue,) = report.issues
    assert issue.subject_id == "P2"


def test_treatment_and_procedure(make_table, collect, report):
    table = make_table(
        ["Patient", "Drug", "Intent", "Procedure", "Site", "When"],
        [["P1", "CHEBI:41879", "NCIT:C62220", "NCIT:C15189", "UBERON:0002107", "P2Y"]],
    )
    records = collect(Collector(), table, [
        SUBJECT,
        {"identifier": "Drug", "data_context": "treatment_agent", "building_block_id": "rx"},
        {"identifier": "Intent", "data_context": "treatment_intent", "building_block_id": "rx"},
        {"identifier": "Procedure", "data_context": "procedure_label_or_id", "building_block_id": "px"},
        {"identifier": "Site", "data_context": "procedure_body_site", "building_block_id": "px"},
        {"identifier": "When", "data_context": {"time_of_procedure": "age"}, "building_block_id": "px"},
    ])

    treatment, procedure = records["P1"].medical_actions
    assert (treatment.treatment_agent, treatment.treatment_intent) == ("CHEBI:41879", "NCIT:C62220")
    assert (procedure.procedure, procedure.body_site, procedure.performed) == (
        "NCIT:C15189", "UBERON:0002107", "P2Y",
    )


def test_partner_without_anchor_value(make_table, collect, report):
    table = make_table(["Patient", "HPO", "Onset"], [["P1", None, "P1Y"]])
    records = collect(Collector(), table, [
        SUBJECT,
        {"identifier": "HPO", "data_context": "hpo_label_or_id", "building_block_id": "pheno"},
        {"identifier": "Onset", "data_context": {"onset": "age"}, "building_block_id": "pheno"},
    ])
    assert records["P1"].phenotypes == []
    (issue,) = report.issues
    assert isinstance(issue, CollectionError)
    assert issue.column == "HPO"


def test_hpo_label_needs_a_lookup(make_table, collect, report):
    table = make_table(["Patient", "HPO"], [["P1", "Seizure"]])
    records = collect(Collector(), table, [SUBJECT, {"identifier": "HPO", "data_context": "hpo_label_or_id"}])
    assert records["P1"].phenotypes == []
    assert len(report.of_type(ValidationError)) == 1


def test_partner_only_context_is_warned(make_table, collect, report):
    table = make_table(["Patient", "Onset"], [["P1", "P1Y"]])
    collect(Collector(), table, [SUBJECT, {"identifier": "Onset", "data_context": {"onset": "age"}}])
    assert len(report.warnings) == 1
    assert not report.issues


@pytest.mark.parametrize("value, expected", [("yes", False), ("Excluded", True), (False, True), ("0", True)])
def test_observation_excluded(value, expected):
    assert observation_excluded(value) is expected


def test_observation_status_rejects_unknown():
    with pytest.raises(ValidationError):
        observation_excluded("maybe")


def test_multi_hpo_pairs_converted_onsets(make_table, collect, report):
    table = make_table(["Patient", "Terms", "Onset"], [["P1", "HP:0001250;HP:0000118", "3;5"]])
    records = collect(
        Collector(),
        table,
        [
            SUBJECT,
            {"identifier": "Terms", "data_context": "multi_hpo_id", "building_block_id": "b"},
            {"identifier": "Onset", "data_context": {"onset": "age"}, "building_block_id": "b"},
        ],
        [MultiHpoColExpansionStrategy(), AgeToIso8601Strategy()],
    )
    assert [(p.term_id, p.onset) for p in records["P1"].phenotypes] == [
        ("HP:0001250", "P3Y"),
        ("HP:0000118", "P5Y"),
    ]
    assert not report.issues


def test_bad_term_in_multi_hpo_cell_drops_only_itself(make_table, collect, report):
    table = make_table(["Patient", "Terms"], [["P1", "HP:0001250;Seizure;HP:0000252"]])
    records = collect(
        Collector(),
        table,
        [SUBJECT, {"identifier": "Terms", "data_context": "multi_hpo_id"}],
        [MultiHpoColExpansionStrategy()],
    )
    assert [p.term_id for p in records["P1"].phenotypes] == ["HP:0001250", "HP:0000252"]
    (issue,) = report.issues
    assert isinstance(issue, ValidationError)
    assert (issue.subject_id, issue.column) == ("P1", "Terms")
    assert "'Seizure'" in issue.message
