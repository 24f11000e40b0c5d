import pytest

from phenotab.interpretation import InterpretationRecord
from phenotab.measurement import MeasurementRecord
from phenotab.medical_action import MedicalActionRecord
from phenotab.patient import PatientRecord, SubjectInfo
from phenotab.phenotype import Phenotype


def test_valid_phenotype_instantiation():
    """A valid Phenotype should be created without error."""
    p = Phenotype("HP:0001250", "Seizure", excluded=False, onset="P3Y")
    assert isinstance(p, Phenotype)
    assert p.is_hpo_id
    assert not Phenotype("Seizure").is_hpo_id


@pytest.mark.parametrize("bad_term", ["", "   ", None])
def test_invalid_phenotype_term_raises(bad_term):
    """An empty term must trigger a ValueError."""
    with pytest.raises(ValueError):
        Phenotype(bad_term)


def test_measurement_needs_exactly_one_value():
    with pytest.raises(ValueError):
        MeasurementRecord("LOINC:2345-7")
    with pytest.raises(ValueError):
        MeasurementRecord("LOINC:2345-7", value=1.0, value_term="NCIT:C25170")
    assert MeasurementRecord("LOINC:2345-7", value_term="NCIT:C25170").is_quantitative is False


def test_measurement_reference_range_order():
    with pytest.raises(ValueError):
        MeasurementRecord("LOINC:2345-7", value=90, reference_low=100, reference_high=70)


@pytest.mark.parametrize("bad_hgvs", ["c.52A>G", "NM_002111.8:x.52A>G", "HTT"])
def test_invalid_hgvs_raises(bad_hgvs):
    with pytest.raises(ValueError):
        InterpretationRecord("MONDO:0007739", hgvs=[bad_hgvs])


def test_interpretation_needs_gene_or_variant():
    with pytest.raises(ValueError):
        InterpretationRecord("MONDO:0007739")


def test_medical_action_is_procedure_or_treatment():
    with pytest.raises(ValueError):
        MedicalActionRecord()
    with pytest.raises(ValueError):
        MedicalActionRecord(procedure="NCIT:C15189", treatment_agent="CHEBI:41879")
    action = MedicalActionRecord(treatment_agent="CHEBI:41879", labels={"CHEBI:41879": "aspirin"})
    assert action.label_of("CHEBI:41879") == "aspirin"
    assert action.label_of(None) is None


def test_subject_set_once():
    subject = SubjectInfo()
    assert subject.is_empty()
    assert subject.set_once("sex", "MALE") is None
    assert subject.set_once("sex", "MALE") is None
    assert subject.set_once("sex", "FEMALE") == "MALE"
    assert subject.sex == "MALE"


def test_patient_record_needs_subject_id():
    with pytest.raises(ValueError):
        PatientRecord(" ")
