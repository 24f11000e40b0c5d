"""
Phenopacket export.

Turns finalized PatientRecords into GA4GH Phenopacket v2 messages and writes
one JSON document per patient.
"""

import datetime
import logging
import pathlib
import re
import typing

from google.protobuf.json_format import MessageToJson
from google.protobuf.timestamp_pb2 import Timestamp
from phenopackets.schema.v2.phenopackets_pb2 import Phenopacket
import phenopackets.schema.v2 as pps2

from .config import MetaDataConfig
from .errors import ConfigError, FormatError, RunReport
from .ontology import split_curie
from .patient import PatientRecord
from .strategies import parse_date

logger = logging.getLogger(__name__)

PHENOPACKET_SCHEMA_VERSION = "2.0"

_ISO_DURATION = re.compile(r"^P(?!$)(\d+Y)?(\d+M)?(\d+W)?(\d+D)?(T(?=\d)(\d+H)?(\d+M)?(\d+S)?)?$")

# id -> (name, url, namespace prefix, IRI prefix)
KNOWN_RESOURCES = {
    "HP": ("human phenotype ontology", "http://purl.obolibrary.org/obo/hp.owl", "HP",
           "http://purl.obolibrary.org/obo/HP_"),
    "MONDO": ("Mondo Disease Ontology", "http://purl.obolibrary.org/obo/mondo.json", "MONDO",
              "http://purl.obolibrary.org/obo/MONDO_"),
    "OMIM": ("Online Mendelian Inheritance in Man", "https://www.omim.org", "OMIM",
             "https://www.omim.org/entry/"),
    "ORPHA": ("Orphanet Rare Disease Ontology", "https://www.orphadata.com", "ORPHA",
              "http://www.orpha.net/ORDO/Orphanet_"),
    "UO": ("Units of measurement ontology", "http://purl.obolibrary.org/obo/uo.owl", "UO",
           "http://purl.obolibrary.org/obo/UO_"),
    "LOINC": ("Logical Observation Identifiers Names and Codes", "https://loinc.org", "LOINC",
              "https://loinc.org/"),
    "HGNC": ("HUGO Gene Nomenclature Committee", "https://www.genenames.org", "HGNC",
             "https://www.genenames.org/data/gene-symbol-report/#!/hgnc_id/"),
}


def phenopacket_id(cohort_name: str, subject_id: str) -> str:
    return f"{cohort_name}-{subject_id}"


def _ontology_class(term: str, label: typing.Optional[str] = None) -> pps2.OntologyClass:
    # free text without a CURIE is kept as both id and label
    parts = split_curie(term)
    if parts is None:
        return pps2.OntologyClass(id=term, label=label or term)
    return pps2.OntologyClass(id=parts[1], label=label or parts[0] or "")


def _timestamp(date_text: str) -> Timestamp:
    ts = Timestamp()
    day = parse_date(date_text)
    ts.FromDatetime(datetime.datetime(day.year, day.month, day.day))
    return ts


def time_element(text: str) -> pps2.TimeElement:
    """ISO-8601 durations become ages, dates become timestamps."""
    if _ISO_DURATION.match(text):
        return pps2.TimeElement(age=pps2.Age(iso8601duration=text))
    try:
        return pps2.TimeElement(timestamp=_timestamp(text))
    except FormatError as e:
        raise FormatError(f"{text!r} is neither an ISO-8601 duration nor a date") from e


def _resources(resources: typing.Iterable[tuple[str, typing.Optional[str]]]) -> list[pps2.Resource]:
    out = []
    for resource_id, version in resources:
        name, url, namespace, iri = KNOWN_RESOURCES.get(resource_id, (resource_id, "", resource_id, ""))
        out.append(pps2.Resource(
            id=resource_id.lower(),
            name=name,
            url=url,
            version=version or "",
            namespace_prefix=namespace,
            iri_prefix=iri,
        ))
    return out


def build_phenopacket(
    record: PatientRecord,
    meta: MetaDataConfig,
    resources: typing.Iterable[tuple[str, typing.Optional[str]]] = (),
    report: typing.Optional[RunReport] = None,
) -> Phenopacket:
    """
    Build the Phenopacket of one patient. Time values that cannot be read are
    reported and left out; everything else is copied over.
    """
    report = report if report is not None else RunReport()
    packet_id = phenopacket_id(meta.cohort_name, record.subject_id)

    def when(text: typing.Optional[str], field_name: str) -> typing.Optional[pps2.TimeElement]:
        if text is None:
            return None
        try:
            return time_element(text)
        except FormatError as e:
            report.record(e.located(subject_id=record.subject_id, column=field_name))
            return None

    phenopacket = Phenopacket()
    phenopacket.id = packet_id

    # 1) Subject
    subject = phenopacket.subject
    subject.id = record.subject_id
    info = record.subject
    if info.sex is not None:
        subject.sex = pps2.Sex.Value(info.sex)
    if info.date_of_birth is not None:
        subject.date_of_birth.CopyFrom(_timestamp(info.date_of_birth))
    last_encounter = when(info.last_encounter, "last_encounter")
    if last_encounter is not None:
        subject.time_at_last_encounter.CopyFrom(last_encounter)
    if any(v is not None for v in (info.vital_status, info.time_of_death, info.cause_of_death, info.survival_time_days)):
        vital_status = subject.vital_status
        vital_status.status = pps2.VitalStatus.Status.Value(info.vital_status or "UNKNOWN_STATUS")
        time_of_death = when(info.time_of_death, "time_of_death")
        if time_of_death is not None:
            vital_status.time_of_death.CopyFrom(time_of_death)
        if info.cause_of_death is not None:
            vital_status.cause_of_death.CopyFrom(_ontology_class(info.cause_of_death, info.cause_of_death_label))
        if info.survival_time_days is not None:
            vital_status.survival_time_in_days = info.survival_time_days

    # 2) Phenotypic features
    for phenotype in record.phenotypes:
        feature = phenopacket.phenotypic_features.add()
        feature.type.CopyFrom(_ontology_class(phenotype.term_id, phenotype.label))
        if phenotype.excluded:
            feature.excluded = True
        onset = when(phenotype.onset, "onset")
        if onset is not None:
            feature.onset.CopyFrom(onset)

    # 3) Diseases
    for disease_record in record.diseases:
        disease_message = phenopacket.diseases.add()
        disease_message.term.CopyFrom(_ontology_class(disease_record.term_id, disease_record.label))
        if disease_record.excluded:
            disease_message.excluded = True
        onset = when(disease_record.onset, "onset")
        if onset is not None:
            disease_message.onset.CopyFrom(onset)

    # 4) Measurements
    for measurement_record in record.measurements:
        measurement_message = phenopacket.measurements.add()
        measurement_message.assay.CopyFrom(_ontology_class(measurement_record.assay_id))
        if measurement_record.is_quantitative:
            quantity = measurement_message.value.quantity
            quantity.value = measurement_record.value
            if measurement_record.unit_id is not None:
                quantity.unit.CopyFrom(_ontology_class(measurement_record.unit_id))
            if measurement_record.reference_low is not None or measurement_record.reference_high is not None:
                if measurement_record.unit_id is not None:
                    quantity.reference_range.unit.CopyFrom(_ontology_class(measurement_record.unit_id))
                if measurement_record.reference_low is not None:
                    quantity.reference_range.low = measurement_record.reference_low
                if measurement_record.reference_high is not None:
                    quantity.reference_range.high = measurement_record.reference_high
        else:
            measurement_message.value.ontology_class.CopyFrom(
                _ontology_class(measurement_record.value_term, measurement_record.value_label)
            )
        observed = when(measurement_record.time_observed, "time_observed")
        if observed is not None:
            measurement_message.time_observed.CopyFrom(observed)

    # 5) Medical actions
    for action in record.medical_actions:
        action_message = phenopacket.medical_actions.add()
        if action.procedure is not None:
            procedure = action_message.procedure
            procedure.code.CopyFrom(_ontology_class(action.procedure, action.label_of(action.procedure)))
            if action.body_site is not None:
                procedure.body_site.CopyFrom(_ontology_class(action.body_site, action.label_of(action.body_site)))
            performed = when(action.performed, "time_of_procedure")
            if performed is not None:
                procedure.performed.CopyFrom(performed)
        else:
            action_message.treatment.agent.CopyFrom(
                _ontology_class(action.treatment_agent, action.label_of(action.treatment_agent))
            )
        for field_name in ("treatment_target", "treatment_intent", "response_to_treatment"):
            term = getattr(action, field_name)
            if term is not None:
                getattr(action_message, field_name).CopyFrom(_ontology_class(term, action.label_of(term)))
        if action.termination_reason is not None:
            action_message.treatment_termination_reason.CopyFrom(
                _ontology_class(action.termination_reason, action.label_of(action.termination_reason))
            )

    # 6) Interpretations
    for interpretation_index, interpretation_record in enumerate(record.interpretations):
        interpretation = phenopacket.interpretations.add()
        interpretation.id = f"{packet_id}-interpretation-{interpretation_index}"
        interpretation.progress_status = interpretation.ProgressStatus.COMPLETED
        diagnosis = interpretation.diagnosis
        diagnosis.disease.CopyFrom(
            _ontology_class(interpretation_record.disease_id, interpretation_record.disease_label)
        )
        gene = None
        if interpretation_record.gene_symbol is not None:
            parts = split_curie(interpretation_record.gene_symbol, "HGNC")
            gene = pps2.GeneDescriptor(
                value_id=parts[1] if parts else "",
                symbol=(parts[0] or parts[1]) if parts else interpretation_record.gene_symbol,
            )
        if not interpretation_record.hgvs:
            genomic = diagnosis.genomic_interpretations.add()
            genomic.subject_or_biosample_id = record.subject_id
            genomic.interpretation_status = genomic.InterpretationStatus.CONTRIBUTORY
            genomic.gene.CopyFrom(gene)
            continue
        for variant_index, hgvs in enumerate(interpretation_record.hgvs):
            genomic = diagnosis.genomic_interpretations.add()
            genomic.subject_or_biosample_id = record.subject_id
            genomic.interpretation_status = genomic.InterpretationStatus.CONTRIBUTORY
            descriptor = genomic.variant_interpretation.variation_descriptor
            descriptor.id = f"{interpretation.id}-variant-{variant_index}"
            expression = descriptor.expressions.add()
            expression.syntax = "hgvs"
            expression.value = hgvs
            if gene is not None:
                descriptor.gene_context.CopyFrom(gene)

    # 7) Metadata
    meta_data = phenopacket.meta_data
    meta_data.created.GetCurrentTime()
    meta_data.created_by = meta.created_by
    meta_data.submitted_by = meta.submitted_by
    meta_data.phenopacket_schema_version = PHENOPACKET_SCHEMA_VERSION
    meta_data.resources.extend(_resources(resources))

    return phenopacket


class PhenopacketExporter:
    """Writes one `<phenopacket id>.json` per patient into `output_dir`."""

    def __init__(self, output_dir: typing.Union[str, pathlib.Path], create_dir: bool = True):
        self.output_dir = pathlib.Path(output_dir)
        self.create_dir = create_dir

    def prepare(self) -> pathlib.Path:
        if not self.output_dir.is_dir():
            if not self.create_dir:
                raise ConfigError(f"Output directory {self.output_dir} does not exist")
            self.output_dir.mkdir(parents=True, exist_ok=True)
        return self.output_dir

    def write(self, phenopackets: typing.Iterable[Phenopacket]) -> list[pathlib.Path]:
        self.prepare()
        written = []
        for phenopacket in phenopackets:
            file_name = phenopacket.id.replace("/", "_") + ".json"
            output_path = self.output_dir / file_name
            with open(output_path, "w", encoding="utf-8") as out_f:
                out_f.write(MessageToJson(phenopacket))
            written.append(output_path)
        logger.info("Wrote %d phenopackets to %s", len(written), self.output_dir)
        return written
