"""
Collection of normalised tables into per-patient records.

The collector walks a table row by row, finds the subject of each row and
writes standalone contexts into the subject's singular fields and building
blocks into its list-valued sections. It owns the subject ID to record map
for one pipeline run and never deduplicates: collecting a table twice appends
its list entries twice.
"""

import datetime
import logging
import typing

import pandas as pd

from .concept import Boundary, ConceptKind, PRIMARY_KINDS, SUBJECT_FIELD_KINDS
from .disease import DiseaseRecord
from .errors import CollectionError, DataError, FormatError, RunReport, ValidationError
from .grouper import BuildingBlock, GroupedContexts
from .interpretation import InterpretationRecord
from .loader import cell_text, is_missing
from .measurement import MeasurementRecord
from .medical_action import MedicalActionRecord
from .ontology import OntologyRegistry, split_curie
from .patient import PatientRecord, SEX_VALUES, VITAL_STATUS_VALUES
from .phenotype import Phenotype
from .resolver import ContextualizedTable, ResolvedSeriesContext
from .strategies import Age, DISEASE_RESOURCES, PARTNER_DELIMITERS, parse_date

logger = logging.getLogger(__name__)

_INCLUDED = {"1", "true", "t", "yes", "y", "observed", "present", "+"}
_EXCLUDED = {"0", "false", "f", "no", "n", "excluded", "absent", "not observed", "-"}

_SUBJECT_FIELDS = {
    ConceptKind.SUBJECT_SEX: "sex",
    ConceptKind.DATE_OF_BIRTH: "date_of_birth",
    ConceptKind.VITAL_STATUS: "vital_status",
    ConceptKind.LAST_ENCOUNTER: "last_encounter",
    ConceptKind.TIME_OF_DEATH: "time_of_death",
    ConceptKind.CAUSE_OF_DEATH: "cause_of_death",
    ConceptKind.SURVIVAL_TIME_DAYS: "survival_time_days",
}

_TREATMENT_PARTNERS = {
    ConceptKind.TREATMENT_TARGET: "treatment_target",
    ConceptKind.TREATMENT_INTENT: "treatment_intent",
    ConceptKind.RESPONSE_TO_TREATMENT: "response_to_treatment",
    ConceptKind.TREATMENT_TERMINATION_REASON: "termination_reason",
}


def time_text(value: typing.Any) -> typing.Optional[str]:
    """Text form of a time element: ISO duration for ages, ISO date for dates."""
    if is_missing(value):
        return None
    if isinstance(value, Age):
        return value.iso8601()
    if isinstance(value, (pd.Timestamp, datetime.date)):
        return parse_date(value).isoformat()
    return cell_text(value)


def observation_excluded(value: typing.Any) -> bool:
    """True when an observation status cell says the feature was absent."""
    if isinstance(value, bool):
        return not value
    text = cell_text(value).lower()
    if text in _INCLUDED:
        return False
    if text in _EXCLUDED:
        return True
    raise ValidationError(f"{cell_text(value)!r} is not an observation status")


def _pair(anchor_value: typing.Any, partner_values: dict) -> list[tuple[typing.Any, dict]]:
    """
    Expand a list-valued anchor cell: list partners of equal length are paired
    positionally, single partners are broadcast to every entry.
    """
    if not isinstance(anchor_value, list):
        return [(anchor_value, partner_values)]
    entries = []
    for index, item in enumerate(anchor_value):
        paired = {}
        for key, value in partner_values.items():
            if isinstance(value, list):
                if len(value) != len(anchor_value):
                    raise CollectionError(
                        f"{len(anchor_value)} entries cannot be paired with {len(value)} values of {key!r}"
                    )
                paired[key] = value[index]
            else:
                paired[key] = value
        entries.append((item, paired))
    return entries


class Collector:
    """
    Builds `PatientRecord`s from normalised tables.

    The lookups of `registry` validate HPO and disease terms; without a lookup,
    HPO and disease cells must already hold CURIEs.
    """

    def __init__(self, registry: typing.Optional[OntologyRegistry] = None):
        self.registry = registry if registry is not None else OntologyRegistry()
        self.records: dict[str, PatientRecord] = {}

    def record_for(self, subject_id: str) -> PatientRecord:
        if subject_id not in self.records:
            logger.debug("New subject %r", subject_id)
            self.records[subject_id] = PatientRecord(subject_id)
        return self.records[subject_id]

    def collect(self, table: ContextualizedTable, grouped: GroupedContexts, report: RunReport) -> None:
        singletons = []
        for context in grouped.standalone:
            if context.config.primary_concept is not None:
                singletons.append(BuildingBlock(context.building_block_id or context.config.describe(), [context]))
            elif not self._is_subject_field(context) and not self._is_ignorable(context):
                report.warn(
                    f"Context {context.config.describe()} ({context.data_context}) needs a building block "
                    f"with a primary column and is ignored",
                    table.name,
                )

        blocks = list(grouped.blocks.values()) + singletons
        for row in range(table.n_rows):
            subject_id = table.subject_id_at(row)
            if subject_id is None:
                report.record(CollectionError(
                    f"row {row} has no subject identifier and is skipped",
                    table=table.name,
                ))
                continue
            record = self.record_for(subject_id)
            for context in grouped.standalone:
                if self._is_subject_field(context):
                    self._collect_subject_field(record, context, row, table, report)
            for block in blocks:
                for index in range(block.cardinality):
                    try:
                        self._collect_block(record, block, index, row, table, report)
                    except DataError as e:
                        report.record(e.located(
                            table=table.name,
                            column=block.anchor.columns[index],
                            subject_id=subject_id,
                        ))

    # --- subject fields ---------------------------------------------------

    @staticmethod
    def _is_subject_field(context: ResolvedSeriesContext) -> bool:
        return context.data_context is not None and context.data_context.kind in SUBJECT_FIELD_KINDS

    @staticmethod
    def _is_ignorable(context: ResolvedSeriesContext) -> bool:
        concept = context.data_context or context.header_context
        return concept is None or concept.kind is ConceptKind.NONE

    def _collect_subject_field(self, record, context, row, table, report) -> None:
        kind = context.data_context.kind
        name = _SUBJECT_FIELDS[kind]
        for column in context.columns:
            value = table.cell(row, column)
            if is_missing(value):
                continue
            try:
                value, label = self._subject_value(kind, value, table)
            except DataError as e:
                report.record(e.located(table=table.name, column=column, subject_id=record.subject_id))
                continue
            current = record.subject.set_once(name, value)
            if current is not None:
                report.record(ValidationError(
                    f"conflicting {name}: {value!r} differs from the already collected {current!r}",
                    table=table.name, column=column, subject_id=record.subject_id,
                ))
            elif label is not None and kind is ConceptKind.CAUSE_OF_DEATH:
                record.subject.cause_of_death_label = label

    def _subject_value(self, kind: ConceptKind, value, table) -> tuple[typing.Any, typing.Optional[str]]:
        if kind is ConceptKind.SUBJECT_SEX:
            text = cell_text(value).upper()
            if text not in SEX_VALUES:
                raise ValidationError(f"{cell_text(value)!r} is not a sex ({', '.join(sorted(SEX_VALUES))})")
            return text, None
        if kind is ConceptKind.VITAL_STATUS:
            text = cell_text(value).upper()
            if text not in VITAL_STATUS_VALUES:
                raise ValidationError(
                    f"{cell_text(value)!r} is not a vital status ({', '.join(sorted(VITAL_STATUS_VALUES))})"
                )
            return text, None
        if kind is ConceptKind.DATE_OF_BIRTH:
            return parse_date(value).isoformat(), None
        if kind is ConceptKind.SURVIVAL_TIME_DAYS:
            try:
                days = float(cell_text(value))
            except ValueError:
                days = None
            if days is None or not days.is_integer() or days < 0:
                raise FormatError(f"{cell_text(value)!r} is not a number of days")
            return int(days), None
        if kind is ConceptKind.CAUSE_OF_DEATH:
            return self._term(ConceptKind.DISEASE, value, table)
        return time_text(value), None

    # --- terms ------------------------------------------------------------

    def _resource_for(self, kind: ConceptKind) -> typing.Optional[str]:
        if kind in (ConceptKind.HPO, ConceptKind.MULTI_HPO_ID):
            return "HP" if "HP" in self.registry else None
        if kind is ConceptKind.DISEASE:
            return self.registry.first_of(DISEASE_RESOURCES)
        return None

    def _term(self, kind: ConceptKind, value, table: ContextualizedTable) -> tuple[str, typing.Optional[str]]:
        """Canonical ID and label of an HPO or disease cell."""
        text = cell_text(value)
        if text in table.term_labels:
            return text, table.term_labels[text]
        resource_id = self._resource_for(kind)
        if resource_id is not None:
            term = self.registry.resolve(resource_id, text)
            if term is None:
                raise ValidationError(f"{text!r} is not a known {resource_id} term")
            return term.id, term.label
        prefix = "HP" if kind in (ConceptKind.HPO, ConceptKind.MULTI_HPO_ID) else None
        parts = split_curie(text, prefix)
        if parts is None:
            raise ValidationError(f"{text!r} is not a {prefix or 'disease'} identifier and no lookup can resolve it")
        return parts[1], parts[0] or None

    # --- building blocks --------------------------------------------------

    def _partner_values(self, block: BuildingBlock, index: int, row: int, table) -> dict:
        # keyed by column header, which is unique within a table
        values = {}
        for member in block.partners:
            value = table.cell(row, member.columns[index])
            values[member.columns[index]] = None if is_missing(value) else value
        return values

    def _collect_block(self, record: PatientRecord, block: BuildingBlock, index: int, row: int,
                       table: ContextualizedTable, report: RunReport) -> None:
        anchor = block.anchor
        column = anchor.columns[index]
        value = table.cell(row, column)
        partners = self._partner_values(block, index, row, table)
        primary = anchor.config.primary_concept

        header_hpo = (
            anchor.has_header_kind(ConceptKind.HPO)
            and (anchor.data_context is None or anchor.data_context.kind not in PRIMARY_KINDS)
        )
        if is_missing(value):
            if any(v is not None for v in partners.values()):
                raise CollectionError(f"building block {block.block_id!r} has values but no {primary}")
            return

        def value_of(entry_partners, kind, **params):
            member = block.partner(kind, **params)
            return None if member is None else entry_partners[member.columns[index]]

        if header_hpo:
            term_id, label = self._term(ConceptKind.HPO, column, table)
            record.phenotypes.append(Phenotype(
                term_id, label,
                excluded=observation_excluded(value),
                onset=time_text(value_of(partners, ConceptKind.ONSET)),
            ))
            return

        kind = primary.kind
        for item, entry in _pair(value, partners):
            if is_missing(item):
                continue
            # a bad entry of a multi-valued cell drops only itself
            try:
                self._build(record, block, kind, primary, item, entry, table, value_of)
            except DataError as e:
                report.record(e.located(table=table.name, column=column, subject_id=record.subject_id))
            except (ValueError, TypeError) as e:
                report.record(ValidationError(str(e), table=table.name, column=column,
                                              subject_id=record.subject_id))

    def _build(self, record, block, kind, primary, item, entry, table, value_of) -> None:
        onset = time_text(value_of(entry, ConceptKind.ONSET))

        if kind in (ConceptKind.HPO, ConceptKind.MULTI_HPO_ID):
            status = value_of(entry, ConceptKind.OBSERVATION_STATUS)
            term_id, label = self._term(kind, item, table)
            record.phenotypes.append(Phenotype(
                term_id, label,
                excluded=False if status is None else observation_excluded(status),
                onset=onset,
            ))

        elif kind is ConceptKind.DISEASE:
            term_id, label = self._term(kind, item, table)
            status = value_of(entry, ConceptKind.OBSERVATION_STATUS)
            record.diseases.append(DiseaseRecord(
                term_id, label, onset=onset,
                excluded=False if status is None else observation_excluded(status),
            ))
            gene = value_of(entry, ConceptKind.HGNC_SYMBOL)
            hgvs = value_of(entry, ConceptKind.HGVS)
            if gene is not None or hgvs is not None:
                record.interpretations.append(InterpretationRecord(
                    term_id, label,
                    gene_symbol=None if gene is None else cell_text(gene),
                    hgvs=self._hgvs_list(hgvs),
                ))

        elif kind is ConceptKind.QUANTITATIVE_MEASUREMENT:
            try:
                number = float(item) if not isinstance(item, str) else float(item.strip())
            except ValueError as e:
                raise FormatError(f"{cell_text(item)!r} is not a number") from e
            record.measurements.append(MeasurementRecord(
                primary.assay_id,
                value=number,
                unit_id=primary.unit_id,
                time_observed=onset,
                reference_low=self._bound(value_of(entry, ConceptKind.REFERENCE_RANGE, boundary=Boundary.LOWER)),
                reference_high=self._bound(value_of(entry, ConceptKind.REFERENCE_RANGE, boundary=Boundary.UPPER)),
            ))

        elif kind is ConceptKind.QUALITATIVE_MEASUREMENT:
            text = cell_text(item)
            record.measurements.append(MeasurementRecord(
                primary.assay_id,
                value_term=text,
                value_label=table.term_labels.get(text),
                time_observed=onset,
            ))

        elif kind in (ConceptKind.PROCEDURE, ConceptKind.TREATMENT_AGENT):
            text = cell_text(item)
            fields = {}
            for partner_kind, name in _TREATMENT_PARTNERS.items():
                partner_value = value_of(entry, partner_kind)
                if partner_value is not None:
                    fields[name] = cell_text(partner_value)
            if kind is ConceptKind.PROCEDURE:
                body_site = value_of(entry, ConceptKind.PROCEDURE_BODY_SITE)
                action = MedicalActionRecord(
                    procedure=text,
                    body_site=None if body_site is None else cell_text(body_site),
                    performed=time_text(value_of(entry, ConceptKind.TIME_OF_PROCEDURE)),
                    **fields,
                )
            else:
                action = MedicalActionRecord(treatment_agent=text, **fields)
            action.labels = {
                term: table.term_labels[term]
                for term in (action.procedure, action.treatment_agent, action.body_site, *fields.values())
                if term is not None and term in table.term_labels
            }
            record.medical_actions.append(action)

    @staticmethod
    def _bound(value) -> typing.Optional[float]:
        if value is None:
            return None
        try:
            return float(cell_text(value))
        except ValueError as e:
            raise FormatError(f"{cell_text(value)!r} is not a reference range bound") from e

    @staticmethod
    def _hgvs_list(value) -> list[str]:
        if value is None:
            return []
        if isinstance(value, list):
            return [cell_text(v) for v in value]
        return [p.strip() for p in PARTNER_DELIMITERS.split(cell_text(value)) if p.strip()]

