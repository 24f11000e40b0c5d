"""
Concept domain model.

Defines the closed set of concepts a column header or its cells can represent,
and the parsing of their configuration form (`hpo_label_or_id`,
`{onset: age}`, `{quantitative_measurement: {assay_id: ..., unit_id: ...}}`).
"""

import typing

from dataclasses import dataclass
from enum import Enum

from .errors import ConfigError


class TimeElementType(Enum):
    AGE = "age"
    DATE = "date"


class Boundary(Enum):
    LOWER = "lower"
    UPPER = "upper"


class Family(Enum):
    INDIVIDUAL = "individual"
    PHENOTYPE = "phenotype"
    GENETICS = "genetics"
    MEASUREMENT = "measurement"
    MEDICAL_ACTION = "medical_action"
    NONE = "none"


class ConceptKind(Enum):
    # individual data
    SUBJECT_ID = "subject_id"
    SUBJECT_SEX = "subject_sex"
    DATE_OF_BIRTH = "date_of_birth"
    VITAL_STATUS = "vital_status"
    LAST_ENCOUNTER = "last_encounter"
    TIME_OF_DEATH = "time_of_death"
    CAUSE_OF_DEATH = "cause_of_death"
    SURVIVAL_TIME_DAYS = "survival_time_days"
    # phenotype and disease
    HPO = "hpo_label_or_id"
    MULTI_HPO_ID = "multi_hpo_id"
    OBSERVATION_STATUS = "observation_status"
    ONSET = "onset"
    DISEASE = "disease_label_or_id"
    # genetics
    HGNC_SYMBOL = "hgnc_symbol_or_id"
    HGVS = "hgvs"
    # measurements
    QUANTITATIVE_MEASUREMENT = "quantitative_measurement"
    QUALITATIVE_MEASUREMENT = "qualitative_measurement"
    REFERENCE_RANGE = "reference_range"
    # medical actions
    PROCEDURE = "procedure_label_or_id"
    PROCEDURE_BODY_SITE = "procedure_body_site"
    TIME_OF_PROCEDURE = "time_of_procedure"
    TREATMENT_AGENT = "treatment_agent"
    TREATMENT_TARGET = "treatment_target"
    TREATMENT_INTENT = "treatment_intent"
    RESPONSE_TO_TREATMENT = "response_to_treatment"
    TREATMENT_TERMINATION_REASON = "treatment_termination_reason"

    NONE = "none"

    @classmethod
    def from_label(cls, label: str) -> "ConceptKind":
        key = str(label).strip().lower()
        for kind in cls:
            if kind.value == key:
                return kind
        raise ConfigError(f"Unknown concept {label!r}")


_FAMILIES: dict[ConceptKind, Family] = {
    ConceptKind.SUBJECT_ID: Family.INDIVIDUAL,
    ConceptKind.SUBJECT_SEX: Family.INDIVIDUAL,
    ConceptKind.DATE_OF_BIRTH: Family.INDIVIDUAL,
    ConceptKind.VITAL_STATUS: Family.INDIVIDUAL,
    ConceptKind.LAST_ENCOUNTER: Family.INDIVIDUAL,
    ConceptKind.TIME_OF_DEATH: Family.INDIVIDUAL,
    ConceptKind.CAUSE_OF_DEATH: Family.INDIVIDUAL,
    ConceptKind.SURVIVAL_TIME_DAYS: Family.INDIVIDUAL,
    ConceptKind.HPO: Family.PHENOTYPE,
    ConceptKind.MULTI_HPO_ID: Family.PHENOTYPE,
    ConceptKind.OBSERVATION_STATUS: Family.PHENOTYPE,
    ConceptKind.ONSET: Family.PHENOTYPE,
    ConceptKind.DISEASE: Family.PHENOTYPE,
    ConceptKind.HGNC_SYMBOL: Family.GENETICS,
    ConceptKind.HGVS: Family.GENETICS,
    ConceptKind.QUANTITATIVE_MEASUREMENT: Family.MEASUREMENT,
    ConceptKind.QUALITATIVE_MEASUREMENT: Family.MEASUREMENT,
    ConceptKind.REFERENCE_RANGE: Family.MEASUREMENT,
    ConceptKind.PROCEDURE: Family.MEDICAL_ACTION,
    ConceptKind.PROCEDURE_BODY_SITE: Family.MEDICAL_ACTION,
    ConceptKind.TIME_OF_PROCEDURE: Family.MEDICAL_ACTION,
    ConceptKind.TREATMENT_AGENT: Family.MEDICAL_ACTION,
    ConceptKind.TREATMENT_TARGET: Family.MEDICAL_ACTION,
    ConceptKind.TREATMENT_INTENT: Family.MEDICAL_ACTION,
    ConceptKind.RESPONSE_TO_TREATMENT: Family.MEDICAL_ACTION,
    ConceptKind.TREATMENT_TERMINATION_REASON: Family.MEDICAL_ACTION,
    ConceptKind.NONE: Family.NONE,
}

TIME_ELEMENT_KINDS = frozenset({
    ConceptKind.LAST_ENCOUNTER,
    ConceptKind.TIME_OF_DEATH,
    ConceptKind.ONSET,
    ConceptKind.TIME_OF_PROCEDURE,
})

# Concepts that anchor a building block; every other member decorates it.
PRIMARY_KINDS = frozenset({
    ConceptKind.HPO,
    ConceptKind.MULTI_HPO_ID,
    ConceptKind.DISEASE,
    ConceptKind.QUANTITATIVE_MEASUREMENT,
    ConceptKind.QUALITATIVE_MEASUREMENT,
    ConceptKind.PROCEDURE,
    ConceptKind.TREATMENT_AGENT,
})

# Cardinality-one fields of the subject.
SUBJECT_FIELD_KINDS = frozenset({
    ConceptKind.SUBJECT_SEX,
    ConceptKind.DATE_OF_BIRTH,
    ConceptKind.VITAL_STATUS,
    ConceptKind.LAST_ENCOUNTER,
    ConceptKind.TIME_OF_DEATH,
    ConceptKind.CAUSE_OF_DEATH,
    ConceptKind.SURVIVAL_TIME_DAYS,
})


@dataclass(frozen=True)
class Concept:
    """
    A concept tag together with its parameters.

    Attributes:
        kind: What the header or cells represent.
        time_element: AGE or DATE, only for time-element kinds.
        boundary: LOWER or UPPER, only for `reference_range`.
        assay_id: Assay CURIE, only for measurement kinds.
        unit_id: Unit CURIE, only for `quantitative_measurement`.
    """

    kind: ConceptKind
    time_element: typing.Optional[TimeElementType] = None
    boundary: typing.Optional[Boundary] = None
    assay_id: typing.Optional[str] = None
    unit_id: typing.Optional[str] = None

    def __post_init__(self):
        needs_time = self.kind in TIME_ELEMENT_KINDS
        if needs_time != (self.time_element is not None):
            raise ConfigError(
                f"Concept {self.kind.value!r} "
                + ("requires a time element (age or date)" if needs_time else "takes no time element")
            )

        needs_boundary = self.kind is ConceptKind.REFERENCE_RANGE
        if needs_boundary != (self.boundary is not None):
            raise ConfigError(
                f"Concept {self.kind.value!r} "
                + ("requires a boundary (lower or upper)" if needs_boundary else "takes no boundary")
            )

        is_measurement = self.kind in (
            ConceptKind.QUANTITATIVE_MEASUREMENT,
            ConceptKind.QUALITATIVE_MEASUREMENT,
        )
        if is_measurement and not self.assay_id:
            raise ConfigError(f"Concept {self.kind.value!r} requires an assay_id")
        if not is_measurement and self.assay_id is not None:
            raise ConfigError(f"Concept {self.kind.value!r} takes no assay_id")
        if self.unit_id is not None and self.kind is not ConceptKind.QUANTITATIVE_MEASUREMENT:
            raise ConfigError(f"Concept {self.kind.value!r} takes no unit_id")

    @property
    def family(self) -> Family:
        return _FAMILIES[self.kind]

    @property
    def is_primary(self) -> bool:
        return self.kind in PRIMARY_KINDS

    def with_time_element(self, time_element: TimeElementType) -> "Concept":
        return Concept(self.kind, time_element=time_element)

    @classmethod
    def parse(cls, value: typing.Any) -> "Concept":
        """
        Parse the configuration form of a concept.

        Accepts a plain name (`"subject_sex"`), a one-key mapping with a scalar
        parameter (`{"onset": "age"}`, `{"reference_range": "lower"}`) or a
        one-key mapping with named parameters (`{"quantitative_measurement":
        {"assay_id": ..., "unit_id": ...}}`).
        """
        if isinstance(value, Concept):
            return value
        if isinstance(value, str):
            return cls(ConceptKind.from_label(value))
        if isinstance(value, dict) and len(value) == 1:
            (name, param), = value.items()
            kind = ConceptKind.from_label(name)
            if kind in TIME_ELEMENT_KINDS:
                return cls(kind, time_element=_parse_enum(TimeElementType, param, kind))
            if kind is ConceptKind.REFERENCE_RANGE:
                return cls(kind, boundary=_parse_enum(Boundary, param, kind))
            if kind in (ConceptKind.QUANTITATIVE_MEASUREMENT, ConceptKind.QUALITATIVE_MEASUREMENT):
                if isinstance(param, str):
                    return cls(kind, assay_id=param)
                if not isinstance(param, dict):
                    raise ConfigError(f"Concept {name!r} expects a mapping with assay_id")
                unknown = set(param) - {"assay_id", "unit_id"}
                if unknown:
                    raise ConfigError(f"Concept {name!r} has unknown parameters {sorted(unknown)}")
                return cls(kind, assay_id=param.get("assay_id"), unit_id=param.get("unit_id"))
            raise ConfigError(f"Concept {name!r} takes no parameters")
        raise ConfigError(f"Cannot interpret {value!r} as a concept")

    def __str__(self) -> str:
        if self.time_element is not None:
            return f"{self.kind.value}({self.time_element.value})"
        if self.boundary is not None:
            return f"{self.kind.value}({self.boundary.value})"
        if self.assay_id is not None:
            return f"{self.kind.value}({self.assay_id})"
        return self.kind.value


def _parse_enum(enum_type, raw, kind: ConceptKind):
    key = str(raw).strip().lower()
    for member in enum_type:
        if member.value == key:
            return member
    allowed = ", ".join(m.value for m in enum_type)
    raise ConfigError(f"Concept {kind.value!r}: {raw!r} is not one of {allowed}")
