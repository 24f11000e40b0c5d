"""
Patient domain model.

Defines the SubjectInfo and PatientRecord dataclasses that accumulate the
collected data of one subject over a pipeline run.
"""

import typing

from dataclasses import dataclass, field, fields

from .disease import DiseaseRecord
from .interpretation import InterpretationRecord
from .measurement import MeasurementRecord
from .medical_action import MedicalActionRecord
from .phenotype import Phenotype

SEX_VALUES = {"MALE", "FEMALE", "OTHER_SEX", "UNKNOWN_SEX"}
VITAL_STATUS_VALUES = {"ALIVE", "DECEASED", "UNKNOWN_STATUS"}


@dataclass
class SubjectInfo:
    """
    Cardinality-one facts about a subject. `None` means "not yet set".
    """

    sex: typing.Optional[str] = None
    date_of_birth: typing.Optional[str] = None
    vital_status: typing.Optional[str] = None
    time_of_death: typing.Optional[str] = None
    cause_of_death: typing.Optional[str] = None
    cause_of_death_label: typing.Optional[str] = None
    survival_time_days: typing.Optional[int] = None
    last_encounter: typing.Optional[str] = None

    def set_once(self, name: str, value: typing.Any) -> typing.Optional[typing.Any]:
        """
        Set a field unless it already holds a different value.
        Returns the existing value on conflict, None otherwise.
        """
        current = getattr(self, name)
        if current is None:
            setattr(self, name, value)
            return None
        if current == value:
            return None
        return current

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass
class PatientRecord:
    """
    Everything collected for one subject during a run.

    Created the first time the subject identifier is seen, extended by every
    later table, and never removed before the run ends.
    """

    subject_id: str
    subject: SubjectInfo = field(default_factory=SubjectInfo)
    phenotypes: list[Phenotype] = field(default_factory=list)
    diseases: list[DiseaseRecord] = field(default_factory=list)
    measurements: list[MeasurementRecord] = field(default_factory=list)
    medical_actions: list[MedicalActionRecord] = field(default_factory=list)
    interpretations: list[InterpretationRecord] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.subject_id, str) or not self.subject_id.strip():
            raise ValueError(f"Invalid subject ID: {self.subject_id!r}")
