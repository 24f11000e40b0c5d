"""
Medical action domain model.

Defines the MedicalActionRecord dataclass for procedures and treatments.
"""

import typing

from dataclasses import dataclass


@dataclass
class MedicalActionRecord:
    """
    A procedure or a treatment performed on a patient.

    Exactly one of `procedure` and `treatment_agent` is set; the remaining
    attributes are optional ontology terms or free text from partner columns.
    """

    procedure: typing.Optional[str] = None
    treatment_agent: typing.Optional[str] = None
    body_site: typing.Optional[str] = None
    performed: typing.Optional[str] = None
    treatment_target: typing.Optional[str] = None
    treatment_intent: typing.Optional[str] = None
    response_to_treatment: typing.Optional[str] = None
    termination_reason: typing.Optional[str] = None
    labels: typing.Optional[dict] = None

    def __post_init__(self):
        if (self.procedure is None) == (self.treatment_agent is None):
            raise ValueError("a medical action needs either a procedure or a treatment agent")
        if self.labels is None:
            self.labels = {}

    def label_of(self, term: typing.Optional[str]) -> typing.Optional[str]:
        if term is None:
            return None
        return self.labels.get(term)
