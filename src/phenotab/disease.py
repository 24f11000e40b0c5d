"""
Disease domain model.

Defines the DiseaseRecord dataclass for capturing disease annotations.
"""

import typing

from dataclasses import dataclass


@dataclass
class DiseaseRecord:
    """
    Represents a disease entry for a patient.

    Attributes:
        term_id: CURIE of the disease term (e.g. 'OMIM:266600').
        label: Human-readable label for the disease.
        onset: ISO-8601 duration or date string, if given.
        excluded: True if the disease was ruled out.
    """

    term_id: str
    label: typing.Optional[str] = None
    onset: typing.Optional[str] = None
    excluded: bool = False

    def __post_init__(self):
        if not isinstance(self.term_id, str) or not self.term_id.strip():
            raise ValueError(f"Invalid disease term: {self.term_id!r}")
