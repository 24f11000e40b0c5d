"""
Phenotype domain model.

Defines the Phenotype record for one HPO annotation of a patient.
"""

import re
import typing

from dataclasses import dataclass

_HPO_ID_PATTERN = re.compile(r"^HP:\d{7}$")


@dataclass
class Phenotype:
    """
    Represents a single HPO annotation of a patient.

    Attributes:
        term_id: HPO term identifier ("HP:0001250"), or the raw text when no
            HPO lookup was available to normalise it.
        label: Term label, if known.
        excluded: True when the feature was explicitly observed to be absent.
        onset: ISO-8601 duration or date string, if given.
    """

    term_id: str
    label: typing.Optional[str] = None
    excluded: bool = False
    onset: typing.Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.term_id, str) or not self.term_id.strip():
            raise ValueError(f"Invalid HPO term: {self.term_id!r}")
        if not isinstance(self.excluded, bool):
            raise ValueError(f"excluded must be a boolean, got {type(self.excluded).__name__}")

    @property
    def is_hpo_id(self) -> bool:
        return bool(_HPO_ID_PATTERN.match(self.term_id))
