"""
Measurement domain model.

Defines the MeasurementRecord dataclass for quantitative and qualitative
measurements.
"""

import typing

from dataclasses import dataclass


@dataclass
class MeasurementRecord:
    """
    Represents a measurement entry for a patient.

    Exactly one of `value` (quantitative) and `value_term` (qualitative) is set.

    Attributes:
        assay_id: CURIE of the assay (e.g. 'LOINC:2345-7').
        value: Numeric value of a quantitative measurement.
        unit_id: Unit CURIE of a quantitative measurement (e.g. 'UO:0000062').
        value_term: Ontology term of a qualitative measurement.
        value_label: Label of `value_term`, if known.
        time_observed: ISO-8601 duration or date string, if given.
        reference_low: Lower bound of the normal range, if given.
        reference_high: Upper bound of the normal range, if given.
    """

    assay_id: str
    value: typing.Optional[float] = None
    unit_id: typing.Optional[str] = None
    value_term: typing.Optional[str] = None
    value_label: typing.Optional[str] = None
    time_observed: typing.Optional[str] = None
    reference_low: typing.Optional[float] = None
    reference_high: typing.Optional[float] = None

    def __post_init__(self):
        if (self.value is None) == (self.value_term is None):
            raise ValueError("a measurement needs either a numeric value or a value term")
        if self.value is not None:
            self.value = float(self.value)
        if (
            self.reference_low is not None
            and self.reference_high is not None
            and float(self.reference_low) > float(self.reference_high)
        ):
            raise ValueError(
                f"reference range low {self.reference_low} exceeds high {self.reference_high}"
            )

    @property
    def is_quantitative(self) -> bool:
        return self.value is not None
