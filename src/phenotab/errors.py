"""
Error taxonomy and the per-run issue report.

Configuration problems are raised as `ConfigError` and abort a run before any
table is processed. Data problems (`FormatError`, `ValidationError`,
`CollectionError`) are recorded into a `RunReport` and processing continues,
so a partial cohort can always be produced.
"""

import logging
import typing

from dataclasses import dataclass, field
from stairval.notepad import create_notepad, Notepad

logger = logging.getLogger(__name__)


class PhenotabError(Exception):
    """Base class for every error raised or recorded by the pipeline."""


class ConfigError(PhenotabError):
    """Malformed or ambiguous configuration. Always fatal."""


class DataError(PhenotabError):
    """
    A problem tied to a location in the input data.

    Attributes:
        message: Human readable description.
        table: Name of the table the value came from, if known.
        column: Header of the offending column, if known.
        subject_id: Subject identifier of the offending row, if known.
    """

    def __init__(
        self,
        message: str,
        table: typing.Optional[str] = None,
        column: typing.Optional[str] = None,
        subject_id: typing.Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.table = table
        self.column = column
        self.subject_id = subject_id

    def located(self, **location) -> "DataError":
        # fill in only the parts of the location that are still unknown
        for key in ("table", "column", "subject_id"):
            if getattr(self, key) is None and location.get(key) is not None:
                setattr(self, key, location[key])
        return self

    def __str__(self) -> str:
        where = []
        if self.table is not None:
            where.append(f"table {self.table!r}")
        if self.column is not None:
            where.append(f"column {self.column!r}")
        if self.subject_id is not None:
            where.append(f"subject {self.subject_id!r}")
        if where:
            return f"{', '.join(where)}: {self.message}"
        return self.message


class FormatError(DataError):
    """A value could not be parsed into its target representation."""


class ValidationError(DataError):
    """Alias/ontology lookup miss or a conflicting singular field."""


class CollectionError(DataError):
    """Building-block cardinality mismatch or an unresolvable subject identifier."""


@dataclass
class RunReport:
    """
    Accumulates data-time issues of one pipeline run.

    Every issue is kept as a typed exception in `issues` and mirrored into a
    stairval notepad, one subsection per table, for human readable reporting.
    """

    notepad: Notepad = field(default_factory=lambda: create_notepad("phenopackets"))
    issues: list[DataError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    _sections: dict[str, Notepad] = field(default_factory=dict, init=False, repr=False)

    def section(self, table: typing.Optional[str]) -> Notepad:
        if table is None:
            return self.notepad
        if table not in self._sections:
            self._sections[table] = self.notepad.add_subsection(table)
        return self._sections[table]

    def record(self, error: DataError) -> None:
        self.issues.append(error)
        self.section(error.table).add_error(str(error))
        logger.debug("Recorded %s: %s", type(error).__name__, error)

    def warn(self, message: str, table: typing.Optional[str] = None) -> None:
        self.warnings.append(message)
        self.section(table).add_warning(message)
        logger.debug("Warning: %s", message)

    def of_type(self, kind: type) -> list[DataError]:
        return [issue for issue in self.issues if isinstance(issue, kind)]

    @property
    def has_errors(self) -> bool:
        return bool(self.issues)
