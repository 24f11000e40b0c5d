"""
Value-transform strategies.

Each strategy rewrites the cells of the columns it applies to and reports
per-cell failures without aborting. Strategies are picked by name from
`STRATEGY_REGISTRY` and applied by the `StrategyEngine` in declared order,
so a later strategy sees the output of the earlier ones.
"""

import abc
import calendar
import datetime
import logging
import math
import re
import typing

from dataclasses import dataclass

import pandas as pd

from .concept import ConceptKind, TIME_ELEMENT_KINDS, TimeElementType
from .config import AliasMapConfig, OutputDataType, StrategyConfig
from .errors import (
    CollectionError,
    ConfigError,
    DataError,
    FormatError,
    RunReport,
    ValidationError,
)
from .loader import cell_text, is_missing
from .ontology import OntologyRegistry, TermInfo, split_curie
from .resolver import ContextualizedTable, ResolvedSeriesContext

logger = logging.getLogger(__name__)

MAX_AGE_YEARS = 150

# Delimiters between terms of a multi-HPO cell
MULTI_HPO_DELIMITERS = re.compile(r"[;,|\n\t]")
# Partner cells are split more conservatively; free text often contains commas
PARTNER_DELIMITERS = re.compile(r"[;|\n]")

SEX_SYNONYMS = {
    "m": "MALE",
    "male": "MALE",
    "man": "MALE",
    "f": "FEMALE",
    "female": "FEMALE",
    "woman": "FEMALE",
    "diverse": "OTHER_SEX",
    "intersex": "OTHER_SEX",
    "other": "OTHER_SEX",
    "unknown": "UNKNOWN_SEX",
}

VITAL_STATUS_SYNONYMS = {
    "yes": "ALIVE",
    "living": "ALIVE",
    "alive": "ALIVE",
    "no": "DECEASED",
    "dead": "DECEASED",
    "deceased": "DECEASED",
    "unknown": "UNKNOWN_STATUS",
    "no data": "UNKNOWN_STATUS",
}

DISEASE_RESOURCES = ("MONDO", "OMIM", "ORPHA")


@dataclass(frozen=True)
class Age:
    """An elapsed duration, as produced by `date_to_age`."""

    years: int = 0
    months: int = 0
    days: int = 0

    def iso8601(self) -> str:
        text = "P"
        if self.years:
            text += f"{self.years}Y"
        if self.months:
            text += f"{self.months}M"
        if self.days:
            text += f"{self.days}D"
        return text if text != "P" else "P0D"


class Strategy(metaclass=abc.ABCMeta):
    """
    A named cell transform. Subclasses decide which contexts they apply to and
    how each column is rewritten; failures are returned in place of a value.
    """

    name: str = ""

    @abc.abstractmethod
    def applies_to(self, context: ResolvedSeriesContext) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def transform_column(
        self,
        values: list,
        context: ResolvedSeriesContext,
        table: ContextualizedTable,
        records: typing.Mapping,
    ) -> list:
        """Return the new cells; a `DataError` marks a failed cell."""
        raise NotImplementedError

    def after_context(self, context: ResolvedSeriesContext, table: ContextualizedTable) -> None:
        """Hook run once a context's columns are all rewritten."""

    def transform(
        self,
        table: ContextualizedTable,
        report: RunReport,
        records: typing.Optional[typing.Mapping] = None,
    ) -> None:
        records = records if records is not None else {}
        for context in table.bound_contexts():
            if not self.applies_to(context):
                continue
            for column in context.columns:
                out = self.transform_column(table.cells(column), context, table, records)
                cleaned = []
                for row, value in enumerate(out):
                    location = {"table": table.name, "column": column, "subject_id": table.subject_id_at(row)}
                    if isinstance(value, DataError):
                        report.record(value.located(**location))
                        value = None
                    elif isinstance(value, list):
                        # a failed entry keeps its slot so partner lists stay aligned
                        for entry in value:
                            if isinstance(entry, DataError):
                                report.record(entry.located(**location))
                        value = [None if isinstance(entry, DataError) else entry for entry in value]
                        if all(entry is None for entry in value):
                            value = None
                    cleaned.append(value)
                table.set_cells(column, cleaned)
            self.after_context(context, table)


def _map_cell(value: typing.Any, fn: typing.Callable[[typing.Any], typing.Any]) -> typing.Any:
    if isinstance(value, list):
        # expanded multi-value cells are mapped entry by entry
        return [_map_cell(entry, fn) for entry in value]
    if is_missing(value):
        return None
    try:
        return fn(value)
    except DataError as e:
        return e


def _map_each(values: list, fn: typing.Callable[[typing.Any], typing.Any]) -> list:
    # missing cells pass through untouched; errors become cell results
    return [_map_cell(value, fn) for value in values]


# --- alias maps ---------------------------------------------------------------


def coerce(value: typing.Optional[str], data_type: OutputDataType) -> typing.Any:
    """Coerce an alias replacement to the configured scalar type."""
    if value is None:
        return None
    text = str(value).strip()
    try:
        if data_type is OutputDataType.STRING:
            return text
        if data_type is OutputDataType.FLOAT:
            return float(text)
        if data_type is OutputDataType.INTEGER:
            number = float(text)
            if not number.is_integer():
                raise ValueError(f"{text!r} is not integral")
            return int(number)
        lowered = text.lower()
        if lowered in {"1", "true", "t", "yes", "y"}:
            return True
        if lowered in {"0", "false", "f", "no", "n"}:
            return False
        raise ValueError(f"{text!r} is not a boolean")
    except ValueError as e:
        raise FormatError(f"Cannot convert alias value to {data_type.value}: {e}") from e


def apply_alias_map(alias_map: AliasMapConfig, values: typing.Sequence) -> list:
    """
    Replace every cell by its alias.

    Keys match exactly, so `"m"` does not take the alias of `"M"`. A cell
    without an alias is a `ValidationError`; an empty cell takes the null
    entry (key `""`) if one is declared and stays empty otherwise. Entries of
    expanded multi-value cells are replaced one by one.
    """
    mappings = alias_map.mappings

    def alias(value):
        if isinstance(value, list):
            return [alias(entry) for entry in value]
        if is_missing(value):
            key = ""
            if key not in mappings:
                return None
        else:
            key = cell_text(value)
            if key not in mappings:
                return ValidationError(f"{key!r} has no alias mapping")
        try:
            return coerce(mappings[key], alias_map.output_data_type)
        except FormatError as e:
            return e

    return [alias(value) for value in values]


class AliasMapStrategy(Strategy):
    name = "alias_map"

    def applies_to(self, context):
        return context.config.alias_map is not None

    def transform_column(self, values, context, table, records):
        return apply_alias_map(context.config.alias_map, values)


# --- static mappings ----------------------------------------------------------


class MappingStrategy(Strategy):
    """
    Case-insensitive substitution for one concept, keeping the source type.
    Values that already are a mapping target are left as they are.
    """

    name = "mapping"

    def __init__(self, kind: ConceptKind, synonyms: typing.Mapping[str, str]):
        self.kind = kind
        self.synonyms = {str(k).strip().lower(): str(v) for k, v in synonyms.items()}
        for target in set(self.synonyms.values()):
            self.synonyms.setdefault(target.lower(), target)

    @classmethod
    def from_options(cls, options: dict, registry: OntologyRegistry) -> "MappingStrategy":
        try:
            kind = ConceptKind.from_label(options["concept"])
            synonyms = options["synonyms"]
        except KeyError as e:
            raise ConfigError(f"Strategy 'mapping' needs option {e.args[0]!r}") from e
        if not isinstance(synonyms, dict) or not synonyms:
            raise ConfigError("Strategy 'mapping' needs a non-empty synonyms mapping")
        return cls(kind, synonyms)

    def applies_to(self, context):
        return context.has_data_kind(self.kind)

    def transform_column(self, values, context, table, records):
        def lookup(value):
            key = cell_text(value).lower()
            if key not in self.synonyms:
                allowed = ", ".join(sorted(set(self.synonyms.values())))
                raise ValidationError(
                    f"{cell_text(value)!r} cannot be mapped for {self.kind.value} (expected one of {allowed})"
                )
            return self.synonyms[key]

        return _map_each(values, lookup)


# --- dates and ages -----------------------------------------------------------


def parse_date(value: typing.Any) -> datetime.date:
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    text = cell_text(value)
    try:
        return pd.Timestamp(text).date()
    except (ValueError, TypeError) as e:
        raise FormatError(f"{text!r} is not a date") from e


def _add_months(day: datetime.date, months: int) -> datetime.date:
    # clamps to the last day of shorter months
    year, month = divmod(day.month - 1 + months, 12)
    year += day.year
    last_day = calendar.monthrange(year, month + 1)[1]
    return datetime.date(year, month + 1, min(day.day, last_day))


def age_between(birth: datetime.date, event: datetime.date) -> Age:
    """Calendar years, months and days from `birth` to `event`."""
    if event < birth:
        raise FormatError(f"{event.isoformat()} precedes the date of birth {birth.isoformat()}")
    months = (event.year - birth.year) * 12 + event.month - birth.month
    anchor = _add_months(birth, months)
    if anchor > event:
        months -= 1
        anchor = _add_months(birth, months)
    return Age(months // 12, months % 12, (event - anchor).days)


class DateToAgeStrategy(Strategy):
    """
    Turns date-valued time elements into the patient's age at that date.

    The date of birth comes from a date-of-birth column of the same table, or
    from a record collected from an earlier table. Rows lacking either date
    end up empty.
    """

    name = "date_to_age"

    def applies_to(self, context):
        concept = context.data_context
        return (
            concept is not None
            and concept.kind in TIME_ELEMENT_KINDS
            and concept.time_element is TimeElementType.DATE
        )

    def _birth_dates(self, table: ContextualizedTable, records: typing.Mapping) -> list:
        dob_columns = [
            column
            for context in table.bound_contexts()
            if context.has_data_kind(ConceptKind.DATE_OF_BIRTH)
            for column in context.columns
        ]
        births = []
        for row in range(table.n_rows):
            birth = None
            for column in dob_columns:
                value = table.cell(row, column)
                if not is_missing(value):
                    birth = value
                    break
            if birth is None:
                subject_id = table.subject_id_at(row)
                record = records.get(subject_id) if subject_id is not None else None
                if record is not None:
                    birth = record.subject.date_of_birth
            births.append(birth)
        return births

    def transform_column(self, values, context, table, records):
        births = self._birth_dates(table, records)
        out = []
        for value, birth in zip(values, births):
            if is_missing(birth):
                out.append(None)
                continue
            out.append(_map_cell(value, lambda date: age_between(parse_date(birth), parse_date(date))))
        return out

    def after_context(self, context, table):
        context.data_context = context.data_context.with_time_element(TimeElementType.AGE)


_ISO_DURATION = re.compile(
    r"^P(?!$)(?:\d+(?:\.\d+)?Y)?(?:\d+(?:\.\d+)?M)?(?:\d+(?:\.\d+)?W)?(?:\d+(?:\.\d+)?D)?"
    r"(?:T(?=\d)(?:\d+(?:\.\d+)?H)?(?:\d+(?:\.\d+)?M)?(?:\d+(?:\.\d+)?S)?)?$"
)
_AGE_PART = re.compile(
    r"(?P<amount>\d+(?:\.\d+)?)\s*"
    r"(?P<unit>years?|yrs?|y|months?|mos?|m|weeks?|wks?|w|days?|d)\b",
    re.IGNORECASE,
)


def _years_to_age(years: float) -> Age:
    if not math.isfinite(years) or years < 0 or years > MAX_AGE_YEARS:
        raise FormatError(f"age {years:g} is outside 0-{MAX_AGE_YEARS} years")
    whole = int(years)
    months = round((years - whole) * 12)
    if months == 12:
        whole, months = whole + 1, 0
    return Age(whole, months, 0)


def _years_to_iso(years: float) -> str:
    age = _years_to_age(years)
    return age.iso8601() if age != Age() else "P0Y"


def to_iso8601_duration(value: typing.Any) -> str:
    """
    Format an age as an ISO-8601 duration.

    Accepts `Age` values, numbers of years, ISO durations, and text made of
    magnitude and unit pairs such as "3 months" or "2y 3m".
    """
    if isinstance(value, Age):
        return value.iso8601()
    if pd.api.types.is_number(value) and not pd.api.types.is_bool(value):
        return _years_to_iso(float(value))

    text = cell_text(value)
    if _ISO_DURATION.match(text.upper()):
        return text.upper()
    try:
        years = float(text)
    except ValueError:
        years = None
    if years is not None:
        return _years_to_iso(years)

    parts = list(_AGE_PART.finditer(text))
    leftover = re.sub(r"\band\b|[\s,]", "", _AGE_PART.sub("", text), flags=re.IGNORECASE)
    if not parts or leftover:
        raise FormatError(f"{text!r} is not an age (expected a number with a unit, e.g. '3 months')")
    years = months = days = 0
    for part in parts:
        amount = float(part.group("amount"))
        unit = part.group("unit").lower()
        if unit.startswith("y"):
            years += amount
        elif unit.startswith("m"):
            months += amount
        elif unit.startswith("w"):
            days += amount * 7
        else:
            days += amount
    if years + months / 12 + days / 365.25 > MAX_AGE_YEARS:
        raise FormatError(f"{text!r} is outside 0-{MAX_AGE_YEARS} years")
    if any(not float(x).is_integer() for x in (years, months, days)):
        raise FormatError(f"{text!r} mixes fractional amounts with units")
    return Age(int(years), int(months), int(days)).iso8601()


class AgeToIso8601Strategy(Strategy):
    name = "age_to_iso8601"

    def applies_to(self, context):
        concept = context.data_context
        return (
            concept is not None
            and concept.kind in TIME_ELEMENT_KINDS
            and concept.time_element is TimeElementType.AGE
        )

    def transform_column(self, values, context, table, records):
        return _map_each(values, to_iso8601_duration)


# --- multi-valued HPO cells ---------------------------------------------------


def split_terms(value: typing.Any) -> list[str]:
    """Split a multi-HPO cell; entries carrying an HPO ID are reduced to the ID."""
    if isinstance(value, list):
        return value
    terms = []
    for entry in MULTI_HPO_DELIMITERS.split(cell_text(value)):
        entry = entry.strip()
        if not entry:
            continue
        parts = split_curie(entry, "HP")
        terms.append(parts[1] if parts is not None else entry)
    return terms


class MultiHpoColExpansionStrategy(Strategy):
    """
    Expands each multi-HPO cell into a list of terms.

    Partner cells of the same building block that hold several values are
    split too, so the collector can pair them positionally; a partner with a
    single value is broadcast. A partner whose number of values differs from
    the number of terms is a `CollectionError` and that cell pair is dropped.
    """

    name = "multi_hpo_col_expansion"

    def applies_to(self, context):
        return context.has_data_kind(ConceptKind.MULTI_HPO_ID)

    def transform_column(self, values, context, table, records):
        return [None if is_missing(v) else (split_terms(v) or None) for v in values]

    def after_context(self, context, table):
        block_id = context.building_block_id
        if block_id is None:
            return
        partners = [
            member for member in table.block_members(block_id)
            if member is not context and member.is_bound
        ]
        for index, column in enumerate(context.columns):
            terms = table.cells(column)
            for partner in partners:
                if len(partner.columns) != len(context.columns):
                    # left for the grouper to report
                    continue
                partner_column = partner.columns[index]
                partner_cells = table.cells(partner_column)
                for row, cell in enumerate(partner_cells):
                    if isinstance(cell, str) and PARTNER_DELIMITERS.search(cell):
                        pieces = [p.strip() for p in PARTNER_DELIMITERS.split(cell) if p.strip()]
                        partner_cells[row] = pieces if len(pieces) > 1 else (pieces[0] if pieces else None)
                for row, (term_list, cell) in enumerate(zip(terms, partner_cells)):
                    if isinstance(cell, list) and isinstance(term_list, list) and len(cell) != len(term_list):
                        self.mismatches.append(CollectionError(
                            f"building block {block_id!r}: {len(term_list)} terms but "
                            f"{len(cell)} values in {partner_column!r}",
                            table=table.name, column=column, subject_id=table.subject_id_at(row),
                        ))
                        terms[row] = None
                        partner_cells[row] = None
                table.set_cells(partner_column, partner_cells)
            table.set_cells(column, terms)

    def transform(self, table, report, records=None):
        self.mismatches: list[CollectionError] = []
        super().transform(table, report, records)
        for error in self.mismatches:
            report.record(error)


# --- ontology normalisation ---------------------------------------------------


class OntologyNormaliserStrategy(Strategy):
    """
    Replaces labels and IDs by the canonical ID of the resource and keeps the
    canonical label in `table.term_labels`. A lookup miss is a `ValidationError`.
    """

    name = "ontology_normaliser"

    def __init__(self, registry: OntologyRegistry, resources: typing.Mapping[ConceptKind, str]):
        self.registry = registry
        self.resources = dict(resources)

    @classmethod
    def from_options(cls, options: dict, registry: OntologyRegistry) -> "OntologyNormaliserStrategy":
        resource = options.get("resource")
        concept = options.get("concept")
        if resource is not None and resource.upper() not in registry:
            raise ConfigError(f"Strategy {cls.name!r} refers to undeclared resource {resource!r}")

        if concept is not None:
            kinds = [ConceptKind.from_label(concept)]
            if kinds[0] is ConceptKind.HPO:
                kinds.append(ConceptKind.MULTI_HPO_ID)
        else:
            kinds = [ConceptKind.HPO, ConceptKind.MULTI_HPO_ID, ConceptKind.DISEASE, ConceptKind.CAUSE_OF_DEATH]

        resources = {}
        for kind in kinds:
            target = resource.upper() if resource is not None else cls.default_resource(kind, registry)
            if target is None:
                logger.warning("No resource declared to normalise %s columns, leaving them as they are", kind.value)
                continue
            resources[kind] = target
        return cls(registry, resources)

    @staticmethod
    def default_resource(kind: ConceptKind, registry: OntologyRegistry) -> typing.Optional[str]:
        if kind in (ConceptKind.HPO, ConceptKind.MULTI_HPO_ID):
            return "HP" if "HP" in registry else None
        if kind in (ConceptKind.DISEASE, ConceptKind.CAUSE_OF_DEATH):
            return registry.first_of(DISEASE_RESOURCES)
        return None

    def applies_to(self, context):
        return context.data_context is not None and context.data_context.kind in self.resources

    def replacement(self, term: TermInfo, table: ContextualizedTable) -> str:
        table.term_labels[term.id] = term.label
        return term.id

    def transform_column(self, values, context, table, records):
        resource_id = self.resources[context.data_context.kind]

        def normalise(raw) -> str:
            term = self.registry.resolve(resource_id, cell_text(raw))
            if term is None:
                raise ValidationError(f"{cell_text(raw)!r} is not a known {resource_id} term")
            return self.replacement(term, table)

        # one unknown term of a multi-HPO cell drops only itself
        return _map_each(values, normalise)


class SynonymsToPrimaryTermsStrategy(OntologyNormaliserStrategy):
    """
    Replaces synonyms, alternate IDs and IDs by the primary label of the term,
    e.g. "Epileptic seizure" by "Seizure". A lookup miss is a `ValidationError`.
    """

    name = "synonyms_to_primary_terms"

    def replacement(self, term, table):
        return term.label


# --- string corrections -------------------------------------------------------


class StringCorrectionStrategy(Strategy):
    """Replaces every occurrence of `chars_to_replace` in the text cells of one concept."""

    name = "string_correction"

    def __init__(self, kind: ConceptKind, chars_to_replace: str, new_chars: str):
        if not chars_to_replace:
            raise ConfigError(f"Strategy {self.name!r} needs a non-empty chars_to_replace")
        self.kind = kind
        self.chars_to_replace = chars_to_replace
        self.new_chars = new_chars

    @classmethod
    def from_options(cls, options: dict, registry: OntologyRegistry) -> "StringCorrectionStrategy":
        try:
            kind = ConceptKind.from_label(options["concept"])
            chars_to_replace = str(options["chars_to_replace"])
        except KeyError as e:
            raise ConfigError(f"Strategy 'string_correction' needs option {e.args[0]!r}") from e
        return cls(kind, chars_to_replace, str(options.get("new_chars") or ""))

    def applies_to(self, context):
        return context.header_context is None and context.has_data_kind(self.kind)

    def transform_column(self, values, context, table, records):
        def correct(value):
            if not isinstance(value, str):
                return value
            return value.replace(self.chars_to_replace, self.new_chars)

        return _map_each(values, correct)


# --- registry and engine ------------------------------------------------------


def _preset(kind: ConceptKind, synonyms: dict):
    def factory(options: dict, registry: OntologyRegistry) -> MappingStrategy:
        return MappingStrategy(kind, {**synonyms, **(options.get("synonyms") or {})})
    return factory


STRATEGY_REGISTRY: dict[str, typing.Callable[[dict, OntologyRegistry], Strategy]] = {
    "alias_map": lambda options, registry: AliasMapStrategy(),
    "mapping": MappingStrategy.from_options,
    "sex_mapping": _preset(ConceptKind.SUBJECT_SEX, SEX_SYNONYMS),
    "vital_status_mapping": _preset(ConceptKind.VITAL_STATUS, VITAL_STATUS_SYNONYMS),
    "date_to_age": lambda options, registry: DateToAgeStrategy(),
    "age_to_iso8601": lambda options, registry: AgeToIso8601Strategy(),
    "multi_hpo_col_expansion": lambda options, registry: MultiHpoColExpansionStrategy(),
    "ontology_normaliser": OntologyNormaliserStrategy.from_options,
    "synonyms_to_primary_terms": SynonymsToPrimaryTermsStrategy.from_options,
    "string_correction": StringCorrectionStrategy.from_options,
    # NM_001173464.1*c.2860C>T -> NM_001173464.1:c.2860C>T
    "hgvs_correction": lambda options, registry: StringCorrectionStrategy(ConceptKind.HGVS, "*", ":"),
}


def build_strategies(
    configs: typing.Iterable[StrategyConfig], registry: OntologyRegistry
) -> list[Strategy]:
    strategies = []
    for config in configs:
        if config.name not in STRATEGY_REGISTRY:
            known = ", ".join(sorted(STRATEGY_REGISTRY))
            raise ConfigError(f"Unknown transform strategy {config.name!r} (known: {known})")
        strategies.append(STRATEGY_REGISTRY[config.name](config.options, registry))
    return strategies


def fill_missing(table: ContextualizedTable) -> None:
    """Write each context's `fill_missing` value into its empty cells."""
    for context in table.bound_contexts():
        fill = context.config.fill_missing
        if fill is None:
            continue
        for column in context.columns:
            table.set_cells(column, [fill if is_missing(v) else v for v in table.cells(column)])


class StrategyEngine:
    """Applies the configured strategies, in order, to one table at a time."""

    def __init__(self, strategies: typing.Sequence[Strategy]):
        self.strategies = list(strategies)

    def apply(
        self,
        table: ContextualizedTable,
        report: RunReport,
        records: typing.Optional[typing.Mapping] = None,
    ) -> None:
        fill_missing(table)
        for strategy in self.strategies:
            logger.debug("Table %r: applying %s", table.name, strategy.name)
            strategy.transform(table, report, records)
