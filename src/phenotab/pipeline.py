"""
The table to phenopacket pipeline.

Tables are processed one at a time, in configuration order, because later
tables merge into records created by earlier ones:

    resolve contexts -> apply strategies -> group building blocks -> collect
"""

import abc
import logging
import typing

from phenopackets.schema.v2.phenopackets_pb2 import Phenopacket

from .collector import Collector
from .config import PipelineConfig, TableConfig
from .errors import ConfigError, RunReport
from .export import build_phenopacket
from .grouper import group_contexts
from .loader import TypedTable
from .ontology import OntologyRegistry
from .patient import PatientRecord
from .resolver import ContextualizedTable, resolve_contexts
from .strategies import StrategyEngine, build_strategies

logger = logging.getLogger(__name__)


class TableMapper(metaclass=abc.ABCMeta):
    @abc.abstractmethod
    def run(
        self, tables: typing.Sequence[TypedTable], report: RunReport
    ) -> dict[str, PatientRecord]:
        # returns the finalized records keyed by subject ID
        raise NotImplementedError


class Pipeline(TableMapper):
    """
    Runs the configured strategies and collection over a sequence of tables.

    Strategies are built, and every table's contexts resolved, before the first
    row is collected, so configuration errors never leave a half-processed run.
    """

    def __init__(self, config: PipelineConfig, registry: typing.Optional[OntologyRegistry] = None):
        self.config = config
        self.registry = registry if registry is not None else OntologyRegistry()
        self.engine = StrategyEngine(build_strategies(config.strategies, self.registry))
        self.collector = Collector(self.registry)
        self._block_cardinalities: dict[str, int] = {}

    @property
    def records(self) -> dict[str, PatientRecord]:
        return self.collector.records

    def _table_config(self, table: TypedTable) -> TableConfig:
        for table_config in self.config.data_sources:
            if table_config.name == table.name:
                return table_config
        raise ConfigError(f"No configuration for table {table.name!r}")

    def contextualize(self, table: TypedTable, table_config: TableConfig) -> ContextualizedTable:
        """Resolve the contexts of a working copy of `table`."""
        contexts = resolve_contexts(table, table_config.contexts)
        working = ContextualizedTable(table.copy(), contexts)
        subject_columns = working.subject_columns()
        if len(subject_columns) > 1:
            raise ConfigError(
                f"Table {table.name!r}: the subject ID is ambiguous, it binds {subject_columns}"
            )
        if not subject_columns:
            logger.warning("Table %r has no subject ID column; its rows cannot be collected", table.name)
        return working

    def process(self, working: ContextualizedTable, report: RunReport) -> None:
        logger.info("Processing table %r (%d rows)", working.name, working.n_rows)
        for context in working.contexts:
            if context.missing:
                report.warn(
                    f"Context {context.config.describe()}: columns {context.missing} are not in the table",
                    working.name,
                )
        # 1) normalise cells
        self.engine.apply(working, report, self.collector.records)
        # 2) group related columns
        grouped = group_contexts(working, report, self._block_cardinalities)
        # 3) merge rows into patient records
        self.collector.collect(working, grouped, report)

    def run(
        self, tables: typing.Sequence[TypedTable], report: typing.Optional[RunReport] = None
    ) -> dict[str, PatientRecord]:
        report = report if report is not None else RunReport()
        prepared = [self.contextualize(table, self._table_config(table)) for table in tables]
        for working in prepared:
            self.process(working, report)
        logger.info(
            "Collected %d patients with %d reported issues", len(self.records), len(report.issues)
        )
        return self.records

    def phenopackets(self, report: typing.Optional[RunReport] = None) -> list[Phenopacket]:
        report = report if report is not None else RunReport()
        return [
            build_phenopacket(record, self.config.meta_data, self.registry.resources(), report)
            for record in self.records.values()
        ]
