import typing

import pandas as pd
import pytest

from phenotab.config import SeriesContextConfig
from phenotab.errors import RunReport
from phenotab.loader import TypedTable
from phenotab.ontology import OntologyRegistry, TermTableLookup
from phenotab.resolver import ContextualizedTable, resolve_contexts

HPO_TERMS = {
    "HP:0001250": "Seizure",
    "HP:0001249": "Intellectual disability",
    "HP:0000252": "Microcephaly",
    "HP:0001263": "Global developmental delay",
}

MONDO_TERMS = {
    "MONDO:0007739": "Huntington disease",
    "MONDO:0010726": "Rett syndrome",
}


@pytest.fixture
def hpo_lookup() -> TermTableLookup:
    """A tiny in-memory HPO, enough to normalise labels and IDs."""
    return TermTableLookup("HP", HPO_TERMS, version="2024-04-26", synonyms={"fits": "HP:0001250"})


@pytest.fixture
def registry(hpo_lookup: TermTableLookup) -> OntologyRegistry:
    return OntologyRegistry([hpo_lookup, TermTableLookup("MONDO", MONDO_TERMS, version="2024-06-04")])


@pytest.fixture
def report() -> RunReport:
    return RunReport()


@pytest.fixture
def make_table() -> typing.Callable[..., TypedTable]:
    """
    Build a `TypedTable` from a header row and data rows, going through the
    same normalisation as the file readers.
    """

    def factory(headers: list, rows: list, name: str = "sheet1") -> TypedTable:
        raw = pd.DataFrame([headers] + [list(row) for row in rows], dtype=object)
        return TypedTable.from_raw(name, raw)

    return factory


@pytest.fixture
def contextualize() -> typing.Callable[..., ContextualizedTable]:
    """Resolve context configs (given as dicts) against a table."""

    def factory(table: TypedTable, contexts: list[dict]) -> ContextualizedTable:
        configs = [SeriesContextConfig(**context) for context in contexts]
        return ContextualizedTable(table.copy(), resolve_contexts(table, configs))

    return factory
