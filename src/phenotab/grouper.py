"""
Building-block grouping.

Partitions the bound contexts of a table into standalone contexts and building
blocks whose members are collected together, one composite record per column
index.
"""

import logging
import typing

from collections import Counter
from dataclasses import dataclass, field

from .concept import ConceptKind
from .errors import CollectionError, RunReport
from .resolver import ContextualizedTable, ResolvedSeriesContext

logger = logging.getLogger(__name__)


@dataclass
class BuildingBlock:
    """
    Contexts sharing a building block id. Every member is bound to the same
    number of columns, and member `i`-th columns belong together.
    """

    block_id: str
    members: list[ResolvedSeriesContext]

    @property
    def cardinality(self) -> int:
        return len(self.members[0].columns)

    @property
    def anchor(self) -> ResolvedSeriesContext:
        for member in self.members:
            if member.config.primary_concept is not None:
                return member
        raise ValueError(f"building block {self.block_id!r} has no primary member")

    @property
    def partners(self) -> list[ResolvedSeriesContext]:
        anchor = self.anchor
        return [member for member in self.members if member is not anchor]

    def partner(self, kind: ConceptKind, **params) -> typing.Optional[ResolvedSeriesContext]:
        """First partner whose data concept is `kind` (and matches `params`)."""
        for member in self.partners:
            concept = member.data_context
            if concept is None or concept.kind is not kind:
                continue
            if all(getattr(concept, key) == value for key, value in params.items()):
                return member
        return None


@dataclass
class GroupedContexts:
    standalone: list[ResolvedSeriesContext] = field(default_factory=list)
    blocks: dict[str, BuildingBlock] = field(default_factory=dict)


def _is_subject_id(context: ResolvedSeriesContext) -> bool:
    return context.has_data_kind(ConceptKind.SUBJECT_ID) or context.has_header_kind(ConceptKind.SUBJECT_ID)


def group_contexts(
    table: ContextualizedTable,
    report: RunReport,
    seen_cardinalities: typing.Optional[dict[str, int]] = None,
) -> GroupedContexts:
    """
    Split the bound contexts of `table`.

    A context without a block id, or whose block id no other bound context
    shares, is standalone. A block whose members bind different numbers of
    columns, whose primary member is missing from the table, or whose
    cardinality differs from the one the same block had in an earlier table,
    is reported as a `CollectionError` and left out.
    """
    if seen_cardinalities is None:
        seen_cardinalities = {}
    bound = [c for c in table.bound_contexts() if not _is_subject_id(c)]
    counts = Counter(c.building_block_id for c in bound if c.building_block_id is not None)

    grouped = GroupedContexts()
    members: dict[str, list[ResolvedSeriesContext]] = {}
    for context in bound:
        block_id = context.building_block_id
        if block_id is None or counts[block_id] == 1:
            grouped.standalone.append(context)
        else:
            members.setdefault(block_id, []).append(context)

    for block_id, block_members in members.items():
        cardinalities = {len(m.columns) for m in block_members}
        if len(cardinalities) > 1:
            detail = ", ".join(f"{m.config.describe()}={len(m.columns)}" for m in block_members)
            report.record(CollectionError(
                f"building block {block_id!r} members bind different numbers of columns ({detail})",
                table=table.name,
            ))
            continue
        if not any(m.config.primary_concept is not None for m in block_members):
            report.record(CollectionError(
                f"building block {block_id!r} has no primary column in this table",
                table=table.name,
            ))
            continue
        cardinality = cardinalities.pop()
        previous = seen_cardinalities.get(block_id)
        if previous is not None and previous != cardinality:
            report.record(CollectionError(
                f"building block {block_id!r} binds {cardinality} columns per member here "
                f"but {previous} in an earlier table",
                table=table.name,
            ))
            continue
        seen_cardinalities[block_id] = cardinality
        grouped.blocks[block_id] = BuildingBlock(block_id, block_members)

    logger.debug(
        "Table %r: %d standalone contexts, blocks %s",
        table.name, len(grouped.standalone), sorted(grouped.blocks),
    )
    return grouped
