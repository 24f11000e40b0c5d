"""
Interpretation domain model.

Defines the InterpretationRecord linking a diagnosed disease to the gene and
variants reported for it.
"""

import re
import typing

from dataclasses import dataclass, field

# c./g./p./n./m./r. HGVS descriptions on a reference sequence
_HGVS_PATTERN = re.compile(r"^[A-Za-z0-9_.]+(?:\([A-Za-z0-9-]+\))?:[cgmnpr]\..+$")


@dataclass
class InterpretationRecord:
    """
    Attributes:
        disease_id: CURIE of the diagnosed disease.
        disease_label: Label of the disease, if known.
        gene_symbol: HGNC symbol or CURIE of the contributing gene.
        hgvs: HGVS descriptions of the contributing variants.
    """

    disease_id: str
    disease_label: typing.Optional[str] = None
    gene_symbol: typing.Optional[str] = None
    hgvs: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.gene_symbol is None and not self.hgvs:
            raise ValueError("an interpretation needs a gene or at least one variant")
        for expression in self.hgvs:
            if not _HGVS_PATTERN.match(expression):
                raise ValueError(f"Invalid HGVS expression: {expression!r}")
