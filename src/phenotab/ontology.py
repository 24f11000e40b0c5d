"""
Ontology and vocabulary lookups.

A lookup resolves raw cell text (an ID, a label, or `label (ID)`) to a canonical
term. Lookups are collected in an `OntologyRegistry` that lives for one run and
is passed explicitly to the strategies and the collector.
"""

import abc
import logging
import pathlib
import re
import typing

from dataclasses import dataclass

import hpotk
import pandas as pd
import requests
from requests.auth import HTTPBasicAuth

from .config import ResourceConfig
from .errors import ConfigError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_HPO_PATH = pathlib.Path("data") / "hp.json"
LOINC_FHIR_BASE = "https://fhir.loinc.org"
LOINC_SYSTEM = "http://loinc.org"

# "Seizure (HP:0001250)", "HP:0001250", "HP_0001250", "Seizure HP:0001250"
_CURIE_PATTERN = re.compile(
    r"""
    ^\s*
    (?P<label>.*?)                  # optional label
    \s*\(?\s*
    (?P<prefix>[A-Za-z][A-Za-z0-9.]*)[:_](?P<local>[A-Za-z0-9.\-]+)
    \s*\)?\s*$
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class TermInfo:
    id: str
    label: str


def split_curie(text: str, prefix: typing.Optional[str] = None) -> typing.Optional[tuple[str, str]]:
    """
    Split `label (PREFIX:local)` into `(label, "PREFIX:local")`.
    Returns None when the text carries no CURIE (or a CURIE of another prefix).
    """
    if prefix is None and ":" not in text:
        return None
    m = _CURIE_PATTERN.match(text)
    if not m:
        return None
    curie_prefix = m.group("prefix").upper()
    if prefix is not None and curie_prefix != prefix.upper():
        return None
    local = m.group("local")
    if curie_prefix == "HP" and local.isdigit():
        local = local.zfill(7)
    return m.group("label").strip(), f"{curie_prefix}:{local}"


class OntologyLookup(metaclass=abc.ABCMeta):
    """Read-only label/ID resolution against one resource."""

    def __init__(self, resource_id: str, version: typing.Optional[str] = None):
        self.resource_id = resource_id.upper()
        self.version = version

    @abc.abstractmethod
    def resolve(self, raw_text: str) -> typing.Optional[TermInfo]:
        """Resolve an ID or a label. Returns None when nothing matches."""
        raise NotImplementedError

    def contains(self, term_id: str) -> bool:
        term = self.resolve(term_id)
        return term is not None and term.id.upper() == str(term_id).strip().upper()


class ObographsLookup(OntologyLookup):
    """
    Lookup backed by an `hpotk` ontology loaded from OBO Graphs JSON.

    Obsolete and alternate IDs resolve to the primary term. Labels and, for a
    full `hpotk.Ontology`, synonyms match case-insensitively; a primary label
    wins over a synonym of another term.
    """

    def __init__(self, ontology: hpotk.MinimalOntology, resource_id: str = "HP",
                 version: typing.Optional[str] = None):
        super().__init__(resource_id, version or ontology.version)
        self._ontology = ontology
        self._by_id: dict[str, hpotk.MinimalTerm] = {}
        self._by_label: dict[str, hpotk.MinimalTerm] = {}
        self._by_synonym: dict[str, hpotk.MinimalTerm] = {}
        for term in ontology.terms:
            if term.is_obsolete:
                continue
            self._by_id[term.identifier.value.upper()] = term
            for alt in term.alt_term_ids:
                self._by_id.setdefault(alt.value.upper(), term)
            self._by_label.setdefault(term.name.strip().lower(), term)
            # minimal terms carry no synonyms
            for synonym in getattr(term, "synonyms", None) or ():
                self._by_synonym.setdefault(synonym.name.strip().lower(), term)

    @classmethod
    def from_path(cls, path: typing.Union[str, pathlib.Path], resource_id: str = "HP",
                  version: typing.Optional[str] = None) -> "ObographsLookup":
        logger.info("Loading %s ontology from %s", resource_id, path)
        ontology = hpotk.load_ontology(str(path), prefixes_of_interest={resource_id.upper()})
        return cls(ontology, resource_id, version)

    def resolve(self, raw_text: str) -> typing.Optional[TermInfo]:
        text = str(raw_text).strip()
        if not text:
            return None
        parts = split_curie(text, self.resource_id)
        if parts is not None:
            term = self._by_id.get(parts[1].upper())
            if term is None:
                # the ontology may still know it under an identifier we did not index
                try:
                    term = self._ontology.get_term(hpotk.TermId.from_curie(parts[1]))
                except ValueError:
                    term = None
        else:
            term = self._by_label.get(text.lower()) or self._by_synonym.get(text.lower())
        if term is None:
            return None
        return TermInfo(term.identifier.value, term.name)


class TermTableLookup(OntologyLookup):
    """
    In-memory lookup over an ID to label table, with optional synonyms.
    """

    def __init__(self, resource_id: str, terms: typing.Mapping[str, str],
                 version: typing.Optional[str] = None,
                 synonyms: typing.Optional[typing.Mapping[str, str]] = None):
        super().__init__(resource_id, version)
        self._labels = {term_id.strip().upper(): (term_id.strip(), label) for term_id, label in terms.items()}
        self._by_label = {label.strip().lower(): term_id.strip() for term_id, label in terms.items()}
        for synonym, term_id in (synonyms or {}).items():
            self._by_label.setdefault(synonym.strip().lower(), term_id.strip())

    @classmethod
    def from_file(cls, path: typing.Union[str, pathlib.Path], resource_id: str,
                  version: typing.Optional[str] = None) -> "TermTableLookup":
        """
        Read a CSV/TSV: first column the ID, second the label, and an optional
        third column of `|`-separated synonyms.
        """
        path = pathlib.Path(path)
        separator = "\t" if path.suffix.lower() in (".tsv", ".tab") else ","
        df = pd.read_csv(path, sep=separator, dtype=str, keep_default_na=False)
        if df.shape[1] < 2:
            raise ConfigError(f"Term table {path} needs an ID and a label column")
        terms = dict(zip(df.iloc[:, 0], df.iloc[:, 1]))
        synonyms = {}
        if df.shape[1] > 2:
            for term_id, cell in zip(df.iloc[:, 0], df.iloc[:, 2]):
                for synonym in cell.split("|"):
                    if synonym.strip():
                        synonyms[synonym] = term_id
        return cls(resource_id, terms, version, synonyms)

    def resolve(self, raw_text: str) -> typing.Optional[TermInfo]:
        text = str(raw_text).strip()
        if not text:
            return None
        found = self._labels.get(text.upper())
        if found is None:
            parts = split_curie(text, self.resource_id)
            if parts is not None:
                found = self._labels.get(parts[1].upper())
        if found is None and text.lower() in self._by_label:
            found = self._labels.get(self._by_label[text.lower()].upper())
        if found is None:
            return None
        return TermInfo(*found)


class LoincLookup(OntologyLookup):
    """
    Remote lookup against the LOINC FHIR terminology server.

    Codes go through `CodeSystem/$lookup`, free text through `ValueSet/$expand`.
    Results are cached for the lifetime of the lookup.
    """

    _CODE = re.compile(r"^(?:LOINC:)?(?P<code>\d{1,7}-\d)$", re.IGNORECASE)

    def __init__(self, user: str, password: str, version: typing.Optional[str] = None,
                 session: typing.Optional[requests.Session] = None):
        super().__init__("LOINC", version)
        self._session = session or requests.Session()
        self._session.auth = HTTPBasicAuth(user, password)
        self._session.headers.update({"Accept": "application/fhir+json"})
        self._cache: dict[str, typing.Optional[TermInfo]] = {}

    def resolve(self, raw_text: str) -> typing.Optional[TermInfo]:
        text = str(raw_text).strip()
        if not text:
            return None
        if text not in self._cache:
            self._cache[text] = self._fetch(text)
        return self._cache[text]

    def _get(self, url: str, params: dict) -> typing.Optional[dict]:
        try:
            resp = self._session.get(url, params=params, timeout=60)
        except requests.RequestException as e:
            raise ValidationError(f"LOINC lookup failed: {e}") from e
        if resp.status_code in (400, 404):
            return None
        if resp.status_code == 401:
            raise ValidationError("LOINC lookup failed: 401 Unauthorized, check the LOINC secrets")
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise ValidationError(f"LOINC lookup failed: {e}") from e
        return resp.json()

    def _fetch(self, text: str) -> typing.Optional[TermInfo]:
        m = self._CODE.match(text)
        if m:
            payload = self._get(
                f"{LOINC_FHIR_BASE}/CodeSystem/$lookup",
                {"system": LOINC_SYSTEM, "code": m.group("code")},
            )
            if payload is None:
                return None
            for parameter in payload.get("parameter", []):
                if parameter.get("name") == "display":
                    return TermInfo(f"LOINC:{m.group('code')}", parameter.get("valueString", ""))
            return None

        payload = self._get(
            f"{LOINC_FHIR_BASE}/ValueSet/$expand",
            {"url": f"{LOINC_SYSTEM}/vs", "filter": text, "count": 20},
        )
        if payload is None:
            return None
        for entry in payload.get("expansion", {}).get("contains", []):
            if str(entry.get("display", "")).strip().lower() == text.lower():
                return TermInfo(f"LOINC:{entry['code']}", entry["display"])
        return None


class OntologyRegistry:
    """The lookups available to one pipeline run, keyed by resource ID."""

    def __init__(self, lookups: typing.Iterable[OntologyLookup] = ()):
        self._lookups: dict[str, OntologyLookup] = {}
        for lookup in lookups:
            self.register(lookup)

    def register(self, lookup: OntologyLookup) -> None:
        self._lookups[lookup.resource_id] = lookup

    def get(self, resource_id: str) -> typing.Optional[OntologyLookup]:
        return self._lookups.get(resource_id.upper())

    def __contains__(self, resource_id: str) -> bool:
        return resource_id.upper() in self._lookups

    def first_of(self, resource_ids: typing.Iterable[str]) -> typing.Optional[str]:
        for resource_id in resource_ids:
            if resource_id in self:
                return resource_id.upper()
        return None

    def resolve(self, resource_id: str, raw_text: str) -> typing.Optional[TermInfo]:
        lookup = self.get(resource_id)
        if lookup is None:
            raise ConfigError(f"No lookup registered for resource {resource_id!r}")
        return lookup.resolve(raw_text)

    def contains(self, resource_id: str, term_id: str) -> bool:
        lookup = self.get(resource_id)
        return lookup is not None and lookup.contains(term_id)

    def resources(self) -> list[tuple[str, typing.Optional[str]]]:
        return [(lookup.resource_id, lookup.version) for lookup in self._lookups.values()]


def build_registry(resources: typing.Iterable[ResourceConfig]) -> OntologyRegistry:
    """
    Build lookups for the declared resources:
      - LOINC goes to the remote FHIR API with `user`/`password` secrets
      - `.json`/`.json.gz` files are OBO Graphs ontologies read with hpotk
      - `.csv`/`.tsv` files are ID/label tables
      - HP without a path falls back to `data/hp.json`
    """
    registry = OntologyRegistry()
    for resource in resources:
        if resource.id == "LOINC":
            try:
                lookup = LoincLookup(resource.secrets["user"], resource.secrets["password"], resource.version)
            except KeyError as e:
                raise ConfigError(f"Resource 'LOINC' needs secret {e.args[0]!r}") from e
            registry.register(lookup)
            continue

        path = resource.path
        if path is None and resource.id == "HP":
            path = DEFAULT_HPO_PATH
        if path is None:
            raise ConfigError(f"Resource {resource.id!r} needs a path")
        path = pathlib.Path(path)
        if not path.is_file():
            raise ConfigError(f"Resource {resource.id!r}: file not found at {path}")

        name = path.name.lower()
        if name.endswith((".json", ".json.gz")):
            registry.register(ObographsLookup.from_path(path, resource.id, resource.version))
        elif name.endswith((".csv", ".tsv", ".tab")):
            registry.register(TermTableLookup.from_file(path, resource.id, resource.version))
        else:
            raise ConfigError(f"Resource {resource.id!r}: unsupported file type {path.name!r}")
    return registry
