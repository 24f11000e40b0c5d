"""
Configuration model.

Reads the pipeline YAML and turns it into validated dataclasses. Every semantic
problem (unknown concepts, ambiguous building blocks, broken alias maps,
missing secrets) surfaces here as a `ConfigError`, before any table is read.
"""

import logging
import os
import pathlib
import typing

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata

import pandas as pd
import yaml

from .concept import Concept, ConceptKind
from .errors import ConfigError

logger = logging.getLogger(__name__)

TOOL_NAME = "phenotab"
DEFAULT_COHORT_NAME = "unnamed_cohort"


def tool_version() -> str:
    try:
        return metadata.version(TOOL_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


def default_created_by() -> str:
    return f"{TOOL_NAME}-{tool_version()}"


class OutputDataType(Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"

    @classmethod
    def from_label(cls, label: str) -> "OutputDataType":
        aliases = {
            "str": cls.STRING,
            "string": cls.STRING,
            "bool": cls.BOOLEAN,
            "boolean": cls.BOOLEAN,
            "int": cls.INTEGER,
            "int64": cls.INTEGER,
            "integer": cls.INTEGER,
            "float": cls.FLOAT,
            "float64": cls.FLOAT,
        }
        key = str(label).strip().lower()
        if key not in aliases:
            raise ConfigError(f"Unknown alias map output type {label!r}")
        return aliases[key]


@dataclass
class AliasMapConfig:
    """
    Key to value substitutions for one series context.

    Attributes:
        mappings: Raw cell text to replacement. A `None` replacement marks the
            key as a null entry.
        output_data_type: Scalar type the replacements are coerced to.
    """

    mappings: dict[str, typing.Optional[str]]
    output_data_type: OutputDataType = OutputDataType.STRING

    def __post_init__(self):
        if isinstance(self.output_data_type, str):
            self.output_data_type = OutputDataType.from_label(self.output_data_type)
        if not isinstance(self.mappings, dict):
            raise ConfigError("alias_map mappings must be a key/value mapping")
        self.mappings = {
            _key_text(key): (None if value is None else str(value))
            for key, value in self.mappings.items()
        }

    @classmethod
    def from_dict(cls, data: dict, base_dir: pathlib.Path) -> "AliasMapConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"alias_map must be a mapping, got {data!r}")
        has_inline = "mappings" in data
        has_csv = "csv" in data
        if has_inline == has_csv:
            raise ConfigError("alias_map needs exactly one of 'mappings' or 'csv'")
        output_type = data.get("output_data_type", "string")
        if has_inline:
            return cls(mappings=data["mappings"] or {}, output_data_type=output_type)
        return cls(mappings=_read_alias_csv(data["csv"], base_dir), output_data_type=output_type)


def _key_text(key: typing.Any) -> str:
    # YAML turns `1:` and `true:` into non-strings
    if isinstance(key, bool):
        return str(key).lower()
    if key is None:
        return ""
    return str(key).strip()


def _read_alias_csv(csv_source: dict, base_dir: pathlib.Path) -> dict[str, typing.Optional[str]]:
    try:
        path = _resolve_path(csv_source["path"], base_dir)
        key_column = csv_source["key_column"]
        alias_column = csv_source["alias_column"]
    except (KeyError, TypeError) as e:
        raise ConfigError(f"alias_map csv needs path, key_column and alias_column: {e}")
    if not path.is_file():
        raise ConfigError(f"alias_map csv not found: {path}")
    separator = "\t" if path.suffix.lower() in (".tsv", ".tab") else csv_source.get("separator", ",")
    df = pd.read_csv(path, sep=separator, dtype=str, keep_default_na=False)
    missing = {key_column, alias_column} - set(df.columns)
    if missing:
        raise ConfigError(f"alias_map csv {path} lacks columns {sorted(missing)}")
    return {
        row[key_column]: (row[alias_column] or None)
        for _, row in df.iterrows()
    }


@dataclass
class SeriesContextConfig:
    """
    User declaration of what one or more columns mean.

    Attributes:
        identifier: A header name, a list of header names, or a regex.
        header_context: Concept of the header text itself.
        data_context: Concept of the cell values.
        alias_map: Optional substitutions applied by the `alias_map` strategy.
        building_block_id: Free-form key tying related contexts together.
        fill_missing: Value written into empty cells before any strategy runs.
    """

    identifier: typing.Union[str, list[str]]
    header_context: typing.Optional[Concept] = None
    data_context: typing.Optional[Concept] = None
    alias_map: typing.Optional[AliasMapConfig] = None
    building_block_id: typing.Optional[str] = None
    fill_missing: typing.Any = None

    def __post_init__(self):
        if isinstance(self.identifier, (list, tuple)):
            names = [str(name) for name in self.identifier]
            if not names:
                raise ConfigError("identifier list must not be empty")
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise ConfigError(f"identifier list binds {duplicates} more than once")
            self.identifier = names
        elif isinstance(self.identifier, (str, int)) and not isinstance(self.identifier, bool):
            self.identifier = str(self.identifier)
        else:
            raise ConfigError(f"identifier must be a string or a list, got {self.identifier!r}")

        if self.header_context is not None:
            self.header_context = Concept.parse(self.header_context)
        if self.data_context is not None:
            self.data_context = Concept.parse(self.data_context)
        if self.building_block_id is not None:
            self.building_block_id = str(self.building_block_id)

    @property
    def is_inert(self) -> bool:
        return all(
            c is None or c.kind is ConceptKind.NONE
            for c in (self.header_context, self.data_context)
        )

    @property
    def primary_concept(self) -> typing.Optional[Concept]:
        """The concept that anchors a building block, if this context carries one."""
        for concept in (self.data_context, self.header_context):
            if concept is not None and concept.is_primary:
                return concept
        return None

    def has_kind(self, kind: ConceptKind) -> bool:
        return any(
            c is not None and c.kind is kind
            for c in (self.header_context, self.data_context)
        )

    def describe(self) -> str:
        if isinstance(self.identifier, list):
            return "[" + ", ".join(self.identifier) + "]"
        return self.identifier

    @classmethod
    def from_dict(cls, data: dict, base_dir: pathlib.Path) -> "SeriesContextConfig":
        if not isinstance(data, dict) or "identifier" not in data:
            raise ConfigError(f"series context needs an identifier: {data!r}")
        unknown = set(data) - {
            "identifier", "header_context", "data_context", "alias_map",
            "alias_map_config", "building_block_id", "fill_missing",
        }
        if unknown:
            raise ConfigError(f"series context has unknown keys {sorted(unknown)}")
        alias_map = data.get("alias_map", data.get("alias_map_config"))
        return cls(
            identifier=data["identifier"],
            header_context=data.get("header_context"),
            data_context=data.get("data_context"),
            alias_map=None if alias_map is None else AliasMapConfig.from_dict(alias_map, base_dir),
            building_block_id=data.get("building_block_id"),
            fill_missing=data.get("fill_missing"),
        )


@dataclass
class TableConfig:
    """
    One input table and the contexts declared for it.
    """

    source: pathlib.Path
    contexts: list[SeriesContextConfig]
    name: typing.Optional[str] = None
    sheet_name: typing.Optional[str] = None
    separator: typing.Optional[str] = None
    has_headers: bool = True
    patients_are_rows: bool = True

    def __post_init__(self):
        if self.name is None:
            self.name = self.sheet_name or pathlib.Path(self.source).stem
        check_building_blocks(self.name, self.contexts)

    @classmethod
    def from_dict(cls, data: dict, base_dir: pathlib.Path) -> list["TableConfig"]:
        """
        A CSV source yields one table; an Excel source may list several sheets.
        """
        if not isinstance(data, dict) or "source" not in data:
            raise ConfigError(f"data source needs a 'source' path: {data!r}")
        source = _resolve_path(data["source"], base_dir)
        sheets = data.get("sheets")
        if sheets is None:
            sheets = [data]
        tables = []
        for sheet in sheets:
            contexts = [SeriesContextConfig.from_dict(c, base_dir) for c in sheet.get("contexts", [])]
            tables.append(cls(
                source=source,
                contexts=contexts,
                name=sheet.get("name"),
                sheet_name=sheet.get("sheet_name"),
                separator=data.get("separator"),
                has_headers=bool(sheet.get("has_headers", True)),
                patients_are_rows=bool(sheet.get("patients_are_rows", True)),
            ))
        return tables


def check_building_blocks(table_name: str, contexts: typing.Sequence[SeriesContextConfig]) -> None:
    """
    Every building block shared by two or more contexts must be anchored by
    exactly one primary concept, so the collector knows which record to build.
    """
    members = defaultdict(list)
    for context in contexts:
        if context.building_block_id is not None and not context.is_inert:
            members[context.building_block_id].append(context)
    for block_id, block in members.items():
        if len(block) < 2:
            continue
        anchors = [c for c in block if c.primary_concept is not None]
        if len(anchors) != 1:
            found = ", ".join(str(c.primary_concept) for c in anchors) or "none"
            raise ConfigError(
                f"Table {table_name!r}: building block {block_id!r} must contain exactly one "
                f"primary concept, found {found}"
            )


@dataclass
class ResourceConfig:
    """
    An ontology or vocabulary the run may consult.

    Secret values of the form `$NAME` are read from the environment.
    """

    id: str
    version: typing.Optional[str] = None
    path: typing.Optional[pathlib.Path] = None
    secrets: dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id or not str(self.id).strip():
            raise ConfigError("resource needs a non-empty id")
        self.id = str(self.id).strip().upper()
        if self.version is not None:
            self.version = str(self.version)
        self.secrets = {key: _expand_secret(self.id, key, value) for key, value in (self.secrets or {}).items()}

    @classmethod
    def from_dict(cls, data: dict, base_dir: pathlib.Path) -> "ResourceConfig":
        if not isinstance(data, dict):
            raise ConfigError(f"resource must be a mapping, got {data!r}")
        path = data.get("path")
        return cls(
            id=data.get("id", ""),
            version=data.get("version"),
            path=None if path is None else _resolve_path(path, base_dir),
            secrets=data.get("secrets") or {},
        )


def _expand_secret(resource_id: str, key: str, value: typing.Any) -> str:
    text = str(value)
    if text.startswith("$"):
        env_name = text[1:].strip("{}")
        if env_name not in os.environ:
            raise ConfigError(f"Resource {resource_id!r}: secret {key!r} refers to unset variable {env_name!r}")
        return os.environ[env_name]
    return text


@dataclass
class MetaDataConfig:
    cohort_name: str = DEFAULT_COHORT_NAME
    created_by: str = field(default_factory=default_created_by)
    submitted_by: typing.Optional[str] = None

    def __post_init__(self):
        if not self.cohort_name:
            raise ConfigError("cohort_name must not be empty")
        if self.submitted_by is None:
            self.submitted_by = self.created_by


@dataclass
class LoaderConfig:
    output_dir: typing.Optional[pathlib.Path] = None
    create_dir: bool = True


@dataclass
class StrategyConfig:
    """A strategy name from the registry plus its options."""

    name: str
    options: dict = field(default_factory=dict)

    @classmethod
    def parse(cls, value: typing.Any) -> "StrategyConfig":
        if isinstance(value, str):
            return cls(name=value.strip().lower())
        if isinstance(value, dict) and len(value) == 1:
            (name, options), = value.items()
            if options is not None and not isinstance(options, dict):
                raise ConfigError(f"Options of strategy {name!r} must be a mapping")
            return cls(name=str(name).strip().lower(), options=options or {})
        raise ConfigError(f"Cannot interpret {value!r} as a transform strategy")


@dataclass
class PipelineConfig:
    """
    Everything one run needs: tables, strategies, resources and output metadata.
    """

    data_sources: list[TableConfig]
    strategies: list[StrategyConfig] = field(default_factory=list)
    resources: list[ResourceConfig] = field(default_factory=list)
    meta_data: MetaDataConfig = field(default_factory=MetaDataConfig)
    loader: LoaderConfig = field(default_factory=LoaderConfig)

    def __post_init__(self):
        seen = set()
        for resource in self.resources:
            if resource.id in seen:
                raise ConfigError(f"Resource {resource.id!r} is declared more than once")
            seen.add(resource.id)
        names = [table.name for table in self.data_sources]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigError(f"Table names must be unique, duplicated: {duplicates}")

    @classmethod
    def from_dict(cls, data: dict, base_dir: pathlib.Path) -> "PipelineConfig":
        if not isinstance(data, dict):
            raise ConfigError("Configuration root must be a mapping")
        tables = []
        for source in data.get("data_sources") or []:
            tables.extend(TableConfig.from_dict(source, base_dir))

        meta = data.get("meta_data") or {}
        loader = data.get("loader") or {}
        output_dir = loader.get("output_dir")
        return cls(
            data_sources=tables,
            strategies=[StrategyConfig.parse(s) for s in data.get("transform_strategies") or []],
            resources=[ResourceConfig.from_dict(r, base_dir) for r in data.get("resources") or []],
            meta_data=MetaDataConfig(
                cohort_name=meta.get("cohort_name", DEFAULT_COHORT_NAME),
                created_by=meta.get("created_by") or default_created_by(),
                submitted_by=meta.get("submitted_by"),
            ),
            loader=LoaderConfig(
                output_dir=None if output_dir is None else _resolve_path(output_dir, base_dir),
                create_dir=bool(loader.get("create_dir", True)),
            ),
        )


def _resolve_path(raw: typing.Any, base_dir: pathlib.Path) -> pathlib.Path:
    path = pathlib.Path(os.path.expanduser(str(raw)))
    return path if path.is_absolute() else base_dir / path


def load_config(path: typing.Union[str, pathlib.Path]) -> PipelineConfig:
    """
    Read a YAML configuration file. Relative paths inside it are resolved
    against the directory of the file.
    """
    path = pathlib.Path(path)
    logger.info("Loading configuration from %s", path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}") from e
    return PipelineConfig.from_dict(data, path.parent)
