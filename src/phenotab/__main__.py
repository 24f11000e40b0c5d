"""
Command-line interface for phenotab.

`run` turns the tables declared in a YAML configuration into one phenopacket
per patient, `audit` shows how the configured contexts bind to the table
headers, and `download` fetches an HPO release for the default HP lookup.
"""

import click
import json
import logging
import pathlib
import requests
import sys
import typing

from collections import namedtuple
from datetime import datetime

from .config import LoaderConfig, PipelineConfig, load_config
from .errors import ConfigError, RunReport
from .export import PhenopacketExporter
from .loader import load_tables
from .ontology import DEFAULT_HPO_PATH, build_registry
from .pipeline import Pipeline
from .resolver import resolve_contexts

AuditEntry = namedtuple("AuditEntry", ["table", "context", "columns", "level"])

HPO_RELEASES_API = "https://api.github.com/repos/obophenotype/human-phenotype-ontology/releases/latest"
HPO_DOWNLOAD_URL = "https://github.com/obophenotype/human-phenotype-ontology/releases/download/{tag}/hp.json"


@click.group()
def main():
    """phenotab: clinical tables to GA4GH phenopackets."""
    pass


@main.command(name="download")
@click.option(
    "-d",
    "--data-path",
    "data_dir",
    default=str(DEFAULT_HPO_PATH.parent),
    type=click.Path(file_okay=False),
    help=f"where to save HPO JSON (default: {DEFAULT_HPO_PATH.parent})",
)
@click.option(
    "-v",
    "--hpo-version",
    default=None,
    type=str,
    help="exact HPO release tag (e.g. 2025-03-03 or v2025-03-03)",
)
def download(data_dir: str, hpo_version: typing.Optional[str]):
    """
    Download a specific or the latest HPO JSON release.
    """
    datadir = pathlib.Path(data_dir)
    datadir.mkdir(parents=True, exist_ok=True)
    # figure out which tag to download
    if hpo_version:
        tag = hpo_version if hpo_version.startswith("v") else f"v{hpo_version}"
    else:
        resp = requests.get(HPO_RELEASES_API, timeout=60)
        resp.raise_for_status()
        tag = resp.json()["tag_name"]
    click.echo(f"Downloading HPO release {tag} ...")
    resp = requests.get(HPO_DOWNLOAD_URL.format(tag=tag), timeout=300)
    resp.raise_for_status()

    out = datadir / DEFAULT_HPO_PATH.name
    with open(out, "wb") as f:
        f.write(resp.content)

    click.echo(f"Saved HPO JSON to {out}")


@main.command(name="run")
@click.option(
    "-c",
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="path to the YAML pipeline configuration",
)
@click.option(
    "-o",
    "--output-dir",
    "output_dir",
    default=None,
    type=click.Path(file_okay=False),
    help="write phenopackets here instead of the configured or timestamped directory",
)
@click.option("--verbose-logging", is_flag=True, help="Log every step to stderr")
@click.option(
    "--log-file-path",
    default=None,
    type=click.Path(dir_okay=False, writable=True),
    help="append the log to this file",
)
def run(config_path: str, output_dir: typing.Optional[str], verbose_logging: bool,
        log_file_path: typing.Optional[str]):
    """
    Load the configured tables, normalise and collect them, then write one
    phenopacket per patient. Data problems are reported and skipped;
    configuration problems stop the run before anything is written.
    """
    _configure_logging(verbose_logging, log_file_path)

    # 1) Configuration, lookups and tables
    try:
        config = load_config(config_path)
        if output_dir is not None:
            config.loader = LoaderConfig(output_dir=pathlib.Path(output_dir), create_dir=True)
        registry = build_registry(config.resources)
        tables = load_tables(config.data_sources)
        pipeline = Pipeline(config, registry)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    # 2) Normalise and collect
    report = RunReport()
    try:
        records = pipeline.run(tables, report)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    # 3) Build phenopackets
    phenopackets = pipeline.phenopackets(report)

    # 4) Report any errors or warnings
    _report_issues(report)

    # 5) Write
    try:
        target_dir = _prepare_output_dir(config.loader)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    written = PhenopacketExporter(target_dir).write(phenopackets)

    click.echo(f"Wrote {len(written)} phenopacket files to {target_dir}")
    click.echo(f"Collected {len(records)} patients from {len(tables)} tables")
    if report.issues:
        click.echo(f"{len(report.issues)} rows or cells were skipped, see the errors above")


@main.command(name="audit")
@click.option(
    "-c",
    "--config",
    "config_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="path to the YAML pipeline configuration",
)
@click.option(
    "-r",
    "--report-format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="print the audit as colored text or as JSON",
)
def audit(config_path: str, report_format: str):
    """
    Show which columns every configured context binds to, without collecting.
    """
    try:
        config = load_config(config_path)
        entries = audit_bindings(config)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if report_format == "json":
        click.echo(json.dumps([entry._asdict() for entry in entries], indent=2))
        return

    indent = "  "
    for entry in entries:
        line = f"{entry.table:15} {entry.context:30} {', '.join(entry.columns) or '-'}"
        # color by level
        if entry.level == "error":
            colored = click.style(line, fg="red")
        elif entry.level == "warning":
            colored = click.style(line, fg="yellow")
        else:
            colored = click.style(line, fg="cyan")
        click.echo(indent + colored)


def audit_bindings(config: PipelineConfig) -> list[AuditEntry]:
    """
    One entry per configured context:
      - info when it binds at least one column
      - warning when it binds nothing (the context is inert for this table)
      - warning for names of a list identifier the table lacks
      - warning for headers no context binds
    """
    entries: list[AuditEntry] = []
    for table in load_tables(config.data_sources):
        table_config = next(t for t in config.data_sources if t.name == table.name)
        bound_headers = set()
        for resolved in resolve_contexts(table, table_config.contexts):
            bound_headers.update(resolved.columns)
            entries.append(AuditEntry(
                table=table.name,
                context=resolved.config.describe(),
                columns=list(resolved.columns),
                level="info" if resolved.columns or resolved.config.is_inert else "warning",
            ))
            if resolved.missing:
                entries.append(AuditEntry(
                    table=table.name,
                    context=f"{resolved.config.describe()} (missing)",
                    columns=list(resolved.missing),
                    level="warning",
                ))
        unbound = [header for header in table.headers if header not in bound_headers]
        if unbound:
            entries.append(AuditEntry(
                table=table.name,
                context="(unbound)",
                columns=unbound,
                level="warning",
            ))
    return entries


def _configure_logging(verbose_logging: bool, log_file_path: typing.Optional[str]) -> None:
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


def _report_issues(report: RunReport):
    notepad = report.notepad
    # if there were errors, show them
    if notepad.has_errors(include_subsections=True):
        click.echo("Errors found in mapping:")
        for err in report.issues:
            click.echo(f"- [{type(err).__name__}] {err}")
    # show any warnings but keep going
    if notepad.has_warnings(include_subsections=True):
        click.echo("Warnings found in mapping:")
        for w in report.warnings:
            click.echo(f"- {w}")


def _prepare_output_dir(loader: LoaderConfig) -> pathlib.Path:
    if loader.output_dir is not None:
        return PhenopacketExporter(loader.output_dir, loader.create_dir).prepare()
    # use YYYY-MM-DD_HH-MM-SS for human-readable timestamps
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    output_dir = pathlib.Path.cwd() / "phenotab_output" / timestamp / "phenopackets"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


if __name__ == "__main__":
    main()
