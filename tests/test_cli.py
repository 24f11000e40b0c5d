"""
Tests for the command-line interface, run through click's CliRunner.

The network is never hit: `download` gets a patched `requests.get`.
"""

import json
import re
import textwrap
from unittest.mock import Mock, patch

import pytest
from click.testing import CliRunner

from phenotab.__main__ import _prepare_output_dir, _report_issues, main
from phenotab.config import LoaderConfig
from phenotab.errors import CollectionError, RunReport


@pytest.fixture
def cohort_dir(tmp_path):
    """A CSV cohort, an HPO term table and the YAML configuration tying them together."""
    (tmp_path / "hp.csv").write_text(
        "id,label\nHP:0001250,Seizure\nHP:0000252,Microcephaly\n", encoding="utf-8",
    )
    (tmp_path / "patients.csv").write_text(textwrap.dedent("""\
        Patient,Sex,Feature,Notes
        007,FEMALE,Seizure,first visit
        008,MALE,HP:0000252,
        ,MALE,Seizure,no identifier
    """), encoding="utf-8")
    (tmp_path / "config.yaml").write_text(textwrap.dedent("""\
        meta_data:
          cohort_name: demo
        resources:
          - id: HP
            version: "2024-04-26"
            path: hp.csv
        transform_strategies:
          - ontology_normaliser
        data_sources:
          - source: patients.csv
            contexts:
              - identifier: Patient
                data_context: subject_id
              - identifier: Sex
                data_context: subject_sex
              - identifier: Feature
                data_context: hpo_label_or_id
    """), encoding="utf-8")
    return tmp_path


def test_download_mocks_network(tmp_path):
    runner = CliRunner()

    def fake_get(url, *args, **kwargs):
        if url.endswith("/releases/latest"):
            return Mock(status_code=200, json=lambda: {"tag_name": "vX"})
        # second call returns the content of hp.json
        return Mock(status_code=200, content=b"{}")

    with patch("phenotab.__main__.requests.get", side_effect=fake_get) as get:
        res = runner.invoke(main, ["download", "-d", str(tmp_path)])
        assert res.exit_code == 0
        assert (tmp_path / "hp.json").read_bytes() == b"{}"
        assert "/download/vX/hp.json" in get.call_args_list[-1].args[0]


def test_download_exact_version(tmp_path):
    runner = CliRunner()
    with patch("phenotab.__main__.requests.get", return_value=Mock(content=b"{}")) as get:
        res = runner.invoke(main, ["download", "-d", str(tmp_path), "-v", "2025-03-03"])
        assert res.exit_code == 0
        (call,) = get.call_args_list
        assert "/download/v2025-03-03/hp.json" in call.args[0]


def test_run_writes_phenopackets(cohort_dir):
    out_dir = cohort_dir / "out"
    runner = CliRunner()
    res = runner.invoke(main, ["run", "-c", str(cohort_dir / "config.yaml"), "-o", str(out_dir)])

    assert res.exit_code == 0, res.output
    assert "Wrote 2 phenopacket files" in res.output
    assert "Collected 2 patients from 1 tables" in res.output
    assert "Errors found in mapping:" in res.output
    assert "[CollectionError]" in res.output

    assert sorted(p.name for p in out_dir.iterdir()) == ["demo-007.json", "demo-008.json"]
    data = json.loads((out_dir / "demo-007.json").read_text(encoding="utf-8"))
    assert data["subject"]["id"] == "007"
    assert data["subject"]["sex"] == "FEMALE"
    assert data["phenotypicFeatures"][0]["type"] == {"id": "HP:0001250", "label": "Seizure"}
    assert data["metaData"]["resources"][0]["version"] == "2024-04-26"


def test_run_stops_on_configuration_error(cohort_dir):
    config = cohort_dir / "config.yaml"
    config.write_text(config.read_text(encoding="utf-8").replace("ontology_normaliser", "shuffle"),
                      encoding="utf-8")
    res = CliRunner().invoke(main, ["run", "-c", str(config), "-o", str(cohort_dir / "out")])

    assert res.exit_code == 1
    assert not (cohort_dir / "out").exists()


def test_audit_json(cohort_dir):
    res = CliRunner().invoke(main, ["audit", "-c", str(cohort_dir / "config.yaml"), "-r", "json"])

    assert res.exit_code == 0, res.output
    entries = json.loads(res.output)
    assert entries[0] == {"table": "patients", "context": "Patient", "columns": ["Patient"], "level": "info"}
    assert entries[-1] == {"table": "patients", "context": "(unbound)", "columns": ["Notes"], "level": "warning"}


def test_prepare_output_dir_creates_timestamped_folder(tmp_path, monkeypatch):
    """
    The output path should look like:
    <cwd>/phenotab_output/YYYY-MM-DD_HH-MM-SS/phenopackets
    """
    monkeypatch.chdir(tmp_path)
    out = _prepare_output_dir(LoaderConfig())
    assert out.exists() and out.is_dir()
    assert re.search(r"\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2}/phenopackets$", out.as_posix())


def test_prepare_output_dir_uses_configured_folder(tmp_path):
    out = _prepare_output_dir(LoaderConfig(output_dir=tmp_path / "packets"))
    assert out == tmp_path / "packets"
    assert out.is_dir()


def test_report_issues_outputs_both_blocks(capsys):
    """
    When the report holds both warnings and errors, the helper should print both sections.
    """
    report = RunReport()
    report.warn("warn 1", table="sheet1")
    report.record(CollectionError("err 1", table="sheet1"))

    _report_issues(report)
    out = capsys.readouterr().out
    assert "Warnings found in mapping" in out
    assert "warn 1" in out
    assert "Errors found in mapping" in out
    assert "- [CollectionError] table 'sheet1': err 1" in out


def test_audit_warns_about_missing_list_entries(cohort_dir):
    config = cohort_dir / "config.yaml"
    config.write_text(
        config.read_text(encoding="utf-8").replace("identifier: Sex", "identifier: [Sex, Gender]"),
        encoding="utf-8",
    )
    res = CliRunner().invoke(main, ["audit", "-c", str(config), "-r", "json"])

    assert res.exit_code == 0, res.output
    entries = json.loads(res.output)
    missing = [e for e in entries if e["context"].endswith("(missing)")]
    assert len(missing) == 1
    assert missing[0]["columns"] == ["Gender"]
    assert missing[0]["level"] == "warning"
