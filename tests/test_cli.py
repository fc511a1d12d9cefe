import json

import pytest
import yaml
from click.testing import CliRunner

from enclaveplan.cli import main

SCRIPT = """\
def run(plan, replicas=1):
    conf = plan.upload_files("static/nginx.conf")
    for i in range(replicas):
        plan.add_service("web-%d" % i, ServiceConfig(image="nginx", files={"/etc/nginx": conf}))
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def quiet_config(isolated_home):
    """Keep INFO logs out of output that tests parse."""
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("log_level: WARNING\n")


@pytest.fixture
def script(tmp_path):
    (tmp_path / "static").mkdir()
    (tmp_path / "static" / "nginx.conf").write_text("worker_processes 1;\n")
    path = tmp_path / "main.star"
    path.write_text(SCRIPT)
    return path


def test_init_command_creates_config(runner, isolated_home):
    result = runner.invoke(main, ["init"])

    assert result.exit_code == 0
    assert "Initialized enclaveplan config" in result.output
    cfg = yaml.safe_load((isolated_home / "config.yaml").read_text())
    assert cfg["subnet"] == "10.0.0.0/16"
    assert cfg["partitioning_enabled"] is True


def test_init_does_not_overwrite_without_force(runner, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init"])

    assert result.exit_code == 1
    assert "Config already exists" in result.output
    assert (isolated_home / "config.yaml").read_text() == "existing: true"


def test_init_force_overwrites(runner, isolated_home):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("existing: true")

    result = runner.invoke(main, ["init", "--force"])

    assert result.exit_code == 0
    assert "package_id: main" in (isolated_home / "config.yaml").read_text()


def test_invalid_config_reported(runner, isolated_home, script):
    isolated_home.mkdir(parents=True)
    (isolated_home / "config.yaml").write_text("subnet: nowhere\n")

    result = runner.invoke(main, ["run", str(script), "--dry-run"])

    assert result.exit_code == 1
    assert "Config not loaded" in result.output


def test_run_dry_run(runner, script):
    result = runner.invoke(main, ["run", str(script), "--dry-run", "--args", '{"replicas": 2}'])

    assert result.exit_code == 0, result.output
    assert "=== DRY RUN ===" in result.output
    assert "Service 'web-1' added with IP '10.0.0.2'" in result.output
    assert "main.star completed (3 instruction(s))" in result.output


def test_run_requires_backend(runner, script):
    result = runner.invoke(main, ["run", str(script)])

    assert result.exit_code == 2
    assert "--backend is required" in result.output


def test_run_refuses_disallowed_backend_module(runner, script):
    result = runner.invoke(main, ["run", str(script), "--backend", "os:getcwd"])

    assert result.exit_code == 2
    assert "not under an allowed backend module" in result.output


def test_run_malformed_backend_spec(runner, script):
    result = runner.invoke(main, ["run", str(script), "--backend", "enclaveplan_backends"])

    assert result.exit_code == 2
    assert "module:factory" in result.output


def test_run_with_noop_backend(runner, script):
    result = runner.invoke(main, ["run", str(script), "--backend", "noop"])

    assert result.exit_code == 0, result.output
    assert "DRY RUN" not in result.output
    assert "Files artifact 'static/nginx.conf' stored" in result.output


def test_run_interpretation_error(runner, tmp_path):
    path = tmp_path / "broken.star"
    path.write_text('fail("boom")\n')

    result = runner.invoke(main, ["run", str(path), "--dry-run"])

    assert result.exit_code == 1
    assert "Interpretation error" in result.output
    assert "boom" in result.output


def test_run_validation_error(runner, tmp_path):
    path = tmp_path / "ghost.star"
    path.write_text('exec("ghost", ["true"])\n')

    result = runner.invoke(main, ["run", str(path), "--dry-run"])

    assert result.exit_code == 1
    assert "Validation error" in result.output


def test_run_json_output(runner, script):
    result = runner.invoke(main, ["run", str(script), "--dry-run", "--json"])

    assert result.exit_code == 0
    assert '"success": true' in result.output
    assert '"dry_run": true' in result.output


def test_describe_yaml(runner, script, quiet_config):
    result = runner.invoke(main, ["describe", str(script)])

    assert result.exit_code == 0, result.output
    data = yaml.safe_load(result.output)
    assert data["packageId"] == "main.star"
    assert [s["name"] for s in data["services"]] == ["web-0"]


def test_describe_json(runner, script, quiet_config):
    result = runner.invoke(main, ["describe", str(script), "--format", "json", "--args", '{"replicas": 2}'])

    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert [s["name"] for s in data["services"]] == ["web-0", "web-1"]


def test_describe_interpretation_error(runner, tmp_path):
    path = tmp_path / "broken.star"
    path.write_text("x = \n")

    result = runner.invoke(main, ["describe", str(path)])

    assert result.exit_code == 1
    assert "Interpretation error" in result.output


def test_bulk_dry_run(runner, tmp_path, bulk_document):
    path = tmp_path / "bulk.json"
    path.write_text(json.dumps(bulk_document))

    result = runner.invoke(main, ["bulk", str(path), "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "Repartitioned network into 3 partition(s)" in result.output
    assert "Repartitioned network into 2 partition(s)" in result.output
    assert "bulk.json completed (11 instruction(s))" in result.output
