"""Tests for static plan descriptions."""

import json

import yaml

from enclaveplan.interpreter import DEFAULT_TASK_IMAGE, ScriptInterpreter
from enclaveplan.module_provider import InMemoryModuleProvider
from enclaveplan.plan_description import describe_plan

SCRIPT = """
conf = upload_files("static/app.conf", name="app-conf")
db = add_service("db", ServiceConfig(
    image="postgres:16",
    ports={"pg": PortSpec(5432, application_protocol="postgresql")},
    env_vars={"POSTGRES_PASSWORD": "secret"},
))
web = add_service("web", ServiceConfig(
    image="nginx:latest",
    ports={"http": PortSpec(80)},
    files={"/etc/app": conf},
))
exec("db", ["pg_isready"])
run_sh(run="echo hello", store={"greeting": "/out/hello.txt"})
"""


def _describe(script=SCRIPT, package_id="demo.star"):
    provider = InMemoryModuleProvider({"static/app.conf": "listen=80\n"})
    plan = ScriptInterpreter(provider).interpret(script, package_id=package_id)
    return describe_plan(plan)


class TestPlanDescription:
    """Tests for describe_plan."""

    def test_services(self):
        data = _describe().to_dict()

        db, web = data["services"]
        assert db == {
            "uuid": "2",
            "name": "db",
            "image": {"name": "postgres:16"},
            "envVars": [{"key": "POSTGRES_PASSWORD", "value": "secret"}],
            "ports": [{
                "name": "pg",
                "number": 5432,
                "transportProtocol": "TCP",
                "applicationProtocol": "postgresql",
            }],
        }
        assert web["files"] == [
            {"mountPath": "/etc/app", "filesArtifacts": [{"name": "app-conf", "uuid": "1"}]},
        ]

    def test_files_artifacts(self):
        data = _describe().to_dict()

        assert data["filesArtifacts"] == [
            {"uuid": "1", "name": "app-conf", "files": ["static/app.conf"]},
            {"uuid": "5", "name": "greeting", "files": ["/out/hello.txt"]},
        ]

    def test_tasks(self):
        exec_task, sh_task = _describe().to_dict()["tasks"]

        assert exec_task == {
            "uuid": "4",
            "name": "exec-4",
            "taskType": "exec",
            "command": ["pg_isready"],
            "serviceName": "db",
            "acceptableCodes": [0],
        }
        assert sh_task["taskType"] == "sh"
        assert sh_task["name"] == "task-1"
        assert sh_task["image"] == DEFAULT_TASK_IMAGE
        assert sh_task["store"] == [{"uuid": "5", "name": "greeting"}]

    def test_removed_services_dropped(self):
        description = _describe(SCRIPT + 'remove_service("web")\n')
        assert [s.name for s in description.services] == ["db"]

    def test_registered_only_service(self):
        description = _describe('register_service("db")\n')
        assert description.to_dict()["services"] == [{"uuid": "1", "name": "db"}]

    def test_plan_id_is_deterministic(self):
        first, second = _describe(), _describe()

        assert first.plan_id == second.plan_id
        assert first.plan_id.startswith("sha256:")
        assert _describe(package_id="other.star").plan_id != first.plan_id

    def test_key_order(self):
        data = _describe().to_dict()
        assert list(data) == ["packageId", "planId", "services", "filesArtifacts", "tasks"]

    def test_empty_plan_has_no_sections(self):
        data = _describe('print("nothing")\n').to_dict()
        assert list(data) == ["packageId", "planId"]

    def test_yaml_and_json_agree(self):
        description = _describe()

        assert yaml.safe_load(description.to_yaml()) == description.to_dict()
        assert json.loads(description.to_json()) == description.to_dict()

    def test_request_task(self):
        description = _describe(SCRIPT + 'r = request("web", "http", endpoint="/users", method="POST", body="{}")\n')

        request_task = description.to_dict()["tasks"][-1]
        assert request_task == {
            "uuid": "6",
            "name": "request-1",
            "taskType": "request",
            "command": ["POST", "/users"],
            "serviceName": "web",
            "portName": "http",
        }
