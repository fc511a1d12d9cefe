"""
Plan Description - a static, human-readable summary of a Plan.

Describes what a plan would create without executing it:

packageId: main
planId: sha256:...
services:
  - uuid: "1"
    name: web
    image:
      name: nginx:latest
    ports:
      - name: http
        number: 80
        transportProtocol: TCP
filesArtifacts:
  - uuid: "3"
    name: config
    files: [static/config.json]
tasks:
  - uuid: "4"
    name: task-1
    taskType: sh
    command: [echo hello]
    image: badouralix/curl-jq

Entries are keyed by the 1-based index of the instruction that created
them, so the same plan always produces the same description and plan ID.
Services removed later in the plan are dropped from the description.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

import yaml

from enclaveplan.schemas import (
    AddService,
    ExecCommand,
    Plan,
    RegisterService,
    RemoveService,
    Request,
    RunTask,
    ServiceConfig,
    StartService,
    StoreServiceFiles,
    UploadFiles,
)

SHELL_TASK = "sh"
EXEC_TASK = "exec"
REQUEST_TASK = "request"


def _env_list(env_vars: dict[str, str]) -> list[dict[str, str]]:
    return [{"key": k, "value": v} for k, v in sorted(env_vars.items())]


def _mounts(files: dict[str, str], artifacts: dict[str, "ArtifactDescription"]) -> list[dict]:
    """Mount path -> artifact name, rendered with the artifact's uuid when known."""
    mounts = []
    for mount_path, name in sorted(files.items()):
        artifact: dict[str, Any] = {"name": name}
        if name in artifacts:
            artifact["uuid"] = artifacts[name].uuid
        mounts.append({"mountPath": mount_path, "filesArtifacts": [artifact]})
    return mounts


def _hash_canonical(data: dict) -> str:
    """SHA256 of sorted-key JSON, prefixed with "sha256:"."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode()).hexdigest()
    return f"sha256:{digest}"


@dataclass
class ServiceDescription:
    uuid: str
    name: str
    config: Optional[ServiceConfig] = None
    files: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"uuid": self.uuid, "name": self.name}
        if self.config is None:
            return d
        d["image"] = {"name": self.config.image}
        if self.config.cmd:
            d["command"] = list(self.config.cmd)
        if self.config.entrypoint:
            d["entrypoint"] = list(self.config.entrypoint)
        if self.config.env_vars:
            d["envVars"] = _env_list(self.config.env_vars)
        if self.config.ports:
            d["ports"] = [
                {
                    "name": port_id,
                    "number": spec.number,
                    "transportProtocol": spec.transport_protocol.value,
                    **({"applicationProtocol": spec.application_protocol}
                       if spec.application_protocol else {}),
                }
                for port_id, spec in sorted(self.config.ports.items())
            ]
        if self.files:
            d["files"] = self.files
        return d


@dataclass
class ArtifactDescription:
    uuid: str
    name: str
    files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"uuid": self.uuid, "name": self.name}
        if self.files:
            d["files"] = list(self.files)
        return d


@dataclass
class TaskDescription:
    uuid: str
    name: str
    task_type: str
    command: list[str]
    image: str = ""
    service_name: str = ""
    port_name: str = ""
    env_vars: dict[str, str] = field(default_factory=dict)
    files: list[dict] = field(default_factory=list)
    store: list[dict] = field(default_factory=list)
    acceptable_codes: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "uuid": self.uuid,
            "name": self.name,
            "taskType": self.task_type,
            "command": list(self.command),
        }
        if self.image:
            d["image"] = self.image
        if self.service_name:
            d["serviceName"] = self.service_name
        if self.port_name:
            d["portName"] = self.port_name
        if self.env_vars:
            d["envVars"] = _env_list(self.env_vars)
        if self.files:
            d["files"] = self.files
        if self.store:
            d["store"] = self.store
        if self.acceptable_codes:
            d["acceptableCodes"] = list(self.acceptable_codes)
        return d


@dataclass
class PlanDescription:
    """Services, files artifacts and tasks a plan would create."""
    package_id: str
    services: list[ServiceDescription] = field(default_factory=list)
    files_artifacts: list[ArtifactDescription] = field(default_factory=list)
    tasks: list[TaskDescription] = field(default_factory=list)

    @property
    def plan_id(self) -> str:
        """Deterministic hash of the description's content."""
        return _hash_canonical(self._content())

    def _content(self) -> dict:
        d: dict[str, Any] = {"packageId": self.package_id}
        if self.services:
            d["services"] = [s.to_dict() for s in self.services]
        if self.files_artifacts:
            d["filesArtifacts"] = [a.to_dict() for a in self.files_artifacts]
        if self.tasks:
            d["tasks"] = [t.to_dict() for t in self.tasks]
        return d

    def to_dict(self) -> dict:
        """Serialize to dictionary, with the plan ID after the package ID."""
        content = self._content()
        return {"packageId": content.pop("packageId"), "planId": self.plan_id, **content}

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def describe_plan(plan: Plan) -> PlanDescription:
    """
    Build the description of a plan.

    Args:
        plan: The interpreted plan

    Returns:
        PlanDescription listing services, files artifacts and tasks
    """
    services: dict[str, ServiceDescription] = {}
    artifacts: dict[str, ArtifactDescription] = {}
    tasks: list[TaskDescription] = []

    for index, instruction in plan.indexed():
        uuid = str(index)
        if isinstance(instruction, RegisterService):
            services[instruction.service_id] = ServiceDescription(uuid=uuid, name=instruction.service_id)
        elif isinstance(instruction, (StartService, AddService)):
            existing = services.get(instruction.service_id)
            services[instruction.service_id] = ServiceDescription(
                uuid=existing.uuid if existing else uuid,
                name=instruction.service_id,
                config=instruction.config,
                files=_mounts(instruction.config.files, artifacts),
            )
        elif isinstance(instruction, RemoveService):
            services.pop(instruction.service_id, None)
        elif isinstance(instruction, UploadFiles):
            artifacts[instruction.artifact_name] = ArtifactDescription(
                uuid=uuid, name=instruction.artifact_name, files=[instruction.src]
            )
        elif isinstance(instruction, StoreServiceFiles):
            artifacts[instruction.artifact_name] = ArtifactDescription(
                uuid=uuid, name=instruction.artifact_name, files=[instruction.src]
            )
        elif isinstance(instruction, ExecCommand):
            tasks.append(TaskDescription(
                uuid=uuid,
                name=f"exec-{index}",
                task_type=EXEC_TASK,
                command=list(instruction.command),
                service_name=instruction.service_id,
                acceptable_codes=list(instruction.acceptable_codes),
            ))
        elif isinstance(instruction, Request):
            tasks.append(TaskDescription(
                uuid=uuid,
                name=instruction.result_key,
                task_type=REQUEST_TASK,
                command=[instruction.method, instruction.endpoint],
                service_name=instruction.service_id,
                port_name=instruction.port_id,
            ))
        elif isinstance(instruction, RunTask):
            mounts = _mounts(instruction.files, artifacts)
            store = []
            for name, path in instruction.store.items():
                artifacts[name] = ArtifactDescription(uuid=uuid, name=name, files=[path])
                store.append({"uuid": uuid, "name": name})
            tasks.append(TaskDescription(
                uuid=uuid,
                name=instruction.name,
                task_type=SHELL_TASK,
                command=[instruction.command],
                image=instruction.image,
                env_vars=dict(instruction.env_vars),
                files=mounts,
                store=store,
                acceptable_codes=list(instruction.acceptable_codes),
            ))

    return PlanDescription(
        package_id=plan.package_id,
        services=list(services.values()),
        files_artifacts=list(artifacts.values()),
        tasks=tasks,
    )
