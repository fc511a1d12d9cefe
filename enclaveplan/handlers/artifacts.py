"""
Files artifact handlers: store files from a service, upload module content.
"""

import logging

from enclaveplan.network import ServiceNetwork
from enclaveplan.schemas import StoreServiceFiles, UploadFiles

from .base import ExecutionContext, Handler

logger = logging.getLogger(__name__)


def store_artifacts(network: ServiceNetwork, contents: dict[str, bytes]) -> None:
    """
    Store several files artifacts as one unit.

    If any name is taken, the artifacts stored so far by this call are
    removed again before the error propagates.
    """
    stored: list[str] = []
    try:
        for name, content in contents.items():
            network.store_files_artifact(name, content)
            stored.append(name)
    except Exception:
        for name in stored:
            network.remove_files_artifact(name)
        raise
    for name in stored:
        logger.debug(f"Stored files artifact '{name}' ({len(contents[name])} bytes)")


class StoreServiceFilesHandler(Handler):
    """Copy a path out of a started service into a named files artifact."""

    def validate(self, instruction: StoreServiceFiles, index: int, env) -> list[str]:
        problems = []
        if instruction.service_id not in env.registered:
            problems.append(f"Service '{instruction.service_id}' is not registered")
        elif instruction.service_id not in env.started:
            problems.append(f"Service '{instruction.service_id}' is not started")
        if instruction.artifact_name in env.artifacts:
            problems.append(f"A files artifact named '{instruction.artifact_name}' already exists")
        env.add_artifact(instruction.artifact_name)
        return problems

    def execute(self, instruction: StoreServiceFiles, context: ExecutionContext) -> str:
        record = context.require_started(instruction.service_id)
        if context.dry_run:
            content = b""
        else:
            content = context.backend.copy_files_from_container(record.handle, instruction.src)
        store_artifacts(context.network, {instruction.artifact_name: content})
        return f"Files artifact '{instruction.artifact_name}' stored"


class UploadFilesHandler(Handler):
    """Store content resolved at interpretation time. No backend call."""

    def validate(self, instruction: UploadFiles, index: int, env) -> list[str]:
        problems = []
        if instruction.artifact_name in env.artifacts:
            problems.append(f"A files artifact named '{instruction.artifact_name}' already exists")
        env.add_artifact(instruction.artifact_name)
        return problems

    def execute(self, instruction: UploadFiles, context: ExecutionContext) -> str:
        store_artifacts(context.network, {instruction.artifact_name: instruction.content})
        return f"Files artifact '{instruction.artifact_name}' stored"
