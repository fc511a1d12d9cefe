import json
import logging

import pytest
from rich.logging import RichHandler

from enclaveplan.utils import StructuredFormatter, setup_logging


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger("enclaveplan")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _record(**extra):
    record = logging.LogRecord("enclaveplan.executor", logging.ERROR, __file__, 1, "step %d failed", (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_includes_run_fields():
    line = StructuredFormatter().format(_record(package_id="main", instruction_index=3, event="instruction_failed"))
    entry = json.loads(line)

    assert entry["level"] == "ERROR"
    assert entry["logger"] == "enclaveplan.executor"
    assert entry["message"] == "step 3 failed"
    assert entry["package_id"] == "main"
    assert entry["instruction_index"] == 3
    assert entry["event"] == "instruction_failed"
    assert entry["timestamp"].endswith("Z")


def test_structured_formatter_omits_missing_fields():
    entry = json.loads(StructuredFormatter().format(_record()))
    assert "package_id" not in entry
    assert "exception" not in entry


def test_setup_logging_pretty_uses_rich(tmp_path):
    logger = setup_logging("debug", "pretty")

    assert logger.name == "enclaveplan"
    assert logger.level == logging.DEBUG
    assert [type(h) for h in logger.handlers] == [RichHandler]


def test_setup_logging_writes_structured_file(tmp_path):
    log_file = tmp_path / "logs" / "enclaveplan.log"
    logger = setup_logging("INFO", "structured", log_file, console_output=False)

    logging.getLogger("enclaveplan.engine").info("hello", extra={"event": "greeting"})
    for handler in logger.handlers:
        handler.flush()

    entry = json.loads(log_file.read_text().splitlines()[-1])
    assert entry["message"] == "hello"
    assert entry["event"] == "greeting"


def test_setup_logging_replaces_handlers(tmp_path):
    setup_logging("INFO", "structured")
    logger = setup_logging("INFO", "structured")

    assert len(logger.handlers) == 1
