import json

import pytest
import structlog

from deckhand.config import LoggingConfig
from deckhand.logging import bind_invocation, configure_logging, get_logger


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_records_carry_bound_invocation_identity(capsys):
    configure_logging(settings=LoggingConfig(level="INFO", format="json"))
    logger = get_logger("deckhand.test")

    with bind_invocation("thread-7", depth=1, parent_id="call_3"):
        logger.info("Step completed", step=2)
    logger.info("Outside")

    lines = [json.loads(line) for line in capsys.readouterr().err.strip().splitlines()]
    assert lines[0]["event"] == "Step completed"
    assert lines[0]["thread_id"] == "thread-7"
    assert lines[0]["depth"] == 1
    assert lines[0]["parent_id"] == "call_3"
    assert "thread_id" not in lines[1]


def test_level_override_filters_lower_records(capsys):
    configure_logging(level="warning", settings=LoggingConfig(level="DEBUG", format="json"))
    logger = get_logger()

    logger.info("hidden")
    logger.warning("shown")

    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "shown" in err
