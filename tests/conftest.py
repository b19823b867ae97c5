"""Shared test fixtures."""

import pytest
from loguru import logger


@pytest.fixture
def log_messages():
    """Collect every loguru message emitted during a test.

    Backends log one DEBUG ``"Preparing ..."`` message per preparation and one
    TRACE ``"Applying ..."`` message per application, so the collected list
    doubles as a preparation/application counter.
    """
    messages = []
    handler_id = logger.add(
        lambda message: messages.append(message.record["message"]), level="TRACE"
    )
    yield messages
    logger.remove(handler_id)
