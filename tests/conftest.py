import logging

import pytest


@pytest.fixture(autouse=True)
def reset_cardrescue_logger():
    """setup_logging attaches handlers to the package logger; drop them after each test"""
    yield
    logger = logging.getLogger("cardrescue")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
