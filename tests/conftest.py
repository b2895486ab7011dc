import logging

import pytest


@pytest.fixture(autouse=True)
def reset_logging():
    # CLI invocations install their own handler and stop propagation
    yield
    logger = logging.getLogger('pghaops')
    logger.handlers = []
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
