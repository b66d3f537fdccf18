"""Shared fixtures for unit tests."""

import logging

import pytest

from basichttp.domain.correlation_id import LOGGER_ROOT, clear_correlation_id


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them."""
    logger = logging.getLogger(LOGGER_ROOT)
    old_propagate = logger.propagate
    logger.propagate = True
    yield
    logger.propagate = old_propagate


@pytest.fixture(autouse=True)
def reset_correlation_id():
    """Keep correlation ids from leaking between tests."""
    clear_correlation_id()
    yield
    clear_correlation_id()
