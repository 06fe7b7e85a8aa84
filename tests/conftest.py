"""Global pytest configuration and fixtures."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from purgeman.config import Settings
from purgeman.observability.metrics import get_metrics


@pytest.fixture(autouse=True)
def fresh_metrics() -> Iterator[None]:
    """Give every test its own metrics registry."""
    get_metrics().reset()
    yield


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    """Undo handler and level changes made by logging setup under test."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def settings() -> Settings:
    """Complete, valid settings pointing at unreachable test hosts."""
    return Settings.model_validate(
        {
            "amqp_host": "amqp.test",
            "amqp_vhost": "/irods",
            "amqp_exchange": "irods",
            "amqp_username": "purgeman",
            "amqp_password": "amqp-secret",
            "irods_host": "irods.test",
            "irods_username": "rods",
            "irods_password": "irods-secret",
            "irods_zone": "tempZone",
            "varnish_urls": ["http://a/", "http://b/"],
            "varnish_hosts_override": ["", "cache-b.internal"],
            "retry_interval": 0.01,
        }
    )
