"""
Pytest Configuration and Fixtures for the aiot_mqtt project.

Provides the demo device identity, a matching config dictionary and a
fake `aiomqtt` client so connection tests run without a broker.
"""

import asyncio
import logging
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from aiot_mqtt.models import DeviceIdentity

DEMO_PRODUCT_KEY = "a11xsrWmW14"
DEMO_DEVICE_NAME = "paho_android"
DEMO_DEVICE_SECRET = "tLMT9QWD36U2SArglGqcHCDK9rK9nOrA"


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture
def demo_identity():
    return DeviceIdentity(product_key=DEMO_PRODUCT_KEY,
                          device_name=DEMO_DEVICE_NAME,
                          device_secret=DEMO_DEVICE_SECRET)


@pytest.fixture
def demo_config():
    """Provides a configuration dictionary for the demo device."""
    return {
        "device": {
            "product_key": DEMO_PRODUCT_KEY,
            "device_name": DEMO_DEVICE_NAME,
            "device_secret": DEMO_DEVICE_SECRET,
        },
        "mqtt": {"port": 443, "reconnect_interval": 0},
    }


class FakeMessage:
    def __init__(self, topic, payload):
        self.topic = topic
        self.payload = payload


class FakeMessages:
    """Async iterator standing in for `aiomqtt.Client.messages`; blocks once drained."""

    def __init__(self, messages=()):
        self._messages = list(messages)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._messages:
            return self._messages.pop(0)
        await asyncio.Event().wait()


def make_fake_client(messages=()):
    """Returns (client_class_mock, connected_client_mock)."""
    client = MagicMock()
    client.subscribe = AsyncMock()
    client.publish = AsyncMock()
    client.messages = FakeMessages(messages)

    client_class = MagicMock()
    client_class.return_value.__aenter__.return_value = client
    client_class.return_value.__aexit__.return_value = False
    return client_class, client
