"""
Pytest Configuration and Fixtures for the pubsub_probe project.

This module provides an in-memory stand-in for the broker so the Probe Loop
can be exercised without a network: every `FakeSession` created by a
`FakeBroker` receives what any session publishes on a topic it subscribed to,
exactly like a shared MQTT topic.
"""

import asyncio
import sys
import logging
from collections import deque
from typing import List

import pytest

from pubsub_probe.errors import ReadTimeout
from pubsub_probe.probe.models import ReceivedMessage


class FakeSession:
    def __init__(self, broker: "FakeBroker", number: int):
        self.broker = broker
        self.number = number
        self.topics: List[str] = []
        self.inbox: deque = deque()
        self.closed = False

    async def subscribe(self, topic: str) -> None:
        self.broker.calls.append(("subscribe", topic))
        if self.broker.subscribe_errors:
            raise self.broker.subscribe_errors.popleft()
        self.topics.append(topic)

    async def publish(self, topic: str, payload: bytes) -> None:
        self.broker.calls.append(("publish", topic, payload))
        if self.broker.publish_errors:
            raise self.broker.publish_errors.popleft()
        if self.broker.echo:
            self.broker.deliver(topic, payload)

    async def read(self) -> ReceivedMessage:
        self.broker.calls.append(("read",))
        if self.broker.read_script:
            item = self.broker.read_script.popleft()
            if isinstance(item, Exception):
                raise item
            return ReceivedMessage(topic="scripted", body=item)

        # Poll the inbox until the simulated read timeout runs out
        deadline = asyncio.get_running_loop().time() + self.broker.read_wait
        while not self.inbox:
            if asyncio.get_running_loop().time() >= deadline:
                raise ReadTimeout(self.broker.read_wait)
            await asyncio.sleep(0.001)
        return self.inbox.popleft()

    async def close(self) -> None:
        self.closed = True


class FakeBroker:
    """
    Records every call in order in `calls`. Queue exceptions on the
    `*_errors` deques to make the next matching operation fail, and bytes or
    exceptions on `read_script` to control what `read()` returns before the
    inbox is consulted.
    """
    def __init__(self, echo: bool = True, read_wait: float = 0.02):
        self.echo = echo
        self.read_wait = read_wait
        self.calls: list = []
        self.sessions: List[FakeSession] = []
        self.connect_errors: deque = deque()
        self.subscribe_errors: deque = deque()
        self.publish_errors: deque = deque()
        self.read_script: deque = deque()

    async def connect(self, authentication_key: str) -> FakeSession:
        self.calls.append(("connect", authentication_key))
        if self.connect_errors:
            raise self.connect_errors.popleft()
        session = FakeSession(self, len(self.sessions))
        self.sessions.append(session)
        return session

    def deliver(self, topic: str, payload: bytes):
        for session in self.sessions:
            if not session.closed and topic in session.topics:
                session.inbox.append(ReceivedMessage(topic=topic, body=payload))

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def published(self) -> List[bytes]:
        return [call[2] for call in self.calls if call[0] == "publish"]


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def silent_broker() -> FakeBroker:
    """A broker that accepts everything and never replies."""
    return FakeBroker(echo=False)


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
