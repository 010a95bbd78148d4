# tests/conftest.py
import itertools

import pytest

from chessmaster.config.settings import LobbySettings
from chessmaster.core.rules import RulesEngine
from chessmaster.lobby.registry import LobbyRegistry


class FakeConnection:
    """An in-memory `Connection` that records everything sent to it."""

    _ids = itertools.count(1)

    def __init__(self):
        self.connection_id = f"conn-{next(self._ids)}"
        self.participant_id = None
        self.sent = []
        self.closed = False

    @property
    def is_open(self):
        return not self.closed

    def send(self, payload):
        self.sent.append(payload)

    def close(self):
        self.closed = True

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]

    def last(self, message_type=None):
        messages = self.of_type(message_type) if message_type else self.sent
        return messages[-1] if messages else None


class ManualScheduler:
    """A `TaskScheduler` whose callbacks only run when a test fires them."""

    def __init__(self):
        self.pending = {}

    def schedule(self, key, delay_s, callback):
        self.pending[key] = (delay_s, callback)

    def cancel(self, key):
        return self.pending.pop(key, None) is not None

    def is_pending(self, key):
        return key in self.pending

    def fire(self, key):
        _, callback = self.pending.pop(key)
        callback()


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def completed_records():
    return []


@pytest.fixture
def lobby_settings():
    return LobbySettings()


@pytest.fixture
def registry(scheduler, clock, completed_records, lobby_settings):
    return LobbyRegistry(
        RulesEngine(), lobby_settings, scheduler,
        completion_sink=completed_records.append, clock=clock,
    )


@pytest.fixture
def new_connection():
    return FakeConnection
