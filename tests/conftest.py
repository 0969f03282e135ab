"""Shared fixtures: a controllable clock, an in-memory store and fake collaborators."""

import json

import pytest

from reqgate.audit import AuditSink
from reqgate.config import PipelineConfig
from reqgate.errors import TransportFailure
from reqgate.models.records import Response
from reqgate.pipeline import RequestPipeline
from reqgate.store.memory import MemoryStore
from reqgate.transport.base import Transport

T0 = 1_760_000_000.0  # 2025-10-09T08:53:20Z


class FakeClock:
    """Manually advanced wall clock; also usable as the pipeline's ``sleep``."""

    def __init__(self, start: float = T0):
        self.now = start
        self.slept = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


class ScriptedTransport(Transport):
    """Returns queued responses (or raises queued exceptions) and records every call."""

    def __init__(self, default: Response | None = None):
        self.queue = []
        self.calls = []
        self.default = default or Response(status=200, headers={"Content-Type": "application/json"}, body=b'{"ok": true}')

    def reply(self, status=200, body=None, headers=None):
        if body is None:
            body = b""
        elif not isinstance(body, bytes):
            body = json.dumps(body).encode("utf-8")
        self.queue.append(Response(status=status, headers=dict(headers or {}), body=body))
        return self

    def fail(self, message="connection refused"):
        self.queue.append(TransportFailure(message))
        return self

    def execute(self, method, url, headers, body, timeout):
        self.calls.append({"method": method, "url": url, "headers": dict(headers), "body": body, "timeout": timeout})
        item = self.queue.pop(0) if self.queue else self.default
        if isinstance(item, Exception):
            raise item
        return Response(status=item.status, headers=dict(item.headers), body=item.body)


class RecordingAudit(AuditSink):
    def __init__(self):
        self.successes = []
        self.errors = []

    def record_success(self, url, method, headers, payload, status, body, elapsed):
        self.successes.append({"url": url, "method": method, "status": status, "payload": payload})

    def record_error(self, url, method, headers, payload, error_message, elapsed):
        self.errors.append({"url": url, "method": method, "error": error_message})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def make_pipeline(store, transport, audit, clock):
    def _make(**overrides) -> RequestPipeline:
        config = PipelineConfig().fork(**overrides)
        return RequestPipeline(config, store, transport, audit, clock=clock, sleep=clock.sleep)

    return _make
