import asyncio
import inspect
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from pypepro.dispatcher import CommandDispatcher  # noqa: E402
from pypepro.listener import AmplifierListener  # noqa: E402
from pypepro.storage import Database  # noqa: E402

HOST = "http://192.168.1.55"


class FakeResponse:
    def __init__(self, status: int, body: str):
        self.status = status
        self._body = body

    async def text(self):
        return self._body


class _FakeRequest:
    def __init__(self, session: "FakeSession", url: str):
        self._session = session
        self._url = url

    async def __aenter__(self):
        session = self._session
        session.requests.append(self._url)
        session.in_flight += 1
        session.max_in_flight = max(session.max_in_flight, session.in_flight)
        try:
            answer = session.handler(self._url)
            if inspect.isawaitable(answer):
                answer = await answer
            if isinstance(answer, BaseException):
                raise answer
            status, body = answer
        finally:
            session.in_flight -= 1
        return FakeResponse(status, body)

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession.

    `handler(url)` returns (status, body), an exception instance, or an
    awaitable resolving to either.
    """

    def __init__(self, handler=None):
        self.requests: list[str] = []
        self.handler = handler or (lambda url: (200, "OK"))
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    def get(self, url, **kwargs):
        return _FakeRequest(self, url)

    async def close(self):
        self.closed = True

    @property
    def paths(self) -> list[str]:
        return [url[len(HOST):] if url.startswith(HOST) else url for url in self.requests]


class RecordingListener(AmplifierListener):
    def __init__(self):
        self.results = []
        self.hosts = []
        self.found = []
        self.finished = []
        self.started = 0
        self.statuses = []

    def command_completed(self, result):
        self.results.append(result)

    def host_changed(self, host):
        self.hosts.append(host)

    def scan_started(self):
        self.started += 1

    def candidate_found(self, candidate):
        self.found.append(candidate)

    def scan_finished(self, outcome, candidates):
        self.finished.append((outcome, candidates))

    def connection_status_changed(self, status):
        self.statuses.append(status)


async def delayed(answer, seconds: float = 0.01):
    await asyncio.sleep(seconds)
    return answer


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture()
def dispatcher(session, listener) -> CommandDispatcher:
    dispatcher = CommandDispatcher(HOST, session=session, request_timeout=0.2, inter_command_delay=0.0)
    dispatcher.register_listener(listener)
    return dispatcher


@pytest.fixture()
def database():
    database = Database(":memory:")
    yield database
    database.close()
