import asyncio
from contextlib import asynccontextmanager

import pytest

from sshfan.session import Done, SessionError


class FakeProvider:
    """Session provider replaying scripted events per target host.

    A script is either an exception (raised when the session is opened) or a
    list of events; ``("sleep", seconds)`` entries pause the replay.
    """

    def __init__(self, scripts=None, default=None):
        self.scripts = scripts or {}
        self.default = default if default is not None else [Done()]
        self.opened = []

    @asynccontextmanager
    async def stream(self, config, command, read_timeout):
        self.opened.append((config, command, read_timeout))
        script = self.scripts.get(config.target.host, self.default)
        if isinstance(script, BaseException):
            raise script

        events = asyncio.Queue()

        async def replay():
            for item in script:
                if isinstance(item, tuple) and item[0] == "sleep":
                    await asyncio.sleep(item[1])
                else:
                    await events.put(item)
            if not script or not isinstance(script[-1], Done):
                await events.put(Done())

        task = asyncio.create_task(replay())
        try:
            yield events
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class Recorder:
    """Collects everything an Executor writes through its callbacks."""

    def __init__(self):
        self.stdout = []
        self.stderr = []
        self.failures = []
        self.statuses = []

    def on_stdout(self, address, line):
        self.stdout.append((address, line))

    def on_stderr(self, address, line):
        self.stderr.append((address, line))

    def on_failure(self, report):
        self.failures.append(str(report))

    def on_status(self, address, status):
        self.statuses.append((address, status))

    def callbacks(self):
        return {
            "on_stdout": self.on_stdout,
            "on_stderr": self.on_stderr,
            "on_failure": self.on_failure,
            "on_status": self.on_status,
        }


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def refused():
    return SessionError("connection refused")


@pytest.fixture
def make_provider():
    return FakeProvider
