"""Remote session provider for sshfan.

A provider opens one SSH session per target, submits the command and turns
the running process into a stream of events:

- ``StdoutLine`` / ``StderrLine`` for every line the command writes,
- ``Failure`` for transport errors and unsuccessful exits,
- ``Done`` exactly once, always last, telling whether the read timeout hit.

The events of one session share a single queue, so a consumer simply takes
whichever event is ready next.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, AsyncIterator, Protocol, Union

import asyncssh

from .config import GatewaySpec, SessionConfig

logger = logging.getLogger(__name__)

# Lines held between the remote readers and the consumer before readers wait.
STREAM_BUFFER_LINES = 256

_SESSION_ERRORS = (asyncssh.Error, OSError, asyncio.TimeoutError, ValueError)
_STREAM_ERRORS = (asyncssh.Error, OSError)


class SessionError(Exception):
    """A session could not be established or the command not submitted."""


@dataclass(frozen=True)
class StdoutLine:
    text: str


@dataclass(frozen=True)
class StderrLine:
    text: str


@dataclass(frozen=True)
class Done:
    timed_out: bool = False


@dataclass(frozen=True)
class Failure:
    error: BaseException


StreamEvent = Union[StdoutLine, StderrLine, Done, Failure]


class SessionProvider(Protocol):
    """Anything able to run a command on one target and stream its events."""

    def stream(
        self, config: SessionConfig, command: str, read_timeout: float
    ) -> AsyncContextManager[asyncio.Queue[StreamEvent]]:
        ...


@dataclass(frozen=True)
class AuthOptions:
    """Authentication hints handed through to asyncssh as-is."""

    password: str | None = None
    passphrase: str | None = None
    use_agent: bool = True


def describe_error(exc: BaseException) -> str:
    """Human readable text for an exception, never empty."""
    if isinstance(exc, asyncssh.Error) and exc.reason:
        return exc.reason
    if isinstance(exc, asyncio.TimeoutError):
        return "connection timed out"
    return str(exc) or type(exc).__name__


class AsyncSSHProvider:
    """Session provider backed by asyncssh."""

    def __init__(self, auth: AuthOptions | None = None):
        self.auth = auth or AuthOptions()

    def _common_options(self, config: SessionConfig) -> dict[str, Any]:
        options: dict[str, Any] = {
            "known_hosts": None,  # Skip host key verification for simplicity
            "connect_timeout": config.connect_timeout or None,
        }
        if config.key_path:
            options["client_keys"] = [config.key_path]
        if self.auth.password is not None:
            options["password"] = self.auth.password
        if self.auth.passphrase is not None:
            options["passphrase"] = self.auth.passphrase
        if not self.auth.use_agent:
            options["agent_path"] = None
        return options

    def target_options(self, config: SessionConfig) -> dict[str, Any]:
        """Keyword arguments for ``asyncssh.connect`` to the target."""
        return {
            "host": config.target.host,
            "port": _port_number(config.target.port),
            "username": config.user,
            **self._common_options(config),
        }

    def gateway_options(self, config: SessionConfig, gateway: GatewaySpec) -> dict[str, Any]:
        """Keyword arguments for ``asyncssh.connect`` to the jump host."""
        return {
            "host": gateway.host,
            "port": _port_number(gateway.port),
            "username": gateway.user,
            **self._common_options(config),
        }

    @asynccontextmanager
    async def stream(
        self, config: SessionConfig, command: str, read_timeout: float
    ) -> AsyncIterator[asyncio.Queue[StreamEvent]]:
        """Open a session, submit ``command`` and yield its event queue.

        Raises SessionError when the session cannot be opened or the command
        cannot be submitted.
        """
        try:
            async with AsyncExitStack() as stack:
                tunnel = None
                if config.gateway is not None:
                    gateway = config.gateway
                    logger.debug(
                        "Connecting to gateway %s@%s:%s", gateway.user, gateway.host, gateway.port
                    )
                    tunnel = await stack.enter_async_context(
                        asyncssh.connect(**self.gateway_options(config, gateway))
                    )

                logger.debug(
                    "Connecting to %s@%s:%s", config.user, config.target.host, config.target.port
                )
                conn = await stack.enter_async_context(
                    asyncssh.connect(tunnel=tunnel, **self.target_options(config))
                )
                proc = await stack.enter_async_context(
                    conn.create_process(command, encoding="utf-8", errors="replace")
                )

                events: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize=STREAM_BUFFER_LINES)
                pump = asyncio.create_task(pump_process(proc, events, read_timeout))
                try:
                    yield events
                finally:
                    if not pump.done():
                        pump.cancel()
                    await asyncio.gather(pump, return_exceptions=True)
        except _SESSION_ERRORS as e:
            raise SessionError(describe_error(e)) from e


def _port_number(port: str) -> int:
    try:
        return int(port)
    except ValueError:
        raise ValueError(f"invalid port {port!r}") from None


async def pump_process(proc: Any, events: asyncio.Queue[StreamEvent], read_timeout: float) -> None:
    """Feed the events of a running process into ``events``.

    ``proc`` needs ``stdout``/``stderr`` readers with ``readline()``, an
    awaitable ``wait()``, ``exit_status``, ``exit_signal`` and ``close()``.
    ``Done`` is always the last event put on the queue.
    """
    timed_out = False
    try:
        await asyncio.wait_for(_drain(proc, events), timeout=read_timeout)
    except asyncio.TimeoutError:
        timed_out = True
        proc.close()
    except _STREAM_ERRORS as e:
        await events.put(Failure(e))
    await events.put(Done(timed_out=timed_out))


async def _drain(proc: Any, events: asyncio.Queue[StreamEvent]) -> None:
    readers = [
        asyncio.ensure_future(_read_lines(proc.stdout, StdoutLine, events)),
        asyncio.ensure_future(_read_lines(proc.stderr, StderrLine, events)),
    ]
    try:
        await asyncio.gather(*readers)
    finally:
        for reader in readers:
            reader.cancel()

    await proc.wait()
    error = _exit_error(proc)
    if error is not None:
        await events.put(Failure(error))


async def _read_lines(stream: Any, event_type: type, events: asyncio.Queue[StreamEvent]) -> None:
    while True:
        line = await stream.readline()
        if not line:
            break
        await events.put(event_type(line.rstrip("\n\r")))


def _exit_error(proc: Any) -> SessionError | None:
    if proc.exit_status not in (None, 0):
        return SessionError(f"Process exited with status {proc.exit_status}")
    if proc.exit_signal:
        return SessionError(f"Process exited with signal {proc.exit_signal[0]}")
    return None
