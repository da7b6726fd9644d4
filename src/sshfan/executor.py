"""Parallel command dispatch for sshfan."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from .config import GatewaySpec, RunConfig, build_session_config, parse_gateway
from .session import (
    Done,
    Failure,
    SessionError,
    SessionProvider,
    StderrLine,
    StdoutLine,
    StreamEvent,
    describe_error,
)

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

TIMEOUT_MESSAGE = "timeout while read from stream"


class TargetStatus(Enum):
    """Status of a target's execution."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class FailureReport:
    """One failure attributable to one target."""

    target: str
    message: str

    def __str__(self) -> str:
        return f"[{self.target}] {self.message}"


@dataclass(frozen=True)
class RunOutcome:
    """Whether any target of a run reported a failure."""

    failed: bool = False
    failures: int = 0


# Type aliases for output callbacks
OutputCallback = Callable[[str, str], None]  # (address, line) -> None
StatusCallback = Callable[[str, TargetStatus], None]  # (address, status) -> None
FailureCallback = Callable[[FailureReport], None]


def print_stdout(address: str, line: str) -> None:
    print(f"[{address}] {line}", flush=True)


def print_stderr(address: str, line: str) -> None:
    print(f"[{address}] {line}", file=sys.stderr, flush=True)


def print_failure(report: FailureReport) -> None:
    print(report, file=sys.stderr, flush=True)


def exit_code(outcome: RunOutcome) -> int:
    """Process exit status for a finished run."""
    return EXIT_FAILURE if outcome.failed else EXIT_SUCCESS


class ErrorAggregator:
    """Single consumer of the failure reports of a run.

    Workers hand reports over with ``report()``. ``stop()`` must only be
    called once no worker can report anymore; it waits for every queued
    report to be handled before cancelling the consumer task.
    """

    def __init__(self, on_failure: FailureCallback | None = None):
        self.on_failure = on_failure or print_failure
        self.failed = False
        self.failures = 0
        self._reports: asyncio.Queue[FailureReport] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume())

    async def report(self, report: FailureReport) -> None:
        await self._reports.put(report)

    async def _consume(self) -> None:
        while True:
            report = await self._reports.get()
            try:
                self.failed = True
                self.failures += 1
                self.on_failure(report)
            finally:
                self._reports.task_done()

    async def stop(self) -> RunOutcome:
        """Drain pending reports, cancel the consumer and return the outcome."""
        if self._task is None:
            return self.outcome

        drained = asyncio.ensure_future(self._reports.join())
        try:
            # The consumer only finishes early if a callback raised.
            await asyncio.wait({drained, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            drained.cancel()
            self._task.cancel()
            results = await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

        error = results[0]
        if isinstance(error, Exception):
            raise error
        return self.outcome

    @property
    def outcome(self) -> RunOutcome:
        return RunOutcome(failed=self.failed, failures=self.failures)


class Executor:
    """Runs one command on many targets at once."""

    def __init__(
        self,
        config: RunConfig,
        provider: SessionProvider,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
        on_failure: FailureCallback | None = None,
        on_status: StatusCallback | None = None,
    ):
        self.config = config
        self.provider = provider
        self.on_stdout = on_stdout or print_stdout
        self.on_stderr = on_stderr or print_stderr
        self.on_failure = on_failure or print_failure
        self.on_status = on_status
        self.gateway: GatewaySpec | None = parse_gateway(
            config.gateway, config.user, config.gateway_user_separator
        )
        self._errors: ErrorAggregator | None = None

    def _emit_status(self, address: str, status: TargetStatus) -> None:
        if self.on_status:
            self.on_status(address, status)

    async def _report(self, address: str, message: str) -> None:
        if self._errors is None:
            raise RuntimeError("failures can only be reported while run_all() is running")
        await self._errors.report(FailureReport(address, message))

    async def run_all(self, targets: Iterable[str]) -> RunOutcome:
        """Run the command on all targets in parallel and wait for every one."""
        targets = list(targets)
        self._errors = ErrorAggregator(self.on_failure)
        self._errors.start()
        try:
            results = await asyncio.gather(
                *(self._run_target(address) for address in targets),
                return_exceptions=True,
            )
            for address, result in zip(targets, results):
                if isinstance(result, Exception):
                    logger.error("Worker for %s crashed", address, exc_info=result)
                    self._emit_status(address, TargetStatus.FAILED)
                    await self._report(address, f"error: {describe_error(result)}")
        finally:
            outcome = await self._errors.stop()
        return outcome

    async def _run_target(self, address: str) -> None:
        """Run the command on a single target and report how it ended."""
        logger.debug("execute on %s", address)
        session_config = build_session_config(address, self.config, self.gateway)

        error: BaseException | None = None
        timed_out = False

        self._emit_status(address, TargetStatus.CONNECTING)
        try:
            async with self.provider.stream(
                session_config, self.config.command, self.config.read_timeout
            ) as events:
                self._emit_status(address, TargetStatus.RUNNING)
                error, timed_out = await self._multiplex(address, events)
        except SessionError as e:
            # Raised before streaming starts, or while the session is closed.
            error = e

        if error is not None:
            await self._report(address, f"error: {describe_error(error)}")
        if timed_out:
            await self._report(address, TIMEOUT_MESSAGE)

        failed = error is not None or timed_out
        self._emit_status(address, TargetStatus.FAILED if failed else TargetStatus.SUCCESS)

    async def _multiplex(
        self, address: str, events: asyncio.Queue[StreamEvent]
    ) -> tuple[BaseException | None, bool]:
        """Print output as it arrives until the session is done.

        Returns the last error seen and whether the read timeout expired.
        """
        error: BaseException | None = None
        while True:
            event = await events.get()
            if isinstance(event, Done):
                return error, event.timed_out
            if isinstance(event, StdoutLine):
                if event.text:
                    self.on_stdout(address, event.text)
            elif isinstance(event, StderrLine):
                if event.text:
                    self.on_stderr(address, event.text)
            elif isinstance(event, Failure):
                error = event.error
