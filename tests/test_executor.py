import asyncio

import pytest

from sshfan.config import GatewaySpec, RunConfig
from sshfan.executor import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    ErrorAggregator,
    Executor,
    FailureReport,
    RunOutcome,
    TargetStatus,
    exit_code,
)
from sshfan.session import Done, Failure, SessionError, StderrLine, StdoutLine


def make_executor(provider, recorder, **overrides):
    config = RunConfig(command="uptime", user="deploy", **overrides)
    return Executor(config, provider, **recorder.callbacks())


@pytest.mark.asyncio
async def test_one_failing_and_one_streaming_target(make_provider, recorder, refused):
    provider = make_provider(
        {
            "bad": refused,
            "good": [StdoutLine("one"), StdoutLine("two"), Done()],
        }
    )
    executor = make_executor(provider, recorder)

    outcome = await executor.run_all(["bad", "good:2222"])

    assert recorder.stdout == [("good:2222", "one"), ("good:2222", "two")]
    assert recorder.failures == ["[bad] error: connection refused"]
    assert outcome == RunOutcome(failed=True, failures=1)
    assert exit_code(outcome) == EXIT_FAILURE


@pytest.mark.asyncio
async def test_empty_target_list_succeeds(make_provider, recorder):
    provider = make_provider()
    outcome = await make_executor(provider, recorder).run_all([])

    assert provider.opened == []
    assert exit_code(outcome) == EXIT_SUCCESS


@pytest.mark.asyncio
async def test_all_targets_succeeding(make_provider, recorder):
    provider = make_provider(default=[StdoutLine("ok"), Done()])
    outcome = await make_executor(provider, recorder).run_all(["a", "b", "c"])

    assert sorted(recorder.stdout) == [("a", "ok"), ("b", "ok"), ("c", "ok")]
    assert recorder.failures == []
    assert exit_code(outcome) == EXIT_SUCCESS


@pytest.mark.asyncio
async def test_empty_lines_are_skipped_and_stderr_is_routed(make_provider, recorder):
    provider = make_provider(
        {"h": [StdoutLine(""), StdoutLine("out"), StderrLine(""), StderrLine("warn"), Done()]}
    )
    outcome = await make_executor(provider, recorder).run_all(["h"])

    assert recorder.stdout == [("h", "out")]
    assert recorder.stderr == [("h", "warn")]
    assert not outcome.failed


@pytest.mark.asyncio
async def test_connection_failure_reports_once_without_output(make_provider, recorder, refused):
    provider = make_provider({"h": refused})
    outcome = await make_executor(provider, recorder).run_all(["h"])

    assert recorder.stdout == []
    assert recorder.stderr == []
    assert recorder.failures == ["[h] error: connection refused"]
    assert outcome.failures == 1


@pytest.mark.asyncio
async def test_timeout_after_partial_output(make_provider, recorder):
    provider = make_provider({"slow": [StdoutLine("partial"), Done(timed_out=True)]})
    outcome = await make_executor(provider, recorder).run_all(["slow"])

    assert recorder.stdout == [("slow", "partial")]
    assert recorder.failures == ["[slow] timeout while read from stream"]
    assert exit_code(outcome) == EXIT_FAILURE


@pytest.mark.asyncio
async def test_stream_error_and_timeout_are_both_reported(make_provider, recorder):
    provider = make_provider(
        {"h": [Failure(SessionError("Process exited with status 2")), Done(timed_out=True)]}
    )
    outcome = await make_executor(provider, recorder).run_all(["h"])

    assert recorder.failures == [
        "[h] error: Process exited with status 2",
        "[h] timeout while read from stream",
    ]
    assert outcome.failures == 2


@pytest.mark.asyncio
async def test_stream_error_does_not_stop_output(make_provider, recorder):
    provider = make_provider(
        {
            "h": [
                Failure(OSError("first")),
                StdoutLine("still here"),
                Failure(OSError("second")),
                Done(),
            ]
        }
    )
    await make_executor(provider, recorder).run_all(["h"])

    assert recorder.stdout == [("h", "still here")]
    assert recorder.failures == ["[h] error: second"]


@pytest.mark.asyncio
async def test_statuses_follow_each_target(make_provider, recorder, refused):
    provider = make_provider({"bad": refused, "good": [Done()]})
    await make_executor(provider, recorder).run_all(["bad", "good"])

    bad = [status for address, status in recorder.statuses if address == "bad"]
    good = [status for address, status in recorder.statuses if address == "good"]
    assert bad == [TargetStatus.CONNECTING, TargetStatus.FAILED]
    assert good == [TargetStatus.CONNECTING, TargetStatus.RUNNING, TargetStatus.SUCCESS]


@pytest.mark.asyncio
async def test_gateway_is_parsed_once_and_shared(make_provider, recorder):
    provider = make_provider()
    executor = make_executor(provider, recorder, gateway="alice@shost:2222", key_path="/k")

    await executor.run_all(["a", "b:2200"])

    configs = {config.target.host: config for config, _, _ in provider.opened}
    assert configs["a"].gateway == GatewaySpec(user="alice", host="host", port="2222")
    assert configs["a"].gateway is configs["b"].gateway
    assert configs["b"].target.port == "2200"
    assert configs["a"].target.port == "22"
    assert configs["a"].key_path == "/k"
    assert configs["a"].user == "deploy"


@pytest.mark.asyncio
async def test_command_and_timeouts_reach_the_provider(make_provider, recorder):
    provider = make_provider()
    executor = make_executor(provider, recorder, connect_timeout=3.0, read_timeout=42.0)

    await executor.run_all(["h"])

    config, command, read_timeout = provider.opened[0]
    assert command == "uptime"
    assert read_timeout == 42.0
    assert config.connect_timeout == 3.0


@pytest.mark.asyncio
async def test_unexpected_worker_error_is_reported(make_provider, recorder):
    provider = make_provider({"h": RuntimeError("boom")})
    outcome = await make_executor(provider, recorder).run_all(["h", "ok"])

    assert recorder.failures == ["[h] error: boom"]
    assert outcome.failed


@pytest.mark.asyncio
async def test_no_report_is_dropped_under_load(make_provider, recorder):
    targets = [f"host{i}" for i in range(200)]
    provider = make_provider(
        default=[("sleep", 0.001), Failure(OSError("lost")), Done(timed_out=True)]
    )
    outcome = await make_executor(provider, recorder).run_all(targets)

    assert len(recorder.failures) == 400
    assert outcome.failures == 400
    for target in targets:
        assert f"[{target}] error: lost" in recorder.failures
        assert f"[{target}] timeout while read from stream" in recorder.failures


@pytest.mark.asyncio
async def test_default_sinks_write_prefixed_lines(make_provider, refused, capsys):
    provider = make_provider(
        {"bad": refused, "good": [StdoutLine("one"), StderrLine("oops"), Done()]}
    )
    executor = Executor(RunConfig(command="true", user="u"), provider)

    outcome = await executor.run_all(["bad", "good"])

    captured = capsys.readouterr()
    assert captured.out == "[good] one\n"
    assert "[good] oops\n" in captured.err
    assert "[bad] error: connection refused\n" in captured.err
    assert exit_code(outcome) == EXIT_FAILURE


@pytest.mark.asyncio
async def test_aggregator_stop_without_start():
    aggregator = ErrorAggregator(lambda report: None)
    assert await aggregator.stop() == RunOutcome()


@pytest.mark.asyncio
async def test_aggregator_drains_before_stopping():
    seen = []
    aggregator = ErrorAggregator(seen.append)
    aggregator.start()

    for i in range(50):
        await aggregator.report(FailureReport(f"h{i}", "error: x"))
    outcome = await aggregator.stop()

    assert len(seen) == 50
    assert outcome == RunOutcome(failed=True, failures=50)


@pytest.mark.asyncio
async def test_aggregator_surfaces_callback_errors():
    def explode(report):
        raise RuntimeError("sink closed")

    aggregator = ErrorAggregator(explode)
    aggregator.start()
    await aggregator.report(FailureReport("h", "error: x"))

    with pytest.raises(RuntimeError, match="sink closed"):
        await asyncio.wait_for(aggregator.stop(), timeout=5)


@pytest.mark.asyncio
async def test_reporting_outside_a_run_is_an_error(make_provider, recorder):
    executor = make_executor(make_provider(), recorder)

    with pytest.raises(RuntimeError, match="run_all"):
        await executor._report("web1", "error: x")
