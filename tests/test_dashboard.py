import pytest

from sshfan.config import RunConfig
from sshfan.dashboard import Dashboard, StatusBar
from sshfan.executor import TargetStatus
from sshfan.session import Done, StderrLine, StdoutLine


@pytest.mark.asyncio
async def test_dashboard_runs_the_dispatch(make_provider, refused):
    provider = make_provider(
        {"bad": refused, "good": [StdoutLine("one"), StderrLine("warn"), Done()]}
    )
    app = Dashboard(RunConfig(command="uptime", user="deploy"), provider, ["bad", "good", "good"])

    async with app.run_test() as pilot:
        await app.workers.wait_for_complete()
        await pilot.pause()

        assert set(app.panels) == {"bad", "good"}
        assert app.panels["bad"].status == TargetStatus.FAILED
        assert app.query_one("#status-bar", StatusBar).total == 3

    assert app.outcome is not None
    assert app.outcome.failed
    assert app.outcome.failures == 1
