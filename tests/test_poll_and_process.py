import pytest

import poll_and_process
from conftest import VALID_ENV, FakePoller, FakeProcessor
from utils.services import Services
from utils.settings import ConfigError, load_settings
from utils.ticket_processor import ProcessingOutcome


@pytest.fixture
def runner(monkeypatch):
    """Patch the runner's wiring; returns the services it will use."""
    settings = load_settings(VALID_ENV)
    services = Services(settings, FakePoller(), FakeProcessor())
    monkeypatch.setattr(poll_and_process, "load_settings", lambda: settings)
    monkeypatch.setattr(poll_and_process, "build_services", lambda s: services)
    monkeypatch.setattr(poll_and_process, "_install_signal_handlers", lambda stop: None)
    monkeypatch.delenv("LAST_POLL_TIMESTAMP", raising=False)
    return services


@pytest.mark.asyncio
async def test_config_error_exits_1(monkeypatch):
    def broken():
        raise ConfigError("Invalid environment configuration:\nDATABASE_URL: Field required")

    monkeypatch.setattr(poll_and_process, "load_settings", broken)
    assert await poll_and_process.run() == 1


@pytest.mark.asyncio
async def test_clean_run_exits_0(runner, monkeypatch):
    monkeypatch.setenv("LAST_POLL_TIMESTAMP", "2025-03-01T00:00:00Z")
    runner.poller.ids = ["t-1", "t-2"]
    runner.processor.outcomes = {"t-1": ProcessingOutcome.PROCESSED, "t-2": ProcessingOutcome.NEEDS_REVIEW}

    assert await poll_and_process.run() == 0
    [call] = runner.poller.calls
    assert call["since"].isoformat() == "2025-03-01T00:00:00+00:00"
    assert call["limit"] == 100


@pytest.mark.asyncio
async def test_any_failed_ticket_exits_1(runner):
    runner.poller.ids = ["t-1", "t-2"]
    runner.processor.outcomes = {"t-1": ProcessingOutcome.PROCESSED, "t-2": RuntimeError("upload failed")}
    assert await poll_and_process.run() == 1
    assert sorted(runner.processor.seen) == ["t-1", "t-2"]


@pytest.mark.asyncio
async def test_poll_failure_exits_1(runner):
    runner.poller.error = RuntimeError("events feed down")
    assert await poll_and_process.run() == 1
    assert runner.processor.seen == []
