"""End-to-end scenario tests against the fake gateway.

Each test launches ``tests/fake_gateway.py`` through the real harness
(port allocation, config file, environment, spawn, readiness polling,
SIGTERM and exit classification) and checks the verdict, the diagnostics
and that no process or state directory outlives the scenario.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
import re
import signal
import sys
import time
from typing import Any
from unittest.mock import patch

from gateway_harness import scenario as scenario_mod
from gateway_harness.errors import (
    AllocationError,
    ProcessExitedEarlyError,
    ScenarioTimeoutError,
    SpawnError,
    TimedOutError,
    UnexpectedExitError,
)
from gateway_harness.launcher import GatewayProcess
from gateway_harness.models import EventKind, ExitOutcome, GracefulReason, HarnessConfig
from gateway_harness.scenario import (
    apply_env_overrides,
    configure_logging,
    run_gateway_scenario,
    run_gateway_scenario_sync,
)
import pytest

from tests.conftest import make_config, wait_until_gone

_MODULE = "gateway_harness.scenario"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")


class _Spy:
    """Record the process and state directory a scenario creates."""

    def __init__(self) -> None:
        self.processes: list[GatewayProcess] = []
        self.state_dirs: list[Path] = []

    def patches(self) -> tuple[Any, Any]:
        real_spawn = scenario_mod.spawn_gateway
        real_prepare = scenario_mod.prepare_state_dir

        async def spawn(*args: Any, **kwargs: Any) -> GatewayProcess:
            process = await real_spawn(*args, **kwargs)
            self.processes.append(process)
            return process

        def prepare(config: HarnessConfig) -> Path:
            path = real_prepare(config)
            self.state_dirs.append(path)
            return path

        return (
            patch(f"{_MODULE}.spawn_gateway", side_effect=spawn),
            patch(f"{_MODULE}.prepare_state_dir", side_effect=prepare),
        )

    def assert_cleaned_up(self, *extra_pids: int) -> None:
        for process in self.processes:
            assert process.outcome is not None
            with pytest.raises(ProcessLookupError):
                os.kill(process.pid, 0)
        for pid in extra_pids:
            assert wait_until_gone(pid), f"pid {pid} outlived the scenario"
        for path in self.state_dirs:
            assert not path.exists()


async def _run_spied(config: HarnessConfig) -> tuple[Any, _Spy]:
    spy = _Spy()
    spawn_patch, prepare_patch = spy.patches()
    with spawn_patch, prepare_patch:
        try:
            result = await run_gateway_scenario(config)
        except Exception as exc:  # noqa: BLE001
            return exc, spy
    return result, spy


# ===========================================================================
# Graceful shutdown
# ===========================================================================


@pytest.mark.integration
@posix_only
class TestGracefulScenarios:
    """Gateways that honour SIGTERM pass."""

    async def test_trapped_sigterm_exit_zero(self) -> None:
        result, spy = await _run_spied(make_config("graceful"))
        assert not isinstance(result, Exception), str(result)
        assert result.outcome == ExitOutcome(exit_code=0, signal=None)
        assert result.reason is GracefulReason.EXIT_CODE
        assert f"listening on 127.0.0.1:{result.port}" in result.diagnostics.stdout
        assert "received SIGTERM" in result.diagnostics.stdout
        spy.assert_cleaned_up()

    async def test_default_disposition_killed_by_sigterm(self) -> None:
        result, spy = await _run_spied(make_config("default"))
        assert not isinstance(result, Exception), str(result)
        assert result.outcome == ExitOutcome(exit_code=None, signal=signal.SIGTERM)
        assert result.reason is GracefulReason.SIGNAL
        spy.assert_cleaned_up()

    async def test_helper_holding_stdio_does_not_delay_exit(self) -> None:
        config = make_config("helper")
        result, spy = await _run_spied(config)
        assert not isinstance(result, Exception), str(result)
        assert result.outcome == ExitOutcome(exit_code=0, signal=None)
        assert result.reason is GracefulReason.EXIT_CODE
        exited = next(e for e in result.events if e.kind is EventKind.EXITED)
        signalled = next(e for e in result.events if e.kind is EventKind.SIGNAL_SENT)
        assert exited.at_seconds - signalled.at_seconds < 5.0
        assert result.duration_seconds < config.scenario_timeout_seconds / 2
        match = re.search(r"helper pid (\d+)", result.diagnostics.stdout)
        assert match is not None, result.diagnostics.stdout
        spy.assert_cleaned_up(int(match.group(1)))

    async def test_ready_strictly_before_signal(self) -> None:
        result = await run_gateway_scenario(make_config("graceful"))
        kinds = result.event_kinds()
        assert kinds == [
            EventKind.PORT_ALLOCATED,
            EventKind.SPAWNED,
            EventKind.READY,
            EventKind.SIGNAL_SENT,
            EventKind.EXITED,
            EventKind.CLEANUP,
        ]
        times = [event.at_seconds for event in result.events]
        assert times == sorted(times)
        spawned, ready = result.events[1], result.events[2]
        assert result.ready_after_seconds == pytest.approx(
            ready.at_seconds - spawned.at_seconds
        )

    async def test_silent_gateway_gives_empty_output(self) -> None:
        result = await run_gateway_scenario(make_config("silent"))
        assert result.diagnostics.stdout == ""
        assert result.diagnostics.stderr == ""

    async def test_keep_state_dir(self) -> None:
        result, spy = await _run_spied(make_config("graceful", keep_state_dir=True))
        assert not isinstance(result, Exception), str(result)
        (state_dir,) = spy.state_dirs
        try:
            assert (state_dir / "clawdbot.json").is_file()
        finally:
            for child in state_dir.iterdir():
                child.unlink()
            state_dir.rmdir()

    def test_sync_wrapper(self) -> None:
        result = run_gateway_scenario_sync(make_config("graceful"))
        assert result.reason is GracefulReason.EXIT_CODE


# ===========================================================================
# Failures
# ===========================================================================


@pytest.mark.integration
@posix_only
class TestFailingScenarios:
    """Every failure carries diagnostics and still cleans up."""

    async def test_nonzero_exit_after_sigterm(self) -> None:
        err, spy = await _run_spied(make_config("exit-code"))
        assert isinstance(err, UnexpectedExitError)
        assert err.outcome == ExitOutcome(exit_code=3, signal=None)
        assert err.diagnostics is not None
        assert "listening on" in err.diagnostics.stdout
        assert "shutdown failed" in err.diagnostics.stderr
        text = str(err)
        assert "--- stdout ---" in text
        assert "--- stderr ---" in text
        spy.assert_cleaned_up()

    async def test_crash_before_listening_fails_fast(self) -> None:
        config = make_config(
            "crash", ready_timeout_seconds=30.0, scenario_timeout_seconds=60.0
        )
        start = time.monotonic()
        err, spy = await _run_spied(config)
        elapsed = time.monotonic() - start
        assert isinstance(err, ProcessExitedEarlyError)
        assert err.outcome == ExitOutcome(exit_code=2, signal=None)
        assert elapsed < 15.0
        assert err.diagnostics is not None
        assert "starting" in err.diagnostics.stdout
        assert "boom" in err.diagnostics.stderr
        spy.assert_cleaned_up()

    async def test_never_listening_times_out_on_probed_port(self) -> None:
        config = make_config("never-listen", ready_timeout_seconds=1.0)
        err, spy = await _run_spied(config)
        assert isinstance(err, TimedOutError)
        assert f"port {err.port}" in str(err)
        assert err.diagnostics is not None
        spy.assert_cleaned_up()

    async def test_ignored_sigterm_hits_scenario_timeout(self) -> None:
        config = make_config(
            "ignore", ready_timeout_seconds=10.0, scenario_timeout_seconds=4.0
        )
        err, spy = await _run_spied(config)
        assert isinstance(err, ScenarioTimeoutError)
        assert "SIGTERM" in err.stage
        assert err.diagnostics is not None
        assert "listening on" in err.diagnostics.stdout
        spy.assert_cleaned_up()
        (process,) = spy.processes
        assert process.outcome == ExitOutcome(exit_code=None, signal=signal.SIGKILL)

    async def test_missing_executable(self, tmp_path: Path) -> None:
        config = make_config(executable=str(tmp_path / "no-such-runtime"))
        err, spy = await _run_spied(config)
        assert isinstance(err, SpawnError)
        assert err.diagnostics is None
        assert spy.processes == []
        spy.assert_cleaned_up()

    async def test_allocation_failure_is_fatal(self) -> None:
        with (
            patch(f"{_MODULE}.allocate_port", side_effect=AllocationError("no port")),
            patch(f"{_MODULE}.spawn_gateway") as spawn,
            pytest.raises(AllocationError),
        ):
            await run_gateway_scenario(make_config())
        spawn.assert_not_called()


# ===========================================================================
# Environment overrides
# ===========================================================================


@pytest.mark.unit
@pytest.mark.usefixtures("clean_harness_env")
class TestApplyEnvOverrides:
    """GATEWAY_HARNESS_* variables override defaults only."""

    def test_no_env_returns_same_object(self) -> None:
        config = HarnessConfig()
        assert apply_env_overrides(config) is config

    def test_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_HARNESS_ENTRY", "dist/entry.js")
        monkeypatch.setenv("GATEWAY_HARNESS_EXECUTABLE", "/opt/node")
        monkeypatch.setenv("GATEWAY_HARNESS_READY_TIMEOUT", "60")
        monkeypatch.setenv("GATEWAY_HARNESS_CWD", "/srv/gateway")
        config = apply_env_overrides(HarnessConfig())
        assert config.entry == "dist/entry.js"
        assert config.executable == "/opt/node"
        assert config.ready_timeout_seconds == 60.0
        assert config.working_dir == "/srv/gateway"

    def test_explicit_values_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_HARNESS_ENTRY", "dist/entry.js")
        config = apply_env_overrides(HarnessConfig(entry="custom.ts"))
        assert config.entry == "custom.ts"

    @pytest.mark.parametrize("raw", ["soon", "0", "-5"])
    def test_invalid_timeout_ignored(self, raw: str, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEWAY_HARNESS_READY_TIMEOUT", raw)
        assert apply_env_overrides(HarnessConfig()).ready_timeout_seconds == 150.0


# ===========================================================================
# Logging
# ===========================================================================


@pytest.mark.unit
class TestConfigureLogging:
    """configure_logging is idempotent and honours log_level/log_file."""

    @pytest.fixture(autouse=True)
    def _reset_logger(self) -> Any:
        harness_logger = logging.getLogger("gateway_harness")
        saved = list(harness_logger.handlers), harness_logger.level
        harness_logger.handlers.clear()
        yield
        for handler in harness_logger.handlers:
            handler.close()
        harness_logger.handlers[:] = saved[0]
        harness_logger.setLevel(saved[1])

    def test_sets_level(self) -> None:
        configure_logging(HarnessConfig(log_level="DEBUG"))
        assert logging.getLogger("gateway_harness").level == logging.DEBUG

    def test_no_duplicate_handlers(self) -> None:
        configure_logging(HarnessConfig())
        configure_logging(HarnessConfig())
        assert len(logging.getLogger("gateway_harness").handlers) == 1

    def test_file_handler(self, tmp_path: Path) -> None:
        log_file = tmp_path / "harness.log"
        configure_logging(HarnessConfig(log_file=str(log_file)))
        configure_logging(HarnessConfig(log_file=str(log_file)))
        handlers = logging.getLogger("gateway_harness").handlers
        assert sum(isinstance(h, logging.FileHandler) for h in handlers) == 1
        logging.getLogger("gateway_harness.scenario").info("hello")
        for handler in handlers:
            handler.flush()
        assert "hello" in log_file.read_text(encoding="utf-8")

    def test_console_and_file_handlers_coexist(self, tmp_path: Path) -> None:
        log_file = tmp_path / "harness.log"
        for _ in range(3):
            configure_logging(HarnessConfig(log_file=str(log_file)))
        handlers = logging.getLogger("gateway_harness").handlers
        assert len(handlers) == 2
        assert sum(type(h) is logging.StreamHandler for h in handlers) == 1
