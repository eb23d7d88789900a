"""Shared fixtures for the gateway_harness test suite."""

from __future__ import annotations

import os
from pathlib import Path
import sys
import time
from typing import Any
from unittest.mock import MagicMock

from gateway_harness.models import (
    DiagnosticSnapshot,
    EventKind,
    ExitOutcome,
    GracefulReason,
    HarnessConfig,
    ScenarioEvent,
    ScenarioResult,
)
import pytest

FAKE_GATEWAY = Path(__file__).parent / "fake_gateway.py"

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_config(behavior: str = "graceful", **overrides: Any) -> HarnessConfig:
    """Build a HarnessConfig that launches the fake gateway.

    Args:
        behavior: ``FAKE_GATEWAY_BEHAVIOR`` for the fake gateway.
        **overrides: Field values to override.

    Returns:
        A fully constructed HarnessConfig instance.
    """
    defaults: dict[str, Any] = {
        "executable": sys.executable,
        "runtime_args": (),
        "entry": str(FAKE_GATEWAY),
        "ready_timeout_seconds": 20.0,
        "scenario_timeout_seconds": 40.0,
        "extra_env": {"FAKE_GATEWAY_BEHAVIOR": behavior},
    }
    defaults.update(overrides)
    return HarnessConfig(**defaults)


def make_result(**overrides: Any) -> ScenarioResult:
    """Build a valid ScenarioResult with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed ScenarioResult instance.
    """
    defaults: dict[str, Any] = {
        "port": 40123,
        "pid": 4242,
        "outcome": ExitOutcome(exit_code=0, signal=None),
        "reason": GracefulReason.EXIT_CODE,
        "diagnostics": DiagnosticSnapshot(stdout="listening\n", stderr=""),
        "events": tuple(
            ScenarioEvent(kind=kind, at_seconds=float(i))
            for i, kind in enumerate(EventKind)
        ),
        "ready_after_seconds": 0.5,
        "duration_seconds": 1.5,
    }
    defaults.update(overrides)
    return ScenarioResult(**defaults)


class StubProcess:
    """Minimal stand-in for ``GatewayProcess`` used by poller/verifier tests."""

    def __init__(
        self,
        outcome: ExitOutcome | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        self.pid = 4242
        self.outcome = outcome
        self.output = MagicMock()
        self.output.snapshot.return_value = DiagnosticSnapshot(stdout=stdout, stderr=stderr)


def wait_until_gone(pid: int, timeout: float = 5.0) -> bool:
    """Whether *pid* disappears, or is left a zombie for init, within *timeout*."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            stat = Path(f"/proc/{pid}/stat").read_text()
        except OSError:
            stat = ""
        if stat.rsplit(")", 1)[-1].split()[:1] == ["Z"]:
            return True
        time.sleep(0.05)
    return False


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_gateway_path() -> Path:
    """Return the path to the fake gateway script."""
    return FAKE_GATEWAY


@pytest.fixture()
def clean_harness_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every ``GATEWAY_HARNESS_*`` variable for the duration of a test."""
    for name in list(os.environ):
        if name.startswith("GATEWAY_HARNESS_"):
            monkeypatch.delenv(name)
