"""Gateway lifecycle harness: verify that a gateway shuts down cleanly on SIGTERM."""

from gateway_harness.errors import (
    AllocationError,
    HarnessError,
    ProcessExitedEarlyError,
    ScenarioTimeoutError,
    SpawnError,
    TimedOutError,
    UnexpectedExitError,
)
from gateway_harness.models import HarnessConfig, ScenarioResult
from gateway_harness.scenario import run_gateway_scenario, run_gateway_scenario_sync

__all__ = [
    "AllocationError",
    "HarnessConfig",
    "HarnessError",
    "ProcessExitedEarlyError",
    "ScenarioResult",
    "ScenarioTimeoutError",
    "SpawnError",
    "TimedOutError",
    "UnexpectedExitError",
    "run_gateway_scenario",
    "run_gateway_scenario_sync",
]
