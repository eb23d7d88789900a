"""Scenario driver: start the gateway, wait for it to listen, SIGTERM it, verify.

Provides ``run_gateway_scenario()`` (async) and
``run_gateway_scenario_sync()`` (sync wrapper) as the top-level entry
points. Each run gets its own port and state directory. Whatever happens,
a still-running gateway is force-killed and the state directory removed
before the result or error reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import shutil
import time
from typing import TYPE_CHECKING, Any

from gateway_harness.errors import HarnessError, ScenarioTimeoutError
from gateway_harness.launcher import (
    GatewayProcess,
    build_effective_argv,
    build_gateway_args,
    build_gateway_env,
    prepare_state_dir,
    spawn_gateway,
    write_gateway_config,
)
from gateway_harness.models import (
    DiagnosticSnapshot,
    EventKind,
    HarnessConfig,
    ScenarioEvent,
    ScenarioResult,
)
from gateway_harness.ports import allocate_port
from gateway_harness.readiness import wait_for_ready
from gateway_harness.shutdown import verify_graceful_shutdown

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "GATEWAY_HARNESS_EXECUTABLE": "executable",
    "GATEWAY_HARNESS_ENTRY": "entry",
    "GATEWAY_HARNESS_CWD": "working_dir",
    "GATEWAY_HARNESS_READY_TIMEOUT": "ready_timeout_seconds",
    "GATEWAY_HARNESS_LOG_LEVEL": "log_level",
}
"""Maps environment variable names to HarnessConfig field names."""


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Apply ``GATEWAY_HARNESS_*`` env var overrides to a config.

    Environment variables override **default** field values but do **not**
    override values that differ from the ``HarnessConfig`` default.
    Unparsable numeric values are ignored.

    Args:
        config: The harness configuration to apply overrides to.

    Returns:
        A new ``HarnessConfig`` with env var overrides applied.
    """
    defaults = HarnessConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        if getattr(config, field_name) != getattr(defaults, field_name):
            continue
        parsed = _parse_env_value(field_name, env_value)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config

    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse a raw env var string for *field_name*, or ``None`` if invalid."""
    if field_name == "ready_timeout_seconds":
        try:
            value = float(raw)
        except ValueError:
            return None
        return value if value > 0 else None
    return raw or None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


def _attach_once(
    target: logging.Logger,
    make: Callable[[], logging.Handler],
    present: Callable[[logging.Handler], bool],
) -> None:
    if not any(present(h) for h in target.handlers):
        handler = make()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        target.addHandler(handler)


def configure_logging(config: HarnessConfig) -> None:
    """Set the ``"gateway_harness"`` logger level and attach its handlers once.

    A console handler always, plus a file handler when ``config.log_file``
    is set.
    """
    harness_logger = logging.getLogger("gateway_harness")
    harness_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    # FileHandler is itself a StreamHandler.
    _attach_once(
        harness_logger,
        logging.StreamHandler,
        lambda h: type(h) is logging.StreamHandler,
    )
    if config.log_file is not None:
        path = str(Path(config.log_file).resolve())
        _attach_once(
            harness_logger,
            lambda: logging.FileHandler(path),
            lambda h: getattr(h, "baseFilename", None) == path,
        )


# ---------------------------------------------------------------------------
# Scenario
# ---------------------------------------------------------------------------


class _Trace:
    """Ordered lifecycle events relative to scenario start."""

    def __init__(self) -> None:
        self._start = time.monotonic()
        self.events: list[ScenarioEvent] = []

    def record(self, kind: EventKind) -> None:
        self.events.append(ScenarioEvent(kind=kind, at_seconds=self.elapsed()))

    def elapsed(self) -> float:
        return time.monotonic() - self._start

    def between(self, start: EventKind, end: EventKind) -> float:
        """Seconds from the first *start* event to the first *end* event."""
        at: dict[EventKind, float] = {}
        for event in self.events:
            at.setdefault(event.kind, event.at_seconds)
        return at[end] - at[start]


async def _release(process: GatewayProcess | None) -> DiagnosticSnapshot | None:
    """Kill a still-live gateway and return its final output snapshot."""
    if process is None:
        return None
    await process.kill()
    return await process.output.aclose()


async def run_gateway_scenario(config: HarnessConfig | None = None) -> ScenarioResult:
    """Run the SIGTERM scenario once against the configured gateway.

    Steps: allocate a port, write the config file into a fresh state
    directory, spawn the gateway, wait until it listens, send the
    termination signal and classify the exit. The whole sequence is
    bounded by ``config.scenario_timeout_seconds``.

    Args:
        config: Harness configuration. Defaults to ``HarnessConfig()``.

    Returns:
        A ``ScenarioResult`` describing the graceful shutdown.

    Raises:
        AllocationError: If no port could be allocated.
        SpawnError: If the gateway could not be started.
        ProcessExitedEarlyError: If the gateway died before listening.
        TimedOutError: If the gateway never listened.
        UnexpectedExitError: If the exit status was not graceful.
        ScenarioTimeoutError: If the overall time bound expired.
    """
    cfg = config if config is not None else HarnessConfig()
    trace = _Trace()
    process: GatewayProcess | None = None
    state_dir: Path | None = None
    stage = "allocating a port"

    try:
        async with asyncio.timeout(cfg.scenario_timeout_seconds):
            port = allocate_port(cfg.host)
            trace.record(EventKind.PORT_ALLOCATED)

            stage = "spawning the gateway"
            state_dir = prepare_state_dir(cfg)
            config_path = write_gateway_config(
                state_dir, cfg.mode, port, cfg.config_filename
            )
            env = build_gateway_env(cfg, state_dir, config_path)
            entry_args = build_gateway_args(port, cfg.bind, cfg.allow_unconfigured)
            argv, env = build_effective_argv(cfg, entry_args, state_dir, env)
            process = await spawn_gateway(argv, cfg.working_dir, env)
            trace.record(EventKind.SPAWNED)

            stage = f"waiting for the gateway to listen on port {port}"
            await wait_for_ready(
                process,
                cfg.host,
                port,
                cfg.ready_timeout_seconds,
                cfg.poll_interval_seconds,
            )
            trace.record(EventKind.READY)
            ready_after = trace.between(EventKind.SPAWNED, EventKind.READY)

            stage = f"waiting for the gateway to exit after {cfg.termination_signal.name}"
            trace.record(EventKind.SIGNAL_SENT)
            outcome, reason = await verify_graceful_shutdown(
                process, cfg.termination_signal
            )
            trace.record(EventKind.EXITED)
    except TimeoutError as exc:
        logger.error("Scenario timed out while %s", stage)
        diagnostics = await _release(process)
        raise ScenarioTimeoutError(
            cfg.scenario_timeout_seconds, stage, diagnostics=diagnostics
        ) from exc
    except HarnessError as exc:
        logger.error("Scenario failed while %s: %s", stage, exc.headline)
        diagnostics = await _release(process)
        if diagnostics is not None:
            # The drained snapshot is a superset of the one taken at failure time.
            exc.diagnostics = diagnostics
        raise
    finally:
        await _release(process)
        trace.record(EventKind.CLEANUP)
        if state_dir is not None and not cfg.keep_state_dir:
            shutil.rmtree(state_dir, ignore_errors=True)

    logger.info(
        "Gateway shut down gracefully (%s, accepted by %s)",
        outcome.describe(),
        reason,
    )
    return ScenarioResult(
        port=port,
        pid=process.pid,
        outcome=outcome,
        reason=reason,
        diagnostics=process.output.snapshot(),
        events=tuple(trace.events),
        ready_after_seconds=ready_after,
        duration_seconds=trace.elapsed(),
    )


def run_gateway_scenario_sync(config: HarnessConfig | None = None) -> ScenarioResult:
    """Synchronous wrapper for :func:`run_gateway_scenario` via ``asyncio.run()``."""
    return asyncio.run(run_gateway_scenario(config))

