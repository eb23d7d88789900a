"""Core data models for the gateway lifecycle harness.

Defines the Pydantic models and enums shared by every harness module:
the observed exit status of the child, the captured output snapshot, the
configuration document written for the gateway, the harness configuration
itself, and the scenario result with its event trace.
"""

from __future__ import annotations

from enum import StrEnum
from signal import Signals
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GatewayMode(StrEnum):
    """Operating mode written into the gateway configuration file."""

    LOCAL = "local"
    REMOTE = "remote"


class BindMode(StrEnum):
    """Bind-address token passed to the gateway on its command line."""

    LOOPBACK = "loopback"
    LAN = "lan"
    AUTO = "auto"


class GracefulReason(StrEnum):
    """Which half of the exit contract accepted a shutdown."""

    EXIT_CODE = "exit_code"
    SIGNAL = "signal"


class EventKind(StrEnum):
    """Lifecycle events recorded in a scenario trace."""

    PORT_ALLOCATED = "port_allocated"
    SPAWNED = "spawned"
    READY = "ready"
    SIGNAL_SENT = "signal_sent"
    EXITED = "exited"
    CLEANUP = "cleanup"


def parse_signal(value: Any) -> Signals:
    """Coerce a signal name (``"SIGTERM"``, ``"term"``) or number to ``Signals``.

    Raises:
        ValueError: If *value* does not name a signal on this platform.
    """
    if isinstance(value, Signals):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return Signals(value)
        except ValueError:
            msg = f"Unknown signal number: {value}"
            raise ValueError(msg) from None
    if isinstance(value, str):
        name = value.strip().upper()
        if name.isdigit():
            return parse_signal(int(name))
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        try:
            return Signals[name]
        except KeyError:
            msg = f"Unknown signal name: {value!r}"
            raise ValueError(msg) from None
    msg = f"Cannot interpret {value!r} as a signal"
    raise ValueError(msg)


class ExitOutcome(BaseModel):
    """Exit status observed when the child process terminated.

    Mirrors the POSIX convention: a process that exits normally reports a
    numeric code and no signal, a process killed by a signal reports no
    code and the signal.

    Attributes:
        exit_code: Numeric exit status, or ``None`` when killed by a signal.
        signal: Terminating signal, or ``None`` for a normal exit.
    """

    model_config = ConfigDict(frozen=True)

    exit_code: int | None
    signal: Signals | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitOutcome:
        """Build an outcome from an asyncio/subprocess ``returncode``.

        Negative return codes mean the child was killed by signal ``-rc``.
        """
        if returncode >= 0:
            return cls(exit_code=returncode, signal=None)
        try:
            sig = Signals(-returncode)
        except ValueError:
            return cls(exit_code=returncode, signal=None)
        return cls(exit_code=None, signal=sig)

    def describe(self) -> str:
        """Render as ``code=<code> signal=<NAME>`` for error messages."""
        sig = self.signal.name if self.signal is not None else "None"
        return f"code={self.exit_code} signal={sig}"


class DiagnosticSnapshot(BaseModel):
    """Captured stdout/stderr text at a point in time.

    Both fields are always strings; a stream that produced nothing is the
    empty string.
    """

    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""

    def render(self) -> str:
        """Format both streams as a human-readable text block."""
        return f"--- stdout ---\n{self.stdout}\n--- stderr ---\n{self.stderr}"


class GatewaySection(BaseModel):
    """The ``gateway`` section of the service configuration file."""

    model_config = ConfigDict(frozen=True)

    mode: GatewayMode = GatewayMode.LOCAL
    port: int = Field(ge=1, le=65535)


class GatewayConfigFile(BaseModel):
    """Minimal configuration document written for the gateway under test."""

    model_config = ConfigDict(frozen=True)

    gateway: GatewaySection


class HarnessConfig(BaseModel):
    """Settings for one gateway SIGTERM scenario.

    Attributes:
        service_name: Service name; derives the env-var prefix, the config
            file name and the temporary directory prefix.
        executable: Runtime binary used to launch the service.
        runtime_args: Arguments placed before the entry point.
        entry: Entry-point script of the service, relative to ``working_dir``.
        working_dir: Directory the service is started in (``None`` = cwd).
        host: Host probed for readiness.
        bind: Bind-address token passed to the service.
        mode: Gateway mode written into the configuration file.
        allow_unconfigured: Pass ``--allow-unconfigured`` to the service.
        ready_timeout_seconds: Time allowed for the port to accept connections.
        scenario_timeout_seconds: Overall bound on the whole scenario.
        poll_interval_seconds: Pause between readiness probes.
        termination_signal: Signal sent once the service is ready.
        extra_env: Additional environment entries layered on last.
        keep_state_dir: Leave the temporary state directory on disk.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    service_name: str = "clawdbot"
    executable: str = "node"
    runtime_args: tuple[str, ...] = ("--import", "tsx")
    entry: str = "src/entry.ts"
    working_dir: str | None = None
    host: str = "127.0.0.1"
    bind: BindMode = BindMode.LOOPBACK
    mode: GatewayMode = GatewayMode.LOCAL
    allow_unconfigured: bool = True
    ready_timeout_seconds: float = 150.0
    scenario_timeout_seconds: float = 180.0
    poll_interval_seconds: float = 0.01
    termination_signal: Signals = Signals.SIGTERM
    extra_env: dict[str, str] = {}
    keep_state_dir: bool = False
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator(
        "ready_timeout_seconds",
        "scenario_timeout_seconds",
        "poll_interval_seconds",
    )
    @classmethod
    def _must_be_positive(cls, v: float) -> float:
        if v <= 0:
            msg = "Value must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("termination_signal", mode="before")
    @classmethod
    def _coerce_signal(cls, v: Any) -> Signals:
        return parse_signal(v)

    @field_validator("service_name")
    @classmethod
    def _service_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            msg = "service_name must not be empty"
            raise ValueError(msg)
        return v.strip()

    @property
    def env_prefix(self) -> str:
        """Environment variable prefix, e.g. ``CLAWDBOT_``."""
        return self.service_name.upper().replace("-", "_") + "_"

    @property
    def config_filename(self) -> str:
        """Name of the JSON configuration file written for the service."""
        return f"{self.service_name}.json"


class ScenarioEvent(BaseModel):
    """One lifecycle step and when it happened, relative to scenario start."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    at_seconds: float


class ScenarioResult(BaseModel):
    """Outcome of a scenario whose gateway shut down gracefully.

    Attributes:
        port: Port the gateway was started on and probed.
        pid: Process id of the gateway.
        outcome: Observed exit status after the termination signal.
        reason: Which rule accepted the exit status.
        diagnostics: Everything the gateway wrote to stdout/stderr.
        events: Ordered lifecycle trace.
        ready_after_seconds: Time from spawn until the port accepted a connection.
        duration_seconds: Wall-clock duration of the whole scenario.
    """

    model_config = ConfigDict(frozen=True)

    port: int
    pid: int
    outcome: ExitOutcome
    reason: GracefulReason
    diagnostics: DiagnosticSnapshot
    events: tuple[ScenarioEvent, ...]
    ready_after_seconds: float
    duration_seconds: float

    def event_kinds(self) -> list[EventKind]:
        """Return the kinds of the recorded events, in order."""
        return [event.kind for event in self.events]
