"""Error taxonomy for the gateway lifecycle harness.

Every failure is terminal to the scenario. Each error carries the
captured stdout/stderr snapshot (when one exists) plus the observed
status fields, so ``str(error)`` alone is enough to diagnose a failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from signal import Signals

    from gateway_harness.models import DiagnosticSnapshot, ExitOutcome


class HarnessError(Exception):
    """Scenario failure with diagnostic context.

    Attributes:
        headline: One-line description of what was observed.
        diagnostics: Captured output at the moment of failure, if any.
    """

    def __init__(
        self,
        headline: str,
        *,
        diagnostics: DiagnosticSnapshot | None = None,
    ) -> None:
        """Initialize with a headline and an optional output snapshot.

        Args:
            headline: Human-readable error description.
            diagnostics: Captured stdout/stderr, or ``None`` if the child
                was never started.
        """
        super().__init__(headline)
        self.headline = headline
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        if self.diagnostics is None:
            return self.headline
        return f"{self.headline}\n{self.diagnostics.render()}"


class AllocationError(HarnessError):
    """No ephemeral TCP port could be obtained from the OS."""


class SpawnError(HarnessError):
    """The gateway executable could not be started."""


class ProcessExitedEarlyError(HarnessError):
    """The gateway terminated before it started listening."""

    def __init__(
        self,
        outcome: ExitOutcome,
        *,
        diagnostics: DiagnosticSnapshot | None = None,
    ) -> None:
        super().__init__(
            f"gateway exited before listening ({outcome.describe()})",
            diagnostics=diagnostics,
        )
        self.outcome = outcome


class TimedOutError(HarnessError):
    """The gateway did not accept connections within the allotted time."""

    def __init__(
        self,
        host: str,
        port: int,
        timeout_seconds: float,
        *,
        diagnostics: DiagnosticSnapshot | None = None,
    ) -> None:
        super().__init__(
            f"timeout waiting for gateway to listen on port {port} "
            f"({host}:{port}, {timeout_seconds:g}s)",
            diagnostics=diagnostics,
        )
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds


class UnexpectedExitError(HarnessError):
    """The gateway exited after the termination signal with a non-graceful status."""

    def __init__(
        self,
        outcome: ExitOutcome,
        expected_signal: Signals,
        *,
        diagnostics: DiagnosticSnapshot | None = None,
    ) -> None:
        super().__init__(
            f"expected exit code 0 or termination by {expected_signal.name}, "
            f"got {outcome.describe()}",
            diagnostics=diagnostics,
        )
        self.outcome = outcome
        self.expected_signal = expected_signal


class ScenarioTimeoutError(HarnessError):
    """The whole scenario exceeded its overall time bound."""

    def __init__(
        self,
        timeout_seconds: float,
        stage: str,
        *,
        diagnostics: DiagnosticSnapshot | None = None,
    ) -> None:
        super().__init__(
            f"scenario exceeded {timeout_seconds:g}s while {stage}",
            diagnostics=diagnostics,
        )
        self.timeout_seconds = timeout_seconds
        self.stage = stage
