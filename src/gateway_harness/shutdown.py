"""Signaled shutdown: send the termination signal and classify the exit."""

from __future__ import annotations

import logging
import signal
from typing import TYPE_CHECKING

from gateway_harness.errors import UnexpectedExitError
from gateway_harness.models import ExitOutcome, GracefulReason

if TYPE_CHECKING:
    from gateway_harness.launcher import GatewayProcess
    from gateway_harness.models import DiagnosticSnapshot

logger = logging.getLogger(__name__)


def classify_exit(
    outcome: ExitOutcome,
    sent_signal: signal.Signals,
    diagnostics: DiagnosticSnapshot | None = None,
) -> GracefulReason:
    """Decide whether *outcome* is a graceful response to *sent_signal*.

    Exit code 0 is accepted whatever signal is reported alongside it. No
    exit code is accepted only when the reported signal is the one sent.

    Raises:
        UnexpectedExitError: For every other combination.
    """
    if outcome.exit_code == 0:
        return GracefulReason.EXIT_CODE
    if outcome.exit_code is None and outcome.signal == sent_signal:
        return GracefulReason.SIGNAL
    raise UnexpectedExitError(outcome, sent_signal, diagnostics=diagnostics)


async def verify_graceful_shutdown(
    process: GatewayProcess,
    sig: signal.Signals = signal.SIGTERM,
) -> tuple[ExitOutcome, GracefulReason]:
    """Send *sig* to a ready gateway and check that it shuts down gracefully.

    The exit is awaited without a timeout of its own; the caller bounds the
    scenario as a whole. Once the gateway itself has exited, whatever is
    left of its process group is killed and the output drained.

    Returns:
        The observed outcome and the rule that accepted it.

    Raises:
        UnexpectedExitError: If the exit status is outside the graceful set.
    """
    logger.info("Sending %s to gateway pid %d", sig.name, process.pid)
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        # Exited between the readiness probe and the signal; the exit
        # status below still decides the verdict.
        logger.warning("Gateway pid %d was gone before %s", process.pid, sig.name)
    outcome = await process.wait()
    # Helpers left in the process group would keep the pipes open.
    await process.kill()
    diagnostics = await process.output.aclose()
    logger.info("Gateway pid %d exited: %s", process.pid, outcome.describe())
    return outcome, classify_exit(outcome, sig, diagnostics)
