"""Readiness polling: wait until the gateway accepts TCP connections."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import TYPE_CHECKING

from gateway_harness.errors import ProcessExitedEarlyError, TimedOutError

if TYPE_CHECKING:
    from gateway_harness.launcher import GatewayProcess

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.01


async def probe_port(host: str, port: int, timeout: float) -> bool:
    """Attempt a single TCP connect to ``host:port``.

    The probe sends no payload and closes the connection as soon as the
    handshake completes.

    Returns:
        ``True`` if the connection was accepted, ``False`` otherwise.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def wait_for_ready(
    process: GatewayProcess,
    host: str,
    port: int,
    timeout_seconds: float,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> float:
    """Poll ``host:port`` until it accepts a connection.

    Each iteration first checks whether the process has already exited
    and fails immediately if so, then makes one connect attempt, then
    sleeps *poll_interval* before retrying.

    Args:
        process: The gateway being waited on.
        host: Host to probe.
        port: Port to probe.
        timeout_seconds: Maximum time to wait.
        poll_interval: Pause between failed attempts.

    Returns:
        Seconds elapsed until the first successful connect.

    Raises:
        ProcessExitedEarlyError: If the process terminated first.
        TimedOutError: If no connect succeeded within *timeout_seconds*.
    """
    start = time.monotonic()
    attempts = 0
    while (elapsed := time.monotonic() - start) < timeout_seconds:
        outcome = process.outcome
        if outcome is not None:
            logger.warning(
                "Gateway pid %d exited before listening on %s:%d (%s)",
                process.pid,
                host,
                port,
                outcome.describe(),
            )
            raise ProcessExitedEarlyError(outcome, diagnostics=process.output.snapshot())

        attempts += 1
        if await probe_port(host, port, timeout=timeout_seconds - elapsed):
            elapsed = time.monotonic() - start
            logger.info(
                "Gateway listening on %s:%d after %.2fs (%d attempts)",
                host,
                port,
                elapsed,
                attempts,
            )
            return elapsed

        await asyncio.sleep(poll_interval)

    logger.warning(
        "Gateway not listening on %s:%d after %d attempts", host, port, attempts
    )
    raise TimedOutError(
        host, port, timeout_seconds, diagnostics=process.output.snapshot()
    )
