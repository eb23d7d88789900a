"""Ephemeral TCP port allocation."""

from __future__ import annotations

import logging
import socket

from gateway_harness.errors import AllocationError

logger = logging.getLogger(__name__)


def allocate_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a free TCP port on *host*.

    Binds a listening socket to port 0, reads the assigned port and closes
    the socket before returning. The port is only known to be free at that
    instant; nothing reserves it afterwards.

    Args:
        host: Address to bind, loopback by default.

    Returns:
        The OS-assigned port number.

    Raises:
        AllocationError: If binding fails or the socket reports an address
            without a usable port.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, 0))
            sock.listen(1)
            address = sock.getsockname()
    except OSError as exc:
        msg = f"failed to bind ephemeral port on {host}: {exc}"
        raise AllocationError(msg) from exc

    if not isinstance(address, tuple) or len(address) < 2:
        msg = f"failed to bind ephemeral port: unexpected address {address!r}"
        raise AllocationError(msg)

    port = address[1]
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        msg = f"failed to bind ephemeral port: unexpected port {port!r}"
        raise AllocationError(msg)

    logger.debug("Allocated ephemeral port %d on %s", port, host)
    return port
