"""Port allocation for the backend stack and the dev server.

Nothing here mutates external state: ports are probed by briefly binding a
listener and releasing it straight away.  A "free" answer is only a hint --
another process can grab the port before the real service binds it, so
callers must treat a later bind failure as recoverable.
"""

from __future__ import annotations

import asyncio
import random
import socket
from collections.abc import Awaitable, Callable, Iterable

from likable.config import DEFAULT_DEV_PORT, DEFAULT_PORTS, DEV_PORT_RANGE, PortSet
from likable.utils import print_warning

PortProbe = Callable[[int], Awaitable[bool]]

RANGE_STEP = 100
MAX_RANGE_ATTEMPTS = 50
MAX_DEV_PORT_ATTEMPTS = 50


class NoAvailablePortRangeError(RuntimeError):
    """Raised when no shifted copy of the default port group is free."""

    def __init__(self, attempts: int, step: int) -> None:
        self.attempts = attempts
        self.step = step
        super().__init__(
            f"Unable to find an available port range for the backend stack after "
            f"{attempts} attempts (step {step}). Free up ports or set them manually "
            f"in supabase/config.toml."
        )


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------


def _probe_bind(port: int) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind(("0.0.0.0", port))
        sock.listen(1)
    except OSError:
        # EADDRINUSE is the usual answer; permission errors and exhausted
        # descriptors count as occupied too.
        return False
    finally:
        sock.close()
    return True


async def is_port_free(port: int) -> bool:
    """Return ``True`` if a TCP listener can bind *port* on all interfaces.

    Any bind failure, whatever its cause, reports the port as occupied.
    """
    if not 0 < port <= 65535:
        return False
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _probe_bind, port)


async def _all_free(ports: Iterable[int], probe: PortProbe) -> bool:
    for port in ports:
        if not await probe(port):
            return False
    return True


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


async def allocate_backend_ports(
    probe: PortProbe = is_port_free,
    defaults: PortSet = DEFAULT_PORTS,
    step: int = RANGE_STEP,
    max_attempts: int = MAX_RANGE_ATTEMPTS,
) -> PortSet:
    """Pick the ports the backend stack should bind.

    Returns *defaults* untouched when all six are free.  Otherwise the whole
    group is shifted by ``step``, ``2 * step``, ... and the first shift whose
    six ports are all free wins.

    Raises:
        NoAvailablePortRangeError: After *max_attempts* shifted groups were
            each found to have at least one occupied port, or earlier when the
            next shift would pass port 65535.
    """
    if await _all_free(defaults.all_ports(), probe):
        return defaults

    attempts = 0
    for attempt in range(1, max_attempts + 1):
        offset = attempt * step
        if max(defaults.all_ports()) + offset > 65535:
            break
        attempts = attempt
        candidate = defaults.shifted(offset)
        if await _all_free(candidate.all_ports(), probe):
            return candidate

    raise NoAvailablePortRangeError(attempts, step)


async def allocate_dev_port(
    min_port: int = DEV_PORT_RANGE[0],
    max_port: int = DEV_PORT_RANGE[1],
    probe: PortProbe = is_port_free,
    max_attempts: int = MAX_DEV_PORT_ATTEMPTS,
    rng: random.Random | None = None,
) -> int:
    """Pick a random free port in ``[min_port, max_port]``.

    Random draws keep concurrent runs on the same host from racing for the
    same "next free" port.  Falls back to ``DEFAULT_DEV_PORT`` when every
    draw was occupied.
    """
    if min_port > max_port:
        raise ValueError(f"Empty port range: {min_port}-{max_port}")

    chooser = rng or random.Random()
    for _ in range(max_attempts):
        port = chooser.randint(min_port, max_port)
        if await probe(port):
            return port

    print_warning(f"Could not find a free random port, using default {DEFAULT_DEV_PORT}")
    return DEFAULT_DEV_PORT
