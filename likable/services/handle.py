"""Service handles and their status state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ServiceRole(str, Enum):
    BACKEND_STACK = "backend-stack"
    DEV_SERVER = "dev-server"


class ServiceStatus(str, Enum):
    NOT_STARTED = "not started"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


# FAILED and STOPPED are terminal: a new launch gets a new handle.
_TRANSITIONS: dict[ServiceStatus, frozenset[ServiceStatus]] = {
    ServiceStatus.NOT_STARTED: frozenset({ServiceStatus.STARTING}),
    ServiceStatus.STARTING: frozenset(
        {ServiceStatus.RUNNING, ServiceStatus.FAILED, ServiceStatus.STOPPED}
    ),
    ServiceStatus.RUNNING: frozenset({ServiceStatus.FAILED, ServiceStatus.STOPPED}),
    ServiceStatus.FAILED: frozenset(),
    ServiceStatus.STOPPED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised on a status change the service state machine does not allow."""


@dataclass
class ServiceHandle:
    """Supervisor-side record of one launched service."""

    role: ServiceRole
    cwd: Path
    pid: int | None = None
    status: ServiceStatus = ServiceStatus.NOT_STARTED
    detail: str = ""
    history: list[ServiceStatus] = field(default_factory=list)

    def transition(self, new_status: ServiceStatus, detail: str = "") -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.role.value}: cannot go from '{self.status.value}' to '{new_status.value}'"
            )
        self.history.append(self.status)
        self.status = new_status
        if detail:
            self.detail = detail

    @property
    def is_active(self) -> bool:
        return self.status in (ServiceStatus.STARTING, ServiceStatus.RUNNING)
