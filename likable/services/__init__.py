"""Likable service lifecycle layer.

Allocates ports, patches the generated config files, and supervises the
background services that run underneath the AI agent session.

Key classes:
    ProcessSupervisor - Service handles, start/stop routing, signal teardown
    BackendStack      - Backend CLI start / status / stop protocol
    DevServer         - Dev server background task with its own log sink
    Credentials       - Base URL + public key extracted from backend status
"""

from .backend import (
    BackendStack,
    BackendStartError,
    BackendStartResult,
    StartOutcome,
    check_backend_cli,
    check_docker,
)
from .config_patch import (
    ConfigPatchError,
    patch_backend_ports,
    remove_deprecated_keys,
    update_dev_server_port,
    update_env_file,
)
from .credentials import PLACEHOLDER_ANON_KEY, Credentials, extract_credentials
from .dev_server import DevServer, DevServerError
from .handle import InvalidTransitionError, ServiceHandle, ServiceRole, ServiceStatus
from .ports import (
    NoAvailablePortRangeError,
    allocate_backend_ports,
    allocate_dev_port,
    is_port_free,
)
from .supervisor import ProcessSupervisor

__all__ = [
    # Ports
    "allocate_backend_ports",
    "allocate_dev_port",
    "is_port_free",
    "NoAvailablePortRangeError",
    # Config files
    "patch_backend_ports",
    "remove_deprecated_keys",
    "update_env_file",
    "update_dev_server_port",
    "ConfigPatchError",
    # Credentials
    "Credentials",
    "extract_credentials",
    "PLACEHOLDER_ANON_KEY",
    # Supervision
    "ProcessSupervisor",
    "ServiceHandle",
    "ServiceRole",
    "ServiceStatus",
    "InvalidTransitionError",
    "BackendStack",
    "BackendStartError",
    "BackendStartResult",
    "StartOutcome",
    "DevServer",
    "DevServerError",
    "check_docker",
    "check_backend_cli",
]
