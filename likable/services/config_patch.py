"""Write allocated ports and credentials into the project's config files.

The backend stack's ``supabase/config.toml`` is edited through ``tomlkit``,
which round-trips comments, ordering and whitespace, so only the targeted
values change.  Several sections share the key name ``port``; every edit
addresses its section by full path (``[db]`` and ``[db.pooler]`` are
updated independently).

A config file that does not exist yet is not an error: the scaffolding step
that creates it may have been skipped, and there is nothing to patch.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import tomlkit
from tomlkit.exceptions import TOMLKitError

from likable.config import PortSet
from likable.utils import print_warning

# Section path of each PortSet role inside config.toml.
ROLE_SECTIONS: dict[str, tuple[str, ...]] = {
    "api": ("api",),
    "db": ("db",),
    "studio": ("studio",),
    "mail_sink": ("inbucket",),
    "analytics": ("analytics",),
    "pooler": ("db", "pooler"),
}

# Keys the current backend CLI rejects, by section path.
DEPRECATED_KEYS: dict[tuple[str, ...], tuple[str, ...]] = {
    ("auth", "external", "apple"): ("email_optional",),
}


class ConfigPatchError(RuntimeError):
    """Raised when an existing config file cannot be read, parsed or written."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Could not update {path}: {cause}")


# ---------------------------------------------------------------------------
# TOML helpers
# ---------------------------------------------------------------------------


def _load_document(path: Path) -> tomlkit.TOMLDocument | None:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise ConfigPatchError(path, exc) from exc
    try:
        return tomlkit.parse(text)
    except TOMLKitError as exc:
        raise ConfigPatchError(path, exc) from exc


def _write_document(path: Path, document: tomlkit.TOMLDocument) -> None:
    try:
        path.write_text(tomlkit.dumps(document), encoding="utf-8")
    except OSError as exc:
        raise ConfigPatchError(path, exc) from exc


def _section(document: Mapping[str, Any], section_path: tuple[str, ...]) -> MutableMapping[str, Any] | None:
    """Walk *section_path* from the document root; ``None`` if any part is absent."""
    node: Any = document
    for name in section_path:
        if not isinstance(node, Mapping) or name not in node:
            return None
        node = node[name]
    return node if isinstance(node, MutableMapping) else None


def apply_ports(document: tomlkit.TOMLDocument, ports: PortSet) -> list[str]:
    """Set each role's ``port`` inside its own section of *document*.

    Sections without a ``port`` key are left alone.

    Returns:
        The roles whose value actually changed.
    """
    changed: list[str] = []
    for role, port in ports.as_dict().items():
        section = _section(document, ROLE_SECTIONS[role])
        if section is None or "port" not in section:
            continue
        if section["port"] != port:
            section["port"] = port
            changed.append(role)
    return changed


def strip_deprecated(
    document: tomlkit.TOMLDocument,
    deprecated: Mapping[tuple[str, ...], tuple[str, ...]] = DEPRECATED_KEYS,
) -> list[str]:
    """Delete deprecated keys from *document*; returns dotted names removed."""
    removed: list[str] = []
    for section_path, keys in deprecated.items():
        section = _section(document, section_path)
        if section is None:
            continue
        for key in keys:
            if key in section:
                del section[key]
                removed.append(".".join((*section_path, key)))
    return removed


# ---------------------------------------------------------------------------
# Public file operations
# ---------------------------------------------------------------------------


def _patch_ports_sync(config_path: Path, ports: PortSet) -> bool:
    document = _load_document(config_path)
    if document is None:
        return False
    if apply_ports(document, ports):
        _write_document(config_path, document)
    return True


async def patch_backend_ports(config_path: str | Path, ports: PortSet) -> bool:
    """Rewrite the backend config so every role binds its allocated port.

    Args:
        config_path: Path to ``supabase/config.toml``.
        ports: The allocated port set.

    Returns:
        ``False`` if the file does not exist (nothing is created),
        ``True`` otherwise.

    Raises:
        ConfigPatchError: The file exists but could not be read, parsed or
            written.
    """
    return await asyncio.to_thread(_patch_ports_sync, Path(config_path), ports)


def _cleanup_sync(config_path: Path) -> bool:
    document = _load_document(config_path)
    if document is None:
        return False
    removed = strip_deprecated(document)
    if removed:
        _write_document(config_path, document)
    return bool(removed)


async def remove_deprecated_keys(config_path: str | Path) -> bool:
    """Remove config keys the backend CLI no longer accepts.

    Idempotent: an already-clean file is neither rewritten nor changed.
    Failures other than a missing file are reported as a warning.

    Returns:
        ``True`` if at least one key was removed.
    """
    path = Path(config_path)
    try:
        return await asyncio.to_thread(_cleanup_sync, path)
    except ConfigPatchError as exc:
        print_warning(f"Could not clean up {path.name}: {exc.cause}")
        return False


# ---------------------------------------------------------------------------
# Env file and dev server config
# ---------------------------------------------------------------------------


def _update_env_sync(env_path: Path, values: Mapping[str, str]) -> bool:
    try:
        content = env_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False

    for key, value in values.items():
        pattern = re.compile(rf"^{re.escape(key)}=.*$", re.MULTILINE)
        line = f"{key}={value}"
        if pattern.search(content):
            content = pattern.sub(lambda _match: line, content, count=1)
        else:
            if content and not content.endswith("\n"):
                content += "\n"
            content += line + "\n"

    env_path.write_text(content, encoding="utf-8")
    return True


async def update_env_file(env_path: str | Path, values: Mapping[str, str]) -> bool:
    """Set ``KEY=value`` lines in an env file, appending keys it lacks.

    The file is never created: returns ``False`` when it does not exist.

    Raises:
        OSError: The file exists but could not be read or written.
    """
    return await asyncio.to_thread(_update_env_sync, Path(env_path), dict(values))


_VITE_PORT_RE = re.compile(r"(\bport\s*:\s*)\d+")


def _update_dev_port_sync(config_path: Path, port: int) -> bool:
    try:
        content = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False

    updated, count = _VITE_PORT_RE.subn(lambda m: f"{m.group(1)}{port}", content, count=1)
    if count == 0:
        return False
    if updated != content:
        config_path.write_text(updated, encoding="utf-8")
    return True


async def update_dev_server_port(config_path: str | Path, port: int) -> bool:
    """Point the dev server config's ``port:`` literal at *port*.

    Returns:
        ``False`` when the file is missing or declares no port.
    """
    return await asyncio.to_thread(_update_dev_port_sync, Path(config_path), port)
