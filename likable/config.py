"""Likable configuration.

Typed configuration for a project session. All settings use Pydantic v2
models so they are validated at construction time and can be serialised to
and from JSON or environment variables without boiler-plate.

The entry point builds a single ``Config`` and threads it through the
orchestrator; individual services receive only the fields they need.
"""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


class PortSet(BaseModel):
    """Port allocation for the local backend stack.

    Each role maps to the TCP port one backend service binds.  The default
    numbers are the backend CLI's well-known ports; an allocated set is the
    default set shifted by a uniform offset, so the relative distances the
    stack expects between its services never change.
    """

    model_config = ConfigDict(frozen=True)

    api: int = Field(default=54321, gt=0, le=65535)
    db: int = Field(default=54322, gt=0, le=65535)
    studio: int = Field(default=54323, gt=0, le=65535)
    mail_sink: int = Field(default=54324, gt=0, le=65535)
    analytics: int = Field(default=54327, gt=0, le=65535)
    pooler: int = Field(default=54329, gt=0, le=65535)

    @model_validator(mode="after")
    def _ports_distinct(self) -> "PortSet":
        ports = self.all_ports()
        if len(set(ports)) != len(ports):
            raise ValueError(f"Port numbers must be distinct, got {ports}")
        return self

    def as_dict(self) -> dict[str, int]:
        """Return a plain ``{role: port}`` mapping in role order."""
        return {
            "api": self.api,
            "db": self.db,
            "studio": self.studio,
            "mail_sink": self.mail_sink,
            "analytics": self.analytics,
            "pooler": self.pooler,
        }

    def all_ports(self) -> list[int]:
        """Return every allocated port as a flat list."""
        return list(self.as_dict().values())

    def shifted(self, offset: int) -> "PortSet":
        """Return a new set with every port moved by *offset*."""
        return PortSet(**{role: port + offset for role, port in self.as_dict().items()})

    @property
    def api_url(self) -> str:
        """Base URL of the backend API gateway on the loopback interface."""
        return f"http://127.0.0.1:{self.api}"


DEFAULT_PORTS = PortSet()

DEFAULT_DEV_PORT = 13337
DEV_PORT_RANGE: tuple[int, int] = (13337, 65535)


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


BACKEND_FEATURES: frozenset[str] = frozenset(
    {"database", "auth-email", "auth-oauth", "uploads", "realtime"}
)


class ComponentLibrary(str, Enum):
    """UI component library selected for the scaffolded app."""
    SHADCN = "shadcn"
    CHAKRA = "chakra"
    MUI = "mui"
    NONE = "none"


class AgentKind(str, Enum):
    """External AI coding agent CLI that takes over the terminal."""
    CLAUDE = "claude"
    GEMINI = "gemini"


class ProjectConfig(BaseModel):
    """The project being worked on, as handed over by the scaffolding step."""

    name: str = Field(..., pattern=r"^[a-z0-9-]+$", description="Project directory name")
    description: str = Field(default="", description="Short project description")
    features: list[str] = Field(default_factory=list)
    component_library: ComponentLibrary = Field(default=ComponentLibrary.SHADCN)
    target_dir: Path = Field(..., description="Absolute path of the project root")

    @property
    def needs_backend(self) -> bool:
        """``True`` when any selected feature relies on the backend stack."""
        return any(feature in BACKEND_FEATURES for feature in self.features)


# ---------------------------------------------------------------------------
# Session options
# ---------------------------------------------------------------------------


class SessionOptions(BaseModel):
    """Immutable per-session switches, decided once before anything starts."""

    model_config = ConfigDict(frozen=True)

    agent: AgentKind = Field(default=AgentKind.CLAUDE)
    auto_accept: bool = Field(
        default=True, description="Let the agent apply edits without confirmation"
    )
    start_backend: bool = Field(default=True)
    fresh_project: bool = Field(
        default=False,
        description="Skip the already-running probe (brand-new project directory)",
    )
    launch_agent: bool = Field(default=True)
    dev_port_min: int = Field(default=DEV_PORT_RANGE[0], gt=1024, le=65535)
    dev_port_max: int = Field(default=DEV_PORT_RANGE[1], gt=1024, le=65535)
    dev_settle_seconds: float = Field(default=2.0, ge=0.0)

    @model_validator(mode="after")
    def _range_ordered(self) -> "SessionOptions":
        if self.dev_port_min > self.dev_port_max:
            raise ValueError("dev_port_min must not exceed dev_port_max")
        return self


# ---------------------------------------------------------------------------
# Global config
# ---------------------------------------------------------------------------


class Config(BaseModel):
    """Global session configuration.

    Holds the project description, the session options and every derived
    path inside the project directory.
    """

    project: ProjectConfig
    options: SessionOptions = Field(default_factory=SessionOptions)
    state_dir: str = Field(default=".likable")

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def project_dir(self) -> Path:
        return self.project.target_dir

    @property
    def backend_config_path(self) -> Path:
        """Path to the backend stack's ``supabase/config.toml``."""
        return self.project_dir / "supabase" / "config.toml"

    @property
    def env_path(self) -> Path:
        """Path to the app's ``.env.local``."""
        return self.project_dir / ".env.local"

    @property
    def dev_server_config_path(self) -> Path:
        """Path to the Vite config, preferring TypeScript."""
        ts_config = self.project_dir / "vite.config.ts"
        js_config = self.project_dir / "vite.config.js"
        if not ts_config.exists() and js_config.exists():
            return js_config
        return ts_config

    @property
    def dev_log_path(self) -> Path:
        """Persistent dev server log the agent and the user can inspect."""
        return self.project_dir / "dev-server.log"

    @property
    def state_path(self) -> Path:
        return self.project_dir / self.state_dir / "config.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<project>/.likable/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or self.state_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls, project: ProjectConfig) -> "Config":
        """Build a ``Config`` for *project* from environment variables.

        Recognised variables (all optional):
            LIKABLE_AGENT, LIKABLE_REVIEW_MODE, LIKABLE_SKIP_BACKEND,
            LIKABLE_FRESH, LIKABLE_NO_AGENT, LIKABLE_DEV_PORT_MIN,
            LIKABLE_DEV_PORT_MAX, LIKABLE_DEV_SETTLE_SECONDS.
        """
        options: dict[str, Any] = {}
        if os.environ.get("LIKABLE_AGENT"):
            options["agent"] = AgentKind(os.environ["LIKABLE_AGENT"].lower())
        if _env_flag("LIKABLE_REVIEW_MODE"):
            options["auto_accept"] = False
        if _env_flag("LIKABLE_SKIP_BACKEND"):
            options["start_backend"] = False
        if _env_flag("LIKABLE_FRESH"):
            options["fresh_project"] = True
        if _env_flag("LIKABLE_NO_AGENT"):
            options["launch_agent"] = False
        if os.environ.get("LIKABLE_DEV_PORT_MIN"):
            options["dev_port_min"] = int(os.environ["LIKABLE_DEV_PORT_MIN"])
        if os.environ.get("LIKABLE_DEV_PORT_MAX"):
            options["dev_port_max"] = int(os.environ["LIKABLE_DEV_PORT_MAX"])
        if os.environ.get("LIKABLE_DEV_SETTLE_SECONDS"):
            options["dev_settle_seconds"] = float(os.environ["LIKABLE_DEV_SETTLE_SECONDS"])

        return cls(project=project, options=SessionOptions(**options))


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")
