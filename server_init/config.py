"""Registrar configuration.

Settings are resolved in this order, later sources winning:

  1. Field defaults below.
  2. A YAML file (``--config``, or ``$XDG_CONFIG_HOME/server-init/config.yaml``
     when it exists).
  3. Environment variables named ``SERVER_INIT_<FIELD>``, e.g.
     ``SERVER_INIT_REPO_URL`` or ``SERVER_INIT_NO_AUTH=1``.
  4. Explicit overrides, normally taken from command-line flags.
"""

import os
from pathlib import Path
from typing import Any, Literal, Optional

import structlog
import yaml
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

ENV_PREFIX = "SERVER_INIT_"


def config_dir() -> Path:
    """XDG config directory for this program."""
    config = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
    return Path(config) / "server-init"


class RegistrarSettings(BaseModel):
    """Everything the registrar process needs to know about its environment."""

    listen_ip: str = Field(default="127.0.0.1", description="Address to bind")
    port: int = Field(default=8080, ge=1, le=65535, description="Port to bind")
    repo_url: Optional[str] = Field(
        default=None,
        description="Remote git repository holding the cluster definition",
    )
    no_auth: bool = Field(
        default=False, description="Accept registrations without a token"
    )
    database_path: Path = Field(
        default=Path("otps.sqlite"), description="SQLite file for tokens"
    )
    repo_dir: Path = Field(
        default_factory=lambda: config_dir() / "repo",
        description="Local working copy of the cluster repository",
    )
    cluster_document: str = Field(
        default="secrets/secrets.nix",
        description="Cluster registry document, relative to the repository root",
    )
    registry_attribute: str = Field(
        default="hosts",
        description="Attribute of the cluster document that lists hosts",
    )
    hosts_dir: str = Field(
        default="hosts",
        description="Directory (relative to the repository root) for per-host files",
    )
    git_timeout: float = Field(
        default=60.0, gt=0, description="Seconds before a git command is killed"
    )
    lock_timeout: float = Field(
        default=120.0,
        gt=0,
        description="Seconds a request waits for the repository lock",
    )
    commit_author_name: str = Field(default="server-init")
    commit_author_email: str = Field(default="server-init@localhost")
    ssl_certfile: Optional[Path] = Field(
        default=None, description="TLS certificate served by the registrar"
    )
    ssl_keyfile: Optional[Path] = Field(
        default=None, description="TLS private key served by the registrar"
    )
    log_format: Literal["console", "json"] = "console"
    log_level: Literal["debug", "info", "warning", "error"] = "info"


def load_config_file(config_path: Optional[Path]) -> dict[str, Any]:
    """Load the YAML config file.

    Args:
        config_path: Explicit path. When ``None`` the default location is used
            if it exists.

    Returns:
        Mapping of setting names to values (empty when there is no file).

    Raises:
        FileNotFoundError: An explicit path was given but does not exist.
        ValueError: The file does not contain a mapping.
    """
    if config_path is None:
        config_path = config_dir() / "config.yaml"
        if not config_path.exists():
            return {}

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path}: expected a mapping of settings")

    logger.debug("config_file_loaded", path=str(config_path), keys=sorted(data))
    return data


def env_overrides(environ: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Collect ``SERVER_INIT_*`` variables that name a known setting."""
    environ = os.environ if environ is None else environ
    values = {}
    for name in RegistrarSettings.model_fields:
        key = ENV_PREFIX + name.upper()
        if key in environ:
            values[name] = environ[key]
    return values


def load_settings(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
    environ: Optional[dict[str, str]] = None,
) -> RegistrarSettings:
    """Build settings from file, environment and explicit overrides.

    ``None`` values in ``overrides`` are ignored so unset CLI flags do not
    mask file or environment values.
    """
    values: dict[str, Any] = {}
    values.update(load_config_file(config_path))
    values.update(env_overrides(environ))
    values.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return RegistrarSettings(**values)
