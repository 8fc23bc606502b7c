"""Authority settings, read from ``MODSYNC_*`` environment variables.

Defaults are static; use :func:`load_settings` to build settings from the
process environment or :meth:`Settings.from_env` with an explicit snapshot.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_SYNC_ROOTS = ["Plugins", "Mods"]
DATA_DIR_NAME = "ModSyncData"


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Configuration for one authority instance."""

    root: str = "."
    data_dir: str | None = None  # defaults to <root>/ModSyncData
    sync_roots: list[str] = Field(default_factory=lambda: list(DEFAULT_SYNC_ROOTS))

    # Deferred-apply protocol
    authority_url: str = "http://127.0.0.1:6969"
    poll_interval: float = 2.0
    probe_timeout: float = 3.0
    auto_launch: bool = True

    # Downloads
    download_timeout: float = 1800.0
    verify_tls: bool = True

    protected_file: str | None = None  # defaults to <data_dir>/protected.yml

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls, env: dict[str, str], overrides: dict | None = None) -> "Settings":
        """Build Settings from an explicit env snapshot (does not read os.environ)."""
        roots = env.get("MODSYNC_SYNC_ROOTS")
        data = {
            "root": env.get("MODSYNC_ROOT", "."),
            "data_dir": env.get("MODSYNC_DATA_DIR") or None,
            "sync_roots": [r.strip() for r in roots.split(",") if r.strip()]
            if roots
            else list(DEFAULT_SYNC_ROOTS),
            "authority_url": env.get("MODSYNC_AUTHORITY_URL", "http://127.0.0.1:6969"),
            "poll_interval": float(env.get("MODSYNC_POLL_INTERVAL", "2.0")),
            "probe_timeout": float(env.get("MODSYNC_PROBE_TIMEOUT", "3.0")),
            "auto_launch": _flag(env.get("MODSYNC_AUTO_LAUNCH"), True),
            "download_timeout": float(env.get("MODSYNC_DOWNLOAD_TIMEOUT", "1800")),
            "verify_tls": _flag(env.get("MODSYNC_VERIFY_TLS"), True),
            "protected_file": env.get("MODSYNC_PROTECTED_FILE") or None,
            "log_level": env.get("MODSYNC_LOG_LEVEL", "INFO"),
            "log_format": env.get("MODSYNC_LOG_FORMAT", "text"),
        }
        if overrides:
            data.update(overrides)
        return cls(**data)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def root_path(self) -> Path:
        return Path(self.root).expanduser().resolve()

    @property
    def data_path(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir).expanduser().resolve()
        return self.root_path / DATA_DIR_NAME

    @property
    def staging_path(self) -> Path:
        return self.data_path / "staging"

    @property
    def protected_path(self) -> Path:
        if self.protected_file:
            return Path(self.protected_file).expanduser()
        return self.data_path / "protected.yml"

    @property
    def status_url(self) -> str:
        return self.authority_url.rstrip("/") + "/status"


def load_settings(overrides: dict | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load settings from an env snapshot (``os.environ`` when omitted) plus overrides."""
    snapshot = {k: str(v) for k, v in os.environ.items()} if env is None else env
    return Settings.from_env(snapshot, overrides)
