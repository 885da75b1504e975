"""Per-user locations for the config file and the plan databases."""

from __future__ import annotations

import os
import sys
from pathlib import Path

APP_NAME = "conductor"

# kind -> (override env var, Windows base env var, XDG env var, XDG fallback)
_LOCATIONS = {
    "config": ("CONDUCTOR_CONFIG_DIR", "APPDATA", "XDG_CONFIG_HOME", (".config",)),
    "data": ("CONDUCTOR_DATA_DIR", "LOCALAPPDATA", "XDG_DATA_HOME", (".local", "share")),
}


def _app_dir(kind: str) -> Path:
    override, windows_var, xdg_var, xdg_fallback = _LOCATIONS[kind]
    if os.environ.get(override):
        return Path(os.environ[override])

    home = Path.home()
    if sys.platform == "win32":
        windows_default = home / "AppData" / ("Roaming" if kind == "config" else "Local")
        return Path(os.environ.get(windows_var) or windows_default) / APP_NAME
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_NAME
    return Path(os.environ.get(xdg_var) or home.joinpath(*xdg_fallback)) / APP_NAME


def get_config_dir() -> Path:
    return _app_dir("config")


def get_data_dir() -> Path:
    """Directory holding ``plans.db`` and ``activity.db``."""
    return _app_dir("data")
